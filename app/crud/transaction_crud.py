from sqlmodel import Session, select
from sqlalchemy import func, update, delete, case
from app.models.transaction_model import PaymeTransaction, TransactionState
from datetime import datetime
from typing import Optional, List
import logging
import time

logger = logging.getLogger(__name__)


def current_time_ms() -> int:
    return int(time.time() * 1000)


def to_payme_time(value: Optional[int]) -> int:
    """Ledger timestamps are epoch ms; Payme expects 0 for unset ones."""
    return int(value) if value else 0


def create_transaction(
    session: Session,
    payme_id: str,
    time: int,
    amount: int,
    account: dict,
    create_time: int,
    order_ref: Optional[int] = None,
    user_id: Optional[int] = None,
    plan_id: Optional[int] = None,
    account_order_id: Optional[str] = None,
    commit: bool = True,
) -> PaymeTransaction:
    """Insert a CREATED transaction. IntegrityError propagates to the caller."""
    if account_order_id is None:
        account_order_id = account.get("orderId") or account.get("order_id")
    transaction = PaymeTransaction(
        payme_id=payme_id,
        time=time,
        amount=amount,
        account=account,
        account_order_id=account_order_id,
        create_time=create_time,
        state=int(TransactionState.CREATED),
        order_ref=order_ref,
        user_id=user_id,
        plan_id=plan_id,
    )
    session.add(transaction)
    if commit:
        session.commit()
        session.refresh(transaction)
    else:
        session.flush()
    logger.info(f"Created Payme transaction {payme_id} for {amount} tiyin")
    return transaction


def get_transaction_by_payme_id(session: Session, payme_id: str) -> PaymeTransaction | None:
    return session.exec(
        select(PaymeTransaction)
        .where(PaymeTransaction.payme_id == payme_id)
        .execution_options(populate_existing=True)
    ).first()


def get_active_transaction_for_order(session: Session, order_ref: int) -> PaymeTransaction | None:
    return session.exec(
        select(PaymeTransaction)
        .where(PaymeTransaction.order_ref == order_ref)
        .where(PaymeTransaction.state == TransactionState.CREATED)
    ).first()


def get_transaction_by_account_order_id(session: Session, account_order_id: str) -> PaymeTransaction | None:
    """Lookup by the orderId nested in Payme's account object"""
    return session.exec(
        select(PaymeTransaction)
        .where(PaymeTransaction.account_order_id == account_order_id)
        .order_by(PaymeTransaction.create_time.desc())
    ).first()


def get_transactions_in_range(session: Session, from_ms: int, to_ms: int) -> List[PaymeTransaction]:
    return session.exec(
        select(PaymeTransaction)
        .where(PaymeTransaction.create_time >= from_ms)
        .where(PaymeTransaction.create_time <= to_ms)
        .order_by(PaymeTransaction.create_time)
    ).all()


def transition_state(
    session: Session,
    payme_id: str,
    expected_state: TransactionState,
    new_state: TransactionState,
    perform_time: Optional[int] = None,
    cancel_time: Optional[int] = None,
    reason: Optional[int] = None,
) -> bool:
    """
    Conditional state change: applies only while the row is still in expected_state.
    Returns True if this call won. Does not commit.
    """
    values = {"state": int(new_state), "updated_at": datetime.utcnow()}
    if perform_time is not None:
        values["perform_time"] = perform_time
    if cancel_time is not None:
        values["cancel_time"] = cancel_time
    if reason is not None:
        values["reason"] = reason

    result = session.exec(
        update(PaymeTransaction)
        .where(PaymeTransaction.payme_id == payme_id)
        .where(PaymeTransaction.state == int(expected_state))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    won = result.rowcount == 1
    logger.info(
        f"Transaction {payme_id} {expected_state.name} -> {new_state.name}: {'applied' if won else 'lost race'}"
    )
    return won


def record_error(session: Session, payme_id: str, error: str) -> None:
    session.exec(
        update(PaymeTransaction)
        .where(PaymeTransaction.payme_id == payme_id)
        .values(last_error=error[:1000], updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    session.commit()


def delete_transaction(session: Session, payme_id: str) -> bool:
    """Administrative cleanup only"""
    result = session.exec(
        delete(PaymeTransaction).where(PaymeTransaction.payme_id == payme_id)
    )
    session.commit()
    deleted = result.rowcount > 0
    if deleted:
        logger.warning(f"Deleted Payme transaction {payme_id}")
    return deleted


def get_transaction_statistics(session: Session) -> dict:
    by_state = session.exec(
        select(PaymeTransaction.state, func.count(PaymeTransaction.id)).group_by(PaymeTransaction.state)
    ).all()
    total_amount, successful_amount = session.exec(
        select(
            func.coalesce(func.sum(PaymeTransaction.amount), 0),
            func.coalesce(
                func.sum(
                    case((PaymeTransaction.state == TransactionState.PERFORMED, PaymeTransaction.amount), else_=0)
                ),
                0,
            ),
        )
    ).one()

    states = {state.name: 0 for state in TransactionState}
    for state, count in by_state:
        states[TransactionState(state).name] = count

    return {
        "total": sum(states.values()),
        "by_state": states,
        "total_amount": int(total_amount),
        "successful_amount": int(successful_amount),
    }
