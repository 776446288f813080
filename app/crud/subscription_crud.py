from datetime import datetime, timedelta
from typing import Optional
from sqlmodel import Session, select
from app.models.plan_model import Plan
from app.models.user_model import User
from app.models.payment_model import Payment
from app.models.order_model import OrderStatus
from app.models.transaction_model import TransactionState
from app.crud.order_crud import get_order_by_order_id, get_paid_orders_without_activation, mark_subscription_activated
from app.crud.transaction_crud import get_transaction_by_payme_id
import logging

logger = logging.getLogger(__name__)


class SubscriptionError(Exception):
    pass


def get_free_plan(session: Session) -> Plan | None:
    return session.exec(select(Plan).where(Plan.is_free == True)).first()


class SubscriptionActivator:
    """Applies plan entitlements after Payme settles or reverses a payment."""

    def __init__(self, session: Session):
        self.session = session

    def _get_user(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise SubscriptionError(f"User {user_id} not found")
        return user

    def activate_paid_plan(
        self,
        user_id: int,
        plan_id: int,
        paid_amount: float,
        order_id: Optional[str] = None,
        payme_transaction_id: Optional[str] = None,
    ) -> Optional[User]:
        """
        Grant plan_id to the user. With an order_id the grant happens once per order, and only
        while the order is PAID and its Payme transaction PERFORMED; returns None otherwise.
        """
        if order_id and not self._payment_settled(order_id, payme_transaction_id):
            self.session.rollback()
            return None

        user = self._get_user(user_id)
        plan = self.session.get(Plan, plan_id)
        if not plan:
            raise SubscriptionError(f"Plan {plan_id} not found")

        if order_id and self.session.exec(select(Payment).where(Payment.order_id == order_id)).first():
            logger.info(f"Plan for order {order_id} already activated, skipping")
            return user

        now = datetime.utcnow()
        # Renewing the same plan extends the current period instead of restarting it
        start = now
        if user.plan_id == plan_id and user.plan_expires_at and user.plan_expires_at > now:
            start = user.plan_expires_at
        expires_at = start + timedelta(days=plan.duration_days)

        user.plan_id = plan.id
        user.plan_expires_at = expires_at
        user.has_paid_plan = True
        user.submissions_limit = plan.max_submissions
        user.total_paid_amount = (user.total_paid_amount or 0) + paid_amount
        user.last_payment_at = now
        user.updated_at = now
        self.session.add(user)

        if order_id:
            self.session.add(Payment(
                user_id=user.id,
                plan_id=plan.id,
                order_id=order_id,
                payme_transaction_id=payme_transaction_id,
                amount=paid_amount,
                paid_at=now,
                plan_expires_at=expires_at,
            ))

        self.session.commit()
        self.session.refresh(user)
        logger.info(f"Activated plan {plan_id} for user {user_id}, expires: {expires_at}")
        return user

    def _payment_settled(self, order_id: str, payme_transaction_id: Optional[str]) -> bool:
        # Holding the order row blocks a concurrent cancel until this activation commits
        order = get_order_by_order_id(self.session, order_id, for_update=True)
        if not order or order.status != OrderStatus.PAID:
            status = order.status.value if order else "missing"
            logger.warning(f"Order {order_id} is {status}, not activating plan")
            return False
        if payme_transaction_id:
            transaction = get_transaction_by_payme_id(self.session, payme_transaction_id)
            if transaction and transaction.state != TransactionState.PERFORMED:
                logger.warning(
                    f"Transaction {payme_transaction_id} is in state {transaction.state}, not activating plan for order {order_id}"
                )
                return False
        return True

    def revert_to_free_plan(self, user_id: int) -> User:
        user = self._get_user(user_id)
        free_plan = get_free_plan(self.session)
        if not free_plan:
            raise SubscriptionError("Free plan is not configured")

        now = datetime.utcnow()
        user.plan_id = free_plan.id
        user.plan_expires_at = now + timedelta(days=free_plan.duration_days)
        user.has_paid_plan = False
        user.submissions_limit = free_plan.max_submissions
        user.updated_at = now
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"Reverted user {user_id} to free plan {free_plan.id}")
        return user

    def current_plan_id(self, user_id: int) -> Optional[int]:
        user = self.session.get(User, user_id)
        return user.plan_id if user else None


def reconcile_unactivated_orders(session: Session, activator: SubscriptionActivator, limit: int = 100) -> dict:
    """Retry activation for PAID orders whose subscription was never applied."""
    orders = get_paid_orders_without_activation(session, limit)
    activated, failed = [], []
    for order in orders:
        order_id = order.order_id
        try:
            user = activator.activate_paid_plan(
                order.user_id,
                order.plan_id,
                order.amount,
                order_id=order_id,
                payme_transaction_id=order.transaction_id,
            )
            if user is None:
                failed.append(order_id)
                continue
            mark_subscription_activated(session, order)
            activated.append(order_id)
        except Exception as e:
            session.rollback()
            logger.error(f"Reconciliation failed for order {order_id} (user {order.user_id}): {str(e)}")
            failed.append(order_id)

    logger.info(f"Reconciliation checked {len(orders)} orders: {len(activated)} activated, {len(failed)} failed")
    return {"checked": len(orders), "activated": activated, "failed": failed}
