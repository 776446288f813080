from sqlmodel import Session, select
from sqlalchemy import func
from app.models.order_model import Order, OrderStatus, PaymentMethod
from datetime import datetime
from typing import Optional, List
import logging

logger = logging.getLogger(__name__)


def build_order_id(user_id: int, plan_id: int, created_ms: int) -> str:
    return f"order_{user_id}_{plan_id}_{created_ms}"


def to_tiyin(amount: float) -> int:
    """Convert UZS to tiyin (1 UZS = 100 tiyin)."""
    return int(round(amount * 100))


def create_order(
    session: Session,
    order_id: str,
    user_id: int,
    plan_id: int,
    amount: float,
    payment_method: PaymentMethod = PaymentMethod.PAYME,
    description: Optional[str] = None,
    return_url: Optional[str] = None,
) -> Order:
    order = Order(
        order_id=order_id,
        user_id=user_id,
        plan_id=plan_id,
        payment_method=payment_method,
        amount=amount,
        amount_in_tiyin=to_tiyin(amount),
        description=description,
        return_url=return_url,
        status=OrderStatus.PENDING,
    )
    session.add(order)
    session.commit()
    session.refresh(order)
    logger.info(f"Created order {order.order_id} for user: {user_id}, plan: {plan_id}, amount: {order.amount_in_tiyin} tiyin")
    return order


def get_order_by_order_id(session: Session, order_id: str, for_update: bool = False) -> Order | None:
    statement = select(Order).where(Order.order_id == order_id)
    if for_update:
        # Fresh row, locked until commit (PostgreSQL; SQLite ignores the lock)
        statement = statement.with_for_update().execution_options(populate_existing=True)
    return session.exec(statement).first()



def get_user_orders(session: Session, user_id: int, limit: int = 50) -> List[Order]:
    return session.exec(
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(Order.created_at.desc())
        .limit(limit)
    ).all()


def set_payment_url(session: Session, order: Order, payment_url: str) -> Order:
    order.payment_url = payment_url
    order.updated_at = datetime.utcnow()
    session.add(order)
    session.commit()
    session.refresh(order)
    return order


def update_order_status(
    session: Session,
    order_id: str,
    status: OrderStatus,
    transaction_id: Optional[str] = None,
    failure_reason: Optional[str] = None,
    extra: Optional[dict] = None,
    commit: bool = True,
) -> Order | None:
    """Update order status; completion/cancellation timestamps follow the status."""
    order = get_order_by_order_id(session, order_id)
    if not order:
        logger.error(f"Order not found: {order_id}")
        return None

    now = datetime.utcnow()
    order.status = status
    order.updated_at = now
    if transaction_id:
        order.transaction_id = transaction_id
    if failure_reason:
        order.failure_reason = failure_reason
    if extra:
        order.extra = {**(order.extra or {}), **extra}
    if status == OrderStatus.PAID:
        order.completed_at = now
    if status in (OrderStatus.CANCELLED, OrderStatus.FAILED):
        order.cancelled_at = now

    session.add(order)
    if commit:
        session.commit()
        session.refresh(order)
    logger.info(f"Order {order_id} status -> {status.value}")
    return order


def mark_subscription_activated(session: Session, order: Order) -> Order:
    order.subscription_activated_at = datetime.utcnow()
    order.updated_at = order.subscription_activated_at
    session.add(order)
    session.commit()
    session.refresh(order)
    return order


def get_paid_orders_without_activation(session: Session, limit: int = 100) -> List[Order]:
    """PAID orders whose subscription was never activated (reconciliation backlog)."""
    return session.exec(
        select(Order)
        .where(Order.status == OrderStatus.PAID)
        .where(Order.subscription_activated_at.is_(None))
        .order_by(Order.completed_at)
        .limit(limit)
    ).all()


def get_order_statistics(session: Session) -> dict:
    rows = session.exec(
        select(Order.status, func.count(Order.id), func.coalesce(func.sum(Order.amount), 0))
        .group_by(Order.status)
    ).all()

    stats = {"total": 0, "total_revenue": 0.0}
    for status in OrderStatus:
        stats[status.value.lower()] = 0
    for status, count, amount in rows:
        key = status.value if isinstance(status, OrderStatus) else str(status)
        stats[key.lower()] = count
        stats["total"] += count
        if key == OrderStatus.PAID.value:
            stats["total_revenue"] = float(amount)
    return stats
