from enum import IntEnum
from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import BigInteger, Index, text
from typing import Optional
from datetime import datetime


class TransactionState(IntEnum):
    CREATED = 1
    PERFORMED = 2
    CANCELLED = -1
    CANCELLED_AFTER_PERFORMED = -2


class TransactionReason(IntEnum):
    RECEIVER_NOT_FOUND = 1
    DEBIT_ERROR = 2
    TRANSACTION_ERROR = 3
    TIMEOUT = 4
    REFUND = 5
    UNKNOWN_ERROR = 10


CANCELLED_STATES = (TransactionState.CANCELLED, TransactionState.CANCELLED_AFTER_PERFORMED)


class PaymeTransaction(SQLModel, table=True):
    __tablename__ = "payme_transaction"
    __table_args__ = (
        # At most one CREATED transaction per order
        Index(
            "uq_payme_transaction_active_order",
            "order_ref",
            unique=True,
            sqlite_where=text("state = 1"),
            postgresql_where=text("state = 1"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    payme_id: str = Field(unique=True, index=True, max_length=64)
    time: int = Field(sa_type=BigInteger)  # Payme timestamp, ms
    amount: int  # tiyin
    account: dict = Field(default_factory=dict, sa_column=Column(JSON))
    account_order_id: Optional[str] = Field(default=None, index=True)

    # Merchant-side timestamps, epoch ms
    create_time: int = Field(sa_type=BigInteger)
    perform_time: Optional[int] = Field(default=None, sa_type=BigInteger)
    cancel_time: Optional[int] = Field(default=None, sa_type=BigInteger)

    state: int = Field(default=int(TransactionState.CREATED), index=True)
    reason: Optional[int] = None

    order_ref: Optional[int] = Field(default=None, foreign_key="order.id")
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    plan_id: Optional[int] = Field(default=None, foreign_key="plan.id")

    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
