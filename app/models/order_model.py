from enum import Enum
from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional
from datetime import datetime


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CREATED = "CREATED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    PAYME = "PAYME"
    CLICK = "CLICK"
    UZUM = "UZUM"
    STRIPE = "STRIPE"


class Order(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: str = Field(unique=True, index=True)  # order_{userId}_{planId}_{epochMs}
    user_id: int = Field(foreign_key="user.id", index=True)
    plan_id: int = Field(foreign_key="plan.id", index=True)
    payment_method: PaymentMethod = Field(default=PaymentMethod.PAYME)
    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    amount: float  # UZS
    amount_in_tiyin: int
    transaction_id: Optional[str] = Field(default=None, index=True)  # Payme transaction id
    payment_url: Optional[str] = None
    description: Optional[str] = None
    return_url: Optional[str] = None
    failure_reason: Optional[str] = None
    extra: dict = Field(default_factory=dict, sa_column=Column(JSON))

    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    subscription_activated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: Optional[datetime] = None
