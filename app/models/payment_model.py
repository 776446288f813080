from sqlmodel import SQLModel, Field
from datetime import datetime
from typing import Optional


class Payment(SQLModel, table=True):
    """Payment history entry written when a paid plan is activated."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    plan_id: int = Field(foreign_key="plan.id")
    order_id: str = Field(unique=True, index=True)
    payme_transaction_id: Optional[str] = Field(default=None, index=True)
    amount: float
    payment_method: str = Field(default="PAYME")
    paid_at: datetime = Field(default_factory=datetime.utcnow)
    plan_expires_at: Optional[datetime] = None
