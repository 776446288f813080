from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum

class UserRole(str, Enum):
    admin = "admin"
    client = "client"

class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    phone: str = Field(unique=True, index=True)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    role: UserRole = Field(default=UserRole.client)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    # Subscription entitlement
    plan_id: Optional[int] = Field(default=None, foreign_key="plan.id")
    plan_expires_at: Optional[datetime] = None
    has_paid_plan: bool = Field(default=False)
    submissions_limit: int = Field(default=0)
    total_paid_amount: float = Field(default=0)
    last_payment_at: Optional[datetime] = None
