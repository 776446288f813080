from datetime import datetime
from typing import List, Optional
from sqlmodel import SQLModel, Field, Column, JSON


class Plan(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(index=True)
    description: Optional[str] = None
    price: float = Field(ge=0)  # UZS
    duration_days: int = Field(gt=0)
    max_submissions: int = Field(default=0, ge=0)  # 0 = unlimited
    features: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    is_free: bool = Field(default=False, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
