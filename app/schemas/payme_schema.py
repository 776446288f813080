from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union
from datetime import datetime


# JSON-RPC envelope used by the Payme merchant API
class PaymeRpcRequest(BaseModel):
    id: Optional[Union[int, str]] = None
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)


class RpcError(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None


# Order endpoints
class PaymeOrderCreate(BaseModel):
    plan_id: int
    return_url: Optional[str] = None


class PaymeOrderResponse(BaseModel):
    order_id: str
    status: str
    amount: float
    amount_in_tiyin: int
    plan_id: int
    payment_url: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    transaction_state: Optional[int] = None  # Payme state of the latest transaction


class ReconciliationResult(BaseModel):
    checked: int
    activated: List[str]
    failed: List[str]


class PaymeStatistics(BaseModel):
    transactions: Dict[str, Any]
    orders: Dict[str, Any]
