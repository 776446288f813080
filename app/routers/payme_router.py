import json
import logging
import time
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from sqlmodel import Session

from app.core.config import settings
from app.core.payme_auth import PaymeAuthGuard
from app.core.rate_limit import RateLimiter
from app.crud.order_crud import (
    build_order_id,
    create_order,
    get_order_by_order_id,
    get_order_statistics,
    get_user_orders,
    set_payment_url,
)
from app.crud.subscription_crud import SubscriptionActivator, reconcile_unactivated_orders
from app.crud.transaction_crud import (
    delete_transaction,
    get_transaction_by_account_order_id,
    get_transaction_statistics,
)
from app.db.session import get_session
from app.dependencies import (
    get_admin_user,
    get_current_user,
    get_payme_guard,
    get_payme_service,
    get_subscription_activator,
)
from app.external_services.payme_client import PaymeClientError, PaymeSandboxClient, build_checkout_url
from app.external_services.payme_service import PaymeErrorCode, PaymeMerchantService, PaymeRpcError
from app.models.order_model import Order
from app.models.plan_model import Plan
from app.models.user_model import User, UserRole
from app.schemas.payme_schema import (
    PaymeOrderCreate,
    PaymeOrderResponse,
    PaymeRpcRequest,
    PaymeStatistics,
    ReconciliationResult,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments/payme", tags=["payme"])


def _order_response(order: Order, transaction_state: Optional[int] = None) -> PaymeOrderResponse:
    return PaymeOrderResponse(
        order_id=order.order_id,
        status=order.status.value,
        amount=order.amount,
        amount_in_tiyin=order.amount_in_tiyin,
        plan_id=order.plan_id,
        payment_url=order.payment_url,
        transaction_id=order.transaction_id,
        created_at=order.created_at,
        completed_at=order.completed_at,
        cancelled_at=order.cancelled_at,
        transaction_state=transaction_state,
    )


def _parse_body(raw_body: bytes) -> Optional[Any]:
    try:
        return json.loads(raw_body)
    except ValueError:
        return None


@router.post("/callback", include_in_schema=False)
async def payme_callback(
    request: Request,
    guard: PaymeAuthGuard = Depends(get_payme_guard),
    service: PaymeMerchantService = Depends(get_payme_service),
):
    """Payme Merchant API endpoint. Always HTTP 200; errors travel in the JSON-RPC body."""
    raw_body = await request.body()
    payload = _parse_body(raw_body)
    request_id = payload.get("id") if isinstance(payload, dict) else None

    try:
        guard.authenticate(request.headers, raw_body)
        if payload is None:
            raise PaymeRpcError(PaymeErrorCode.PARSE_ERROR, "Parse error")
        try:
            rpc = PaymeRpcRequest.model_validate(payload)
        except ValidationError:
            raise PaymeRpcError(PaymeErrorCode.INVALID_REQUEST, "Invalid request")
    except PaymeRpcError as e:
        return JSONResponse(content={"jsonrpc": "2.0", "id": request_id, "error": e.to_dict()})

    # Store work is blocking and runs in the threadpool
    return JSONResponse(content=await run_in_threadpool(service.dispatch, rpc.id, rpc.method, rpc.params))


@router.post(
    "/orders",
    response_model=PaymeOrderResponse,
    dependencies=[Depends(RateLimiter(times=settings.RATE_LIMIT_PER_MINUTE, minutes=1, scope="payme_orders"))],
)
async def create_payme_order(
    order_data: PaymeOrderCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """Create a PENDING order for a plan upgrade and return its Payme checkout link"""
    plan = session.get(Plan, order_data.plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Plan not found")
    if not plan.is_active:
        raise HTTPException(status_code=400, detail="This plan is not available for purchase")
    if plan.is_free or plan.price <= 0:
        raise HTTPException(status_code=400, detail="Free plan cannot be purchased")
    if current_user.plan_id == plan.id and current_user.has_paid_plan:
        raise HTTPException(status_code=400, detail="You are already subscribed to this plan")

    order = create_order(
        session=session,
        order_id=build_order_id(current_user.id, plan.id, int(time.time() * 1000)),
        user_id=current_user.id,
        plan_id=plan.id,
        amount=plan.price,
        description=f"Upgrade to {plan.title} plan",
        return_url=order_data.return_url,
    )
    order = set_payment_url(
        session, order, build_checkout_url(order.order_id, order.amount_in_tiyin, order.return_url)
    )
    return _order_response(order)


@router.get("/orders", response_model=List[PaymeOrderResponse])
async def list_payme_orders(
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """Current user's orders, newest first"""
    return [_order_response(order) for order in get_user_orders(session, current_user.id, limit)]


@router.get("/orders/{order_id}", response_model=PaymeOrderResponse)
async def get_payme_order(
    order_id: str,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    order = get_order_by_order_id(session, order_id)
    if not order or (order.user_id != current_user.id and current_user.role != UserRole.admin):
        raise HTTPException(status_code=404, detail="Order not found")
    transaction = get_transaction_by_account_order_id(session, order.order_id)
    return _order_response(order, transaction.state if transaction else None)


@router.post("/reconcile", response_model=ReconciliationResult)
async def reconcile_orders(
    limit: int = Query(100, ge=1, le=1000),
    current_user: User = Depends(get_admin_user),
    session: Session = Depends(get_session),
    activator: SubscriptionActivator = Depends(get_subscription_activator),
):
    """Retry subscription activation for paid orders (admin only)"""
    return reconcile_unactivated_orders(session, activator, limit)


@router.get("/statistics", response_model=PaymeStatistics)
async def get_statistics(
    current_user: User = Depends(get_admin_user),
    session: Session = Depends(get_session)
):
    """Get Payme statistics (admin only)"""
    return PaymeStatistics(
        transactions=get_transaction_statistics(session),
        orders=get_order_statistics(session),
    )


@router.delete("/transactions/{payme_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_transaction(
    payme_id: str,
    current_user: User = Depends(get_admin_user),
    session: Session = Depends(get_session)
):
    """Delete a ledger entry (admin cleanup only)"""
    if not delete_transaction(session, payme_id):
        raise HTTPException(status_code=404, detail="Transaction not found")
    logger.warning(f"Admin {current_user.id} deleted Payme transaction {payme_id}")


@router.post("/self-test")
def payme_self_test(
    order_id: str = Query(...),
    amount: int = Query(..., gt=0),
    transaction_id: Optional[str] = Query(None),
    current_user: User = Depends(get_admin_user),
):
    """
    Send signed CheckPerformTransaction (and CheckTransaction when transaction_id is given)
    to our own callback URL, the way Payme's sandbox does (admin only).
    Must stay a sync route: the callback it calls is served by this same app.
    """
    client = PaymeSandboxClient()
    try:
        results = {"check_perform_transaction": client.check_perform_transaction(order_id, amount)}
        if transaction_id:
            results["check_transaction"] = client.check_transaction(transaction_id)
    except PaymeClientError as e:
        logger.error(f"Payme self-test failed: {e.message}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Callback unreachable: {e.message}")
    return results
