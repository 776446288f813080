import logging
import traceback
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from app.core.config import settings
from app.crud.order_crud import get_order_by_order_id, update_order_status, mark_subscription_activated
from app.crud.subscription_crud import SubscriptionActivator
from app.crud.transaction_crud import (
    create_transaction,
    current_time_ms,
    get_transaction_by_payme_id,
    get_transactions_in_range,
    record_error,
    to_payme_time,
    transition_state,
)
from app.models.order_model import Order, OrderStatus
from app.models.transaction_model import (
    CANCELLED_STATES,
    PaymeTransaction,
    TransactionReason,
    TransactionState,
)
from app.schemas.payme_schema import RpcError

logger = logging.getLogger(__name__)

STATEMENT_MAX_RANGE_MS = 365 * 24 * 60 * 60 * 1000


class PaymeErrorCode(IntEnum):
    INVALID_AMOUNT = -31001
    TRANSACTION_NOT_FOUND = -31003
    CANNOT_PERFORM = -31008
    UNEXPECTED_STATE = -31000
    INVALID_ACCOUNT = -31050
    ORDER_PAID = -31051
    ORDER_CANCELLED = -31052
    ORDER_FAILED = -31053
    ORDER_REFUNDED = -31054
    INVALID_ORDER_STATUS = -31055
    ORDER_BUSY = -31099
    INSUFFICIENT_PRIVILEGE = -32504
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    PARSE_ERROR = -32700
    SYSTEM_ERROR = -32400


class PaymeError(Exception):
    pass


class PaymeRpcError(PaymeError):
    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = int(code)
        self.message = message
        self.data = data
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return RpcError(code=self.code, message=self.message, data=self.data).model_dump(exclude_none=True)


ORDER_STATUS_ERRORS = {
    OrderStatus.PAID: (PaymeErrorCode.ORDER_PAID, "Order already paid"),
    OrderStatus.CANCELLED: (PaymeErrorCode.ORDER_CANCELLED, "Order cancelled"),
    OrderStatus.FAILED: (PaymeErrorCode.ORDER_FAILED, "Order failed"),
    OrderStatus.REFUNDED: (PaymeErrorCode.ORDER_REFUNDED, "Order refunded"),
}


class PaymeMerchantService:
    """
    Payme Merchant API: the callback side of the protocol.

    Payme calls one method at a time; every method is safe to replay. Protocol
    failures are raised as PaymeRpcError and turned into the error envelope by dispatch().
    """

    def __init__(
        self,
        session: Session,
        activator: Optional[SubscriptionActivator] = None,
        timeout_ms: int = settings.PAYME_TRANSACTION_TIMEOUT_MS,
        min_amount: int = settings.PAYME_MIN_AMOUNT,
        max_amount: int = settings.PAYME_MAX_AMOUNT,
        invalid_test_order_ids: Optional[List[str]] = None,
    ):
        self.session = session
        self.activator = activator
        self.timeout_ms = timeout_ms
        self.min_amount = min_amount
        self.max_amount = max_amount
        self.invalid_test_order_ids = set(
            settings.PAYME_INVALID_TEST_ORDER_IDS if invalid_test_order_ids is None else invalid_test_order_ids
        )
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "CheckPerformTransaction": self.check_perform_transaction,
            "CreateTransaction": self.create_transaction,
            "PerformTransaction": self.perform_transaction,
            "CancelTransaction": self.cancel_transaction,
            "CheckTransaction": self.check_transaction,
            "GetStatement": self.get_statement,
            "ChangePassword": self.change_password,
        }

    def dispatch(self, request_id: Any, method: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        response: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
        try:
            response["result"] = self.handle(method, params)
        except PaymeRpcError as e:
            logger.info(f"Payme {method} -> error {e.code}: {e.message}")
            response["error"] = e.to_dict()
        return response

    def handle(self, method: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        handler = self._handlers.get(method)
        if handler is None:
            logger.warning(f"Unknown Payme method: {method}")
            raise PaymeRpcError(PaymeErrorCode.METHOD_NOT_FOUND, "Unknown method")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise PaymeRpcError(PaymeErrorCode.INVALID_REQUEST, "Invalid params")

        logger.info(f"Payme {method}: id={params.get('id')}, account={params.get('account')}")
        try:
            return handler(params)
        except PaymeRpcError:
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Store error in Payme {method}: {str(e)}")
            logger.error(f"Traceback: {traceback.format_exc()}")
            raise PaymeRpcError(PaymeErrorCode.SYSTEM_ERROR, "System error")

    # Payme methods

    def check_perform_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        order = self._load_order(params)
        self._validate_amount(params.get("amount"), order)
        self._ensure_order_payable(order)
        return {"allow": True, "detail": self._receipt_detail(order)}

    def create_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        payme_id = self._require_transaction_id(params)
        order = self._load_order(params)
        amount = self._validate_amount(params.get("amount"), order)

        existing = get_transaction_by_payme_id(self.session, payme_id)
        if existing:
            return self._replay_created(existing)

        self._ensure_order_payable(order)
        payme_time = params.get("time")
        if not _is_int(payme_time):
            raise PaymeRpcError(PaymeErrorCode.INVALID_REQUEST, "Invalid time")

        try:
            transaction = create_transaction(
                self.session,
                payme_id=payme_id,
                time=payme_time,
                amount=amount,
                account=dict(params["account"]),
                create_time=current_time_ms(),
                order_ref=order.id,
                user_id=order.user_id,
                plan_id=order.plan_id,
                account_order_id=order.order_id,
                commit=False,
            )
            update_order_status(
                self.session, order.order_id, OrderStatus.CREATED, transaction_id=payme_id, commit=False
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            # Either the same Payme id raced us, or another transaction holds the order
            existing = get_transaction_by_payme_id(self.session, payme_id)
            if existing:
                return self._replay_created(existing)
            logger.warning(f"Order {order.order_id} already has an active transaction, rejecting {payme_id}")
            raise PaymeRpcError(PaymeErrorCode.ORDER_BUSY, "Another transaction is already processing this order")

        self.session.refresh(transaction)
        return {
            "create_time": to_payme_time(transaction.create_time),
            "transaction": str(transaction.id),
            "state": int(transaction.state),
        }

    def perform_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        payme_id = self._require_transaction_id(params)
        transaction = self._get_transaction(payme_id)

        if transaction.state == TransactionState.PERFORMED:
            return self._performed_result(transaction)
        self._ensure_created(transaction)

        won = transition_state(
            self.session,
            payme_id,
            TransactionState.CREATED,
            TransactionState.PERFORMED,
            perform_time=current_time_ms(),
        )
        if not won:
            self.session.rollback()
            transaction = self._get_transaction(payme_id)
            if transaction.state == TransactionState.PERFORMED:
                return self._performed_result(transaction)
            self._ensure_created(transaction)
            raise PaymeRpcError(PaymeErrorCode.UNEXPECTED_STATE, "Unexpected transaction state")

        order = self._order_for(transaction)
        if order:
            update_order_status(
                self.session, order.order_id, OrderStatus.PAID, transaction_id=payme_id, commit=False
            )
        self.session.commit()

        transaction = self._get_transaction(payme_id)
        result = self._performed_result(transaction)
        self._activate_subscription(transaction, order)
        return result

    def cancel_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        payme_id = self._require_transaction_id(params)
        reason = params.get("reason")
        if not _is_int(reason):
            raise PaymeRpcError(PaymeErrorCode.INVALID_REQUEST, "Invalid reason")

        transaction = self._get_transaction(payme_id)
        # States only move forward, so this settles within a few rounds
        for _ in range(len(TransactionState)):
            if transaction.state in CANCELLED_STATES:
                return self._cancelled_result(transaction)
            if transaction.state not in (TransactionState.CREATED, TransactionState.PERFORMED):
                raise PaymeRpcError(PaymeErrorCode.UNEXPECTED_STATE, "Unexpected transaction state")

            prior_state = TransactionState(transaction.state)
            if reason == TransactionReason.REFUND or prior_state == TransactionState.PERFORMED:
                target_state = TransactionState.CANCELLED_AFTER_PERFORMED
            else:
                target_state = TransactionState.CANCELLED

            if transition_state(
                self.session,
                payme_id,
                prior_state,
                target_state,
                cancel_time=current_time_ms(),
                reason=reason,
            ):
                break
            self.session.rollback()
            transaction = self._get_transaction(payme_id)
        else:
            raise PaymeRpcError(PaymeErrorCode.UNEXPECTED_STATE, "Unexpected transaction state")

        order = self._order_for(transaction)
        if order:
            update_order_status(
                self.session,
                order.order_id,
                OrderStatus.CANCELLED,
                failure_reason=f"Cancelled by Payme, reason {reason}",
                commit=False,
            )
        self.session.commit()

        transaction = self._get_transaction(payme_id)
        if prior_state == TransactionState.PERFORMED:
            self._revert_subscription(transaction, order)
        return self._cancelled_result(transaction)

    def check_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        payme_id = self._require_transaction_id(params)
        transaction = self._get_transaction(payme_id)
        return {
            "create_time": to_payme_time(transaction.create_time),
            "perform_time": to_payme_time(transaction.perform_time),
            "cancel_time": to_payme_time(transaction.cancel_time),
            "transaction": str(transaction.id),
            "state": int(transaction.state),
            "reason": transaction.reason,
        }

    def get_statement(self, params: Dict[str, Any]) -> Dict[str, Any]:
        from_ms = params.get("from")
        to_ms = params.get("to")
        if not _is_int(from_ms) or not _is_int(to_ms) or from_ms < 0 or to_ms < from_ms:
            raise PaymeRpcError(PaymeErrorCode.INVALID_REQUEST, "Invalid statement period")
        if to_ms - from_ms > STATEMENT_MAX_RANGE_MS:
            raise PaymeRpcError(PaymeErrorCode.INVALID_REQUEST, "Statement period exceeds one year")

        transactions = get_transactions_in_range(self.session, from_ms, to_ms)
        return {"transactions": [self._statement_entry(t) for t in transactions]}

    def change_password(self, params: Dict[str, Any]) -> Dict[str, Any]:
        logger.warning("Payme ChangePassword attempted; remote credential rotation is not supported")
        raise PaymeRpcError(PaymeErrorCode.INSUFFICIENT_PRIVILEGE, "Insufficient privilege to perform this method")

    # Validation

    def _require_transaction_id(self, params: Dict[str, Any]) -> str:
        payme_id = params.get("id")
        if not isinstance(payme_id, str) or not payme_id:
            raise PaymeRpcError(PaymeErrorCode.INVALID_REQUEST, "Missing transaction id")
        return payme_id

    def _load_order(self, params: Dict[str, Any]) -> Order:
        account = params.get("account")
        order_id = None
        if isinstance(account, dict):
            order_id = account.get("orderId") or account.get("order_id")
        if not order_id or not isinstance(order_id, str):
            raise PaymeRpcError(PaymeErrorCode.INVALID_ACCOUNT, "Missing orderId", data="orderId")
        if order_id in self.invalid_test_order_ids:
            raise PaymeRpcError(PaymeErrorCode.INVALID_ACCOUNT, "Invalid account", data="orderId")

        order = get_order_by_order_id(self.session, order_id)
        if not order:
            raise PaymeRpcError(PaymeErrorCode.INVALID_ACCOUNT, "Order not found", data="orderId")
        return order

    def _validate_amount(self, amount: Any, order: Order) -> int:
        if not _is_int(amount) or amount <= 0:
            logger.warning(f"Invalid amount {amount!r} for order {order.order_id}")
            raise PaymeRpcError(PaymeErrorCode.INVALID_AMOUNT, "Invalid amount")
        if amount < self.min_amount or amount > self.max_amount:
            logger.warning(f"Amount {amount} out of range for order {order.order_id}")
            raise PaymeRpcError(PaymeErrorCode.INVALID_AMOUNT, "Invalid amount")
        if amount != order.amount_in_tiyin:
            logger.warning(f"Amount {amount} does not match order {order.order_id} ({order.amount_in_tiyin})")
            raise PaymeRpcError(PaymeErrorCode.INVALID_AMOUNT, "Invalid amount")
        return amount

    def _ensure_order_payable(self, order: Order) -> None:
        if order.status in (OrderStatus.PENDING, OrderStatus.CREATED):
            return
        code, message = ORDER_STATUS_ERRORS.get(
            order.status, (PaymeErrorCode.INVALID_ORDER_STATUS, "Invalid order status")
        )
        raise PaymeRpcError(code, message)

    def _ensure_created(self, transaction: PaymeTransaction) -> None:
        if transaction.state in CANCELLED_STATES:
            raise PaymeRpcError(PaymeErrorCode.CANNOT_PERFORM, "Unable to perform operation")
        if transaction.state != TransactionState.CREATED:
            raise PaymeRpcError(PaymeErrorCode.UNEXPECTED_STATE, "Unexpected transaction state")
        if self._is_expired(transaction):
            self._expire(transaction)
            raise PaymeRpcError(PaymeErrorCode.CANNOT_PERFORM, "Unable to perform operation")

    def _is_expired(self, transaction: PaymeTransaction) -> bool:
        return current_time_ms() - transaction.create_time > self.timeout_ms

    def _expire(self, transaction: PaymeTransaction) -> None:
        if transition_state(
            self.session,
            transaction.payme_id,
            TransactionState.CREATED,
            TransactionState.CANCELLED,
            cancel_time=current_time_ms(),
            reason=int(TransactionReason.TIMEOUT),
        ):
            order = self._order_for(transaction)
            if order:
                update_order_status(
                    self.session,
                    order.order_id,
                    OrderStatus.CANCELLED,
                    failure_reason="Payme transaction timed out",
                    commit=False,
                )
            logger.info(f"Payme transaction {transaction.payme_id} timed out")
        self.session.commit()

    # Lookups and results

    def _get_transaction(self, payme_id: str) -> PaymeTransaction:
        transaction = get_transaction_by_payme_id(self.session, payme_id)
        if not transaction:
            raise PaymeRpcError(PaymeErrorCode.TRANSACTION_NOT_FOUND, "Транзакция не найдена")
        return transaction

    def _order_for(self, transaction: PaymeTransaction) -> Optional[Order]:
        if transaction.order_ref:
            order = self.session.get(Order, transaction.order_ref)
            if order:
                return order
        if transaction.account_order_id:
            return get_order_by_order_id(self.session, transaction.account_order_id)
        return None

    def _replay_created(self, transaction: PaymeTransaction) -> Dict[str, Any]:
        if transaction.state == TransactionState.CREATED and self._is_expired(transaction):
            self._expire(transaction)
            raise PaymeRpcError(PaymeErrorCode.CANNOT_PERFORM, "Unable to perform operation")
        return {
            "create_time": to_payme_time(transaction.create_time),
            "transaction": str(transaction.id),
            "state": int(transaction.state),
        }

    def _performed_result(self, transaction: PaymeTransaction) -> Dict[str, Any]:
        return {
            "transaction": str(transaction.id),
            "perform_time": to_payme_time(transaction.perform_time),
            "state": int(transaction.state),
        }

    def _cancelled_result(self, transaction: PaymeTransaction) -> Dict[str, Any]:
        return {
            "transaction": str(transaction.id),
            "cancel_time": to_payme_time(transaction.cancel_time),
            "state": int(transaction.state),
        }

    def _statement_entry(self, transaction: PaymeTransaction) -> Dict[str, Any]:
        return {
            "id": transaction.payme_id,
            "time": transaction.time,
            "amount": transaction.amount,
            "account": transaction.account,
            "create_time": to_payme_time(transaction.create_time),
            "perform_time": to_payme_time(transaction.perform_time),
            "cancel_time": to_payme_time(transaction.cancel_time),
            "transaction": str(transaction.id),
            "state": int(transaction.state),
            "reason": transaction.reason,
        }

    def _receipt_detail(self, order: Order) -> Dict[str, Any]:
        return {
            "receipt_type": 0,
            "items": [
                {
                    "title": order.description or f"Order {order.order_id}",
                    "price": order.amount_in_tiyin,
                    "count": 1,
                    "code": settings.PAYME_IKPU_CODE,
                    "package_code": settings.PAYME_PACKAGE_CODE,
                    "vat_percent": settings.PAYME_VAT_PERCENT,
                }
            ],
        }

    # Subscription side effects

    def _activate_subscription(self, transaction: PaymeTransaction, order: Optional[Order]) -> None:
        if self.activator is None or order is None:
            return
        try:
            user = self.activator.activate_paid_plan(
                order.user_id,
                order.plan_id,
                order.amount,
                order_id=order.order_id,
                payme_transaction_id=transaction.payme_id,
            )
            if user is None:
                logger.warning(
                    f"Payment reversed before activation: orderId={order.order_id}, transactionId={transaction.payme_id}"
                )
                return
            mark_subscription_activated(self.session, order)
        except Exception as e:
            # The payment is settled for Payme; reconciliation retries activation later
            self.session.rollback()
            logger.error(
                f"Subscription activation failed: userId={order.user_id}, orderId={order.order_id}, "
                f"transactionId={transaction.payme_id}: {str(e)}"
            )
            logger.error(f"Traceback: {traceback.format_exc()}")
            self._record_error(transaction.payme_id, f"activation failed: {e}")

    def _revert_subscription(self, transaction: PaymeTransaction, order: Optional[Order]) -> None:
        if self.activator is None or order is None:
            return
        try:
            current_plan_id = self.activator.current_plan_id(order.user_id)
            if current_plan_id != order.plan_id:
                logger.info(
                    f"User {order.user_id} is on plan {current_plan_id}, not reverting cancelled plan {order.plan_id}"
                )
                return
            self.activator.revert_to_free_plan(order.user_id)
        except Exception as e:
            self.session.rollback()
            logger.error(
                f"Subscription revert failed: userId={order.user_id}, orderId={order.order_id}, "
                f"transactionId={transaction.payme_id}: {str(e)}"
            )
            logger.error(f"Traceback: {traceback.format_exc()}")
            self._record_error(transaction.payme_id, f"revert failed: {e}")

    def _record_error(self, payme_id: str, error: str) -> None:
        try:
            record_error(self.session, payme_id, error)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Could not record error on transaction {payme_id}: {str(e)}")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
