import base64
import json
import logging
import time
from typing import Any, Dict, Optional

import requests

from app.core.config import settings
from app.core.payme_auth import PaymeAuthGuard
from app.external_services.payme_service import PaymeError

logger = logging.getLogger(__name__)


class PaymeClientError(PaymeError):
    def __init__(self, message: str, response_data: Optional[Dict] = None):
        self.message = message
        self.response_data = response_data
        super().__init__(self.message)


class PaymeSandboxClient:
    """
    Sends signed merchant-API calls to our own callback URL, the way Payme does.
    Used to check a deployment's auth scheme and order lookups from the admin panel.
    """

    def __init__(self, guard: Optional[PaymeAuthGuard] = None, callback_url: Optional[str] = None, timeout: int = 30):
        self.guard = guard or PaymeAuthGuard.from_settings()
        self.callback_url = callback_url or settings.PAYME_CALLBACK_URL
        self.timeout = timeout

    def call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"jsonrpc": "2.0", "id": int(time.time() * 1000), "method": method, "params": params}
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": "application/json", **self.guard.build_headers(body)}

        try:
            response = requests.post(self.callback_url, data=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise PaymeClientError("Request timeout")
        except requests.exceptions.ConnectionError:
            raise PaymeClientError("Connection error")
        except requests.exceptions.RequestException as e:
            raise PaymeClientError(f"Request failed: {str(e)}")

        if response.status_code != 200:
            raise PaymeClientError(
                f"HTTP {response.status_code}",
                response_data={"status_code": response.status_code, "text": response.text},
            )
        try:
            return response.json()
        except ValueError as e:
            raise PaymeClientError(f"Invalid JSON response: {str(e)}")

    def check_perform_transaction(self, order_id: str, amount: int) -> Dict[str, Any]:
        logger.info(f"Sandbox CheckPerformTransaction for order {order_id}, amount {amount}")
        return self.call("CheckPerformTransaction", {"amount": amount, "account": {"orderId": order_id}})

    def check_transaction(self, payme_id: str) -> Dict[str, Any]:
        return self.call("CheckTransaction", {"id": payme_id})


def build_checkout_url(order_id: str, amount_in_tiyin: int, return_url: Optional[str] = None, language: str = "ru") -> str:
    """Payme checkout link (GET flavour): base64 of "m=..;ac.orderId=..;a=..;c=.." appended to the API URL."""
    params = [
        ("m", settings.PAYME_MERCHANT_ID),
        ("ac.orderId", order_id),
        ("a", str(amount_in_tiyin)),
        ("l", language),
    ]
    return_url = return_url or (f"{settings.CLIENT_URL.rstrip('/')}/payment/success" if settings.CLIENT_URL else None)
    if return_url:
        params.append(("c", return_url))

    encoded = base64.b64encode(";".join(f"{k}={v}" for k, v in params).encode("utf-8")).decode("ascii")
    return f"{settings.PAYME_API_URL.rstrip('/')}/{encoded}"
