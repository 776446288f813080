import base64
import binascii
import hashlib
import hmac
import logging
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import unquote

from app.core.config import settings
from app.external_services.payme_service import PaymeRpcError, PaymeErrorCode

logger = logging.getLogger(__name__)


class PaymeAuthGuard:
    """
    Verifies that a merchant callback really comes from Payme.

    One scheme per deployment:
      header:         "authorization" -> Authorization: Basic base64(merchantId:signature)
                      "x-auth"        -> X-Auth: merchantId:signature
      signature_mode: "hmac" -> hex HMAC-SHA256 of the raw request body keyed with the merchant key
                      "key"  -> the merchant key itself (Payme sandbox)

    Every rejection is the same -32504 error, whatever the cause.
    """

    def __init__(
        self,
        merchant_id: str,
        merchant_key: str,
        header: str = "authorization",
        signature_mode: str = "key",
    ):
        if not merchant_id or not merchant_key:
            raise ValueError("Payme merchant ID and key are required")
        if header not in ("authorization", "x-auth"):
            raise ValueError(f"Unsupported Payme auth header: {header}")
        if signature_mode not in ("hmac", "key"):
            raise ValueError(f"Unsupported Payme signature mode: {signature_mode}")
        self.merchant_id = merchant_id
        self.merchant_key = merchant_key
        self.header = header
        self.signature_mode = signature_mode

    @classmethod
    def from_settings(cls) -> "PaymeAuthGuard":
        return cls(
            merchant_id=settings.PAYME_MERCHANT_ID,
            merchant_key=settings.PAYME_MERCHANT_KEY,
            header=settings.PAYME_AUTH_HEADER,
            signature_mode=settings.PAYME_SIGNATURE_MODE,
        )

    def sign(self, raw_body: bytes) -> str:
        if self.signature_mode == "key":
            return self.merchant_key
        return hmac.new(self.merchant_key.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()

    def build_headers(self, raw_body: bytes) -> Dict[str, str]:
        """Headers Payme would send for this body (used by the sandbox self-test)."""
        credentials = f"{self.merchant_id}:{self.sign(raw_body)}"
        if self.header == "x-auth":
            return {"X-Auth": credentials}
        token = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}

    def authenticate(self, headers: Mapping[str, str], raw_body: bytes) -> None:
        credentials = self._extract_credentials(headers)
        if credentials is None:
            self._reject("missing or malformed credentials")

        merchant_id, signature = credentials
        if not hmac.compare_digest(merchant_id.encode("utf-8"), self.merchant_id.encode("utf-8")):
            self._reject("merchant mismatch")
        if not self._signature_matches(signature, raw_body):
            self._reject("signature mismatch")

    def _extract_credentials(self, headers: Mapping[str, str]) -> Optional[Tuple[str, str]]:
        normalized = {key.lower(): value for key, value in headers.items()}
        raw = normalized.get(self.header)
        if not raw:
            return None

        raw = raw.strip()
        if self.header == "authorization":
            scheme, _, token = raw.partition(" ")
            if scheme.lower() != "basic" or not token.strip():
                return None
            try:
                raw = base64.b64decode(token.strip(), validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                return None

        if ":" not in raw:
            return None
        merchant_id, _, signature = raw.partition(":")
        if not merchant_id or not signature:
            return None
        return merchant_id, signature

    def _signature_matches(self, signature: str, raw_body: bytes) -> bool:
        expected = self.sign(raw_body).encode("utf-8")

        candidates = []
        for value in (signature, unquote(signature)):
            candidates.append(value)
            # Some sandbox clients append a stray '%' to the key
            if value.endswith("%"):
                candidates.append(value[:-1])

        matched = False
        for candidate in candidates:
            if hmac.compare_digest(candidate.encode("utf-8"), expected):
                matched = True
        return matched

    def _reject(self, reason: str) -> None:
        logger.warning(f"Payme callback rejected: {reason}")
        raise PaymeRpcError(PaymeErrorCode.INSUFFICIENT_PRIVILEGE, "Authorization invalid")
