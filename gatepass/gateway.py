from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote
import hashlib
import hmac
import json
import os

import httpx
import structlog

from .errors import SignatureMismatch, VerificationError
from .helpers import ct_equal

GATEWAY_BACKEND = os.getenv("GATEWAY_BACKEND", "paystack").lower()
PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "") or PAYSTACK_SECRET_KEY
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

# first header present wins; starlette lower-cases header names
SIGNATURE_HEADERS = ("x-signature", "x-paystack-signature")

log = structlog.get_logger(__name__, component="gateway")


# ----------------------------
# Canonical transaction record
# ----------------------------
def _as_metadata(raw: Any) -> Dict[str, Any]:
    # gateways echo metadata back as an object or as a JSON string
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _as_int(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class TransactionResult:
    reference: str
    status: str  # success | failed | abandoned | not_found | ...
    amount: Optional[int] = None  # minor units
    currency: Optional[str] = None
    channel: Optional[str] = None
    paid_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @classmethod
    def from_payload(
        cls, data: Mapping[str, Any], reference: Optional[str] = None
    ) -> "TransactionResult":
        return cls(
            reference=str(data.get("reference") or reference or ""),
            status=str(data.get("status") or "unknown").lower(),
            amount=_as_int(data.get("amount")),
            currency=data.get("currency"),
            channel=data.get("channel"),
            paid_at=data.get("paid_at") or data.get("paidAt"),
            metadata=_as_metadata(data.get("metadata")),
            raw=dict(data),
        )


# ----------------------------
# Webhook signatures
# ----------------------------
def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()


def signature_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in SIGNATURE_HEADERS:
        if lowered.get(name):
            return lowered[name]
    return None


def check_signature(
    payload: bytes, headers: Mapping[str, str], secret: str
) -> bool:
    sig = signature_from_headers(headers)
    if not sig or not secret:
        return False
    expected = sign_payload(payload, secret)
    return ct_equal(expected, sig.strip().lower())


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentGateway(ABC):
    webhook_secret: str = ""

    @abstractmethod
    async def verify(self, reference: str) -> TransactionResult:
        """
        Read-only lookup of a transaction by reference.

        Raises VerificationError when the gateway cannot be reached or
        answers ambiguously (caller may retry). A definitive non-success
        answer is returned, not raised.
        """

    def verify_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> Dict[str, Any]:
        if not check_signature(payload, headers, self.webhook_secret):
            raise SignatureMismatch()
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValueError("Invalid JSON")
        if not isinstance(event, dict):
            raise ValueError("Invalid envelope")
        return event

    async def aclose(self) -> None:
        return None


# ----------------------------
# Paystack implementation
# ----------------------------
class Paystack(PaymentGateway):
    def __init__(
        self,
        secret_key: str = PAYSTACK_SECRET_KEY,
        *,
        base_url: str = PAYSTACK_BASE_URL,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        webhook_secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.webhook_secret = webhook_secret or WEBHOOK_SECRET or secret_key
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._http

    async def verify(self, reference: str) -> TransactionResult:
        if not self.secret_key:
            raise VerificationError(reference, "gateway secret not configured")
        path = f"/transaction/verify/{quote(reference, safe='')}"
        try:
            resp = await self._client().get(path)
        except httpx.TimeoutException as e:
            log.warning("verify_timeout", reference=reference)
            raise VerificationError(reference, "timeout") from e
        except httpx.HTTPError as e:
            log.warning("verify_unreachable", reference=reference,
                        error=str(e))
            raise VerificationError(reference, type(e).__name__) from e

        # our credentials, throttling or their outage: nothing definitive
        if resp.status_code >= 500 or resp.status_code in (401, 403, 429):
            log.warning("verify_gateway_error", reference=reference,
                        http_status=resp.status_code)
            raise VerificationError(reference, f"HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as e:
            raise VerificationError(reference, "invalid JSON") from e

        if resp.status_code >= 400:
            # e.g. 400/404 "Transaction reference not found"
            return TransactionResult(
                reference=reference, status="not_found",
                raw=body if isinstance(body, dict) else {},
            )

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise VerificationError(reference, "missing data")
        return TransactionResult.from_payload(data, reference)

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


# ----------------------------
# Mock implementation (local runs and tests)
# ----------------------------
class MockGateway(PaymentGateway):
    def __init__(self, webhook_secret: str = MOCK_SECRET) -> None:
        self.webhook_secret = webhook_secret
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.unreachable = False
        self.calls = 0

    def add_transaction(
        self,
        reference: str,
        *,
        status: str = "success",
        amount: int = 0,
        currency: str = "GHS",
        metadata: Optional[Dict[str, Any]] = None,
        channel: str = "card",
    ) -> Dict[str, Any]:
        data = {
            "reference": reference,
            "status": status,
            "amount": amount,
            "currency": currency,
            "channel": channel,
            "paid_at": "2025-01-01T00:00:00.000Z",
            "metadata": metadata or {},
        }
        self.transactions[reference] = data
        return data

    async def verify(self, reference: str) -> TransactionResult:
        self.calls += 1
        if self.unreachable:
            raise VerificationError(reference, "mock gateway unreachable")
        data = self.transactions.get(reference)
        if data is None:
            return TransactionResult(reference=reference, status="not_found")
        return TransactionResult.from_payload(data, reference)

    def webhook_body(self, reference: str, event: str = "charge.success"):
        """Signed envelope for `reference`: (raw_body, headers)."""
        data = self.transactions.get(reference) or {"reference": reference}
        body = json.dumps({"event": event, "data": data}).encode()
        return body, {"x-signature": sign_payload(body, self.webhook_secret)}


def new_gateway() -> PaymentGateway:
    if GATEWAY_BACKEND == "mock":
        return MockGateway()
    return Paystack()
