"""
Payment Gateway Adapter (KkiaPay mobile money).

Deliberately thin: ``initiate`` opens a provider transaction that the
customer completes out-of-process on their phone, ``query_status`` reports
what the provider currently knows. Retries, timeouts and reconciliation
belong to the SettlementReconciler.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from orderflow.config import settings
from orderflow.errors import ProviderError
from orderflow.models import PaymentStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayerInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class ProviderStatus:
    status: PaymentStatus
    transaction_id: Optional[str] = None
    raw: dict = field(default_factory=dict)


class PaymentGateway(Protocol):
    async def initiate(self, amount: float, reason: str, payer: PayerInfo, metadata: Optional[dict] = None) -> str:
        ...

    async def query_status(self, provider_payment_id: str) -> ProviderStatus:
        ...


_STATUS_MAP = {
    "success": PaymentStatus.completed,
    "successful": PaymentStatus.completed,
    "approved": PaymentStatus.completed,
    "completed": PaymentStatus.completed,
    "pending": PaymentStatus.processing,
    "processing": PaymentStatus.processing,
    "initiated": PaymentStatus.processing,
    "failed": PaymentStatus.failed,
    "declined": PaymentStatus.failed,
    "insufficient_fund": PaymentStatus.failed,
    "cancelled": PaymentStatus.cancelled,
    "canceled": PaymentStatus.cancelled,
}


def map_provider_status(raw_status: Optional[str]) -> PaymentStatus:
    """Unknown provider statuses are treated as still in flight."""
    return _STATUS_MAP.get((raw_status or "").strip().lower(), PaymentStatus.processing)


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """HMAC-SHA256 hex digest of the raw webhook body, constant-time compare."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.strip().lower(), expected)


class KkiaPayGateway:
    SANDBOX_URL = "https://api-sandbox.kkiapay.me"

    def __init__(
        self,
        api_url: Optional[str] = None,
        public_key: Optional[str] = None,
        private_key: Optional[str] = None,
        secret: Optional[str] = None,
        sandbox: Optional[bool] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        sandbox = settings.kkiapay_sandbox if sandbox is None else sandbox
        self.api_url = (api_url or (self.SANDBOX_URL if sandbox else settings.kkiapay_api_url)).rstrip("/")
        self.public_key = public_key or settings.kkiapay_public_key
        self.private_key = private_key or settings.kkiapay_private_key
        self.secret = secret or settings.kkiapay_secret
        self.sandbox = sandbox
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict:
        if not self.public_key or not self.private_key:
            raise ProviderError("KkiaPay keys are not configured")
        return {
            "x-api-key": self.public_key,
            "x-private-key": self.private_key,
            "x-secret-key": self.secret or "",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, body: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(f"{self.api_url}{path}", json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise ProviderError(f"KkiaPay unreachable: {e}") from e

        if response.status_code >= 500:
            raise ProviderError(f"KkiaPay error {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("KkiaPay returned an invalid response") from e
        if response.status_code >= 400:
            raise ProviderError(f"KkiaPay rejected the request: {data}")
        return data

    async def initiate(self, amount: float, reason: str, payer: PayerInfo, metadata: Optional[dict] = None) -> str:
        data = await self._post("/api/v1/transactions/initiate", {
            "amount": int(round(amount)),
            "reason": reason,
            "name": payer.name,
            "email": payer.email,
            "phone": payer.phone,
            "sandbox": self.sandbox,
            "data": json.dumps(metadata or {}),
        })
        provider_id = data.get("transactionId") or data.get("id")
        if not provider_id:
            raise ProviderError("KkiaPay did not return a transaction id")
        logger.info("KkiaPay transaction opened | provider_id=%s amount=%s", provider_id, amount)
        return str(provider_id)

    async def query_status(self, provider_payment_id: str) -> ProviderStatus:
        data = await self._post("/api/v1/transactions/status", {"transactionId": provider_payment_id})
        return ProviderStatus(
            status=map_provider_status(data.get("status")),
            transaction_id=data.get("transactionId") or provider_payment_id,
            raw=data,
        )
