"""Payment gateway port and the Cashfree PG adapter.

Workflows only talk to ``PaymentGateway``; the HTTP edge hands them the
instance returned by ``get_gateway()``, and tests override that dependency with
an in-memory fake.
"""

import base64
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import httpx
import structlog

import settings
from errors import ConfigurationError, UpstreamError

logger = structlog.get_logger(__name__)

CASHFREE_SANDBOX_URL = "https://sandbox.cashfree.com/pg"
CASHFREE_PRODUCTION_URL = "https://api.cashfree.com/pg"


@dataclass(frozen=True)
class CustomerDetails:
    customer_id: str
    customer_email: str
    customer_phone: str
    customer_name: str


@dataclass(frozen=True)
class PaymentSession:
    """Identifiers of a hosted-checkout session created by the gateway."""

    order_id: str
    order_token: Optional[str] = None
    payment_session_id: Optional[str] = None


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    provider: str = "gateway"

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    def ensure_configured(self) -> None:
        if not self.is_configured():
            raise ConfigurationError(f"{self.provider.capitalize()} credentials are not configured")

    @abstractmethod
    def create_order(
        self,
        *,
        order_id: str,
        amount: float,
        currency: str,
        customer: CustomerDetails,
        return_url: str,
        notify_url: str,
        note: str = "",
    ) -> PaymentSession:
        """Create a remote payment session for an order."""
        ...

    @abstractmethod
    def get_payments(self, order_id: str) -> List[Dict[str, Any]]:
        """Return every payment attempt the gateway holds for ``order_id``."""
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, timestamp: str, signature: str) -> bool:
        ...


class CashfreeGateway(PaymentGateway):
    provider = "cashfree"

    def __init__(
        self,
        app_id: str,
        secret_key: str,
        environment: str = "sandbox",
        api_version: str = "2022-09-01",
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.app_id = app_id
        self.secret_key = secret_key
        self.environment = environment
        self.api_version = api_version
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls) -> "CashfreeGateway":
        return cls(
            app_id=settings.CASHFREE_APP_ID,
            secret_key=settings.CASHFREE_SECRET_KEY,
            environment=settings.CASHFREE_ENV,
            api_version=settings.CASHFREE_API_VERSION,
            timeout=settings.CASHFREE_TIMEOUT,
        )

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return CASHFREE_PRODUCTION_URL
        return CASHFREE_SANDBOX_URL

    def is_configured(self) -> bool:
        return bool(self.app_id and self.secret_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "x-client-id": self.app_id,
            "x-client-secret": self.secret_key,
            "x-api-version": self.api_version,
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        try:
            with httpx.Client(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = client.request(method, path, json=json)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            message = _error_message(e.response)
            logger.warning("gateway_request_failed", method=method, path=path, status=e.response.status_code, error=message)
            raise UpstreamError(message) from e
        except httpx.HTTPError as e:
            logger.warning("gateway_unreachable", method=method, path=path, error=str(e))
            raise UpstreamError(str(e) or "Cashfree request failed") from e
        except ValueError as e:
            raise UpstreamError("Cashfree returned an invalid response") from e

    def create_order(
        self,
        *,
        order_id: str,
        amount: float,
        currency: str,
        customer: CustomerDetails,
        return_url: str,
        notify_url: str,
        note: str = "",
    ) -> PaymentSession:
        data = self._request(
            "POST",
            "/orders",
            json={
                "order_id": order_id,
                "order_amount": amount,
                "order_currency": currency,
                "order_note": note,
                "customer_details": asdict(customer),
                "order_meta": {
                    "return_url": return_url,
                    "notify_url": notify_url,
                },
            },
        )
        if not isinstance(data, dict) or not data.get("order_id"):
            raise UpstreamError("Cashfree order creation failed")
        return PaymentSession(
            order_id=str(data["order_id"]),
            order_token=data.get("order_token"),
            payment_session_id=data.get("payment_session_id"),
        )

    def get_payments(self, order_id: str) -> List[Dict[str, Any]]:
        data = self._request("GET", f"/orders/{order_id}/payments")
        if isinstance(data, dict):
            data = data.get("payments") or data.get("data") or []
        return data if isinstance(data, list) else []

    def verify_webhook_signature(self, payload: bytes, timestamp: str, signature: str) -> bool:
        if not (self.secret_key and timestamp and signature):
            return False
        digest = hmac.new(self.secret_key.encode(), timestamp.encode() + payload, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(expected, signature)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"Cashfree request failed with status {response.status_code}"


_current_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """Return the process-wide gateway, built from settings on first use."""
    global _current_gateway
    if _current_gateway is None:
        _current_gateway = CashfreeGateway.from_settings()
    return _current_gateway
