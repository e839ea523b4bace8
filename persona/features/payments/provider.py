"""
Payment provider protocol.

Order creation goes through the provider; checkout signatures are verified
locally with the key secret, so verification needs no network call.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from persona.core.config import settings
from persona.core.errors import PaymentProviderError


@dataclass
class ProviderOrder:
    """Order as acknowledged by the provider."""
    order_id: str
    amount_paise: int
    currency: str


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle order creation and expose the public key id
    the checkout widget needs.
    """

    key_id: Optional[str]

    def create_order(
        self,
        amount_paise: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> ProviderOrder:
        """
        Create a provider-side order.

        Raises:
            PaymentProviderError: If the provider rejects or cannot be reached
        """
        ...


class RazorpayProvider:
    """Razorpay Orders API over httpx (basic auth with key id/secret)."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.key_id = key_id or settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret or settings.RAZORPAY_KEY_SECRET
        if not self.key_id or not self.key_secret:
            raise PaymentProviderError("Razorpay is not configured", status_code=503)
        self.base_url = (base_url or settings.RAZORPAY_API_BASE).rstrip("/")
        self.timeout = timeout or settings.RAZORPAY_TIMEOUT_SECONDS
        self.transport = transport

    def create_order(
        self,
        amount_paise: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> ProviderOrder:
        payload: Dict[str, Any] = {
            "amount": amount_paise,
            "currency": currency,
            "receipt": receipt[:40],
            "notes": notes or {},
        }
        try:
            with httpx.Client(
                base_url=self.base_url,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = client.post("/orders", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            description = None
            try:
                description = exc.response.json().get("error", {}).get("description")
            except ValueError:
                pass
            raise PaymentProviderError(description or "Failed to create payment order") from exc
        except httpx.HTTPError as exc:
            raise PaymentProviderError("Payment provider unreachable") from exc

        return ProviderOrder(
            order_id=data["id"],
            amount_paise=int(data.get("amount", amount_paise)),
            currency=data.get("currency", currency),
        )


def expected_signature(provider_order_id: str, provider_payment_id: str, secret: str) -> str:
    message = f"{provider_order_id}|{provider_payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(
    provider_order_id: str,
    provider_payment_id: str,
    signature: str,
    secret: Optional[str] = None,
) -> bool:
    """HMAC-SHA256 over "<order_id>|<payment_id>" with the key secret."""
    secret = secret or settings.RAZORPAY_KEY_SECRET
    if not secret:
        raise PaymentProviderError("Razorpay is not configured", status_code=503)
    return hmac.compare_digest(expected_signature(provider_order_id, provider_payment_id, secret), signature)


def get_payment_provider() -> PaymentProvider:
    """FastAPI dependency; tests override it with a fake provider."""
    return RazorpayProvider()
