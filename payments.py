"""
payments.py — Razorpay gateway integration.

Signature checks are plain HMAC-SHA256 with constant-time comparison.
RazorpayClient talks to the REST API over httpx with basic auth; amounts are
accepted in rupees and sent in paise.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Optional

import httpx

from config import Settings
from errors import PaymentError, ServiceNotConfiguredError

logger = logging.getLogger(__name__)


def to_paise(amount: float) -> int:
    return int(round(amount * 100))


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str,
                             secret: Optional[str]) -> bool:
    """Checkout signature: HMAC-SHA256 of "{order_id}|{payment_id}" keyed by the API secret."""
    if not (secret and order_id and payment_id and signature):
        return False
    expected = _hmac_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Webhook signature: HMAC-SHA256 of the raw request body keyed by the webhook secret."""
    if not (secret and signature):
        return False
    return hmac.compare_digest(_hmac_hex(secret, body), signature)


class RazorpayClient:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client

    @property
    def is_configured(self) -> bool:
        return self.settings.razorpay_configured

    @property
    def key_id(self) -> Optional[str]:
        return self.settings.razorpay_key_id

    def _require(self) -> None:
        if not self.is_configured:
            raise ServiceNotConfiguredError(
                "Razorpay not configured. Please set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET.")

    async def _request(self, method: str, path: str,
                       payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        self._require()
        url = f"{self.settings.razorpay_api_url.rstrip('/')}/{path.lstrip('/')}"
        auth = (self.settings.razorpay_key_id or "", self.settings.razorpay_key_secret or "")
        try:
            if self._client is not None:
                response = await self._client.request(method, url, json=payload, auth=auth)
            else:
                async with httpx.AsyncClient(timeout=self.settings.payment_timeout_seconds) as client:
                    response = await client.request(method, url, json=payload, auth=auth)
        except httpx.HTTPError as e:
            logger.error(f"[payments] {method} {path} transport error: {e}")
            raise PaymentError(f"Payment gateway unreachable: {e}") from e

        if not response.is_success:
            description = ""
            try:
                description = response.json().get("error", {}).get("description", "")
            except ValueError:
                description = response.text[:200]
            logger.error(f"[payments] {method} {path} status={response.status_code} {description}")
            raise PaymentError(
                f"Payment gateway error ({response.status_code}): {description or 'request failed'}",
                details={"status": response.status_code},
            )
        return response.json()

    # ── Orders & payments ────────────────────────────────────────────────

    async def create_order(self, amount: float, currency: str = "INR",
                           receipt: Optional[str] = None,
                           notes: Optional[dict[str, str]] = None) -> dict[str, Any]:
        payload = {
            "amount": to_paise(amount),
            "currency": currency,
            "receipt": receipt or f"receipt_{int(time.time() * 1000)}",
            "notes": notes or {},
        }
        order = await self._request("POST", "/orders", payload)
        logger.info(f"[payments] created gateway order={order.get('id')} amount={payload['amount']}")
        return order

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}")

    async def refund(self, payment_id: str, amount: Optional[float] = None) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if amount:
            payload["amount"] = to_paise(amount)
        refund = await self._request("POST", f"/payments/{payment_id}/refund", payload)
        logger.info(f"[payments] refund payment={payment_id} refund={refund.get('id')}")
        return refund

    # ── Subscriptions ────────────────────────────────────────────────────

    async def cancel_subscription(self, subscription_id: str,
                                  cancel_at_cycle_end: bool = False) -> dict[str, Any]:
        return await self._request(
            "POST", f"/subscriptions/{subscription_id}/cancel",
            {"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0})

    async def pause_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._request(
            "POST", f"/subscriptions/{subscription_id}/pause", {"pause_at": "now"})

    async def resume_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._request(
            "POST", f"/subscriptions/{subscription_id}/resume", {"resume_at": "now"})
