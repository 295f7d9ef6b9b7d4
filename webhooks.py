"""
webhooks.py — Razorpay webhook handling.

Responsibilities:
  - Per-IP rate limiting for the webhook endpoint (slowapi)
  - Dispatching verified events to order and subscription state changes
  - Receipt email when a payment is captured

Signature checking lives in payments.verify_webhook_signature; the route
decides whether it applies (it is skipped when no webhook secret is set).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

from slowapi import Limiter
from slowapi.util import get_remote_address

from models import (
    Order, OrderStatus, Subscription, SubscriptionOrder,
    SubscriptionOrderStatus, SubscriptionStatus, utcnow,
)
from notifications import EmailSender, payment_receipt_email
from repository import StoreRepository

logger = logging.getLogger(__name__)

BusinessProvider = Callable[[], Awaitable[Mapping[str, Any]]]


# ============================================================
# Rate limiting
# ============================================================

# Keyed by client IP; the route supplies the per-minute limit from settings.
limiter = Limiter(key_func=get_remote_address, headers_enabled=True)


# ============================================================
# Event processing
# ============================================================

def _entity(event: Mapping[str, Any], name: str) -> dict[str, Any]:
    return ((event.get("payload") or {}).get(name) or {}).get("entity") or {}


@dataclass
class WebhookOutcome:
    event: str
    handled: bool
    details: dict[str, Any] = field(default_factory=dict)


class WebhookProcessor:
    def __init__(self, repo: StoreRepository, email: EmailSender,
                 business: BusinessProvider):
        self.repo = repo
        self.email = email
        self.business = business
        self._handlers: dict[str, Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]] = {
            "payment.captured": self._payment_captured,
            "payment.failed": self._payment_failed,
            "order.paid": self._order_paid,
            "subscription.activated": self._subscription_activated,
            "subscription.charged": self._subscription_charged,
            "subscription.cancelled": self._status_change(SubscriptionStatus.CANCELLED),
            "subscription.paused": self._status_change(SubscriptionStatus.PAUSED),
            "subscription.resumed": self._status_change(SubscriptionStatus.ACTIVE),
            "subscription.completed": self._status_change(SubscriptionStatus.EXPIRED),
            "subscription.halted": self._subscription_payment_failed,
        }

    async def handle(self, event: Mapping[str, Any]) -> WebhookOutcome:
        name = str(event.get("event", ""))
        handler = self._handlers.get(name)
        if handler is None:
            logger.info(f"[webhook] unhandled event={name!r}")
            return WebhookOutcome(name, handled=False)
        details = await handler(event)
        logger.info(f"[webhook] event={name} {details}")
        return WebhookOutcome(name, handled=True, details=details)

    # ── Orders ───────────────────────────────────────────────────────────

    async def _order_for(self, gateway_order_id: Optional[str],
                         statuses: set[OrderStatus]) -> Optional[Order]:
        if not gateway_order_id:
            return None
        order = await self.repo.get_order_by_gateway_id(gateway_order_id)
        if order is None or order.status not in statuses:
            return None
        return order

    async def _mark_paid(self, order: Order, payment_id: Optional[str]) -> Optional[Order]:
        updates: dict[str, Any] = {"status": OrderStatus.PAID}
        if payment_id:
            updates["gateway_payment_id"] = payment_id
        return await self.repo.update_order(order.id, updates)

    async def _payment_captured(self, event: Mapping[str, Any]) -> dict[str, Any]:
        payment = _entity(event, "payment")
        order = await self._order_for(payment.get("order_id"), {OrderStatus.PENDING})
        if order is None:
            return {"order": None}
        updated = await self._mark_paid(order, payment.get("id"))
        if updated is not None:
            business = await self.business()
            await self.email.send(updated.customer_email,
                                  payment_receipt_email(updated, business),
                                  to_name=updated.customer_name)
        return {"order": order.id, "status": OrderStatus.PAID.value}

    async def _payment_failed(self, event: Mapping[str, Any]) -> dict[str, Any]:
        if _entity(event, "subscription"):
            return await self._subscription_payment_failed(event)
        payment = _entity(event, "payment")
        order = await self._order_for(payment.get("order_id"), {OrderStatus.PENDING})
        if order is None:
            return {"order": None}
        await self.repo.update_order_status(order.id, OrderStatus.PAYMENT_FAILED)
        return {"order": order.id, "status": OrderStatus.PAYMENT_FAILED.value}

    async def _order_paid(self, event: Mapping[str, Any]) -> dict[str, Any]:
        gateway_order = _entity(event, "order")
        payment = _entity(event, "payment")
        order = await self._order_for(
            gateway_order.get("id") or payment.get("order_id"),
            {OrderStatus.PENDING, OrderStatus.PAID},
        )
        if order is None:
            return {"order": None}
        await self._mark_paid(order, payment.get("id") or order.gateway_payment_id)
        return {"order": order.id, "status": OrderStatus.PAID.value}

    # ── Subscriptions ────────────────────────────────────────────────────

    async def _subscription_for(self, event: Mapping[str, Any]) -> Optional[Subscription]:
        gateway_id = _entity(event, "subscription").get("id")
        if not gateway_id:
            return None
        sub = await self.repo.get_subscription_by_gateway_id(gateway_id)
        if sub is None:
            # Subscriptions created in-app may carry our own id in the notes.
            notes = _entity(event, "subscription").get("notes") or {}
            local_id = notes.get("subscription_id") if isinstance(notes, dict) else None
            if local_id:
                sub = await self.repo.get_subscription(local_id)
        return sub

    async def _subscription_activated(self, event: Mapping[str, Any]) -> dict[str, Any]:
        sub = await self._subscription_for(event)
        if sub is None:
            return {"subscription": None}
        await self.repo.update_subscription(sub.id, {
            "status": SubscriptionStatus.ACTIVE,
            "gateway_subscription_id": _entity(event, "subscription").get("id"),
        })
        return {"subscription": sub.id, "status": SubscriptionStatus.ACTIVE.value}

    async def _subscription_charged(self, event: Mapping[str, Any]) -> dict[str, Any]:
        sub = await self._subscription_for(event)
        if sub is None:
            return {"subscription": None}
        gateway_id = _entity(event, "subscription").get("id") or sub.id
        payment = _entity(event, "payment")
        amount = (payment.get("amount") or 0) / 100
        now = utcnow()

        order = await self.repo.create_subscription_order(SubscriptionOrder(
            subscription_id=sub.id,
            user_id=sub.user_id,
            order_number=f"SUB{gateway_id[-8:]}",
            status=SubscriptionOrderStatus.DELIVERED,
            amount=amount,
            items=[item.model_dump() for item in sub.items],
            billing_period=now.strftime("%Y-%m"),
            payment_id=payment.get("id"),
        ))
        await self.repo.update_subscription(sub.id, {
            "successful_payments": sub.successful_payments + 1,
            "total_delivered": sub.total_delivered + 1,
        })
        return {"subscription": sub.id, "order": order.order_number, "amount": amount}

    async def _subscription_payment_failed(self, event: Mapping[str, Any]) -> dict[str, Any]:
        sub = await self._subscription_for(event)
        if sub is None:
            return {"subscription": None}
        await self.repo.update_subscription(sub.id, {"failed_payments": sub.failed_payments + 1})
        return {"subscription": sub.id, "failed_payments": sub.failed_payments + 1}

    def _status_change(self, status: SubscriptionStatus):
        async def handler(event: Mapping[str, Any]) -> dict[str, Any]:
            sub = await self._subscription_for(event)
            if sub is None:
                return {"subscription": None}
            updates: dict[str, Any] = {"status": status}
            if status == SubscriptionStatus.CANCELLED:
                updates["cancelled_at"] = utcnow()
            await self.repo.update_subscription(sub.id, updates)
            return {"subscription": sub.id, "status": status.value}
        return handler
