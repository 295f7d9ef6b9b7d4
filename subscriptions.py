"""
FusionForge Storefront — Subscription Management

Recurring PC orders on fixed plans. A subscription is created pending and
becomes active once the gateway confirms it (webhook). Each billing run on an
active subscription raises a gateway order, records a pending
SubscriptionOrder and moves the billing period forward by one cycle.

Plans:
  monthly_standard    monthly     0%   min 1 item
  monthly_premium     monthly     5%   min 2 items
  quarterly_business  quarterly  10%   min 3 items
  yearly_enterprise   yearly     15%   min 5 items
"""
from __future__ import annotations
import calendar
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from errors import BadRequestError, NotFoundError, PaymentError, ServiceNotConfiguredError
from models import (
    EMAIL_RE, BillingCycle, Subscription, SubscriptionItem, SubscriptionOrder,
    SubscriptionOrderStatus, SubscriptionStatus, utcnow,
)
from notifications import (
    EmailSender, subscription_cancellation_email,
    subscription_confirmation_email, subscription_update_email,
)
from payments import RazorpayClient
from repository import StoreRepository

logger = logging.getLogger(__name__)

MAX_FAILED_PAYMENTS = 2

CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


# ============================================================
# Plans
# ============================================================

@dataclass(frozen=True)
class SubscriptionPlan:
    id: str
    name: str
    billing_cycle: BillingCycle
    discount_percentage: float
    description: str
    minimum_items: int
    features: tuple[str, ...] = ()


PLANS: dict[str, SubscriptionPlan] = {p.id: p for p in (
    SubscriptionPlan(
        "monthly_standard", "Monthly Standard", BillingCycle.MONTHLY, 0,
        "Monthly delivery with standard pricing", 1,
        ("Monthly PC delivery", "Standard customer support",
         "Flexible cancellation", "Component upgrades available"),
    ),
    SubscriptionPlan(
        "monthly_premium", "Monthly Premium", BillingCycle.MONTHLY, 5,
        "Monthly delivery with 5% discount", 2,
        ("Monthly PC delivery", "Priority customer support", "5% discount on all orders",
         "Free component upgrades", "Express shipping included"),
    ),
    SubscriptionPlan(
        "quarterly_business", "Quarterly Business", BillingCycle.QUARTERLY, 10,
        "Quarterly delivery for businesses with 10% discount", 3,
        ("Quarterly PC delivery", "Dedicated account manager", "10% discount on all orders",
         "Bulk pricing advantages", "Custom configuration support", "Extended warranty included"),
    ),
    SubscriptionPlan(
        "yearly_enterprise", "Yearly Enterprise", BillingCycle.YEARLY, 15,
        "Annual delivery for enterprises with maximum savings", 5,
        ("Annual PC delivery", "24/7 enterprise support", "15% discount on all orders",
         "Custom hardware sourcing", "White-glove deployment service",
         "Multi-year warranty", "Volume licensing included"),
    ),
)}


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def next_billing_date(cycle: BillingCycle, start: Optional[datetime] = None) -> datetime:
    return add_months(start or utcnow(), CYCLE_MONTHS[cycle])


# ============================================================
# Request / Result Models
# ============================================================

class SubscriptionLineRequest(BaseModel):
    build_id: int
    quantity: int = Field(ge=1)


class PricingRequest(BaseModel):
    plan_id: str
    items: list[SubscriptionLineRequest] = Field(min_length=1)


class SubscriptionCreate(BaseModel):
    user_id: str = Field(min_length=1)
    plan_id: str
    customer_name: str = Field(min_length=1)
    customer_email: str
    shipping_address: str = Field(min_length=1)
    payment_method: str = "online_payment"
    items: list[SubscriptionLineRequest] = Field(min_length=1)

    @field_validator("customer_email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        if not EMAIL_RE.match(v.strip()):
            raise ValueError("Valid email is required")
        return v.strip()


class SubscriptionRequest(BaseModel):
    """Customer-facing create: name, email and address come from the account."""
    user_id: Optional[str] = None
    plan_id: str
    items: list[SubscriptionLineRequest] = Field(min_length=1)


class SubscriptionAction(BaseModel):
    user_id: Optional[str] = None


class CancelRequest(SubscriptionAction):
    reason: Optional[str] = None


@dataclass
class PricedLine:
    build_id: int
    build_name: str
    category: str
    unit_price: float
    quantity: int

    @property
    def total_price(self) -> float:
        return self.unit_price * self.quantity


@dataclass
class SubscriptionPricing:
    plan_id: str
    base_price: float
    discount_amount: float
    final_price: float
    discount_percentage: float
    item_breakdown: list[PricedLine] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "base_price": self.base_price,
            "discount_amount": self.discount_amount,
            "final_price": self.final_price,
            "discount_percentage": self.discount_percentage,
            "item_breakdown": [
                {
                    "build_id": line.build_id,
                    "build_name": line.build_name,
                    "unit_price": line.unit_price,
                    "quantity": line.quantity,
                    "total_price": line.total_price,
                }
                for line in self.item_breakdown
            ],
        }


@dataclass
class BillingResult:
    success: bool
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DueRunResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


# ============================================================
# Service
# ============================================================

class SubscriptionService:
    def __init__(self, repo: StoreRepository, payments: RazorpayClient,
                 email: EmailSender,
                 business: Callable[[], Awaitable[Mapping[str, Any]]]):
        self.repo = repo
        self.payments = payments
        self.email = email
        self.business = business

    # ── Plans & pricing ──────────────────────────────────────────────────

    def plans(self) -> list[SubscriptionPlan]:
        return list(PLANS.values())

    def plan(self, plan_id: str) -> SubscriptionPlan:
        plan = PLANS.get(plan_id)
        if plan is None:
            raise NotFoundError("Invalid subscription plan")
        return plan

    async def calculate_pricing(self, plan_id: str,
                                items: list[SubscriptionLineRequest]) -> SubscriptionPricing:
        plan = self.plan(plan_id)
        total_qty = sum(i.quantity for i in items)
        if total_qty < plan.minimum_items:
            raise BadRequestError(f"Plan requires minimum {plan.minimum_items} items")

        lines: list[PricedLine] = []
        for item in items:
            build = await self.repo.get_build(item.build_id)
            if build is None:
                raise NotFoundError(f"Build with ID {item.build_id} not found")
            lines.append(PricedLine(
                build_id=build.id, build_name=build.name, category=build.category,
                unit_price=float(build.total_price or build.base_price),
                quantity=item.quantity,
            ))

        base = sum(line.total_price for line in lines)
        discount = base * plan.discount_percentage / 100
        return SubscriptionPricing(
            plan_id=plan.id, base_price=base, discount_amount=discount,
            final_price=base - discount,
            discount_percentage=plan.discount_percentage, item_breakdown=lines,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def _notify(self, sub: Subscription, message_factory) -> None:
        business = await self.business()
        await self.email.send(sub.customer_email, message_factory(sub, business),
                              to_name=sub.customer_name)

    async def create(self, request: SubscriptionCreate) -> Subscription:
        plan = self.plan(request.plan_id)
        pricing = await self.calculate_pricing(plan.id, request.items)
        now = utcnow()
        next_date = next_billing_date(plan.billing_cycle, now)

        sub = await self.repo.create_subscription(Subscription(
            user_id=request.user_id,
            plan_id=plan.id,
            plan_name=plan.name,
            status=SubscriptionStatus.PENDING,
            billing_cycle=plan.billing_cycle,
            base_price=pricing.base_price,
            discount_percentage=pricing.discount_percentage,
            final_price=pricing.final_price,
            items=[
                SubscriptionItem(
                    build_id=line.build_id, build_name=line.build_name,
                    category=line.category, quantity=line.quantity,
                    unit_price=line.unit_price,
                )
                for line in pricing.item_breakdown
            ],
            current_period_start=now,
            current_period_end=next_date,
            next_billing_date=next_date,
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            shipping_address=request.shipping_address,
            payment_method=request.payment_method,
        ))
        logger.info(f"[subscriptions] created id={sub.id} plan={plan.id} final={sub.final_price}")
        await self._notify(sub, subscription_confirmation_email)
        return sub

    async def create_for_user(self, request: SubscriptionRequest) -> Subscription:
        """Create from the customer's profile and default (else first) address."""
        if not request.user_id:
            raise BadRequestError("User ID is required")
        profile = await self.repo.get_user_profile(request.user_id)
        if profile is None:
            raise BadRequestError("User profile not found")
        addresses = await self.repo.list_addresses(request.user_id)
        address = next((a for a in addresses if a.is_default), addresses[0] if addresses else None)
        if address is None:
            raise BadRequestError("No shipping address found")

        return await self.create(SubscriptionCreate(
            user_id=request.user_id,
            plan_id=request.plan_id,
            customer_name=profile.display_name or profile.email,
            customer_email=profile.email,
            shipping_address=f"{address.address}, {address.city}, {address.zip_code}",
            items=request.items,
        ))

    async def get(self, subscription_id: str, user_id: Optional[str] = None) -> Subscription:
        """With `user_id`, a subscription owned by someone else is reported as missing."""
        sub = await self.repo.get_subscription(subscription_id)
        if sub is None or (user_id is not None and sub.user_id != user_id):
            raise NotFoundError("Subscription not found")
        return sub

    async def _sync_gateway(self, sub: Subscription, action: str) -> None:
        if not sub.gateway_subscription_id:
            return
        call = {
            "pause": self.payments.pause_subscription,
            "resume": self.payments.resume_subscription,
            "cancel": self.payments.cancel_subscription,
        }[action]
        await call(sub.gateway_subscription_id)
        logger.info(f"[subscriptions] gateway {action} id={sub.id} gateway={sub.gateway_subscription_id}")

    async def pause(self, subscription_id: str, user_id: Optional[str] = None) -> Subscription:
        sub = await self.get(subscription_id, user_id)
        if sub.status != SubscriptionStatus.ACTIVE:
            raise BadRequestError("Only active subscriptions can be paused")
        await self._sync_gateway(sub, "pause")
        updated = await self.repo.update_subscription(
            sub.id, {"status": SubscriptionStatus.PAUSED})
        await self._notify(updated, lambda s, b: subscription_update_email(s, b, "paused"))
        return updated

    async def resume(self, subscription_id: str, user_id: Optional[str] = None) -> Subscription:
        sub = await self.get(subscription_id, user_id)
        if sub.status != SubscriptionStatus.PAUSED:
            raise BadRequestError("Only paused subscriptions can be resumed")
        await self._sync_gateway(sub, "resume")
        updates: dict[str, Any] = {"status": SubscriptionStatus.ACTIVE}
        if sub.next_billing_date is None or sub.next_billing_date < utcnow():
            updates["next_billing_date"] = next_billing_date(sub.billing_cycle)
        updated = await self.repo.update_subscription(sub.id, updates)
        await self._notify(updated, lambda s, b: subscription_update_email(s, b, "resumed"))
        return updated

    async def cancel(self, subscription_id: str, reason: Optional[str] = None,
                     user_id: Optional[str] = None) -> Subscription:
        sub = await self.get(subscription_id, user_id)
        if sub.status == SubscriptionStatus.CANCELLED:
            return sub
        await self._sync_gateway(sub, "cancel")
        updated = await self.repo.update_subscription(sub.id, {
            "status": SubscriptionStatus.CANCELLED,
            "cancelled_at": utcnow(),
            "cancellation_reason": reason or "User requested",
        })
        logger.info(f"[subscriptions] cancelled id={sub.id} reason={updated.cancellation_reason!r}")
        await self._notify(updated, subscription_cancellation_email)
        return updated

    # ── Billing ──────────────────────────────────────────────────────────

    async def process_billing(self, subscription_id: str) -> BillingResult:
        sub = await self.repo.get_subscription(subscription_id)
        if sub is None:
            return BillingResult(False, error="Subscription not found")
        if sub.status != SubscriptionStatus.ACTIVE:
            return BillingResult(False, error="Subscription is not active")

        try:
            gateway_order = await self.payments.create_order(
                sub.final_price,
                receipt=f"sub_billing_{sub.id}_{int(time.time() * 1000)}",
                notes={
                    "subscription_id": sub.id,
                    "billing_cycle": sub.billing_cycle.value,
                    "customer_email": sub.customer_email,
                },
            )
        except (PaymentError, ServiceNotConfiguredError) as e:
            failures = sub.failed_payments + 1
            await self.repo.update_subscription(sub.id, {"failed_payments": failures})
            logger.warning(f"[subscriptions] billing failed id={sub.id} failures={failures}: {e.message}")
            if failures >= MAX_FAILED_PAYMENTS:
                await self.cancel(sub.id, "Too many failed payments")
            return BillingResult(False, error=e.message)

        now = utcnow()
        order = await self.repo.create_subscription_order(SubscriptionOrder(
            subscription_id=sub.id,
            user_id=sub.user_id,
            order_number=f"SUB{int(time.time() * 1000)}",
            status=SubscriptionOrderStatus.PENDING,
            amount=sub.final_price,
            items=[item.model_dump() for item in sub.items],
            billing_period=now.strftime("%Y-%m"),
            payment_id=gateway_order.get("id"),
        ))
        period_start = sub.next_billing_date or now
        next_date = next_billing_date(sub.billing_cycle, period_start)
        await self.repo.update_subscription(sub.id, {
            "current_period_start": period_start,
            "current_period_end": next_date,
            "next_billing_date": next_date,
        })
        logger.info(f"[subscriptions] billed id={sub.id} order={order.order_number} next={next_date.date()}")
        return BillingResult(True, order_id=order.id, payment_id=gateway_order.get("id"))

    async def process_due(self, as_of: Optional[datetime] = None) -> DueRunResult:
        due = await self.repo.list_subscriptions_due(as_of or utcnow())
        result = DueRunResult(processed=len(due))
        for sub in due:
            outcome = await self.process_billing(sub.id)
            if outcome.success:
                result.successful += 1
            else:
                result.failed += 1
                result.errors.append({"subscription_id": sub.id,
                                      "error": outcome.error or "Unknown error"})
        logger.info(
            f"[subscriptions] due run processed={result.processed} "
            f"ok={result.successful} failed={result.failed}")
        return result

    # ── Analytics ────────────────────────────────────────────────────────

    async def analytics(self) -> dict[str, Any]:
        subs = await self.repo.list_subscriptions()
        active = [s for s in subs if s.status == SubscriptionStatus.ACTIVE]

        mrr = sum(s.final_price / CYCLE_MONTHS[s.billing_cycle] for s in active)
        total_revenue = sum(s.final_price for s in subs)
        cancelled = sum(1 for s in subs if s.status == SubscriptionStatus.CANCELLED)

        by_plan: dict[str, int] = {}
        for s in subs:
            by_plan[s.plan_name] = by_plan.get(s.plan_name, 0) + 1

        now = utcnow()
        months = {add_months(now.replace(day=1), -i).strftime("%Y-%m"): [0.0, 0]
                  for i in range(5, -1, -1)}
        for s in subs:
            key = s.created_at.strftime("%Y-%m")
            if key in months:
                months[key][0] += s.final_price
                months[key][1] += 1

        return {
            "total_subscriptions": len(subs),
            "active_subscriptions": len(active),
            "monthly_recurring_revenue": mrr,
            "average_order_value": total_revenue / len(subs) if subs else 0.0,
            "churn_rate": cancelled / len(subs) * 100 if subs else 0.0,
            "subscriptions_by_plan": by_plan,
            "revenue_by_month": [
                {"month": m, "revenue": rev, "subscriptions": count}
                for m, (rev, count) in months.items()
            ],
        }
