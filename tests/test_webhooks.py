"""
Tests for gateway webhook event processing.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import run
from models import (
    BillingCycle, OrderBuildRef, OrderCreate, OrderItem, OrderStatus,
    Subscription, SubscriptionOrderStatus, SubscriptionStatus,
)
from webhooks import WebhookProcessor


async def business():
    return {"company_name": "FusionForge PCs", "business_email": "shop@example.com"}


@pytest.fixture
def email():
    sender = MagicMock()
    sender.send = AsyncMock(return_value=True)
    return sender


@pytest.fixture
def processor(repo, email):
    return WebhookProcessor(repo, email, business)


def pending_order(repo, gateway_id="order_gw1", status=OrderStatus.PENDING):
    return run(repo.create_order(OrderCreate(
        user_id="u1", order_number="FF12345678", status=status, total=80000,
        items=[OrderItem(build=OrderBuildRef(id=1, name="Performance Gamer", total_price=80000), quantity=1)],
        customer_name="Asha", customer_email="asha@example.com",
        payment_method="online_payment", gateway_order_id=gateway_id,
    )))


def subscription(repo, **overrides):
    values = dict(
        user_id="u1", plan_id="monthly_standard", plan_name="Monthly Standard",
        status=SubscriptionStatus.PENDING, billing_cycle=BillingCycle.MONTHLY,
        base_price=80000, final_price=80000, customer_name="Asha",
        customer_email="asha@example.com", shipping_address="Palladam",
        payment_method="online_payment",
    )
    values.update(overrides)
    return run(repo.create_subscription(Subscription(**values)))


def event(name, **entities):
    return {"event": name, "payload": {k: {"entity": v} for k, v in entities.items()}}


class TestOrderEvents:

    def test_payment_captured_marks_paid_and_sends_receipt(self, repo, processor, email):
        order = pending_order(repo)
        outcome = run(processor.handle(event(
            "payment.captured", payment={"id": "pay_1", "order_id": "order_gw1", "amount": 8000000})))
        assert outcome.handled is True
        stored = run(repo.get_order(order.id))
        assert stored.status == OrderStatus.PAID
        assert stored.gateway_payment_id == "pay_1"
        email.send.assert_awaited_once()
        assert email.send.await_args.args[0] == "asha@example.com"

    def test_payment_captured_ignores_non_pending(self, repo, processor, email):
        order = pending_order(repo, status=OrderStatus.SHIPPED)
        run(processor.handle(event("payment.captured", payment={"id": "pay_1", "order_id": "order_gw1"})))
        assert run(repo.get_order(order.id)).status == OrderStatus.SHIPPED
        email.send.assert_not_awaited()

    def test_payment_failed(self, repo, processor):
        order = pending_order(repo)
        run(processor.handle(event("payment.failed", payment={"id": "pay_1", "order_id": "order_gw1"})))
        assert run(repo.get_order(order.id)).status == OrderStatus.PAYMENT_FAILED

    def test_order_paid_keeps_existing_payment_id(self, repo, processor):
        order = pending_order(repo, status=OrderStatus.PAID)
        run(repo.update_order(order.id, {"gateway_payment_id": "pay_0"}))
        run(processor.handle(event("order.paid", order={"id": "order_gw1"})))
        stored = run(repo.get_order(order.id))
        assert stored.status == OrderStatus.PAID
        assert stored.gateway_payment_id == "pay_0"

    def test_unknown_event_is_not_handled(self, processor):
        outcome = run(processor.handle({"event": "refund.processed"}))
        assert outcome.handled is False


class TestSubscriptionEvents:

    def test_activation_by_notes_id(self, repo, processor):
        sub = subscription(repo)
        run(processor.handle(event("subscription.activated",
                                   subscription={"id": "sub_gw1", "notes": {"subscription_id": sub.id}})))
        stored = run(repo.get_subscription(sub.id))
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.gateway_subscription_id == "sub_gw1"

    def test_charged_records_delivered_order(self, repo, processor):
        sub = subscription(repo, status=SubscriptionStatus.ACTIVE, gateway_subscription_id="sub_gw12345678")
        run(processor.handle(event("subscription.charged",
                                   subscription={"id": "sub_gw12345678"},
                                   payment={"id": "pay_9", "amount": 8000000})))
        orders = run(repo.list_subscription_orders(subscription_id=sub.id))
        assert len(orders) == 1
        assert orders[0].order_number == "SUB12345678"
        assert orders[0].amount == 80000
        assert orders[0].status == SubscriptionOrderStatus.DELIVERED
        stored = run(repo.get_subscription(sub.id))
        assert stored.successful_payments == 1
        assert stored.total_delivered == 1

    def test_payment_failed_with_subscription_counts_failure(self, repo, processor):
        sub = subscription(repo, status=SubscriptionStatus.ACTIVE, gateway_subscription_id="sub_gw1")
        run(processor.handle(event("payment.failed", subscription={"id": "sub_gw1"},
                                   payment={"id": "pay_1"})))
        assert run(repo.get_subscription(sub.id)).failed_payments == 1

    @pytest.mark.parametrize("name,status", [
        ("subscription.cancelled", SubscriptionStatus.CANCELLED),
        ("subscription.paused", SubscriptionStatus.PAUSED),
        ("subscription.resumed", SubscriptionStatus.ACTIVE),
        ("subscription.completed", SubscriptionStatus.EXPIRED),
    ])
    def test_status_changes(self, repo, processor, name, status):
        sub = subscription(repo, status=SubscriptionStatus.ACTIVE, gateway_subscription_id="sub_gw1")
        run(processor.handle(event(name, subscription={"id": "sub_gw1"})))
        stored = run(repo.get_subscription(sub.id))
        assert stored.status == status
        assert (stored.cancelled_at is not None) == (status == SubscriptionStatus.CANCELLED)

    def test_unknown_subscription_is_ignored(self, processor):
        outcome = run(processor.handle(event("subscription.halted", subscription={"id": "missing"})))
        assert outcome.handled is True
        assert outcome.details == {"subscription": None}
