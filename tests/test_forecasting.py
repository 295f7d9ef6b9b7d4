"""
Tests for demand forecasting and supplier reorder notifications.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from conftest import run
from forecasting import (
    ForecastConfig, InventoryForecaster, Supplier, SupplierNotifier,
    classify_urgency, exponential_smoothing, moving_average,
)
from models import ItemType, OrderBuildRef, OrderCreate, OrderItem, Urgency, utcnow


def add_sales(repo, build_id, quantities, days_ago=0):
    for offset, qty in enumerate(quantities):
        run(repo.create_order(OrderCreate(
            user_id="u", order_number=f"FF{build_id}{offset:04d}", total=1000 * qty,
            items=[OrderItem(build=OrderBuildRef(id=build_id, name="b", total_price=1000), quantity=qty)],
            customer_name="c", customer_email="c@example.com",
            created_at=utcnow() - timedelta(days=days_ago, minutes=1 + offset),
        )))


class TestHelpers:

    def test_moving_average_uses_tail(self):
        assert moving_average(np.array([1.0, 1.0, 4.0, 6.0]), 2) == 5.0

    def test_exponential_smoothing(self):
        assert exponential_smoothing(np.array([10.0, 20.0]), alpha=0.5) == 15.0

    @pytest.mark.parametrize("days,stock,expected", [
        (10, 0, Urgency.CRITICAL),
        (3, 5, Urgency.CRITICAL),
        (6, 5, Urgency.HIGH),
        (12, 5, Urgency.MEDIUM),
        (40, 5, Urgency.LOW),
    ])
    def test_classify_urgency(self, days, stock, expected):
        assert classify_urgency(days, stock) == expected


class TestForecast:

    def test_sparse_history_is_conservative(self, repo):
        result = run(InventoryForecaster(repo).forecast_demand(1, ItemType.BUILD))
        assert result.current_stock == 10
        assert result.confidence == 0.3
        assert result.reorder_point == 5
        assert result.suggested_order_quantity == 10

    def test_forecast_with_history(self, repo):
        add_sales(repo, 1, [2, 3, 2, 4, 3, 2, 3, 2])
        result = run(InventoryForecaster(repo).forecast_demand(1, ItemType.BUILD, forecast_days=30))
        assert result.confidence == pytest.approx(0.38)
        assert result.predicted_demand > 0
        assert result.reorder_point >= 1
        assert result.suggested_order_quantity >= result.reorder_point
        assert result.days_until_stockout < 999

    def test_component_follows_parent_build(self, repo):
        add_sales(repo, 1, [1, 1, 1, 1])
        history = run(InventoryForecaster(repo).sales_history(1, ItemType.COMPONENT))
        assert len(history) == 4
        assert all(h.item_type == ItemType.COMPONENT for h in history)

    def test_old_sales_outside_window_ignored(self, repo):
        add_sales(repo, 1, [5, 5, 5], days_ago=400)
        forecaster = InventoryForecaster(repo, ForecastConfig(history_days=365))
        assert run(forecaster.sales_history(1, ItemType.BUILD)) == []


class TestSupplierNotifications:

    def test_low_stock_items_get_notifications(self, repo):
        notifications = run(InventoryForecaster(repo).generate_supplier_notifications())
        assert {(n.item_type, n.item_id) for n in notifications} == {
            (ItemType.BUILD, 2), (ItemType.COMPONENT, 1)}
        ranks = [n.urgency for n in notifications]
        assert ranks == sorted(ranks, key=lambda u: ["low", "medium", "high", "critical"].index(u.value),
                               reverse=True)

    def test_reorder_emails_grouped_per_supplier(self, repo):
        email = MagicMock()
        email.send = AsyncMock(return_value=True)
        supplier = Supplier(id="s1", name="Only Supplier", email="s1@example.com",
                            contact_person="Kumar",
                            urgency_levels={Urgency.LOW, Urgency.MEDIUM, Urgency.HIGH, Urgency.CRITICAL})
        notifier = SupplierNotifier(InventoryForecaster(repo), email, [supplier])
        result = run(notifier.send_reorder_notifications())
        assert result.total_notifications == 2
        assert result.sent_successfully == 1
        email.send.assert_awaited_once()
        assert email.send.await_args.args[0] == "s1@example.com"

    def test_failed_delivery_is_reported(self, repo):
        email = MagicMock()
        email.send = AsyncMock(return_value=False)
        supplier = Supplier(id="s1", name="S", email="s1@example.com", contact_person="K",
                            urgency_levels=set(Urgency))
        result = run(SupplierNotifier(InventoryForecaster(repo), email, [supplier])
                     .send_reorder_notifications())
        assert result.sent_successfully == 0
        assert result.errors == [{"supplier_id": "s1", "error": "Email delivery failed"}]
