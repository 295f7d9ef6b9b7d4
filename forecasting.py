"""
FusionForge Storefront — Inventory Forecasting & Supplier Reorders

Responsibilities:
  1. Sales history extraction from orders
  2. Demand forecast (moving averages + exponential smoothing + seasonality)
  3. Reorder point / EOQ / stockout estimates
  4. Urgency classification and supplier notification list
  5. Reorder email dispatch grouped per supplier
"""
from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import numpy as np

from models import ItemType, Urgency, parse_price, utcnow
from notifications import EmailSender, supplier_reorder_email
from repository import StoreRepository

logger = logging.getLogger(__name__)


@dataclass
class ForecastConfig:
    forecast_days: int = 30
    lead_time_days: int = 7
    safety_factor: float = 1.65       # ~95% service level
    smoothing_alpha: float = 0.3
    ordering_cost: float = 50.0
    holding_cost_rate: float = 0.2
    default_build_cost: float = 1000.0
    default_component_cost: float = 500.0
    history_days: int = 365
    min_history: int = 3


@dataclass
class SaleRecord:
    item_id: int
    item_type: ItemType
    quantity: int
    date: datetime
    revenue: float


@dataclass
class ForecastResult:
    item_id: int
    item_type: ItemType
    current_stock: int
    predicted_demand: float
    reorder_point: float
    suggested_order_quantity: float
    days_until_stockout: int
    confidence: float


@dataclass
class SupplierNotification:
    supplier_id: str
    item_id: int
    item_type: ItemType
    item_name: str
    current_stock: int
    reorder_point: float
    suggested_quantity: float
    urgency: Urgency
    estimated_stockout_date: datetime


URGENCY_RANK = {Urgency.CRITICAL: 4, Urgency.HIGH: 3, Urgency.MEDIUM: 2, Urgency.LOW: 1}


def classify_urgency(days_until_stockout: int, current_stock: int) -> Urgency:
    if current_stock == 0 or days_until_stockout <= 3:
        return Urgency.CRITICAL
    if days_until_stockout <= 7:
        return Urgency.HIGH
    if days_until_stockout <= 14:
        return Urgency.MEDIUM
    return Urgency.LOW


# ============================================================
# Forecast Math
# ============================================================

def moving_average(quantities: np.ndarray, periods: int) -> float:
    if quantities.size == 0:
        return 0.0
    recent = quantities[-periods:]
    return float(recent.sum() / min(periods, recent.size))


def exponential_smoothing(quantities: np.ndarray, alpha: float = 0.3) -> float:
    if quantities.size == 0:
        return 0.0
    forecast = float(quantities[0])
    for q in quantities[1:]:
        forecast = alpha * float(q) + (1 - alpha) * forecast
    return forecast


def seasonal_index(history: list[SaleRecord], month: int) -> float:
    """Mean sale size in `month` (1-12) relative to the mean of all 12 monthly means."""
    totals = np.zeros(12)
    counts = np.zeros(12)
    for sale in history:
        totals[sale.date.month - 1] += sale.quantity
        counts[sale.date.month - 1] += 1
    monthly = np.divide(totals, counts, out=np.zeros(12), where=counts > 0)
    overall = monthly.mean()
    return float(monthly[month - 1] / overall) if overall > 0 else 1.0


# ============================================================
# Forecaster
# ============================================================

class InventoryForecaster:
    def __init__(self, repo: StoreRepository, config: Optional[ForecastConfig] = None):
        self.repo = repo
        self.config = config or ForecastConfig()

    async def sales_history(self, item_id: int, item_type: ItemType,
                            days: Optional[int] = None) -> list[SaleRecord]:
        """
        Order lines for the item within the window, oldest first. Component
        sales are the sales of the build they belong to.
        """
        days = days or self.config.history_days
        end = utcnow()
        start = end - timedelta(days=days)

        build_id = item_id
        if item_type == ItemType.COMPONENT:
            component = await self.repo.get_component(item_id)
            if not component:
                return []
            build_id = component.build_id

        history: list[SaleRecord] = []
        for order in await self.repo.list_orders():
            if not (start <= order.created_at <= end):
                continue
            for item in order.items:
                if item.build.id == build_id:
                    history.append(SaleRecord(
                        item_id=item_id,
                        item_type=item_type,
                        quantity=item.quantity,
                        date=order.created_at,
                        revenue=item.line_total,
                    ))
        return sorted(history, key=lambda s: s.date)

    async def _stock_and_cost(self, item_id: int, item_type: ItemType) -> tuple[int, float]:
        if item_type == ItemType.BUILD:
            build = await self.repo.get_build(item_id)
            if not build:
                return 0, self.config.default_build_cost
            return build.stock_quantity, float(build.base_price or self.config.default_build_cost)
        component = await self.repo.get_component(item_id)
        if not component:
            return 0, self.config.default_component_cost
        cost = parse_price(component.price)
        return component.stock_quantity, cost if cost and cost > 0 else self.config.default_component_cost

    async def forecast_demand(self, item_id: int, item_type: ItemType,
                              forecast_days: Optional[int] = None) -> ForecastResult:
        cfg = self.config
        forecast_days = forecast_days or cfg.forecast_days
        history = await self.sales_history(item_id, item_type)
        stock, cost = await self._stock_and_cost(item_id, item_type)

        if len(history) < cfg.min_history:
            # Not enough data: conservative fractions of current stock
            return ForecastResult(
                item_id=item_id,
                item_type=item_type,
                current_stock=stock,
                predicted_demand=max(1, stock * 0.1),
                reorder_point=max(5, stock * 0.2),
                suggested_order_quantity=max(10, stock * 0.5),
                days_until_stockout=math.floor(stock / 0.1) if stock > 0 else 0,
                confidence=0.3,
            )

        quantities = np.array([s.quantity for s in history], dtype=float)
        ma7 = moving_average(quantities, 7)
        ma30 = moving_average(quantities, 30)
        smoothed = exponential_smoothing(quantities, cfg.smoothing_alpha)

        base = ma7 * 0.4 + ma30 * 0.3 + smoothed * 0.3
        daily = base * seasonal_index(history, utcnow().month)

        std_dev = float(np.sqrt(np.mean((quantities - base) ** 2)))
        safety_stock = std_dev * cfg.safety_factor
        reorder_point = math.ceil(daily * cfg.lead_time_days + safety_stock)

        holding_cost = cost * cfg.holding_cost_rate
        eoq = math.sqrt((2 * daily * 365 * cfg.ordering_cost) / holding_cost)
        suggested = max(math.ceil(eoq), reorder_point)

        result = ForecastResult(
            item_id=item_id,
            item_type=item_type,
            current_stock=stock,
            predicted_demand=math.ceil(daily * forecast_days),
            reorder_point=reorder_point,
            suggested_order_quantity=suggested,
            days_until_stockout=math.floor(stock / daily) if daily > 0 else 999,
            confidence=min(0.95, len(history) / 100 + 0.3),
        )
        logger.debug(
            f"[forecast] {item_type.value}={item_id} n={len(history)} daily={daily:.3f} "
            f"reorder={reorder_point} suggested={suggested}")
        return result

    async def generate_supplier_notifications(self) -> list[SupplierNotification]:
        low = await self.repo.get_low_stock_items()
        candidates = (
            [(b.id, ItemType.BUILD, b.name) for b in low.builds]
            + [(c.id, ItemType.COMPONENT, c.name) for c in low.components]
        )
        now = utcnow()
        notifications: list[SupplierNotification] = []
        for item_id, item_type, name in candidates:
            forecast = await self.forecast_demand(item_id, item_type)
            notifications.append(SupplierNotification(
                supplier_id=f"supplier_{item_type.value}_{item_id}",
                item_id=item_id,
                item_type=item_type,
                item_name=name,
                current_stock=forecast.current_stock,
                reorder_point=forecast.reorder_point,
                suggested_quantity=forecast.suggested_order_quantity,
                urgency=classify_urgency(forecast.days_until_stockout, forecast.current_stock),
                estimated_stockout_date=now + timedelta(days=forecast.days_until_stockout),
            ))
        # Stable sort keeps builds ahead of components within an urgency.
        return sorted(notifications, key=lambda n: URGENCY_RANK[n.urgency], reverse=True)


# ============================================================
# Supplier Dispatch
# ============================================================

@dataclass
class Supplier:
    id: str
    name: str
    email: str
    contact_person: str
    phone: Optional[str] = None
    lead_time_days: int = 7
    minimum_order_quantity: int = 1
    payment_terms: str = "30 days"
    is_active: bool = True
    email_enabled: bool = True
    urgency_levels: set[Urgency] = field(
        default_factory=lambda: {Urgency.MEDIUM, Urgency.HIGH, Urgency.CRITICAL})


DEFAULT_SUPPLIERS = [
    Supplier(id="supplier_001", name="TechSource Components", email="orders@techsource.com",
             phone="+91-9876543210", contact_person="Rajesh Kumar",
             lead_time_days=5, minimum_order_quantity=10, payment_terms="30 days"),
    Supplier(id="supplier_002", name="Digital Hardware Solutions", email="procurement@digitalhw.com",
             phone="+91-9876543211", contact_person="Priya Sharma",
             lead_time_days=7, minimum_order_quantity=5, payment_terms="45 days"),
    Supplier(id="supplier_003", name="PC Components India", email="sales@pccomponents.in",
             phone="+91-9876543212", contact_person="Amit Singh",
             lead_time_days=3, minimum_order_quantity=20, payment_terms="15 days"),
]


@dataclass
class ReorderResult:
    total_notifications: int = 0
    sent_successfully: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


class SupplierNotifier:
    def __init__(self, forecaster: InventoryForecaster, email: EmailSender,
                 suppliers: Optional[list[Supplier]] = None):
        self.forecaster = forecaster
        self.email = email
        self.suppliers = {s.id: s for s in (suppliers or DEFAULT_SUPPLIERS)}

    def supplier_for(self, item_id: int, item_type: ItemType) -> str:
        ids = sorted(self.suppliers)
        return ids[(item_id + len(item_type.value)) % len(ids)]

    async def send_reorder_notifications(self) -> ReorderResult:
        result = ReorderResult()
        notifications = await self.forecaster.generate_supplier_notifications()
        result.total_notifications = len(notifications)

        grouped: dict[str, list[SupplierNotification]] = {}
        for n in notifications:
            grouped.setdefault(self.supplier_for(n.item_id, n.item_type), []).append(n)

        for supplier_id, items in grouped.items():
            supplier = self.suppliers.get(supplier_id)
            if not supplier or not supplier.is_active or not supplier.email_enabled:
                continue
            wanted = [n for n in items if n.urgency in supplier.urgency_levels]
            if not wanted:
                continue
            message = supplier_reorder_email(supplier, wanted)
            if await self.email.send(supplier.email, message, to_name=supplier.contact_person):
                result.sent_successfully += 1
            else:
                result.errors.append({"supplier_id": supplier_id, "error": "Email delivery failed"})

        logger.info(
            f"[forecast] reorder notifications total={result.total_notifications} "
            f"sent={result.sent_successfully} errors={len(result.errors)}")
        return result
