"""
FusionForge Storefront — Storage Interface & Document Backend

StoreRepository is the only way services touch persistence. Two backends
implement it:
  1. InMemoryRepository   — document store (dicts + secondary indexes)
  2. AsyncPGStoreRepository (asyncpg_repository.py) — PostgreSQL
storage_factory.py composes them for dual-write migrations.

Account-linking helpers at the bottom work against any backend.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, TypeVar

from pydantic import BaseModel

from models import (
    PcBuild, BuildCreate, BuildUpdate, Component, ComponentCreate,
    Inquiry, InquiryCreate, InquiryStatus,
    UserProfile, ProfileUpdate, SavedBuild, UserAddress, AddressUpdate,
    AdminSetting, Order, OrderCreate, OrderStatus,
    StockMovement, MovementType, ItemType, LowStockReport,
    Subscription, SubscriptionOrder, SubscriptionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


# ============================================================
# Database Abstraction Layer (Repository Pattern)
# ============================================================

class StoreRepository:
    """
    Abstract storage access. Implementations are swappable; every method is
    async so the relational backend can share the interface.
    """

    name: str = "abstract"

    # ── PC builds ────────────────────────────────────────────────────────

    async def list_builds(self, include_inactive: bool = False) -> list[PcBuild]:
        raise NotImplementedError

    async def get_builds_by_category(self, category: str) -> list[PcBuild]:
        raise NotImplementedError

    async def get_build(self, build_id: int) -> Optional[PcBuild]:
        raise NotImplementedError

    async def create_build(self, data: BuildCreate) -> PcBuild:
        raise NotImplementedError

    async def update_build(self, build_id: int, updates: BuildUpdate) -> Optional[PcBuild]:
        raise NotImplementedError

    async def update_build_stock(self, build_id: int, quantity: int,
                                 reason: str = "manual update") -> Optional[PcBuild]:
        raise NotImplementedError

    async def delete_build(self, build_id: int) -> bool:
        raise NotImplementedError

    # ── Components ───────────────────────────────────────────────────────

    async def list_components(self) -> list[Component]:
        raise NotImplementedError

    async def get_components_by_build(self, build_id: int) -> list[Component]:
        raise NotImplementedError

    async def get_component(self, component_id: int) -> Optional[Component]:
        raise NotImplementedError

    async def create_component(self, data: ComponentCreate) -> Component:
        raise NotImplementedError

    async def update_component_stock(self, component_id: int, quantity: int,
                                     reason: str = "manual update") -> Optional[Component]:
        raise NotImplementedError

    # ── Inventory ────────────────────────────────────────────────────────

    async def get_low_stock_items(self) -> LowStockReport:
        raise NotImplementedError

    async def record_stock_movement(self, movement: StockMovement) -> StockMovement:
        raise NotImplementedError

    async def list_stock_movements(self, item_id: Optional[int] = None,
                                   item_type: Optional[ItemType] = None) -> list[StockMovement]:
        raise NotImplementedError

    # ── Inquiries ────────────────────────────────────────────────────────

    async def create_inquiry(self, data: InquiryCreate) -> Inquiry:
        raise NotImplementedError

    async def list_inquiries(self) -> list[Inquiry]:
        raise NotImplementedError

    async def get_inquiry(self, inquiry_id: int) -> Optional[Inquiry]:
        raise NotImplementedError

    async def get_inquiries_by_status(self, status: InquiryStatus) -> list[Inquiry]:
        raise NotImplementedError

    async def update_inquiry_status(self, inquiry_id: int,
                                    status: InquiryStatus) -> Optional[Inquiry]:
        raise NotImplementedError

    async def clear_inquiries(self) -> int:
        raise NotImplementedError

    # ── User profiles ────────────────────────────────────────────────────

    async def get_user_profile(self, uid: str) -> Optional[UserProfile]:
        raise NotImplementedError

    async def upsert_user_profile(self, profile: UserProfile) -> UserProfile:
        raise NotImplementedError

    async def update_user_profile(self, uid: str, updates: ProfileUpdate) -> Optional[UserProfile]:
        raise NotImplementedError

    async def list_user_profiles(self) -> list[UserProfile]:
        raise NotImplementedError

    async def get_user_profiles_by_email(self, email: str) -> list[UserProfile]:
        raise NotImplementedError

    async def mark_profile_merged(self, uid: str, merged_into: str) -> None:
        raise NotImplementedError

    # ── Orders ───────────────────────────────────────────────────────────

    async def create_order(self, data: OrderCreate) -> Order:
        raise NotImplementedError

    async def list_orders(self) -> list[Order]:
        raise NotImplementedError

    async def get_order(self, order_id: int) -> Optional[Order]:
        raise NotImplementedError

    async def get_orders_for_user(self, user_id: str,
                                  email: Optional[str] = None) -> list[Order]:
        raise NotImplementedError

    async def get_orders_by_email(self, email: str) -> list[Order]:
        raise NotImplementedError

    async def get_order_by_gateway_id(self, gateway_order_id: str) -> Optional[Order]:
        raise NotImplementedError

    async def update_order_status(self, order_id: int, status: OrderStatus) -> Optional[Order]:
        raise NotImplementedError

    async def update_order(self, order_id: int, updates: dict[str, Any]) -> Optional[Order]:
        raise NotImplementedError

    async def clear_orders(self) -> int:
        raise NotImplementedError

    # ── Saved builds ─────────────────────────────────────────────────────

    async def save_build_for_user(self, user_id: str, build_id: int) -> SavedBuild:
        raise NotImplementedError

    async def list_saved_builds(self, user_id: str) -> list[SavedBuild]:
        raise NotImplementedError

    async def remove_saved_build(self, user_id: str, build_id: int) -> bool:
        raise NotImplementedError

    # ── Addresses ────────────────────────────────────────────────────────

    async def list_addresses(self, user_id: str) -> list[UserAddress]:
        raise NotImplementedError

    async def get_address(self, address_id: str) -> Optional[UserAddress]:
        raise NotImplementedError

    async def save_address(self, address: UserAddress) -> UserAddress:
        raise NotImplementedError

    async def update_address(self, address_id: str, updates: AddressUpdate) -> Optional[UserAddress]:
        raise NotImplementedError

    async def delete_address(self, address_id: str) -> bool:
        raise NotImplementedError

    async def set_default_address(self, user_id: str, address_id: str) -> Optional[UserAddress]:
        raise NotImplementedError

    # ── Admin settings ───────────────────────────────────────────────────

    async def get_setting(self, key: str) -> Optional[AdminSetting]:
        raise NotImplementedError

    async def set_setting(self, key: str, value: Any) -> AdminSetting:
        raise NotImplementedError

    async def list_settings(self) -> list[AdminSetting]:
        raise NotImplementedError

    # ── Subscriptions ────────────────────────────────────────────────────

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        raise NotImplementedError

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        raise NotImplementedError

    async def get_subscription_by_gateway_id(self, gateway_id: str) -> Optional[Subscription]:
        raise NotImplementedError

    async def list_subscriptions(self, user_id: Optional[str] = None) -> list[Subscription]:
        raise NotImplementedError

    async def update_subscription(self, subscription_id: str,
                                  updates: dict[str, Any]) -> Optional[Subscription]:
        raise NotImplementedError

    async def list_subscriptions_due(self, as_of: datetime) -> list[Subscription]:
        raise NotImplementedError

    async def create_subscription_order(self, order: SubscriptionOrder) -> SubscriptionOrder:
        raise NotImplementedError

    async def list_subscription_orders(self, subscription_id: Optional[str] = None,
                                       user_id: Optional[str] = None) -> list[SubscriptionOrder]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _movement(item_id: int, item_type: ItemType, previous: int, new: int,
              reason: str) -> StockMovement:
    if new > previous:
        kind = MovementType.IN
    elif new < previous:
        kind = MovementType.OUT
    else:
        kind = MovementType.ADJUSTMENT
    return StockMovement(
        item_id=item_id, item_type=item_type, movement_type=kind,
        quantity=abs(new - previous), previous_stock=previous, new_stock=new,
        reason=reason,
    )


def _apply(model: M, updates: dict[str, Any]) -> M:
    """Return a validated copy of `model` with `updates` applied."""
    data = model.model_dump()
    data.update(updates)
    return type(model).model_validate(data)


# ============================================================
# In-Memory Document Store
# ============================================================

class InMemoryRepository(StoreRepository):
    """
    Document backend. Records live in dicts keyed by id; reads hand out
    deep copies so callers never mutate stored state by accident.
    """

    name = "memory"

    def __init__(self):
        self.builds: dict[int, PcBuild] = {}
        self.components: dict[int, Component] = {}
        self.inquiries: dict[int, Inquiry] = {}
        self.profiles: dict[str, UserProfile] = {}
        self.orders: dict[int, Order] = {}
        self.saved_builds: dict[str, dict[int, SavedBuild]] = {}
        self.addresses: dict[str, UserAddress] = {}
        self.settings: dict[str, AdminSetting] = {}
        self.movements: list[StockMovement] = []
        self.subscriptions: dict[str, Subscription] = {}
        self.subscription_orders: dict[str, SubscriptionOrder] = {}
        self._gateway_order_index: dict[str, int] = {}

    @staticmethod
    def _copy(item: Optional[M]) -> Optional[M]:
        return item.model_copy(deep=True) if item is not None else None

    @staticmethod
    def _next_id(table: dict[int, Any]) -> int:
        return max(table.keys(), default=0) + 1

    # ── PC builds ────────────────────────────────────────────────────────

    async def list_builds(self, include_inactive: bool = False) -> list[PcBuild]:
        return [
            b.model_copy(deep=True) for b in sorted(self.builds.values(), key=lambda b: b.id)
            if include_inactive or b.is_active
        ]

    async def get_builds_by_category(self, category: str) -> list[PcBuild]:
        return [b for b in await self.list_builds() if b.category == category]

    async def get_build(self, build_id: int) -> Optional[PcBuild]:
        return self._copy(self.builds.get(build_id))

    async def create_build(self, data: BuildCreate) -> PcBuild:
        build = PcBuild(id=self._next_id(self.builds), **data.model_dump())
        self.builds[build.id] = build
        return self._copy(build)

    async def update_build(self, build_id: int, updates: BuildUpdate) -> Optional[PcBuild]:
        build = self.builds.get(build_id)
        if not build:
            return None
        changes = updates.model_dump(exclude_unset=True)
        if "stock_quantity" in changes and changes["stock_quantity"] != build.stock_quantity:
            self.movements.append(_movement(
                build_id, ItemType.BUILD, build.stock_quantity,
                changes["stock_quantity"], "build update"))
        changes["updated_at"] = utcnow()
        updated = _apply(build, changes)
        self.builds[build_id] = updated
        return self._copy(updated)

    async def update_build_stock(self, build_id: int, quantity: int,
                                 reason: str = "manual update") -> Optional[PcBuild]:
        build = self.builds.get(build_id)
        if not build:
            return None
        self.movements.append(_movement(
            build_id, ItemType.BUILD, build.stock_quantity, quantity, reason))
        updated = _apply(build, {"stock_quantity": quantity, "updated_at": utcnow()})
        self.builds[build_id] = updated
        return self._copy(updated)

    async def delete_build(self, build_id: int) -> bool:
        if self.builds.pop(build_id, None) is None:
            return False
        for cid in [c.id for c in self.components.values() if c.build_id == build_id]:
            del self.components[cid]
        return True

    # ── Components ───────────────────────────────────────────────────────

    async def list_components(self) -> list[Component]:
        return [c.model_copy(deep=True) for c in sorted(self.components.values(), key=lambda c: c.id)]

    async def get_components_by_build(self, build_id: int) -> list[Component]:
        return [c for c in await self.list_components() if c.build_id == build_id]

    async def get_component(self, component_id: int) -> Optional[Component]:
        return self._copy(self.components.get(component_id))

    async def create_component(self, data: ComponentCreate) -> Component:
        component = Component(id=self._next_id(self.components), **data.model_dump())
        self.components[component.id] = component
        return self._copy(component)

    async def update_component_stock(self, component_id: int, quantity: int,
                                     reason: str = "manual update") -> Optional[Component]:
        component = self.components.get(component_id)
        if not component:
            return None
        self.movements.append(_movement(
            component_id, ItemType.COMPONENT, component.stock_quantity, quantity, reason))
        updated = _apply(component, {"stock_quantity": quantity})
        self.components[component_id] = updated
        return self._copy(updated)

    # ── Inventory ────────────────────────────────────────────────────────

    async def get_low_stock_items(self) -> LowStockReport:
        return LowStockReport(
            builds=[
                b.model_copy(deep=True) for b in sorted(self.builds.values(), key=lambda b: b.id)
                if b.is_active and b.stock_quantity <= b.low_stock_threshold
            ],
            components=[
                c.model_copy(deep=True) for c in sorted(self.components.values(), key=lambda c: c.id)
                if c.is_active and c.stock_quantity <= c.low_stock_threshold
            ],
        )

    async def record_stock_movement(self, movement: StockMovement) -> StockMovement:
        self.movements.append(movement)
        return movement.model_copy(deep=True)

    async def list_stock_movements(self, item_id: Optional[int] = None,
                                   item_type: Optional[ItemType] = None) -> list[StockMovement]:
        result = [
            m.model_copy(deep=True) for m in self.movements
            if (item_id is None or m.item_id == item_id)
            and (item_type is None or m.item_type == item_type)
        ]
        return sorted(result, key=lambda m: m.created_at, reverse=True)

    # ── Inquiries ────────────────────────────────────────────────────────

    async def create_inquiry(self, data: InquiryCreate) -> Inquiry:
        inquiry = Inquiry(id=self._next_id(self.inquiries), **data.model_dump())
        self.inquiries[inquiry.id] = inquiry
        return self._copy(inquiry)

    async def list_inquiries(self) -> list[Inquiry]:
        return sorted(
            (i.model_copy(deep=True) for i in self.inquiries.values()),
            key=lambda i: (i.created_at, i.id), reverse=True,
        )

    async def get_inquiry(self, inquiry_id: int) -> Optional[Inquiry]:
        return self._copy(self.inquiries.get(inquiry_id))

    async def get_inquiries_by_status(self, status: InquiryStatus) -> list[Inquiry]:
        return [i for i in await self.list_inquiries() if i.status == status]

    async def update_inquiry_status(self, inquiry_id: int,
                                    status: InquiryStatus) -> Optional[Inquiry]:
        inquiry = self.inquiries.get(inquiry_id)
        if not inquiry:
            return None
        inquiry.status = status
        return self._copy(inquiry)

    async def clear_inquiries(self) -> int:
        count = len(self.inquiries)
        self.inquiries.clear()
        return count

    # ── User profiles ────────────────────────────────────────────────────

    async def get_user_profile(self, uid: str) -> Optional[UserProfile]:
        return self._copy(self.profiles.get(uid))

    async def upsert_user_profile(self, profile: UserProfile) -> UserProfile:
        existing = self.profiles.get(profile.uid)
        if existing:
            profile = _apply(profile, {"created_at": existing.created_at, "updated_at": utcnow()})
        self.profiles[profile.uid] = profile.model_copy(deep=True)
        return self._copy(profile)

    async def update_user_profile(self, uid: str, updates: ProfileUpdate) -> Optional[UserProfile]:
        profile = self.profiles.get(uid)
        if not profile:
            return None
        changes = updates.model_dump(exclude_unset=True)
        changes["updated_at"] = utcnow()
        updated = _apply(profile, changes)
        self.profiles[uid] = updated
        return self._copy(updated)

    async def list_user_profiles(self) -> list[UserProfile]:
        return [
            p.model_copy(deep=True) for p in self.profiles.values()
            if not p.merged_into
        ]

    async def get_user_profiles_by_email(self, email: str) -> list[UserProfile]:
        target = email.strip().lower()
        return [
            p.model_copy(deep=True) for p in self.profiles.values()
            if p.email.lower() == target
        ]

    async def mark_profile_merged(self, uid: str, merged_into: str) -> None:
        profile = self.profiles.get(uid)
        if profile:
            profile.merged_into = merged_into
            profile.merged_at = utcnow()

    # ── Orders ───────────────────────────────────────────────────────────

    async def create_order(self, data: OrderCreate) -> Order:
        order = Order(id=self._next_id(self.orders), **data.model_dump())
        self.orders[order.id] = order
        if order.gateway_order_id:
            self._gateway_order_index[order.gateway_order_id] = order.id
        return self._copy(order)

    async def list_orders(self) -> list[Order]:
        return sorted(
            (o.model_copy(deep=True) for o in self.orders.values()),
            key=lambda o: (o.created_at, o.id), reverse=True,
        )

    async def get_order(self, order_id: int) -> Optional[Order]:
        return self._copy(self.orders.get(order_id))

    async def get_orders_for_user(self, user_id: str,
                                  email: Optional[str] = None) -> list[Order]:
        target = email.strip().lower() if email else None
        return [
            o for o in await self.list_orders()
            if o.user_id == user_id or (target and o.customer_email.lower() == target)
        ]

    async def get_orders_by_email(self, email: str) -> list[Order]:
        target = email.strip().lower()
        return [o for o in await self.list_orders() if o.customer_email.lower() == target]

    async def get_order_by_gateway_id(self, gateway_order_id: str) -> Optional[Order]:
        oid = self._gateway_order_index.get(gateway_order_id)
        return self._copy(self.orders.get(oid)) if oid else None

    async def update_order_status(self, order_id: int, status: OrderStatus) -> Optional[Order]:
        return await self.update_order(order_id, {"status": status})

    async def update_order(self, order_id: int, updates: dict[str, Any]) -> Optional[Order]:
        order = self.orders.get(order_id)
        if not order:
            return None
        updated = _apply(order, {**updates, "updated_at": utcnow()})
        self.orders[order_id] = updated
        if updated.gateway_order_id:
            self._gateway_order_index[updated.gateway_order_id] = order_id
        return self._copy(updated)

    async def clear_orders(self) -> int:
        count = len(self.orders)
        self.orders.clear()
        self._gateway_order_index.clear()
        return count

    # ── Saved builds ─────────────────────────────────────────────────────

    async def save_build_for_user(self, user_id: str, build_id: int) -> SavedBuild:
        user_saved = self.saved_builds.setdefault(user_id, {})
        if build_id not in user_saved:
            user_saved[build_id] = SavedBuild(user_id=user_id, build_id=build_id)
        return user_saved[build_id].model_copy(deep=True)

    async def list_saved_builds(self, user_id: str) -> list[SavedBuild]:
        return sorted(
            (s.model_copy(deep=True) for s in self.saved_builds.get(user_id, {}).values()),
            key=lambda s: s.saved_at, reverse=True,
        )

    async def remove_saved_build(self, user_id: str, build_id: int) -> bool:
        return self.saved_builds.get(user_id, {}).pop(build_id, None) is not None

    # ── Addresses ────────────────────────────────────────────────────────

    def _unset_defaults(self, user_id: str, keep: str) -> None:
        for a in self.addresses.values():
            if a.user_id == user_id and a.id != keep:
                a.is_default = False

    async def list_addresses(self, user_id: str) -> list[UserAddress]:
        return sorted(
            (a.model_copy(deep=True) for a in self.addresses.values() if a.user_id == user_id),
            key=lambda a: (not a.is_default, a.created_at),
        )

    async def get_address(self, address_id: str) -> Optional[UserAddress]:
        return self._copy(self.addresses.get(address_id))

    async def save_address(self, address: UserAddress) -> UserAddress:
        if not any(a.user_id == address.user_id for a in self.addresses.values()):
            address = _apply(address, {"is_default": True})
        self.addresses[address.id] = address.model_copy(deep=True)
        if address.is_default:
            self._unset_defaults(address.user_id, address.id)
        return self._copy(address)

    async def update_address(self, address_id: str, updates: AddressUpdate) -> Optional[UserAddress]:
        address = self.addresses.get(address_id)
        if not address:
            return None
        updated = _apply(address, updates.model_dump(exclude_unset=True))
        self.addresses[address_id] = updated
        if updated.is_default:
            self._unset_defaults(updated.user_id, address_id)
        return self._copy(updated)

    async def delete_address(self, address_id: str) -> bool:
        removed = self.addresses.pop(address_id, None)
        if removed is None:
            return False
        if removed.is_default:
            remaining = sorted((a for a in self.addresses.values() if a.user_id == removed.user_id),
                               key=lambda a: a.created_at)
            if remaining:
                remaining[0].is_default = True
        return True

    async def set_default_address(self, user_id: str, address_id: str) -> Optional[UserAddress]:
        address = self.addresses.get(address_id)
        if not address or address.user_id != user_id:
            return None
        address.is_default = True
        self._unset_defaults(user_id, address_id)
        return self._copy(address)

    # ── Admin settings ───────────────────────────────────────────────────

    async def get_setting(self, key: str) -> Optional[AdminSetting]:
        return self._copy(self.settings.get(key))

    async def set_setting(self, key: str, value: Any) -> AdminSetting:
        setting = AdminSetting(key=key, value=value)
        self.settings[key] = setting
        return self._copy(setting)

    async def list_settings(self) -> list[AdminSetting]:
        return [s.model_copy(deep=True) for s in self.settings.values()]

    # ── Subscriptions ────────────────────────────────────────────────────

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        self.subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return self._copy(subscription)

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self._copy(self.subscriptions.get(subscription_id))

    async def get_subscription_by_gateway_id(self, gateway_id: str) -> Optional[Subscription]:
        for s in self.subscriptions.values():
            if s.gateway_subscription_id == gateway_id:
                return self._copy(s)
        return None

    async def list_subscriptions(self, user_id: Optional[str] = None) -> list[Subscription]:
        return sorted(
            (s.model_copy(deep=True) for s in self.subscriptions.values()
             if user_id is None or s.user_id == user_id),
            key=lambda s: s.created_at, reverse=True,
        )

    async def update_subscription(self, subscription_id: str,
                                  updates: dict[str, Any]) -> Optional[Subscription]:
        sub = self.subscriptions.get(subscription_id)
        if not sub:
            return None
        updated = _apply(sub, {**updates, "updated_at": utcnow()})
        self.subscriptions[subscription_id] = updated
        return self._copy(updated)

    async def list_subscriptions_due(self, as_of: datetime) -> list[Subscription]:
        return [
            s.model_copy(deep=True) for s in self.subscriptions.values()
            if s.status == SubscriptionStatus.ACTIVE
            and s.next_billing_date is not None and s.next_billing_date <= as_of
        ]

    async def create_subscription_order(self, order: SubscriptionOrder) -> SubscriptionOrder:
        self.subscription_orders[order.id] = order.model_copy(deep=True)
        return self._copy(order)

    async def list_subscription_orders(self, subscription_id: Optional[str] = None,
                                       user_id: Optional[str] = None) -> list[SubscriptionOrder]:
        return sorted(
            (o.model_copy(deep=True) for o in self.subscription_orders.values()
             if (subscription_id is None or o.subscription_id == subscription_id)
             and (user_id is None or o.user_id == user_id)),
            key=lambda o: o.created_at, reverse=True,
        )


# ============================================================
# Account Linking
# ============================================================

@dataclass
class AccountLinkStatus:
    has_existing_data: bool
    needs_linking: bool
    profile_count: int
    order_count: int
    saved_build_count: int


@dataclass
class MergeSummary:
    profiles: int
    orders: int
    saved_builds: int


async def _saved_builds_by_email(repo: StoreRepository, email: str,
                                 profiles: list[UserProfile]) -> list[SavedBuild]:
    saved: list[SavedBuild] = []
    for p in profiles:
        saved.extend(await repo.list_saved_builds(p.uid))
    return saved


async def check_user_profile(repo: StoreRepository, email: str) -> AccountLinkStatus:
    profiles = await repo.get_user_profiles_by_email(email)
    orders = await repo.get_orders_by_email(email)
    saved = await _saved_builds_by_email(repo, email, profiles)
    return AccountLinkStatus(
        has_existing_data=bool(profiles or orders or saved),
        needs_linking=len(profiles) > 1,
        profile_count=len(profiles),
        order_count=len(orders),
        saved_build_count=len(saved),
    )


async def merge_user_accounts(repo: StoreRepository, current_uid: str,
                              email: str) -> MergeSummary:
    """
    Fold every profile, order and saved build sharing `email` into
    `current_uid`. Old profiles are kept but flagged with merged_into.
    """
    profiles = await repo.get_user_profiles_by_email(email)
    orders = await repo.get_orders_by_email(email)
    saved = await _saved_builds_by_email(repo, email, profiles)

    if profiles:
        primary = next((p for p in profiles if p.uid == current_uid), profiles[0])

        def first(field: str) -> Any:
            value = getattr(primary, field)
            if value:
                return value
            return next((getattr(p, field) for p in profiles if getattr(p, field)), None)

        merged = UserProfile(
            uid=current_uid,
            email=email,
            display_name=first("display_name"),
            phone=first("phone"),
            address=first("address"),
            city=first("city"),
            zip_code=first("zip_code"),
            preferences={k: v for p in reversed(profiles) for k, v in p.preferences.items()},
            created_at=min(p.created_at for p in profiles),
        )
        await repo.upsert_user_profile(merged)

    for order in orders:
        if order.user_id != current_uid:
            await repo.update_order(order.id, {"user_id": current_uid})

    already = {s.build_id for s in await repo.list_saved_builds(current_uid)}
    for s in saved:
        if s.user_id != current_uid and s.build_id not in already:
            await repo.save_build_for_user(current_uid, s.build_id)
            already.add(s.build_id)

    for p in profiles:
        if p.uid != current_uid:
            await repo.mark_profile_merged(p.uid, current_uid)

    logger.info(
        f"[accounts] merged email={email} into={current_uid} profiles={len(profiles)} "
        f"orders={len(orders)} saved_builds={len(saved)}")
    return MergeSummary(profiles=len(profiles), orders=len(orders), saved_builds=len(saved))
