"""
asyncpg_repository.py — PostgreSQL implementation of StoreRepository.

Uses an asyncpg connection pool with a JSONB codec so items, preferences and
setting values travel as plain Python objects. Integer ids follow the same
max+1 rule as the document store, which keeps both backends aligned while
dual-writing.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Type, TypeVar

import asyncpg
from pydantic import BaseModel

from models import (
    PcBuild, BuildCreate, BuildUpdate, Component, ComponentCreate,
    Inquiry, InquiryCreate, InquiryStatus,
    UserProfile, ProfileUpdate, SavedBuild, UserAddress, AddressUpdate,
    AdminSetting, Order, OrderCreate, OrderStatus,
    StockMovement, ItemType, LowStockReport, MovementType,
    Subscription, SubscriptionOrder, SubscriptionStatus,
    utcnow,
)
from repository import StoreRepository

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pc_builds (
    id                  INTEGER PRIMARY KEY,
    name                TEXT NOT NULL,
    category            TEXT NOT NULL,
    build_type          TEXT NOT NULL DEFAULT 'standard',
    budget_range        TEXT NOT NULL DEFAULT '',
    base_price          INTEGER NOT NULL CHECK (base_price > 0),
    profit_margin       INTEGER NOT NULL DEFAULT 0,
    total_price         INTEGER NOT NULL,
    description         TEXT,
    image_url           TEXT,
    processor           TEXT NOT NULL DEFAULT '',
    motherboard         TEXT NOT NULL DEFAULT '',
    ram                 TEXT NOT NULL DEFAULT '',
    storage             TEXT NOT NULL DEFAULT '',
    gpu                 TEXT,
    case_psu            TEXT NOT NULL DEFAULT '',
    monitor             TEXT,
    keyboard_mouse      TEXT,
    mouse_pad           TEXT,
    stock_quantity      INTEGER NOT NULL DEFAULT 0 CHECK (stock_quantity >= 0),
    low_stock_threshold INTEGER NOT NULL DEFAULT 2,
    is_active           BOOLEAN NOT NULL DEFAULT TRUE,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_pc_builds_category ON pc_builds (category);

CREATE TABLE IF NOT EXISTS components (
    id                  INTEGER PRIMARY KEY,
    build_id            INTEGER NOT NULL,
    name                TEXT NOT NULL,
    specification       TEXT NOT NULL DEFAULT '',
    price               TEXT NOT NULL DEFAULT '0',
    type                TEXT NOT NULL,
    stock_quantity      INTEGER NOT NULL DEFAULT 0 CHECK (stock_quantity >= 0),
    low_stock_threshold INTEGER NOT NULL DEFAULT 5,
    is_active           BOOLEAN NOT NULL DEFAULT TRUE,
    sku                 TEXT
);
CREATE INDEX IF NOT EXISTS idx_components_build ON components (build_id);

CREATE TABLE IF NOT EXISTS inquiries (
    id          INTEGER PRIMARY KEY,
    name        TEXT NOT NULL,
    email       TEXT NOT NULL,
    phone       TEXT,
    budget      TEXT NOT NULL,
    use_case    TEXT NOT NULL,
    details     TEXT NOT NULL,
    message     TEXT,
    status      TEXT NOT NULL DEFAULT 'uncompleted',
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS user_profiles (
    uid          TEXT PRIMARY KEY,
    email        TEXT NOT NULL,
    display_name TEXT,
    phone        TEXT,
    address      TEXT,
    city         TEXT,
    zip_code     TEXT,
    preferences  JSONB NOT NULL DEFAULT '{}',
    merged_into  TEXT,
    merged_at    TIMESTAMPTZ,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_user_profiles_email ON user_profiles (lower(email));

CREATE TABLE IF NOT EXISTS orders (
    id                 INTEGER PRIMARY KEY,
    user_id            TEXT NOT NULL,
    order_number       TEXT NOT NULL,
    status             TEXT NOT NULL,
    total              DOUBLE PRECISION NOT NULL,
    items              JSONB NOT NULL DEFAULT '[]',
    customer_name      TEXT NOT NULL,
    customer_email     TEXT NOT NULL,
    customer_phone     TEXT,
    shipping_address   TEXT NOT NULL DEFAULT '',
    billing_address    TEXT NOT NULL DEFAULT '',
    payment_method     TEXT NOT NULL,
    gateway_order_id   TEXT,
    gateway_payment_id TEXT,
    discount_code      TEXT,
    discount_amount    DOUBLE PRECISION NOT NULL DEFAULT 0,
    tracking_number    TEXT,
    notes              TEXT,
    created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at         TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_orders_user ON orders (user_id);
CREATE INDEX IF NOT EXISTS idx_orders_email ON orders (lower(customer_email));
CREATE INDEX IF NOT EXISTS idx_orders_gateway ON orders (gateway_order_id);

CREATE TABLE IF NOT EXISTS saved_builds (
    id       TEXT PRIMARY KEY,
    user_id  TEXT NOT NULL,
    build_id INTEGER NOT NULL,
    saved_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (user_id, build_id)
);

CREATE TABLE IF NOT EXISTS user_addresses (
    id         TEXT PRIMARY KEY,
    user_id    TEXT NOT NULL,
    full_name  TEXT NOT NULL,
    phone      TEXT NOT NULL,
    address    TEXT NOT NULL,
    city       TEXT NOT NULL,
    zip_code   TEXT NOT NULL,
    is_default BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_user_addresses_user ON user_addresses (user_id);

CREATE TABLE IF NOT EXISTS admin_settings (
    key        TEXT PRIMARY KEY,
    value      JSONB,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS stock_movements (
    id             TEXT PRIMARY KEY,
    item_id        INTEGER NOT NULL,
    item_type      TEXT NOT NULL,
    movement_type  TEXT NOT NULL,
    quantity       INTEGER NOT NULL,
    previous_stock INTEGER NOT NULL,
    new_stock      INTEGER NOT NULL,
    reason         TEXT NOT NULL DEFAULT '',
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_stock_movements_item ON stock_movements (item_type, item_id);

CREATE TABLE IF NOT EXISTS subscriptions (
    id                      TEXT PRIMARY KEY,
    user_id                 TEXT NOT NULL,
    plan_id                 TEXT NOT NULL,
    plan_name               TEXT NOT NULL,
    status                  TEXT NOT NULL,
    billing_cycle           TEXT NOT NULL,
    base_price              DOUBLE PRECISION NOT NULL,
    discount_percentage     DOUBLE PRECISION NOT NULL DEFAULT 0,
    final_price             DOUBLE PRECISION NOT NULL,
    items                   JSONB NOT NULL DEFAULT '[]',
    current_period_start    TIMESTAMPTZ NOT NULL,
    current_period_end      TIMESTAMPTZ,
    next_billing_date       TIMESTAMPTZ,
    customer_name           TEXT NOT NULL,
    customer_email          TEXT NOT NULL,
    shipping_address        TEXT NOT NULL,
    payment_method          TEXT NOT NULL,
    gateway_subscription_id TEXT,
    total_delivered         INTEGER NOT NULL DEFAULT 0,
    successful_payments     INTEGER NOT NULL DEFAULT 0,
    failed_payments         INTEGER NOT NULL DEFAULT 0,
    cancelled_at            TIMESTAMPTZ,
    cancellation_reason     TEXT,
    created_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at              TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions (user_id);

CREATE TABLE IF NOT EXISTS subscription_orders (
    id              TEXT PRIMARY KEY,
    subscription_id TEXT NOT NULL,
    user_id         TEXT NOT NULL,
    order_number    TEXT NOT NULL,
    status          TEXT NOT NULL,
    amount          DOUBLE PRECISION NOT NULL,
    items           JSONB NOT NULL DEFAULT '[]',
    billing_period  TEXT NOT NULL,
    payment_id      TEXT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

# Columns stored as JSONB, per table.
JSON_COLUMNS = {
    "user_profiles": {"preferences"},
    "orders": {"items"},
    "admin_settings": {"value"},
    "subscriptions": {"items"},
    "subscription_orders": {"items"},
}


# ── Connection Pool Manager ──────────────────────────────────────────────────

class DatabasePool:
    """Owns the asyncpg pool for the process."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=30,
            init=self._init_connection,
        )
        logger.info(f"[db] pool ready min={self.min_size} max={self.max_size}")

    async def _init_connection(self, conn: asyncpg.Connection) -> None:
        """Per-connection setup: JSONB in and out as Python objects."""
        await conn.set_type_codec(
            "jsonb",
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self):
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("[db] pool closed")


def _to_row(table: str, model: BaseModel, exclude: Optional[set[str]] = None) -> dict[str, Any]:
    """Model → column dict: enums as their values, JSONB columns in JSON mode."""
    data = model.model_dump(exclude=exclude)
    json_cols = JSON_COLUMNS.get(table, set())
    if json_cols:
        json_data = model.model_dump(mode="json", include=json_cols)
        data.update(json_data)
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in data.items()}


def _clean(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _model(cls: Type[M], row: Optional[asyncpg.Record]) -> Optional[M]:
    return cls.model_validate(dict(row)) if row else None


# ── Store Repository ─────────────────────────────────────────────────────────

class AsyncPGStoreRepository(StoreRepository):
    """Relational backend for every StoreRepository operation."""

    name = "postgres"

    def __init__(self, db: DatabasePool):
        self.db = db

    async def ensure_schema(self) -> None:
        async with self.db.transaction() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("[db] schema ensured")

    async def close(self) -> None:
        await self.db.close()

    # ── Generic helpers ──────────────────────────────────────────────────

    async def _insert(self, conn, table: str, row: dict[str, Any],
                      with_next_id: bool = False) -> asyncpg.Record:
        cols = list(row.keys())
        vals = list(row.values())
        placeholders = [f"${i+1}" for i in range(len(vals))]
        if with_next_id:
            query = (
                f"INSERT INTO {table} (id, {', '.join(cols)}) "
                f"SELECT COALESCE(MAX(id), 0) + 1, {', '.join(placeholders)} FROM {table} "
                f"RETURNING *"
            )
        else:
            query = (
                f"INSERT INTO {table} ({', '.join(cols)}) "
                f"VALUES ({', '.join(placeholders)}) RETURNING *"
            )
        return await conn.fetchrow(query, *vals)

    async def _update(self, table: str, key_col: str, key: Any,
                      changes: dict[str, Any]) -> Optional[asyncpg.Record]:
        if not changes:
            async with self.db.acquire() as conn:
                return await conn.fetchrow(f"SELECT * FROM {table} WHERE {key_col} = $1", key)
        sets, vals = [], []
        for idx, (k, v) in enumerate(changes.items(), start=1):
            sets.append(f"{k} = ${idx}")
            vals.append(_clean(v))
        vals.append(key)
        query = (
            f"UPDATE {table} SET {', '.join(sets)} "
            f"WHERE {key_col} = ${len(vals)} RETURNING *"
        )
        async with self.db.acquire() as conn:
            return await conn.fetchrow(query, *vals)

    async def _fetch(self, cls: Type[M], query: str, *args) -> list[M]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [cls.model_validate(dict(r)) for r in rows]

    async def _fetchrow(self, cls: Type[M], query: str, *args) -> Optional[M]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(query, *args)
        return _model(cls, row)

    async def _set_stock(self, table: str, item_type: ItemType, item_id: int,
                         quantity: int, reason: str, touch: bool) -> Optional[asyncpg.Record]:
        async with self.db.transaction() as conn:
            current = await conn.fetchrow(
                f"SELECT stock_quantity FROM {table} WHERE id = $1 FOR UPDATE", item_id)
            if not current:
                return None
            previous = current["stock_quantity"]
            if touch:
                row = await conn.fetchrow(
                    f"UPDATE {table} SET stock_quantity = $1, updated_at = $2 "
                    f"WHERE id = $3 RETURNING *",
                    quantity, utcnow(), item_id)
            else:
                row = await conn.fetchrow(
                    f"UPDATE {table} SET stock_quantity = $1 WHERE id = $2 RETURNING *",
                    quantity, item_id)
            kind = (MovementType.IN if quantity > previous
                    else MovementType.OUT if quantity < previous
                    else MovementType.ADJUSTMENT)
            movement = StockMovement(
                item_id=item_id, item_type=item_type, movement_type=kind,
                quantity=abs(quantity - previous), previous_stock=previous,
                new_stock=quantity, reason=reason,
            )
            await self._insert(conn, "stock_movements", _to_row("stock_movements", movement))
            return row

    # ── PC builds ────────────────────────────────────────────────────────

    async def list_builds(self, include_inactive: bool = False) -> list[PcBuild]:
        if include_inactive:
            return await self._fetch(PcBuild, "SELECT * FROM pc_builds ORDER BY id")
        return await self._fetch(PcBuild, "SELECT * FROM pc_builds WHERE is_active ORDER BY id")

    async def get_builds_by_category(self, category: str) -> list[PcBuild]:
        return await self._fetch(
            PcBuild,
            "SELECT * FROM pc_builds WHERE category = $1 AND is_active ORDER BY id",
            category)

    async def get_build(self, build_id: int) -> Optional[PcBuild]:
        return await self._fetchrow(PcBuild, "SELECT * FROM pc_builds WHERE id = $1", build_id)

    async def create_build(self, data: BuildCreate) -> PcBuild:
        row = _to_row("pc_builds", data)
        now = utcnow()
        row.update(created_at=now, updated_at=now)
        async with self.db.transaction() as conn:
            await conn.execute("LOCK TABLE pc_builds IN SHARE ROW EXCLUSIVE MODE")
            record = await self._insert(conn, "pc_builds", row, with_next_id=True)
        logger.info(f"[db] created build id={record['id']} name={data.name}")
        return PcBuild.model_validate(dict(record))

    async def update_build(self, build_id: int, updates: BuildUpdate) -> Optional[PcBuild]:
        changes = updates.model_dump(exclude_unset=True)
        stock = changes.pop("stock_quantity", None)
        if stock is not None:
            if not await self._set_stock("pc_builds", ItemType.BUILD, build_id,
                                         stock, "build update", touch=True):
                return None
        changes["updated_at"] = utcnow()
        return _model(PcBuild, await self._update("pc_builds", "id", build_id, changes))

    async def update_build_stock(self, build_id: int, quantity: int,
                                 reason: str = "manual update") -> Optional[PcBuild]:
        row = await self._set_stock("pc_builds", ItemType.BUILD, build_id,
                                    quantity, reason, touch=True)
        return _model(PcBuild, row)

    async def delete_build(self, build_id: int) -> bool:
        async with self.db.transaction() as conn:
            await conn.execute("DELETE FROM components WHERE build_id = $1", build_id)
            result = await conn.execute("DELETE FROM pc_builds WHERE id = $1", build_id)
        return result.endswith(" 1")

    # ── Components ───────────────────────────────────────────────────────

    async def list_components(self) -> list[Component]:
        return await self._fetch(Component, "SELECT * FROM components ORDER BY id")

    async def get_components_by_build(self, build_id: int) -> list[Component]:
        return await self._fetch(
            Component, "SELECT * FROM components WHERE build_id = $1 ORDER BY id", build_id)

    async def get_component(self, component_id: int) -> Optional[Component]:
        return await self._fetchrow(
            Component, "SELECT * FROM components WHERE id = $1", component_id)

    async def create_component(self, data: ComponentCreate) -> Component:
        async with self.db.transaction() as conn:
            await conn.execute("LOCK TABLE components IN SHARE ROW EXCLUSIVE MODE")
            record = await self._insert(conn, "components", _to_row("components", data),
                                        with_next_id=True)
        return Component.model_validate(dict(record))

    async def update_component_stock(self, component_id: int, quantity: int,
                                     reason: str = "manual update") -> Optional[Component]:
        row = await self._set_stock("components", ItemType.COMPONENT, component_id,
                                    quantity, reason, touch=False)
        return _model(Component, row)

    # ── Inventory ────────────────────────────────────────────────────────

    async def get_low_stock_items(self) -> LowStockReport:
        builds = await self._fetch(
            PcBuild,
            "SELECT * FROM pc_builds WHERE is_active AND stock_quantity <= low_stock_threshold "
            "ORDER BY id")
        components = await self._fetch(
            Component,
            "SELECT * FROM components WHERE is_active AND stock_quantity <= low_stock_threshold "
            "ORDER BY id")
        return LowStockReport(builds=builds, components=components)

    async def record_stock_movement(self, movement: StockMovement) -> StockMovement:
        async with self.db.acquire() as conn:
            await self._insert(conn, "stock_movements", _to_row("stock_movements", movement))
        return movement

    async def list_stock_movements(self, item_id: Optional[int] = None,
                                   item_type: Optional[ItemType] = None) -> list[StockMovement]:
        conditions, vals = [], []
        if item_id is not None:
            vals.append(item_id)
            conditions.append(f"item_id = ${len(vals)}")
        if item_type is not None:
            vals.append(_clean(item_type))
            conditions.append(f"item_type = ${len(vals)}")
        where = "WHERE " + " AND ".join(conditions) if conditions else ""
        return await self._fetch(
            StockMovement,
            f"SELECT * FROM stock_movements {where} ORDER BY created_at DESC", *vals)

    # ── Inquiries ────────────────────────────────────────────────────────

    async def create_inquiry(self, data: InquiryCreate) -> Inquiry:
        row = _to_row("inquiries", data)
        row.update(status=InquiryStatus.UNCOMPLETED.value, created_at=utcnow())
        async with self.db.transaction() as conn:
            await conn.execute("LOCK TABLE inquiries IN SHARE ROW EXCLUSIVE MODE")
            record = await self._insert(conn, "inquiries", row, with_next_id=True)
        return Inquiry.model_validate(dict(record))

    async def list_inquiries(self) -> list[Inquiry]:
        return await self._fetch(Inquiry, "SELECT * FROM inquiries ORDER BY created_at DESC, id DESC")

    async def get_inquiry(self, inquiry_id: int) -> Optional[Inquiry]:
        return await self._fetchrow(Inquiry, "SELECT * FROM inquiries WHERE id = $1", inquiry_id)

    async def get_inquiries_by_status(self, status: InquiryStatus) -> list[Inquiry]:
        return await self._fetch(
            Inquiry,
            "SELECT * FROM inquiries WHERE status = $1 ORDER BY created_at DESC, id DESC",
            _clean(status))

    async def update_inquiry_status(self, inquiry_id: int,
                                    status: InquiryStatus) -> Optional[Inquiry]:
        return _model(Inquiry, await self._update("inquiries", "id", inquiry_id, {"status": status}))

    async def clear_inquiries(self) -> int:
        async with self.db.acquire() as conn:
            result = await conn.execute("DELETE FROM inquiries")
        return int(result.split()[-1])

    # ── User profiles ────────────────────────────────────────────────────

    async def get_user_profile(self, uid: str) -> Optional[UserProfile]:
        return await self._fetchrow(UserProfile, "SELECT * FROM user_profiles WHERE uid = $1", uid)

    async def upsert_user_profile(self, profile: UserProfile) -> UserProfile:
        row = _to_row("user_profiles", profile)
        cols = list(row.keys())
        placeholders = [f"${i+1}" for i in range(len(cols))]
        updates = [f"{c} = EXCLUDED.{c}" for c in cols if c not in ("uid", "created_at", "updated_at")]
        updates.append("updated_at = now()")
        query = (
            f"INSERT INTO user_profiles ({', '.join(cols)}) VALUES ({', '.join(placeholders)}) "
            f"ON CONFLICT (uid) DO UPDATE SET {', '.join(updates)} RETURNING *"
        )
        async with self.db.acquire() as conn:
            record = await conn.fetchrow(query, *row.values())
        return UserProfile.model_validate(dict(record))

    async def update_user_profile(self, uid: str, updates: ProfileUpdate) -> Optional[UserProfile]:
        changes = updates.model_dump(exclude_unset=True)
        changes["updated_at"] = utcnow()
        return _model(UserProfile, await self._update("user_profiles", "uid", uid, changes))

    async def list_user_profiles(self) -> list[UserProfile]:
        return await self._fetch(
            UserProfile,
            "SELECT * FROM user_profiles WHERE merged_into IS NULL ORDER BY created_at")

    async def get_user_profiles_by_email(self, email: str) -> list[UserProfile]:
        return await self._fetch(
            UserProfile,
            "SELECT * FROM user_profiles WHERE lower(email) = lower($1) ORDER BY created_at",
            email.strip())

    async def mark_profile_merged(self, uid: str, merged_into: str) -> None:
        await self._update("user_profiles", "uid", uid,
                           {"merged_into": merged_into, "merged_at": utcnow()})

    # ── Orders ───────────────────────────────────────────────────────────

    async def create_order(self, data: OrderCreate) -> Order:
        row = _to_row("orders", data)
        row["updated_at"] = utcnow()
        async with self.db.transaction() as conn:
            await conn.execute("LOCK TABLE orders IN SHARE ROW EXCLUSIVE MODE")
            record = await self._insert(conn, "orders", row, with_next_id=True)
        return Order.model_validate(dict(record))

    async def list_orders(self) -> list[Order]:
        return await self._fetch(Order, "SELECT * FROM orders ORDER BY created_at DESC, id DESC")

    async def get_order(self, order_id: int) -> Optional[Order]:
        return await self._fetchrow(Order, "SELECT * FROM orders WHERE id = $1", order_id)

    async def get_orders_for_user(self, user_id: str,
                                  email: Optional[str] = None) -> list[Order]:
        if email:
            return await self._fetch(
                Order,
                "SELECT * FROM orders WHERE user_id = $1 OR lower(customer_email) = lower($2) "
                "ORDER BY created_at DESC, id DESC",
                user_id, email.strip())
        return await self._fetch(
            Order, "SELECT * FROM orders WHERE user_id = $1 ORDER BY created_at DESC, id DESC",
            user_id)

    async def get_orders_by_email(self, email: str) -> list[Order]:
        return await self._fetch(
            Order,
            "SELECT * FROM orders WHERE lower(customer_email) = lower($1) "
            "ORDER BY created_at DESC, id DESC",
            email.strip())

    async def get_order_by_gateway_id(self, gateway_order_id: str) -> Optional[Order]:
        return await self._fetchrow(
            Order, "SELECT * FROM orders WHERE gateway_order_id = $1 ORDER BY id DESC LIMIT 1",
            gateway_order_id)

    async def update_order_status(self, order_id: int, status: OrderStatus) -> Optional[Order]:
        return await self.update_order(order_id, {"status": status})

    async def update_order(self, order_id: int, updates: dict[str, Any]) -> Optional[Order]:
        changes = dict(updates)
        if "items" in changes:
            changes["items"] = [
                i.model_dump(mode="json") if isinstance(i, BaseModel) else i
                for i in changes["items"]
            ]
        changes["updated_at"] = utcnow()
        return _model(Order, await self._update("orders", "id", order_id, changes))

    async def clear_orders(self) -> int:
        async with self.db.acquire() as conn:
            result = await conn.execute("DELETE FROM orders")
        return int(result.split()[-1])

    # ── Saved builds ─────────────────────────────────────────────────────

    async def save_build_for_user(self, user_id: str, build_id: int) -> SavedBuild:
        saved = SavedBuild(user_id=user_id, build_id=build_id)
        async with self.db.acquire() as conn:
            await conn.execute(
                "INSERT INTO saved_builds (id, user_id, build_id, saved_at) "
                "VALUES ($1, $2, $3, $4) ON CONFLICT (user_id, build_id) DO NOTHING",
                saved.id, user_id, build_id, saved.saved_at)
            row = await conn.fetchrow(
                "SELECT * FROM saved_builds WHERE user_id = $1 AND build_id = $2",
                user_id, build_id)
        return SavedBuild.model_validate(dict(row))

    async def list_saved_builds(self, user_id: str) -> list[SavedBuild]:
        return await self._fetch(
            SavedBuild,
            "SELECT * FROM saved_builds WHERE user_id = $1 ORDER BY saved_at DESC", user_id)

    async def remove_saved_build(self, user_id: str, build_id: int) -> bool:
        async with self.db.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM saved_builds WHERE user_id = $1 AND build_id = $2",
                user_id, build_id)
        return result.endswith(" 1")

    # ── Addresses ────────────────────────────────────────────────────────

    async def list_addresses(self, user_id: str) -> list[UserAddress]:
        return await self._fetch(
            UserAddress,
            "SELECT * FROM user_addresses WHERE user_id = $1 "
            "ORDER BY is_default DESC, created_at", user_id)

    async def get_address(self, address_id: str) -> Optional[UserAddress]:
        return await self._fetchrow(
            UserAddress, "SELECT * FROM user_addresses WHERE id = $1", address_id)

    async def save_address(self, address: UserAddress) -> UserAddress:
        row = _to_row("user_addresses", address)
        async with self.db.transaction() as conn:
            existing = await conn.fetchval(
                "SELECT count(*) FROM user_addresses WHERE user_id = $1", address.user_id)
            if not existing:
                row["is_default"] = True
            if row["is_default"]:
                await conn.execute(
                    "UPDATE user_addresses SET is_default = FALSE WHERE user_id = $1",
                    address.user_id)
            record = await self._insert(conn, "user_addresses", row)
        return UserAddress.model_validate(dict(record))

    async def update_address(self, address_id: str, updates: AddressUpdate) -> Optional[UserAddress]:
        changes = updates.model_dump(exclude_unset=True)
        async with self.db.transaction() as conn:
            current = await conn.fetchrow(
                "SELECT user_id FROM user_addresses WHERE id = $1", address_id)
            if not current:
                return None
            if changes.get("is_default"):
                await conn.execute(
                    "UPDATE user_addresses SET is_default = FALSE WHERE user_id = $1 AND id <> $2",
                    current["user_id"], address_id)
        return _model(UserAddress, await self._update("user_addresses", "id", address_id, changes))

    async def delete_address(self, address_id: str) -> bool:
        async with self.db.transaction() as conn:
            removed = await conn.fetchrow(
                "DELETE FROM user_addresses WHERE id = $1 RETURNING user_id, is_default", address_id)
            if not removed:
                return False
            if removed["is_default"]:
                await conn.execute(
                    "UPDATE user_addresses SET is_default = TRUE WHERE id = ("
                    "SELECT id FROM user_addresses WHERE user_id = $1 "
                    "ORDER BY created_at ASC LIMIT 1)",
                    removed["user_id"])
        return True

    async def set_default_address(self, user_id: str, address_id: str) -> Optional[UserAddress]:
        async with self.db.transaction() as conn:
            row = await conn.fetchrow(
                "UPDATE user_addresses SET is_default = TRUE "
                "WHERE id = $1 AND user_id = $2 RETURNING *",
                address_id, user_id)
            if not row:
                return None
            await conn.execute(
                "UPDATE user_addresses SET is_default = FALSE WHERE user_id = $1 AND id <> $2",
                user_id, address_id)
        return _model(UserAddress, row)

    # ── Admin settings ───────────────────────────────────────────────────

    async def get_setting(self, key: str) -> Optional[AdminSetting]:
        return await self._fetchrow(AdminSetting, "SELECT * FROM admin_settings WHERE key = $1", key)

    async def set_setting(self, key: str, value: Any) -> AdminSetting:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                "INSERT INTO admin_settings (key, value, updated_at) VALUES ($1, $2, now()) "
                "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now() "
                "RETURNING *",
                key, value)
        return AdminSetting.model_validate(dict(row))

    async def list_settings(self) -> list[AdminSetting]:
        return await self._fetch(AdminSetting, "SELECT * FROM admin_settings ORDER BY key")

    # ── Subscriptions ────────────────────────────────────────────────────

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        async with self.db.acquire() as conn:
            record = await self._insert(conn, "subscriptions",
                                        _to_row("subscriptions", subscription))
        return Subscription.model_validate(dict(record))

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return await self._fetchrow(
            Subscription, "SELECT * FROM subscriptions WHERE id = $1", subscription_id)

    async def get_subscription_by_gateway_id(self, gateway_id: str) -> Optional[Subscription]:
        return await self._fetchrow(
            Subscription,
            "SELECT * FROM subscriptions WHERE gateway_subscription_id = $1", gateway_id)

    async def list_subscriptions(self, user_id: Optional[str] = None) -> list[Subscription]:
        if user_id is None:
            return await self._fetch(
                Subscription, "SELECT * FROM subscriptions ORDER BY created_at DESC")
        return await self._fetch(
            Subscription,
            "SELECT * FROM subscriptions WHERE user_id = $1 ORDER BY created_at DESC", user_id)

    async def update_subscription(self, subscription_id: str,
                                  updates: dict[str, Any]) -> Optional[Subscription]:
        changes = dict(updates)
        if "items" in changes:
            changes["items"] = [
                i.model_dump(mode="json") if isinstance(i, BaseModel) else i
                for i in changes["items"]
            ]
        changes["updated_at"] = utcnow()
        return _model(Subscription,
                      await self._update("subscriptions", "id", subscription_id, changes))

    async def list_subscriptions_due(self, as_of: datetime) -> list[Subscription]:
        return await self._fetch(
            Subscription,
            "SELECT * FROM subscriptions WHERE status = $1 AND next_billing_date <= $2",
            SubscriptionStatus.ACTIVE.value, as_of)

    async def create_subscription_order(self, order: SubscriptionOrder) -> SubscriptionOrder:
        async with self.db.acquire() as conn:
            record = await self._insert(conn, "subscription_orders",
                                        _to_row("subscription_orders", order))
        return SubscriptionOrder.model_validate(dict(record))

    async def list_subscription_orders(self, subscription_id: Optional[str] = None,
                                       user_id: Optional[str] = None) -> list[SubscriptionOrder]:
        conditions, vals = [], []
        if subscription_id is not None:
            vals.append(subscription_id)
            conditions.append(f"subscription_id = ${len(vals)}")
        if user_id is not None:
            vals.append(user_id)
            conditions.append(f"user_id = ${len(vals)}")
        where = "WHERE " + " AND ".join(conditions) if conditions else ""
        return await self._fetch(
            SubscriptionOrder,
            f"SELECT * FROM subscription_orders {where} ORDER BY created_at DESC", *vals)
