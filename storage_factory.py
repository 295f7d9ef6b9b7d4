"""
storage_factory.py — Backend selection and dual-write fan-out.

During a migration between the document store and PostgreSQL, writes for the
migrated entities go to both backends at once while each entity reads from
its configured source. Partial failures are logged, not compensated.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from config import MIGRATED_ENTITIES, Settings
from asyncpg_repository import AsyncPGStoreRepository, DatabasePool
from repository import InMemoryRepository, StoreRepository

logger = logging.getLogger(__name__)


def _reader(entity: str, name: str):
    async def method(self: "DualWriteRepository", *args, **kwargs):
        return await self._read(entity, name, *args, **kwargs)
    method.__name__ = name
    return method


def _writer(entity: str, name: str):
    async def method(self: "DualWriteRepository", *args, **kwargs):
        return await self._write(entity, name, *args, **kwargs)
    method.__name__ = name
    return method


def _primary(name: str):
    async def method(self: "DualWriteRepository", *args, **kwargs):
        return await getattr(self.primary, name)(*args, **kwargs)
    method.__name__ = name
    return method


class DualWriteRepository(StoreRepository):
    """
    Routes each StoreRepository call by entity:
      - migrated entities read from `read_sources[entity]` and, with
        dual_write on, write to both backends concurrently
      - everything else reads and writes the primary only
    """

    name = "dual"

    def __init__(
        self,
        primary: StoreRepository,
        secondary: StoreRepository,
        read_sources: Optional[dict[str, str]] = None,
        dual_write: bool = True,
    ):
        self.primary = primary
        self.secondary = secondary
        self.dual_write = dual_write
        self.read_sources = dict(read_sources or {})
        for entity, source in self.read_sources.items():
            if entity not in MIGRATED_ENTITIES:
                raise ValueError(f"Entity {entity!r} is not migratable")
            if source not in (primary.name, secondary.name):
                raise ValueError(f"Unknown read source {source!r} for {entity}")

    def _source(self, entity: str) -> StoreRepository:
        wanted = self.read_sources.get(entity, self.primary.name)
        return self.secondary if wanted == self.secondary.name else self.primary

    async def _read(self, entity: str, name: str, *args, **kwargs) -> Any:
        return await getattr(self._source(entity), name)(*args, **kwargs)

    async def _write(self, entity: str, name: str, *args, **kwargs) -> Any:
        source = self._source(entity)
        if not self.dual_write:
            return await getattr(source, name)(*args, **kwargs)

        other = self.secondary if source is self.primary else self.primary
        results = await asyncio.gather(
            getattr(source, name)(*args, **kwargs),
            getattr(other, name)(*args, **kwargs),
            return_exceptions=True,
        )
        for backend, result in zip((source, other), results):
            if isinstance(result, Exception):
                logger.error(
                    f"[storage] dual-write {name} failed on {backend.name}: {result!r}")
        if isinstance(results[0], Exception):
            raise results[0]
        return results[0]

    # ── PC builds ────────────────────────────────────────────────────────
    list_builds = _reader("pc_builds", "list_builds")
    get_builds_by_category = _reader("pc_builds", "get_builds_by_category")
    get_build = _reader("pc_builds", "get_build")
    create_build = _writer("pc_builds", "create_build")
    update_build = _writer("pc_builds", "update_build")
    update_build_stock = _writer("pc_builds", "update_build_stock")
    delete_build = _writer("pc_builds", "delete_build")

    # ── Components ───────────────────────────────────────────────────────
    list_components = _reader("components", "list_components")
    get_components_by_build = _reader("components", "get_components_by_build")
    get_component = _reader("components", "get_component")
    create_component = _writer("components", "create_component")
    update_component_stock = _writer("components", "update_component_stock")

    # ── Inventory ────────────────────────────────────────────────────────
    get_low_stock_items = _reader("pc_builds", "get_low_stock_items")
    record_stock_movement = _primary("record_stock_movement")
    list_stock_movements = _primary("list_stock_movements")

    # ── Inquiries ────────────────────────────────────────────────────────
    create_inquiry = _writer("inquiries", "create_inquiry")
    list_inquiries = _reader("inquiries", "list_inquiries")
    get_inquiry = _reader("inquiries", "get_inquiry")
    get_inquiries_by_status = _reader("inquiries", "get_inquiries_by_status")
    update_inquiry_status = _writer("inquiries", "update_inquiry_status")
    clear_inquiries = _writer("inquiries", "clear_inquiries")

    # ── User profiles ────────────────────────────────────────────────────
    get_user_profile = _reader("user_profiles", "get_user_profile")
    upsert_user_profile = _writer("user_profiles", "upsert_user_profile")
    update_user_profile = _writer("user_profiles", "update_user_profile")
    list_user_profiles = _reader("user_profiles", "list_user_profiles")
    get_user_profiles_by_email = _reader("user_profiles", "get_user_profiles_by_email")
    mark_profile_merged = _writer("user_profiles", "mark_profile_merged")

    # ── Orders ───────────────────────────────────────────────────────────
    create_order = _writer("orders", "create_order")
    list_orders = _reader("orders", "list_orders")
    get_order = _reader("orders", "get_order")
    get_orders_for_user = _reader("orders", "get_orders_for_user")
    get_orders_by_email = _reader("orders", "get_orders_by_email")
    get_order_by_gateway_id = _reader("orders", "get_order_by_gateway_id")
    update_order_status = _writer("orders", "update_order_status")
    update_order = _writer("orders", "update_order")
    clear_orders = _writer("orders", "clear_orders")

    # ── Primary-only entities ────────────────────────────────────────────
    save_build_for_user = _primary("save_build_for_user")
    list_saved_builds = _primary("list_saved_builds")
    remove_saved_build = _primary("remove_saved_build")
    list_addresses = _primary("list_addresses")
    get_address = _primary("get_address")
    save_address = _primary("save_address")
    update_address = _primary("update_address")
    delete_address = _primary("delete_address")
    set_default_address = _primary("set_default_address")
    get_setting = _primary("get_setting")
    set_setting = _primary("set_setting")
    list_settings = _primary("list_settings")
    create_subscription = _primary("create_subscription")
    get_subscription = _primary("get_subscription")
    get_subscription_by_gateway_id = _primary("get_subscription_by_gateway_id")
    list_subscriptions = _primary("list_subscriptions")
    update_subscription = _primary("update_subscription")
    list_subscriptions_due = _primary("list_subscriptions_due")
    create_subscription_order = _primary("create_subscription_order")
    list_subscription_orders = _primary("list_subscription_orders")

    async def close(self) -> None:
        await asyncio.gather(self.primary.close(), self.secondary.close())


# ============================================================
# Factory
# ============================================================

async def _postgres_backend(settings: Settings,
                            pool: Optional[DatabasePool]) -> AsyncPGStoreRepository:
    if pool is None:
        pool = DatabasePool(settings.asyncpg_dsn, settings.db_pool_min, settings.db_pool_max)
        await pool.initialize()
    repo = AsyncPGStoreRepository(pool)
    await repo.ensure_schema()
    return repo


async def create_storage(settings: Settings,
                         pool: Optional[DatabasePool] = None) -> StoreRepository:
    """
    Build the repository the app runs on.

    memory driver, no dual-write  → InMemoryRepository
    memory driver, dual-write     → DualWriteRepository(memory, postgres)
    postgres driver               → DualWriteRepository(postgres, memory), so the
                                    per-entity read sources stay meaningful
    """
    if settings.storage_driver == "memory" and not settings.storage_dual_write:
        logger.info("[storage] driver=memory dual_write=False")
        return InMemoryRepository()

    postgres = await _postgres_backend(settings, pool)
    memory = InMemoryRepository()
    if settings.storage_driver == "postgres":
        primary, secondary = postgres, memory
    else:
        primary, secondary = memory, postgres

    read_sources = {entity: settings.read_source(entity) for entity in MIGRATED_ENTITIES}
    logger.info(
        f"[storage] driver={settings.storage_driver} "
        f"dual_write={settings.storage_dual_write} reads={read_sources}")
    return DualWriteRepository(
        primary, secondary, read_sources=read_sources,
        dual_write=settings.storage_dual_write,
    )
