"""
business_settings.py — Business contact details and admin feature flags.

Business details default to the values in Settings; anything saved by an
admin (stored as the `business_settings` admin setting) overrides them
field by field.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel

from config import Settings
from errors import BadRequestError, NotFoundError
from models import AdminSetting
from repository import StoreRepository

logger = logging.getLogger(__name__)

BUSINESS_SETTINGS_KEY = "business_settings"
REQUIRED_FIELDS = ("business_email", "business_phone", "business_address", "company_name")

# Admin settings that read as a value even when nothing is stored.
ADMIN_SETTING_DEFAULTS: dict[str, Any] = {"maintenanceMode": False}


class BusinessSettings(BaseModel):
    business_email: str = ""
    business_phone: str = ""
    business_address: str = ""
    business_gst: str = ""
    business_hours: str = ""
    company_name: str = ""
    company_website: str = ""


class BusinessSettingsUpdate(BaseModel):
    business_email: Optional[str] = None
    business_phone: Optional[str] = None
    business_address: Optional[str] = None
    business_gst: Optional[str] = None
    business_hours: Optional[str] = None
    company_name: Optional[str] = None
    company_website: Optional[str] = None


def defaults_from(settings: Settings) -> BusinessSettings:
    return BusinessSettings(
        business_email=settings.business_email,
        business_phone=settings.business_phone,
        business_address=settings.business_address,
        business_gst=settings.business_gst,
        business_hours=settings.business_hours,
        company_name=settings.company_name,
        company_website=settings.company_website,
    )


class BusinessSettingsService:
    def __init__(self, repo: StoreRepository, settings: Settings):
        self.repo = repo
        self.settings = settings

    async def load(self) -> BusinessSettings:
        base = defaults_from(self.settings).model_dump()
        stored = await self.repo.get_setting(BUSINESS_SETTINGS_KEY)
        if stored is not None and isinstance(stored.value, dict):
            base.update({k: v for k, v in stored.value.items() if k in base and v})
        return BusinessSettings(**base)

    async def as_mapping(self) -> dict[str, Any]:
        """Plain dict for email templates and prompts."""
        return (await self.load()).model_dump()

    async def save(self, update: BusinessSettingsUpdate) -> BusinessSettings:
        merged = (await self.load()).model_dump()
        merged.update({k: v for k, v in update.model_dump(exclude_unset=True).items() if v is not None})

        missing = [f for f in REQUIRED_FIELDS if not str(merged.get(f) or "").strip()]
        if missing:
            raise BadRequestError(f"{missing[0]} is required", details={"missing": missing})

        await self.repo.set_setting(BUSINESS_SETTINGS_KEY, merged)
        logger.info(f"[settings] business settings saved company={merged['company_name']!r}")
        return BusinessSettings(**merged)

    # ── Admin settings ───────────────────────────────────────────────────

    async def admin_setting(self, key: str) -> AdminSetting:
        stored = await self.repo.get_setting(key)
        if stored is not None:
            return stored
        if key in ADMIN_SETTING_DEFAULTS:
            return AdminSetting(key=key, value=ADMIN_SETTING_DEFAULTS[key])
        raise NotFoundError(f"Setting '{key}' not found")

    async def set_admin_setting(self, key: str, value: Any) -> AdminSetting:
        if not key or not key.strip():
            raise BadRequestError("Setting key is required")
        setting = await self.repo.set_setting(key.strip(), value)
        logger.info(f"[settings] admin setting updated key={setting.key}")
        return setting

    async def list_admin_settings(self) -> list[AdminSetting]:
        stored = {s.key: s for s in await self.repo.list_settings() if s.key != BUSINESS_SETTINGS_KEY}
        for key, value in ADMIN_SETTING_DEFAULTS.items():
            stored.setdefault(key, AdminSetting(key=key, value=value))
        return sorted(stored.values(), key=lambda s: s.key)
