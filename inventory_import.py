"""
inventory_import.py — CSV bulk import and export of PC build inventory.

Columns keep the camelCase headers of the admin spreadsheet template so
existing sheets round-trip. A bad row is reported and skipped; it never
aborts the batch. Row numbers count the header, so the first data row is 2.
"""
from __future__ import annotations

import csv
import io
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

from models import BuildCreate, BuildUpdate, PcBuild
from repository import StoreRepository

logger = logging.getLogger(__name__)

IMPORT_COLUMNS = [
    "id", "name", "category", "basePrice", "stockQuantity", "lowStockThreshold",
    "description", "processor", "motherboard", "ram", "storage", "gpu", "casePsu",
    "monitor", "keyboardMouse", "mousePad", "budgetRange", "tags", "isActive",
]
EXPORT_COLUMNS = IMPORT_COLUMNS + ["createdAt", "updatedAt"]

REQUIRED_COLUMNS = ("name", "category", "basePrice", "stockQuantity")
NUMERIC_COLUMNS = ("basePrice", "stockQuantity", "lowStockThreshold")
RECOMMENDED_COLUMNS = ("description", "processor", "gpu", "budgetRange")

# CSV header -> PcBuild field
FIELD_MAP = {
    "name": "name",
    "category": "category",
    "basePrice": "base_price",
    "stockQuantity": "stock_quantity",
    "lowStockThreshold": "low_stock_threshold",
    "description": "description",
    "processor": "processor",
    "motherboard": "motherboard",
    "ram": "ram",
    "storage": "storage",
    "gpu": "gpu",
    "casePsu": "case_psu",
    "monitor": "monitor",
    "keyboardMouse": "keyboard_mouse",
    "mousePad": "mouse_pad",
    "budgetRange": "budget_range",
    "isActive": "is_active",
}

TEMPLATE_ROW = {
    "id": "",
    "name": "Sample Gaming PC",
    "category": "Mid-Tier Creators & Gamers",
    "basePrice": "75000",
    "stockQuantity": "10",
    "lowStockThreshold": "5",
    "description": "High-performance gaming PC for enthusiasts",
    "processor": "AMD Ryzen 5 5600X",
    "motherboard": "MSI B550M PRO-VDH WiFi",
    "ram": "16GB DDR4 3200MHz",
    "storage": "512GB NVMe SSD",
    "gpu": "RTX 3060 Ti 8GB",
    "casePsu": "Mid-Tower Case + 650W PSU",
    "monitor": "Optional - contact for pricing",
    "keyboardMouse": "Optional - contact for pricing",
    "mousePad": "Optional - contact for pricing",
    "budgetRange": "₹70,000 - ₹80,000",
    "tags": "gaming;ryzen;rtx;ssd",
    "isActive": "true",
}


@dataclass
class RowIssue:
    row: int
    message: str
    data: Optional[dict[str, Any]] = None


@dataclass
class ImportResult:
    success: bool = False
    total_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    errors: list[RowIssue] = field(default_factory=list)
    warnings: list[RowIssue] = field(default_factory=list)


@dataclass
class ParsedRow:
    build_id: Optional[int]
    values: dict[str, Any]
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _number(value: str) -> Optional[float]:
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _truthy(value: str) -> bool:
    return value.strip().lower() in {"true", "1", "yes"}


def parse_row(record: dict[str, str]) -> ParsedRow:
    row = {k.strip(): (v or "").strip() for k, v in record.items() if k}
    errors: list[str] = []
    warnings: list[str] = []

    for col in REQUIRED_COLUMNS:
        if not row.get(col):
            errors.append(f"Required field '{col}' is missing or empty")
    for col in NUMERIC_COLUMNS:
        if row.get(col) and _number(row[col]) is None:
            errors.append(f"Field '{col}' must be a valid number")

    price = _number(row.get("basePrice") or "")
    if price is not None and price <= 0:
        errors.append("Base price must be greater than 0")
    stock = _number(row.get("stockQuantity") or "")
    if stock is not None and stock < 0:
        errors.append("Stock quantity cannot be negative")

    for col in RECOMMENDED_COLUMNS:
        if not row.get(col):
            warnings.append(f"Optional field '{col}' is empty but recommended")

    build_id: Optional[int] = None
    if row.get("id"):
        parsed_id = _number(row["id"])
        if parsed_id is None or parsed_id != int(parsed_id):
            errors.append("Field 'id' must be a whole number")
        else:
            build_id = int(parsed_id)

    values: dict[str, Any] = {}
    if not errors:
        for col, attr in FIELD_MAP.items():
            raw = row.get(col, "")
            if col in NUMERIC_COLUMNS:
                if raw:
                    values[attr] = int(_number(raw))
            elif col == "isActive":
                values[attr] = _truthy(raw) if raw else True
            else:
                values[attr] = raw
        values.setdefault("low_stock_threshold", 5)

    return ParsedRow(build_id=build_id, values=values, errors=errors, warnings=warnings)


class InventoryImporter:
    def __init__(self, repo: StoreRepository):
        self.repo = repo

    async def _save(self, parsed: ParsedRow) -> Optional[PcBuild]:
        if parsed.build_id is not None:
            return await self.repo.update_build(parsed.build_id, BuildUpdate(**parsed.values))
        return await self.repo.create_build(BuildCreate(**parsed.values))

    async def import_csv(self, text: str) -> ImportResult:
        result = ImportResult()
        reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
        records = [r for r in reader if any((v or "").strip() for v in r.values() if isinstance(v, str))]
        result.total_processed = len(records)

        for idx, record in enumerate(records):
            row_number = idx + 2
            parsed = parse_row(record)
            result.warnings.extend(RowIssue(row_number, w, record) for w in parsed.warnings)
            if parsed.errors:
                result.errors.extend(RowIssue(row_number, e, record) for e in parsed.errors)
                result.error_count += 1
                continue
            try:
                saved = await self._save(parsed)
            except ValidationError as e:
                result.errors.append(RowIssue(row_number, str(e.errors()[0].get("msg")), record))
                result.error_count += 1
                continue
            if saved is None:
                result.errors.append(RowIssue(row_number, f"Build {parsed.build_id} not found", record))
                result.error_count += 1
                continue
            result.success_count += 1

        result.success = result.error_count == 0
        logger.info(
            f"[import] processed={result.total_processed} ok={result.success_count} "
            f"errors={result.error_count} warnings={len(result.warnings)}")
        return result

    async def export_csv(self, category: Optional[str] = None, low_stock_only: bool = False,
                         include_inactive: bool = False) -> tuple[str, int]:
        builds = await self.repo.list_builds(include_inactive=include_inactive)
        if category:
            builds = [b for b in builds if b.category == category]
        if low_stock_only:
            builds = [b for b in builds if b.stock_quantity <= b.low_stock_threshold]

        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS, lineterminator="\n")
        writer.writeheader()
        for b in builds:
            row: dict[str, Any] = {col: getattr(b, attr) for col, attr in FIELD_MAP.items()}
            row.update({
                "id": b.id,
                "tags": "",
                "isActive": "true" if b.is_active else "false",
                "createdAt": b.created_at.isoformat(),
                "updatedAt": b.updated_at.isoformat(),
            })
            writer.writerow({k: "" if v is None else v for k, v in row.items()})
        return buf.getvalue(), len(builds)

    @staticmethod
    def template() -> str:
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=IMPORT_COLUMNS, lineterminator="\n")
        writer.writeheader()
        writer.writerow(TEMPLATE_ROW)
        return buf.getvalue()
