"""
Tests for CSV inventory import and export.
"""
import csv
import io

import pytest

from conftest import run
from inventory_import import EXPORT_COLUMNS, IMPORT_COLUMNS, InventoryImporter, parse_row


def csv_text(*rows: dict) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=IMPORT_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


class TestParseRow:

    def test_valid_row(self):
        parsed = parse_row({"name": "X", "category": "Budget Builders", "basePrice": "30000",
                            "stockQuantity": "4", "isActive": "no"})
        assert parsed.errors == []
        assert parsed.values["base_price"] == 30000
        assert parsed.values["low_stock_threshold"] == 5
        assert parsed.values["is_active"] is False

    def test_required_and_numeric_errors(self):
        parsed = parse_row({"name": "", "category": "C", "basePrice": "abc", "stockQuantity": "-1"})
        assert "Required field 'name' is missing or empty" in parsed.errors
        assert "Field 'basePrice' must be a valid number" in parsed.errors
        assert "Stock quantity cannot be negative" in parsed.errors
        assert parsed.values == {}

    def test_price_must_be_positive(self):
        parsed = parse_row({"name": "X", "category": "C", "basePrice": "0", "stockQuantity": "1"})
        assert parsed.errors == ["Base price must be greater than 0"]

    def test_non_finite_numbers_rejected(self):
        parsed = parse_row({"name": "X", "category": "C", "basePrice": "inf", "stockQuantity": "1"})
        assert "Field 'basePrice' must be a valid number" in parsed.errors

    def test_recommended_fields_warn(self):
        parsed = parse_row({"name": "X", "category": "C", "basePrice": "1", "stockQuantity": "1"})
        assert "Optional field 'gpu' is empty but recommended" in parsed.warnings


class TestImport:

    def test_creates_and_updates(self, repo):
        text = csv_text(
            {"name": "New Build", "category": "Budget Builders", "basePrice": "25000", "stockQuantity": "3"},
            {"id": "1", "name": "Performance Gamer v2", "category": "Performance Gamers",
             "basePrice": "82000", "stockQuantity": "7"},
        )
        result = run(InventoryImporter(repo).import_csv(text))
        assert result.success is True
        assert result.total_processed == 2
        assert result.success_count == 2
        assert run(repo.get_build(1)).name == "Performance Gamer v2"
        assert run(repo.get_build(3)).name == "New Build"

    def test_bad_rows_are_reported_not_fatal(self, repo):
        text = csv_text(
            {"name": "", "category": "C", "basePrice": "1", "stockQuantity": "1"},
            {"id": "99", "name": "Ghost", "category": "C", "basePrice": "1", "stockQuantity": "1"},
            {"name": "Fine", "category": "C", "basePrice": "100", "stockQuantity": "1"},
        )
        result = run(InventoryImporter(repo).import_csv(text))
        assert result.success is False
        assert result.success_count == 1
        assert result.error_count == 2
        assert [e.row for e in result.errors] == [2, 3]
        assert result.errors[1].message == "Build 99 not found"

    def test_blank_lines_and_bom_ignored(self, repo):
        text = "\ufeff" + csv_text(
            {"name": "A", "category": "C", "basePrice": "100", "stockQuantity": "1"}) + ",,,\n"
        result = run(InventoryImporter(repo).import_csv(text))
        assert result.total_processed == 1
        assert result.success_count == 1


class TestExport:

    def test_export_filters(self, repo):
        content, count = run(InventoryImporter(repo).export_csv(low_stock_only=True))
        rows = list(csv.DictReader(io.StringIO(content)))
        assert count == 1
        assert rows[0]["name"] == "Budget Starter"
        assert list(rows[0].keys()) == EXPORT_COLUMNS

    def test_export_by_category(self, repo):
        _, count = run(InventoryImporter(repo).export_csv(category="Performance Gamers"))
        assert count == 1

    def test_template_round_trips_through_import(self, repo):
        result = run(InventoryImporter(repo).import_csv(InventoryImporter.template()))
        assert result.success is True
        assert result.success_count == 1
