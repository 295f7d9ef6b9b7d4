"""
Tests for backend selection and dual-write routing.
"""
from unittest.mock import AsyncMock

import pytest

from conftest import make_settings, run
from models import BuildCreate, InquiryCreate
from repository import InMemoryRepository
from storage_factory import DualWriteRepository, create_storage


def backends():
    primary = InMemoryRepository()
    secondary = InMemoryRepository()
    secondary.name = "postgres"
    return primary, secondary


def build(name="Mirror Build"):
    return BuildCreate(name=name, category="Budget Builders", base_price=20000)


class TestCreateStorage:

    def test_memory_driver_without_dual_write(self):
        repo = run(create_storage(make_settings()))
        assert isinstance(repo, InMemoryRepository)


class TestDualWrite:

    def test_writes_reach_both_backends(self):
        primary, secondary = backends()
        repo = DualWriteRepository(primary, secondary)
        run(repo.create_build(build()))
        assert len(run(primary.list_builds())) == 1
        assert len(run(secondary.list_builds())) == 1

    def test_reads_follow_configured_source(self):
        primary, secondary = backends()
        run(secondary.create_build(build("Only In Postgres")))
        repo = DualWriteRepository(primary, secondary, read_sources={"pc_builds": "postgres"})
        assert [b.name for b in run(repo.list_builds())] == ["Only In Postgres"]
        assert run(repo.list_inquiries()) == []

    def test_single_write_when_disabled(self):
        primary, secondary = backends()
        repo = DualWriteRepository(primary, secondary, dual_write=False)
        run(repo.create_inquiry(InquiryCreate(
            name="Ravi", email="r@example.com", budget="50k", use_case="Gaming", details="-")))
        assert len(run(primary.list_inquiries())) == 1
        assert run(secondary.list_inquiries()) == []

    def test_secondary_failure_is_logged_not_raised(self, caplog):
        primary, secondary = backends()
        secondary.create_build = AsyncMock(side_effect=RuntimeError("connection lost"))
        repo = DualWriteRepository(primary, secondary)
        created = run(repo.create_build(build()))
        assert created.name == "Mirror Build"
        assert "dual-write create_build failed on postgres" in caplog.text

    def test_source_failure_is_raised(self):
        primary, secondary = backends()
        primary.create_build = AsyncMock(side_effect=RuntimeError("disk full"))
        repo = DualWriteRepository(primary, secondary)
        with pytest.raises(RuntimeError, match="disk full"):
            run(repo.create_build(build()))
        assert len(run(secondary.list_builds())) == 1

    def test_primary_only_entities(self):
        primary, secondary = backends()
        repo = DualWriteRepository(primary, secondary)
        run(repo.set_setting("theme", "dark"))
        assert run(primary.get_setting("theme")).value == "dark"
        assert run(secondary.get_setting("theme")) is None

    def test_rejects_bad_read_sources(self):
        primary, secondary = backends()
        with pytest.raises(ValueError, match="not migratable"):
            DualWriteRepository(primary, secondary, read_sources={"settings": "memory"})
        with pytest.raises(ValueError, match="Unknown read source"):
            DualWriteRepository(primary, secondary, read_sources={"orders": "mongo"})
