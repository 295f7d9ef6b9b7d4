"""
Tests for business settings and admin feature flags.
"""
import pytest

from business_settings import BUSINESS_SETTINGS_KEY, BusinessSettingsService, BusinessSettingsUpdate
from conftest import make_settings, run
from errors import BadRequestError, NotFoundError
from repository import InMemoryRepository


@pytest.fixture
def service():
    return BusinessSettingsService(InMemoryRepository(), make_settings(company_name="FusionForge PCs"))


class TestBusinessSettings:

    def test_defaults_come_from_settings(self, service):
        loaded = run(service.load())
        assert loaded.company_name == "FusionForge PCs"
        assert loaded.business_email == "fusionforgepcs@gmail.com"

    def test_save_overrides_per_field(self, service):
        run(service.save(BusinessSettingsUpdate(business_phone="+91 1234567890")))
        loaded = run(service.load())
        assert loaded.business_phone == "+91 1234567890"
        assert loaded.company_name == "FusionForge PCs"

    def test_required_fields(self, service):
        with pytest.raises(BadRequestError) as exc:
            run(service.save(BusinessSettingsUpdate(business_email="", company_name="  ")))
        assert exc.value.details == {"missing": ["business_email", "company_name"]}

    def test_as_mapping(self, service):
        mapping = run(service.as_mapping())
        assert mapping["company_name"] == "FusionForge PCs"


class TestAdminSettings:

    def test_maintenance_mode_default(self, service):
        assert run(service.admin_setting("maintenanceMode")).value is False

    def test_unknown_setting(self, service):
        with pytest.raises(NotFoundError, match="Setting 'nope' not found"):
            run(service.admin_setting("nope"))

    def test_set_and_list(self, service):
        run(service.set_admin_setting("maintenanceMode", True))
        run(service.set_admin_setting("bannerText", "Diwali sale"))
        run(service.save(BusinessSettingsUpdate(business_gst="33ABCDE1234F1Z5")))
        keys = [s.key for s in run(service.list_admin_settings())]
        assert keys == ["bannerText", "maintenanceMode"]
        assert BUSINESS_SETTINGS_KEY not in keys
        assert run(service.admin_setting("maintenanceMode")).value is True
