"""
Tests for the in-memory repository and account linking helpers.
"""
from datetime import timedelta

import pytest

from conftest import run
from models import (
    AddressUpdate, BuildUpdate, InquiryCreate, InquiryStatus, ItemType,
    MovementType, OrderBuildRef, OrderCreate, OrderItem, OrderStatus,
    Subscription, SubscriptionStatus, BillingCycle, UserAddress, UserProfile,
    utcnow,
)
from repository import check_user_profile, merge_user_accounts


def order_data(**overrides) -> OrderCreate:
    values = dict(
        user_id="u1", order_number="FF00000001", total=80000,
        items=[OrderItem(build=OrderBuildRef(id=1, name="Performance Gamer", total_price=80000),
                         quantity=1)],
        customer_name="Asha", customer_email="asha@example.com",
    )
    values.update(overrides)
    return OrderCreate(**values)


class TestBuildsAndStock:
    """Catalog and inventory behaviour."""

    def test_inactive_builds_are_hidden(self, repo):
        run(repo.update_build(2, BuildUpdate(is_active=False)))
        assert [b.id for b in run(repo.list_builds())] == [1]
        assert len(run(repo.list_builds(include_inactive=True))) == 2

    def test_total_price_defaults_to_base_plus_margin(self, repo):
        build = run(repo.get_build(1))
        assert build.total_price == 80000

    def test_reads_return_copies(self, repo):
        build = run(repo.get_build(1))
        build.name = "mutated"
        assert run(repo.get_build(1)).name == "Performance Gamer"

    def test_stock_update_records_movement(self, repo):
        run(repo.update_build_stock(1, 4, "sold at expo"))
        moves = run(repo.list_stock_movements(item_id=1, item_type=ItemType.BUILD))
        assert len(moves) == 1
        assert moves[0].movement_type == MovementType.OUT
        assert moves[0].quantity == 6
        assert moves[0].previous_stock == 10 and moves[0].new_stock == 4

    def test_low_stock_report(self, repo):
        report = run(repo.get_low_stock_items())
        assert [b.name for b in report.builds] == ["Budget Starter"]
        assert [c.name for c in report.components] == ["RTX 4070"]

    def test_delete_build_removes_components(self, repo):
        assert run(repo.delete_build(1)) is True
        assert run(repo.get_components_by_build(1)) == []
        assert run(repo.delete_build(1)) is False

    def test_missing_build_update_returns_none(self, repo):
        assert run(repo.update_build(99, BuildUpdate(name="x"))) is None
        assert run(repo.update_component_stock(99, 1)) is None


class TestOrders:

    def test_gateway_index_lookup(self, repo):
        order = run(repo.create_order(order_data(gateway_order_id="order_abc")))
        found = run(repo.get_order_by_gateway_id("order_abc"))
        assert found.id == order.id
        assert run(repo.get_order_by_gateway_id("order_zzz")) is None

    def test_user_orders_include_email_matches(self, repo):
        run(repo.create_order(order_data(user_id="guest", customer_email="ASHA@example.com")))
        run(repo.create_order(order_data(user_id="u1")))
        run(repo.create_order(order_data(user_id="u2", customer_email="other@example.com")))
        assert len(run(repo.get_orders_for_user("u1", "asha@example.com"))) == 2

    def test_update_and_clear(self, repo):
        order = run(repo.create_order(order_data(status=OrderStatus.PENDING)))
        updated = run(repo.update_order_status(order.id, OrderStatus.SHIPPED))
        assert updated.status == OrderStatus.SHIPPED
        assert run(repo.clear_orders()) == 1
        assert run(repo.list_orders()) == []


class TestInquiries:

    def test_status_filter(self, repo):
        data = InquiryCreate(name="Ravi", email="ravi@example.com", budget="50000",
                             use_case="gaming", details="1080p esports")
        first = run(repo.create_inquiry(data))
        run(repo.create_inquiry(data))
        run(repo.update_inquiry_status(first.id, InquiryStatus.COMPLETED))
        completed = run(repo.get_inquiries_by_status(InquiryStatus.COMPLETED))
        assert [i.id for i in completed] == [first.id]

    def test_invalid_email_rejected(self):
        with pytest.raises(ValueError):
            InquiryCreate(name="Ravi", email="not-an-email", budget="1", use_case="x", details="y")


class TestAddresses:

    def test_first_address_becomes_default(self, repo):
        a = run(repo.save_address(UserAddress(user_id="u1", full_name="A", phone="1",
                                              address="1 Main", city="Palladam", zip_code="641664")))
        b = run(repo.save_address(UserAddress(user_id="u1", full_name="A", phone="1",
                                              address="2 Side", city="Tiruppur", zip_code="641601")))
        assert a.is_default is True
        assert b.is_default is False

    def test_single_default_per_user(self, repo):
        a = run(repo.save_address(UserAddress(user_id="u1", full_name="A", phone="1",
                                              address="1 Main", city="X", zip_code="1")))
        b = run(repo.save_address(UserAddress(user_id="u1", full_name="A", phone="1",
                                              address="2 Side", city="Y", zip_code="2")))
        run(repo.set_default_address("u1", b.id))
        defaults = [x.id for x in run(repo.list_addresses("u1")) if x.is_default]
        assert defaults == [b.id]

        run(repo.update_address(a.id, AddressUpdate(is_default=True)))
        defaults = [x.id for x in run(repo.list_addresses("u1")) if x.is_default]
        assert defaults == [a.id]

    def test_default_requires_owner(self, repo):
        a = run(repo.save_address(UserAddress(user_id="u1", full_name="A", phone="1",
                                              address="1 Main", city="X", zip_code="1")))
        assert run(repo.set_default_address("someone-else", a.id)) is None

    def test_deleting_default_promotes_oldest(self, repo):
        saved = [
            run(repo.save_address(UserAddress(user_id="u1", full_name="A", phone="1",
                                              address=street, city="X", zip_code="1")))
            for street in ("1 Main", "2 Side", "3 Back")
        ]
        run(repo.set_default_address("u1", saved[2].id))
        assert run(repo.delete_address(saved[2].id)) is True
        defaults = [x.id for x in run(repo.list_addresses("u1")) if x.is_default]
        assert defaults == [saved[0].id]

        assert run(repo.delete_address(saved[1].id)) is True
        defaults = [x.id for x in run(repo.list_addresses("u1")) if x.is_default]
        assert defaults == [saved[0].id]
        assert run(repo.delete_address("addr_missing")) is False


class TestSubscriptionsStore:

    def test_due_only_lists_active(self, repo):
        past = utcnow() - timedelta(days=1)
        common = dict(plan_id="monthly_standard", plan_name="Monthly Standard",
                      billing_cycle=BillingCycle.MONTHLY, base_price=100, final_price=100,
                      customer_name="A", customer_email="a@example.com",
                      shipping_address="X", payment_method="online_payment",
                      next_billing_date=past)
        active = run(repo.create_subscription(Subscription(user_id="u1",
                                                           status=SubscriptionStatus.ACTIVE, **common)))
        run(repo.create_subscription(Subscription(user_id="u1", status=SubscriptionStatus.PAUSED, **common)))
        due = run(repo.list_subscriptions_due(utcnow()))
        assert [s.id for s in due] == [active.id]


class TestAccountLinking:

    def _profiles(self, repo):
        run(repo.upsert_user_profile(UserProfile(uid="google-1", email="asha@example.com",
                                                 display_name="Asha")))
        run(repo.upsert_user_profile(UserProfile(uid="email-2", email="Asha@Example.com",
                                                 phone="99999")))
        run(repo.save_build_for_user("email-2", 1))
        run(repo.create_order(order_data(user_id="email-2")))

    def test_check_reports_linking_needed(self, repo):
        self._profiles(repo)
        status = run(check_user_profile(repo, "asha@example.com"))
        assert status.has_existing_data is True
        assert status.needs_linking is True
        assert status.profile_count == 2
        assert status.order_count == 1
        assert status.saved_build_count == 1

    def test_unknown_email_has_no_data(self, repo):
        status = run(check_user_profile(repo, "nobody@example.com"))
        assert status.has_existing_data is False
        assert status.needs_linking is False

    def test_merge_moves_everything_to_current_user(self, repo):
        self._profiles(repo)
        summary = run(merge_user_accounts(repo, "google-1", "asha@example.com"))
        assert summary.profiles == 2
        assert summary.orders == 1

        merged = run(repo.get_user_profile("google-1"))
        assert merged.display_name == "Asha"
        assert merged.phone == "99999"
        assert [s.build_id for s in run(repo.list_saved_builds("google-1"))] == [1]
        assert all(o.user_id == "google-1" for o in run(repo.list_orders()))
        assert run(repo.get_user_profile("email-2")).merged_into == "google-1"
        assert [p.uid for p in run(repo.list_user_profiles())] == ["google-1"]
