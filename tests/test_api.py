"""
HTTP-level tests: auth, catalog, checkout, payments, webhooks and the
smaller support surfaces, run through TestClient.
"""
import hashlib
import hmac
import json

from conftest import (
    CUSTOMER_KEY, GATEWAY_SECRET, WEBHOOK_SECRET, gateway_settings, make_settings, run,
)
from models import OrderStatus


def sign(secret, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def checkout(**overrides):
    payload = {
        "full_name": "Asha", "email": "asha@example.com", "phone": "9876543210",
        "address": "12 Mill Road", "city": "Palladam", "zip_code": "641664",
        "payment_method": "cash",
        "items": [{"build": {"id": 1, "name": "Performance Gamer", "category": "Performance Gamers",
                             "total_price": 80000}, "quantity": 1}],
        "total_price": 80000,
    }
    payload.update(overrides)
    return payload


class TestAuth:

    def test_admin_route_requires_credentials(self, client):
        response = client.get("/api/orders")
        assert response.status_code == 401
        assert response.json() == {"detail": "Admin authentication required"}

    def test_unknown_api_key(self, client):
        assert client.get("/api/orders", headers={"X-API-Key": "nope"}).status_code == 403

    def test_customer_key_lacks_admin_role(self, client):
        response = client.get("/api/orders", headers={"X-API-Key": CUSTOMER_KEY})
        assert response.status_code == 403

    def test_session_cookie_login_flow(self, client):
        refused = client.post("/api/admin/login", json={"email": "intruder@example.com"})
        assert refused.status_code == 401
        assert refused.json()["success"] is False

        response = client.post("/api/admin/login", json={"email": "Admin@FusionForge.com"})
        assert response.status_code == 200
        assert "admin_session" in response.cookies
        assert client.get("/api/admin/status").json()["authenticated"] is True
        assert client.get("/api/orders").status_code == 200

        client.post("/api/admin/logout")
        assert client.get("/api/admin/status").json()["authenticated"] is False

    def test_security_headers_on_admin_paths(self, client, admin_headers):
        response = client.get("/api/admin/settings", headers=admin_headers)
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "X-Response-Time-Ms" in response.headers
        assert "X-Frame-Options" not in client.get("/api/builds").headers


class TestCatalog:

    def test_list_and_category(self, client):
        assert len(client.get("/api/builds").json()) == 2
        names = [b["name"] for b in client.get("/api/builds/category/Budget Builders").json()]
        assert names == ["Budget Starter"]

    def test_missing_build(self, client):
        response = client.get("/api/builds/99")
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "PC build not found"}

    def test_create_validates_body(self, client, admin_headers):
        response = client.post("/api/builds", json={"name": "X"}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["message"] == "Validation Error"

    def test_stock_update_records_movement(self, client, admin_headers, repo):
        response = client.patch("/api/builds/1/stock", json={"stock_quantity": 4},
                                headers=admin_headers)
        assert response.json()["stock_quantity"] == 4
        movements = client.get("/api/inventory/movements?item_id=1&item_type=build",
                               headers=admin_headers).json()
        assert movements[0]["previous_stock"] == 10
        assert movements[0]["new_stock"] == 4

    def test_low_stock_report(self, client, admin_headers):
        report = client.get("/api/inventory/low-stock", headers=admin_headers).json()
        assert [b["name"] for b in report["builds"]] == ["Budget Starter"]
        assert [c["name"] for c in report["components"]] == ["RTX 4070"]

    def test_forecast_unknown_item(self, client, admin_headers):
        response = client.get("/api/inventory/forecast/build/99", headers=admin_headers)
        assert response.status_code == 404

    def test_import_rejects_non_csv(self, client, admin_headers):
        response = client.post("/api/inventory/import", headers=admin_headers,
                               files={"file": ("stock.txt", b"name\n", "text/plain")})
        assert response.status_code == 400
        assert response.json()["message"] == "Only CSV files are allowed"

    def test_export_headers(self, client, admin_headers):
        response = client.get("/api/inventory/export", headers=admin_headers)
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["X-Record-Count"] == "2"
        assert "attachment" in response.headers["Content-Disposition"]


class TestOrders:

    def test_cash_order_is_pending_and_saves_address(self, client, repo):
        response = client.post("/api/orders", json=checkout(user_id="u1"))
        assert response.status_code == 201
        order = response.json()
        assert order["status"] == "pending"
        assert order["order_number"].startswith("FF") and len(order["order_number"]) == 10
        assert len(run(repo.list_addresses("u1"))) == 1

        client.post("/api/orders", json=checkout(user_id="u1"))
        assert len(run(repo.list_addresses("u1"))) == 1

    def test_guest_order(self, client):
        assert client.post("/api/orders", json=checkout()).json()["user_id"] == "guest"

    def test_discount_code_applied(self, client):
        order = client.post("/api/orders", json=checkout(discount_code="gaming20")).json()
        assert order["discount_code"] == "GAMING20"
        assert order["discount_amount"] == 15000

    def test_invalid_discount_code(self, client):
        response = client.post("/api/orders", json=checkout(discount_code="NOPE"))
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid discount code"

    def test_online_order_needs_valid_signature(self, make_client):
        client = make_client(gateway_settings())
        unsigned = client.post("/api/orders", json=checkout(
            payment_method="online_payment", razorpay_order_id="order_1",
            razorpay_payment_id="pay_1", razorpay_signature="forged")).json()
        assert unsigned["status"] == "pending"

        signed = client.post("/api/orders", json=checkout(
            payment_method="online_payment", razorpay_order_id="order_2",
            razorpay_payment_id="pay_2",
            razorpay_signature=sign(GATEWAY_SECRET, b"order_2|pay_2"))).json()
        assert signed["status"] == "paid"
        assert signed["gateway_payment_id"] == "pay_2"

    def test_admin_status_change(self, client, admin_headers):
        order = client.post("/api/orders", json=checkout()).json()
        shipped = client.patch(f"/api/orders/{order['id']}/status", headers=admin_headers,
                               json={"status": "shipped", "tracking_number": "TRK1"}).json()
        assert shipped["status"] == "shipped"
        assert shipped["tracking_number"] == "TRK1"

        refused = client.patch(f"/api/orders/{order['id']}/status", headers=admin_headers,
                               json={"status": "paid"})
        assert refused.status_code == 400


class TestPayments:

    def test_verify_not_configured(self, client):
        response = client.post("/api/payment/verify", json={
            "razorpay_order_id": "o", "razorpay_payment_id": "p", "razorpay_signature": "s"})
        assert response.status_code == 503

    def test_verify_marks_order_paid(self, make_client, repo):
        client = make_client(gateway_settings())
        order = client.post("/api/orders", json=checkout(
            payment_method="online_payment", razorpay_order_id="order_9")).json()
        assert order["status"] == "pending"

        bad = client.post("/api/payment/verify", json={
            "razorpay_order_id": "order_9", "razorpay_payment_id": "pay_9",
            "razorpay_signature": "forged"})
        assert bad.status_code == 400
        assert bad.json() == {"success": False, "error": "Payment verification failed"}

        good = client.post("/api/payment/verify", json={
            "razorpay_order_id": "order_9", "razorpay_payment_id": "pay_9",
            "razorpay_signature": sign(GATEWAY_SECRET, b"order_9|pay_9")})
        assert good.json()["success"] is True
        assert run(repo.get_order(order["id"])).status == OrderStatus.PAID


class TestWebhook:

    def captured(self):
        return json.dumps({"event": "payment.captured", "payload": {
            "payment": {"entity": {"id": "pay_1", "order_id": "order_x"}}}}).encode()

    def test_signature_required_when_secret_set(self, make_client):
        client = make_client(make_settings(razorpay_webhook_secret=WEBHOOK_SECRET))
        body = self.captured()
        assert client.post("/api/webhook/razorpay", content=body).json() == {"error": "Missing signature"}
        bad = client.post("/api/webhook/razorpay", content=body,
                          headers={"X-Razorpay-Signature": "00"})
        assert bad.status_code == 400
        good = client.post("/api/webhook/razorpay", content=body,
                           headers={"X-Razorpay-Signature": sign(WEBHOOK_SECRET, body)})
        assert good.json() == {"status": "ok"}
        assert good.headers["X-RateLimit-Limit"] == "10"

    def test_invalid_json(self, client):
        response = client.post("/api/webhook/razorpay", content=b"{not json")
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON payload"}

    def test_non_object_payload_rejected(self, client):
        for payload in (b"[]", b"42", b'"payment.captured"'):
            response = client.post("/api/webhook/razorpay", content=payload)
            assert response.status_code == 400
            assert response.json() == {"error": "Invalid JSON payload"}

    def test_rate_limited(self, make_client):
        client = make_client(make_settings(webhook_rate_limit_per_minute=2))
        first = client.post("/api/webhook/razorpay", content=self.captured())
        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert client.post("/api/webhook/razorpay", content=self.captured()).status_code == 200

        blocked = client.post("/api/webhook/razorpay", content=self.captured())
        assert blocked.status_code == 429
        body = blocked.json()
        assert body["error"] == "Too many requests"
        assert 1 <= body["retry_after"] <= 61
        assert blocked.headers["X-RateLimit-Limit"] == "2"
        assert blocked.headers["X-RateLimit-Remaining"] == "0"
        assert "X-RateLimit-Reset" in blocked.headers
        assert int(blocked.headers["Retry-After"]) <= 61

    def test_limit_resets_with_fresh_state(self, make_client):
        client = make_client(make_settings(webhook_rate_limit_per_minute=1))
        client.post("/api/webhook/razorpay", content=self.captured())
        assert client.post("/api/webhook/razorpay", content=self.captured()).status_code == 429
        client = make_client(make_settings(webhook_rate_limit_per_minute=1))
        assert client.post("/api/webhook/razorpay", content=self.captured()).status_code == 200


class TestInquiries:

    def test_create_and_complete(self, client, admin_headers):
        created = client.post("/api/inquiries", json={
            "name": "Ravi", "email": "ravi@example.com", "budget": "₹1,00,000",
            "use_case": "Editing", "details": "64GB RAM"})
        assert created.status_code == 201
        inquiry_id = created.json()["id"]

        reply = client.post(f"/api/inquiries/{inquiry_id}/send-email", json={},
                            headers=admin_headers).json()
        assert reply["email_sent"] is False
        assert reply["inquiry"]["status"] == "completed"
        assert len(client.get("/api/inquiries/status/completed").json()) == 1

    def test_invalid_email(self, client):
        response = client.post("/api/inquiries", json={
            "name": "Ravi", "email": "not-an-email", "budget": "1", "use_case": "x", "details": "y"})
        assert response.status_code == 400
        assert response.json()["details"][0]["field"] == "email"


class TestAccounts:

    def test_profile_and_merge(self, client):
        client.post("/api/user/old/profile", json={"email": "asha@example.com", "display_name": "Asha"})
        client.post("/api/user/new/profile", json={"email": "asha@example.com"})
        check = client.get("/api/auth/check-user-profile?email=asha@example.com").json()
        assert check["needs_linking"] is True
        assert check["profile_count"] == 2

        missing = client.post("/api/auth/merge-user-accounts", json={"email": "asha@example.com"})
        assert missing.status_code == 400

        merged = client.post("/api/auth/merge-user-accounts", json={
            "email": "asha@example.com", "current_user_id": "new", "auth_method": "google"})
        assert merged.json()["success"] is True

    def test_saved_builds(self, client):
        assert client.post("/api/user/u1/saved-builds", json={"build_id": 1}).status_code == 201
        assert client.post("/api/user/u1/saved-builds", json={"build_id": 42}).status_code == 404
        assert [s["build_id"] for s in client.get("/api/user/u1/saved-builds").json()] == [1]


class TestDiscountsAndSupport:

    def test_apply_single_code(self, client):
        response = client.post("/api/discounts/apply", json={
            "code": "WELCOME10",
            "cart_items": [{"id": 1, "name": "Performance Gamer", "price": 30000, "quantity": 1}]})
        assert response.json()["discount"]["discount_amount"] == 3000

    def test_apply_requires_code(self, client):
        response = client.post("/api/discounts/apply", json={
            "cart_items": [{"id": 1, "name": "X", "price": 1, "quantity": 1}]})
        assert response.status_code == 400

    def test_faq_search_and_rate(self, client):
        results = client.get("/api/faq/search?q=warranty").json()
        assert results
        faq_id = results[0]["item"]["id"]
        assert client.post(f"/api/faq/{faq_id}/rate", json={"helpful": True}).status_code == 200
        assert client.post("/api/faq/missing/rate", json={"helpful": True}).status_code == 404

    def test_chat_ai_requires_fields(self, client):
        response = client.post("/api/chat/ai-response", json={"session_id": "s1"})
        assert response.status_code == 400
        assert response.json()["message"] == "Session ID and message are required"

    def test_chat_session_flow(self, client):
        session = client.post("/api/chat/sessions", json={"user_id": "u1"}).json()
        messages = client.post(f"/api/chat/sessions/{session['id']}/messages",
                               json={"sender_id": "u1", "message": "what is the price"}).json()
        assert len(messages) == 2
        assert client.post("/api/chat/sessions/nope/messages",
                           json={"sender_id": "u1", "message": "hi"}).status_code == 404


class TestSubscriptions:

    def customer(self, client, uid="u1"):
        client.post(f"/api/user/{uid}/profile", json={"email": "asha@example.com", "display_name": "Asha"})
        client.post(f"/api/users/{uid}/addresses", json={
            "full_name": "Asha", "phone": "9876543210", "address": "12 Mill Road",
            "city": "Palladam", "zip_code": "641664"})

    def create(self, client, uid="u1"):
        return client.post("/api/subscriptions/create", json={
            "user_id": uid, "plan_id": "monthly_standard",
            "items": [{"build_id": 2, "quantity": 1}]})

    def test_lifecycle(self, client, admin_headers):
        self.customer(client)
        created = self.create(client)
        assert created.status_code == 201
        body = created.json()
        assert body["customer_name"] == "Asha"
        assert body["shipping_address"] == "12 Mill Road, Palladam, 641664"
        sub_id = body["id"]

        assert client.get(f"/api/subscriptions/{sub_id}?user_id=u1").json()["status"] == "pending"
        assert len(client.get("/api/subscriptions/user?user_id=u1").json()) == 1
        assert client.get("/api/subscriptions/user").status_code == 400

        billing = client.post(f"/api/subscriptions/{sub_id}/process-billing", headers=admin_headers)
        assert billing.status_code == 400
        assert billing.json()["error"] == "Subscription is not active"

        cancelled = client.post(f"/api/subscriptions/{sub_id}/cancel",
                                json={"user_id": "u1", "reason": "moving"})
        assert cancelled.json()["cancellation_reason"] == "moving"

    def test_create_requires_profile_and_address(self, client):
        missing_profile = self.create(client)
        assert missing_profile.status_code == 400
        assert missing_profile.json()["message"] == "User profile not found"

        client.post("/api/user/u1/profile", json={"email": "asha@example.com"})
        missing_address = self.create(client)
        assert missing_address.status_code == 400
        assert missing_address.json()["message"] == "No shipping address found"

        no_user = client.post("/api/subscriptions/create", json={
            "plan_id": "monthly_standard", "items": [{"build_id": 2, "quantity": 1}]})
        assert no_user.status_code == 400
        assert no_user.json()["message"] == "User ID is required"

    def test_user_id_required(self, client):
        self.customer(client)
        sub_id = self.create(client).json()["id"]
        assert client.get(f"/api/subscriptions/{sub_id}").status_code == 400
        for action in ("pause", "resume", "cancel"):
            response = client.post(f"/api/subscriptions/{sub_id}/{action}", json={})
            assert response.status_code == 400
            assert response.json()["message"] == "User ID is required"

    def test_other_users_subscription_is_not_found(self, client):
        self.customer(client)
        sub_id = self.create(client).json()["id"]
        response = client.get(f"/api/subscriptions/{sub_id}?user_id=intruder")
        assert response.status_code == 404
        assert response.json()["message"] == "Subscription not found"
        for action in ("pause", "resume", "cancel"):
            response = client.post(f"/api/subscriptions/{sub_id}/{action}", json={"user_id": "intruder"})
            assert response.status_code == 404
        assert client.get(f"/api/subscriptions/{sub_id}?user_id=u1").json()["status"] == "pending"

    def test_plans(self, client):
        assert len(client.get("/api/subscriptions/plans").json()) == 4


class TestSite:

    def test_health(self, client):
        body = client.get("/api/health").json()
        assert body["status"] == "healthy"
        assert body["storage"] == "memory"

    def test_sitemap_lists_builds(self, client):
        response = client.get("/sitemap.xml")
        assert response.headers["content-type"].startswith("application/xml")
        assert "<loc>https://fusionforge.com/builds/2</loc>" in response.text

    def test_robots(self, client):
        assert "Sitemap: https://fusionforge.com/sitemap.xml" in client.get("/robots.txt").text

    def test_unknown_route(self, client):
        response = client.get("/api/nowhere")
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Route GET /api/nowhere not found"}
