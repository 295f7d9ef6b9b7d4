"""
Tests for the Brevo email sender and the message templates.
"""
import httpx

from conftest import json_transport, make_settings, request_json, run
from models import Inquiry, Order, OrderBuildRef, OrderItem
from notifications import (
    EmailMessage, EmailSender, inquiry_reply_email, order_confirmation_email,
    quote_request_email,
)

BUSINESS = {"company_name": "FusionForge PCs", "business_email": "shop@example.com",
            "business_phone": "+91 9363599577", "business_gst": "33ABCDE1234F1Z5"}


def sample_order(**overrides):
    values = dict(
        id=1, user_id="u1", order_number="FF12345678", total=150000,
        items=[OrderItem(build=OrderBuildRef(id=1, name="Performance Gamer", total_price=80000), quantity=2)],
        customer_name="Asha", customer_email="asha@example.com",
        payment_method="cash_on_delivery", discount_amount=10000,
    )
    values.update(overrides)
    return Order(**values)


def sample_inquiry():
    return Inquiry(id=3, name="Ravi <admin>", email="ravi@example.com", budget="₹1,00,000",
                   use_case="Video editing", details="Needs 64GB RAM")


class TestEmailSender:

    def test_unconfigured_skips(self):
        sender = EmailSender(make_settings())
        assert sender.configured is False
        assert run(sender.send("a@example.com", EmailMessage("Hi", "<p>Hi</p>"))) is False

    def test_sends_brevo_payload(self):
        seen = {}

        def handler(request):
            seen["key"] = request.headers["api-key"]
            seen["body"] = request_json(request)
            return 201, {"messageId": "m1"}

        async def go():
            async with httpx.AsyncClient(transport=json_transport(handler)) as http:
                sender = EmailSender(make_settings(brevo_api_key="xkeysib"), http)
                return await sender.send("a@example.com", EmailMessage("Hi", "<p>Hi</p>"), "Asha")

        assert run(go()) is True
        assert seen["key"] == "xkeysib"
        assert seen["body"]["to"] == [{"email": "a@example.com", "name": "Asha"}]
        assert seen["body"]["textContent"] == "Hi"

    def test_rejection_returns_false(self):
        def handler(request):
            return 401, {"message": "Key not found"}

        async def go():
            async with httpx.AsyncClient(transport=json_transport(handler)) as http:
                sender = EmailSender(make_settings(brevo_api_key="bad"), http)
                return await sender.send("a@example.com", EmailMessage("Hi", "<p>Hi</p>"))

        assert run(go()) is False

    def test_transport_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                sender = EmailSender(make_settings(brevo_api_key="k"), http)
                return await sender.send("a@example.com", EmailMessage("Hi", "<p>Hi</p>"))

        assert run(go()) is False


class TestTemplates:

    def test_order_confirmation(self):
        message = order_confirmation_email(sample_order(), BUSINESS)
        assert message.subject == "Order Confirmation - FF12345678 - FusionForge PCs"
        assert "₹1,60,000" in message.html
        assert "₹10,000" in message.html
        assert "Total: ₹1,50,000" in message.text

    def test_inquiry_fields_are_escaped(self):
        message = quote_request_email(sample_inquiry(), BUSINESS)
        assert "Ravi &lt;admin&gt;" in message.html
        assert "<admin>" not in message.html
        assert "Use case: Video editing" in message.text

    def test_reply_uses_default_text(self):
        message = inquiry_reply_email(sample_inquiry(), BUSINESS)
        assert message.subject.startswith("FusionForge PCs - Your Custom PC Build Quote is Ready!")
        assert "finalise your build" in message.text
        custom = inquiry_reply_email(sample_inquiry(), BUSINESS, "Here is your quote")
        assert "Here is your quote" in custom.html
