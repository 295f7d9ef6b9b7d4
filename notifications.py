"""
notifications.py — Transactional email via the Brevo HTTP API.

EmailSender.send() never raises: delivery problems are logged and reported
as False so request handlers can fire-and-forget. The template functions
below return an EmailMessage (subject, html, text).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from html import escape
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional

import httpx

from config import Settings
from models import Inquiry, Order, Subscription, format_inr

if TYPE_CHECKING:
    from forecasting import Supplier, SupplierNotification

logger = logging.getLogger(__name__)


@dataclass
class EmailMessage:
    subject: str
    html: str
    text: str = ""


class EmailSender:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.settings.brevo_api_key)

    def _payload(self, to_email: str, message: EmailMessage,
                 to_name: Optional[str]) -> dict[str, Any]:
        recipient: dict[str, str] = {"email": to_email}
        if to_name:
            recipient["name"] = to_name
        return {
            "sender": {
                "name": self.settings.email_sender_name,
                "email": self.settings.business_email,
            },
            "to": [recipient],
            "subject": message.subject,
            "htmlContent": message.html,
            "textContent": message.text or message.subject,
        }

    async def send(self, to_email: str, message: EmailMessage,
                   to_name: Optional[str] = None) -> bool:
        if not self.configured:
            logger.warning(f"[email] not configured, skipped to={to_email} subject={message.subject!r}")
            return False

        headers = {
            "api-key": self.settings.brevo_api_key or "",
            "accept": "application/json",
            "content-type": "application/json",
        }
        payload = self._payload(to_email, message, to_name)
        try:
            if self._client is not None:
                response = await self._client.post(
                    self.settings.brevo_api_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=15.0) as client:
                    response = await client.post(
                        self.settings.brevo_api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"[email] transport error to={to_email}: {e}")
            return False

        if not response.is_success:
            logger.error(
                f"[email] rejected to={to_email} status={response.status_code} body={response.text[:200]}")
            return False
        logger.info(f"[email] sent to={to_email} subject={message.subject!r}")
        return True


# ============================================================
# Templates
# ============================================================

def _wrap(title: str, body: str, business: Mapping[str, Any]) -> str:
    return (
        "<div style=\"font-family:Arial,sans-serif;max-width:640px;margin:0 auto;\">"
        f"<h2 style=\"color:#1e3a8a;\">{escape(title)}</h2>"
        f"{body}"
        "<hr style=\"margin-top:32px;\">"
        f"<p style=\"font-size:12px;color:#6b7280;\">{escape(str(business.get('company_name', '')))}"
        f" &middot; {escape(str(business.get('business_phone', '')))}"
        f" &middot; {escape(str(business.get('business_email', '')))}</p>"
        "</div>"
    )


def _rows(pairs: Iterable[tuple[str, Any]]) -> str:
    cells = "".join(
        f"<tr><td style=\"padding:4px 12px 4px 0;\"><strong>{escape(k)}</strong></td>"
        f"<td>{escape(str(v))}</td></tr>"
        for k, v in pairs if v not in (None, "")
    )
    return f"<table>{cells}</table>"


def _order_lines(order: Order) -> tuple[str, str]:
    html_rows = "".join(
        f"<tr><td>{escape(i.build.name)}</td><td>{i.quantity}</td>"
        f"<td>₹{format_inr(i.line_total)}</td></tr>"
        for i in order.items
    )
    html = (
        "<table style=\"width:100%;border-collapse:collapse;\">"
        "<tr><th align=\"left\">Item</th><th align=\"left\">Qty</th><th align=\"left\">Total</th></tr>"
        f"{html_rows}</table>"
    )
    text = "\n".join(f"- {i.build.name} x{i.quantity}: ₹{format_inr(i.line_total)}" for i in order.items)
    return html, text


def quote_request_email(inquiry: Inquiry, business: Mapping[str, Any]) -> EmailMessage:
    """Business-side alert for a new custom build inquiry."""
    subject = f"New FusionForge PC Build Quote Request from {inquiry.name}"
    details = [
        ("Name", inquiry.name), ("Email", inquiry.email), ("Phone", inquiry.phone),
        ("Budget", inquiry.budget), ("Use case", inquiry.use_case),
        ("Details", inquiry.details), ("Message", inquiry.message),
    ]
    text = "\n".join(f"{k}: {v}" for k, v in details if v)
    return EmailMessage(subject, _wrap("New Quote Request", _rows(details), business), text)


def inquiry_acknowledgement_email(inquiry: Inquiry, business: Mapping[str, Any]) -> EmailMessage:
    subject = f"FusionForge PCs - We received your custom build quote request - {inquiry.name}"
    body = (
        f"<p>Hi {escape(inquiry.name)},</p>"
        "<p>Thanks for reaching out. Our build specialists are reviewing your requirements "
        "and will reply within 24 hours with a tailored quote.</p>"
        + _rows([("Budget", inquiry.budget), ("Use case", inquiry.use_case)])
    )
    text = (f"Hi {inquiry.name},\n\nWe received your request (budget {inquiry.budget}, "
            f"use case {inquiry.use_case}) and will reply within 24 hours.")
    return EmailMessage(subject, _wrap("Quote request received", body, business), text)


def inquiry_reply_email(inquiry: Inquiry, business: Mapping[str, Any],
                        reply: Optional[str] = None) -> EmailMessage:
    subject = f"FusionForge PCs - Your Custom PC Build Quote is Ready! - {inquiry.name}"
    reply = reply or (
        "Our team has prepared a configuration for your requirements. "
        "Reply to this email or call us to finalise your build."
    )
    body = (
        f"<p>Hi {escape(inquiry.name)},</p><p>{escape(reply)}</p>"
        + _rows([("Budget", inquiry.budget), ("Use case", inquiry.use_case),
                 ("Your request", inquiry.details)])
    )
    text = f"Hi {inquiry.name},\n\n{reply}"
    return EmailMessage(subject, _wrap("Your quote is ready", body, business), text)


def order_confirmation_email(order: Order, business: Mapping[str, Any]) -> EmailMessage:
    subject = f"Order Confirmation - {order.order_number} - FusionForge PCs"
    lines_html, lines_text = _order_lines(order)
    body = (
        f"<p>Hi {escape(order.customer_name)},</p>"
        f"<p>Thank you for your order <strong>{escape(order.order_number)}</strong>.</p>"
        f"{lines_html}"
        + _rows([
            ("Discount", f"₹{format_inr(order.discount_amount)}" if order.discount_amount else None),
            ("Total", f"₹{format_inr(order.total)}"),
            ("Payment", order.payment_method),
            ("Ship to", order.shipping_address),
        ])
    )
    text = (f"Order {order.order_number}\n{lines_text}\n"
            f"Total: ₹{format_inr(order.total)}\nPayment: {order.payment_method}")
    return EmailMessage(subject, _wrap("Order confirmed", body, business), text)


def new_order_alert_email(order: Order, business: Mapping[str, Any]) -> EmailMessage:
    subject = f"New Order {order.order_number} - ₹{format_inr(order.total)}"
    lines_html, lines_text = _order_lines(order)
    body = _rows([
        ("Order", order.order_number), ("Customer", order.customer_name),
        ("Email", order.customer_email), ("Phone", order.customer_phone),
        ("Address", order.shipping_address), ("Payment", order.payment_method),
        ("Status", order.status.value), ("Notes", order.notes),
    ]) + lines_html
    return EmailMessage(subject, _wrap("New order received", body, business),
                        f"{order.order_number} from {order.customer_name}\n{lines_text}")


def payment_receipt_email(order: Order, business: Mapping[str, Any]) -> EmailMessage:
    subject = f"Receipt #{order.order_number} - FusionForge PCs"
    lines_html, lines_text = _order_lines(order)
    body = (
        f"<p>Hi {escape(order.customer_name)}, we have received your payment.</p>"
        + _rows([
            ("Receipt", order.order_number),
            ("Payment ID", order.gateway_payment_id),
            ("Amount paid", f"₹{format_inr(order.total)}"),
            ("GST", business.get("business_gst")),
        ])
        + lines_html
    )
    text = (f"Receipt {order.order_number}\nPayment ID: {order.gateway_payment_id or '-'}\n"
            f"{lines_text}\nAmount paid: ₹{format_inr(order.total)}")
    return EmailMessage(subject, _wrap("Payment receipt", body, business), text)


def subscription_confirmation_email(sub: Subscription, business: Mapping[str, Any]) -> EmailMessage:
    subject = f"Subscription Confirmed - {sub.plan_name}"
    body = (
        f"<p>Hi {escape(sub.customer_name)}, your subscription is set up.</p>"
        + _rows([
            ("Plan", sub.plan_name), ("Billing", sub.billing_cycle.value),
            ("Price per cycle", f"₹{format_inr(sub.final_price)}"),
            ("Discount", f"{sub.discount_percentage:g}%"),
            ("Next billing", sub.next_billing_date.date().isoformat() if sub.next_billing_date else None),
        ])
    )
    return EmailMessage(subject, _wrap("Subscription confirmed", body, business),
                        f"{sub.plan_name}: ₹{format_inr(sub.final_price)} per {sub.billing_cycle.value} cycle")


def subscription_update_email(sub: Subscription, business: Mapping[str, Any],
                              action: str) -> EmailMessage:
    subject = f"Subscription {action.title()} - {sub.plan_name}"
    body = f"<p>Hi {escape(sub.customer_name)}, your {escape(sub.plan_name)} subscription has been {escape(action)}.</p>"
    return EmailMessage(subject, _wrap(f"Subscription {action}", body, business),
                        f"Your {sub.plan_name} subscription has been {action}.")


def subscription_cancellation_email(sub: Subscription, business: Mapping[str, Any]) -> EmailMessage:
    subject = f"Subscription Cancelled - {sub.plan_name}"
    reason = sub.cancellation_reason or "No reason given"
    body = (
        f"<p>Hi {escape(sub.customer_name)}, your subscription has been cancelled.</p>"
        + _rows([("Plan", sub.plan_name), ("Reason", reason),
                 ("Deliveries received", sub.total_delivered)])
    )
    return EmailMessage(subject, _wrap("Subscription cancelled", body, business),
                        f"Your {sub.plan_name} subscription was cancelled. Reason: {reason}")


def supplier_reorder_email(supplier: "Supplier",
                           items: list["SupplierNotification"]) -> EmailMessage:
    urgent = any(n.urgency.value in ("critical", "high") for n in items)
    subject = f"{'URGENT ' if urgent else ''}Reorder Request - {len(items)} item(s) - FusionForge PCs"
    rows = "".join(
        f"<tr><td>{escape(n.item_name)}</td><td>{n.item_type.value}</td>"
        f"<td>{n.current_stock}</td><td>{n.suggested_quantity:g}</td>"
        f"<td>{n.urgency.value.upper()}</td>"
        f"<td>{n.estimated_stockout_date.date().isoformat()}</td></tr>"
        for n in items
    )
    html = (
        f"<p>Dear {escape(supplier.contact_person)},</p>"
        "<p>Please arrange the following replenishment:</p>"
        "<table style=\"width:100%;border-collapse:collapse;\">"
        "<tr><th>Item</th><th>Type</th><th>Stock</th><th>Qty</th><th>Urgency</th><th>Stockout</th></tr>"
        f"{rows}</table>"
        f"<p>Minimum order quantity on file: {supplier.minimum_order_quantity}. "
        f"Payment terms: {escape(supplier.payment_terms)}.</p>"
    )
    text = "\n".join(
        f"- {n.item_name} ({n.item_type.value}): stock {n.current_stock}, "
        f"order {n.suggested_quantity:g}, {n.urgency.value}"
        for n in items
    )
    return EmailMessage(subject, html, text)
