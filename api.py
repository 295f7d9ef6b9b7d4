"""
FusionForge Storefront — FastAPI Application Layer

Endpoints:
  Catalog      /api/builds, /api/components
  Inventory    /api/inventory (low stock, movements, CSV import/export, forecasts)
  Checkout     /api/orders, /api/payment, /api/webhook/razorpay
  Inquiries    /api/inquiries
  Accounts     /api/user/{uid}, /api/users, /api/addresses, /api/auth
  Admin        /api/admin (login, settings, receipts, refunds), /api/business-settings
  Discounts    /api/discounts
  Support      /api/faq, /api/chat
  Recurring    /api/subscriptions
  Site         /api/health, /sitemap.xml, /robots.txt

Auth: admin session cookie, or X-API-Key header mapped to a role
"""
from __future__ import annotations
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional
from xml.sax.saxutils import escape as xml_escape

import httpx
from fastapi import (
    FastAPI, HTTPException, Depends, Header, Query,
    UploadFile, File, BackgroundTasks, Request, Response,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from admin_auth import SECURITY_HEADERS, SESSION_COOKIE, AdminSessionStore
from business_settings import BusinessSettings, BusinessSettingsService, BusinessSettingsUpdate
from chat_assistant import ChatAssistant, ChatMessage, ChatSession, SenderType
from config import Settings, get_settings
from discounts import (
    CartLine, DiscountApplication, DiscountCode, DiscountCodeCreate,
    DiscountEngine, DiscountError, PromoBatchRequest,
)
from errors import BadRequestError, NotFoundError, register_error_handlers
from faq_search import FAQItem, FAQSearchService
from forecasting import InventoryForecaster, SupplierNotifier
from inventory_import import InventoryImporter
from logging_setup import configure_logging
from models import (
    ADMIN_ORDER_STATUSES, AddressCreate, AddressUpdate, AdminSetting,
    BuildCreate, BuildUpdate, CheckoutRequest, Component, HealthResponse,
    Inquiry, InquiryCreate, InquiryStatus, InquiryStatusUpdate, ItemType,
    LowStockReport, Order, OrderCreate, OrderStatus, OrderStatusUpdate,
    PaymentMethod, PaymentOrderRequest, PaymentVerifyRequest, PcBuild,
    ProfileUpdate, RefundRequest, SavedBuild, StockMovement, StockUpdate,
    Subscription, SubscriptionOrder, UserAddress, UserProfile, UserRole,
)
from notifications import (
    EmailMessage, EmailSender, inquiry_acknowledgement_email,
    inquiry_reply_email, new_order_alert_email, order_confirmation_email,
    payment_receipt_email, quote_request_email,
)
from payments import RazorpayClient, verify_payment_signature, verify_webhook_signature
from repository import StoreRepository, check_user_profile, merge_user_accounts
from storage_factory import create_storage
from subscriptions import (
    CancelRequest, PricingRequest, SubscriptionAction, SubscriptionRequest,
    SubscriptionService,
)
from webhooks import WebhookProcessor, limiter

logger = logging.getLogger(__name__)


# ============================================================
# Application State (shared singletons)
# ============================================================

class AppState:
    """Holds all shared service instances."""
    settings: Settings
    repo: StoreRepository
    http: Optional[httpx.AsyncClient]
    email: EmailSender
    payments: RazorpayClient
    business: BusinessSettingsService
    admin_sessions: AdminSessionStore
    discounts: DiscountEngine
    faq: FAQSearchService
    chat: ChatAssistant
    forecaster: InventoryForecaster
    suppliers: SupplierNotifier
    subscriptions: SubscriptionService
    importer: InventoryImporter
    webhooks: WebhookProcessor
    start_time: float
    request_count: int = 0

    def __init__(self):
        self.start_time = time.monotonic()
        self.request_count = 0


_state = AppState()


def init_state(settings: Settings, repo: StoreRepository,
               http: Optional[httpx.AsyncClient] = None) -> AppState:
    """Wire every service around one repository and one outbound HTTP client."""
    _state.settings = settings
    _state.repo = repo
    _state.http = http
    _state.email = EmailSender(settings, client=http)
    _state.payments = RazorpayClient(settings, client=http)
    _state.business = BusinessSettingsService(repo, settings)
    _state.admin_sessions = AdminSessionStore(settings)
    _state.discounts = DiscountEngine()
    _state.faq = FAQSearchService()
    _state.chat = ChatAssistant(settings, repo, client=http)
    _state.forecaster = InventoryForecaster(repo)
    _state.suppliers = SupplierNotifier(_state.forecaster, _state.email)
    _state.subscriptions = SubscriptionService(
        repo, _state.payments, _state.email, _state.business.as_mapping)
    _state.importer = InventoryImporter(repo)
    limiter.reset()
    _state.webhooks = WebhookProcessor(repo, _state.email, _state.business.as_mapping)
    _state.start_time = time.monotonic()
    _state.request_count = 0
    return _state


# ============================================================
# Lifespan: Startup / Shutdown
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup, cleanup on shutdown."""
    settings = get_settings()
    configure_logging(settings)
    logger.info(f"Starting {settings.app_name}...")

    http = httpx.AsyncClient(timeout=settings.payment_timeout_seconds)
    repo = await create_storage(settings)
    init_state(settings, repo, http)

    logger.info(f"System ready. Environment: {settings.environment} storage={repo.name}")
    yield

    logger.info(f"Shutting down {settings.app_name}...")
    await repo.close()
    await http.aclose()


# ============================================================
# Auth & Dependencies
# ============================================================

class AuthContext(BaseModel):
    user_id: str
    role: UserRole
    via: str  # session | api_key


async def get_auth(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> AuthContext:
    """Resolve the caller from an API key or the admin session cookie."""
    if x_api_key:
        role = _state.settings.api_key_map.get(x_api_key)
        if role is None:
            raise HTTPException(403, "Invalid API key")
        try:
            user_role = UserRole(role)
        except ValueError:
            raise HTTPException(403, f"Unknown role for API key: {role}")
        return AuthContext(user_id=f"api-key:{x_api_key[:6]}", role=user_role, via="api_key")

    session = _state.admin_sessions.validate(request.cookies.get(SESSION_COOKIE))
    if session is None:
        raise HTTPException(401, "Admin authentication required")
    return AuthContext(user_id=session.email, role=UserRole.ADMIN, via="session")


def require_role(*roles: UserRole):
    """Dependency factory for role-based access control."""
    async def check(request: Request, auth: AuthContext = Depends(get_auth)):
        if auth.role not in roles:
            raise HTTPException(
                403, f"Requires role: {[r.value for r in roles]}")
        request.state.admin = auth.role == UserRole.ADMIN
        return auth
    return check


require_admin = require_role(UserRole.ADMIN)


async def business_info() -> dict[str, Any]:
    return await _state.business.as_mapping()


async def _deliver(to_email: str, message: EmailMessage, to_name: Optional[str] = None) -> None:
    """Background task body; EmailSender.send logs its own failures."""
    await _state.email.send(to_email, message, to_name=to_name)


# ============================================================
# Request Models (API-specific)
# ============================================================

class AdminLoginRequest(BaseModel):
    email: Optional[str] = None


class SettingRequest(BaseModel):
    key: str = Field(min_length=1)
    value: Any


class InquiryReplyRequest(BaseModel):
    reply: Optional[str] = None


class ProfileCreate(ProfileUpdate):
    email: str


class SaveBuildRequest(BaseModel):
    build_id: int


class MergeAccountsRequest(BaseModel):
    email: Optional[str] = None
    current_user_id: Optional[str] = None
    auth_method: Optional[str] = None


class DiscountApplyRequest(BaseModel):
    code: Optional[str] = None
    codes: list[str] = Field(default_factory=list)
    cart_items: list[CartLine] = Field(min_length=1)
    customer_email: str = "guest"


class BulkDiscountRequest(BaseModel):
    cart_items: list[CartLine] = Field(min_length=1)


class FAQRateRequest(BaseModel):
    helpful: bool


class ChatAIRequest(BaseModel):
    session_id: Optional[str] = None
    message: Optional[str] = None


class ChatStartRequest(BaseModel):
    user_id: str = Field(min_length=1)
    user_email: str = ""
    user_name: str = ""


class ChatMessageRequest(BaseModel):
    sender_id: str = Field(min_length=1)
    message: str = Field(min_length=1, max_length=2000)
    sender_type: SenderType = SenderType.USER


class EscalationRequest(BaseModel):
    session_id: Optional[str] = None
    reason: Optional[str] = None
    timestamp: Optional[str] = None


# ============================================================
# FastAPI App
# ============================================================

_boot_settings = get_settings()

app = FastAPI(
    title="FusionForge PCs API",
    description="Storefront backend for custom PC builds: catalog, inventory, "
                "checkout, payments, accounts, discounts, support and subscriptions.",
    version=_boot_settings.version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_boot_settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.limiter = limiter
register_error_handlers(app, development=_boot_settings.environment == "development")


# ============================================================
# Middleware: Request Counting, Timing & Admin Headers
# ============================================================

@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    start = time.monotonic()
    _state.request_count += 1
    response = await call_next(request)
    elapsed = int((time.monotonic() - start) * 1000)
    response.headers["X-Response-Time-Ms"] = str(elapsed)
    if request.url.path.startswith("/api/admin") or getattr(request.state, "admin", False):
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
    return response


# ============================================================
# Catalog: PC Builds & Components
# ============================================================

@app.get("/api/builds", response_model=list[PcBuild], tags=["Catalog"])
async def list_builds():
    return await _state.repo.list_builds()


@app.get("/api/builds/category/{category}", response_model=list[PcBuild], tags=["Catalog"])
async def builds_by_category(category: str):
    return await _state.repo.get_builds_by_category(category)


@app.get("/api/builds/{build_id}", response_model=PcBuild, tags=["Catalog"])
async def get_build(build_id: int):
    build = await _state.repo.get_build(build_id)
    if not build:
        raise NotFoundError("PC build not found")
    return build


@app.get("/api/builds/{build_id}/components", response_model=list[Component], tags=["Catalog"])
async def build_components(build_id: int):
    return await _state.repo.get_components_by_build(build_id)


@app.post("/api/builds", response_model=PcBuild, status_code=201, tags=["Catalog"])
async def create_build(data: BuildCreate, auth: AuthContext = Depends(require_admin)):
    build = await _state.repo.create_build(data)
    logger.info(f"[catalog] build created id={build.id} by={auth.user_id}")
    return build


@app.patch("/api/builds/{build_id}", response_model=PcBuild, tags=["Catalog"])
async def update_build(build_id: int, updates: BuildUpdate,
                       auth: AuthContext = Depends(require_admin)):
    build = await _state.repo.update_build(build_id, updates)
    if not build:
        raise NotFoundError("PC build not found")
    return build


@app.patch("/api/builds/{build_id}/stock", response_model=PcBuild, tags=["Inventory"])
async def update_build_stock(build_id: int, update: StockUpdate,
                             auth: AuthContext = Depends(require_admin)):
    build = await _state.repo.update_build_stock(
        build_id, update.stock_quantity, update.reason or f"manual update by {auth.user_id}")
    if not build:
        raise NotFoundError("PC build not found")
    return build


@app.delete("/api/builds/{build_id}", tags=["Catalog"])
async def delete_build(build_id: int, auth: AuthContext = Depends(require_admin)):
    if not await _state.repo.delete_build(build_id):
        raise NotFoundError("PC build not found")
    return {"success": True, "message": "PC build deleted"}


@app.patch("/api/components/{component_id}/stock", response_model=Component, tags=["Inventory"])
async def update_component_stock(component_id: int, update: StockUpdate,
                                 auth: AuthContext = Depends(require_admin)):
    component = await _state.repo.update_component_stock(
        component_id, update.stock_quantity, update.reason or f"manual update by {auth.user_id}")
    if not component:
        raise NotFoundError("Component not found")
    return component


# ============================================================
# Inventory: Low Stock, Movements, CSV, Forecasting
# ============================================================

@app.get("/api/inventory/low-stock", response_model=LowStockReport, tags=["Inventory"])
async def low_stock(auth: AuthContext = Depends(require_admin)):
    return await _state.repo.get_low_stock_items()


@app.get("/api/inventory/movements", response_model=list[StockMovement], tags=["Inventory"])
async def stock_movements(
    item_id: Optional[int] = Query(None),
    item_type: Optional[ItemType] = Query(None),
    auth: AuthContext = Depends(require_admin),
):
    return await _state.repo.list_stock_movements(item_id, item_type)


@app.post("/api/inventory/import", tags=["Inventory"])
async def import_inventory(
    file: UploadFile = File(...),
    auth: AuthContext = Depends(require_admin),
):
    """Bulk create/update PC builds from a CSV upload."""
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise BadRequestError("Only CSV files are allowed")
    raw = await file.read()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise BadRequestError("CSV file must be UTF-8 encoded")
    result = await _state.importer.import_csv(text)
    logger.info(f"[import] file={file.filename} by={auth.user_id} ok={result.success_count}")
    return asdict(result)


@app.get("/api/inventory/export", tags=["Inventory"])
async def export_inventory(
    category: Optional[str] = Query(None),
    low_stock_only: bool = Query(False),
    include_inactive: bool = Query(False),
    auth: AuthContext = Depends(require_admin),
):
    content, count = await _state.importer.export_csv(category, low_stock_only, include_inactive)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return Response(
        content=content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="inventory_export_{stamp}.csv"',
            "X-Record-Count": str(count),
        },
    )


@app.get("/api/inventory/template", tags=["Inventory"])
async def inventory_template(auth: AuthContext = Depends(require_admin)):
    return Response(
        content=InventoryImporter.template(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="inventory_import_template.csv"'},
    )


@app.get("/api/inventory/forecast/{item_type}/{item_id}", tags=["Inventory"])
async def forecast_item(
    item_type: ItemType,
    item_id: int,
    days: int = Query(30, ge=1, le=365),
    auth: AuthContext = Depends(require_admin),
):
    exists = (await _state.repo.get_build(item_id) if item_type == ItemType.BUILD
              else await _state.repo.get_component(item_id))
    if not exists:
        raise NotFoundError(f"{item_type.value.title()} not found")
    return await _state.forecaster.forecast_demand(item_id, item_type, forecast_days=days)


@app.get("/api/inventory/supplier-notifications", tags=["Inventory"])
async def supplier_notifications(auth: AuthContext = Depends(require_admin)):
    return await _state.forecaster.generate_supplier_notifications()


@app.post("/api/inventory/reorder-notifications", tags=["Inventory"])
async def send_reorder_notifications(auth: AuthContext = Depends(require_admin)):
    result = await _state.suppliers.send_reorder_notifications()
    return {"success": not result.errors, **asdict(result)}


# ============================================================
# Checkout & Orders
# ============================================================

def _order_number() -> str:
    return f"FF{str(int(time.time() * 1000))[-8:]}"


async def _remember_address(user_id: str, payload: CheckoutRequest) -> None:
    existing = await _state.repo.list_addresses(user_id)
    for a in existing:
        if (a.address.strip().lower(), a.city.strip().lower(), a.zip_code.strip()) == (
                payload.address.strip().lower(), payload.city.strip().lower(), payload.zip_code.strip()):
            return
    await _state.repo.save_address(UserAddress(
        user_id=user_id, full_name=payload.full_name, phone=payload.phone,
        address=payload.address, city=payload.city, zip_code=payload.zip_code,
    ))


@app.post("/api/orders", response_model=Order, status_code=201, tags=["Orders"])
async def create_order(payload: CheckoutRequest, background_tasks: BackgroundTasks):
    """
    Place an order from the cart.

    Online payments are marked paid only when the gateway signature verifies;
    everything else starts pending. Emails go out after the response.
    """
    paid = payload.payment_method == PaymentMethod.ONLINE.value and verify_payment_signature(
        payload.razorpay_order_id or "", payload.razorpay_payment_id or "",
        payload.razorpay_signature or "", _state.settings.razorpay_key_secret,
    )

    discount_amount = 0.0
    discount_code = None
    if payload.discount_code:
        cart = [
            CartLine(id=i.build.id, name=i.build.name, category=i.build.category,
                     price=i.build.unit_price(), quantity=i.quantity)
            for i in payload.items
        ]
        application = _state.discounts.apply_code(payload.discount_code, cart, payload.email)
        discount_amount = application.discount_amount
        discount_code = application.discount_code

    user_id = (payload.user_id or "").strip() or "guest"
    address = f"{payload.address}, {payload.city}, {payload.zip_code}"
    order = await _state.repo.create_order(OrderCreate(
        user_id=user_id,
        order_number=_order_number(),
        status=OrderStatus.PAID if paid else OrderStatus.PENDING,
        total=payload.total_price,
        items=payload.items,
        customer_name=payload.full_name,
        customer_email=payload.email,
        customer_phone=payload.phone,
        shipping_address=address,
        billing_address=address,
        payment_method=payload.payment_method,
        gateway_order_id=payload.razorpay_order_id,
        gateway_payment_id=payload.razorpay_payment_id if paid else None,
        discount_code=discount_code,
        discount_amount=discount_amount,
        notes=payload.notes,
    ))
    if discount_code:
        _state.discounts.confirm_usage(discount_code, payload.email)
    if user_id != "guest":
        await _remember_address(user_id, payload)

    business = await business_info()
    background_tasks.add_task(
        _deliver, order.customer_email, order_confirmation_email(order, business), order.customer_name)
    background_tasks.add_task(
        _deliver, business["business_email"], new_order_alert_email(order, business))
    logger.info(
        f"[orders] created id={order.id} number={order.order_number} status={order.status.value} "
        f"total={order.total} user={user_id}")
    return order


@app.get("/api/orders", response_model=list[Order], tags=["Orders"])
async def list_orders(auth: AuthContext = Depends(require_admin)):
    return await _state.repo.list_orders()


@app.delete("/api/orders/clear-all", tags=["Orders"])
async def clear_orders(auth: AuthContext = Depends(require_admin)):
    removed = await _state.repo.clear_orders()
    logger.warning(f"[orders] cleared {removed} orders by={auth.user_id}")
    return {"success": True, "deleted": removed}


@app.patch("/api/orders/{order_id}/status", response_model=Order, tags=["Orders"])
async def update_order_status(order_id: int, update: OrderStatusUpdate,
                              auth: AuthContext = Depends(require_admin)):
    if update.status not in ADMIN_ORDER_STATUSES:
        raise BadRequestError(
            f"Status must be one of: {', '.join(sorted(s.value for s in ADMIN_ORDER_STATUSES))}")
    changes: dict[str, Any] = {"status": update.status}
    if update.tracking_number:
        changes["tracking_number"] = update.tracking_number
    order = await _state.repo.update_order(order_id, changes)
    if not order:
        raise NotFoundError("Order not found")
    return order


@app.post("/api/admin/orders/{order_id}/receipt", tags=["Orders"])
async def send_receipt(order_id: int, background_tasks: BackgroundTasks,
                       auth: AuthContext = Depends(require_admin)):
    order = await _state.repo.get_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    business = await business_info()
    background_tasks.add_task(
        _deliver, order.customer_email, payment_receipt_email(order, business), order.customer_name)
    return {"success": True, "message": f"Receipt for {order.order_number} queued"}


@app.post("/api/admin/orders/{order_id}/refund", tags=["Payments"])
async def refund_order(order_id: int, request: RefundRequest,
                       auth: AuthContext = Depends(require_admin)):
    order = await _state.repo.get_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    if not order.gateway_payment_id:
        raise BadRequestError("Order has no captured online payment to refund")
    refund = await _state.payments.refund(order.gateway_payment_id, request.amount)
    if request.amount is None or request.amount >= order.total:
        await _state.repo.update_order_status(order.id, OrderStatus.CANCELLED)
    logger.info(f"[payments] refund order={order.id} amount={request.amount} by={auth.user_id}")
    return {"success": True, "refund": refund}


# ============================================================
# Payments & Webhooks
# ============================================================

@app.post("/api/payment/create-order", tags=["Payments"])
async def create_payment_order(request: PaymentOrderRequest):
    order = await _state.payments.create_order(
        request.amount, request.currency, request.receipt, request.notes)
    return {"success": True, "order": order, "key_id": _state.payments.key_id}


@app.post("/api/payment/verify", tags=["Payments"])
async def verify_payment(request: PaymentVerifyRequest, background_tasks: BackgroundTasks):
    if not _state.payments.is_configured:
        raise HTTPException(503, "Payment service not configured")
    valid = verify_payment_signature(
        request.razorpay_order_id, request.razorpay_payment_id,
        request.razorpay_signature, _state.settings.razorpay_key_secret,
    )
    if not valid:
        logger.warning(f"[payments] signature mismatch order={request.razorpay_order_id}")
        return JSONResponse(status_code=400, content={
            "success": False, "error": "Payment verification failed"})

    order = await _state.repo.get_order_by_gateway_id(request.razorpay_order_id)
    if order:
        order = await _state.repo.update_order(order.id, {
            "status": OrderStatus.PAID,
            "gateway_payment_id": request.razorpay_payment_id,
        })
        business = await business_info()
        background_tasks.add_task(
            _deliver, order.customer_email, payment_receipt_email(order, business), order.customer_name)

    return {
        "success": True,
        "message": "Payment verified successfully",
        "payment_id": request.razorpay_payment_id,
        "order_id": request.razorpay_order_id,
        "order": order.model_dump(mode="json") if order else None,
    }


def webhook_rate_limit() -> str:
    return f"{_state.settings.webhook_rate_limit_per_minute}/minute"


@app.post("/api/webhook/razorpay", tags=["Payments"])
@limiter.limit(webhook_rate_limit)
async def razorpay_webhook(request: Request):
    """Gateway callbacks. Rate limited per IP; signed when a webhook secret is configured."""
    client_ip = request.client.host if request.client else "unknown"
    body = await request.body()
    secret = _state.settings.razorpay_webhook_secret
    if secret:
        signature = request.headers.get("X-Razorpay-Signature")
        if not signature:
            return JSONResponse(status_code=400, content={"error": "Missing signature"})
        if not verify_webhook_signature(body, signature, secret):
            logger.warning(f"[webhook] invalid signature ip={client_ip}")
            return JSONResponse(status_code=400, content={"error": "Invalid signature"})
    else:
        logger.warning("[webhook] RAZORPAY_WEBHOOK_SECRET not set, skipping signature check")

    try:
        event = json.loads(body)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})
    if not isinstance(event, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})

    try:
        await _state.webhooks.handle(event)
    except Exception:
        logger.exception(f"[webhook] processing failed event={event.get('event')!r}")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})
    return JSONResponse(content={"status": "ok"})


# ============================================================
# Inquiries
# ============================================================

@app.post("/api/inquiries", response_model=Inquiry, status_code=201, tags=["Inquiries"])
async def create_inquiry(data: InquiryCreate, background_tasks: BackgroundTasks):
    inquiry = await _state.repo.create_inquiry(data)
    business = await business_info()
    background_tasks.add_task(
        _deliver, business["business_email"], quote_request_email(inquiry, business))
    background_tasks.add_task(
        _deliver, inquiry.email, inquiry_acknowledgement_email(inquiry, business), inquiry.name)
    logger.info(f"[inquiries] created id={inquiry.id} email={inquiry.email}")
    return inquiry


@app.get("/api/inquiries", response_model=list[Inquiry], tags=["Inquiries"])
async def list_inquiries(auth: AuthContext = Depends(require_admin)):
    return await _state.repo.list_inquiries()


@app.delete("/api/inquiries/clear-all", tags=["Inquiries"])
async def clear_inquiries(auth: AuthContext = Depends(require_admin)):
    removed = await _state.repo.clear_inquiries()
    logger.warning(f"[inquiries] cleared {removed} inquiries by={auth.user_id}")
    return {"success": True, "deleted": removed}


@app.get("/api/inquiries/status/{status}", response_model=list[Inquiry], tags=["Inquiries"])
async def inquiries_by_status(status: InquiryStatus):
    return await _state.repo.get_inquiries_by_status(status)


@app.patch("/api/inquiries/{inquiry_id}/status", response_model=Inquiry, tags=["Inquiries"])
async def update_inquiry_status(inquiry_id: int, update: InquiryStatusUpdate):
    inquiry = await _state.repo.update_inquiry_status(inquiry_id, update.status)
    if not inquiry:
        raise NotFoundError("Inquiry not found")
    return inquiry


@app.post("/api/inquiries/{inquiry_id}/send-email", tags=["Inquiries"])
async def reply_to_inquiry(inquiry_id: int, body: InquiryReplyRequest,
                           auth: AuthContext = Depends(require_admin)):
    inquiry = await _state.repo.get_inquiry(inquiry_id)
    if not inquiry:
        raise NotFoundError("Inquiry not found")
    business = await business_info()
    sent = await _state.email.send(
        inquiry.email, inquiry_reply_email(inquiry, business, body.reply), to_name=inquiry.name)
    updated = await _state.repo.update_inquiry_status(inquiry.id, InquiryStatus.COMPLETED)
    return {
        "success": True,
        "email_sent": sent,
        "inquiry": updated.model_dump(mode="json") if updated else None,
    }


# ============================================================
# Accounts: Profiles, Orders, Saved Builds, Addresses, Linking
# ============================================================

@app.get("/api/user/{uid}/profile", response_model=UserProfile, tags=["Accounts"])
async def get_profile(uid: str):
    profile = await _state.repo.get_user_profile(uid)
    if not profile:
        raise NotFoundError("Profile not found")
    return profile


@app.post("/api/user/{uid}/profile", response_model=UserProfile, tags=["Accounts"])
async def upsert_profile(uid: str, data: ProfileCreate):
    existing = await _state.repo.get_user_profile(uid)
    fields = data.model_dump(exclude_none=True)
    profile = UserProfile(
        uid=uid,
        created_at=existing.created_at if existing else datetime.now(timezone.utc),
        **fields,
    )
    return await _state.repo.upsert_user_profile(profile)


@app.patch("/api/user/{uid}/profile", response_model=UserProfile, tags=["Accounts"])
async def update_profile(uid: str, updates: ProfileUpdate):
    profile = await _state.repo.update_user_profile(uid, updates)
    if not profile:
        raise NotFoundError("Profile not found")
    return profile


@app.get("/api/users", response_model=list[UserProfile], tags=["Accounts"])
async def list_users(auth: AuthContext = Depends(require_admin)):
    return await _state.repo.list_user_profiles()


@app.get("/api/user/{uid}/orders", response_model=list[Order], tags=["Accounts"])
async def user_orders(uid: str):
    profile = await _state.repo.get_user_profile(uid)
    return await _state.repo.get_orders_for_user(uid, profile.email if profile else None)


@app.get("/api/user/{uid}/saved-builds", response_model=list[SavedBuild], tags=["Accounts"])
async def saved_builds(uid: str):
    return await _state.repo.list_saved_builds(uid)


@app.post("/api/user/{uid}/saved-builds", response_model=SavedBuild, status_code=201,
          tags=["Accounts"])
async def save_build(uid: str, body: SaveBuildRequest):
    if not await _state.repo.get_build(body.build_id):
        raise NotFoundError("PC build not found")
    return await _state.repo.save_build_for_user(uid, body.build_id)


@app.delete("/api/user/{uid}/saved-builds/{build_id}", tags=["Accounts"])
async def remove_saved_build(uid: str, build_id: int):
    if not await _state.repo.remove_saved_build(uid, build_id):
        raise NotFoundError("Saved build not found")
    return {"success": True}


@app.get("/api/users/{uid}/addresses", response_model=list[UserAddress], tags=["Accounts"])
async def list_addresses(uid: str):
    return await _state.repo.list_addresses(uid)


@app.post("/api/users/{uid}/addresses", response_model=UserAddress, status_code=201,
          tags=["Accounts"])
async def add_address(uid: str, data: AddressCreate):
    return await _state.repo.save_address(UserAddress(user_id=uid, **data.model_dump()))


@app.put("/api/addresses/{address_id}", response_model=UserAddress, tags=["Accounts"])
async def update_address(address_id: str, updates: AddressUpdate):
    address = await _state.repo.update_address(address_id, updates)
    if not address:
        raise NotFoundError("Address not found")
    return address


@app.delete("/api/addresses/{address_id}", tags=["Accounts"])
async def delete_address(address_id: str):
    if not await _state.repo.delete_address(address_id):
        raise NotFoundError("Address not found")
    return {"success": True}


@app.post("/api/users/{uid}/addresses/{address_id}/set-default", response_model=UserAddress,
          tags=["Accounts"])
async def set_default_address(uid: str, address_id: str):
    address = await _state.repo.set_default_address(uid, address_id)
    if not address:
        raise NotFoundError("Address not found")
    return address


@app.get("/api/auth/check-user-profile", tags=["Accounts"])
async def check_profile(email: Optional[str] = Query(None)):
    if not email:
        raise BadRequestError("Email parameter required")
    return asdict(await check_user_profile(_state.repo, email))


@app.post("/api/auth/merge-user-accounts", tags=["Accounts"])
async def merge_accounts(body: MergeAccountsRequest):
    if not (body.email and body.current_user_id and body.auth_method):
        raise BadRequestError("email, current_user_id and auth_method are required")
    summary = await merge_user_accounts(_state.repo, body.current_user_id, body.email)
    return {
        "success": True,
        "message": "Accounts merged successfully",
        "merged_data": asdict(summary),
    }


# ============================================================
# Admin: Sessions & Settings
# ============================================================

@app.post("/api/admin/login", tags=["Admin"])
async def admin_login(body: AdminLoginRequest, response: Response):
    session = _state.admin_sessions.login(body.email)
    response.set_cookie(
        SESSION_COOKIE, session.id,
        httponly=True,
        secure=_state.settings.is_production,
        samesite="strict",
        max_age=int(_state.admin_sessions.duration_seconds),
    )
    return {"success": True, "message": "Login successful"}


@app.post("/api/admin/logout", tags=["Admin"])
async def admin_logout(request: Request, response: Response):
    _state.admin_sessions.logout(request.cookies.get(SESSION_COOKIE))
    response.delete_cookie(SESSION_COOKIE)
    return {"success": True, "message": "Logout successful"}


@app.get("/api/admin/status", tags=["Admin"])
async def admin_status(request: Request):
    session = _state.admin_sessions.validate(request.cookies.get(SESSION_COOKIE))
    return {
        "authenticated": session is not None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/business-settings", response_model=BusinessSettings, tags=["Admin"])
async def get_business_settings():
    return await _state.business.load()


@app.put("/api/business-settings", response_model=BusinessSettings, tags=["Admin"])
async def save_business_settings(update: BusinessSettingsUpdate,
                                 auth: AuthContext = Depends(require_admin)):
    return await _state.business.save(update)


@app.get("/api/admin/settings", response_model=list[AdminSetting], tags=["Admin"])
async def list_admin_settings(auth: AuthContext = Depends(require_admin)):
    return await _state.business.list_admin_settings()


@app.post("/api/admin/settings", response_model=AdminSetting, tags=["Admin"])
async def set_admin_setting(body: SettingRequest, auth: AuthContext = Depends(require_admin)):
    return await _state.business.set_admin_setting(body.key, body.value)


@app.get("/api/admin/settings/{key}", response_model=AdminSetting, tags=["Admin"])
async def get_admin_setting(key: str, auth: AuthContext = Depends(require_admin)):
    return await _state.business.admin_setting(key)


# ============================================================
# Discounts
# ============================================================

@app.post("/api/discounts/apply", tags=["Discounts"])
async def apply_discount(body: DiscountApplyRequest):
    """Apply one code, or several (`codes`) with stacking rules."""
    if body.codes:
        results = _state.discounts.stack_codes(body.codes, body.cart_items, body.customer_email)
        applied = [r for r in results if isinstance(r, DiscountApplication)]
        original = sum(i.total for i in body.cart_items)
        return {
            "success": bool(applied),
            "applications": [asdict(a) for a in applied],
            "errors": [e.message for e in results if isinstance(e, DiscountError)],
            "total_discount": sum(a.discount_amount for a in applied),
            "final_amount": applied[-1].final_amount if applied else original,
        }
    if not body.code:
        raise BadRequestError("Discount code is required")
    application = _state.discounts.apply_code(body.code, body.cart_items, body.customer_email)
    return {"success": True, "discount": asdict(application)}


@app.post("/api/discounts/bulk", tags=["Discounts"])
async def bulk_discount(body: BulkDiscountRequest):
    bulk = _state.discounts.bulk_discount(body.cart_items)
    return {"eligible": bulk is not None, "bulk_discount": asdict(bulk) if bulk else None}


@app.get("/api/discounts/active", tags=["Discounts"])
async def active_discounts():
    return [
        {
            "code": d.code, "name": d.name, "description": d.description,
            "type": d.type.value, "value": d.value,
            "minimum_order_value": d.minimum_order_value,
            "valid_until": d.valid_until.isoformat(),
        }
        for d in _state.discounts.active_codes()
    ]


@app.get("/api/discounts", response_model=list[DiscountCode], tags=["Discounts"])
async def list_discounts(auth: AuthContext = Depends(require_admin)):
    return _state.discounts.list_codes()


@app.post("/api/discounts", response_model=DiscountCode, status_code=201, tags=["Discounts"])
async def create_discount(data: DiscountCodeCreate, auth: AuthContext = Depends(require_admin)):
    return _state.discounts.create_code(data.model_copy(update={"created_by": auth.user_id}))


@app.post("/api/discounts/generate", response_model=list[DiscountCode], status_code=201,
          tags=["Discounts"])
async def generate_discounts(request: PromoBatchRequest, auth: AuthContext = Depends(require_admin)):
    return _state.discounts.generate_promotional_codes(request)


@app.get("/api/discounts/analytics", tags=["Discounts"])
async def discount_analytics(auth: AuthContext = Depends(require_admin)):
    return _state.discounts.analytics()


# ============================================================
# FAQ
# ============================================================

@app.get("/api/faq/search", tags=["Support"])
async def search_faq(
    q: str = Query("", max_length=200),
    category: Optional[str] = Query(None),
    semantic: bool = Query(False),
):
    service = _state.faq
    results = service.semantic_search(q, category) if semantic else service.search(q, category)
    return [
        {
            "item": r.item.model_dump(),
            "relevance_score": round(r.relevance_score, 2),
            "match_type": r.match_type,
            "highlighted_text": r.highlighted_text,
        }
        for r in results
    ]


@app.get("/api/faq/popular", response_model=list[FAQItem], tags=["Support"])
async def popular_faq(limit: int = Query(5, ge=1, le=20)):
    return _state.faq.popular(limit)


@app.get("/api/faq/categories", tags=["Support"])
async def faq_categories():
    return _state.faq.categories()


@app.get("/api/faq/category/{name}", response_model=list[FAQItem], tags=["Support"])
async def faq_by_category(name: str):
    return _state.faq.by_category(name)


@app.get("/api/faq/analytics", tags=["Support"])
async def faq_analytics(auth: AuthContext = Depends(require_admin)):
    return _state.faq.analytics()


@app.post("/api/faq/{faq_id}/rate", response_model=FAQItem, tags=["Support"])
async def rate_faq(faq_id: str, body: FAQRateRequest):
    item = _state.faq.rate(faq_id, body.helpful)
    if not item:
        raise NotFoundError("FAQ not found")
    return item


# ============================================================
# Support Chat
# ============================================================

@app.post("/api/chat/ai-response", tags=["Support"])
async def chat_ai_response(body: ChatAIRequest):
    if not body.session_id or not body.message:
        raise BadRequestError("Session ID and message are required")
    reply = await _state.chat.respond(body.session_id, body.message, await business_info())
    return {
        "response": reply.response,
        "escalation": {
            "should_escalate": reply.escalation.should_escalate,
            "reason": reply.escalation.reason,
            "urgency": reply.escalation.urgency.value,
        },
    }


@app.post("/api/chat/sessions", response_model=ChatSession, status_code=201, tags=["Support"])
async def start_chat(body: ChatStartRequest):
    return _state.chat.start_session(body.user_id, body.user_email, body.user_name)


@app.get("/api/chat/sessions/{session_id}", response_model=ChatSession, tags=["Support"])
async def get_chat(session_id: str):
    session = _state.chat.get_session(session_id)
    if not session:
        raise NotFoundError("Chat session not found")
    return session


@app.post("/api/chat/sessions/{session_id}/messages", response_model=list[ChatMessage],
          tags=["Support"])
async def post_chat_message(session_id: str, body: ChatMessageRequest):
    try:
        return await _state.chat.send_message(
            session_id, body.sender_id, body.message, await business_info(), body.sender_type)
    except KeyError:
        raise NotFoundError("Chat session not found")


@app.post("/api/chat/sessions/{session_id}/close", tags=["Support"])
async def close_chat(session_id: str):
    if not _state.chat.close_session(session_id):
        raise NotFoundError("Chat session not found")
    return {"success": True}


@app.post("/api/chat/admin/escalation", tags=["Support"])
async def chat_escalation(body: EscalationRequest):
    if not body.session_id or not body.reason:
        raise BadRequestError("Session ID and reason are required")
    entry = _state.chat.record_escalation(body.session_id, body.reason, body.timestamp)
    return {"success": True, "message": "Escalation recorded", **entry}


@app.get("/api/chat/summary/{session_id}", tags=["Support"])
async def chat_summary(session_id: str):
    return {"summary": _state.chat.summary(session_id)}


# ============================================================
# Subscriptions
# ============================================================

@app.get("/api/subscriptions/plans", tags=["Subscriptions"])
async def subscription_plans():
    return [asdict(p) for p in _state.subscriptions.plans()]


@app.post("/api/subscriptions/pricing", tags=["Subscriptions"])
async def subscription_pricing(body: PricingRequest):
    pricing = await _state.subscriptions.calculate_pricing(body.plan_id, body.items)
    return pricing.to_dict()


@app.post("/api/subscriptions/create", response_model=Subscription, status_code=201,
          tags=["Subscriptions"])
async def create_subscription(body: SubscriptionRequest):
    return await _state.subscriptions.create_for_user(body)


@app.get("/api/subscriptions/user", response_model=list[Subscription], tags=["Subscriptions"])
async def user_subscriptions(user_id: Optional[str] = Query(None)):
    if not user_id:
        raise BadRequestError("User ID is required")
    return await _state.repo.list_subscriptions(user_id)


@app.get("/api/subscriptions/orders", response_model=list[SubscriptionOrder],
         tags=["Subscriptions"])
async def user_subscription_orders(user_id: Optional[str] = Query(None)):
    if not user_id:
        raise BadRequestError("User ID is required")
    return await _state.repo.list_subscription_orders(user_id=user_id)


@app.get("/api/subscriptions/analytics", tags=["Subscriptions"])
async def subscription_analytics(auth: AuthContext = Depends(require_admin)):
    return await _state.subscriptions.analytics()


@app.post("/api/subscriptions/process-due", tags=["Subscriptions"])
async def process_due_subscriptions(auth: AuthContext = Depends(require_admin)):
    return asdict(await _state.subscriptions.process_due())


@app.get("/api/subscriptions/admin/all", response_model=list[Subscription],
         tags=["Subscriptions"])
async def all_subscriptions(auth: AuthContext = Depends(require_admin)):
    return await _state.repo.list_subscriptions()


@app.get("/api/subscriptions/{subscription_id}", response_model=Subscription,
         tags=["Subscriptions"])
async def get_subscription(subscription_id: str, user_id: Optional[str] = Query(None)):
    if not user_id:
        raise BadRequestError("User ID is required")
    return await _state.subscriptions.get(subscription_id, user_id)


@app.post("/api/subscriptions/{subscription_id}/pause", response_model=Subscription,
          tags=["Subscriptions"])
async def pause_subscription(subscription_id: str, body: SubscriptionAction):
    if not body.user_id:
        raise BadRequestError("User ID is required")
    return await _state.subscriptions.pause(subscription_id, body.user_id)


@app.post("/api/subscriptions/{subscription_id}/resume", response_model=Subscription,
          tags=["Subscriptions"])
async def resume_subscription(subscription_id: str, body: SubscriptionAction):
    if not body.user_id:
        raise BadRequestError("User ID is required")
    return await _state.subscriptions.resume(subscription_id, body.user_id)


@app.post("/api/subscriptions/{subscription_id}/cancel", response_model=Subscription,
          tags=["Subscriptions"])
async def cancel_subscription(subscription_id: str, body: CancelRequest):
    if not body.user_id:
        raise BadRequestError("User ID is required")
    return await _state.subscriptions.cancel(subscription_id, body.reason, body.user_id)


@app.post("/api/subscriptions/{subscription_id}/process-billing", tags=["Subscriptions"])
async def process_subscription_billing(subscription_id: str,
                                       auth: AuthContext = Depends(require_admin)):
    result = await _state.subscriptions.process_billing(subscription_id)
    if not result.success:
        return JSONResponse(status_code=400, content=asdict(result))
    return asdict(result)


# ============================================================
# Site: Health, Sitemap, Robots
# ============================================================

STATIC_PAGES = [
    ("/", "daily", "1.0"),
    ("/builds", "daily", "0.9"),
    ("/configurator", "weekly", "0.8"),
    ("/about", "monthly", "0.7"),
    ("/services", "monthly", "0.7"),
    ("/faq", "weekly", "0.6"),
    ("/contact", "monthly", "0.5"),
]


@app.get("/api/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=_state.settings.version,
        storage=_state.repo.name,
        uptime_seconds=int(time.monotonic() - _state.start_time),
    )


@app.get("/sitemap.xml", tags=["System"])
async def sitemap():
    base = _state.settings.site_url.rstrip("/")
    today = datetime.now(timezone.utc).date().isoformat()
    entries = [(f"{base}{path}", freq, prio) for path, freq, prio in STATIC_PAGES]
    entries += [(f"{base}/builds/{b.id}", "weekly", "0.8") for b in await _state.repo.list_builds()]

    urls = "\n".join(
        f"  <url>\n    <loc>{xml_escape(loc)}</loc>\n    <lastmod>{today}</lastmod>\n"
        f"    <changefreq>{freq}</changefreq>\n    <priority>{prio}</priority>\n  </url>"
        for loc, freq, prio in entries
    )
    xml = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        f"{urls}\n</urlset>"
    )
    return Response(content=xml, media_type="application/xml",
                    headers={"Cache-Control": "public, max-age=3600"})


@app.get("/robots.txt", response_class=PlainTextResponse, tags=["System"])
async def robots():
    base = _state.settings.site_url.rstrip("/")
    return (
        "User-agent: *\n"
        "Allow: /\n\n"
        f"Sitemap: {base}/sitemap.xml\n\n"
        "Crawl-delay: 1\n\n"
        "Disallow: /admin\n"
        "Disallow: /api/\n"
    )


# ============================================================
# Entry Point
# ============================================================

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "api:app", host=settings.host, port=settings.port,
        workers=settings.workers, reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
