"""
FusionForge Storefront — Core Pydantic Models
"""
from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4
from pydantic import BaseModel, Field, field_validator, model_validator
import re


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# ============================================================
# Enums
# ============================================================

class UserRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"

class InquiryStatus(str, Enum):
    COMPLETED = "completed"
    UNCOMPLETED = "uncompleted"

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

# Statuses an admin may set by hand; paid/payment_failed come from the gateway.
ADMIN_ORDER_STATUSES = {
    OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED,
    OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.CANCELLED,
}

class PaymentMethod(str, Enum):
    CASH = "cash"
    ONLINE = "online_payment"

class ItemType(str, Enum):
    BUILD = "build"
    COMPONENT = "component"

class MovementType(str, Enum):
    IN = "in"
    OUT = "out"
    ADJUSTMENT = "adjustment"

class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PENDING = "pending"

class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

class SubscriptionOrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    FAILED = "failed"

# ============================================================
# Catalog Models
# ============================================================

class BuildFields(BaseModel):
    name: str
    category: str
    build_type: str = "standard"
    budget_range: str = ""
    base_price: int = Field(gt=0)
    profit_margin: int = 0
    total_price: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = None
    image_url: Optional[str] = None
    processor: str = ""
    motherboard: str = ""
    ram: str = ""
    storage: str = ""
    gpu: Optional[str] = None
    case_psu: str = ""
    monitor: Optional[str] = None
    keyboard_mouse: Optional[str] = None
    mouse_pad: Optional[str] = None
    stock_quantity: int = Field(default=0, ge=0)
    low_stock_threshold: int = Field(default=2, ge=0)
    is_active: bool = True

    @field_validator("name", "category")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def default_total_price(self):
        if self.total_price is None:
            self.total_price = self.base_price + self.profit_margin
        return self

class BuildCreate(BuildFields):
    pass

class PcBuild(BuildFields):
    id: int
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class BuildUpdate(BaseModel):
    """Partial update; only fields that are set are applied."""
    name: Optional[str] = None
    category: Optional[str] = None
    build_type: Optional[str] = None
    budget_range: Optional[str] = None
    base_price: Optional[int] = Field(default=None, gt=0)
    profit_margin: Optional[int] = None
    total_price: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = None
    image_url: Optional[str] = None
    processor: Optional[str] = None
    motherboard: Optional[str] = None
    ram: Optional[str] = None
    storage: Optional[str] = None
    gpu: Optional[str] = None
    case_psu: Optional[str] = None
    monitor: Optional[str] = None
    keyboard_mouse: Optional[str] = None
    mouse_pad: Optional[str] = None
    stock_quantity: Optional[int] = Field(default=None, ge=0)
    low_stock_threshold: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("Build name cannot be empty")
        return v.strip() if v else v

class ComponentCreate(BaseModel):
    build_id: int
    name: str
    specification: str = ""
    price: str = "0"
    type: str
    stock_quantity: int = Field(default=0, ge=0)
    low_stock_threshold: int = Field(default=5, ge=0)
    is_active: bool = True
    sku: Optional[str] = None

class Component(ComponentCreate):
    id: int

class StockUpdate(BaseModel):
    stock_quantity: int = Field(ge=0, le=10000)
    reason: Optional[str] = None

class StockMovement(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    item_id: int
    item_type: ItemType
    movement_type: MovementType
    quantity: int
    previous_stock: int
    new_stock: int
    reason: str = ""
    created_at: datetime = Field(default_factory=utcnow)

class LowStockReport(BaseModel):
    builds: list[PcBuild] = Field(default_factory=list)
    components: list[Component] = Field(default_factory=list)

# ============================================================
# Inquiry Models
# ============================================================

class InquiryCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str
    phone: Optional[str] = None
    budget: str
    use_case: str
    details: str
    message: Optional[str] = None

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        if not EMAIL_RE.match(v.strip()):
            raise ValueError("Valid email is required")
        return v.strip()

class Inquiry(InquiryCreate):
    id: int
    status: InquiryStatus = InquiryStatus.UNCOMPLETED
    created_at: datetime = Field(default_factory=utcnow)

class InquiryStatusUpdate(BaseModel):
    status: InquiryStatus

# ============================================================
# Account Models
# ============================================================

class UserProfile(BaseModel):
    uid: str
    email: str
    display_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    preferences: dict[str, Any] = Field(default_factory=dict)
    merged_into: Optional[str] = None
    merged_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class ProfileUpdate(BaseModel):
    email: Optional[str] = None
    display_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    preferences: Optional[dict[str, Any]] = None

class SavedBuild(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    build_id: int
    saved_at: datetime = Field(default_factory=utcnow)

class AddressCreate(BaseModel):
    full_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    zip_code: str = Field(min_length=1)
    is_default: bool = False

class UserAddress(AddressCreate):
    id: str = Field(default_factory=lambda: f"addr_{uuid4().hex[:12]}")
    user_id: str
    created_at: datetime = Field(default_factory=utcnow)

class AddressUpdate(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    is_default: Optional[bool] = None

class AdminSetting(BaseModel):
    key: str
    value: Any = None
    updated_at: datetime = Field(default_factory=utcnow)

# ============================================================
# Order Models
# ============================================================

class OrderBuildRef(BaseModel):
    """Snapshot of the build as it was in the cart."""
    id: int
    name: str
    category: str = ""
    total_price: Optional[float] = None
    base_price: Optional[float] = None
    price: Optional[str] = None

    def unit_price(self) -> float:
        if self.total_price is not None:
            return float(self.total_price)
        if self.base_price is not None:
            return float(self.base_price)
        return parse_price(self.price) or 0.0

class OrderItem(BaseModel):
    build: OrderBuildRef
    quantity: int = Field(ge=1)

    @property
    def line_total(self) -> float:
        return self.build.unit_price() * self.quantity

class OrderCreate(BaseModel):
    user_id: str
    order_number: str
    status: OrderStatus = OrderStatus.PROCESSING
    total: float = Field(ge=0)
    items: list[OrderItem] = Field(default_factory=list)
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    shipping_address: str = ""
    billing_address: str = ""
    payment_method: str = PaymentMethod.CASH.value
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    discount_code: Optional[str] = None
    discount_amount: float = 0.0
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

class Order(OrderCreate):
    id: int
    updated_at: datetime = Field(default_factory=utcnow)

class CheckoutRequest(BaseModel):
    full_name: str = Field(min_length=1)
    email: str
    phone: str = Field(min_length=1)
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    zip_code: str = Field(min_length=1)
    payment_method: str = Field(min_length=1)
    notes: Optional[str] = None
    items: list[OrderItem] = Field(min_length=1)
    total_price: float = Field(ge=0)
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    discount_code: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        if not EMAIL_RE.match(v.strip()):
            raise ValueError("Valid email is required")
        return v.strip()

class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None

# ============================================================
# Payment Models
# ============================================================

class PaymentOrderRequest(BaseModel):
    amount: float = Field(gt=0)
    currency: str = "INR"
    receipt: Optional[str] = None
    notes: dict[str, str] = Field(default_factory=dict)

class PaymentVerifyRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str

class RefundRequest(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    reason: Optional[str] = None

# ============================================================
# Subscription Models
# ============================================================

class SubscriptionItem(BaseModel):
    build_id: int
    build_name: str
    category: str = ""
    quantity: int = Field(ge=1)
    unit_price: float

class Subscription(BaseModel):
    id: str = Field(default_factory=lambda: f"sub_{uuid4().hex[:16]}")
    user_id: str
    plan_id: str
    plan_name: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    billing_cycle: BillingCycle
    base_price: float
    discount_percentage: float = Field(default=0, ge=0, le=100)
    final_price: float
    items: list[SubscriptionItem] = Field(default_factory=list)
    current_period_start: datetime = Field(default_factory=utcnow)
    current_period_end: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    customer_name: str
    customer_email: str
    shipping_address: str
    payment_method: str
    gateway_subscription_id: Optional[str] = None
    total_delivered: int = 0
    successful_payments: int = 0
    failed_payments: int = 0
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class SubscriptionOrder(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    subscription_id: str
    user_id: str
    order_number: str
    status: SubscriptionOrderStatus = SubscriptionOrderStatus.PENDING
    amount: float
    items: list[dict[str, Any]] = Field(default_factory=list)
    billing_period: str
    payment_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

# ============================================================
# API Response Models
# ============================================================

class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    storage: str
    uptime_seconds: int

# ============================================================
# Utility: Price Parser
# ============================================================

def parse_price(text: Any) -> Optional[float]:
    """Parse '₹1,23,456', '45000', '₹ 2,499.50' into float."""
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return float(text)
    t = re.sub(r'[₹,\s]', '', str(text))
    if t.lower().startswith('rs.'):
        t = t[3:]
    if not t:
        return None
    try:
        return float(t)
    except ValueError:
        pass
    m = re.match(r'^(\d+\.?\d*)', t)
    return float(m.group(1)) if m else None


def format_inr(amount: float) -> str:
    """Format a rupee amount with Indian digit grouping: 123456 -> 1,23,456."""
    whole = int(round(amount))
    sign = "-" if whole < 0 else ""
    s = str(abs(whole))
    if len(s) <= 3:
        return sign + s
    head, tail = s[:-3], s[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return sign + ",".join(groups + [tail])
