"""
FusionForge Storefront — Discount Codes & Bulk Pricing

Responsibilities:
  1. Code validation (window, limits, minimums, category/build scope)
  2. Discount amount per type (percentage / fixed / free shipping / buy-x-get-y)
  3. Quantity-based bulk tiers
  4. Stacking several codes on one cart
  5. Admin: create, list, generate promo batches, analytics
"""
from __future__ import annotations
import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from errors import BadRequestError, ConflictError
from models import utcnow

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
AVERAGE_ORDER_VALUE = 50000


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_SHIPPING = "free_shipping"
    BUY_X_GET_Y = "buy_x_get_y"


class DiscountError(BadRequestError):
    pass


class CartLine(BaseModel):
    id: int
    name: str
    category: str = ""
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)

    @property
    def total(self) -> float:
        return self.price * self.quantity


class DiscountCodeCreate(BaseModel):
    code: str = Field(min_length=3, max_length=32)
    name: str
    description: str = ""
    type: DiscountType
    value: float = Field(gt=0)
    minimum_order_value: Optional[float] = None
    maximum_discount: Optional[float] = None
    applicable_categories: list[str] = Field(default_factory=list)
    applicable_products: list[int] = Field(default_factory=list)
    usage_limit: Optional[int] = None
    usage_per_customer: Optional[int] = None
    valid_from: datetime = Field(default_factory=utcnow)
    valid_until: datetime
    is_active: bool = True
    stackable: bool = False
    created_by: str = "admin"

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.strip().upper()


class DiscountCode(DiscountCodeCreate):
    id: str
    usage_count: int = 0
    customer_usage: dict[str, int] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PromoBatchRequest(BaseModel):
    campaign: str = Field(min_length=1)
    count: int = Field(ge=1, le=500)
    type: DiscountType = DiscountType.PERCENTAGE
    value: float = Field(gt=0)
    valid_days: int = Field(ge=1)
    minimum_order_value: Optional[float] = None
    usage_per_customer: Optional[int] = None


@dataclass
class DiscountedLine:
    item_id: int
    item_name: str
    original_price: float
    discounted_price: float


@dataclass
class DiscountApplication:
    discount_id: str
    discount_code: str
    discount_type: DiscountType
    original_amount: float
    discount_amount: float
    final_amount: float
    applicable_items: list[DiscountedLine] = field(default_factory=list)


@dataclass
class BulkTier:
    id: str
    name: str
    minimum_quantity: int
    discount_percentage: float
    applicable_categories: list[str]
    is_active: bool = True


@dataclass
class BulkDiscount:
    discount_percentage: float
    discount_amount: float
    tier_name: str


BULK_TIERS = [
    BulkTier("bulk_tier_1", "Small Business (3-5 PCs)", 3, 5,
             ["Budget Builders", "Essential Creators", "Office Productivity"]),
    BulkTier("bulk_tier_2", "Corporate (6-10 PCs)", 6, 8,
             ["Budget Builders", "Essential Creators", "Office Productivity", "Performance Gamers"]),
    BulkTier("bulk_tier_3", "Enterprise (11-25 PCs)", 11, 12, []),
    BulkTier("bulk_tier_4", "Large Enterprise (25+ PCs)", 25, 18, []),
]


def default_codes(now: Optional[datetime] = None) -> list[DiscountCodeCreate]:
    now = now or utcnow()

    def days(n: int) -> datetime:
        return now + timedelta(days=n)

    return [
        DiscountCodeCreate(
            code="WELCOME10", name="Welcome Discount", description="10% off for new customers",
            type=DiscountType.PERCENTAGE, value=10, minimum_order_value=25000,
            maximum_discount=5000, usage_limit=1000, usage_per_customer=1,
            valid_from=now, valid_until=days(90), stackable=False, created_by="system"),
        DiscountCodeCreate(
            code="GAMING20", name="Gaming PC Special",
            description="20% off on gaming PCs above ₹50,000",
            type=DiscountType.PERCENTAGE, value=20, minimum_order_value=50000,
            maximum_discount=15000,
            applicable_categories=["Gaming Beast", "Performance Gamers", "Elite Gaming Setups"],
            usage_limit=500, usage_per_customer=1,
            valid_from=now, valid_until=days(30), stackable=False),
        DiscountCodeCreate(
            code="STUDENT15", name="Student Discount",
            description="15% off for students (requires verification)",
            type=DiscountType.PERCENTAGE, value=15, minimum_order_value=20000,
            maximum_discount=8000, applicable_categories=["Budget Builders", "Essential Creators"],
            usage_per_customer=3, valid_from=now, valid_until=days(365), stackable=True),
        DiscountCodeCreate(
            code="FREESHIP", name="Free Shipping", description="Free shipping on orders above ₹25,000",
            type=DiscountType.FREE_SHIPPING, value=1500, minimum_order_value=25000,
            usage_per_customer=5, valid_from=now, valid_until=days(60), stackable=True),
        DiscountCodeCreate(
            code="BULK5000", name="Bulk Order Discount", description="₹5000 off on orders above ₹100,000",
            type=DiscountType.FIXED_AMOUNT, value=5000, minimum_order_value=100000,
            usage_limit=100, usage_per_customer=2,
            valid_from=now, valid_until=days(45), stackable=True),
    ]


class DiscountEngine:
    def __init__(self, seed_defaults: bool = True):
        self.codes: dict[str, DiscountCode] = {}
        self.bulk_tiers = list(BULK_TIERS)
        if seed_defaults:
            for data in default_codes():
                self._store(data)

    def _store(self, data: DiscountCodeCreate) -> DiscountCode:
        code = DiscountCode(id=f"discount_{secrets.token_hex(6)}", **data.model_dump())
        self.codes[code.code] = code
        return code

    def get(self, code: str) -> Optional[DiscountCode]:
        return self.codes.get(code.strip().upper())

    # ── Validation & application ─────────────────────────────────────────

    def apply_code(self, code: str, cart_items: list[CartLine],
                   customer: str) -> DiscountApplication:
        """Raises DiscountError with a customer-facing message when the code cannot apply."""
        discount = self.get(code)
        if not discount:
            raise DiscountError("Invalid discount code")

        now = utcnow()
        if not discount.is_active:
            raise DiscountError("This discount code is no longer active")
        if now < discount.valid_from or now > discount.valid_until:
            raise DiscountError("This discount code has expired")
        if discount.usage_limit and discount.usage_count >= discount.usage_limit:
            raise DiscountError("This discount code has reached its usage limit")
        if discount.usage_per_customer:
            used = discount.customer_usage.get(customer.lower(), 0)
            if used >= discount.usage_per_customer:
                raise DiscountError(
                    "You have already used this discount code the maximum number of times")

        original = sum(i.total for i in cart_items)
        if discount.minimum_order_value and original < discount.minimum_order_value:
            raise DiscountError(
                f"Minimum order value of ₹{int(discount.minimum_order_value):,} required")

        applicable = [
            i for i in cart_items
            if (not discount.applicable_categories or i.category in discount.applicable_categories)
            and (not discount.applicable_products or i.id in discount.applicable_products)
        ]
        if not applicable:
            raise DiscountError("This discount code is not applicable to items in your cart")

        applicable_total = sum(i.total for i in applicable)
        amount = 0.0
        lines: list[DiscountedLine] = []
        for item in applicable:
            if discount.type == DiscountType.PERCENTAGE:
                item_discount = item.total * discount.value / 100
            elif discount.type == DiscountType.FIXED_AMOUNT:
                item_discount = (item.total / applicable_total) * discount.value if applicable_total else 0.0
            elif discount.type == DiscountType.BUY_X_GET_Y:
                item_discount = (item.quantity // 2) * item.price
            else:
                item_discount = 0.0
            amount += item_discount
            lines.append(DiscountedLine(
                item_id=item.id, item_name=item.name, original_price=item.price,
                discounted_price=item.price - item_discount / item.quantity,
            ))

        if discount.maximum_discount and amount > discount.maximum_discount:
            amount = discount.maximum_discount
        if discount.type == DiscountType.FREE_SHIPPING:
            amount = discount.value

        return DiscountApplication(
            discount_id=discount.id,
            discount_code=discount.code,
            discount_type=discount.type,
            original_amount=original,
            discount_amount=amount,
            final_amount=max(0.0, original - amount),
            applicable_items=lines,
        )

    def bulk_discount(self, cart_items: list[CartLine]) -> Optional[BulkDiscount]:
        quantity = sum(i.quantity for i in cart_items)
        tiers = sorted(
            (t for t in self.bulk_tiers if t.is_active and quantity >= t.minimum_quantity),
            key=lambda t: t.minimum_quantity, reverse=True,
        )
        if not tiers:
            return None
        tier = tiers[0]
        applicable = [
            i for i in cart_items
            if not tier.applicable_categories or i.category in tier.applicable_categories
        ]
        if not applicable:
            return None
        base = sum(i.total for i in applicable)
        return BulkDiscount(
            discount_percentage=tier.discount_percentage,
            discount_amount=base * tier.discount_percentage / 100,
            tier_name=tier.name,
        )

    def stack_codes(self, codes: list[str], cart_items: list[CartLine],
                    customer: str) -> list[DiscountApplication | DiscountError]:
        """
        Apply several codes, strongest first. Each successful code discounts
        the running total; failures are returned in place, not raised.
        """
        cart_total = sum(i.total for i in cart_items)
        known = [d for d in (self.get(c) for c in codes) if d is not None]

        def strength(d: DiscountCode) -> float:
            if d.type == DiscountType.PERCENTAGE:
                return d.value
            return d.value / cart_total * 100 if cart_total else 0.0

        results: list[DiscountApplication | DiscountError] = []
        current = cart_total
        for discount in sorted(known, key=strength, reverse=True):
            if not discount.stackable and any(isinstance(r, DiscountApplication) for r in results):
                results.append(DiscountError(f"{discount.code} cannot be combined with other discounts"))
                continue
            ratio = current / cart_total if cart_total else 0.0
            scaled = [i.model_copy(update={"price": i.price * ratio}) for i in cart_items]
            try:
                application = self.apply_code(discount.code, scaled, customer)
            except DiscountError as e:
                results.append(e)
                continue
            results.append(application)
            current = application.final_amount
        return results

    def confirm_usage(self, code: str, customer: str) -> None:
        discount = self.get(code)
        if not discount:
            return
        key = customer.lower()
        discount.usage_count += 1
        discount.customer_usage[key] = discount.customer_usage.get(key, 0) + 1
        discount.updated_at = utcnow()
        logger.info(f"[discounts] used code={discount.code} count={discount.usage_count}")

    # ── Admin ────────────────────────────────────────────────────────────

    def create_code(self, data: DiscountCodeCreate) -> DiscountCode:
        if data.code in self.codes:
            raise ConflictError(f"Discount code {data.code} already exists")
        return self._store(data)

    def list_codes(self) -> list[DiscountCode]:
        return sorted(self.codes.values(), key=lambda d: d.created_at, reverse=True)

    def active_codes(self) -> list[DiscountCode]:
        now = utcnow()
        return [
            d for d in self.codes.values()
            if d.is_active and d.valid_from <= now <= d.valid_until
            and (not d.usage_limit or d.usage_count < d.usage_limit)
        ]

    def _random_code(self, prefix: str) -> str:
        while True:
            code = prefix.upper()[:4] + "".join(secrets.choice(CODE_ALPHABET) for _ in range(4))
            if code not in self.codes:
                return code

    def generate_promotional_codes(self, request: PromoBatchRequest) -> list[DiscountCode]:
        now = utcnow()
        created = []
        for _ in range(request.count):
            created.append(self._store(DiscountCodeCreate(
                code=self._random_code(request.campaign),
                name=f"{request.campaign} - Auto Generated",
                description=f"Auto-generated promotional code for {request.campaign}",
                type=request.type,
                value=request.value,
                minimum_order_value=request.minimum_order_value,
                usage_per_customer=request.usage_per_customer or 1,
                valid_from=now,
                valid_until=now + timedelta(days=request.valid_days),
                stackable=False,
                created_by="system",
            )))
        logger.info(f"[discounts] generated campaign={request.campaign} count={len(created)}")
        return created

    def analytics(self) -> dict:
        codes = list(self.codes.values())

        def estimated(d: DiscountCode) -> float:
            per_use = AVERAGE_ORDER_VALUE * d.value / 100 if d.type == DiscountType.PERCENTAGE else d.value
            return d.usage_count * per_use

        categories: dict[str, int] = {}
        for d in codes:
            for c in d.applicable_categories:
                categories[c] = categories.get(c, 0) + d.usage_count

        top = sorted(codes, key=lambda d: d.usage_count, reverse=True)[:5]
        return {
            "total_codes": len(codes),
            "active_codes": sum(1 for d in codes if d.is_active),
            "total_usage": sum(d.usage_count for d in codes),
            "total_discount_given": round(sum(estimated(d) for d in codes)),
            "top_performing_codes": [
                {"code": d.code, "usage": d.usage_count, "value": d.value} for d in top
            ],
            "category_performance": categories,
        }
