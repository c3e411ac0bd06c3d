"""
Order Service — ドメインモデル (値オブジェクト)

注文パイプライン全体で共有する型。
金額は float で持ち、価格計算の境界で小数点以下 2 桁に丸める。

LineItem の単価は注文時点のスナップショットで、以後再計算しない。
effective_unit_price / line_total は常に派生値として計算し、独立して保存しない。
"""

from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Annotated
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    StringConstraints,
    computed_field,
    field_validator,
    model_validator,
)

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class OrderStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentMethod(StrEnum):
    CASH_ON_DELIVERY = "cash_on_delivery"
    BKASH = "bkash"
    NAGAD = "nagad"
    ROCKET = "rocket"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ShippingMethod(StrEnum):
    STANDARD = "standard"
    EXPRESS = "express"
    OVERNIGHT = "overnight"
    PICKUP = "pickup"


class DiscountType(StrEnum):
    FLAT = "flat"
    PERCENT = "percent"


# ── カタログ ────────────────────────────────────


class Variant(BaseModel):
    id: str
    product_id: str
    sku: str | None = None
    color: str | None = None
    size: str | None = None
    price: float | None = None
    discount_price: float | None = None
    stock: int = Field(0, ge=0)
    is_active: bool = True


class Product(BaseModel):
    """
    商品。バリアントは位置ではなく ID で引く (variants: id → Variant)。
    track_inventory が False の商品は在庫チェックも減算も行わない。
    """

    id: str
    name: str
    slug: str | None = None
    category: str | None = None
    image: str | None = None
    price: float
    discount_price: float | None = None
    stock: int = Field(0, ge=0)
    is_active: bool = True
    track_inventory: bool = True
    variants: dict[str, Variant] = {}

    @property
    def has_variants(self) -> bool:
        return bool(self.variants)

    def get_variant(self, variant_id: str | None) -> Variant | None:
        if variant_id is None:
            return None
        return self.variants.get(variant_id)

    def unit_prices(self, variant: Variant | None = None) -> tuple[float, float]:
        """
        カタログ上の (定価, 割引価格) を返す。
        バリアント価格は商品価格を上書きし、割引価格は
        バリアント割引 → バリアント価格 → 商品割引 → 商品価格 の順にフォールバックする。
        """
        if variant is None:
            price = self.price
            discount = self.discount_price or self.price
        else:
            price = variant.price or self.price
            discount = variant.discount_price or variant.price or self.discount_price or self.price
        return price, discount


# ── 注文明細 ────────────────────────────────────


class ProductSnapshot(BaseModel):
    name: str
    image: str = ""
    category: str = ""
    slug: str | None = None


class VariantInfo(BaseModel):
    variant_id: str | None = None
    color: str | None = None
    size: str | None = None
    sku: str | None = None


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    variant_id: str | None = None
    variant: VariantInfo | None = None
    quantity: int = Field(ge=1)
    unit_price: float = Field(ge=0)
    unit_discount_price: float = Field(ge=0)
    product_snapshot: ProductSnapshot

    @computed_field
    @property
    def effective_unit_price(self) -> float:
        return min(self.unit_discount_price, self.unit_price)

    @computed_field
    @property
    def line_total(self) -> float:
        return round(self.effective_unit_price * self.quantity, 2)


class PriceBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: float = Field(ge=0)
    item_discount: float = Field(0, ge=0)
    coupon_discount: float = Field(0, ge=0)
    shipping_cost: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    total: float = Field(ge=0)


# ── クーポン ────────────────────────────────────


class Coupon(BaseModel):
    id: str
    code: str
    name: str = ""
    discount_type: DiscountType
    discount_value: float = Field(ge=0)
    min_purchase: float = 0
    max_discount: float | None = None
    usage_count: int = 0
    usage_limit: int | None = None
    start_date: datetime | None = None
    expires_at: datetime
    is_active: bool = True
    first_time_only: bool = False
    specific_users: list[str] = []

    @field_validator("start_date", "expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # タイムゾーンなしの日時は UTC とみなす
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_percent(self) -> "Coupon":
        if self.discount_type == DiscountType.PERCENT and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100%")
        return self

    @property
    def remaining_uses(self) -> int | None:
        if self.usage_limit is None:
            return None
        return max(0, self.usage_limit - self.usage_count)


class CouponSnapshot(BaseModel):
    """注文に保存するクーポン情報。Coupon への参照ではない。"""

    code: str
    discount_type: DiscountType
    discount_value: float
    applied_discount: float


# ── 注文 ────────────────────────────────────────


class Address(BaseModel):
    full_name: NonEmptyStr
    phone: NonEmptyStr
    email: EmailStr | None = None
    street: NonEmptyStr
    city: NonEmptyStr
    state: NonEmptyStr
    postal_code: NonEmptyStr
    country: str = "Bangladesh"
    landmark: str | None = None
    address_type: str = Field("home", pattern="^(home|office|other)$")


class PaymentInfo(BaseModel):
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    paid_at: datetime | None = None
    refunded_at: datetime | None = None
    refund_amount: float = 0


class ShippingInfo(BaseModel):
    method: ShippingMethod = ShippingMethod.STANDARD
    cost: float = 0
    estimated_delivery: datetime | None = None
    actual_delivery: datetime | None = None
    tracking_number: str | None = None
    carrier: str | None = None


class TrackingEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OrderStatus
    timestamp: datetime
    note: str | None = None
    updated_by: str | None = None


class Order(BaseModel):
    """
    注文集約のルート。

    作成は Assembler が一度だけ行い、以後の変更は aggregate.transition() 経由のみ。
    物理削除はしない (cancelled / returned で論理的に終わる)。
    """

    id: UUID
    order_number: str
    user_id: str | None = None
    guest_email: str | None = None
    guest_phone: str | None = None
    items: list[LineItem]
    shipping_address: Address
    billing_address: Address
    same_as_billing: bool = True
    payment: PaymentInfo
    pricing: PriceBreakdown
    coupon: CouponSnapshot | None = None
    shipping: ShippingInfo
    status: OrderStatus = OrderStatus.PENDING
    tracking: list[TrackingEntry] = []
    notes: str | None = None
    cancellation_reason: str | None = None
    return_reason: str | None = None
    restocked: bool = False
    placed_at: datetime
    confirmed_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    returned_at: datetime | None = None
    version: int = 0

    @computed_field
    @property
    def customer_type(self) -> str:
        return "registered" if self.user_id else "guest"

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def can_be_cancelled(self) -> bool:
        return self.status in (
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PROCESSING,
        )

    def can_be_returned(self, now: datetime, window_days: int) -> bool:
        if self.status != OrderStatus.DELIVERED or self.delivered_at is None:
            return False
        return now - self.delivered_at <= timedelta(days=window_days)


# ── カート ──────────────────────────────────────


class CartItem(BaseModel):
    id: str
    product_id: str
    variant_id: str | None = None
    quantity: int = Field(ge=1)
    price_snapshot: float | None = None
    added_at: datetime | None = None


class Cart(BaseModel):
    user_id: str
    status: str = "active"
    items: list[CartItem] = []

    @property
    def is_empty(self) -> bool:
        return not self.items


# ── チェックアウト入力 ──────────────────────────


class CartItemRequest(BaseModel):
    """
    ゲスト / ローカルカートからの明細。
    価格フィールドは持たない。価格は必ずカタログから取得する。
    """

    product_id: NonEmptyStr
    variant_id: str | None = None
    quantity: int = Field(ge=1)


class GuestInfo(BaseModel):
    email: EmailStr
    phone: NonEmptyStr


class PlaceOrderRequest(BaseModel):
    shipping_address: Address
    billing_address: Address | None = None
    same_as_billing: bool = True
    payment_method: PaymentMethod
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    coupon_code: str | None = None
    notes: str | None = None
    guest_info: GuestInfo | None = None
    cart_items: list[CartItemRequest] | None = None


# ── 呼び出し元 ──────────────────────────────────

STAFF_ROLES = frozenset({"admin", "moderator"})


class Identity(BaseModel):
    """ゲートウェイが認証済みとして渡す呼び出し元。user_id が None ならゲスト。"""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    email: str | None = None
    role: str = "customer"

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_admin(self) -> bool:
        return self.role in STAFF_ROLES
