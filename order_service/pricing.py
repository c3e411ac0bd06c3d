"""
Order Service — 価格計算エンジン

I/O を持たない純粋な計算。同じ入力からは常に同じ PriceBreakdown が得られる。

明細の単価は Assembler がカタログから取得した信頼できる値だけを使う。
クライアントから送られた価格はここまで届かない。

    subtotal        = Σ line_total             (割引価格適用済み)
    item_discount   = Σ (定価 - 実効単価) × 数量 (表示用の値引き額)
    coupon_discount = クーポン値引き (subtotal が上限)
    total           = subtotal - coupon_discount + shipping_cost + tax  (0 未満にはしない)

item_discount は subtotal に既に反映されているので total からは二重に引かない。
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from .config import Settings, get_settings
from .domain import Address, Coupon, DiscountType, LineItem, PriceBreakdown, ShippingMethod
from .errors import PriceIntegrityError

logger = logging.getLogger(__name__)

EPSILON = 0.01

DELIVERY_DAYS = {
    ShippingMethod.STANDARD: 5,
    ShippingMethod.EXPRESS: 3,
    ShippingMethod.OVERNIGHT: 1,
    ShippingMethod.PICKUP: 0,
}


def _money(value: float) -> float:
    return round(value, 2)


def shipping_cost(
    method: ShippingMethod,
    subtotal: float,
    country: str,
    settings: Settings,
) -> float:
    """配送料。(配送方法, 国内/海外) の表引きに、金額による送料無料・割引を加える。"""
    zone = "domestic" if country == settings.domestic_country else "international"
    rates = settings.shipping_rates.get(method.value)
    if rates is None:
        return settings.shipping_rates["standard"][zone]

    if zone == "domestic":
        if method == ShippingMethod.STANDARD and subtotal >= settings.free_shipping_threshold:
            return 0.0
        if method == ShippingMethod.EXPRESS and subtotal >= settings.express_discount_threshold:
            return settings.express_discounted_rate
    return rates[zone]


def tax_rate(country: str, state: str, settings: Settings) -> float:
    """州の税率。州が未登録なら国の既定値、国が未登録なら 0。"""
    country_rates = settings.tax_rates.get(country)
    if not country_rates:
        return 0.0
    return country_rates.get(state, country_rates.get("default", 0.0))


def coupon_discount(coupon: Coupon, subtotal: float) -> float:
    if coupon.discount_type == DiscountType.PERCENT:
        discount = subtotal * coupon.discount_value / 100
        if coupon.max_discount:
            discount = min(discount, coupon.max_discount)
    else:
        discount = coupon.discount_value
    return _money(min(discount, subtotal))


def estimate_delivery(method: ShippingMethod, placed_at: datetime) -> datetime:
    return placed_at + timedelta(days=DELIVERY_DAYS.get(method, 5))


def compute_pricing(
    items: Sequence[LineItem],
    shipping_method: ShippingMethod,
    address: Address,
    coupon: Coupon | None = None,
    *,
    settings: Settings | None = None,
) -> PriceBreakdown:
    settings = settings or get_settings()

    subtotal = _money(sum(item.line_total for item in items))
    item_discount = _money(
        sum((item.unit_price - item.effective_unit_price) * item.quantity for item in items)
    )
    discount = coupon_discount(coupon, subtotal) if coupon else 0.0
    shipping = _money(shipping_cost(shipping_method, subtotal, address.country, settings))
    tax = _money(subtotal * tax_rate(address.country, address.state, settings))

    breakdown = PriceBreakdown(
        subtotal=subtotal,
        item_discount=item_discount,
        coupon_discount=discount,
        shipping_cost=shipping,
        tax=tax,
        total=_money(max(0.0, subtotal - discount + shipping + tax)),
    )
    verify_integrity(items, breakdown)
    return breakdown


def verify_integrity(items: Sequence[LineItem], pricing: PriceBreakdown) -> None:
    """
    明細の単価から小計と合計を再計算し、PriceBreakdown と突き合わせる。
    1 セント以上ずれていれば PriceIntegrityError (注文は作成しない)。
    """
    recalculated = 0.0
    for item in items:
        expected = min(item.unit_discount_price, item.unit_price)
        if abs(item.effective_unit_price - expected) > EPSILON:
            raise PriceIntegrityError(
                f"Price validation failed for product: {item.product_snapshot.name}"
            )
        recalculated += _money(expected * item.quantity)

    if abs(recalculated - pricing.subtotal) > EPSILON:
        logger.error(
            "Subtotal mismatch: recalculated=%.2f stored=%.2f",
            recalculated,
            pricing.subtotal,
        )
        raise PriceIntegrityError(
            "Subtotal validation failed - possible price manipulation detected"
        )

    expected_total = max(
        0.0,
        pricing.subtotal - pricing.coupon_discount + pricing.shipping_cost + pricing.tax,
    )
    if abs(expected_total - pricing.total) > EPSILON:
        raise PriceIntegrityError("Total validation failed")
