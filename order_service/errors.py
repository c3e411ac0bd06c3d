"""
Order Service — 例外定義

注文パイプラインで発生するエラーの分類。
HTTP レイヤー(main.py)は status_code と to_body() だけを見てレスポンスを組み立てる。

    ValidationError         入力不正(呼び出し側が修正可能)          400
    ProductUnavailable 等    在庫・商品状態の競合(カートを調整する)    400
    CouponError 系          クーポン固有(クーポンなしで再試行可能)    400
    InvalidTransition       ライフサイクル違反                        400
    Unauthorized/Forbidden  ログインしていない / 権限がない           401 / 403
    OrderNotFound 等        対象が存在しない                          404
    ConcurrentModification  同じ注文への同時更新                      409
    PriceIntegrityError     内部不変条件の違反(致命的)               500
    PlacementTimeout        注文作成がタイムアウト(再試行可能)        503
"""


class OrderServiceError(Exception):
    """Order Service の全エラーの基底クラス。"""

    status_code = 400

    def __init__(self, message: str, **extra):
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_body(self) -> dict:
        return {"message": self.message, **self.extra}


class ValidationError(OrderServiceError):
    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message, errors=errors or [])
        self.errors = errors or []


class Unauthorized(OrderServiceError):
    status_code = 401


class Forbidden(OrderServiceError):
    status_code = 403


class OrderNotFound(OrderServiceError):
    status_code = 404

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__("Order not found")


class CartItemNotFound(OrderServiceError):
    status_code = 404

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__("Item not found in cart")


# ── 商品・在庫 ──────────────────────────────────


class ProductUnavailable(OrderServiceError):
    """商品またはバリアントが存在しない / 無効。リトライ不可。"""

    def __init__(self, product_id: str, variant_id: str | None = None, name: str | None = None):
        self.product_id = product_id
        self.variant_id = variant_id
        if variant_id and name:
            message = f'Selected variant for "{name}" is no longer available'
        elif name:
            message = f'Product "{name}" is no longer available'
        else:
            message = f'Product with ID "{product_id}" is no longer available'
        super().__init__(message, product_id=product_id, variant_id=variant_id)


class InsufficientStock(OrderServiceError):
    def __init__(
        self,
        product_id: str,
        available: int,
        requested: int,
        name: str | None = None,
        variant_id: str | None = None,
        message: str | None = None,
    ):
        self.product_id = product_id
        self.variant_id = variant_id
        self.available = available
        self.requested = requested
        label = f'"{name}"' if name else product_id
        super().__init__(
            message or f"Insufficient stock for {label}. Only {available} available",
            product_id=product_id,
            variant_id=variant_id,
            available_stock=available,
            requested_quantity=requested,
        )


class OutOfStock(InsufficientStock):
    """在庫が 0 の場合。呼び出し側はカートから削除するなど別扱いにできる。"""

    def __init__(self, product_id: str, requested: int, name: str | None = None, variant_id: str | None = None):
        label = f'"{name}"' if name else product_id
        super().__init__(
            product_id, 0, requested, name=name, variant_id=variant_id, message=f"{label} is out of stock"
        )


# ── クーポン ────────────────────────────────────


class CouponError(OrderServiceError):
    """クーポン関連エラーの基底。注文の他の部分には影響しない。"""


class CouponNotFound(CouponError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("Invalid coupon code")


class CouponExpired(CouponError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("Coupon has expired")


class CouponExhausted(CouponError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("Coupon usage limit exceeded")


class MinimumPurchaseNotMet(CouponError):
    def __init__(self, code: str, min_purchase: float, subtotal: float):
        self.code = code
        self.min_purchase = min_purchase
        self.subtotal = subtotal
        super().__init__(
            f"Minimum purchase amount for this coupon is {min_purchase:g}",
            min_purchase=min_purchase,
        )


class CouponNotEligible(CouponError):
    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(reason)


# ── ライフサイクル ──────────────────────────────


class InvalidTransition(OrderServiceError):
    def __init__(self, from_status: str, to_status: str, message: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f'Cannot change status from "{from_status}" to "{to_status}"',
            from_status=from_status,
            to_status=to_status,
        )


class ConcurrentModification(OrderServiceError):
    """楽観的ロックの競合。同じ注文が同時に更新された。"""

    status_code = 409

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__("Order was modified concurrently, please retry")


# ── 内部エラー ──────────────────────────────────


class PriceIntegrityError(OrderServiceError):
    """再計算した金額が一致しない。注文は作成しない。詳細はログのみに残す。"""

    status_code = 500

    def to_body(self) -> dict:
        return {"message": "Internal server error"}


class DuplicateOrderNumber(OrderServiceError):
    """生成した注文番号が衝突した。Assembler が再生成してリトライする。"""

    status_code = 500

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"Duplicate order number {order_number}")

    def to_body(self) -> dict:
        return {"message": "Internal server error"}


class PlacementTimeout(OrderServiceError):
    status_code = 503

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__("Order placement timed out, please retry")
