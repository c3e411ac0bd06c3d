"""Pytest fixtures for order service tests."""

import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from order_service import catalog, coupons
from order_service.config import Settings
from order_service.db import create_database
from order_service.domain import (
    Address,
    Coupon,
    DiscountType,
    Identity,
    LineItem,
    Order,
    OrderStatus,
    PaymentInfo,
    PaymentMethod,
    PriceBreakdown,
    Product,
    ProductSnapshot,
    ShippingInfo,
    TrackingEntry,
    Variant,
)
from order_service.notifications import EventPublisher

NOW = datetime.now(timezone.utc).replace(microsecond=0)


class FakeRedis:
    """publish() を記録するだけの Redis。fail=True なら接続エラーを送出する。"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.published.append((channel, json.loads(message)))
        return 1

    def events(self, channel: str) -> list[str]:
        return [m["event_type"] for c, m in self.published if c == channel]


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        redis_url="redis://localhost:6379",
        placement_timeout_seconds=5.0,
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def publisher(fake_redis, settings):
    return EventPublisher(fake_redis, settings)


@pytest.fixture
def failing_publisher(settings):
    return EventPublisher(FakeRedis(fail=True), settings)


@pytest.fixture
async def session_factory(tmp_path):
    factory, engine = await create_database(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    yield factory
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


PRODUCTS = [
    Product(id="p-shirt", name="Cotton Shirt", category="Apparel", price=100, discount_price=80, stock=10),
    Product(id="p-phone", name="Phone", category="Electronics", price=1000, stock=3),
    Product(id="p-mug", name="Mug", price=50, stock=0),
    Product(id="p-old", name="Discontinued Lamp", price=70, stock=5, is_active=False),
    Product(id="p-ebook", name="E-Book", price=30, stock=0, track_inventory=False),
    Product(
        id="p-tee",
        name="Graphic Tee",
        price=100,
        stock=7,
        variants={
            "v-red-m": Variant(id="v-red-m", product_id="p-tee", color="red", size="M", price=120, stock=5),
            "v-blue-l": Variant(
                id="v-blue-l", product_id="p-tee", color="blue", size="L", stock=2, is_active=False
            ),
        },
    ),
]


def make_coupon(code: str, **overrides) -> Coupon:
    data = {
        "id": f"c-{code.lower()}",
        "code": code,
        "name": code.title(),
        "discount_type": DiscountType.PERCENT,
        "discount_value": 10,
        "expires_at": NOW + timedelta(days=30),
    }
    data.update(overrides)
    return Coupon(**data)


COUPONS = [
    make_coupon("SAVE10"),
    make_coupon("BIG50", discount_value=50, max_discount=100),
    make_coupon("FLAT500", discount_type=DiscountType.FLAT, discount_value=500),
    make_coupon("EXPIRED", expires_at=NOW - timedelta(days=1)),
    make_coupon("LIMITED", usage_limit=1, usage_count=1),
    make_coupon("ONCE", usage_limit=1),
    make_coupon("MIN1000", min_purchase=1000),
    make_coupon("FIRST", first_time_only=True),
    make_coupon("VIP", specific_users=["user-vip"]),
    make_coupon("SOON", start_date=NOW + timedelta(days=2)),
]


@pytest.fixture
async def seeded(session_factory):
    """商品とクーポンを登録する。"""
    async with session_factory() as session:
        for product in PRODUCTS:
            await catalog.add_product(session, product)
        for coupon in COUPONS:
            await coupons.add_coupon(session, coupon)
        await session.commit()
    return session_factory


@pytest.fixture
def dhaka_address():
    return Address(
        full_name="Rahim Uddin",
        phone="01700000000",
        email="rahim@example.com",
        street="House 12, Road 5",
        city="Dhaka",
        state="Dhaka",
        postal_code="1207",
    )


@pytest.fixture
def customer():
    return Identity(user_id="user-1", email="user1@example.com")


@pytest.fixture
def admin():
    return Identity(user_id="admin-1", email="admin@example.com", role="admin")


@pytest.fixture
def guest():
    return Identity()


@pytest.fixture
def make_order(dhaka_address):
    """DB を使わないテスト用の注文を作る。"""

    def _make(
        status: OrderStatus = OrderStatus.PENDING,
        payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY,
        **overrides,
    ) -> Order:
        items = [
            LineItem(
                product_id="p-shirt",
                quantity=2,
                unit_price=100,
                unit_discount_price=80,
                product_snapshot=ProductSnapshot(name="Cotton Shirt"),
            )
        ]
        data = {
            "id": uuid4(),
            "order_number": "ORD-20250314-103000-001",
            "user_id": "user-1",
            "items": items,
            "shipping_address": dhaka_address,
            "billing_address": dhaka_address,
            "payment": PaymentInfo(method=payment_method),
            "pricing": PriceBreakdown(
                subtotal=160, item_discount=40, shipping_cost=50, tax=8, total=218
            ),
            "shipping": ShippingInfo(cost=50),
            "status": status,
            "tracking": [TrackingEntry(status=OrderStatus.PENDING, timestamp=NOW, note="Order placed")],
            "placed_at": NOW,
            "version": 1,
        }
        data.update(overrides)
        return Order(**data)

    return _make
