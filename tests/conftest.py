"""
Shared fixtures: in-memory SQLite database, API client and HTTP stubs for the storefront
and production APIs.
"""
import base64
import hashlib
import hmac
import json
import os
import re

# Settings are read at import time; configure before anything imports printlink.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RUN_BACKGROUND_WORKERS"] = "false"
os.environ["SHOPIFY_API_SECRET"] = "shopify-test-secret"
os.environ["PRODUCTION_WEBHOOK_SECRET"] = "production-test-secret"
os.environ["PRODUCTION_API_URL"] = "https://production.test/api/draft_orders"
os.environ["SQUARESPACE_API_BASE_URL"] = "https://api.squarespace.test/1.0"
os.environ["SUPPORTED_COUNTRIES"] = "NZ,AU"
os.environ["SMTP_HOST"] = ""

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from printlink.auth import create_access_token
from printlink.database import Base, get_db
from printlink.models import (
    Order,
    OrderItem,
    OrderStatus,
    Platform,
    ProductVariant,
    ShippingAddress,
    Store,
    User,
    UserRole,
    VariantMapping,
)
from printlink.services.credentials import encrypt_token

SHOPIFY_SECRET = "shopify-test-secret"
PRODUCTION_SECRET = "production-test-secret"
SHOP_DOMAIN = "test-shop.myshopify.com"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def user(db_session):
    user = User(name="Merchant", email="merchant@example.com", role=UserRole.MERCHANT, country_code="NZ")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def other_user(db_session):
    user = User(name="Other", email="other@example.com", role=UserRole.MERCHANT)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def admin(db_session):
    user = User(name="Admin", email="admin@example.com", role=UserRole.ADMIN)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def store(db_session, user):
    store = Store(
        user_id=user.id,
        name="Test Shop",
        platform=Platform.SHOPIFY,
        shop_domain=SHOP_DOMAIN,
        access_token=encrypt_token("shpat_test_token"),
        active=True,
    )
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture
def squarespace_store(db_session, user):
    store = Store(
        user_id=user.id,
        name="Square Shop",
        platform=Platform.SQUARESPACE,
        shop_domain="square-shop.squarespace.com",
        access_token=encrypt_token("sq_test_token"),
        active=True,
    )
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture
def variant(db_session, store):
    variant = ProductVariant(
        store_id=store.id,
        external_product_id="100",
        external_variant_id="111",
        inventory_item_id="555",
        title="Poster / A3",
        sku="POSTER-A3",
    )
    db_session.add(variant)
    db_session.commit()
    return variant


COMPLETE_MAPPING = {
    "image_id": 20,
    "image_key": "images/poster.png",
    "frame_sku_id": 10,
    "frame_sku_code": "FRAME-A3-BLACK",
    "frame_sku_cost_cents": 1850,
    "cx": 0,
    "cy": 0,
    "cw": 1000,
    "ch": 1400,
    "width": 297,
    "height": 420,
    "unit": "mm",
}


@pytest.fixture
def default_mapping(db_session, variant):
    mapping = VariantMapping(
        product_variant_id=variant.id,
        slot_position=1,
        country_code="NZ",
        is_default=True,
        **COMPLETE_MAPPING,
    )
    db_session.add(mapping)
    db_session.commit()
    return mapping


@pytest.fixture
def order(db_session, store, variant):
    order = Order(
        store_id=store.id,
        external_id="1001",
        external_number="1001",
        name="#1001",
        email="customer@example.com",
        currency="NZD",
        subtotal_cents=5000,
        total_cents=5000,
        country_code="NZ",
        status=OrderStatus.DRAFT,
    )
    order.items.append(OrderItem(
        external_line_id="9001",
        external_variant_id="111",
        product_variant_id=variant.id,
        title="Poster",
        variant_title="A3",
        sku="POSTER-A3",
        quantity=2,
        price_cents=2500,
        total_cents=5000,
    ))
    order.shipping_address = ShippingAddress(
        first_name="Aroha",
        last_name="Smith",
        name="Aroha Smith",
        address1="1 Queen Street",
        city="Auckland",
        postal_code="1010",
        country="New Zealand",
        country_code="NZ",
        phone="+6421000000",
    )
    db_session.add(order)
    db_session.commit()
    return order


@pytest.fixture
def order_item(order):
    return order.items[0]


@pytest.fixture
def order_in_production(db_session, order):
    order.status = OrderStatus.IN_PRODUCTION
    db_session.commit()
    return order


@pytest.fixture
def manual_order(db_session, user):
    order = Order(user_id=user.id, external_id="manual-1", name="Manual 1", currency="NZD", country_code="NZ")
    order.items.append(OrderItem(external_line_id="1", title="Print", quantity=1, price_cents=1000, is_custom=True))
    db_session.add(order)
    db_session.commit()
    return order


def _bearer(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.id})}"}


@pytest.fixture
def auth_headers(user):
    return _bearer(user)


@pytest.fixture
def admin_headers(admin):
    return _bearer(admin)


@pytest.fixture
def other_headers(other_user):
    return _bearer(other_user)


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.session_factory = TestingSessionLocal
    app.state.http_transport = None
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.http_transport = None
    app.state.session_factory = None


@pytest.fixture
def use_transport():
    """Route the app's outbound HTTP through the given MockTransport."""
    def install(transport: httpx.AsyncBaseTransport):
        app.state.http_transport = transport
        return transport
    return install


# HTTP stubs

_OPERATION_RE = re.compile(r"^\s*(?:query|mutation)\s+(\w+)")


class ShopifyStub:
    """Answers Admin GraphQL calls by operation name and records every call."""

    def __init__(self, responses=None, status_code=200):
        self.responses = dict(responses or {})
        self.status_code = status_code
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        operation = _OPERATION_RE.match(body["query"]).group(1)
        variables = body.get("variables") or {}
        self.calls.append((operation, variables))
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="upstream error")
        data = self.responses.get(operation)
        if callable(data):
            data = data(variables)
        return httpx.Response(200, json={"data": data or {}})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def operations(self):
        return [operation for operation, _ in self.calls]

    def variables(self, operation):
        return [variables for op, variables in self.calls if op == operation]


@pytest.fixture
def shopify_stub():
    return ShopifyStub


def _money(amount):
    return {"shopMoney": {"amount": amount}}


def build_order_node(order_id="2002", lines=None, country="NZ", currency="NZD", cancelled_at=None):
    if lines is None:
        lines = [{"id": "9001", "variant": "111", "quantity": 2, "price": "25.00"}]
    edges = []
    for line in lines:
        quantity = line.get("quantity", 1)
        variant_id = line.get("variant")
        edges.append({"node": {
            "id": f"gid://shopify/LineItem/{line['id']}",
            "title": line.get("title", "Poster"),
            "variantTitle": "A3",
            "sku": "POSTER-A3",
            "quantity": quantity,
            "fulfillableQuantity": line.get("fulfillable", quantity),
            "requiresShipping": True,
            "variant": {"id": f"gid://shopify/ProductVariant/{variant_id}"} if variant_id else None,
            "product": {"id": "gid://shopify/Product/100"},
            "originalUnitPriceSet": _money(line.get("price", "25.00")),
            "discountedTotalSet": _money(line.get("total", "50.00")),
            "totalDiscountSet": _money("0.00"),
            "taxLines": [{"priceSet": _money("7.50")}],
        }})
    return {
        "id": f"gid://shopify/Order/{order_id}",
        "name": f"#{order_id}",
        "email": "customer@example.com",
        "phone": "+6421000000",
        "currencyCode": currency,
        "processedAt": "2026-10-01T10:00:00Z",
        "cancelledAt": cancelled_at,
        "closedAt": None,
        "subtotalPriceSet": _money("50.00"),
        "totalDiscountsSet": _money("0.00"),
        "totalShippingPriceSet": _money("10.00"),
        "totalTaxSet": _money("7.50"),
        "totalPriceSet": _money("60.00"),
        "shippingAddress": {
            "firstName": "Aroha",
            "lastName": "Smith",
            "name": "Aroha Smith",
            "company": None,
            "address1": "1 Queen Street",
            "address2": None,
            "city": "Auckland",
            "province": "Auckland",
            "provinceCode": "AUK",
            "zip": "1010",
            "country": "New Zealand",
            "countryCodeV2": country,
            "phone": "+6421000000",
        },
        "lineItems": {"edges": edges},
    }


@pytest.fixture
def order_node():
    return build_order_node


# Webhook delivery

def sign(body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")


@pytest.fixture
def send_webhook(client):
    """POST a signed webhook; pass secret=None to send a bad signature."""
    def send(path, payload, webhook_id="wh-1", shop_domain=SHOP_DOMAIN, secret=SHOPIFY_SECRET, raw_body=None):
        body = raw_body if raw_body is not None else json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Hmac-Sha256": sign(body, secret) if secret else "bm90LWEtdmFsaWQtc2lnbmF0dXJl",
            "X-Shopify-Webhook-Id": webhook_id,
            "X-Shopify-API-Version": "2025-01",
        }
        if shop_domain:
            headers["X-Shopify-Shop-Domain"] = shop_domain
        return client.post(f"/api/webhooks/{path}", content=body, headers=headers)
    return send
