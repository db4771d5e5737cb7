from decimal import Decimal

import jwt
import pytest
import requests
from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from models import Address, Order, OrderItem, OrderStatus, PaymentProvider, UserRole

JWT_SECRET = "test-jwt-secret-for-storefront-functions"
MASTER_KEY = "test-master-key"


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=None):
        self.payload = payload
        self.status_code = status_code
        self.text = text if text is not None else str(payload)

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON object could be decoded")
        return self.payload


class FakeSession:
    """Stands in for requests.Session; answers by URL substring and records every call."""

    def __init__(self):
        self.routes = []
        self.calls = []

    def add(self, url_part, payload=None, status_code=200, text=None):
        self.routes.insert(0, (url_part, FakeResponse(payload, status_code, text)))

    def fail(self, url_part, exc=None):
        self.routes.insert(0, (url_part, exc or requests.ConnectionError("gateway unreachable")))

    def _answer(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        for url_part, answer in self.routes:
            if url_part in url:
                if isinstance(answer, Exception):
                    raise answer
                return answer
        raise requests.ConnectionError(f"no fake route for {url}")

    def post(self, url, json=None, data=None, headers=None, timeout=None):
        return self._answer("POST", url, json=json, data=data, headers=headers, timeout=timeout)

    def get(self, url, params=None, headers=None, timeout=None):
        return self._answer("GET", url, params=params, headers=headers, timeout=timeout)

    def calls_to(self, url_part):
        return [call for call in self.calls if url_part in call["url"]]


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        app_url="https://shop.example",
        functions_base_url="https://fn.example",
        credentials_encryption_key=MASTER_KEY,
        jwt_secret=JWT_SECRET,
        gateway_timeout=5,
    )


@pytest.fixture
def http():
    return FakeSession()


@pytest.fixture
def app(settings, http):
    return create_app(settings, http_session=http)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def vault(app):
    return app.state.vault


@pytest.fixture
def make_order(db):
    def _make(
        order_number="ORD-1001",
        subtotal="1000",
        shipping="80",
        total="1080",
        status=OrderStatus.PENDING,
        user_id="user-1",
        payment_method="bkash",
        items=(("Nakshi Kantha Cushion", "500", 2),),
    ):
        address = Address(
            user_id=user_id,
            full_name="Rahim Uddin",
            phone="01711000000",
            email="rahim@example.com",
            address_line="House 12, Road 5",
            thana="Dhanmondi",
            district="Dhaka",
            division="Dhaka",
        )
        db.add(address)
        db.flush()

        order = Order(
            order_number=order_number,
            user_id=user_id,
            address_id=address.id,
            subtotal=Decimal(subtotal),
            shipping_cost=Decimal(shipping),
            total=Decimal(total),
            status=status,
            payment_method=payment_method,
        )
        db.add(order)
        db.flush()

        for name, price, quantity in items:
            db.add(OrderItem(order_id=order.id, product_name=name, product_price=Decimal(price), quantity=quantity))

        db.commit()
        db.refresh(order)
        return order

    return _make


@pytest.fixture
def make_provider(db):
    def _make(provider_type, store_id="store-id", store_password="store-secret", config=None, is_active=True, is_sandbox=True):
        provider = PaymentProvider(
            provider_type=provider_type,
            name=provider_type,
            is_active=is_active,
            is_sandbox=is_sandbox,
            store_id=store_id,
            store_password=store_password,
            config=config or {},
        )
        db.add(provider)
        db.commit()
        db.refresh(provider)
        return provider

    return _make


@pytest.fixture
def make_admin(db):
    def _make(user_id="admin-1"):
        db.add(UserRole(user_id=user_id, role="admin"))
        db.commit()
        return user_id

    return _make


def auth_header(user_id, secret=JWT_SECRET):
    token = jwt.encode({"sub": user_id, "aud": "authenticated"}, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}
