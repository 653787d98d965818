import itertools
import json
import os
import time
from decimal import Decimal

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ALGORITHM"] = "HS256"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ.pop("STRIPE_SECRET_KEY", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from farmmarket.api import app
from farmmarket.database import Base
from farmmarket.dependencies import get_db, get_payment_gateway
from farmmarket.exceptions import ExternalServiceError
from farmmarket.main import token_for
from farmmarket.models import OrderStatus, Role
from farmmarket.security import hash_password
from farmmarket.storage import Storage
from farmmarket.stripe_gateway import CheckoutSession, generate_webhook_signature

WEBHOOK_SECRET = "whsec_test"
PASSWORD = "password123"
PASSWORD_HASH = hash_password(PASSWORD)


class FakeGateway:
    """Records checkout requests instead of calling Stripe."""

    app_url = "http://localhost:3000"

    def __init__(self):
        self.sessions = []
        self.subscriptions = {}
        self.fail = False

    def create_checkout_session(
        self,
        line_items,
        success_url,
        cancel_url,
        customer_email,
        metadata,
        mode="payment",
    ):
        if self.fail:
            raise ExternalServiceError("Payment gateway is unreachable")
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({
            "id": session_id,
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "customer_email": customer_email,
            "metadata": metadata,
            "mode": mode,
        })
        return CheckoutSession(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    def retrieve_subscription(self, gateway_subscription_id):
        if gateway_subscription_id not in self.subscriptions:
            raise ExternalServiceError("Payment gateway rejected the request")
        return self.subscriptions[gateway_subscription_id]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def storage(db_session):
    return Storage(db_session)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session_factory, gateway):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(storage):
    counter = itertools.count(1)

    def _make(role=Role.CUSTOMER, username=None):
        n = next(counter)
        username = username or f"{role.value}{n}"
        with storage.transaction():
            user = storage.create_user(
                username=username,
                email=f"{username}@example.com",
                hashed_password=PASSWORD_HASH,
                name=username.title(),
                role=role,
            )
        return user

    return _make


@pytest.fixture
def customer(make_user):
    return make_user(Role.CUSTOMER)


@pytest.fixture
def farmer(make_user):
    return make_user(Role.FARMER)


@pytest.fixture
def courier(make_user):
    return make_user(Role.DELIVERY)


def auth_headers(user):
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def category(storage):
    with storage.transaction():
        category = storage.create_category(name="Vegetables", icon="carrot", color="#2C7A39")
    return category


@pytest.fixture
def make_product(storage, farmer, category):
    def _make(price="2.50", name="Carrots", owner=None, featured=False):
        with storage.transaction():
            product = storage.create_product(
                name=name,
                description=f"Fresh {name.lower()}",
                price=Decimal(price),
                unit="kg",
                stock=100,
                category_id=category.id,
                farmer_id=(owner or farmer).id,
                featured=featured,
                image_urls=[],
            )
        return product

    return _make


@pytest.fixture
def make_order(storage, customer, make_product):
    """Place an order through the cart, optionally moved to ``status``."""
    from farmmarket.cart import add_item
    from farmmarket.order import place_order

    def _make(status=OrderStatus.PENDING, owner=None, delivery_person=None, quantity=2):
        owner = owner or customer
        product = make_product()
        add_item(storage, owner.id, product.id, quantity)
        order = place_order(storage, owner.id, "12 Farm Lane")
        with storage.transaction():
            order.status = status
            if delivery_person is not None:
                order.delivery_person_id = delivery_person.id
                storage.create_delivery(
                    delivery_person_id=delivery_person.id,
                    order_id=order.id,
                    status=status,
                    scheduled_time=order.created_at,
                    route_info={},
                )
        return order

    return _make


def signed_webhook(client, event, secret=WEBHOOK_SECRET, timestamp=None):
    payload = json.dumps(event).encode()
    timestamp = timestamp or int(time.time())
    signature = generate_webhook_signature(secret, timestamp, payload)
    return client.post(
        "/payments/webhook",
        content=payload,
        headers={
            "Stripe-Signature": f"t={timestamp},v1={signature}",
            "Content-Type": "application/json",
        },
    )
