from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from settlement.main import app as fastapi_app
from settlement.database import Base
from settlement.models import Cart, CartItem, Category, Product, Seller
from settlement.orders import LineRequest, OrderService
from settlement.payments import PaymentService
from settlement.utils import utcnow
import settlement.auth
from settlement.auth import CurrentUser

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_settlement.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

BUYER = CurrentUser(id="buyer-1", role="buyer")
OTHER_BUYER = CurrentUser(id="buyer-2", role="buyer")
ADMIN = CurrentUser(id="admin-1", role="admin")

ADDRESS = {"recipientName": "Kim Minji", "address1": "12 Teheran-ro", "city": "Seoul", "postalCode": "06234"}


class FakeGateway:
    """Stands in for settlement.stripe_service in engine-level tests."""

    def __init__(self):
        self.intents = []
        self.refunds = []

    def create_payment(self, amount, currency, idempotency_key, metadata=None):
        self.intents.append((amount, currency, idempotency_key))
        n = len(self.intents)
        return SimpleNamespace(id=f"pi_test_{n}", client_secret=f"secret_{n}")

    def refund_payment(self, payment_intent_id, amount, idempotency_key):
        self.refunds.append((payment_intent_id, amount))
        return SimpleNamespace(id=f"re_test_{len(self.refunds)}")


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def act_as():
    def _act_as(user):
        fastapi_app.dependency_overrides[settlement.auth.verify_token] = lambda: user
    return _act_as


@pytest.fixture
def client(monkeypatch, act_as):
    monkeypatch.setattr("settlement.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("settlement.main.SessionLocal", TestingSessionLocal)
    act_as(BUYER)

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


# --- seeding helpers ---

def add_seller(db, user_id="seller-user-1", commission_rate=None, name="Hanok Crafts"):
    seller = Seller(user_id=user_id, business_name=name, commission_rate=commission_rate,
                    total_sales=0, total_earnings=0)
    db.add(seller)
    db.commit()
    return seller


def add_category(db, name="Living", commission_rate=None):
    category = Category(name=name, commission_rate=commission_rate)
    db.add(category)
    db.commit()
    return category


def add_product(db, name="Ceramic Mug", price=10000, sale_price=None, stock=10, seller=None,
                category=None, stock_management="track", status="active", shipping_free=False,
                shipping_fee=3000):
    product = Product(
        name=name,
        base_price=price,
        sale_price=sale_price,
        total_stock=stock,
        stock_management=stock_management,
        status=status,
        seller_id=seller.id if seller else None,
        ownership_type="seller" if seller else "platform",
        category_id=category.id if category else None,
        shipping_free=shipping_free,
        shipping_fee=shipping_fee,
    )
    db.add(product)
    db.commit()
    return product


def add_cart(db, user_id, lines):
    cart = Cart(user_id=user_id, items=[CartItem(product_id=p.id, quantity=q) for p, q in lines])
    db.add(cart)
    db.commit()
    return cart


def stock_of(db, product_id):
    db.expire_all()
    return db.get(Product, product_id).total_stock


def status_of(db, product_id):
    db.expire_all()
    return db.get(Product, product_id).status


# --- lifecycle helpers ---

def place_order(db, lines, user_id=BUYER.id):
    outcome = OrderService(db).create_order(user_id, [LineRequest(p.id, q) for p, q in lines], ADDRESS)
    return outcome.order


def pay(db, order, gateway):
    service = PaymentService(db, gateway=gateway)
    checkout = service.create_payment(order.id, "card")
    service.approve_payment(checkout.payment.id, transaction_id="ch_test")
    return checkout.payment


def deliver(db, order):
    service = OrderService(db)
    for status in ("processing", "shipped", "delivered"):
        service.advance_fulfilment(order.id, status)
    return order


def delivered_order(db, gateway, lines, user_id=BUYER.id):
    order = place_order(db, lines, user_id=user_id)
    pay(db, order, gateway)
    return deliver(db, order)


def period_around_now():
    now = utcnow()
    return now - timedelta(days=1), now + timedelta(days=1)


def rate(value):
    return Decimal(str(value))
