"""
Pytest fixtures for Stockroom backend tests.

Provides test database setup, reference data factories, a recording
notification gateway, and the Flask test client.
"""

import pytest

from stockroom import create_app
from stockroom.extensions import db
from stockroom.models import Product, Supplier
from stockroom.services import ledger_service, notification_gateway
from stockroom.services.notification_gateway import NotificationGateway, SendResult


class RecordingGateway(NotificationGateway):
    """Gateway double: records every send and returns a scripted result."""

    def __init__(self):
        self.sent = []
        self.fail_with = None
        self.on_send = None

    def send(self, order_uuid, template_type, recipient):
        if self.on_send is not None:
            self.on_send(order_uuid, template_type, recipient)
        if self.fail_with is not None:
            return self.fail_with
        self.sent.append((order_uuid, template_type, recipient))
        return SendResult(success=True, message_id=f"msg-{len(self.sent)}")


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'NOTIFICATION_BACKEND': 'log',
        'IDEMPOTENCY_LEASE_SECONDS': 60,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        db.session.expunge_all()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function', autouse=True)
def gateway():
    """Swap in a recording gateway for every test."""
    fake = RecordingGateway()
    notification_gateway.set_gateway(fake)
    yield fake
    notification_gateway.set_gateway(None)


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: create a product, optionally with opening stock."""
    counter = {"n": 0}

    def _make(*, stock: int = 0, price_cents: int = 1000, is_active: bool = True, name: str | None = None):
        counter["n"] += 1
        product = Product(
            sku=f"SKU-{counter['n']:04d}",
            name=name or f"Product {counter['n']}",
            price_cents=price_cents,
            is_active=is_active,
        )
        db_session.add(product)
        db_session.commit()
        if stock:
            ledger_service.record_movement(
                product_id=product.id,
                movement_type="INCOMING",
                quantity=stock,
                reason="Opening stock",
            )
        return product

    return _make


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="Acme Supply", contact_email="orders@acme.test", is_active=True)
    db_session.add(supplier)
    db_session.commit()
    return supplier


def checkout_payload(**overrides) -> dict:
    """Valid card checkout payload for Draft -> Paid."""
    payload = {
        "customer": {
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "phone": "555-0100",
            "address": "12 Analytical Way",
            "city": "London",
            "postal_code": "N1 9GU",
        },
        "delivery": {"method": "standard"},
        "payment": {
            "method": "card",
            "card_number": "4242 4242 4242 4242",
            "card_holder": "Ada Lovelace",
            "expiry_date": "12/29",
            "cvv": "123",
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture(scope='function')
def checkout():
    return checkout_payload()


@pytest.fixture(scope='function')
def make_order(db_session):
    """Factory: create a Draft order for (product, quantity) pairs."""
    from stockroom.services import order_workflow_service

    def _make(*lines, customer_email: str | None = "ada@example.com", discount_cents: int = 0):
        items = [
            {"product_id": product.id, "quantity": quantity, "unit_price_cents": product.price_cents or 0}
            for product, quantity in lines
        ]
        return order_workflow_service.create_order(
            items=items,
            customer_name="Ada Lovelace",
            customer_email=customer_email,
            discount_cents=discount_cents,
            actor="tester",
        )

    return _make
