# Overview: Multi-threaded tests proving postings and transitions never oversell stock.

"""
Concurrency tests run against a file-backed SQLite database so that every
thread gets its own connection and the write lock is actually contended.
"""

import threading

import pytest

from conftest import checkout_payload
from stockroom import create_app
from stockroom.errors import ConcurrentModification, InsufficientStock, InvalidTransition
from stockroom.extensions import db
from stockroom.models import Product
from stockroom.services import ledger_service
from stockroom.services import order_workflow_service as workflow


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'NOTIFICATION_BACKEND': 'log',
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def _run_threads(app, count, work):
    """Run work(i) in count threads, each inside its own app context; return outcomes by index."""
    outcomes = [None] * count
    barrier = threading.Barrier(count)

    def runner(i):
        with app.app_context():
            barrier.wait()
            try:
                outcomes[i] = work(i)
            except (InsufficientStock, ConcurrentModification, InvalidTransition) as exc:
                outcomes[i] = exc

    threads = [threading.Thread(target=runner, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def _product_with_stock(app, stock):
    with app.app_context():
        product = Product(sku="RACE-1", name="Contended widget", price_cents=500, is_active=True)
        db.session.add(product)
        db.session.commit()
        ledger_service.record_movement(product_id=product.id, movement_type="INCOMING", quantity=stock)
        return product.id


class TestConcurrentPostings:
    def test_outgoing_never_oversells(self, file_app):
        product_id = _product_with_stock(file_app, 3)

        outcomes = _run_threads(
            file_app,
            6,
            lambda i: ledger_service.record_movement(
                product_id=product_id, movement_type="OUTGOING", quantity=1, actor=f"worker-{i}",
            ).id,
        )

        succeeded = [o for o in outcomes if isinstance(o, int)]
        rejected = [o for o in outcomes if isinstance(o, InsufficientStock)]
        assert len(succeeded) == 3
        assert len(rejected) == 3

        with file_app.app_context():
            assert ledger_service.current_stock(product_id) == 0
            assert ledger_service.verify_balances() == []

    def test_last_unit_goes_to_one_order(self, file_app):
        product_id = _product_with_stock(file_app, 1)

        with file_app.app_context():
            uuids = [
                workflow.create_order(
                    items=[{"product_id": product_id, "quantity": 1, "unit_price_cents": 500}],
                ).uuid
                for _ in range(4)
            ]

        outcomes = _run_threads(
            file_app,
            4,
            lambda i: workflow.transition_order(uuids[i], "Paid", checkout=checkout_payload()).order.status,
        )

        assert outcomes.count("Paid") == 1
        assert sum(isinstance(o, InsufficientStock) for o in outcomes) == 3

        with file_app.app_context():
            assert ledger_service.current_stock(product_id) == 0
            statuses = sorted(workflow.get_order(u).status for u in uuids)
            assert statuses == ["Draft", "Draft", "Draft", "Paid"]

    def test_same_order_paid_once(self, file_app):
        product_id = _product_with_stock(file_app, 10)
        with file_app.app_context():
            uuid = workflow.create_order(
                items=[{"product_id": product_id, "quantity": 2, "unit_price_cents": 500}],
            ).uuid

        outcomes = _run_threads(
            file_app,
            3,
            lambda i: workflow.transition_order(uuid, "Paid", checkout=checkout_payload()).order.status,
        )

        assert outcomes.count("Paid") == 1
        assert all(isinstance(o, (ConcurrentModification, InvalidTransition)) for o in outcomes if o != "Paid")

        with file_app.app_context():
            assert ledger_service.current_stock(product_id) == 8
            assert len(ledger_service.list_movements(reference=uuid)) == 1
