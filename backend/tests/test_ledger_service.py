# Overview: Pytest coverage for the stock ledger and balance calculator.

"""
Stock Ledger Tests

Covers:
- Balance derivation from INCOMING / OUTGOING / ADJUSTMENT movements
- Sufficiency checks on OUTGOING postings
- Manual adjustment to a target balance (including the no-op case)
- Append-only enforcement on StockMovement rows
- Balance view consistency and as-of reads
- Idempotent postings
"""

from datetime import timedelta

import pytest

from stockroom.errors import AppendOnlyViolation, InsufficientStock, NoOpError, NotFound, ValidationError
from stockroom.models import StockBalance, StockMovement
from stockroom.models.inventory import Decrease, Increase, movement_effect
from stockroom.services import ledger_service
from stockroom.time_utils import utcnow


class TestMovementEffect:
    def test_incoming_is_increase(self):
        assert movement_effect("INCOMING", 4) == Increase(4)
        assert movement_effect("INCOMING", 4).delta == 4

    def test_outgoing_is_decrease(self):
        assert movement_effect("OUTGOING", 4) == Decrease(4)
        assert movement_effect("OUTGOING", 4).delta == -4

    def test_adjustment_keeps_sign(self):
        assert movement_effect("ADJUSTMENT", -3) == Decrease(3)
        assert movement_effect("ADJUSTMENT", 2) == Increase(2)

    @pytest.mark.parametrize("movement_type,quantity", [
        ("INCOMING", 0),
        ("INCOMING", -1),
        ("OUTGOING", 0),
        ("ADJUSTMENT", 0),
        ("TRANSFER", 1),
    ])
    def test_rejects_invalid_pairs(self, movement_type, quantity):
        with pytest.raises(ValueError):
            movement_effect(movement_type, quantity)


class TestCurrentStock:
    def test_new_product_has_zero_stock(self, make_product):
        product = make_product()
        assert ledger_service.current_stock(product.id) == 0

    def test_incoming_increases_stock(self, make_product):
        """Stock 0, INCOMING(10) => 10."""
        product = make_product()
        ledger_service.record_movement(product_id=product.id, movement_type="INCOMING", quantity=10)
        assert ledger_service.current_stock(product.id) == 10

    def test_mixed_movements_fold(self, make_product):
        product = make_product(stock=10)
        ledger_service.record_movement(product_id=product.id, movement_type="OUTGOING", quantity=4)
        ledger_service.adjust_stock(product_id=product.id, target_balance=9, reason="Found stock")

        assert ledger_service.current_stock(product.id) == 9
        assert ledger_service.recompute_from_movements(product.id) == 9
        assert ledger_service.balance_view(product.id) == 9

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFound):
            ledger_service.current_stock(999999)

    def test_stock_as_of_is_inclusive(self, make_product):
        product = make_product()
        cutoff = utcnow() - timedelta(minutes=10)
        ledger_service.record_movement(
            product_id=product.id, movement_type="INCOMING", quantity=3, occurred_at=cutoff,
        )
        ledger_service.record_movement(product_id=product.id, movement_type="INCOMING", quantity=5)

        assert ledger_service.stock_as_of(product.id, cutoff) == 3
        assert ledger_service.stock_as_of(product.id, cutoff - timedelta(seconds=1)) == 0
        assert ledger_service.current_stock(product.id) == 8

    def test_future_occurred_at_rejected(self, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            ledger_service.record_movement(
                product_id=product.id,
                movement_type="INCOMING",
                quantity=1,
                occurred_at=utcnow() + timedelta(days=1),
            )


class TestOutgoing:
    def test_outgoing_beyond_stock_rejected(self, make_product):
        product = make_product(stock=2)
        with pytest.raises(InsufficientStock) as exc:
            ledger_service.record_movement(product_id=product.id, movement_type="OUTGOING", quantity=3)

        assert exc.value.details["available"] == 2
        assert ledger_service.current_stock(product.id) == 2
        assert ledger_service.balance_view(product.id) == 2

    def test_outgoing_to_exactly_zero(self, make_product):
        product = make_product(stock=2)
        ledger_service.record_movement(product_id=product.id, movement_type="OUTGOING", quantity=2)
        assert ledger_service.current_stock(product.id) == 0

    def test_adjustment_type_not_allowed_for_direct_postings(self, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            ledger_service.record_movement(product_id=product.id, movement_type="ADJUSTMENT", quantity=3)


class TestAdjustStock:
    def test_adjust_down_posts_negative_adjustment(self, make_product):
        """adjust(product, 7) at stock 10 posts ADJUSTMENT(-3)."""
        product = make_product(stock=10)
        movement = ledger_service.adjust_stock(product_id=product.id, target_balance=7, reason="Cycle count")

        assert movement.movement_type == "ADJUSTMENT"
        assert movement.quantity == -3
        assert movement.delta == -3
        assert ledger_service.current_stock(product.id) == 7

    def test_adjust_up(self, make_product):
        product = make_product(stock=1)
        movement = ledger_service.adjust_stock(product_id=product.id, target_balance=6, reason="Recount")
        assert movement.quantity == 5
        assert ledger_service.current_stock(product.id) == 6

    def test_adjust_to_same_value_is_noop(self, make_product, db_session):
        product = make_product(stock=5)
        with pytest.raises(NoOpError):
            ledger_service.adjust_stock(product_id=product.id, target_balance=5, reason="Recount")
        assert db_session.query(StockMovement).filter_by(product_id=product.id).count() == 1

    def test_negative_target_rejected(self, make_product):
        product = make_product(stock=5)
        with pytest.raises(ValidationError):
            ledger_service.adjust_stock(product_id=product.id, target_balance=-1, reason="Oops")

    def test_reason_required(self, make_product):
        product = make_product(stock=5)
        with pytest.raises(ValidationError):
            ledger_service.adjust_stock(product_id=product.id, target_balance=3, reason="  ")

    def test_idempotent_adjustment_replays(self, make_product, db_session):
        product = make_product(stock=10)
        first = ledger_service.adjust_stock(
            product_id=product.id, target_balance=4, reason="Count", idempotency_key="adj-1",
        )
        second = ledger_service.adjust_stock(
            product_id=product.id, target_balance=4, reason="Count", idempotency_key="adj-1",
        )

        assert first.id == second.id
        assert ledger_service.current_stock(product.id) == 4
        assert db_session.query(StockMovement).filter_by(movement_type="ADJUSTMENT").count() == 1

    def test_key_reused_for_different_target(self, make_product):
        product = make_product(stock=10)
        ledger_service.adjust_stock(product_id=product.id, target_balance=4, reason="Count", idempotency_key="adj-2")
        with pytest.raises(ValidationError):
            ledger_service.adjust_stock(
                product_id=product.id, target_balance=3, reason="Count", idempotency_key="adj-2",
            )


class TestAppendOnly:
    def test_update_rejected(self, make_product, db_session):
        product = make_product(stock=3)
        movement = db_session.query(StockMovement).filter_by(product_id=product.id).one()
        movement.quantity = 30
        with pytest.raises(AppendOnlyViolation):
            db_session.flush()
        db_session.rollback()
        assert ledger_service.current_stock(product.id) == 3

    def test_delete_rejected(self, make_product, db_session):
        product = make_product(stock=3)
        movement = db_session.query(StockMovement).filter_by(product_id=product.id).one()
        db_session.delete(movement)
        with pytest.raises(AppendOnlyViolation):
            db_session.flush()
        db_session.rollback()
        assert ledger_service.current_stock(product.id) == 3


class TestBalanceView:
    def test_view_tracks_every_movement(self, make_product, db_session):
        product = make_product(stock=8)
        ledger_service.record_movement(product_id=product.id, movement_type="OUTGOING", quantity=3)

        balance = db_session.get(StockBalance, product.id)
        db_session.refresh(balance)
        assert balance.on_hand == 5
        assert balance.movement_count == 2
        assert ledger_service.verify_balances() == []

    def test_verify_reports_drift(self, make_product, db_session):
        product = make_product(stock=8)
        db_session.execute(
            StockBalance.__table__.update()
            .where(StockBalance.product_id == product.id)
            .values(on_hand=2)
        )
        db_session.commit()

        assert ledger_service.verify_balances() == [
            {"product_id": product.id, "ledger": 8, "balance_view": 2},
        ]

    def test_net_outgoing_by_reference(self, make_product):
        product = make_product(stock=10)
        ledger_service.record_movement(
            product_id=product.id, movement_type="OUTGOING", quantity=4, reference="order-1",
        )
        ledger_service.record_movement(
            product_id=product.id, movement_type="INCOMING", quantity=1, reference="order-1",
        )
        assert ledger_service.net_outgoing_by_reference("order-1") == {product.id: 3}
        assert ledger_service.net_outgoing_by_reference("order-2") == {}

    def test_list_movements_newest_first(self, make_product):
        product = make_product(stock=1)
        ledger_service.record_movement(product_id=product.id, movement_type="INCOMING", quantity=2)
        movements = ledger_service.list_movements(product_id=product.id)
        assert [m.quantity for m in movements] == [2, 1]
