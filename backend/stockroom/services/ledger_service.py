# Overview: Service-layer operations for the stock ledger; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..errors import InsufficientStock, NoOpError, NotFound, ValidationError
from ..extensions import db
from ..models import Product, StockBalance, StockMovement
from ..models.inventory import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_INCOMING,
    MOVEMENT_OUTGOING,
    MovementEffect,
    movement_effect,
)
from ..time_utils import normalize_occurred_at, utcnow
from . import idempotency_service
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry

"""
Stock ledger invariants (authoritative)

- StockMovement rows are append-only; corrections are compensating movements.
- On-hand for a product is the fold of its movements' effects (SUM(delta)).
- Every posting checks sufficiency under the product's balance-row lock and
  updates stock_balances in the same transaction.
- stock_balances.on_hand >= 0 is a database check constraint; a posting that
  would break it fails with InsufficientStock.
- As-of reads are inclusive: occurred_at <= as_of.
"""


REASON_ORDER_FULFILLMENT = "Order Fulfillment"
REASON_ORDER_CANCELLED = "Order Cancelled"
REASON_ORDER_RETURNED = "Order Returned"
REASON_PO_RECEIPT = "PO Receipt"


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def fold_effects(effects: Iterable[MovementEffect]) -> int:
    """Sum a sequence of movement effects into a balance."""
    return sum(effect.delta for effect in effects)


def _ledger_sum(product_id: int, as_of: datetime | None = None) -> int:
    q = db.session.query(func.coalesce(func.sum(StockMovement.delta), 0)).filter(
        StockMovement.product_id == product_id
    )
    if as_of is not None:
        q = q.filter(StockMovement.occurred_at <= as_of)
    return int(q.scalar() or 0)


def current_stock(product_id: int) -> int:
    """
    On-hand quantity derived from the ledger.

    Reads only committed movements of this product and never blocks writers.
    """
    get_product(product_id)
    return _ledger_sum(product_id)


def stock_as_of(product_id: int, as_of) -> int:
    """On-hand quantity counting only movements with occurred_at <= as_of."""
    get_product(product_id)
    try:
        cutoff = normalize_occurred_at(as_of) if as_of is not None else None
    except ValueError as exc:
        raise ValidationError(f"Invalid as_of: {exc}")
    return _ledger_sum(product_id, cutoff)


def recompute_from_movements(product_id: int) -> int:
    """Python-side fold through MovementEffect; used to cross-check the SQL sum."""
    rows = (
        db.session.query(StockMovement.movement_type, StockMovement.quantity)
        .filter(StockMovement.product_id == product_id)
        .all()
    )
    return fold_effects(movement_effect(movement_type, quantity) for movement_type, quantity in rows)


def balance_view(product_id: int) -> int:
    """Read the maintained stock_balances row (0 when nothing was ever posted)."""
    get_product(product_id)
    balance = db.session.get(StockBalance, product_id)
    return balance.on_hand if balance else 0


def verify_balances() -> list[dict]:
    """
    Recompute every product's ledger fold and report disagreements with the
    balance view. An empty list means the view is consistent.
    """
    sums = dict(
        db.session.query(StockMovement.product_id, func.sum(StockMovement.delta))
        .group_by(StockMovement.product_id)
        .all()
    )
    views = {b.product_id: b.on_hand for b in db.session.query(StockBalance).all()}

    mismatches = []
    for product_id in sorted(set(sums) | set(views)):
        ledger = int(sums.get(product_id) or 0)
        view = views.get(product_id, 0)
        if ledger != view:
            mismatches.append({"product_id": product_id, "ledger": ledger, "balance_view": view})
    return mismatches


def list_movements(
    *,
    product_id: int | None = None,
    reference: str | None = None,
    limit: int = 200,
) -> list[StockMovement]:
    """Movements newest first, optionally filtered by product and reference."""
    q = db.session.query(StockMovement)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if reference is not None:
        q = q.filter(StockMovement.reference == str(reference))
    return q.order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc()).limit(limit).all()


def net_outgoing_by_reference(reference: str) -> dict[int, int]:
    """
    Net quantity removed from stock per product for one reference.

    Outgoing postings count positive and compensating Incoming postings
    negative, so a fully reversed reference nets to zero.
    """
    rows = (
        db.session.query(StockMovement.product_id, func.sum(StockMovement.delta))
        .filter(StockMovement.reference == str(reference))
        .filter(StockMovement.movement_type.in_([MOVEMENT_INCOMING, MOVEMENT_OUTGOING]))
        .group_by(StockMovement.product_id)
        .all()
    )
    return {product_id: -int(total) for product_id, total in rows if total and total < 0}


def _lock_balance(product_id: int) -> StockBalance:
    """
    Lock the product's balance row for the rest of the transaction,
    creating it from the ledger fold on first use.
    """
    begin_write_transaction()
    query = db.session.query(StockBalance).filter_by(product_id=product_id)
    balance = lock_for_update(query).populate_existing().first()
    if balance is not None:
        return balance

    last_id, count = (
        db.session.query(func.max(StockMovement.id), func.count(StockMovement.id))
        .filter(StockMovement.product_id == product_id)
        .one()
    )
    try:
        with db.session.begin_nested():
            balance = StockBalance(
                product_id=product_id,
                on_hand=_ledger_sum(product_id),
                movement_count=count or 0,
                last_movement_id=last_id,
            )
            db.session.add(balance)
    except IntegrityError:
        balance = lock_for_update(query).populate_existing().one()
    return balance


def post_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    reason: str | None = None,
    reference: str | None = None,
    actor: str | None = None,
    occurred_at=None,
) -> StockMovement:
    """
    Append one movement inside the caller's transaction.

    Locks the balance row, re-reads the ledger, rejects postings that would
    drive on-hand negative, then appends and updates the balance view.
    Does not commit.
    """
    try:
        effect = movement_effect(movement_type, quantity)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"movement_type": movement_type, "quantity": quantity})

    try:
        occurred = normalize_occurred_at(occurred_at)
    except ValueError as exc:
        raise ValidationError(str(exc))

    get_product(product_id)
    balance = _lock_balance(product_id)

    available = _ledger_sum(product_id)
    if available + effect.delta < 0:
        raise InsufficientStock(
            f"Insufficient stock for product {product_id}: available {available}, requested {-effect.delta}",
            details={"product_id": product_id, "available": available, "requested": -effect.delta},
        )

    movement = StockMovement(
        product_id=product_id,
        movement_type=movement_type,
        quantity=quantity,
        delta=effect.delta,
        reason=reason,
        reference=str(reference) if reference is not None else None,
        created_by=actor,
        occurred_at=occurred,
    )
    db.session.add(movement)
    db.session.flush()

    stmt = (
        update(StockBalance)
        .where(StockBalance.product_id == product_id)
        .values(
            on_hand=StockBalance.on_hand + effect.delta,
            movement_count=StockBalance.movement_count + 1,
            last_movement_id=movement.id,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    try:
        db.session.execute(stmt)
    except IntegrityError as exc:
        raise InsufficientStock(
            f"Insufficient stock for product {product_id}",
            details={"product_id": product_id, "requested": -effect.delta},
        ) from exc
    db.session.expire(balance)

    return movement


def _replayed_movement(record) -> StockMovement:
    movement = db.session.get(StockMovement, int(record.resource_id))
    if movement is None:
        raise NotFound(f"Movement {record.resource_id} not found")
    return movement


def record_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    reason: str | None = None,
    reference: str | None = None,
    actor: str | None = None,
    occurred_at=None,
    idempotency_key: str | None = None,
) -> StockMovement:
    """
    Post a direct INCOMING or OUTGOING movement and commit.

    OUTGOING is checked for sufficiency. Adjustments go through adjust_stock().
    """
    if movement_type not in (MOVEMENT_INCOMING, MOVEMENT_OUTGOING):
        raise ValidationError("movement_type must be INCOMING or OUTGOING")

    fp = idempotency_service.fingerprint({
        "product_id": product_id,
        "movement_type": movement_type,
        "quantity": quantity,
        "reference": reference,
    })

    def _op():
        begin_write_transaction()
        record = None
        if idempotency_key:
            record, replay = idempotency_service.claim(
                scope=f"stock:{product_id}",
                key=idempotency_key,
                command="record_movement",
                fingerprint=fp,
            )
            if replay:
                return _replayed_movement(record)

        movement = post_movement(
            product_id=product_id,
            movement_type=movement_type,
            quantity=quantity,
            reason=reason,
            reference=reference,
            actor=actor,
            occurred_at=occurred_at,
        )
        if record is not None:
            idempotency_service.complete(
                record,
                resource_type="stock_movement",
                resource_id=movement.id,
                response=movement.to_dict(),
            )
        db.session.commit()
        return movement

    movement = run_with_retry(_op)
    current_app.logger.info(
        "Stock movement %s posted: product=%s type=%s quantity=%s",
        movement.id, product_id, movement_type, quantity,
    )
    return movement


def adjust_stock(
    *,
    product_id: int,
    target_balance: int,
    reason: str,
    actor: str | None = None,
    idempotency_key: str | None = None,
) -> StockMovement:
    """
    Set on-hand to target_balance with a single ADJUSTMENT movement.

    delta = target_balance - current on-hand, computed under the balance lock.
    A zero delta is rejected with NoOpError so callers notice the no-op.
    """
    if isinstance(target_balance, bool) or not isinstance(target_balance, int):
        raise ValidationError("target_balance must be an integer")
    if target_balance < 0:
        raise ValidationError("target_balance cannot be negative", details={"target_balance": target_balance})
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required for stock adjustments")

    fp = idempotency_service.fingerprint({"product_id": product_id, "target_balance": target_balance})

    def _op():
        begin_write_transaction()
        record = None
        if idempotency_key:
            record, replay = idempotency_service.claim(
                scope=f"stock:{product_id}",
                key=idempotency_key,
                command="adjust_stock",
                fingerprint=fp,
            )
            if replay:
                return _replayed_movement(record)

        get_product(product_id)
        _lock_balance(product_id)
        delta = target_balance - _ledger_sum(product_id)
        if delta == 0:
            raise NoOpError(
                f"Product {product_id} already has {target_balance} on hand",
                details={"product_id": product_id, "target_balance": target_balance},
            )

        movement = post_movement(
            product_id=product_id,
            movement_type=MOVEMENT_ADJUSTMENT,
            quantity=delta,
            reason=str(reason).strip(),
            actor=actor,
        )
        if record is not None:
            idempotency_service.complete(
                record,
                resource_type="stock_movement",
                resource_id=movement.id,
                response=movement.to_dict(),
            )
        db.session.commit()
        return movement

    movement = run_with_retry(_op)
    current_app.logger.info(
        "Stock adjusted: product=%s target=%s delta=%s", product_id, target_balance, movement.quantity,
    )
    return movement
