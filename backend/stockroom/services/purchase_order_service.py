# Overview: Service-layer operations for purchase orders and receiving; encapsulates business logic and database work.

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app

from ..errors import InvalidTransition, NotFound, PreconditionFailed, ValidationError
from ..extensions import db
from ..models import Product, PurchaseOrder, PurchaseOrderItem, StockMovement, Supplier
from ..models.inventory import MOVEMENT_INCOMING
from ..time_utils import utcnow
from ..validation import coerce_int, validate_purchase_order_items
from . import idempotency_service, ledger_service
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .document_service import PURCHASE_ORDER_DOCUMENT, next_document_number


"""
Purchase order lifecycle

    Pending -> Approved -> Received
    Pending / Approved -> Cancelled

RECEIVING:
- quantity_received on a line is cumulative. A receipt posts only the
  positive difference from what was already recorded, as one INCOMING
  movement (reference = PO id, reason "PO Receipt").
- Submitting the same or a lower quantity posts nothing, so receipts can be
  replayed safely.
- When every line is fully received the PO becomes Received.
"""


PO_STATUS_PENDING = "Pending"
PO_STATUS_APPROVED = "Approved"
PO_STATUS_RECEIVED = "Received"
PO_STATUS_CANCELLED = "Cancelled"

PO_STATUSES = (PO_STATUS_PENDING, PO_STATUS_APPROVED, PO_STATUS_RECEIVED, PO_STATUS_CANCELLED)


@dataclass
class ReceiveResult:
    purchase_order: PurchaseOrder
    line: PurchaseOrderItem
    posted_quantity: int = 0
    movement: StockMovement | None = None
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "purchase_order": self.purchase_order.to_dict(),
            "line": self.line.to_dict(),
            "posted_quantity": self.posted_quantity,
            "movement": self.movement.to_dict() if self.movement else None,
            "replayed": self.replayed,
        }


@dataclass
class BulkReceiveResult:
    purchase_order: PurchaseOrder
    lines: list[ReceiveResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "purchase_order": self.purchase_order.to_dict(),
            "lines": [r.to_dict() for r in self.lines],
            "posted_quantity": sum(r.posted_quantity for r in self.lines),
        }


def purchase_order_to_dict(po: PurchaseOrder) -> dict:
    data = po.to_dict()
    data["items"] = [item.to_dict() for item in po.items]
    return data


def get_purchase_order(po_id: int) -> PurchaseOrder:
    po = db.session.get(PurchaseOrder, po_id)
    if po is None:
        raise NotFound(f"Purchase order {po_id} not found", details={"purchase_order_id": po_id})
    return po


def _lock_purchase_order(po_id: int) -> PurchaseOrder:
    begin_write_transaction()
    query = db.session.query(PurchaseOrder).filter_by(id=po_id)
    po = lock_for_update(query).populate_existing().first()
    if po is None:
        raise NotFound(f"Purchase order {po_id} not found", details={"purchase_order_id": po_id})
    return po


def list_purchase_orders(*, status: str | None = None, limit: int = 50, offset: int = 0) -> list[PurchaseOrder]:
    q = db.session.query(PurchaseOrder)
    if status is not None:
        if status not in PO_STATUSES:
            raise ValidationError(f"Invalid purchase order status: {status}")
        q = q.filter(PurchaseOrder.status == status)
    return q.order_by(PurchaseOrder.id.desc()).offset(offset).limit(limit).all()


def create_purchase_order(
    *,
    items,
    supplier_id: int | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> PurchaseOrder:
    cleaned = validate_purchase_order_items(items)

    if supplier_id is not None:
        supplier = db.session.get(Supplier, supplier_id)
        if supplier is None:
            raise NotFound(f"Supplier {supplier_id} not found", details={"supplier_id": supplier_id})
        if not supplier.is_active:
            raise PreconditionFailed(f"Supplier {supplier_id} is inactive", details={"supplier_id": supplier_id})

    product_ids = {item["product_id"] for item in cleaned}
    found = {p.id for p in db.session.query(Product.id).filter(Product.id.in_(product_ids)).all()}
    missing = sorted(product_ids - found)
    if missing:
        raise NotFound(f"Products not found: {missing}", details={"product_ids": missing})

    def _op():
        begin_write_transaction()
        lines = [PurchaseOrderItem(quantity_received=0, **item) for item in cleaned]
        po = PurchaseOrder(
            order_number=next_document_number(document_type=PURCHASE_ORDER_DOCUMENT),
            supplier_id=supplier_id,
            status=PO_STATUS_PENDING,
            notes=notes,
            total_cents=sum(line.quantity_ordered * line.unit_cost_cents for line in lines),
            created_by=actor,
            items=lines,
        )
        db.session.add(po)
        db.session.commit()
        return po

    po = run_with_retry(_op)
    current_app.logger.info("Purchase order %s created", po.order_number)
    return po


def approve_purchase_order(po_id: int, actor: str | None = None) -> PurchaseOrder:
    def _op():
        po = _lock_purchase_order(po_id)
        if po.status != PO_STATUS_PENDING:
            raise InvalidTransition(
                f"Cannot approve a {po.status} purchase order",
                details={"from": po.status, "to": PO_STATUS_APPROVED},
            )
        po.status = PO_STATUS_APPROVED
        po.approved_by = actor
        po.approved_at = utcnow()
        db.session.commit()
        return po

    return run_with_retry(_op)


def cancel_purchase_order(po_id: int, actor: str | None = None, reason: str | None = None) -> PurchaseOrder:
    """
    Cancel a Pending or Approved PO. Stock already received stays in the
    ledger; cancelling only stops further receipts.
    """
    def _op():
        po = _lock_purchase_order(po_id)
        if po.status not in (PO_STATUS_PENDING, PO_STATUS_APPROVED):
            raise InvalidTransition(
                f"Cannot cancel a {po.status} purchase order",
                details={"from": po.status, "to": PO_STATUS_CANCELLED},
            )
        po.status = PO_STATUS_CANCELLED
        po.cancelled_by = actor
        po.cancelled_at = utcnow()
        po.cancellation_reason = reason
        db.session.commit()
        return po

    return run_with_retry(_op)


def _receive_line_locked(po: PurchaseOrder, product_id: int, quantity_received: int, actor: str | None) -> ReceiveResult:
    """Apply one line receipt inside the caller's transaction (PO row already locked)."""
    line = (
        db.session.query(PurchaseOrderItem)
        .filter_by(purchase_order_id=po.id, product_id=product_id)
        .populate_existing()
        .first()
    )
    if line is None:
        raise NotFound(
            f"Product {product_id} is not on purchase order {po.id}",
            details={"purchase_order_id": po.id, "product_id": product_id},
        )

    delta = max(0, quantity_received - line.quantity_received)
    if delta == 0:
        return ReceiveResult(purchase_order=po, line=line, posted_quantity=0)

    if po.status != PO_STATUS_APPROVED:
        raise PreconditionFailed(
            f"Purchase order {po.id} is {po.status}; only Approved orders can be received",
            details={"purchase_order_id": po.id, "status": po.status},
        )

    movement = ledger_service.post_movement(
        product_id=product_id,
        movement_type=MOVEMENT_INCOMING,
        quantity=delta,
        reason=ledger_service.REASON_PO_RECEIPT,
        reference=str(po.id),
        actor=actor,
    )
    line.quantity_received = quantity_received
    return ReceiveResult(purchase_order=po, line=line, posted_quantity=delta, movement=movement)


def _mark_received_if_complete(po: PurchaseOrder) -> None:
    if po.status == PO_STATUS_APPROVED and po.items and all(line.is_fully_received for line in po.items):
        po.status = PO_STATUS_RECEIVED
        po.received_at = utcnow()


def _parse_quantity(value) -> int:
    quantity = coerce_int("quantity_received", value)
    if quantity < 0:
        raise ValidationError("quantity_received cannot be negative")
    return quantity


def receive_line(
    po_id: int,
    product_id: int,
    quantity_received,
    *,
    actor: str | None = None,
    idempotency_key: str | None = None,
) -> ReceiveResult:
    """
    Record the cumulative received quantity for one PO line and post the
    difference to the stock ledger.
    """
    quantity = _parse_quantity(quantity_received)
    fp = idempotency_service.fingerprint({"product_id": product_id, "quantity_received": quantity})

    def _op():
        begin_write_transaction()
        record = None
        if idempotency_key:
            record, replay = idempotency_service.claim(
                scope=f"po:{po_id}", key=idempotency_key, command="receive_line", fingerprint=fp,
            )
            if replay:
                po = get_purchase_order(po_id)
                line = db.session.query(PurchaseOrderItem).filter_by(
                    purchase_order_id=po_id, product_id=product_id
                ).one()
                movement = db.session.get(StockMovement, int(record.resource_id)) if record.resource_id else None
                return ReceiveResult(
                    purchase_order=po,
                    line=line,
                    posted_quantity=(record.response or {}).get("posted_quantity", 0),
                    movement=movement,
                    replayed=True,
                )

        po = _lock_purchase_order(po_id)
        result = _receive_line_locked(po, product_id, quantity, actor)
        _mark_received_if_complete(po)
        db.session.flush()

        if record is not None:
            idempotency_service.complete(
                record,
                resource_type="stock_movement",
                resource_id=result.movement.id if result.movement else None,
                response=result.to_dict(),
            )
        db.session.commit()
        return result

    result = run_with_retry(_op)
    if result.posted_quantity:
        current_app.logger.info(
            "PO %s line product=%s received %s (posted %s)",
            po_id, product_id, quantity, result.posted_quantity,
        )
    return result


def receive_purchase_order(po_id: int, items, *, actor: str | None = None) -> BulkReceiveResult:
    """Apply receive_line semantics to several lines in one transaction."""
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    parsed = []
    for i, raw in enumerate(items):
        if not isinstance(raw, dict) or raw.get("product_id") is None or raw.get("quantity_received") is None:
            raise ValidationError(f"items[{i}] requires product_id and quantity_received")
        parsed.append((coerce_int(f"items[{i}].product_id", raw["product_id"]), _parse_quantity(raw["quantity_received"])))

    def _op():
        po = _lock_purchase_order(po_id)
        results = [_receive_line_locked(po, product_id, quantity, actor) for product_id, quantity in parsed]
        _mark_received_if_complete(po)
        db.session.commit()
        return BulkReceiveResult(purchase_order=po, lines=results)

    result = run_with_retry(_op)
    current_app.logger.info(
        "PO %s received %s line(s), posted %s unit(s)",
        po_id, len(result.lines), sum(r.posted_quantity for r in result.lines),
    )
    return result
