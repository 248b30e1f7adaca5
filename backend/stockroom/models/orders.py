from __future__ import annotations

import uuid

from sqlalchemy import event

from ..extensions import db
from ..errors import AppendOnlyViolation
from stockroom.time_utils import to_utc_z, utcnow


def _new_uuid() -> str:
    return str(uuid.uuid4())


class Order(db.Model):
    """
    Customer sales order.

    LIFECYCLE:
        Draft -> Paid -> Confirmed -> Packed -> Delivery -> Complete
        Draft / Paid / Confirmed -> Cancelled
        Delivery / Complete -> Returned

    status is a read cache of the latest status_change OrderEvent. It is only
    written by the workflow service, in the same transaction that appends the
    event. Orders are never deleted; cancellation is a terminal status.

    order_total_cents is derived from the items and recomputed on every change.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_status_created", "status", "created_at"),
    )

    uuid = db.Column(db.String(36), primary_key=True, default=_new_uuid)

    # Human-readable document number (e.g., "SO-0042")
    order_number = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="Draft", index=True)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)

    # Order-level discount, applied after item discounts
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    order_total_cents = db.Column(db.Integer, nullable=False, default=0)

    storefront_id = db.Column(db.String(64), nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref=db.backref("order", lazy=True),
        lazy=True,
        order_by="OrderItem.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order uuid={self.uuid} number={self.order_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "uuid": self.uuid,
            "order_number": self.order_number,
            "status": self.status,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "discount_cents": self.discount_cents,
            "order_total_cents": self.order_total_cents,
            "storefront_id": self.storefront_id,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class OrderItem(db.Model):
    """
    Line on an order. Owned by exactly one Order and frozen once the order
    leaves Draft.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_uuid = db.Column(db.String(36), db.ForeignKey("orders.uuid"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    # Per-unit discount
    discount_cents = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product")

    @property
    def line_total_cents(self) -> int:
        return self.quantity * (self.unit_price_cents - (self.discount_cents or 0))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_uuid": self.order_uuid,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "line_total_cents": self.line_total_cents,
        }


class OrderEvent(db.Model):
    """
    Append-only order timeline entry.

    The status history of an order is the subsequence with
    event_type == "status_change"; event_data carries old_status/new_status.

    sequence is a per-order counter assigned under the order row lock, so
    (order_uuid, sequence) orders events even when timestamps collide.
    """
    __tablename__ = "order_events"
    __table_args__ = (
        db.UniqueConstraint("order_uuid", "sequence", name="uq_order_events_order_sequence"),
        db.Index("ix_order_events_order_type", "order_uuid", "event_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_uuid = db.Column(db.String(36), db.ForeignKey("orders.uuid"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)

    event_type = db.Column(db.String(32), nullable=False, index=True)
    event_data = db.Column(db.JSON, nullable=False, default=dict)

    title = db.Column(db.String(255), nullable=True)
    description = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<OrderEvent id={self.id} order={self.order_uuid} seq={self.sequence} type={self.event_type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_uuid": self.order_uuid,
            "sequence": self.sequence,
            "event_type": self.event_type,
            "event_data": self.event_data,
            "title": self.title,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


def _reject_mutation(mapper, connection, target):
    raise AppendOnlyViolation(
        f"{type(target).__name__} rows are append-only",
        details={"id": getattr(target, "id", None)},
    )


event.listen(OrderEvent, "before_update", _reject_mutation)
event.listen(OrderEvent, "before_delete", _reject_mutation)
