from __future__ import annotations

from ..extensions import db
from stockroom.time_utils import to_utc_z, utcnow


class PurchaseOrder(db.Model):
    """
    Supplier purchase order.

    LIFECYCLE:
    1. Pending: Created, lines can still change
    2. Approved: Ready to receive against
    3. Received: Every line received in full (set automatically)
    4. Cancelled: Cancelled before receipt completed

    Stock is posted per line as goods arrive (see purchase_order_service),
    never by status change alone.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_purchase_orders_order_number"),
        db.Index("ix_purchase_orders_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable document number (e.g., "PO-0042")
    order_number = db.Column(db.String(64), nullable=False)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="Pending")

    order_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    notes = db.Column(db.Text, nullable=True)

    # Derived from lines (quantity_ordered * unit_cost_cents)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.String(128), nullable=True)
    approved_by = db.Column(db.String(128), nullable=True)
    cancelled_by = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    supplier = db.relationship("Supplier", backref=db.backref("purchase_orders", lazy=True))
    items = db.relationship(
        "PurchaseOrderItem",
        backref=db.backref("purchase_order", lazy=True),
        lazy=True,
        order_by="PurchaseOrderItem.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<PurchaseOrder id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "order_date": to_utc_z(self.order_date),
            "notes": self.notes,
            "total_cents": self.total_cents,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "cancelled_by": self.cancelled_by,
            "created_at": to_utc_z(self.created_at),
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "received_at": to_utc_z(self.received_at) if self.received_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancellation_reason": self.cancellation_reason,
            "version_id": self.version_id,
        }


class PurchaseOrderItem(db.Model):
    """
    One product line on a purchase order.

    quantity_received is the cumulative quantity recorded so far. Receiving
    only ever posts the positive difference to the stock ledger.
    """
    __tablename__ = "purchase_order_items"
    __table_args__ = (
        db.UniqueConstraint("purchase_order_id", "product_id", name="uq_po_items_po_product"),
        db.CheckConstraint("quantity_ordered > 0", name="ck_po_items_ordered_positive"),
        db.CheckConstraint("quantity_received >= 0", name="ck_po_items_received_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity_ordered = db.Column(db.Integer, nullable=False)
    quantity_received = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product")

    @property
    def is_fully_received(self) -> bool:
        return self.quantity_received >= self.quantity_ordered

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "quantity_ordered": self.quantity_ordered,
            "quantity_received": self.quantity_received,
            "unit_cost_cents": self.unit_cost_cents,
            "line_cost_cents": self.quantity_ordered * self.unit_cost_cents,
            "updated_at": to_utc_z(self.updated_at),
        }
