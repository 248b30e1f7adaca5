from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import event

from ..extensions import db
from ..errors import AppendOnlyViolation
from stockroom.time_utils import to_utc_z


MOVEMENT_INCOMING = "INCOMING"
MOVEMENT_OUTGOING = "OUTGOING"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_TYPES = (MOVEMENT_INCOMING, MOVEMENT_OUTGOING, MOVEMENT_ADJUSTMENT)


@dataclass(frozen=True)
class Increase:
    quantity: int

    @property
    def delta(self) -> int:
        return self.quantity


@dataclass(frozen=True)
class Decrease:
    quantity: int

    @property
    def delta(self) -> int:
        return -self.quantity


MovementEffect = Increase | Decrease


def movement_effect(movement_type: str, quantity: int) -> MovementEffect:
    """
    Translate a stored (movement_type, quantity) pair into its stock effect.

    INCOMING/OUTGOING quantities are always positive and carry a fixed sign.
    ADJUSTMENT quantities are signed and never zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValueError("quantity must be an integer")

    if movement_type == MOVEMENT_INCOMING:
        if quantity <= 0:
            raise ValueError("INCOMING quantity must be positive")
        return Increase(quantity)
    if movement_type == MOVEMENT_OUTGOING:
        if quantity <= 0:
            raise ValueError("OUTGOING quantity must be positive")
        return Decrease(quantity)
    if movement_type == MOVEMENT_ADJUSTMENT:
        if quantity == 0:
            raise ValueError("ADJUSTMENT quantity must be non-zero")
        return Increase(quantity) if quantity > 0 else Decrease(-quantity)
    raise ValueError(f"unknown movement_type {movement_type!r}")


class Product(db.Model):
    """
    Product master data. Reference data only: stock is never stored here,
    it is derived from StockMovement rows.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents (single base currency)
    price_cents = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Supplier(db.Model):
    """Supplier reference data; purchase orders point at one supplier."""
    __tablename__ = "suppliers"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    contact_email = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Supplier id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock ledger row.

    quantity follows the stored sign convention (positive for INCOMING and
    OUTGOING, signed for ADJUSTMENT). delta is the signed effect on the
    balance, derived once at insert time through movement_effect(), so the
    balance is always SUM(delta).

    Rows are never updated or deleted. Corrections are compensating movements.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint(
            "movement_type IN ('INCOMING', 'OUTGOING', 'ADJUSTMENT')",
            name="ck_stock_movements_type",
        ),
        db.CheckConstraint(
            "(movement_type = 'INCOMING' AND quantity > 0 AND delta = quantity)"
            " OR (movement_type = 'OUTGOING' AND quantity > 0 AND delta = -quantity)"
            " OR (movement_type = 'ADJUSTMENT' AND quantity <> 0 AND delta = quantity)",
            name="ck_stock_movements_sign",
        ),
        db.Index("ix_stock_movements_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_stock_movements_reference", "reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    delta = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)

    # Order uuid or purchase order id that caused the movement
    reference = db.Column(db.String(64), nullable=True)

    created_by = db.Column(db.String(128), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    @property
    def effect(self) -> MovementEffect:
        return movement_effect(self.movement_type, self.quantity)

    def __repr__(self) -> str:
        return (
            f"<StockMovement id={self.id} product_id={self.product_id} "
            f"type={self.movement_type} quantity={self.quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "delta": self.delta,
            "reason": self.reason,
            "reference": self.reference,
            "created_by": self.created_by,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }


class StockBalance(db.Model):
    """
    Per-product balance view, maintained in the same transaction as every
    StockMovement insert. The check constraint is the store-level guarantee
    that on-hand never goes negative, whatever path wrote the movement.
    """
    __tablename__ = "stock_balances"
    __table_args__ = (
        db.CheckConstraint("on_hand >= 0", name="ck_stock_balances_non_negative"),
    )

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), primary_key=True)
    on_hand = db.Column(db.Integer, nullable=False, default=0)
    movement_count = db.Column(db.Integer, nullable=False, default=0)
    last_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "on_hand": self.on_hand,
            "movement_count": self.movement_count,
            "last_movement_id": self.last_movement_id,
            "updated_at": to_utc_z(self.updated_at),
        }


def _reject_mutation(mapper, connection, target):
    raise AppendOnlyViolation(
        f"{type(target).__name__} rows are append-only",
        details={"id": getattr(target, "id", None)},
    )


event.listen(StockMovement, "before_update", _reject_mutation)
event.listen(StockMovement, "before_delete", _reject_mutation)
