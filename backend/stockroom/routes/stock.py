# backend/stockroom/routes/stock.py
"""
Stock ledger routes.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- as_of filtering is inclusive: occurred_at <= as_of.
"""
from flask import Blueprint, g, request

from ..decorators import command_context
from ..errors import ValidationError
from ..models import StockMovement
from ..validation import ModelValidationPolicy, coerce_int, validate_payload
from ..services import ledger_service


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")

MOVEMENT_POLICY = ModelValidationPolicy(
    writable_fields={"movement_type", "quantity", "reason", "reference", "occurred_at"},
    required_on_create={"movement_type", "quantity"},
)


@stock_bp.get("/<int:product_id>")
def current_stock_route(product_id: int):
    as_of = request.args.get("as_of")
    if as_of:
        quantity = ledger_service.stock_as_of(product_id, as_of)
    else:
        quantity = ledger_service.current_stock(product_id)
    return {
        "product_id": product_id,
        "quantity_on_hand": quantity,
        "as_of": as_of,
    }


@stock_bp.get("/<int:product_id>/movements")
def list_movements_route(product_id: int):
    ledger_service.get_product(product_id)
    limit = coerce_int("limit", request.args.get("limit", "200"))
    if limit < 1 or limit > 1000:
        raise ValidationError("limit must be between 1 and 1000")
    movements = ledger_service.list_movements(
        product_id=product_id,
        reference=request.args.get("reference") or None,
        limit=limit,
    )
    return {"product_id": product_id, "movements": [m.to_dict() for m in movements]}


@stock_bp.post("/<int:product_id>/movements")
@command_context
def record_movement_route(product_id: int):
    """Direct INCOMING / OUTGOING posting. OUTGOING is checked for sufficiency."""
    payload = {k: v for k, v in g.payload.items() if k not in ("actor", "idempotency_key")}
    patch = validate_payload(model=StockMovement, payload=payload, policy=MOVEMENT_POLICY, partial=False)

    movement = ledger_service.record_movement(
        product_id=product_id,
        movement_type=patch["movement_type"].upper(),
        quantity=patch["quantity"],
        reason=patch.get("reason"),
        reference=patch.get("reference"),
        occurred_at=patch.get("occurred_at"),
        actor=g.actor,
        idempotency_key=g.idempotency_key,
    )
    return {
        "movement": movement.to_dict(),
        "quantity_on_hand": ledger_service.current_stock(product_id),
    }, 201


@stock_bp.post("/<int:product_id>/adjust")
@command_context
def adjust_stock_route(product_id: int):
    """Body: {"target_balance", "reason"}. Posts one ADJUSTMENT for the difference."""
    payload = g.payload
    if payload.get("target_balance") is None:
        raise ValidationError("target_balance is required")

    movement = ledger_service.adjust_stock(
        product_id=product_id,
        target_balance=coerce_int("target_balance", payload["target_balance"]),
        reason=payload.get("reason"),
        actor=g.actor,
        idempotency_key=g.idempotency_key,
    )
    return {
        "movement": movement.to_dict(),
        "quantity_on_hand": ledger_service.current_stock(product_id),
    }, 201
