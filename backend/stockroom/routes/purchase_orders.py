# backend/stockroom/routes/purchase_orders.py
"""
Purchase order routes.

Receiving is cumulative per line: the body carries the total quantity
received so far, and only the difference is posted to stock.
"""
from flask import Blueprint, g, request

from ..decorators import command_context
from ..errors import ValidationError
from ..models import PurchaseOrder
from ..validation import ModelValidationPolicy, coerce_int, validate_payload
from ..services import purchase_order_service as po_service


purchase_orders_bp = Blueprint("purchase_orders", __name__, url_prefix="/api/purchase-orders")

PURCHASE_ORDER_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"supplier_id", "notes"},
    required_on_create=set(),
)


@purchase_orders_bp.post("")
@command_context
def create_purchase_order_route():
    payload = g.payload
    patch = validate_payload(
        model=PurchaseOrder,
        payload={k: v for k, v in payload.items() if k in PURCHASE_ORDER_CREATE_POLICY.writable_fields},
        policy=PURCHASE_ORDER_CREATE_POLICY,
        partial=False,
    )
    po = po_service.create_purchase_order(items=payload.get("items"), actor=g.actor, **patch)
    return {"purchase_order": po_service.purchase_order_to_dict(po)}, 201


@purchase_orders_bp.get("")
def list_purchase_orders_route():
    status = request.args.get("status") or None
    limit = coerce_int("limit", request.args.get("limit", "50"))
    offset = coerce_int("offset", request.args.get("offset", "0"))
    if limit < 1 or limit > 500 or offset < 0:
        raise ValidationError("limit must be 1-500 and offset >= 0")
    pos = po_service.list_purchase_orders(status=status, limit=limit, offset=offset)
    return {"purchase_orders": [po.to_dict() for po in pos]}


@purchase_orders_bp.get("/<int:po_id>")
def get_purchase_order_route(po_id: int):
    po = po_service.get_purchase_order(po_id)
    return {"purchase_order": po_service.purchase_order_to_dict(po)}


@purchase_orders_bp.post("/<int:po_id>/approve")
@command_context
def approve_purchase_order_route(po_id: int):
    po = po_service.approve_purchase_order(po_id, actor=g.actor)
    return {"purchase_order": po_service.purchase_order_to_dict(po)}


@purchase_orders_bp.post("/<int:po_id>/cancel")
@command_context
def cancel_purchase_order_route(po_id: int):
    po = po_service.cancel_purchase_order(po_id, actor=g.actor, reason=g.payload.get("reason"))
    return {"purchase_order": po_service.purchase_order_to_dict(po)}


@purchase_orders_bp.post("/<int:po_id>/receive-line")
@command_context
def receive_line_route(po_id: int):
    """Body: {"product_id", "quantity_received"} (cumulative quantity)."""
    payload = g.payload
    if payload.get("product_id") is None or payload.get("quantity_received") is None:
        raise ValidationError("product_id and quantity_received are required")

    result = po_service.receive_line(
        po_id,
        coerce_int("product_id", payload["product_id"]),
        payload["quantity_received"],
        actor=g.actor,
        idempotency_key=g.idempotency_key,
    )
    return result.to_dict(), 200 if result.replayed else 201


@purchase_orders_bp.post("/<int:po_id>/receive")
@command_context
def receive_purchase_order_route(po_id: int):
    """Body: {"items": [{"product_id", "quantity_received"}, ...]}."""
    result = po_service.receive_purchase_order(po_id, g.payload.get("items"), actor=g.actor)
    return result.to_dict(), 201
