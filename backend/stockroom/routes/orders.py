# backend/stockroom/routes/orders.py
"""
Sales order routes.

Every mutating route accepts an Idempotency-Key header and an X-Actor header
(see decorators.command_context). Domain errors are turned into JSON by the
error handler registered in create_app().
"""
from flask import Blueprint, g, request

from ..decorators import command_context
from ..errors import ValidationError
from ..models import Order
from ..validation import ModelValidationPolicy, coerce_int, validate_payload
from ..services import event_log_service
from ..services import order_workflow_service as workflow


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")

ORDER_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"customer_name", "customer_email", "discount_cents", "storefront_id", "notes"},
    required_on_create=set(),
)

COMMAND_FIELDS = {"actor", "idempotency_key"}


def _strip_command_fields(payload: dict, *extra: str) -> dict:
    return {k: v for k, v in payload.items() if k not in COMMAND_FIELDS and k not in extra}


@orders_bp.post("")
@command_context
def create_order_route():
    payload = g.payload
    patch = validate_payload(
        model=Order,
        payload=_strip_command_fields(payload, "items"),
        policy=ORDER_CREATE_POLICY,
        partial=False,
    )
    order = workflow.create_order(
        items=payload.get("items"),
        actor=g.actor,
        idempotency_key=g.idempotency_key,
        **patch,
    )
    return {"order": workflow.order_to_dict(order)}, 201


@orders_bp.get("")
def list_orders_route():
    status = request.args.get("status") or None
    limit = coerce_int("limit", request.args.get("limit", "50"))
    offset = coerce_int("offset", request.args.get("offset", "0"))
    if limit < 1 or limit > 500 or offset < 0:
        raise ValidationError("limit must be 1-500 and offset >= 0")
    orders = workflow.list_orders(status=status, limit=limit, offset=offset)
    return {"orders": [workflow.order_to_dict(o, include_items=False) for o in orders]}


@orders_bp.get("/<order_uuid>")
def get_order_route(order_uuid: str):
    order = workflow.get_order(order_uuid)
    return {"order": workflow.order_to_dict(order)}


@orders_bp.post("/<order_uuid>/transitions")
@command_context
def transition_order_route(order_uuid: str):
    """
    Move an order through its lifecycle.

    Body: {"target_status", "expected_status"?, "notes"?, "checkout"?}
    checkout is required for Draft -> Paid.
    """
    payload = g.payload
    target = payload.get("target_status")
    if not target:
        raise ValidationError("target_status is required")

    result = workflow.transition_order(
        order_uuid,
        target,
        actor=g.actor,
        notes=payload.get("notes"),
        expected_status=payload.get("expected_status"),
        idempotency_key=g.idempotency_key,
        checkout=payload.get("checkout"),
    )
    return result.to_dict(), 200 if result.replayed else 201


@orders_bp.get("/<order_uuid>/timeline")
def order_timeline_route(order_uuid: str):
    events = event_log_service.order_timeline(order_uuid)
    return {
        "order_uuid": order_uuid,
        "events": [e.to_dict() for e in events],
        "status_history": event_log_service.status_history(order_uuid),
        "stats": event_log_service.timeline_stats(order_uuid),
    }


@orders_bp.post("/<order_uuid>/events")
@command_context
def add_order_event_route(order_uuid: str):
    """Append a shipping_update or support_ticket event."""
    payload = g.payload
    event = event_log_service.add_order_event(
        order_uuid=order_uuid,
        event_type=payload.get("event_type"),
        data=payload.get("data") or {},
        actor=g.actor,
    )
    return {"event": event.to_dict()}, 201


@orders_bp.post("/<order_uuid>/resend-confirmation")
@command_context
def resend_confirmation_route(order_uuid: str):
    event = workflow.resend_confirmation(
        order_uuid,
        actor=g.actor,
        idempotency_key=g.idempotency_key,
    )
    return {"success": True, "event": event.to_dict()}, 201
