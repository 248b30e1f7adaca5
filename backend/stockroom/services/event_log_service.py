# Overview: Service-layer operations for the order event log; encapsulates business logic and database work.

from __future__ import annotations

from sqlalchemy import func

from ..errors import NotFound, ValidationError
from ..extensions import db
from ..models import Order, OrderEvent
from ..time_utils import utcnow

"""
Order event log invariants (authoritative)

- Events are append-only; nothing here updates or deletes an event.
- Callers append while holding the order row lock (see order_workflow_service),
  inside the transaction that makes the change the event records.
- sequence is a dense per-order counter; created_at never goes backwards
  within an order, so (created_at, sequence) and sequence agree.
"""


EVENT_STATUS_CHANGE = "status_change"
EVENT_STATUS_CHANGE_NOTE = "status_change_note"
EVENT_EMAIL_SENT = "email_sent"
EVENT_PAYMENT_RECEIVED = "payment_received"
EVENT_SHIPPING_UPDATE = "shipping_update"
EVENT_SUPPORT_TICKET = "support_ticket"

EVENT_TYPES = {
    EVENT_STATUS_CHANGE,
    EVENT_STATUS_CHANGE_NOTE,
    EVENT_EMAIL_SENT,
    EVENT_PAYMENT_RECEIVED,
    EVENT_SHIPPING_UPDATE,
    EVENT_SUPPORT_TICKET,
}

# Event types clients may append directly; the rest are written by workflows
CLIENT_EVENT_TYPES = {EVENT_SHIPPING_UPDATE, EVENT_SUPPORT_TICKET}


def _require_order(order_uuid: str) -> None:
    exists = db.session.query(Order.uuid).filter_by(uuid=order_uuid).first()
    if exists is None:
        raise NotFound(f"Order {order_uuid} not found", details={"order_uuid": order_uuid})


def append_event(
    *,
    order_uuid: str,
    event_type: str,
    event_data: dict | None = None,
    title: str | None = None,
    description: str | None = None,
    created_by: str | None = None,
) -> OrderEvent:
    """Append one event and flush so its id is available. Does not commit."""
    if event_type not in EVENT_TYPES:
        raise ValidationError(f"Unknown event_type {event_type!r}")

    last = (
        db.session.query(OrderEvent.sequence, OrderEvent.created_at)
        .filter(OrderEvent.order_uuid == order_uuid)
        .order_by(OrderEvent.sequence.desc())
        .first()
    )
    now = utcnow()
    if last is None:
        sequence, created_at = 1, now
    else:
        sequence = last.sequence + 1
        created_at = max(now, last.created_at)

    event = OrderEvent(
        order_uuid=order_uuid,
        sequence=sequence,
        event_type=event_type,
        event_data=event_data or {},
        title=title,
        description=description,
        created_by=created_by,
        created_at=created_at,
    )
    db.session.add(event)
    db.session.flush()
    return event


def record_status_change(*, order_uuid: str, old_status, new_status: str, notes=None, created_by=None) -> OrderEvent:
    data = {"old_status": old_status, "new_status": new_status}
    if notes:
        data["notes"] = notes
    return append_event(
        order_uuid=order_uuid,
        event_type=EVENT_STATUS_CHANGE,
        event_data=data,
        title=f"Status changed to {new_status}",
        description=notes or (f"Order status changed from {old_status} to {new_status}" if old_status else "Order created"),
        created_by=created_by,
    )


def record_status_change_note(*, order_uuid: str, status: str, notes: str, created_by=None) -> OrderEvent:
    return append_event(
        order_uuid=order_uuid,
        event_type=EVENT_STATUS_CHANGE_NOTE,
        event_data={"status": status, "additional_notes": notes},
        title="Status change note",
        description=notes,
        created_by=created_by,
    )


def record_email_sent(
    *,
    order_uuid: str,
    email_type: str,
    recipient: str,
    subject: str | None = None,
    message_id: str | None = None,
    created_by: str = "System",
) -> OrderEvent:
    description = f"Email sent to {recipient}"
    if subject:
        description += f" - {subject}"
    return append_event(
        order_uuid=order_uuid,
        event_type=EVENT_EMAIL_SENT,
        event_data={
            "email_type": email_type,
            "recipient": recipient,
            "subject": subject,
            "message_id": message_id,
        },
        title=f"{email_type.replace('_', ' ')} email sent",
        description=description,
        created_by=created_by,
    )


def record_payment_received(
    *,
    order_uuid: str,
    payment_type: str,
    amount_cents: int,
    transaction_id: str | None = None,
    shipping: dict | None = None,
    created_by: str = "Payment System",
) -> OrderEvent:
    return append_event(
        order_uuid=order_uuid,
        event_type=EVENT_PAYMENT_RECEIVED,
        event_data={
            "payment_type": payment_type,
            "amount_cents": amount_cents,
            "transaction_id": transaction_id,
            "shipping": shipping,
            "mocked": True,
        },
        title=f"Payment {payment_type} received",
        description=f"Payment of {amount_cents / 100:.2f} received",
        created_by=created_by,
    )


def record_shipping_update(
    *,
    order_uuid: str,
    status: str,
    tracking_number: str | None = None,
    carrier: str | None = None,
    created_by: str = "Shipping System",
) -> OrderEvent:
    description = f"{carrier} tracking: {tracking_number}" if carrier and tracking_number else None
    return append_event(
        order_uuid=order_uuid,
        event_type=EVENT_SHIPPING_UPDATE,
        event_data={"status": status, "tracking_number": tracking_number, "carrier": carrier},
        title=f"Package {status}",
        description=description,
        created_by=created_by,
    )


def record_support_ticket(
    *,
    order_uuid: str,
    ticket_id: str,
    subject: str,
    status: str,
    created_by: str = "Support Team",
) -> OrderEvent:
    return append_event(
        order_uuid=order_uuid,
        event_type=EVENT_SUPPORT_TICKET,
        event_data={"ticket_id": ticket_id, "subject": subject, "status": status},
        title=f"Support ticket {status}",
        description=f"Ticket {ticket_id}: {subject}",
        created_by=created_by,
    )


def add_order_event(*, order_uuid: str, event_type: str, data: dict, actor: str | None = None) -> OrderEvent:
    """
    Append a client-supplied secondary event (shipping update or support
    ticket) and commit. Workflow-owned event types are rejected.
    """
    if event_type not in CLIENT_EVENT_TYPES:
        raise ValidationError(
            f"event_type must be one of: {', '.join(sorted(CLIENT_EVENT_TYPES))}",
            details={"event_type": event_type},
        )
    data = data or {}

    # Local import: the workflow service imports this module
    from .order_workflow_service import lock_order

    try:
        lock_order(order_uuid)
        if event_type == EVENT_SHIPPING_UPDATE:
            if not data.get("status"):
                raise ValidationError("status is required for shipping updates")
            event = record_shipping_update(
                order_uuid=order_uuid,
                status=str(data["status"]),
                tracking_number=data.get("tracking_number"),
                carrier=data.get("carrier"),
                created_by=actor or "Shipping System",
            )
        else:
            for required in ("ticket_id", "subject", "status"):
                if not data.get(required):
                    raise ValidationError(f"{required} is required for support tickets")
            event = record_support_ticket(
                order_uuid=order_uuid,
                ticket_id=str(data["ticket_id"]),
                subject=str(data["subject"]),
                status=str(data["status"]),
                created_by=actor or "Support Team",
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return event


def order_timeline(order_uuid: str) -> list[OrderEvent]:
    """All events of an order, newest first."""
    _require_order(order_uuid)
    return (
        db.session.query(OrderEvent)
        .filter(OrderEvent.order_uuid == order_uuid)
        .order_by(OrderEvent.created_at.desc(), OrderEvent.sequence.desc())
        .all()
    )


def status_history(order_uuid: str) -> list[dict]:
    """status_change events in status-history shape, newest first."""
    _require_order(order_uuid)
    events = (
        db.session.query(OrderEvent)
        .filter(OrderEvent.order_uuid == order_uuid, OrderEvent.event_type == EVENT_STATUS_CHANGE)
        .order_by(OrderEvent.sequence.desc())
        .all()
    )
    return [
        {
            "id": e.id,
            "order_uuid": e.order_uuid,
            "status": (e.event_data or {}).get("new_status"),
            "old_status": (e.event_data or {}).get("old_status"),
            "created_at": e.to_dict()["created_at"],
            "created_by": e.created_by,
            "notes": e.description,
        }
        for e in events
    ]


def secondary_events(order_uuid: str) -> list[OrderEvent]:
    """Every event except status changes, newest first."""
    _require_order(order_uuid)
    return (
        db.session.query(OrderEvent)
        .filter(OrderEvent.order_uuid == order_uuid, OrderEvent.event_type != EVENT_STATUS_CHANGE)
        .order_by(OrderEvent.sequence.desc())
        .all()
    )


def timeline_stats(order_uuid: str) -> dict:
    _require_order(order_uuid)
    counts = dict(
        db.session.query(OrderEvent.event_type, func.count(OrderEvent.id))
        .filter(OrderEvent.order_uuid == order_uuid)
        .group_by(OrderEvent.event_type)
        .all()
    )
    return {
        "total_events": sum(counts.values()),
        "status_changes": counts.get(EVENT_STATUS_CHANGE, 0),
        "emails_sent": counts.get(EVENT_EMAIL_SENT, 0),
        "support_tickets": counts.get(EVENT_SUPPORT_TICKET, 0),
    }


def latest_status(order_uuid: str) -> str | None:
    """new_status of the most recent status_change event (None if there is none)."""
    event = latest_status_event(order_uuid)
    if event is None:
        return None
    return (event.event_data or {}).get("new_status")


def latest_status_event(order_uuid: str) -> OrderEvent | None:
    return (
        db.session.query(OrderEvent)
        .filter(OrderEvent.order_uuid == order_uuid, OrderEvent.event_type == EVENT_STATUS_CHANGE)
        .order_by(OrderEvent.sequence.desc())
        .first()
    )
