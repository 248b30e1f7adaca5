# Overview: Service-layer operations for the order lifecycle; encapsulates business logic and database work.

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import update

from ..errors import (
    ConcurrentModification,
    DownstreamUnavailable,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from ..extensions import db
from ..models import IdempotencyRecord, NotificationDispatch, Order, OrderEvent, OrderItem, Product
from ..models.inventory import MOVEMENT_INCOMING, MOVEMENT_OUTGOING
from ..time_utils import utcnow
from ..validation import enforce_rules_order, validate_checkout_payload, validate_order_items
from . import event_log_service, idempotency_service, ledger_service
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .document_service import ORDER_DOCUMENT, next_document_number
from .notification_gateway import TEMPLATE_ORDER_CONFIRMATION, TEMPLATE_SUBJECTS, get_gateway

logger = logging.getLogger(__name__)


"""
Order lifecycle

    Draft -> Paid -> Confirmed -> Packed -> Delivery -> Complete
    Draft / Paid / Confirmed -> Cancelled
    Delivery / Complete -> Returned

RULES:
- The event log is authoritative; orders.status caches the latest
  status_change event and is only written here, in the same transaction
  that appends that event.
- The status commit is a compare-and-swap on the status observed when the
  command started. Losing the race raises ConcurrentModification.
- Paid -> Confirmed calls the notification gateway outside any transaction
  and appends status_change last, after the gateway has returned.
"""


ORDER_STATUS_DRAFT = "Draft"
ORDER_STATUS_PAID = "Paid"
ORDER_STATUS_CONFIRMED = "Confirmed"
ORDER_STATUS_PACKED = "Packed"
ORDER_STATUS_DELIVERY = "Delivery"
ORDER_STATUS_COMPLETE = "Complete"
ORDER_STATUS_CANCELLED = "Cancelled"
ORDER_STATUS_RETURNED = "Returned"

PRIMARY_CHAIN = (
    ORDER_STATUS_DRAFT,
    ORDER_STATUS_PAID,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_PACKED,
    ORDER_STATUS_DELIVERY,
    ORDER_STATUS_COMPLETE,
)
BRANCH_STATUSES = (ORDER_STATUS_CANCELLED, ORDER_STATUS_RETURNED)
ORDER_STATUSES = PRIMARY_CHAIN + BRANCH_STATUSES
TERMINAL_STATUSES = set(BRANCH_STATUSES)

ALLOWED_TRANSITIONS = {
    ORDER_STATUS_DRAFT: {ORDER_STATUS_PAID, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_PAID: {ORDER_STATUS_CONFIRMED, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_CONFIRMED: {ORDER_STATUS_PACKED, ORDER_STATUS_CANCELLED},
    ORDER_STATUS_PACKED: {ORDER_STATUS_DELIVERY},
    ORDER_STATUS_DELIVERY: {ORDER_STATUS_COMPLETE, ORDER_STATUS_RETURNED},
    ORDER_STATUS_COMPLETE: {ORDER_STATUS_RETURNED},
    ORDER_STATUS_CANCELLED: set(),
    ORDER_STATUS_RETURNED: set(),
}


def validate_status(status: str) -> None:
    if status not in ORDER_STATUSES:
        raise ValidationError(
            f"Invalid order status: {status}. Must be one of {', '.join(ORDER_STATUSES)}",
            details={"status": status},
        )


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


def allowed_transitions(status: str) -> list[str]:
    """Targets reachable from status, in lifecycle order."""
    validate_status(status)
    targets = ALLOWED_TRANSITIONS[status]
    return [s for s in ORDER_STATUSES if s in targets]


def chain_rank(status: str) -> int | None:
    """Position in the primary chain; None for Cancelled/Returned."""
    try:
        return PRIMARY_CHAIN.index(status)
    except ValueError:
        return None


@dataclass
class TransitionResult:
    event: OrderEvent
    order: Order
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "event": self.event.to_dict() if self.event else None,
            "replayed": self.replayed,
            "allowed_transitions": allowed_transitions(self.order.status),
        }


def order_to_dict(order: Order, *, include_items: bool = True) -> dict:
    data = order.to_dict()
    if include_items:
        data["items"] = [item.to_dict() for item in order.items]
    data["allowed_transitions"] = allowed_transitions(order.status)
    return data


def get_order(order_uuid: str) -> Order:
    order = db.session.get(Order, order_uuid)
    if order is None:
        raise NotFound(f"Order {order_uuid} not found", details={"order_uuid": order_uuid})
    return order


def lock_order(order_uuid: str) -> Order:
    """Lock the order row for the rest of the transaction and return fresh state."""
    begin_write_transaction()
    query = db.session.query(Order).filter_by(uuid=order_uuid)
    order = lock_for_update(query).populate_existing().first()
    if order is None:
        raise NotFound(f"Order {order_uuid} not found", details={"order_uuid": order_uuid})
    return order


def list_orders(*, status: str | None = None, limit: int = 50, offset: int = 0) -> list[Order]:
    q = db.session.query(Order)
    if status is not None:
        validate_status(status)
        q = q.filter(Order.status == status)
    return q.order_by(Order.created_at.desc(), Order.order_number.desc()).offset(offset).limit(limit).all()


def compute_order_total(items, discount_cents: int) -> int:
    """Sum of item totals (after per-unit discounts) less the order discount, never below zero."""
    subtotal = sum(item.quantity * (item.unit_price_cents - (item.discount_cents or 0)) for item in items)
    return max(0, subtotal - (discount_cents or 0))


def create_order(
    *,
    items,
    customer_name: str | None = None,
    customer_email: str | None = None,
    discount_cents: int = 0,
    storefront_id: str | None = None,
    notes: str | None = None,
    actor: str | None = None,
    idempotency_key: str | None = None,
) -> Order:
    """Create a Draft order with its items, document number and initial status_change event."""
    cleaned = validate_order_items(items)
    enforce_rules_order({"customer_email": customer_email, "discount_cents": discount_cents})

    product_ids = {item["product_id"] for item in cleaned}
    found = {p.id for p in db.session.query(Product.id).filter(Product.id.in_(product_ids)).all()}
    missing = sorted(product_ids - found)
    if missing:
        raise NotFound(f"Products not found: {missing}", details={"product_ids": missing})

    fp = idempotency_service.fingerprint({
        "items": cleaned,
        "customer_email": customer_email,
        "discount_cents": discount_cents,
    })

    def _op():
        begin_write_transaction()
        record = None
        if idempotency_key:
            record, replay = idempotency_service.claim(
                scope="orders", key=idempotency_key, command="create_order", fingerprint=fp,
            )
            if replay:
                return get_order(record.resource_id)

        order_items = [OrderItem(**item) for item in cleaned]
        order = Order(
            order_number=next_document_number(document_type=ORDER_DOCUMENT),
            status=ORDER_STATUS_DRAFT,
            customer_name=customer_name,
            customer_email=customer_email,
            discount_cents=discount_cents or 0,
            order_total_cents=compute_order_total(order_items, discount_cents),
            storefront_id=storefront_id,
            notes=notes,
            created_by=actor,
            items=order_items,
        )
        db.session.add(order)
        db.session.flush()

        event_log_service.record_status_change(
            order_uuid=order.uuid,
            old_status=None,
            new_status=ORDER_STATUS_DRAFT,
            notes=None,
            created_by=actor,
        )
        if record is not None:
            idempotency_service.complete(
                record, resource_type="order", resource_id=order.uuid, response=order.to_dict(),
            )
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order %s created (%s)", order.order_number, order.uuid)
    return order


def recalculate_order_total(order_uuid: str) -> Order:
    def _op():
        order = lock_order(order_uuid)
        order.order_total_cents = compute_order_total(order.items, order.discount_cents)
        db.session.commit()
        return order

    return run_with_retry(_op)


def _check_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot transition order from {current} to {target}",
            details={"from": current, "to": target, "allowed": allowed_transitions(current)},
        )


def _commit_status(order: Order, observed: str, target: str) -> None:
    """
    Compare-and-swap the cached status. Pending ORM changes are flushed first
    so the swap is the last write to the order row in this transaction.
    """
    db.session.flush()
    stmt = (
        update(Order)
        .where(Order.uuid == order.uuid, Order.status == observed)
        .values(status=target, version_id=Order.version_id + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise ConcurrentModification(
            f"Order {order.uuid} changed while transitioning to {target}",
            details={"order_uuid": order.uuid, "observed_status": observed},
        )
    db.session.expire(order)


def _ensure_unchanged(order: Order, observed: str) -> None:
    if order.status != observed:
        raise ConcurrentModification(
            f"Order {order.uuid} is {order.status}, expected {observed}",
            details={"order_uuid": order.uuid, "observed_status": observed, "current_status": order.status},
        )


def _post_fulfillment(order: Order, actor: str | None) -> None:
    if not order.items:
        raise PreconditionFailed("Order has no items", details={"order_uuid": order.uuid})
    for item in order.items:
        if item.quantity <= 0:
            raise PreconditionFailed(f"Item {item.id} has no quantity", details={"item_id": item.id})
        if item.product is None or not item.product.is_active:
            raise PreconditionFailed(
                f"Product {item.product_id} is not available",
                details={"product_id": item.product_id},
            )

    for item in order.items:
        ledger_service.post_movement(
            product_id=item.product_id,
            movement_type=MOVEMENT_OUTGOING,
            quantity=item.quantity,
            reason=ledger_service.REASON_ORDER_FULFILLMENT,
            reference=order.uuid,
            actor=actor,
        )


def _reverse_fulfillment(order: Order, reason: str, actor: str | None) -> None:
    """Post compensating INCOMING movements for whatever this order still holds out of stock."""
    for product_id, quantity in sorted(ledger_service.net_outgoing_by_reference(order.uuid).items()):
        ledger_service.post_movement(
            product_id=product_id,
            movement_type=MOVEMENT_INCOMING,
            quantity=quantity,
            reason=reason,
            reference=order.uuid,
            actor=actor,
        )


def _replay_result(order_uuid: str, record: IdempotencyRecord) -> TransitionResult:
    event = db.session.get(OrderEvent, int(record.resource_id)) if record.resource_id else None
    return TransitionResult(event=event, order=get_order(order_uuid), replayed=True)


def _completed_record(scope: str, key: str, command: str, fp: str) -> IdempotencyRecord | None:
    record = idempotency_service.find(scope=scope, key=key)
    if record is None:
        return None
    if record.command != command or record.fingerprint != fp:
        raise ValidationError(
            "Idempotency key was already used for a different command",
            details={"scope": scope, "key": key, "command": record.command},
        )
    if record.status == idempotency_service.STATUS_COMPLETED:
        return record
    return None


def transition_order(
    order_uuid: str,
    target_status: str,
    actor: str | None = None,
    notes: str | None = None,
    *,
    expected_status: str | None = None,
    idempotency_key: str | None = None,
    checkout: dict | None = None,
) -> TransitionResult:
    """
    Move an order to target_status and apply the transition's side effects.

    expected_status, when given, must match the current status. A repeated
    idempotency_key returns the earlier result with replayed=True and no side
    effects.
    """
    validate_status(target_status)
    if expected_status is not None:
        validate_status(expected_status)

    scope = f"order:{order_uuid}"
    command = "transition_order"
    fp = idempotency_service.fingerprint({"target_status": target_status, "checkout": checkout})

    if idempotency_key:
        prior = _completed_record(scope, idempotency_key, command, fp)
        if prior is not None:
            return _replay_result(order_uuid, prior)

    order = get_order(order_uuid)
    observed = order.status
    if expected_status is not None and expected_status != observed:
        raise ConcurrentModification(
            f"Order {order_uuid} is {observed}, expected {expected_status}",
            details={"order_uuid": order_uuid, "expected_status": expected_status, "current_status": observed},
        )
    _check_transition(observed, target_status)

    details = None
    if observed == ORDER_STATUS_DRAFT and target_status == ORDER_STATUS_PAID:
        details = validate_checkout_payload(checkout)

    if observed == ORDER_STATUS_PAID and target_status == ORDER_STATUS_CONFIRMED:
        return _confirm_order(
            order_uuid, observed, actor=actor, notes=notes,
            scope=scope, idempotency_key=idempotency_key, fingerprint=fp,
        )

    def _op():
        begin_write_transaction()
        record = None
        if idempotency_key:
            record, replay = idempotency_service.claim(
                scope=scope, key=idempotency_key, command=command, fingerprint=fp,
            )
            if replay:
                return _replay_result(order_uuid, record)

        order = lock_order(order_uuid)
        _ensure_unchanged(order, observed)

        if target_status == ORDER_STATUS_PAID:
            _post_fulfillment(order, actor)
            order.customer_name = details.customer_name
            order.customer_email = details.customer_email
            order.order_total_cents = compute_order_total(order.items, order.discount_cents)
            event_log_service.record_payment_received(
                order_uuid=order.uuid,
                payment_type=details.payment_method,
                amount_cents=order.order_total_cents,
                transaction_id=details.payment_reference,
                shipping=details.shipping_to_dict(),
            )
        elif target_status == ORDER_STATUS_CANCELLED:
            _reverse_fulfillment(order, ledger_service.REASON_ORDER_CANCELLED, actor)
        elif target_status == ORDER_STATUS_RETURNED:
            _reverse_fulfillment(order, ledger_service.REASON_ORDER_RETURNED, actor)

        if notes:
            event_log_service.record_status_change_note(
                order_uuid=order.uuid, status=target_status, notes=notes, created_by=actor,
            )
        event = event_log_service.record_status_change(
            order_uuid=order.uuid,
            old_status=observed,
            new_status=target_status,
            notes=notes,
            created_by=actor,
        )
        _commit_status(order, observed, target_status)

        result = TransitionResult(event=event, order=order)
        if record is not None:
            idempotency_service.complete(
                record, resource_type="order_event", resource_id=event.id, response=result.to_dict(),
            )
        db.session.commit()
        return result

    result = run_with_retry(_op)
    if not result.replayed:
        current_app.logger.info("Order %s: %s -> %s", order_uuid, observed, target_status)
    return result


def _claim_in_flight(scope: str, key: str, command: str, fp: str) -> tuple[IdempotencyRecord, bool]:
    """Claim a key in its own committed transaction so the claim outlives a gateway call."""
    def _op():
        record, replay = idempotency_service.claim(scope=scope, key=key, command=command, fingerprint=fp)
        db.session.commit()
        return record, replay

    return run_with_retry(_op)


def _release_claim(record_id: int | None) -> None:
    if record_id is None:
        return

    def _op():
        idempotency_service.release(record_id)
        db.session.commit()

    run_with_retry(_op)


def _unconsumed_dispatch(order_uuid: str, template_type: str, idempotency_key: str) -> NotificationDispatch | None:
    return (
        db.session.query(NotificationDispatch)
        .filter_by(
            order_uuid=order_uuid,
            template_type=template_type,
            idempotency_key=idempotency_key,
            consumed_by_event_id=None,
            voided_at=None,
        )
        .order_by(NotificationDispatch.id.asc())
        .first()
    )


def _deliver_notification(
    order_uuid: str,
    template_type: str,
    recipient: str,
    idempotency_key: str | None,
    *,
    reuse: bool = True,
) -> int:
    """
    Make sure one successful send exists that no event has recorded yet and
    return its NotificationDispatch id.

    With reuse, an unconsumed dispatch written under the same idempotency key
    is returned instead of sending, so a retry after a crash between send and
    event append does not send twice. Without a key nothing is reused.
    """
    if reuse and idempotency_key:
        existing = _unconsumed_dispatch(order_uuid, template_type, idempotency_key)
        if existing is not None:
            logger.info("Reusing dispatch %s for order %s", existing.id, order_uuid)
            return existing.id

    # No database transaction may stay open across the network call
    db.session.rollback()

    result = get_gateway().send(order_uuid, template_type, recipient)
    if not result.success:
        logger.warning("Notification %s for order %s failed: %s", template_type, order_uuid, result.error)
        raise DownstreamUnavailable(
            "Notification gateway unavailable",
            details={"order_uuid": order_uuid, "error": result.error, "timed_out": result.timed_out},
        )

    def _op():
        dispatch = NotificationDispatch(
            order_uuid=order_uuid,
            template_type=template_type,
            recipient=recipient,
            message_id=result.message_id,
            idempotency_key=idempotency_key,
        )
        db.session.add(dispatch)
        db.session.commit()
        return dispatch.id

    return run_with_retry(_op)


def _void_dispatch(dispatch_id: int | None) -> None:
    """Mark a send that no event will record so no later command picks it up."""
    if dispatch_id is None:
        return

    def _op():
        db.session.execute(
            update(NotificationDispatch)
            .where(NotificationDispatch.id == dispatch_id)
            .where(NotificationDispatch.consumed_by_event_id.is_(None))
            .values(voided_at=utcnow())
        )
        db.session.commit()

    run_with_retry(_op)
    logger.warning("Voided dispatch %s", dispatch_id)


def _record_dispatch_event(order_uuid: str, dispatch_id: int, actor: str | None) -> OrderEvent:
    dispatch = db.session.get(NotificationDispatch, dispatch_id)
    event = event_log_service.record_email_sent(
        order_uuid=order_uuid,
        email_type=dispatch.template_type,
        recipient=dispatch.recipient,
        subject=TEMPLATE_SUBJECTS.get(dispatch.template_type),
        message_id=dispatch.message_id,
        created_by=actor or "System",
    )
    dispatch.consumed_by_event_id = event.id
    return event


def _confirm_order(
    order_uuid: str,
    observed: str,
    *,
    actor: str | None,
    notes: str | None,
    scope: str,
    idempotency_key: str | None,
    fingerprint: str,
) -> TransitionResult:
    """
    Paid -> Confirmed.

    1. claim the idempotency key (committed, leased)
    2. send the confirmation (or reuse an unrecorded send made under the same key)
    3. one transaction: re-check status, append email_sent then status_change,
       swap the status, complete the key
    """
    order = get_order(order_uuid)
    recipient = order.customer_email
    if not recipient:
        raise PreconditionFailed(
            "Order has no customer email for the confirmation",
            details={"order_uuid": order_uuid},
        )

    record_id = None
    if idempotency_key:
        record, replay = _claim_in_flight(scope, idempotency_key, "transition_order", fingerprint)
        if replay:
            return _replay_result(order_uuid, record)
        record_id = record.id

    dispatch_id = None
    try:
        dispatch_id = _deliver_notification(order_uuid, TEMPLATE_ORDER_CONFIRMATION, recipient, idempotency_key)

        def _finish():
            order = lock_order(order_uuid)
            _ensure_unchanged(order, observed)

            _record_dispatch_event(order_uuid, dispatch_id, actor)
            if notes:
                event_log_service.record_status_change_note(
                    order_uuid=order_uuid, status=ORDER_STATUS_CONFIRMED, notes=notes, created_by=actor,
                )
            event = event_log_service.record_status_change(
                order_uuid=order_uuid,
                old_status=observed,
                new_status=ORDER_STATUS_CONFIRMED,
                notes=notes,
                created_by=actor,
            )
            _commit_status(order, observed, ORDER_STATUS_CONFIRMED)

            result = TransitionResult(event=event, order=order)
            if record_id is not None:
                claim = db.session.get(IdempotencyRecord, record_id)
                idempotency_service.complete(
                    claim, resource_type="order_event", resource_id=event.id, response=result.to_dict(),
                )
            db.session.commit()
            return result

        result = run_with_retry(_finish)
    except (ConcurrentModification, InvalidTransition):
        # The order moved on while the email was out; this send confirms nothing
        _void_dispatch(dispatch_id)
        _release_claim(record_id)
        raise
    except Exception:
        _release_claim(record_id)
        raise

    current_app.logger.info("Order %s: %s -> %s", order_uuid, observed, ORDER_STATUS_CONFIRMED)
    return result


def resend_confirmation(
    order_uuid: str,
    actor: str | None = None,
    *,
    idempotency_key: str | None = None,
) -> OrderEvent:
    """
    Send the order confirmation again and append an email_sent event.
    Only for orders at or past Confirmed in the primary chain; the status
    does not change.
    """
    scope = f"order:{order_uuid}"
    command = "resend_confirmation"
    fp = idempotency_service.fingerprint({"template_type": TEMPLATE_ORDER_CONFIRMATION})

    if idempotency_key:
        prior = _completed_record(scope, idempotency_key, command, fp)
        if prior is not None:
            return db.session.get(OrderEvent, int(prior.resource_id))

    order = get_order(order_uuid)
    rank = chain_rank(order.status)
    if rank is None or rank < PRIMARY_CHAIN.index(ORDER_STATUS_CONFIRMED):
        raise PreconditionFailed(
            f"Cannot resend confirmation for a {order.status} order",
            details={"order_uuid": order_uuid, "status": order.status},
        )
    recipient = order.customer_email
    if not recipient:
        raise PreconditionFailed("Order has no customer email", details={"order_uuid": order_uuid})

    record_id = None
    if idempotency_key:
        record, replay = _claim_in_flight(scope, idempotency_key, command, fp)
        if replay:
            return db.session.get(OrderEvent, int(record.resource_id))
        record_id = record.id

    dispatch_id = None
    try:
        dispatch_id = _deliver_notification(
            order_uuid, TEMPLATE_ORDER_CONFIRMATION, recipient, idempotency_key, reuse=False,
        )

        def _finish():
            lock_order(order_uuid)
            event = _record_dispatch_event(order_uuid, dispatch_id, actor)
            if record_id is not None:
                claim = db.session.get(IdempotencyRecord, record_id)
                idempotency_service.complete(
                    claim, resource_type="order_event", resource_id=event.id, response=event.to_dict(),
                )
            db.session.commit()
            return event

        event = run_with_retry(_finish)
    except Exception:
        _void_dispatch(dispatch_id)
        _release_claim(record_id)
        raise

    current_app.logger.info("Confirmation resent for order %s", order_uuid)
    return event
