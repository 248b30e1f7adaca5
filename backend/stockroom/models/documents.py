from __future__ import annotations

from ..extensions import db
from stockroom.time_utils import to_utc_z, utcnow


class DocumentSequence(db.Model):
    """
    Atomic document sequences.

    WHY: Prevent race conditions when generating order and purchase order numbers.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_doc_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }


class IdempotencyRecord(db.Model):
    """
    Result of a command submitted with an idempotency key.

    scope narrows the key to one resource ("order:<uuid>", "po:<id>",
    "stock:<product_id>"), so two resources may reuse the same client token.

    STATUS:
    - IN_FLIGHT: claimed by a command spanning several transactions
      (confirmation email). locked_until bounds the claim so a crashed
      request does not hold the key forever.
    - COMPLETED: response holds the serialized result to replay.
    """
    __tablename__ = "idempotency_records"
    __table_args__ = (
        db.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(128), nullable=False)
    key = db.Column(db.String(255), nullable=False)

    command = db.Column(db.String(64), nullable=False)
    fingerprint = db.Column(db.String(255), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="IN_FLIGHT")

    resource_type = db.Column(db.String(32), nullable=True)
    resource_id = db.Column(db.String(64), nullable=True)
    response = db.Column(db.JSON, nullable=True)

    locked_until = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "key": self.key,
            "command": self.command,
            "status": self.status,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "response": self.response,
            "locked_until": to_utc_z(self.locked_until) if self.locked_until else None,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
        }


class NotificationDispatch(db.Model):
    """
    A notification the gateway accepted.

    Written right after the gateway reports success and before the order
    events are appended. consumed_by_event_id links it to the email_sent event
    that recorded it. An unconsumed row lets a retry of the same command
    (same idempotency key) finish without sending again.
    """
    __tablename__ = "notification_dispatches"
    __table_args__ = (
        db.Index("ix_notification_dispatches_order_template", "order_uuid", "template_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_uuid = db.Column(db.String(36), db.ForeignKey("orders.uuid"), nullable=False, index=True)
    template_type = db.Column(db.String(64), nullable=False)
    recipient = db.Column(db.String(255), nullable=False)
    message_id = db.Column(db.String(255), nullable=True)
    idempotency_key = db.Column(db.String(255), nullable=True)

    consumed_by_event_id = db.Column(db.Integer, db.ForeignKey("order_events.id"), nullable=True)
    # Set when the command that sent it lost the status swap; never reused
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_uuid": self.order_uuid,
            "template_type": self.template_type,
            "recipient": self.recipient,
            "message_id": self.message_id,
            "idempotency_key": self.idempotency_key,
            "consumed_by_event_id": self.consumed_by_event_id,
            "voided_at": to_utc_z(self.voided_at),
            "sent_at": to_utc_z(self.sent_at),
        }
