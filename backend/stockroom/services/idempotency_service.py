# Overview: Service-layer operations for idempotency keys; encapsulates business logic and database work.

from __future__ import annotations

import hashlib
import json
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import CommandInFlight, ValidationError
from ..extensions import db
from ..models import IdempotencyRecord
from ..time_utils import utcnow
from .concurrency import begin_write_transaction, lock_for_update


STATUS_IN_FLIGHT = "IN_FLIGHT"
STATUS_COMPLETED = "COMPLETED"

DEFAULT_LEASE_SECONDS = 60


def fingerprint(payload) -> str:
    """Stable hash of a command's arguments (key order independent)."""
    raw = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _lease() -> timedelta:
    seconds = current_app.config.get("IDEMPOTENCY_LEASE_SECONDS", DEFAULT_LEASE_SECONDS)
    return timedelta(seconds=int(seconds))


def find(*, scope: str, key: str) -> IdempotencyRecord | None:
    return db.session.query(IdempotencyRecord).filter_by(scope=scope, key=key).first()


def claim(*, scope: str, key: str, command: str, fingerprint: str) -> tuple[IdempotencyRecord, bool]:
    """
    Claim an idempotency key inside the caller's transaction.

    Returns (record, replay). replay=True means the command already completed
    and record.response holds its result; the caller must not run it again.

    - same key, different command or arguments: ValidationError
    - same key, still in flight within its lease: CommandInFlight
    - same key, in flight but lease expired: claim is taken over
    """
    if not key or len(key) > 255:
        raise ValidationError("Idempotency key must be 1-255 characters")

    begin_write_transaction()
    now = utcnow()
    query = db.session.query(IdempotencyRecord).filter_by(scope=scope, key=key)
    record = lock_for_update(query).populate_existing().first()

    if record is not None:
        if record.command != command or record.fingerprint != fingerprint:
            raise ValidationError(
                "Idempotency key was already used for a different command",
                details={"scope": scope, "key": key, "command": record.command},
            )
        if record.status == STATUS_COMPLETED:
            return record, True
        if record.locked_until is not None and record.locked_until > now:
            raise CommandInFlight(
                "A command with this idempotency key is still in progress",
                details={"scope": scope, "key": key},
            )
        # Lease expired: the previous holder is presumed dead
        record.locked_until = now + _lease()
        return record, False

    record = IdempotencyRecord(
        scope=scope,
        key=key,
        command=command,
        fingerprint=fingerprint,
        status=STATUS_IN_FLIGHT,
        locked_until=now + _lease(),
    )
    try:
        with db.session.begin_nested():
            db.session.add(record)
    except IntegrityError:
        raise CommandInFlight(
            "A command with this idempotency key is still in progress",
            details={"scope": scope, "key": key},
        )
    return record, False


def complete(record: IdempotencyRecord, *, resource_type: str, resource_id, response: dict) -> IdempotencyRecord:
    """Mark a claimed key as completed with its replayable response. Does not commit."""
    record.status = STATUS_COMPLETED
    record.resource_type = resource_type
    record.resource_id = str(resource_id) if resource_id is not None else None
    record.response = response
    record.completed_at = utcnow()
    record.locked_until = None
    return record


def release(record_id: int) -> None:
    """
    Drop an in-flight claim so the same key can be retried immediately.
    Completed records are never released. Does not commit.
    """
    db.session.query(IdempotencyRecord).filter_by(
        id=record_id, status=STATUS_IN_FLIGHT
    ).delete(synchronize_session=False)
