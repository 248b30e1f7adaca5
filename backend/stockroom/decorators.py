# Overview: Request decorators for command routes (actor and idempotency key context).

from functools import wraps
from flask import request, g

from .errors import ValidationError


MAX_ACTOR_LENGTH = 128
MAX_IDEMPOTENCY_KEY_LENGTH = 255


def command_context(f):
    """
    Establish command context for a mutating route.

    Sets the following Flask g attributes:
    - g.payload: the JSON body (empty dict when absent)
    - g.actor: X-Actor header, falling back to the "actor" body field
    - g.idempotency_key: Idempotency-Key header, falling back to the
      "idempotency_key" body field

    Authentication is handled upstream; the actor is recorded as given.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        payload = request.get_json(silent=True)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

        actor = request.headers.get("X-Actor") or payload.get("actor")
        if actor is not None:
            actor = str(actor).strip() or None
        if actor and len(actor) > MAX_ACTOR_LENGTH:
            raise ValidationError(f"actor exceeds max length {MAX_ACTOR_LENGTH}")

        key = request.headers.get("Idempotency-Key") or payload.get("idempotency_key")
        if key is not None:
            key = str(key).strip() or None
        if key and len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError(f"Idempotency-Key exceeds max length {MAX_IDEMPOTENCY_KEY_LENGTH}")

        g.payload = payload
        g.actor = actor
        g.idempotency_key = key

        return f(*args, **kwargs)

    return decorated_function
