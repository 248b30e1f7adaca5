# Overview: Domain error taxonomy shared by services, routes, and the CLI.

"""
Stockroom error taxonomy.

Terminal errors (never retried automatically, nothing written):
- ValidationError: bad input shape
- PreconditionFailed: business rule not met
- InvalidTransition: target status unreachable from current status
- InsufficientStock: posting would drive a balance negative
- NoOpError: the command would not change anything

Recoverable errors:
- ConcurrentModification: optimistic-concurrency conflict; re-read and resubmit
- DownstreamUnavailable: notification gateway failure or timeout; retry with
  the same idempotency key
"""

from __future__ import annotations


class StockroomError(Exception):
    """Base class for domain errors. Carries a machine-readable code and details."""

    code = "error"
    http_status = 400
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(StockroomError, ValueError):
    """400-level input problem."""
    code = "validation_error"


class NotFound(StockroomError):
    code = "not_found"
    http_status = 404


class PreconditionFailed(StockroomError):
    code = "precondition_failed"
    http_status = 409


class InvalidTransition(StockroomError):
    code = "invalid_transition"
    http_status = 409


class InsufficientStock(StockroomError):
    code = "insufficient_stock"
    http_status = 409


class NoOpError(StockroomError):
    code = "no_op"
    http_status = 409


class ConcurrentModification(StockroomError):
    code = "concurrent_modification"
    http_status = 409
    retryable = True


class CommandInFlight(ConcurrentModification):
    """Another request holding the same idempotency key has not finished yet."""
    code = "command_in_flight"


class DownstreamUnavailable(StockroomError):
    code = "downstream_unavailable"
    http_status = 503
    retryable = True


class AppendOnlyViolation(StockroomError):
    """Raised when code tries to update or delete a ledger row."""
    code = "append_only_violation"
    http_status = 500
