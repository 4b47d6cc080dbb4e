"""Typed errors raised by the escrow core.

Every error carries a stable ``code`` for API clients and the HTTP status the
blueprints answer with. Guard violations are returned to the caller as-is,
data-integrity errors are logged and surfaced for manual review, and
``StaleState`` never leaves the coordinator (it is retried there).
"""
from __future__ import annotations


class EscrowError(Exception):
    code = "escrow_error"
    http_status = 400
    default_message = "Escrow operation failed"

    def __init__(self, message: str | None = None, **details):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self) -> dict:
        body = {"ok": False, "code": self.code, "message": self.message}
        if self.details:
            body["details"] = {k: v for k, v in self.details.items() if v is not None}
        return body


class NotFound(EscrowError):
    code = "not_found"
    http_status = 404
    default_message = "Not found"


class Forbidden(EscrowError):
    code = "forbidden"
    http_status = 403
    default_message = "Not allowed"


class ValidationFailed(EscrowError):
    code = "validation_failed"
    http_status = 422
    default_message = "Invalid request"


# State machines

class InvalidTransition(EscrowError):
    code = "invalid_transition"
    http_status = 409
    default_message = "Transition not allowed"


class AlreadyTerminal(InvalidTransition):
    code = "already_terminal"
    default_message = "Payment is already in a terminal state"


# Ledger

class InvalidAmount(EscrowError):
    code = "invalid_amount"
    http_status = 422
    default_message = "Amount must be positive"


class InsufficientFunds(EscrowError):
    code = "insufficient_funds"
    http_status = 409
    default_message = "Insufficient funds"


class DuplicateReference(EscrowError):
    """Reference already settled. Carries the prior transaction so retries can
    treat it as a no-op."""

    code = "duplicate_reference"
    http_status = 409
    default_message = "Transaction already recorded"

    def __init__(self, message: str | None = None, *, transaction=None, **details):
        super().__init__(message, **details)
        self.transaction = transaction


# Release tokens. All three read as "this code cannot be used" but stay distinct.

class TokenError(EscrowError):
    http_status = 400


class TokenNotFound(TokenError):
    code = "token_not_found"
    http_status = 404
    default_message = "This QR code is not a valid booking code"


class TokenExpired(TokenError):
    code = "token_expired"
    http_status = 410
    default_message = "This QR code has expired"


class TokenAlreadyConsumed(TokenError):
    code = "token_already_consumed"
    http_status = 409
    default_message = "This QR code was already used, funds were already released"


# Data integrity: never auto-retried

class IntegrityFailure(EscrowError):
    http_status = 422


class AmountMismatch(IntegrityFailure):
    code = "amount_mismatch"
    default_message = "Captured amount does not match the recorded payment"


class GatewayMismatch(IntegrityFailure):
    code = "gateway_mismatch"
    default_message = "Gateway callback does not match a known payment"


# Contention

class StaleState(EscrowError):
    """A compare-and-set update matched no row because another writer won."""

    code = "stale_state"
    http_status = 409
    default_message = "Concurrent update detected"


class ReconciliationFailed(EscrowError):
    code = "reconciliation_failed"
    http_status = 503
    default_message = "Could not complete the operation, please retry"
