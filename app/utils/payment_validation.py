"""Ledger error taxonomy and payment input validation."""
from decimal import Decimal, InvalidOperation
from typing import Optional

from app.utils.money import to_money


class LedgerError(Exception):
    """Base exception for all ledger errors."""
    pass


class ValidationError(LedgerError):
    """Raised when caller input is rejected before any mutation."""
    pass


class NotFoundError(ValidationError):
    """Raised when a caller supplies an unknown client, invoice or payment id."""
    def __init__(self, kind: str, object_id: str):
        self.kind = kind
        self.object_id = object_id
        super().__init__(f"{kind.capitalize()} '{object_id}' not found.")


class InsufficientBalance(LedgerError):
    """Raised when an account-funded allocation needs more than the client holds."""
    def __init__(self, client_id: str, available: Decimal, required: Decimal):
        self.client_id = client_id
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient client balance for '{client_id}'. "
            f"Available: {available}, Required: {required}"
        )


class PersistenceError(LedgerError):
    """Raised when the underlying store rejects a read or write."""
    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Store operation '{operation}' failed: {reason}")


def validate_amount(amount, field: str = "amount") -> Decimal:
    """
    Validate a caller-supplied monetary amount.

    Rules:
    - must parse as a decimal number
    - must be strictly positive after rounding to cents
    """
    try:
        value = to_money(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Payment {field} is not a valid number: {amount!r}")

    if value.is_nan():
        raise ValidationError(f"Payment {field} is not a valid number: {amount!r}")
    if value <= 0:
        raise ValidationError(f"Payment {field} must be greater than 0, got {value}")
    return value


def validate_identifier(value: Optional[str], kind: str) -> str:
    """Reject empty ids and the legacy 'unknown' placeholder."""
    if value is None or not str(value).strip() or value == "unknown":
        raise ValidationError(f"A valid {kind} id is required")
    return str(value)
