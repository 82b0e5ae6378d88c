"""Exception hierarchy for the retail ERP core.

Business-rule violations are detected before any ledger is touched and must
never be retried. Transient errors come from the mutation phase (storage
failures or lost conditional updates); the work has already been rolled back
when they reach the caller, so retrying them is safe.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class RetailError(Exception):
    """Base class for every error raised by the package."""


class BusinessRuleViolation(RetailError):
    """Raised when a requested operation violates a domain constraint."""


class PreconditionViolation(BusinessRuleViolation):
    """Raised when a command lacks something the operation requires."""


class EntityNotFoundError(BusinessRuleViolation):
    """Raised when a referenced product, client, or sale is unknown."""

    def __init__(self, entity_name: str, entity_id: str) -> None:
        super().__init__(f"{entity_name} not found: {entity_id}")
        self.entity_name = entity_name
        self.entity_id = entity_id


class InactiveProductError(BusinessRuleViolation):
    """Raised when a sale references a deactivated product."""

    def __init__(self, product_name: str) -> None:
        super().__init__(f"Product '{product_name}' is inactive and cannot be sold")
        self.product_name = product_name


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a withdrawal asks for more units than are on hand."""

    def __init__(self, product_name: str, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for '{product_name}': available {available}, requested {requested}"
        )
        self.product_name = product_name
        self.available = available
        self.requested = requested


class CreditLimitExceededError(BusinessRuleViolation):
    """Raised when a store-credit sale would push a client past the limit."""

    def __init__(self, client_name: str, credit_limit: Decimal, attempted_debt: Decimal) -> None:
        super().__init__(
            f"Credit limit exceeded for '{client_name}': limit {credit_limit:.2f}, "
            f"debt after sale {attempted_debt:.2f}"
        )
        self.client_name = client_name
        self.credit_limit = credit_limit
        self.attempted_debt = attempted_debt


class InvalidEntityStateError(BusinessRuleViolation):
    """Raised when an operation does not apply to the entity's current state."""

    def __init__(self, entity_name: str, operation: str, reason: str) -> None:
        super().__init__(f"Cannot {operation} {entity_name}: {reason}")
        self.entity_name = entity_name
        self.operation = operation
        self.reason = reason


class TransientError(RetailError):
    """Raised for failures that left no trace and may be retried."""


class ConcurrentUpdateError(TransientError):
    """Raised when a conditional update finds an unexpected stored value."""

    def __init__(self, entity_name: str, entity_id: str, expected: object, actual: object) -> None:
        super().__init__(
            f"Concurrent update on {entity_name} '{entity_id}': expected {expected}, found {actual}"
        )
        self.entity_name = entity_name
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class TransactionRolledBack(TransientError):
    """Raised after a failed mutation sequence has been compensated."""

    def __init__(self, label: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Transaction '{label}' rolled back{detail}")
        self.label = label


__all__ = [
    "RetailError",
    "BusinessRuleViolation",
    "PreconditionViolation",
    "EntityNotFoundError",
    "InactiveProductError",
    "InsufficientStockError",
    "CreditLimitExceededError",
    "InvalidEntityStateError",
    "TransientError",
    "ConcurrentUpdateError",
    "TransactionRolledBack",
]
