"""Exception taxonomy for the settlement and credit services.

Every domain rejection derives from :class:`BusinessRuleViolation` so callers
(the CLI in particular) can treat them uniformly as "the request was refused,
nothing changed". :class:`PersistenceCommitError` sits outside that hierarchy:
the request was valid but the atomic write failed, so the whole operation is
void and the caller decides whether to re-invoke it.
"""

from __future__ import annotations

from typing import Optional


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, card, or record is unknown."""


class BundleDefinitionError(BusinessRuleViolation):
    """Raised when a bundle lists another bundle as one of its components."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when the available quantity cannot cover a requested quantity."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"requested {requested}, available {available}"
        )


class OverdraftError(BusinessRuleViolation):
    """Raised when a gift-card debit exceeds the card's current balance."""

    def __init__(self, card_id: str, amount, balance) -> None:
        self.card_id = card_id
        self.amount = amount
        self.balance = balance
        super().__init__(
            f"Gift card '{card_id}' cannot cover {amount}: balance is {balance}"
        )


class GiftCardUnavailableError(BusinessRuleViolation):
    """Raised when a gift card is disabled or expired."""


class CreditBlockedError(BusinessRuleViolation):
    """Raised when a blocked customer attempts a credit purchase."""


class CreditLimitExceededError(BusinessRuleViolation):
    """Raised when a sale would push the outstanding balance above the limit."""

    def __init__(self, customer_id: str, remaining) -> None:
        self.customer_id = customer_id
        self.remaining = remaining
        super().__init__(
            f"Credit limit exceeded for customer '{customer_id}'. Remaining limit: MVR {remaining:.2f}"
        )


class ReturnQuantityError(BusinessRuleViolation):
    """Raised when a return references items or quantities the sale cannot cover."""


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when a status change is not listed in the transition table."""

    def __init__(self, field: str, current: str, requested: str) -> None:
        self.field = field
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move {field} from '{current}' to '{requested}'")


class PersistenceCommitError(RuntimeError):
    """Raised when the atomic multi-collection write fails; nothing was applied."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "BundleDefinitionError",
    "InsufficientStockError",
    "OverdraftError",
    "GiftCardUnavailableError",
    "CreditBlockedError",
    "CreditLimitExceededError",
    "ReturnQuantityError",
    "InvalidTransitionError",
    "PersistenceCommitError",
]
