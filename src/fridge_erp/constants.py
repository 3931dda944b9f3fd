"""Enumerations shared across Fridge ERP modules.

Centralises domain constants so that the data access layer (DAL), the
settlement and credit services, and the CLI rely on a single source of truth
for state values and the transitions allowed between them.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class OrderStatus(str, Enum):
    """Fulfilment state of a transaction."""

    PENDING = "Pending"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"


class PaymentStatus(str, Enum):
    """Settlement state of a transaction's unpaid amount."""

    UNPAID = "unpaid"
    PAID = "paid"


class StatementStatus(str, Enum):
    """Lifecycle of a monthly statement."""

    DUE = "due"
    PAID = "paid"


class OverdueStatus(str, Enum):
    """Overdue flag maintained by the external billing scheduler."""

    NONE = "none"
    SEVEN_DAYS_OVERDUE = "7_days_overdue"


class InventoryEventType(str, Enum):
    """Enumerate the audit event types written to the inventory ledger."""

    SALE = "sale"
    RETURN = "return"
    ADJUSTMENT = "adjustment"
    PURCHASE = "purchase"


class SaleChannel(str, Enum):
    """Where a sale originated; drives the credit-block policy."""

    OPERATOR = "operator"
    PORTAL = "portal"


class SettlementStatus(str, Enum):
    """Phase of a settlement as seen by callers and optimistic views."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names (collections) managed by the DAL."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    TRANSACTIONS = "Transactions"
    GIFT_CARDS = "GiftCards"
    INVENTORY_EVENTS = "InventoryEvents"
    LOYALTY_TIERS = "LoyaltyTiers"
    MONTHLY_STATEMENTS = "MonthlyStatements"


# Allowed transitions per state field. Anything not listed is rejected.
ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.UNPAID: frozenset({PaymentStatus.PAID}),
    PaymentStatus.PAID: frozenset(),
}

STATEMENT_TRANSITIONS: Dict[StatementStatus, FrozenSet[StatementStatus]] = {
    StatementStatus.DUE: frozenset({StatementStatus.PAID}),
    StatementStatus.PAID: frozenset(),
}

# Only the billing scheduler moves this flag, through CreditAccountManager.flag_overdue.
OVERDUE_TRANSITIONS: Dict[OverdueStatus, FrozenSet[OverdueStatus]] = {
    OverdueStatus.NONE: frozenset({OverdueStatus.SEVEN_DAYS_OVERDUE}),
    OverdueStatus.SEVEN_DAYS_OVERDUE: frozenset(),
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "OrderStatus",
    "PaymentStatus",
    "StatementStatus",
    "OverdueStatus",
    "InventoryEventType",
    "SaleChannel",
    "SettlementStatus",
    "SheetName",
    "ORDER_TRANSITIONS",
    "PAYMENT_TRANSITIONS",
    "STATEMENT_TRANSITIONS",
    "OVERDUE_TRANSITIONS",
]
