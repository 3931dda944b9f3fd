"""Monthly statements, credit limits and credit blocks.

Statements move ``due -> paid`` and nothing else. The overdue flag is set
by the billing scheduler through ``flag_overdue``, which also blocks credit.
Paying a statement can raise the customer's credit limit (a streak of
on-time payments) and can lift a credit block (no other overdue
statement remains).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import (
    OVERDUE_TRANSITIONS,
    STATEMENT_TRANSITIONS,
    OverdueStatus,
    PaymentStatus,
    SheetName,
    StatementStatus,
)
from .data_manager import (
    ConfigSettings,
    CustomerRow,
    StatementRow,
    TransactionRow,
    format_timestamp,
    parse_timestamp,
)
from .errors import InvalidTransitionError
from .gateway import PersistenceGateway, UnitOfWork


@dataclass(frozen=True)
class CreditUpdate:
    """What paying a statement changed."""

    statement: StatementRow
    customer: CustomerRow
    limit_before: Decimal
    limit_after: Decimal
    unblocked: bool = False
    messages: Tuple[str, ...] = ()

    @property
    def limit_increased(self) -> bool:
        return self.limit_after > self.limit_before


def credit_limit_of(customer: CustomerRow, settings: ConfigSettings) -> Decimal:
    if customer.maximum_credit_limit is None:
        return settings.default_credit_limit
    return customer.maximum_credit_limit


def outstanding_balance_of(transactions: Sequence[TransactionRow], customer_id: str) -> Decimal:
    """Sum what the customer still owes on unpaid transactions, net of gift cards."""

    return sum(
        (
            transaction.amount_due
            for transaction in transactions
            if transaction.customer_id == customer_id and transaction.payment_status is PaymentStatus.UNPAID
        ),
        Decimal("0.00"),
    )


def paid_on_time(statement: StatementRow) -> bool:
    """Return ``True`` when the statement was paid no later than its due date.

    A date-only due date covers the whole day.
    """

    if statement.status is not StatementStatus.PAID or not statement.payment_date:
        return False
    return parse_timestamp(statement.payment_date) <= parse_timestamp(statement.due_date, end_of_day=True)


def grown_limit(current: Decimal, settings: ConfigSettings) -> Decimal:
    return core_logic.to_cents(min(current * settings.credit_growth_factor, settings.credit_limit_increase_cap))


class CreditAccountManager:
    """Owns statement payment, credit-limit growth, unblocking and reminders."""

    def __init__(self, gateway: PersistenceGateway, settings: ConfigSettings) -> None:
        self.gateway = gateway
        self.settings = settings

    @classmethod
    def from_context(cls, context: core_logic.RuntimeContext) -> "CreditAccountManager":
        return cls(context.gateway, context.settings)

    def statements_for(self, customer_id: str) -> List[StatementRow]:
        return [
            statement
            for statement in self.gateway.list(SheetName.MONTHLY_STATEMENTS)
            if statement.customer_id == customer_id
        ]

    def outstanding_balance(self, customer_id: str) -> Decimal:
        self.gateway.get(SheetName.CUSTOMERS, customer_id)
        return outstanding_balance_of(self.gateway.list(SheetName.TRANSACTIONS), customer_id)

    def overdue_statements(self, customer_id: str) -> List[StatementRow]:
        return [
            statement
            for statement in self.statements_for(customer_id)
            if statement.status is StatementStatus.DUE
            and statement.overdue_status is OverdueStatus.SEVEN_DAYS_OVERDUE
        ]

    def mark_paid(self, statement_id: str, *, timestamp: Optional[datetime] = None) -> CreditUpdate:
        """Record payment of a monthly statement and update the customer's credit.

        The statement becomes ``paid`` with the payment time stamped. Then:

        * if the newest ``OnTimeStreak`` statements the customer had already
          paid (by billing-period end, this one excluded) were all paid on or
          before their due dates, the limit grows by ``GrowthFactor`` up to
          ``CreditLimitIncreaseCap``, rounded to cents and only ever upward;
        * if the customer is blocked and no *other* statement is both due and
          seven days overdue, the block is cleared.

        Statement and customer are committed together.

        Args:
            statement_id (str): Statement being paid.
            timestamp (datetime | None): Payment time, now when omitted.

        Returns:
            CreditUpdate: New statement and customer records plus operator
                messages describing what changed.

        Raises:
            MissingReferenceError: If the statement or customer is unknown.
            InvalidTransitionError: If the statement is already paid.
            PersistenceCommitError: If the commit fails.
        """

        when = core_logic.resolve_timestamp(timestamp)
        with self.gateway.locked():
            statement = self.gateway.get(SheetName.MONTHLY_STATEMENTS, statement_id)
            if StatementStatus.PAID not in STATEMENT_TRANSITIONS[statement.status]:
                log.warning("Rejected payment of statement '%s': already %s", statement_id, statement.status.value)
                raise InvalidTransitionError("statement status", statement.status.value, StatementStatus.PAID.value)
            customer = self.gateway.get(SheetName.CUSTOMERS, statement.customer_id)

            paid_statement = replace(statement, status=StatementStatus.PAID, payment_date=format_timestamp(when))
            others = [s for s in self.statements_for(customer.customer_id) if s.statement_id != statement_id]

            limit_before = credit_limit_of(customer, self.settings)
            limit_after = limit_before
            messages: List[str] = []
            updated_customer = customer

            paid = [s for s in others if s.status is StatementStatus.PAID]
            paid.sort(key=lambda s: parse_timestamp(s.billing_period_end), reverse=True)
            streak = self.settings.on_time_streak
            if len(paid) >= streak and all(paid_on_time(s) for s in paid[:streak]):
                candidate = grown_limit(limit_before, self.settings)
                if candidate > limit_before:
                    limit_after = candidate
                    updated_customer = replace(updated_customer, maximum_credit_limit=candidate)
                    messages.append(f"{customer.customer_name}'s credit limit increased to MVR {candidate:.2f}.")

            unblocked = False
            still_overdue = any(
                s.status is StatementStatus.DUE and s.overdue_status is OverdueStatus.SEVEN_DAYS_OVERDUE
                for s in others
            )
            if customer.credit_blocked and not still_overdue:
                unblocked = True
                updated_customer = replace(updated_customer, credit_blocked=False)
                messages.append(f"{customer.customer_name}'s credit block has been removed.")

            unit = UnitOfWork().put(SheetName.MONTHLY_STATEMENTS, paid_statement)
            if updated_customer is not customer:
                unit.put(SheetName.CUSTOMERS, updated_customer)
            self.gateway.commit(unit)

        log.info(
            "Statement '%s' paid by customer '%s' (limit %s -> %s, unblocked=%s)",
            statement_id,
            customer.customer_id,
            limit_before,
            limit_after,
            unblocked,
        )
        return CreditUpdate(
            statement=paid_statement,
            customer=updated_customer,
            limit_before=limit_before,
            limit_after=limit_after,
            unblocked=unblocked,
            messages=tuple(messages),
        )

    def flag_overdue(self, statement_id: str) -> StatementRow:
        """Mark a due statement as seven days overdue and block the customer's credit.

        Called by the billing scheduler. Statement and customer are committed
        together.

        Raises:
            MissingReferenceError: If the statement or customer is unknown.
            InvalidTransitionError: If the statement is paid or already flagged.
        """

        flag = OverdueStatus.SEVEN_DAYS_OVERDUE
        with self.gateway.locked():
            statement = self.gateway.get(SheetName.MONTHLY_STATEMENTS, statement_id)
            if statement.status is not StatementStatus.DUE:
                log.warning("Rejected overdue flag on statement '%s': already paid", statement_id)
                raise InvalidTransitionError("overdue status", f"{statement.status.value} statement", flag.value)
            if flag not in OVERDUE_TRANSITIONS[statement.overdue_status]:
                log.warning("Rejected overdue flag on statement '%s': already flagged", statement_id)
                raise InvalidTransitionError("overdue status", statement.overdue_status.value, flag.value)
            customer = self.gateway.get(SheetName.CUSTOMERS, statement.customer_id)

            flagged = replace(statement, overdue_status=flag)
            unit = UnitOfWork().put(SheetName.MONTHLY_STATEMENTS, flagged)
            if not customer.credit_blocked:
                unit.put(SheetName.CUSTOMERS, replace(customer, credit_blocked=True))
            self.gateway.commit(unit)
        log.info("Statement '%s' is overdue; credit blocked for customer '%s'", statement_id, customer.customer_id)
        return flagged

    def send_reminder(self, statement_id: str) -> CustomerRow:
        """Append a payment reminder for ``statement_id`` to the customer's notifications."""

        with self.gateway.locked():
            statement = self.gateway.get(SheetName.MONTHLY_STATEMENTS, statement_id)
            customer = self.gateway.get(SheetName.CUSTOMERS, statement.customer_id)
            period_end = parse_timestamp(statement.billing_period_end).date().isoformat()
            due_date = parse_timestamp(statement.due_date).date().isoformat()
            message = (
                f"Payment Reminder: Your statement for the period ending {period_end} "
                f"with a total of MVR {statement.total_due:.2f} is due on {due_date}."
            )
            updated = replace(customer, notifications=customer.notifications + (message,))
            self.gateway.put(SheetName.CUSTOMERS, updated)
        log.info("Sent payment reminder for statement '%s' to customer '%s'", statement_id, customer.customer_id)
        return updated


__all__ = [
    "CreditUpdate",
    "CreditAccountManager",
    "credit_limit_of",
    "outstanding_balance_of",
    "paid_on_time",
    "grown_limit",
]
