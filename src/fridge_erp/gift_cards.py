"""Gift-card debits and store-credit issuance."""

from __future__ import annotations

import uuid
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Container, Dict, List, Mapping, Optional, Sequence

from . import core_logic, log
from .data_manager import GiftCardPayment, GiftCardRow, format_timestamp, parse_timestamp
from .errors import GiftCardUnavailableError, MissingReferenceError, OverdraftError


def generate_card_id() -> str:
    return f"GC-{uuid.uuid4().hex[:12].upper()}"


def unique_card_id(taken: Container[str]) -> str:
    """Draw card ids until one is not in ``taken``."""

    card_id = generate_card_id()
    while card_id in taken:
        log.debug("Gift card id '%s' already taken, drawing another", card_id)
        card_id = generate_card_id()
    return card_id


def check_expiry_date(expiry_date: Optional[str]) -> Optional[str]:
    """Return ``expiry_date`` trimmed, after checking it parses as ISO-8601.

    Raises:
        ValueError: If the text is not an ISO date or timestamp.
    """

    if not expiry_date:
        return None
    try:
        parse_timestamp(expiry_date)
    except ValueError as exc:
        log.warning("Rejected gift card expiry date '%s'", expiry_date)
        raise ValueError(f"Invalid expiry date '{expiry_date}', expected YYYY-MM-DD") from exc
    return expiry_date.strip()


def is_expired(card: GiftCardRow, when: datetime) -> bool:
    if not card.expiry_date:
        return False
    return parse_timestamp(card.expiry_date, end_of_day=True) < when


def validate_payments(
    payments: Sequence[GiftCardPayment],
    cards_by_id: Mapping[str, GiftCardRow],
    *,
    when: datetime,
) -> Dict[str, Decimal]:
    """Check that every card can cover what is charged to it.

    Amounts are summed per card first, so two payments against the same card
    cannot together overdraw it.

    Returns:
        dict[str, Decimal]: Total amount charged per card id.

    Raises:
        ValueError: If a payment amount is not positive.
        MissingReferenceError: If a card id is unknown.
        GiftCardUnavailableError: If a card is disabled or expired.
        OverdraftError: If the summed charge exceeds a card's balance.
    """

    totals: Dict[str, Decimal] = OrderedDict()
    for payment in payments:
        core_logic.require_positive_money(payment.amount)
        totals[payment.card_id] = totals.get(payment.card_id, Decimal("0")) + payment.amount

    for card_id, amount in totals.items():
        card = cards_by_id.get(card_id)
        if card is None:
            log.warning("Gift card lookup failed for id '%s'", card_id)
            raise MissingReferenceError(f"Unknown gift card id: {card_id}")
        if not card.is_enabled:
            log.warning("Rejected payment with disabled gift card '%s'", card_id)
            raise GiftCardUnavailableError(f"Gift card '{card_id}' is disabled")
        if is_expired(card, when):
            log.warning("Rejected payment with expired gift card '%s'", card_id)
            raise GiftCardUnavailableError(f"Gift card '{card_id}' expired on {card.expiry_date}")
        if amount > card.current_balance:
            log.warning(
                "Rejected overdraft on gift card '%s': amount %s, balance %s",
                card_id,
                amount,
                card.current_balance,
            )
            raise OverdraftError(card_id, amount, card.current_balance)
    return dict(totals)


def debit(
    payments: Sequence[GiftCardPayment],
    cards_by_id: Mapping[str, GiftCardRow],
    *,
    when: datetime,
) -> List[GiftCardRow]:
    """Return the debited cards; a card emptied to zero is disabled."""

    totals = validate_payments(payments, cards_by_id, when=when)
    updated = []
    for card_id, amount in totals.items():
        card = cards_by_id[card_id]
        balance = card.current_balance - amount
        updated.append(replace(card, current_balance=balance, is_enabled=balance > 0))
        log.debug("Debited %s from gift card '%s' (balance %s)", amount, card_id, balance)
    return updated


def issue(
    initial_balance: Decimal,
    customer_id: Optional[str],
    *,
    when: datetime,
    expiry_date: Optional[str] = None,
    card_id: Optional[str] = None,
) -> GiftCardRow:
    """Create a new enabled card holding ``initial_balance``.

    Raises:
        ValueError: If ``initial_balance`` is not positive or ``expiry_date``
            is not a valid date.
    """

    core_logic.require_positive_money(initial_balance)
    expiry_date = check_expiry_date(expiry_date)
    return GiftCardRow(
        card_id=card_id or generate_card_id(),
        customer_id=customer_id,
        initial_balance=initial_balance,
        current_balance=initial_balance,
        is_enabled=True,
        created_at=format_timestamp(when),
        expiry_date=expiry_date,
    )


__all__ = [
    "generate_card_id",
    "unique_card_id",
    "check_expiry_date",
    "is_expired",
    "validate_payments",
    "debit",
    "issue",
]
