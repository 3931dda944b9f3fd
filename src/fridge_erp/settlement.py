"""Sale and return orchestration.

:class:`SettlementCoordinator` validates a request against one snapshot of
the store, computes every ledger change as pure data (stock, loyalty, gift
cards), then hands the whole set to the gateway as a single commit.
Observers see each settlement twice: once as a *pending* provisional result
before the commit and once as *confirmed* or *failed* after it.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from . import core_logic, credit, gift_cards, log, loyalty, stock_ledger
from .constants import (
    ORDER_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    InventoryEventType,
    OrderStatus,
    PaymentStatus,
    SaleChannel,
    SettlementStatus,
    SheetName,
)
from .data_manager import (
    ConfigSettings,
    CustomerRow,
    GiftCardPayment,
    GiftCardRow,
    InventoryEventRow,
    LineItem,
    ProductRow,
    ReturnLine,
    ReturnRecord,
    TransactionRow,
    format_timestamp,
)
from .errors import (
    BusinessRuleViolation,
    CreditBlockedError,
    CreditLimitExceededError,
    InvalidTransitionError,
    PersistenceCommitError,
    ReturnQuantityError,
)
from .gateway import PersistenceGateway, UnitOfWork
from .stock_ledger import SaleLine


ZERO = Decimal("0.00")


@dataclass(frozen=True)
class SaleRequest:
    """A cart submitted for settlement."""

    customer_id: str
    lines: Sequence[SaleLine]
    discount_amount: Decimal = ZERO
    gift_card_payments: Sequence[GiftCardPayment] = ()
    channel: SaleChannel = SaleChannel.OPERATOR
    override_credit_block: bool = False
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of a sale or return at one phase of its settlement."""

    kind: str
    status: SettlementStatus
    provisional: bool
    transaction: TransactionRow
    customer: CustomerRow
    products: Tuple[ProductRow, ...] = ()
    gift_cards: Tuple[GiftCardRow, ...] = ()
    events: Tuple[InventoryEventRow, ...] = ()
    issued_card: Optional[GiftCardRow] = None
    error: Optional[BaseException] = None


class SettlementObserver(Protocol):
    def on_pending(self, result: SettlementResult) -> None: ...

    def on_confirmed(self, result: SettlementResult) -> None: ...

    def on_failed(self, result: SettlementResult) -> None: ...


class OptimisticView:
    """Client-side list of transactions updated ahead of the commit.

    A pending result is shown immediately. Confirmation swaps in the
    authoritative record; failure restores whatever was shown before.
    """

    def __init__(self, transactions: Sequence[TransactionRow] = ()) -> None:
        self.transactions: Dict[str, TransactionRow] = OrderedDict(
            (transaction.transaction_id, transaction) for transaction in transactions
        )
        self._previous: Dict[str, Optional[TransactionRow]] = {}

    def on_pending(self, result: SettlementResult) -> None:
        transaction_id = result.transaction.transaction_id
        self._previous[transaction_id] = self.transactions.get(transaction_id)
        self.transactions[transaction_id] = result.transaction

    def on_confirmed(self, result: SettlementResult) -> None:
        transaction_id = result.transaction.transaction_id
        self._previous.pop(transaction_id, None)
        self.transactions[transaction_id] = result.transaction

    def on_failed(self, result: SettlementResult) -> None:
        transaction_id = result.transaction.transaction_id
        previous = self._previous.pop(transaction_id, None)
        if previous is None:
            self.transactions.pop(transaction_id, None)
        else:
            self.transactions[transaction_id] = previous


class SettlementCoordinator:
    """Run sales, returns, stock receipts and status changes as atomic settlements."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        settings: ConfigSettings,
        *,
        observers: Sequence[SettlementObserver] = (),
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self.loyalty_settings = loyalty.LoyaltySettings.from_config(settings)
        self.observers: List[SettlementObserver] = list(observers)

    @classmethod
    def from_context(cls, context: core_logic.RuntimeContext, *, observers=()) -> "SettlementCoordinator":
        return cls(context.gateway, context.settings, observers=observers)

    def subscribe(self, observer: SettlementObserver) -> None:
        self.observers.append(observer)

    # ------------------------------------------------------------------
    # Sales
    # ------------------------------------------------------------------

    def place_sale(self, request: SaleRequest) -> SettlementResult:
        """Validate and commit a sale.

        Every check runs before any ledger change is computed: credit block,
        stock for each line and for the cart as a whole, gift-card payments,
        and the credit limit. The transaction, product stock, customer
        loyalty, debited cards and inventory events are then committed
        together.

        Args:
            request (SaleRequest): Cart, payments and channel.

        Returns:
            SettlementResult: Confirmed result carrying the stored records.

        Raises:
            ValueError: For empty carts, non-positive quantities or negative
                discounts.
            BusinessRuleViolation: When any domain rule rejects the sale.
            PersistenceCommitError: If the commit fails; nothing was stored.
        """

        if not request.lines:
            raise ValueError("A sale needs at least one line")
        core_logic.require_nonnegative_money(request.discount_amount)
        when = core_logic.resolve_timestamp(request.timestamp)

        with self.gateway.locked():
            customer = self.gateway.get(SheetName.CUSTOMERS, request.customer_id)
            if customer.credit_blocked and request.channel is SaleChannel.PORTAL:
                log.warning("Rejected portal sale for credit-blocked customer '%s'", customer.customer_id)
                raise CreditBlockedError(
                    f"Customer '{customer.customer_id}' is blocked from credit purchases: account is overdue"
                )

            products = self.gateway.by_id(SheetName.PRODUCTS)
            stock_ledger.validate_availability(request.lines, products)

            items = tuple(
                LineItem(
                    product_id=product.product_id,
                    name=product.product_name,
                    price=product.price,
                    quantity=line.quantity,
                    is_bundle=product.is_bundle,
                    bundle_items=product.bundle_items,
                )
                for line, product in ((line, products[line.product_id]) for line in request.lines)
            )
            subtotal = sum((item.line_total for item in items), ZERO)
            discount = min(request.discount_amount, subtotal)
            total = subtotal - discount

            cards = self.gateway.by_id(SheetName.GIFT_CARDS)
            charged = gift_cards.validate_payments(request.gift_card_payments, cards, when=when)
            gift_total = sum(charged.values(), ZERO)
            if gift_total > total:
                log.warning("Rejected sale: gift card payments %s exceed total %s", gift_total, total)
                raise BusinessRuleViolation(
                    f"Gift card payments ({gift_total}) exceed the sale total ({total})"
                )
            amount_due = total - gift_total

            if amount_due > 0:
                self._check_credit_block(customer, request)
                self._check_credit_limit(customer, amount_due)

            transaction_id = core_logic.generate_unique_id(
                self.gateway.by_id(SheetName.TRANSACTIONS), prefix="INV", when=when
            )
            movement = stock_ledger.apply_sale(request.lines, products, transaction_id=transaction_id, when=when)
            tiers = self.gateway.list(SheetName.LOYALTY_TIERS)
            loyalty_change = loyalty.accrue(customer, total, tiers, self.loyalty_settings)
            debited = gift_cards.debit(request.gift_card_payments, cards, when=when)
            updated_customer = loyalty_change.apply(customer)

            transaction = TransactionRow(
                transaction_id=transaction_id,
                customer_id=customer.customer_id,
                date=format_timestamp(when),
                channel=request.channel,
                items=items,
                subtotal=subtotal,
                discount_amount=discount,
                total=total,
                gift_card_payments=tuple(request.gift_card_payments),
                returns=(),
                payment_status=PaymentStatus.PAID if amount_due == 0 else PaymentStatus.UNPAID,
                order_status=OrderStatus.PENDING if request.channel is SaleChannel.PORTAL else OrderStatus.DELIVERED,
                payment_date=format_timestamp(when) if amount_due == 0 else None,
            )

            unit = UnitOfWork()
            unit.put(SheetName.TRANSACTIONS, transaction)
            unit.put_all(SheetName.PRODUCTS, movement.updated_products.values())
            if loyalty_change.changed:
                unit.put(SheetName.CUSTOMERS, updated_customer)
            unit.put_all(SheetName.GIFT_CARDS, debited)
            unit.append_all(SheetName.INVENTORY_EVENTS, movement.events)

            result = SettlementResult(
                kind="sale",
                status=SettlementStatus.PENDING,
                provisional=True,
                transaction=transaction,
                customer=updated_customer,
                products=tuple(movement.updated_products.values()),
                gift_cards=tuple(debited),
                events=movement.events,
            )
            confirmed = self._settle(unit, result)

        log.info(
            "Recorded sale '%s' for customer '%s' (total=%s, gift cards=%s, points %+d)",
            transaction_id,
            customer.customer_id,
            total,
            gift_total,
            loyalty_change.points_delta,
        )
        return confirmed

    def _check_credit_block(self, customer: CustomerRow, request: SaleRequest) -> None:
        if not customer.credit_blocked:
            return
        if request.override_credit_block and self.settings.allow_operator_override:
            log.warning("Operator override of credit block for customer '%s'", customer.customer_id)
            return
        log.warning("Rejected credit sale for blocked customer '%s'", customer.customer_id)
        raise CreditBlockedError(
            f"Customer '{customer.customer_id}' is blocked from credit purchases: account is overdue"
        )

    def _check_credit_limit(self, customer: CustomerRow, amount_due: Decimal) -> None:
        limit = credit.credit_limit_of(customer, self.settings)
        outstanding = credit.outstanding_balance_of(
            self.gateway.list(SheetName.TRANSACTIONS), customer.customer_id
        )
        if outstanding + amount_due > limit:
            remaining = limit - outstanding
            log.warning(
                "Rejected sale for customer '%s': outstanding %s + due %s exceeds limit %s",
                customer.customer_id,
                outstanding,
                amount_due,
                limit,
            )
            raise CreditLimitExceededError(customer.customer_id, remaining)

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------

    def process_return(
        self,
        transaction_id: str,
        returned_items: Sequence[ReturnLine],
        issue_store_credit: bool,
        reason: Optional[str] = None,
        *,
        timestamp: Optional[datetime] = None,
    ) -> SettlementResult:
        """Take goods back against an earlier sale.

        The refund value uses the unit prices frozen on the transaction, not
        the current catalog. Stock is restored, loyalty points are deducted,
        and, when asked, the value is issued as a store-credit gift card with
        a notification to the customer. Earlier return records are kept as
        they are; the new one is appended.

        Raises:
            ValueError: For empty returns or non-positive quantities.
            ReturnQuantityError: If an item was not bought on the transaction
                or would be returned more times than it was bought.
            MissingReferenceError: If the transaction or customer is unknown.
            PersistenceCommitError: If the commit fails; nothing was stored.
        """

        if not returned_items:
            raise ValueError("A return needs at least one item")
        when = core_logic.resolve_timestamp(timestamp)

        with self.gateway.locked():
            transaction = self.gateway.get(SheetName.TRANSACTIONS, transaction_id)
            customer = self.gateway.get(SheetName.CUSTOMERS, transaction.customer_id)
            value = self._return_value(transaction, returned_items)

            products = self.gateway.by_id(SheetName.PRODUCTS)
            movement = stock_ledger.apply_return(returned_items, transaction, customer, products, when=when)
            tiers = self.gateway.list(SheetName.LOYALTY_TIERS)
            loyalty_change = loyalty.deduct(customer, value, tiers, self.loyalty_settings)
            updated_customer = loyalty_change.apply(customer)

            issued_card = None
            if issue_store_credit and value > 0:
                issued_card = gift_cards.issue(
                    value,
                    customer.customer_id,
                    when=when,
                    card_id=gift_cards.unique_card_id(self.gateway.by_id(SheetName.GIFT_CARDS)),
                )
                message = (
                    f"You have received MVR {value:.2f} in store credit. "
                    f"Your Gift Card code is: {issued_card.card_id}"
                )
                updated_customer = replace(
                    updated_customer, notifications=updated_customer.notifications + (message,)
                )

            subtotal = transaction.subtotal - value
            record = ReturnRecord(
                date=format_timestamp(when),
                items=tuple(returned_items),
                reason=reason,
                value=value,
                store_credit_card_id=issued_card.card_id if issued_card is not None else None,
            )
            updated_transaction = replace(
                transaction,
                subtotal=subtotal,
                total=max(ZERO, subtotal - transaction.discount_amount),
                returns=transaction.returns + (record,),
            )

            unit = UnitOfWork()
            unit.put(SheetName.TRANSACTIONS, updated_transaction)
            unit.put_all(SheetName.PRODUCTS, movement.updated_products.values())
            if updated_customer is not customer:
                unit.put(SheetName.CUSTOMERS, updated_customer)
            if issued_card is not None:
                unit.put(SheetName.GIFT_CARDS, issued_card)
            unit.append_all(SheetName.INVENTORY_EVENTS, movement.events)

            result = SettlementResult(
                kind="return",
                status=SettlementStatus.PENDING,
                provisional=True,
                transaction=updated_transaction,
                customer=updated_customer,
                products=tuple(movement.updated_products.values()),
                gift_cards=(issued_card,) if issued_card is not None else (),
                events=movement.events,
                issued_card=issued_card,
            )
            confirmed = self._settle(unit, result)

        log.info(
            "Recorded return against '%s' (value=%s, store credit=%s, points %+d)",
            transaction_id,
            value,
            issued_card.card_id if issued_card is not None else "none",
            loyalty_change.points_delta,
        )
        return confirmed

    def _return_value(self, transaction: TransactionRow, returned_items: Sequence[ReturnLine]) -> Decimal:
        purchased: Dict[str, int] = {}
        prices: Dict[str, Decimal] = {}
        for item in transaction.items:
            purchased[item.product_id] = purchased.get(item.product_id, 0) + item.quantity
            prices.setdefault(item.product_id, item.price)

        already_returned: Dict[str, int] = {}
        for record in transaction.returns:
            for line in record.items:
                already_returned[line.product_id] = already_returned.get(line.product_id, 0) + line.quantity

        requested: Dict[str, int] = OrderedDict()
        for line in returned_items:
            core_logic.require_positive_quantity(line.quantity)
            if line.product_id not in purchased:
                log.warning(
                    "Rejected return of '%s': not part of transaction '%s'",
                    line.product_id,
                    transaction.transaction_id,
                )
                raise ReturnQuantityError(
                    f"Product '{line.product_id}' was not sold on transaction '{transaction.transaction_id}'"
                )
            requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

        for product_id, quantity in requested.items():
            remaining = purchased[product_id] - already_returned.get(product_id, 0)
            if quantity > remaining:
                log.warning(
                    "Rejected return of %d x '%s' on '%s': only %d left to return",
                    quantity,
                    product_id,
                    transaction.transaction_id,
                    remaining,
                )
                raise ReturnQuantityError(
                    f"Cannot return {quantity} x '{product_id}': only {remaining} of "
                    f"{purchased[product_id]} remain returnable"
                )

        return sum((prices[product_id] * quantity for product_id, quantity in requested.items()), ZERO)

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def update_order_status(self, transaction_id: str, new_status: OrderStatus) -> TransactionRow:
        """Move a transaction along ``Pending -> Out for Delivery -> Delivered``.

        Raises:
            InvalidTransitionError: If the move is not in the transition table.
        """

        new_status = OrderStatus(new_status)
        with self.gateway.locked():
            transaction = self.gateway.get(SheetName.TRANSACTIONS, transaction_id)
            if new_status not in ORDER_TRANSITIONS[transaction.order_status]:
                log.warning(
                    "Rejected order status change on '%s': %s -> %s",
                    transaction_id,
                    transaction.order_status.value,
                    new_status.value,
                )
                raise InvalidTransitionError("order status", transaction.order_status.value, new_status.value)
            updated = replace(transaction, order_status=new_status)
            self.gateway.put(SheetName.TRANSACTIONS, updated)
        log.info("Order '%s' is now '%s'", transaction_id, new_status.value)
        return updated

    def mark_transaction_paid(self, transaction_id: str, *, timestamp: Optional[datetime] = None) -> TransactionRow:
        """Settle the unpaid amount of a transaction and stamp the payment date."""

        when = core_logic.resolve_timestamp(timestamp)
        with self.gateway.locked():
            transaction = self.gateway.get(SheetName.TRANSACTIONS, transaction_id)
            if PaymentStatus.PAID not in PAYMENT_TRANSITIONS[transaction.payment_status]:
                log.warning("Rejected payment of '%s': already %s", transaction_id, transaction.payment_status.value)
                raise InvalidTransitionError(
                    "payment status", transaction.payment_status.value, PaymentStatus.PAID.value
                )
            updated = replace(transaction, payment_status=PaymentStatus.PAID, payment_date=format_timestamp(when))
            self.gateway.put(SheetName.TRANSACTIONS, updated)
        log.info("Invoice '%s' marked as paid (amount=%s)", transaction_id, transaction.amount_due)
        return updated

    # ------------------------------------------------------------------
    # Stock corrections and store credit
    # ------------------------------------------------------------------

    def adjust_stock(
        self,
        product_id: str,
        quantity_change: int,
        *,
        notes: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> ProductRow:
        """Apply a manual stock correction and log an ``adjustment`` event."""

        when = core_logic.resolve_timestamp(timestamp)
        with self.gateway.locked():
            products = self.gateway.by_id(SheetName.PRODUCTS)
            product = stock_ledger.lookup_product(products, product_id)
            event_id = core_logic.generate_unique_id(
                self.gateway.by_id(SheetName.INVENTORY_EVENTS), prefix="ADJ", when=when
            )
            movement = stock_ledger.apply_adjustment(
                product, quantity_change, products, when=when, notes=notes, event_id=event_id
            )
            updated = movement.updated_products[product_id]
            self.gateway.commit(
                UnitOfWork()
                .put(SheetName.PRODUCTS, updated)
                .append_all(SheetName.INVENTORY_EVENTS, movement.events)
            )
        log.info("Adjusted stock of '%s' by %+d (now %d)", product_id, quantity_change, updated.stock)
        return updated

    def receive_stock(
        self,
        lines: Sequence[SaleLine],
        *,
        supplier: Optional[str] = None,
        order_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Tuple[ProductRow, ...]:
        """Book a delivered purchase order into stock.

        Every line raises its product's stock and logs a ``purchase`` event
        tied to ``order_id``. Stock and events are committed together. An
        order can only be received once.

        Args:
            lines (Sequence[SaleLine]): Products and quantities delivered.
            supplier (str | None): Wholesaler name recorded on the events.
            order_id (str | None): Purchase order reference, generated as
                ``PO-<timestamp>`` when omitted.
            timestamp (datetime | None): Receipt time, now when omitted.

        Returns:
            tuple[ProductRow, ...]: The restocked products.

        Raises:
            ValueError: For empty orders or non-positive quantities.
            BusinessRuleViolation: If the order was already received or a
                line names a bundle.
            MissingReferenceError: If a product is unknown.
            PersistenceCommitError: If the commit fails; nothing was stored.
        """

        if not lines:
            raise ValueError("A purchase order needs at least one line")
        when = core_logic.resolve_timestamp(timestamp)
        with self.gateway.locked():
            received = {
                event.related_id
                for event in self.gateway.list(SheetName.INVENTORY_EVENTS)
                if event.event_type is InventoryEventType.PURCHASE
            }
            if order_id is None:
                order_id = core_logic.generate_unique_id(received, prefix="PO", when=when)
            elif order_id in received:
                log.warning("Rejected purchase order '%s': already received", order_id)
                raise BusinessRuleViolation(f"Purchase order '{order_id}' has already been received")

            products = self.gateway.by_id(SheetName.PRODUCTS)
            movement = stock_ledger.apply_purchase(
                lines, products, order_id=order_id, when=when, supplier=supplier
            )
            self.gateway.commit(
                UnitOfWork()
                .put_all(SheetName.PRODUCTS, movement.updated_products.values())
                .append_all(SheetName.INVENTORY_EVENTS, movement.events)
            )
        log.info("Received purchase order '%s' (%s)", order_id, movement.deltas)
        return tuple(movement.updated_products.values())

    def issue_gift_card(
        self,
        amount: Decimal,
        *,
        customer_id: Optional[str] = None,
        expiry_date: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> GiftCardRow:
        """Sell or grant a new gift card, optionally tied to a customer."""

        when = core_logic.resolve_timestamp(timestamp)
        with self.gateway.locked():
            if customer_id is not None:
                self.gateway.get(SheetName.CUSTOMERS, customer_id)
            card = gift_cards.issue(
                amount,
                customer_id,
                when=when,
                expiry_date=expiry_date,
                card_id=gift_cards.unique_card_id(self.gateway.by_id(SheetName.GIFT_CARDS)),
            )
            self.gateway.put(SheetName.GIFT_CARDS, card)
        log.info("Issued gift card '%s' (balance=%s)", card.card_id, card.current_balance)
        return card

    # ------------------------------------------------------------------
    # Two-phase publication
    # ------------------------------------------------------------------

    def _settle(self, unit: UnitOfWork, pending: SettlementResult) -> SettlementResult:
        for observer in self.observers:
            observer.on_pending(pending)
        try:
            self.gateway.commit(unit)
        except PersistenceCommitError as exc:
            failed = replace(pending, status=SettlementStatus.FAILED, error=exc)
            for observer in self.observers:
                observer.on_failed(failed)
            raise
        confirmed = replace(pending, status=SettlementStatus.CONFIRMED, provisional=False)
        for observer in self.observers:
            observer.on_confirmed(confirmed)
        return confirmed


__all__ = [
    "SaleRequest",
    "SettlementResult",
    "SettlementObserver",
    "OptimisticView",
    "SettlementCoordinator",
]
