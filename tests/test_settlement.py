"""Tests for sale and return settlement."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from fridge_erp import data_manager, gift_cards
from fridge_erp.constants import (
    InventoryEventType,
    OrderStatus,
    PaymentStatus,
    SaleChannel,
    SettlementStatus,
    SheetName,
)
from fridge_erp.data_manager import BundleItem, GiftCardPayment, ReturnLine, TransactionRow
from fridge_erp.errors import (
    BusinessRuleViolation,
    CreditBlockedError,
    CreditLimitExceededError,
    InsufficientStockError,
    InvalidTransitionError,
    OverdraftError,
    PersistenceCommitError,
    ReturnQuantityError,
)
from fridge_erp.gateway import PersistenceGateway
from fridge_erp.settlement import OptimisticView, SaleRequest, SettlementCoordinator
from fridge_erp.stock_ledger import SaleLine


class RecordingObserver:
    def __init__(self) -> None:
        self.calls = []

    def on_pending(self, result) -> None:
        self.calls.append(("pending", result))

    def on_confirmed(self, result) -> None:
        self.calls.append(("confirmed", result))

    def on_failed(self, result) -> None:
        self.calls.append(("failed", result))


def _stock(gateway, product_id):
    return gateway.get(SheetName.PRODUCTS, product_id).stock


def _break_saves(monkeypatch):
    def _boom(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(data_manager, "save_workbook", _boom)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def test_operator_sale_updates_every_ledger_in_one_commit(coordinator, seeded_gateway, set_fixed_datetime):
    """Stock, loyalty, gift card and the invoice are all written together."""

    set_fixed_datetime()
    result = coordinator.place_sale(
        SaleRequest(
            customer_id="C1",
            lines=[SaleLine("X", 2), SaleLine("B", 1)],
            discount_amount=Decimal("1.00"),
            gift_card_payments=[GiftCardPayment("GC-50", Decimal("10.00"))],
        )
    )

    transaction = result.transaction
    assert result.status is SettlementStatus.CONFIRMED
    assert result.provisional is False
    assert transaction.transaction_id == "INV-20241120093000000000"
    assert transaction.subtotal == Decimal("30.50")
    assert transaction.total == Decimal("29.50")
    assert transaction.amount_due == Decimal("19.50")
    assert transaction.payment_status is PaymentStatus.UNPAID
    assert transaction.order_status is OrderStatus.DELIVERED
    assert [item.price for item in transaction.items] == [Decimal("9.00"), Decimal("12.50")]

    fresh = PersistenceGateway(
        data_manager.open_workbook(seeded_gateway.data_file), seeded_gateway.data_file
    )
    assert _stock(fresh, "A") == 6
    assert _stock(fresh, "B") == 3
    assert fresh.get(SheetName.GIFT_CARDS, "GC-50").current_balance == Decimal("40.00")
    customer = fresh.get(SheetName.CUSTOMERS, "C1")
    assert customer.loyalty_points == 29
    assert customer.loyalty_tier_id == "bronze"
    assert fresh.get(SheetName.TRANSACTIONS, transaction.transaction_id) == transaction
    events = fresh.list(SheetName.INVENTORY_EVENTS)
    assert [(event.product_id, event.quantity_change) for event in events] == [("A", -4), ("B", -1)]
    assert all(event.event_type is InventoryEventType.SALE for event in events)


def test_portal_sale_starts_pending(coordinator):
    result = coordinator.place_sale(
        SaleRequest(customer_id="C1", lines=[SaleLine("A", 1)], channel=SaleChannel.PORTAL)
    )
    assert result.transaction.order_status is OrderStatus.PENDING
    assert result.transaction.channel is SaleChannel.PORTAL


def test_sale_fully_covered_by_gift_card_is_paid(coordinator):
    result = coordinator.place_sale(
        SaleRequest(
            customer_id="C1",
            lines=[SaleLine("A", 2)],
            gift_card_payments=[GiftCardPayment("GC-50", Decimal("10.00"))],
        )
    )
    assert result.transaction.payment_status is PaymentStatus.PAID
    assert result.transaction.payment_date is not None


def test_discount_is_capped_at_subtotal(coordinator):
    result = coordinator.place_sale(
        SaleRequest(customer_id="C1", lines=[SaleLine("A", 1)], discount_amount=Decimal("100"))
    )
    assert result.transaction.discount_amount == Decimal("5.00")
    assert result.transaction.total == Decimal("0.00")
    assert result.transaction.payment_status is PaymentStatus.PAID


def test_rejected_sale_leaves_stock_untouched(coordinator, seeded_gateway):
    """An oversold line aborts the whole cart before anything is written."""

    with pytest.raises(InsufficientStockError):
        coordinator.place_sale(SaleRequest(customer_id="C1", lines=[SaleLine("A", 2), SaleLine("X", 6)]))

    assert _stock(seeded_gateway, "A") == 10
    assert seeded_gateway.list(SheetName.TRANSACTIONS) == []
    assert seeded_gateway.list(SheetName.INVENTORY_EVENTS) == []


def test_overdraft_rejects_sale_without_side_effects(coordinator, seeded_gateway):
    with pytest.raises(OverdraftError):
        coordinator.place_sale(
            SaleRequest(
                customer_id="C1",
                lines=[SaleLine("B", 4)],
                gift_card_payments=[GiftCardPayment("GC-50", Decimal("51.00"))],
            )
        )
    assert _stock(seeded_gateway, "B") == 4
    assert seeded_gateway.get(SheetName.GIFT_CARDS, "GC-50").current_balance == Decimal("50.00")


def test_gift_cards_cannot_exceed_total(coordinator):
    with pytest.raises(BusinessRuleViolation):
        coordinator.place_sale(
            SaleRequest(
                customer_id="C1",
                lines=[SaleLine("A", 1)],
                gift_card_payments=[GiftCardPayment("GC-50", Decimal("10.00"))],
            )
        )


def test_empty_cart_is_rejected(coordinator):
    with pytest.raises(ValueError):
        coordinator.place_sale(SaleRequest(customer_id="C1", lines=[]))


def test_blocked_customer_is_rejected_on_portal(coordinator):
    with pytest.raises(CreditBlockedError):
        coordinator.place_sale(
            SaleRequest(customer_id="C2", lines=[SaleLine("A", 1)], channel=SaleChannel.PORTAL, override_credit_block=True)
        )


def test_blocked_customer_needs_operator_override(coordinator):
    with pytest.raises(CreditBlockedError):
        coordinator.place_sale(SaleRequest(customer_id="C2", lines=[SaleLine("A", 1)]))

    result = coordinator.place_sale(
        SaleRequest(customer_id="C2", lines=[SaleLine("A", 1)], override_credit_block=True)
    )
    assert result.status is SettlementStatus.CONFIRMED


def test_operator_override_can_be_disabled(seeded_gateway, settings):
    strict = SettlementCoordinator(seeded_gateway, replace(settings, allow_operator_override=False))
    with pytest.raises(CreditBlockedError):
        strict.place_sale(SaleRequest(customer_id="C2", lines=[SaleLine("A", 1)], override_credit_block=True))


def test_credit_limit_counts_outstanding_invoices(coordinator, seeded_gateway):
    """495 already owed against a 500 limit leaves room for 5.00 only."""

    seeded_gateway.put(
        SheetName.TRANSACTIONS,
        TransactionRow(
            transaction_id="INV-OLD",
            customer_id="C1",
            date="2024-11-01T10:00:00+00:00",
            channel=SaleChannel.OPERATOR,
            items=(),
            subtotal=Decimal("495.00"),
            discount_amount=Decimal("0.00"),
            total=Decimal("495.00"),
        ),
    )

    with pytest.raises(CreditLimitExceededError) as excinfo:
        coordinator.place_sale(SaleRequest(customer_id="C1", lines=[SaleLine("A", 2)]))
    assert excinfo.value.remaining == Decimal("5.00")
    assert "Remaining limit: MVR 5.00" in str(excinfo.value)

    result = coordinator.place_sale(SaleRequest(customer_id="C1", lines=[SaleLine("A", 1)]))
    assert result.transaction.total == Decimal("5.00")


def test_sales_at_the_same_instant_get_distinct_ids(coordinator, set_fixed_datetime):
    set_fixed_datetime()
    first = coordinator.place_sale(SaleRequest(customer_id="C1", lines=[SaleLine("A", 1)]))
    second = coordinator.place_sale(SaleRequest(customer_id="C1", lines=[SaleLine("A", 1)]))
    assert first.transaction.transaction_id != second.transaction.transaction_id


def test_observers_see_pending_then_confirmed(coordinator):
    observer = RecordingObserver()
    view = OptimisticView()
    coordinator.subscribe(observer)
    coordinator.subscribe(view)

    result = coordinator.place_sale(SaleRequest(customer_id="C1", lines=[SaleLine("A", 1)]))

    phases = [(name, item.status, item.provisional) for name, item in observer.calls]
    assert phases == [
        ("pending", SettlementStatus.PENDING, True),
        ("confirmed", SettlementStatus.CONFIRMED, False),
    ]
    assert view.transactions == {result.transaction.transaction_id: result.transaction}


def test_failed_commit_is_void_and_reported(coordinator, seeded_gateway, monkeypatch):
    """A failing save leaves no trace and the optimistic entry is withdrawn."""

    observer = RecordingObserver()
    view = OptimisticView()
    coordinator.subscribe(observer)
    coordinator.subscribe(view)
    _break_saves(monkeypatch)

    with pytest.raises(PersistenceCommitError):
        coordinator.place_sale(SaleRequest(customer_id="C1", lines=[SaleLine("A", 3)]))
    monkeypatch.undo()

    assert [name for name, _ in observer.calls] == ["pending", "failed"]
    failed = observer.calls[-1][1]
    assert failed.status is SettlementStatus.FAILED
    assert isinstance(failed.error, PersistenceCommitError)
    assert view.transactions == {}
    assert _stock(seeded_gateway, "A") == 10
    assert seeded_gateway.get(SheetName.CUSTOMERS, "C1").loyalty_points == 0
    assert seeded_gateway.list(SheetName.TRANSACTIONS) == []


def test_optimistic_view_restores_previous_record_on_failure(coordinator, monkeypatch):
    """A failed return puts the last confirmed version of the invoice back."""

    view = OptimisticView()
    coordinator.subscribe(view)
    sale = coordinator.place_sale(SaleRequest(customer_id="C1", lines=[SaleLine("A", 2)]))
    _break_saves(monkeypatch)

    with pytest.raises(PersistenceCommitError):
        coordinator.process_return(sale.transaction.transaction_id, [ReturnLine("A", 1)], False)

    assert view.transactions[sale.transaction.transaction_id] == sale.transaction


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------


@pytest.fixture
def sale(coordinator, set_fixed_datetime):
    """3 x A and 1 x Y for C1: subtotal 31.00, 31 loyalty points."""

    set_fixed_datetime()
    return coordinator.place_sale(
        SaleRequest(customer_id="C1", lines=[SaleLine("A", 3), SaleLine("Y", 1)])
    ).transaction


def test_return_with_store_credit_reverses_ledgers(coordinator, seeded_gateway, sale):
    result = coordinator.process_return(sale.transaction_id, [ReturnLine("A", 1)], True, reason="dented")

    transaction = result.transaction
    assert transaction.subtotal == Decimal("26.00")
    assert transaction.total == Decimal("26.00")
    [record] = transaction.returns
    assert record.value == Decimal("5.00")
    assert record.reason == "dented"

    card = result.issued_card
    assert card is not None
    assert record.store_credit_card_id == card.card_id
    stored_card = seeded_gateway.get(SheetName.GIFT_CARDS, card.card_id)
    assert stored_card.current_balance == Decimal("5.00")
    assert stored_card.is_enabled is True

    customer = seeded_gateway.get(SheetName.CUSTOMERS, "C1")
    assert customer.loyalty_points == 26
    assert customer.notifications[-1] == (
        f"You have received MVR 5.00 in store credit. Your Gift Card code is: {card.card_id}"
    )
    assert _stock(seeded_gateway, "A") == 7
    return_events = [
        event for event in seeded_gateway.list(SheetName.INVENTORY_EVENTS)
        if event.event_type is InventoryEventType.RETURN
    ]
    assert [(event.product_id, event.quantity_change, event.notes) for event in return_events] == [
        ("A", 1, "Return from Aisha")
    ]


def test_return_uses_frozen_price(coordinator, seeded_gateway, sale):
    """Catalog price changes after the sale do not affect the refund."""

    product = seeded_gateway.get(SheetName.PRODUCTS, "A")
    seeded_gateway.put(SheetName.PRODUCTS, replace(product, price=Decimal("99.00")))

    result = coordinator.process_return(sale.transaction_id, [ReturnLine("A", 2)], False)
    assert result.transaction.returns[-1].value == Decimal("10.00")
    assert result.issued_card is None


def test_return_of_bundle_restocks_components(coordinator, seeded_gateway, sale):
    coordinator.process_return(sale.transaction_id, [ReturnLine("Y", 1)], False)
    assert _stock(seeded_gateway, "A") == 7
    assert _stock(seeded_gateway, "B") == 4


def test_bundle_return_restocks_contents_recorded_at_sale(coordinator, seeded_gateway):
    """Redefining a bundle after the sale does not change what its return puts back."""

    sale = coordinator.place_sale(SaleRequest(customer_id="C1", lines=[SaleLine("X", 2)])).transaction
    assert sale.items[0].bundle_items == (BundleItem("A", 2),)
    assert _stock(seeded_gateway, "A") == 6

    bundle = seeded_gateway.get(SheetName.PRODUCTS, "X")
    seeded_gateway.put(SheetName.PRODUCTS, replace(bundle, bundle_items=(BundleItem("B", 1),)))

    result = coordinator.process_return(sale.transaction_id, [ReturnLine("X", 2)], False)

    assert _stock(seeded_gateway, "A") == 10
    assert _stock(seeded_gateway, "B") == 4
    assert [(event.product_id, event.quantity_change) for event in result.events] == [("A", 4)]
    assert result.events[0].notes == "Return of bundle 'Juice Pair' from Aisha"


def test_repeated_partial_returns_append_records(coordinator, sale):
    first = coordinator.process_return(sale.transaction_id, [ReturnLine("A", 1)], False).transaction
    second = coordinator.process_return(sale.transaction_id, [ReturnLine("A", 1)], False).transaction

    assert len(second.returns) == 2
    assert second.returns[0] == first.returns[0]
    assert second.subtotal == Decimal("21.00")


def test_cannot_return_more_than_was_bought(coordinator, sale):
    coordinator.process_return(sale.transaction_id, [ReturnLine("A", 2)], False)
    with pytest.raises(ReturnQuantityError):
        coordinator.process_return(sale.transaction_id, [ReturnLine("A", 2)], False)
    with pytest.raises(ReturnQuantityError):
        coordinator.process_return(sale.transaction_id, [ReturnLine("A", 1), ReturnLine("A", 1)], False)


def test_cannot_return_item_not_on_invoice(coordinator, sale):
    with pytest.raises(ReturnQuantityError):
        coordinator.process_return(sale.transaction_id, [ReturnLine("B", 1)], False)


def test_return_total_never_drops_below_zero(coordinator):
    sale = coordinator.place_sale(
        SaleRequest(customer_id="C1", lines=[SaleLine("A", 2)], discount_amount=Decimal("8.00"))
    ).transaction
    assert sale.total == Decimal("2.00")

    result = coordinator.process_return(sale.transaction_id, [ReturnLine("A", 1)], False)
    assert result.transaction.subtotal == Decimal("5.00")
    assert result.transaction.total == Decimal("0.00")


# ---------------------------------------------------------------------------
# Status changes, adjustments and gift cards
# ---------------------------------------------------------------------------


def test_order_status_follows_transition_table(coordinator):
    sale = coordinator.place_sale(
        SaleRequest(customer_id="C1", lines=[SaleLine("A", 1)], channel=SaleChannel.PORTAL)
    ).transaction

    moved = coordinator.update_order_status(sale.transaction_id, OrderStatus.OUT_FOR_DELIVERY)
    assert moved.order_status is OrderStatus.OUT_FOR_DELIVERY
    delivered = coordinator.update_order_status(sale.transaction_id, OrderStatus.DELIVERED)
    assert delivered.order_status is OrderStatus.DELIVERED
    with pytest.raises(InvalidTransitionError):
        coordinator.update_order_status(sale.transaction_id, OrderStatus.PENDING)


def test_mark_transaction_paid_is_one_way(coordinator, seeded_gateway):
    sale = coordinator.place_sale(SaleRequest(customer_id="C1", lines=[SaleLine("A", 1)])).transaction

    paid = coordinator.mark_transaction_paid(sale.transaction_id)
    assert paid.payment_status is PaymentStatus.PAID
    assert paid.payment_date is not None
    assert seeded_gateway.get(SheetName.TRANSACTIONS, sale.transaction_id).payment_status is PaymentStatus.PAID
    with pytest.raises(InvalidTransitionError):
        coordinator.mark_transaction_paid(sale.transaction_id)


def test_adjust_stock_records_adjustment_event(coordinator, seeded_gateway):
    product = coordinator.adjust_stock("B", 6, notes="delivery")
    assert product.stock == 10
    [event] = seeded_gateway.list(SheetName.INVENTORY_EVENTS)
    assert event.event_type is InventoryEventType.ADJUSTMENT
    assert event.quantity_change == 6


def test_issue_gift_card_persists_card(coordinator, seeded_gateway):
    card = coordinator.issue_gift_card(Decimal("25.00"), customer_id="C3")
    assert seeded_gateway.get(SheetName.GIFT_CARDS, card.card_id).current_balance == Decimal("25.00")


def test_store_credit_card_never_reuses_an_existing_id(coordinator, seeded_gateway, sale, monkeypatch):
    drawn = iter(["GC-50", "GC-CREDIT"])
    monkeypatch.setattr(gift_cards, "generate_card_id", lambda: next(drawn))

    result = coordinator.process_return(sale.transaction_id, [ReturnLine("A", 1)], True)

    assert result.issued_card.card_id == "GC-CREDIT"
    assert seeded_gateway.get(SheetName.GIFT_CARDS, "GC-50").current_balance == Decimal("50.00")
    assert seeded_gateway.get(SheetName.GIFT_CARDS, "GC-CREDIT").current_balance == Decimal("5.00")


def test_issue_gift_card_rejects_malformed_expiry(coordinator, seeded_gateway):
    with pytest.raises(ValueError, match="Invalid expiry date"):
        coordinator.issue_gift_card(Decimal("25.00"), expiry_date="31/12/2025")
    assert len(seeded_gateway.list(SheetName.GIFT_CARDS)) == 3


# ---------------------------------------------------------------------------
# Purchase orders
# ---------------------------------------------------------------------------


def test_receive_stock_books_purchase_order(coordinator, seeded_gateway):
    products = coordinator.receive_stock(
        [SaleLine("A", 12), SaleLine("B", 6)], supplier="Island Wholesale", order_id="PO-7"
    )

    assert [(product.product_id, product.stock) for product in products] == [("A", 22), ("B", 10)]
    assert _stock(seeded_gateway, "A") == 22
    events = seeded_gateway.list(SheetName.INVENTORY_EVENTS)
    assert [(event.event_id, event.product_id, event.quantity_change) for event in events] == [
        ("PO-7-E01", "A", 12),
        ("PO-7-E02", "B", 6),
    ]
    assert all(event.event_type is InventoryEventType.PURCHASE for event in events)
    assert {event.related_id for event in events} == {"PO-7"}
    assert {event.notes for event in events} == {"From Island Wholesale"}


def test_receive_stock_generates_order_reference(coordinator, seeded_gateway, set_fixed_datetime):
    set_fixed_datetime()
    coordinator.receive_stock([SaleLine("B", 1)])
    coordinator.receive_stock([SaleLine("B", 1)])

    related = [event.related_id for event in seeded_gateway.list(SheetName.INVENTORY_EVENTS)]
    assert related == ["PO-20241120093000000000", "PO-20241120093000000000-1"]
    assert _stock(seeded_gateway, "B") == 6


def test_purchase_order_is_received_only_once(coordinator, seeded_gateway):
    coordinator.receive_stock([SaleLine("A", 5)], order_id="PO-7")
    with pytest.raises(BusinessRuleViolation, match="already been received"):
        coordinator.receive_stock([SaleLine("A", 5)], order_id="PO-7")
    assert _stock(seeded_gateway, "A") == 15


def test_receive_stock_rejects_bundles_without_touching_stock(coordinator, seeded_gateway):
    with pytest.raises(BusinessRuleViolation):
        coordinator.receive_stock([SaleLine("A", 5), SaleLine("X", 1)], order_id="PO-8")
    assert _stock(seeded_gateway, "A") == 10
    assert seeded_gateway.list(SheetName.INVENTORY_EVENTS) == []


def test_receive_stock_requires_lines(coordinator):
    with pytest.raises(ValueError):
        coordinator.receive_stock([])
