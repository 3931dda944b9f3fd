"""Data access layer for Fridge ERP.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows. Every worksheet is one named collection; nested list
   fields are stored as JSON text in a single cell.
"""


from __future__ import annotations

import configparser
import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    InventoryEventType,
    OrderStatus,
    OverdueStatus,
    PaymentStatus,
    SaleChannel,
    SheetName,
    StatementStatus,
)


CONFIG_FILE_NAME = "config.ini"

DEFAULT_POINTS_PER_MVR = Decimal("1")
DEFAULT_CREDIT_LIMIT = Decimal("500")
DEFAULT_CREDIT_LIMIT_CAP = Decimal("5000")
DEFAULT_GROWTH_FACTOR = Decimal("1.1")
DEFAULT_ON_TIME_STREAK = 3


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "ProductName",
        "Price",
        "Stock",
        "IsBundle",
        "BundleItems",
    ],
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        "CustomerName",
        "Email",
        "LoyaltyPoints",
        "LoyaltyTierID",
        "MaximumCreditLimit",
        "CreditBlocked",
        "Notifications",
    ],
    SheetName.TRANSACTIONS.value: [
        "TransactionID",
        "CustomerID",
        "Date",
        "Channel",
        "Items",
        "Subtotal",
        "DiscountAmount",
        "Total",
        "GiftCardPayments",
        "Returns",
        "PaymentStatus",
        "OrderStatus",
        "PaymentDate",
    ],
    SheetName.GIFT_CARDS.value: [
        "CardID",
        "CustomerID",
        "InitialBalance",
        "CurrentBalance",
        "IsEnabled",
        "CreatedAt",
        "ExpiryDate",
    ],
    SheetName.INVENTORY_EVENTS.value: [
        "EventID",
        "ProductID",
        "EventType",
        "QuantityChange",
        "Date",
        "RelatedID",
        "Notes",
    ],
    SheetName.LOYALTY_TIERS.value: [
        "TierID",
        "TierName",
        "MinPoints",
        "PointMultiplier",
    ],
    SheetName.MONTHLY_STATEMENTS.value: [
        "StatementID",
        "CustomerID",
        "BillingPeriodStart",
        "BillingPeriodEnd",
        "GeneratedAt",
        "DueDate",
        "TotalDue",
        "Status",
        "OverdueStatus",
        "PaymentDate",
        "Transactions",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    loyalty_enabled: bool = True
    points_per_mvr: Decimal = DEFAULT_POINTS_PER_MVR
    recalculate_tier_on_return: bool = False
    default_credit_limit: Decimal = DEFAULT_CREDIT_LIMIT
    credit_limit_increase_cap: Decimal = DEFAULT_CREDIT_LIMIT_CAP
    credit_growth_factor: Decimal = DEFAULT_GROWTH_FACTOR
    on_time_streak: int = DEFAULT_ON_TIME_STREAK
    allow_operator_override: bool = True


@dataclass(frozen=True)
class BundleItem:
    """One component of a bundle: ``quantity`` units of ``product_id``."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    price: Decimal
    stock: int
    is_bundle: bool = False
    bundle_items: Tuple[BundleItem, ...] = ()


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    customer_name: str
    email: Optional[str] = None
    loyalty_points: int = 0
    loyalty_tier_id: Optional[str] = None
    maximum_credit_limit: Optional[Decimal] = None
    credit_blocked: bool = False
    notifications: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LineItem:
    """Frozen snapshot of a purchased line at the time of sale.

    Bundle lines keep the components the bundle held when it was sold, so a
    later return restocks exactly what the sale took.
    """

    product_id: str
    name: str
    price: Decimal
    quantity: int
    is_bundle: bool = False
    bundle_items: Tuple[BundleItem, ...] = ()

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class GiftCardPayment:
    """Portion of a sale settled with a gift card."""

    card_id: str
    amount: Decimal


@dataclass(frozen=True)
class ReturnLine:
    """One returned item inside a :class:`ReturnRecord`."""

    product_id: str
    quantity: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class ReturnRecord:
    """Append-only record of one return event against a transaction."""

    date: str
    items: Tuple[ReturnLine, ...]
    reason: Optional[str] = None
    value: Decimal = Decimal("0.00")
    store_credit_card_id: Optional[str] = None


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    customer_id: str
    date: str
    channel: SaleChannel
    items: Tuple[LineItem, ...]
    subtotal: Decimal
    discount_amount: Decimal
    total: Decimal
    gift_card_payments: Tuple[GiftCardPayment, ...] = ()
    returns: Tuple[ReturnRecord, ...] = ()
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    order_status: OrderStatus = OrderStatus.PENDING
    payment_date: Optional[str] = None

    @property
    def gift_card_total(self) -> Decimal:
        return sum((payment.amount for payment in self.gift_card_payments), Decimal("0.00"))

    @property
    def amount_due(self) -> Decimal:
        """Portion of ``total`` not covered by gift cards, never below zero."""
        return max(Decimal("0.00"), self.total - self.gift_card_total)


@dataclass(frozen=True)
class GiftCardRow:
    """In-memory view of a row from the ``GiftCards`` sheet."""

    card_id: str
    customer_id: Optional[str]
    initial_balance: Decimal
    current_balance: Decimal
    is_enabled: bool
    created_at: str
    expiry_date: Optional[str] = None


@dataclass(frozen=True)
class InventoryEventRow:
    """In-memory view of a row from the ``InventoryEvents`` sheet."""

    event_id: str
    product_id: str
    event_type: InventoryEventType
    quantity_change: int
    date: str
    related_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class LoyaltyTierRow:
    """In-memory view of a row from the ``LoyaltyTiers`` sheet."""

    tier_id: str
    tier_name: str
    min_points: int
    point_multiplier: Decimal


@dataclass(frozen=True)
class StatementLine:
    """Snapshot of one transaction billed on a monthly statement."""

    transaction_id: str
    date: str
    total: Decimal


@dataclass(frozen=True)
class StatementRow:
    """In-memory view of a row from the ``MonthlyStatements`` sheet."""

    statement_id: str
    customer_id: str
    billing_period_start: str
    billing_period_end: str
    generated_at: str
    due_date: str
    total_due: Decimal
    status: StatementStatus = StatementStatus.DUE
    overdue_status: OverdueStatus = OverdueStatus.NONE
    payment_date: Optional[str] = None
    transactions: Tuple[StatementLine, ...] = ()


@dataclass(frozen=True)
class CollectionSpec:
    """Describe how one collection maps onto its worksheet."""

    sheet: SheetName
    row_type: type
    key_column: str
    key_attr: str
    serialize: Callable[[Any], list]
    deserialize: Callable[[Sequence[object]], Any]
    append_only: bool = False

    def key_of(self, record: Any) -> str:
        return getattr(record, self.key_attr)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. ``[Loyalty]``, ``[Credit]`` and
    ``[Sales]`` are optional and fall back to the module defaults option by
    option. Relative ``DataFile`` entries are expanded against ``base_path``
    when provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
        ValueError: If a numeric option cannot be parsed or is out of range.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    settings = ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        loyalty_enabled=parser.getboolean("Loyalty", "Enabled", fallback=True),
        points_per_mvr=_config_decimal(parser, "Loyalty", "PointsPerMvr", DEFAULT_POINTS_PER_MVR),
        recalculate_tier_on_return=parser.getboolean("Loyalty", "RecalculateTierOnReturn", fallback=False),
        default_credit_limit=_config_decimal(parser, "Credit", "DefaultCreditLimit", DEFAULT_CREDIT_LIMIT),
        credit_limit_increase_cap=_config_decimal(parser, "Credit", "CreditLimitIncreaseCap", DEFAULT_CREDIT_LIMIT_CAP),
        credit_growth_factor=_config_decimal(parser, "Credit", "GrowthFactor", DEFAULT_GROWTH_FACTOR),
        on_time_streak=parser.getint("Credit", "OnTimeStreak", fallback=DEFAULT_ON_TIME_STREAK),
        allow_operator_override=parser.getboolean("Sales", "AllowOperatorOverride", fallback=True),
    )
    if settings.default_credit_limit <= 0:
        raise ValueError("DefaultCreditLimit must be greater than zero")
    if settings.on_time_streak < 1:
        raise ValueError("OnTimeStreak must be at least 1")
    return settings


def _config_decimal(parser: configparser.ConfigParser, section: str, option: str, default: Decimal) -> Decimal:
    raw = parser.get(section, option, fallback=None)
    if raw is None or not raw.strip():
        return default
    try:
        return Decimal(raw.strip())
    except ArithmeticError as exc:
        raise ValueError(f"Invalid number for [{section}] {option}: {raw!r}") from exc


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ``master_workbook.xlsx`` file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, replacing ``destination`` atomically.

    The workbook is serialized to a temporary file in the destination folder
    and then moved over the target with :func:`os.replace`. A crash or error
    half way through therefore leaves the previous file intact; readers only
    ever see the old or the new workbook.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        workbook.save(tmp_path)
        os.replace(tmp_path, dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_records(workbook: Workbook, sheet: SheetName) -> Iterable[Any]:
    """Iterate over the typed records stored on a collection worksheet.

    The iterator skips the header row and any fully empty rows. Each remaining
    row is converted with the collection's deserializer.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        sheet (SheetName): Collection to read.

    Yields:
        Any: One row dataclass (``ProductRow``, ``CustomerRow``...) per row.
    """

    spec = COLLECTIONS[sheet]
    worksheet = workbook[sheet.value]
    width = len(SHEET_COLUMNS[sheet.value])
    for raw in worksheet.iter_rows(min_row=2, max_col=width, values_only=True):
        if any(cell is not None for cell in raw):
            yield spec.deserialize(_pad(raw, width))


def append_record(workbook: Workbook, sheet: SheetName, record: Any) -> None:
    """Append a record to the end of its worksheet."""

    workbook[sheet.value].append(COLLECTIONS[sheet].serialize(record))


def upsert_record(workbook: Workbook, sheet: SheetName, record: Any) -> bool:
    """Replace the row whose key matches ``record`` or append a new one.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        sheet (SheetName): Collection receiving the record.
        record (Any): Row dataclass matching the collection.

    Returns:
        bool: ``True`` when an existing row was overwritten, ``False`` when the
            record was appended.
    """

    spec = COLLECTIONS[sheet]
    values = spec.serialize(record)
    row_index = locate_row(workbook, sheet.value, spec.key_column, spec.key_of(record))
    worksheet = workbook[sheet.value]
    if row_index is None:
        worksheet.append(values)
        return False
    for column, value in enumerate(values, start=1):
        worksheet.cell(row=row_index, column=column, value=value)
    return True


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column. Cells are
            compared as text so ids Excel stored as numbers still match.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def format_timestamp(moment: datetime) -> str:
    """Render a timestamp as ISO-8601 text, assuming UTC for naive values."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.isoformat()


def parse_timestamp(text: str, *, end_of_day: bool = False) -> datetime:
    """Parse ISO-8601 text into an aware datetime.

    Naive values are read as UTC. A bare date (``2024-11-15``) maps to the
    start of that day, or to its last instant when ``end_of_day`` is set, so
    "on or before the due date" includes the whole due day.
    """

    value = text.strip()
    if len(value) == 10:
        day = datetime.fromisoformat(value).date()
        return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=UTC)
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product as ``[ProductID, ProductName, Price, Stock, IsBundle, BundleItems]``."""

    bundle = [{"productId": item.product_id, "quantity": item.quantity} for item in record.bundle_items]
    return [
        record.product_id,
        record.product_name,
        record.price,
        record.stock,
        record.is_bundle,
        _json_dump(bundle) if record.is_bundle else None,
    ]


def serialize_customer(record: CustomerRow) -> list[object]:
    return [
        record.customer_id,
        record.customer_name,
        record.email,
        record.loyalty_points,
        record.loyalty_tier_id,
        record.maximum_credit_limit,
        record.credit_blocked,
        _json_dump(list(record.notifications)),
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the ``Transactions`` column order.

    Line items, gift-card payments and return records are written as JSON
    with monetary values rendered as strings so the :class:`~decimal.Decimal`
    precision survives the round trip through Excel.
    """

    items = [
        {
            "productId": item.product_id,
            "name": item.name,
            "price": str(item.price),
            "quantity": item.quantity,
            "isBundle": item.is_bundle,
            "bundleItems": [
                {"productId": component.product_id, "quantity": component.quantity}
                for component in item.bundle_items
            ],
        }
        for item in record.items
    ]
    payments = [{"cardId": p.card_id, "amount": str(p.amount)} for p in record.gift_card_payments]
    returns = [
        {
            "date": event.date,
            "items": [
                {"itemId": line.product_id, "quantity": line.quantity, "reason": line.reason}
                for line in event.items
            ],
            "reason": event.reason,
            "value": str(event.value),
            "storeCreditCardId": event.store_credit_card_id,
        }
        for event in record.returns
    ]
    return [
        record.transaction_id,
        record.customer_id,
        record.date,
        record.channel.value,
        _json_dump(items),
        record.subtotal,
        record.discount_amount,
        record.total,
        _json_dump(payments),
        _json_dump(returns),
        record.payment_status.value,
        record.order_status.value,
        record.payment_date,
    ]


def serialize_gift_card(record: GiftCardRow) -> list[object]:
    return [
        record.card_id,
        record.customer_id,
        record.initial_balance,
        record.current_balance,
        record.is_enabled,
        record.created_at,
        record.expiry_date,
    ]


def serialize_inventory_event(record: InventoryEventRow) -> list[object]:
    return [
        record.event_id,
        record.product_id,
        record.event_type.value,
        record.quantity_change,
        record.date,
        record.related_id,
        record.notes,
    ]


def serialize_loyalty_tier(record: LoyaltyTierRow) -> list[object]:
    return [record.tier_id, record.tier_name, record.min_points, record.point_multiplier]


def serialize_statement(record: StatementRow) -> list[object]:
    lines = [
        {"id": line.transaction_id, "date": line.date, "total": str(line.total)}
        for line in record.transactions
    ]
    return [
        record.statement_id,
        record.customer_id,
        record.billing_period_start,
        record.billing_period_end,
        record.generated_at,
        record.due_date,
        record.total_due,
        record.status.value,
        record.overdue_status.value,
        record.payment_date,
        _json_dump(lines),
    ]


# ---------------------------------------------------------------------------
# Deserialization
# ---------------------------------------------------------------------------


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifiers are coerced to ``str`` to avoid surprises caused by Excel
    interpreting numeric ids, prices become :class:`~decimal.Decimal` and
    stock becomes ``int``.

    Args:
        raw_row (Sequence[object]): Raw cell values from the worksheet row.

    Returns:
        ProductRow: Dataclass containing consistent Python representations of
            the row contents.
    """

    product_id, product_name, price_raw, stock_raw, is_bundle_raw, bundle_raw = raw_row
    is_bundle = _to_bool(is_bundle_raw)
    bundle_items = tuple(
        BundleItem(product_id=str(entry["productId"]), quantity=int(entry["quantity"]))
        for entry in _json_load(bundle_raw, default=[])
    ) if is_bundle else ()
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        price=_to_decimal(price_raw, "0.00"),
        stock=_to_int(stock_raw),
        is_bundle=is_bundle,
        bundle_items=bundle_items,
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    (
        customer_id,
        customer_name,
        email,
        points_raw,
        tier_id,
        limit_raw,
        blocked_raw,
        notifications_raw,
    ) = raw_row
    return CustomerRow(
        customer_id=str(customer_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        email=_opt_str(email),
        loyalty_points=max(0, _to_int(points_raw)),
        loyalty_tier_id=_opt_str(tier_id),
        maximum_credit_limit=_to_decimal(limit_raw, None),
        credit_blocked=_to_bool(blocked_raw),
        notifications=tuple(str(text) for text in _json_load(notifications_raw, default=[])),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw ``Transactions`` row into a :class:`TransactionRow`.

    Status columns are parsed into their enumerations; an unknown value raises
    :class:`ValueError` rather than silently admitting a state outside the
    transition tables.
    """

    (
        transaction_id,
        customer_id,
        date,
        channel_raw,
        items_raw,
        subtotal_raw,
        discount_raw,
        total_raw,
        payments_raw,
        returns_raw,
        payment_status_raw,
        order_status_raw,
        payment_date,
    ) = raw_row

    items = tuple(
        LineItem(
            product_id=str(entry["productId"]),
            name=str(entry.get("name", "")),
            price=Decimal(str(entry["price"])),
            quantity=int(entry["quantity"]),
            is_bundle=bool(entry.get("isBundle", False)),
            bundle_items=tuple(
                BundleItem(product_id=str(component["productId"]), quantity=int(component["quantity"]))
                for component in entry.get("bundleItems") or []
            ),
        )
        for entry in _json_load(items_raw, default=[])
    )
    payments = tuple(
        GiftCardPayment(card_id=str(entry["cardId"]), amount=Decimal(str(entry["amount"])))
        for entry in _json_load(payments_raw, default=[])
    )
    returns = tuple(
        ReturnRecord(
            date=str(entry["date"]),
            items=tuple(
                ReturnLine(
                    product_id=str(line["itemId"]),
                    quantity=int(line["quantity"]),
                    reason=line.get("reason"),
                )
                for line in entry.get("items", [])
            ),
            reason=entry.get("reason"),
            value=Decimal(str(entry.get("value", "0.00"))),
            store_credit_card_id=entry.get("storeCreditCardId"),
        )
        for entry in _json_load(returns_raw, default=[])
    )
    return TransactionRow(
        transaction_id=str(transaction_id),
        customer_id=str(customer_id),
        date=str(date) if date is not None else "",
        channel=SaleChannel(channel_raw or SaleChannel.OPERATOR.value),
        items=items,
        subtotal=_to_decimal(subtotal_raw, "0.00"),
        discount_amount=_to_decimal(discount_raw, "0.00"),
        total=_to_decimal(total_raw, "0.00"),
        gift_card_payments=payments,
        returns=returns,
        payment_status=PaymentStatus(payment_status_raw or PaymentStatus.UNPAID.value),
        order_status=OrderStatus(order_status_raw or OrderStatus.PENDING.value),
        payment_date=_opt_str(payment_date),
    )


def deserialize_gift_card(raw_row: Sequence[object]) -> GiftCardRow:
    card_id, customer_id, initial_raw, current_raw, enabled_raw, created_at, expiry_date = raw_row
    return GiftCardRow(
        card_id=str(card_id),
        customer_id=_opt_str(customer_id),
        initial_balance=_to_decimal(initial_raw, "0.00"),
        current_balance=_to_decimal(current_raw, "0.00"),
        is_enabled=_to_bool(enabled_raw),
        created_at=str(created_at) if created_at is not None else "",
        expiry_date=_opt_str(expiry_date),
    )


def deserialize_inventory_event(raw_row: Sequence[object]) -> InventoryEventRow:
    event_id, product_id, event_type, quantity_raw, date, related_id, notes = raw_row
    return InventoryEventRow(
        event_id=str(event_id),
        product_id=str(product_id),
        event_type=InventoryEventType(event_type),
        quantity_change=_to_int(quantity_raw),
        date=str(date) if date is not None else "",
        related_id=_opt_str(related_id),
        notes=_opt_str(notes),
    )


def deserialize_loyalty_tier(raw_row: Sequence[object]) -> LoyaltyTierRow:
    tier_id, tier_name, min_points_raw, multiplier_raw = raw_row
    return LoyaltyTierRow(
        tier_id=str(tier_id),
        tier_name=str(tier_name) if tier_name is not None else "",
        min_points=_to_int(min_points_raw),
        point_multiplier=_to_decimal(multiplier_raw, "1"),
    )


def deserialize_statement(raw_row: Sequence[object]) -> StatementRow:
    (
        statement_id,
        customer_id,
        period_start,
        period_end,
        generated_at,
        due_date,
        total_due_raw,
        status_raw,
        overdue_raw,
        payment_date,
        lines_raw,
    ) = raw_row
    lines = tuple(
        StatementLine(
            transaction_id=str(entry["id"]),
            date=str(entry.get("date", "")),
            total=Decimal(str(entry.get("total", "0.00"))),
        )
        for entry in _json_load(lines_raw, default=[])
    )
    return StatementRow(
        statement_id=str(statement_id),
        customer_id=str(customer_id),
        billing_period_start=str(period_start),
        billing_period_end=str(period_end),
        generated_at=str(generated_at) if generated_at is not None else "",
        due_date=str(due_date),
        total_due=_to_decimal(total_due_raw, "0.00"),
        status=StatementStatus(status_raw or StatementStatus.DUE.value),
        overdue_status=OverdueStatus(overdue_raw or OverdueStatus.NONE.value),
        payment_date=_opt_str(payment_date),
        transactions=lines,
    )


COLLECTIONS: Dict[SheetName, CollectionSpec] = {
    SheetName.PRODUCTS: CollectionSpec(
        SheetName.PRODUCTS, ProductRow, "ProductID", "product_id",
        serialize_product, deserialize_product,
    ),
    SheetName.CUSTOMERS: CollectionSpec(
        SheetName.CUSTOMERS, CustomerRow, "CustomerID", "customer_id",
        serialize_customer, deserialize_customer,
    ),
    SheetName.TRANSACTIONS: CollectionSpec(
        SheetName.TRANSACTIONS, TransactionRow, "TransactionID", "transaction_id",
        serialize_transaction, deserialize_transaction,
    ),
    SheetName.GIFT_CARDS: CollectionSpec(
        SheetName.GIFT_CARDS, GiftCardRow, "CardID", "card_id",
        serialize_gift_card, deserialize_gift_card,
    ),
    SheetName.INVENTORY_EVENTS: CollectionSpec(
        SheetName.INVENTORY_EVENTS, InventoryEventRow, "EventID", "event_id",
        serialize_inventory_event, deserialize_inventory_event, append_only=True,
    ),
    SheetName.LOYALTY_TIERS: CollectionSpec(
        SheetName.LOYALTY_TIERS, LoyaltyTierRow, "TierID", "tier_id",
        serialize_loyalty_tier, deserialize_loyalty_tier,
    ),
    SheetName.MONTHLY_STATEMENTS: CollectionSpec(
        SheetName.MONTHLY_STATEMENTS, StatementRow, "StatementID", "statement_id",
        serialize_statement, deserialize_statement,
    ),
}


# ---------------------------------------------------------------------------
# Cell coercion helpers
# ---------------------------------------------------------------------------


def _pad(raw: Sequence[object], width: int) -> tuple:
    values = tuple(raw)
    if len(values) < width:
        values = values + (None,) * (width - len(values))
    return values


def _to_decimal(value: object, default: Optional[str]) -> Optional[Decimal]:
    if value is None or value == "":
        return Decimal(default) if default is not None else None
    return Decimal(str(value))


def _to_int(value: object) -> int:
    if value is None or value == "":
        return 0
    return int(Decimal(str(value)))


def _to_bool(value: object) -> bool:
    # Excel round-trips booleans, but hand-edited sheets may hold text.
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "y"}
    return bool(value)


def _opt_str(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _json_load(value: object, *, default: Any) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(str(value))
    except json.JSONDecodeError as exc:
        log.error("Malformed JSON cell value: %r", value)
        raise ValueError(f"Malformed JSON cell value: {value!r}") from exc
