"""Bundle-aware stock computations.

Everything here is pure: functions take product records, return new
records and inventory events, and never persist anything. Bundles are one
level deep. Their own ``stock`` column is ignored; availability is derived
from the components.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import InventoryEventType
from .data_manager import (
    CustomerRow,
    InventoryEventRow,
    LineItem,
    ProductRow,
    ReturnLine,
    TransactionRow,
    format_timestamp,
)
from .errors import BundleDefinitionError, InsufficientStockError, MissingReferenceError


ProductsById = Mapping[str, ProductRow]


@dataclass(frozen=True)
class SaleLine:
    """A requested product and quantity in a cart."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class StockMovement:
    """Result of a stock computation, ready to be committed."""

    deltas: Dict[str, int]
    events: Tuple[InventoryEventRow, ...]
    updated_products: Dict[str, ProductRow]


def lookup_product(products_by_id: ProductsById, product_id: str) -> ProductRow:
    product = products_by_id.get(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return product


def bundle_components(bundle: ProductRow, products_by_id: ProductsById) -> List[Tuple[ProductRow, int]]:
    """Resolve a bundle into ``(component, units per bundle)`` pairs.

    Raises:
        MissingReferenceError: If a component id is unknown.
        BundleDefinitionError: If a component is itself a bundle, or a
            component quantity is not positive.
    """

    components = []
    for item in bundle.bundle_items:
        component = lookup_product(products_by_id, item.product_id)
        if component.is_bundle:
            log.warning("Bundle '%s' lists nested bundle '%s'", bundle.product_id, component.product_id)
            raise BundleDefinitionError(
                f"Bundle '{bundle.product_id}' cannot contain bundle '{component.product_id}'"
            )
        if item.quantity <= 0:
            raise BundleDefinitionError(
                f"Bundle '{bundle.product_id}' lists a non-positive quantity for '{item.product_id}'"
            )
        components.append((component, item.quantity))
    return components


def effective_stock(product: ProductRow, products_by_id: ProductsById) -> int:
    """Return the sellable quantity of ``product``.

    Plain products report their stock. A bundle reports how many complete
    bundles its components can make, ``min(component.stock // qty)``, or 0
    when it has no components or references a missing product.
    """

    if not product.is_bundle:
        return product.stock
    if not product.bundle_items:
        return 0
    try:
        components = bundle_components(product, products_by_id)
    except MissingReferenceError:
        return 0
    return max(0, min(component.stock // quantity for component, quantity in components))


def expand_line(product: ProductRow, quantity: int, products_by_id: ProductsById) -> List[Tuple[ProductRow, int]]:
    """Break a cart line into the concrete products and quantities it consumes."""

    if not product.is_bundle:
        return [(product, quantity)]
    return [(component, per_bundle * quantity) for component, per_bundle in bundle_components(product, products_by_id)]


def validate_availability(lines: Sequence[SaleLine], products_by_id: ProductsById) -> Dict[str, int]:
    """Ensure the cart can be fulfilled before anything is computed.

    Each line must be covered by its effective stock, and the summed demand
    on every concrete product across the cart must not exceed its stock, so
    a bundle and its component sold together cannot oversell.

    Args:
        lines (Sequence[SaleLine]): Requested cart lines.
        products_by_id (Mapping[str, ProductRow]): Current product snapshot.

    Returns:
        dict[str, int]: Total units demanded per concrete product id.

    Raises:
        ValueError: If a quantity is not positive.
        MissingReferenceError: If a product is unknown.
        BundleDefinitionError: If a bundle contains another bundle.
        InsufficientStockError: If stock cannot cover a line or the aggregate.
    """

    demand: Dict[str, int] = OrderedDict()
    for line in lines:
        core_logic.require_positive_quantity(line.quantity)
        product = lookup_product(products_by_id, line.product_id)
        if product.is_bundle:
            bundle_components(product, products_by_id)
        available = effective_stock(product, products_by_id)
        if line.quantity > available:
            log.warning(
                "Rejected sale line for '%s': requested %d, available %d",
                product.product_id,
                line.quantity,
                available,
            )
            raise InsufficientStockError(product.product_id, line.quantity, available)
        for component, quantity in expand_line(product, line.quantity, products_by_id):
            demand[component.product_id] = demand.get(component.product_id, 0) + quantity

    for product_id, requested in demand.items():
        available = products_by_id[product_id].stock
        if requested > available:
            log.warning(
                "Rejected cart: combined demand for '%s' is %d, available %d",
                product_id,
                requested,
                available,
            )
            raise InsufficientStockError(product_id, requested, available)
    return dict(demand)


def _movement(deltas: Dict[str, int], events: List[InventoryEventRow], products_by_id: ProductsById) -> StockMovement:
    updated = {
        product_id: replace(products_by_id[product_id], stock=products_by_id[product_id].stock + delta)
        for product_id, delta in deltas.items()
    }
    return StockMovement(deltas=dict(deltas), events=tuple(events), updated_products=updated)


def apply_sale(
    lines: Sequence[SaleLine],
    products_by_id: ProductsById,
    *,
    transaction_id: str,
    when: datetime,
) -> StockMovement:
    """Compute the stock decrements and ``sale`` events for a cart.

    Availability is validated first; nothing is computed for a cart that
    cannot be fulfilled. A bundle line yields one event per component, noted
    with the bundle's name.
    """

    validate_availability(lines, products_by_id)
    timestamp = format_timestamp(when)
    deltas: Dict[str, int] = OrderedDict()
    events: List[InventoryEventRow] = []
    for line in lines:
        product = products_by_id[line.product_id]
        notes = f"Sale of bundle '{product.product_name}'" if product.is_bundle else None
        for component, quantity in expand_line(product, line.quantity, products_by_id):
            deltas[component.product_id] = deltas.get(component.product_id, 0) - quantity
            events.append(
                InventoryEventRow(
                    event_id=f"{transaction_id}-E{len(events) + 1:02d}",
                    product_id=component.product_id,
                    event_type=InventoryEventType.SALE,
                    quantity_change=-quantity,
                    date=timestamp,
                    related_id=transaction_id,
                    notes=notes,
                )
            )
    log.debug("Computed sale stock deltas for '%s': %s", transaction_id, dict(deltas))
    return _movement(deltas, events, products_by_id)


def sold_line(transaction: TransactionRow, product_id: str) -> Optional[LineItem]:
    """Return the first line of ``transaction`` that sold ``product_id``."""

    for item in transaction.items:
        if item.product_id == product_id:
            return item
    return None


def returned_components(
    sold: LineItem, quantity: int, products_by_id: ProductsById
) -> List[Tuple[ProductRow, int]]:
    """Break a returned line into the concrete products it puts back on the shelf.

    Bundles are expanded with the contents recorded on the sale, not the
    current catalog definition. Lines stored before that snapshot existed
    fall back to the catalog.
    """

    if not sold.is_bundle:
        return [(lookup_product(products_by_id, sold.product_id), quantity)]
    contents = sold.bundle_items or lookup_product(products_by_id, sold.product_id).bundle_items
    return [(lookup_product(products_by_id, item.product_id), item.quantity * quantity) for item in contents]


def apply_return(
    lines: Sequence[ReturnLine],
    transaction: TransactionRow,
    customer: CustomerRow,
    products_by_id: ProductsById,
    *,
    when: datetime,
) -> StockMovement:
    """Compute the stock increments and ``return`` events for returned lines.

    The exact inverse of :func:`apply_sale`: returned bundles put back the
    components they held when sold, even if the bundle was redefined or
    removed from the catalog since.

    Raises:
        ValueError: If a quantity is not positive.
        MissingReferenceError: If a line was not sold on ``transaction`` or a
            component no longer exists.
    """

    timestamp = format_timestamp(when)
    return_number = len(transaction.returns) + 1
    deltas: Dict[str, int] = OrderedDict()
    events: List[InventoryEventRow] = []
    for line in lines:
        core_logic.require_positive_quantity(line.quantity)
        sold = sold_line(transaction, line.product_id)
        if sold is None:
            raise MissingReferenceError(
                f"Product '{line.product_id}' was not sold on transaction '{transaction.transaction_id}'"
            )
        if sold.is_bundle:
            notes = f"Return of bundle '{sold.name}' from {customer.customer_name}"
        else:
            notes = f"Return from {customer.customer_name}"
        for component, quantity in returned_components(sold, line.quantity, products_by_id):
            deltas[component.product_id] = deltas.get(component.product_id, 0) + quantity
            events.append(
                InventoryEventRow(
                    event_id=f"{transaction.transaction_id}-R{return_number}-E{len(events) + 1:02d}",
                    product_id=component.product_id,
                    event_type=InventoryEventType.RETURN,
                    quantity_change=quantity,
                    date=timestamp,
                    related_id=transaction.transaction_id,
                    notes=notes,
                )
            )
    log.debug("Computed return stock deltas for '%s': %s", transaction.transaction_id, dict(deltas))
    return _movement(deltas, events, products_by_id)


def apply_purchase(
    lines: Sequence[SaleLine],
    products_by_id: ProductsById,
    *,
    order_id: str,
    when: datetime,
    supplier: Optional[str] = None,
) -> StockMovement:
    """Compute the stock increments and ``purchase`` events for a received order.

    Only plain products can be received; a bundle has no stock of its own.

    Raises:
        ValueError: If a quantity is not positive.
        MissingReferenceError: If a product is unknown.
        BundleDefinitionError: If a line names a bundle.
    """

    timestamp = format_timestamp(when)
    notes = f"From {supplier}" if supplier else None
    deltas: Dict[str, int] = OrderedDict()
    events: List[InventoryEventRow] = []
    for line in lines:
        core_logic.require_positive_quantity(line.quantity)
        product = lookup_product(products_by_id, line.product_id)
        if product.is_bundle:
            raise BundleDefinitionError(
                f"Bundle '{product.product_id}' has no stock of its own; receive its components"
            )
        deltas[product.product_id] = deltas.get(product.product_id, 0) + line.quantity
        events.append(
            InventoryEventRow(
                event_id=f"{order_id}-E{len(events) + 1:02d}",
                product_id=product.product_id,
                event_type=InventoryEventType.PURCHASE,
                quantity_change=line.quantity,
                date=timestamp,
                related_id=order_id,
                notes=notes,
            )
        )
    log.debug("Computed purchase stock deltas for '%s': %s", order_id, dict(deltas))
    return _movement(deltas, events, products_by_id)


def apply_adjustment(
    product: ProductRow,
    quantity_change: int,
    products_by_id: ProductsById,
    *,
    when: datetime,
    notes: Optional[str] = None,
    event_id: Optional[str] = None,
) -> StockMovement:
    """Compute a manual stock correction for a plain product.

    Raises:
        ValueError: If ``quantity_change`` is zero.
        BusinessRuleViolation: If ``product`` is a bundle.
        InsufficientStockError: If the change would leave stock negative.
    """

    if quantity_change == 0:
        raise ValueError("Adjustment quantity must not be zero")
    if product.is_bundle:
        raise BundleDefinitionError(
            f"Bundle '{product.product_id}' has no stock of its own; adjust its components"
        )
    if product.stock + quantity_change < 0:
        log.warning(
            "Rejected adjustment for '%s': change %d, stock %d",
            product.product_id,
            quantity_change,
            product.stock,
        )
        raise InsufficientStockError(product.product_id, -quantity_change, product.stock)

    event = InventoryEventRow(
        event_id=event_id or core_logic.generate_transaction_id(prefix="ADJ", when=when),
        product_id=product.product_id,
        event_type=InventoryEventType.ADJUSTMENT,
        quantity_change=quantity_change,
        date=format_timestamp(when),
        related_id=None,
        notes=notes,
    )
    snapshot = dict(products_by_id)
    snapshot[product.product_id] = product
    return _movement({product.product_id: quantity_change}, [event], snapshot)


__all__ = [
    "SaleLine",
    "StockMovement",
    "lookup_product",
    "bundle_components",
    "effective_stock",
    "expand_line",
    "validate_availability",
    "apply_sale",
    "sold_line",
    "returned_components",
    "apply_return",
    "apply_purchase",
    "apply_adjustment",
]
