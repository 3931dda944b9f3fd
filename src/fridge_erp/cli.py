"""Command-line entry points for the Fridge ERP toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the request objects consumed by the settlement
and credit services. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, gift_cards, log, stock_ledger
from .constants import OrderStatus, SaleChannel, SheetName
from .credit import CreditAccountManager, credit_limit_of
from .data_manager import GiftCardPayment, ReturnLine
from .errors import BusinessRuleViolation, PersistenceCommitError
from .settlement import SaleRequest, SettlementCoordinator


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="fridge-cli",
        description="Command-line tools for the Fridge ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and returns."""
    specs = {
        "sale": register_sale_command(subparsers),
        "return": register_return_command(subparsers),
        "order-status": register_order_status_command(subparsers),
        "pay-invoice": register_pay_invoice_command(subparsers),
        "mark-paid": register_mark_paid_command(subparsers),
        "remind": register_remind_command(subparsers),
        "adjust-stock": register_adjust_stock_command(subparsers),
        "receive-stock": register_receive_stock_command(subparsers),
        "issue-gift-card": register_issue_gift_card_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "stock": register_stock_command(subparsers),
        "balance": register_balance_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item(raw: str) -> Tuple[str, int]:
    """Parse ``PRODUCT_ID:QTY`` (quantity defaults to 1)."""
    product_id, _, quantity = raw.rpartition(":")
    if not product_id:
        return raw, 1
    try:
        return product_id, int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid item '{raw}', expected PRODUCT_ID:QTY") from exc


def parse_payment(raw: str) -> Tuple[str, Decimal]:
    """Parse ``CARD_ID:AMOUNT``."""
    card_id, _, amount = raw.rpartition(":")
    try:
        if not card_id:
            raise InvalidOperation(raw)
        return card_id, Decimal(amount)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid gift card payment '{raw}', expected CARD_ID:AMOUNT") from exc


def parse_expiry_date(raw: str) -> str:
    """Parse an ISO expiry date such as ``2025-12-31``."""
    try:
        return gift_cards.check_expiry_date(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Settle a sale: stock, loyalty, gift cards and the invoice in one commit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            help="PRODUCT_ID:QTY, repeat for each line.",
        )
        parser.add_argument("--discount", default="0.00")
        parser.add_argument(
            "--gift-card",
            dest="gift_cards",
            action="append",
            type=parse_payment,
            default=[],
            help="CARD_ID:AMOUNT, repeat for each card.",
        )
        parser.add_argument(
            "--channel",
            choices=[member.value for member in SaleChannel],
            default=SaleChannel.OPERATOR.value,
        )
        parser.add_argument(
            "--override-credit-block",
            action="store_true",
            help="Let an operator sell on credit to a blocked customer, when config allows it.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return``."""
    name = "return"
    help_text = "Process a return against an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--item", dest="items", action="append", type=parse_item, required=True)
        parser.add_argument("--reason", default=None)
        parser.add_argument("--store-credit", action="store_true", help="Issue the refund as a gift card.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return)


def register_order_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order-status``."""
    name = "order-status"
    help_text = "Advance the delivery status of an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--status", choices=[member.value for member in OrderStatus], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_order_status)


def register_pay_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-invoice``."""
    name = "pay-invoice"
    help_text = "Mark an unpaid invoice as paid."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_invoice)


def register_mark_paid_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``mark-paid``."""
    name = "mark-paid"
    help_text = "Mark a monthly statement as paid and update the customer's credit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--statement-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_paid)


def register_remind_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remind``."""
    name = "remind"
    help_text = "Send a payment reminder for a monthly statement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--statement-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remind)


def register_adjust_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-stock``."""
    name = "adjust-stock"
    help_text = "Apply a signed manual stock correction to a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True, help="Signed change, e.g. -2 or 12.")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_stock)


def register_receive_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receive-stock``."""
    name = "receive-stock"
    help_text = "Book a delivered purchase order into stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            help="PRODUCT_ID:QTY, repeat for each delivered product.",
        )
        parser.add_argument("--supplier", default=None)
        parser.add_argument("--order-id", default=None, help="Purchase order reference.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receive_stock)


def register_issue_gift_card_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``issue-gift-card``."""
    name = "issue-gift-card"
    help_text = "Issue a new gift card."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--expiry-date", type=parse_expiry_date, default=None, help="ISO date, e.g. 2025-12-31.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_issue_gift_card)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels, including bundle availability."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_balance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balance``."""
    name = "balance"
    help_text = "Display a customer's outstanding balance and credit standing."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balance_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else None
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    if spec.mutates:
        core_logic.ensure_schema_version(context)
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_sale(args: argparse.Namespace) -> SaleRequest:
    """Translate CLI args into a sale request."""
    return SaleRequest(
        customer_id=args.customer_id,
        lines=[stock_ledger.SaleLine(product_id=product_id, quantity=quantity) for product_id, quantity in args.items],
        discount_amount=Decimal(args.discount),
        gift_card_payments=[GiftCardPayment(card_id=card_id, amount=amount) for card_id, amount in args.gift_cards],
        channel=SaleChannel(args.channel),
        override_credit_block=args.override_credit_block,
    )


def translate_return(args: argparse.Namespace) -> List[ReturnLine]:
    """Translate CLI args into returned lines."""
    return [
        ReturnLine(product_id=product_id, quantity=quantity, reason=args.reason)
        for product_id, quantity in args.items
    ]


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow."""
    result = SettlementCoordinator.from_context(context).place_sale(translate_sale(args))
    transaction = result.transaction
    print(
        f"{transaction.transaction_id}: total MVR {transaction.total:.2f} "
        f"({transaction.payment_status.value}, {transaction.order_status.value})"
    )
    return 0


def run_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the return workflow."""
    result = SettlementCoordinator.from_context(context).process_return(
        args.transaction_id,
        translate_return(args),
        args.store_credit,
        reason=args.reason,
    )
    record = result.transaction.returns[-1]
    print(f"Returned MVR {record.value:.2f} against {args.transaction_id}")
    if result.issued_card is not None:
        print(f"Store credit card: {result.issued_card.card_id}")
    return 0


def run_order_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order status workflow."""
    SettlementCoordinator.from_context(context).update_order_status(args.transaction_id, OrderStatus(args.status))
    return 0


def run_pay_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice payment workflow."""
    SettlementCoordinator.from_context(context).mark_transaction_paid(args.transaction_id)
    return 0


def run_mark_paid(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the statement payment workflow."""
    update = CreditAccountManager.from_context(context).mark_paid(args.statement_id)
    for message in update.messages:
        print(message)
    return 0


def run_remind(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment reminder workflow."""
    customer = CreditAccountManager.from_context(context).send_reminder(args.statement_id)
    print(customer.notifications[-1])
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock adjustment workflow."""
    product = SettlementCoordinator.from_context(context).adjust_stock(
        args.product_id, args.quantity, notes=args.notes
    )
    print(f"{product.product_id}: stock {product.stock}")
    return 0


def translate_receipt(args: argparse.Namespace) -> List[stock_ledger.SaleLine]:
    """Translate CLI args into delivered purchase-order lines."""
    return [stock_ledger.SaleLine(product_id=product_id, quantity=quantity) for product_id, quantity in args.items]


def run_receive_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase-order receiving workflow."""
    products = SettlementCoordinator.from_context(context).receive_stock(
        translate_receipt(args),
        supplier=args.supplier,
        order_id=args.order_id,
    )
    for product in products:
        print(f"{product.product_id}: stock {product.stock}")
    return 0


def run_issue_gift_card(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the gift card issuance workflow."""
    card = SettlementCoordinator.from_context(context).issue_gift_card(
        Decimal(args.amount),
        customer_id=args.customer_id,
        expiry_date=args.expiry_date,
    )
    print(f"{card.card_id}: MVR {card.current_balance:.2f}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    products = context.gateway.by_id(SheetName.PRODUCTS)
    for product in products.values():
        available = stock_ledger.effective_stock(product, products)
        suffix = " (bundle)" if product.is_bundle else ""
        print(f"{product.product_id}\t{product.product_name}{suffix}\t{available}")
    return 0


def run_balance_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer balance reporting workflow."""
    manager = CreditAccountManager.from_context(context)
    customer = context.gateway.get(SheetName.CUSTOMERS, args.customer_id)
    outstanding = manager.outstanding_balance(customer.customer_id)
    limit = credit_limit_of(customer, context.settings)
    print(f"Outstanding: MVR {outstanding:.2f}")
    print(f"Credit limit: MVR {limit:.2f} (remaining MVR {limit - outstanding:.2f})")
    print(f"Credit blocked: {'yes' if customer.credit_blocked else 'no'}")
    for statement in manager.overdue_statements(customer.customer_id):
        print(f"Overdue statement {statement.statement_id}: MVR {statement.total_due:.2f} due {statement.due_date}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, PersistenceCommitError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
