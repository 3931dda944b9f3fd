"""Shared pytest fixtures and utilities for Fridge ERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

candidate_str = str(SRC_DIR)
if candidate_str not in sys.path:
    sys.path.insert(0, candidate_str)

from fridge_erp import cli, constants, core_logic, data_manager  # noqa: E402
from fridge_erp.constants import SheetName  # noqa: E402
from fridge_erp.data_manager import (  # noqa: E402
    BundleItem,
    CustomerRow,
    GiftCardRow,
    ProductRow,
    StatementRow,
)
from fridge_erp.gateway import PersistenceGateway  # noqa: E402
from fridge_erp.settlement import SettlementCoordinator  # noqa: E402
from fridge_erp.credit import CreditAccountManager  # noqa: E402
from fridge_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2024, 11, 20, 9, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n"
    "{extra}"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Fridge",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        extra: str = "",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                extra=extra,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(master_workbook_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings bound to the temp workbook."""

    return data_manager.ConfigSettings(
        data_file=master_workbook_path,
        store_name="Test Fridge",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def gateway(master_workbook_path: Path) -> PersistenceGateway:
    """Return a gateway over a fresh workbook (seeded with the default tiers)."""

    workbook = data_manager.open_workbook(master_workbook_path)
    return PersistenceGateway(workbook, master_workbook_path)


@pytest.fixture
def products() -> dict[str, ProductRow]:
    """Catalog used across the service tests.

    ``X`` is two units of ``A``; ``Y`` is one ``A`` plus one ``B``.
    """

    catalog = [
        ProductRow("A", "Apple Juice", Decimal("5.00"), 10),
        ProductRow("B", "Butter", Decimal("12.50"), 4),
        ProductRow("X", "Juice Pair", Decimal("9.00"), 0, True, (BundleItem("A", 2),)),
        ProductRow("Y", "Breakfast Box", Decimal("16.00"), 0, True, (BundleItem("A", 1), BundleItem("B", 1))),
    ]
    return {product.product_id: product for product in catalog}


@pytest.fixture
def customers() -> dict[str, CustomerRow]:
    catalog = [
        CustomerRow("C1", "Aisha", email="aisha@example.com"),
        CustomerRow("C2", "Ben", credit_blocked=True),
        CustomerRow("C3", "Hawwa", loyalty_points=480, loyalty_tier_id="bronze",
                    maximum_credit_limit=Decimal("1000.00")),
    ]
    return {customer.customer_id: customer for customer in catalog}


@pytest.fixture
def cards() -> dict[str, GiftCardRow]:
    catalog = [
        GiftCardRow("GC-50", "C1", Decimal("50.00"), Decimal("50.00"), True, "2024-01-01T00:00:00+00:00"),
        GiftCardRow("GC-OLD", "C1", Decimal("20.00"), Decimal("20.00"), True,
                    "2023-01-01T00:00:00+00:00", expiry_date="2023-12-31"),
        GiftCardRow("GC-EMPTY", None, Decimal("10.00"), Decimal("0.00"), False, "2024-01-01T00:00:00+00:00"),
    ]
    return {card.card_id: card for card in catalog}


@pytest.fixture
def seeded_gateway(
    gateway: PersistenceGateway,
    products: dict[str, ProductRow],
    customers: dict[str, CustomerRow],
    cards: dict[str, GiftCardRow],
) -> PersistenceGateway:
    """Gateway whose workbook holds the shared catalog, customers and cards."""

    gateway.bulk_put(SheetName.PRODUCTS, products.values())
    gateway.bulk_put(SheetName.CUSTOMERS, customers.values())
    gateway.bulk_put(SheetName.GIFT_CARDS, cards.values())
    return gateway


@pytest.fixture
def coordinator(seeded_gateway: PersistenceGateway, settings: data_manager.ConfigSettings) -> SettlementCoordinator:
    return SettlementCoordinator(seeded_gateway, settings)


@pytest.fixture
def credit_manager(seeded_gateway: PersistenceGateway, settings: data_manager.ConfigSettings) -> CreditAccountManager:
    return CreditAccountManager(seeded_gateway, settings)


@pytest.fixture
def statement_factory() -> Callable[..., StatementRow]:
    """Build statements with a one-month period ending on ``period_end``."""

    counter = {"n": 0}

    def _make(
        customer_id: str = "C1",
        *,
        period_end: str,
        due_date: str,
        status: constants.StatementStatus = constants.StatementStatus.DUE,
        overdue: constants.OverdueStatus = constants.OverdueStatus.NONE,
        payment_date: str | None = None,
        total_due: Decimal = Decimal("100.00"),
        statement_id: str | None = None,
    ) -> StatementRow:
        counter["n"] += 1
        return StatementRow(
            statement_id=statement_id or f"ST-{counter['n']:03d}",
            customer_id=customer_id,
            billing_period_start=period_end[:8] + "01",
            billing_period_end=period_end,
            generated_at=period_end,
            due_date=due_date,
            total_due=total_due,
            status=status,
            overdue_status=overdue,
            payment_date=payment_date,
        )

    return _make


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="fridge-cli", description="Fridge CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime = FIXED_NOW) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
