"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date
from pathlib import Path
from unittest.mock import Mock

import pytest

from stockledger import cli, constants, core_logic


WRITE_COMMANDS = {
    "add-product",
    "update-product",
    "add-customer",
    "sale",
    "adjust-stock",
    "pay-installment",
    "update-sale",
    "remove-sale",
}

READ_COMMANDS = {
    "stock",
    "sales",
    "show-sale",
    "summary",
    "export",
}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _parse(*argv: str) -> argparse.Namespace:
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(list(argv))


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "stockledger-cli"
    assert "stockledger" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire both mutating and reporting commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    for name, spec in specs.items():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.name == name
        assert spec.help_text
        assert name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)

    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def test_parse_item_spec_builds_sale_item():
    item = cli.parse_item_spec("3:2:1500")
    assert item == core_logic.SaleItemCommand(product_id=3, quantity=2, unit_price=1500)
    assert item.subtotal == 3000


@pytest.mark.parametrize("value", ["3:2", "a:2:100", "1:2:3:4", ""])
def test_parse_item_spec_rejects_malformed_values(value):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_item_spec(value)


def test_parse_iso_date():
    assert cli.parse_iso_date("2025-02-28") == date(2025, 2, 28)
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_iso_date("28/02/2025")


def test_sale_parser_collects_repeated_items():
    args = _parse(
        "sale",
        "--item",
        "1:2:1000",
        "--item",
        "2:1:500",
        "--installments",
        "3",
        "--first-due-date",
        "2025-01-31",
    )

    assert args.command == "sale"
    assert [item.product_id for item in args.items] == [1, 2]
    assert args.installments == 3
    assert args.first_due_date == date(2025, 1, 31)
    assert args.payment_method is None


def test_sale_parser_requires_an_item():
    with pytest.raises(SystemExit):
        _parse("sale")


def test_pay_installment_parser_limits_statuses():
    assert _parse("pay-installment", "--installment-id", "4").status == "completed"
    with pytest.raises(SystemExit):
        _parse("pay-installment", "--installment-id", "4", "--status", "cancelled")


def test_update_sale_parser_refuses_pending_target():
    with pytest.raises(SystemExit):
        _parse("update-sale", "--sale-id", "1", "--status", "pending")


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_product_maps_flags():
    args = _parse("add-product", "--name", "Widget", "--sale-price", "1000", "--initial-stock", "4", "--inactive")

    command = cli.translate_product(args)

    assert command == core_logic.ProductCommand(
        name="Widget",
        sale_price=1000,
        initial_stock=4,
        minimum_stock=0,
        active=False,
    )


def test_translate_sale_falls_back_to_configured_payment_method():
    args = _parse("sale", "--item", "1:1:100", "--discount", "10")

    command = cli.translate_sale(args, constants.PaymentMethod.PIX)

    assert command.payment_method is constants.PaymentMethod.PIX
    assert command.discount == 10
    assert command.installment_count == 1
    assert command.sale_date is None


def test_translate_sale_prefers_explicit_payment_method():
    args = _parse("sale", "--item", "1:1:100", "--payment-method", "installment", "--installments", "2")

    command = cli.translate_sale(args, constants.PaymentMethod.CASH)

    assert command.payment_method is constants.PaymentMethod.INSTALLMENT
    assert command.installment_count == 2


def test_translate_adjust_stock_sets_direction():
    args = _parse("adjust-stock", "--product-id", "7", "--quantity", "2", "--outbound")

    command = cli.translate_adjust_stock(args)

    assert command.movement_type is constants.MovementType.ADJUSTMENT
    assert command.outbound is True
    assert core_logic.signed_quantity(command) == -2


def test_translate_pay_installment_and_update_sale():
    pay = cli.translate_pay_installment(
        _parse("pay-installment", "--installment-id", "9", "--status", "pending")
    )
    update = cli.translate_update_sale(
        _parse("update-sale", "--sale-id", "5", "--status", "cancelled", "--notes", "customer gave up")
    )

    assert pay.status is constants.InstallmentStatus.PENDING
    assert pay.payment_date is None
    assert update.status is constants.SaleStatus.CANCELLED
    assert update.notes == "customer gave up"
    assert update.first_due_date is None


# ---------------------------------------------------------------------------
# Dispatch and error handling
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor():
    execute = Mock(return_value=0)
    spec = cli.CommandSpec("stock", "help", lambda subparsers: None, execute)
    context = Mock(name="context")
    args = argparse.Namespace(command="stock")

    assert cli.dispatch_command(context, args, {"stock": spec}) == 0
    execute.assert_called_once_with(context, args)


def test_dispatch_command_unknown_command_raises():
    with pytest.raises(KeyError):
        cli.dispatch_command(Mock(), argparse.Namespace(command="nope"), {})
    with pytest.raises(KeyError):
        cli.dispatch_command(Mock(), argparse.Namespace(), {})


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (core_logic.ValidationError("bad"), 2),
        (core_logic.InsufficientStockError("short"), 2),
        (core_logic.NotFound("missing"), 2),
        (core_logic.OperationFailed("create_sale"), 2),
        (FileNotFoundError("config.ini"), 3),
        (RuntimeError("schema"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, expected):
    assert cli.handle_cli_error(error) == expected


# ---------------------------------------------------------------------------
# main() against a real store
# ---------------------------------------------------------------------------


def test_main_runs_product_and_sale_commands(config_file: Path, capsys):
    config = str(config_file)

    assert cli.main(["--config", config, "add-product", "--name", "Widget", "--sale-price", "1000", "--initial-stock", "5"]) == 0
    assert cli.main(["--config", config, "sale", "--item", "1:2:1000", "--installments", "2"]) == 0
    assert cli.main(["--config", config, "stock"]) == 0
    assert cli.main(["--config", config, "show-sale", "--sale-id", "1"]) == 0

    output = capsys.readouterr().out
    assert "Added product 1: Widget" in output
    assert "Recorded sale 1: total 2000 in 2 installment(s)" in output
    assert "1\tWidget\t3\t(min 0)" in output
    assert "installment #2" in output


def test_main_summary_names_the_store(config_factory, capsys):
    bundle = config_factory(store_name="Corner Shop")

    assert cli.main(["--config", str(bundle.config_path), "summary", "--date", "2025-03-01"]) == 0

    assert "Corner Shop: summary for 2025-03-01" in capsys.readouterr().out


def test_main_reports_oversell_as_ledger_error(config_file: Path):
    config = str(config_file)
    cli.main(["--config", config, "add-product", "--name", "Widget", "--sale-price", "1000", "--initial-stock", "1"])

    assert cli.main(["--config", config, "sale", "--item", "1:5:1000"]) == 2


def test_main_missing_config_returns_three(tmp_path: Path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == 3


def test_main_schema_mismatch_returns_one(config_factory):
    bundle = config_factory(schema_version="0.1.0")
    assert cli.main(["--config", str(bundle.config_path), "stock"]) == 1


def test_main_export_writes_file(config_file: Path, tmp_path: Path, capsys):
    destination = tmp_path / "exports" / "snapshot.xlsx"

    assert cli.main(["--config", str(config_file), "export", "--output", str(destination)]) == 0

    assert destination.exists()
    assert "Exported workbook to" in capsys.readouterr().out
