"""Command-line entry points for the stockledger toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing the results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any other front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import InstallmentStatus, MovementType, PaymentMethod, SaleStatus


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def parse_iso_date(value: str) -> date:
    """argparse ``type`` callable for ``YYYY-MM-DD`` values."""
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD") from exc


def parse_item_spec(value: str) -> core_logic.SaleItemCommand:
    """argparse ``type`` callable for ``PRODUCT_ID:QUANTITY:UNIT_PRICE`` values."""
    parts = value.split(":")
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"Invalid item '{value}', expected PRODUCT_ID:QUANTITY:UNIT_PRICE")
    try:
        product_id, quantity, unit_price = (int(part) for part in parts)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid item '{value}', all parts must be integers") from exc
    return core_logic.SaleItemCommand(product_id=product_id, quantity=quantity, unit_price=unit_price)


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stockledger-cli",
        description="Command-line tools for the stockledger inventory and installment store.",
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
    """Declare mutating CLI commands such as sales and settlements."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "sale": register_sale_command(subparsers),
        "adjust-stock": register_adjust_stock_command(subparsers),
        "pay-installment": register_pay_installment_command(subparsers),
        "update-sale": register_update_sale_command(subparsers),
        "remove-sale": register_remove_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "sales": register_sales_command(subparsers),
        "show-sale": register_show_sale_command(subparsers),
        "summary": register_summary_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_product_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--sale-price", type=int, required=True, help="Price in minor units.")
    parser.add_argument("--initial-stock", type=int, default=0)
    parser.add_argument("--minimum-stock", type=int, default=0)
    parser.add_argument("--cost-price", type=int, default=None)
    parser.add_argument("--barcode", default=None)
    parser.add_argument("--reference", default=None)
    parser.add_argument("--description", default=None)
    parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive.")


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product with its opening stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit a product and overwrite its opening stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        _add_product_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--document", default=None)
        parser.add_argument("--email", default=None)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale with its installment schedule."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item_spec,
            required=True,
            metavar="PRODUCT_ID:QUANTITY:UNIT_PRICE",
            help="Line item; repeat for several items.",
        )
        parser.add_argument("--customer-id", type=int, default=None)
        parser.add_argument("--discount", type=int, default=0)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=None,
            help="Defaults to [Defaults] PaymentMethod from config.ini.",
        )
        parser.add_argument("--installments", type=int, default=1)
        parser.add_argument("--first-due-date", type=parse_iso_date, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_adjust_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-stock``."""
    name = "adjust-stock"
    help_text = "Append a manual adjustment or return to the stock ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--unit-value", type=int, default=0)
        parser.add_argument(
            "--kind",
            choices=[MovementType.ADJUSTMENT.value, MovementType.RETURN.value],
            default=MovementType.ADJUSTMENT.value,
        )
        parser.add_argument("--outbound", action="store_true", help="Remove units instead of adding them.")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_stock)


def register_pay_installment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-installment``."""
    name = "pay-installment"
    help_text = "Settle or reopen a single installment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--installment-id", type=int, required=True)
        parser.add_argument(
            "--status",
            choices=[status.value for status in core_logic.SETTLEMENT_STATUSES],
            default=InstallmentStatus.COMPLETED.value,
        )
        parser.add_argument("--payment-date", type=parse_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_installment)


def register_update_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-sale``."""
    name = "update-sale"
    help_text = "Complete, cancel, re-date, or annotate a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", type=int, required=True)
        parser.add_argument(
            "--status",
            choices=[status.value for status in core_logic.SALE_UPDATE_STATUSES],
            default=None,
        )
        parser.add_argument("--first-due-date", type=parse_iso_date, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_sale)


def register_remove_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-sale``."""
    name = "remove-sale"
    help_text = "Remove a sale and return its items to stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_sale)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--low-stock", action="store_true", help="Only products at or below minimum stock.")
        parser.add_argument("--include-inactive", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List sales, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_show_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show-sale``."""
    name = "show-sale"
    help_text = "Display a sale with its items and installments."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show_sale)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display the dashboard summary for a day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", dest="day", type=parse_iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export products, sales, installments and the ledger to an .xlsx file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    try:
        core_logic.ensure_schema_version(context)
    except RuntimeError:
        core_logic.close_context(context)
        raise
    return context


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


def translate_product(args: argparse.Namespace) -> core_logic.ProductCommand:
    """Translate CLI args into a product command object."""
    return core_logic.ProductCommand(
        name=args.name,
        sale_price=args.sale_price,
        initial_stock=args.initial_stock,
        minimum_stock=args.minimum_stock,
        cost_price=args.cost_price,
        barcode=args.barcode,
        reference=args.reference,
        description=args.description,
        active=not getattr(args, "inactive", False),
    )


def translate_customer(args: argparse.Namespace) -> core_logic.CustomerCommand:
    """Translate CLI args into a customer command object."""
    return core_logic.CustomerCommand(
        name=args.name,
        document=args.document,
        email=args.email,
        phone=args.phone,
        notes=args.notes,
    )


def translate_sale(args: argparse.Namespace, default_payment: PaymentMethod) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    payment = PaymentMethod(args.payment_method) if args.payment_method else default_payment
    return core_logic.SaleCommand(
        items=tuple(args.items),
        payment_method=payment,
        customer_id=args.customer_id,
        discount=args.discount,
        installment_count=args.installments,
        first_due_date=args.first_due_date,
        notes=args.notes,
    )


def translate_adjust_stock(args: argparse.Namespace) -> core_logic.StockMovementCommand:
    """Translate CLI args into a stock movement command object."""
    return core_logic.StockMovementCommand(
        product_id=args.product_id,
        movement_type=MovementType(args.kind),
        quantity=args.quantity,
        unit_value=args.unit_value,
        notes=args.notes,
        outbound=args.outbound,
    )


def translate_pay_installment(args: argparse.Namespace) -> core_logic.InstallmentStatusCommand:
    """Translate CLI args into an installment status command object."""
    return core_logic.InstallmentStatusCommand(
        installment_id=args.installment_id,
        status=InstallmentStatus(args.status),
        payment_date=args.payment_date,
    )


def translate_update_sale(args: argparse.Namespace) -> core_logic.SaleUpdateCommand:
    """Translate CLI args into a sale update command object."""
    return core_logic.SaleUpdateCommand(
        sale_id=args.sale_id,
        status=SaleStatus(args.status) if args.status else None,
        notes=args.notes,
        first_due_date=args.first_due_date,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_product(args))
    print(f"Added product {product.product_id}: {product.name}")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    product = core_logic.update_product(context, args.product_id, translate_product(args))
    print(f"Updated product {product.product_id}: {product.name}")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.add_customer(context, translate_customer(args))
    print(f"Added customer {customer.customer_id}: {customer.name}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    command = translate_sale(args, context.settings.default_payment_method)
    sale = core_logic.create_sale(context, command)
    print(f"Recorded sale {sale.sale_id}: total {sale.total} in {sale.installments} installment(s)")
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock adjustment workflow via the BLL."""
    movement = core_logic.append_stock_movement(context, translate_adjust_stock(args))
    print(f"Recorded {movement.movement_type.value} {movement.movement_id}: quantity {movement.quantity}")
    return 0


def run_pay_installment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the installment settlement workflow via the BLL."""
    core_logic.set_installment_status(context, translate_pay_installment(args))
    print(f"Installment {args.installment_id} set to {args.status}")
    return 0


def run_update_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale update workflow via the BLL."""
    sale = core_logic.update_sale(context, translate_update_sale(args))
    print(f"Sale {sale.sale_id} is {sale.status.value}")
    return 0


def run_remove_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale removal workflow via the BLL."""
    core_logic.remove_sale(context, args.sale_id)
    print(f"Removed sale {args.sale_id}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    inventory = core_logic.calculate_inventory(context)
    products = core_logic.list_products(
        context,
        include_inactive=getattr(args, "include_inactive", False),
        low_stock=getattr(args, "low_stock", False),
    )
    for product in products:
        print(f"{product.product_id}\t{product.name}\t{inventory.get(product.product_id, 0)}\t(min {product.minimum_stock})")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales listing workflow."""
    for sale in core_logic.list_sales(context):
        print(f"{sale.sale_id}\t{sale.sale_date:%Y-%m-%d}\t{sale.total}\t{sale.payment_method.value}\t{sale.status.value}")
    return 0


def run_show_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale detail workflow."""
    detail = core_logic.get_sale(context, args.sale_id)
    sale = detail.sale
    print(f"Sale {sale.sale_id} ({sale.status.value}) subtotal {sale.subtotal} discount {sale.discount} total {sale.total}")
    for item in detail.items:
        print(f"  item product {item.product_id}: {item.quantity} x {item.unit_price} = {item.subtotal}")
    for installment in detail.installments:
        print(
            f"  installment #{installment.number} [{installment.installment_id}] "
            f"{installment.amount} due {installment.due_date.isoformat()} {installment.status.value}"
        )
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard summary workflow."""
    summary = core_logic.dashboard_summary(context, getattr(args, "day", None))
    print(f"{context.settings.store_name}: summary for {summary.day.isoformat()}")
    print(f"  products:  {summary.total_products}")
    print(f"  customers: {summary.total_customers}")
    print(f"  sales:     {summary.sales_today}")
    print(f"  revenue:   {summary.revenue_today}")
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the workbook export workflow."""
    destination = core_logic.export_workbook(context, args.output)
    print(f"Exported workbook to {destination}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.LedgerError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    context: Optional[core_logic.RuntimeContext] = None
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        if context is not None:
            core_logic.close_context(context)
