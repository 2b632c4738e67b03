"""Command-line entry points for the pharmacy ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the objects consumed by the business layer, and
printing plain rows. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import ANALYTICS_WINDOWS, SaleType
from .errors import InsufficientStock, NotFound, PartialFailure, ValidationError
from .stores import ProductDraft


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pharmacy-cli",
        description="Command-line tools for the Pharmacy ledger workbook.",
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
    """Declare mutating CLI commands such as product edits and sales."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "sale": register_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "products": register_products_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "sales": register_sales_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "analytics": register_analytics_command(subparsers),
        "top-sellers": register_top_sellers_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_product_field_arguments(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--name", required=required)
    parser.add_argument("--category", required=required)
    parser.add_argument("--stock", type=int, required=required)
    parser.add_argument("--retail-price", required=required)
    parser.add_argument("--wholesale-price", default=None)
    parser.add_argument("--batch-number", default=None)
    parser.add_argument("--expiry-date", default=None)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_field_arguments(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, writes=True)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Change one or more fields of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        _add_product_field_arguments(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product, writes=True)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalog (its sales are kept)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product, writes=True)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale and decrement stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument(
            "--sale-type",
            choices=[member.value for member in SaleType],
            default=SaleType.RETAIL.value,
        )
        parser.add_argument("--customer-name", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, writes=True)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List catalog products, optionally filtered by name or category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default=None, help="Case-insensitive text to match in name or category")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "List products at or below the low-stock threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--threshold", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List recorded sales, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--today", action="store_true", help="Only sales made today.")
        parser.add_argument("--start", type=parse_datetime, default=None, help="ISO-8601 range start.")
        parser.add_argument("--end", type=parse_datetime, default=None, help="ISO-8601 range end.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display today's headline metrics."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard_report)


def register_analytics_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``analytics``."""
    name = "analytics"
    help_text = "Display revenue totals for a trailing window."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--days",
            type=int,
            default=None,
            help=f"Window length in days (usual choices: {', '.join(map(str, ANALYTICS_WINDOWS))}).",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_analytics_report)


def register_top_sellers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``top-sellers``."""
    name = "top-sellers"
    help_text = "Display the best-selling products by units sold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_top_sellers_report)


def parse_datetime(value: str) -> datetime:
    """argparse ``type`` for ISO-8601 timestamps."""
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid ISO-8601 timestamp: {value}") from exc


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
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


def translate_add_product(args: argparse.Namespace) -> ProductDraft:
    """Translate CLI args into a product draft."""
    return ProductDraft(
        name=args.name,
        category=args.category,
        stock=args.stock,
        retail_price=args.retail_price,
        wholesale_price=args.wholesale_price,
        batch_number=args.batch_number,
        expiry_date=args.expiry_date,
    )


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Collect only the product fields the caller actually passed."""
    candidates = {
        "name": args.name,
        "category": args.category,
        "stock": args.stock,
        "retail_price": args.retail_price,
        "wholesale_price": args.wholesale_price,
        "batch_number": args.batch_number,
        "expiry_date": args.expiry_date,
    }
    return {field: value for field, value in candidates.items() if value is not None}


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        sale_type=SaleType(args.sale_type),
        customer_name=args.customer_name,
        notes=args.notes,
    )


def format_product(product: Any) -> str:
    wholesale = product.wholesale_price if product.wholesale_price is not None else "-"
    return (
        f"{product.product_id}\t{product.name}\t{product.category}\t"
        f"stock={product.stock}\tretail={product.retail_price}\twholesale={wholesale}"
    )


def format_sale(sale: Any) -> str:
    return (
        f"{sale.sale_id}\t{sale.created_at.isoformat()}\t{sale.product_name}\t"
        f"{sale.sale_type}\tqty={sale.quantity}\tunit={sale.unit_price}\ttotal={sale.total_amount}"
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.create_product(context, translate_add_product(args))
    print(product.product_id)
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    fields = translate_update_product(args)
    if not fields:
        raise ValidationError("No product fields supplied")
    product = core_logic.update_product(context, args.product_id, fields)
    print(format_product(product))
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    core_logic.delete_product(context, args.product_id)
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.record_sale(context, translate_sale(args))
    print(format_sale(sale))
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.search:
        products = core_logic.search_products(context, args.search)
    else:
        products = core_logic.list_products(context)
    for product in products:
        print(format_product(product))
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.low_stock_products(context, args.threshold):
        print(format_product(product))
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List sales for today, an explicit range, or everything."""
    if args.today:
        sales = core_logic.list_todays_sales(context)
    elif args.start is not None or args.end is not None:
        if args.start is None or args.end is None:
            raise ValidationError("Both --start and --end are required for a range")
        sales = core_logic.list_sales_in_range(context, args.start, args.end)
    else:
        sales = core_logic.list_sales(context)
    for sale in sales:
        print(format_sale(sale))
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    metrics = core_logic.dashboard_metrics(context)
    print(f"total_products\t{metrics.total_products}")
    print(f"todays_revenue\t{metrics.todays_revenue}")
    print(f"todays_sales_count\t{metrics.todays_sales_count}")
    print(f"low_stock_count\t{metrics.low_stock_count}")
    return 0


def run_analytics_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.sales_analytics(context, args.days)
    print(f"window_days\t{result.window_days}")
    print(f"total_revenue\t{result.total_revenue}")
    print(f"total_sales\t{result.total_sales}")
    print(f"average_daily_revenue\t{result.average_daily_revenue.quantize(Decimal('0.01'))}")
    return 0


def run_top_sellers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for entry in core_logic.top_selling_products(context, args.limit):
        print(f"{entry.product_name}\tqty={entry.total_quantity}\trevenue={entry.total_revenue}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, PartialFailure):
        log.error("%s (sale id: %s)", error, error.sale_id)
        return 5
    if isinstance(error, NotFound):
        log.error("%s", error)
        return 4
    if isinstance(error, (ValidationError, InsufficientStock)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
