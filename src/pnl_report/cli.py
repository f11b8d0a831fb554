"""Command-line entry points for the P&L report.

All orchestration in this module is limited to argparse wiring, translating
arguments into engine calls, and rendering the results as plain text. Keeping
the CLI thin ensures the same parser configuration can be reused by tests,
scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, log, set_console_level
from .constants import Granularity


PERIOD_HEADER = (
    "Period",
    "Purch.Profit",
    "Purch.Loss",
    "Sales Profit",
    "Sales Loss",
    "Total Profit",
    "Total Loss",
    "Revenue",
    "Cost",
    "Orders",
    "Returns",
)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pnl-report",
        description="Periodized Profit & Loss reports from the master workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show debug logging on stderr.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = register_report_commands(subparsers)
    return build_command_table(specs.values())


def register_report_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare the report sub-commands."""
    specs = {
        "report": register_report_command(subparsers),
        "summary": register_summary_command(subparsers),
        "periods": register_periods_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def add_window_arguments(parser: argparse.ArgumentParser) -> None:
    """Attach the ``--granularity`` and ``--reference`` options."""
    parser.add_argument(
        "--granularity",
        choices=[member.value for member in Granularity],
        default=None,
        help="Time bucketing (defaults to DefaultGranularity from config.ini).",
    )
    parser.add_argument(
        "--reference",
        default=None,
        help="ISO-8601 instant the report ends at (defaults to now, UTC).",
    )


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display per-period profit and loss with the summary."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report_command)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display only the report summary."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_command)


def register_periods_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``periods``."""
    name = "periods"
    help_text = "List the time windows a report would use."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_periods_command)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Write the report to a new Excel workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_command)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve and validate the runtime context for CLI operations."""
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


def translate_window_options(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
) -> Tuple[Granularity, Optional[datetime]]:
    """Translate CLI args into a granularity and an optional reference instant."""
    raw_granularity = getattr(args, "granularity", None)
    granularity = (
        Granularity(raw_granularity)
        if raw_granularity is not None
        else context.settings.default_granularity
    )
    reference = data_manager.parse_timestamp(getattr(args, "reference", None))
    return granularity, reference


def format_money(amount: Decimal) -> str:
    """Render a monetary amount with two decimals and thousands separators."""
    return f"{amount:,.2f}"


def format_period_rows(periods: Sequence[core_logic.PeriodResult]) -> List[str]:
    """Render period results as aligned text rows, header first."""
    rows = [PERIOD_HEADER]
    for period in periods:
        rows.append(
            (
                period.label,
                format_money(period.purchase_profit),
                format_money(period.purchase_loss),
                format_money(period.sales_profit),
                format_money(period.sales_loss),
                format_money(period.total_profit),
                format_money(period.total_loss),
                format_money(period.net_revenue),
                format_money(period.net_cost),
                str(period.order_count),
                str(period.return_count),
            )
        )
    widths = [max(len(row[column]) for row in rows) for column in range(len(PERIOD_HEADER))]
    return [
        "  ".join(
            cell.ljust(width) if column == 0 else cell.rjust(width)
            for column, (cell, width) in enumerate(zip(row, widths))
        )
        for row in rows
    ]


def format_summary_lines(summary: core_logic.ReportSummary) -> List[str]:
    """Render the summary as ``label: value`` lines; ratios get two decimals."""
    return [
        f"Purchase profit:     {format_money(summary.total_purchase_profit)}",
        f"Purchase loss:       {format_money(summary.total_purchase_loss)}",
        f"Sales profit:        {format_money(summary.total_sales_profit)}",
        f"Sales loss:          {format_money(summary.total_sales_loss)}",
        f"Total profit:        {format_money(summary.total_profit)}",
        f"Total loss:          {format_money(summary.total_loss)}",
        f"Net profit:          {format_money(summary.net_profit)}",
        f"Revenue:             {format_money(summary.total_revenue)}",
        f"Cost:                {format_money(summary.total_cost)}",
        f"Profit margin:       {summary.profit_margin:.2f}%",
        f"Inventory valuation: {format_money(summary.inventory_valuation)}",
        f"Orders:              {summary.total_orders}",
        f"Returns:             {summary.total_returns}",
        f"Return rate:         {summary.return_rate:.2f}%",
    ]


def run_report_command(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the full report and print periods followed by the summary."""
    granularity, reference = translate_window_options(context, args)
    periods, summary = core_logic.build_report(context, granularity, reference)
    print(f"{context.settings.business_name}: {granularity.value} profit & loss")
    for line in format_period_rows(periods):
        print(line)
    print()
    for line in format_summary_lines(summary):
        print(line)
    return 0


def run_summary_command(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the report and print only its summary."""
    granularity, reference = translate_window_options(context, args)
    _, summary = core_logic.build_report(context, granularity, reference)
    for line in format_summary_lines(summary):
        print(line)
    return 0


def run_periods_command(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the windows for the selected granularity without aggregating."""
    granularity, reference = translate_window_options(context, args)
    windows = core_logic.generate_windows(granularity, core_logic.resolve_reference(reference))
    for window in windows:
        print(f"{window.label}\t{window.start.isoformat()}\t{window.end.isoformat()}")
    return 0


def run_export_command(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the report and write it to the requested workbook."""
    granularity, reference = translate_window_options(context, args)
    periods, summary = core_logic.build_report(context, granularity, reference)
    destination = data_manager.write_report_workbook(periods, summary, args.output)
    print(f"Report written to {destination}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.ReportError):
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
    set_console_level(logging.DEBUG if getattr(args, "verbose", False) else logging.INFO)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
