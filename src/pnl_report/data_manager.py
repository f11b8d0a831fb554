"""Data access layer for the P&L report.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` workbook holding the catalog, orders, returns, and
ledger sheets. Aggregation logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending rows.
4. Report export: writing computed period results to a fresh workbook.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, TYPE_CHECKING

from openpyxl.styles import Font
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import Granularity, SheetName

if TYPE_CHECKING:
    from .core_logic import PeriodResult, ReportSummary


CONFIG_FILE_NAME = "config.ini"
CATALOG_SHEET = SheetName.CATALOG.value
ORDERS_SHEET = SheetName.ORDERS.value
ORDER_LINES_SHEET = SheetName.ORDER_LINES.value
RETURNS_SHEET = SheetName.RETURNS.value
RETURN_LINES_SHEET = SheetName.RETURN_LINES.value
LEDGER_SHEET = SheetName.LEDGER.value

PERIOD_RESULT_COLUMNS: Sequence[str] = (
    "Period",
    "Start",
    "End",
    "PurchaseProfit",
    "PurchaseLoss",
    "SalesProfit",
    "SalesLoss",
    "TotalProfit",
    "TotalLoss",
    "NetRevenue",
    "NetCost",
    "Orders",
    "Returns",
)

SUMMARY_FIELDS: Sequence[tuple[str, str]] = (
    ("TotalPurchaseProfit", "total_purchase_profit"),
    ("TotalPurchaseLoss", "total_purchase_loss"),
    ("TotalSalesProfit", "total_sales_profit"),
    ("TotalSalesLoss", "total_sales_loss"),
    ("TotalProfit", "total_profit"),
    ("TotalLoss", "total_loss"),
    ("NetProfit", "net_profit"),
    ("TotalRevenue", "total_revenue"),
    ("TotalCost", "total_cost"),
    ("ProfitMargin", "profit_margin"),
    ("InventoryValuation", "inventory_valuation"),
    ("TotalOrders", "total_orders"),
    ("TotalReturns", "total_returns"),
    ("ReturnRate", "return_rate"),
)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_granularity: Granularity


@dataclass(frozen=True)
class CatalogItemRow:
    """In-memory view of a row from the ``Catalog`` sheet."""

    item_id: str
    item_name: str
    cost_basis: Optional[Decimal]
    stock_quantity: int


@dataclass(frozen=True)
class OrderLineRow:
    """In-memory view of a row from the ``OrderLines`` sheet."""

    item_id: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class SalesOrderRow:
    """An ``Orders`` row joined with its ``OrderLines`` in sheet order."""

    order_id: str
    created_at: Optional[datetime]
    total_amount: Decimal
    lines: tuple[OrderLineRow, ...] = ()


@dataclass(frozen=True)
class ReturnLineRow:
    """In-memory view of a row from the ``ReturnLines`` sheet."""

    item_id: str
    quantity: int


@dataclass(frozen=True)
class ReturnRow:
    """A ``Returns`` row joined with its ``ReturnLines`` in sheet order."""

    return_id: str
    created_at: Optional[datetime]
    refund_amount: Optional[Decimal]
    lines: tuple[ReturnLineRow, ...] = ()


@dataclass(frozen=True)
class LedgerTransactionRow:
    """In-memory view of a row from the ``Ledger`` sheet."""

    transaction_id: str
    transaction_date: Optional[datetime]
    transaction_type: str
    profit: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function walks
    up from the current working directory toward the filesystem root looking
    for a file named ``CONFIG_FILE_NAME``. The first match that exists on disk
    is considered authoritative.

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

    The ``[System]`` section is mandatory. The ``[Report]`` section is optional
    and only supplies the granularity used when a caller does not pick one;
    it falls back to ``daily``. Relative ``DataFile`` entries are expanded
    against ``base_path`` when provided, or against the current working
    directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If ``DefaultGranularity`` names an unknown granularity.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    granularity_raw = parser.get(
        "Report", "DefaultGranularity", fallback=Granularity.DAILY.value)
    try:
        default_granularity = Granularity(granularity_raw.strip().lower())
    except ValueError as exc:
        log.error("Unknown DefaultGranularity in configuration: %s", granularity_raw)
        raise ValueError(f"Unknown granularity: {granularity_raw}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_granularity=default_granularity,
    )


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
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def _iter_sheet_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    """Yield the raw value tuples of a sheet, skipping the header and blank rows."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def iter_catalog(workbook: Workbook) -> Iterable[CatalogItemRow]:
    """Iterate over catalog records stored on the ``Catalog`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``Catalog`` sheet.

    Yields:
        CatalogItemRow: One structured row for each meaningful record.
    """

    for raw in _iter_sheet_rows(workbook, CATALOG_SHEET):
        yield deserialize_catalog_item(raw)


def iter_orders(workbook: Workbook) -> Iterable[SalesOrderRow]:
    """Stream sales orders joined with their line items.

    The ``OrderLines`` sheet is grouped by ``OrderID`` first, so each order
    carries its lines in the order they appear in the sheet. Lines whose
    order is absent from the ``Orders`` sheet are ignored.

    Args:
        workbook (Workbook): Workbook containing both order sheets.

    Yields:
        SalesOrderRow: Order header with its embedded lines.
    """

    lines: Dict[str, List[OrderLineRow]] = {}
    for raw in _iter_sheet_rows(workbook, ORDER_LINES_SHEET):
        order_id, line = deserialize_order_line(raw)
        lines.setdefault(order_id, []).append(line)

    for raw in _iter_sheet_rows(workbook, ORDERS_SHEET):
        order = deserialize_order(raw)
        yield SalesOrderRow(
            order_id=order.order_id,
            created_at=order.created_at,
            total_amount=order.total_amount,
            lines=tuple(lines.get(order.order_id, ())),
        )


def iter_returns(workbook: Workbook) -> Iterable[ReturnRow]:
    """Stream return records joined with their line items.

    Args:
        workbook (Workbook): Workbook containing both return sheets.

    Yields:
        ReturnRow: Return header with its embedded lines.
    """

    lines: Dict[str, List[ReturnLineRow]] = {}
    for raw in _iter_sheet_rows(workbook, RETURN_LINES_SHEET):
        return_id, line = deserialize_return_line(raw)
        lines.setdefault(return_id, []).append(line)

    for raw in _iter_sheet_rows(workbook, RETURNS_SHEET):
        record = deserialize_return(raw)
        yield ReturnRow(
            return_id=record.return_id,
            created_at=record.created_at,
            refund_amount=record.refund_amount,
            lines=tuple(lines.get(record.return_id, ())),
        )


def iter_ledger(workbook: Workbook) -> Iterable[LedgerTransactionRow]:
    """Stream ledger transactions from the ``Ledger`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ledger sheet.

    Yields:
        LedgerTransactionRow: Normalized ledger entry for each populated row.
    """

    for raw in _iter_sheet_rows(workbook, LEDGER_SHEET):
        yield deserialize_ledger_transaction(raw)


def append_catalog_item(workbook: Workbook, record: CatalogItemRow) -> None:
    """Append a catalog item to the ``Catalog`` worksheet."""

    workbook[CATALOG_SHEET].append(serialize_catalog_item(record))


def append_order(workbook: Workbook, record: SalesOrderRow) -> None:
    """Append an order header and each of its lines to the order sheets.

    Args:
        workbook (Workbook): Workbook whose order sheets should be modified.
        record (SalesOrderRow): Order to persist together with its lines.
    """

    workbook[ORDERS_SHEET].append(serialize_order(record))
    line_sheet = workbook[ORDER_LINES_SHEET]
    for line in record.lines:
        line_sheet.append([record.order_id, line.item_id, line.quantity, line.unit_price])


def append_return(workbook: Workbook, record: ReturnRow) -> None:
    """Append a return header and each of its lines to the return sheets.

    Args:
        workbook (Workbook): Workbook whose return sheets should be modified.
        record (ReturnRow): Return to persist together with its lines.
    """

    workbook[RETURNS_SHEET].append(serialize_return(record))
    line_sheet = workbook[RETURN_LINES_SHEET]
    for line in record.lines:
        line_sheet.append([record.return_id, line.item_id, line.quantity])


def append_ledger_transaction(workbook: Workbook, record: LedgerTransactionRow) -> None:
    """Append a ledger transaction to the ``Ledger`` worksheet."""

    workbook[LEDGER_SHEET].append(serialize_ledger_transaction(record))


def write_report_workbook(
    periods: Sequence[PeriodResult],
    summary: ReportSummary,
    destination: Path,
) -> Path:
    """Export a computed report into a fresh two-sheet workbook.

    The ``PeriodResults`` sheet holds one row per window in report order and
    the ``Summary`` sheet holds one ``Metric``/``Value`` pair per summary
    field. Window boundaries are written as ISO-8601 strings because Excel
    cells cannot carry timezone information.

    Args:
        periods (Sequence[PeriodResult]): Per-window results, oldest first.
        summary (ReportSummary): Rolled-up totals for the same report.
        destination (Path): Target path for the exported workbook.

    Returns:
        Path: Resolved location of the written workbook.
    """

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    periods_sheet = workbook.create_sheet(title=SheetName.PERIOD_RESULTS.value)
    periods_sheet.append(list(PERIOD_RESULT_COLUMNS))
    for period in periods:
        periods_sheet.append(serialize_period_result(period))

    summary_sheet = workbook.create_sheet(title=SheetName.SUMMARY.value)
    summary_sheet.append(["Metric", "Value"])
    for label, attribute in SUMMARY_FIELDS:
        summary_sheet.append([label, getattr(summary, attribute)])

    for sheet in (periods_sheet, summary_sheet):
        for cell in sheet[1]:
            cell.font = bold_font

    dest = Path(destination).expanduser().resolve()
    save_workbook(workbook, dest)
    log.info("Exported %d periods to '%s'", len(periods), dest)
    return dest


def parse_timestamp(raw: object) -> Optional[datetime]:
    """Normalize a worksheet timestamp cell into an aware ``datetime``.

    Cells may hold native ``datetime`` values (Excel dates) or ISO-8601
    strings. Naive values are interpreted as UTC. Blank cells return ``None``
    so the engine can reject the record explicitly instead of guessing.

    Args:
        raw (object): Raw cell value.

    Returns:
        datetime | None: Timezone-aware timestamp, or ``None`` when blank.

    Raises:
        ValueError: If a non-blank string is not valid ISO-8601.
    """

    if raw is None:
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        text = str(raw).strip()
        if not text:
            return None
        value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_decimal(raw: object, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    return Decimal(str(raw).strip())


def _to_int(raw: object) -> int:
    if raw is None:
        return 0
    return int(Decimal(str(raw).strip()))


def serialize_catalog_item(record: CatalogItemRow) -> list[object]:
    """Convert a catalog dataclass into the worksheet column ordering.

    Returns:
        list[object]: ``[ItemID, ItemName, CostBasis, StockQuantity]``.
    """

    return [record.item_id, record.item_name, record.cost_basis, record.stock_quantity]


def serialize_order(record: SalesOrderRow) -> list[object]:
    """Convert an order header into ``[OrderID, CreatedAt, TotalAmount]``."""

    return [record.order_id, _format_timestamp(record.created_at), record.total_amount]


def serialize_return(record: ReturnRow) -> list[object]:
    """Convert a return header into ``[ReturnID, CreatedAt, RefundAmount]``."""

    return [record.return_id, _format_timestamp(record.created_at), record.refund_amount]


def serialize_ledger_transaction(record: LedgerTransactionRow) -> list[object]:
    """Convert a ledger dataclass into the ``Ledger`` column ordering.

    Returns:
        list[object]: ``[TransactionID, TransactionDate, TransactionType,
        Profit]`` with the date rendered as an ISO-8601 string.
    """

    return [
        record.transaction_id,
        _format_timestamp(record.transaction_date),
        record.transaction_type,
        record.profit,
    ]


def serialize_period_result(record: PeriodResult) -> list[object]:
    """Convert a period result into the ``PeriodResults`` column ordering."""

    return [
        record.label,
        record.start.isoformat(),
        record.end.isoformat(),
        record.purchase_profit,
        record.purchase_loss,
        record.sales_profit,
        record.sales_loss,
        record.total_profit,
        record.total_loss,
        record.net_revenue,
        record.net_cost,
        record.order_count,
        record.return_count,
    ]


def deserialize_catalog_item(raw_row: Sequence[object]) -> CatalogItemRow:
    """Convert a raw worksheet row into a strongly typed catalog record.

    A blank ``CostBasis`` cell stays ``None`` (unset cost basis) rather than
    being coerced to zero here; the cost lookup applies that policy. A blank
    ``StockQuantity`` is read as zero.

    Args:
        raw_row (Sequence[object]): Raw cell values from the worksheet row.

    Returns:
        CatalogItemRow: Dataclass containing normalized values.
    """

    item_id, item_name, cost_raw, stock_raw = raw_row[:4]
    return CatalogItemRow(
        item_id=str(item_id),
        item_name=str(item_name) if item_name is not None else "",
        cost_basis=_to_decimal(cost_raw),
        stock_quantity=_to_int(stock_raw),
    )


def deserialize_order(raw_row: Sequence[object]) -> SalesOrderRow:
    """Convert a raw ``Orders`` row into a header-only :class:`SalesOrderRow`."""

    order_id, created_raw, total_raw = raw_row[:3]
    return SalesOrderRow(
        order_id=str(order_id),
        created_at=parse_timestamp(created_raw),
        total_amount=_to_decimal(total_raw, Decimal("0.00")),
    )


def deserialize_order_line(raw_row: Sequence[object]) -> tuple[str, OrderLineRow]:
    """Convert a raw ``OrderLines`` row into ``(order_id, OrderLineRow)``."""

    order_id, item_id, quantity_raw, unit_price_raw = raw_row[:4]
    return str(order_id), OrderLineRow(
        item_id=str(item_id),
        quantity=_to_int(quantity_raw),
        unit_price=_to_decimal(unit_price_raw, Decimal("0.00")),
    )


def deserialize_return(raw_row: Sequence[object]) -> ReturnRow:
    """Convert a raw ``Returns`` row into a header-only :class:`ReturnRow`.

    A blank ``RefundAmount`` is kept as ``None``; the engine treats it as a
    zero refund.
    """

    return_id, created_raw, refund_raw = raw_row[:3]
    return ReturnRow(
        return_id=str(return_id),
        created_at=parse_timestamp(created_raw),
        refund_amount=_to_decimal(refund_raw),
    )


def deserialize_return_line(raw_row: Sequence[object]) -> tuple[str, ReturnLineRow]:
    """Convert a raw ``ReturnLines`` row into ``(return_id, ReturnLineRow)``."""

    return_id, item_id, quantity_raw = raw_row[:3]
    return str(return_id), ReturnLineRow(item_id=str(item_id), quantity=_to_int(quantity_raw))


def deserialize_ledger_transaction(raw_row: Sequence[object]) -> LedgerTransactionRow:
    """Convert a raw worksheet row into a strongly typed ledger record.

    The transaction type is normalized to lowercase so that ``Purchase`` and
    ``purchase`` compare equal to :class:`TransactionCategory` values.

    Args:
        raw_row (Sequence[object]): Raw cell values in worksheet order.

    Returns:
        LedgerTransactionRow: Dataclass reflecting the row contents.
    """

    transaction_id, date_raw, type_raw, profit_raw = raw_row[:4]
    return LedgerTransactionRow(
        transaction_id=str(transaction_id),
        transaction_date=parse_timestamp(date_raw),
        transaction_type=str(type_raw).strip().lower() if type_raw is not None else "",
        profit=_to_decimal(profit_raw, Decimal("0.00")),
    )
