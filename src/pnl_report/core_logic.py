"""Aggregation engine for the periodized Profit & Loss report.

This module buckets catalog-priced orders, returns, and purchase ledger
entries into aligned time windows and rolls the per-window figures into a
summary. The engine itself (:func:`run_report` and the helpers it composes)
is a pure computation over already-materialized collections; the runtime
context helpers at the bottom of the module feed it from the Data Access
Layer (DAL).
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from dateutil.relativedelta import relativedelta
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    LABEL_FORMATS,
    MONEY_QUANTUM,
    WINDOW_COUNTS,
    Granularity,
    TransactionCategory,
)


ZERO = Decimal("0")
HUNDRED = Decimal("100")


class ReportError(Exception):
    """Raised when the report inputs break a contract the engine relies on."""


class MissingTimestampError(ReportError):
    """Raised when an order, return, or ledger entry carries no instant."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the engine."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, List[Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)`` used as the unit of aggregation."""

    start: datetime
    end: datetime
    label: str

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


@dataclass(frozen=True)
class PeriodResult:
    """Profit and loss figures for a single :class:`TimeWindow`.

    Monetary fields are rounded to cents. ``total_profit`` and ``total_loss``
    are the exact sums of the rounded purchase and sales components.
    """

    label: str
    start: datetime
    end: datetime
    purchase_profit: Decimal
    purchase_loss: Decimal
    sales_profit: Decimal
    sales_loss: Decimal
    total_profit: Decimal
    total_loss: Decimal
    net_revenue: Decimal
    net_cost: Decimal
    order_count: int
    return_count: int


@dataclass(frozen=True)
class ReportSummary:
    """Headline totals derived from every period of a report run."""

    total_purchase_profit: Decimal
    total_purchase_loss: Decimal
    total_sales_profit: Decimal
    total_sales_loss: Decimal
    total_profit: Decimal
    total_loss: Decimal
    net_profit: Decimal
    total_revenue: Decimal
    total_cost: Decimal
    profit_margin: Decimal
    inventory_valuation: Decimal
    total_orders: int
    total_returns: int
    return_rate: Decimal


class CostBasisIndex:
    """Read-only lookup from item identifier to unit cost basis.

    The index is built once per report run from the catalog snapshot and is
    never mutated afterwards, so every window can share it.
    """

    __slots__ = ("_costs",)

    def __init__(self, costs: Mapping[str, Decimal]) -> None:
        self._costs: Dict[str, Decimal] = dict(costs)

    @classmethod
    def build(cls, catalog: Iterable[data_manager.CatalogItemRow]) -> "CostBasisIndex":
        """Index the catalog by ``item_id``.

        Items whose cost basis is unset are left out, so they resolve to zero
        like unknown identifiers. When an identifier repeats, the last row
        wins.
        """
        costs = {
            item.item_id: item.cost_basis
            for item in catalog
            if item.cost_basis is not None
        }
        log.debug("Built cost basis index with %d priced items", len(costs))
        return cls(costs)

    def cost_of(self, item_id: str) -> Decimal:
        """Return the unit cost of ``item_id``, or zero when it is unknown."""
        return self._costs.get(item_id, ZERO)

    def __len__(self) -> int:
        return len(self._costs)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._costs


def coerce_granularity(value: Union[Granularity, str]) -> Granularity:
    """Resolve a granularity selector, failing fast on unknown values.

    Args:
        value (Granularity | str): Enum member or its string value such as
            ``"monthly"``.

    Returns:
        Granularity: Matching enum member.

    Raises:
        ValueError: If ``value`` does not name one of the four granularities.
    """
    if isinstance(value, Granularity):
        return value
    try:
        return Granularity(str(value).strip().lower())
    except ValueError as exc:
        log.error("Unknown granularity requested: %r", value)
        raise ValueError(f"Unknown granularity: {value!r}") from exc


def _window_step(granularity: Granularity) -> relativedelta:
    if granularity is Granularity.HOURLY:
        return relativedelta(hours=1)
    if granularity is Granularity.DAILY:
        return relativedelta(days=1)
    if granularity is Granularity.MONTHLY:
        return relativedelta(months=1)
    return relativedelta(years=1)


def _window_anchor(granularity: Granularity, reference: datetime) -> datetime:
    """Return the start of the unit that contains ``reference``."""
    anchor = reference.replace(minute=0, second=0, microsecond=0)
    if granularity is Granularity.HOURLY:
        return anchor
    anchor = anchor.replace(hour=0)
    if granularity is Granularity.DAILY:
        return anchor
    anchor = anchor.replace(day=1)
    if granularity is Granularity.MONTHLY:
        return anchor
    return anchor.replace(month=1)


def generate_windows(granularity: Union[Granularity, str], reference: datetime) -> List[TimeWindow]:
    """Produce the trailing sequence of report windows ending at ``reference``.

    The newest window is the hour, day, month, or year containing
    ``reference``; older windows precede it with no gaps. Each window's end
    is its start plus one calendar unit (via :class:`relativedelta`), so
    month and year windows follow real month lengths and leap years. Hourly
    windows on a zone-aware reference are stepped in UTC, so each spans one
    real hour even across a daylight-saving change.

    Args:
        granularity (Granularity | str): Bucketing resolution. Hourly yields
            24 windows, daily 30, monthly 12, and yearly 5.
        reference (datetime): Instant the report is anchored to. Window
            boundaries inherit its ``tzinfo``.

    Returns:
        list[TimeWindow]: Windows ordered oldest first, each labelled with
            the granularity's display format.

    Raises:
        ValueError: If ``granularity`` is not recognised.
    """
    granularity = coerce_granularity(granularity)
    count = WINDOW_COUNTS[granularity]
    step = _window_step(granularity)
    label_format = LABEL_FORMATS[granularity]
    anchor = _window_anchor(granularity, reference)

    if granularity is Granularity.HOURLY and anchor.tzinfo is not None:
        # Hours are stepped on the UTC timeline, then shown in the reference zone.
        zone = anchor.tzinfo
        utc_anchor = anchor.astimezone(UTC)
        bounds = [
            ((utc_anchor - step * offset).astimezone(zone), (utc_anchor - step * (offset - 1)).astimezone(zone))
            for offset in range(count - 1, -1, -1)
        ]
    else:
        bounds = [
            (anchor - step * offset, anchor - step * offset + step)
            for offset in range(count - 1, -1, -1)
        ]

    labels = [start.strftime(label_format) for start, _ in bounds]
    repeated = {label for label, seen in Counter(labels).items() if seen > 1}
    windows: List[TimeWindow] = []
    for (start, end), label in zip(bounds, labels):
        if label in repeated:
            # A wall-clock hour that occurs twice (DST fall-back) is told apart by its zone name.
            label = start.strftime(f"{label_format} %Z")
        windows.append(TimeWindow(start=start, end=end, label=label))
    log.debug(
        "Generated %d %s windows from %s to %s",
        len(windows),
        granularity.value,
        windows[0].start.isoformat(),
        windows[-1].end.isoformat(),
    )
    return windows


def quantize_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents using half-up rounding."""
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def split_signed(amount: Decimal) -> Tuple[Decimal, Decimal]:
    """Split a signed amount into a ``(profit, loss)`` pair.

    Positive amounts become profit, negative amounts become a loss of their
    absolute value, and zero yields neither, so at most one side is nonzero.
    """
    if amount > ZERO:
        return amount, ZERO
    if amount < ZERO:
        return ZERO, -amount
    return ZERO, ZERO


def aggregate_period(
    window: TimeWindow,
    orders: Sequence[data_manager.SalesOrderRow],
    returns: Sequence[data_manager.ReturnRow],
    ledger: Sequence[data_manager.LedgerTransactionRow],
    index: CostBasisIndex,
) -> PeriodResult:
    """Compute the profit and loss figures for a single window.

    Each source is filtered by its own instant against the half-open window.
    The purchase side passes through the signed profit recorded on
    ``purchase`` ledger entries, accumulating gains and losses separately.
    The sales side nets refunds against order revenue and returned goods
    against cost of goods sold before splitting the remaining difference
    into profit or loss. Rounding happens once,
    when the result is assembled.

    Args:
        window (TimeWindow): Interval to aggregate.
        orders (Sequence[data_manager.SalesOrderRow]): All orders of the run.
        returns (Sequence[data_manager.ReturnRow]): All returns of the run.
        ledger (Sequence[data_manager.LedgerTransactionRow]): All ledger
            transactions of the run; only purchases are considered.
        index (CostBasisIndex): Shared cost lookup for order and return lines.

    Returns:
        PeriodResult: Rounded figures for ``window``.
    """
    period_orders = [order for order in orders if window.contains(order.created_at)]
    period_returns = [record for record in returns if window.contains(record.created_at)]
    period_purchases = [
        entry
        for entry in ledger
        if entry.transaction_type == TransactionCategory.PURCHASE.value
        and window.contains(entry.transaction_date)
    ]

    purchase_profit = ZERO
    purchase_loss = ZERO
    for entry in period_purchases:
        gain, loss = split_signed(entry.profit)
        purchase_profit += gain
        purchase_loss += loss

    gross_revenue = sum((order.total_amount for order in period_orders), ZERO)
    gross_cost = sum(
        (index.cost_of(line.item_id) * line.quantity for order in period_orders for line in order.lines),
        ZERO,
    )

    refund_total = sum(
        (record.refund_amount for record in period_returns if record.refund_amount is not None),
        ZERO,
    )
    returned_cost = sum(
        (index.cost_of(line.item_id) * line.quantity for record in period_returns for line in record.lines),
        ZERO,
    )

    net_revenue = gross_revenue - refund_total
    net_cost = gross_cost - returned_cost
    sales_profit, sales_loss = split_signed(net_revenue - net_cost)

    purchase_profit = quantize_money(purchase_profit)
    purchase_loss = quantize_money(purchase_loss)
    sales_profit = quantize_money(sales_profit)
    sales_loss = quantize_money(sales_loss)

    return PeriodResult(
        label=window.label,
        start=window.start,
        end=window.end,
        purchase_profit=purchase_profit,
        purchase_loss=purchase_loss,
        sales_profit=sales_profit,
        sales_loss=sales_loss,
        total_profit=purchase_profit + sales_profit,
        total_loss=purchase_loss + sales_loss,
        net_revenue=quantize_money(net_revenue),
        net_cost=quantize_money(net_cost),
        order_count=len(period_orders),
        return_count=len(period_returns),
    )


def summarize(
    periods: Sequence[PeriodResult],
    catalog: Iterable[data_manager.CatalogItemRow],
) -> ReportSummary:
    """Reduce per-window results and the catalog into headline totals.

    Totals are sums of the already rounded period fields, so they agree with
    what a caller displays per period. Ratios keep full precision.

    Args:
        periods (Sequence[PeriodResult]): Results of a single report run.
        catalog (Iterable[data_manager.CatalogItemRow]): Catalog snapshot
            used for the inventory valuation.

    Returns:
        ReportSummary: Derived totals. ``profit_margin`` is zero when there
            is no revenue and ``return_rate`` is zero when there are no
            orders.
    """
    total_purchase_profit = sum((p.purchase_profit for p in periods), ZERO)
    total_purchase_loss = sum((p.purchase_loss for p in periods), ZERO)
    total_sales_profit = sum((p.sales_profit for p in periods), ZERO)
    total_sales_loss = sum((p.sales_loss for p in periods), ZERO)
    total_profit = total_purchase_profit + total_sales_profit
    total_loss = total_purchase_loss + total_sales_loss
    net_profit = total_profit - total_loss

    total_revenue = sum((p.net_revenue for p in periods), ZERO)
    total_cost = sum((p.net_cost for p in periods), ZERO)
    profit_margin = net_profit / total_revenue * HUNDRED if total_revenue > ZERO else ZERO

    inventory_valuation = sum(
        ((item.cost_basis or ZERO) * item.stock_quantity for item in catalog),
        ZERO,
    )

    total_orders = sum(p.order_count for p in periods)
    total_returns = sum(p.return_count for p in periods)
    return_rate = Decimal(total_returns) / Decimal(total_orders) * HUNDRED if total_orders > 0 else ZERO

    return ReportSummary(
        total_purchase_profit=total_purchase_profit,
        total_purchase_loss=total_purchase_loss,
        total_sales_profit=total_sales_profit,
        total_sales_loss=total_sales_loss,
        total_profit=total_profit,
        total_loss=total_loss,
        net_profit=net_profit,
        total_revenue=total_revenue,
        total_cost=total_cost,
        profit_margin=profit_margin,
        inventory_valuation=inventory_valuation,
        total_orders=total_orders,
        total_returns=total_returns,
        return_rate=return_rate,
    )


def require_timestamps(
    orders: Iterable[data_manager.SalesOrderRow],
    returns: Iterable[data_manager.ReturnRow],
    ledger: Iterable[data_manager.LedgerTransactionRow],
) -> None:
    """Reject records that cannot be placed in any window.

    Raises:
        MissingTimestampError: If any order, return, or ledger transaction
            lacks its instant.
    """
    for order in orders:
        if order.created_at is None:
            log.error("Order '%s' has no creation timestamp", order.order_id)
            raise MissingTimestampError(f"Order '{order.order_id}' has no creation timestamp")
    for record in returns:
        if record.created_at is None:
            log.error("Return '%s' has no creation timestamp", record.return_id)
            raise MissingTimestampError(f"Return '{record.return_id}' has no creation timestamp")
    for entry in ledger:
        if entry.transaction_date is None:
            log.error("Ledger transaction '%s' has no transaction date", entry.transaction_id)
            raise MissingTimestampError(
                f"Ledger transaction '{entry.transaction_id}' has no transaction date"
            )


def run_report(
    catalog: Iterable[data_manager.CatalogItemRow],
    orders: Iterable[data_manager.SalesOrderRow],
    returns: Iterable[data_manager.ReturnRow],
    ledger: Iterable[data_manager.LedgerTransactionRow],
    granularity: Union[Granularity, str],
    reference: datetime,
) -> Tuple[List[PeriodResult], ReportSummary]:
    """Compute the periodized P&L report for a snapshot of the four sources.

    The function validates timestamps, builds one :class:`CostBasisIndex`,
    generates the windows once, aggregates each window, and rolls the results
    up. It performs no I/O and does not mutate its inputs, so identical
    inputs always produce identical output. Each source is materialised into
    a list first, so one-shot iterables are read only once.

    Args:
        catalog (Iterable[data_manager.CatalogItemRow]): Catalog snapshot.
        orders (Iterable[data_manager.SalesOrderRow]): Orders with lines.
        returns (Iterable[data_manager.ReturnRow]): Returns with lines.
        ledger (Iterable[data_manager.LedgerTransactionRow]): Ledger entries.
        granularity (Granularity | str): Bucketing resolution.
        reference (datetime): Instant the trailing windows end at.

    Returns:
        tuple[list[PeriodResult], ReportSummary]: Per-window results ordered
            oldest first, and the summary derived from them.

    Raises:
        MissingTimestampError: If a record lacks its instant.
        ValueError: If ``granularity`` is not recognised.
    """
    granularity = coerce_granularity(granularity)
    catalog, orders, returns, ledger = list(catalog), list(orders), list(returns), list(ledger)
    require_timestamps(orders, returns, ledger)

    index = CostBasisIndex.build(catalog)
    windows = generate_windows(granularity, reference)
    periods = [aggregate_period(window, orders, returns, ledger, index) for window in windows]
    summary = summarize(periods, catalog)

    log.info(
        "Computed %s report over %d windows (orders=%d, returns=%d, net_profit=%s)",
        granularity.value,
        len(periods),
        summary.total_orders,
        summary.total_returns,
        summary.net_profit,
    )
    return periods, summary


def resolve_reference(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the current UTC instant."""

    return candidate if candidate is not None else datetime.now(UTC)


def _cached(
    context: RuntimeContext,
    name: str,
    loader: Callable[[Workbook], Iterable[Any]],
) -> List[Any]:
    """Return the cached collection ``name``, loading it on first access.

    Each runtime context keeps one snapshot per sheet group, so repeated
    reports against the same context do not re-scan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        bucket = list(loader(context.workbook))
        context._cache[name] = bucket
        log.debug("Populated %s cache with %d entries", name, len(bucket))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and the master workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Settings, live workbook, and an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before reading records.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_catalog(context: RuntimeContext) -> List[data_manager.CatalogItemRow]:
    """Return a copy of the cached catalog in sheet order."""
    return list(_cached(context, "catalog", data_manager.iter_catalog))


def list_orders(context: RuntimeContext) -> List[data_manager.SalesOrderRow]:
    """Return a copy of the cached orders, each with its lines."""
    return list(_cached(context, "orders", data_manager.iter_orders))


def list_returns(context: RuntimeContext) -> List[data_manager.ReturnRow]:
    """Return a copy of the cached returns, each with its lines."""
    return list(_cached(context, "returns", data_manager.iter_returns))


def list_ledger_transactions(context: RuntimeContext) -> List[data_manager.LedgerTransactionRow]:
    """Return a copy of the cached ledger in sheet order."""
    return list(_cached(context, "ledger", data_manager.iter_ledger))


def build_report(
    context: RuntimeContext,
    granularity: Optional[Union[Granularity, str]] = None,
    reference: Optional[datetime] = None,
) -> Tuple[List[PeriodResult], ReportSummary]:
    """Load the four collections from the workbook and run the report.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        granularity (Granularity | str | None): Bucketing resolution. Defaults
            to ``settings.default_granularity``.
        reference (datetime | None): Anchor instant. Defaults to the current
            UTC time.

    Returns:
        tuple[list[PeriodResult], ReportSummary]: Output of :func:`run_report`.
    """
    selected = granularity if granularity is not None else context.settings.default_granularity
    return run_report(
        list_catalog(context),
        list_orders(context),
        list_returns(context),
        list_ledger_transactions(context),
        selected,
        resolve_reference(reference),
    )
