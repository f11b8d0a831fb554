"""Enumerations and fixed values shared across the P&L report modules.

The data access layer, the aggregation engine, and the CLI all refer to the
same granularity selectors, ledger categories, and sheet names.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Fixed-point precision applied when a period result is finalised.
MONEY_QUANTUM = Decimal("0.01")


class Granularity(str, Enum):
    """Enumerate the time-bucketing resolutions a report can use."""

    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class TransactionCategory(str, Enum):
    """Enumerate the categories recorded on ledger transactions."""

    SALE = "sale"
    PURCHASE = "purchase"
    RETURN = "return"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CATALOG = "Catalog"
    ORDERS = "Orders"
    ORDER_LINES = "OrderLines"
    RETURNS = "Returns"
    RETURN_LINES = "ReturnLines"
    LEDGER = "Ledger"
    PERIOD_RESULTS = "PeriodResults"
    SUMMARY = "Summary"


# Number of windows produced for each granularity.
WINDOW_COUNTS = {
    Granularity.HOURLY: 24,
    Granularity.DAILY: 30,
    Granularity.MONTHLY: 12,
    Granularity.YEARLY: 5,
}

# strftime patterns used for window labels.
LABEL_FORMATS = {
    Granularity.HOURLY: "%H:00",
    Granularity.DAILY: "%b %d",
    Granularity.MONTHLY: "%b %Y",
    Granularity.YEARLY: "%Y",
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "Granularity",
    "TransactionCategory",
    "SheetName",
    "WINDOW_COUNTS",
    "LABEL_FORMATS",
]
