"""Prometheus metrics for the catalog core."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter


CATALOG_REFERENCE_SYNC_FAILURES_TOTAL: Final = Counter(
    "catalog_reference_sync_failures_total",
    "Reference-graph edits that failed after the product write succeeded.",
    labelnames=("target",),
)

CATALOG_MANUFACTURER_CHECK_FALLBACKS_TOTAL: Final = Counter(
    "catalog_manufacturer_check_fallbacks_total",
    "Manufacturer safe-removal checks answered by the configured fallback after a query error.",
    labelnames=("outcome",),
)

CATALOG_PRICE_RECOMPUTED_TOTAL: Final = Counter(
    "catalog_price_recomputed_total",
    "Number of product price recomputations from the batch ledger.",
)

CATALOG_DISCOUNT_USAGE_TOTAL: Final = Counter(
    "catalog_discount_usage_total",
    "Discount usage recording attempts.",
    labelnames=("result",),
)

CATALOG_STOCK_REJECTIONS_TOTAL: Final = Counter(
    "catalog_stock_rejections_total",
    "Batch quantity adjustments rejected by the ledger.",
    labelnames=("reason",),
)


def target_label(collection: str) -> str:
    """Collapse a document collection into a bounded label value."""

    if collection in {"categories", "subcategories", "manufacturers"}:
        return collection
    return "other"
