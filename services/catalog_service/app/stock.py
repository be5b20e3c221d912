"""Stock aggregation and price derivation over the batch ledger."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Sequence

from services.common import get_tracer

from .batches import BatchLedger
from .errors import NotFoundError
from .metrics import CATALOG_PRICE_RECOMPUTED_TOTAL
from .schemas import ZERO, Batch, StockSummary, ensure_utc
from .store import PRODUCTS, DocumentStore, chunked

logger = logging.getLogger(__name__)
tracer = get_tracer("catalog.stock")


def summarize_batches(batches: Iterable[Batch], now: datetime) -> StockSummary:
    """Fold one product's batches into a stock summary as of ``now``."""

    usable = expired = active_count = expired_inventory = 0
    for batch in batches:
        if batch.status == "active":
            active_count += 1
            if batch.expiry_date < now:
                expired += batch.remaining_quantity
            else:
                usable += batch.remaining_quantity
        elif batch.status == "expired":
            expired_inventory += batch.remaining_quantity
    return StockSummary(
        usable_stock=usable,
        expired_stock=expired,
        total_stock=usable + expired,
        active_batch_count=active_count,
        expired_inventory=expired_inventory,
    )


def derive_price(batches: Iterable[Batch]) -> Decimal:
    """Highest unit price among active batches, zero when there are none."""

    return max((batch.price for batch in batches if batch.status == "active"), default=ZERO)


class StockAggregator:
    """Read-side projections of the batch ledger.

    ``recompute_price`` is the only writer of ``Product.price``.
    """

    def __init__(self, store: DocumentStore, ledger: BatchLedger | None = None) -> None:
        self.store = store
        self.ledger = ledger or BatchLedger(store)

    async def recompute_price(self, product_id: str) -> Decimal:
        if await self.store.get(PRODUCTS, product_id) is None:
            raise NotFoundError("product", product_id)
        batches = await self.ledger.list_for_product(product_id)
        price = derive_price(batches)
        await self.store.update(
            PRODUCTS,
            product_id,
            {"price": str(price), "updatedAt": datetime.now(timezone.utc).isoformat()},
        )
        CATALOG_PRICE_RECOMPUTED_TOTAL.inc()
        logger.info("Recomputed price of product %s from %d batches: %s", product_id, len(batches), price)
        return price

    async def aggregate_stock(self, product_id: str, *, now: datetime | None = None) -> StockSummary:
        moment = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
        batches = await self.ledger.list_for_product(product_id)
        return summarize_batches(batches, moment)

    async def aggregate_stock_many(
        self,
        product_ids: Sequence[str],
        *,
        now: datetime | None = None,
    ) -> dict[str, StockSummary]:
        moment = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}

        with tracer.start_as_current_span("catalog.stock.aggregate_many") as span:
            chunks = chunked(ids)
            span.set_attribute("catalog.product_count", len(ids))
            span.set_attribute("catalog.chunk_count", len(chunks))
            partials = await asyncio.gather(*(self.ledger.list_for_products(chunk) for chunk in chunks))

        grouped: dict[str, list[Batch]] = {product_id: [] for product_id in ids}
        for batches in partials:
            for batch in batches:
                grouped.setdefault(batch.product_id, []).append(batch)
        return {product_id: summarize_batches(batches, moment) for product_id, batches in grouped.items()}
