from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY

from services.catalog_service.app.errors import NotFoundError
from services.catalog_service.app.schemas import BatchCreate, BatchUpdate, ProductCreate
from services.catalog_service.app.services import CatalogService
from services.catalog_service.app.stock import StockAggregator
from services.catalog_service.app.store import SqlDocumentStore

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _batch_payload(product_id: str, price: str, *, quantity: int = 10, expires_in_days: int = 60) -> BatchCreate:
    return BatchCreate(
        product_id=product_id,
        quantity=quantity,
        price=Decimal(price),
        manufacturing_date=NOW - timedelta(days=30),
        expiry_date=NOW + timedelta(days=expires_in_days),
    )


async def _service_with_product(store: SqlDocumentStore) -> tuple[CatalogService, str]:
    service = CatalogService(store)
    product = await service.create_product(ProductCreate(name="Olive oil"))
    return service, product.id


@pytest.mark.asyncio
async def test_price_is_highest_active_batch_price(store: SqlDocumentStore) -> None:
    service, product_id = await _service_with_product(store)
    recomputed = REGISTRY.get_sample_value("catalog_price_recomputed_total") or 0.0

    await service.add_batch(_batch_payload(product_id, "100"))
    await service.add_batch(_batch_payload(product_id, "150"))
    cheap = await service.add_batch(_batch_payload(product_id, "80"))
    assert (await service.get_product(product_id)).price == Decimal("150")

    await service.set_batch_status(cheap.id, "expired")

    assert (await service.get_product(product_id)).price == Decimal("150")
    assert (REGISTRY.get_sample_value("catalog_price_recomputed_total") or 0.0) - recomputed == 4


@pytest.mark.asyncio
async def test_price_drops_when_most_expensive_batch_is_recalled(store: SqlDocumentStore) -> None:
    service, product_id = await _service_with_product(store)
    await service.add_batch(_batch_payload(product_id, "100"))
    pricey = await service.add_batch(_batch_payload(product_id, "150"))

    await service.set_batch_status(pricey.id, "recalled")

    assert (await service.get_product(product_id)).price == Decimal("100")


@pytest.mark.asyncio
async def test_removing_last_active_batch_zeroes_price_and_stock(store: SqlDocumentStore) -> None:
    service, product_id = await _service_with_product(store)
    batch = await service.add_batch(_batch_payload(product_id, "42.50"))
    assert (await service.get_product(product_id)).price == Decimal("42.50")

    await service.remove_batch(batch.id)

    assert (await service.get_product(product_id)).price == Decimal("0")
    summary = await service.aggregate_stock(product_id, now=NOW)
    assert summary.usable_stock == 0
    assert summary.active_batch_count == 0
    assert summary.total_stock == 0


@pytest.mark.asyncio
async def test_aggregate_stock_classifies_batches(store: SqlDocumentStore) -> None:
    service, product_id = await _service_with_product(store)
    await service.add_batch(_batch_payload(product_id, "10", quantity=7))
    stale = await service.add_batch(_batch_payload(product_id, "10", quantity=4))
    retired = await service.add_batch(_batch_payload(product_id, "10", quantity=5))
    recalled = await service.add_batch(_batch_payload(product_id, "10", quantity=9))
    await service.set_batch_status(retired.id, "expired")
    await service.set_batch_status(recalled.id, "recalled")
    await service.adjust_remaining(stale.id, -1)

    later = NOW + timedelta(days=90)
    summary = await service.aggregate_stock(product_id, now=later)
    assert summary.usable_stock == 0
    assert summary.expired_stock == 7 + 3
    assert summary.total_stock == 10
    assert summary.active_batch_count == 2
    assert summary.expired_inventory == 5

    current = await service.aggregate_stock(product_id, now=NOW)
    assert current.usable_stock == 10
    assert current.expired_stock == 0


@pytest.mark.asyncio
async def test_aggregate_stock_many_covers_every_requested_id(store: SqlDocumentStore) -> None:
    service, product_id = await _service_with_product(store)
    other = (await service.create_product(ProductCreate(name="Vinegar"))).id
    await service.add_batch(_batch_payload(product_id, "5", quantity=3))
    await service.add_batch(_batch_payload(other, "5", quantity=8))
    unknown = [f"ghost-{i}" for i in range(63)]

    summaries = await service.aggregate_stock([product_id, *unknown, other, product_id], now=NOW)

    assert len(summaries) == 65
    assert summaries[product_id].usable_stock == 3
    assert summaries[other].usable_stock == 8
    assert all(summaries[ghost].total_stock == 0 for ghost in unknown)


@pytest.mark.asyncio
async def test_price_follows_batch_price_corrections(store: SqlDocumentStore) -> None:
    service, product_id = await _service_with_product(store)
    await service.add_batch(_batch_payload(product_id, "100"))
    pricey = await service.add_batch(_batch_payload(product_id, "150"))

    await service.update_batch(pricey.id, BatchUpdate(price=Decimal("90")))
    assert (await service.get_product(product_id)).price == Decimal("100")

    await service.update_batch(pricey.id, BatchUpdate(price=Decimal("175.50")))
    assert (await service.get_product(product_id)).price == Decimal("175.50")

    await service.update_batch(pricey.id, BatchUpdate(notes="relabelled"))
    assert (await service.get_product(product_id)).price == Decimal("175.50")


@pytest.mark.asyncio
async def test_recompute_price_requires_product(store: SqlDocumentStore) -> None:
    with pytest.raises(NotFoundError):
        await StockAggregator(store).recompute_price("missing")


@pytest.mark.asyncio
async def test_adjusting_remaining_does_not_change_price(store: SqlDocumentStore) -> None:
    service, product_id = await _service_with_product(store)
    batch = await service.add_batch(_batch_payload(product_id, "12"))

    await service.adjust_remaining(batch.id, -10)

    assert (await service.get_product(product_id)).price == Decimal("12")
