import pytest
from prometheus_client import REGISTRY

from services.catalog_service.app.errors import NotFoundError, ReferenceSyncError, ValidationError
from services.catalog_service.app.references import (
    MembershipTarget,
    ProductState,
    ReferenceGraphMaintainer,
)
from services.catalog_service.app.schemas import ProductCreate, ProductUpdate
from services.catalog_service.app.services import CatalogService
from services.catalog_service.app.store import CATEGORIES, MANUFACTURERS, PRODUCTS, SUBCATEGORIES


class _MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


async def _members(store, collection: str, doc_id: str) -> tuple[list[str], int]:
    document = await store.get(collection, doc_id)
    return document["productRefs"], document["productCount"]


async def _manufacturers_of(store, category_id: str) -> list[str]:
    return (await store.get(CATEGORIES, category_id))["manufacturerRefs"]


@pytest.mark.asyncio
async def test_membership_diff_is_idempotent(store) -> None:
    service = CatalogService(store)
    category = await service.taxonomy.create_category("Snacks")
    maintainer = ReferenceGraphMaintainer(store)
    target = MembershipTarget(CATEGORIES, category.id)

    for _ in range(3):
        assert await maintainer.apply_membership_diff("p1", added=[target], removed=[]) == []
    assert await _members(store, CATEGORIES, category.id) == (["p1"], 1)

    for _ in range(2):
        await maintainer.apply_membership_diff("p1", added=[], removed=[target])
    assert await _members(store, CATEGORIES, category.id) == ([], 0)


@pytest.mark.asyncio
async def test_replaying_a_sync_does_not_drift_counts(store) -> None:
    service = CatalogService(store)
    category = await service.taxonomy.create_category("Drinks")
    manufacturer = await service.taxonomy.create_manufacturer("Fizz Ltd")
    product = await service.create_product(
        ProductCreate(name="Cola", category_refs=[category.id], manufacturer_ref=manufacturer.id)
    )
    state = ProductState.from_product(product)

    await service.references.sync(product.id, None, state)
    await service.references.sync(product.id, None, state)

    assert await _members(store, CATEGORIES, category.id) == ([product.id], 1)
    assert await _members(store, MANUFACTURERS, manufacturer.id) == ([product.id], 1)
    assert await _manufacturers_of(store, category.id) == [manufacturer.id]


@pytest.mark.asyncio
async def test_recategorising_moves_membership_to_subcategory_only(store) -> None:
    service = CatalogService(store)
    fresh = await service.taxonomy.create_category("Fresh")
    frozen = await service.taxonomy.create_category("Frozen")
    ice_cream = await service.taxonomy.create_subcategory(frozen.id, "Ice cream")
    product = await service.create_product(ProductCreate(name="Sorbet", category_refs=[fresh.id]))

    await service.update_product(
        product.id, ProductUpdate(category_refs=[f"{frozen.id}/{ice_cream.id}"])
    )

    assert await _members(store, CATEGORIES, fresh.id) == ([], 0)
    assert await _members(store, SUBCATEGORIES, ice_cream.id) == ([product.id], 1)
    assert await _members(store, CATEGORIES, frozen.id) == ([], 0)


@pytest.mark.asyncio
async def test_manufacturer_counts_follow_create_update_delete(store) -> None:
    service = CatalogService(store)
    category = await service.taxonomy.create_category("Bakery")
    first = await service.taxonomy.create_manufacturer("Loaf & Co")
    second = await service.taxonomy.create_manufacturer("Crust Inc")
    bread = await service.create_product(
        ProductCreate(name="Bread", category_refs=[category.id], manufacturer_ref=first.id)
    )
    bagel = await service.create_product(
        ProductCreate(name="Bagel", category_refs=[category.id], manufacturer_ref=first.id)
    )
    assert (await service.taxonomy.get_manufacturer(first.id)).product_count == 2

    await service.update_product(bagel.id, ProductUpdate(manufacturer_ref=second.id))
    assert (await service.taxonomy.get_manufacturer(first.id)).product_refs == [bread.id]
    assert (await service.taxonomy.get_manufacturer(second.id)).product_refs == [bagel.id]
    assert sorted(await _manufacturers_of(store, category.id)) == sorted([first.id, second.id])

    await service.delete_product(bread.id)
    assert (await service.taxonomy.get_manufacturer(first.id)).product_count == 0
    assert await _manufacturers_of(store, category.id) == [second.id]
    assert await _members(store, CATEGORIES, category.id) == ([bagel.id], 1)

    await service.update_product(bagel.id, ProductUpdate(manufacturer_ref=None))
    assert (await service.taxonomy.get_manufacturer(second.id)).product_count == 0
    assert await _manufacturers_of(store, category.id) == []


@pytest.mark.asyncio
async def test_manufacturer_stays_while_another_product_uses_it(store) -> None:
    service = CatalogService(store)
    category = await service.taxonomy.create_category("Tea")
    herbal = await service.taxonomy.create_subcategory(category.id, "Herbal")
    maker = await service.taxonomy.create_manufacturer("Leafy")
    p1 = await service.create_product(
        ProductCreate(name="Earl Grey", category_refs=[category.id], manufacturer_ref=maker.id)
    )
    p2 = await service.create_product(
        ProductCreate(name="Chamomile", category_refs=[f"{category.id}/{herbal.id}"], manufacturer_ref=maker.id)
    )

    assert await service.references.can_remove_manufacturer_from_category(category.id, maker.id, p1.id) is False
    await service.update_product(p1.id, ProductUpdate(manufacturer_ref=None))
    assert await _manufacturers_of(store, category.id) == [maker.id]

    assert await service.references.can_remove_manufacturer_from_category(category.id, maker.id, p2.id) is True
    await service.update_product(p2.id, ProductUpdate(category_refs=[]))
    assert await _manufacturers_of(store, category.id) == []


@pytest.mark.asyncio
async def test_recategorising_with_same_manufacturer(store) -> None:
    service = CatalogService(store)
    old = await service.taxonomy.create_category("Old aisle")
    new = await service.taxonomy.create_category("New aisle")
    maker = await service.taxonomy.create_manufacturer("Mover")
    product = await service.create_product(
        ProductCreate(name="Crate", category_refs=[old.id], manufacturer_ref=maker.id)
    )

    await service.update_product(product.id, ProductUpdate(category_refs=[new.id]))

    assert await _manufacturers_of(store, old.id) == []
    assert await _manufacturers_of(store, new.id) == [maker.id]
    assert (await service.taxonomy.get_manufacturer(maker.id)).product_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(("fail_open", "expected"), [(True, []), (False, ["keep"])])
async def test_safe_removal_check_falls_back_on_query_errors(flaky_store, fail_open, expected) -> None:
    service = CatalogService(flaky_store, fail_open=fail_open)
    category = await service.taxonomy.create_category("Spices")
    maker = await service.taxonomy.create_manufacturer("Pepper Bros")
    product = await service.create_product(
        ProductCreate(name="Paprika", category_refs=[category.id], manufacturer_ref=maker.id)
    )
    outcome = "removed" if fail_open else "kept"
    fallbacks = _MetricTracker("catalog_manufacturer_check_fallbacks_total", {"outcome": outcome})
    flaky_store.failing_queries.add(SUBCATEGORIES)

    assert await service.references.can_remove_manufacturer_from_category(category.id, maker.id, product.id) is fail_open
    await service.update_product(product.id, ProductUpdate(manufacturer_ref=None))

    refs = await _manufacturers_of(flaky_store, category.id)
    assert refs == [maker.id for _ in expected]
    assert fallbacks.delta() == 2


@pytest.mark.asyncio
async def test_safe_removal_check_raises_for_missing_category(store) -> None:
    maintainer = ReferenceGraphMaintainer(store)

    with pytest.raises(NotFoundError):
        await maintainer.can_remove_manufacturer_from_category("missing", "m1", "p1")


@pytest.mark.asyncio
async def test_partial_failure_keeps_product_and_can_be_repaired(flaky_store) -> None:
    service = CatalogService(flaky_store)
    before = await service.taxonomy.create_category("Before")
    after = await service.taxonomy.create_category("After")
    product = await service.create_product(ProductCreate(name="Widget", category_refs=[before.id]))
    failures = _MetricTracker("catalog_reference_sync_failures_total", {"target": "categories"})
    flaky_store.failing_documents.add((CATEGORIES, after.id))

    with pytest.raises(ReferenceSyncError) as excinfo:
        await service.update_product(product.id, ProductUpdate(category_refs=[after.id]))

    error = excinfo.value
    assert error.old_state == ProductState((before.id,), None)
    assert error.new_state == ProductState((after.id,), None)
    assert [target for target, _ in error.failures] == [f"{CATEGORIES}/{after.id} membership"]
    assert error.product.category_refs == [after.id]
    assert error.product.reference_sync["pending"] == [{"categoryRefs": [before.id], "manufacturerRef": None}]
    assert failures.delta() == 1
    assert await _members(flaky_store, CATEGORIES, before.id) == ([], 0)
    assert await _members(flaky_store, CATEGORIES, after.id) == ([], 0)

    flaky_store.failing_documents.clear()
    repaired = await service.repair_references(product.id)

    assert repaired.reference_sync is None
    assert await _members(flaky_store, CATEGORIES, after.id) == ([product.id], 1)
    assert await _members(flaky_store, CATEGORIES, before.id) == ([], 0)

    again = await service.repair_references(product.id)
    assert again.reference_sync is None
    assert await _members(flaky_store, CATEGORIES, after.id) == ([product.id], 1)


@pytest.mark.asyncio
async def test_failed_delete_can_be_replayed_from_error(flaky_store) -> None:
    service = CatalogService(flaky_store)
    category = await service.taxonomy.create_category("Garden")
    maker = await service.taxonomy.create_manufacturer("Green Thumb")
    product = await service.create_product(
        ProductCreate(name="Rake", category_refs=[category.id], manufacturer_ref=maker.id)
    )
    flaky_store.failing_documents.add((MANUFACTURERS, maker.id))

    with pytest.raises(ReferenceSyncError) as excinfo:
        await service.delete_product(product.id)

    assert await flaky_store.get(PRODUCTS, product.id) is None
    assert await _members(flaky_store, CATEGORIES, category.id) == ([], 0)
    assert await _members(flaky_store, MANUFACTURERS, maker.id) == ([product.id], 1)

    flaky_store.failing_documents.clear()
    error = excinfo.value
    await service.references.sync(error.product_id, error.old_state, error.new_state)

    assert await _members(flaky_store, MANUFACTURERS, maker.id) == ([], 0)
    assert await _manufacturers_of(flaky_store, category.id) == []


@pytest.mark.asyncio
async def test_next_successful_update_replays_and_clears_pending_edits(flaky_store) -> None:
    service = CatalogService(flaky_store)
    before = await service.taxonomy.create_category("Before")
    after = await service.taxonomy.create_category("After")
    product = await service.create_product(ProductCreate(name="Gadget", category_refs=[before.id]))
    flaky_store.failing_documents.add((CATEGORIES, after.id))

    with pytest.raises(ReferenceSyncError):
        await service.update_product(product.id, ProductUpdate(category_refs=[after.id]))
    assert await _members(flaky_store, CATEGORIES, after.id) == ([], 0)

    flaky_store.failing_documents.clear()
    updated = await service.update_product(product.id, ProductUpdate(description="Now with batteries"))

    assert updated.reference_sync is None
    assert updated.description == "Now with batteries"
    assert (await flaky_store.get(PRODUCTS, product.id))["referenceSync"] is None
    assert await _members(flaky_store, CATEGORIES, after.id) == ([product.id], 1)
    assert await _members(flaky_store, CATEGORIES, before.id) == ([], 0)


@pytest.mark.asyncio
async def test_update_that_fails_again_keeps_every_pending_state(flaky_store) -> None:
    service = CatalogService(flaky_store)
    first = await service.taxonomy.create_category("First")
    second = await service.taxonomy.create_category("Second")
    third = await service.taxonomy.create_category("Third")
    product = await service.create_product(ProductCreate(name="Lamp", category_refs=[first.id]))
    flaky_store.failing_documents.add((CATEGORIES, second.id))

    with pytest.raises(ReferenceSyncError):
        await service.update_product(product.id, ProductUpdate(category_refs=[second.id]))
    flaky_store.failing_documents = {(CATEGORIES, third.id)}
    with pytest.raises(ReferenceSyncError) as excinfo:
        await service.update_product(product.id, ProductUpdate(category_refs=[third.id]))

    assert excinfo.value.product.reference_sync["pending"] == [
        {"categoryRefs": [first.id], "manufacturerRef": None},
        {"categoryRefs": [second.id], "manufacturerRef": None},
    ]

    flaky_store.failing_documents.clear()
    repaired = await service.repair_references(product.id)

    assert repaired.reference_sync is None
    assert await _members(flaky_store, CATEGORIES, third.id) == ([product.id], 1)
    assert await _members(flaky_store, CATEGORIES, second.id) == ([], 0)
    assert await _members(flaky_store, CATEGORIES, first.id) == ([], 0)


@pytest.mark.asyncio
async def test_references_are_validated_before_the_product_is_written(store) -> None:
    service = CatalogService(store)
    dairy = await service.taxonomy.create_category("Dairy")
    meat = await service.taxonomy.create_category("Meat")
    cheese = await service.taxonomy.create_subcategory(dairy.id, "Cheese")

    with pytest.raises(NotFoundError):
        await service.create_product(ProductCreate(name="Ghost", category_refs=["missing"]))
    with pytest.raises(ValidationError):
        await service.create_product(ProductCreate(name="Confused", category_refs=[f"{meat.id}/{cheese.id}"]))
    with pytest.raises(NotFoundError):
        await service.create_product(ProductCreate(name="Orphan", manufacturer_ref="nobody"))
    with pytest.raises(NotFoundError):
        await service.create_product(ProductCreate(name="Bargain", discount_refs=["no-such-discount"]))

    assert await store.query(PRODUCTS) == []


def test_plan_lists_minimal_edits() -> None:
    maintainer = ReferenceGraphMaintainer(store=None)  # planning never touches the store

    labels = maintainer.plan(
        "p1",
        ProductState(("c1", "c2/s2"), "m1"),
        ProductState(("c2/s2", "c3"), "m1"),
    )

    assert labels == [
        "categories/c3 membership",
        "categories/c1 membership",
        "categories/c3 manufacturer m1",
        "categories/c1 manufacturer m1",
    ]
    assert maintainer.plan("p1", ProductState(("c1",), "m1"), ProductState(("c1",), "m1")) == []
