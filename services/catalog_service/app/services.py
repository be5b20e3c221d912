"""Catalog domain services."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence

from .batches import BatchLedger
from .discounts import DiscountResolver
from .errors import NotFoundError, ReferenceSyncError, ValidationError
from .orders import OrderPricing
from .references import ProductState, ReferenceGraphMaintainer
from .schemas import (
    ZERO,
    Batch,
    BatchCreate,
    BatchStatus,
    BatchUpdate,
    CategoryRef,
    Discount,
    DiscountCreate,
    DiscountUpdate,
    OrderQuote,
    Product,
    ProductCreate,
    ProductUpdate,
    StockSummary,
)
from .stock import StockAggregator
from .store import CATEGORIES, DISCOUNTS, MANUFACTURERS, PRODUCTS, SUBCATEGORIES, DocumentStore, chunked
from .taxonomy import TaxonomyService

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _pending_states(product: dict[str, Any]) -> list[ProductState]:
    marker = product.get("referenceSync") or {}
    return [ProductState.from_document(state) for state in marker.get("pending") or []]


class CatalogService:
    """High-level catalog orchestration.

    Product writes land first; reference-graph edits follow as independent
    single-document writes. When some of them fail the product keeps a
    ``referenceSync`` marker with the earlier states so ``repair_references``
    (or the next successful ``update_product``) can replay the diff.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        fail_open: bool = True,
        expiring_window_days: int = 30,
    ) -> None:
        self.store = store
        self.ledger = BatchLedger(store)
        self.stock = StockAggregator(store, self.ledger)
        self.references = ReferenceGraphMaintainer(store, fail_open=fail_open)
        self.discounts = DiscountResolver(store)
        self.pricing = OrderPricing(store, self.discounts)
        self.taxonomy = TaxonomyService(store)
        self.expiring_window_days = expiring_window_days

    # --- products ---------------------------------------------------------------

    async def get_product(self, product_id: str) -> Product:
        document = await self.store.get(PRODUCTS, product_id)
        if document is None:
            raise NotFoundError("product", product_id)
        return Product.model_validate(document)

    async def _require_all(self, collection: str, kind: str, ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        found: dict[str, dict[str, Any]] = {}
        for chunk in chunked(list(dict.fromkeys(ids))):
            found.update(await self.store.get_many(collection, chunk))
        for identifier in ids:
            if identifier not in found:
                raise NotFoundError(kind, identifier)
        return found

    async def _validate_category_refs(self, category_refs: Iterable[str]) -> None:
        refs = [CategoryRef.parse(raw) for raw in category_refs]
        await self._require_all(CATEGORIES, "category", [ref.category_id for ref in refs])
        subcategories = await self._require_all(
            SUBCATEGORIES, "subcategory", [ref.subcategory_id for ref in refs if ref.subcategory_id is not None]
        )
        for ref in refs:
            if ref.subcategory_id is None:
                continue
            parent = subcategories[ref.subcategory_id].get("parentCategoryId")
            if parent != ref.category_id:
                raise ValidationError(f"subcategory {ref.subcategory_id} does not belong to category {ref.category_id}")

    async def _validate_manufacturer(self, manufacturer_ref: str | None) -> None:
        if manufacturer_ref and await self.store.get(MANUFACTURERS, manufacturer_ref) is None:
            raise NotFoundError("manufacturer", manufacturer_ref)

    async def _validate_discounts(self, discount_refs: Sequence[str]) -> None:
        await self._require_all(DISCOUNTS, "discount", discount_refs)

    async def _sync(
        self,
        product_id: str,
        old_states: Sequence[ProductState | None],
        new_state: ProductState | None,
    ) -> None:
        """Replay ``old -> new`` for each old state and raise one combined error."""

        failures: list[tuple[str, BaseException]] = []
        for old_state in old_states:
            try:
                await self.references.sync(product_id, old_state, new_state)
            except ReferenceSyncError as exc:
                failures.extend(exc.failures)
        if failures:
            raise ReferenceSyncError(product_id, old_states[0], new_state, failures)

    async def _mark_pending(self, product_id: str, pending: Sequence[ProductState], error: ReferenceSyncError) -> Product:
        marker = {
            "pending": [state.to_document() for state in dict.fromkeys(pending)],
            "warnings": error.warnings,
            "recordedAt": _now().isoformat(),
        }
        document = await self.store.update(PRODUCTS, product_id, {"referenceSync": marker})
        logger.warning("Product %s saved with %d pending reference edits", product_id, len(error.failures))
        return Product.model_validate(document)

    async def create_product(self, payload: ProductCreate) -> Product:
        await self._validate_category_refs(payload.category_refs)
        await self._validate_manufacturer(payload.manufacturer_ref)
        await self._validate_discounts(payload.discount_refs)

        now = _now()
        product = Product(
            id="pending",
            name=payload.name,
            description=payload.description,
            category_refs=payload.category_refs,
            manufacturer_ref=payload.manufacturer_ref,
            price=ZERO,
            discount_refs=payload.discount_refs,
            is_active=payload.is_active,
            created_at=now,
            updated_at=now,
        )
        product_id = await self.store.add(PRODUCTS, product.to_document())
        product = product.model_copy(update={"id": product_id})
        logger.info("Created product %s", product_id)

        try:
            await self._sync(product_id, [None], ProductState.from_product(product))
        except ReferenceSyncError as exc:
            exc.product = await self._mark_pending(product_id, [ProductState()], exc)
            raise
        return product

    async def update_product(self, product_id: str, payload: ProductUpdate) -> Product:
        current = await self.store.get(PRODUCTS, product_id)
        if current is None:
            raise NotFoundError("product", product_id)
        provided = payload.model_fields_set
        changes: dict[str, Any] = {}

        if "name" in provided:
            if payload.name is None:
                raise ValidationError("product name cannot be null")
            changes["name"] = payload.name
        if "description" in provided:
            changes["description"] = payload.description
        if "is_active" in provided:
            if payload.is_active is None:
                raise ValidationError("isActive cannot be null")
            changes["isActive"] = payload.is_active
        if "category_refs" in provided:
            refs = payload.category_refs or []
            await self._validate_category_refs(refs)
            changes["categoryRefs"] = refs
        if "manufacturer_ref" in provided:
            await self._validate_manufacturer(payload.manufacturer_ref)
            changes["manufacturerRef"] = payload.manufacturer_ref
        if "discount_refs" in provided:
            discount_refs = payload.discount_refs or []
            await self._validate_discounts(discount_refs)
            changes["discountRefs"] = discount_refs

        old_state = ProductState.from_document(current)
        changes["updatedAt"] = _now().isoformat()
        document = await self.store.update(PRODUCTS, product_id, changes)
        product = Product.model_validate(document)
        new_state = ProductState.from_product(product)
        pending = _pending_states(current)
        if new_state == old_state and not pending:
            return product

        replay: list[ProductState | None] = [old_state]
        if pending:
            replay.extend([None, *pending])
        try:
            await self._sync(product_id, replay, new_state)
        except ReferenceSyncError as exc:
            exc.product = await self._mark_pending(product_id, [*pending, old_state], exc)
            raise
        if document.get("referenceSync") is not None:
            document = await self.store.update(PRODUCTS, product_id, {"referenceSync": None})
            logger.info("Cleared pending reference edits of product %s", product_id)
            product = Product.model_validate(document)
        return product

    async def delete_product(self, product_id: str) -> None:
        """Delete a product and detach it from the reference graph.

        Batches of the product are left in the ledger.
        """

        current = await self.store.get(PRODUCTS, product_id)
        if current is None:
            raise NotFoundError("product", product_id)
        await self.store.delete(PRODUCTS, product_id)
        logger.info("Deleted product %s", product_id)
        await self._sync(product_id, [ProductState.from_document(current), *_pending_states(current)], None)

    async def repair_references(self, product_id: str) -> Product:
        """Replay the reference diff for a product and clear its pending marker.

        Without a marker this re-asserts the current memberships, which is
        harmless because every edit is idempotent.
        """

        current = await self.store.get(PRODUCTS, product_id)
        if current is None:
            raise NotFoundError("product", product_id)
        state = ProductState.from_document(current)
        pending = _pending_states(current)
        try:
            await self._sync(product_id, [None, *pending], state)
        except ReferenceSyncError as exc:
            exc.product = await self._mark_pending(product_id, pending or [ProductState()], exc)
            raise
        if current.get("referenceSync") is not None:
            current = await self.store.update(PRODUCTS, product_id, {"referenceSync": None})
        logger.info("Repaired references of product %s (%d pending states)", product_id, len(pending))
        return Product.model_validate(current)

    # --- batches ----------------------------------------------------------------

    async def add_batch(self, payload: BatchCreate) -> Batch:
        batch = await self.ledger.add_batch(
            payload.product_id,
            quantity=payload.quantity,
            price=payload.price,
            manufacturing_date=payload.manufacturing_date,
            expiry_date=payload.expiry_date,
            batch_code=payload.batch_code,
            supplier=payload.supplier,
            location=payload.location,
            notes=payload.notes,
        )
        await self.stock.recompute_price(batch.product_id)
        return batch

    async def get_batch(self, batch_id: str) -> Batch:
        return await self.ledger.get_batch(batch_id)

    async def adjust_remaining(self, batch_id: str, delta: int) -> Batch:
        return await self.ledger.adjust_remaining(batch_id, delta)

    async def set_batch_status(self, batch_id: str, status: BatchStatus) -> Batch:
        batch = await self.ledger.set_status(batch_id, status)
        await self._recompute_if_present(batch.product_id)
        return batch

    async def update_batch(self, batch_id: str, payload: BatchUpdate) -> Batch:
        batch = await self.ledger.update_batch(batch_id, payload)
        await self._recompute_if_present(batch.product_id)
        return batch

    async def remove_batch(self, batch_id: str) -> Batch:
        batch = await self.ledger.remove_batch(batch_id)
        await self._recompute_if_present(batch.product_id)
        return batch

    async def _recompute_if_present(self, product_id: str) -> None:
        try:
            await self.stock.recompute_price(product_id)
        except NotFoundError:
            logger.info("Product %s no longer exists; price not recomputed", product_id)

    async def expiring_batches(self, *, within_days: int | None = None, now: datetime | None = None) -> list[Batch]:
        days = self.expiring_window_days if within_days is None else within_days
        return await self.ledger.expiring_batches(within_days=days, now=now)

    async def aggregate_stock(
        self,
        product_ids: str | Sequence[str],
        *,
        now: datetime | None = None,
    ) -> StockSummary | dict[str, StockSummary]:
        if isinstance(product_ids, str):
            return await self.stock.aggregate_stock(product_ids, now=now)
        return await self.stock.aggregate_stock_many(product_ids, now=now)

    # --- discounts and orders ---------------------------------------------------

    async def create_discount(self, payload: DiscountCreate) -> Discount:
        return await self.discounts.create_discount(payload)

    async def get_discount(self, discount_id: str) -> Discount:
        return await self.discounts.get_discount(discount_id)

    async def update_discount(self, discount_id: str, payload: DiscountUpdate) -> Discount:
        return await self.discounts.update_discount(discount_id, payload)

    async def set_discount_active(self, discount_id: str, is_active: bool) -> Discount:
        return await self.discounts.set_active(discount_id, is_active)

    async def delete_discount(self, discount_id: str) -> None:
        await self.discounts.delete_discount(discount_id)

    async def highest_valid_percentage(self, product_id: str, now: datetime | None = None) -> Decimal:
        return await self.discounts.highest_valid_percentage(product_id, now)

    async def best_order_level_discount(self, subtotal: Decimal, now: datetime | None = None) -> Discount | None:
        return await self.discounts.best_order_level_discount(subtotal, now)

    async def quote_order(
        self,
        lines: Iterable[tuple[str, int]],
        *,
        delivery_fee: Decimal = ZERO,
        now: datetime | None = None,
    ) -> OrderQuote:
        return await self.pricing.quote(lines, delivery_fee=delivery_fee, now=now)

    async def record_discount_usage(self, discount_id: str, order_id: str, customer_id: str | None = None) -> bool:
        return await self.discounts.record_usage(discount_id, order_id, customer_id)
