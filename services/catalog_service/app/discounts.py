"""Discount resolution: which of many overlapping discounts applies, and at what price."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Sequence

from .errors import DiscountConflictError, NotFoundError, ValidationError
from .metrics import CATALOG_DISCOUNT_USAGE_TOTAL
from .schemas import ZERO, CategoryRef, Discount, DiscountCreate, DiscountUpdate, ensure_utc
from .store import CATEGORIES, DISCOUNTS, PRODUCTS, SUBCATEGORIES, DocumentStore, Filter, chunked

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def _moment(now: datetime | None) -> datetime:
    return ensure_utc(now) if now is not None else datetime.now(timezone.utc)


def is_valid(discount: Discount, now: datetime, customer_id: str | None = None) -> bool:
    """Active, inside ``[startDate, endDate)`` and below its usage cap."""

    moment = ensure_utc(now)
    if not discount.is_active:
        return False
    if not discount.start_date <= moment < discount.end_date:
        return False
    if discount.limitation_type == "n_times_only":
        return discount.limitation_times is not None and discount.current_usage_count < discount.limitation_times
    if discount.limitation_type == "n_times_per_customer":
        if discount.limitation_times is None:
            return False
        if customer_id is None:
            return True
        return discount.usage_by_customer.get(customer_id, 0) < discount.limitation_times
    return True


def apply_to_price(discount: Discount, price: Decimal) -> Decimal:
    if discount.type == "percentage":
        discounted = price * (1 - discount.value / HUNDRED)
    else:
        discounted = max(ZERO, price - discount.value)
    return discounted.quantize(CENT, rounding=ROUND_HALF_UP)


def discount_amount(discount: Discount, price: Decimal) -> Decimal:
    return price - apply_to_price(discount, price)


_REQUIRED_DEFINITION_FIELDS = {
    "name",
    "type",
    "value",
    "scope",
    "targets",
    "start_date",
    "end_date",
    "is_active",
    "limitation_type",
}


def _checked(discount: Discount) -> Discount:
    """Reject incoherent discount definitions; unlimited discounts drop ``limitationTimes``."""

    if discount.type == "percentage" and not ZERO <= discount.value <= HUNDRED:
        raise ValidationError("percentage discounts must be between 0 and 100")
    if discount.type == "fixed" and discount.value < ZERO:
        raise ValidationError("fixed discounts must be non-negative")
    if discount.end_date <= discount.start_date:
        raise ValidationError("discount end date must be after its start date")
    if discount.scope == "order":
        if discount.targets:
            raise ValidationError("order discounts do not take targets")
        if discount.min_purchase_amount is not None and discount.min_purchase_amount < ZERO:
            raise ValidationError("minimum purchase amount must be non-negative")
    else:
        if not discount.targets:
            raise ValidationError(f"{discount.scope} discounts need at least one target")
        if discount.min_purchase_amount is not None:
            raise ValidationError("minimum purchase amount only applies to order discounts")
    if discount.limitation_type == "unlimited":
        return discount.model_copy(update={"limitation_times": None})
    if discount.limitation_times is None or discount.limitation_times <= 0:
        raise ValidationError("limited discounts need a positive limitationTimes")
    return discount


class DiscountResolver:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get_discount(self, discount_id: str) -> Discount:
        document = await self.store.get(DISCOUNTS, discount_id)
        if document is None:
            raise NotFoundError("discount", discount_id)
        return Discount.model_validate(document)

    async def _load(self, discount_ids: Sequence[str]) -> list[Discount]:
        documents: dict[str, dict[str, Any]] = {}
        for chunk in chunked(list(discount_ids)):
            documents.update(await self.store.get_many(DISCOUNTS, chunk))
        return [Discount.model_validate(documents[i]) for i in discount_ids if i in documents]

    async def _targeting(self, scope: str, target_ids: Sequence[str]) -> list[str]:
        found: list[str] = []
        for chunk in chunked(list(dict.fromkeys(target_ids))):
            documents = await self.store.query(
                DISCOUNTS,
                Filter("scope", "==", scope),
                Filter("targets", "array-contains-any", chunk),
            )
            found.extend(doc["id"] for doc in documents)
        return found

    async def collect_applicable_discount_ids(self, product_id: str) -> list[str]:
        """Direct, category and subcategory discounts of a product, de-duplicated in that order."""

        product = await self.store.get(PRODUCTS, product_id)
        if product is None:
            raise NotFoundError("product", product_id)
        refs = [CategoryRef.parse(raw) for raw in product.get("categoryRefs") or []]
        parents = [ref.category_id for ref in refs]
        subcategories = [ref.subcategory_id for ref in refs if ref.subcategory_id is not None]

        collected: list[str] = list(product.get("discountRefs") or [])
        collected.extend(await self._targeting("product", [product_id]))
        collected.extend(await self._targeting("category", parents))
        collected.extend(await self._targeting("category", subcategories))
        return list(dict.fromkeys(collected))

    async def highest_valid_percentage(self, product_id: str, now: datetime | None = None) -> Decimal:
        """Best percentage figure for a product badge.

        Fixed discounts are ignored, and so are order-level discounts that a
        product happens to list in ``discountRefs``.
        """

        moment = _moment(now)
        discounts = await self._load(await self.collect_applicable_discount_ids(product_id))
        badges = [d for d in discounts if d.type == "percentage" and d.scope != "order"]
        return max((d.value for d in badges if is_valid(d, moment)), default=ZERO)

    async def best_product_discount(
        self,
        product_id: str,
        price: Decimal,
        now: datetime | None = None,
    ) -> Discount | None:
        """Valid product or category discount that yields the lowest price."""

        moment = _moment(now)
        discounts = await self._load(await self.collect_applicable_discount_ids(product_id))
        candidates = [d for d in discounts if d.scope != "order" and is_valid(d, moment)]
        if not candidates:
            return None
        return min(candidates, key=lambda d: (apply_to_price(d, price), d.start_date, d.id))

    async def best_order_level_discount(self, subtotal: Decimal, now: datetime | None = None) -> Discount | None:
        moment = _moment(now)
        documents = await self.store.query(DISCOUNTS, Filter("scope", "==", "order"))
        candidates = [
            discount
            for discount in (Discount.model_validate(doc) for doc in documents)
            if is_valid(discount, moment)
            and (discount.min_purchase_amount is None or subtotal >= discount.min_purchase_amount)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda d: (-d.value, d.start_date, d.id))

    async def record_usage(self, discount_id: str, order_id: str, customer_id: str | None = None) -> bool:
        """Count one redemption of a discount by ``order_id``.

        Returns ``False`` without counting again when the order was already
        recorded. Raises ``DiscountConflictError`` when the cap is reached.
        """

        if not order_id:
            raise ValidationError("order id is required to record discount usage")
        outcome = {"recorded": False}

        def _record(current: dict[str, Any]) -> dict[str, Any]:
            if order_id in (current.get("usageOrderIds") or []):
                return current
            discount = Discount.model_validate(current)
            times = discount.limitation_times
            if discount.limitation_type == "n_times_only":
                if times is None or discount.current_usage_count >= times:
                    raise DiscountConflictError(f"discount {discount_id} reached its usage limit")
            elif discount.limitation_type == "n_times_per_customer":
                if customer_id is None:
                    raise ValidationError(f"discount {discount_id} is limited per customer; customer id required")
                if times is None or discount.usage_by_customer.get(customer_id, 0) >= times:
                    raise DiscountConflictError(
                        f"customer {customer_id} reached the usage limit of discount {discount_id}"
                    )

            current["currentUsageCount"] = discount.current_usage_count + 1
            if customer_id is not None:
                by_customer = dict(current.get("usageByCustomer") or {})
                by_customer[customer_id] = by_customer.get(customer_id, 0) + 1
                current["usageByCustomer"] = by_customer
            current["usageOrderIds"] = [*(current.get("usageOrderIds") or []), order_id]
            outcome["recorded"] = True
            return current

        try:
            await self.store.transact(DISCOUNTS, discount_id, _record)
        except DiscountConflictError:
            CATALOG_DISCOUNT_USAGE_TOTAL.labels(result="conflict").inc()
            raise

        if outcome["recorded"]:
            CATALOG_DISCOUNT_USAGE_TOTAL.labels(result="recorded").inc()
            logger.info("Recorded usage of discount %s for order %s", discount_id, order_id)
        else:
            CATALOG_DISCOUNT_USAGE_TOTAL.labels(result="duplicate").inc()
            logger.info("Order %s already counted against discount %s", order_id, discount_id)
        return outcome["recorded"]

    async def _check_targets(self, scope: str, targets: Sequence[str]) -> None:
        if scope == "order":
            return
        if scope == "product":
            collections = (PRODUCTS,)
        else:
            collections = (CATEGORIES, SUBCATEGORIES)
        missing = list(targets)
        for collection in collections:
            remaining: list[str] = []
            for chunk in chunked(missing):
                found = await self.store.get_many(collection, chunk)
                remaining.extend(target for target in chunk if target not in found)
            missing = remaining
        if missing:
            raise NotFoundError(f"{scope} discount target", ", ".join(missing))

    async def create_discount(self, payload: DiscountCreate) -> Discount:
        discount = _checked(
            Discount(
                id="pending",
                name=payload.name.strip(),
                description=payload.description,
                type=payload.type,
                value=payload.value,
                scope=payload.scope,
                targets=payload.targets,
                min_purchase_amount=payload.min_purchase_amount,
                start_date=payload.start_date,
                end_date=payload.end_date,
                is_active=payload.is_active,
                limitation_type=payload.limitation_type,
                limitation_times=payload.limitation_times,
            )
        )
        await self._check_targets(discount.scope, discount.targets)
        discount_id = await self.store.add(DISCOUNTS, discount.to_document())
        logger.info("Created %s discount %s (%s %s)", discount.scope, discount_id, discount.type, discount.value)
        return discount.model_copy(update={"id": discount_id})

    async def update_discount(self, discount_id: str, payload: DiscountUpdate) -> Discount:
        """Edit a discount definition; usage counters are carried over untouched."""

        provided = payload.model_fields_set
        for name in provided & _REQUIRED_DEFINITION_FIELDS:
            if getattr(payload, name) is None:
                raise ValidationError(f"{name} cannot be null")
        changes = {name: getattr(payload, name) for name in provided}
        if "name" in changes:
            changes["name"] = changes["name"].strip()

        merged = _checked((await self.get_discount(discount_id)).model_copy(update=changes))
        if provided & {"scope", "targets"}:
            await self._check_targets(merged.scope, merged.targets)

        def _edit(current: dict[str, Any]) -> dict[str, Any]:
            discount = _checked(Discount.model_validate(current).model_copy(update=changes))
            return {**current, **discount.to_document()}

        document = await self.store.transact(DISCOUNTS, discount_id, _edit)
        logger.info("Updated discount %s (%s)", discount_id, ", ".join(sorted(changes)) or "no changes")
        return Discount.model_validate(document)

    async def set_active(self, discount_id: str, is_active: bool) -> Discount:
        def _toggle(current: dict[str, Any]) -> dict[str, Any]:
            current["isActive"] = is_active
            return current

        document = await self.store.transact(DISCOUNTS, discount_id, _toggle)
        logger.info("Discount %s %s", discount_id, "activated" if is_active else "deactivated")
        return Discount.model_validate(document)

    async def delete_discount(self, discount_id: str) -> None:
        """Delete a discount and drop it from every product's ``discountRefs``."""

        if not await self.store.delete(DISCOUNTS, discount_id):
            raise NotFoundError("discount", discount_id)
        holders = await self.store.query(PRODUCTS, Filter("discountRefs", "array-contains", discount_id))
        for product in holders:
            refs = [ref for ref in product.get("discountRefs") or [] if ref != discount_id]
            await self.store.update(PRODUCTS, product["id"], {"discountRefs": refs})
        logger.info("Deleted discount %s (detached from %d products)", discount_id, len(holders))
