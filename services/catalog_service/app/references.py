"""Reference graph between products, categories/subcategories and manufacturers.

Every membership edit is keyed by a single product id and expressed as
"make this product present in / absent from that document", so replaying the
same ``(old_state, new_state)`` diff is harmless. Edits run as independent
single-document updates; there is no cross-document transaction to roll back.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from services.common import get_tracer

from .errors import NotFoundError, ReferenceSyncError
from .metrics import (
    CATALOG_MANUFACTURER_CHECK_FALLBACKS_TOTAL,
    CATALOG_REFERENCE_SYNC_FAILURES_TOTAL,
    target_label,
)
from .schemas import CategoryRef, Product
from .store import CATEGORIES, MANUFACTURERS, PRODUCTS, SUBCATEGORIES, DocumentStore, Filter, chunked

logger = logging.getLogger(__name__)
tracer = get_tracer("catalog.references")

Edit = tuple[str, Callable[[], Awaitable[None]]]


@dataclass(frozen=True)
class ProductState:
    """The reference-bearing fields of a product at one point in time."""

    category_refs: tuple[str, ...] = ()
    manufacturer_ref: str | None = None

    @classmethod
    def from_product(cls, product: Product) -> ProductState:
        return cls(tuple(product.category_refs), product.manufacturer_ref)

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> ProductState:
        return cls(tuple(data.get("categoryRefs") or ()), data.get("manufacturerRef") or None)

    def to_document(self) -> dict[str, Any]:
        return {"categoryRefs": list(self.category_refs), "manufacturerRef": self.manufacturer_ref}

    @property
    def refs(self) -> list[CategoryRef]:
        return [CategoryRef.parse(raw) for raw in self.category_refs]

    @property
    def parent_categories(self) -> set[str]:
        return {ref.category_id for ref in self.refs}


@dataclass(frozen=True, order=True)
class MembershipTarget:
    """A document whose ``productRefs``/``productCount`` list a product."""

    collection: str
    doc_id: str

    def __str__(self) -> str:
        return f"{self.collection}/{self.doc_id}"


def membership_targets(state: ProductState) -> set[MembershipTarget]:
    targets: set[MembershipTarget] = set()
    for ref in state.refs:
        if ref.subcategory_id is not None:
            targets.add(MembershipTarget(SUBCATEGORIES, ref.subcategory_id))
        else:
            targets.add(MembershipTarget(CATEGORIES, ref.category_id))
    if state.manufacturer_ref:
        targets.add(MembershipTarget(MANUFACTURERS, state.manufacturer_ref))
    return targets


@dataclass
class _Plan:
    edits: list[Edit] = field(default_factory=list)

    def add(self, label: str, action: Callable[[], Awaitable[None]]) -> None:
        self.edits.append((label, action))


class ReferenceGraphMaintainer:
    """Apply the minimal membership edits implied by a product change."""

    def __init__(self, store: DocumentStore, *, fail_open: bool = True) -> None:
        self.store = store
        self.fail_open = fail_open

    # --- primitives ---------------------------------------------------------------

    async def _set_membership(self, target: MembershipTarget, product_id: str, *, present: bool) -> None:
        def _mutate(current: dict[str, Any]) -> dict[str, Any]:
            refs = [ref for ref in dict.fromkeys(current.get("productRefs") or []) if ref != product_id]
            if present:
                refs.append(product_id)
            current["productRefs"] = refs
            current["productCount"] = len(refs)
            return current

        await self.store.transact(target.collection, target.doc_id, _mutate)

    async def _set_category_manufacturer(self, category_id: str, manufacturer_id: str, *, present: bool) -> None:
        def _mutate(current: dict[str, Any]) -> dict[str, Any]:
            refs = [ref for ref in dict.fromkeys(current.get("manufacturerRefs") or []) if ref != manufacturer_id]
            if present:
                refs.append(manufacturer_id)
            current["manufacturerRefs"] = refs
            return current

        await self.store.transact(CATEGORIES, category_id, _mutate)

    async def _remove_manufacturer_if_safe(self, category_id: str, manufacturer_id: str, product_id: str) -> None:
        if await self.can_remove_manufacturer_from_category(category_id, manufacturer_id, product_id):
            await self._set_category_manufacturer(category_id, manufacturer_id, present=False)
        else:
            logger.debug("Keeping manufacturer %s on category %s", manufacturer_id, category_id)

    async def apply_membership_diff(
        self,
        product_id: str,
        *,
        added: Iterable[MembershipTarget],
        removed: Iterable[MembershipTarget],
    ) -> list[tuple[str, BaseException]]:
        """Make ``product_id`` a member of ``added`` and not of ``removed``.

        Returns the failed edits; successful ones are not undone.
        """

        plan = _Plan()
        self._plan_membership(plan, product_id, set(added), set(removed))
        return await self._execute(plan)

    # --- safe-removal check ------------------------------------------------------

    async def can_remove_manufacturer_from_category(
        self,
        category_id: str,
        manufacturer_id: str,
        excluding_product_id: str,
    ) -> bool:
        """True when no other product in the category or its subcategories uses the manufacturer.

        A missing category raises ``NotFoundError``. Any other store failure is
        answered with the configured fallback (``fail_open``).
        """

        try:
            category = await self.store.get(CATEGORIES, category_id)
            if category is None:
                raise NotFoundError("category", category_id)
            subcategories = await self.store.query(
                SUBCATEGORIES, Filter("parentCategoryId", "==", category_id)
            )
            candidates: list[str] = []
            for document in [category, *subcategories]:
                candidates.extend(document.get("productRefs") or [])
            candidates = [pid for pid in dict.fromkeys(candidates) if pid != excluding_product_id]
            for chunk in chunked(candidates):
                products = await self.store.get_many(PRODUCTS, chunk)
                if any(doc.get("manufacturerRef") == manufacturer_id for doc in products.values()):
                    return False
            return True
        except NotFoundError:
            raise
        except Exception as exc:
            outcome = "removed" if self.fail_open else "kept"
            CATALOG_MANUFACTURER_CHECK_FALLBACKS_TOTAL.labels(outcome=outcome).inc()
            logger.warning(
                "Manufacturer check for %s on category %s failed (%s); fallback %s",
                manufacturer_id,
                category_id,
                exc,
                outcome,
            )
            return self.fail_open

    # --- planning -------------------------------------------------------------------

    def _plan_membership(
        self,
        plan: _Plan,
        product_id: str,
        added: set[MembershipTarget],
        removed: set[MembershipTarget],
    ) -> None:
        for target in sorted(added):
            plan.add(
                f"{target} membership",
                lambda target=target: self._set_membership(target, product_id, present=True),
            )
        for target in sorted(removed - added):
            plan.add(
                f"{target} membership",
                lambda target=target: self._set_membership(target, product_id, present=False),
            )

    def _plan_manufacturers(self, plan: _Plan, product_id: str, old: ProductState, new: ProductState) -> None:
        old_manufacturer, new_manufacturer = old.manufacturer_ref, new.manufacturer_ref
        old_parents, new_parents = old.parent_categories, new.parent_categories

        if old_manufacturer != new_manufacturer:
            gained = new_parents if new_manufacturer else set()
            lost = old_parents if old_manufacturer else set()
        else:
            gained = new_parents - old_parents if new_manufacturer else set()
            lost = old_parents - new_parents if old_manufacturer else set()

        for category_id in sorted(gained):
            plan.add(
                f"{CATEGORIES}/{category_id} manufacturer {new_manufacturer}",
                lambda category_id=category_id: self._set_category_manufacturer(
                    category_id, new_manufacturer, present=True
                ),
            )
        for category_id in sorted(lost):
            plan.add(
                f"{CATEGORIES}/{category_id} manufacturer {old_manufacturer}",
                lambda category_id=category_id: self._remove_manufacturer_if_safe(
                    category_id, old_manufacturer, product_id
                ),
            )

    def plan(self, product_id: str, old: ProductState, new: ProductState) -> list[str]:
        """Labels of the edits ``sync`` would run for this diff, for logging and tests."""

        plan = self._build_plan(product_id, old, new)
        return [label for label, _ in plan.edits]

    def _build_plan(self, product_id: str, old: ProductState, new: ProductState) -> _Plan:
        old_targets, new_targets = membership_targets(old), membership_targets(new)
        plan = _Plan()
        self._plan_membership(plan, product_id, new_targets - old_targets, old_targets - new_targets)
        self._plan_manufacturers(plan, product_id, old, new)
        return plan

    # --- execution ---------------------------------------------------------------

    async def _execute(self, plan: _Plan) -> list[tuple[str, BaseException]]:
        if not plan.edits:
            return []
        results = await asyncio.gather(*(action() for _, action in plan.edits), return_exceptions=True)
        failures: list[tuple[str, BaseException]] = []
        for (label, _), result in zip(plan.edits, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                CATALOG_REFERENCE_SYNC_FAILURES_TOTAL.labels(target=target_label(label.split("/", 1)[0])).inc()
                failures.append((label, result))
        return failures

    async def sync(
        self,
        product_id: str,
        old_state: ProductState | None,
        new_state: ProductState | None,
    ) -> None:
        """Bring the graph from ``old_state`` to ``new_state`` for one product.

        ``old_state=None`` is a create, ``new_state=None`` a delete. Raises
        ``ReferenceSyncError`` after every edit has been attempted if any failed.
        """

        old = old_state or ProductState()
        new = new_state or ProductState()
        plan = self._build_plan(product_id, old, new)
        with tracer.start_as_current_span("catalog.references.sync") as span:
            span.set_attribute("catalog.product_id", product_id)
            span.set_attribute("catalog.edit_count", len(plan.edits))
            failures = await self._execute(plan)
            span.set_attribute("catalog.failed_edits", len(failures))

        if failures:
            for label, exc in failures:
                logger.warning("Reference edit '%s' for product %s failed: %s", label, product_id, exc)
            raise ReferenceSyncError(product_id, old_state, new_state, failures)
        logger.debug("Reference graph synced for product %s (%d edits)", product_id, len(plan.edits))
