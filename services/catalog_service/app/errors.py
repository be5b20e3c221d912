"""Catalog domain errors.

Every failure the catalog core reports is a subclass of :class:`CatalogError`
so the HTTP layer can translate them uniformly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .references import ProductState


class CatalogError(Exception):
    """Base class for catalog errors."""


class ValidationError(CatalogError):
    """Malformed input; raised before anything is written."""


class NotFoundError(CatalogError):
    """A referenced product, batch, category, manufacturer or discount is missing."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class InsufficientStockError(CatalogError):
    """A batch adjustment would drive the remaining quantity below zero."""

    def __init__(self, batch_id: str, remaining: int, delta: int) -> None:
        super().__init__(
            f"Insufficient quantity in batch {batch_id} (remaining {remaining}, change {delta})"
        )
        self.batch_id = batch_id
        self.remaining = remaining
        self.delta = delta


class ReferenceSyncError(CatalogError):
    """Reference-graph edits failed after the product write was committed.

    The product write stands. ``old_state``/``new_state`` are everything needed
    to replay the same diff once the store is healthy again.
    """

    def __init__(
        self,
        product_id: str,
        old_state: ProductState | None,
        new_state: ProductState | None,
        failures: Sequence[tuple[str, BaseException]],
    ) -> None:
        targets = ", ".join(target for target, _ in failures)
        super().__init__(f"Reference sync incomplete for product {product_id}: {targets}")
        self.product_id = product_id
        self.old_state = old_state
        self.new_state = new_state
        self.failures = list(failures)
        self.product: Any = None

    @property
    def warnings(self) -> list[str]:
        return [f"{target}: {exc}" for target, exc in self.failures]


class DiscountConflictError(CatalogError):
    """A capped discount cannot be redeemed again.

    Not raised when a product or order simply has no valid discount; that is an
    empty result.
    """
