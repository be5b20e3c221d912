"""Batch ledger: dated stock lots per product.

The ledger owns ``remainingQuantity`` and ``status``. It never recomputes
product prices itself; whoever mutates the ledger follows up with
``StockAggregator.recompute_price``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import InsufficientStockError, NotFoundError, ValidationError
from .metrics import CATALOG_STOCK_REJECTIONS_TOTAL
from .schemas import Batch, BatchStatus, BatchUpdate, ensure_utc
from .store import BATCHES, PRODUCTS, DocumentStore, Filter

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[str, set[str]] = {
    "active": {"expired", "recalled"},
    "expired": set(),
    "recalled": set(),
}

_UPDATE_KEYS: dict[str, str] = {
    "batch_code": "batchCode",
    "quantity": "quantity",
    "remaining_quantity": "remainingQuantity",
    "price": "price",
    "manufacturing_date": "manufacturingDate",
    "expiry_date": "expiryDate",
    "supplier": "supplier",
    "location": "location",
    "notes": "notes",
}
_REQUIRED_UPDATE_FIELDS = {"quantity", "remaining_quantity", "price", "manufacturing_date", "expiry_date"}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_price(value: Any) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"invalid batch price: {value!r}") from exc
    if not price.is_finite() or price < 0:
        raise ValidationError("batch price must be a non-negative amount")
    return price


def _to_batch(document: dict[str, Any]) -> Batch:
    return Batch.model_validate(document)


class BatchLedger:
    """Create, adjust, retire and remove batches."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def add_batch(
        self,
        product_id: str,
        *,
        quantity: int,
        price: Decimal | int | float | str,
        manufacturing_date: datetime,
        expiry_date: datetime,
        batch_code: str | None = None,
        supplier: str | None = None,
        location: str | None = None,
        notes: str | None = None,
    ) -> Batch:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("batch quantity must be a positive integer")
        unit_price = _as_price(price)
        manufactured = ensure_utc(manufacturing_date)
        expires = ensure_utc(expiry_date)
        if expires <= manufactured:
            raise ValidationError("expiry date must be after the manufacturing date")
        code = batch_code.strip() if batch_code else None
        if code and await self.find_by_code(code) is not None:
            raise ValidationError(f"batch code already in use: {code}")
        if await self.store.get(PRODUCTS, product_id) is None:
            raise NotFoundError("product", product_id)

        now = _now_utc()
        payload = Batch(
            id="pending",
            batch_code=code,
            product_id=product_id,
            manufacturing_date=manufactured,
            expiry_date=expires,
            quantity=quantity,
            remaining_quantity=quantity,
            price=unit_price,
            status="active",
            supplier=supplier,
            location=location,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        batch_id = await self.store.add(BATCHES, payload.to_document())
        logger.info("Added batch %s for product %s (qty=%s, price=%s)", batch_id, product_id, quantity, unit_price)
        return payload.model_copy(update={"id": batch_id})

    async def get_batch(self, batch_id: str) -> Batch:
        document = await self.store.get(BATCHES, batch_id)
        if document is None:
            raise NotFoundError("batch", batch_id)
        return _to_batch(document)

    async def find_by_code(self, batch_code: str) -> Batch | None:
        documents = await self.store.query(BATCHES, Filter("batchCode", "==", batch_code))
        return _to_batch(documents[0]) if documents else None

    async def list_for_product(self, product_id: str) -> list[Batch]:
        documents = await self.store.query(BATCHES, Filter("productId", "==", product_id))
        return sorted((_to_batch(doc) for doc in documents), key=lambda batch: batch.expiry_date)

    async def list_for_products(self, product_ids: list[str]) -> list[Batch]:
        """Batches of up to one store "IN" chunk of products."""

        if not product_ids:
            return []
        documents = await self.store.query(BATCHES, Filter("productId", "in", product_ids))
        return [_to_batch(doc) for doc in documents]

    async def adjust_remaining(self, batch_id: str, delta: int) -> Batch:
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("quantity change must be an integer")

        def _apply(current: dict[str, Any]) -> dict[str, Any]:
            remaining = int(current.get("remainingQuantity", 0))
            updated = remaining + delta
            if updated < 0:
                CATALOG_STOCK_REJECTIONS_TOTAL.labels(reason="insufficient").inc()
                raise InsufficientStockError(batch_id, remaining, delta)
            if updated > int(current.get("quantity", 0)):
                CATALOG_STOCK_REJECTIONS_TOTAL.labels(reason="over_quantity").inc()
                raise ValidationError(
                    f"remaining quantity {updated} would exceed batch quantity {current.get('quantity')}"
                )
            current["remainingQuantity"] = updated
            current["updatedAt"] = _now_utc().isoformat()
            return current

        document = await self.store.transact(BATCHES, batch_id, _apply)
        return _to_batch(document)

    async def set_status(self, batch_id: str, status: BatchStatus) -> Batch:
        if status not in _TRANSITIONS:
            raise ValidationError(f"unknown batch status: {status}")

        def _transition(current: dict[str, Any]) -> dict[str, Any]:
            previous = current.get("status", "active")
            if previous == status:
                return current
            if status not in _TRANSITIONS.get(previous, set()):
                raise ValidationError(f"cannot move batch {batch_id} from {previous} to {status}")
            current["status"] = status
            current["updatedAt"] = _now_utc().isoformat()
            return current

        document = await self.store.transact(BATCHES, batch_id, _transition)
        return _to_batch(document)

    async def update_batch(self, batch_id: str, payload: BatchUpdate) -> Batch:
        """Correct a lot's recorded details.

        The merged lot must still satisfy ``expiry > manufacturing``,
        ``0 <= remaining <= quantity`` and ``price >= 0``; otherwise nothing is
        written. Status changes go through ``set_status``.
        """

        provided = payload.model_fields_set
        changes: dict[str, Any] = {}
        for name in provided & _REQUIRED_UPDATE_FIELDS:
            if getattr(payload, name) is None:
                raise ValidationError(f"{name} cannot be null")
        for name, key in _UPDATE_KEYS.items():
            if name not in provided:
                continue
            value = getattr(payload, name)
            if name == "price":
                value = str(_as_price(value))
            elif isinstance(value, datetime):
                value = ensure_utc(value).isoformat()
            elif name == "batch_code" and value is not None:
                value = value.strip() or None
            changes[key] = value

        code = changes.get("batchCode")
        if code:
            holder = await self.find_by_code(code)
            if holder is not None and holder.id != batch_id:
                raise ValidationError(f"batch code already in use: {code}")

        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            merged = {**current, **changes}
            batch = _to_batch(merged)
            if batch.expiry_date <= batch.manufacturing_date:
                raise ValidationError("expiry date must be after the manufacturing date")
            if batch.quantity <= 0:
                raise ValidationError("batch quantity must be a positive integer")
            if not 0 <= batch.remaining_quantity <= batch.quantity:
                raise ValidationError(
                    f"remaining quantity {batch.remaining_quantity} must be between 0 and {batch.quantity}"
                )
            merged["updatedAt"] = _now_utc().isoformat()
            return merged

        document = await self.store.transact(BATCHES, batch_id, _merge)
        logger.info("Updated batch %s (%s)", batch_id, ", ".join(sorted(changes)) or "no changes")
        return _to_batch(document)

    async def remove_batch(self, batch_id: str) -> Batch:
        batch = await self.get_batch(batch_id)
        if not await self.store.delete(BATCHES, batch_id):
            raise NotFoundError("batch", batch_id)
        logger.info("Removed batch %s of product %s", batch_id, batch.product_id)
        return batch

    async def expiring_batches(self, *, within_days: int = 30, now: datetime | None = None) -> list[Batch]:
        """Active batches that are not yet expired but expire within ``within_days``."""

        if within_days < 0:
            raise ValidationError("within_days must be non-negative")
        moment = ensure_utc(now) if now is not None else _now_utc()
        threshold = moment + timedelta(days=within_days)
        documents = await self.store.query(BATCHES, Filter("status", "==", "active"))
        batches = [_to_batch(doc) for doc in documents]
        return sorted(
            (batch for batch in batches if moment <= batch.expiry_date <= threshold),
            key=lambda batch: batch.expiry_date,
        )
