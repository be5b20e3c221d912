"""Order price quoting and readable order ids."""

from __future__ import annotations

import asyncio
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from .discounts import DiscountResolver, apply_to_price, discount_amount
from .errors import NotFoundError, ValidationError
from .schemas import ZERO, OrderQuote, QuoteLine, ensure_utc
from .store import PRODUCTS, DocumentStore, chunked

ORDER_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_id(now: datetime | None = None) -> str:
    """``YYMMDD-XXX`` with a random uppercase alphanumeric suffix, e.g. ``241128-A3F``."""

    moment = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(ORDER_ID_ALPHABET) for _ in range(3))
    return f"{moment:%y%m%d}-{suffix}"


class OrderPricing:
    def __init__(self, store: DocumentStore, resolver: DiscountResolver | None = None) -> None:
        self.store = store
        self.resolver = resolver or DiscountResolver(store)

    async def _products(self, product_ids: list[str]) -> dict[str, dict[str, Any]]:
        products: dict[str, dict[str, Any]] = {}
        for chunk in chunked(product_ids):
            products.update(await self.store.get_many(PRODUCTS, chunk))
        for product_id in product_ids:
            if product_id not in products:
                raise NotFoundError("product", product_id)
        return products

    async def quote(
        self,
        lines: Iterable[tuple[str, int]],
        *,
        delivery_fee: Decimal = ZERO,
        now: datetime | None = None,
    ) -> OrderQuote:
        """Price an order.

        Each line's unit price has its best product/category discount baked in,
        so ``subtotal`` is already net of line discounts. ``total_discount`` is
        the line discounts plus the order-level discount taken off ``subtotal``,
        and ``total = max(0, subtotal - total_discount + delivery_fee)``.
        """

        requested = list(lines)
        if not requested:
            raise ValidationError("an order needs at least one line")
        for product_id, quantity in requested:
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError(f"quantity for product {product_id} must be a positive integer")
        fee = Decimal(str(delivery_fee))
        if fee < ZERO:
            raise ValidationError("delivery fee must be non-negative")
        moment = ensure_utc(now) if now is not None else datetime.now(timezone.utc)

        product_ids = list(dict.fromkeys(product_id for product_id, _ in requested))
        products = await self._products(product_ids)
        list_prices = {pid: Decimal(str(products[pid].get("price") or "0")) for pid in product_ids}
        best = await asyncio.gather(
            *(self.resolver.best_product_discount(pid, list_prices[pid], moment) for pid in product_ids)
        )
        line_discounts = dict(zip(product_ids, best))

        quote_lines: list[QuoteLine] = []
        for product_id, quantity in requested:
            list_price = list_prices[product_id]
            discount = line_discounts[product_id]
            unit_price = apply_to_price(discount, list_price) if discount is not None else list_price
            quote_lines.append(
                QuoteLine(
                    product_id=product_id,
                    quantity=quantity,
                    list_price=list_price,
                    unit_price=unit_price,
                    discount_id=discount.id if discount is not None else None,
                    line_discount=(list_price - unit_price) * quantity,
                    line_total=unit_price * quantity,
                )
            )

        subtotal = sum((line.line_total for line in quote_lines), ZERO)
        line_discount_total = sum((line.line_discount for line in quote_lines), ZERO)
        order_discount = await self.resolver.best_order_level_discount(subtotal, moment)
        order_amount = discount_amount(order_discount, subtotal) if order_discount is not None else ZERO
        total_discount = line_discount_total + order_amount

        return OrderQuote(
            lines=quote_lines,
            subtotal=subtotal,
            line_discount_total=line_discount_total,
            order_discount_id=order_discount.id if order_discount is not None else None,
            order_discount=order_amount,
            total_discount=total_discount,
            delivery_fee=fee,
            total=max(ZERO, subtotal - total_discount + fee),
        )
