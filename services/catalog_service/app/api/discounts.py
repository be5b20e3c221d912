"""HTTP routes for discounts and order quotes."""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Response, status

from ..dependencies import get_catalog_service, http_error
from ..errors import CatalogError
from ..schemas import (
    Discount,
    DiscountActiveUpdate,
    DiscountCreate,
    DiscountUpdate,
    DiscountUsageRequest,
    DiscountUsageResponse,
    OrderQuote,
    OrderQuoteRequest,
)
from ..services import CatalogService

router = APIRouter(prefix="/discounts", tags=["discounts"])
orders_router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=Discount, status_code=status.HTTP_201_CREATED)
async def create_discount(
    payload: DiscountCreate,
    service: CatalogService = Depends(get_catalog_service),
) -> Discount:
    try:
        return await service.create_discount(payload)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.get("/order-level", response_model=Discount | None)
async def order_level_discount(
    subtotal: Decimal = Query(ge=0),
    service: CatalogService = Depends(get_catalog_service),
) -> Discount | None:
    return await service.best_order_level_discount(subtotal)


@router.get("/{discount_id}", response_model=Discount)
async def get_discount(
    discount_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> Discount:
    try:
        return await service.get_discount(discount_id)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.patch("/{discount_id}", response_model=Discount)
async def update_discount(
    discount_id: str,
    payload: DiscountUpdate,
    service: CatalogService = Depends(get_catalog_service),
) -> Discount:
    try:
        return await service.update_discount(discount_id, payload)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.post("/{discount_id}/active", response_model=Discount)
async def set_discount_active(
    discount_id: str,
    payload: DiscountActiveUpdate,
    service: CatalogService = Depends(get_catalog_service),
) -> Discount:
    try:
        return await service.set_discount_active(discount_id, payload.is_active)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.delete("/{discount_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_discount(
    discount_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> Response:
    try:
        await service.delete_discount(discount_id)
    except CatalogError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{discount_id}/usage", response_model=DiscountUsageResponse)
async def record_usage(
    discount_id: str,
    payload: DiscountUsageRequest,
    service: CatalogService = Depends(get_catalog_service),
) -> DiscountUsageResponse:
    try:
        recorded = await service.record_discount_usage(discount_id, payload.order_id, payload.customer_id)
    except CatalogError as exc:
        raise http_error(exc) from exc
    return DiscountUsageResponse(discount_id=discount_id, order_id=payload.order_id, recorded=recorded)


@orders_router.post("/quote", response_model=OrderQuote)
async def quote_order(
    payload: OrderQuoteRequest,
    service: CatalogService = Depends(get_catalog_service),
) -> OrderQuote:
    lines = [(line.product_id, line.quantity) for line in payload.lines]
    try:
        return await service.quote_order(lines, delivery_fee=payload.delivery_fee)
    except CatalogError as exc:
        raise http_error(exc) from exc
