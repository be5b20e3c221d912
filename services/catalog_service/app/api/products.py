"""HTTP routes for catalog product management."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ..dependencies import get_catalog_service, http_error
from ..errors import CatalogError, ReferenceSyncError
from ..schemas import (
    DiscountBadgeResponse,
    Product,
    ProductCreate,
    ProductDeleteResponse,
    ProductUpdate,
    ProductWriteResponse,
    StockSummary,
)
from ..services import CatalogService

router = APIRouter(prefix="/products", tags=["products"])


def _with_warnings(exc: ReferenceSyncError) -> ProductWriteResponse:
    return ProductWriteResponse(product=exc.product, warnings=exc.warnings)


@router.post("", response_model=ProductWriteResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreate,
    service: CatalogService = Depends(get_catalog_service),
) -> ProductWriteResponse:
    try:
        product = await service.create_product(payload)
    except ReferenceSyncError as exc:
        return _with_warnings(exc)
    except CatalogError as exc:
        raise http_error(exc) from exc
    return ProductWriteResponse(product=product)


@router.get("/{product_id}", response_model=Product)
async def get_product(
    product_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> Product:
    try:
        return await service.get_product(product_id)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.patch("/{product_id}", response_model=ProductWriteResponse)
async def update_product(
    product_id: str,
    payload: ProductUpdate,
    service: CatalogService = Depends(get_catalog_service),
) -> ProductWriteResponse:
    try:
        product = await service.update_product(product_id, payload)
    except ReferenceSyncError as exc:
        return _with_warnings(exc)
    except CatalogError as exc:
        raise http_error(exc) from exc
    return ProductWriteResponse(product=product)


@router.delete("/{product_id}", response_model=ProductDeleteResponse)
async def delete_product(
    product_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> ProductDeleteResponse:
    try:
        await service.delete_product(product_id)
    except ReferenceSyncError as exc:
        return ProductDeleteResponse(product_id=product_id, warnings=exc.warnings)
    except CatalogError as exc:
        raise http_error(exc) from exc
    return ProductDeleteResponse(product_id=product_id)


@router.post("/{product_id}/repair-references", response_model=ProductWriteResponse)
async def repair_references(
    product_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> ProductWriteResponse:
    try:
        product = await service.repair_references(product_id)
    except ReferenceSyncError as exc:
        return _with_warnings(exc)
    except CatalogError as exc:
        raise http_error(exc) from exc
    return ProductWriteResponse(product=product)


@router.get("/{product_id}/stock", response_model=StockSummary)
async def product_stock(
    product_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> StockSummary:
    try:
        await service.get_product(product_id)
        return await service.aggregate_stock(product_id)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.get("/{product_id}/discount-badge", response_model=DiscountBadgeResponse)
async def discount_badge(
    product_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> DiscountBadgeResponse:
    try:
        percentage = await service.highest_valid_percentage(product_id)
    except CatalogError as exc:
        raise http_error(exc) from exc
    return DiscountBadgeResponse(product_id=product_id, percentage=percentage)
