"""HTTP routes for categories, subcategories and manufacturers."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from ..dependencies import get_catalog_service, http_error
from ..errors import CatalogError
from ..schemas import Category, Manufacturer, NameCreate, Subcategory
from ..services import CatalogService

categories_router = APIRouter(prefix="/categories", tags=["categories"])
manufacturers_router = APIRouter(prefix="/manufacturers", tags=["manufacturers"])


@categories_router.post("", response_model=Category, status_code=status.HTTP_201_CREATED)
async def create_category(
    payload: NameCreate,
    service: CatalogService = Depends(get_catalog_service),
) -> Category:
    try:
        return await service.taxonomy.create_category(payload.name)
    except CatalogError as exc:
        raise http_error(exc) from exc


@categories_router.get("/{category_id}", response_model=Category)
async def get_category(
    category_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> Category:
    try:
        return await service.taxonomy.get_category(category_id)
    except CatalogError as exc:
        raise http_error(exc) from exc


@categories_router.post(
    "/{category_id}/subcategories",
    response_model=Subcategory,
    status_code=status.HTTP_201_CREATED,
)
async def create_subcategory(
    category_id: str,
    payload: NameCreate,
    service: CatalogService = Depends(get_catalog_service),
) -> Subcategory:
    try:
        return await service.taxonomy.create_subcategory(category_id, payload.name)
    except CatalogError as exc:
        raise http_error(exc) from exc


@categories_router.delete("/{category_id}")
async def delete_category(
    category_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> Response:
    try:
        await service.taxonomy.delete_category(category_id)
    except CatalogError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@manufacturers_router.post("", response_model=Manufacturer, status_code=status.HTTP_201_CREATED)
async def create_manufacturer(
    payload: NameCreate,
    service: CatalogService = Depends(get_catalog_service),
) -> Manufacturer:
    try:
        return await service.taxonomy.create_manufacturer(payload.name)
    except CatalogError as exc:
        raise http_error(exc) from exc


@manufacturers_router.get("/{manufacturer_id}", response_model=Manufacturer)
async def get_manufacturer(
    manufacturer_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> Manufacturer:
    try:
        return await service.taxonomy.get_manufacturer(manufacturer_id)
    except CatalogError as exc:
        raise http_error(exc) from exc


@manufacturers_router.delete("/{manufacturer_id}")
async def delete_manufacturer(
    manufacturer_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> Response:
    try:
        await service.taxonomy.delete_manufacturer(manufacturer_id)
    except CatalogError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
