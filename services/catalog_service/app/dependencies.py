"""Dependency wiring for the catalog service."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from .errors import CatalogError, DiscountConflictError, InsufficientStockError, NotFoundError
from .services import CatalogService


def get_catalog_service(request: Request) -> CatalogService:
    """Return the catalog service created for the application lifespan."""

    return request.app.state.catalog_service


def http_error(exc: CatalogError) -> HTTPException:
    """Translate a catalog error into the HTTP status callers expect."""

    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InsufficientStockError, DiscountConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
