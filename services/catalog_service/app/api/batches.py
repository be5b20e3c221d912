"""HTTP routes for the batch ledger and stock summaries."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from ..dependencies import get_catalog_service, http_error
from ..errors import CatalogError
from ..schemas import (
    Batch,
    BatchAdjust,
    BatchCreate,
    BatchStatusUpdate,
    BatchUpdate,
    StockSummary,
    StockSummaryRequest,
)
from ..services import CatalogService

router = APIRouter(prefix="/batches", tags=["batches"])
stock_router = APIRouter(prefix="/stock", tags=["stock"])


@router.post("", response_model=Batch, status_code=status.HTTP_201_CREATED)
async def add_batch(
    payload: BatchCreate,
    service: CatalogService = Depends(get_catalog_service),
) -> Batch:
    try:
        return await service.add_batch(payload)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.get("/expiring", response_model=list[Batch])
async def expiring_batches(
    within_days: int | None = Query(default=None, ge=0, alias="withinDays"),
    service: CatalogService = Depends(get_catalog_service),
) -> list[Batch]:
    try:
        return await service.expiring_batches(within_days=within_days)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.get("/{batch_id}", response_model=Batch)
async def get_batch(
    batch_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> Batch:
    try:
        return await service.get_batch(batch_id)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.patch("/{batch_id}", response_model=Batch)
async def update_batch(
    batch_id: str,
    payload: BatchUpdate,
    service: CatalogService = Depends(get_catalog_service),
) -> Batch:
    try:
        return await service.update_batch(batch_id, payload)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.post("/{batch_id}/adjust", response_model=Batch)
async def adjust_batch(
    batch_id: str,
    payload: BatchAdjust,
    service: CatalogService = Depends(get_catalog_service),
) -> Batch:
    try:
        return await service.adjust_remaining(batch_id, payload.delta)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.post("/{batch_id}/status", response_model=Batch)
async def set_batch_status(
    batch_id: str,
    payload: BatchStatusUpdate,
    service: CatalogService = Depends(get_catalog_service),
) -> Batch:
    try:
        return await service.set_batch_status(batch_id, payload.status)
    except CatalogError as exc:
        raise http_error(exc) from exc


@router.delete("/{batch_id}", response_model=Batch)
async def remove_batch(
    batch_id: str,
    service: CatalogService = Depends(get_catalog_service),
) -> Batch:
    try:
        return await service.remove_batch(batch_id)
    except CatalogError as exc:
        raise http_error(exc) from exc


@stock_router.post("/summary", response_model=dict[str, StockSummary])
async def stock_summary(
    payload: StockSummaryRequest,
    service: CatalogService = Depends(get_catalog_service),
) -> dict[str, StockSummary]:
    return await service.aggregate_stock(payload.product_ids)
