from contextlib import asynccontextmanager

from fastapi import FastAPI

from services.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    configure_logging,
    create_schema,
    dispose_engines,
    flush_tracing,
    get_session_factory,
    resolve_database_url,
)

from .api.batches import router as batches_router
from .api.batches import stock_router
from .api.discounts import orders_router
from .api.discounts import router as discounts_router
from .api.health import router as health_router
from .api.products import router as products_router
from .api.taxonomy import categories_router, manufacturers_router
from .models import Base
from .services import CatalogService
from .store import SqlDocumentStore

SERVICE_NAME = "Catalog Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./catalog_service.db"


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create the Catalog Service FastAPI application."""

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await create_schema(database_url, Base.metadata)
        store = SqlDocumentStore(get_session_factory(database_url))
        app.state.catalog_service = CatalogService(
            store,
            fail_open=resolved_settings.reference_check_fail_open,
            expiring_window_days=resolved_settings.expiring_batch_window_days,
        )
        try:
            yield
        finally:
            await dispose_engines()
            flush_tracing()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(products_router)
    app.include_router(batches_router)
    app.include_router(stock_router)
    app.include_router(categories_router)
    app.include_router(manufacturers_router)
    app.include_router(discounts_router)
    app.include_router(orders_router)
    return app


app = create_app()
