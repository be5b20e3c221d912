#!/usr/bin/env python3
"""Replay pending reference-sync work for catalog products.

Products whose category/manufacturer bookkeeping could not be fully written
carry a ``referenceSync`` marker. This script either calls the running catalog
service (``--base-url``) for the given product ids, or opens the catalog
database directly and repairs every product that still has a marker.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from typing import Any, Sequence

import httpx

from services.catalog_service.app.errors import CatalogError, ReferenceSyncError
from services.catalog_service.app.main import DEFAULT_DATABASE_URL
from services.catalog_service.app.models import Base
from services.catalog_service.app.services import CatalogService
from services.catalog_service.app.store import PRODUCTS, Filter, SqlDocumentStore
from services.common import create_schema, dispose_engines, get_session_factory


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Repair catalog reference bookkeeping for products")
    parser.add_argument(
        "product_ids",
        nargs="*",
        help="Products to repair (default: every product with a pending referenceSync marker; database mode only)",
    )
    parser.add_argument(
        "--base-url",
        default=os.getenv("CATALOG_BASE_URL"),
        help="Catalog service URL; when set, repairs go through the HTTP API (default: CATALOG_BASE_URL)",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("SERVICE_DATABASE_URL", DEFAULT_DATABASE_URL),
        help="Catalog database used when no base URL is given (default: %(default)s or SERVICE_DATABASE_URL)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="HTTP timeout in seconds (default: %(default)s)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List products with pending markers without repairing them (database mode only)",
    )
    return parser.parse_args()


async def _repair_over_http(base_url: str, product_ids: Sequence[str], timeout: float) -> dict[str, Any]:
    results: dict[str, Any] = {}
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        for product_id in product_ids:
            response = await client.post(f"/products/{product_id}/repair-references")
            if response.status_code != 200:
                results[product_id] = {"status": response.status_code, "error": response.text}
                continue
            results[product_id] = {"status": 200, "warnings": response.json().get("warnings", [])}
    return {"mode": "http", "base_url": base_url, "results": results}


async def _pending_product_ids(store: SqlDocumentStore) -> list[str]:
    documents = await store.query(PRODUCTS, Filter("referenceSync", "!=", None))
    return sorted(document["id"] for document in documents)


async def _repair_in_database(database_url: str, product_ids: Sequence[str], dry_run: bool) -> dict[str, Any]:
    await create_schema(database_url, Base.metadata)
    store = SqlDocumentStore(get_session_factory(database_url))
    service = CatalogService(store)
    targets = list(product_ids) or await _pending_product_ids(store)
    if dry_run:
        return {"mode": "database", "dry_run": True, "pending": targets}

    results: dict[str, Any] = {}
    for product_id in targets:
        try:
            await service.repair_references(product_id)
        except ReferenceSyncError as exc:
            results[product_id] = {"repaired": False, "warnings": exc.warnings}
        except CatalogError as exc:
            results[product_id] = {"repaired": False, "error": str(exc)}
        else:
            results[product_id] = {"repaired": True}
    return {"mode": "database", "dry_run": False, "results": results}


async def main_async() -> int:
    args = parse_args()
    if args.base_url:
        if not args.product_ids:
            raise SystemExit("product ids are required when repairing through the HTTP API")
        report = await _repair_over_http(args.base_url, args.product_ids, args.timeout)
    else:
        try:
            report = await _repair_in_database(args.database_url, args.product_ids, args.dry_run)
        finally:
            await dispose_engines()

    print(json.dumps(report, indent=2, sort_keys=True))
    failed = [
        product_id
        for product_id, result in report.get("results", {}).items()
        if not result.get("repaired", result.get("status") == 200) or result.get("warnings")
    ]
    return 1 if failed else 0


def main() -> None:
    try:
        exit_code = asyncio.run(main_async())
    except Exception as exc:
        print(json.dumps({"error": str(exc)}))
        exit_code = 1
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
