"""Categories, subcategories and manufacturers.

Reference fields (``productRefs``, ``productCount``, ``manufacturerRefs``) start
empty here and are owned by the reference graph afterwards.
"""

from __future__ import annotations

import logging
import re

from .errors import NotFoundError, ValidationError
from .schemas import Category, Manufacturer, Subcategory
from .store import CATEGORIES, MANUFACTURERS, SUBCATEGORIES, DocumentStore, Filter

logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9 -]", "", name.lower())
    slug = re.sub(r"\s+", "-", slug)
    return re.sub(r"-+", "-", slug).strip()


class TaxonomyService:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get_category(self, category_id: str) -> Category:
        document = await self.store.get(CATEGORIES, category_id)
        if document is None:
            raise NotFoundError("category", category_id)
        return Category.model_validate(document)

    async def get_subcategory(self, subcategory_id: str) -> Subcategory:
        document = await self.store.get(SUBCATEGORIES, subcategory_id)
        if document is None:
            raise NotFoundError("subcategory", subcategory_id)
        return Subcategory.model_validate(document)

    async def get_manufacturer(self, manufacturer_id: str) -> Manufacturer:
        document = await self.store.get(MANUFACTURERS, manufacturer_id)
        if document is None:
            raise NotFoundError("manufacturer", manufacturer_id)
        return Manufacturer.model_validate(document)

    async def list_subcategories(self, category_id: str) -> list[Subcategory]:
        documents = await self.store.query(SUBCATEGORIES, Filter("parentCategoryId", "==", category_id))
        return [Subcategory.model_validate(doc) for doc in documents]

    async def create_category(self, name: str) -> Category:
        slug = slugify(name)
        if not slug:
            raise ValidationError(f"category name '{name}' does not produce a usable slug")
        if await self.store.query(CATEGORIES, Filter("slug", "==", slug)):
            raise ValidationError(f"category slug already in use: {slug}")
        category = Category(id="pending", name=name.strip(), slug=slug)
        category_id = await self.store.add(CATEGORIES, category.to_document())
        logger.info("Created category %s (%s)", category_id, slug)
        return category.model_copy(update={"id": category_id})

    async def create_subcategory(self, parent_category_id: str, name: str) -> Subcategory:
        await self.get_category(parent_category_id)
        slug = slugify(name)
        if not slug:
            raise ValidationError(f"subcategory name '{name}' does not produce a usable slug")
        if any(sub.slug == slug for sub in await self.list_subcategories(parent_category_id)):
            raise ValidationError(f"subcategory slug already in use under {parent_category_id}: {slug}")
        subcategory = Subcategory(id="pending", name=name.strip(), slug=slug, parent_category_id=parent_category_id)
        subcategory_id = await self.store.add(SUBCATEGORIES, subcategory.to_document())
        logger.info("Created subcategory %s under %s", subcategory_id, parent_category_id)
        return subcategory.model_copy(update={"id": subcategory_id})

    async def create_manufacturer(self, name: str) -> Manufacturer:
        cleaned = name.strip()
        if not cleaned:
            raise ValidationError("manufacturer name must be non-empty")
        existing = await self.store.query(MANUFACTURERS)
        if any(str(doc.get("name", "")).casefold() == cleaned.casefold() for doc in existing):
            raise ValidationError(f"manufacturer already exists: {cleaned}")
        manufacturer = Manufacturer(id="pending", name=cleaned)
        manufacturer_id = await self.store.add(MANUFACTURERS, manufacturer.to_document())
        logger.info("Created manufacturer %s (%s)", manufacturer_id, cleaned)
        return manufacturer.model_copy(update={"id": manufacturer_id})

    async def delete_category(self, category_id: str) -> None:
        category = await self.get_category(category_id)
        if await self.list_subcategories(category_id):
            raise ValidationError(f"category {category_id} still has subcategories")
        if category.product_refs:
            raise ValidationError(f"category {category_id} still has {len(category.product_refs)} products")
        await self.store.delete(CATEGORIES, category_id)
        logger.info("Deleted category %s", category_id)

    async def delete_manufacturer(self, manufacturer_id: str) -> None:
        manufacturer = await self.get_manufacturer(manufacturer_id)
        if manufacturer.product_count > 0:
            raise ValidationError(
                f"manufacturer {manufacturer_id} is still referenced by {manufacturer.product_count} products"
            )
        await self.store.delete(MANUFACTURERS, manufacturer_id)
        logger.info("Deleted manufacturer %s", manufacturer_id)
