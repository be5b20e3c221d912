"""Pydantic schemas for catalog documents and request/response payloads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

BatchStatus = Literal["active", "expired", "recalled"]
DiscountType = Literal["percentage", "fixed"]
DiscountScope = Literal["product", "category", "order"]
LimitationType = Literal["unlimited", "n_times_only", "n_times_per_customer"]

ZERO = Decimal("0")


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class CategoryRef:
    """A product's category membership: ``"cat"`` or ``"cat/sub"``."""

    category_id: str
    subcategory_id: str | None = None

    @classmethod
    def parse(cls, raw: str) -> CategoryRef:
        parts = [part.strip() for part in raw.split("/")]
        if len(parts) > 2 or not all(parts):
            msg = f"invalid category reference '{raw}'"
            raise ValueError(msg)
        if len(parts) == 1:
            return cls(parts[0])
        return cls(parts[0], parts[1])

    @property
    def is_subcategory(self) -> bool:
        return self.subcategory_id is not None

    def __str__(self) -> str:
        if self.subcategory_id is None:
            return self.category_id
        return f"{self.category_id}/{self.subcategory_id}"


def _normalize_category_refs(value: list[str]) -> list[str]:
    cleaned: list[str] = []
    for raw in value:
        ref = str(CategoryRef.parse(raw))
        if ref not in cleaned:
            cleaned.append(ref)
    return cleaned


def _clean_name(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        msg = "name must be non-empty"
        raise ValueError(msg)
    return cleaned


class CatalogDocument(BaseModel):
    id: str

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"id"})


class Product(CatalogDocument):
    name: str
    description: str | None = None
    category_refs: list[str] = Field(default_factory=list, alias="categoryRefs")
    manufacturer_ref: str | None = Field(default=None, alias="manufacturerRef")
    price: Decimal = ZERO
    discount_refs: list[str] = Field(default_factory=list, alias="discountRefs")
    is_active: bool = Field(default=True, alias="isActive")
    reference_sync: dict[str, Any] | None = Field(default=None, alias="referenceSync")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @property
    def parsed_category_refs(self) -> list[CategoryRef]:
        return [CategoryRef.parse(ref) for ref in self.category_refs]


class Category(CatalogDocument):
    name: str
    slug: str = ""
    product_refs: list[str] = Field(default_factory=list, alias="productRefs")
    product_count: int = Field(default=0, alias="productCount")
    manufacturer_refs: list[str] = Field(default_factory=list, alias="manufacturerRefs")


class Subcategory(CatalogDocument):
    name: str
    slug: str = ""
    parent_category_id: str = Field(alias="parentCategoryId")
    product_refs: list[str] = Field(default_factory=list, alias="productRefs")
    product_count: int = Field(default=0, alias="productCount")


class Manufacturer(CatalogDocument):
    name: str
    product_refs: list[str] = Field(default_factory=list, alias="productRefs")
    product_count: int = Field(default=0, alias="productCount")


class Batch(CatalogDocument):
    batch_code: str | None = Field(default=None, alias="batchCode")
    product_id: str = Field(alias="productId")
    manufacturing_date: datetime = Field(alias="manufacturingDate")
    expiry_date: datetime = Field(alias="expiryDate")
    quantity: int
    remaining_quantity: int = Field(alias="remainingQuantity")
    price: Decimal
    status: BatchStatus = "active"
    supplier: str | None = None
    location: str | None = None
    notes: str | None = None
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @field_validator("manufacturing_date", "expiry_date")
    @classmethod
    def _utc_dates(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class Discount(CatalogDocument):
    name: str
    description: str | None = None
    type: DiscountType
    value: Decimal
    scope: DiscountScope
    targets: list[str] = Field(default_factory=list)
    min_purchase_amount: Decimal | None = Field(default=None, alias="minPurchaseAmount")
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")
    is_active: bool = Field(default=True, alias="isActive")
    limitation_type: LimitationType = Field(default="unlimited", alias="limitationType")
    limitation_times: int | None = Field(default=None, alias="limitationTimes")
    current_usage_count: int = Field(default=0, alias="currentUsageCount")
    usage_by_customer: dict[str, int] = Field(default_factory=dict, alias="usageByCustomer")
    usage_order_ids: list[str] = Field(default_factory=list, alias="usageOrderIds")

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc_dates(cls, value: datetime) -> datetime:
        return ensure_utc(value)


# --- Request payloads ---------------------------------------------------------


class ProductCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    category_refs: list[str] = Field(default_factory=list, alias="categoryRefs")
    manufacturer_ref: str | None = Field(default=None, alias="manufacturerRef")
    discount_refs: list[str] = Field(default_factory=list, alias="discountRefs")
    is_active: bool = Field(default=True, alias="isActive")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _clean_name(value)

    @field_validator("category_refs")
    @classmethod
    def _validate_category_refs(cls, value: list[str]) -> list[str]:
        return _normalize_category_refs(value)

    @field_validator("manufacturer_ref")
    @classmethod
    def _blank_manufacturer(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("discount_refs")
    @classmethod
    def _dedupe_discounts(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(item.strip() for item in value if item.strip()))


class ProductUpdate(BaseModel):
    """Partial update; only fields present in the payload are applied."""

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    category_refs: list[str] | None = Field(default=None, alias="categoryRefs")
    manufacturer_ref: str | None = Field(default=None, alias="manufacturerRef")
    discount_refs: list[str] | None = Field(default=None, alias="discountRefs")
    is_active: bool | None = Field(default=None, alias="isActive")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _clean_name(value)

    @field_validator("category_refs")
    @classmethod
    def _validate_category_refs(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return _normalize_category_refs(value)

    @field_validator("manufacturer_ref")
    @classmethod
    def _blank_manufacturer(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("discount_refs")
    @classmethod
    def _dedupe_discounts(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return list(dict.fromkeys(item.strip() for item in value if item.strip()))


class BatchCreate(BaseModel):
    product_id: str = Field(alias="productId")
    quantity: int
    price: Decimal
    manufacturing_date: datetime = Field(alias="manufacturingDate")
    expiry_date: datetime = Field(alias="expiryDate")
    batch_code: str | None = Field(default=None, alias="batchCode")
    supplier: str | None = None
    location: str | None = None
    notes: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class BatchUpdate(BaseModel):
    """Correction of a lot's recorded details; only fields present are applied."""

    batch_code: str | None = Field(default=None, alias="batchCode")
    quantity: int | None = None
    remaining_quantity: int | None = Field(default=None, alias="remainingQuantity")
    price: Decimal | None = None
    manufacturing_date: datetime | None = Field(default=None, alias="manufacturingDate")
    expiry_date: datetime | None = Field(default=None, alias="expiryDate")
    supplier: str | None = None
    location: str | None = None
    notes: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class BatchAdjust(BaseModel):
    delta: int


class BatchStatusUpdate(BaseModel):
    status: BatchStatus


class NameCreate(BaseModel):
    name: str = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _clean_name(value)


class DiscountCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    type: DiscountType
    value: Decimal
    scope: DiscountScope
    targets: list[str] = Field(default_factory=list)
    min_purchase_amount: Decimal | None = Field(default=None, alias="minPurchaseAmount")
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")
    is_active: bool = Field(default=True, alias="isActive")
    limitation_type: LimitationType = Field(default="unlimited", alias="limitationType")
    limitation_times: int | None = Field(default=None, alias="limitationTimes")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc_dates(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("targets")
    @classmethod
    def _dedupe_targets(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(item.strip() for item in value if item.strip()))


class DiscountUpdate(BaseModel):
    """Partial edit of a discount definition; usage counters are not editable."""

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    type: DiscountType | None = None
    value: Decimal | None = None
    scope: DiscountScope | None = None
    targets: list[str] | None = None
    min_purchase_amount: Decimal | None = Field(default=None, alias="minPurchaseAmount")
    start_date: datetime | None = Field(default=None, alias="startDate")
    end_date: datetime | None = Field(default=None, alias="endDate")
    is_active: bool | None = Field(default=None, alias="isActive")
    limitation_type: LimitationType | None = Field(default=None, alias="limitationType")
    limitation_times: int | None = Field(default=None, alias="limitationTimes")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc_dates(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @field_validator("targets")
    @classmethod
    def _dedupe_targets(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return list(dict.fromkeys(item.strip() for item in value if item.strip()))


class DiscountActiveUpdate(BaseModel):
    is_active: bool = Field(alias="isActive")

    model_config = ConfigDict(populate_by_name=True)


class DiscountUsageRequest(BaseModel):
    order_id: str = Field(min_length=1, alias="orderId")
    customer_id: str | None = Field(default=None, alias="customerId")

    model_config = ConfigDict(populate_by_name=True)


class OrderLineRequest(BaseModel):
    product_id: str = Field(alias="productId")
    quantity: PositiveInt

    model_config = ConfigDict(populate_by_name=True)


class OrderQuoteRequest(BaseModel):
    lines: list[OrderLineRequest] = Field(min_length=1)
    delivery_fee: Decimal = Field(default=ZERO, ge=ZERO, alias="deliveryFee")

    model_config = ConfigDict(populate_by_name=True)


class StockSummaryRequest(BaseModel):
    product_ids: list[str] = Field(min_length=1, alias="productIds")

    model_config = ConfigDict(populate_by_name=True)


# --- Responses ----------------------------------------------------------------


class StockSummary(BaseModel):
    usable_stock: int = Field(default=0, alias="usableStock")
    expired_stock: int = Field(default=0, alias="expiredStock")
    total_stock: int = Field(default=0, alias="totalStock")
    active_batch_count: int = Field(default=0, alias="activeBatchCount")
    expired_inventory: int = Field(default=0, alias="expiredInventory")

    model_config = ConfigDict(populate_by_name=True)


class ProductWriteResponse(BaseModel):
    product: Product
    warnings: list[str] = Field(default_factory=list)


class ProductDeleteResponse(BaseModel):
    product_id: str = Field(alias="productId")
    warnings: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class QuoteLine(BaseModel):
    product_id: str = Field(alias="productId")
    quantity: int
    list_price: Decimal = Field(alias="listPrice")
    unit_price: Decimal = Field(alias="unitPrice")
    discount_id: str | None = Field(default=None, alias="discountId")
    line_discount: Decimal = Field(alias="lineDiscount")
    line_total: Decimal = Field(alias="lineTotal")

    model_config = ConfigDict(populate_by_name=True)


class OrderQuote(BaseModel):
    lines: list[QuoteLine]
    subtotal: Decimal
    line_discount_total: Decimal = Field(alias="lineDiscountTotal")
    order_discount_id: str | None = Field(default=None, alias="orderDiscountId")
    order_discount: Decimal = Field(alias="orderDiscount")
    total_discount: Decimal = Field(alias="totalDiscount")
    delivery_fee: Decimal = Field(alias="deliveryFee")
    total: Decimal

    model_config = ConfigDict(populate_by_name=True)


class DiscountBadgeResponse(BaseModel):
    product_id: str = Field(alias="productId")
    percentage: Decimal

    model_config = ConfigDict(populate_by_name=True)


class DiscountUsageResponse(BaseModel):
    discount_id: str = Field(alias="discountId")
    order_id: str = Field(alias="orderId")
    recorded: bool

    model_config = ConfigDict(populate_by_name=True)
