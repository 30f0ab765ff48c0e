"""
Pydantic schemas for request validation (Http/Requests).
"""
from typing import List, Optional

from pydantic import BaseModel, Field, validator


def _country(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip().upper()
    if len(v) != 2 or not v.isalpha():
        raise ValueError("Country code must be two letters")
    return v


# Order Schemas
class ShippingAddressRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    company: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    province_code: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    phone: Optional[str] = None

    @validator("country_code")
    def validate_country_code(cls, v):
        return _country(v)


class ManualOrderItemRequest(BaseModel):
    title: str
    quantity: int = Field(..., gt=0)
    price_cents: int = Field(0, ge=0)
    sku: Optional[str] = None
    variant_title: Optional[str] = None
    product_variant_id: Optional[str] = None


class ManualOrderRequest(BaseModel):
    external_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    currency: str = "NZD"
    country_code: str
    shipping_cents: int = Field(0, ge=0)
    tax_cents: int = Field(0, ge=0)
    discount_cents: int = Field(0, ge=0)
    line_items: List[ManualOrderItemRequest] = Field(..., min_length=1)
    shipping_address: Optional[ShippingAddressRequest] = None

    @validator("currency")
    def validate_currency(cls, v):
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be a 3-letter code")
        return v

    @validator("country_code")
    def validate_country_code(cls, v):
        return _country(v)

    @validator("email")
    def validate_email(cls, v):
        if v is None:
            return v
        if "@" not in v or len(v.split("@")) != 2:
            raise ValueError("Invalid email format")
        return v.lower().strip()


class ImportOrderRequest(BaseModel):
    store_id: str
    external_order_id: str

    @validator("external_order_id")
    def validate_external_order_id(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("external_order_id is required")
        return v


class TransitionRequest(BaseModel):
    message: Optional[str] = None


class FulfillmentLineRequest(BaseModel):
    order_item_id: str
    quantity: int = Field(1, gt=0)


class ManualFulfillmentRequest(BaseModel):
    line_items: List[FulfillmentLineRequest] = Field(..., min_length=1)
    tracking_company: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None


class OrderNoteRequest(BaseModel):
    note: str = Field(..., min_length=1, max_length=2000)


# Variant Mapping Schemas
class MappingAttributes(BaseModel):
    image_id: Optional[int] = None
    image_key: Optional[str] = None
    frame_sku_id: Optional[int] = None
    frame_sku_code: Optional[str] = None
    frame_sku_title: Optional[str] = None
    frame_sku_description: Optional[str] = None
    frame_sku_cost_cents: Optional[int] = Field(None, ge=0)
    cx: Optional[int] = None
    cy: Optional[int] = None
    cw: Optional[int] = None
    ch: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    unit: Optional[str] = None
    preview_url: Optional[str] = None
    colour: Optional[str] = None

    def attributes(self) -> dict:
        """Only the fields the caller actually sent."""
        return self.model_dump(exclude_unset=True, exclude={"product_variant_id", "country_code", "slot_position", "variant_ids"})


class DefaultMappingRequest(MappingAttributes):
    product_variant_id: str
    country_code: str
    slot_position: int = Field(1, ge=1)

    @validator("country_code")
    def validate_country_code(cls, v):
        return _country(v)


class BundleSlotsRequest(BaseModel):
    slot_count: int = Field(..., ge=1)


class BulkMappingRequest(MappingAttributes):
    variant_ids: List[str] = Field(..., min_length=1)
    country_code: str

    @validator("country_code")
    def validate_country_code(cls, v):
        return _country(v)
