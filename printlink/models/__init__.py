"""
SQLAlchemy models for the order lifecycle engine.
All model and enum definitions live here for simplicity and to avoid circular imports.
Money is stored as integer minor units (cents).
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Date, ForeignKey, Text, Enum as SQLEnum, JSON,
    UniqueConstraint, CheckConstraint, Index, text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from printlink.database import Base
import enum
import uuid


def utcnow() -> datetime:
    """Naive UTC now, matching the DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _order_uid() -> str:
    return "PL-" + uuid.uuid4().hex[:8].upper()


# Enums
class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    MERCHANT = "MERCHANT"

class Platform(str, enum.Enum):
    SHOPIFY = "shopify"
    SQUARESPACE = "squarespace"
    WIX = "wix"

class OrderStatus(str, enum.Enum):
    DRAFT = "draft"
    IN_PRODUCTION = "in_production"
    FULFILLED = "fulfilled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class FulfillmentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    CANCELLED = "cancelled"
    ERROR = "error"
    FAILURE = "failure"

class FulfillmentSource(str, enum.Enum):
    PRODUCTION = "production"
    SHOPIFY = "shopify"
    SQUARESPACE = "squarespace"
    MANUAL = "manual"

class ActivityType(str, enum.Enum):
    ORDER_CREATED = "order_created"
    ORDER_IMPORTED = "order_imported"
    ORDER_RESYNCED = "order_resynced"
    ORDER_SUBMITTED = "order_submitted"
    ORDER_IN_PRODUCTION = "order_in_production"
    ORDER_FULFILLED = "order_fulfilled"
    ORDER_COMPLETED = "order_completed"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_REOPENED = "order_reopened"
    SENT_TO_PRODUCTION = "sent_to_production"
    PRODUCTION_FAILED = "production_failed"
    PAYMENT_CAPTURED = "payment_captured"
    FULFILLMENT_CREATED = "fulfillment_created"
    FULFILLMENT_UPDATED = "fulfillment_updated"
    FULFILLMENT_SYNCED_TO_SHOPIFY = "fulfillment_synced_to_shopify"
    FULFILLMENT_SYNCED_TO_SQUARESPACE = "fulfillment_synced_to_squarespace"
    FULFILLMENT_SYNC_ERROR = "fulfillment_sync_error"
    CUSTOMER_NOTIFIED = "customer_notified"
    NOTE_ADDED = "note_added"

class SyncJobType(str, enum.Enum):
    OUTBOUND_FULFILLMENT_SYNC = "OUTBOUND_FULFILLMENT_SYNC"
    SEND_NOTIFICATION = "SEND_NOTIFICATION"
    CLEANUP_WEBHOOK_LOGS = "CLEANUP_WEBHOOK_LOGS"
    BULK_APPLY_DEFAULT_MAPPING = "BULK_APPLY_DEFAULT_MAPPING"
    SYNC_VARIANT_COST = "SYNC_VARIANT_COST"

class SyncJobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

class LogLevel(str, enum.Enum):
    INFO = "INFO"
    ERROR = "ERROR"

# Models
class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    role = Column(SQLEnum(UserRole), default=UserRole.MERCHANT)
    country_code = Column("country_code", String(2), nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    stores = relationship("Store", back_populates="user")

class Store(Base):
    __tablename__ = "stores"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column("user_id", String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    platform = Column(SQLEnum(Platform), nullable=False, default=Platform.SHOPIFY)
    shop_domain = Column("shop_domain", String, unique=True, nullable=False, index=True)
    access_token = Column("access_token", String, nullable=True)  # Encrypted
    app_secret_encrypted = Column("app_secret_encrypted", String, nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    needs_reauthentication = Column("needs_reauthentication", Boolean, default=False, nullable=False)
    reauthentication_flagged_at = Column("reauthentication_flagged_at", DateTime, nullable=True)
    fulfillment_service_id = Column("fulfillment_service_id", String, nullable=True)
    fulfillment_location_id = Column("fulfillment_location_id", String, nullable=True)
    settings = Column(JSON, nullable=True)
    last_sync_at = Column("last_sync_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    user = relationship("User", back_populates="stores")
    orders = relationship("Order", back_populates="store")
    product_variants = relationship("ProductVariant", back_populates="store")

    __table_args__ = (
        Index(
            "uq_stores_fulfillment_service_id",
            "fulfillment_service_id",
            unique=True,
            postgresql_where=text("fulfillment_service_id IS NOT NULL"),
            sqlite_where=text("fulfillment_service_id IS NOT NULL"),
        ),
    )

class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column("store_id", String, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    external_product_id = Column("external_product_id", String, nullable=True)
    external_variant_id = Column("external_variant_id", String, nullable=False)
    inventory_item_id = Column("inventory_item_id", String, nullable=True)
    title = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    fulfilment_active = Column("fulfilment_active", Boolean, default=True, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    store = relationship("Store", back_populates="product_variants")
    bundle = relationship("Bundle", back_populates="product_variant", uselist=False, cascade="all, delete-orphan")
    variant_mappings = relationship("VariantMapping", back_populates="product_variant")

    __table_args__ = (
        UniqueConstraint("store_id", "external_variant_id", name="product_variants_store_external_unique"),
    )

class Bundle(Base):
    __tablename__ = "bundles"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    product_variant_id = Column("product_variant_id", String, ForeignKey("product_variants.id", ondelete="CASCADE"), unique=True, nullable=False)
    slot_count = Column("slot_count", Integer, default=1, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())

    product_variant = relationship("ProductVariant", back_populates="bundle")

    __table_args__ = (
        CheckConstraint("slot_count >= 1 AND slot_count <= 10", name="ck_bundles_slot_count"),
    )

class VariantMapping(Base):
    __tablename__ = "variant_mappings"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    product_variant_id = Column("product_variant_id", String, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=False, index=True)
    bundle_id = Column("bundle_id", String, ForeignKey("bundles.id", ondelete="SET NULL"), nullable=True)
    order_item_id = Column("order_item_id", String, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=True, index=True)
    slot_position = Column("slot_position", Integer, default=1, nullable=False)
    country_code = Column("country_code", String(2), nullable=False)
    is_default = Column("is_default", Boolean, default=False, nullable=False)
    image_id = Column("image_id", Integer, nullable=True)
    image_key = Column("image_key", String, nullable=True)
    frame_sku_id = Column("frame_sku_id", Integer, nullable=True)
    frame_sku_code = Column("frame_sku_code", String, nullable=True)
    frame_sku_title = Column("frame_sku_title", String, nullable=True)
    frame_sku_description = Column("frame_sku_description", String, nullable=True)
    frame_sku_cost_cents = Column("frame_sku_cost_cents", Integer, nullable=True)
    cx = Column(Integer, nullable=True)
    cy = Column(Integer, nullable=True)
    cw = Column(Integer, nullable=True)
    ch = Column(Integer, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    unit = Column(String, nullable=True)
    preview_url = Column("preview_url", String, nullable=True)
    colour = Column(String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    product_variant = relationship("ProductVariant", back_populates="variant_mappings")
    bundle = relationship("Bundle")
    order_item = relationship("OrderItem", back_populates="snapshot_mappings")

    __table_args__ = (
        Index(
            "uq_variant_mappings_default",
            "product_variant_id",
            "country_code",
            "slot_position",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
        Index(
            "uq_variant_mappings_order_item_slot",
            "order_item_id",
            "slot_position",
            unique=True,
            postgresql_where=text("order_item_id IS NOT NULL"),
            sqlite_where=text("order_item_id IS NOT NULL"),
        ),
    )

    @property
    def is_snapshot(self) -> bool:
        return self.order_item_id is not None

    @property
    def is_complete(self) -> bool:
        """A mapping can be sent to production once frame, crop and image are set."""
        return all(
            v is not None
            for v in (self.frame_sku_id, self.image_id, self.cx, self.cy, self.cw, self.ch)
        )


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    uid = Column(String, unique=True, nullable=False, default=_order_uid)
    store_id = Column("store_id", String, ForeignKey("stores.id", ondelete="CASCADE"), nullable=True, index=True)
    user_id = Column("user_id", String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    external_id = Column("external_id", String, nullable=False)
    external_number = Column("external_number", String, nullable=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    currency = Column(String(3), nullable=False, default="NZD")
    subtotal_cents = Column("subtotal_cents", Integer, default=0, nullable=False)
    discount_cents = Column("discount_cents", Integer, default=0, nullable=False)
    shipping_cents = Column("shipping_cents", Integer, default=0, nullable=False)
    tax_cents = Column("tax_cents", Integer, default=0, nullable=False)
    total_cents = Column("total_cents", Integer, default=0, nullable=False)
    status = Column(SQLEnum(OrderStatus), default=OrderStatus.DRAFT, nullable=False)
    country_code = Column("country_code", String(2), nullable=True)
    processed_at = Column("processed_at", DateTime, nullable=True)
    cancelled_at = Column("cancelled_at", DateTime, nullable=True)  # cancelled on the storefront
    closed_at = Column("closed_at", DateTime, nullable=True)
    in_production_at = Column("in_production_at", DateTime, nullable=True)
    fulfilled_at = Column("fulfilled_at", DateTime, nullable=True)
    completed_at = Column("completed_at", DateTime, nullable=True)
    status_cancelled_at = Column("status_cancelled_at", DateTime, nullable=True)
    target_dispatch_date = Column("target_dispatch_date", Date, nullable=True)
    production_draft_order_id = Column("production_draft_order_id", String, nullable=True)
    production_order_id = Column("production_order_id", String, nullable=True, index=True)
    production_order_name = Column("production_order_name", String, nullable=True)
    production_subtotal_cents = Column("production_subtotal_cents", Integer, nullable=True)
    production_shipping_cents = Column("production_shipping_cents", Integer, nullable=True)
    production_total_cents = Column("production_total_cents", Integer, nullable=True)
    production_paid_at = Column("production_paid_at", DateTime, nullable=True)
    raw_payload = Column("raw_payload", JSON, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    store = relationship("Store", back_populates="orders")
    user = relationship("User")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    shipping_address = relationship("ShippingAddress", back_populates="order", uselist=False, cascade="all, delete-orphan")
    fulfillments = relationship("Fulfillment", back_populates="order", cascade="all, delete-orphan")
    activities = relationship("OrderActivity", back_populates="order", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("store_id", "external_id", name="orders_store_external_unique"),
        Index(
            "uq_orders_external_id_storeless",
            "external_id",
            unique=True,
            postgresql_where=text("store_id IS NULL"),
            sqlite_where=text("store_id IS NULL"),
        ),
        CheckConstraint("(store_id IS NULL) <> (user_id IS NULL)", name="ck_orders_single_owner"),
    )

    @property
    def active_items(self):
        return [item for item in self.items if item.deleted_at is None]

    @property
    def owner_user_id(self):
        return self.store.user_id if self.store_id else self.user_id

    @property
    def display_name(self) -> str:
        return self.name or f"#{self.external_number or self.external_id}"

class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_variant_id = Column("product_variant_id", String, ForeignKey("product_variants.id", ondelete="SET NULL"), nullable=True)
    external_line_id = Column("external_line_id", String, nullable=True, index=True)
    external_variant_id = Column("external_variant_id", String, nullable=True)
    production_line_item_id = Column("production_line_item_id", String, nullable=True)
    title = Column(String, nullable=False, default="")
    variant_title = Column("variant_title", String, nullable=True)
    sku = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    price_cents = Column("price_cents", Integer, default=0, nullable=False)
    total_cents = Column("total_cents", Integer, default=0, nullable=False)
    discount_cents = Column("discount_cents", Integer, default=0, nullable=False)
    tax_cents = Column("tax_cents", Integer, default=0, nullable=False)
    production_cost_cents = Column("production_cost_cents", Integer, nullable=True)
    requires_shipping = Column("requires_shipping", Boolean, default=True, nullable=False)
    is_custom = Column("is_custom", Boolean, default=False, nullable=False)
    raw_payload = Column("raw_payload", JSON, nullable=True)
    deleted_at = Column("deleted_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    order = relationship("Order", back_populates="items")
    product_variant = relationship("ProductVariant")
    snapshot_mappings = relationship("VariantMapping", back_populates="order_item", order_by="VariantMapping.slot_position")
    fulfillment_line_items = relationship("FulfillmentLineItem", back_populates="order_item")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    @property
    def fulfilled_quantity(self) -> int:
        return sum(li.quantity for li in self.fulfillment_line_items)

class ShippingAddress(Base):
    __tablename__ = "shipping_addresses"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False)
    first_name = Column("first_name", String, nullable=True)
    last_name = Column("last_name", String, nullable=True)
    name = Column(String, nullable=True)
    company = Column(String, nullable=True)
    address1 = Column(String, nullable=True)
    address2 = Column(String, nullable=True)
    city = Column(String, nullable=True)
    province = Column(String, nullable=True)
    province_code = Column("province_code", String, nullable=True)
    postal_code = Column("postal_code", String, nullable=True)
    country = Column(String, nullable=True)
    country_code = Column("country_code", String(2), nullable=True)
    phone = Column(String, nullable=True)

    order = relationship("Order", back_populates="shipping_address")

class Fulfillment(Base):
    __tablename__ = "fulfillments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column("external_id", String, unique=True, nullable=False)
    source = Column(SQLEnum(FulfillmentSource), nullable=False)
    status = Column(SQLEnum(FulfillmentStatus), default=FulfillmentStatus.PENDING, nullable=False)
    tracking_company = Column("tracking_company", String, nullable=True)
    tracking_number = Column("tracking_number", String, nullable=True)
    tracking_url = Column("tracking_url", String, nullable=True)
    location_name = Column("location_name", String, nullable=True)
    shipment_status = Column("shipment_status", String, nullable=True)
    fulfilled_at = Column("fulfilled_at", DateTime, nullable=True)
    outbound_synced_at = Column("outbound_synced_at", DateTime, nullable=True)
    outbound_reference = Column("outbound_reference", String, nullable=True)
    customer_notified_at = Column("customer_notified_at", DateTime, nullable=True)
    raw_payload = Column("raw_payload", JSON, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="fulfillments")
    line_items = relationship("FulfillmentLineItem", back_populates="fulfillment", cascade="all, delete-orphan")

class FulfillmentLineItem(Base):
    __tablename__ = "fulfillment_line_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    fulfillment_id = Column("fulfillment_id", String, ForeignKey("fulfillments.id", ondelete="CASCADE"), nullable=False, index=True)
    order_item_id = Column("order_item_id", String, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)

    fulfillment = relationship("Fulfillment", back_populates="line_items")
    order_item = relationship("OrderItem", back_populates="fulfillment_line_items")

    __table_args__ = (
        UniqueConstraint("fulfillment_id", "order_item_id", name="fulfillment_line_items_fulfillment_item_unique"),
        CheckConstraint("quantity > 0", name="ck_fulfillment_line_items_quantity_positive"),
    )

class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    source = Column("source", String, nullable=False, index=True)
    topic = Column("topic", String, nullable=False, index=True)
    shop_domain = Column("shop_domain", String, nullable=True, index=True)
    store_id = Column("store_id", String, ForeignKey("stores.id", ondelete="SET NULL"), nullable=True)
    webhook_id = Column("webhook_id", String, unique=True, nullable=True)
    api_version = Column("api_version", String, nullable=True)
    status_code = Column("status_code", Integer, default=0, nullable=False, index=True)
    error_message = Column("error_message", Text, nullable=True)
    headers = Column(JSON, nullable=True)
    payload_ciphertext = Column("payload_ciphertext", Text, nullable=True)  # Encrypted, contains PII
    processing_time_ms = Column("processing_time_ms", Integer, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now(), index=True)
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

class OrderActivity(Base):
    __tablename__ = "order_activities"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_id = Column("actor_id", String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    activity_type = Column("activity_type", SQLEnum(ActivityType), nullable=False)
    message = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    order = relationship("Order", back_populates="activities")
    actor = relationship("User")

class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_type = Column("job_type", SQLEnum(SyncJobType), nullable=False, index=True)
    status = Column(SQLEnum(SyncJobStatus), default=SyncJobStatus.QUEUED, nullable=False, index=True)
    payload = Column(JSON, nullable=True)
    dedup_key = Column("dedup_key", String, unique=True, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column("max_attempts", Integer, default=5, nullable=False)
    run_after = Column("run_after", DateTime, nullable=True)
    started_at = Column("started_at", DateTime, nullable=True)
    finished_at = Column("finished_at", DateTime, nullable=True)
    error_message = Column("error_message", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    logs = relationship("SyncLog", back_populates="sync_job", cascade="all, delete-orphan")

class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    sync_job_id = Column("sync_job_id", String, ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False)
    level = Column(SQLEnum(LogLevel), nullable=False)
    message = Column(String, nullable=False)
    raw_payload = Column("raw_payload", JSON, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    sync_job = relationship("SyncJob", back_populates="logs")
