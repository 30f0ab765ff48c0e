"""
Order import and resync from storefront platforms, and manual (store-less) order creation.
"""
import logging
import re
from typing import Dict, List, Optional, Union

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printlink.auth import Actor
from printlink.config import settings
from printlink.errors import AuthenticationError, ExternalApiError, ValidationError
from printlink.models import (
    ActivityType,
    Order,
    OrderItem,
    OrderStatus,
    ProductVariant,
    ShippingAddress,
    Store,
    SyncJobType,
    User,
    utcnow,
)
from printlink.services import order_state
from printlink.services.order_activity import log_activity
from printlink.services.platform_adapter import PlatformAdapter, get_adapter, gid_to_id, to_cents
from printlink.services.store_connection import StoreConnectionErrorHandler

logger = logging.getLogger(__name__)

ORDER_FIELDS = (
    "external_number", "name", "email", "phone", "currency",
    "subtotal_cents", "discount_cents", "shipping_cents", "tax_cents", "total_cents",
    "processed_at", "cancelled_at", "closed_at", "country_code",
)
ITEM_FIELDS = (
    "external_variant_id", "title", "variant_title", "sku", "quantity",
    "price_cents", "total_cents", "discount_cents", "tax_cents", "requires_shipping", "is_custom",
)
ADDRESS_FIELDS = (
    "first_name", "last_name", "name", "company", "address1", "address2", "city",
    "province", "province_code", "postal_code", "country", "country_code", "phone",
)

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def validate_order_data(data: dict) -> Optional[str]:
    """Return an error message if the normalised order cannot be stored, else None."""
    currency = (data.get("currency") or "").upper()
    if not _CURRENCY_RE.match(currency):
        return f"Invalid currency: {data.get('currency')!r}"
    country = (data.get("country_code") or "").upper()
    if country not in settings.SUPPORTED_COUNTRIES:
        return f"Unsupported country: {country or 'unknown'}"
    return None


class OrderImportService:
    def __init__(
        self,
        db: Session,
        adapter: Optional[PlatformAdapter] = None,
        actor: Optional[Actor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = db
        self.adapter = adapter
        self.actor = actor
        self.transport = transport

    async def import_or_resync(self, owner: Union[Store, User], external_order_id) -> dict:
        """
        Fetch an order from the owner's platform and create or update the local copy.

        Args:
            owner: Store the order belongs to. A User (manual orders) has no upstream platform.
            external_order_id: Platform order id; gid and "#" forms are accepted.

        Returns:
            {"success": True, "order": Order, "created": bool} or {"success": False, "error": str}
        """
        if not isinstance(owner, Store):
            return {"success": False, "error": "Manual orders have no upstream platform"}
        store = owner
        if not store.active:
            return {"success": False, "error": f"Store {store.shop_domain} is inactive"}
        if store.needs_reauthentication:
            return {"success": False, "error": f"Store {store.shop_domain} needs reauthentication"}

        external_id = gid_to_id(external_order_id)
        if not external_id:
            return {"success": False, "error": "Missing order id"}

        try:
            adapter = self.adapter or get_adapter(store, transport=self.transport)
            data = await adapter.fetch_order(external_id)
        except AuthenticationError as e:
            StoreConnectionErrorHandler(self.db).handle(store, e)
            return {"success": False, "error": str(e), "kind": e.kind}
        except ExternalApiError as e:
            logger.warning("Fetching order %s from %s failed: %s", external_id, store.shop_domain, e)
            return {"success": False, "error": str(e), "kind": e.kind}
        except ValidationError as e:
            return {"success": False, "error": str(e)}

        data["external_id"] = gid_to_id(data.get("external_id")) or external_id
        error = validate_order_data(data)
        if error:
            logger.info("Order %s from %s not imported: %s", external_id, store.shop_domain, error)
            return {"success": False, "error": error}

        try:
            order, created = self._upsert(store, data)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            # Another delivery created the same order first; resync on top of it.
            logger.info("Order %s for %s inserted concurrently; retrying as resync", external_id, store.shop_domain)
            try:
                order, created = self._upsert(store, data)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(order)
        logger.info("Order %s %s from %s", order.uid, "imported" if created else "resynced", store.shop_domain)
        return {"success": True, "order": order, "created": created}

    def _upsert(self, store: Store, data: dict):
        existing = (
            self.db.query(Order)
            .filter(Order.store_id == store.id, Order.external_id == data["external_id"])
            .populate_existing()
            .with_for_update()
            .first()
        )
        created = existing is None
        order = existing or Order(store_id=store.id, external_id=data["external_id"])
        if created:
            self.db.add(order)

        for field in ORDER_FIELDS:
            value = data.get(field)
            if field in ("currency", "country_code") and value:
                value = value.upper()
            if field.endswith("_cents"):
                value = value or 0
            setattr(order, field, value)
        order.raw_payload = data.get("raw")
        self.db.flush()

        self._replace_items(store, order, data.get("line_items") or [])
        self._replace_address(order, data.get("shipping_address"))

        if order.cancelled_at and order.status == OrderStatus.DRAFT:
            order_state.transition(self.db, order, "cancel", actor=self.actor, message="Order cancelled on the storefront")

        if created:
            log_activity(self.db, order, ActivityType.ORDER_IMPORTED, f"Imported from {store.platform.value}", actor=self.actor)
            from printlink.services.job_queue import enqueue_job
            enqueue_job(
                self.db,
                SyncJobType.SEND_NOTIFICATION,
                {"kind": "order_imported", "order_id": order.id},
                dedup_key=f"order_imported:{order.id}",
            )
        else:
            log_activity(self.db, order, ActivityType.ORDER_RESYNCED, f"Resynced from {store.platform.value}", actor=self.actor)
        return order, created

    def _variant_for(self, store: Store, external_variant_id: Optional[str]) -> Optional[ProductVariant]:
        if not external_variant_id:
            return None
        return (
            self.db.query(ProductVariant)
            .filter(ProductVariant.store_id == store.id, ProductVariant.external_variant_id == str(external_variant_id))
            .first()
        )

    def _replace_items(self, store: Store, order: Order, lines: List[dict]) -> None:
        now = utcnow()
        # Last occurrence wins for repeated external line ids.
        fetched: Dict[str, dict] = {}
        for line in lines:
            line_id = gid_to_id(line.get("external_line_id"))
            if line_id:
                fetched[line_id] = line

        by_line_id: Dict[str, List[OrderItem]] = {}
        for item in order.items:
            by_line_id.setdefault(item.external_line_id, []).append(item)

        for line_id, rows in by_line_id.items():
            if line_id not in fetched:
                for row in rows:
                    if row.deleted_at is None:
                        row.deleted_at = now

        for line_id, line in fetched.items():
            rows = by_line_id.get(line_id, [])
            active = [r for r in rows if r.deleted_at is None]
            if active:
                item = active[0]
                for extra in active[1:]:
                    extra.deleted_at = now
            elif rows:
                item = rows[0]
                item.deleted_at = None
            else:
                item = OrderItem(order_id=order.id, external_line_id=line_id)
                order.items.append(item)

            for field in ITEM_FIELDS:
                value = line.get(field)
                if field == "external_variant_id":
                    value = gid_to_id(value)
                if field.endswith("_cents"):
                    value = value or 0
                if field == "title":
                    value = value or ""
                setattr(item, field, value)
            item.raw_payload = line.get("raw")
            shipped = item.fulfilled_quantity
            if item.quantity is not None and item.quantity < shipped:
                logger.warning(
                    "Order %s line %s: upstream quantity %s is below fulfilled quantity %s; keeping %s",
                    order.uid, line_id, item.quantity, shipped, shipped,
                )
                log_activity(
                    self.db,
                    order,
                    ActivityType.NOTE_ADDED,
                    f"Line {line_id} quantity kept at {shipped}: storefront reports {item.quantity} but {shipped} already shipped",
                    actor=self.actor,
                    details={"external_line_id": line_id, "upstream_quantity": item.quantity, "fulfilled_quantity": shipped},
                )
                item.quantity = shipped
            variant = self._variant_for(store, item.external_variant_id)
            item.product_variant_id = variant.id if variant else None
            item.product_variant = variant

            fulfillable = line.get("fulfillable_quantity")
            if item.quantity is None or item.quantity <= 0 or fulfillable == 0:
                if item.quantity is None or item.quantity <= 0:
                    item.quantity = 1
                item.deleted_at = now
        self.db.flush()

    def _replace_address(self, order: Order, address: Optional[dict]) -> None:
        if order.shipping_address is not None:
            self.db.delete(order.shipping_address)
            order.shipping_address = None
            self.db.flush()
        if address:
            order.shipping_address = ShippingAddress(**{f: address.get(f) for f in ADDRESS_FIELDS})
        self.db.flush()

    def create_manual_order(self, user: User, data: dict) -> dict:
        """
        Create a store-less draft order owned by user. data follows the normalised order shape
        (line items need title, quantity, price and optionally product_variant_id).
        """
        if not data.get("external_id"):
            data = {**data, "external_id": f"manual-{utcnow().strftime('%Y%m%d%H%M%S%f')}"}
        error = validate_order_data(data)
        if error:
            return {"success": False, "error": error}
        if not data.get("line_items"):
            return {"success": False, "error": "Manual orders need at least one item"}

        order = Order(user_id=user.id, external_id=str(data["external_id"]))
        for field in ORDER_FIELDS:
            value = data.get(field)
            if field in ("currency", "country_code") and value:
                value = value.upper()
            if field.endswith("_cents"):
                value = value or 0
            setattr(order, field, value)
        try:
            self.db.add(order)
            self.db.flush()
            subtotal = 0
            for index, line in enumerate(data["line_items"], start=1):
                quantity = int(line.get("quantity") or 0)
                if quantity <= 0:
                    raise ValidationError(f"Line {index}: quantity must be positive")
                price = line.get("price_cents")
                if price is None:
                    price = to_cents(line.get("price"))
                variant_id = line.get("product_variant_id")
                if variant_id:
                    variant = self.db.query(ProductVariant).filter(ProductVariant.id == variant_id).first()
                    if variant is None or variant.store.user_id != user.id:
                        raise ValidationError(f"Line {index}: unknown product variant")
                item = OrderItem(
                    order_id=order.id,
                    external_line_id=str(line.get("external_line_id") or index),
                    product_variant_id=variant_id,
                    title=line.get("title") or "",
                    variant_title=line.get("variant_title"),
                    sku=line.get("sku"),
                    quantity=quantity,
                    price_cents=price,
                    total_cents=price * quantity,
                    is_custom=not variant_id,
                )
                subtotal += item.total_cents
                order.items.append(item)
            if not order.subtotal_cents:
                order.subtotal_cents = subtotal
            if not order.total_cents:
                order.total_cents = order.subtotal_cents + order.shipping_cents + order.tax_cents - order.discount_cents
            address = data.get("shipping_address")
            if address:
                order.shipping_address = ShippingAddress(**{f: address.get(f) for f in ADDRESS_FIELDS})
            log_activity(self.db, order, ActivityType.ORDER_CREATED, "Manual order created", actor=self.actor)
            self.db.commit()
        except ValidationError as e:
            self.db.rollback()
            return {"success": False, "error": str(e)}
        except IntegrityError:
            self.db.rollback()
            return {"success": False, "error": f"Order {data['external_id']} already exists"}
        self.db.refresh(order)
        logger.info("Manual order %s created for user %s", order.uid, user.id)
        return {"success": True, "order": order, "created": True}
