"""
Order import / resync tests against a stubbed Shopify Admin API
"""
import pytest

from printlink.auth import Actor
from printlink.models import (
    ActivityType,
    Fulfillment,
    FulfillmentLineItem,
    FulfillmentSource,
    Order,
    OrderActivity,
    OrderStatus,
    SyncJob,
    SyncJobType,
)
from printlink.services.order_import import OrderImportService, validate_order_data
from printlink.services.store_connection import StoreConnectionErrorHandler


async def _import(db_session, stub, store, ref="2002"):
    return await OrderImportService(db_session, transport=stub.transport).import_or_resync(store, ref)


def _activity_types(db_session, order):
    rows = db_session.query(OrderActivity).filter(OrderActivity.order_id == order.id).all()
    return [a.activity_type for a in rows]


class TestImportOrResync:
    """Creating and refreshing storefront orders"""

    @pytest.mark.asyncio
    async def test_import_creates_order(self, db_session, store, variant, shopify_stub, order_node):
        stub = shopify_stub({"GetOrder": {"order": order_node("2002")}})
        service = OrderImportService(db_session, transport=stub.transport)

        result = await service.import_or_resync(store, "gid://shopify/Order/2002")

        assert result["success"] is True
        assert result["created"] is True
        order = result["order"]
        assert order.store_id == store.id
        assert order.external_id == "2002"
        assert order.name == "#2002"
        assert order.status == OrderStatus.DRAFT
        assert order.currency == "NZD"
        assert order.country_code == "NZ"
        assert order.total_cents == 6000
        assert order.shipping_cents == 1000
        assert order.tax_cents == 750

        item = order.active_items[0]
        assert item.external_line_id == "9001"
        assert item.external_variant_id == "111"
        assert item.product_variant_id == variant.id
        assert item.quantity == 2
        assert item.price_cents == 2500
        assert item.tax_cents == 750
        assert item.is_custom is False

        assert order.shipping_address.city == "Auckland"
        assert order.shipping_address.postal_code == "1010"
        assert _activity_types(db_session, order) == [ActivityType.ORDER_IMPORTED]
        assert stub.variables("GetOrder") == [{"id": "gid://shopify/Order/2002"}]

        job = db_session.query(SyncJob).filter(SyncJob.dedup_key == f"order_imported:{order.id}").one()
        assert job.job_type == SyncJobType.SEND_NOTIFICATION

    @pytest.mark.asyncio
    async def test_resync_updates_in_place(self, db_session, store, variant, shopify_stub, order_node):
        first = shopify_stub({"GetOrder": {"order": order_node("2002")}})
        created = await OrderImportService(db_session, transport=first.transport).import_or_resync(store, "2002")
        order_id = created["order"].id

        changed = order_node("2002", lines=[
            {"id": "9002", "variant": "111", "quantity": 1, "price": "30.00", "total": "30.00"},
        ])
        second = shopify_stub({"GetOrder": {"order": changed}})
        result = await OrderImportService(db_session, transport=second.transport).import_or_resync(store, "#2002")

        assert result["success"] is True
        assert result["created"] is False
        order = result["order"]
        assert order.id == order_id
        assert db_session.query(Order).count() == 1
        assert [i.external_line_id for i in order.active_items] == ["9002"]
        removed = next(i for i in order.items if i.external_line_id == "9001")
        assert removed.deleted_at is not None
        assert ActivityType.ORDER_RESYNCED in _activity_types(db_session, order)

    @pytest.mark.asyncio
    async def test_resync_restores_removed_line(self, db_session, store, variant, shopify_stub, order_node):
        await _import(db_session, shopify_stub({"GetOrder": {"order": order_node("2002")}}), store)
        without = shopify_stub({"GetOrder": {"order": order_node("2002", lines=[{"id": "9002", "variant": "111"}])}})
        await _import(db_session, without, store)
        restored = shopify_stub({"GetOrder": {"order": order_node("2002")}})
        result = await _import(db_session, restored, store)

        order = result["order"]
        assert [i.external_line_id for i in order.active_items] == ["9001"]
        assert len([i for i in order.items if i.external_line_id == "9001"]) == 1

    @pytest.mark.asyncio
    async def test_resync_never_drops_quantity_below_shipped(self, db_session, store, variant, shopify_stub, order_node):
        created = await _import(db_session, shopify_stub({"GetOrder": {"order": order_node("2002")}}), store)
        order = created["order"]
        item = order.active_items[0]
        fulfillment = Fulfillment(order_id=order.id, external_id="F-ship", source=FulfillmentSource.MANUAL)
        fulfillment.line_items.append(FulfillmentLineItem(order_item=item, quantity=2))
        db_session.add(fulfillment)
        db_session.commit()

        lowered = order_node("2002", lines=[{"id": "9001", "variant": "111", "quantity": 1}])
        result = await _import(db_session, shopify_stub({"GetOrder": {"order": lowered}}), store)

        assert result["success"] is True
        item = result["order"].active_items[0]
        assert item.quantity == 2
        assert item.fulfilled_quantity == 2
        note = (
            db_session.query(OrderActivity)
            .filter(OrderActivity.order_id == order.id, OrderActivity.activity_type == ActivityType.NOTE_ADDED)
            .one()
        )
        assert note.details == {"external_line_id": "9001", "upstream_quantity": 1, "fulfilled_quantity": 2}

    @pytest.mark.asyncio
    async def test_unfulfillable_lines_are_inactive(self, db_session, store, variant, shopify_stub, order_node):
        node = order_node("2002", lines=[
            {"id": "9001", "variant": "111", "quantity": 2},
            {"id": "9003", "variant": "111", "quantity": 1, "fulfillable": 0},
        ])
        result = await _import(db_session, shopify_stub({"GetOrder": {"order": node}}), store, "2002")

        assert [i.external_line_id for i in result["order"].active_items] == ["9001"]

    @pytest.mark.asyncio
    async def test_custom_item(self, db_session, store, shopify_stub, order_node):
        node = order_node("2002", lines=[{"id": "9005", "variant": None, "title": "Gift wrap"}])
        result = await _import(db_session, shopify_stub({"GetOrder": {"order": node}}), store, "2002")

        item = result["order"].active_items[0]
        assert item.is_custom is True
        assert item.product_variant_id is None

    @pytest.mark.asyncio
    async def test_cancelled_upstream_cancels_draft(self, db_session, store, variant, shopify_stub, order_node):
        node = order_node("2002", cancelled_at="2026-10-02T08:00:00Z")
        result = await _import(db_session, shopify_stub({"GetOrder": {"order": node}}), store, "2002")

        order = result["order"]
        assert order.status == OrderStatus.CANCELLED
        assert order.cancelled_at is not None
        assert ActivityType.ORDER_CANCELLED in _activity_types(db_session, order)

    @pytest.mark.asyncio
    async def test_cancelled_upstream_keeps_production_state(self, db_session, store, order_in_production, shopify_stub, order_node):
        node = order_node("1001", cancelled_at="2026-10-02T08:00:00Z")
        result = await _import(db_session, shopify_stub({"GetOrder": {"order": node}}), store, "1001")

        assert result["order"].status == OrderStatus.IN_PRODUCTION

    @pytest.mark.asyncio
    async def test_unsupported_country(self, db_session, store, shopify_stub, order_node):
        node = order_node("2002", country="US")
        result = await _import(db_session, shopify_stub({"GetOrder": {"order": node}}), store, "2002")

        assert result == {"success": False, "error": "Unsupported country: US"}
        assert db_session.query(Order).count() == 0

    @pytest.mark.asyncio
    async def test_order_not_found_upstream(self, db_session, store, shopify_stub):
        stub = shopify_stub({"GetOrder": {"order": None}})
        result = await OrderImportService(db_session, transport=stub.transport).import_or_resync(store, "404")

        assert result["success"] is False
        assert result["kind"] == "client"

    @pytest.mark.asyncio
    async def test_server_error(self, db_session, store, shopify_stub):
        stub = shopify_stub(status_code=503)
        result = await OrderImportService(db_session, transport=stub.transport).import_or_resync(store, "2002")

        assert result["success"] is False
        assert result["kind"] == "server"
        assert store.needs_reauthentication is False

    @pytest.mark.asyncio
    async def test_rejected_credentials_flag_store(self, db_session, store, shopify_stub):
        stub = shopify_stub(status_code=401)
        result = await OrderImportService(db_session, transport=stub.transport).import_or_resync(store, "2002")

        assert result["success"] is False
        db_session.refresh(store)
        assert store.needs_reauthentication is True
        assert store.reauthentication_flagged_at is not None
        job = db_session.query(SyncJob).filter(SyncJob.job_type == SyncJobType.SEND_NOTIFICATION).one()
        assert job.payload == {"kind": "store_reauthentication", "store_id": store.id}

        again = await OrderImportService(db_session, transport=stub.transport).import_or_resync(store, "2002")
        assert "needs reauthentication" in again["error"]
        assert len(stub.calls) == 1

    @pytest.mark.asyncio
    async def test_cleared_flag_allows_import_again(self, db_session, store, shopify_stub, order_node):
        await _import(db_session, shopify_stub(status_code=401), store)
        assert store.needs_reauthentication is True

        StoreConnectionErrorHandler(db_session).clear(store)
        result = await _import(db_session, shopify_stub({"GetOrder": {"order": order_node("2002")}}), store)

        assert result["success"] is True
        assert store.needs_reauthentication is False
        assert store.reauthentication_flagged_at is None

    @pytest.mark.asyncio
    async def test_inactive_store(self, db_session, store):
        store.active = False
        db_session.commit()
        result = await OrderImportService(db_session).import_or_resync(store, "2002")
        assert result["success"] is False
        assert "inactive" in result["error"]

    @pytest.mark.asyncio
    async def test_manual_owner_has_no_platform(self, db_session, user):
        result = await OrderImportService(db_session).import_or_resync(user, "manual-1")
        assert result == {"success": False, "error": "Manual orders have no upstream platform"}


class TestManualOrders:
    """Store-less orders created by an operator"""

    def test_create_manual_order(self, db_session, user, variant):
        service = OrderImportService(db_session, actor=Actor.for_user(user))
        result = service.create_manual_order(user, {
            "currency": "nzd",
            "country_code": "nz",
            "shipping_cents": 500,
            "line_items": [
                {"title": "Framed print", "quantity": 2, "price_cents": 4000, "product_variant_id": variant.id},
                {"title": "Card", "quantity": 1, "price_cents": 500},
            ],
            "shipping_address": {"name": "Aroha Smith", "city": "Wellington", "country_code": "NZ"},
        })

        assert result["success"] is True
        order = result["order"]
        assert order.store_id is None
        assert order.user_id == user.id
        assert order.currency == "NZD"
        assert order.subtotal_cents == 8500
        assert order.total_cents == 9000
        assert order.external_id.startswith("manual-")
        assert sorted(i.is_custom for i in order.items) == [False, True]
        assert order.shipping_address.city == "Wellington"
        assert _activity_types(db_session, order) == [ActivityType.ORDER_CREATED]

    def test_rejects_foreign_variant(self, db_session, other_user, variant):
        result = OrderImportService(db_session).create_manual_order(other_user, {
            "currency": "NZD",
            "country_code": "NZ",
            "line_items": [{"title": "Print", "quantity": 1, "price_cents": 100, "product_variant_id": variant.id}],
        })
        assert result["success"] is False
        assert "unknown product variant" in result["error"]
        assert db_session.query(Order).count() == 0

    def test_duplicate_external_id(self, db_session, user):
        data = {
            "external_id": "manual-42",
            "currency": "NZD",
            "country_code": "NZ",
            "line_items": [{"title": "Print", "quantity": 1, "price_cents": 100}],
        }
        service = OrderImportService(db_session)
        assert service.create_manual_order(user, dict(data))["success"] is True
        result = service.create_manual_order(user, dict(data))
        assert result == {"success": False, "error": "Order manual-42 already exists"}

    def test_requires_items(self, db_session, user):
        result = OrderImportService(db_session).create_manual_order(user, {"currency": "NZD", "country_code": "NZ", "line_items": []})
        assert result["success"] is False


class TestValidateOrderData:
    def test_valid(self):
        assert validate_order_data({"currency": "nzd", "country_code": "au"}) is None

    def test_bad_currency(self):
        assert validate_order_data({"currency": "NZ", "country_code": "NZ"}) == "Invalid currency: 'NZ'"

    def test_missing_country(self):
        assert validate_order_data({"currency": "NZD"}) == "Unsupported country: unknown"
