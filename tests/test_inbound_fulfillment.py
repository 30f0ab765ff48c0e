"""
Inbound fulfillment tests: quantity accounting, idempotency and follow-up jobs
"""
import pytest

from printlink.auth import Actor
from printlink.models import (
    ActivityType,
    Fulfillment,
    FulfillmentSource,
    FulfillmentStatus,
    OrderActivity,
    OrderStatus,
    SyncJob,
    SyncJobType,
)
from printlink.services import order_state
from printlink.services.inbound_fulfillment import InboundFulfillmentService, map_status, tracking_url_from


def _payload(fulfillment_id="F-1", quantity=2, line_id="9001", **extra):
    data = {
        "id": fulfillment_id,
        "status": "success",
        "tracking_company": "NZ Post",
        "tracking_number": "NZ123",
        "tracking_urls": ["https://track.example/NZ123"],
        "line_items": [{"id": line_id, "quantity": quantity}],
    }
    data.update(extra)
    return data


def _jobs(db_session, job_type):
    return db_session.query(SyncJob).filter(SyncJob.job_type == job_type).all()


class TestCreate:
    """Recording shipments against order items"""

    def test_full_shipment_fulfills_order(self, db_session, order_in_production):
        result = InboundFulfillmentService(db_session).create(order_in_production, _payload(), FulfillmentSource.PRODUCTION)

        assert result["success"] is True
        assert result["duplicate"] is False
        assert result["warnings"] == []
        assert result["order_status"] == "fulfilled"
        fulfillment = result["fulfillment"]
        assert fulfillment.status == FulfillmentStatus.SUCCESS
        assert fulfillment.tracking_url == "https://track.example/NZ123"
        assert [li.quantity for li in fulfillment.line_items] == [2]
        assert order_in_production.status == OrderStatus.FULFILLED

        types = [a.activity_type for a in db_session.query(OrderActivity).all()]
        assert ActivityType.FULFILLMENT_CREATED in types
        assert ActivityType.ORDER_FULFILLED in types

    def test_partial_then_complete(self, db_session, order_in_production):
        service = InboundFulfillmentService(db_session)

        first = service.create(order_in_production, _payload("F-1", quantity=1), FulfillmentSource.PRODUCTION)
        assert first["order_status"] == order_state.PARTIALLY_FULFILLED
        assert order_in_production.status == OrderStatus.IN_PRODUCTION

        second = service.create(order_in_production, _payload("F-2", quantity=1), FulfillmentSource.PRODUCTION)
        assert second["order_status"] == "fulfilled"

    def test_redelivery_is_a_duplicate(self, db_session, order_in_production):
        service = InboundFulfillmentService(db_session)
        service.create(order_in_production, _payload("F-1", quantity=1), FulfillmentSource.PRODUCTION)

        again = service.create(order_in_production, _payload("F-1", quantity=1), FulfillmentSource.PRODUCTION)

        assert again == {"success": True, "duplicate": True, "message": "Fulfillment already processed"}
        assert db_session.query(Fulfillment).count() == 1
        assert order_state.remaining_quantity(order_in_production.active_items[0]) == 1

    def test_over_quantity_is_a_warning(self, db_session, order_in_production):
        result = InboundFulfillmentService(db_session).create(
            order_in_production, _payload(quantity=5), FulfillmentSource.PRODUCTION,
        )

        assert result["success"] is True
        assert result["warnings"] == ["Line 9001: quantity 5 exceeds remaining 2"]
        assert result["fulfillment"].line_items == []
        assert order_in_production.status == OrderStatus.IN_PRODUCTION

    def test_unknown_line_is_a_warning(self, db_session, order_in_production):
        result = InboundFulfillmentService(db_session).create(
            order_in_production, _payload(line_id="does-not-exist"), FulfillmentSource.PRODUCTION,
        )
        assert result["warnings"] == ["No order item for line does-not-exist"]

    def test_matches_production_line_id(self, db_session, order_in_production):
        item = order_in_production.active_items[0]
        item.production_line_item_id = "7001"
        db_session.commit()

        result = InboundFulfillmentService(db_session).create(
            order_in_production, _payload(line_id="7001"), FulfillmentSource.PRODUCTION,
        )

        assert result["warnings"] == []
        assert result["fulfillment"].line_items[0].order_item_id == item.id

    def test_requires_an_id(self, db_session, order_in_production):
        result = InboundFulfillmentService(db_session).create(order_in_production, {"line_items": []}, FulfillmentSource.PRODUCTION)
        assert result["success"] is False

    def test_draft_order_is_not_transitioned(self, db_session, order):
        result = InboundFulfillmentService(db_session).create(order, _payload(), FulfillmentSource.SHOPIFY)
        assert result["success"] is True
        assert order.status == OrderStatus.DRAFT


class TestFollowUps:
    """Jobs queued after a fulfillment is recorded"""

    def test_production_fulfillment_is_synced_to_storefront(self, db_session, order_in_production):
        result = InboundFulfillmentService(db_session).create(order_in_production, _payload(), FulfillmentSource.PRODUCTION)
        fulfillment_id = result["fulfillment"].id

        outbound = _jobs(db_session, SyncJobType.OUTBOUND_FULFILLMENT_SYNC)
        assert len(outbound) == 1
        assert outbound[0].dedup_key == f"outbound:{fulfillment_id}"
        assert outbound[0].payload == {"fulfillment_id": fulfillment_id}

        notification = _jobs(db_session, SyncJobType.SEND_NOTIFICATION)
        assert [job.dedup_key for job in notification] == [f"fulfillment_shipped:{fulfillment_id}"]

    def test_storefront_fulfillment_is_not_echoed_back(self, db_session, order_in_production):
        InboundFulfillmentService(db_session).create(order_in_production, _payload(), FulfillmentSource.SHOPIFY)

        assert _jobs(db_session, SyncJobType.OUTBOUND_FULFILLMENT_SYNC) == []
        assert len(_jobs(db_session, SyncJobType.SEND_NOTIFICATION)) == 1

    def test_manual_order_has_no_outbound_sync(self, db_session, manual_order):
        manual_order.status = OrderStatus.IN_PRODUCTION
        db_session.commit()
        item = manual_order.items[0]

        result = InboundFulfillmentService(db_session).create_manual(manual_order, [{"order_item_id": item.id}])

        assert result["success"] is True
        assert _jobs(db_session, SyncJobType.OUTBOUND_FULFILLMENT_SYNC) == []

    def test_shipment_with_no_accepted_lines_queues_nothing(self, db_session, order_in_production):
        service = InboundFulfillmentService(db_session)
        first = service.create(order_in_production, _payload("F-1"), FulfillmentSource.PRODUCTION)

        echo = service.create(order_in_production, _payload("F-echo"), FulfillmentSource.PRODUCTION)

        assert echo["success"] is True
        assert echo["warnings"] == ["Line 9001: quantity 2 exceeds remaining 0"]
        assert echo["fulfillment"].line_items == []
        first_id = first["fulfillment"].id
        assert [job.dedup_key for job in _jobs(db_session, SyncJobType.SEND_NOTIFICATION)] == [f"fulfillment_shipped:{first_id}"]
        assert [job.dedup_key for job in _jobs(db_session, SyncJobType.OUTBOUND_FULFILLMENT_SYNC)] == [f"outbound:{first_id}"]


class TestManual:
    """Operator-entered shipments"""

    def test_create_manual(self, db_session, order_in_production, user):
        item = order_in_production.active_items[0]
        service = InboundFulfillmentService(db_session, actor=Actor.for_user(user))

        result = service.create_manual(
            order_in_production,
            [{"order_item_id": item.id, "quantity": 2}],
            {"tracking_company": "Courier Post", "tracking_number": "CP1"},
        )

        fulfillment = result["fulfillment"]
        assert fulfillment.source == FulfillmentSource.MANUAL
        assert fulfillment.external_id.startswith("manual-")
        assert fulfillment.tracking_number == "CP1"
        assert order_in_production.status == OrderStatus.FULFILLED
        activity = (
            db_session.query(OrderActivity)
            .filter(OrderActivity.activity_type == ActivityType.FULFILLMENT_CREATED)
            .one()
        )
        assert activity.actor_id == user.id

    def test_requires_in_production(self, db_session, order):
        result = InboundFulfillmentService(db_session).create_manual(order, [{"order_item_id": order.items[0].id}])
        assert result == {"success": False, "error": "Cannot fulfill order in draft state"}
        assert db_session.query(Fulfillment).count() == 0

    def test_requires_lines(self, db_session, order_in_production):
        result = InboundFulfillmentService(db_session).create_manual(order_in_production, [])
        assert result["success"] is False


class TestUpdate:
    def test_updates_tracking_and_status(self, db_session, order_in_production):
        service = InboundFulfillmentService(db_session)
        fulfillment = service.create(
            order_in_production, _payload(status="pending", tracking_urls=[]), FulfillmentSource.PRODUCTION,
        )["fulfillment"]

        result = service.update(fulfillment, {"status": "success", "tracking_url": "https://track.example/2"})

        assert result["success"] is True
        assert fulfillment.status == FulfillmentStatus.SUCCESS
        assert fulfillment.tracking_url == "https://track.example/2"
        assert fulfillment.tracking_number == "NZ123"
        assert [li.quantity for li in fulfillment.line_items] == [2]
        types = [a.activity_type for a in db_session.query(OrderActivity).all()]
        assert ActivityType.FULFILLMENT_UPDATED in types


class TestHelpers:
    @pytest.mark.parametrize("value,expected", [
        ("success", FulfillmentStatus.SUCCESS),
        ("CANCELED", FulfillmentStatus.CANCELLED),
        ("cancelled", FulfillmentStatus.CANCELLED),
        ("failure", FulfillmentStatus.FAILURE),
        ("open", FulfillmentStatus.PENDING),
        (None, FulfillmentStatus.PENDING),
    ])
    def test_map_status(self, value, expected):
        assert map_status(value) == expected

    def test_tracking_url_prefers_single_url(self):
        assert tracking_url_from({"tracking_url": "a", "tracking_urls": ["b"]}) == "a"
        assert tracking_url_from({"tracking_urls": ["b"]}) == "b"
        assert tracking_url_from({}) is None
