"""
Webhook gateway tests: signature verification, per-delivery deduplication and the processing log
"""
import json
from datetime import timedelta

from conftest import PRODUCTION_SECRET, SHOP_DOMAIN, SHOPIFY_SECRET, sign
from printlink.models import ProductVariant, WebhookLog, utcnow
from printlink.services.credentials import decrypt_payload, encrypt_token
from printlink.services.webhook_gateway import (
    cleanup_old_webhook_logs,
    shopify_webhook_secrets,
    verify_webhook_hmac,
)
from printlink.services.webhook_handlers import STOREFRONT_HANDLERS

PRODUCT_PAYLOAD = {
    "id": 100,
    "title": "Poster",
    "variants": [{"id": 222, "title": "A2", "sku": "POSTER-A2", "inventory_item_id": 777}],
}


def _logs(db_session):
    db_session.expire_all()
    return db_session.query(WebhookLog).all()


class TestVerifyHmac:
    """HMAC-SHA256 signature check"""

    def test_valid_signature(self):
        body = b'{"id": 1}'
        assert verify_webhook_hmac(body, sign(body, "secret"), "secret")

    def test_wrong_secret(self):
        body = b'{"id": 1}'
        assert not verify_webhook_hmac(body, sign(body, "secret"), "other")

    def test_missing_parts(self):
        body = b'{"id": 1}'
        assert not verify_webhook_hmac(body, None, "secret")
        assert not verify_webhook_hmac(body, sign(body, "secret"), "")
        assert not verify_webhook_hmac(b"", sign(b"", "secret"), "secret")


class TestSecrets:
    def test_store_secret_comes_first(self, db_session, store):
        store.app_secret_encrypted = encrypt_token("store-secret")
        db_session.commit()
        assert shopify_webhook_secrets(db_session, SHOP_DOMAIN) == ["store-secret", SHOPIFY_SECRET]

    def test_unknown_shop_uses_app_secret(self, db_session):
        assert shopify_webhook_secrets(db_session, "nobody.myshopify.com") == [SHOPIFY_SECRET]


class TestGateway:
    """End-to-end delivery through the webhook routes"""

    def test_bad_signature_writes_nothing(self, db_session, store, send_webhook):
        response = send_webhook("shopify/products/create", PRODUCT_PAYLOAD, secret=None)

        assert response.status_code == 401
        assert _logs(db_session) == []
        assert db_session.query(ProductVariant).count() == 0

    def test_wrong_source_secret_is_rejected(self, db_session, send_webhook):
        response = send_webhook("production/orders/paid", {"id": 1}, secret=SHOPIFY_SECRET)
        assert response.status_code == 401
        assert _logs(db_session) == []

    def test_delivery_is_processed_and_logged(self, db_session, store, send_webhook):
        response = send_webhook("shopify/products/create", PRODUCT_PAYLOAD, webhook_id="wh-100")

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert response.json()["success"] is True

        logs = _logs(db_session)
        assert len(logs) == 1
        log = logs[0]
        assert log.status_code == 200
        assert log.webhook_id == "wh-100"
        assert log.topic == "products/create"
        assert log.source == "shopify"
        assert log.store_id == store.id
        assert log.error_message is None
        assert log.processing_time_ms is not None
        assert log.headers["x-shopify-hmac-sha256"] == "[REDACTED]"
        assert decrypt_payload(log.payload_ciphertext) == PRODUCT_PAYLOAD
        assert db_session.query(ProductVariant).filter(ProductVariant.external_variant_id == "222").count() == 1

    def test_redelivery_is_a_duplicate(self, db_session, store, send_webhook, monkeypatch):
        calls = []

        async def counting_handler(db, ctx, payload):
            calls.append(ctx.webhook_id)
            return {"success": True}

        monkeypatch.setitem(STOREFRONT_HANDLERS, "products/create", counting_handler)

        first = send_webhook("shopify/products/create", PRODUCT_PAYLOAD, webhook_id="wh-dup")
        second = send_webhook("shopify/products/create", PRODUCT_PAYLOAD, webhook_id="wh-dup")

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert calls == ["wh-dup"]
        assert len(_logs(db_session)) == 1

    def test_in_progress_delivery_is_a_duplicate(self, db_session, store, send_webhook):
        db_session.add(WebhookLog(source="shopify", topic="products/create", webhook_id="wh-busy", status_code=0))
        db_session.commit()

        response = send_webhook("shopify/products/create", PRODUCT_PAYLOAD, webhook_id="wh-busy")

        assert response.json()["duplicate"] is True
        assert db_session.query(ProductVariant).count() == 0

    def test_failed_delivery_is_reprocessed_once(self, db_session, store, send_webhook):
        db_session.add(WebhookLog(
            source="shopify", topic="products/create", webhook_id="wh-retry", status_code=500, error_message="boom",
        ))
        db_session.commit()

        retried = send_webhook("shopify/products/create", PRODUCT_PAYLOAD, webhook_id="wh-retry")
        again = send_webhook("shopify/products/create", PRODUCT_PAYLOAD, webhook_id="wh-retry")

        assert retried.status_code == 200
        assert retried.json().get("duplicate") is None
        assert again.json()["duplicate"] is True
        logs = _logs(db_session)
        assert len(logs) == 1
        assert logs[0].status_code == 200
        assert logs[0].error_message is None
        assert db_session.query(ProductVariant).count() == 1

    def test_handler_exception_is_recorded_as_500(self, db_session, store, send_webhook, monkeypatch):
        async def failing_handler(db, ctx, payload):
            raise RuntimeError("database on fire")

        monkeypatch.setitem(STOREFRONT_HANDLERS, "products/create", failing_handler)
        response = send_webhook("shopify/products/create", PRODUCT_PAYLOAD, webhook_id="wh-fail")

        assert response.status_code == 500
        log = _logs(db_session)[0]
        assert log.status_code == 500
        assert "RuntimeError: database on fire" in log.error_message

        monkeypatch.undo()
        redelivered = send_webhook("shopify/products/create", PRODUCT_PAYLOAD, webhook_id="wh-fail")
        assert redelivered.status_code == 200
        assert _logs(db_session)[0].status_code == 200

    def test_business_failure_is_acknowledged(self, db_session, send_webhook):
        response = send_webhook(
            "shopify/products/create", PRODUCT_PAYLOAD, webhook_id="wh-unknown", shop_domain="unknown.myshopify.com",
        )

        assert response.status_code == 200
        assert response.json()["success"] is False
        log = _logs(db_session)[0]
        assert log.status_code == 200
        assert "Unknown store" in log.error_message

    def test_unknown_topic(self, db_session, send_webhook):
        response = send_webhook("shopify/carts/create", {"id": 1})
        assert response.status_code == 404
        assert _logs(db_session) == []

    def test_invalid_json(self, db_session, store, send_webhook):
        response = send_webhook("shopify/products/create", None, raw_body=b"not json")
        assert response.status_code == 400
        assert _logs(db_session) == []

    def test_production_source(self, db_session, send_webhook):
        response = send_webhook(
            "production/orders/paid", {"id": 424242}, webhook_id="wh-prod", shop_domain=None, secret=PRODUCTION_SECRET,
        )
        assert response.status_code == 200
        assert response.json()["success"] is False
        log = _logs(db_session)[0]
        assert log.source == "production"
        assert log.topic == "orders/paid"

    def test_delivery_without_webhook_id_is_logged(self, db_session, store, client):
        body = json.dumps(PRODUCT_PAYLOAD).encode("utf-8")
        response = client.post(
            "/api/webhooks/shopify/products/update",
            content=body,
            headers={"X-Shopify-Hmac-Sha256": sign(body, SHOPIFY_SECRET), "X-Shopify-Shop-Domain": SHOP_DOMAIN},
        )
        assert response.status_code == 200
        assert _logs(db_session)[0].webhook_id is None


class TestCleanup:
    def test_deletes_logs_older_than_retention(self, db_session):
        db_session.add(WebhookLog(source="shopify", topic="orders/create", webhook_id="old", created_at=utcnow() - timedelta(days=45)))
        db_session.add(WebhookLog(source="shopify", topic="orders/create", webhook_id="new"))
        db_session.commit()

        assert cleanup_old_webhook_logs(db_session, days=30) == 1
        assert [log.webhook_id for log in db_session.query(WebhookLog).all()] == ["new"]
