"""
Variant mapping resolver tests: catalog defaults, snapshots and bundle slots
"""
import pytest

from conftest import COMPLETE_MAPPING
from printlink.errors import ValidationError
from printlink.models import Bundle, ProductVariant, VariantMapping, utcnow
from printlink.services import variant_mapping


def _defaults(db_session, variant):
    return (
        db_session.query(VariantMapping)
        .filter(VariantMapping.product_variant_id == variant.id, VariantMapping.is_default.is_(True))
        .order_by(VariantMapping.country_code, VariantMapping.slot_position)
        .all()
    )


class TestDefaults:
    """Creating and resolving catalog defaults"""

    def test_upsert_creates_then_updates(self, db_session, variant):
        created = variant_mapping.upsert_default_mapping(db_session, variant, "nz", {"frame_sku_id": 10})
        db_session.commit()
        updated = variant_mapping.upsert_default_mapping(db_session, variant, "NZ", {"image_id": 20})
        db_session.commit()

        assert created.id == updated.id
        assert updated.country_code == "NZ"
        assert updated.frame_sku_id == 10
        assert updated.image_id == 20
        assert len(_defaults(db_session, variant)) == 1

    def test_one_default_per_country(self, db_session, variant):
        variant_mapping.upsert_default_mapping(db_session, variant, "NZ", {"frame_sku_id": 10})
        variant_mapping.upsert_default_mapping(db_session, variant, "AU", {"frame_sku_id": 11})
        db_session.commit()

        assert [(m.country_code, m.frame_sku_id) for m in _defaults(db_session, variant)] == [("AU", 11), ("NZ", 10)]

    def test_rejects_unknown_attribute(self, db_session, variant):
        with pytest.raises(ValidationError):
            variant_mapping.upsert_default_mapping(db_session, variant, "NZ", {"order_item_id": "x"})

    def test_rejects_bad_country_and_slot(self, db_session, variant):
        with pytest.raises(ValidationError):
            variant_mapping.upsert_default_mapping(db_session, variant, "NZL", {})
        with pytest.raises(ValidationError):
            variant_mapping.upsert_default_mapping(db_session, variant, "NZ", {}, slot_position=2)

    def test_resolves_default_for_country(self, db_session, order_item, default_mapping):
        assert variant_mapping.resolve_mappings(db_session, order_item, "NZ") == [default_mapping]
        assert variant_mapping.is_item_resolvable(db_session, order_item, "NZ")

    def test_other_country_is_unresolved(self, db_session, order_item, default_mapping):
        assert variant_mapping.resolve_mappings(db_session, order_item, "AU") == [None]
        assert not variant_mapping.is_item_resolvable(db_session, order_item, "AU")

    def test_incomplete_mapping_is_not_resolvable(self, db_session, order_item, default_mapping):
        default_mapping.cw = None
        db_session.commit()
        assert not default_mapping.is_complete
        assert not variant_mapping.is_item_resolvable(db_session, order_item, "NZ")

    def test_deleted_item_is_not_resolvable(self, db_session, order_item, default_mapping):
        order_item.deleted_at = utcnow()
        db_session.commit()
        assert not variant_mapping.is_item_resolvable(db_session, order_item, "NZ")


class TestSnapshots:
    """Per-item copies frozen at submission"""

    def test_freeze_copies_default(self, db_session, order_item, default_mapping):
        frozen = variant_mapping.freeze_snapshots(db_session, order_item, "NZ")
        db_session.commit()

        assert len(frozen) == 1
        snapshot = frozen[0]
        assert snapshot.id != default_mapping.id
        assert snapshot.order_item_id == order_item.id
        assert snapshot.is_default is False
        assert snapshot.is_snapshot
        for attr, value in COMPLETE_MAPPING.items():
            assert getattr(snapshot, attr) == value

    def test_snapshot_survives_default_edits(self, db_session, order_item, default_mapping):
        variant_mapping.freeze_snapshots(db_session, order_item, "NZ")
        db_session.commit()
        variant_mapping.update_mapping(db_session, default_mapping, {"frame_sku_id": 99})
        db_session.commit()

        resolved = variant_mapping.resolve_mappings(db_session, order_item, "NZ")
        assert resolved[0].is_snapshot
        assert resolved[0].frame_sku_id == 10

    def test_freeze_is_idempotent(self, db_session, order_item, default_mapping):
        first = variant_mapping.freeze_snapshots(db_session, order_item, "NZ")
        second = variant_mapping.freeze_snapshots(db_session, order_item, "NZ")
        db_session.commit()

        assert [m.id for m in first] == [m.id for m in second]
        assert db_session.query(VariantMapping).filter(VariantMapping.order_item_id == order_item.id).count() == 1

    def test_snapshot_is_immutable(self, db_session, order_item, default_mapping):
        snapshot = variant_mapping.freeze_snapshots(db_session, order_item, "NZ")[0]
        with pytest.raises(ValidationError):
            variant_mapping.update_mapping(db_session, snapshot, {"frame_sku_id": 1})

    def test_freeze_without_default_fails(self, db_session, order_item):
        with pytest.raises(ValidationError):
            variant_mapping.freeze_snapshots(db_session, order_item, "NZ")


class TestBundles:
    """Multi-slot bundle variants"""

    def test_grow_copies_slot_one_without_image(self, db_session, variant, default_mapping):
        bundle = variant_mapping.set_bundle_slot_count(db_session, variant, 3)
        db_session.commit()

        assert bundle.slot_count == 3
        defaults = _defaults(db_session, variant)
        assert [m.slot_position for m in defaults] == [1, 2, 3]
        for copy in defaults[1:]:
            assert copy.bundle_id == bundle.id
            assert copy.frame_sku_id == 10
            assert copy.width == 297
            assert copy.image_id is None
            assert copy.cx is None
        assert defaults[0].bundle_id == bundle.id

    def test_bundle_needs_every_slot_complete(self, db_session, order_item, variant, default_mapping):
        variant_mapping.set_bundle_slot_count(db_session, variant, 2)
        db_session.commit()
        assert len(variant_mapping.resolve_mappings(db_session, order_item, "NZ")) == 2
        assert not variant_mapping.is_item_resolvable(db_session, order_item, "NZ")

        variant_mapping.upsert_default_mapping(
            db_session, variant, "NZ", {"image_id": 21, "cx": 0, "cy": 0, "cw": 500, "ch": 500}, slot_position=2,
        )
        db_session.commit()
        assert variant_mapping.is_item_resolvable(db_session, order_item, "NZ")

    def test_shrink_removes_unused_defaults(self, db_session, variant, default_mapping):
        variant_mapping.set_bundle_slot_count(db_session, variant, 3)
        db_session.commit()
        variant_mapping.set_bundle_slot_count(db_session, variant, 1)
        db_session.commit()

        assert [m.slot_position for m in _defaults(db_session, variant)] == [1]
        assert db_session.query(Bundle).one().slot_count == 1

    def test_shrink_keeps_order_snapshots(self, db_session, order_item, variant, default_mapping):
        variant_mapping.set_bundle_slot_count(db_session, variant, 2)
        variant_mapping.upsert_default_mapping(db_session, variant, "NZ", dict(COMPLETE_MAPPING), slot_position=2)
        db_session.commit()
        variant_mapping.freeze_snapshots(db_session, order_item, "NZ")
        db_session.commit()

        variant_mapping.set_bundle_slot_count(db_session, variant, 1)
        db_session.commit()

        assert [m.slot_position for m in _defaults(db_session, variant)] == [1]
        snapshots = (
            db_session.query(VariantMapping)
            .filter(VariantMapping.order_item_id == order_item.id)
            .order_by(VariantMapping.slot_position)
            .all()
        )
        assert [m.slot_position for m in snapshots] == [1, 2]
        assert db_session.query(Bundle).one().slot_count == 1

    @pytest.mark.parametrize("count", [0, 11])
    def test_slot_count_bounds(self, db_session, variant, count):
        with pytest.raises(ValidationError):
            variant_mapping.set_bundle_slot_count(db_session, variant, count)

    def test_slot_count_defaults_to_one(self, variant):
        assert variant_mapping.slot_count(variant) == 1
        assert variant_mapping.slot_count(None) == 1


class TestBulkApply:
    def test_is_idempotent(self, db_session, store, variant):
        second = ProductVariant(store_id=store.id, external_variant_id="112")
        db_session.add(second)
        db_session.commit()
        ids = [variant.id, second.id, "missing"]

        first_run = variant_mapping.bulk_apply_default_mapping(db_session, ids, "NZ", {"frame_sku_id": 10})
        second_run = variant_mapping.bulk_apply_default_mapping(db_session, ids, "NZ", {"frame_sku_id": 10})

        assert first_run == {"success": True, "applied": 2, "missing": ["missing"]}
        assert second_run == first_run
        assert db_session.query(VariantMapping).filter(VariantMapping.is_default.is_(True)).count() == 2
