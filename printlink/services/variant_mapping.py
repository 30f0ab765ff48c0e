"""
Variant mapping resolver.

A catalog default (is_default, no order item) says how a storefront variant is printed for a
country; a bundle variant has one default per slot. At production submission each item's
defaults are copied into snapshot rows bound to the item, which are never changed afterwards.
"""
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printlink.errors import ValidationError
from printlink.models import Bundle, OrderItem, ProductVariant, VariantMapping

logger = logging.getLogger(__name__)

MAX_BUNDLE_SLOTS = 10

# Attributes an operator may set on a mapping; identity columns are excluded.
MAPPING_ATTRIBUTES = (
    "image_id", "image_key",
    "frame_sku_id", "frame_sku_code", "frame_sku_title", "frame_sku_description", "frame_sku_cost_cents",
    "cx", "cy", "cw", "ch",
    "width", "height", "unit",
    "preview_url", "colour",
)
IMAGE_ATTRIBUTES = ("image_id", "image_key", "preview_url", "cx", "cy", "cw", "ch")


def slot_count(variant: Optional[ProductVariant]) -> int:
    if variant is None or variant.bundle is None:
        return 1
    return variant.bundle.slot_count


def default_mapping(db: Session, variant_id: str, country_code: str, slot_position: int = 1) -> Optional[VariantMapping]:
    return (
        db.query(VariantMapping)
        .filter(
            VariantMapping.product_variant_id == variant_id,
            VariantMapping.country_code == country_code.upper(),
            VariantMapping.slot_position == slot_position,
            VariantMapping.is_default.is_(True),
            VariantMapping.order_item_id.is_(None),
        )
        .first()
    )


def _snapshots_by_slot(db: Session, item: OrderItem) -> Dict[int, VariantMapping]:
    rows = db.query(VariantMapping).filter(VariantMapping.order_item_id == item.id).all()
    return {m.slot_position: m for m in rows}


def resolve_mappings(db: Session, item: OrderItem, country_code: Optional[str]) -> List[Optional[VariantMapping]]:
    """
    One entry per slot (index 0 is slot 1): the item's snapshot, else the catalog default
    for (variant, country, slot), else None.
    """
    variant = item.product_variant
    snapshots = _snapshots_by_slot(db, item)
    slots = slot_count(variant)
    if snapshots:
        slots = max(slots, max(snapshots))
    resolved: List[Optional[VariantMapping]] = []
    for position in range(1, slots + 1):
        mapping = snapshots.get(position)
        if mapping is None and variant is not None and country_code:
            mapping = default_mapping(db, variant.id, country_code, position)
        resolved.append(mapping)
    return resolved


def is_item_resolvable(db: Session, item: OrderItem, country_code: Optional[str]) -> bool:
    if not item.is_active or item.is_custom:
        return False
    mappings = resolve_mappings(db, item, country_code)
    return bool(mappings) and all(m is not None and m.is_complete for m in mappings)


def _copy_attributes(source: VariantMapping, target: VariantMapping, attributes: Iterable[str] = MAPPING_ATTRIBUTES) -> None:
    for attr in attributes:
        setattr(target, attr, getattr(source, attr))


def freeze_snapshots(db: Session, item: OrderItem, country_code: str) -> List[VariantMapping]:
    """
    Copy each slot's catalog default into a non-default row bound to item. Slots that already
    have a snapshot keep it. Raises ValidationError if a slot cannot be resolved. Flushes, does not commit.
    """
    variant = item.product_variant
    if variant is None:
        raise ValidationError(f"Order item {item.id} has no product variant")
    existing = _snapshots_by_slot(db, item)
    frozen: List[VariantMapping] = []
    for position in range(1, slot_count(variant) + 1):
        snapshot = existing.get(position)
        if snapshot is None:
            default = default_mapping(db, variant.id, country_code, position)
            if default is None:
                raise ValidationError(f"No default mapping for variant {variant.id} slot {position} in {country_code}")
            snapshot = VariantMapping(
                product_variant_id=variant.id,
                bundle_id=default.bundle_id,
                order_item_id=item.id,
                slot_position=position,
                country_code=default.country_code,
                is_default=False,
            )
            _copy_attributes(default, snapshot)
            db.add(snapshot)
        frozen.append(snapshot)
    db.flush()
    return frozen


def _apply_attributes(mapping: VariantMapping, attrs: dict) -> None:
    unknown = set(attrs) - set(MAPPING_ATTRIBUTES)
    if unknown:
        raise ValidationError(f"Unknown mapping attributes: {', '.join(sorted(unknown))}")
    for key, value in attrs.items():
        setattr(mapping, key, value)


def upsert_default_mapping(
    db: Session,
    variant: ProductVariant,
    country_code: str,
    attrs: dict,
    slot_position: int = 1,
) -> VariantMapping:
    """Create or update the catalog default for (variant, country, slot). Flushes, does not commit."""
    country_code = (country_code or "").upper()
    if len(country_code) != 2:
        raise ValidationError("country_code must be a 2-letter code")
    if slot_position < 1 or slot_position > slot_count(variant):
        raise ValidationError(f"slot_position must be between 1 and {slot_count(variant)}")

    mapping = default_mapping(db, variant.id, country_code, slot_position)
    if mapping is not None:
        _apply_attributes(mapping, attrs)
        db.flush()
        return mapping

    mapping = VariantMapping(
        product_variant_id=variant.id,
        bundle_id=variant.bundle.id if variant.bundle else None,
        slot_position=slot_position,
        country_code=country_code,
        is_default=True,
    )
    _apply_attributes(mapping, attrs)
    try:
        with db.begin_nested():
            db.add(mapping)
    except IntegrityError:
        # A concurrent request inserted the default first; update that row instead.
        logger.info("Default mapping for %s/%s/%s created concurrently; updating", variant.id, country_code, slot_position)
        mapping = default_mapping(db, variant.id, country_code, slot_position)
        if mapping is None:
            raise
        _apply_attributes(mapping, attrs)
        db.flush()
    return mapping


def update_mapping(db: Session, mapping: VariantMapping, attrs: dict) -> VariantMapping:
    if mapping.is_snapshot:
        raise ValidationError("Mapping is bound to an order item and cannot be changed")
    _apply_attributes(mapping, attrs)
    db.flush()
    return mapping


def set_bundle_slot_count(db: Session, variant: ProductVariant, new_count: int) -> Bundle:
    """
    Resize a variant's bundle. Growing copies slot 1's defaults (without image fields) into each
    new slot; shrinking removes the defaults above the new count.
    """
    if not isinstance(new_count, int) or new_count < 1 or new_count > MAX_BUNDLE_SLOTS:
        raise ValidationError(f"slot_count must be between 1 and {MAX_BUNDLE_SLOTS}")

    bundle = variant.bundle
    if bundle is None:
        bundle = Bundle(product_variant_id=variant.id, slot_count=1)
        db.add(bundle)
        db.flush()
        variant.bundle = bundle
        (
            db.query(VariantMapping)
            .filter(VariantMapping.product_variant_id == variant.id, VariantMapping.is_default.is_(True))
            .update({VariantMapping.bundle_id: bundle.id}, synchronize_session="fetch")
        )
    old_count = bundle.slot_count

    if new_count < old_count:
        # Order item snapshots are frozen copies and stay untouched.
        (
            db.query(VariantMapping)
            .filter(
                VariantMapping.product_variant_id == variant.id,
                VariantMapping.is_default.is_(True),
                VariantMapping.order_item_id.is_(None),
                VariantMapping.slot_position > new_count,
            )
            .delete(synchronize_session="fetch")
        )
    elif new_count > old_count:
        slot_one = (
            db.query(VariantMapping)
            .filter(
                VariantMapping.product_variant_id == variant.id,
                VariantMapping.is_default.is_(True),
                VariantMapping.order_item_id.is_(None),
                VariantMapping.slot_position == 1,
            )
            .all()
        )
        for source in slot_one:
            for position in range(old_count + 1, new_count + 1):
                if default_mapping(db, variant.id, source.country_code, position) is not None:
                    continue
                copy = VariantMapping(
                    product_variant_id=variant.id,
                    bundle_id=bundle.id,
                    slot_position=position,
                    country_code=source.country_code,
                    is_default=True,
                )
                _copy_attributes(source, copy, [a for a in MAPPING_ATTRIBUTES if a not in IMAGE_ATTRIBUTES])
                db.add(copy)

    bundle.slot_count = new_count
    db.flush()
    logger.info("Variant %s bundle slots %s -> %s", variant.id, old_count, new_count)
    return bundle


def bulk_apply_default_mapping(db: Session, variant_ids: List[str], country_code: str, attrs: dict) -> dict:
    """
    Apply the same attributes to slot 1's default of each variant. Re-running with the same input
    leaves the same rows. Commits.
    """
    applied, missing = 0, []
    for variant_id in variant_ids:
        variant = db.query(ProductVariant).filter(ProductVariant.id == variant_id).first()
        if variant is None:
            missing.append(variant_id)
            continue
        upsert_default_mapping(db, variant, country_code, attrs)
        applied += 1
    db.commit()
    return {"success": True, "applied": applied, "missing": missing}
