"""
Variant mapping routes: catalog defaults, bundle slots, bulk apply and per-item resolution.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from printlink.auth import get_current_user, is_admin
from printlink.database import get_db
from printlink.errors import ValidationError
from printlink.http.access import get_order_for_user, get_variant_for_user
from printlink.http.requests.schemas import BulkMappingRequest, BundleSlotsRequest, DefaultMappingRequest, MappingAttributes
from printlink.models import OrderItem, ProductVariant, SyncJobType, User, VariantMapping
from printlink.services import variant_mapping
from printlink.services.job_queue import enqueue_job

logger = logging.getLogger(__name__)
router = APIRouter()


def _mapping_to_dict(m: VariantMapping) -> dict:
    data = {attr: getattr(m, attr) for attr in variant_mapping.MAPPING_ATTRIBUTES}
    data.update({
        "id": m.id,
        "productVariantId": m.product_variant_id,
        "bundleId": m.bundle_id,
        "orderItemId": m.order_item_id,
        "slotPosition": m.slot_position,
        "countryCode": m.country_code,
        "isDefault": m.is_default,
        "complete": m.is_complete,
    })
    return data


@router.put("/default")
async def upsert_default_mapping(
    body: DefaultMappingRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    variant = get_variant_for_user(db, body.product_variant_id, current_user)
    try:
        mapping = variant_mapping.upsert_default_mapping(
            db, variant, body.country_code, body.attributes(), slot_position=body.slot_position
        )
        if "frame_sku_cost_cents" in body.attributes() and body.slot_position == 1:
            enqueue_job(
                db,
                SyncJobType.SYNC_VARIANT_COST,
                {"variant_id": variant.id, "country_code": body.country_code},
            )
        db.commit()
    except ValidationError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    db.refresh(mapping)
    return _mapping_to_dict(mapping)


@router.patch("/{mapping_id}")
async def update_mapping(
    mapping_id: str,
    body: MappingAttributes,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    mapping = db.query(VariantMapping).filter(VariantMapping.id == mapping_id).first()
    if not mapping:
        raise HTTPException(status_code=404, detail="Mapping not found")
    get_variant_for_user(db, mapping.product_variant_id, current_user)
    try:
        variant_mapping.update_mapping(db, mapping, body.attributes())
        db.commit()
    except ValidationError as e:
        db.rollback()
        raise HTTPException(status_code=409 if mapping.is_snapshot else 400, detail=str(e))
    db.refresh(mapping)
    return _mapping_to_dict(mapping)


@router.put("/bundles/{variant_id}")
async def set_bundle_slots(
    variant_id: str,
    body: BundleSlotsRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    variant = get_variant_for_user(db, variant_id, current_user)
    try:
        bundle = variant_mapping.set_bundle_slot_count(db, variant, body.slot_count)
        db.commit()
    except ValidationError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    return {"productVariantId": variant.id, "bundleId": bundle.id, "slotCount": bundle.slot_count}


@router.post("/bulk", status_code=202)
async def bulk_apply_default_mapping(
    body: BulkMappingRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    attributes = body.attributes()
    if not attributes:
        raise HTTPException(status_code=400, detail="No mapping attributes given")
    if not is_admin(current_user):
        owned = {
            v.id
            for v in db.query(ProductVariant)
            .filter(ProductVariant.id.in_(body.variant_ids))
            .all()
            if v.store.user_id == current_user.id
        }
        foreign = [vid for vid in body.variant_ids if vid not in owned]
        if foreign:
            raise HTTPException(status_code=403, detail="Access denied")
    job = enqueue_job(
        db,
        SyncJobType.BULK_APPLY_DEFAULT_MAPPING,
        {"variant_ids": body.variant_ids, "country_code": body.country_code, "attributes": attributes},
    )
    db.commit()
    logger.info("Queued bulk mapping job %s for %s variant(s)", job.id, len(body.variant_ids))
    return {"jobId": job.id, "status": job.status.value}


@router.get("/resolve/{order_item_id}")
async def resolve_order_item(
    order_item_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    item = db.query(OrderItem).filter(OrderItem.id == order_item_id).first()
    if not item:
        raise HTTPException(status_code=404, detail="Order item not found")
    order = get_order_for_user(db, item.order_id, current_user)
    mappings = variant_mapping.resolve_mappings(db, item, order.country_code)
    return {
        "orderItemId": item.id,
        "countryCode": order.country_code,
        "resolvable": variant_mapping.is_item_resolvable(db, item, order.country_code),
        "slots": [
            {"slotPosition": position, "mapping": _mapping_to_dict(m) if m else None}
            for position, m in enumerate(mappings, start=1)
        ],
    }
