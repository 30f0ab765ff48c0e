"""
Reacts to rejected storefront credentials by flagging the store for reauthentication.
"""
import logging

from sqlalchemy.orm import Session

from printlink.errors import AuthenticationError
from printlink.models import Store, SyncJobType, utcnow

logger = logging.getLogger(__name__)


class StoreConnectionErrorHandler:
    def __init__(self, db: Session):
        self.db = db

    def handle(self, store: Store, error: Exception) -> bool:
        """
        Flag the store when error is an AuthenticationError. Returns True if the store was flagged
        by this call (first occurrence), False otherwise. Commits its own change.
        """
        if not isinstance(error, AuthenticationError):
            return False
        if store.needs_reauthentication:
            logger.info("Store %s already flagged for reauthentication", store.shop_domain)
            return False

        from printlink.services.job_queue import enqueue_job

        store.needs_reauthentication = True
        store.reauthentication_flagged_at = utcnow()
        enqueue_job(
            self.db,
            SyncJobType.SEND_NOTIFICATION,
            {"kind": "store_reauthentication", "store_id": store.id},
            dedup_key=f"reauth:{store.id}:{store.reauthentication_flagged_at.isoformat()}",
        )
        self.db.commit()
        logger.warning("Store %s flagged for reauthentication: %s", store.shop_domain, error)
        return True

    def clear(self, store: Store) -> None:
        """Reset the flag after a new access token has been saved."""
        store.needs_reauthentication = False
        store.reauthentication_flagged_at = None
        self.db.commit()
        logger.info("Store %s reauthenticated", store.shop_domain)
