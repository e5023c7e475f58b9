"""
CDC checkpoint store backed by the QuickBooks sync log

The checkpoint for a realm is the latest last_sync_checkpoint among its
successful sync logs. Writing a success log is the only way it advances.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from qbsync.config import SyncConfig
from qbsync.core.timeutils import utcnow
from qbsync.models.quickbooks_sync_log import QuickBooksSyncLog

logger = logging.getLogger(__name__)


class CheckpointService:
    def __init__(self, config: SyncConfig):
        self.config = config

    def get_checkpoint(self, db: Session, realm_id: str) -> Optional[datetime]:
        # MAX keeps the value monotonic even if an older cycle finishes last
        return db.query(func.max(QuickBooksSyncLog.last_sync_checkpoint)).filter(
            QuickBooksSyncLog.realm_id == realm_id,
            QuickBooksSyncLog.status == "success",
        ).scalar()

    def resolve_changed_since(self, db: Session, realm_id: str, now: Optional[datetime] = None) -> datetime:
        """Lower bound for the next CDC fetch, clamped to the window QBO accepts"""
        now = now or utcnow()
        checkpoint = self.get_checkpoint(db, realm_id)
        if checkpoint is None:
            changed_since = now - timedelta(days=self.config.cdc_lookback_days)
        else:
            changed_since = checkpoint

        oldest_allowed = now - timedelta(days=self.config.cdc_max_window_days)
        if changed_since < oldest_allowed:
            logger.warning(
                "Checkpoint %s for realm %s is outside the CDC window, clamping to %s",
                changed_since, realm_id, oldest_allowed,
            )
            changed_since = oldest_allowed
        return changed_since

    def record_success(
        self,
        db: Session,
        realm_id: str,
        started_at: datetime,
        changed_since: Optional[datetime],
        stats: Dict[str, int],
        entities_synced: Optional[List[str]] = None,
        sync_type: str = "cdc",
    ) -> QuickBooksSyncLog:
        """
        Write a completed cycle; its checkpoint is the fetch start time

        Anything changed after started_at is picked up by the next cycle.
        """
        completed_at = utcnow()
        log = QuickBooksSyncLog(
            realm_id=realm_id,
            sync_type=sync_type,
            status="success",
            records_created=stats.get("created", 0),
            records_updated=stats.get("updated", 0),
            records_deleted=stats.get("deleted", 0),
            error_count=stats.get("errors", 0),
            total_changes=stats.get("total_changes", 0),
            entities_synced=entities_synced or [],
            sync_started_at=started_at,
            sync_completed_at=completed_at,
            sync_duration_seconds=int((completed_at - started_at).total_seconds()),
            changed_since=changed_since,
            last_sync_checkpoint=started_at,
        )
        db.add(log)
        db.commit()
        logger.info(f"Checkpoint for realm {realm_id} advanced to {started_at.isoformat()}")
        return log

    def record_failure(
        self,
        db: Session,
        realm_id: str,
        started_at: datetime,
        changed_since: Optional[datetime],
        error_message: str,
        sync_type: str = "cdc",
    ) -> QuickBooksSyncLog:
        """Failed cycles are logged without a checkpoint"""
        completed_at = utcnow()
        log = QuickBooksSyncLog(
            realm_id=realm_id,
            sync_type=sync_type,
            status="failed",
            sync_started_at=started_at,
            sync_completed_at=completed_at,
            sync_duration_seconds=int((completed_at - started_at).total_seconds()),
            changed_since=changed_since,
            error_message=error_message,
        )
        db.add(log)
        db.commit()
        return log
