"""
QuickBooks Change Data Capture (CDC) Service

This service handles:
- Fetching everything changed since the realm's checkpoint in one request
- Classifying changed items as upserts or tombstones
- Applying changes with per-item error isolation
- Advancing the checkpoint through the sync log
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from qbsync.config import AppConfig
from qbsync.core.exceptions import NotFoundError, QuickBooksSyncError
from qbsync.core.timeutils import utcnow
from qbsync.models.quickbooks_connection import QuickBooksConnection
from qbsync.services import entity_store
from qbsync.services.checkpoint_service import CheckpointService
from qbsync.services.entity_preparers import SUPPORTED_ENTITY_TYPES, is_supported, prepare_entity
from qbsync.services.quickbooks_client import QuickBooksClient
from qbsync.services.quickbooks_oauth_service import QuickBooksOAuthService

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Session, QuickBooksConnection], QuickBooksClient]


def is_tombstone(item: Dict[str, Any]) -> bool:
    """QuickBooks marks deletions in the CDC feed with status 'Deleted'"""
    status = item.get("status")
    return isinstance(status, str) and status.lower() == "deleted"


def empty_stats() -> Dict[str, int]:
    return {"created": 0, "updated": 0, "deleted": 0, "skipped": 0, "errors": 0}


class CDCService:
    """Incremental sync of a QuickBooks realm driven by the CDC endpoint"""

    def __init__(
        self,
        config: AppConfig,
        oauth_service: QuickBooksOAuthService,
        checkpoint_service: CheckpointService,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config
        self.oauth_service = oauth_service
        self.checkpoint_service = checkpoint_service
        self.client_factory = client_factory or (
            lambda db, connection: QuickBooksClient(config.quickbooks, oauth_service, db, connection)
        )

    def fetch_changes(
        self,
        client: QuickBooksClient,
        since: datetime,
        entity_types: List[str],
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        One multi-entity CDC request, flattened to {entity_type: [items]}

        The response nests as CDCResponse[].QueryResponse[].{EntityType: [...]}.
        """
        changes: Dict[str, List[Dict[str, Any]]] = {}
        for cdc_response in client.cdc(entity_types, since):
            for query_response in cdc_response.get("QueryResponse", []) or []:
                for entity_type, items in query_response.items():
                    if not isinstance(items, (list, dict)):
                        # startPosition, maxResults, totalCount
                        continue
                    if isinstance(items, dict):
                        items = [items]
                    changes.setdefault(entity_type, []).extend(items)

        logger.info(
            "CDC for realm %s since %s returned %s",
            client.realm_id,
            since.isoformat(),
            {entity_type: len(items) for entity_type, items in changes.items()},
        )
        return changes

    def apply_changes(
        self,
        db: Session,
        realm_id: str,
        changes: Dict[str, List[Dict[str, Any]]],
    ) -> Dict[str, int]:
        """Apply tombstones as hard deletes and everything else as upserts"""
        stats = empty_stats()
        for entity_type, items in changes.items():
            if not is_supported(entity_type):
                logger.debug(f"Skipping {len(items)} changes for untracked entity type {entity_type}")
                continue
            self._apply_items(db, realm_id, entity_type, items, stats)
        db.commit()
        return stats

    def _apply_items(
        self,
        db: Session,
        realm_id: str,
        entity_type: str,
        items: List[Dict[str, Any]],
        stats: Dict[str, int],
    ) -> None:
        for item in items:
            qb_id = item.get("Id")
            try:
                if is_tombstone(item):
                    if entity_store.delete(db, entity_type, realm_id, qb_id):
                        stats["deleted"] += 1
                        logger.debug(f"Deleted {entity_type} {qb_id}")
                    else:
                        stats["skipped"] += 1
                    continue

                row = prepare_entity(item, entity_type, realm_id)
                if row is None:
                    stats["skipped"] += 1
                    continue
                stats[entity_store.upsert(db, entity_type, row)] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"Failed to apply {entity_type} {qb_id} for realm {realm_id}: {str(e)}")

    def run(self, db: Session, realm_id: str, entity_types: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        One CDC cycle for a realm

        Reads the checkpoint, fetches and applies changes, then writes the
        success log that advances the checkpoint to the fetch start time. A
        cycle with zero changes still advances it. If the fetch itself fails a
        failed log is written, the checkpoint stays put, and the error propagates.
        """
        connection = self.oauth_service.get_token(db, realm_id)
        if connection is None:
            raise NotFoundError(f"No active QuickBooks connection for realm {realm_id}")

        client = self.client_factory(db, connection)
        entity_types = entity_types or SUPPORTED_ENTITY_TYPES
        started_at = utcnow()
        changed_since = self.checkpoint_service.resolve_changed_since(db, realm_id, now=started_at)

        logger.info(f"Starting CDC sync for realm {realm_id} since {changed_since.isoformat()}")
        try:
            changes = self.fetch_changes(client, changed_since, entity_types)
        except QuickBooksSyncError as e:
            logger.error(f"CDC fetch failed for realm {realm_id}: {e.message}")
            db.rollback()
            self.checkpoint_service.record_failure(db, realm_id, started_at, changed_since, e.message)
            raise

        stats = self.apply_changes(db, realm_id, changes)
        stats["total_changes"] = stats["created"] + stats["updated"] + stats["deleted"]
        entities_synced = [entity_type for entity_type, items in changes.items() if items and is_supported(entity_type)]

        log = self.checkpoint_service.record_success(
            db, realm_id, started_at, changed_since, stats, entities_synced
        )
        duration = (log.sync_completed_at - started_at).total_seconds()

        logger.info(
            "CDC sync for realm %s complete: created=%s updated=%s deleted=%s errors=%s",
            realm_id, stats["created"], stats["updated"], stats["deleted"], stats["errors"],
        )
        return {
            "stats": {
                "created": stats["created"],
                "updated": stats["updated"],
                "deleted": stats["deleted"],
                "errors": stats["errors"],
            },
            "total_changes": stats["total_changes"],
            "duration": duration,
            "entities_synced": entities_synced,
            "changed_since": changed_since.isoformat(),
            "checkpoint": started_at.isoformat(),
        }

    def apply_entity(
        self,
        db: Session,
        client: QuickBooksClient,
        realm_id: str,
        entity_type: str,
        since: datetime,
    ) -> Dict[str, int]:
        """CDC for one entity type, as run by an incremental entity job"""
        changes = self.fetch_changes(client, since, [entity_type])
        items = changes.get(entity_type, [])
        stats = empty_stats()
        self._apply_items(db, realm_id, entity_type, items, stats)
        db.commit()
        return {
            "total": len(items),
            "imported": stats["created"] + stats["updated"] + stats["deleted"] + stats["skipped"],
            "errors": stats["errors"],
        }
