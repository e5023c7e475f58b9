"""
Persistence for normalized QuickBooks entities, keyed by (realm_id, qb_id)
"""
import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from qbsync.core.timeutils import utcnow
from qbsync.services.entity_preparers import ENTITY_CONFIG

logger = logging.getLogger(__name__)


def upsert(db: Session, entity_type: str, row: Dict[str, Any]) -> str:
    """
    Insert or update one prepared entity row inside a SAVEPOINT

    Returns:
        'created', 'updated', or 'skipped' (sync token unchanged)
    """
    model = ENTITY_CONFIG[entity_type].model
    realm_id = row.get("realm_id")
    qb_id = row.get("qb_id")
    if not realm_id or not qb_id:
        raise ValueError(f"{entity_type} row is missing realm_id or qb_id")

    with db.begin_nested():
        existing = db.query(model).filter(
            model.realm_id == realm_id,
            model.qb_id == qb_id,
        ).first()

        if existing:
            sync_token = row.get("sync_token")
            unchanged = (
                existing.sync_token == sync_token
                if sync_token is not None
                else existing.raw_data == row.get("raw_data")
            )
            if unchanged:
                logger.debug(
                    "Skipped %s %s for realm %s: sync token unchanged (%s)",
                    entity_type, qb_id, realm_id, sync_token,
                )
                return "skipped"

            for key, value in row.items():
                setattr(existing, key, value)
            existing.last_synced_at = utcnow()
            logger.debug("Updated %s %s for realm %s", entity_type, qb_id, realm_id)
            return "updated"

        db.add(model(**row, last_synced_at=utcnow()))
        logger.debug("Created %s %s for realm %s", entity_type, qb_id, realm_id)
        return "created"


def delete(db: Session, entity_type: str, realm_id: str, qb_id: str) -> bool:
    """Hard delete; returns True when a row was removed"""
    model = ENTITY_CONFIG[entity_type].model
    with db.begin_nested():
        deleted = db.query(model).filter(
            model.realm_id == realm_id,
            model.qb_id == str(qb_id),
        ).delete(synchronize_session=False)
    return deleted > 0


def count(db: Session, entity_type: str, realm_id: str) -> int:
    model = ENTITY_CONFIG[entity_type].model
    return db.query(model).filter(model.realm_id == realm_id).count()
