"""
Scheduled QuickBooks sync worker

Meant to be run from cron or a platform scheduler. Each run will:
1. Run one CDC cycle for every active QuickBooks connection
2. Drain pending sync entity jobs once, within the processing time budget
"""

import sys
import os
import logging

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dotenv import load_dotenv

load_dotenv()

from qbsync.config import AppConfig
from qbsync.core.database import SessionLocal, Base, engine, register_models
from qbsync.core.exceptions import QuickBooksSyncError
from qbsync.services.cdc_service import CDCService
from qbsync.services.checkpoint_service import CheckpointService
from qbsync.services.quickbooks_importer import QuickBooksImporter
from qbsync.services.quickbooks_oauth_service import QuickBooksOAuthService
from qbsync.services.sync_event_service import SyncEventService
from qbsync.services.sync_job_service import SyncJobService

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main() -> int:
    """Run CDC for each realm, then process queued entity jobs; returns an exit code"""
    register_models()
    Base.metadata.create_all(bind=engine)

    config = AppConfig()
    oauth_service = QuickBooksOAuthService(config.quickbooks)
    checkpoint_service = CheckpointService(config.sync)
    cdc_service = CDCService(config, oauth_service, checkpoint_service)
    sync_job_service = SyncJobService(
        config,
        oauth_service,
        QuickBooksImporter(config.quickbooks),
        cdc_service,
        checkpoint_service,
        SyncEventService(config.sync),
    )

    db = SessionLocal()
    failures = 0
    try:
        connections = oauth_service.list_active_connections(db)
        if not connections:
            logger.warning("No active QuickBooks connections found")

        for connection in connections:
            realm_id = connection.realm_id
            logger.info(f"Running CDC for realm {realm_id} ({connection.company_name or 'unknown company'})")
            try:
                result = cdc_service.run(db, realm_id)
            except QuickBooksSyncError as e:
                failures += 1
                logger.error(f"CDC failed for realm {realm_id}: {e.message}")
                continue
            logger.info(
                f"CDC for realm {realm_id}: {result['stats']} in {result['duration']:.1f}s "
                f"(entities: {', '.join(result['entities_synced']) or 'none'})"
            )

        summary = sync_job_service.process(db)
        logger.info(f"Entity jobs: {summary}")
        failures += summary["errors"]
    finally:
        db.close()

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
