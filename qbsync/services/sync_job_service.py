"""
QuickBooks Sync Job Scheduler

This service handles:
- Creating a sync job with one entity job per entity type
- Atomically claiming pending entity jobs across all sync jobs
- Time-boxed processing so each invocation stays under the request limit
- Rolling entity job outcomes up into the parent job
- Status, listing, cancellation and count verification
"""
import logging
import time
from datetime import date
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from qbsync.config import AppConfig
from qbsync.core.exceptions import AuthenticationError, IntegrityFault, NotFoundError, PreconditionError
from qbsync.core.timeutils import utcnow
from qbsync.models.sync_job import EntityJob, SyncJob, SYNC_TYPES, TERMINAL_JOB_STATUSES
from qbsync.services import entity_store
from qbsync.services.cdc_service import CDCService, ClientFactory
from qbsync.services.checkpoint_service import CheckpointService
from qbsync.services.entity_preparers import ENTITY_CONFIG, SUPPORTED_ENTITY_TYPES, is_supported
from qbsync.services.quickbooks_client import QuickBooksClient
from qbsync.services.quickbooks_importer import QuickBooksImporter
from qbsync.services.quickbooks_oauth_service import QuickBooksOAuthService
from qbsync.services.sync_event_service import SyncEventService

logger = logging.getLogger(__name__)


class SyncJobService:
    """Work queue of entity jobs, drained by repeated process() calls"""

    def __init__(
        self,
        config: AppConfig,
        oauth_service: QuickBooksOAuthService,
        importer: QuickBooksImporter,
        cdc_service: CDCService,
        checkpoint_service: CheckpointService,
        event_service: SyncEventService,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config
        self.oauth_service = oauth_service
        self.importer = importer
        self.cdc_service = cdc_service
        self.checkpoint_service = checkpoint_service
        self.event_service = event_service
        self.client_factory = client_factory or (
            lambda db, connection: QuickBooksClient(config.quickbooks, oauth_service, db, connection)
        )

    # Job creation

    def start(
        self,
        db: Session,
        realm_id: str,
        sync_type: str = "full",
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        entities: Optional[List[str]] = None,
    ) -> SyncJob:
        """
        Create a sync job and its entity jobs

        The job is inserted pending, one pending entity job is added per
        entity type, and the job is then flipped to running.
        """
        if sync_type not in SYNC_TYPES:
            raise PreconditionError(f"Invalid sync type: {sync_type}. Must be one of {', '.join(SYNC_TYPES)}")
        if start_date and end_date and start_date > end_date:
            raise PreconditionError("start_date must be on or before end_date")

        connection = self.oauth_service.get_active_connection(db, realm_id)
        if connection is None:
            raise NotFoundError(f"No active QuickBooks connection for realm {realm_id}")

        entity_types = self._resolve_entities(sync_type, entities)
        if not entity_types:
            raise PreconditionError("No valid entity types to sync")

        changed_since = None
        if sync_type == "incremental":
            changed_since = self.checkpoint_service.resolve_changed_since(db, realm_id)

        job = SyncJob(
            realm_id=realm_id,
            company_name=connection.company_name,
            status="pending",
            sync_type=sync_type,
            start_date=start_date,
            end_date=end_date,
            changed_since=changed_since,
            entities_to_sync=entity_types,
            total_entities=len(entity_types),
        )
        db.add(job)
        db.flush()

        for position, entity_type in enumerate(entity_types):
            db.add(EntityJob(
                sync_job_id=job.id,
                entity_type=entity_type,
                entity_table=ENTITY_CONFIG[entity_type].table,
                status="pending",
                batch_size=self.config.quickbooks.page_size,
                position=position,
            ))
        db.flush()

        job.status = "running"
        job.started_at = utcnow()
        db.commit()
        db.refresh(job)

        logger.info(f"Created {sync_type} sync job {job.id} for realm {realm_id} with {len(entity_types)} entity types")
        return job

    def _resolve_entities(self, sync_type: str, entities: Optional[List[str]]) -> List[str]:
        if sync_type != "entity_specific":
            return list(SUPPORTED_ENTITY_TYPES)

        resolved: List[str] = []
        for entity_type in entities or []:
            if not is_supported(entity_type):
                logger.warning(f"Ignoring unsupported entity type {entity_type}")
                continue
            if entity_type not in resolved:
                resolved.append(entity_type)
        return resolved

    # Work queue

    def claim_next(self, db: Session) -> Optional[EntityJob]:
        """
        Claim the oldest pending entity job across all sync jobs

        The claim is a conditional UPDATE from pending to running; it only
        counts when exactly one row changed, so concurrent workers never take
        the same entity job. Children of cancelled jobs are never claimed.
        """
        while True:
            candidate = self._next_candidate(db)
            if candidate is None:
                return None

            entity_job, parent_id = candidate
            if parent_id is None:
                self._fail_orphan(db, entity_job)
                continue

            if self._try_claim(db, entity_job.id):
                db.refresh(entity_job)
                logger.info(f"Claimed {entity_job.entity_type} entity job {entity_job.id} of sync job {parent_id}")
                return entity_job

            logger.debug(f"Entity job {entity_job.id} was claimed by another worker")

    def _next_candidate(self, db: Session):
        return (
            db.query(EntityJob, SyncJob.id)
            .outerjoin(SyncJob, EntityJob.sync_job_id == SyncJob.id)
            .filter(EntityJob.status == "pending")
            .filter(or_(SyncJob.id.is_(None), SyncJob.status != "cancelled"))
            .order_by(EntityJob.created_at, EntityJob.position)
            .first()
        )

    def _try_claim(self, db: Session, entity_job_id: UUID) -> bool:
        """Conditional pending -> running transition; True only if this caller won"""
        claimed = (
            db.query(EntityJob)
            .filter(EntityJob.id == entity_job_id, EntityJob.status == "pending")
            .update({"status": "running", "started_at": utcnow()}, synchronize_session=False)
        )
        db.commit()
        return claimed == 1

    def _fail_orphan(self, db: Session, entity_job: EntityJob) -> None:
        fault = IntegrityFault(
            f"Integrity fault: sync job {entity_job.sync_job_id} not found for entity job {entity_job.id}"
        )
        logger.error(fault.message)
        db.query(EntityJob).filter(
            EntityJob.id == entity_job.id,
            EntityJob.status == "pending",
        ).update(
            {"status": "failed", "error_message": fault.message, "completed_at": utcnow()},
            synchronize_session=False,
        )
        db.commit()

    def process(
        self,
        db: Session,
        time_budget: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> Dict[str, Any]:
        """
        Drain pending entity jobs until none are left or the time budget is spent

        Entity jobs run one at a time; whatever is left stays pending for the
        next invocation.
        """
        budget = self.config.sync.process_time_budget_seconds if time_budget is None else time_budget
        started = clock()
        processed = 0
        errors = 0

        while clock() - started < budget:
            entity_job = self.claim_next(db)
            if entity_job is None:
                break
            if not self._run_entity_job(db, entity_job):
                errors += 1
            processed += 1

        elapsed = clock() - started
        logger.info(f"Processed {processed} entity jobs in {elapsed:.1f}s ({errors} failed)")
        return {"processed": processed, "elapsed": round(elapsed, 2), "errors": errors}

    def _run_entity_job(self, db: Session, entity_job: EntityJob) -> bool:
        job = entity_job.sync_job
        entity_type = entity_job.entity_type
        self.event_service.emit(db, job.id, "progress", {
            "entity_type": entity_type,
            "status": "running",
            "message": f"Syncing {entity_type}...",
        })

        try:
            connection = self.oauth_service.get_token(db, job.realm_id)
            if connection is None:
                raise AuthenticationError(f"No active QuickBooks connection for realm {job.realm_id}")
            client = self.client_factory(db, connection)

            if job.sync_type == "incremental":
                since = job.changed_since or self.checkpoint_service.resolve_changed_since(db, job.realm_id)
                result = self.cdc_service.apply_entity(db, client, job.realm_id, entity_type, since)
            else:
                result = self.importer.import_entity(
                    db, client, entity_type, job.start_date, job.end_date
                ).to_dict()
        except Exception as e:
            logger.exception(f"Entity job {entity_job.id} ({entity_type}) failed")
            db.rollback()
            entity_job.status = "failed"
            entity_job.error_message = str(e)
            entity_job.completed_at = utcnow()
            db.commit()
            # Event before roll-up: a terminal parent implies every event is committed
            self.event_service.emit(db, job.id, "progress", {
                "entity_type": entity_type,
                "status": "failed",
                "message": f"{entity_type} failed: {str(e)}",
            })
            self._roll_up(db, job)
            return False

        entity_job.total_count = result["total"]
        entity_job.processed_count = result["imported"]
        entity_job.error_count = result["errors"]
        entity_job.status = "completed"
        entity_job.completed_at = utcnow()
        db.commit()

        self.event_service.emit(db, job.id, "progress", {
            "entity_type": entity_type,
            "status": "completed",
            "total": result["total"],
            "processed": result["imported"],
            "errors": result["errors"],
            "message": f"{entity_type}: {result['imported']}/{result['total']} records",
        })
        self._roll_up(db, job)
        return True

    def _roll_up(self, db: Session, job: SyncJob) -> None:
        """
        Recompute the parent's counters from its children and settle its
        terminal state once no child is pending or running

        The terminal transition is conditional on the job still running, so a
        concurrent cancel is never overwritten.
        """
        children = db.query(EntityJob).filter(EntityJob.sync_job_id == job.id).all()
        job.completed_entities = sum(1 for child in children if child.status == "completed")
        job.failed_entities = sum(1 for child in children if child.status == "failed")
        job.total_records = sum(child.total_count or 0 for child in children)
        job.processed_records = sum(child.processed_count or 0 for child in children)
        job.error_records = sum(child.error_count or 0 for child in children)
        db.commit()

        if any(child.status in ("pending", "running") for child in children):
            return

        failed_types = [child.entity_type for child in children if child.status == "failed"]
        if children and len(failed_types) == len(children):
            status = "failed"
            error_message = f"All entity types failed: {', '.join(failed_types)}"
        else:
            status = "completed"
            error_message = f"Failed entity types: {', '.join(failed_types)}" if failed_types else None

        settled = (
            db.query(SyncJob)
            .filter(SyncJob.id == job.id, SyncJob.status == "running")
            .update(
                {"status": status, "error_message": error_message, "completed_at": utcnow()},
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(job)
        if settled != 1:
            return

        logger.info(f"Sync job {job.id} {status}")
        if status == "completed" and not failed_types and job.sync_type == "incremental":
            self.checkpoint_service.record_success(
                db,
                job.realm_id,
                job.created_at,
                job.changed_since,
                {"total_changes": job.processed_records, "errors": job.error_records},
                list(job.entities_to_sync or []),
                sync_type="incremental_job",
            )

    # Queries and control

    def get_job(self, db: Session, job_id: UUID) -> SyncJob:
        job = db.get(SyncJob, job_id)
        if job is None:
            raise NotFoundError(f"Sync job {job_id} not found")
        return job

    def status(self, db: Session, job_id: UUID) -> Dict[str, Any]:
        """Job with its entity jobs, progress percentage and elapsed time"""
        job = self.get_job(db, job_id)
        total = job.total_entities or 0
        done = (job.completed_entities or 0) + (job.failed_entities or 0)
        progress_percent = round(done / total * 100, 1) if total else 0.0

        started_at = job.started_at or job.created_at
        ended_at = job.completed_at or utcnow()
        elapsed_seconds = max(0.0, (ended_at - started_at).total_seconds()) if started_at else 0.0

        return {
            "job": job,
            "entity_jobs": list(job.entity_jobs),
            "progress_percent": progress_percent,
            "elapsed_seconds": round(elapsed_seconds, 1),
        }

    def list_jobs(self, db: Session, realm_id: Optional[str] = None, limit: int = 20) -> List[SyncJob]:
        query = db.query(SyncJob)
        if realm_id:
            query = query.filter(SyncJob.realm_id == realm_id)
        return query.order_by(SyncJob.created_at.desc()).limit(limit).all()

    def cancel(self, db: Session, job_id: UUID) -> SyncJob:
        """Mark the job cancelled; pending children stay pending and are never claimed"""
        job = self.get_job(db, job_id)
        if job.status in TERMINAL_JOB_STATUSES:
            raise PreconditionError(f"Sync job {job_id} is already {job.status}")

        job.status = "cancelled"
        job.error_message = "Cancelled by user"
        job.completed_at = utcnow()
        db.commit()
        db.refresh(job)
        logger.info(f"Sync job {job_id} cancelled")
        return job

    def verify(self, db: Session, realm_id: str) -> Dict[str, Any]:
        """Compare QuickBooks record counts with local counts per entity type"""
        connection = self.oauth_service.get_token(db, realm_id)
        if connection is None:
            raise NotFoundError(f"No active QuickBooks connection for realm {realm_id}")
        client = self.client_factory(db, connection)

        results = []
        for entity_type in SUPPORTED_ENTITY_TYPES:
            local_count = entity_store.count(db, entity_type, realm_id)
            if entity_type == "CompanyInfo":
                qb_count = 1 if client.get_company_info() else 0
            else:
                qb_count = client.count(entity_type)
            results.append({
                "entity_type": entity_type,
                "table": ENTITY_CONFIG[entity_type].table,
                "qb_count": qb_count,
                "local_count": local_count,
                "difference": qb_count - local_count,
                "match": qb_count == local_count,
            })

        summary = {
            "total_qb": sum(r["qb_count"] for r in results),
            "total_local": sum(r["local_count"] for r in results),
            "mismatched": [r["entity_type"] for r in results if not r["match"]],
        }
        return {
            "realm_id": realm_id,
            "results": results,
            "summary": summary,
            "all_match": not summary["mismatched"],
        }
