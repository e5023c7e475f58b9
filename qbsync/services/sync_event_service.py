"""
Progress event log for sync jobs

Processing writes events; the streaming endpoint drains them in id order,
deleting each one after it is delivered.
"""
import logging
import time
from typing import Any, Callable, Dict, Iterator, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from qbsync.config import SyncConfig
from qbsync.models.sync_event import SyncEvent
from qbsync.models.sync_job import SyncJob, TERMINAL_JOB_STATUSES

logger = logging.getLogger(__name__)


class SyncEventService:
    def __init__(self, config: SyncConfig):
        self.config = config

    def emit(self, db: Session, job_id: UUID, event_type: str, data: Optional[Dict[str, Any]] = None) -> SyncEvent:
        event = SyncEvent(job_id=job_id, event_type=event_type, event_data=data or {})
        db.add(event)
        db.commit()
        return event

    def drain(self, db: Session, job_id: UUID, after_id: int = 0) -> Iterator[Tuple[int, Dict[str, Any]]]:
        """Yield (id, message) for events newer than the cursor, deleting each once yielded"""
        events = (
            db.query(SyncEvent)
            .filter(SyncEvent.job_id == job_id, SyncEvent.id > after_id)
            .order_by(SyncEvent.id)
            .all()
        )
        for event in events:
            event_id = event.id
            message = {
                "type": event.event_type,
                **(event.event_data or {}),
                "timestamp": event.created_at.isoformat(),
            }
            yield event_id, message
            db.query(SyncEvent).filter(SyncEvent.id == event_id).delete(synchronize_session=False)
            db.commit()

    def stream(
        self,
        session_factory: sessionmaker,
        job_id: UUID,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: Optional[float] = None,
    ) -> Iterator[Dict[str, Any]]:
        """
        Messages for one job: connected, each event in order, then a terminal
        complete/error message and done

        Closing the generator (client disconnect) just stops polling; job
        state is never touched here.
        """
        poll_interval = self.config.stream_poll_interval_seconds if poll_interval is None else poll_interval
        yield {"type": "connected", "job_id": str(job_id)}

        db = session_factory()
        cursor = 0
        try:
            while True:
                db.expire_all()
                job = db.get(SyncJob, job_id)
                if job is None:
                    yield {"type": "error", "message": f"Sync job {job_id} not found"}
                    yield {"type": "done"}
                    return

                # Status is read before draining so the final drain sees every event
                terminal = job.status in TERMINAL_JOB_STATUSES
                for event_id, message in self.drain(db, job_id, cursor):
                    cursor = event_id
                    yield message

                if terminal:
                    yield self._terminal_message(job)
                    yield {"type": "done"}
                    return

                sleep(poll_interval)
        finally:
            db.close()

    def _terminal_message(self, job: SyncJob) -> Dict[str, Any]:
        if job.status == "completed":
            return {
                "type": "complete",
                "status": job.status,
                "stats": {
                    "total_entities": job.total_entities,
                    "completed_entities": job.completed_entities,
                    "failed_entities": job.failed_entities,
                    "total_records": job.total_records,
                    "processed_records": job.processed_records,
                    "error_records": job.error_records,
                },
                "message": job.error_message,
            }
        return {
            "type": "error",
            "status": job.status,
            "message": job.error_message or f"Sync job {job.status}",
        }
