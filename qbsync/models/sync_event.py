from sqlalchemy import Column, String, DateTime, Integer, BigInteger, Uuid, Index
from qbsync.core.database import Base, JSONType
from qbsync.core.timeutils import utcnow

class SyncEvent(Base):
    """Append-only progress event for one sync job, deleted once streamed"""
    __tablename__ = "sync_events"

    # Strictly increasing; used as the stream cursor
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id = Column(Uuid, nullable=False)
    event_type = Column(String, nullable=False)  # progress, complete, error, ...
    event_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_sync_events_job_id_id", "job_id", "id"),
    )
