import uuid
from sqlalchemy import Column, String, DateTime, Date, Integer, Text, Uuid, ForeignKey, UniqueConstraint, func
from sqlalchemy.orm import relationship
from qbsync.core.database import Base, JSONType
from qbsync.core.timeutils import utcnow

SYNC_JOB_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
TERMINAL_JOB_STATUSES = ("completed", "failed", "cancelled")
ENTITY_JOB_STATUSES = ("pending", "running", "completed", "failed")
SYNC_TYPES = ("full", "incremental", "entity_specific")

class SyncJob(Base):
    """One backfill or incremental run for one QuickBooks company"""
    __tablename__ = "sync_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    realm_id = Column(String, nullable=False, index=True)
    company_name = Column(String, nullable=True)

    status = Column(String, nullable=False, default="pending", index=True)  # pending, running, completed, failed, cancelled
    sync_type = Column(String, nullable=False, default="full")  # full, incremental, entity_specific

    # Optional TxnDate bounds for full imports
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    # Lower bound for incremental (CDC) jobs, resolved from the checkpoint at creation
    changed_since = Column(DateTime, nullable=True)

    entities_to_sync = Column(JSONType, nullable=False, default=list)

    # Progress counters, rolled up from the entity jobs
    total_entities = Column(Integer, default=0, nullable=False)
    completed_entities = Column(Integer, default=0, nullable=False)
    failed_entities = Column(Integer, default=0, nullable=False)
    total_records = Column(Integer, default=0, nullable=False)
    processed_records = Column(Integer, default=0, nullable=False)
    error_records = Column(Integer, default=0, nullable=False)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    entity_jobs = relationship(
        "EntityJob",
        back_populates="sync_job",
        cascade="all, delete-orphan",
        order_by="EntityJob.position",
    )


class EntityJob(Base):
    """Unit of work for one entity type inside a SyncJob"""
    __tablename__ = "sync_entity_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sync_job_id = Column(Uuid, ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False, index=True)

    entity_type = Column(String, nullable=False)  # Customer, Invoice, ...
    entity_table = Column(String, nullable=False)  # qb_customers, qb_invoices, ...
    status = Column(String, nullable=False, default="pending", index=True)  # pending, running, completed, failed
    batch_size = Column(Integer, default=1000, nullable=False)
    # Order within the parent job; claims go oldest first, then by position
    position = Column(Integer, default=0, nullable=False)

    total_count = Column(Integer, default=0, nullable=False)
    processed_count = Column(Integer, default=0, nullable=False)
    error_count = Column(Integer, default=0, nullable=False)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    sync_job = relationship("SyncJob", back_populates="entity_jobs")

    __table_args__ = (
        UniqueConstraint("sync_job_id", "entity_type", name="uq_sync_entity_jobs_job_entity"),
    )
