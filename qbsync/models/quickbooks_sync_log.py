import uuid
from sqlalchemy import Column, String, DateTime, Integer, Text, Uuid, Index, func
from qbsync.core.database import Base, JSONType

class QuickBooksSyncLog(Base):
    """Tracks QuickBooks CDC cycles; successful rows carry the checkpoint"""
    __tablename__ = "quickbooks_sync_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    realm_id = Column(String, nullable=False, index=True)

    # Sync details
    sync_type = Column(String, nullable=False, default="cdc")  # cdc, incremental_job
    status = Column(String, nullable=False)  # success, failed

    # Statistics
    records_created = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)
    records_deleted = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    total_changes = Column(Integer, default=0)
    entities_synced = Column(JSONType, nullable=True)

    # Timing
    sync_started_at = Column(DateTime, nullable=False)
    sync_completed_at = Column(DateTime, nullable=True)
    sync_duration_seconds = Column(Integer, nullable=True)

    # Window: changes fetched since changed_since; next fetch starts at last_sync_checkpoint
    changed_since = Column(DateTime, nullable=True)
    last_sync_checkpoint = Column(DateTime, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now())

    __table_args__ = (
        Index("idx_sync_logs_realm_status_checkpoint", "realm_id", "status", "last_sync_checkpoint"),
    )
