from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field


class QuickBooksConnectionResponse(BaseModel):
    id: UUID
    realm_id: str
    company_name: Optional[str]
    is_active: bool
    access_token_expires_at: datetime
    refresh_token_expires_at: Optional[datetime]
    created_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class SyncStartRequest(BaseModel):
    """Request to create a sync job."""
    realm_id: str = Field(..., description="QuickBooks company ID")
    sync_type: str = Field("full", description="full, incremental or entity_specific")
    start_date: Optional[date] = Field(None, description="TxnDate lower bound for transactional entities")
    end_date: Optional[date] = Field(None, description="TxnDate upper bound for transactional entities")
    entities: Optional[List[str]] = Field(None, description="Entity types for entity_specific jobs")


class SyncProcessRequest(BaseModel):
    time_budget: Optional[float] = Field(None, gt=0, description="Wall-clock budget in seconds")


class SyncCancelRequest(BaseModel):
    job_id: UUID = Field(..., description="Sync job to cancel")


class CDCRequest(BaseModel):
    realm_id: str = Field(..., description="QuickBooks company ID")


class EntityJobResponse(BaseModel):
    id: UUID
    entity_type: str
    entity_table: str
    status: str
    batch_size: int
    position: int
    total_count: int
    processed_count: int
    error_count: int
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error_message: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class SyncJobResponse(BaseModel):
    id: UUID
    realm_id: str
    company_name: Optional[str]
    status: str
    sync_type: str
    start_date: Optional[date]
    end_date: Optional[date]
    changed_since: Optional[datetime]
    entities_to_sync: List[str]
    total_entities: int
    completed_entities: int
    failed_entities: int
    total_records: int
    processed_records: int
    error_records: int
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error_message: Optional[str]
    created_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class SyncStartResponse(BaseModel):
    job_id: UUID
    status: str
    total_entities: int
    entities: List[str]


class SyncProcessResponse(BaseModel):
    processed: int = Field(..., description="Entity jobs processed in this invocation")
    elapsed: float = Field(..., description="Seconds spent")
    errors: int = Field(..., description="Entity jobs that failed")


class SyncStatusResponse(BaseModel):
    job: SyncJobResponse
    entity_jobs: List[EntityJobResponse]
    progress_percent: float
    elapsed_seconds: float


class VerifyResponse(BaseModel):
    realm_id: str
    results: List[Dict[str, Any]]
    summary: Dict[str, Any]
    all_match: bool


class CDCStats(BaseModel):
    created: int
    updated: int
    deleted: int
    errors: int


class CDCResponse(BaseModel):
    stats: CDCStats
    total_changes: int
    duration: float
    entities_synced: List[str]
    changed_since: str
    checkpoint: str
