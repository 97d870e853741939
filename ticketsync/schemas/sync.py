from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ticketsync.cron import validate_cron
from ticketsync.models import SUPPORTED_TABLES
from ticketsync.timeutils import utcnow


class ConflictStrategy(str, Enum):
    """How a strictly newer upstream record is applied over the cached copy."""
    SERVICENOW_WINS = "servicenow_wins"
    STORE_WINS = "store_wins"
    MERGE = "merge"


class SyncErrorDetail(BaseModel):
    sys_id: str
    error: str


class SyncResult(BaseModel):
    """Outcome of one table pass."""
    table: str
    processed: int = 0
    created: int = 0
    updated: int = 0
    conflicts: int = 0
    failed: int = 0
    sla_collected: int = 0
    notes_collected: int = 0
    duration: float = 0.0
    success: bool = True
    last_sync_time: datetime = Field(default_factory=utcnow)
    error_details: List[SyncErrorDetail] = Field(default_factory=list)

    def add_error(self, sys_id: str, error: str, limit: int = 50) -> None:
        """Record a diagnostic entry; the list never grows past ``limit``."""
        if len(self.error_details) < limit:
            self.error_details.append(SyncErrorDetail(sys_id=sys_id, error=error))


class SyncStatistics(BaseModel):
    """Process-wide aggregate of every table pass since startup."""
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    tickets_processed: int = 0
    sla_collected: int = 0
    notes_collected: int = 0
    last_sync_time: Optional[datetime] = None
    average_duration: float = 0.0
    error_limit: int = 100
    errors: List[str] = Field(default_factory=list)

    def record(self, result: SyncResult) -> None:
        """Fold a table result into the running totals."""
        self.total_syncs += 1
        self.last_sync_time = result.last_sync_time
        self.sla_collected += result.sla_collected
        self.notes_collected += result.notes_collected

        if result.success:
            self.successful_syncs += 1
            self.tickets_processed += result.processed
        else:
            self.failed_syncs += 1
            errors: Deque[str] = deque(self.errors, maxlen=self.error_limit)
            errors.extend(f"{result.table}: {e.error}" for e in result.error_details)
            self.errors = list(errors)

        total = self.average_duration * (self.total_syncs - 1) + result.duration
        self.average_duration = total / self.total_syncs


class HealthStatus(BaseModel):
    status: str
    last_sync: Optional[datetime] = None
    statistics: SyncStatistics


class JobOutcome(BaseModel):
    """Result of running one job payload."""
    job_id: Optional[str] = None
    success: bool
    timed_out: bool = False
    results: List[SyncResult] = Field(default_factory=list)
    error: Optional[str] = None
    duration: float = 0.0


def _check_tables(tables: List[str]) -> List[str]:
    if not tables:
        raise ValueError("At least one table is required")
    unknown = [t for t in tables if t not in SUPPORTED_TABLES]
    if unknown:
        raise ValueError(f"Unsupported tables: {', '.join(unknown)}")
    return tables


class SyncJobDescriptor(BaseModel):
    """Durable configuration of a scheduled synchronization task."""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    cron_expression: str
    tables: List[str] = Field(default_factory=lambda: list(SUPPORTED_TABLES))
    batch_size: int = Field(50, ge=1, le=1000)
    delta_sync: bool = True
    delta_hours: int = Field(1, ge=1, le=24 * 30)
    enabled: bool = True
    created_by: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    max_retries: int = Field(3, ge=0, le=10)
    timeout_seconds: int = Field(300, ge=1)

    @field_validator("cron_expression")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        return validate_cron(value)

    @field_validator("tables")
    @classmethod
    def _valid_tables(cls, value: List[str]) -> List[str]:
        return _check_tables(value)


class SyncJobUpdate(BaseModel):
    """Partial descriptor for job updates; only set fields are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    cron_expression: Optional[str] = None
    tables: Optional[List[str]] = None
    batch_size: Optional[int] = Field(None, ge=1, le=1000)
    delta_sync: Optional[bool] = None
    delta_hours: Optional[int] = Field(None, ge=1, le=24 * 30)
    enabled: Optional[bool] = None
    created_by: Optional[str] = None
    tags: Optional[List[str]] = None
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    timeout_seconds: Optional[int] = Field(None, ge=1)

    @field_validator(
        "name", "batch_size", "delta_sync", "delta_hours", "enabled",
        "tags", "max_retries", "timeout_seconds"
    )
    @classmethod
    def _not_null(cls, value: Any, info: ValidationInfo) -> Any:
        # Explicit nulls are allowed only for description and created_by
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value

    @field_validator("cron_expression")
    @classmethod
    def _valid_cron(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            raise ValueError("cron_expression cannot be null")
        return validate_cron(value)

    @field_validator("tables")
    @classmethod
    def _valid_tables(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            raise ValueError("tables cannot be null")
        return _check_tables(value)


class SyncJob(SyncJobDescriptor):
    """Job descriptor plus the runtime state owned by the scheduler."""
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    run_count: int = 0
    fail_count: int = 0
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def descriptor(self) -> SyncJobDescriptor:
        return SyncJobDescriptor(**self.model_dump(include=set(SyncJobDescriptor.model_fields)))


class SchedulerStats(BaseModel):
    total_jobs: int
    enabled_jobs: int
    disabled_jobs: int
    total_runs: int
    total_fails: int
    next_run: Optional[datetime] = None
    running_jobs: int = 0


class SyncTriggerResponse(BaseModel):
    """Response for sync trigger endpoints."""
    message: str
    results: List[SyncResult] = []
    started_at: datetime


class WorkerStatusResponse(BaseModel):
    """Status of the sync worker."""
    status: str = Field(..., description="Worker status: idle, running, completed, failed")
    running_jobs: List[str] = Field(default_factory=list)
    is_running: bool
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_result: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
