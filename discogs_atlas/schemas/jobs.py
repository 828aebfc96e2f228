from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


class JobProgress(BaseModel):
    message: str = "Job created"
    percent: float = 0.0
    pages_fetched: int = 0
    total_pages: int = 0
    items_processed: int = 0
    total_items: int = 0
    items_to_analyze: int = 0


class LabelRow(BaseModel):
    key: str
    label_id: int
    label_name: str
    country: str
    release_count: int = 1


class JobResult(BaseModel):
    country_counts: dict[str, int] = Field(default_factory=dict)
    label_rows: list[LabelRow] = Field(default_factory=list)


class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    subject_id: str
    status: JobStatus = JobStatus.PENDING
    progress: JobProgress = Field(default_factory=JobProgress)
    result: JobResult | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class LabelRef(BaseModel):
    id: int
    name: str = ""


class CollectionItem(BaseModel):
    id: int
    labels: list[LabelRef] = Field(default_factory=list)


class AnalysisOptions(BaseModel):
    all_labels: bool = False
    sample_size: int | None = Field(default=None, ge=1)
    sample_seed: int | None = None


class PipelineStep(str, Enum):
    START = "start"
    COLLECT = "collect"
    SAMPLE = "sample"
    ANALYZE = "analyze"
    FINALIZE = "finalize"
    DONE = "done"


class PipelineCheckpoint(BaseModel):
    job_id: str
    step: PipelineStep = PipelineStep.START
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)
    items: list[CollectionItem] = Field(default_factory=list)
    cursor: int = 0
    country_counts: dict[str, int] = Field(default_factory=dict)
    label_rows: list[LabelRow] = Field(default_factory=list)
    resume_at: datetime | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_utcnow)


class AnalysisRequest(BaseModel):
    username: str = Field(min_length=1)
    all_labels: bool = False
    sample_size: int | None = Field(default=None, ge=1)
    sample_seed: int | None = None

    def to_options(self) -> AnalysisOptions:
        return AnalysisOptions(
            all_labels=self.all_labels,
            sample_size=self.sample_size,
            sample_seed=self.sample_seed,
        )


class AnalysisAccepted(BaseModel):
    job_id: str
    status: JobStatus


class AnalysisTrigger(BaseModel):
    job_id: str
    subject_id: str
    credentials: str | None = Field(default=None, exclude=True, repr=False)
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)
