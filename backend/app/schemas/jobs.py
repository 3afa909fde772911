from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CreateJobRequest(BaseModel):
    project_id: Annotated[str, Field(min_length=1, max_length=64)]
    credits: Annotated[int, Field(gt=0, le=100_000)]


class CheckpointResponse(BaseModel):
    last_completed_step: str
    artifacts: Dict[str, Any]
    saved_at: int
    progress: int


class JobStepResponse(BaseModel):
    model_config = {'from_attributes': True}

    step_name: str
    step_order: int
    state: str
    progress_pct: int
    message: Optional[str]
    error_message: Optional[str]
    started_at: Optional[int]
    finished_at: Optional[int]


class JobResponse(BaseModel):
    model_config = {'from_attributes': True}

    id: str
    project_id: str
    status: str
    progress: int
    status_message: Optional[str]
    cost_credits_reserved: int
    cost_credits_final: Optional[int]
    failed_step: Optional[str]
    error_code: Optional[str]
    error_message: Optional[str]
    retry_count: int
    created_at: int
    updated_at: int
    started_at: Optional[int]
    finished_at: Optional[int]
    checkpoint: Optional[CheckpointResponse] = None
    steps: List[JobStepResponse] = []
    balance: int | None = None


class PaginatedJobsResponse(BaseModel):
    items: List[JobResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class JobEventResponse(BaseModel):
    model_config = {'from_attributes': True}

    stage: str
    message: str
    meta: Optional[Dict[str, Any]]
    created_at: int


class DeadLetterJobResponse(JobResponse):
    user_id: str
    dlq_at: Optional[int]
    dlq_reason: Optional[str]


class DeadLetterListResponse(BaseModel):
    jobs: List[DeadLetterJobResponse]
    count: int


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RetryStepRequest(_CamelModel):
    step_name: Annotated[str, Field(min_length=1, max_length=32)]


class RetryStepResponse(_CamelModel):
    success: bool
    message: str
    step_name: str
    new_status: str
    checkpoint_preserved: bool


class RetryOptionsResponse(_CamelModel):
    can_retry_from_checkpoint: bool
    next_step: Optional[str]
    message: str
