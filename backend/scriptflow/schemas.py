from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from scriptflow.models import ProjectStatus, StepStatus


class ProjectCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    youtube_url: str = Field(min_length=1, max_length=512)
    context: str = ""
    client_info: str | None = None

    @field_validator("youtube_url")
    @classmethod
    def _strip_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("youtube_url must be an http(s) URL")
        return value


class ProjectUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    youtube_url: str | None = Field(default=None, min_length=1, max_length=512)
    context: str | None = None
    client_info: str | None = None
    status: ProjectStatus | None = None


class ProjectOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    youtube_url: str
    context: str
    client_info: str | None = None
    status: ProjectStatus
    current_step: int
    created_by: str
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    total_processing_time: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class StepOut(BaseModel):
    """Snapshot de um project_step, como o rastreador de etapas o guarda."""

    model_config = ConfigDict(from_attributes=True)

    id: str | None = None
    project_id: str
    step_number: int
    step_name: str
    status: StepStatus
    step_data: Any | None = None
    raw_response: str | None = None
    error_message: str | None = None
    processing_time: float | None = None
    processing_cost: float | None = None
    model_used: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None


class StepView(BaseModel):
    step_number: int
    name: str
    tab: str
    status: StepStatus | None
    availability: str
    unlocked: bool
    can_start: bool
    result_format: str
    result: Any | None = None


class ProjectDetail(BaseModel):
    project: ProjectOut
    steps: list[StepOut]
    views: list[StepView]
    current_step: int
    active_tab: str


class StepStartOut(BaseModel):
    success: bool = True
    step_number: int
    polling: bool
    job_id: str | None = None
    result: dict[str, Any]


class PromptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    step_number: int
    system_prompt_text: str
    user_prompt_text: str
    model_provider: str | None = None
    model_name: str | None = None
    parameters: dict[str, Any] | None = None
    version: int
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PromptVersionCreate(BaseModel):
    user_prompt_text: str
    system_prompt_text: str | None = None
    model_provider: str | None = None
    model_name: str | None = None
    parameters: dict[str, Any] | None = None


SortDirection = Literal["asc", "desc"]
