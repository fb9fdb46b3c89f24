from typing import Any

from pydantic import BaseModel


class ProcessedMediaResponse(BaseModel):
    id: str
    photo_id: str
    suggestion_id: str | None = None
    kind: str
    status: str
    filename: str
    file_size: int
    width: int | None = None
    height: int | None = None
    duration: float | None = None
    processing_progress: float
    error: str | None = None
    external_job_id: str | None = None
    created_at: str
    completed_at: str | None = None
    is_favorited: bool
    is_shared: bool
    share_count: int
    is_mock: bool
    extra: dict[str, Any]

    model_config = {"from_attributes": True}


class FavoriteRequest(BaseModel):
    favorited: bool


class PipelineEventResponse(BaseModel):
    state: str
    label: str
    progress: float
    at: str
    detail: str | None = None

    model_config = {"from_attributes": True}


class PipelineRunResponse(BaseModel):
    id: str
    photo_id: str
    suggestion_id: str | None = None
    media_id: str | None = None
    analysis_id: str | None = None
    suggestion_ids: list[str] = []
    state: str
    label: str
    progress: float
    is_mock: bool
    error: str | None = None
    events: list[PipelineEventResponse]

    model_config = {"from_attributes": True}
