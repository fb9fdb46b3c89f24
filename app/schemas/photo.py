from typing import Any

from pydantic import BaseModel

from app.schemas.pipeline import ModelParameters


class PhotoResponse(BaseModel):
    id: str
    filename: str | None = None
    width: int
    height: int
    file_size: int
    aspect_ratio: float
    created_at: str
    analysis_completed: bool

    model_config = {"from_attributes": True}


class AnalysisResponse(BaseModel):
    id: str
    photo_id: str
    created_at: str
    objects: list[str]
    scene_description: str
    lighting_conditions: str
    composition_notes: str
    emotional_context: str
    style_assessment: str
    technical_quality: str
    improvement_list: list[str]
    confidence: float
    is_mock: bool

    model_config = {"from_attributes": True}


class SuggestionResponse(BaseModel):
    id: str
    photo_id: str
    kind: str
    title: str
    description: str
    reasoning: str
    confidence: float
    target_model_id: str
    parameters: dict[str, Any]
    typed_parameters: ModelParameters
    estimated_duration: float
    order_index: int
    is_selected: bool
    is_mock: bool

    model_config = {"from_attributes": True}
