from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

UTILITY_EDIT = "utility_edit"
CREATIVE_TRANSFORM = "creative_transform"
VIDEO_ANIMATION = "video_animation"

TRANSFORMATION_KINDS = (UTILITY_EDIT, CREATIVE_TRANSFORM, VIDEO_ANIMATION)

IMAGE_EDIT_MODEL = "fal-ai/nano-banana/edit"
VIDEO_STYLIZE_MODEL = "fal-ai/bytedance/video-stylize"

DEFAULT_MODEL_BY_KIND = {
    UTILITY_EDIT: IMAGE_EDIT_MODEL,
    CREATIVE_TRANSFORM: IMAGE_EDIT_MODEL,
    VIDEO_ANIMATION: VIDEO_STYLIZE_MODEL,
}

VIDEO_MODELS = frozenset({VIDEO_STYLIZE_MODEL})


def is_video_model(model_id: str) -> bool:
    return model_id in VIDEO_MODELS or "video" in model_id


class AnalysisResult(BaseModel):
    objects: list[str] = []
    scene: str = ""
    lighting: str = ""
    composition: str = ""
    emotion: str = ""
    style: str = ""
    quality: str = ""
    improvements: list[str] = []
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    raw_response: str = ""


class PromptParameters(BaseModel):
    kind: Literal["prompt"] = "prompt"
    value: str

    def to_map(self) -> dict[str, Any]:
        return {"prompt": self.value}


class StyleParameters(BaseModel):
    kind: Literal["style"] = "style"
    value: str

    def to_map(self) -> dict[str, Any]:
        return {"style": self.value}


class OpaqueParameters(BaseModel):
    kind: Literal["opaque"] = "opaque"
    values: dict[str, Any] = {}

    def to_map(self) -> dict[str, Any]:
        return dict(self.values)


ModelParameters = Annotated[
    Union[PromptParameters, StyleParameters, OpaqueParameters],
    Field(discriminator="kind"),
]


def parameters_from_map(raw: dict[str, Any]) -> PromptParameters | StyleParameters | OpaqueParameters:
    """Classify a free-form parameter map into its model family."""
    if set(raw) == {"style"} and isinstance(raw["style"], str):
        return StyleParameters(value=raw["style"])
    if set(raw) == {"prompt"} and isinstance(raw["prompt"], str):
        return PromptParameters(value=raw["prompt"])
    return OpaqueParameters(values=dict(raw))


class SuggestionResult(BaseModel):
    kind: Literal["utility_edit", "creative_transform", "video_animation"]
    title: str
    description: str
    reasoning: str
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    target_model_id: str
    parameters: dict[str, Any] = {}
    estimated_duration: float = 15.0

    @property
    def is_video(self) -> bool:
        return self.kind == VIDEO_ANIMATION

    @property
    def typed_parameters(self) -> PromptParameters | StyleParameters | OpaqueParameters:
        return parameters_from_map(self.parameters)


class TransformResult(BaseModel):
    media_bytes: bytes
    is_video: bool = False
    duration: float | None = None
    metadata: dict[str, Any] = {}
