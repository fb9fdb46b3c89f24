"""Fixed, non-AI results used when the real analysis or transformation fails."""
from app.schemas.pipeline import (
    CREATIVE_TRANSFORM,
    IMAGE_EDIT_MODEL,
    UTILITY_EDIT,
    VIDEO_ANIMATION,
    VIDEO_STYLIZE_MODEL,
    AnalysisResult,
    SuggestionResult,
)

MOCK_ANALYSIS = AnalysisResult(
    objects=["subject", "background"],
    scene="An everyday photo with a clear main subject",
    lighting="Mixed lighting with some darker areas",
    composition="Centered subject with moderate negative space",
    emotion="Calm",
    style="Natural",
    quality="Good overall sharpness; exposure could be balanced",
    improvements=["lighting", "color balance"],
    confidence=0.5,
    raw_response="",
)

MOCK_SUGGESTIONS = [
    SuggestionResult(
        kind=UTILITY_EDIT,
        title="Enhance Lighting",
        description="Brighten shadows and balance exposure for a more professional look",
        reasoning="The image has some dark areas that could benefit from lighting enhancement",
        confidence=0.9,
        target_model_id=IMAGE_EDIT_MODEL,
        parameters={"prompt": "brighten shadows and balance exposure, keep the photo natural"},
        estimated_duration=5.0,
    ),
    SuggestionResult(
        kind=CREATIVE_TRANSFORM,
        title="Studio Ghibli Style",
        description="Transform into a dreamy anime art style reminiscent of Studio Ghibli films",
        reasoning="The composition and natural elements would work beautifully in anime style",
        confidence=0.85,
        target_model_id=IMAGE_EDIT_MODEL,
        parameters={"prompt": "redraw this image as a dreamy Studio Ghibli style anime scene"},
        estimated_duration=15.0,
    ),
    SuggestionResult(
        kind=VIDEO_ANIMATION,
        title="Cinemagraph Loop",
        description="Create a subtle animated loop with moving elements while keeping the main subject still",
        reasoning="There are elements in the scene that would create a beautiful cinemagraph effect",
        confidence=0.8,
        target_model_id=VIDEO_STYLIZE_MODEL,
        parameters={"style": "Cinemagraph"},
        estimated_duration=45.0,
    ),
    SuggestionResult(
        kind=CREATIVE_TRANSFORM,
        title="Vintage Film Look",
        description="Apply classic 35mm film aesthetics with warm tones and subtle grain",
        reasoning="The lighting and composition would benefit from vintage film treatment",
        confidence=0.75,
        target_model_id=IMAGE_EDIT_MODEL,
        parameters={"prompt": "restyle this image as a warm vintage 35mm film photo with subtle grain"},
        estimated_duration=15.0,
    ),
    SuggestionResult(
        kind=UTILITY_EDIT,
        title="Portrait Enhancement",
        description="Subtle skin smoothing and eye enhancement while maintaining natural appearance",
        reasoning="Detected facial features that could benefit from portrait optimization",
        confidence=0.88,
        target_model_id=IMAGE_EDIT_MODEL,
        parameters={"prompt": "subtle portrait retouch: smooth skin slightly and brighten eyes, keep it natural"},
        estimated_duration=5.0,
    ),
]


def mock_analysis() -> AnalysisResult:
    return MOCK_ANALYSIS.model_copy(deep=True)


def mock_suggestions() -> list[SuggestionResult]:
    return [s.model_copy(deep=True) for s in MOCK_SUGGESTIONS]
