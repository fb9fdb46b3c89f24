"""Turn an image analysis into a short, type-balanced list of transformation proposals."""
import logging
from typing import Any

from app.schemas.pipeline import (
    CREATIVE_TRANSFORM,
    DEFAULT_MODEL_BY_KIND,
    IMAGE_EDIT_MODEL,
    TRANSFORMATION_KINDS,
    UTILITY_EDIT,
    VIDEO_ANIMATION,
    VIDEO_STYLIZE_MODEL,
    AnalysisResult,
    SuggestionResult,
)
from app.services.gemini import GeminiClient, extract_json_object
from app.utils.exceptions import EmptyResult, MalformedResponse

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 4
MIN_IMAGE_SUGGESTIONS = 2
MAX_IMAGE_SUGGESTIONS = 3

DEFAULT_CONFIDENCE = 0.8
DEFAULT_DURATION = 15.0

FALLBACK_VIDEO_CONFIDENCE = 0.75
FALLBACK_VIDEO_DURATION = 45.0
DEFAULT_VIDEO_STYLE = "Cinematic"

SUGGESTION_PROMPT = """\
Based on this image analysis, generate personalized transformation suggestions that would create magical, Instagram-filter-like effects.

Image Analysis:
- Objects: {objects}
- Scene: {scene}
- Lighting: {lighting}
- Composition: {composition}
- Emotion: {emotion}
- Style: {style}
- Quality: {quality}
- Improvements: {improvements}

Generate suggestions in these categories:
1. Utility Edit (practical improvements like lighting, exposure, noise reduction)
2. Creative Transform (artistic styles like anime, vintage, pop art)
3. Video Animation (the image turned into a short stylized animated video)

Distribution rules:
- Exactly ONE suggestion of type "video_animation".
- Two or three suggestions of type "utility_edit" or "creative_transform".
- For the video suggestion use "fal_model": "{video_model}" and give a single, short style name in parameters under the key "style" (e.g. "Manga style", "Watercolor", "Cyberpunk neon"). Do NOT add other parameters.
- For image suggestions use "fal_model": "{image_model}" and put the full edit instruction in parameters under the key "prompt".

Each suggestion should be highly relevant to the specific image content and feel personalized.

Respond ONLY with JSON:
{{
    "suggestions": [
        {{
            "type": "utility_edit|creative_transform|video_animation",
            "title": "Short descriptive title",
            "description": "Detailed explanation of the transformation",
            "reasoning": "Why this suggestion fits this specific image",
            "confidence": 0.0-1.0,
            "fal_model": "model id",
            "parameters": {{"key": "value"}},
            "processing_time": estimated_seconds
        }}
    ]
}}
"""


def _number(value: Any, default: float) -> float:
    # bool is an int subclass but never a meaningful score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _non_empty_string(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def parse_suggestion(entry: Any) -> SuggestionResult | None:
    """One raw suggestion dict to a SuggestionResult, or None when it is unusable."""
    if not isinstance(entry, dict):
        return None

    kind = entry.get("type")
    title = entry.get("title")
    description = entry.get("description")
    reasoning = entry.get("reasoning")
    if not all(isinstance(v, str) for v in (kind, title, description, reasoning)):
        logger.warning("Skipping suggestion with missing fields: %s", entry)
        return None
    if kind not in TRANSFORMATION_KINDS:
        logger.warning("Skipping suggestion with unknown type %r", kind)
        return None

    parameters = entry.get("parameters")
    if not isinstance(parameters, dict):
        parameters = {}

    if kind == VIDEO_ANIMATION:
        style = _non_empty_string(parameters.get("style"))
        if style is None:
            logger.warning("Skipping video suggestion %r without a style", title)
            return None
        parameters = {"style": style.strip()}

    target_model_id = _non_empty_string(entry.get("fal_model")) or DEFAULT_MODEL_BY_KIND[kind]
    confidence = min(1.0, max(0.0, _number(entry.get("confidence"), DEFAULT_CONFIDENCE)))

    return SuggestionResult(
        kind=kind,
        title=title,
        description=description,
        reasoning=reasoning,
        confidence=confidence,
        target_model_id=target_model_id,
        parameters=parameters,
        estimated_duration=_number(entry.get("processing_time"), DEFAULT_DURATION),
    )


def fallback_video_suggestion(analysis: AnalysisResult) -> SuggestionResult:
    style = analysis.style.strip() or DEFAULT_VIDEO_STYLE
    return SuggestionResult(
        kind=VIDEO_ANIMATION,
        title="Living Photo",
        description="Turn the photo into a short animated clip in its own visual style",
        reasoning="Every batch offers one animation; this one follows the photo's current look",
        confidence=FALLBACK_VIDEO_CONFIDENCE,
        target_model_id=VIDEO_STYLIZE_MODEL,
        parameters={"style": style},
        estimated_duration=FALLBACK_VIDEO_DURATION,
    )


def fallback_image_suggestions(analysis: AnalysisResult) -> list[SuggestionResult]:
    improvement = analysis.improvements[0] if analysis.improvements else "lighting, color and sharpness"
    return [
        SuggestionResult(
            kind=UTILITY_EDIT,
            title="Enhance Photo",
            description=f"Improve {improvement} for a cleaner, more professional look",
            reasoning="A balanced enhancement suits almost every photo",
            confidence=DEFAULT_CONFIDENCE,
            target_model_id=IMAGE_EDIT_MODEL,
            parameters={"prompt": f"enhance this image: improve {improvement}, keep it natural"},
            estimated_duration=5.0,
        ),
        SuggestionResult(
            kind=CREATIVE_TRANSFORM,
            title="Vintage Film Look",
            description="Apply classic 35mm film aesthetics with warm tones and subtle grain",
            reasoning="Film styling works across most scenes and subjects",
            confidence=DEFAULT_CONFIDENCE,
            target_model_id=IMAGE_EDIT_MODEL,
            parameters={"prompt": "restyle this image as a warm vintage 35mm film photo with subtle grain"},
            estimated_duration=DEFAULT_DURATION,
        ),
    ]


def apply_batch_policy(candidates: list[SuggestionResult], analysis: AnalysisResult) -> list[SuggestionResult]:
    """Enforce one video suggestion and two to three image suggestions, order preserved.

    Extra video suggestions after the first are discarded; a missing video
    suggestion is synthesized from the analysis style. Image suggestions past
    the third are dropped and a short batch is topped up with generic edits,
    so the result always holds 3 or 4 entries.
    """
    batch: list[SuggestionResult] = []
    has_video = False
    image_count = 0
    for suggestion in candidates:
        if suggestion.is_video:
            if has_video:
                logger.info("Discarding extra video suggestion %r", suggestion.title)
                continue
            has_video = True
        else:
            if image_count >= MAX_IMAGE_SUGGESTIONS:
                continue
            image_count += 1
        batch.append(suggestion)

    if not has_video:
        logger.info("No usable video suggestion returned, synthesizing one")
        batch.append(fallback_video_suggestion(analysis))

    for filler in fallback_image_suggestions(analysis):
        if image_count >= MIN_IMAGE_SUGGESTIONS:
            break
        batch.append(filler)
        image_count += 1

    return batch[:MAX_SUGGESTIONS]


class SuggestionClient:
    def __init__(self, gemini: GeminiClient, temperature: float = 0.8, max_output_tokens: int = 2048):
        self.gemini = gemini
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    def build_prompt(self, analysis: AnalysisResult) -> str:
        return SUGGESTION_PROMPT.format(
            objects=", ".join(analysis.objects),
            scene=analysis.scene,
            lighting=analysis.lighting,
            composition=analysis.composition,
            emotion=analysis.emotion,
            style=analysis.style,
            quality=analysis.quality,
            improvements=", ".join(analysis.improvements),
            video_model=VIDEO_STYLIZE_MODEL,
            image_model=IMAGE_EDIT_MODEL,
        )

    async def suggest(self, analysis: AnalysisResult) -> list[SuggestionResult]:
        self.gemini.require_credential()

        text = await self.gemini.generate(
            [{"text": self.build_prompt(analysis)}],
            self.temperature,
            self.max_output_tokens,
        )
        parsed = extract_json_object(text)
        raw_suggestions = parsed.get("suggestions")
        if not isinstance(raw_suggestions, list):
            raise MalformedResponse("Model response has no suggestions list")

        candidates = [s for s in (parse_suggestion(entry) for entry in raw_suggestions) if s is not None]
        logger.info("Parsed %d of %d suggestions", len(candidates), len(raw_suggestions))

        batch = apply_batch_policy(candidates, analysis)
        if not batch:
            raise EmptyResult()
        return batch
