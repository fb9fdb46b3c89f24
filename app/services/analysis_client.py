import base64
import logging

from app.schemas.pipeline import AnalysisResult
from app.services import image_utils
from app.services.gemini import GeminiClient, extract_json_object

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """\
Analyze this image and provide detailed insights for AI-powered photo transformation suggestions.

Please analyze:
1. Objects and subjects in the image
2. Scene type and setting
3. Lighting conditions and quality
4. Composition and framing
5. Emotional context or mood
6. Current style/aesthetic
7. Technical quality assessment
8. Potential areas for improvement

Respond ONLY with a JSON object with the following structure:
{
    "objects": ["list", "of", "detected", "objects"],
    "scene": "description of the scene",
    "lighting": "lighting conditions assessment",
    "composition": "composition analysis",
    "emotion": "emotional context",
    "style": "current style assessment",
    "quality": "technical quality notes",
    "improvements": ["potential", "improvement", "areas"],
    "confidence": 0.0-1.0
}
"""

DEFAULT_CONFIDENCE = 0.9


def _string(value) -> str:
    return value if isinstance(value, str) else ""


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def parse_analysis(text: str) -> AnalysisResult:
    """Build an AnalysisResult from model text; missing fields default to empty."""
    parsed = extract_json_object(text)

    confidence = parsed.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = DEFAULT_CONFIDENCE

    return AnalysisResult(
        objects=_string_list(parsed.get("objects")),
        scene=_string(parsed.get("scene")),
        lighting=_string(parsed.get("lighting")),
        composition=_string(parsed.get("composition")),
        emotion=_string(parsed.get("emotion")),
        style=_string(parsed.get("style")),
        quality=_string(parsed.get("quality")),
        improvements=_string_list(parsed.get("improvements")),
        confidence=min(1.0, max(0.0, float(confidence))),
        raw_response=text,
    )


class AnalysisClient:
    def __init__(
        self,
        gemini: GeminiClient,
        jpeg_quality: float = 0.8,
        temperature: float = 0.7,
        max_output_tokens: int = 1024,
    ):
        self.gemini = gemini
        self.jpeg_quality = jpeg_quality
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    async def analyze(self, image_bytes: bytes) -> AnalysisResult:
        self.gemini.require_credential()

        jpeg = image_utils.encode_jpeg(image_bytes, self.jpeg_quality)
        logger.info("Analyzing image (%d bytes, %d as JPEG)", len(image_bytes), len(jpeg))

        parts = [
            {"text": ANALYSIS_PROMPT},
            {
                "inline_data": {
                    "mime_type": "image/jpeg",
                    "data": base64.b64encode(jpeg).decode("utf-8"),
                }
            },
        ]
        text = await self.gemini.generate(parts, self.temperature, self.max_output_tokens)
        result = parse_analysis(text)
        logger.info("Analysis parsed: %d objects, style=%r", len(result.objects), result.style[:60])
        return result
