"""Thin async client for the generateContent endpoint shared by analysis and suggestions."""
import json
import logging
from typing import Any

import httpx

from app.utils.exceptions import MalformedResponse, MissingCredential, NetworkError, UpstreamError

logger = logging.getLogger(__name__)


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse the span from the first ``{`` to the last ``}``.

    Models often wrap the JSON in prose or markdown fences, so anything
    outside that span is ignored.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise MalformedResponse("No JSON object found in model response")
    try:
        parsed = json.loads(text[start:end + 1])
    except ValueError as e:
        raise MalformedResponse(f"Model response is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise MalformedResponse("Model response JSON is not an object")
    return parsed


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        model: str = "gemini-1.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def require_credential(self) -> str:
        if not self.api_key:
            raise MissingCredential("GEMINI_API_KEY")
        return self.api_key

    async def generate(self, parts: list[dict], temperature: float, max_output_tokens: int) -> str:
        """POST one generateContent request and return the first candidate's text."""
        api_key = self.require_credential()
        body = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_output_tokens,
            },
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"
        logger.info("Calling %s (%d parts)", self.model, len(parts))

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=body, headers={"x-goog-api-key": api_key})
        except httpx.TransportError as e:
            raise NetworkError(e) from e

        if not response.is_success:
            logger.warning("Model call failed: HTTP %d", response.status_code)
            raise UpstreamError(
                f"Model request failed with HTTP {response.status_code}: {response.text[:300]}",
                upstream_status=response.status_code,
            )

        try:
            payload = response.json()
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedResponse("Model response has no candidate text") from e
        if not isinstance(text, str):
            raise MalformedResponse("Model response has no candidate text")

        logger.debug("Model raw response (%d chars): %s", len(text), text[:500])
        return text
