"""Run one transformation job against the generative-media queue API.

Flow: prepare the image reference (blob upload or inline data URL), submit
to ``<queue_url>/<model id>``, then either take the immediate payload or poll
the request's status URL until it completes, and finally download the
produced media.
"""
import asyncio
import base64
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from app.schemas.pipeline import (
    OpaqueParameters,
    PromptParameters,
    StyleParameters,
    TransformResult,
    is_video_model,
    parameters_from_map,
)
from app.services import image_utils
from app.utils.exceptions import (
    InvalidImage,
    JobTimeoutError,
    MalformedResponse,
    MissingCredential,
    NetworkError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], Awaitable[None] | None]
SubmittedCallback = Callable[[str], Awaitable[None] | None]

QUEUED = "queued"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"

_STATUS_ALIASES = {
    "in_queue": QUEUED,
    "queued": QUEUED,
    "pending": QUEUED,
    "in_progress": IN_PROGRESS,
    "processing": IN_PROGRESS,
    "running": IN_PROGRESS,
    "completed": COMPLETED,
    "succeeded": COMPLETED,
    "ok": COMPLETED,
    "failed": FAILED,
    "error": FAILED,
}

AGGRESSIVE_QUALITY_LEVELS = [0.3, 0.2, 0.1]
AGGRESSIVE_MAX_SIDE = 2048


@dataclass
class PollPolicy:
    interval: float
    max_attempts: int
    backoff: float = 1.0


def normalize_status(raw: Any) -> str:
    status = _STATUS_ALIASES.get(str(raw or "").strip().lower())
    if status is None:
        raise MalformedResponse(f"Unknown job status: {raw!r}")
    return status


def extract_media_url(payload: Any) -> str | None:
    """Find the first media URL in the shapes the queue API returns."""
    if isinstance(payload, str):
        return payload if payload.startswith(("http://", "https://", "data:")) else None
    if isinstance(payload, list):
        for item in payload:
            url = extract_media_url(item)
            if url:
                return url
        return None
    if not isinstance(payload, dict):
        return None

    for key in ("video", "images", "image", "output"):
        if key in payload:
            url = extract_media_url(payload[key])
            if url:
                return url
    for key in ("url", "image_url", "video_url"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_duration(payload: Any) -> float | None:
    if not isinstance(payload, dict):
        return None
    candidates = [payload.get("duration")]
    if isinstance(payload.get("video"), dict):
        candidates.append(payload["video"].get("duration"))
    for candidate in candidates:
        if isinstance(candidate, (int, float)) and not isinstance(candidate, bool) and candidate > 0:
            return float(candidate)
    return None


def _has_result(payload: dict) -> bool:
    return any(key in payload for key in ("images", "image", "video", "output"))


class _ProgressFeed:
    """Monotonic progress reporting for one job."""

    def __init__(self, callback: ProgressCallback | None):
        self._callback = callback
        self.value = 0.0

    async def emit(self, value: float) -> None:
        value = min(1.0, max(self.value, value))
        if value == self.value and value != 0.0:
            return
        self.value = value
        if self._callback is None:
            return
        outcome = self._callback(value)
        if inspect.isawaitable(outcome):
            await outcome


class TransformClient:
    def __init__(
        self,
        api_key: str,
        queue_url: str = "https://queue.fal.run",
        storage_url: str = "https://rest.alpha.fal.ai/storage/upload/initiate",
        timeout: float = 60.0,
        inline_limit_bytes: int = 1 * 1024 * 1024,
        inline_compress_threshold_bytes: int = 2 * 1024 * 1024,
        compression_target_bytes: int = 1_500_000,
        quality_levels: list[float] | None = None,
        image_poll: PollPolicy | None = None,
        video_poll: PollPolicy | None = None,
        default_video_duration: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.queue_url = queue_url.rstrip("/")
        self.storage_url = storage_url
        self.timeout = timeout
        self.inline_limit_bytes = inline_limit_bytes
        self.inline_compress_threshold_bytes = inline_compress_threshold_bytes
        self.compression_target_bytes = compression_target_bytes
        self.quality_levels = quality_levels or [0.7, 0.5, 0.3, 0.2]
        self.image_poll = image_poll or PollPolicy(interval=2.0, max_attempts=30)
        self.video_poll = video_poll or PollPolicy(interval=5.0, max_attempts=60)
        self.default_video_duration = default_video_duration
        self._transport = transport

    def require_credential(self) -> str:
        if not self.api_key:
            raise MissingCredential("FAL_API_KEY")
        return self.api_key

    async def transform(
        self,
        image_bytes: bytes,
        target_model_id: str,
        parameters: dict[str, Any],
        on_progress: ProgressCallback | None = None,
        on_submitted: SubmittedCallback | None = None,
    ) -> TransformResult:
        api_key = self.require_credential()
        if not image_bytes:
            raise InvalidImage("Empty image data")

        progress = _ProgressFeed(on_progress)
        await progress.emit(0.0)

        headers = {"Authorization": f"Key {api_key}"}
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, headers=headers
        ) as client:
            try:
                return await self._run(client, image_bytes, target_model_id, parameters, progress, on_submitted)
            except UpstreamError as e:
                if not e.is_payload_too_large:
                    raise
                logger.warning("Upstream rejected payload as too large, retrying once with a smaller image")
                compressed = image_utils.compress_progressively(
                    image_bytes,
                    AGGRESSIVE_QUALITY_LEVELS,
                    self.compression_target_bytes // 2,
                    max_side=AGGRESSIVE_MAX_SIDE,
                )
                if len(compressed) >= len(image_bytes):
                    raise
                logger.info("Retrying with compressed image (%d KB)", len(compressed) // 1024)
                return await self._run(client, compressed, target_model_id, parameters, progress, on_submitted)

    async def _run(
        self,
        client: httpx.AsyncClient,
        image_bytes: bytes,
        model_id: str,
        parameters: dict[str, Any],
        progress: _ProgressFeed,
        on_submitted: SubmittedCallback | None,
    ) -> TransformResult:
        video = is_video_model(model_id)

        await progress.emit(0.1)
        image_url, delivery = await self.prepare_image_reference(client, image_bytes)
        await progress.emit(0.2)

        job_input = self.build_input(model_id, parameters, image_url)
        logger.info("Submitting %s job (%s image, video=%s)", model_id, delivery, video)
        submitted = await self._request_json(client, "POST", f"{self.queue_url}/{model_id}", json=job_input)
        await progress.emit(0.3)

        request_id = submitted.get("request_id")
        if _has_result(submitted):
            output = submitted
        elif request_id:
            if on_submitted is not None:
                outcome = on_submitted(str(request_id))
                if inspect.isawaitable(outcome):
                    await outcome
            output = await self._poll(client, model_id, submitted, progress, video)
        else:
            raise MalformedResponse("Submit response carries neither a result nor a request id")

        media_url = extract_media_url(output)
        if not media_url:
            raise MalformedResponse("Job output contains no media URL")

        await progress.emit(0.9)
        media_bytes = await self.download(client, media_url)
        duration = None
        if video:
            duration = extract_duration(output) or self.default_video_duration
        await progress.emit(1.0)

        return TransformResult(
            media_bytes=media_bytes,
            is_video=video,
            duration=duration,
            metadata={
                "mock": False,
                "model": model_id,
                "request_id": request_id,
                "delivery": delivery,
                "original_size": len(image_bytes),
                "result_size": len(media_bytes),
            },
        )

    async def prepare_image_reference(self, client: httpx.AsyncClient, image_bytes: bytes) -> tuple[str, str]:
        """Return ``(url, delivery)`` where delivery is "upload" or "inline"."""
        if len(image_bytes) > self.inline_limit_bytes:
            try:
                url = await self.upload(client, image_bytes)
                return url, "upload"
            except (UpstreamError, NetworkError, MalformedResponse) as e:
                logger.warning("Blob upload failed, falling back to inline data URL: %s", e.message)

        data = image_bytes
        if len(data) > self.inline_compress_threshold_bytes:
            data = image_utils.compress_progressively(
                data, self.quality_levels, self.compression_target_bytes
            )
        mime = image_utils.detect_mime_type(data)
        encoded = base64.b64encode(data).decode("utf-8")
        return f"data:{mime};base64,{encoded}", "inline"

    async def upload(self, client: httpx.AsyncClient, image_bytes: bytes) -> str:
        content_type = image_utils.detect_mime_type(image_bytes)
        initiated = await self._request_json(
            client,
            "POST",
            self.storage_url,
            json={"content_type": content_type, "file_name": "upload.jpg"},
        )
        upload_url = initiated.get("upload_url")
        file_url = initiated.get("file_url")
        if not upload_url or not file_url:
            raise MalformedResponse("Storage response is missing upload_url/file_url")

        try:
            response = await client.put(upload_url, content=image_bytes, headers={"Content-Type": content_type})
        except httpx.TransportError as e:
            raise NetworkError(e) from e
        if not response.is_success:
            raise UpstreamError(f"Blob upload failed with HTTP {response.status_code}", response.status_code)
        logger.info("Uploaded %d bytes to blob storage", len(image_bytes))
        return file_url

    def build_input(self, model_id: str, parameters: dict[str, Any], image_url: str) -> dict[str, Any]:
        typed = parameters_from_map(parameters)
        if is_video_model(model_id):
            style = typed.value if isinstance(typed, StyleParameters) else parameters.get("style")
            if not isinstance(style, str) or not style.strip():
                raise MalformedResponse("Video stylization requires a non-empty style parameter")
            return {"style": style.strip(), "image_url": image_url}

        job_input: dict[str, Any]
        if isinstance(typed, PromptParameters):
            job_input = {"prompt": typed.value}
        elif isinstance(typed, OpaqueParameters):
            job_input = typed.to_map()
        else:
            job_input = {"prompt": f"restyle this image in {typed.value} style"}
        job_input.update(image_urls=[image_url], num_images=1, output_format="jpeg")
        return job_input

    async def _poll(
        self,
        client: httpx.AsyncClient,
        model_id: str,
        submitted: dict,
        progress: _ProgressFeed,
        video: bool,
    ) -> Any:
        policy = self.video_poll if video else self.image_poll
        request_id = submitted["request_id"]
        base = f"{self.queue_url}/{model_id}/requests/{request_id}"
        status_url = submitted.get("status_url") or f"{base}/status"
        response_url = submitted.get("response_url") or base

        interval = policy.interval
        for attempt in range(1, policy.max_attempts + 1):
            await asyncio.sleep(interval)
            body = await self._request_json(client, "GET", status_url)
            status = normalize_status(body.get("status"))
            logger.debug("Job %s poll %d: %s", request_id, attempt, status)

            if status == COMPLETED:
                output = body.get("output")
                if output is None:
                    output = await self._request_json(client, "GET", response_url)
                return output
            if status == FAILED:
                raise UpstreamError(str(body.get("error") or "Transformation job failed"))

            await progress.emit(0.3 + 0.55 * attempt / policy.max_attempts)
            interval *= policy.backoff

        raise JobTimeoutError(f"Job {request_id} did not finish after {policy.max_attempts} polls")

    async def download(self, client: httpx.AsyncClient, url: str) -> bytes:
        if url.startswith("data:"):
            try:
                return base64.b64decode(url.split(",", 1)[1])
            except (IndexError, ValueError) as e:
                raise MalformedResponse("Result data URL is not valid base64") from e
        try:
            response = await client.get(url, follow_redirects=True)
        except httpx.TransportError as e:
            raise NetworkError(e) from e
        if response.status_code != 200:
            raise UpstreamError(f"Result download failed with HTTP {response.status_code}", response.status_code)
        logger.info("Downloaded result (%d bytes)", len(response.content))
        return response.content

    async def _request_json(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> dict:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(e) from e

        if not response.is_success:
            raise UpstreamError(_error_message(response), upstream_status=response.status_code)
        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponse(f"Non-JSON response from {method} {url}") from e
        if not isinstance(body, dict):
            raise MalformedResponse(f"Unexpected response shape from {method} {url}")
        return body


def _error_message(response: httpx.Response) -> str:
    detail: Any = None
    try:
        body = response.json()
        if isinstance(body, dict):
            detail = body.get("detail") or body.get("error") or body.get("message")
    except ValueError:
        detail = response.text[:300] or None
    if response.status_code == 413 and not detail:
        detail = "request too large"
    return f"HTTP {response.status_code}: {detail or response.reason_phrase}"
