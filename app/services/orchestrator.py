"""Drives a photo through analyze -> suggest -> (selection) -> transform -> persist.

Every unit of work is a ``PipelineRun``: an explicit state machine with a
single current state, a progress value, a status label and an append-only
event log. Presentation layers only read runs or subscribe to them.

Failures from the AI clients never reach the user as a dead end: the
orchestrator swaps in the deterministic mock pipeline and records the real
error on the run and on the synthesized records.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from app.database import utcnow_iso
from app.models.processed_media import ProcessedMedia
from app.models.photo import Photo
from app.models.suggestion import Suggestion
from app.schemas.pipeline import VIDEO_ANIMATION, is_video_model
from app.services import image_utils
from app.services.analysis_client import AnalysisClient
from app.services.media_store import MediaStore
from app.services.mock_pipeline import mock_analysis, mock_suggestions
from app.services.suggestion_client import SuggestionClient
from app.services.transform_client import TransformClient
from app.utils.exceptions import (
    AppException,
    InvalidImage,
    InvalidStateTransition,
    NotFoundError,
    PipelineError,
    mask_secrets,
)

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    PREPARING = "preparing"
    ANALYZING = "analyzing"
    GENERATING_SUGGESTIONS = "generating_suggestions"
    AWAITING_SELECTION = "awaiting_selection"
    TRANSFORMING = "transforming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


STATE_LABELS = {
    PipelineState.PREPARING: "Preparing...",
    PipelineState.ANALYZING: "Analyzing...",
    PipelineState.GENERATING_SUGGESTIONS: "Generating suggestions...",
    PipelineState.AWAITING_SELECTION: "Choose a transformation",
    PipelineState.TRANSFORMING: "Transforming...",
    PipelineState.FINALIZING: "Finalizing...",
    PipelineState.COMPLETED: "Complete!",
    PipelineState.ERROR: "Something went wrong",
    PipelineState.CANCELLED: "Cancelled",
}

# ERROR is a detour: the mock pipeline resumes the run at selection or finalizing.
_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.PREPARING: frozenset({
        PipelineState.ANALYZING, PipelineState.TRANSFORMING, PipelineState.ERROR, PipelineState.CANCELLED,
    }),
    PipelineState.ANALYZING: frozenset({
        PipelineState.GENERATING_SUGGESTIONS, PipelineState.ERROR, PipelineState.CANCELLED,
    }),
    PipelineState.GENERATING_SUGGESTIONS: frozenset({
        PipelineState.AWAITING_SELECTION, PipelineState.ERROR, PipelineState.CANCELLED,
    }),
    PipelineState.AWAITING_SELECTION: frozenset({PipelineState.TRANSFORMING, PipelineState.CANCELLED}),
    PipelineState.TRANSFORMING: frozenset({
        PipelineState.FINALIZING, PipelineState.ERROR, PipelineState.CANCELLED,
    }),
    PipelineState.FINALIZING: frozenset({
        PipelineState.COMPLETED, PipelineState.ERROR, PipelineState.CANCELLED,
    }),
    PipelineState.ERROR: frozenset({
        PipelineState.AWAITING_SELECTION, PipelineState.FINALIZING, PipelineState.CANCELLED,
    }),
    PipelineState.COMPLETED: frozenset(),
    PipelineState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset({PipelineState.COMPLETED, PipelineState.CANCELLED})


@dataclass
class PipelineEvent:
    state: PipelineState
    label: str
    progress: float
    at: str
    detail: str | None = None


class PipelineRun:
    def __init__(self, photo_id: str, suggestion_id: str | None = None):
        self.id = str(uuid.uuid4())
        self.photo_id = photo_id
        self.suggestion_id = suggestion_id
        self.media_id: str | None = None
        self.analysis_id: str | None = None
        self.suggestion_ids: list[str] = []
        self.is_mock = False
        self.error: str | None = None
        self.events: list[PipelineEvent] = []
        self._state = PipelineState.PREPARING
        self._progress = 0.0
        self._label = STATE_LABELS[PipelineState.PREPARING]
        self._subscribers: list[Callable[["PipelineRun"], None]] = []
        self._record(None)

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def label(self) -> str:
        return self._label

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def subscribe(self, callback: Callable[["PipelineRun"], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def advance(self, state: PipelineState, progress: float | None = None, detail: str | None = None) -> None:
        if state not in _TRANSITIONS[self._state]:
            raise InvalidStateTransition(f"Cannot move pipeline from {self._state.value} to {state.value}")
        self._state = state
        self._label = STATE_LABELS[state]
        if progress is not None:
            self._progress = min(1.0, max(0.0, progress))
        self._record(detail)

    def fail(self, exc: BaseException) -> None:
        self.error = mask_secrets(str(exc) or type(exc).__name__)
        self.advance(PipelineState.ERROR, detail=f"{type(exc).__name__}: {self.error}")

    def report_progress(self, value: float) -> None:
        """Progress inside the current phase; never moves backwards."""
        value = min(1.0, max(0.0, value))
        if value <= self._progress:
            return
        self._progress = value
        self._notify()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "photo_id": self.photo_id,
            "suggestion_id": self.suggestion_id,
            "media_id": self.media_id,
            "analysis_id": self.analysis_id,
            "suggestion_ids": list(self.suggestion_ids),
            "state": self._state.value,
            "label": self._label,
            "progress": self._progress,
            "is_mock": self.is_mock,
            "error": self.error,
            "events": [
                {
                    "state": e.state.value,
                    "label": e.label,
                    "progress": e.progress,
                    "at": e.at,
                    "detail": e.detail,
                }
                for e in self.events
            ],
        }

    def _record(self, detail: str | None) -> None:
        self.events.append(PipelineEvent(self._state, self._label, self._progress, utcnow_iso(), detail))
        self._notify()

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self)
            except Exception:
                logger.exception("Pipeline subscriber failed")


@dataclass
class TransformJob:
    """Handle for one in-flight transformation of a suggestion."""

    suggestion_id: str
    media_id: str
    job_id: str
    run: PipelineRun
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def wait(self) -> ProcessedMedia:
        # shielded: cancelling a waiter leaves the job running
        return await asyncio.shield(self.task)


def result_filename(photo_id: str, title: str, is_video: bool) -> str:
    slug = title.lower().replace(" ", "_")
    return f"{photo_id}_{slug}.{'mp4' if is_video else 'jpg'}"


def resolve_parameters(suggestion: Suggestion) -> dict[str, Any]:
    parameters = suggestion.parameters
    if suggestion.kind == VIDEO_ANIMATION or is_video_model(suggestion.target_model_id):
        return parameters
    if "prompt" not in parameters:
        parameters = {
            **parameters,
            "prompt": f"enhance this image as {suggestion.title.lower()}: {suggestion.description}",
        }
    return parameters


class Orchestrator:
    def __init__(
        self,
        store: MediaStore,
        analysis_client: AnalysisClient,
        suggestion_client: SuggestionClient,
        transform_client: TransformClient,
    ):
        self.store = store
        self.analysis_client = analysis_client
        self.suggestion_client = suggestion_client
        self.transform_client = transform_client
        self._runs: dict[str, PipelineRun] = {}
        self._jobs: dict[str, TransformJob] = {}
        self._jobs_lock = asyncio.Lock()

    def get_run(self, photo_id: str) -> PipelineRun | None:
        return self._runs.get(photo_id)

    def get_job(self, suggestion_id: str) -> TransformJob | None:
        return self._jobs.get(suggestion_id)

    def active_jobs(self) -> list[TransformJob]:
        return [job for job in self._jobs.values() if not job.done]

    # Analyze -> Suggest

    async def prepare_suggestions(self, photo_id: str) -> PipelineRun:
        """Run analysis and suggestion generation, ending at AWAITING_SELECTION.

        Calling it again for the same photo ("Try Again") starts a fresh run
        and appends a new suggestion batch.
        """
        photo = await self.store.require_photo(photo_id)
        run = PipelineRun(photo_id)
        self._runs[photo_id] = run

        try:
            try:
                run.advance(PipelineState.ANALYZING, 0.1)
                analysis_result = await self.analysis_client.analyze(photo.image_data)
                analysis = await self.store.attach_analysis(photo_id, analysis_result)
                run.analysis_id = analysis.id
            except Exception as exc:
                _log_failure("Analysis", photo_id, exc)
                run.fail(exc)
                await self._analysis_fallback(run, exc)
                return run

            try:
                run.advance(PipelineState.GENERATING_SUGGESTIONS, 0.5)
                results = await self.suggestion_client.suggest(analysis_result)
                suggestions = await self.store.attach_suggestions(photo_id, results)
            except Exception as exc:
                _log_failure("Suggestion generation", photo_id, exc)
                run.fail(exc)
                suggestions = await self.store.attach_suggestions(photo_id, mock_suggestions(), is_mock=True)
                run.is_mock = True

            run.suggestion_ids = [s.id for s in suggestions]
            run.advance(PipelineState.AWAITING_SELECTION, 1.0)
            logger.info("Photo %s has %d suggestions ready (mock=%s)", photo_id, len(suggestions), run.is_mock)
            return run
        except asyncio.CancelledError:
            if not run.is_terminal:
                run.advance(PipelineState.CANCELLED)
            raise

    async def _analysis_fallback(self, run: PipelineRun, exc: Exception) -> None:
        raw = json.dumps({"mock": True, "error": run.error, "error_type": type(exc).__name__})
        analysis = await self.store.attach_analysis(run.photo_id, mock_analysis(), is_mock=True, raw_response=raw)
        suggestions = await self.store.attach_suggestions(run.photo_id, mock_suggestions(), is_mock=True)
        run.analysis_id = analysis.id
        run.suggestion_ids = [s.id for s in suggestions]
        run.is_mock = True
        run.advance(PipelineState.AWAITING_SELECTION, 1.0, detail="mock suggestions")

    # Selection -> Transform

    async def start_transform(self, suggestion_id: str) -> TransformJob:
        """Start the transformation for a suggestion, or join the one already running."""
        async with self._jobs_lock:
            existing = self._jobs.get(suggestion_id)
            if existing is not None and not existing.done:
                logger.info("Suggestion %s already transforming, returning job %s", suggestion_id, existing.job_id)
                return existing

            suggestion = await self.store.get_suggestion(suggestion_id)
            if suggestion is None:
                raise NotFoundError("Suggestion not found")
            photo = await self.store.require_photo(suggestion.photo_id)

            run = self._runs.get(photo.id)
            if run is None or run.state != PipelineState.AWAITING_SELECTION:
                run = PipelineRun(photo.id)
                self._runs[photo.id] = run
            run.suggestion_id = suggestion_id
            # claimed under the lock so a sibling suggestion gets its own run
            run.advance(PipelineState.TRANSFORMING, 0.0)

            is_video = suggestion.kind == VIDEO_ANIMATION
            try:
                media = await self.store.create_processed_media(
                    photo.id,
                    suggestion.id,
                    "video" if is_video else "image",
                    result_filename(photo.id, suggestion.title, is_video),
                    external_job_id=str(uuid.uuid4()),
                )
                await self.store.mark_processing(media.id)
                await self.store.mark_selected(suggestion.id)
            except Exception as exc:
                run.fail(exc)
                raise
            run.media_id = media.id

            job = TransformJob(suggestion_id, media.id, media.external_job_id, run)
            job.task = asyncio.create_task(self._execute_transform(job, photo, suggestion))
            job.task.add_done_callback(lambda task, job=job: self._job_finished(job, task))
            self._jobs[suggestion_id] = job
            logger.info("Started transform job %s for suggestion %s", job.job_id, suggestion_id)
            return job

    async def transform(self, suggestion_id: str) -> ProcessedMedia:
        job = await self.start_transform(suggestion_id)
        return await job.wait()

    async def cancel(self, suggestion_id: str) -> bool:
        """Abandon an in-flight job; its media is marked ``cancelled``."""
        job = self._jobs.get(suggestion_id)
        if job is None or job.done:
            return False
        job.task.cancel()
        await asyncio.gather(job.task, return_exceptions=True)

        # A task cancelled before its first step never reaches its own cleanup
        media = await self.store.get_media(job.media_id)
        if media is not None and not media.is_terminal:
            await self.store.mark_cancelled(job.media_id)
        if not job.run.is_terminal:
            job.run.advance(PipelineState.CANCELLED)
        return True

    async def shutdown(self) -> None:
        for job in self.active_jobs():
            await self.cancel(job.suggestion_id)

    async def delete_photo(self, photo_id: str) -> None:
        """Cancel the photo's running jobs, then delete it with everything derived from it."""
        for job in self.active_jobs():
            if job.run.photo_id == photo_id:
                await self.cancel(job.suggestion_id)
        await self.store.delete_photo(photo_id)
        self._runs.pop(photo_id, None)

    async def delete_suggestion(self, suggestion_id: str) -> None:
        await self.cancel(suggestion_id)
        await self.store.delete_suggestion(suggestion_id)

    def _job_finished(self, job: TransformJob, task: asyncio.Task) -> None:
        if self._jobs.get(job.suggestion_id) is job:
            del self._jobs[job.suggestion_id]
        if not task.cancelled() and task.exception() is not None:
            logger.info("Transform job %s ended without a result: %r", job.job_id, task.exception())

    async def _execute_transform(self, job: TransformJob, photo: Photo, suggestion: Suggestion) -> ProcessedMedia:
        run = job.run

        async def on_progress(value: float) -> None:
            run.report_progress(0.9 * value)
            await self.store.update_progress(job.media_id, value)

        async def on_submitted(request_id: str) -> None:
            job.job_id = request_id
            await self.store.set_external_job_id(job.media_id, request_id)

        try:
            try:
                result = await self.transform_client.transform(
                    photo.image_data,
                    suggestion.target_model_id,
                    resolve_parameters(suggestion),
                    on_progress=on_progress,
                    on_submitted=on_submitted,
                )
                run.advance(PipelineState.FINALIZING, 0.95)
                width, height = _result_dimensions(result.media_bytes, photo, result.is_video)
                thumbnail_source = photo.image_data if result.is_video else result.media_bytes
                media = await self.store.mark_completed(
                    job.media_id,
                    result.media_bytes,
                    image_utils.make_thumbnail(thumbnail_source),
                    width=width,
                    height=height,
                    duration=result.duration,
                    kind="video" if result.is_video else "image",
                    metadata=result.metadata,
                )
            except NotFoundError:
                raise
            except Exception as exc:
                _log_failure("Transform", photo.id, exc)
                run.fail(exc)
                media = await self._transform_fallback(job, photo, suggestion, exc)

            run.advance(PipelineState.COMPLETED, 1.0)
            return media
        except NotFoundError:
            logger.info("Media %s was deleted, abandoning transform job %s", job.media_id, job.job_id)
            if not run.is_terminal:
                run.advance(PipelineState.CANCELLED, detail="media deleted")
            raise
        except asyncio.CancelledError:
            logger.info("Transform job %s for suggestion %s cancelled", job.job_id, job.suggestion_id)
            try:
                await asyncio.shield(self.store.mark_cancelled(job.media_id))
            except (InvalidStateTransition, NotFoundError):
                pass
            if not run.is_terminal:
                run.advance(PipelineState.CANCELLED)
            raise

    async def _transform_fallback(
        self, job: TransformJob, photo: Photo, suggestion: Suggestion, exc: Exception
    ) -> ProcessedMedia:
        """Complete the job with the original photo, tagged as a mock result."""
        run = job.run
        metadata = {
            "mock": True,
            "model": suggestion.target_model_id,
            "error": run.error,
            "error_type": type(exc).__name__,
        }
        try:
            media = await self.store.mark_completed(
                job.media_id,
                photo.image_data,
                image_utils.make_thumbnail(photo.image_data),
                width=photo.width,
                height=photo.height,
                kind="image",
                is_mock=True,
                metadata=metadata,
            )
        except NotFoundError:
            raise
        except Exception as fallback_exc:
            logger.exception("Mock fallback failed for media %s", job.media_id)
            try:
                await self.store.mark_failed(job.media_id, run.error or str(fallback_exc))
            except AppException:
                logger.warning("Media %s could not be marked failed", job.media_id)
            raise
        run.is_mock = True
        run.advance(PipelineState.FINALIZING, 0.95, detail="mock result")
        return media


def _result_dimensions(data: bytes, photo: Photo, is_video: bool) -> tuple[int, int]:
    if not is_video:
        try:
            return image_utils.read_dimensions(data)
        except InvalidImage:
            pass
    return photo.width, photo.height


def _log_failure(phase: str, photo_id: str, exc: Exception) -> None:
    if isinstance(exc, PipelineError):
        logger.warning("%s failed for photo %s, using mock pipeline: %s", phase, photo_id, exc.message)
    else:
        logger.exception("%s failed unexpectedly for photo %s, using mock pipeline", phase, photo_id)
