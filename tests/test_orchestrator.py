import asyncio

import pytest

from app.schemas.pipeline import AnalysisResult, TransformResult
from app.services.mock_pipeline import mock_suggestions
from app.services.orchestrator import (
    Orchestrator,
    PipelineRun,
    PipelineState,
    resolve_parameters,
    result_filename,
)
from app.utils.exceptions import InvalidStateTransition, JobTimeoutError, NotFoundError, UpstreamError

ANALYSIS = AnalysisResult(objects=["bridge"], scene="Golden Gate at dusk", style="Moody", raw_response="{}")


class FakeAnalysisClient:
    def __init__(self, error=None):
        self.error = error

    async def analyze(self, image_bytes):
        if self.error:
            raise self.error
        return ANALYSIS


class FakeSuggestionClient:
    def __init__(self, error=None):
        self.error = error

    async def suggest(self, analysis):
        if self.error:
            raise self.error
        return mock_suggestions()[:4]


class FakeTransformClient:
    def __init__(self, result_bytes=b"", error=None, gate=None):
        self.result_bytes = result_bytes
        self.error = error
        self.gate = gate
        self.started = asyncio.Event()
        self.calls = []

    async def transform(self, image_bytes, target_model_id, parameters, on_progress=None, on_submitted=None):
        self.calls.append((target_model_id, parameters))
        self.started.set()
        await on_submitted("req-42")
        await on_progress(0.5)
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        video = "video" in target_model_id
        return TransformResult(
            media_bytes=self.result_bytes,
            is_video=video,
            duration=4.0 if video else None,
            metadata={"mock": False, "model": target_model_id},
        )


def _orchestrator(store, analysis=None, suggestions=None, transform=None):
    return Orchestrator(
        store,
        analysis or FakeAnalysisClient(),
        suggestions or FakeSuggestionClient(),
        transform or FakeTransformClient(),
    )


@pytest.mark.asyncio
async def test_prepare_suggestions_reaches_selection(store, make_image):
    photo = await store.create_photo(make_image())
    orchestrator = _orchestrator(store)
    seen = []

    run = await orchestrator.prepare_suggestions(photo.id)

    assert run.state == PipelineState.AWAITING_SELECTION
    assert [e.state for e in run.events] == [
        PipelineState.PREPARING,
        PipelineState.ANALYZING,
        PipelineState.GENERATING_SUGGESTIONS,
        PipelineState.AWAITING_SELECTION,
    ]
    assert run.is_mock is False
    assert len(run.suggestion_ids) == 4
    assert orchestrator.get_run(photo.id) is run

    analysis = await store.get_analysis(photo.id)
    assert analysis.scene_description == "Golden Gate at dusk"
    assert analysis.is_mock is False

    run.subscribe(seen.append)
    run.report_progress(1.0)
    assert seen == []


@pytest.mark.asyncio
async def test_analysis_failure_falls_back_to_mock_pipeline(store, make_image):
    photo = await store.create_photo(make_image())
    orchestrator = _orchestrator(store, analysis=FakeAnalysisClient(UpstreamError("HTTP 500", 500)))

    run = await orchestrator.prepare_suggestions(photo.id)

    states = [e.state for e in run.events]
    assert PipelineState.ERROR in states
    assert states.index(PipelineState.ERROR) < states.index(PipelineState.AWAITING_SELECTION)
    assert run.state == PipelineState.AWAITING_SELECTION
    assert run.is_mock is True
    assert run.error == "HTTP 500"

    analysis = await store.get_analysis(photo.id)
    assert analysis.is_mock is True
    assert "UpstreamError" in analysis.raw_response
    suggestions = await store.list_suggestions(photo.id)
    assert len(suggestions) == 5
    assert all(s.is_mock for s in suggestions)
    assert (await store.get_photo(photo.id)).analysis_completed is True


@pytest.mark.asyncio
async def test_suggestion_failure_keeps_real_analysis(store, make_image):
    photo = await store.create_photo(make_image())
    orchestrator = _orchestrator(store, suggestions=FakeSuggestionClient(UpstreamError("quota exceeded")))

    run = await orchestrator.prepare_suggestions(photo.id)

    assert run.state == PipelineState.AWAITING_SELECTION
    assert (await store.get_analysis(photo.id)).is_mock is False
    assert all(s.is_mock for s in await store.list_suggestions(photo.id))


@pytest.mark.asyncio
async def test_try_again_appends_new_batch(store, make_image):
    photo = await store.create_photo(make_image())
    orchestrator = _orchestrator(store)

    first = await orchestrator.prepare_suggestions(photo.id)
    second = await orchestrator.prepare_suggestions(photo.id)

    assert first.id != second.id
    suggestions = await store.list_suggestions(photo.id)
    assert [s.order_index for s in suggestions] == list(range(8))
    assert second.suggestion_ids == [s.id for s in suggestions[4:]]


@pytest.mark.asyncio
async def test_prepare_unknown_photo(store):
    with pytest.raises(NotFoundError):
        await _orchestrator(store).prepare_suggestions("missing")


@pytest.mark.asyncio
async def test_transform_completes_media(store, make_image):
    photo = await store.create_photo(make_image(64, 48))
    output = make_image(128, 96, fmt="JPEG")
    transform = FakeTransformClient(result_bytes=output)
    orchestrator = _orchestrator(store, transform=transform)
    run = await orchestrator.prepare_suggestions(photo.id)
    suggestion_id = run.suggestion_ids[0]

    media = await orchestrator.transform(suggestion_id)

    assert media.status == "completed"
    assert media.media_data == output
    assert (media.width, media.height) == (128, 96)
    assert media.thumbnail_data is not None
    assert media.external_job_id == "req-42"
    assert media.is_mock is False
    assert media.filename == f"{photo.id}_enhance_lighting.jpg"
    assert run.state == PipelineState.COMPLETED
    assert run.progress == 1.0
    assert run.media_id == media.id
    assert (await store.get_suggestion(suggestion_id)).is_selected is True
    assert transform.calls[0][1] == {"prompt": "brighten shadows and balance exposure, keep the photo natural"}


@pytest.mark.asyncio
async def test_video_transform_records_duration(store, make_image):
    photo = await store.create_photo(make_image())
    orchestrator = _orchestrator(store, transform=FakeTransformClient(result_bytes=b"mp4-bytes"))
    run = await orchestrator.prepare_suggestions(photo.id)
    suggestions = await store.list_suggestions(photo.id)
    video = next(s for s in suggestions if s.kind == "video_animation")

    media = await orchestrator.transform(video.id)

    assert media.kind == "video"
    assert media.duration == 4.0
    assert media.filename.endswith(".mp4")
    # thumbnail comes from the source photo
    assert media.thumbnail_data is not None
    assert run.state == PipelineState.COMPLETED


@pytest.mark.asyncio
async def test_transform_failure_completes_with_mock_result(store, make_image):
    source = make_image()
    photo = await store.create_photo(source)
    orchestrator = _orchestrator(store, transform=FakeTransformClient(error=JobTimeoutError("no result after 60 polls")))
    await orchestrator.prepare_suggestions(photo.id)
    video = next(s for s in await store.list_suggestions(photo.id) if s.kind == "video_animation")

    job = await orchestrator.start_transform(video.id)
    media = await job.wait()

    assert media.status == "completed"
    assert media.is_mock is True
    assert media.kind == "image"
    assert media.filename.endswith(".jpg")
    assert media.duration is None
    assert media.media_data == source
    assert media.extra["mock"] is True
    assert media.extra["error_type"] == "JobTimeoutError"
    states = [e.state for e in job.run.events]
    assert states[-3:] == [PipelineState.ERROR, PipelineState.FINALIZING, PipelineState.COMPLETED]
    assert job.run.is_mock is True


@pytest.mark.asyncio
async def test_concurrent_starts_share_one_job(store, make_image):
    photo = await store.create_photo(make_image())
    gate = asyncio.Event()
    orchestrator = _orchestrator(store, transform=FakeTransformClient(result_bytes=make_image(), gate=gate))
    run = await orchestrator.prepare_suggestions(photo.id)
    suggestion_id = run.suggestion_ids[1]

    first, second = await asyncio.gather(
        orchestrator.start_transform(suggestion_id),
        orchestrator.start_transform(suggestion_id),
    )

    assert first is second
    assert orchestrator.active_jobs() == [first]
    gate.set()
    await first.wait()
    assert orchestrator.active_jobs() == []


@pytest.mark.asyncio
async def test_cancel_marks_media_cancelled(store, make_image):
    photo = await store.create_photo(make_image())
    transform = FakeTransformClient(gate=asyncio.Event())
    orchestrator = _orchestrator(store, transform=transform)
    run = await orchestrator.prepare_suggestions(photo.id)

    job = await orchestrator.start_transform(run.suggestion_ids[0])
    await transform.started.wait()

    assert await orchestrator.cancel(run.suggestion_ids[0]) is True
    media = await store.get_media(job.media_id)
    assert media.status == "cancelled"
    assert job.run.state == PipelineState.CANCELLED
    assert await orchestrator.cancel(run.suggestion_ids[0]) is False


@pytest.mark.asyncio
async def test_unknown_suggestion(store):
    with pytest.raises(NotFoundError):
        await _orchestrator(store).start_transform("missing")


def test_run_rejects_illegal_transition():
    run = PipelineRun("photo-1")

    with pytest.raises(InvalidStateTransition):
        run.advance(PipelineState.COMPLETED)
    assert run.state == PipelineState.PREPARING
    assert len(run.events) == 1


def test_run_progress_is_monotonic_and_notifies():
    run = PipelineRun("photo-1")
    seen = []
    unsubscribe = run.subscribe(lambda r: seen.append(r.progress))

    run.advance(PipelineState.TRANSFORMING, 0.0)
    run.report_progress(0.4)
    run.report_progress(0.2)
    unsubscribe()
    run.report_progress(0.6)

    assert seen == [0.0, 0.4]
    assert run.progress == 0.6
    assert run.label == "Transforming..."


def test_run_error_is_masked():
    run = PipelineRun("photo-1")
    run.advance(PipelineState.ANALYZING)

    run.fail(UpstreamError("HTTP 400 for ...?key=AIzaSySecret123"))

    assert run.state == PipelineState.ERROR
    assert "AIzaSySecret123" not in run.error


def test_result_filename():
    assert result_filename("p1", "Studio Ghibli Style", False) == "p1_studio_ghibli_style.jpg"
    assert result_filename("p1", "Living Photo", True) == "p1_living_photo.mp4"


@pytest.mark.asyncio
async def test_resolve_parameters_builds_prompt(store, make_image):
    photo = await store.create_photo(make_image())
    result = mock_suggestions()[0].model_copy(update={"parameters": {}})
    [suggestion] = await store.attach_suggestions(photo.id, [result])

    parameters = resolve_parameters(suggestion)

    assert parameters == {
        "prompt": "enhance this image as enhance lighting: "
        "Brighten shadows and balance exposure for a more professional look",
    }


@pytest.mark.asyncio
async def test_sibling_suggestions_run_independently(store, make_image):
    photo = await store.create_photo(make_image())
    gate = asyncio.Event()
    orchestrator = _orchestrator(store, transform=FakeTransformClient(result_bytes=make_image(), gate=gate))
    run = await orchestrator.prepare_suggestions(photo.id)

    first = await orchestrator.start_transform(run.suggestion_ids[0])
    second = await orchestrator.start_transform(run.suggestion_ids[1])

    assert first.run is run
    assert second.run is not run
    assert first.media_id != second.media_id
    gate.set()
    await asyncio.gather(first.wait(), second.wait())
    assert first.run.state == PipelineState.COMPLETED
    assert second.run.state == PipelineState.COMPLETED


@pytest.mark.asyncio
async def test_finished_job_leaves_job_map(store, make_image):
    photo = await store.create_photo(make_image())
    orchestrator = _orchestrator(store, transform=FakeTransformClient(result_bytes=make_image()))
    run = await orchestrator.prepare_suggestions(photo.id)

    job = await orchestrator.start_transform(run.suggestion_ids[0])
    await job.wait()

    assert orchestrator.get_job(run.suggestion_ids[0]) is None
    assert (await store.get_suggestion_result(run.suggestion_ids[0])).id == job.media_id


@pytest.mark.asyncio
async def test_delete_photo_cancels_running_job(store, make_image):
    photo = await store.create_photo(make_image())
    transform = FakeTransformClient(gate=asyncio.Event())
    orchestrator = _orchestrator(store, transform=transform)
    run = await orchestrator.prepare_suggestions(photo.id)
    job = await orchestrator.start_transform(run.suggestion_ids[0])
    await transform.started.wait()

    await orchestrator.delete_photo(photo.id)
    transform.gate.set()

    assert job.done
    assert job.run.state == PipelineState.CANCELLED
    assert orchestrator.active_jobs() == []
    assert orchestrator.get_job(run.suggestion_ids[0]) is None
    assert orchestrator.get_run(photo.id) is None
    assert await store.get_photo(photo.id) is None
    assert await store.get_media(job.media_id) is None


@pytest.mark.asyncio
async def test_delete_suggestion_cancels_running_job(store, make_image):
    photo = await store.create_photo(make_image())
    transform = FakeTransformClient(gate=asyncio.Event())
    orchestrator = _orchestrator(store, transform=transform)
    run = await orchestrator.prepare_suggestions(photo.id)
    job = await orchestrator.start_transform(run.suggestion_ids[1])
    await transform.started.wait()

    await orchestrator.delete_suggestion(run.suggestion_ids[1])

    assert job.run.state == PipelineState.CANCELLED
    assert orchestrator.active_jobs() == []
    assert await store.get_suggestion(run.suggestion_ids[1]) is None
    assert await store.get_media(job.media_id) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [None, UpstreamError("HTTP 502", 502)])
async def test_media_deleted_under_running_job_abandons_it(store, make_image, error):
    photo = await store.create_photo(make_image())
    transform = FakeTransformClient(result_bytes=make_image(), error=error, gate=asyncio.Event())
    orchestrator = _orchestrator(store, transform=transform)
    run = await orchestrator.prepare_suggestions(photo.id)
    job = await orchestrator.start_transform(run.suggestion_ids[0])
    await transform.started.wait()

    # bypasses the orchestrator, so the job only notices when it writes its result
    await store.delete_photo(photo.id)
    transform.gate.set()

    with pytest.raises(NotFoundError):
        await job.wait()
    assert job.run.state == PipelineState.CANCELLED
    assert job.run.is_terminal
    assert orchestrator.get_job(run.suggestion_ids[0]) is None
