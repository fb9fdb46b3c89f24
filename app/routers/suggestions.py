from fastapi import APIRouter, Depends

from app.dependencies import get_orchestrator, get_store
from app.schemas.media import PipelineRunResponse, ProcessedMediaResponse
from app.schemas.photo import SuggestionResponse
from app.services.media_store import MediaStore
from app.services.orchestrator import Orchestrator, TransformJob
from app.utils.exceptions import NotFoundError
from app.utils.response import success_response

router = APIRouter(prefix="/suggestions", tags=["suggestions"])


def _job_payload(job: TransformJob) -> dict:
    return {
        "suggestion_id": job.suggestion_id,
        "media_id": job.media_id,
        "job_id": job.job_id,
        "done": job.done,
        "pipeline": PipelineRunResponse.model_validate(job.run.to_dict()),
    }


@router.get("/{suggestion_id}")
async def get_suggestion(suggestion_id: str, store: MediaStore = Depends(get_store)):
    suggestion = await store.get_suggestion(suggestion_id)
    if suggestion is None:
        raise NotFoundError("Suggestion not found")
    result = await store.get_suggestion_result(suggestion_id)
    return success_response(data={
        "suggestion": SuggestionResponse.model_validate(suggestion),
        "result": ProcessedMediaResponse.model_validate(result) if result else None,
    })


@router.delete("/{suggestion_id}")
async def delete_suggestion(suggestion_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    await orchestrator.delete_suggestion(suggestion_id)
    return success_response(message="Suggestion deleted")


@router.post("/{suggestion_id}/transform", status_code=202)
async def start_transform(suggestion_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    job = await orchestrator.start_transform(suggestion_id)
    return success_response(data=_job_payload(job))


@router.get("/{suggestion_id}/job")
async def get_job(
    suggestion_id: str,
    store: MediaStore = Depends(get_store),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    job = orchestrator.get_job(suggestion_id)
    if job is not None:
        return success_response(data=_job_payload(job))

    # finished jobs are only kept as their stored result
    media = await store.get_suggestion_result(suggestion_id)
    if media is None:
        raise NotFoundError("No transformation job for this suggestion")
    run = orchestrator.get_run(media.photo_id)
    return success_response(data={
        "suggestion_id": suggestion_id,
        "media_id": media.id,
        "job_id": media.external_job_id,
        "done": media.is_terminal,
        "pipeline": PipelineRunResponse.model_validate(run.to_dict()) if run and run.media_id == media.id else None,
    })


@router.post("/{suggestion_id}/cancel")
async def cancel_job(suggestion_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    cancelled = await orchestrator.cancel(suggestion_id)
    return success_response(data={"cancelled": cancelled})
