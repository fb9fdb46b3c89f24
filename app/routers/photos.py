from fastapi import APIRouter, Depends, File, UploadFile

from app.config import settings
from app.dependencies import get_orchestrator, get_store
from app.schemas.media import PipelineRunResponse
from app.schemas.photo import AnalysisResponse, PhotoResponse, SuggestionResponse
from app.services.media_store import MediaStore
from app.services.orchestrator import Orchestrator
from app.utils.exceptions import AppException, NotFoundError
from app.utils.response import success_response

router = APIRouter(prefix="/photos", tags=["photos"])


@router.post("", status_code=201)
async def upload_photo(file: UploadFile = File(...), store: MediaStore = Depends(get_store)):
    content = await file.read()
    if len(content) > settings.max_photo_size_bytes:
        raise AppException("Photo exceeds the maximum upload size", status_code=413)

    photo = await store.create_photo(content, file.filename)
    return success_response(data=PhotoResponse.model_validate(photo))


@router.get("")
async def list_photos(store: MediaStore = Depends(get_store)):
    photos = await store.list_photos()
    return success_response(data=[PhotoResponse.model_validate(p) for p in photos])


@router.get("/{photo_id}")
async def get_photo(photo_id: str, store: MediaStore = Depends(get_store)):
    photo = await store.require_photo(photo_id)
    return success_response(data=PhotoResponse.model_validate(photo))


@router.delete("/{photo_id}")
async def delete_photo(photo_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    await orchestrator.delete_photo(photo_id)
    return success_response(message="Photo deleted")


@router.post("/{photo_id}/analyze")
async def analyze_photo(
    photo_id: str,
    store: MediaStore = Depends(get_store),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    run = await orchestrator.prepare_suggestions(photo_id)
    suggestions = await store.list_suggestions(photo_id)
    batch = [s for s in suggestions if s.id in set(run.suggestion_ids)]
    return success_response(data={
        "pipeline": PipelineRunResponse.model_validate(run.to_dict()),
        "suggestions": [SuggestionResponse.model_validate(s) for s in batch],
    })


@router.get("/{photo_id}/analysis")
async def get_analysis(photo_id: str, store: MediaStore = Depends(get_store)):
    await store.require_photo(photo_id)
    analysis = await store.get_analysis(photo_id)
    if analysis is None:
        raise NotFoundError("Photo has not been analyzed")
    return success_response(data=AnalysisResponse.model_validate(analysis))


@router.get("/{photo_id}/suggestions")
async def list_suggestions(photo_id: str, store: MediaStore = Depends(get_store)):
    await store.require_photo(photo_id)
    suggestions = await store.list_suggestions(photo_id)
    return success_response(data=[SuggestionResponse.model_validate(s) for s in suggestions])


@router.get("/{photo_id}/pipeline")
async def get_pipeline(photo_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    run = orchestrator.get_run(photo_id)
    if run is None:
        raise NotFoundError("No pipeline has run for this photo")
    return success_response(data=PipelineRunResponse.model_validate(run.to_dict()))
