from fastapi import APIRouter, Depends, Response

from app.dependencies import get_store
from app.schemas.media import FavoriteRequest, ProcessedMediaResponse
from app.services import image_utils
from app.services.media_store import MediaQuery, MediaStore
from app.utils.exceptions import NotFoundError
from app.utils.response import success_response

router = APIRouter(prefix="/media", tags=["media"])


async def _require_media(store: MediaStore, media_id: str):
    media = await store.get_media(media_id)
    if media is None:
        raise NotFoundError("Media not found")
    return media


@router.get("")
async def list_media(
    favorited: bool | None = None,
    shared: bool | None = None,
    kind: str | None = None,
    photo_id: str | None = None,
    limit: int | None = None,
    store: MediaStore = Depends(get_store),
):
    query = MediaQuery(favorited=favorited, shared=shared, kind=kind, photo_id=photo_id, limit=limit)
    items = await store.query_media(query)
    return success_response(data=[ProcessedMediaResponse.model_validate(m) for m in items])


@router.get("/{media_id}")
async def get_media(media_id: str, store: MediaStore = Depends(get_store)):
    media = await _require_media(store, media_id)
    return success_response(data=ProcessedMediaResponse.model_validate(media))


@router.get("/{media_id}/content")
async def get_media_content(media_id: str, store: MediaStore = Depends(get_store)):
    media = await _require_media(store, media_id)
    if not media.is_complete:
        raise NotFoundError("Media is not available yet")
    media_type = "video/mp4" if media.is_video else image_utils.detect_mime_type(media.media_data)
    return Response(content=media.media_data, media_type=media_type)


@router.get("/{media_id}/thumbnail")
async def get_media_thumbnail(media_id: str, store: MediaStore = Depends(get_store)):
    media = await _require_media(store, media_id)
    if media.thumbnail_data is None:
        raise NotFoundError("Media has no thumbnail")
    return Response(content=media.thumbnail_data, media_type="image/jpeg")


@router.post("/{media_id}/favorite")
async def set_favorite(media_id: str, payload: FavoriteRequest, store: MediaStore = Depends(get_store)):
    media = await store.set_favorite(media_id, payload.favorited)
    return success_response(data=ProcessedMediaResponse.model_validate(media))


@router.post("/{media_id}/share")
async def record_share(media_id: str, store: MediaStore = Depends(get_store)):
    media = await store.record_share(media_id)
    return success_response(data=ProcessedMediaResponse.model_validate(media))


@router.delete("/{media_id}")
async def delete_media(media_id: str, store: MediaStore = Depends(get_store)):
    await store.delete_media(media_id)
    return success_response(message="Media deleted")
