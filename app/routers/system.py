from fastapi import APIRouter, Depends

from app.config import settings
from app.dependencies import get_store
from app.services.media_store import MediaStore
from app.utils.response import success_response

router = APIRouter(tags=["system"])


@router.get("/config/status")
async def config_status():
    return success_response(data={
        "gemini_configured": bool(settings.gemini_api_key),
        "fal_configured": bool(settings.fal_api_key),
        "configured": bool(settings.gemini_api_key and settings.fal_api_key),
    })


@router.get("/stats")
async def stats(store: MediaStore = Depends(get_store)):
    return success_response(data=await store.stats())
