from fastapi import Header, HTTPException, Request

from app.config import settings
from app.services.media_store import MediaStore
from app.services.orchestrator import Orchestrator


async def verify_api_key(x_api_key: str = Header(default="")) -> None:
    if not settings.api_key:
        return
    if x_api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Invalid or missing API key")


def get_store(request: Request) -> MediaStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator
