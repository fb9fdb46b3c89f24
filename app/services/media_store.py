"""Persistence for photos and everything derived from them.

All public methods open their own session, so one ``MediaStore`` can be
shared by concurrent pipelines. Mutations of a single ProcessedMedia row are
serialized through a per-entity ``asyncio.Lock``.
"""
import asyncio
import json
import logging
import os
import uuid
import weakref
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.database import utcnow_iso
from app.models.analysis import Analysis
from app.models.photo import Photo
from app.models.processed_media import (
    CANCELLED,
    COMPLETED,
    FAILED,
    MEDIA_KINDS,
    PENDING,
    PROCESSING,
    ProcessedMedia,
)
from app.models.suggestion import Suggestion
from app.schemas.pipeline import AnalysisResult, SuggestionResult
from app.services import image_utils
from app.utils.exceptions import InvalidStateTransition, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class MediaQuery:
    """Filter for gallery-style listings of completed media."""

    favorited: bool | None = None
    shared: bool | None = None
    kind: str | None = None
    photo_id: str | None = None
    limit: int | None = None


class MediaStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        # entries go away once no coroutine holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, entity_id: str) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = self._locks[entity_id] = asyncio.Lock()
        return lock

    # Photos

    async def create_photo(self, data: bytes, filename: str | None = None) -> Photo:
        width, height = image_utils.read_dimensions(data)
        photo = Photo(
            id=str(uuid.uuid4()),
            image_data=data,
            filename=filename,
            width=width,
            height=height,
            file_size=len(data),
            created_at=utcnow_iso(),
            analysis_completed=False,
        )
        async with self._session_factory() as session:
            session.add(photo)
            await session.commit()
        logger.info("Stored photo %s (%dx%d, %d bytes)", photo.id, width, height, len(data))
        return photo

    async def get_photo(self, photo_id: str) -> Photo | None:
        async with self._session_factory() as session:
            return await session.get(Photo, photo_id)

    async def require_photo(self, photo_id: str) -> Photo:
        photo = await self.get_photo(photo_id)
        if photo is None:
            raise NotFoundError("Photo not found")
        return photo

    async def list_photos(self) -> list[Photo]:
        async with self._session_factory() as session:
            result = await session.execute(select(Photo).order_by(Photo.created_at.desc()))
            return list(result.scalars().all())

    # Analysis

    async def attach_analysis(
        self,
        photo_id: str,
        result: AnalysisResult,
        is_mock: bool = False,
        raw_response: str | None = None,
    ) -> Analysis:
        """Replace the photo's analysis; ``analysis_completed`` flips in the same commit."""
        async with self._session_factory() as session:
            photo = await session.get(Photo, photo_id)
            if photo is None:
                raise NotFoundError("Photo not found")

            await session.execute(delete(Analysis).where(Analysis.photo_id == photo_id))
            analysis = Analysis(
                id=str(uuid.uuid4()),
                photo_id=photo_id,
                created_at=utcnow_iso(),
                detected_objects=json.dumps(result.objects),
                scene_description=result.scene,
                lighting_conditions=result.lighting,
                composition_notes=result.composition,
                emotional_context=result.emotion,
                style_assessment=result.style,
                technical_quality=result.quality,
                improvements=json.dumps(result.improvements),
                confidence=result.confidence,
                raw_response=raw_response if raw_response is not None else result.raw_response,
                is_mock=is_mock,
            )
            session.add(analysis)
            photo.analysis_completed = True
            await session.commit()
        return analysis

    async def get_analysis(self, photo_id: str) -> Analysis | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Analysis).where(Analysis.photo_id == photo_id))
            return result.scalars().first()

    # Suggestions

    async def attach_suggestions(
        self,
        photo_id: str,
        results: list[SuggestionResult],
        is_mock: bool = False,
    ) -> list[Suggestion]:
        """Append a batch after the photo's existing suggestions, all or nothing."""
        async with self._session_factory() as session:
            photo = await session.get(Photo, photo_id)
            if photo is None:
                raise NotFoundError("Photo not found")

            count = await session.scalar(
                select(func.count()).select_from(Suggestion).where(Suggestion.photo_id == photo_id)
            )
            now = utcnow_iso()
            suggestions = [
                Suggestion(
                    id=str(uuid.uuid4()),
                    photo_id=photo_id,
                    kind=r.kind,
                    title=r.title,
                    description=r.description,
                    reasoning=r.reasoning,
                    confidence=r.confidence,
                    target_model_id=r.target_model_id,
                    model_parameters=json.dumps(r.parameters),
                    estimated_duration=r.estimated_duration,
                    order_index=(count or 0) + i,
                    created_at=now,
                    is_selected=False,
                    is_mock=is_mock,
                )
                for i, r in enumerate(results)
            ]
            try:
                session.add_all(suggestions)
                await session.commit()
            except Exception:
                await session.rollback()
                logger.exception("Failed to persist suggestion batch for photo %s", photo_id)
                raise
        return suggestions

    async def list_suggestions(self, photo_id: str) -> list[Suggestion]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Suggestion)
                .where(Suggestion.photo_id == photo_id)
                .order_by(Suggestion.order_index)
            )
            return list(result.scalars().all())

    async def get_suggestion(self, suggestion_id: str) -> Suggestion | None:
        async with self._session_factory() as session:
            return await session.get(Suggestion, suggestion_id)

    async def mark_selected(self, suggestion_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Suggestion).where(Suggestion.id == suggestion_id).values(is_selected=True)
            )
            await session.commit()

    # Processed media

    async def create_processed_media(
        self,
        photo_id: str,
        suggestion_id: str | None,
        kind: str,
        filename: str,
        external_job_id: str | None = None,
    ) -> ProcessedMedia:
        if kind not in MEDIA_KINDS:
            raise ValueError(f"Unknown media kind: {kind}")

        async with self._session_factory() as session:
            if suggestion_id is not None:
                result = await session.execute(
                    select(ProcessedMedia).where(ProcessedMedia.suggestion_id == suggestion_id)
                )
                for previous in result.scalars().all():
                    if previous.status in (PENDING, PROCESSING):
                        raise InvalidStateTransition(
                            f"Suggestion {suggestion_id} already has an active job"
                        )
                    # The suggestion keeps a single result; older ones stay with the photo
                    previous.suggestion_id = None

            media = ProcessedMedia(
                id=str(uuid.uuid4()),
                photo_id=photo_id,
                suggestion_id=suggestion_id,
                kind=kind,
                status=PENDING,
                filename=filename,
                file_size=0,
                processing_progress=0.0,
                external_job_id=external_job_id,
                created_at=utcnow_iso(),
                is_favorited=False,
                is_shared=False,
                share_count=0,
                is_mock=False,
                metadata_json="{}",
            )
            session.add(media)
            await session.commit()
        return media

    async def get_media(self, media_id: str) -> ProcessedMedia | None:
        async with self._session_factory() as session:
            return await session.get(ProcessedMedia, media_id)

    async def get_suggestion_result(self, suggestion_id: str) -> ProcessedMedia | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProcessedMedia)
                .where(ProcessedMedia.suggestion_id == suggestion_id)
                .order_by(ProcessedMedia.created_at.desc())
            )
            return result.scalars().first()

    async def _mutate_media(self, media_id: str, mutate) -> ProcessedMedia:
        async with self._lock_for(media_id):
            async with self._session_factory() as session:
                media = await session.get(ProcessedMedia, media_id)
                if media is None:
                    raise NotFoundError("Media not found")
                mutate(media)
                try:
                    await session.commit()
                except StaleDataError as exc:
                    raise NotFoundError("Media not found") from exc
                return media

    async def mark_processing(self, media_id: str) -> ProcessedMedia:
        def _apply(media: ProcessedMedia) -> None:
            if media.status != PENDING:
                raise InvalidStateTransition(f"Cannot start media in status {media.status}")
            media.status = PROCESSING

        return await self._mutate_media(media_id, _apply)

    async def set_external_job_id(self, media_id: str, job_id: str) -> ProcessedMedia:
        def _apply(media: ProcessedMedia) -> None:
            if not media.is_terminal:
                media.external_job_id = job_id

        return await self._mutate_media(media_id, _apply)

    async def update_progress(self, media_id: str, progress: float) -> ProcessedMedia:
        def _apply(media: ProcessedMedia) -> None:
            if media.status != PROCESSING:
                return
            media.processing_progress = max(media.processing_progress or 0.0, min(1.0, max(0.0, progress)))

        return await self._mutate_media(media_id, _apply)

    async def mark_completed(
        self,
        media_id: str,
        data: bytes,
        thumbnail: bytes | None = None,
        *,
        width: int | None = None,
        height: int | None = None,
        duration: float | None = None,
        kind: str | None = None,
        is_mock: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> ProcessedMedia:
        """Terminal transition to ``completed``.

        ``kind`` may be overridden at completion (a mock fallback for a video
        job delivers a still image). Raises InvalidStateTransition on an
        already-terminal record and leaves it untouched.
        """

        def _apply(media: ProcessedMedia) -> None:
            if media.is_terminal:
                raise InvalidStateTransition(f"Media {media.id} is already {media.status}")
            final_kind = kind or media.kind
            if final_kind not in MEDIA_KINDS:
                raise ValueError(f"Unknown media kind: {final_kind}")
            if final_kind == "video" and duration is None:
                raise ValueError("Video media requires a duration")
            if final_kind != media.kind and media.filename:
                stem, _ = os.path.splitext(media.filename)
                media.filename = stem + (".mp4" if final_kind == "video" else ".jpg")
            media.kind = final_kind
            media.media_data = data
            media.thumbnail_data = thumbnail
            media.file_size = len(data)
            media.width = width
            media.height = height
            media.duration = duration if final_kind == "video" else None
            media.status = COMPLETED
            media.error = None
            media.processing_progress = 1.0
            media.completed_at = utcnow_iso()
            media.is_mock = is_mock
            media.metadata_json = json.dumps(metadata or {})

        media = await self._mutate_media(media_id, _apply)
        logger.info("Media %s completed (%d bytes, mock=%s)", media_id, len(data), is_mock)
        return media

    async def mark_failed(self, media_id: str, error: str) -> ProcessedMedia:
        def _apply(media: ProcessedMedia) -> None:
            if media.is_terminal:
                raise InvalidStateTransition(f"Media {media.id} is already {media.status}")
            media.status = FAILED
            media.error = error
            media.completed_at = utcnow_iso()

        return await self._mutate_media(media_id, _apply)

    async def mark_cancelled(self, media_id: str) -> ProcessedMedia:
        def _apply(media: ProcessedMedia) -> None:
            if media.is_terminal:
                raise InvalidStateTransition(f"Media {media.id} is already {media.status}")
            media.status = CANCELLED
            media.completed_at = utcnow_iso()

        return await self._mutate_media(media_id, _apply)

    async def cancel_stale_jobs(self) -> int:
        """Mark every job left pending/processing (e.g. by a previous process) as cancelled."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(ProcessedMedia)
                .where(ProcessedMedia.status.in_((PENDING, PROCESSING)))
                .values(status=CANCELLED, completed_at=utcnow_iso())
            )
            await session.commit()
        if result.rowcount:
            logger.warning("Cancelled %d stale transformation job(s)", result.rowcount)
        return result.rowcount or 0

    async def set_favorite(self, media_id: str, favorited: bool) -> ProcessedMedia:
        def _apply(media: ProcessedMedia) -> None:
            if media.status != COMPLETED:
                raise InvalidStateTransition("Only completed media can be favorited")
            media.is_favorited = favorited

        return await self._mutate_media(media_id, _apply)

    async def record_share(self, media_id: str) -> ProcessedMedia:
        def _apply(media: ProcessedMedia) -> None:
            if media.status != COMPLETED:
                raise InvalidStateTransition("Only completed media can be shared")
            media.is_shared = True
            media.share_count = (media.share_count or 0) + 1

        return await self._mutate_media(media_id, _apply)

    async def query_media(self, query: MediaQuery | None = None) -> list[ProcessedMedia]:
        query = query or MediaQuery()
        stmt = select(ProcessedMedia).where(ProcessedMedia.status == COMPLETED)
        if query.favorited is not None:
            stmt = stmt.where(ProcessedMedia.is_favorited == query.favorited)
        if query.shared is not None:
            stmt = stmt.where(ProcessedMedia.is_shared == query.shared)
        if query.kind is not None:
            stmt = stmt.where(ProcessedMedia.kind == query.kind)
        if query.photo_id is not None:
            stmt = stmt.where(ProcessedMedia.photo_id == query.photo_id)
        stmt = stmt.order_by(ProcessedMedia.created_at.desc())
        if query.limit:
            stmt = stmt.limit(query.limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def stats(self) -> dict[str, int]:
        async with self._session_factory() as session:
            photos = await session.scalar(select(func.count()).select_from(Photo))
            completed = await session.scalar(
                select(func.count()).select_from(ProcessedMedia).where(ProcessedMedia.status == COMPLETED)
            )
            shares = await session.scalar(select(func.coalesce(func.sum(ProcessedMedia.share_count), 0)))
        return {"photos": photos or 0, "enhanced": completed or 0, "shares": shares or 0}

    # Deletion (cascades follow ownership: photo > analysis, suggestions, media; suggestion > media)

    async def _lock_media(self, locks: AsyncExitStack, *criteria) -> None:
        """Hold the per-media locks of every row matching ``criteria`` until ``locks`` closes."""
        async with self._session_factory() as session:
            media_ids = (
                await session.scalars(select(ProcessedMedia.id).where(*criteria).order_by(ProcessedMedia.id))
            ).all()
        for media_id in media_ids:
            await locks.enter_async_context(self._lock_for(media_id))

    async def delete_photo(self, photo_id: str) -> None:
        async with AsyncExitStack() as locks:
            await self._lock_media(locks, ProcessedMedia.photo_id == photo_id)
            async with self._session_factory() as session:
                photo = await session.get(Photo, photo_id)
                if photo is None:
                    raise NotFoundError("Photo not found")
                await session.execute(delete(ProcessedMedia).where(ProcessedMedia.photo_id == photo_id))
                await session.execute(delete(Suggestion).where(Suggestion.photo_id == photo_id))
                await session.execute(delete(Analysis).where(Analysis.photo_id == photo_id))
                await session.delete(photo)
                await session.commit()
        logger.info("Deleted photo %s and its derived records", photo_id)

    async def delete_suggestion(self, suggestion_id: str) -> None:
        async with AsyncExitStack() as locks:
            await self._lock_media(locks, ProcessedMedia.suggestion_id == suggestion_id)
            await self._delete_suggestion(suggestion_id)

    async def _delete_suggestion(self, suggestion_id: str) -> None:
        async with self._session_factory() as session:
            suggestion = await session.get(Suggestion, suggestion_id)
            if suggestion is None:
                raise NotFoundError("Suggestion not found")
            photo_id = suggestion.photo_id
            removed_index = suggestion.order_index
            await session.execute(delete(ProcessedMedia).where(ProcessedMedia.suggestion_id == suggestion_id))
            await session.delete(suggestion)
            await session.flush()
            # Keep order indexes contiguous from zero
            result = await session.execute(
                select(Suggestion)
                .where(Suggestion.photo_id == photo_id, Suggestion.order_index > removed_index)
                .order_by(Suggestion.order_index)
            )
            for s in result.scalars().all():
                s.order_index -= 1
                await session.flush()
            await session.commit()

    async def delete_media(self, media_id: str) -> None:
        async with self._lock_for(media_id):
            async with self._session_factory() as session:
                media = await session.get(ProcessedMedia, media_id)
                if media is None:
                    raise NotFoundError("Media not found")
                await session.delete(media)
                await session.commit()
