import json

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, LargeBinary, String, Text

from app.database import Base

MEDIA_KINDS = ("image", "video")

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, CANCELLED})


class ProcessedMedia(Base):
    __tablename__ = "processed_media"

    id = Column(String, primary_key=True)
    photo_id = Column(String, ForeignKey("photos.id", ondelete="CASCADE"), nullable=False, index=True)
    suggestion_id = Column(String, ForeignKey("suggestions.id", ondelete="CASCADE"), nullable=True, index=True)
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PENDING)
    media_data = Column(LargeBinary, nullable=True)
    thumbnail_data = Column(LargeBinary, nullable=True)
    filename = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    duration = Column(Float, nullable=True)
    processing_progress = Column(Float, nullable=False, default=0.0)
    error = Column(Text, nullable=True)
    external_job_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    completed_at = Column(String, nullable=True)
    is_favorited = Column(Boolean, nullable=False, default=False)
    is_shared = Column(Boolean, nullable=False, default=False)
    share_count = Column(Integer, nullable=False, default=0)
    is_mock = Column(Boolean, nullable=False, default=False)
    metadata_json = Column(Text, nullable=False, default="{}")

    @property
    def is_video(self) -> bool:
        return self.kind == "video"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_complete(self) -> bool:
        return self.status == COMPLETED and self.media_data is not None

    @property
    def extra(self) -> dict:
        return json.loads(self.metadata_json or "{}")
