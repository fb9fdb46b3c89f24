import json

from sqlalchemy import Boolean, Column, Float, ForeignKey, String, Text

from app.database import Base


class Analysis(Base):
    __tablename__ = "analyses"

    id = Column(String, primary_key=True)
    photo_id = Column(String, ForeignKey("photos.id", ondelete="CASCADE"), nullable=False, unique=True)
    created_at = Column(String, nullable=False)
    detected_objects = Column(Text, nullable=False, default="[]")  # JSON list
    scene_description = Column(Text, nullable=False, default="")
    lighting_conditions = Column(Text, nullable=False, default="")
    composition_notes = Column(Text, nullable=False, default="")
    emotional_context = Column(Text, nullable=False, default="")
    style_assessment = Column(Text, nullable=False, default="")
    technical_quality = Column(Text, nullable=False, default="")
    improvements = Column(Text, nullable=False, default="[]")  # JSON list
    confidence = Column(Float, nullable=False, default=0.0)
    raw_response = Column(Text, nullable=True)
    is_mock = Column(Boolean, nullable=False, default=False)

    @property
    def objects(self) -> list[str]:
        return json.loads(self.detected_objects or "[]")

    @property
    def improvement_list(self) -> list[str]:
        return json.loads(self.improvements or "[]")
