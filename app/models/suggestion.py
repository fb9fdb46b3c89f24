import json

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, String, Text, UniqueConstraint

from app.database import Base
from app.schemas.pipeline import parameters_from_map


class Suggestion(Base):
    __tablename__ = "suggestions"
    __table_args__ = (UniqueConstraint("photo_id", "order_index", name="uq_suggestions_photo_order"),)

    id = Column(String, primary_key=True)
    photo_id = Column(String, ForeignKey("photos.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    reasoning = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False)
    target_model_id = Column(String, nullable=False)
    model_parameters = Column(Text, nullable=False, default="{}")  # JSON object
    estimated_duration = Column(Float, nullable=False)
    order_index = Column(Integer, nullable=False)
    created_at = Column(String, nullable=False)
    is_selected = Column(Boolean, nullable=False, default=False)
    is_mock = Column(Boolean, nullable=False, default=False)

    @property
    def parameters(self) -> dict:
        try:
            parsed = json.loads(self.model_parameters or "{}")
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    @property
    def typed_parameters(self):
        return parameters_from_map(self.parameters)
