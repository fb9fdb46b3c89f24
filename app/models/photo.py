from sqlalchemy import Boolean, Column, Integer, LargeBinary, String

from app.database import Base


class Photo(Base):
    __tablename__ = "photos"

    id = Column(String, primary_key=True)
    image_data = Column(LargeBinary, nullable=False)
    filename = Column(String, nullable=True)
    width = Column(Integer, nullable=False, default=0)
    height = Column(Integer, nullable=False, default=0)
    file_size = Column(Integer, nullable=False, default=0)
    created_at = Column(String, nullable=False)
    analysis_completed = Column(Boolean, nullable=False, default=False)

    @property
    def aspect_ratio(self) -> float:
        if not self.height:
            return 1.0
        return self.width / self.height
