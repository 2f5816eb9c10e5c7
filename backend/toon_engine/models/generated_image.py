from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from toon_engine.core.database import Base


class GeneratedImage(Base):
    __tablename__ = "generated_images"

    id = Column(String, primary_key=True, index=True)
    blob_key = Column(String, nullable=False)
    mime_type = Column(String, nullable=False, default="image/png")
    owner_id = Column(String, index=True)
    job_id = Column(String, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
