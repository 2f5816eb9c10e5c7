import enum

from sqlalchemy import JSON, Column, DateTime, Enum, Integer, String, Text
from sqlalchemy.sql import func

from toon_engine.core.database import Base


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class JobKind(str, enum.Enum):
    PHOTO = "photo"
    VIDEO = "video"


class ConversionJob(Base):
    __tablename__ = "conversion_jobs"

    id = Column(String, primary_key=True, index=True)
    owner_id = Column(String, index=True, nullable=False)
    # Exactly one payer is set: an authenticated account or an anonymous legacy id.
    account_id = Column(String, index=True, nullable=True)
    legacy_id = Column(String, index=True, nullable=True)
    kind = Column(String, nullable=False, default=JobKind.PHOTO.value)
    status = Column(
        Enum(JobStatus, name="conversionjobstatus", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )
    style_id = Column(String, nullable=False)
    cost_per_image = Column(Integer, nullable=False, default=1)
    total_images = Column(Integer, nullable=False)
    completed_images = Column(Integer, nullable=False, default=0)
    result_ids = Column(JSON, nullable=False, default=list)
    failed_indices = Column(JSON, nullable=False, default=list)
    input_keys = Column(JSON, nullable=False, default=list)
    scene_analysis = Column(JSON, nullable=True)
    style_reference_key = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
