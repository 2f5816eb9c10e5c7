from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from toon_engine.core.database import Base


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id = Column(Integer, primary_key=True, index=True)
    legacy_id = Column(String, index=True, nullable=False)
    action = Column(String, nullable=False)
    units = Column(Integer, nullable=False, default=1)
    reference_id = Column(String, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
