from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from toon_engine.core.database import Base


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    pool = Column(String, nullable=False)
    reason = Column(String, index=True, nullable=False)
    reference_id = Column(String, index=True, nullable=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
