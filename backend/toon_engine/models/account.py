from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from toon_engine.core.database import Base


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("free_credits >= 0", name="ck_accounts_free_credits_non_negative"),
        CheckConstraint("paid_credits >= 0", name="ck_accounts_paid_credits_non_negative"),
    )

    id = Column(String, primary_key=True, index=True)
    free_credits = Column(Integer, nullable=False, default=0)
    paid_credits = Column(Integer, nullable=False, default=0)
    free_credits_reset_at = Column(DateTime(timezone=True), nullable=True)
    # Bumped on every balance write; ledger updates are conditional on it.
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
