from sqlalchemy import Column, Integer, BigInteger, Boolean, DateTime, ForeignKey, JSON, Text, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
DocumentJSON = JSON().with_variant(JSONB(), "postgresql")


class ProfileDocument(Base):
    """
    Remote replica of one user's profile-scope state.

    The document column holds the serialized profile (resilience, identity
    profile, habit set, settings). Entitlement and last_updated are lifted
    into columns: last_updated drives last-writer-wins, and the entitlement
    columns are owned by the privileged verification path so a client
    batch can never grant itself premium.
    """

    __tablename__ = "profile_document"

    user_id = Column(Text, primary_key=True)
    document = Column(DocumentJSON, nullable=False)
    last_updated = Column(BigInteger, nullable=False, default=0)  # epoch ms, logical clock

    # --- ENTITLEMENT (privileged) ---
    is_premium = Column(Boolean, default=False, nullable=False)
    premium_expiry = Column(BigInteger, nullable=True)  # epoch ms
    subscription_status = Column(Text, nullable=True)  # 'active' | 'cancelled' | 'expired'

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    day_logs = relationship("DayLogDocument", back_populates="profile", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_profile_document_premium_expiry", "is_premium", "premium_expiry"),
    )


class DayLogDocument(Base):
    """One calendar date of completions for a user, keyed by YYYY-MM-DD."""

    __tablename__ = "day_log_document"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, ForeignKey("profile_document.user_id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Text, nullable=False)
    document = Column(DocumentJSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    profile = relationship("ProfileDocument", back_populates="day_logs")

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_day_log_user_date"),
    )
