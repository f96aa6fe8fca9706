"""GeneratedIdea model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ideaverse.models.base import Base


class GeneratedIdea(Base):
    """Generation history - written in the same transaction as the credit debit"""
    __tablename__ = "generated_ideas"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(100), nullable=False)
    genre = Column(String(100), nullable=False)
    viability = Column(Integer, nullable=False)
    originality = Column(Integer, nullable=False)
    market_appeal = Column(Integer, nullable=False)
    prompt = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    user = relationship("User", back_populates="generated_ideas")

    __table_args__ = (
        Index('ix_generated_ideas_user_created', 'user_id', 'created_at'),
    )
