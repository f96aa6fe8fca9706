"""Entitlement model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ideaverse.models.base import Base


class Entitlement(Base):
    """Per-user generation quota and subscription state"""
    __tablename__ = "entitlements"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)

    subscription_tier = Column(String(50), default="free", nullable=False)  # free, one_shot, spark, creator, universe
    subscription_status = Column(String(50), default="inactive", nullable=False)  # active, inactive, expired
    has_used_free_generation = Column(Boolean, default=False, nullable=False)
    generations_remaining = Column(Integer, default=1, nullable=False)
    total_generations = Column(Integer, default=0, nullable=False)

    subscription_start_date = Column(DateTime(timezone=True), nullable=True)
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)
    last_generation_date = Column(DateTime(timezone=True), nullable=True)

    stripe_subscription_id = Column(String(255), nullable=True, index=True)

    # Compare-and-swap token, bumped on every write
    version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="entitlement")

    __table_args__ = (
        Index('ix_entitlements_status_end_date', 'subscription_status', 'subscription_end_date'),
    )

    def __repr__(self):
        return (
            f"<Entitlement(user_id={self.user_id}, tier={self.subscription_tier}, "
            f"status={self.subscription_status}, remaining={self.generations_remaining}, v={self.version})>"
        )
