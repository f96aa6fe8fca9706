"""AppliedPurchase model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ideaverse.models.base import Base


class AppliedPurchase(Base):
    """Purchase ids already applied to an entitlement record (idempotency keys)"""
    __tablename__ = "applied_purchases"

    id = Column(Integer, primary_key=True, index=True)
    purchase_id = Column(String(255), unique=True, nullable=False, index=True)  # checkout session id or invoice id
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_type = Column(String(50), nullable=False)
    generations_granted = Column(Integer, nullable=False)
    source = Column(String(50), nullable=False)  # checkout, renewal, reconcile
    applied_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="applied_purchases")

    __table_args__ = (
        Index('ix_applied_purchases_user_applied', 'user_id', 'applied_at'),
    )
