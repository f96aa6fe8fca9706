"""User model"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ideaverse.models.base import Base


class User(Base):
    """User accounts"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=True)
    display_name = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    entitlement = relationship("Entitlement", back_populates="user", uselist=False, cascade="all, delete-orphan")
    applied_purchases = relationship("AppliedPurchase", back_populates="user", cascade="all, delete-orphan")
    generated_ideas = relationship("GeneratedIdea", back_populates="user", cascade="all, delete-orphan")
