"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from ideaverse.models.base import Base
from ideaverse.models.user import User
from ideaverse.models.entitlement import Entitlement
from ideaverse.models.applied_purchase import AppliedPurchase
from ideaverse.models.stripe_event import StripeEvent
from ideaverse.models.generated_idea import GeneratedIdea

# Export all for convenience
__all__ = [
    "Base", "User", "Entitlement", "AppliedPurchase", "StripeEvent", "GeneratedIdea"
]
