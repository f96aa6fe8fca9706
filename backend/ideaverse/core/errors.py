"""Domain exceptions for entitlements, generation and payments

Routers translate these into HTTP responses; services raise them.
"""


class EntitlementError(Exception):
    """Base class for entitlement failures"""


class NoCreditsError(EntitlementError):
    """User has no generations remaining (normal outcome, prompts a purchase)"""

    def __init__(self, message: str = "No generations remaining"):
        super().__init__(message)


class GenerationInProgressError(EntitlementError):
    """Another generation for the same user holds the lock"""

    def __init__(self, message: str = "A generation is already in progress"):
        super().__init__(message)


class IdeaGenerationError(EntitlementError):
    """The external idea generator failed or returned an unusable idea"""


class EntitlementPersistError(EntitlementError):
    """The credit debit could not be durably recorded"""


class StaleEntitlementError(EntitlementError):
    """Compare-and-swap lost: the record changed since it was read"""

    def __init__(self, user_id: int, expected_version: int):
        super().__init__(f"Entitlement for user {user_id} is no longer at version {expected_version}")
        self.user_id = user_id
        self.expected_version = expected_version


class InvalidPurchaseError(EntitlementError, ValueError):
    """Unknown plan type or invalid grant amount"""


class MalformedPaymentEventError(EntitlementError, ValueError):
    """Payment event is missing data it can never acquire on redelivery"""


class AccountNotFoundError(EntitlementError):
    """Authenticated session points at a user that no longer exists"""

    def __init__(self, user_id: int):
        super().__init__("User account no longer exists")
        self.user_id = user_id
