"""
Engine error hierarchy.

Every failure an engine operation can report is an EngineError subclass with a
stable code. The API layer maps each kind to an HTTP status and a user-facing
category; messages never carry internal identifiers.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for negotiation engine errors."""

    code = "ENGINE_ERROR"
    category = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    """Malformed or out-of-range input. Never retried."""

    code = "VALIDATION_ERROR"
    category = "input rejected"

    def __init__(self, field: Optional[str], message: str):
        super().__init__(message)
        self.field = field


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class DuplicateActiveOffer(ValidationError):
    code = "DUPLICATE_ACTIVE_OFFER"

    def __init__(self):
        super().__init__(
            "product_id",
            "You already have an active offer on this product. Withdraw it first."
        )


class NotFound(EngineError):
    code = "NOT_FOUND"
    category = "input rejected"


class NotAuthorized(EngineError):
    """Actor is not a legitimate party to the requested transition."""

    code = "NOT_AUTHORIZED"
    category = "not your turn"


class InvalidState(EngineError):
    """Transition is not legal from the current state."""

    code = "INVALID_STATE"
    category = "already decided"


class WrongPhase(InvalidState):
    code = "WRONG_PHASE"


class Expired(EngineError):
    code = "EXPIRED"
    category = "too late"


class ItemLocked(EngineError):
    """Item is already committed to another active negotiation."""

    code = "ITEM_LOCKED"
    category = "input rejected"

    def __init__(self, product_id: str):
        super().__init__("One or more items are already committed to another offer or trade")
        self.product_id = product_id


class ConcurrentModification(EngineError):
    """Optimistic-lock conflict. Retry after re-fetching state."""

    code = "CONCURRENT_MODIFICATION"
    category = "conflict, try again"

    def __init__(self, message: str = "This record was changed by someone else. Reload and try again."):
        super().__init__(message)


class DependencyFailure(EngineError):
    """External collaborator call failed or timed out."""

    code = "DEPENDENCY_FAILURE"
    category = "service unavailable"

    def __init__(self, dependency: str, message: Optional[str] = None):
        super().__init__(message or f"{dependency} is unavailable, please retry later")
        self.dependency = dependency
