"""Error taxonomy shared by the pipelines and the API layer.

Every pipeline failure is an ``EngineError`` subclass. The API layer turns
them into the ``{"success": false, "message": ...}`` envelope using
``code`` and ``status_code``.
"""


class EngineError(Exception):
    """Base class for all lifecycle engine errors."""

    code = "engine_error"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message, "error": self.code}


class ValidationError(EngineError):
    """Bad input shape or value out of range."""

    code = "validation_error"
    status_code = 422


class InsufficientBalance(EngineError):
    """Available balance does not cover the requested amount."""

    code = "insufficient_balance"
    status_code = 400


class InvalidStateError(EngineError):
    """Action is not valid for the entity's current status."""

    code = "invalid_state"
    status_code = 409


class ConflictError(EngineError):
    """Optimistic version check failed: a concurrent transition won."""

    code = "conflict"
    status_code = 409


class MethodInactiveError(EngineError):
    """Payment method or its cryptocurrency is deactivated."""

    code = "method_inactive"
    status_code = 400


class NotFoundError(EngineError):
    """Referenced entity does not exist."""

    code = "not_found"
    status_code = 404


class AuthorizationError(EngineError):
    """Caller is not the right actor or lacks the required role."""

    code = "forbidden"
    status_code = 403


class AuthenticationError(EngineError):
    """Missing or invalid bearer token."""

    code = "unauthenticated"
    status_code = 401
