"""Engine-level errors.

Errors raised by adapters while talking to a provider live in
``autoflow.adapters.base``; this module holds the errors the engine itself
raises around them. Every error carries a stable ``kind`` string that ends up
in per-workflow status reports.
"""


class EngineError(Exception):
    """Base exception for engine errors."""

    kind = "engine_error"

    def __init__(self, message: str, service: str | None = None):
        super().__init__(message)
        self.service = service


class WorkflowValidationError(EngineError):
    """A workflow definition has the wrong shape (rejected at submission)."""

    kind = "validation_error"


class UnknownServiceError(EngineError):
    """No adapter is registered for a service or event type."""

    kind = "unknown_service"


class WorkflowNotFoundError(EngineError):
    """No workflow exists with the given ID."""

    kind = "workflow_not_found"


class CredentialNotFoundError(EngineError):
    """The user has not connected the service."""

    kind = "credential_not_found"

    def __init__(self, user_id: str, service: str):
        super().__init__(f"No {service} credential connected for user {user_id}", service=service)
        self.user_id = user_id


class InvalidCredentialError(EngineError):
    """A token payload or OAuth callback could not be turned into a credential."""

    kind = "invalid_credential"


class OperationTimeoutError(EngineError):
    """An external call exceeded its time bound."""

    kind = "timeout"


def error_kind(error: BaseException) -> str:
    """Get the reportable kind of an error.

    Errors outside the engine/adapter taxonomy are reported by class name.
    """
    kind = getattr(error, "kind", None)
    if isinstance(kind, str):
        return kind
    return type(error).__name__


# HTTP status codes reported by the API for engine errors
_HTTP_STATUS = {
    "validation_error": 422,
    "unknown_service": 400,
    "workflow_not_found": 404,
    "credential_not_found": 404,
    "invalid_credential": 400,
    "timeout": 504,
}


def http_status(error: EngineError) -> int:
    """Map an engine error to an HTTP status code."""
    return _HTTP_STATUS.get(error.kind, 400)
