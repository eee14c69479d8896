"""previewd domain error hierarchy.

All service-layer errors inherit from PreviewdError. The global exception
handler in main.py converts these to structured JSON responses with the
correct HTTP status code and a request_id for traceability.

The reconcile engine reads the same hierarchy to classify failures:
ValidationError is permanent (the Environment goes Failed), TransientError
is retried with backoff.
"""


class PreviewdError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(PreviewdError):
    status_code = 404
    code = "NOT_FOUND"


class UnauthorizedError(PreviewdError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(PreviewdError):
    status_code = 403
    code = "FORBIDDEN"


class ConflictError(PreviewdError):
    status_code = 409
    code = "CONFLICT"


class StaleVersionError(ConflictError):
    """The row changed since it was read; re-read and retry."""


class ValidationError(PreviewdError):
    status_code = 422
    code = "VALIDATION_ERROR"


class UpstreamError(PreviewdError):
    status_code = 502
    code = "UPSTREAM_ERROR"


class TransientError(PreviewdError):
    status_code = 503
    code = "TRANSIENT_ERROR"


class InvalidTransitionError(PreviewdError):
    """A phase change the transition table does not allow. Always a bug."""

    code = "INVALID_TRANSITION"


class ReconcileError(PreviewdError):
    """A reconcile step failed.

    Carries the sub-resource and Environment it concerns, a machine-readable
    reason for the status condition, and whether retrying can help.
    """

    code = "RECONCILE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        resource: str,
        environment: str,
        reason: str,
        permanent: bool,
    ) -> None:
        super().__init__(f"{environment}: {resource}: {message}")
        self.resource = resource
        self.environment = environment
        self.reason = reason
        self.permanent = permanent
