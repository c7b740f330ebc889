"""NCDTrack — Engine Error Taxonomy.

Validation and authorization errors are terminal for a request.
Persistence errors are transient; the engine never retries on its own.
"""


class EngineError(Exception):
    """Base class for every error the engine surfaces to callers."""

    status_code: int = 500

    def __init__(self, message: str, record_key: str = ""):
        self.record_key = record_key
        super().__init__(message)


class ValidationError(EngineError):
    """Input that cannot be coerced (wrong shape, unknown or read-only field)."""

    status_code = 422


class AuthorizationError(EngineError):
    """Credential does not match the facility being edited."""

    status_code = 403


class NotFoundError(EngineError):
    """Unknown facility or district code."""

    status_code = 404


class PersistenceError(EngineError):
    """The underlying store failed; the prior record is left intact."""

    status_code = 503
