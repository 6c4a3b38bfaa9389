"""Error taxonomy for DarkDrop.

Every error carries a stable category and HTTP status so the routing layer can
map it without inspecting messages. Messages are safe to show to callers.
"""


class DarkDropError(Exception):
    """Base exception for DarkDrop."""

    status_code = 500
    category = "internal_error"

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class Unauthenticated(DarkDropError):
    """Missing, unknown, expired or revoked credentials."""
    status_code = 401
    category = "unauthenticated"


class Forbidden(DarkDropError):
    """Valid identity without the required role."""
    status_code = 403
    category = "forbidden"


class NotFound(DarkDropError):
    status_code = 404
    category = "not_found"


class ValidationError(DarkDropError):
    status_code = 400
    category = "validation_error"


class IntegrityError(DarkDropError):
    """Checksum or authentication tag mismatch, or a truncated encrypted blob."""
    status_code = 500
    category = "integrity_error"


class CapacityError(DarkDropError):
    status_code = 413
    category = "capacity_exceeded"


class DependencyError(DarkDropError):
    """The store or the filesystem failed underneath an operation."""
    status_code = 503
    category = "dependency_error"
