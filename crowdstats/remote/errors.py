"""
Error taxonomy for remote-source access.

Only FirstPageFailure is allowed to reach the HTTP layer; every other
class is caught where it happens and degrades the result instead.
"""
from typing import Optional


class RemoteSourceError(Exception):
    """A remote round trip failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RemoteQueryRejected(RemoteSourceError):
    """The source refused the query shape (unsupported traversal, unknown field)."""
    pass


class FirstPageFailure(RemoteSourceError):
    """The initial page of a fetch could not be obtained; no partial result exists."""
    pass


class SchemaNotFound(LookupError):
    """No field in the entity catalog matched the requested role."""

    def __init__(self, entity_type: str, role: str):
        super().__init__(f"No field for role '{role}' on {entity_type}")
        self.entity_type = entity_type
        self.role = role
