"""Typed failures raised by the wiki core.

The core never translates these into a wire format; the boundary layer
(HTTP handlers, CLI, batch jobs) maps them to whatever its protocol needs.
"""

from typing import Optional


class WikiError(Exception):
    """Base exception for all wiki core errors."""
    pass


class ValidationError(WikiError):
    """Raised when a request is malformed or would break a store invariant."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field
        self.message = message


class NotFoundError(WikiError):
    """Raised when an operation references a page, grant, user or role that does not exist."""

    def __init__(self, kind: str, ref: object):
        super().__init__(f"{kind.capitalize()} not found: {ref}")
        self.kind = kind
        self.ref = ref


class AccessDeniedError(WikiError):
    """Raised when the requester may not perform a permission-guarded operation."""

    def __init__(self, message: str, page_id: Optional[str] = None):
        super().__init__(message)
        self.page_id = page_id
