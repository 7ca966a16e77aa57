from __future__ import annotations


class NotFoundError(Exception):
    pass


class ForbiddenError(Exception):
    pass


class ConflictError(Exception):
    pass


class ValidationError(Exception):
    pass


class InfrastructureError(Exception):
    """Raised when the backing state file cannot be written or read."""
