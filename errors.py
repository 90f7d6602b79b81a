"""Failure types raised by the ledger engine.

Batch operations never raise these for individual rows; per-row write
failures are counted in the result instead.
"""


class NotFoundError(LookupError):
    """Ledger, account, budget or subscription missing or outside the ledger."""


class ForbiddenError(PermissionError):
    """Caller lacks the ledger role required for the operation."""


class InvalidInputError(ValueError):
    """Malformed input, rejected before any side effect."""


class UpstreamUnavailable(RuntimeError):
    """The external FX source failed or returned an unusable payload."""
