"""
Error taxonomy for group membership resolution.
Directory adapters translate their transport errors into these types.
"""

from __future__ import annotations

from typing import Any, Optional


class ResolverError(Exception):
    """Base class for all resolution failures."""
    pass


class PrincipalNotFound(ResolverError):
    """Raised when a principal does not exist in the directory at lookup time."""

    def __init__(self, principal: Any, message: str = ""):
        self.principal = principal
        detail = f": {message}" if message else ""
        super().__init__(f"Principal not found: {principal}{detail}")


class LookupFailed(ResolverError):
    """Raised when the directory lookup fails for a reason other than 'not found'."""

    def __init__(self, principal: Any, cause: Optional[BaseException] = None):
        self.principal = principal
        self.cause = cause
        reason = f"{type(cause).__name__}: {cause}" if cause is not None else "unknown error"
        super().__init__(f"Lookup failed for {principal}: {reason}")


class CancelledOrTimedOut(ResolverError):
    """Raised when a resolution is cancelled by the caller or exceeds its deadline."""

    def __init__(self, reason: str, partial: int = 0):
        self.reason = reason          # "cancelled" or "timeout"
        self.partial = partial        # groups discovered before abort (discarded)
        super().__init__(
            f"Resolution {reason} after discovering {partial} group(s); partial result discarded"
        )


class ResolutionLimitExceeded(ResolverError):
    """Raised when the traversal discovers more groups than the configured cap."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Group limit exceeded: more than {limit} groups reachable")
