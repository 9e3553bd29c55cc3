"""
Nested Group Membership Resolver
================================
Computes the transitive closure of group memberships for a directory
principal (user, computer, group, service account) against Active Directory,
Azure AD / Entra ID, or any directory exposing a "get immediate parents" query.

The resolver is strictly read-only. It never modifies the directory.
"""

from .errors import (
    ResolverError,
    PrincipalNotFound,
    LookupFailed,
    CancelledOrTimedOut,
    ResolutionLimitExceeded,
)
from .models import PrincipalRef, GroupRecord, ResolvedSet
from .resolver import FailureMode, ResolverOptions, GroupResolver, resolve_groups

__version__ = "1.0.0"
__mode__ = "READ-ONLY"

__all__ = [
    "ResolverError",
    "PrincipalNotFound",
    "LookupFailed",
    "CancelledOrTimedOut",
    "ResolutionLimitExceeded",
    "PrincipalRef",
    "GroupRecord",
    "ResolvedSet",
    "FailureMode",
    "ResolverOptions",
    "GroupResolver",
    "resolve_groups",
]
