"""
Directory lookup seam — the only collaborator the resolver consumes.

Implementations wrap a directory's "read this principal's memberOf" query
(Graph REST, LDAP, an in-memory snapshot). Every group they return must itself
be resolvable through the same lookup.
"""

from __future__ import annotations

from typing import Protocol, Sequence, Union, runtime_checkable

from ..models import GroupRecord, PrincipalRef


ParentEntry = Union[GroupRecord, PrincipalRef]


@runtime_checkable
class DirectoryLookup(Protocol):
    """Protocol for a read-only directory that can list a principal's immediate parent groups."""

    async def get_parent_groups(self, principal: PrincipalRef) -> Sequence[ParentEntry]:
        """
        Return the groups `principal` is a direct member of.
        Raise PrincipalNotFound if it does not exist, LookupFailed for any other failure.
        """
        ...
