"""
Data models — principal references, group records, and the resolved set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union


@dataclass(frozen=True)
class PrincipalRef:
    """
    Opaque, directory-scoped identifier (DN, object ID, SID).
    Equality is by identifier only.
    """
    id: str
    kind: str = field(default="", compare=False)   # user, group, computer, ... (hint only)

    def __str__(self) -> str:
        return self.id

    @classmethod
    def of(cls, value: Union["PrincipalRef", str]) -> "PrincipalRef":
        if isinstance(value, PrincipalRef):
            return value
        if not isinstance(value, str) or not value:
            raise ValueError(f"Invalid principal identifier: {value!r}")
        return cls(value)


@dataclass(frozen=True)
class GroupRecord:
    """A group reached during resolution. Extra attributes are passed through untouched."""
    ref: PrincipalRef
    name: str
    attributes: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def id(self) -> str:
        return self.ref.id

    def to_dict(self) -> dict:
        return {
            "id": self.ref.id,
            "name": self.name,
            "attributes": self.attributes,
        }


def group_sort_key(group: GroupRecord) -> tuple[str, str]:
    """Name (case-insensitive), ties broken by identifier."""
    return (group.name.casefold(), group.ref.id)


class ResolvedSet:
    """
    Groups reachable from one starting principal, unique by PrincipalRef.
    Iteration yields groups in discovery order; use sorted() for presentation.
    """

    def __init__(self, start: PrincipalRef):
        self.start = start
        self.groups: dict[PrincipalRef, GroupRecord] = {}
        self.unexpanded: dict[PrincipalRef, str] = {}
        self.lookups: int = 0

    def add(self, group: GroupRecord) -> bool:
        """Record a group. Returns False if it was already present."""
        if group.ref in self.groups:
            return False
        self.groups[group.ref] = group
        return True

    def mark_unexpanded(self, ref: PrincipalRef, error: str):
        self.unexpanded[ref] = error

    def get(self, ref: Union[PrincipalRef, str]) -> Optional[GroupRecord]:
        return self.groups.get(PrincipalRef.of(ref))

    def __contains__(self, item: object) -> bool:
        if isinstance(item, GroupRecord):
            return item.ref in self.groups
        if isinstance(item, str):
            return PrincipalRef(item) in self.groups
        return item in self.groups

    def __len__(self) -> int:
        return len(self.groups)

    def __iter__(self) -> Iterator[GroupRecord]:
        return iter(self.groups.values())

    def refs(self) -> set[PrincipalRef]:
        return set(self.groups)

    def ids(self) -> set[str]:
        return {ref.id for ref in self.groups}

    def names(self) -> list[str]:
        return [g.name for g in self.sorted()]

    @property
    def is_complete(self) -> bool:
        """False when best-effort mode left one or more groups unexpanded."""
        return not self.unexpanded

    def sorted(self) -> list[GroupRecord]:
        return sorted(self.groups.values(), key=group_sort_key)

    def to_dict(self) -> dict:
        return {
            "start": self.start.id,
            "complete": self.is_complete,
            "group_count": len(self.groups),
            "lookups": self.lookups,
            "groups": [g.to_dict() for g in self.sorted()],
            "unexpanded": [
                {"id": ref.id, "error": error}
                for ref, error in sorted(self.unexpanded.items(), key=lambda kv: kv[0].id)
            ],
        }

    def __repr__(self) -> str:
        return (
            f"ResolvedSet(start={self.start.id!r}, groups={len(self.groups)}, "
            f"unexpanded={len(self.unexpanded)})"
        )
