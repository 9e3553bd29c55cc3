"""
In-memory directory — a static membership graph for offline runs and tests.

JSON snapshot format:
    {
        "groups": {"<group id>": "<display name>", ...},
        "principals": ["<non-group id>", ...],
        "edges": {"<principal id>": ["<parent group id>", ...], ...}
    }
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Iterable, Optional, Union

from ..errors import LookupFailed, PrincipalNotFound
from ..models import GroupRecord, PrincipalRef

logger = logging.getLogger("membership_resolver.lookup.memory")


class InMemoryDirectory:
    """
    DirectoryLookup over a dict of edges.
    Supports injected failures and artificial latency for exercising timeouts.
    """

    def __init__(
        self,
        edges: Optional[dict[str, Iterable[str]]] = None,
        names: Optional[dict[str, str]] = None,
        principals: Iterable[str] = (),
        latency: float = 0.0,
    ):
        self.edges: dict[str, list[str]] = {k: list(v) for k, v in (edges or {}).items()}
        self.names: dict[str, str] = dict(names or {})
        self.principals: set[str] = set(principals)
        self.latency = latency
        self.failures: dict[str, BaseException] = {}
        self.calls: list[str] = []

    def add_membership(self, member: str, group: str, name: str = "") -> None:
        """Record that `member` is an immediate member of `group`."""
        parents = self.edges.setdefault(member, [])
        if group not in parents:
            parents.append(group)
        if name:
            self.names[group] = name

    def fail_on(self, principal: str, error: Optional[BaseException] = None) -> None:
        """Make lookups of `principal` raise `error` (a generic connection error by default)."""
        self.failures[principal] = error or ConnectionError(f"directory unreachable for {principal}")

    def exists(self, principal_id: str) -> bool:
        if principal_id in self.edges or principal_id in self.names or principal_id in self.principals:
            return True
        return any(principal_id in parents for parents in self.edges.values())

    async def get_parent_groups(self, principal: PrincipalRef) -> list[GroupRecord]:
        self.calls.append(principal.id)
        if self.latency:
            await asyncio.sleep(self.latency)

        error = self.failures.get(principal.id)
        if error is not None:
            if isinstance(error, (PrincipalNotFound, LookupFailed)):
                raise error
            raise LookupFailed(principal, error)
        if not self.exists(principal.id):
            raise PrincipalNotFound(principal)

        return [
            GroupRecord(ref=PrincipalRef(gid, kind="group"), name=self.names.get(gid, gid))
            for gid in self.edges.get(principal.id, [])
        ]

    # ── Loading ─────────────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: dict) -> "InMemoryDirectory":
        edges = data.get("edges", {})
        if not isinstance(edges, dict):
            raise ValueError("'edges' must map principal ids to lists of parent group ids")
        return cls(
            edges=edges,
            names=data.get("groups", {}),
            principals=data.get("principals", []),
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "InMemoryDirectory":
        """Load a directory snapshot from a JSON file."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        directory = cls.from_dict(data)
        logger.info(
            f"Loaded directory snapshot {path}: "
            f"{len(directory.names)} named groups, {len(directory.edges)} members with parents"
        )
        return directory
