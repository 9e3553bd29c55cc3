"""
Azure AD / Entra ID lookup over Microsoft Graph.

Reads /directoryObjects/{id}/memberOf cast to microsoft.graph.group, which
works for users, devices, groups and service principals alike. Directory
roles and administrative units are not groups and are excluded by the cast.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

from ..config import GROUP_SELECT_FIELDS
from ..errors import LookupFailed, PrincipalNotFound
from ..graph.client import GraphAPIError, GraphClient
from ..models import GroupRecord, PrincipalRef

logger = logging.getLogger("membership_resolver.lookup.graph")


def group_from_graph(item: dict) -> GroupRecord:
    """Map a Graph group resource onto a GroupRecord; the rest rides along as attributes."""
    group_id = item["id"]
    attributes = {k: v for k, v in item.items() if k not in ("id", "displayName", "@odata.type")}
    return GroupRecord(
        ref=PrincipalRef(group_id, kind="group"),
        name=item.get("displayName") or group_id,
        attributes=attributes,
    )


class GraphDirectoryLookup:
    """DirectoryLookup backed by an open GraphClient."""

    def __init__(self, graph: GraphClient, select: Optional[list[str]] = None):
        self.graph = graph
        self.select = list(select) if select else list(GROUP_SELECT_FIELDS)

    async def get_parent_groups(self, principal: PrincipalRef) -> list[GroupRecord]:
        endpoint = f"directoryObjects/{quote(principal.id, safe='')}/memberOf/microsoft.graph.group"
        params = {"$select": ",".join(self.select)}
        try:
            items = await self.graph.get_all_pages(endpoint, params=params)
        except GraphAPIError as e:
            if e.status_code in (400, 404):
                # Graph answers 400 for malformed object IDs, 404 for unknown ones
                raise PrincipalNotFound(principal, str(e)) from e
            raise LookupFailed(principal, e) from e
        except Exception as e:
            raise LookupFailed(principal, e) from e

        logger.debug(f"{principal}: {len(items)} direct parent group(s)")
        return [group_from_graph(item) for item in items if item.get("id")]

    async def find_principal(self, user_principal_name: str) -> PrincipalRef:
        """Resolve a user principal name to its directory object ID."""
        upn = PrincipalRef(user_principal_name)
        try:
            data = await self.graph.get(
                f"users/{quote(user_principal_name, safe='@')}",
                params={"$select": "id"},
            )
        except GraphAPIError as e:
            if e.status_code in (400, 404):
                raise PrincipalNotFound(upn, str(e)) from e
            raise LookupFailed(upn, e) from e
        if not data.get("id"):
            raise PrincipalNotFound(upn)
        return PrincipalRef(data["id"], kind="user")
