"""
Presentation helpers — deterministic ordering and console/JSON rendering of a ResolvedSet.
Ordering is a display concern; the resolver itself guarantees set membership only.
"""

from __future__ import annotations

import json
from typing import Iterable

from .models import GroupRecord, ResolvedSet, group_sort_key


def sort_groups(groups: Iterable[GroupRecord]) -> list[GroupRecord]:
    """Sort by name (case-insensitive), ties broken by identifier."""
    return sorted(groups, key=group_sort_key)


def render_table(resolved: ResolvedSet) -> str:
    """Plain-text table of the resolved groups, sorted by name."""
    groups = sort_groups(resolved)
    lines = [f"Groups for {resolved.start.id}: {len(groups)}"]
    if groups:
        name_width = max(len("Name"), *(len(g.name) for g in groups))
        lines.append(f"  {'Name':<{name_width}}  Identifier")
        lines.append(f"  {'─' * name_width}  {'─' * 10}")
        for g in groups:
            marker = "  (not expanded)" if g.ref in resolved.unexpanded else ""
            lines.append(f"  {g.name:<{name_width}}  {g.ref.id}{marker}")

    if resolved.is_complete:
        lines.append("Resolution complete.")
    else:
        lines.append(
            f"Resolution INCOMPLETE: {len(resolved.unexpanded)} group(s) could not be expanded."
        )
        for ref, error in sorted(resolved.unexpanded.items(), key=lambda kv: kv[0].id):
            lines.append(f"  ! {ref.id}: {error}")
    return "\n".join(lines)


def render_json(resolved: ResolvedSet) -> str:
    return json.dumps(resolved.to_dict(), indent=2, default=str)
