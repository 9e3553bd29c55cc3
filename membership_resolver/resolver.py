"""
Group membership resolver — transitive closure of "member of" over any directory.

The directory is reached only through a DirectoryLookup. Every group is
recorded and expanded at most once, whatever number of paths lead to it, so
the traversal terminates on cyclic graphs and deduplicates diamonds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional, Sequence, Union

from .errors import (
    CancelledOrTimedOut,
    LookupFailed,
    PrincipalNotFound,
    ResolutionLimitExceeded,
)
from .models import GroupRecord, PrincipalRef, ResolvedSet

logger = logging.getLogger("membership_resolver.resolver")


class FailureMode(str, Enum):
    """What to do when a nested group cannot be expanded."""
    STRICT = "strict"              # abort the whole resolution
    BEST_EFFORT = "best_effort"    # keep the group as an unexpanded leaf


class Strategy(str, Enum):
    BREADTH = "breadth"   # concurrent expansion, up to max_concurrency lookups in flight
    DEPTH = "depth"       # sequential, one lookup at a time


@dataclass
class ResolverOptions:
    """Tuning for a single resolution."""
    mode: FailureMode = FailureMode.STRICT
    strategy: Strategy = Strategy.DEPTH
    max_concurrency: int = 4
    lookup_timeout: Optional[float] = None    # seconds per lookup call
    timeout: Optional[float] = None           # seconds for the whole resolution
    max_groups: Optional[int] = None

    def __post_init__(self):
        self.mode = FailureMode(self.mode)
        self.strategy = Strategy(self.strategy)
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        for name in ("lookup_timeout", "timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_groups is not None and self.max_groups < 0:
            raise ValueError("max_groups must not be negative")


def as_group_record(item: Union[GroupRecord, PrincipalRef, str]) -> GroupRecord:
    """Normalize whatever a lookup returned into a GroupRecord."""
    if isinstance(item, GroupRecord):
        return item
    if isinstance(item, PrincipalRef):
        return GroupRecord(ref=item, name=item.id)
    if isinstance(item, str):
        return GroupRecord(ref=PrincipalRef(item), name=item)
    raise TypeError(f"Lookup returned an unsupported parent entry: {item!r}")


class GroupResolver:
    """
    Resolves the transitive group memberships of a principal.

    The lookup is injected; nothing about the directory connection is held
    globally, so resolvers against different directories can run side by side.
    """

    def __init__(self, lookup: Any, options: Optional[ResolverOptions] = None):
        self.lookup = lookup
        self.options = options or ResolverOptions()

    async def resolve(
        self,
        start: Union[PrincipalRef, str],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ResolvedSet:
        """
        Compute every group reachable from `start`.

        Raises PrincipalNotFound / LookupFailed when the starting principal cannot
        be looked up, or (strict mode) when any nested group cannot be expanded.
        Raises CancelledOrTimedOut when `cancel_event` is set or the overall
        timeout elapses before the traversal completes.
        """
        start_ref = PrincipalRef.of(start)
        result = ResolvedSet(start_ref)
        opts = self.options

        if cancel_event is not None and cancel_event.is_set():
            raise CancelledOrTimedOut("cancelled", partial=0)

        logger.info(
            f"Resolving groups for {start_ref} "
            f"(mode={opts.mode.value}, strategy={opts.strategy.value})"
        )
        started = time.monotonic()

        if opts.strategy is Strategy.DEPTH:
            traversal = self._traverse_depth(result)
        else:
            traversal = self._traverse_breadth(result)

        await self._supervise(traversal, result, cancel_event)

        logger.info(
            f"Resolved {len(result)} group(s) for {start_ref} in "
            f"{time.monotonic() - started:.2f}s ({result.lookups} lookups"
            + (f", {len(result.unexpanded)} unexpanded" if result.unexpanded else "")
            + ")"
        )
        return result

    # ── Deadline / cancellation ─────────────────────────────────────────────

    async def _supervise(self, traversal, result: ResolvedSet, cancel_event: Optional[asyncio.Event]):
        task = asyncio.ensure_future(traversal)
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        waiters = {task} if cancel_waiter is None else {task, cancel_waiter}

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.options.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if task in done:
                return task.result()

            reason = "cancelled" if cancel_waiter is not None and cancel_waiter in done else "timeout"
            logger.warning(
                f"Resolution for {result.start} {reason} after {len(result)} group(s)"
            )
            raise CancelledOrTimedOut(reason, partial=len(result))
        finally:
            leftovers = [t for t in (task, cancel_waiter) if t is not None]
            for t in leftovers:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)

    # ── Traversals ──────────────────────────────────────────────────────────

    async def _traverse_depth(self, result: ResolvedSet):
        stack = [result.start]
        is_root = True
        while stack:
            principal = stack.pop()
            try:
                parents = await self._fetch(principal, result)
            except (PrincipalNotFound, LookupFailed) as e:
                parents = self._handle_failure(principal, e, result, is_root)
            is_root = False
            self._absorb(parents, result, stack)

    async def _traverse_breadth(self, result: ResolvedSet):
        queue: deque[PrincipalRef] = deque([result.start])
        in_flight: dict[asyncio.Future, PrincipalRef] = {}
        root_task: Optional[asyncio.Future] = None

        try:
            while queue or in_flight:
                while queue and len(in_flight) < self.options.max_concurrency:
                    principal = queue.popleft()
                    task = asyncio.ensure_future(self._fetch(principal, result))
                    in_flight[task] = principal
                    if root_task is None:
                        root_task = task

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    principal = in_flight.pop(task)
                    try:
                        parents = task.result()
                    except (PrincipalNotFound, LookupFailed) as e:
                        parents = self._handle_failure(principal, e, result, task is root_task)
                    self._absorb(parents, result, queue)
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    # ── Helpers ─────────────────────────────────────────────────────────────

    async def _fetch(self, principal: PrincipalRef, result: ResolvedSet) -> list[GroupRecord]:
        """One lookup call, bounded by lookup_timeout; foreign errors become LookupFailed."""
        logger.debug(f"Lookup: {principal}")
        result.lookups += 1
        try:
            call = self.lookup.get_parent_groups(principal)
            if self.options.lookup_timeout is not None:
                parents: Sequence[Any] = await asyncio.wait_for(call, self.options.lookup_timeout)
            else:
                parents = await call
        except (PrincipalNotFound, LookupFailed):
            raise
        except Exception as e:
            raise LookupFailed(principal, e) from e
        return [as_group_record(p) for p in parents]

    def _handle_failure(
        self,
        principal: PrincipalRef,
        error: Exception,
        result: ResolvedSet,
        is_root: bool,
    ) -> list[GroupRecord]:
        if is_root or self.options.mode is FailureMode.STRICT:
            raise error
        # Already recorded as a group when it was discovered; keep it as a leaf.
        result.mark_unexpanded(principal, str(error))
        logger.warning(f"Could not expand {principal}, continuing: {error}")
        return []

    def _absorb(self, parents: list[GroupRecord], result: ResolvedSet, pending) -> None:
        # No await between check and mark: the first discoverer wins.
        for group in parents:
            if group.ref in result.groups:
                continue
            limit = self.options.max_groups
            if limit is not None and len(result) >= limit:
                raise ResolutionLimitExceeded(limit)
            result.add(group)
            pending.append(group.ref)


async def resolve_groups(
    start: Union[PrincipalRef, str],
    lookup: Any,
    *,
    mode: Optional[Union[FailureMode, str]] = None,
    options: Optional[ResolverOptions] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ResolvedSet:
    """
    Single entry point: resolve every group `start` belongs to, directly or nested.

    `mode` overrides `options.mode` when given.
    """
    opts = options or ResolverOptions()
    if mode is not None:
        opts = replace(opts, mode=FailureMode(mode))
    return await GroupResolver(lookup, opts).resolve(start, cancel_event=cancel_event)
