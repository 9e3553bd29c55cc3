"""
Retrying lookup wrapper — bounded retries with exponential backoff.

The resolver itself never retries; callers that want retries wrap their
lookup in RetryingLookup. Only LookupFailed is retried: a principal that does
not exist will not appear by asking again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from ..errors import LookupFailed
from ..models import PrincipalRef

logger = logging.getLogger("membership_resolver.lookup.retry")


class RetryingLookup:
    """Wraps any DirectoryLookup with retry on LookupFailed."""

    def __init__(
        self,
        inner: Any,
        max_retries: int = 3,
        initial_backoff: float = 0.5,
        multiplier: float = 2.0,
        max_backoff: float = 30.0,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.inner = inner
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.multiplier = multiplier
        self.max_backoff = max_backoff

    async def get_parent_groups(self, principal: PrincipalRef) -> Sequence[Any]:
        backoff = self.initial_backoff
        attempt = 0
        while True:
            try:
                return await self.inner.get_parent_groups(principal)
            except LookupFailed as e:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    f"Lookup for {principal} failed, retry {attempt}/{self.max_retries} "
                    f"in {backoff:.1f}s: {e}"
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * self.multiplier, self.max_backoff)
