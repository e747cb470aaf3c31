"""
Bounded retry policy for whole agent rounds.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BoundedRetry(Generic[T]):
    """Re-run an attempt while a predicate flags its result, at most max_retries times.

    The attempt function receives the attempt index (0 for the first run) so
    later attempts can tighten their instructions. After the budget is spent
    the last result is returned as-is, even if the predicate still holds.

    Usage:
        policy = BoundedRetry(should_retry=lambda r: is_degenerate(r.scores))
        result = await policy.run(run_round)
    """

    should_retry: Callable[[T], bool]
    max_retries: int = 1
    name: str = "round"

    async def run(self, attempt: Callable[[int], Awaitable[T]]) -> T:
        result = await attempt(0)
        retries = 0
        while retries < self.max_retries and self.should_retry(result):
            retries += 1
            logger.warning(f"{self.name}: result flagged, retrying ({retries}/{self.max_retries})")
            result = await attempt(retries)
        if self.should_retry(result):
            logger.warning(f"{self.name}: retry budget exhausted, accepting result as-is")
        return result
