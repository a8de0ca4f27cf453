"""Monotonic counter (ratchet) built on the CAS updater.

Used for the highest bib number seen in a race so that devices can suggest
the next bib. The stored value never decreases under any interleaving.
"""

import logging

from .atomic import AtomicUpdater
from .results import Abort, Commit, Conflict

logger = logging.getLogger(__name__)


def bib_number(bib: str | None) -> int | None:
    """Numeric value of a bib, or None for blank, non-numeric or non-positive bibs."""
    if not bib:
        return None
    try:
        value = int(bib.strip())
    except ValueError:
        return None
    return value if value > 0 else None


class MonotonicCounter:
    """Integer stored at a key that only ever moves up."""

    def __init__(self, updater: AtomicUpdater):
        self.updater = updater

    async def update_if_higher(self, key: str, candidate: int) -> bool:
        """Raise the stored value to ``candidate`` if it is higher.

        Returns:
            True if the stored value is now at least ``candidate``; False if
            the retry budget ran out before the write could land.
        """

        def transform(current):
            current = current if isinstance(current, int) else 0
            if candidate <= current:
                return Abort(result=current)
            return Commit(data=candidate, result=candidate)

        outcome = await self.updater.update(key, 0, transform, operation="update_if_higher")
        if isinstance(outcome, Conflict):
            logger.warning(f"update_if_higher: max retries exceeded for {key}")
            return False
        return True

    async def get(self, key: str) -> int:
        """Current value, 0 when unset."""
        raw = await self.updater.backend.get(key)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0
