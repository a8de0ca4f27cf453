"""Bounded-retry compare-and-swap over a single document key.

This is the only synchronization mechanism in the engine. Each attempt
watches the key, re-reads the document, lets the caller's transform decide
what to do, and commits with a conditional write. A lost race simply starts
over from the freshly written state, so no committed update is overwritten
without being observed.
"""

import copy
import json
import logging
from typing import Any, Callable, TypeVar

from ..backend import Backend
from .results import Abort, Aborted, Commit, Committed, Conflict, UpdateOutcome

logger = logging.getLogger(__name__)

CACHE_EXPIRY_SECONDS = 86400  # 24 hours, refreshed on every write
MAX_ATOMIC_RETRIES = 5

T = TypeVar("T")

Transform = Callable[[Any], Commit | Abort]


def parse_document(raw: str | None, default: T) -> T:
    """Parse a stored JSON document, falling back to a copy of ``default``.

    Missing keys, corrupt JSON and documents of the wrong shape all read as
    the default so a bad write can never wedge a race.
    """
    if raw is None:
        return copy.deepcopy(default)
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding unparseable document, using default")
        return copy.deepcopy(default)
    if default is not None and not isinstance(value, type(default)):
        return copy.deepcopy(default)
    return value


class AtomicUpdater:
    """Runs transforms against one key with WATCH/MULTI/EXEC semantics."""

    def __init__(
        self,
        backend: Backend,
        ttl_seconds: int = CACHE_EXPIRY_SECONDS,
        max_retries: int = MAX_ATOMIC_RETRIES,
    ):
        """Initialize the updater.

        Args:
            backend: Backend handle shared by all stores.
            ttl_seconds: Expiry applied to the document on every commit.
            max_retries: Default attempt budget per update.
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.max_retries = max_retries

    async def update(
        self,
        key: str,
        default: Any,
        transform: Transform,
        max_retries: int | None = None,
        operation: str = "atomic_update",
    ) -> UpdateOutcome:
        """Apply ``transform`` to the document at ``key``.

        Args:
            key: Backend key of the document.
            default: Value used when the key is absent. Never mutated.
            transform: Called with the current document on every attempt.
                Returns ``Commit(data, result)`` to write or
                ``Abort(result)`` to leave the document alone. It must not
                have side effects beyond building its return value, since it
                may run several times.
            max_retries: Attempt budget, defaults to the updater's setting.
            operation: Name used in retry log messages.

        Returns:
            ``Committed``, ``Aborted`` or ``Conflict`` once the budget is spent.
        """
        attempts = max_retries if max_retries is not None else self.max_retries

        for attempt in range(1, attempts + 1):
            async with self.backend.watch(key) as watched:
                current = parse_document(await watched.get(), default)
                decision = transform(current)

                if isinstance(decision, Abort):
                    return Aborted(result=decision.result, attempts=attempt)

                if await watched.commit(json.dumps(decision.data), ex=self.ttl_seconds):
                    return Committed(
                        data=decision.data, result=decision.result, attempts=attempt
                    )

            logger.warning(
                f"{operation}: retry due to concurrent modification of {key} "
                f"(attempt {attempt}/{attempts})"
            )

        logger.warning(f"{operation}: giving up on {key} after {attempts} attempts")
        return Conflict(key=key, attempts=attempts)
