"""Timed entries store.

Entries are immutable once written; devices only ever add or delete them.
"""

import logging
from dataclasses import replace
from typing import Any

from .atomic import parse_document
from .duplicates import detect_duplicates
from .keys import deleted_entries_key, entries_key, normalize_race_id
from .models import Entry
from .records import RecordStore
from .results import Abort, AddResult, Commit, LimitExceededError

logger = logging.getLogger(__name__)

MAX_ENTRIES_PER_RACE = 10_000
DEFAULT_PAGE_LIMIT = 500
MAX_PAGE_LIMIT = 2000


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class EntryStore(RecordStore):
    """All entries of a race in one CAS-protected document."""

    collection = "entries"
    max_records = MAX_ENTRIES_PER_RACE

    def __init__(
        self,
        *args: Any,
        default_page_limit: int = DEFAULT_PAGE_LIMIT,
        max_page_limit: int = MAX_PAGE_LIMIT,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.default_page_limit = default_page_limit
        self.max_page_limit = max_page_limit

    def document_key(self, race_id: str) -> str:
        return entries_key(race_id)

    def tombstone_key(self, race_id: str) -> str:
        return deleted_entries_key(race_id)

    async def add(self, race_id: str, entry: Entry) -> AddResult:
        """Append an entry unless this device already submitted it.

        Args:
            race_id: Race identifier (normalized here).
            entry: Validated entry; ``synced_at`` is stamped if unset.

        Returns:
            AddResult with ``is_duplicate`` set for a resubmission and
            ``cross_device_duplicate`` describing another device's entry for
            the same bib, point and run.

        Raises:
            LimitExceededError: If the race already holds the maximum entries.
            ConflictError: If the CAS retry budget ran out.
        """
        race_id = normalize_race_id(race_id)
        if entry.synced_at is None:
            entry = replace(entry, synced_at=self._clock_ms())
        candidate = entry.to_dict()

        def transform(document: dict[str, Any]):
            entries = self.records_of(document)

            if len(entries) >= self.max_records:
                return Abort(result=None)

            check = detect_duplicates(entries, candidate)
            if check.exact_duplicate:
                return Abort(
                    result=AddResult(
                        document=document,
                        is_duplicate=True,
                        cross_device_duplicate=check.cross_device_duplicate,
                    )
                )

            entries.append(candidate)
            document["lastUpdated"] = self._clock_ms()
            return Commit(
                data=document,
                result=AddResult(
                    document=document,
                    cross_device_duplicate=check.cross_device_duplicate,
                ),
            )

        outcome = await self.updater.update(
            self.document_key(race_id),
            self.empty_document(),
            transform,
            operation="add_entry",
        )
        self._raise_on_conflict(outcome, "add_entry", race_id)

        if outcome.result is None:
            raise LimitExceededError(
                f"Maximum entries limit ({self.max_records}) reached for this race"
            )

        if outcome.result.cross_device_duplicate:
            dup = outcome.result.cross_device_duplicate
            logger.info(
                f"Cross-device duplicate in race {race_id}: bib {dup.bib} "
                f"point {dup.point} run {dup.run} already recorded by {dup.device_name}"
            )
        return outcome.result

    async def get(
        self, race_id: str, offset: int | str | None = None, limit: int | str | None = None
    ) -> dict[str, Any]:
        """Entries of a race, optionally paginated.

        Pagination only applies when ``limit`` is given. A non-numeric limit
        reads as the default page size, the limit is clamped to
        1..max_page_limit and a negative offset reads as 0.
        """
        document = await self.get_document(race_id)
        entries = document["entries"]
        total = len(entries)

        result: dict[str, Any] = {
            "entries": entries,
            "lastUpdated": document.get("lastUpdated"),
            "total": total,
        }

        if limit is not None:
            offset = max(0, _as_int(offset) or 0)
            limit = min(self.max_page_limit, max(1, _as_int(limit) or self.default_page_limit))
            result["entries"] = entries[offset:offset + limit]
            result["pagination"] = {
                "offset": offset,
                "limit": limit,
                "total": total,
                "hasMore": offset + limit < total,
            }

        return result

    async def exists(self, race_id: str) -> tuple[bool, int]:
        """Whether the race has an entries document, and how many entries it holds."""
        race_id = normalize_race_id(race_id)
        raw = await self.updater.backend.get(self.document_key(race_id))
        if raw is None:
            return False, 0
        document = parse_document(raw, self.empty_document())
        return True, len(self.records_of(document))
