"""Shared machinery for per-race record documents.

A document is ``{"<collection>": [...], "lastUpdated": <ms epoch | null>}``
stored at one key per race, mutated only through the AtomicUpdater.
"""

import logging
import time
from typing import Any, Callable

from .atomic import AtomicUpdater, parse_document
from .keys import normalize_race_id
from .results import Abort, Commit, ConflictError, Conflict, RemoveResult, UpdateOutcome
from .tombstones import TombstoneTracker, composite_id

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RecordStore:
    """Base class for EntryStore and VersionedFaultStore."""

    collection = "records"
    max_records = 0

    def __init__(
        self,
        updater: AtomicUpdater,
        tombstones: TombstoneTracker,
        max_records: int | None = None,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.updater = updater
        self.tombstones = tombstones
        if max_records is not None:
            self.max_records = max_records
        self._clock_ms = clock_ms

    # ---- key layout, provided by subclasses ----

    def document_key(self, race_id: str) -> str:
        raise NotImplementedError

    def tombstone_key(self, race_id: str) -> str:
        raise NotImplementedError

    # ---- helpers ----

    def empty_document(self) -> dict[str, Any]:
        return {self.collection: [], "lastUpdated": None}

    def records_of(self, document: dict[str, Any]) -> list[dict[str, Any]]:
        """The record list of a document, repairing a malformed one in place."""
        records = document.get(self.collection)
        if not isinstance(records, list):
            records = []
            document[self.collection] = records
        return records

    def _raise_on_conflict(self, outcome: UpdateOutcome, operation: str, race_id: str) -> None:
        if isinstance(outcome, Conflict):
            logger.warning(
                f"{operation} for race {race_id} exhausted {outcome.attempts} attempts"
            )
            raise ConflictError()

    # ---- reads ----

    async def get_document(self, race_id: str) -> dict[str, Any]:
        """Current document for a race (empty document when none exists)."""
        race_id = normalize_race_id(race_id)
        raw = await self.updater.backend.get(self.document_key(race_id))
        document = parse_document(raw, self.empty_document())
        self.records_of(document)
        return document

    async def deleted_ids(self, race_id: str) -> list[str]:
        """Tombstoned composite ids for this record class."""
        race_id = normalize_race_id(race_id)
        return await self.tombstones.list_deleted(self.tombstone_key(race_id))

    # ---- delete ----

    async def remove(
        self, race_id: str, record_id: str | int, device_id: str | None = None
    ) -> RemoveResult:
        """Delete records with ``record_id``, scoped to ``device_id`` when given.

        Deletes are idempotent: the tombstone is recorded whether or not the
        record was still present, so every polling device converges.

        Raises:
            ConflictError: If the CAS retry budget ran out.
        """
        race_id = normalize_race_id(race_id)
        record_id = str(record_id)
        device_id = device_id or ""

        def transform(document: dict[str, Any]):
            records = self.records_of(document)

            def matches(record: dict[str, Any]) -> bool:
                if str(record.get("id")) != record_id:
                    return False
                return not device_id or (record.get("deviceId") or "") == device_id

            kept = [r for r in records if not matches(r)]
            if len(kept) == len(records):
                return Abort(result=(False, document))

            document[self.collection] = kept
            document["lastUpdated"] = self._clock_ms()
            return Commit(data=document, result=(True, document))

        outcome = await self.updater.update(
            self.document_key(race_id),
            self.empty_document(),
            transform,
            operation=f"remove_{self.collection}",
        )
        self._raise_on_conflict(outcome, f"remove_{self.collection}", race_id)

        member = composite_id(record_id, device_id)
        await self.tombstones.record_deletion(self.tombstone_key(race_id), member)

        was_removed, document = outcome.result
        if was_removed:
            logger.info(f"Removed {self.collection} {member} from race {race_id}")
        return RemoveResult(was_removed=was_removed, composite_id=member, document=document)
