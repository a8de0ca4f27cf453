"""Versioned fault store.

Faults change over time: judges edit them (version bump), flag them for
deletion, and the chief judge approves or rejects the deletion. Every
non-terminal transition arrives through ``add``; only ``remove`` deletes.
"""

import logging
from dataclasses import replace
from typing import Any

from .duplicates import same_record
from .keys import deleted_faults_key, faults_key, normalize_race_id
from .models import MAX_VERSION_HISTORY, Fault
from .records import RecordStore
from .results import Abort, AddResult, Commit, LimitExceededError

logger = logging.getLogger(__name__)

MAX_FAULTS_PER_RACE = 5_000


def supersedes(incoming: dict[str, Any], stored: dict[str, Any]) -> bool:
    """Whether ``incoming`` is a real state change over ``stored``.

    True for a strictly higher version or a flip of the deletion flag.
    """
    incoming_version = incoming.get("currentVersion") or 1
    stored_version = stored.get("currentVersion") or 1
    if incoming_version > stored_version:
        return True
    return bool(incoming.get("markedForDeletion")) != bool(stored.get("markedForDeletion"))


class VersionedFaultStore(RecordStore):
    """All faults of a race in one CAS-protected document."""

    collection = "faults"
    max_records = MAX_FAULTS_PER_RACE

    def document_key(self, race_id: str) -> str:
        return faults_key(race_id)

    def tombstone_key(self, race_id: str) -> str:
        return deleted_faults_key(race_id)

    async def add(self, race_id: str, fault: Fault) -> AddResult:
        """Insert a new fault or apply a newer version of an existing one.

        A fault with the same id and device replaces the stored one only when
        its version is strictly higher or its deletion flag differs; anything
        else is reported as a duplicate and nothing is written.

        Raises:
            LimitExceededError: If the race already holds the maximum faults.
            ConflictError: If the CAS retry budget ran out.
        """
        race_id = normalize_race_id(race_id)
        if fault.synced_at is None:
            fault = replace(fault, synced_at=self._clock_ms())
        if len(fault.version_history) > MAX_VERSION_HISTORY:
            fault = replace(fault, version_history=fault.version_history[-MAX_VERSION_HISTORY:])
        candidate = fault.to_dict()

        def transform(document: dict[str, Any]):
            faults = self.records_of(document)

            if len(faults) >= self.max_records:
                return Abort(result=None)

            index = next(
                (
                    i for i, stored in enumerate(faults)
                    if same_record(stored, candidate["id"], candidate["deviceId"])
                ),
                None,
            )

            if index is None:
                faults.append(candidate)
            elif supersedes(candidate, faults[index]):
                faults[index] = candidate
            else:
                return Abort(result=AddResult(document=document, is_duplicate=True))

            document["lastUpdated"] = self._clock_ms()
            return Commit(data=document, result=AddResult(document=document))

        outcome = await self.updater.update(
            self.document_key(race_id),
            self.empty_document(),
            transform,
            operation="add_fault",
        )
        self._raise_on_conflict(outcome, "add_fault", race_id)

        if outcome.result is None:
            raise LimitExceededError(
                f"Maximum faults limit ({self.max_records}) reached for this race"
            )
        return outcome.result

    async def get(self, race_id: str) -> dict[str, Any]:
        document = await self.get_document(race_id)
        return {"faults": document["faults"], "lastUpdated": document.get("lastUpdated")}
