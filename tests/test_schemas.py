"""Tests for request payload validation and sanitization."""

import pytest

from racesync.schemas import (
    EntryIn,
    FaultIn,
    FaultPostBody,
    Invalid,
    SyncPostBody,
    Valid,
    build_entry,
    build_fault,
    device_identity,
    require,
    sanitize_string,
    sanitize_version_history,
    validate,
)
from racesync.sync.results import ValidationError


def entry_payload(**overrides):
    payload = {
        "id": "e1",
        "bib": "42",
        "point": "F",
        "timestamp": "2024-01-15T10:30:00.000Z",
    }
    payload.update(overrides)
    return payload


def fault_payload(**overrides):
    payload = {
        "id": "f1",
        "bib": "42",
        "run": 1,
        "gateNumber": 4,
        "faultType": "MG",
        "timestamp": "2024-01-15T10:31:00.000Z",
        "gateRange": [1, 10],
    }
    payload.update(overrides)
    return payload


class TestSanitizeString:
    def test_strips_markup_and_control_characters(self):
        assert sanitize_string("<b>Tom & Jerry</b>\x00", 100) == "bTom  Jerry/b"

    def test_truncates_before_stripping(self):
        assert sanitize_string("abc<def", 4) == "abc"

    def test_non_strings_become_empty(self):
        assert sanitize_string(None, 10) == ""
        assert sanitize_string(42, 10) == ""


class TestValidate:
    def test_valid(self):
        result = validate(EntryIn, entry_payload())

        assert isinstance(result, Valid)
        assert result.value.point == "F"

    def test_invalid_reports_field(self):
        result = validate(EntryIn, entry_payload(point="X"))

        assert isinstance(result, Invalid)
        assert result.reason.startswith("point")

    def test_require_raises(self):
        with pytest.raises(ValidationError, match="^Invalid entry format: "):
            require(validate(EntryIn, {}), "Invalid entry format")

    def test_require_unwraps(self):
        assert require(validate(EntryIn, entry_payload())).id == "e1"


class TestEntryIn:
    """Tests for entry payload rules."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"point": "M"},
            {"timestamp": "yesterday"},
            {"id": 0},
            {"id": ""},
            {"run": 3},
            {"bib": "12345678901"},
            {"status": "lost"},
        ],
    )
    def test_rejects(self, overrides):
        assert isinstance(validate(EntryIn, entry_payload(**overrides)), Invalid)

    def test_numeric_id(self):
        assert require(validate(EntryIn, entry_payload(id=17))).id == 17

    def test_accepts_camel_case(self):
        payload = entry_payload(
            gpsCoords={"latitude": 47.1, "longitude": 11.2, "accuracy": 5},
            timeSource="gps",
            run=2,
        )

        entry = require(validate(EntryIn, payload))

        assert entry.gps_coords.latitude == 47.1
        assert entry.time_source == "gps"
        assert entry.run == 2

    def test_body_requires_entry(self):
        assert isinstance(validate(SyncPostBody, {"deviceId": "dev-a"}), Invalid)


class TestBuildEntry:
    def test_builds_sanitized_entry_without_photo(self):
        payload = require(validate(EntryIn, entry_payload(id=17, bib="<9>", photo="aGk=")))
        device_id, device_name = device_identity("dev-a", "Finish <Line>")

        entry = build_entry(payload, device_id, device_name)

        assert entry.id == "17"
        assert entry.bib == "9"
        assert entry.status == "ok"
        assert entry.photo is None
        assert entry.device_name == "Finish Line"

    def test_device_identity_limits(self):
        device_id, device_name = device_identity("d" * 80, None)

        assert len(device_id) == 50
        assert device_name == ""


class TestFaultPayloads:
    """Tests for fault payload rules and building."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"bib": ""},
            {"gateNumber": 0},
            {"faultType": "XX"},
            {"gateRange": [1]},
            {"run": 3},
        ],
    )
    def test_rejects(self, overrides):
        assert isinstance(validate(FaultIn, fault_payload(**overrides)), Invalid)

    def test_body_ignores_bad_gate_metadata(self):
        body = require(
            validate(
                FaultPostBody,
                {"fault": fault_payload(), "gateRange": ["a", None], "firstGateColor": "green"},
            )
        )

        assert body.gate_range == ["a", None]
        assert body.first_gate_color == "green"

    def test_build_fault(self):
        payload = require(
            validate(
                FaultIn,
                fault_payload(notes="Skier <missed> gate", notesSource="manual", currentVersion=3),
            )
        )

        fault = build_fault(payload, "judge-1", "Gate Judge")

        assert fault.id == "f1"
        assert fault.gate_number == 4
        assert fault.gate_range == [1, 10]
        assert fault.notes == "Skier missed gate"
        assert fault.current_version == 3
        assert fault.device_id == "judge-1"
        assert fault.marked_for_deletion is False


class TestSanitizeVersionHistory:
    def test_keeps_most_recent_records(self):
        history = [{"version": i} for i in range(1, 131)]

        sanitized = sanitize_version_history(history)

        assert len(sanitized) == 100
        assert sanitized[0]["version"] == 31
        assert sanitized[-1]["version"] == 130

    def test_sanitizes_nested_values(self):
        history = [
            "not a record",
            {
                "version": 2,
                "editedBy": "<script>",
                "data": {"bib": "4&2", "gateRange": [1, 2], "run": 1},
                "tags": ["x"],
            },
        ]

        assert sanitize_version_history(history) == [
            {"version": 2, "editedBy": "script", "data": {"bib": "42", "run": 1}}
        ]

    def test_empty(self):
        assert sanitize_version_history(None) == []
