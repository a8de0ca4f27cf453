"""Tests for the sync HTTP API."""

import asyncio
from contextlib import asynccontextmanager

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from racesync.api import create_app
from racesync.backend import BackendError, MemoryBackend
from racesync.config import BackendConfig, Config, PhotoRateLimitConfig, RateLimitConfig


def entry_body(entry_id="e1", bib="42", point="F", device="dev-a", **entry):
    return {
        "entry": {
            "id": entry_id,
            "bib": bib,
            "point": point,
            "timestamp": "2024-01-15T10:30:00.000Z",
            **entry,
        },
        "deviceId": device,
        "deviceName": f"Timer {device}",
    }


def fault_body(fault_id="f1", device="judge-1", **extra):
    return {
        "fault": {
            "id": fault_id,
            "bib": "42",
            "run": 1,
            "gateNumber": 4,
            "faultType": "MG",
            "timestamp": "2024-01-15T10:31:00.000Z",
            "gateRange": [1, 10],
        },
        "deviceId": device,
        "deviceName": "Gate Judge",
        **extra,
    }


class BrokenReadBackend(MemoryBackend):
    """Counts requests fine but cannot read documents."""

    async def get(self, key):
        raise BackendError("connection reset by peer")


class ContendedBackend(MemoryBackend):
    @asynccontextmanager
    async def watch(self, key):
        async with super().watch(key) as watched:
            self._bump(key)
            yield watched


def make_config(**sync) -> Config:
    config = Config(backend=BackendConfig(kind="memory"))
    for name, value in sync.items():
        setattr(config.sync, name, value)
    return config


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def app(backend):
    return create_app(make_config(), backend=backend)


@pytest.fixture
def client(app):
    return TestClient(app)


class TestSyncEndpoint:
    """Tests for /api/v1/sync."""

    def test_post_then_get(self, client):
        response = client.post("/api/v1/sync", params={"raceId": "Race-1"}, json=entry_body())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["isDuplicate"] is False
        assert body["data"]["entries"][0]["id"] == "e1"
        assert body["data"]["entries"][0]["deviceName"] == "Timer dev-a"
        assert body["data"]["highestBib"] == 42
        assert body["data"]["deviceCount"] == 1
        assert response.headers["X-RateLimit-Limit"] == "30"

        response = client.get("/api/v1/sync", params={"raceId": "race-1"})

        data = response.json()["data"]
        assert [e["id"] for e in data["entries"]] == ["e1"]
        assert data["total"] == 1
        assert data["highestBib"] == 42
        assert data["deletedIds"] == []
        assert "pagination" not in data
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert int(response.headers["X-RateLimit-Remaining"]) == 99

    def test_get_empty_race(self, client):
        data = client.get("/api/v1/sync", params={"raceId": "new"}).json()["data"]

        assert data["entries"] == []
        assert data["lastUpdated"] is None
        assert data["highestBib"] == 0

    def test_get_registers_heartbeat(self, client):
        params = {"raceId": "r", "deviceId": "dev-b", "deviceName": "Start"}

        assert client.get("/api/v1/sync", params=params).json()["data"]["deviceCount"] == 1

    def test_duplicate_submission(self, client):
        client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body())
        body = client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body()).json()

        assert body["success"] is True
        assert body["isDuplicate"] is True
        assert len(body["data"]["entries"]) == 1

    def test_cross_device_duplicate(self, client):
        client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body())
        body = client.post(
            "/api/v1/sync", params={"raceId": "r"}, json=entry_body("e2", device="dev-b")
        ).json()

        assert body["isDuplicate"] is False
        assert body["crossDeviceDuplicate"]["deviceName"] == "Timer dev-a"
        assert len(body["data"]["entries"]) == 2

    @pytest.mark.parametrize("race_id", [None, "", "bad race!", "x" * 51])
    def test_invalid_race_id(self, client, race_id):
        params = {} if race_id is None else {"raceId": race_id}

        response = client.get("/api/v1/sync", params=params)

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_missing_entry(self, client):
        response = client.post("/api/v1/sync", params={"raceId": "r"}, json={"deviceId": "d"})

        assert response.status_code == 400
        assert response.json()["error"] == "entry is required"

    def test_invalid_entry(self, client):
        response = client.post(
            "/api/v1/sync", params={"raceId": "r"}, json=entry_body(point="X")
        )

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid entry format")

    def test_non_json_body(self, client):
        response = client.post(
            "/api/v1/sync",
            params={"raceId": "r"},
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    def test_delete_records_tombstone(self, client):
        client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body())

        response = client.request(
            "DELETE", "/api/v1/sync", params={"raceId": "r"},
            json={"entryId": "e1", "deviceId": "dev-a"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["deleted"] is True
        assert data["entryId"] == "e1"
        data = client.get("/api/v1/sync", params={"raceId": "r"}).json()["data"]
        assert data["entries"] == []
        assert data["deletedIds"] == ["e1:dev-a"]

    def test_delete_absent_entry_is_idempotent(self, client):
        response = client.request(
            "DELETE", "/api/v1/sync", params={"raceId": "r"}, json={"entryId": "nope"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["deleted"] is False

    def test_delete_requires_entry_id(self, client):
        response = client.request("DELETE", "/api/v1/sync", params={"raceId": "r"}, json={})

        assert response.status_code == 400
        assert response.json()["error"] == "entryId is required"

    def test_check_only(self, client):
        assert client.get(
            "/api/v1/sync", params={"raceId": "r", "checkOnly": "true"}
        ).json()["data"] == {"exists": False, "entryCount": 0}

        client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body())

        assert client.get(
            "/api/v1/sync", params={"raceId": "r", "checkOnly": "true"}
        ).json()["data"] == {"exists": True, "entryCount": 1}

    def test_pagination(self, client):
        for i in range(5):
            client.post(
                "/api/v1/sync", params={"raceId": "r"}, json=entry_body(f"e{i}", bib=str(i + 1))
            )

        data = client.get(
            "/api/v1/sync", params={"raceId": "r", "offset": "3", "limit": "10"}
        ).json()["data"]

        assert [e["id"] for e in data["entries"]] == ["e3", "e4"]
        assert data["pagination"] == {"offset": 3, "limit": 10, "total": 5, "hasMore": False}

    def test_deleted_race_short_circuits(self, client, app):
        client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body())
        assert asyncio.run(app.state.engine.races.delete_race("r")) is True

        get_body = client.get("/api/v1/sync", params={"raceId": "r"}).json()
        post_body = client.post(
            "/api/v1/sync", params={"raceId": "r"}, json=entry_body("e2")
        ).json()

        assert get_body["data"]["deleted"] is True
        assert get_body["data"]["message"] == "Race deleted by administrator"
        assert post_body["data"]["deleted"] is True
        assert asyncio.run(app.state.engine.entries.exists("r")) == (False, 0)


class TestPhotos:
    """Tests for photo size and rate handling on entry upload."""

    def test_oversized_photo_is_skipped(self, backend):
        client = TestClient(create_app(make_config(max_photo_length=10), backend=backend))

        body = client.post(
            "/api/v1/sync", params={"raceId": "r"}, json=entry_body(photo="x" * 11)
        ).json()

        assert body["data"]["photoSkipped"] is True
        assert "photo" not in body["data"]["entries"][0]

    def test_photo_is_stored(self, client):
        body = client.post(
            "/api/v1/sync", params={"raceId": "r"}, json=entry_body(photo="aGk=")
        ).json()

        assert body["data"]["photoSkipped"] is False
        assert body["data"]["photoRateLimited"] is False
        assert body["data"]["entries"][0]["photo"] == "aGk="

    def test_photo_rate_limit_keeps_entry(self, backend):
        config = make_config()
        config.rate_limits.photo = PhotoRateLimitConfig(window=300, max=1)
        client = TestClient(create_app(config, backend=backend))

        client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body("e1", photo="aGk="))
        body = client.post(
            "/api/v1/sync", params={"raceId": "r"}, json=entry_body("e2", bib="7", photo="aGk=")
        ).json()

        assert body["data"]["photoRateLimited"] is True
        assert len(body["data"]["entries"]) == 2
        assert "photo" not in body["data"]["entries"][1]


class TestFailureModes:
    """Tests for rate limiting, backend outages and CAS conflicts."""

    def test_write_budget_exhausted(self, backend):
        config = make_config()
        config.rate_limits.sync = RateLimitConfig(window=60, max_requests=100, max_posts=1)
        client = TestClient(create_app(config, backend=backend))

        assert client.post(
            "/api/v1/sync", params={"raceId": "r"}, json=entry_body()
        ).status_code == 200
        response = client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body("e2"))

        assert response.status_code == 429
        assert response.json()["success"] is False
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" in response.headers
        # Reads have their own budget
        assert client.get("/api/v1/sync", params={"raceId": "r"}).status_code == 200

    def test_rate_limiter_fails_closed(self, client, backend):
        backend.fail_with = BackendError("connection refused")

        response = client.get("/api/v1/sync", params={"raceId": "r"})

        assert response.status_code == 429

    def test_backend_outage_returns_503(self):
        client = TestClient(create_app(make_config(), backend=BrokenReadBackend()))

        response = client.get("/api/v1/sync", params={"raceId": "r"})

        assert response.status_code == 503
        assert response.json() == {
            "success": False,
            "error": "Database connection failed. Please try again.",
        }

    def test_exhausted_retries_return_409(self):
        client = TestClient(
            create_app(make_config(max_atomic_retries=2), backend=ContendedBackend())
        )

        response = client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body())

        assert response.status_code == 409
        assert response.json()["success"] is False

    def test_entry_limit(self, backend):
        client = TestClient(create_app(make_config(max_entries_per_race=1), backend=backend))
        client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body())

        response = client.post("/api/v1/sync", params={"raceId": "r"}, json=entry_body("e2"))

        assert response.status_code == 400
        assert "Maximum entries limit" in response.json()["error"]


class TestFaultsEndpoint:
    """Tests for /api/v1/faults."""

    def test_post_then_get(self, client):
        response = client.post(
            "/api/v1/faults",
            params={"raceId": "r"},
            json=fault_body(gateRange=[1, 10], isReady=True, firstGateColor="blue"),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["isDuplicate"] is False
        assert body["data"]["faults"][0]["gateNumber"] == 4
        assert body["data"]["gateAssignments"][0]["firstGateColor"] == "blue"
        assert response.headers["X-RateLimit-Limit"] == "50"

        data = client.get("/api/v1/faults", params={"raceId": "r"}).json()["data"]
        assert [f["id"] for f in data["faults"]] == ["f1"]
        assert data["deletedIds"] == []

    def test_same_version_is_duplicate(self, client):
        client.post("/api/v1/faults", params={"raceId": "r"}, json=fault_body())

        body = client.post("/api/v1/faults", params={"raceId": "r"}, json=fault_body()).json()

        assert body["isDuplicate"] is True

    def test_get_upserts_gate_assignment(self, client):
        params = {
            "raceId": "r",
            "deviceId": "judge-2",
            "deviceName": "Lower Gates",
            "gateStart": "11",
            "gateEnd": "20",
            "isReady": "true",
        }

        assignments = client.get("/api/v1/faults", params=params).json()["data"]["gateAssignments"]

        assert assignments == [
            {
                "deviceId": "judge-2",
                "deviceName": "Lower Gates",
                "gateStart": 11,
                "gateEnd": 20,
                "lastSeen": assignments[0]["lastSeen"],
                "isReady": True,
                "firstGateColor": "red",
            }
        ]

    def test_invalid_gate_metadata_is_ignored(self, client):
        response = client.post(
            "/api/v1/faults",
            params={"raceId": "r"},
            json=fault_body(gateRange=["a", "b"], firstGateColor=7),
        )

        assert response.status_code == 200
        assert response.json()["data"]["gateAssignments"] == []

    def test_invalid_fault(self, client):
        body = fault_body()
        body["fault"]["faultType"] = "XX"

        response = client.post("/api/v1/faults", params={"raceId": "r"}, json=body)

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid fault")

    def test_missing_fault(self, client):
        response = client.post("/api/v1/faults", params={"raceId": "r"}, json={})

        assert response.status_code == 400
        assert response.json()["error"] == "fault is required"

    def test_delete(self, client):
        client.post("/api/v1/faults", params={"raceId": "r"}, json=fault_body())

        response = client.request(
            "DELETE", "/api/v1/faults", params={"raceId": "r"},
            json={"faultId": "f1", "deviceId": "judge-1", "approvedBy": "Chief"},
        )

        assert response.json()["data"] == {
            "deleted": True,
            "compositeId": "f1:judge-1",
            "faultId": "f1",
        }
        data = client.get("/api/v1/faults", params={"raceId": "r"}).json()["data"]
        assert data["faults"] == []
        assert data["deletedIds"] == ["f1:judge-1"]

    def test_fault_limit(self, backend):
        client = TestClient(create_app(make_config(max_faults_per_race=1), backend=backend))
        client.post("/api/v1/faults", params={"raceId": "r"}, json=fault_body())

        response = client.post("/api/v1/faults", params={"raceId": "r"}, json=fault_body("f2"))

        assert response.status_code == 400
        assert "Maximum faults limit" in response.json()["error"]


class TestHealth:
    def test_healthy(self, client):
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["backend"] == {"kind": "memory", "healthy": True, "reachable": True}

    def test_degraded(self, client, backend):
        backend.fail_with = BackendError("down")

        body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["backend"]["reachable"] is False
        assert body["backend"]["error"] == "down"
