"""FastAPI request layer for the sync engine."""

import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..backend import Backend, BackendError, create_backend
from ..config import Config, RateLimitConfig
from ..schemas import (
    FaultDeleteBody,
    FaultPostBody,
    SyncDeleteBody,
    SyncPostBody,
    build_entry,
    build_fault,
    device_identity,
    require,
    sanitize_string,
    validate,
)
from ..sync.engine import SyncEngine
from ..sync.keys import normalize_race_id
from ..sync.models import GateAssignment
from ..sync.rate_limit import RateLimitPolicy, RateLimitResult
from ..sync.results import SyncError, ValidationError, error_envelope

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Database connection failed. Please try again."


class RateLimitedError(SyncError):
    status_code = 429

    def __init__(self, result: RateLimitResult):
        super().__init__("Too many requests. Please try again later.")
        self.result = result


def _policy(limits: RateLimitConfig) -> RateLimitPolicy:
    return RateLimitPolicy(
        window=limits.window,
        max_requests=limits.max_requests,
        max_posts=limits.max_posts,
    )


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def _rate_limit_headers(request: Request) -> dict[str, str]:
    result: RateLimitResult | None = getattr(request.state, "rate_limit", None)
    if result is None:
        return {}
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset),
    }


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _gate_assignment(
    device_name: str, gate_range: Any, is_ready: bool, first_gate_color: Any
) -> GateAssignment | None:
    """Parse a [start, end] pair into an assignment, or None if it is not numeric."""
    if not isinstance(gate_range, (list, tuple)) or len(gate_range) != 2:
        return None
    start, end = _as_int(gate_range[0]), _as_int(gate_range[1])
    if start is None or end is None:
        return None
    return GateAssignment(
        gate_start=start,
        gate_end=end,
        device_name=device_name,
        is_ready=is_ready,
        first_gate_color=first_gate_color if isinstance(first_gate_color, str) else "red",
    )


def create_app(config: Config, backend: Backend | None = None) -> FastAPI:
    """Create the FastAPI sync application.

    Args:
        config: Application configuration.
        backend: Backend handle to use. When omitted one is built from
            ``config.backend`` and closed on shutdown.

    Returns:
        Configured FastAPI application.
    """
    owns_backend = backend is None
    if backend is None:
        backend = create_backend(config.backend)
    engine = SyncEngine(backend, config.sync)

    sync_policy = _policy(config.rate_limits.sync)
    faults_policy = _policy(config.rate_limits.faults)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_backend:
            await engine.close()

    app = FastAPI(
        title="racesync",
        description="Multi-device race timing sync service",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store references for route handlers
    app.state.config = config
    app.state.engine = engine

    # ==================== Error handlers ====================

    @app.exception_handler(SyncError)
    async def handle_sync_error(request: Request, exc: SyncError):
        headers = _rate_limit_headers(request)
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(max(0, exc.result.reset - int(datetime.now().timestamp())))
        return JSONResponse(
            status_code=exc.status_code,
            content=error_envelope(exc),
            headers=headers,
        )

    async def handle_backend_error(request: Request, exc: Exception):
        logger.error(f"Backend unavailable during {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content=error_envelope(UNAVAILABLE_MESSAGE),
            headers=_rate_limit_headers(request),
        )

    for error_type in (BackendError, RedisConnectionError, RedisTimeoutError):
        app.add_exception_handler(error_type, handle_backend_error)

    # ==================== Shared steps ====================

    async def admit(
        request: Request, response: Response, prefix: str, policy: RateLimitPolicy
    ) -> str:
        """Validate the race id, fail fast on an unhealthy backend, count the request."""
        race_id = normalize_race_id(request.query_params.get("raceId"))

        if not backend.healthy():
            raise BackendError("Backend marked unhealthy after a recent connection error")

        result = await engine.rate_limiter.check_request(
            prefix, request.method, _client_ip(request), policy
        )
        request.state.rate_limit = result
        response.headers.update(_rate_limit_headers(request))
        if not result.allowed:
            raise RateLimitedError(result)
        return race_id

    async def deleted_race(race_id: str) -> dict[str, Any] | None:
        tombstone = await engine.races.get_tombstone(race_id)
        if tombstone is None:
            return None
        return {"success": True, "data": tombstone}

    # ==================== Entries ====================

    @app.get("/api/v1/sync")
    async def get_entries(request: Request, response: Response) -> dict[str, Any]:
        """Entries, deletions and race stats for a polling device."""
        race_id = await admit(request, response, "sync", sync_policy)
        params = request.query_params

        if tombstone := await deleted_race(race_id):
            return tombstone

        if params.get("checkOnly") == "true":
            exists, entry_count = await engine.entries.exists(race_id)
            return {"success": True, "data": {"exists": exists, "entryCount": entry_count}}

        device_id, device_name = device_identity(params.get("deviceId"), params.get("deviceName"))
        if device_id:
            await engine.heartbeat.touch(race_id, device_id, device_name)

        data = await engine.entries.get(race_id, params.get("offset"), params.get("limit"))
        pagination = data.pop("pagination", None)
        data["deviceCount"] = await engine.heartbeat.active_count(race_id)
        data["highestBib"] = await engine.highest_bib(race_id)
        data["deletedIds"] = await engine.entries.deleted_ids(race_id)
        if pagination:
            data["pagination"] = pagination

        return {"success": True, "data": data}

    @app.post("/api/v1/sync")
    async def post_entry(request: Request, response: Response) -> dict[str, Any]:
        """Add one entry from a device."""
        race_id = await admit(request, response, "sync", sync_policy)

        if tombstone := await deleted_race(race_id):
            return tombstone

        body = await _json_body(request)
        if not body.get("entry"):
            raise ValidationError("entry is required")
        payload = require(validate(SyncPostBody, body), "Invalid entry format")

        device_id, device_name = device_identity(payload.device_id, payload.device_name)
        entry = build_entry(payload.entry, device_id, device_name)

        photo = payload.entry.photo
        photo_skipped = False
        photo_rate_limited = False
        if photo:
            if len(photo) > config.sync.max_photo_length:
                photo_skipped = True
            else:
                photo_limit = await engine.rate_limiter.check_photo(
                    race_id,
                    device_id,
                    config.rate_limits.photo.window,
                    config.rate_limits.photo.max,
                )
                if photo_limit.allowed:
                    entry = replace(entry, photo=photo)
                else:
                    photo_rate_limited = True
                    logger.info(
                        f"Photo rate limited: race={race_id} device={device_id} "
                        f"count={photo_limit.count}/{photo_limit.limit}"
                    )

        result = await engine.entries.add(race_id, entry)

        await engine.heartbeat.touch(race_id, device_id, device_name)
        bib_recorded = await engine.record_bib(race_id, entry.bib)

        envelope = result.to_envelope()
        envelope["data"] = {
            "entries": result.document["entries"],
            "lastUpdated": result.document.get("lastUpdated"),
            "deviceCount": await engine.heartbeat.active_count(race_id),
            "highestBib": await engine.highest_bib(race_id),
            "photoSkipped": photo_skipped,
            "photoRateLimited": photo_rate_limited,
            "highestBibUpdateFailed": not bib_recorded,
        }
        return envelope

    @app.delete("/api/v1/sync")
    async def delete_entry(request: Request, response: Response) -> dict[str, Any]:
        """Delete an entry, scoped to the requesting device when one is given."""
        race_id = await admit(request, response, "sync", sync_policy)

        body = await _json_body(request)
        if not body.get("entryId"):
            raise ValidationError("entryId is required")
        payload = require(validate(SyncDeleteBody, body), "Invalid request")

        device_id, device_name = device_identity(payload.device_id, payload.device_name)
        result = await engine.entries.remove(race_id, payload.entry_id, device_id)

        if device_id:
            await engine.heartbeat.touch(race_id, device_id, device_name)

        envelope = result.to_envelope()
        envelope["data"]["entryId"] = str(payload.entry_id)
        envelope["data"]["deviceCount"] = await engine.heartbeat.active_count(race_id)
        return envelope

    # ==================== Faults ====================

    @app.get("/api/v1/faults")
    async def get_faults(request: Request, response: Response) -> dict[str, Any]:
        """Faults, deletions and gate assignments for a polling judge."""
        race_id = await admit(request, response, "faults", faults_policy)
        params = request.query_params

        data = await engine.faults.get(race_id)
        data["deletedIds"] = await engine.faults.deleted_ids(race_id)

        device_id, device_name = device_identity(params.get("deviceId"), params.get("deviceName"))
        if device_id and params.get("gateStart") and params.get("gateEnd"):
            assignment = _gate_assignment(
                device_name,
                [params.get("gateStart"), params.get("gateEnd")],
                params.get("isReady") == "true",
                params.get("firstGateColor"),
            )
            if assignment is not None:
                await engine.gates.upsert(race_id, device_id, assignment)

        data["gateAssignments"] = await engine.gates.list(race_id)
        return {"success": True, "data": data}

    @app.post("/api/v1/faults")
    async def post_fault(request: Request, response: Response) -> dict[str, Any]:
        """Add a fault or a newer version of one."""
        race_id = await admit(request, response, "faults", faults_policy)

        body = await _json_body(request)
        if not body.get("fault"):
            raise ValidationError("fault is required")
        payload = require(validate(FaultPostBody, body), "Invalid fault")

        device_id, device_name = device_identity(payload.device_id, payload.device_name)
        fault = build_fault(payload.fault, device_id, device_name)
        result = await engine.faults.add(race_id, fault)

        if device_id and payload.gate_range is not None:
            assignment = _gate_assignment(
                device_name,
                payload.gate_range,
                payload.is_ready is True,
                payload.first_gate_color,
            )
            if assignment is not None:
                await engine.gates.upsert(race_id, device_id, assignment)

        envelope = result.to_envelope()
        envelope["data"] = {
            "faults": result.document["faults"],
            "lastUpdated": result.document.get("lastUpdated"),
            "gateAssignments": await engine.gates.list(race_id),
        }
        return envelope

    @app.delete("/api/v1/faults")
    async def delete_fault(request: Request, response: Response) -> dict[str, Any]:
        """Hard-delete a fault after chief judge approval."""
        race_id = await admit(request, response, "faults", faults_policy)

        body = await _json_body(request)
        if not body.get("faultId"):
            raise ValidationError("faultId is required")
        payload = require(validate(FaultDeleteBody, body), "Invalid request")

        device_id, device_name = device_identity(payload.device_id, payload.device_name)
        approved_by = sanitize_string(payload.approved_by, 100)
        logger.info(
            f"Fault deletion: race={race_id} fault={payload.fault_id} device={device_id} "
            f"deviceName={device_name} approvedBy={approved_by} ip={_client_ip(request)}"
        )

        result = await engine.faults.remove(race_id, payload.fault_id, device_id)

        envelope = result.to_envelope()
        envelope["data"]["faultId"] = str(payload.fault_id)
        return envelope

    # ==================== Health ====================

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK; the backend status is reported in the body.
        """
        status = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "backend": {"kind": backend.name, "healthy": backend.healthy()},
        }
        try:
            status["backend"]["reachable"] = await backend.ping()
        except (BackendError, RedisConnectionError, RedisTimeoutError) as e:
            status["status"] = "degraded"
            status["backend"]["reachable"] = False
            status["backend"]["error"] = str(e)
        return status

    return app
