"""CLI entry point for racesync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .backend import create_backend
from .config import load_config
from .sync.engine import SyncEngine
from .sync.results import SyncError


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler], force=True)


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the sync API under uvicorn."""
    import uvicorn

    from .api import create_app

    config = load_config(args.config)
    host = args.host or config.server.host
    port = args.port or config.server.port

    print("Starting racesync")
    print(f"Backend: {config.backend.kind}")
    print(f"URL: http://{host}:{port}")

    app = create_app(config)
    verbose = getattr(args, "verbose", False)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
    )
    await server.serve()
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Ping the backend and summarize the configuration."""
    config = load_config(args.config)
    backend = create_backend(config.backend)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "backend": {"kind": config.backend.kind},
        "sync": {
            "max_atomic_retries": config.sync.max_atomic_retries,
            "tombstone_ttl_seconds": config.sync.tombstone_ttl_seconds,
            "max_entries_per_race": config.sync.max_entries_per_race,
            "max_faults_per_race": config.sync.max_faults_per_race,
        },
    }
    if config.backend.kind == "redis":
        status_data["backend"]["url"] = backend.safe_url()

    try:
        status_data["backend"]["reachable"] = await backend.ping()
    except Exception as e:
        status_data["backend"]["reachable"] = False
        status_data["backend"]["error"] = str(e)
    finally:
        await backend.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
    else:
        backend_status = status_data["backend"]
        print("racesync Status Check")
        print("=====================")
        print(f"Backend: {backend_status['kind']}")
        if "url" in backend_status:
            print(f"  URL: {backend_status['url']}")
        if backend_status["reachable"]:
            print("  Status: Reachable")
        else:
            print("  Status: Not reachable")
            if "error" in backend_status:
                print(f"  Error: {backend_status['error']}")
        print()
        print("Sync:")
        for name, value in status_data["sync"].items():
            print(f"  {name}: {value}")

    return 0 if status_data["backend"]["reachable"] else 1


async def cmd_races_list(args: argparse.Namespace) -> int:
    """List races with entry and device counts."""
    config = load_config(args.config)
    engine = SyncEngine(create_backend(config.backend), config.sync)

    try:
        races = await engine.races.list_races()
    finally:
        await engine.close()

    if args.json:
        print(json.dumps([race.to_dict() for race in races], indent=2))
        return 0

    if not races:
        print("No races found")
        return 0

    print(f"{'RACE':<30} {'ENTRIES':>8} {'DEVICES':>8}  LAST UPDATED")
    for race in races:
        updated = (
            datetime.fromtimestamp(race.last_updated / 1000).isoformat(timespec="seconds")
            if race.last_updated
            else "-"
        )
        print(f"{race.race_id:<30} {race.entry_count:>8} {race.device_count:>8}  {updated}")
    return 0


async def cmd_races_delete(args: argparse.Namespace) -> int:
    """Delete a race and leave a tombstone for polling devices."""
    config = load_config(args.config)
    engine = SyncEngine(create_backend(config.backend), config.sync)

    try:
        deleted = await engine.races.delete_race(args.race_id)
    except SyncError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        await engine.close()

    if not deleted:
        print(f"Race not found: {args.race_id}", file=sys.stderr)
        return 1

    print(f"Deleted race {args.race_id.lower()}")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="racesync",
        description="Multi-device race timing sync service",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the sync API")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: server.port from config)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host from config)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check backend connectivity")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Race admin commands
    races_parser = subparsers.add_parser("races", help="Manage races")
    races_subparsers = races_parser.add_subparsers(dest="races_command", help="Race commands")

    races_list = races_subparsers.add_parser("list", help="List races")
    races_list.add_argument(
        "--json",
        action="store_true",
        help="Output races as JSON",
    )
    races_list.set_defaults(func=cmd_races_list)

    races_delete = races_subparsers.add_parser("delete", help="Delete a race")
    races_delete.add_argument("race_id", help="Race identifier")
    races_delete.set_defaults(func=cmd_races_delete)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, getattr(args, "json", False))

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "races" and not args.races_command:
        races_parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
