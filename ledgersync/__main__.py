"""CLI entry point for ledgersync."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import load_config
from .errors import LedgerSyncError
from .session import LedgerSession
from .store.models import EntityType


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def setup_logging(
    verbose: bool = False, log_level: str | None = None, json_output: bool = False
) -> None:
    """Configure root logging for the CLI.

    An explicit ``log_level`` wins over ``verbose``. Per-request httpx lines
    are only shown at debug level.
    """
    level = LOG_LEVELS.get(log_level or "", logging.DEBUG if verbose else logging.INFO)

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    logging.basicConfig(level=level, handlers=[handler])

    if level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _open_session(args: argparse.Namespace) -> LedgerSession:
    session = LedgerSession(load_config(args.config))
    session.open()
    return session


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_status(args: argparse.Namespace) -> int:
    """Show local replica and sync status."""
    session = _open_session(args)
    try:
        connected = await session.transport.check_connection(session.credentials)
        session.driver.set_online(connected)
        metadata = session.store.get_metadata()
        state = session.store.get_sync_state()

        status_data = {
            "timestamp": datetime.now().isoformat(),
            "device_id": metadata.device_id,
            "user_id": metadata.user_id,
            "remote": {
                "base_url": session.config.remote.base_url,
                "reachable": connected,
            },
            "records": session.store.count(),
            "sync": session.get_sync_status(),
            "queue": session.queue.get_queue_status(),
            "last_error": state.last_error,
        }

        if args.json_output:
            _print_json(status_data)
            return 0

        print("ledgersync Status")
        print("=================")
        print(f"Device: {status_data['device_id']}")
        print(f"User: {status_data['user_id'] or '(none)'}")
        print()
        print(f"Remote ({session.config.remote.base_url}):")
        print(f"  Status: {'Reachable' if connected else 'Not reachable'}")
        print()
        print("Local replica:")
        print(f"  Records: {status_data['records']}")
        last_sync = status_data["sync"]["last_sync_timestamp"]
        if last_sync:
            print(f"  Last sync: {datetime.fromtimestamp(last_sync / 1000).isoformat()}")
        else:
            print("  Last sync: never")
        if state.last_error:
            print(f"  Last error: {state.last_error}")
        print()
        queue = status_data["queue"]
        print("Queue:")
        print(f"  Outstanding: {queue['outstanding']}")
        for status, count in queue["by_status"].items():
            print(f"    {status}: {count}")
        print(f"  Terminal failures: {queue['terminal_failures']}")
        if queue["outstanding"]:
            print(f"  Estimated sync time: {queue['estimated_sync_seconds']:.1f}s")
        return 0
    finally:
        await session.close()


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync cycle."""
    session = _open_session(args)
    try:
        result = await session.force_sync()
    finally:
        await session.close()

    if args.json_output:
        _print_json(result.to_dict())
    else:
        print(f"Sync {'succeeded' if result.success else 'failed'}")
        print(f"  Pushed: {result.synced_count}")
        print(f"  Failed: {result.failed_count}")
        print(f"  Pulled: {result.pulled_count}")
        print(f"  Merged: {result.merged_count}")
        print(f"  Conflicts: {len(result.conflicts)}")
        for error in result.errors:
            print(f"  Error: {error}")
    return 0 if result.success else 1


async def cmd_run(args: argparse.Namespace) -> int:
    """Run background sync until interrupted."""
    config = load_config(args.config)
    session = LedgerSession(config)

    print(f"Starting ledgersync for {config.remote.base_url}")
    print(f"Database: {config.storage.db_path}")

    server = None
    if config.api.enabled:
        import uvicorn

        from .api import create_app

        session.open()
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(session),
                host=config.api.host,
                port=config.api.port,
                log_level="info" if args.verbose else "warning",
            )
        )
        print(f"Status API: http://{config.api.host}:{config.api.port}")

    session.start()
    try:
        if server is not None:
            await server.serve()
        else:
            await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    finally:
        await session.close()
    return 0


async def cmd_api(args: argparse.Namespace) -> int:
    """Serve the status API without background sync."""
    import uvicorn

    from .api import create_app

    session = _open_session(args)
    host = args.host or session.config.api.host
    port = args.port or session.config.api.port

    print("Starting ledgersync status API")
    print(f"URL: http://{host}:{port}")

    try:
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(session),
                host=host,
                port=port,
                log_level="info" if args.verbose else "warning",
            )
        )
        await server.serve()
    finally:
        await session.close()
    return 0


async def cmd_export(args: argparse.Namespace) -> int:
    """Write the local dataset to a JSON export file."""
    session = _open_session(args)
    try:
        export = session.store.export_data()
    finally:
        await session.close()

    with open(args.output, "w") as f:
        json.dump(export.to_dict(), f, indent=2)
    print(f"Exported {export.record_count()} records to {args.output}")
    return 0


async def cmd_import(args: argparse.Namespace) -> int:
    """Replace the local dataset with an export file."""
    with open(args.input) as f:
        bundle = json.load(f)

    session = _open_session(args)
    try:
        count = session.store.import_data(bundle)
    except LedgerSyncError as e:
        print(f"Import failed: {e}", file=sys.stderr)
        for error in getattr(e, "errors", [])[:20]:
            print(f"  {error}", file=sys.stderr)
        return 1
    finally:
        await session.close()

    print(f"Imported {count} records from {args.input}")
    return 0


async def cmd_health(args: argparse.Namespace) -> int:
    """Check storage health and optionally repair corrupted records."""
    session = _open_session(args)
    try:
        repairs = {}
        if args.repair:
            for entity_type in EntityType:
                result = session.store.repair_corrupted_data(entity_type)
                if result["repaired_count"] or result["unrepaired_ids"]:
                    repairs[entity_type.value] = result
        if args.cleanup:
            removed = session.store.cleanup_old_data(
                session.config.storage.cleanup_max_age_days
            )
            print(f"Removed {removed} old synced record(s)")
        health = session.store.check_storage_health()
    finally:
        await session.close()

    if args.json_output:
        _print_json({**health, "repairs": repairs})
        return 0 if health["is_healthy"] else 1

    info = health["storage_info"]
    print(f"Health: {'OK' if health['is_healthy'] else 'Issues found'}")
    print(f"Storage: {info['used']} bytes ({info['usage_percentage']:.1f}% of quota)")
    for issue in health["issues"]:
        print(f"  Issue: {issue}")
    for recommendation in health["recommendations"]:
        print(f"  Recommendation: {recommendation}")
    for entity_type, result in repairs.items():
        print(
            f"  Repaired {result['repaired_count']} {entity_type} record(s), "
            f"{len(result['unrepaired_ids'])} unrepairable"
        )
    return 0 if health["is_healthy"] else 1


async def cmd_queue_list(args: argparse.Namespace) -> int:
    """List queued operations in dispatch order."""
    session = _open_session(args)
    try:
        operations = session.queue.get_operations()
    finally:
        await session.close()

    if args.json_output:
        _print_json([op.to_dict() for op in operations])
        return 0

    if not operations:
        print("Queue is empty")
        return 0
    for op in operations:
        line = (
            f"{op.id}  {op.priority.value:<6} {op.status.value:<9} "
            f"{op.type.value:<6} {op.entity_type.value}/{op.entity_id}"
        )
        if op.error:
            line += f"  ({op.retry_count}/{op.max_retries}: {op.error})"
        print(line)
    return 0


async def cmd_queue_retry(args: argparse.Namespace) -> int:
    session = _open_session(args)
    try:
        retried = session.queue.retry_failed_operations()
    finally:
        await session.close()
    print(f"Reset {retried} failed operation(s) to pending")
    return 0


async def cmd_queue_clear(args: argparse.Namespace) -> int:
    session = _open_session(args)
    try:
        if args.operation_id:
            removed = int(session.queue.discard_operation(args.operation_id))
        else:
            removed = session.queue.clear_queue()
    finally:
        await session.close()
    print(f"Removed {removed} operation(s)")
    return 0


async def cmd_conflicts_check(args: argparse.Namespace) -> int:
    """Compare the local dataset against the remote one."""
    session = _open_session(args)
    try:
        detection = await session.driver.check_conflicts(session.credentials)
        result = None
        if args.apply and detection.has_conflicts:
            result = await session.driver.apply_resolution(
                detection, session.credentials
            )
    finally:
        await session.close()

    if args.json_output:
        _print_json(
            {
                "detection": detection.to_dict(),
                "resolution": result.to_dict() if result else None,
            }
        )
        return 0

    if not detection.has_conflicts:
        print("No conflicts")
        return 0
    print(f"Conflict type: {detection.conflict_type.value}")
    print(f"Severity: {detection.severity.value}")
    print(f"Recommended action: {detection.recommended_action.value}")
    for item in detection.conflict_items:
        print(
            f"  [{item.severity.value}] {item.scope}/{item.entity_id}: "
            f"{item.conflict_reason}"
        )
    if result is not None:
        print(f"Resolution {'applied' if result.success else 'not applied'}")
        for error in result.errors:
            print(f"  Error: {error}")
    return 0


async def cmd_conflicts_history(args: argparse.Namespace) -> int:
    session = _open_session(args)
    try:
        history = session.detector.export_history()
    finally:
        await session.close()

    if args.json_output:
        _print_json(history)
        return 0
    if not history:
        print("No resolved conflicts")
    for entry in history:
        resolved = datetime.fromtimestamp(entry["resolvedAt"] / 1000).isoformat()
        print(
            f"{resolved}  {entry['strategy']:<11} "
            f"{entry['entityType']}/{entry['entityId']}  {entry['note']}"
        )
    return 0


async def cmd_conflicts_stats(args: argparse.Namespace) -> int:
    session = _open_session(args)
    try:
        stats = session.detector.get_conflict_stats()
    finally:
        await session.close()
    _print_json(stats)
    return 0


async def cmd_conflicts_clear(args: argparse.Namespace) -> int:
    session = _open_session(args)
    try:
        cleared = session.detector.clear_history()
    finally:
        await session.close()
    print(f"Cleared {cleared} conflict resolution(s)")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="ledgersync",
        description="Local-first sync engine for a personal finance ledger",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in settings)",
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

    def add_json_flag(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--json",
            dest="json_output",
            action="store_true",
            help="Output as JSON",
        )

    # Status command
    status_parser = subparsers.add_parser("status", help="Show sync status")
    add_json_flag(status_parser)
    status_parser.set_defaults(func=cmd_status)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run one sync cycle")
    add_json_flag(sync_parser)
    sync_parser.set_defaults(func=cmd_sync)

    # Run command
    run_parser = subparsers.add_parser("run", help="Run background sync")
    run_parser.set_defaults(func=cmd_run)

    # Export / import
    export_parser = subparsers.add_parser("export", help="Export local data to JSON")
    export_parser.add_argument("output", type=Path, help="Export file to write")
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser("import", help="Import local data from JSON")
    import_parser.add_argument("input", type=Path, help="Export file to read")
    import_parser.set_defaults(func=cmd_import)

    # Health command
    health_parser = subparsers.add_parser("health", help="Check local storage health")
    health_parser.add_argument(
        "--repair",
        action="store_true",
        help="Repair corrupted records where possible",
    )
    health_parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove old synced records",
    )
    add_json_flag(health_parser)
    health_parser.set_defaults(func=cmd_health)

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Inspect the operation queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_list = queue_subparsers.add_parser("list", help="List queued operations")
    add_json_flag(queue_list)
    queue_list.set_defaults(func=cmd_queue_list)

    queue_retry = queue_subparsers.add_parser("retry", help="Retry failed operations")
    queue_retry.set_defaults(func=cmd_queue_retry)

    queue_clear = queue_subparsers.add_parser("clear", help="Remove queued operations")
    queue_clear.add_argument(
        "operation_id",
        nargs="?",
        help="Discard only this terminally failed operation",
    )
    queue_clear.set_defaults(func=cmd_queue_clear)

    # Conflict commands
    conflicts_parser = subparsers.add_parser("conflicts", help="Detect and review conflicts")
    conflicts_subparsers = conflicts_parser.add_subparsers(
        dest="conflicts_command", help="Conflict commands"
    )

    conflicts_check = conflicts_subparsers.add_parser(
        "check", help="Compare local and remote data"
    )
    conflicts_check.add_argument(
        "--apply",
        action="store_true",
        help="Carry out the recommended action",
    )
    add_json_flag(conflicts_check)
    conflicts_check.set_defaults(func=cmd_conflicts_check)

    conflicts_history = conflicts_subparsers.add_parser(
        "history", help="Show resolved conflicts"
    )
    add_json_flag(conflicts_history)
    conflicts_history.set_defaults(func=cmd_conflicts_history)

    conflicts_stats = conflicts_subparsers.add_parser("stats", help="Conflict statistics")
    conflicts_stats.set_defaults(func=cmd_conflicts_stats)

    conflicts_clear = conflicts_subparsers.add_parser(
        "clear", help="Clear conflict history"
    )
    conflicts_clear.set_defaults(func=cmd_conflicts_clear)

    # API command
    api_parser = subparsers.add_parser("api", help="Serve the status API")
    api_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config)",
    )
    api_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config)",
    )
    api_parser.set_defaults(func=cmd_api)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "queue" and not args.queue_command:
        queue_parser.print_help()
        return 1

    if args.command == "conflicts" and not args.conflicts_command:
        conflicts_parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
