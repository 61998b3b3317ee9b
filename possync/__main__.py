"""CLI entry point for possync."""

import argparse
import asyncio
import json
import logging
import signal
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .errors import NetworkError, RemoteError


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Sync context passed through ``extra`` (client id, op id, entity) is
    emitted as top-level fields.
    """

    context_fields = ("client_id", "op_id", "entity")

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        for key in self.context_fields:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = str(getattr(value, "value", value))

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
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _make_client(config: Config):
    from .client import OfflineClient

    return OfflineClient(config)


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the sync server."""
    config = load_config(args.config)

    try:
        import uvicorn
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        print("Install with: pip install possync", file=sys.stderr)
        return 1

    from .server import Store, create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    store = Store(config.server.db_path)
    store.connect()

    print("Starting possync server")
    print(f"Database: {store.db_path}")
    print(f"URL: http://{host}:{port}")
    if not config.server.api_tokens:
        print("Warning: no API tokens configured, sync endpoints are open")

    app = create_app(config, store=store)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        store.close()

    return 0


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the client sync loop until interrupted."""
    config = load_config(args.config)
    client = _make_client(config)

    print(f"Starting possync client: {client.client_id}")
    print(f"Remote: {config.remote.url}")
    print(f"Queue: {client.get_queue_size()} pending operations")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms
            pass

    await client.start()
    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        print("\nShutting down...")
        await client.stop()

    return 0


async def cmd_drain(args: argparse.Namespace) -> int:
    """Drain the queue once."""
    config = load_config(args.config)
    client = _make_client(config)

    try:
        await client.connectivity.check()
        report = await client.drain_now()
    finally:
        await client.stop()

    if report is None:
        print("Server unreachable, nothing drained")
        return 1

    print(f"Drained: {len(report.drained)}")
    print(f"Failed: {len(report.failed)}")
    print(f"Conflicts: {len(report.conflicts)}")
    for conflict in report.conflicts:
        print(f"  - {conflict.entity.value} {conflict.action.value}: {conflict.message}")
    print(f"Rejected: {len(report.rejected)}")
    for rejection in report.rejected:
        print(f"  - {rejection.op_id}: {rejection.error}")
    print(f"Evicted: {report.evicted}")
    if report.halted_offline:
        print("Stopped early: connection lost")

    return 0 if not report.failed else 2


async def cmd_pull(args: argparse.Namespace) -> int:
    """Pull server changes into the local cache."""
    config = load_config(args.config)
    client = _make_client(config)

    try:
        count = await client.pull()
    except (NetworkError, RemoteError) as e:
        print(f"Pull failed: {e}", file=sys.stderr)
        return 1
    finally:
        await client.stop()

    print(f"Applied {count} changes")
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show connectivity, queue and cache status."""
    config = load_config(args.config)
    client = _make_client(config)

    try:
        await client.connectivity.check()
        status_data = client.get_status()
        status_data["timestamp"] = datetime.now().isoformat()
        status_data["queue"] = client.queue.get_stats()
        status_data["cache"] = client.cache.get_stats()
    finally:
        await client.stop()

    if args.json:
        print(json.dumps(status_data, indent=2, default=str))
        return 0

    print("possync Status Check")
    print("====================")
    print(f"Client: {status_data['client_id']}")
    print()

    print(f"Remote ({status_data['remote_url']}):")
    if status_data["online"]:
        print("  Status: Reachable")
    else:
        print("  Status: Not reachable")
        print("  Mutations are queued until the server is back")
    print(f"  Last pull: {status_data['last_sync_time'] or 'never'}")

    print()

    queue_stats = status_data["queue"]
    print("Queue:")
    print(f"  Pending operations: {queue_stats['pending']}")
    for retries, count in queue_stats["by_retry_count"].items():
        print(f"    - {count} with {retries} failed attempts")

    print()

    print("Cache:")
    collections = status_data["cache"]["collections"]
    if not collections:
        print("  Empty")
    for name, info in collections.items():
        print(f"  {name}: {info['records']} records (updated {info['updated_at']})")

    return 0


def cmd_queue_list(args: argparse.Namespace) -> int:
    """List pending operations."""
    from .client import OperationQueue

    config = load_config(args.config)
    queue = OperationQueue(config.queue.db_path)

    try:
        operations = queue.list_all()
    finally:
        queue.close()

    if not operations:
        print("Queue is empty")
        return 0

    for op in operations:
        enqueued = datetime.fromtimestamp(op.enqueued_at / 1000).isoformat(timespec="seconds")
        print(f"{op.id}  {enqueued}  {op.method.value:<6} {op.resource}  retries={op.retry_count}")

    print(f"\n{len(operations)} pending operation(s)")
    return 0


def cmd_queue_clear(args: argparse.Namespace) -> int:
    """Drop every pending operation."""
    from .client import OperationQueue

    config = load_config(args.config)
    queue = OperationQueue(config.queue.db_path)

    if not args.yes:
        answer = input(f"Discard {queue.size()} pending operations? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted")
            queue.close()
            return 1

    try:
        removed = queue.clear()
    finally:
        queue.close()

    print(f"Removed {removed} operation(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="possync",
        description="Offline-first synchronization engine for POS clients",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: config.yaml)",
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
        dest="json_logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the sync server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: server.port)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Client commands
    run_parser = subparsers.add_parser("run", help="Run the client sync loop")
    run_parser.set_defaults(func=cmd_run)

    drain_parser = subparsers.add_parser("drain", help="Drain the queue once")
    drain_parser.set_defaults(func=cmd_drain)

    pull_parser = subparsers.add_parser("pull", help="Pull server changes once")
    pull_parser.set_defaults(func=cmd_pull)

    status_parser = subparsers.add_parser("status", help="Show client status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Inspect the operation queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_list = queue_subparsers.add_parser("list", help="List pending operations")
    queue_list.set_defaults(func=cmd_queue_list)

    queue_clear = queue_subparsers.add_parser("clear", help="Discard pending operations")
    queue_clear.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Do not ask for confirmation",
    )
    queue_clear.set_defaults(func=cmd_queue_clear)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "queue" and not args.queue_command:
        print("Specify a queue command: list or clear", file=sys.stderr)
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
