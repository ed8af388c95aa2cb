#!/usr/bin/env python3
"""
QuickBooks Sync Engine CLI

Usage:
    qbo-sync test --tenant T      # Test the tenant's QuickBooks connection
    qbo-sync sync --tenant T      # Run an orchestrated sync
    qbo-sync worker               # Drain the sync queue
    qbo-sync status --tenant T    # Show sessions and recent runs
    qbo-sync stats --tenant T     # Show rate limiter and client statistics
    qbo-sync serve                # Run the HTTP API
"""

import argparse
import asyncio
import logging
import signal
import sys

import structlog
from colorama import Fore, Style, init

from qbo_sync.config import load_settings
from qbo_sync.conflicts import ConflictStrategy
from qbo_sync.engine import SyncEngine
from qbo_sync.errors import ConfigurationError, MissingCredentialError
from qbo_sync.orchestrator import SyncRequest

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT


def print_banner():
    """Print the banner."""
    print(f"""
{BLUE}╔══════════════════════════════════════════════════════════════╗
║     {BOLD}QuickBooks Online Sync Engine{RESET}{BLUE}                            ║
║     Customers · Items · Invoices · Payments                    ║
╚══════════════════════════════════════════════════════════════╝{RESET}
""")


def print_success(msg: str):
    print(f"{GREEN}✓ {msg}{RESET}")


def print_error(msg: str):
    print(f"{RED}✗ {msg}{RESET}")


def print_warning(msg: str):
    print(f"{YELLOW}⚠ {msg}{RESET}")


def print_info(msg: str):
    print(f"{BLUE}ℹ {msg}{RESET}")


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog for console or JSON output."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def _engine(args) -> SyncEngine:
    settings = load_settings(args.config)
    if args.state_file:
        settings = settings.model_copy(update={"state_file": args.state_file})
    configure_logging("DEBUG" if args.verbose else settings.log_level, settings.json_logs)
    return SyncEngine(settings)


def cmd_test(args):
    """Test the tenant's QuickBooks connection."""
    async def run():
        async with _engine(args) as engine:
            return await engine.client.health_check(args.tenant)

    print_info(f"Checking QuickBooks connection for tenant {args.tenant}...")
    result = asyncio.run(run())

    if result["status"] == "healthy":
        print_success("Connected successfully!")
        print_success(f"Company: {result.get('company', 'unknown')} (realm {result['realm_id']})")
        return 0

    print_error(f"Connection failed: {result.get('message', 'Unknown error')}")
    return 1


def cmd_sync(args):
    """Run an orchestrated sync."""
    async def run():
        async with _engine(args) as engine:
            request = SyncRequest(
                tenant_id=args.tenant,
                direction=args.direction,
                entities=args.entities.split(",") if args.entities else None,
                conflict_resolution=args.conflict,
                retry_attempts=args.retry_attempts or engine.settings.orchestrator_retry_attempts,
                sync_mode=args.mode,
            )
            return await engine.orchestrator.run(request)

    print_banner()
    print(f"{BOLD}Starting {args.mode} sync ({args.direction}){RESET}\n")

    try:
        result = asyncio.run(run())
    except (ConfigurationError, MissingCredentialError) as e:
        print_error(str(e))
        return 1

    for entity_result in result.results:
        line = (
            f"  {entity_result.entity.value:<10} pulled {entity_result.pulled:>5}  "
            f"pushed {entity_result.pushed:>5}  conflicts {entity_result.conflicts:>3}"
        )
        if entity_result.status == "success":
            print_success(line)
        elif entity_result.status == "partial":
            print_warning(line)
        else:
            print_error(line)
        for err in entity_result.errors[:5]:
            print(f"      - {err}")
        if not entity_result.is_complete:
            print_info(f"    {entity_result.entity.value} continues in the background queue")

    print(f"\n{BOLD}Run {result.run_id}: {result.status}{RESET} in {result.duration:.1f}s")
    print(f"  Total pulled: {result.total_pulled}")
    print(f"  Total pushed: {result.total_pushed}")
    return 0 if result.success else 1


def cmd_worker(args):
    """Drain the sync queue once, or poll until interrupted."""
    async def run():
        async with _engine(args) as engine:
            if args.once:
                await engine.ingestor.replay_pending()
                await engine.processor.resume_stale_sessions()
                return await engine.processor.drain(args.max_jobs, args.max_concurrent)

            if args.max_jobs:
                engine.processor.max_jobs = args.max_jobs
            if args.max_concurrent:
                engine.processor.max_concurrent = args.max_concurrent

            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
            await engine.ingestor.replay_pending()
            await engine.processor.run_forever(stop)
            return None

    summary = asyncio.run(run())
    if summary is not None:
        print_success(
            f"Processed {summary['processed']} jobs "
            f"({summary['succeeded']} succeeded, {summary['failed']} failed)"
        )
        return 0 if summary["failed"] == 0 else 1
    return 0


def cmd_status(args):
    """Show sessions and recent runs for a tenant."""
    async def run():
        async with _engine(args) as engine:
            sessions = await engine.sessions.list_for_tenant(args.tenant, limit=args.limit)
            history = await engine.orchestrator.history(args.tenant, limit=args.limit)
            queue = await engine.queue.get_stats()
            return sessions, history, queue

    print_banner()
    sessions, history, queue = asyncio.run(run())

    print(f"{BOLD}Sync Status for {args.tenant}{RESET}\n")

    if history:
        print(f"{BOLD}Recent runs:{RESET}")
        for run_ in history:
            started = run_.started_at.strftime('%Y-%m-%d %H:%M:%S UTC')
            print(f"  {started}  {run_.status:<16} {run_.direction:<5} "
                  f"{','.join(run_.entity_types)}  ({run_.error_count} errors)")
    else:
        print_warning("  No sync runs yet")

    if sessions:
        print(f"\n{BOLD}Sessions:{RESET}")
        for session in sessions:
            progress = f"{session.progress_percent}%" if session.progress_percent is not None else "?"
            status = session.status
            if session.status == "completed":
                status = f"{GREEN}{status}{RESET}"
            elif session.status == "failed":
                status = f"{RED}{status}{RESET}"
            print(f"  {session.entity.value:<9} {session.direction:<5} {status:<12} "
                  f"{session.total_processed}/{session.total_expected or '?'} ({progress})")
            if session.error_message:
                print(f"      {session.error_message}")

    print(f"\n{BOLD}Queue:{RESET}")
    print(f"  Pending: {queue['pending']}  Processing: {queue['processing']}  "
          f"Completed: {queue['completed']}  Failed: {queue['failed']}")
    return 0


def cmd_stats(args):
    """Show rate limiter and client statistics."""
    async def run():
        async with _engine(args) as engine:
            return engine.client.get_stats(args.tenant)

    print_banner()
    stats = asyncio.run(run())

    print(f"{BOLD}API Client:{RESET}")
    print(f"  Requests: {stats['request_count']}")
    print(f"  Errors: {stats['error_count']} ({stats['error_rate']:.2%})")

    rl = stats["tenant_rate_limit"]
    print(f"\n{BOLD}Rate limit ({args.tenant}):{RESET}")
    print(f"  {rl['count']}/{rl['limit']} calls in window "
          f"({rl['remaining']} remaining, {rl['percent_used']:.1f}% used)")
    return 0


def cmd_serve(args):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from qbo_sync.api import create_app

    app = create_app(engine=_engine(args))
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="QuickBooks Online Sync Engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  qbo-sync test --tenant acme                        Test the connection
  qbo-sync sync --tenant acme                        Full bidirectional sync
  qbo-sync sync --tenant acme --entities customers --direction pull
  qbo-sync worker --once                             Drain the queue once
  qbo-sync serve --port 8000                         Run the HTTP API
        """,
    )
    parser.add_argument("--config", help="Config file (default: ~/.qbo-sync/config.json)")
    parser.add_argument("--state-file", help="State file (default: ~/.qbo-sync/state.json)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Test command
    test_parser = subparsers.add_parser("test", help="Test a tenant's connection")
    test_parser.add_argument("--tenant", required=True)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run an orchestrated sync")
    sync_parser.add_argument("--tenant", required=True)
    sync_parser.add_argument("--direction", choices=["pull", "push", "both"], default="both")
    sync_parser.add_argument("--entities", help="Comma-separated, e.g. customers,items")
    sync_parser.add_argument(
        "--conflict",
        choices=[s.value for s in ConflictStrategy],
        default=ConflictStrategy.NEWEST_WINS.value,
    )
    sync_parser.add_argument("--mode", choices=["full", "delta", "historical"], default="full")
    sync_parser.add_argument("--retry-attempts", type=int, default=None,
                             help="Attempts per entity (default from settings)")

    # Worker command
    worker_parser = subparsers.add_parser("worker", help="Process queued sync jobs")
    worker_parser.add_argument("--once", action="store_true", help="Drain once and exit")
    worker_parser.add_argument("--max-jobs", type=int, default=None)
    worker_parser.add_argument("--max-concurrent", type=int, default=None)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("--tenant", required=True)
    status_parser.add_argument("--limit", type=int, default=10)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.add_argument("--tenant", required=True)

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(argv)

    if args.command is None:
        print_banner()
        parser.print_help()
        return 0

    commands = {
        "test": cmd_test,
        "sync": cmd_sync,
        "worker": cmd_worker,
        "status": cmd_status,
        "stats": cmd_stats,
        "serve": cmd_serve,
    }

    try:
        return commands[args.command](args)
    except ConfigurationError as e:
        print_error(f"Configuration error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
