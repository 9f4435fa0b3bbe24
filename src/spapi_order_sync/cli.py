#!/usr/bin/env python3
"""
SP-API Order Sync CLI

Usage:
    spapi-sync test            # Verify credentials and list marketplaces
    spapi-sync sync            # Run a sync
    spapi-sync status          # Show last known report states
    spapi-sync config          # Show the effective configuration
"""

import argparse
import json
import logging
import signal
import sys

import structlog
from colorama import Fore, Style, init

from spapi_order_sync.config import SyncConfig
from spapi_order_sync.exceptions import AuthError, ConfigError, SyncAborted, SyncCancelled
from spapi_order_sync.pacing import Pacer
from spapi_order_sync.state import JsonLinesSink, NullSink, ReportStateStore

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
║     {BOLD}SP-API Order Sync{RESET}{BLUE}                                        ║
║     Marketplace orders and reports, rate-limit aware           ║
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


def configure_logging(verbose: bool = False) -> None:
    """Route structlog output to stderr at INFO (or DEBUG with --verbose)."""
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def load_config_or_report(args) -> SyncConfig | None:
    try:
        return SyncConfig.load(config_file=args.config)
    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        print_info("Set environment variables (or put them in a .env file):")
        print("    export SPAPI_CLIENT_ID=amzn1.application-oa2-client.xxx")
        print("    export SPAPI_CLIENT_SECRET=your-client-secret")
        print("    export SPAPI_REFRESH_TOKEN=Atzr|xxx")
        print("    export SPAPI_REGION=na")
        return None


def cmd_test(args):
    """Verify credentials and list marketplaces."""
    config = load_config_or_report(args)
    if config is None:
        return 1

    print_info(f"Connecting to SP-API region {config.region}...")

    from spapi_order_sync.auth import TokenManager
    from spapi_order_sync.client import SPAPIClient

    tokens = TokenManager(config.client_id, config.client_secret, config.refresh_token)
    client = SPAPIClient(tokens, region=config.region, max_retries=config.max_retries)

    try:
        with client:
            result = client.health_check()
    finally:
        tokens.close()

    if result["status"] == "healthy":
        print_success("Connected successfully!")
        print_success(f"Marketplaces: {', '.join(result['marketplaces']) or '(none)'}")
        return 0

    print_error(f"Connection failed: {result.get('message', 'Unknown error')}")
    return 1


def cmd_sync(args):
    """Run a sync."""
    config = load_config_or_report(args)
    if config is None:
        return 1

    from spapi_order_sync.sync import OrderSync

    print_banner()
    print(f"{BOLD}Starting Sync{RESET}\n")

    if args.dry_run:
        print_warning("Dry run - records are fetched but not written")
        sink = NullSink()
    else:
        sink = JsonLinesSink(config.output_dir)
        print_info(f"Writing records to {config.output_dir}")

    state_store = ReportStateStore(config.state_file)
    pacer = Pacer(deadline_seconds=config.deadline_seconds)

    # First Ctrl-C cancels at the next sleep or request; the second one kills
    def _cancel(signum, frame):
        print_warning("Cancelling after the current request...")
        pacer.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _cancel)

    sync = OrderSync.from_config(
        config,
        sink,
        state_store,
        pacer=pacer,
        skip_report=args.skip_report,
    )

    try:
        summary = sync.run()
    except AuthError as e:
        print_error(f"Authentication failed: {e}")
        return 1
    except SyncAborted as e:
        print_error(f"Sync aborted: {e}")
        return 1
    except SyncCancelled as e:
        print_error(f"Sync cancelled: {e}")
        return 1

    print(f"\n{GREEN}Sync complete!{RESET}")
    print(f"  Marketplaces: {len(summary.marketplaces)}")
    if summary.report_status:
        print(f"  Report: {summary.report_status} ({summary.report_records} records)")
    print(f"  Orders fetched: {summary.orders_fetched}")
    print(f"  Orders saved: {summary.orders_persisted}")
    if summary.orders_failed:
        print_warning(f"  Orders failed: {summary.orders_failed}")
    if summary.partition_failures:
        print_warning(f"  Marketplaces skipped: {len(summary.partition_failures)}")
    if summary.errors:
        print_warning(f"  Errors: {len(summary.errors)}")
        for err in summary.errors[:5]:
            print(f"    - {err}")

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))

    return 0


def cmd_status(args):
    """Show last known report states."""
    print_banner()

    try:
        config = SyncConfig.load(config_file=args.config)
        state_file = config.state_file
    except ConfigError:
        state_file = None

    store = ReportStateStore(state_file)
    states = store.load()

    print(f"{BOLD}Report Status{RESET}\n")
    if not states:
        print_warning("  No reports recorded yet")
        return 0

    for report_id, state in sorted(states.items(), key=lambda kv: kv[1].get("at", "")):
        status = state.get("status", "?")
        color = GREEN if status == "DONE" else (BLUE if status in ("IN_QUEUE", "IN_PROGRESS", "SUBMITTED") else RED)
        print(f"  {report_id}: {color}{status}{RESET}  "
              f"(type {state.get('report_type')}, poll {state.get('attempt')}, at {state.get('at')})")

    return 0


def cmd_config(args):
    """Show the effective configuration with secrets masked."""
    config = load_config_or_report(args)
    if config is None:
        return 1
    print(json.dumps(config.masked(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spapi-sync",
        description="Sync marketplace orders from the Selling Partner API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  spapi-sync test              Verify credentials
  spapi-sync sync              Run a sync
  spapi-sync sync --dry-run    Fetch without writing
  spapi-sync status            Show report states
        """,
    )
    parser.add_argument("--config", help="Path to a JSON config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("test", help="Verify credentials and list marketplaces")

    sync_parser = subparsers.add_parser("sync", help="Run a sync")
    sync_parser.add_argument("--dry-run", action="store_true", help="Don't write any records")
    sync_parser.add_argument("--skip-report", action="store_true", help="Skip the report stage")
    sync_parser.add_argument("--json", action="store_true", help="Print the run summary as JSON")

    subparsers.add_parser("status", help="Show last known report states")
    subparsers.add_parser("config", help="Show the effective configuration")

    return parser


def main(argv: list[str] | None = None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "test": cmd_test,
        "sync": cmd_sync,
        "status": cmd_status,
        "config": cmd_config,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
