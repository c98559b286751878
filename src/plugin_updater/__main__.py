"""Operator entry point for the plugin updater."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from plugin_updater.config import Settings, get_settings
from plugin_updater.logging import get_logger, setup_logging
from plugin_updater.orchestrator import UpdateOrchestrator
from plugin_updater.progress import LoggingProgressSink


def _settings_for(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    if args.path:
        settings = settings.model_copy(update={"plugin_path": Path(args.path)})
    return settings


def show_info(args: argparse.Namespace) -> int:
    info = UpdateOrchestrator(_settings_for(args)).get_plugin_info()
    print(json.dumps(info.to_dict(), indent=2))
    return 0 if info.is_valid else 1


async def run_update(args: argparse.Namespace) -> int:
    log = get_logger("plugin_updater.cli")
    orchestrator = UpdateOrchestrator(_settings_for(args))
    result = await orchestrator.perform_update(LoggingProgressSink())
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))

    if result.success and orchestrator.restart_scheduler.pending:
        log.info("waiting_for_reload", delay_seconds=orchestrator.restart_scheduler.delay_seconds)
        await orchestrator.wait_for_restart()
    return 0 if result.success else 1


def main() -> None:
    """Entry point."""
    parser = argparse.ArgumentParser(
        description="Fetch, verify, rebuild and reload the plugin from its signed upstream"
    )
    parser.add_argument("--path", help="Plugin checkout (default: PLUGIN_UPDATER_PLUGIN_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("info", help="Show plugin path diagnostics")
    sub.add_parser("update", help="Run a signed update now")
    args = parser.parse_args()

    setup_logging()
    if args.command == "info":
        sys.exit(show_info(args))
    sys.exit(asyncio.run(run_update(args)))


if __name__ == "__main__":
    main()
