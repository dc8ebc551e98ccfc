from __future__ import annotations

import argparse
import json
import logging
import os
import sys

import uvicorn

from timeledger.config_manager import ConfigManager
from timeledger.diagnostics import analyze_ids, read_dry_run_report
from timeledger.models import Operation
from timeledger.state_store import StateStore
from timeledger.sync_engine import APPLY, QUIT, SKIP, SyncEngine, summarize_operation


_logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _prompt(op: Operation) -> str:
    answer = input(f"{summarize_operation(op)}\n[y] apply, [s] skip, [q] quit > ").strip().lower()
    if answer in {APPLY, QUIT}:
        return answer
    return SKIP


def _serve() -> None:
    host = os.getenv("TIMELEDGER_HOST", "0.0.0.0")
    port = int(os.getenv("TIMELEDGER_PORT", "8080"))
    uvicorn.run("timeledger.web_admin:create_app", factory=True, host=host, port=port, reload=False)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="timeledger", description="Mirror calendar events into ClickUp time entries.")
    parser.add_argument("--config", default=os.getenv("TIMELEDGER_CONFIG_PATH", "config.yaml"))
    parser.add_argument("--state", default=os.getenv("TIMELEDGER_STATE_PATH", "data/state.db"))
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("dry-run", help="plan operations and write a report without touching ClickUp")
    apply_parser = subparsers.add_parser("apply", help="plan and apply operations")
    apply_parser.add_argument("--yes", action="store_true", help="apply every operation without prompting")
    subparsers.add_parser("analyze-ids", help="report duplicate ids in the last dry-run report")
    subparsers.add_parser("serve", help="run the admin web API")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        os.environ["TIMELEDGER_CONFIG_PATH"] = args.config
        os.environ["TIMELEDGER_STATE_PATH"] = args.state
        _serve()
        return 0

    config_manager = ConfigManager(args.config)
    config = config_manager.load()
    configure_logging(config.logging.level)

    if args.command == "analyze-ids":
        try:
            report = read_dry_run_report(config.storage.staging_dir)
        except (OSError, ValueError) as exc:
            _logger.error("Failed analyzing ids: %s", exc)
            return 1
        print(json.dumps(analyze_ids(report), indent=2))
        return 0

    engine = SyncEngine(config_manager, StateStore(args.state))
    if args.command == "dry-run":
        result = engine.run_once(trigger="cli")
    else:
        result = engine.run_once(trigger="cli", apply=True, confirm=None if args.yes else _prompt)
    print(result.message)
    return 0 if result.status in {"planned", "success", "skipped"} else 1


if __name__ == "__main__":
    sys.exit(main())
