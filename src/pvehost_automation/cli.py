from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence
import argparse
import logging
import os
import sys

from .config import DEFAULT_SETTINGS, load_settings
from .errors import ConfigError, PreconditionUnmet, PveHostError
from .executors import LocalExecutor
from .inventory import HostSpecLoader
from .layout import HostLayout
from .planner import PlanBuilder
from .probe import HostProber
from .report import Ansi, RunLog, build_log_entry, colorize, format_plan, render_results
from .runner import CONTINUE, PlanRunner
from .types import Action

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

logger = logging.getLogger(__name__)

_last_progress_len = 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pvehost", description="Declarative Proxmox VE host provisioning")
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the host description (default from settings or /etc/pvehost/host.toml)",
    )
    common.add_argument(
        "--settings",
        type=Path,
        default=DEFAULT_SETTINGS,
        help=f"Path to pvehost settings (default: {DEFAULT_SETTINGS})",
    )
    common.add_argument("--root", type=Path, default=None, help="Filesystem root of the managed host")
    common.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("plan", parents=[common], help="Show the actions a provision run would take")
    provision = sub.add_parser("provision", parents=[common], help="Apply the host description")
    provision.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Keep applying actions that do not depend on a failed one",
    )
    provision.add_argument("--run-log", type=Path, help="JSON-lines file recording each run")
    provision.add_argument(
        "--allow-non-root",
        action="store_true",
        help="Skip the root check (for test hosts and chroots)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = load_settings(args.settings)
    except ConfigError as exc:
        print(colorize(f"Settings invalid: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_CONFIG

    if args.command == "provision" and not args.allow_non_root and os.geteuid() != 0:
        print(colorize("pvehost provision must be run as root", Ansi.RED), file=sys.stderr)
        return EXIT_FAILED

    spec_path = args.config or settings.host_spec
    try:
        spec = HostSpecLoader().load(spec_path)
    except ConfigError as exc:
        print(colorize(f"Host description invalid: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_CONFIG

    layout = HostLayout(root=args.root or settings.root)
    executor = LocalExecutor()
    try:
        probed = HostProber(executor, layout).probe(spec)
    except (PveHostError, OSError) as exc:
        print(colorize(f"Reading host state failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_FAILED
    try:
        plan = PlanBuilder(layout).build(spec, probed)
    except (ConfigError, PreconditionUnmet) as exc:
        print(colorize(f"Planning failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_CONFIG

    if args.command == "plan":
        for line in format_plan(plan):
            print(line)
        return EXIT_OK

    policy = CONTINUE if args.continue_on_error else settings.failure_policy
    started = datetime.now(timezone.utc)
    runner = PlanRunner(executor, policy=policy, progress_callback=print_progress)
    try:
        results = runner.run(plan)
    except Exception as exc:  # noqa: BLE001
        _clear_progress()
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_FAILED

    _clear_progress()
    print(render_results(results))

    entry = build_log_entry(results, host=spec.hostname or probed.hostname, policy=policy, started=started)
    logger.info("run summary %s", entry["summary"])
    run_log = args.run_log or settings.run_log
    try:
        RunLog(run_log).append(entry)
    except OSError as exc:
        logger.warning("Could not write run log %s: %s", run_log, exc)

    return EXIT_FAILED if entry["summary"]["failed"] else EXIT_OK


def print_progress(action: Action) -> None:
    global _last_progress_len
    line = f"{action.kind}[{action.resource}] pending..."
    _last_progress_len = len(line)
    print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _clear_progress() -> None:
    global _last_progress_len
    if _last_progress_len:
        print(" " * _last_progress_len, end="\r", flush=True)
        _last_progress_len = 0


if __name__ == "__main__":
    raise SystemExit(main())
