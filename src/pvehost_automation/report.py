from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional
import json
import logging
import os
import sys

from .types import Plan, RunResult, Status

logger = logging.getLogger(__name__)


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


STATUS_COLORS = {
    Status.APPLIED: Ansi.GREEN,
    Status.SKIPPED: Ansi.BLUE,
    Status.FAILED: Ansi.RED,
}


def format_result(result: RunResult) -> str:
    line = f"{result.kind}[{result.resource}] {result.status.value} - {result.message}"
    return colorize(line, STATUS_COLORS.get(result.status))


def format_plan(plan: Plan) -> list[str]:
    if not len(plan):
        return [colorize("No changes. Host matches the description.", Ansi.GREEN)]
    lines: list[str] = []
    for index, action in enumerate(plan, start=1):
        marker = "!" if action.destructive else " "
        after = f" (after {', '.join(action.depends_on)})" if action.depends_on else ""
        line = f"{index:>3}.{marker} {action.id}: {action.describe()}{after}"
        lines.append(colorize(line, Ansi.RED if action.destructive else Ansi.YELLOW))
    if any(action.destructive for action in plan):
        lines.append(colorize("Actions marked ! erase block devices and cannot be undone.", Ansi.RED))
    return lines


class Summary:
    def __init__(self) -> None:
        self.applied = 0
        self.skipped = 0
        self.failures = 0

    def add(self, result: RunResult) -> None:
        if result.status is Status.APPLIED:
            self.applied += 1
        elif result.status is Status.SKIPPED:
            self.skipped += 1
        else:
            self.failures += 1

    @classmethod
    def of(cls, results: Iterable[RunResult]) -> "Summary":
        summary = cls()
        for result in results:
            summary.add(result)
        return summary

    def as_dict(self) -> dict[str, int]:
        return {"applied": self.applied, "skipped": self.skipped, "failed": self.failures}

    def render(self) -> str:
        parts = [
            f"Applied: {self.applied}",
            f"Skipped: {self.skipped}",
            f"Failures: {self.failures}",
        ]
        text = " | ".join(parts)
        color = Ansi.GREEN if self.failures == 0 else Ansi.RED
        return colorize(text, color)


def render_results(results: Iterable[RunResult]) -> str:
    results = list(results)
    lines = [format_result(result) for result in results]
    lines.append(Summary.of(results).render())
    return "\n".join(lines)


def build_log_entry(
    results: Iterable[RunResult],
    *,
    host: Optional[str],
    policy: str,
    started: Optional[datetime] = None,
) -> dict[str, Any]:
    results = list(results)
    finished = datetime.now(timezone.utc)
    return {
        "started": (started or finished).isoformat(),
        "finished": finished.isoformat(),
        "host": host,
        "policy": policy,
        "summary": Summary.of(results).as_dict(),
        "results": [
            {
                "action": result.action_id,
                "kind": result.kind,
                "resource": result.resource,
                "status": result.status.value,
                "message": result.message,
            }
            for result in results
        ],
    }


class RunLog:
    """Append-only JSON-lines record of provisioning runs."""

    def __init__(self, path: Path):
        self.path = path

    def append(self, entry: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a") as handle:
            handle.write(json.dumps(entry, sort_keys=True) + "\n")
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            logger.debug("Unable to chmod run log %s", self.path, exc_info=True)

