from __future__ import annotations

from pathlib import Path

from .file import WriteFileOperation
from ..rendering import render


class CronOperation(WriteFileOperation):
    """Install a single-line ``/etc/cron.d`` entry."""

    kind = "write-cron"

    def __init__(
        self,
        path: Path,
        command: str,
        *,
        minute: str = "*",
        hour: str = "*",
        day: str = "*",
        month: str = "*",
        weekday: str = "*",
        user: str = "root",
    ):
        self.command = command
        self.schedule = f"{minute} {hour} {day} {month} {weekday}"
        self.user = user
        content = render("cron.j2", schedule=self.schedule, user=user, command=command)
        super().__init__(path, content, mode=0o644)

    def describe(self) -> str:
        return f"cron {self.path}: '{self.schedule}' {self.command}"
