from __future__ import annotations

from .base import Operation
from ..executors import Executor


class HostnameOperation(Operation):
    kind = "set-hostname"

    def __init__(self, hostname: str):
        self.hostname = hostname

    def is_satisfied(self, executor: Executor) -> bool:
        result = executor.run(["hostname"], check=False)
        return result.returncode == 0 and result.stdout.strip() == self.hostname

    def apply(self, executor: Executor) -> str:
        executor.run(["hostnamectl", "set-hostname", self.hostname])
        return f"hostname->{self.hostname}"

    def describe(self) -> str:
        return f"hostnamectl set-hostname {self.hostname}"


class TimezoneOperation(Operation):
    kind = "set-timezone"

    def __init__(self, zone: str):
        self.zone = zone

    def is_satisfied(self, executor: Executor) -> bool:
        return current_timezone(executor) == self.zone

    def apply(self, executor: Executor) -> str:
        executor.run(["timedatectl", "set-timezone", self.zone])
        return f"zone->{self.zone}"

    def describe(self) -> str:
        return f"timedatectl set-timezone {self.zone}"


def current_timezone(executor: Executor):
    result = executor.run(["timedatectl", "show", "-p", "Timezone", "--value"], check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None
