from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
import logging

from .base import Operation
from ..executors import Executor

logger = logging.getLogger(__name__)

APT_ENV_PREFIX = ["env", "DEBIAN_FRONTEND=noninteractive"]


@dataclass
class DpkgQuery:
    executable: str = "dpkg-query"

    def check(self, executor: Executor, package: str) -> bool:
        result = executor.run(
            [self.executable, "-W", "-f", "${Status}", package],
            check=False,
        )
        return result.returncode == 0 and "install ok installed" in result.stdout

    def missing(self, executor: Executor, packages: Iterable[str]) -> list[str]:
        return [pkg for pkg in packages if not self.check(executor, pkg)]


def pending_upgrades(executor: Executor) -> int:
    """Count packages ``apt-get upgrade`` would install, via a simulated run."""

    result = executor.run(["apt-get", "-s", "upgrade"], check=False)
    if result.returncode != 0:
        logger.warning("apt-get -s upgrade failed: %s", result.stderr.strip())
        return 0
    return sum(1 for line in result.stdout.splitlines() if line.startswith("Inst "))


class InstallPackagesOperation(Operation):
    """Install the requested packages with apt."""

    kind = "install-packages"

    def __init__(self, packages: Iterable[str]):
        self.packages = list(packages)
        if not self.packages:
            raise ValueError("install-packages requires at least one package")
        self.query = DpkgQuery()

    def is_satisfied(self, executor: Executor) -> bool:
        return not self.query.missing(executor, self.packages)

    def apply(self, executor: Executor) -> str:
        needed = self.query.missing(executor, self.packages)
        executor.run([*APT_ENV_PREFIX, "apt-get", "update"])
        executor.run([*APT_ENV_PREFIX, "apt-get", "install", "-y", *needed])
        return f"installed={','.join(needed)}"

    def describe(self) -> str:
        return f"apt-get install {' '.join(self.packages)}"


class UpgradePackagesOperation(Operation):
    """Refresh the package index and apply pending upgrades."""

    kind = "upgrade-packages"

    def is_satisfied(self, executor: Executor) -> bool:
        return pending_upgrades(executor) == 0

    def apply(self, executor: Executor) -> str:
        executor.run([*APT_ENV_PREFIX, "apt-get", "update"])
        executor.run([*APT_ENV_PREFIX, "apt-get", "-y", "dist-upgrade"])
        return "upgraded"

    def verify(self, executor: Executor) -> bool:
        return True

    def describe(self) -> str:
        return "apt-get update && apt-get dist-upgrade"
