from __future__ import annotations

import logging

from .base import Operation
from ..errors import UnsupportedRaidLevel
from ..executors import Executor
from ..types import SUPPORTED_RAID_LEVELS, DiskPool

logger = logging.getLogger(__name__)


def pool_exists(executor: Executor, name: str) -> bool:
    result = executor.run(["zpool", "list", "-H", "-o", "name", name], check=False)
    return result.returncode == 0


def dataset_exists(executor: Executor, name: str) -> bool:
    result = executor.run(["zfs", "list", "-H", "-o", "name", name], check=False)
    return result.returncode == 0


class CreatePoolOperation(Operation):
    """Create a ZFS pool over raw block devices.

    ``zpool create -f`` overwrites whatever the devices hold. Once it has
    started there is no way back: a failure leaves the devices in an unknown
    state and the pool is never retried or destroyed automatically.
    """

    kind = "create-pool"
    destructive = True

    def __init__(self, pool: DiskPool):
        if pool.raid_level not in SUPPORTED_RAID_LEVELS:
            raise UnsupportedRaidLevel(pool.name, pool.raid_level)
        self.pool = pool

    @property
    def command(self) -> list[str]:
        return ["zpool", "create", "-f", self.pool.name, self.pool.raid_level, *self.pool.devices]

    def is_satisfied(self, executor: Executor) -> bool:
        return pool_exists(executor, self.pool.name)

    def apply(self, executor: Executor) -> str:
        logger.info("Creating ZFS pool %s (%s) on %s", self.pool.name, self.pool.raid_level, ", ".join(self.pool.devices))
        executor.run(self.command)
        for key, value in self.pool.properties:
            executor.run(["zfs", "set", f"{key}={value}", self.pool.name])
        return f"created {self.pool.raid_level} over {len(self.pool.devices)} devices"

    def describe(self) -> str:
        props = " ".join(f"{key}={value}" for key, value in self.pool.properties)
        text = " ".join(self.command)
        return f"{text} [{props}]" if props else text


class CreateDatasetOperation(Operation):
    kind = "create-dataset"

    def __init__(self, name: str):
        self.name = name

    def is_satisfied(self, executor: Executor) -> bool:
        return dataset_exists(executor, self.name)

    def apply(self, executor: Executor) -> str:
        executor.run(["zfs", "create", "-p", self.name])
        return "created"

    def describe(self) -> str:
        return f"zfs create -p {self.name}"
