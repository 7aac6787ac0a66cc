from __future__ import annotations

from .base import Operation
from ..executors import Executor
from ..types import StorageEntry


def parse_storage_ids(output: str) -> set[str]:
    """Return the storage IDs listed by ``pvesm status``."""

    ids: set[str] = set()
    for line in output.splitlines():
        parts = line.split()
        if not parts or parts[0] == "Name":
            continue
        ids.add(parts[0])
    return ids


def storage_ids(executor: Executor) -> set[str]:
    result = executor.run(["pvesm", "status"], check=False)
    if result.returncode != 0:
        return set()
    return parse_storage_ids(result.stdout)


class AddStorageOperation(Operation):
    """Register a storage entry with the Proxmox storage manager."""

    kind = "add-storage"

    def __init__(self, entry: StorageEntry):
        self.entry = entry

    @property
    def command(self) -> list[str]:
        cmd = ["pvesm", "add", self.entry.type, self.entry.id]
        if self.entry.type == "zfspool":
            cmd.extend(["-pool", str(self.entry.pool)])
        else:
            cmd.extend(["-path", str(self.entry.path)])
        cmd.extend(["-content", ",".join(self.entry.content)])
        return cmd

    def is_satisfied(self, executor: Executor) -> bool:
        return self.entry.id in storage_ids(executor)

    def apply(self, executor: Executor) -> str:
        executor.run(self.command)
        return f"registered {self.entry.type} content={','.join(self.entry.content)}"

    def describe(self) -> str:
        return " ".join(self.command)
