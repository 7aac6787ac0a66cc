from __future__ import annotations

from pathlib import Path
import logging

from .base import Operation
from ..executors import Executor
from ..types import FormattedDisk

logger = logging.getLogger(__name__)

FORCE_FLAGS = {"ext4": "-F", "xfs": "-f"}


def partition_name(device: str) -> str:
    """First partition of ``device``: ``/dev/sdc`` -> ``/dev/sdc1``, ``/dev/nvme2n1`` -> ``/dev/nvme2n1p1``."""

    if device[-1:].isdigit():
        return f"{device}p1"
    return f"{device}1"


def is_mounted(executor: Executor, mount_point: str) -> bool:
    result = executor.run(["findmnt", "-rn", "-o", "TARGET", mount_point], check=False)
    return result.returncode == 0 and bool(result.stdout.strip())


class FstabManager:
    def __init__(self, path: Path, executor: Executor):
        self.path = path
        self.executor = executor

    def ensure_entry(self, mount_point: str, record: str) -> bool:
        lines = self._read_lines()
        changed = False
        replaced = False
        new_lines: list[str] = []
        for line in lines:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                new_lines.append(line)
                continue
            parts = stripped.split()
            if len(parts) >= 2 and parts[1] == mount_point:
                replaced = True
                if stripped != record:
                    new_lines.append(record)
                    changed = True
                else:
                    new_lines.append(line)
            else:
                new_lines.append(line)
        if not replaced:
            new_lines.append(record)
            changed = True
        if changed:
            self._write_lines(new_lines)
        return changed

    def _read_lines(self) -> list[str]:
        text = self.executor.read_file(self.path)
        return text.splitlines() if text else []

    def _write_lines(self, lines: list[str]) -> None:
        text = "\n".join(lines)
        if text:
            text += "\n"
        self.executor.write_file(self.path, content=text, mode=None)


class PrepareDiskOperation(Operation):
    """Partition, format, and mount a single disk for directory storage.

    Repartitioning erases the device. This is a point of no return: a
    failure midway leaves a partially prepared disk that must be inspected
    by hand.
    """

    kind = "prepare-disk"
    destructive = True

    def __init__(self, disk: FormattedDisk, fstab: Path, mount_dir: Path):
        self.disk = disk
        self.fstab = fstab
        self.mount_dir = mount_dir
        self.partition = partition_name(disk.device)

    @property
    def fstab_record(self) -> str:
        return f"{self.partition} {self.disk.mount_point} {self.disk.filesystem} defaults 0 2"

    def is_satisfied(self, executor: Executor) -> bool:
        return is_mounted(executor, self.disk.mount_point)

    def apply(self, executor: Executor) -> str:
        logger.info("Repartitioning %s for %s", self.disk.device, self.disk.mount_point)
        executor.run(["parted", "-s", self.disk.device, "mklabel", "gpt"])
        executor.run(
            ["parted", "-s", self.disk.device, "mkpart", "primary", self.disk.filesystem, "0%", "100%"]
        )
        executor.run(["udevadm", "settle"], check=False)
        force = FORCE_FLAGS.get(self.disk.filesystem, "-F")
        executor.run([f"mkfs.{self.disk.filesystem}", force, self.partition])
        executor.ensure_directory(self.mount_dir, mode=None)
        FstabManager(self.fstab, executor).ensure_entry(self.disk.mount_point, self.fstab_record)
        executor.run(["mount", self.disk.mount_point])
        return f"{self.partition} mounted on {self.disk.mount_point}"

    def describe(self) -> str:
        return (
            f"parted {self.disk.device} (gpt, one partition), mkfs.{self.disk.filesystem} "
            f"{self.partition}, mount on {self.disk.mount_point}"
        )
