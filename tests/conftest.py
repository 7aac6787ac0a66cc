from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import pytest

from pvehost_automation.errors import ExternalCommandFailure
from pvehost_automation.executors import CommandResult, Executor
from pvehost_automation.layout import HostLayout
from pvehost_automation.types import DiskPool, HostSpec, StorageEntry

GOLDEN_DIR = Path(__file__).parent / "golden"


class FakeExecutor(Executor):
    """Records commands and serves canned output keyed by command prefix.

    ``on(prefix, ...)`` registers a response; several calls for the same prefix
    queue responses, and the last one keeps repeating. Unknown commands
    succeed with empty output.
    """

    def __init__(self, files: Optional[dict[str, str]] = None):
        self.commands: list[list[str]] = []
        self.files: dict[str, str] = dict(files or {})
        self.dirs: set[str] = set()
        self.modes: dict[str, int] = {}
        self._responses: dict[tuple[str, ...], list[tuple[int, str, str]]] = {}

    def on(self, *prefix: str, stdout: str = "", returncode: int = 0, stderr: str = "") -> "FakeExecutor":
        self._responses.setdefault(tuple(prefix), []).append((returncode, stdout, stderr))
        return self

    def run(self, command: Sequence[str], *, check: bool = True, timeout: Optional[float] = None) -> CommandResult:
        cmd = [str(part) for part in command]
        self.commands.append(cmd)
        returncode, stdout, stderr = 0, "", ""
        best: Optional[tuple[str, ...]] = None
        for prefix in self._responses:
            if tuple(cmd[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is not None:
            queue = self._responses[best]
            returncode, stdout, stderr = queue.pop(0) if len(queue) > 1 else queue[0]
        if check and returncode != 0:
            raise ExternalCommandFailure(cmd, returncode, stdout, stderr)
        return CommandResult(cmd, stdout, stderr, returncode)

    def ran(self, *prefix: str) -> bool:
        return any(tuple(cmd[: len(prefix)]) == prefix for cmd in self.commands)

    def read_file(self, path: Path) -> Optional[str]:
        return self.files.get(str(path))

    def file_mode(self, path: Path) -> Optional[int]:
        return self.modes.get(str(path))

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        changed = self.files.get(str(path)) != content
        self.files[str(path)] = content
        if mode is not None:
            self.modes[str(path)] = mode
        return changed, "content" if changed else "noop"

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        created = str(path) not in self.dirs
        self.dirs.add(str(path))
        if mode is not None:
            self.modes[str(path)] = mode
        return created, "created" if created else "noop"

    def list_dir(self, path: Path) -> list[str]:
        return sorted(Path(name).name for name in self.files if Path(name).parent == path)

    def exists(self, path: Path) -> bool:
        return str(path) in self.files or str(path) in self.dirs


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def layout() -> HostLayout:
    return HostLayout()


def golden(name: str) -> str:
    return (GOLDEN_DIR / name).read_text()


def nvme_spec() -> HostSpec:
    return HostSpec(
        pools=(DiskPool(name="nvme-mirror", raid_level="mirror", devices=("/dev/nvme0n1", "/dev/nvme1n1")),),
        storage=(StorageEntry(id="vm-storage", type="zfspool", pool="nvme-mirror", content=("images", "rootdir")),),
    )
