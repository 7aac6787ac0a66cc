from __future__ import annotations

from pathlib import Path
from typing import Optional

from .base import Operation
from ..executors import Executor


class WriteFileOperation(Operation):
    """Ensure a file exists with exactly the rendered contents."""

    kind = "write-file"

    def __init__(
        self,
        path: Path,
        content: str,
        *,
        mode: Optional[int] = None,
        parent_mode: Optional[int] = None,
        kind: Optional[str] = None,
    ):
        self.path = Path(path)
        self.content = content
        self.mode = mode
        self.parent_mode = parent_mode
        if kind:
            self.kind = kind

    def is_satisfied(self, executor: Executor) -> bool:
        if executor.read_file(self.path) != self.content:
            return False
        return self.mode is None or executor.file_mode(self.path) == self.mode

    def apply(self, executor: Executor) -> str:
        details: list[str] = []
        if self.parent_mode is not None:
            changed, detail = executor.ensure_directory(self.path.parent, mode=self.parent_mode)
            if changed:
                details.append(f"dir {detail}")
        changed, detail = executor.write_file(self.path, content=self.content, mode=self.mode)
        if changed:
            details.append(detail)
        return f"wrote {self.path}" + (f" ({'; '.join(details)})" if details else "")

    def describe(self) -> str:
        mode = f" mode={self.mode:04o}" if self.mode is not None else ""
        return f"write {self.path}{mode}"


class DisableRepositoryOperation(Operation):
    """Comment out every active ``deb`` line in an apt sources list."""

    kind = "disable-repository"

    def __init__(self, path: Path):
        self.path = Path(path)

    def is_satisfied(self, executor: Executor) -> bool:
        current = executor.read_file(self.path)
        if current is None:
            return True
        return not any(line.startswith("deb") for line in current.splitlines())

    def apply(self, executor: Executor) -> str:
        current = executor.read_file(self.path) or ""
        lines = [f"#{line}" if line.startswith("deb") else line for line in current.splitlines()]
        text = "\n".join(lines)
        if text:
            text += "\n"
        executor.write_file(self.path, content=text, mode=None)
        return f"disabled {self.path}"

    def describe(self) -> str:
        return f"comment out deb lines in {self.path}"
