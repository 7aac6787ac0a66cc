from __future__ import annotations

from typing import Optional, Sequence


class PveHostError(Exception):
    """Base class for every error raised by pvehost."""


class ConfigError(PveHostError):
    """The host description is missing a field or holds an invalid value."""

    def __init__(self, message: str, *, source: Optional[str] = None, key: Optional[str] = None):
        self.source = source
        self.key = key
        parts = []
        if source:
            parts.append(str(source))
        if key:
            parts.append(key)
        prefix = ":".join(parts)
        super().__init__(f"{prefix}: {message}" if prefix else message)


class UnsupportedRaidLevel(ConfigError):
    def __init__(self, pool: str, raid_level: str, *, source: Optional[str] = None):
        self.pool = pool
        self.raid_level = raid_level
        super().__init__(
            f"pool '{pool}' uses unsupported raid level '{raid_level}'",
            source=source,
            key=f"pools.{pool}.raid_level",
        )


class PreconditionUnmet(PveHostError):
    """A resource the plan relies on is neither present nor declared."""


class ExternalCommandFailure(PveHostError):
    """A delegated host tool exited nonzero."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(self._summary())

    def _summary(self) -> str:
        text = f"{' '.join(self.command)} exited {self.returncode}"
        for output in (self.stderr, self.stdout):
            stripped = (output or "").strip()
            if stripped:
                line = stripped.splitlines()[-1]
                line = (line[:157] + "...") if len(line) > 160 else line
                return f"{text}: {line}"
        return text
