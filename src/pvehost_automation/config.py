from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib

from .errors import ConfigError


DEFAULT_SETTINGS = Path("/etc/pvehost/main.conf")
DEFAULT_HOST_SPEC = Path("/etc/pvehost/host.toml")
DEFAULT_RUN_LOG = Path("/var/log/pvehost/runs.jsonl")

FAILURE_POLICIES = {"halt", "continue"}


@dataclass
class PveHostSettings:
    host_spec: Path = DEFAULT_HOST_SPEC
    run_log: Path = DEFAULT_RUN_LOG
    root: Path = Path("/")
    failure_policy: str = "halt"


def load_settings(path: Path) -> PveHostSettings:
    if not path.exists():
        return PveHostSettings()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(exc.msg if hasattr(exc, "msg") else str(exc), source=str(path)) from None
    defaults = data.get("defaults", {})
    host_spec = defaults.get("host_spec", DEFAULT_HOST_SPEC)
    run_log = defaults.get("run_log", DEFAULT_RUN_LOG)
    root = defaults.get("root", "/")
    failure_policy = str(defaults.get("failure_policy", "halt"))
    if failure_policy not in FAILURE_POLICIES:
        raise ConfigError(
            f"failure_policy must be one of {sorted(FAILURE_POLICIES)}",
            source=str(path),
            key="defaults.failure_policy",
        )
    return PveHostSettings(
        host_spec=Path(host_spec),
        run_log=Path(run_log),
        root=Path(root),
        failure_policy=failure_policy,
    )
