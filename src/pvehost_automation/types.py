from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .operations.base import Operation


SUPPORTED_RAID_LEVELS = {"mirror": 2, "raidz1": 2, "raidz2": 3, "raidz3": 4}


@dataclass(frozen=True)
class NetworkConfig:
    address: str
    gateway: str
    bridge: str = "vmbr0"
    bridge_ports: str = "eth0"
    dns: Optional[str] = None


@dataclass(frozen=True)
class RepositoryConfig:
    suite: str = "bookworm"
    no_subscription: bool = True
    disable_enterprise: bool = True


@dataclass(frozen=True)
class PackageConfig:
    install: tuple[str, ...] = ()
    upgrade: bool = False


@dataclass(frozen=True)
class SshConfig:
    authorized_keys: tuple[str, ...] = ()


@dataclass(frozen=True)
class DiskPool:
    name: str
    raid_level: str
    devices: tuple[str, ...]
    purpose: Optional[str] = None
    properties: tuple[tuple[str, str], ...] = (("compression", "lz4"), ("atime", "off"))


@dataclass(frozen=True)
class FormattedDisk:
    name: str
    device: str
    mount_point: str
    filesystem: str = "ext4"


@dataclass(frozen=True)
class StorageEntry:
    id: str
    type: str
    content: tuple[str, ...]
    pool: Optional[str] = None
    path: Optional[str] = None

    @property
    def pool_name(self) -> Optional[str]:
        if not self.pool:
            return None
        return self.pool.split("/", 1)[0]

    @property
    def dataset(self) -> Optional[str]:
        if self.pool and "/" in self.pool:
            return self.pool
        return None


@dataclass(frozen=True)
class BackupPolicy:
    schedule: str = "01:00"
    days: tuple[str, ...] = ("sat",)
    retention_count: int = 7
    compression: str = "zstd"
    mode: str = "snapshot"
    storage: str = "backup-storage"
    job_id: str = "pvehost-backup"
    mail_to: str = "root"
    verify: bool = True


@dataclass(frozen=True)
class FirewallRule:
    direction: str
    action: str
    proto: Optional[str] = None
    source: Optional[str] = None
    dport: Optional[str] = None
    comment: Optional[str] = None

    def render(self) -> str:
        parts = [self.direction, self.action]
        if self.proto:
            parts.extend(["-p", self.proto])
        if self.source:
            parts.extend(["-source", self.source])
        if self.dport:
            parts.extend(["-dport", self.dport])
        return " ".join(parts)


@dataclass(frozen=True)
class FirewallPolicy:
    management_cidr: str
    rules: tuple[FirewallRule, ...] = ()
    host_rules: tuple[FirewallRule, ...] = ()
    guest_rules: Optional[tuple[FirewallRule, ...]] = None
    policy_in: str = "DROP"
    policy_out: str = "ACCEPT"
    check: bool = True


@dataclass(frozen=True)
class TemplateRequest:
    os_id: str
    vmid: int
    name: str
    iso_name: str
    iso_source: Optional[str] = None
    storage: str = "vm-storage"
    disk_size: str = "32G"
    memory: int = 2048
    cores: int = 2
    ostype: str = "l26"

    @property
    def downloadable(self) -> bool:
        return bool(self.iso_source) and "://" in str(self.iso_source)


@dataclass(frozen=True)
class HostSpec:
    hostname: Optional[str] = None
    timezone: Optional[str] = None
    network: Optional[NetworkConfig] = None
    repositories: Optional[RepositoryConfig] = None
    packages: Optional[PackageConfig] = None
    ssh: Optional[SshConfig] = None
    pools: tuple[DiskPool, ...] = ()
    disks: tuple[FormattedDisk, ...] = ()
    storage: tuple[StorageEntry, ...] = ()
    backup: Optional[BackupPolicy] = None
    firewall: Optional[FirewallPolicy] = None
    templates: tuple[TemplateRequest, ...] = ()
    container_templates: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProbedState:
    pools: frozenset[str] = frozenset()
    datasets: frozenset[str] = frozenset()
    storage_ids: frozenset[str] = frozenset()
    mounts: frozenset[str] = frozenset()
    vm_ids: frozenset[int] = frozenset()
    template_ids: frozenset[int] = frozenset()
    container_templates: frozenset[str] = frozenset()
    iso_files: frozenset[str] = frozenset()
    installed_packages: frozenset[str] = frozenset()
    pending_upgrades: int = 0
    hostname: Optional[str] = None
    timezone: Optional[str] = None
    files: dict[str, Optional[str]] = field(default_factory=dict, hash=False)
    modes: dict[str, Optional[int]] = field(default_factory=dict, hash=False)

    def file(self, path: Any) -> Optional[str]:
        return self.files.get(str(path))

    def mode(self, path: Any) -> Optional[int]:
        return self.modes.get(str(path))


@dataclass(frozen=True)
class Action:
    id: str
    kind: str
    resource: str
    operation: "Operation" = field(compare=False, repr=False)
    depends_on: tuple[str, ...] = ()

    @property
    def destructive(self) -> bool:
        return bool(getattr(self.operation, "destructive", False))

    def describe(self) -> str:
        return self.operation.describe()


@dataclass(frozen=True)
class Plan:
    actions: tuple[Action, ...] = ()

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self):
        return iter(self.actions)

    @property
    def ids(self) -> list[str]:
        return [action.id for action in self.actions]

    @property
    def kinds(self) -> list[str]:
        return [action.kind for action in self.actions]


class Status(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RunResult:
    action_id: str
    kind: str
    resource: str
    status: Status
    message: str = ""

    @property
    def failed(self) -> bool:
        return self.status is Status.FAILED
