from __future__ import annotations

from pathlib import Path
from typing import Any, Optional
import ipaddress
import re
import tomllib

from .errors import ConfigError, UnsupportedRaidLevel
from .types import (
    SUPPORTED_RAID_LEVELS,
    BackupPolicy,
    DiskPool,
    FirewallPolicy,
    FirewallRule,
    FormattedDisk,
    HostSpec,
    NetworkConfig,
    PackageConfig,
    RepositoryConfig,
    SshConfig,
    StorageEntry,
    TemplateRequest,
)

HOSTNAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$", re.IGNORECASE)
IDENTIFIER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_.:-]*$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
PORT_RE = re.compile(r"^\d{1,5}(:\d{1,5})?(,\d{1,5}(:\d{1,5})?)*$")

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
BACKUP_MODES = {"snapshot", "suspend", "stop"}
BACKUP_COMPRESSION = {"0", "1", "gzip", "lzo", "zstd"}
STORAGE_TYPES = {"zfspool", "dir"}
ZFS_CONTENT = {"images", "rootdir"}
DIR_CONTENT = {"images", "rootdir", "backup", "iso", "vztmpl", "snippets"}
FILESYSTEMS = {"ext4", "xfs"}
FIREWALL_DIRECTIONS = {"IN", "OUT"}
FIREWALL_ACTIONS = {"ACCEPT", "DROP", "REJECT"}

TOP_LEVEL_KEYS = {
    "hostname",
    "timezone",
    "network",
    "repositories",
    "packages",
    "ssh",
    "pools",
    "disks",
    "storage",
    "backup",
    "firewall",
    "templates",
    "container_templates",
}

TEMPLATE_CATALOG: dict[str, dict[str, Any]] = {
    "ubuntu-22.04": {
        "name": "ubuntu-2204-template",
        "vmid": 9000,
        "iso_name": "ubuntu-22.04-live-server-amd64.iso",
        "iso_source": "https://releases.ubuntu.com/22.04/ubuntu-22.04.3-live-server-amd64.iso",
    },
    "debian-12": {
        "name": "debian-12-template",
        "vmid": 9001,
        "iso_name": "debian-12-amd64-netinst.iso",
        "iso_source": "https://cdimage.debian.org/debian-cd/current/amd64/iso-cd/debian-12.4.0-amd64-netinst.iso",
    },
    "centos-stream-9": {
        "name": "centos-9-template",
        "vmid": 9002,
        "iso_name": "CentOS-Stream-9-latest-x86_64-dvd1.iso",
        "iso_source": "https://mirror.stream.centos.org/9-stream/BaseOS/x86_64/iso/CentOS-Stream-9-latest-x86_64-dvd1.iso",
    },
    "alpine-3.19": {
        "name": "alpine-3.19-template",
        "vmid": 9003,
        "iso_name": "alpine-standard-3.19.0-x86_64.iso",
        "iso_source": "https://dl-cdn.alpinelinux.org/alpine/v3.19/releases/x86_64/alpine-standard-3.19.0-x86_64.iso",
        "disk_size": "8G",
        "memory": 1024,
        "cores": 1,
    },
    # Licensing prevents an automatic download; the ISO must be copied in by hand.
    "windows-2022": {
        "name": "windows-2022-template",
        "vmid": 9004,
        "iso_name": "Windows_Server_2022.iso",
        "iso_source": None,
        "disk_size": "64G",
        "memory": 4096,
        "cores": 4,
        "ostype": "win11",
    },
}


class HostSpecLoader:
    """Loads a declarative host description from a TOML file."""

    def load(self, path: Path) -> HostSpec:
        path = Path(path)
        try:
            text = path.read_text()
        except FileNotFoundError:
            raise ConfigError("host description not found", source=str(path)) from None
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(str(exc), source=str(path)) from None
        return self.parse(data, source=str(path))

    def parse(self, data: dict[str, Any], *, source: Optional[str] = None) -> HostSpec:
        reader = _Reader(source)
        unknown = sorted(set(data) - TOP_LEVEL_KEYS)
        if unknown:
            raise reader.error(f"unknown keys {unknown}", unknown[0])

        pools = tuple(
            self._parse_pool(reader, raw, f"pools[{idx}]")
            for idx, raw in enumerate(reader.table_list(data, "pools"))
        )
        disks = tuple(
            self._parse_disk(reader, raw, f"disks[{idx}]")
            for idx, raw in enumerate(reader.table_list(data, "disks"))
        )
        storage = tuple(
            self._parse_storage(reader, raw, f"storage[{idx}]")
            for idx, raw in enumerate(reader.table_list(data, "storage"))
        )
        templates = tuple(
            self._parse_template(reader, raw, f"templates[{idx}]")
            for idx, raw in enumerate(reader.table_list(data, "templates"))
        )
        self._check_unique(reader, [p.name for p in pools], "pools", "name")
        self._check_unique(reader, [d.name for d in disks], "disks", "name")
        self._check_unique(reader, [s.id for s in storage], "storage", "id")
        self._check_unique(reader, [str(t.vmid) for t in templates], "templates", "vmid")
        devices = [dev for pool in pools for dev in pool.devices] + [disk.device for disk in disks]
        self._check_unique(reader, devices, "pools", "devices")

        hostname = reader.optional_str(data, "hostname")
        if hostname is not None and not HOSTNAME_RE.match(hostname):
            raise reader.error(f"'{hostname}' is not a valid hostname", "hostname")

        return HostSpec(
            hostname=hostname,
            timezone=reader.optional_str(data, "timezone"),
            network=self._parse_network(reader, data.get("network")),
            repositories=self._parse_repositories(reader, data.get("repositories")),
            packages=self._parse_packages(reader, data.get("packages")),
            ssh=self._parse_ssh(reader, data.get("ssh")),
            pools=pools,
            disks=disks,
            storage=storage,
            backup=self._parse_backup(reader, data.get("backup")),
            firewall=self._parse_firewall(reader, data.get("firewall")),
            templates=templates,
            container_templates=tuple(reader.str_list(data, "container_templates")),
        )

    @staticmethod
    def _check_unique(reader: "_Reader", values: list[str], section: str, key: str) -> None:
        seen: set[str] = set()
        for value in values:
            if value in seen:
                raise reader.error(f"duplicate {key} '{value}'", section)
            seen.add(value)

    @staticmethod
    def _parse_network(reader: "_Reader", raw: Any) -> Optional[NetworkConfig]:
        if raw is None:
            return None
        table = reader.table(raw, "network")
        address = reader.required_str(table, "address", "network")
        if "/" not in address:
            raise reader.error("address must include a prefix length (e.g. 192.168.1.10/24)", "network.address")
        try:
            ipaddress.ip_interface(address)
        except ValueError as exc:
            raise reader.error(str(exc), "network.address") from None
        gateway = reader.required_str(table, "gateway", "network")
        try:
            ipaddress.ip_address(gateway)
        except ValueError as exc:
            raise reader.error(str(exc), "network.gateway") from None
        return NetworkConfig(
            address=address,
            gateway=gateway,
            bridge=reader.optional_str(table, "bridge", "network") or "vmbr0",
            bridge_ports=reader.optional_str(table, "bridge_ports", "network") or "eth0",
            dns=reader.optional_str(table, "dns", "network"),
        )

    @staticmethod
    def _parse_repositories(reader: "_Reader", raw: Any) -> Optional[RepositoryConfig]:
        if raw is None:
            return None
        table = reader.table(raw, "repositories")
        return RepositoryConfig(
            suite=reader.optional_str(table, "suite", "repositories") or "bookworm",
            no_subscription=reader.boolean(table, "no_subscription", True, "repositories"),
            disable_enterprise=reader.boolean(table, "disable_enterprise", True, "repositories"),
        )

    @staticmethod
    def _parse_packages(reader: "_Reader", raw: Any) -> Optional[PackageConfig]:
        if raw is None:
            return None
        table = reader.table(raw, "packages")
        return PackageConfig(
            install=tuple(reader.str_list(table, "install", "packages")),
            upgrade=reader.boolean(table, "upgrade", False, "packages"),
        )

    @staticmethod
    def _parse_ssh(reader: "_Reader", raw: Any) -> Optional[SshConfig]:
        if raw is None:
            return None
        table = reader.table(raw, "ssh")
        return SshConfig(authorized_keys=tuple(reader.str_list(table, "authorized_keys", "ssh")))

    @staticmethod
    def _parse_pool(reader: "_Reader", raw: dict[str, Any], where: str) -> DiskPool:
        name = reader.identifier(raw, "name", where)
        raid_level = reader.required_str(raw, "raid_level", where)
        if raid_level not in SUPPORTED_RAID_LEVELS:
            raise UnsupportedRaidLevel(name, raid_level, source=reader.source)
        devices = reader.str_list(raw, "devices", where)
        minimum = SUPPORTED_RAID_LEVELS[raid_level]
        if len(devices) < minimum:
            raise reader.error(f"{raid_level} needs at least {minimum} devices, got {len(devices)}", f"{where}.devices")
        for device in devices:
            if not device.startswith("/dev/"):
                raise reader.error(f"device '{device}' must be an absolute /dev path", f"{where}.devices")
        properties = raw.get("properties", {"compression": "lz4", "atime": "off"})
        if not isinstance(properties, dict):
            raise reader.error("properties must be a table", f"{where}.properties")
        return DiskPool(
            name=name,
            raid_level=raid_level,
            devices=tuple(devices),
            purpose=reader.optional_str(raw, "purpose", where),
            properties=tuple((str(k), str(v)) for k, v in properties.items()),
        )

    @staticmethod
    def _parse_disk(reader: "_Reader", raw: dict[str, Any], where: str) -> FormattedDisk:
        device = reader.required_str(raw, "device", where)
        if not device.startswith("/dev/"):
            raise reader.error(f"device '{device}' must be an absolute /dev path", f"{where}.device")
        mount_point = reader.required_str(raw, "mount_point", where)
        if not mount_point.startswith("/"):
            raise reader.error("mount_point must be absolute", f"{where}.mount_point")
        filesystem = reader.optional_str(raw, "filesystem", where) or "ext4"
        reader.choice(filesystem, FILESYSTEMS, f"{where}.filesystem")
        return FormattedDisk(
            name=reader.identifier(raw, "name", where),
            device=device,
            mount_point=mount_point,
            filesystem=filesystem,
        )

    @staticmethod
    def _parse_storage(reader: "_Reader", raw: dict[str, Any], where: str) -> StorageEntry:
        storage_id = reader.identifier(raw, "id", where)
        storage_type = reader.required_str(raw, "type", where)
        reader.choice(storage_type, STORAGE_TYPES, f"{where}.type")
        content = reader.str_list(raw, "content", where)
        if not content:
            raise reader.error("content must list at least one content type", f"{where}.content")
        allowed = ZFS_CONTENT if storage_type == "zfspool" else DIR_CONTENT
        for item in content:
            reader.choice(item, allowed, f"{where}.content")
        pool = reader.optional_str(raw, "pool", where)
        path = reader.optional_str(raw, "path", where)
        if storage_type == "zfspool" and not pool:
            raise reader.error("zfspool storage requires a pool", f"{where}.pool")
        if storage_type == "dir":
            if not path and not pool:
                raise reader.error("dir storage requires a path or a pool dataset", f"{where}.path")
            # ZFS mounts datasets at /<pool>/<dataset> unless told otherwise.
            path = path or f"/{pool}"
            if not path.startswith("/"):
                raise reader.error("path must be absolute", f"{where}.path")
        return StorageEntry(id=storage_id, type=storage_type, content=tuple(content), pool=pool, path=path)

    @staticmethod
    def _parse_backup(reader: "_Reader", raw: Any) -> Optional[BackupPolicy]:
        if raw is None:
            return None
        table = reader.table(raw, "backup")
        schedule = reader.optional_str(table, "schedule", "backup") or "01:00"
        if not TIME_RE.match(schedule):
            raise reader.error(f"schedule '{schedule}' must be HH:MM", "backup.schedule")
        days = reader.str_list(table, "days", "backup") or ["sat"]
        for day in days:
            reader.choice(day, set(WEEKDAYS), "backup.days")
        retention = table.get("retention_count", 7)
        if isinstance(retention, bool) or not isinstance(retention, int) or retention < 1:
            raise reader.error("retention_count must be a positive integer", "backup.retention_count")
        compression = str(table.get("compression", "zstd"))
        reader.choice(compression, BACKUP_COMPRESSION, "backup.compression")
        mode = reader.optional_str(table, "mode", "backup") or "snapshot"
        reader.choice(mode, BACKUP_MODES, "backup.mode")
        job_id = table.get("job_id", "pvehost-backup")
        if not isinstance(job_id, str) or not IDENTIFIER_RE.match(job_id):
            raise reader.error("job_id must be an identifier", "backup.job_id")
        return BackupPolicy(
            schedule=schedule,
            days=tuple(sorted(set(days), key=WEEKDAYS.index)),
            retention_count=retention,
            compression=compression,
            mode=mode,
            storage=reader.optional_str(table, "storage", "backup") or "backup-storage",
            job_id=job_id,
            mail_to=reader.optional_str(table, "mail_to", "backup") or "root",
            verify=reader.boolean(table, "verify", True, "backup"),
        )

    @staticmethod
    def _parse_firewall(reader: "_Reader", raw: Any) -> Optional[FirewallPolicy]:
        if raw is None:
            return None
        table = reader.table(raw, "firewall")
        cidr = reader.required_str(table, "management_cidr", "firewall")
        reader.network(cidr, "firewall.management_cidr")
        policy_in = reader.optional_str(table, "policy_in", "firewall") or "DROP"
        policy_out = reader.optional_str(table, "policy_out", "firewall") or "ACCEPT"
        reader.choice(policy_in, FIREWALL_ACTIONS, "firewall.policy_in")
        reader.choice(policy_out, FIREWALL_ACTIONS, "firewall.policy_out")

        def rules(key: str) -> tuple[FirewallRule, ...]:
            return tuple(
                HostSpecLoader._parse_rule(reader, item, f"firewall.{key}[{idx}]")
                for idx, item in enumerate(reader.table_list(table, key, "firewall"))
            )

        guest_rules = rules("guest_rules") if "guest_rules" in table else None
        return FirewallPolicy(
            management_cidr=cidr,
            rules=rules("rules"),
            host_rules=rules("host_rules"),
            guest_rules=guest_rules,
            policy_in=policy_in,
            policy_out=policy_out,
            check=reader.boolean(table, "check", True, "firewall"),
        )

    @staticmethod
    def _parse_rule(reader: "_Reader", raw: dict[str, Any], where: str) -> FirewallRule:
        direction = (reader.optional_str(raw, "direction", where) or "IN").upper()
        reader.choice(direction, FIREWALL_DIRECTIONS, f"{where}.direction")
        action = (reader.optional_str(raw, "action", where) or "ACCEPT").upper()
        reader.choice(action, FIREWALL_ACTIONS, f"{where}.action")
        source = reader.optional_str(raw, "source", where)
        if source:
            reader.network(source, f"{where}.source")
        dport = raw.get("dport")
        if dport is not None:
            dport = str(dport)
            if not PORT_RE.match(dport):
                raise reader.error(f"'{dport}' is not a port, range, or list", f"{where}.dport")
            for port in re.split(r"[,:]", dport):
                if not 1 <= int(port) <= 65535:
                    raise reader.error(f"port {port} is outside 1-65535", f"{where}.dport")
        proto = reader.optional_str(raw, "proto", where)
        if dport and proto not in {"tcp", "udp"}:
            raise reader.error("dport requires proto tcp or udp", f"{where}.proto")
        return FirewallRule(
            direction=direction,
            action=action,
            proto=proto,
            source=source,
            dport=dport,
            comment=reader.optional_str(raw, "comment", where),
        )

    @staticmethod
    def _parse_template(reader: "_Reader", raw: dict[str, Any], where: str) -> TemplateRequest:
        os_id = reader.required_str(raw, "os_id", where)
        defaults = dict(TEMPLATE_CATALOG.get(os_id, {}))
        merged = {**defaults, **raw}
        for key in ("name", "vmid", "iso_name"):
            if merged.get(key) is None:
                raise reader.error(f"unknown os_id '{os_id}' requires '{key}'", f"{where}.{key}")
        iso_source = merged.get("iso_source")
        if iso_source is not None and "://" not in str(iso_source):
            raise reader.error("iso_source must be a download URL", f"{where}.iso_source")
        vmid = merged["vmid"]
        if isinstance(vmid, bool) or not isinstance(vmid, int) or not 100 <= vmid <= 999999999:
            raise reader.error("vmid must be an integer between 100 and 999999999", f"{where}.vmid")
        for key in ("memory", "cores"):
            value = merged.get(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
                raise reader.error(f"{key} must be a positive integer", f"{where}.{key}")
        disk_size = str(merged.get("disk_size", "32G"))
        if not re.fullmatch(r"\d+\s*[Gg]?", disk_size):
            raise reader.error(f"disk_size '{disk_size}' must be a number of GiB such as '32G'", f"{where}.disk_size")
        return TemplateRequest(
            os_id=os_id,
            vmid=vmid,
            name=str(merged["name"]),
            iso_name=str(merged["iso_name"]),
            iso_source=str(iso_source) if iso_source else None,
            storage=str(merged.get("storage", "vm-storage")),
            disk_size=disk_size,
            memory=int(merged.get("memory", 2048)),
            cores=int(merged.get("cores", 2)),
            ostype=str(merged.get("ostype", "l26")),
        )


class _Reader:
    """Typed accessors over raw TOML tables that raise ``ConfigError``."""

    def __init__(self, source: Optional[str]):
        self.source = source

    def error(self, message: str, key: Optional[str] = None) -> ConfigError:
        return ConfigError(message, source=self.source, key=key)

    def table(self, raw: Any, where: str) -> dict[str, Any]:
        if not isinstance(raw, dict):
            raise self.error("expected a table", where)
        return raw

    def table_list(self, data: dict[str, Any], key: str, where: Optional[str] = None) -> list[dict[str, Any]]:
        value = data.get(key, [])
        label = f"{where}.{key}" if where else key
        if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
            raise self.error("expected an array of tables", label)
        return value

    def required_str(self, data: dict[str, Any], key: str, where: str) -> str:
        value = data.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise self.error("is required", f"{where}.{key}")
        if not isinstance(value, str):
            raise self.error("must be a string", f"{where}.{key}")
        return value.strip()

    def optional_str(self, data: dict[str, Any], key: str, where: Optional[str] = None) -> Optional[str]:
        value = data.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise self.error("must be a string", f"{where}.{key}" if where else key)
        return value.strip() or None

    def identifier(self, data: dict[str, Any], key: str, where: str) -> str:
        value = self.required_str(data, key, where)
        if not IDENTIFIER_RE.match(value):
            raise self.error(f"'{value}' is not a valid identifier", f"{where}.{key}")
        return value

    def str_list(self, data: dict[str, Any], key: str, where: Optional[str] = None) -> list[str]:
        value = data.get(key, [])
        label = f"{where}.{key}" if where else key
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not all(isinstance(item, str) and item.strip() for item in value):
            raise self.error("expected a list of non-empty strings", label)
        return [item.strip() for item in value]

    def boolean(self, data: dict[str, Any], key: str, default: bool, where: str) -> bool:
        value = data.get(key, default)
        if not isinstance(value, bool):
            raise self.error("must be true or false", f"{where}.{key}")
        return value

    def choice(self, value: str, allowed: set[str], key: str) -> None:
        if value not in allowed:
            raise self.error(f"'{value}' is not one of {sorted(allowed)}", key)

    def network(self, value: str, key: str) -> None:
        try:
            ipaddress.ip_network(value, strict=False)
        except ValueError as exc:
            raise self.error(str(exc), key) from None
