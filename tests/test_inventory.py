from pathlib import Path
import textwrap

import pytest

from pvehost_automation.errors import ConfigError, UnsupportedRaidLevel
from pvehost_automation.inventory import HostSpecLoader

EXAMPLE = Path(__file__).resolve().parents[1] / "examples" / "host.toml"


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "host.toml"
    path.write_text(textwrap.dedent(text).strip() + "\n")
    return path


def test_loads_example_description() -> None:
    spec = HostSpecLoader().load(EXAMPLE)

    assert spec.hostname == "bard"
    assert spec.timezone == "America/New_York"
    assert spec.network is not None and spec.network.bridge == "vmbr0"
    assert [pool.name for pool in spec.pools] == ["nvme-mirror", "hdd-mirror"]
    assert dict(spec.pools[1].properties)["recordsize"] == "1M"
    assert dict(spec.pools[0].properties) == {"compression": "lz4", "atime": "off"}
    assert [entry.id for entry in spec.storage] == ["vm-storage", "ct-storage", "backup-storage", "iso-templates"]
    assert spec.backup is not None and spec.backup.retention_count == 7
    assert spec.firewall is not None and spec.firewall.rules[0].dport == "9100"
    assert [t.vmid for t in spec.templates] == [9000, 9001, 9003]


def test_dir_storage_on_dataset_defaults_to_mountpoint(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [[storage]]
        id = "backup-storage"
        type = "dir"
        pool = "hdd-mirror/backups"
        content = ["backup"]
        """,
    )

    entry = HostSpecLoader().load(path).storage[0]

    assert entry.path == "/hdd-mirror/backups"
    assert entry.pool_name == "hdd-mirror"
    assert entry.dataset == "hdd-mirror/backups"


def test_template_catalog_fills_defaults(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [[templates]]
        os_id = "windows-2022"
        """,
    )

    template = HostSpecLoader().load(path).templates[0]

    assert template.vmid == 9004
    assert template.iso_source is None
    assert template.downloadable is False
    assert (template.memory, template.cores, template.ostype) == (4096, 4, "win11")


def test_unknown_os_requires_explicit_fields(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [[templates]]
        os_id = "rocky-9"
        """,
    )

    with pytest.raises(ConfigError, match="rocky-9"):
        HostSpecLoader().load(path)


def test_unsupported_raid_level_is_config_error(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [[pools]]
        name = "fast"
        raid_level = "raid5"
        devices = ["/dev/sda", "/dev/sdb", "/dev/sdc"]
        """,
    )

    with pytest.raises(UnsupportedRaidLevel) as excinfo:
        HostSpecLoader().load(path)

    assert isinstance(excinfo.value, ConfigError)
    assert excinfo.value.raid_level == "raid5"


def test_pool_needs_enough_devices(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [[pools]]
        name = "tank"
        raid_level = "raidz2"
        devices = ["/dev/sda", "/dev/sdb"]
        """,
    )

    with pytest.raises(ConfigError, match="at least 3 devices"):
        HostSpecLoader().load(path)


def test_pool_missing_devices(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [[pools]]
        name = "tank"
        raid_level = "mirror"
        """,
    )

    with pytest.raises(ConfigError):
        HostSpecLoader().load(path)


def test_device_used_twice(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [[pools]]
        name = "tank"
        raid_level = "mirror"
        devices = ["/dev/sda", "/dev/sdb"]

        [[disks]]
        name = "scratch"
        device = "/dev/sdb"
        mount_point = "/mnt/scratch"
        """,
    )

    with pytest.raises(ConfigError, match="duplicate devices '/dev/sdb'"):
        HostSpecLoader().load(path)


def test_duplicate_storage_id(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [[storage]]
        id = "local-dir"
        type = "dir"
        path = "/srv/a"
        content = ["iso"]

        [[storage]]
        id = "local-dir"
        type = "dir"
        path = "/srv/b"
        content = ["iso"]
        """,
    )

    with pytest.raises(ConfigError, match="duplicate id"):
        HostSpecLoader().load(path)


def test_zfspool_rejects_backup_content(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [[storage]]
        id = "backup-storage"
        type = "zfspool"
        pool = "hdd-mirror/backups"
        content = ["backup"]
        """,
    )

    with pytest.raises(ConfigError, match="storage\\[0\\].content"):
        HostSpecLoader().load(path)


@pytest.mark.parametrize(
    "table, message",
    [
        ('schedule = "25:00"', "HH:MM"),
        ('days = ["funday"]', "funday"),
        ("retention_count = 0", "positive integer"),
        ('compression = "9"', "backup.compression"),
        ('mode = "live"', "backup.mode"),
    ],
)
def test_invalid_backup_policy(tmp_path: Path, table: str, message: str) -> None:
    path = write(tmp_path, f"[backup]\n{table}\n")

    with pytest.raises(ConfigError, match=message):
        HostSpecLoader().load(path)


def test_backup_days_are_sorted_and_unique(tmp_path: Path) -> None:
    path = write(tmp_path, '[backup]\ndays = ["sun", "wed", "sun"]\n')

    assert HostSpecLoader().load(path).backup.days == ("wed", "sun")


def test_firewall_requires_valid_cidr(tmp_path: Path) -> None:
    path = write(tmp_path, '[firewall]\nmanagement_cidr = "192.168.1.0/33"\n')

    with pytest.raises(ConfigError, match="firewall.management_cidr"):
        HostSpecLoader().load(path)


def test_firewall_rule_with_port_needs_protocol(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [firewall]
        management_cidr = "192.168.1.0/24"

        [[firewall.rules]]
        dport = "443"
        """,
    )

    with pytest.raises(ConfigError, match="proto"):
        HostSpecLoader().load(path)


@pytest.mark.parametrize("dport", ["99999", "0", "22,70000", "1000:65536"])
def test_firewall_rule_port_out_of_range(tmp_path: Path, dport: str) -> None:
    path = write(
        tmp_path,
        f"""
        [firewall]
        management_cidr = "192.168.1.0/24"

        [[firewall.rules]]
        proto = "tcp"
        dport = "{dport}"
        """,
    )

    with pytest.raises(ConfigError, match=r"firewall\.rules\[0\]\.dport: port \d+ is outside 1-65535"):
        HostSpecLoader().load(path)


def test_firewall_rule_accepts_highest_port(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [firewall]
        management_cidr = "192.168.1.0/24"

        [[firewall.rules]]
        proto = "udp"
        dport = "60000:65535"
        """,
    )

    assert HostSpecLoader().load(path).firewall.rules[0].dport == "60000:65535"


def test_network_address_needs_prefix(tmp_path: Path) -> None:
    path = write(tmp_path, '[network]\naddress = "192.168.1.10"\ngateway = "192.168.1.1"\n')

    with pytest.raises(ConfigError, match="network.address"):
        HostSpecLoader().load(path)


def test_optional_string_error_names_full_key(tmp_path: Path) -> None:
    path = write(tmp_path, '[network]\naddress = "192.168.1.10/24"\ngateway = "192.168.1.1"\nbridge = 1\n')

    with pytest.raises(ConfigError, match=r"network\.bridge: must be a string"):
        HostSpecLoader().load(path)


def test_rule_string_error_names_full_key(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [firewall]
        management_cidr = "192.168.1.0/24"

        [[firewall.rules]]
        source = 10
        """,
    )

    with pytest.raises(ConfigError, match=r"firewall\.rules\[0\]\.source"):
        HostSpecLoader().load(path)


def test_invalid_hostname(tmp_path: Path) -> None:
    path = write(tmp_path, 'hostname = "bard_01"\n')

    with pytest.raises(ConfigError, match="hostname"):
        HostSpecLoader().load(path)


def test_unknown_top_level_key(tmp_path: Path) -> None:
    path = write(tmp_path, 'hostnme = "bard"\n')

    with pytest.raises(ConfigError, match="unknown keys"):
        HostSpecLoader().load(path)


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        HostSpecLoader().load(tmp_path / "absent.toml")


def test_malformed_toml_reports_source(tmp_path: Path) -> None:
    path = tmp_path / "broken.toml"
    path.write_text("[[pools]\nname = 'x'\n")

    with pytest.raises(ConfigError) as excinfo:
        HostSpecLoader().load(path)

    assert str(path) in str(excinfo.value)


def test_empty_description_is_valid(tmp_path: Path) -> None:
    spec = HostSpecLoader().load(write(tmp_path, "# nothing declared"))

    assert spec.pools == ()
    assert spec.backup is None
