from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class HostLayout:
    """Filesystem locations the provisioner manages, relative to ``root``."""

    root: Path = Path("/")

    def _path(self, relative: str) -> Path:
        return self.root / relative

    def host_path(self, path: Path) -> str:
        """Return ``path`` as the managed host sees it, without the root prefix."""

        return "/" + str(path.relative_to(self.root))

    @property
    def pve_dir(self) -> Path:
        return self._path("etc/pve")

    @property
    def firewall_dir(self) -> Path:
        return self.pve_dir / "firewall"

    @property
    def cluster_fw(self) -> Path:
        return self.firewall_dir / "cluster.fw"

    @property
    def guest_fw(self) -> Path:
        return self.firewall_dir / "vm.fw"

    def host_fw(self, node: str) -> Path:
        return self.pve_dir / "nodes" / node / "host.fw"

    @property
    def jobs_cfg(self) -> Path:
        return self.pve_dir / "jobs.cfg"

    @property
    def interfaces(self) -> Path:
        return self._path("etc/network/interfaces")

    @property
    def no_subscription_list(self) -> Path:
        return self._path("etc/apt/sources.list.d/pve-no-subscription.list")

    @property
    def enterprise_list(self) -> Path:
        return self._path("etc/apt/sources.list.d/pve-enterprise.list")

    @property
    def fstab(self) -> Path:
        return self._path("etc/fstab")

    @property
    def cron_dir(self) -> Path:
        return self._path("etc/cron.d")

    @property
    def bin_dir(self) -> Path:
        return self._path("usr/local/bin")

    @property
    def iso_dir(self) -> Path:
        return self._path("var/lib/vz/template/iso")

    @property
    def authorized_keys(self) -> Path:
        return self._path("root/.ssh/authorized_keys")

    @property
    def verify_backups_script(self) -> Path:
        return self.bin_dir / "verify-backups.sh"

    @property
    def check_firewall_script(self) -> Path:
        return self.bin_dir / "check-firewall.sh"

    @property
    def clone_script(self) -> Path:
        return self.bin_dir / "clone-vm-template.sh"

    @property
    def backup_cron(self) -> Path:
        return self.cron_dir / "backup-verification"

    @property
    def firewall_cron(self) -> Path:
        return self.cron_dir / "firewall-check"

    def managed_files(self, node: Optional[str]) -> list[Path]:
        paths = [
            self.cluster_fw,
            self.guest_fw,
            self.jobs_cfg,
            self.interfaces,
            self.no_subscription_list,
            self.enterprise_list,
            self.fstab,
            self.authorized_keys,
            self.verify_backups_script,
            self.check_firewall_script,
            self.clone_script,
            self.backup_cron,
            self.firewall_cron,
        ]
        if node:
            paths.insert(1, self.host_fw(node))
        return paths
