from __future__ import annotations

from pathlib import Path
import logging
import re

from .base import Operation
from ..executors import Executor
from ..types import TemplateRequest

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 3600.0


def parse_vm_ids(output: str) -> set[int]:
    """Return the VMIDs listed by ``qm list``."""

    ids: set[int] = set()
    for line in output.splitlines():
        parts = line.split()
        if parts and parts[0].isdigit():
            ids.add(int(parts[0]))
    return ids


def parse_container_templates(output: str) -> set[str]:
    """Return template file names from ``pveam list <storage>``."""

    names: set[str] = set()
    for line in output.splitlines():
        parts = line.split()
        if not parts or parts[0] == "NAME":
            continue
        volid = parts[0]
        names.add(volid.rsplit("/", 1)[-1])
    return names


def is_vm_template(executor: Executor, vmid: int) -> bool:
    """True when ``qm config <vmid>`` marks the guest as a template."""

    result = executor.run(["qm", "config", str(vmid)], check=False)
    if result.returncode != 0:
        return False
    return any(line.strip() == "template: 1" for line in result.stdout.splitlines())


def disk_size_gib(size: str) -> str:
    match = re.fullmatch(r"(\d+)\s*[Gg]?", size.strip())
    if not match:
        raise ValueError(f"disk size '{size}' must be a number of GiB such as '32G'")
    return match.group(1)


class FetchIsoOperation(Operation):
    """Download an installer ISO into the local ISO store."""

    kind = "fetch-template"

    def __init__(self, url: str, target: Path):
        self.url = url
        self.target = target

    def is_satisfied(self, executor: Executor) -> bool:
        return executor.exists(self.target)

    def apply(self, executor: Executor) -> str:
        executor.ensure_directory(self.target.parent, mode=None)
        partial = self.target.with_name(self.target.name + ".part")
        executor.run(["wget", "-q", "-O", str(partial), self.url], timeout=DOWNLOAD_TIMEOUT)
        executor.run(["mv", str(partial), str(self.target)])
        return f"downloaded {self.target.name}"

    def describe(self) -> str:
        return f"wget {self.url} -> {self.target}"


class CreateVmTemplateOperation(Operation):
    """Create an empty VM booting from the installer ISO and turn it into a template."""

    kind = "create-vm-template"

    def __init__(self, request: TemplateRequest, *, bridge: str = "vmbr0", iso_storage: str = "local"):
        self.request = request
        self.bridge = bridge
        self.iso_storage = iso_storage
        self.size = disk_size_gib(request.disk_size)

    @property
    def commands(self) -> list[list[str]]:
        req = self.request
        vmid = str(req.vmid)
        return [
            [
                "qm", "create", vmid,
                "--name", req.name,
                "--memory", str(req.memory),
                "--cores", str(req.cores),
                "--net0", f"virtio,bridge={self.bridge}",
                "--scsihw", "virtio-scsi-pci",
                "--scsi0", f"{req.storage}:{self.size}",
                "--boot", "order=scsi0;ide2",
                "--ide2", f"{self.iso_storage}:iso/{req.iso_name},media=cdrom",
                "--ostype", req.ostype,
                "--serial0", "socket",
                "--vga", "serial0",
                "--onboot", "0",
                "--agent", "1",
            ],
            ["qm", "template", vmid],
        ]

    def is_satisfied(self, executor: Executor) -> bool:
        return is_vm_template(executor, self.request.vmid)

    def apply(self, executor: Executor) -> str:
        for command in self.commands:
            executor.run(command)
        return f"template {self.request.name} (vmid {self.request.vmid})"

    def describe(self) -> str:
        return f"qm create {self.request.vmid} ({self.request.name}) + qm template"


class DownloadContainerTemplateOperation(Operation):
    """Fetch an LXC template from the Proxmox appliance index."""

    kind = "fetch-template"

    def __init__(self, template: str, storage: str = "local"):
        self.template = template
        self.storage = storage

    def is_satisfied(self, executor: Executor) -> bool:
        result = executor.run(["pveam", "list", self.storage], check=False)
        if result.returncode != 0:
            return False
        return self.template in parse_container_templates(result.stdout)

    def apply(self, executor: Executor) -> str:
        executor.run(["pveam", "update"], check=False)
        executor.run(["pveam", "download", self.storage, self.template], timeout=DOWNLOAD_TIMEOUT)
        return f"downloaded {self.template}"

    def describe(self) -> str:
        return f"pveam download {self.storage} {self.template}"
