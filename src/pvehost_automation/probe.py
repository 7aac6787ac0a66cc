"""Read-only snapshot of the host state the planner compares against."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence
import logging

from .executors import CommandResult, Executor
from .layout import HostLayout
from .operations.package import DpkgQuery, pending_upgrades
from .operations.storage import parse_storage_ids
from .operations.system import current_timezone
from .operations.templates import is_vm_template, parse_container_templates, parse_vm_ids
from .types import HostSpec, ProbedState

logger = logging.getLogger(__name__)


class HostProber:
    def __init__(self, executor: Executor, layout: HostLayout):
        self.executor = executor
        self.layout = layout

    def probe(self, spec: HostSpec) -> ProbedState:
        hostname = self._hostname()
        node = spec.hostname or hostname
        files: dict[str, Optional[str]] = {}
        modes: dict[str, Optional[int]] = {}
        for path in self.layout.managed_files(node):
            files[str(path)], modes[str(path)] = self._read(path)

        packages: frozenset[str] = frozenset()
        upgrades = 0
        if spec.packages:
            query = DpkgQuery()
            packages = frozenset(pkg for pkg in spec.packages.install if query.check(self.executor, pkg))
            if spec.packages.upgrade:
                upgrades = pending_upgrades(self.executor)

        vm_ids = frozenset(self._parsed(["qm", "list"], parse_vm_ids))
        requested = {request.vmid for request in spec.templates}
        template_ids = frozenset(vmid for vmid in sorted(vm_ids & requested) if is_vm_template(self.executor, vmid))

        state = ProbedState(
            pools=frozenset(self._column(["zpool", "list", "-H", "-o", "name"])),
            datasets=frozenset(self._column(["zfs", "list", "-H", "-o", "name"])),
            storage_ids=frozenset(self._parsed(["pvesm", "status"], parse_storage_ids)),
            mounts=frozenset(self._column(["findmnt", "-rn", "-o", "TARGET"])),
            vm_ids=vm_ids,
            template_ids=template_ids,
            container_templates=frozenset(self._parsed(["pveam", "list", "local"], parse_container_templates)),
            iso_files=frozenset(self.executor.list_dir(self.layout.iso_dir)),
            installed_packages=packages,
            pending_upgrades=upgrades,
            hostname=hostname,
            timezone=current_timezone(self.executor),
            files=files,
            modes=modes,
        )
        logger.debug(
            "probed pools=%s storage=%s vms=%s",
            sorted(state.pools),
            sorted(state.storage_ids),
            sorted(state.vm_ids),
        )
        return state

    def _read(self, path: Path) -> tuple[Optional[str], Optional[int]]:
        try:
            return self.executor.read_file(path), self.executor.file_mode(path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Cannot read %s; treating as unknown: %s", path, exc)
            return None, None

    def _hostname(self) -> Optional[str]:
        result = self._run(["hostname"])
        if result is None:
            return None
        return result.stdout.strip() or None

    def _column(self, command: Sequence[str]) -> list[str]:
        result = self._run(command)
        if result is None:
            return []
        return result.lines

    def _parsed(self, command: Sequence[str], parser) -> set:
        result = self._run(command)
        if result is None:
            return set()
        return parser(result.stdout)

    def _run(self, command: Sequence[str]) -> Optional[CommandResult]:
        result = self.executor.run(command, check=False)
        if result.returncode != 0:
            logger.warning(
                "%s exited %s; treating as empty: %s",
                " ".join(command),
                result.returncode,
                result.stderr.strip() or result.stdout.strip(),
            )
            return None
        return result
