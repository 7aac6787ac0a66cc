"""Turn a declared ``HostSpec`` and a probed snapshot into an ordered plan.

Only differences produce actions: a pool, storage entry, file or template
that already matches the declaration is left out, so planning again after a
successful run yields an empty plan. Every validation that can fail does so
before the plan is returned, so nothing destructive starts on a half-valid
description.
"""

from __future__ import annotations

from typing import Iterable, Optional
import logging

from .errors import PreconditionUnmet, UnsupportedRaidLevel
from .layout import HostLayout
from .operations import (
    AddStorageOperation,
    CreateDatasetOperation,
    CreatePoolOperation,
    CreateVmTemplateOperation,
    CronOperation,
    DisableRepositoryOperation,
    DownloadContainerTemplateOperation,
    FetchIsoOperation,
    HostnameOperation,
    InstallPackagesOperation,
    Operation,
    PrepareDiskOperation,
    ReloadFirewallOperation,
    ScheduleBackupJobOperation,
    TimezoneOperation,
    UpgradePackagesOperation,
    WriteFileOperation,
)
from .operations.backup import has_section
from .operations.firewall import render_cluster_fw, render_guest_fw, render_host_fw
from .rendering import render
from .types import SUPPORTED_RAID_LEVELS, Action, HostSpec, Plan, ProbedState, StorageEntry

logger = logging.getLogger(__name__)


def order_actions(actions: Iterable[Action]) -> list[Action]:
    """Stable topological sort: keep emission order wherever dependencies allow.

    Dependencies on actions outside ``actions`` are already satisfied on the
    host and are ignored.
    """

    remaining = list(actions)
    known = {action.id for action in remaining}
    placed: set[str] = set()
    ordered: list[Action] = []
    while remaining:
        for index, action in enumerate(remaining):
            if all(dep in placed or dep not in known for dep in action.depends_on):
                break
        else:
            raise ValueError(f"dependency cycle between {[a.id for a in remaining]}")
        action = remaining.pop(index)
        ordered.append(action)
        placed.add(action.id)
    return ordered


class _PlanDraft:
    def __init__(self) -> None:
        self.actions: list[Action] = []
        self.ids: set[str] = set()

    def add(self, resource: str, operation: Operation, depends_on: Iterable[Optional[str]] = ()) -> str:
        action_id = f"{operation.kind}:{resource}"
        if action_id in self.ids:
            return action_id
        deps = tuple(dep for dep in depends_on if dep and dep in self.ids)
        self.actions.append(
            Action(id=action_id, kind=operation.kind, resource=resource, operation=operation, depends_on=deps)
        )
        self.ids.add(action_id)
        return action_id


class PlanBuilder:
    """Diff declared host state against probed state."""

    def __init__(self, layout: Optional[HostLayout] = None):
        self.layout = layout or HostLayout()

    def build(self, spec: HostSpec, probed: ProbedState) -> Plan:
        for pool in spec.pools:
            if pool.raid_level not in SUPPORTED_RAID_LEVELS:
                raise UnsupportedRaidLevel(pool.name, pool.raid_level)

        draft = _PlanDraft()
        self._plan_system(spec, probed, draft)
        self._plan_storage(spec, probed, draft)
        self._plan_backup(spec, probed, draft)
        self._plan_firewall(spec, probed, draft)
        self._plan_templates(spec, probed, draft)
        plan = Plan(actions=tuple(order_actions(draft.actions)))
        logger.info("Planned %d action(s)", len(plan))
        return plan

    # Helpers ---------------------------------------------------------------
    def _node(self, spec: HostSpec, probed: ProbedState) -> Optional[str]:
        return spec.hostname or probed.hostname

    def _file(
        self,
        draft: _PlanDraft,
        probed: ProbedState,
        operation: WriteFileOperation,
        depends_on: Iterable[Optional[str]] = (),
    ) -> Optional[str]:
        if probed.file(operation.path) == operation.content:
            if operation.mode is None or probed.mode(operation.path) == operation.mode:
                return None
        return draft.add(self.layout.host_path(operation.path), operation, depends_on)

    @staticmethod
    def _storage_known(spec: HostSpec, probed: ProbedState, storage_id: str) -> bool:
        return storage_id in probed.storage_ids or any(entry.id == storage_id for entry in spec.storage)

    # Phases ------------------------------------------------------------------
    def _plan_system(self, spec: HostSpec, probed: ProbedState, draft: _PlanDraft) -> None:
        if spec.hostname and probed.hostname != spec.hostname:
            draft.add(spec.hostname, HostnameOperation(spec.hostname))
        if spec.timezone and probed.timezone != spec.timezone:
            draft.add(spec.timezone, TimezoneOperation(spec.timezone))
        if spec.network:
            content = render("interfaces.j2", network=spec.network)
            self._file(draft, probed, WriteFileOperation(self.layout.interfaces, content, mode=0o644))

        repo_actions: list[Optional[str]] = []
        if spec.repositories:
            repos = spec.repositories
            if repos.no_subscription:
                content = render("pve-no-subscription.list.j2", suite=repos.suite)
                operation = WriteFileOperation(self.layout.no_subscription_list, content, mode=0o644)
                repo_actions.append(self._file(draft, probed, operation))
            if repos.disable_enterprise:
                current = probed.file(self.layout.enterprise_list)
                if current and any(line.startswith("deb") for line in current.splitlines()):
                    operation = DisableRepositoryOperation(self.layout.enterprise_list)
                    repo_actions.append(draft.add(self.layout.host_path(operation.path), operation))

        if spec.packages:
            upgrade_id = None
            if spec.packages.upgrade and probed.pending_upgrades > 0:
                upgrade_id = draft.add("system", UpgradePackagesOperation(), repo_actions)
            missing = [pkg for pkg in spec.packages.install if pkg not in probed.installed_packages]
            if missing:
                draft.add(",".join(missing), InstallPackagesOperation(missing), [*repo_actions, upgrade_id])

        if spec.ssh and spec.ssh.authorized_keys:
            content = "\n".join(spec.ssh.authorized_keys) + "\n"
            operation = WriteFileOperation(self.layout.authorized_keys, content, mode=0o600, parent_mode=0o700)
            self._file(draft, probed, operation)

    def _plan_storage(self, spec: HostSpec, probed: ProbedState, draft: _PlanDraft) -> None:
        declared_pools = {pool.name for pool in spec.pools}
        for pool in spec.pools:
            if pool.name not in probed.pools:
                draft.add(pool.name, CreatePoolOperation(pool))

        for disk in spec.disks:
            if disk.mount_point not in probed.mounts:
                mount_dir = self.layout.root / disk.mount_point.lstrip("/")
                draft.add(disk.name, PrepareDiskOperation(disk, self.layout.fstab, mount_dir))

        for entry in spec.storage:
            deps: list[Optional[str]] = []
            if entry.pool_name:
                if entry.pool_name not in declared_pools and entry.pool_name not in probed.pools:
                    raise PreconditionUnmet(
                        f"storage '{entry.id}' references pool '{entry.pool_name}', "
                        "which is neither declared nor present on the host"
                    )
                deps.append(f"create-pool:{entry.pool_name}")
                dataset = entry.dataset
                if dataset and dataset not in probed.datasets:
                    deps.append(draft.add(dataset, CreateDatasetOperation(dataset), deps))
            disk_id = self._disk_for(spec, entry)
            if disk_id:
                deps.append(disk_id)
            if entry.id not in probed.storage_ids:
                draft.add(entry.id, AddStorageOperation(entry), deps)

    @staticmethod
    def _disk_for(spec: HostSpec, entry: StorageEntry) -> Optional[str]:
        if entry.type != "dir" or not entry.path:
            return None
        for disk in spec.disks:
            mount = disk.mount_point.rstrip("/")
            if entry.path == mount or entry.path.startswith(mount + "/"):
                return f"prepare-disk:{disk.name}"
        return None

    def _plan_backup(self, spec: HostSpec, probed: ProbedState, draft: _PlanDraft) -> None:
        policy = spec.backup
        if policy is None:
            return
        if not self._storage_known(spec, probed, policy.storage):
            raise PreconditionUnmet(
                f"backup storage '{policy.storage}' is not configured; declare it under [[storage]]"
            )
        operation = ScheduleBackupJobOperation(policy, self.layout.jobs_cfg, self._node(spec, probed))
        if not has_section(probed.file(self.layout.jobs_cfg), operation.section):
            draft.add(policy.job_id, operation, [f"add-storage:{policy.storage}"])

        if policy.verify:
            script = render(
                "verify-backups.sh.j2",
                storage=policy.storage,
                backup_dir=self._backup_dir(spec, policy.storage),
                mail_to=policy.mail_to,
            )
            script_id = self._file(
                draft, probed, WriteFileOperation(self.layout.verify_backups_script, script, mode=0o755)
            )
            cron = CronOperation(
                self.layout.backup_cron,
                self.layout.host_path(self.layout.verify_backups_script),
                minute="0",
                hour="8",
                weekday="sun",
            )
            self._file(draft, probed, cron, [script_id])

    @staticmethod
    def _backup_dir(spec: HostSpec, storage_id: str) -> str:
        for entry in spec.storage:
            if entry.id != storage_id:
                continue
            if entry.type == "dir" and entry.path:
                return entry.path.rstrip("/")
            if entry.pool:
                return f"/{entry.pool}"
        return f"/mnt/pve/{storage_id}"

    def _plan_firewall(self, spec: HostSpec, probed: ProbedState, draft: _PlanDraft) -> None:
        policy = spec.firewall
        if policy is None:
            return
        node = self._node(spec, probed)
        if not node:
            raise PreconditionUnmet("firewall needs the node name for host.fw; set hostname in the host description")
        files = [
            (self.layout.cluster_fw, render_cluster_fw(policy)),
            (self.layout.host_fw(node), render_host_fw(policy)),
            (self.layout.guest_fw, render_guest_fw(policy)),
        ]
        written = [
            self._file(draft, probed, WriteFileOperation(path, content, kind="write-firewall-file"))
            for path, content in files
        ]
        written_ids = [action_id for action_id in written if action_id]
        if written_ids:
            draft.add("pve-firewall", ReloadFirewallOperation(), written_ids)

        if policy.check:
            script = render("check-firewall.sh.j2")
            script_id = self._file(
                draft, probed, WriteFileOperation(self.layout.check_firewall_script, script, mode=0o755)
            )
            cron = CronOperation(
                self.layout.firewall_cron,
                self.layout.host_path(self.layout.check_firewall_script),
                minute="0",
                hour="7",
            )
            self._file(draft, probed, cron, [script_id])

    def _plan_templates(self, spec: HostSpec, probed: ProbedState, draft: _PlanDraft) -> None:
        bridge = spec.network.bridge if spec.network else "vmbr0"
        for request in spec.templates:
            if not self._storage_known(spec, probed, request.storage):
                raise PreconditionUnmet(
                    f"template '{request.name}' needs storage '{request.storage}', which is not configured"
                )
            if request.vmid in probed.template_ids:
                continue
            if request.vmid in probed.vm_ids:
                raise PreconditionUnmet(
                    f"vmid {request.vmid} for template '{request.name}' is used by a guest that is not a template"
                )
            fetch_id = None
            if request.iso_name not in probed.iso_files:
                if not request.downloadable:
                    raise PreconditionUnmet(
                        f"ISO '{request.iso_name}' for template '{request.name}' has no download URL; "
                        f"copy it to {self.layout.host_path(self.layout.iso_dir)} first"
                    )
                target = self.layout.iso_dir / request.iso_name
                fetch_id = draft.add(request.iso_name, FetchIsoOperation(str(request.iso_source), target))
            draft.add(
                str(request.vmid),
                CreateVmTemplateOperation(request, bridge=bridge),
                [fetch_id, f"add-storage:{request.storage}"],
            )

        if spec.templates:
            example = spec.templates[0].vmid
            script = render("clone-vm-template.sh.j2", example_vmid=example)
            self._file(draft, probed, WriteFileOperation(self.layout.clone_script, script, mode=0o755))

        for template in spec.container_templates:
            if template not in probed.container_templates:
                draft.add(template, DownloadContainerTemplateOperation(template))
