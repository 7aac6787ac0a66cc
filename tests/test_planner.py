from pathlib import Path

import pytest

from conftest import nvme_spec

from pvehost_automation.errors import PreconditionUnmet, UnsupportedRaidLevel
from pvehost_automation.inventory import HostSpecLoader
from pvehost_automation.layout import HostLayout
from pvehost_automation.operations import ScheduleBackupJobOperation, WriteFileOperation
from pvehost_automation.operations.firewall import render_guest_fw, render_host_fw
from pvehost_automation.planner import PlanBuilder, order_actions
from pvehost_automation.types import (
    Action,
    BackupPolicy,
    DiskPool,
    FirewallPolicy,
    HostSpec,
    PackageConfig,
    ProbedState,
    RepositoryConfig,
    SshConfig,
    StorageEntry,
    TemplateRequest,
)

EXAMPLE = Path(__file__).resolve().parents[1] / "examples" / "host.toml"


def converged(spec: HostSpec, plan, layout: HostLayout) -> ProbedState:
    """Host state after every action in ``plan`` has been applied."""

    files = {}
    modes = {}
    for action in plan:
        op = action.operation
        if isinstance(op, WriteFileOperation):
            files[str(op.path)] = op.content
            modes[str(op.path)] = op.mode
        elif isinstance(op, ScheduleBackupJobOperation):
            files[str(layout.jobs_cfg)] = op.section
    return ProbedState(
        pools=frozenset(pool.name for pool in spec.pools),
        datasets=frozenset(entry.dataset for entry in spec.storage if entry.dataset),
        storage_ids=frozenset(entry.id for entry in spec.storage),
        mounts=frozenset(disk.mount_point for disk in spec.disks),
        vm_ids=frozenset(template.vmid for template in spec.templates),
        template_ids=frozenset(template.vmid for template in spec.templates),
        container_templates=frozenset(spec.container_templates),
        iso_files=frozenset(template.iso_name for template in spec.templates),
        installed_packages=frozenset(spec.packages.install if spec.packages else ()),
        hostname=spec.hostname,
        timezone=spec.timezone,
        files=files,
        modes=modes,
    )


def position(plan, action_id: str) -> int:
    return plan.ids.index(action_id)


def test_fresh_host_creates_pool_before_storage():
    plan = PlanBuilder().build(nvme_spec(), ProbedState())

    assert plan.ids == ["create-pool:nvme-mirror", "add-storage:vm-storage"]
    assert plan.actions[1].depends_on == ("create-pool:nvme-mirror",)
    assert plan.actions[0].destructive is True


def test_existing_pool_only_registers_storage():
    plan = PlanBuilder().build(nvme_spec(), ProbedState(pools=frozenset({"nvme-mirror"})))

    assert plan.ids == ["add-storage:vm-storage"]
    assert plan.actions[0].depends_on == ()


def test_matching_host_yields_empty_plan():
    probed = ProbedState(pools=frozenset({"nvme-mirror"}), storage_ids=frozenset({"vm-storage"}))

    assert len(PlanBuilder().build(nvme_spec(), probed)) == 0


def test_unsupported_raid_level_aborts_planning():
    spec = HostSpec(pools=(DiskPool(name="fast", raid_level="raid5", devices=("/dev/sda", "/dev/sdb", "/dev/sdc")),))

    with pytest.raises(UnsupportedRaidLevel):
        PlanBuilder().build(spec, ProbedState())


def test_every_pool_created_once_before_its_storage():
    pools = tuple(
        DiskPool(name=f"pool{idx}", raid_level="mirror", devices=(f"/dev/sd{a}", f"/dev/sd{b}"))
        for idx, (a, b) in enumerate(["ab", "cd", "ef"])
    )
    storage = tuple(
        StorageEntry(id=f"store{idx}", type="zfspool", pool=pool.name, content=("images",))
        for idx, pool in reversed(list(enumerate(pools)))
    )

    plan = PlanBuilder().build(HostSpec(pools=pools, storage=storage), ProbedState())

    assert plan.kinds.count("create-pool") == 3
    assert plan.kinds.count("add-storage") == 3
    for idx in range(3):
        assert position(plan, f"create-pool:pool{idx}") < position(plan, f"add-storage:store{idx}")


def test_storage_on_unknown_pool_is_refused():
    spec = HostSpec(storage=(StorageEntry(id="vm-storage", type="zfspool", pool="ghost", content=("images",)),))

    with pytest.raises(PreconditionUnmet, match="ghost"):
        PlanBuilder().build(spec, ProbedState())


def test_storage_on_dataset_creates_dataset_first():
    spec = HostSpec(
        pools=nvme_spec().pools,
        storage=(StorageEntry(id="vm-storage", type="zfspool", pool="nvme-mirror/vm-disks", content=("images",)),),
    )

    plan = PlanBuilder().build(spec, ProbedState())

    assert plan.ids == [
        "create-pool:nvme-mirror",
        "create-dataset:nvme-mirror/vm-disks",
        "add-storage:vm-storage",
    ]
    assert plan.actions[2].depends_on == ("create-pool:nvme-mirror", "create-dataset:nvme-mirror/vm-disks")


def test_example_host_plan_orders_dependencies():
    spec = HostSpecLoader().load(EXAMPLE)

    plan = PlanBuilder().build(spec, ProbedState())

    assert position(plan, "create-dataset:hdd-mirror/backups") < position(plan, "add-storage:backup-storage")
    assert position(plan, "prepare-disk:iso-disk") < position(plan, "add-storage:iso-templates")
    assert position(plan, "add-storage:backup-storage") < position(plan, "schedule-backup-job:pvehost-backup")
    assert position(plan, "add-storage:vm-storage") < position(plan, "create-vm-template:9000")
    assert (
        position(plan, "fetch-template:ubuntu-22.04-live-server-amd64.iso")
        < position(plan, "create-vm-template:9000")
    )
    reload = next(action for action in plan if action.kind == "reload-firewall")
    assert reload.depends_on == (
        "write-firewall-file:/etc/pve/firewall/cluster.fw",
        "write-firewall-file:/etc/pve/nodes/bard/host.fw",
        "write-firewall-file:/etc/pve/firewall/vm.fw",
    )
    assert "fetch-template:debian-12-standard_12.2-1_amd64.tar.zst" in plan.ids
    assert "upgrade-packages:system" not in plan.ids


def test_example_host_second_plan_is_empty():
    spec = HostSpecLoader().load(EXAMPLE)
    layout = HostLayout()
    builder = PlanBuilder(layout)

    first = builder.build(spec, ProbedState())
    second = builder.build(spec, converged(spec, first, layout))

    assert len(first) > 0
    assert second.ids == []


def test_paths_use_root_but_resources_use_host_paths():
    layout = HostLayout(root=Path("/mnt/target"))
    spec = HostSpecLoader().load(EXAMPLE)

    plan = PlanBuilder(layout).build(spec, ProbedState())

    action = next(a for a in plan if a.id == "write-file:/etc/network/interfaces")
    assert action.operation.path == Path("/mnt/target/etc/network/interfaces")


def test_enterprise_repo_disabled_before_packages():
    layout = HostLayout()
    spec = HostSpec(repositories=RepositoryConfig(no_subscription=False), packages=PackageConfig(install=("htop",)))
    probed = ProbedState(
        files={str(layout.enterprise_list): "deb https://enterprise.proxmox.com/debian/pve bookworm pve-enterprise\n"}
    )

    plan = PlanBuilder(layout).build(spec, probed)

    assert plan.ids == [
        "disable-repository:/etc/apt/sources.list.d/pve-enterprise.list",
        "install-packages:htop",
    ]
    assert plan.actions[1].depends_on == ("disable-repository:/etc/apt/sources.list.d/pve-enterprise.list",)


def test_file_with_wrong_mode_is_rewritten():
    layout = HostLayout()
    spec = HostSpec(ssh=SshConfig(authorized_keys=("ssh-ed25519 AAAA admin",)))
    path = str(layout.authorized_keys)
    files = {path: "ssh-ed25519 AAAA admin\n"}

    loose = PlanBuilder(layout).build(spec, ProbedState(files=files, modes={path: 0o644}))
    tight = PlanBuilder(layout).build(spec, ProbedState(files=files, modes={path: 0o600}))

    assert loose.ids == ["write-file:/root/.ssh/authorized_keys"]
    assert tight.ids == []


def test_upgrade_planned_only_when_updates_pending():
    spec = HostSpec(packages=PackageConfig(install=("htop",), upgrade=True))
    installed = frozenset({"htop"})

    assert PlanBuilder().build(spec, ProbedState(installed_packages=installed)).ids == []
    plan = PlanBuilder().build(spec, ProbedState(installed_packages=installed, pending_upgrades=4))
    assert plan.ids == ["upgrade-packages:system"]


def test_backup_requires_known_storage():
    with pytest.raises(PreconditionUnmet, match="backup-storage"):
        PlanBuilder().build(HostSpec(backup=BackupPolicy()), ProbedState())


def test_backup_on_existing_storage():
    probed = ProbedState(storage_ids=frozenset({"backup-storage"}), hostname="bard")

    plan = PlanBuilder().build(HostSpec(backup=BackupPolicy()), probed)

    assert plan.ids == [
        "schedule-backup-job:pvehost-backup",
        "write-file:/usr/local/bin/verify-backups.sh",
        "write-cron:/etc/cron.d/backup-verification",
    ]
    script = plan.actions[1].operation
    assert 'BACKUP_DIR="/mnt/pve/backup-storage/dump"' in script.content
    assert script.mode == 0o755
    assert plan.actions[2].depends_on == ("write-file:/usr/local/bin/verify-backups.sh",)
    assert "\tnode bard\n" in plan.actions[0].operation.section


def test_backup_job_without_known_node_omits_node():
    probed = ProbedState(storage_ids=frozenset({"backup-storage"}))

    plan = PlanBuilder().build(HostSpec(backup=BackupPolicy(verify=False)), probed)

    section = plan.actions[0].operation.section
    assert plan.ids == ["schedule-backup-job:pvehost-backup"]
    assert "\tnode " not in section
    assert "localhost" not in section


def test_firewall_needs_node_name():
    with pytest.raises(PreconditionUnmet, match="hostname"):
        PlanBuilder().build(HostSpec(firewall=FirewallPolicy(management_cidr="10.0.0.0/8")), ProbedState())


def test_firewall_reloads_only_after_changed_files():
    layout = HostLayout()
    policy = FirewallPolicy(management_cidr="192.168.1.0/24", check=False)
    probed = ProbedState(
        hostname="bard",
        files={
            str(layout.host_fw("bard")): render_host_fw(policy),
            str(layout.guest_fw): render_guest_fw(policy),
        },
    )

    plan = PlanBuilder(layout).build(HostSpec(firewall=policy), probed)

    assert plan.ids == ["write-firewall-file:/etc/pve/firewall/cluster.fw", "reload-firewall:pve-firewall"]
    assert plan.actions[1].depends_on == ("write-firewall-file:/etc/pve/firewall/cluster.fw",)


def test_template_without_download_needs_iso_on_host():
    windows = TemplateRequest(
        os_id="windows-2022", vmid=9004, name="windows-2022-template", iso_name="Windows_Server_2022.iso"
    )
    spec = HostSpec(templates=(windows,))
    storage = frozenset({"vm-storage"})

    with pytest.raises(PreconditionUnmet, match="Windows_Server_2022.iso"):
        PlanBuilder().build(spec, ProbedState(storage_ids=storage))

    plan = PlanBuilder().build(spec, ProbedState(storage_ids=storage, iso_files=frozenset({windows.iso_name})))
    assert plan.ids == ["create-vm-template:9004", "write-file:/usr/local/bin/clone-vm-template.sh"]


def test_existing_template_is_left_alone():
    request = TemplateRequest(
        os_id="debian-12",
        vmid=9001,
        name="debian-12-template",
        iso_name="debian.iso",
        iso_source="https://example.com/debian.iso",
    )
    probed = ProbedState(
        storage_ids=frozenset({"vm-storage"}), vm_ids=frozenset({9001}), template_ids=frozenset({9001})
    )

    plan = PlanBuilder().build(HostSpec(templates=(request,)), probed)

    assert plan.kinds == ["write-file"]


def test_vmid_held_by_ordinary_guest_is_refused():
    request = TemplateRequest(
        os_id="debian-12",
        vmid=9001,
        name="debian-12-template",
        iso_name="d.iso",
        iso_source="https://example.com/d.iso",
    )
    probed = ProbedState(
        storage_ids=frozenset({"vm-storage"}), vm_ids=frozenset({9001}), iso_files=frozenset({"d.iso"})
    )

    with pytest.raises(PreconditionUnmet, match="vmid 9001"):
        PlanBuilder().build(HostSpec(templates=(request,)), probed)


def test_template_storage_must_exist():
    request = TemplateRequest(os_id="x", vmid=200, name="x", iso_name="x.iso", iso_source="https://e/x.iso")

    with pytest.raises(PreconditionUnmet, match="vm-storage"):
        PlanBuilder().build(HostSpec(templates=(request,)), ProbedState())


class _Stub:
    destructive = False


def stub_action(action_id: str, *deps: str) -> Action:
    kind, resource = action_id.split(":", 1)
    return Action(id=action_id, kind=kind, resource=resource, operation=_Stub(), depends_on=deps)


def test_order_actions_is_stable_topological():
    actions = [
        stub_action("a:1", "b:1"),
        stub_action("c:1"),
        stub_action("b:1"),
        stub_action("d:1", "a:1", "x:gone"),
    ]

    assert [a.id for a in order_actions(actions)] == ["c:1", "b:1", "a:1", "d:1"]


def test_order_actions_detects_cycles():
    with pytest.raises(ValueError, match="cycle"):
        order_actions([stub_action("a:1", "b:1"), stub_action("b:1", "a:1")])
