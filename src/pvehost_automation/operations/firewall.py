"""Proxmox firewall files and the service that enforces them.

The ``.fw`` files use the pve-firewall format: an ``[OPTIONS]`` section of
``key: value`` lines followed by a ``[RULES]`` section with one rule per
line (``IN ACCEPT -p tcp -source 10.0.0.0/24 -dport 22``). Established and
related traffic is accepted implicitly by pve-firewall.
"""

from __future__ import annotations

from .base import Operation
from ..executors import Executor
from ..rendering import render
from ..types import FirewallPolicy, FirewallRule


def management_rules(cidr: str) -> list[FirewallRule]:
    return [
        FirewallRule("IN", "ACCEPT", proto="icmp", comment="Allow ping"),
        FirewallRule(
            "IN", "ACCEPT", proto="tcp", source=cidr, dport="22",
            comment="Allow SSH from management network",
        ),
        FirewallRule(
            "IN", "ACCEPT", proto="tcp", source=cidr, dport="8006",
            comment="Allow Proxmox web interface from management network",
        ),
        FirewallRule(
            "IN", "ACCEPT", proto="tcp", source=cidr, dport="5900:5999",
            comment="Allow Proxmox VNC console from management network",
        ),
        FirewallRule(
            "IN", "ACCEPT", proto="tcp", source=cidr, dport="3128",
            comment="Allow SPICE proxy from management network",
        ),
        FirewallRule(
            "IN", "ACCEPT", proto="udp", source=cidr, dport="5404:5405",
            comment="Allow Proxmox cluster communication",
        ),
        FirewallRule("IN", "ACCEPT", proto="tcp", source=cidr, dport="111"),
        FirewallRule("IN", "ACCEPT", proto="udp", source=cidr, dport="111"),
        FirewallRule("IN", "ACCEPT", proto="tcp", source=cidr, dport="2049"),
        FirewallRule("IN", "ACCEPT", proto="udp", source=cidr, dport="2049"),
    ]


DEFAULT_GUEST_RULES = (
    FirewallRule("IN", "ACCEPT", proto="icmp", comment="Allow ping"),
    FirewallRule("IN", "ACCEPT", proto="tcp", dport="22", comment="Allow SSH"),
    FirewallRule("IN", "ACCEPT", proto="tcp", dport="80", comment="Allow HTTP/HTTPS"),
    FirewallRule("IN", "ACCEPT", proto="tcp", dport="443"),
)


def render_cluster_fw(policy: FirewallPolicy) -> str:
    rules = management_rules(policy.management_cidr) + list(policy.rules)
    return render(
        "cluster.fw.j2",
        policy_in=policy.policy_in,
        policy_out=policy.policy_out,
        rules=rules,
    )


def render_host_fw(policy: FirewallPolicy) -> str:
    return render("host.fw.j2", rules=list(policy.host_rules))


def render_guest_fw(policy: FirewallPolicy) -> str:
    rules = DEFAULT_GUEST_RULES if policy.guest_rules is None else policy.guest_rules
    return render(
        "vm.fw.j2",
        policy_in=policy.policy_in,
        policy_out=policy.policy_out,
        rules=list(rules),
    )


class ReloadFirewallOperation(Operation):
    """Restart pve-firewall so freshly written rule files take effect."""

    kind = "reload-firewall"

    def apply(self, executor: Executor) -> str:
        executor.run(["systemctl", "restart", "pve-firewall"])
        return "pve-firewall restarted"

    def verify(self, executor: Executor) -> bool:
        result = executor.run(["systemctl", "is-active", "--quiet", "pve-firewall"], check=False)
        return result.returncode == 0

    def describe(self) -> str:
        return "systemctl restart pve-firewall"
