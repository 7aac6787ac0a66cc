"""Declarative post-install provisioning for Proxmox VE hosts."""

from .inventory import HostSpecLoader
from .planner import PlanBuilder
from .probe import HostProber
from .runner import PlanRunner

__all__ = ["HostSpecLoader", "PlanBuilder", "HostProber", "PlanRunner"]
