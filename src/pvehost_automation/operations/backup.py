from __future__ import annotations

from pathlib import Path
from typing import Optional

from .base import Operation
from .storage import storage_ids
from ..errors import PreconditionUnmet
from ..executors import Executor
from ..rendering import render
from ..types import BackupPolicy


def render_backup_job(policy: BackupPolicy, node: Optional[str]) -> str:
    return render("backup-job.j2", policy=policy, node=node, indent="\t")


def split_sections(text: str) -> list[str]:
    """Split a ``jobs.cfg`` style file into its sections.

    A section starts at an unindented ``type: id`` line and runs until the
    next one; blank lines between sections are dropped.
    """

    sections: list[list[str]] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        if not line[0].isspace() or not sections:
            sections.append([line])
        else:
            sections[-1].append(line)
    return ["\n".join(lines) + "\n" for lines in sections]


def section_id(section: str) -> str:
    header = section.splitlines()[0]
    return header.strip()


def merge_section(text: Optional[str], section: str) -> str:
    """Replace the section with the same header in ``text`` or append it."""

    target = section_id(section)
    sections = split_sections(text or "")
    replaced = False
    merged: list[str] = []
    for existing in sections:
        if section_id(existing) == target:
            merged.append(section)
            replaced = True
        else:
            merged.append(existing)
    if not replaced:
        merged.append(section)
    return "\n".join(merged)


def has_section(text: Optional[str], section: str) -> bool:
    return section in split_sections(text or "")


class ScheduleBackupJobOperation(Operation):
    """Declare a vzdump job covering every guest in ``jobs.cfg``."""

    kind = "schedule-backup-job"

    def __init__(self, policy: BackupPolicy, jobs_cfg: Path, node: Optional[str]):
        self.policy = policy
        self.jobs_cfg = jobs_cfg
        self.section = render_backup_job(policy, node)

    def is_satisfied(self, executor: Executor) -> bool:
        return has_section(executor.read_file(self.jobs_cfg), self.section)

    def apply(self, executor: Executor) -> str:
        if self.policy.storage not in storage_ids(executor):
            raise PreconditionUnmet(
                f"backup storage '{self.policy.storage}' is not configured on this host"
            )
        current = executor.read_file(self.jobs_cfg)
        executor.write_file(self.jobs_cfg, content=merge_section(current, self.section), mode=None)
        days = ",".join(self.policy.days)
        return f"job {self.policy.job_id} at {days} {self.policy.schedule}"

    def describe(self) -> str:
        days = ",".join(self.policy.days)
        return (
            f"vzdump job {self.policy.job_id}: {days} {self.policy.schedule} -> {self.policy.storage} "
            f"(keep-last={self.policy.retention_count}, {self.policy.mode}, {self.policy.compression})"
        )
