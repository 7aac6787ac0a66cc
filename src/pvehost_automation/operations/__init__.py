from .backup import ScheduleBackupJobOperation
from .base import Operation
from .cron import CronOperation
from .disk import PrepareDiskOperation
from .file import DisableRepositoryOperation, WriteFileOperation
from .firewall import ReloadFirewallOperation
from .package import InstallPackagesOperation, UpgradePackagesOperation
from .storage import AddStorageOperation
from .system import HostnameOperation, TimezoneOperation
from .templates import CreateVmTemplateOperation, DownloadContainerTemplateOperation, FetchIsoOperation
from .zfs import CreateDatasetOperation, CreatePoolOperation

__all__ = [
    "Operation",
    "AddStorageOperation",
    "CreateDatasetOperation",
    "CreatePoolOperation",
    "CreateVmTemplateOperation",
    "CronOperation",
    "DisableRepositoryOperation",
    "DownloadContainerTemplateOperation",
    "FetchIsoOperation",
    "HostnameOperation",
    "InstallPackagesOperation",
    "PrepareDiskOperation",
    "ReloadFirewallOperation",
    "ScheduleBackupJobOperation",
    "TimezoneOperation",
    "UpgradePackagesOperation",
    "WriteFileOperation",
]
