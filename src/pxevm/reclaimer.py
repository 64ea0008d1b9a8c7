"""
Sweep away test VMs matching a naming pattern.

For each matching VM: power off, drop snapshots, remember its disks, delete
it, then delete the disk files that live inside the storage root. Files
outside the storage root are reported and left alone. Each VM is handled
independently; re-running the sweep on the same pattern is harmless.
"""

import logging
from typing import Callable, List, Optional

from pxevm.config import Settings, resolve_storage_root
from pxevm.hypervisor import HypervisorBackend, normalize_path
from pxevm.models import ReclaimReport, ResourceInfo, ResourceReport

logger = logging.getLogger(__name__)

WILDCARDS = set("*?[")


def is_within_storage_root(path: str, storage_root: str) -> bool:
    """True if ``path`` lexically sits below ``storage_root`` (case-insensitive)."""
    root = normalize_path(storage_root).rstrip("\\")
    return normalize_path(path).startswith(root + "\\")


def name_glob(name_pattern: str) -> str:
    """Turn a plain prefix into a wildcard pattern; leave wildcard patterns alone."""
    if WILDCARDS & set(name_pattern):
        return name_pattern
    return name_pattern + "*"


class Reclaimer:
    """Deletes test VMs and the disk files they own."""

    def __init__(self, backend: HypervisorBackend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings

    def reclaim(self, name_pattern: Optional[str] = None, storage_root: Optional[str] = None) -> ReclaimReport:
        """
        Reclaim every VM whose name matches ``name_pattern``.

        Args:
            name_pattern: Name prefix or wildcard pattern (default: "<base prefix>-")
            storage_root: Directory whose files may be deleted (default: settings.storage_root)

        Returns:
            ReclaimReport with one entry per matched VM
        """
        pattern = name_glob(name_pattern or f"{self.settings.base_prefix}-")
        if storage_root:
            root = resolve_storage_root(storage_root, self.settings.transport)
        else:
            root = self.settings.storage_root
        report = ReclaimReport(pattern=pattern, storage_root=root)

        resources = self.backend.list_resources(pattern)
        if not resources:
            logger.info(f"ℹ️  No VMs match {pattern}")
        else:
            logger.info(f"🔍 Found {len(resources)} VM(s) matching {pattern}")

        for resource in resources:
            report.resources.append(self._reclaim_one(resource, root))

        self._remove_storage_root_if_empty(root, report)
        return report

    def _reclaim_one(self, resource: ResourceInfo, storage_root: str) -> ResourceReport:
        name = resource.name
        result = ResourceReport(name=name)

        def record(message: str) -> None:
            logger.warning(f"⚠️  {name}: {message}")
            result.errors.append(message)

        if resource.is_running:
            logger.info(f"⏹️  Stopping {name}")
            try:
                self.backend.stop_resource(name, force=True)
                result.stopped = True
            except Exception as e:
                record(f"stop failed: {e}")

        # Snapshots pin disk files
        try:
            snapshots = self.backend.list_snapshots(name)
        except Exception as e:
            record(f"listing snapshots failed: {e}")
            snapshots = []
        for snapshot in snapshots:
            try:
                self.backend.delete_snapshot(snapshot)
                result.snapshots_removed += 1
            except Exception as e:
                record(f"deleting snapshot {snapshot.name!r} failed: {e}")

        # Attachment metadata goes away with the VM
        disks: List[str] = []
        try:
            disks = self.backend.list_attached_disks(name)
        except Exception as e:
            record(f"listing disks failed: {e}")

        logger.info(f"🗑️  Deleting {name}")
        try:
            self.backend.delete_resource(name)
            result.deleted = True
        except Exception as e:
            record(f"delete failed: {e}")

        if not result.deleted:
            if disks:
                record(f"kept {len(disks)} disk file(s) because the VM still exists")
            return result

        for path in disks:
            self._delete_disk(path, storage_root, result, record)

        return result

    def _delete_disk(
        self, path: str, storage_root: str, result: ResourceReport, record: Callable[[str], None]
    ) -> None:
        try:
            if not self.backend.file_exists(path):
                return
        except Exception as e:
            record(f"checking {path} failed: {e}")
            return

        if not is_within_storage_root(path, storage_root):
            logger.warning(f"🛡️  Not deleting {path}: outside {storage_root}")
            result.disks_protected.append(path)
            return

        try:
            self.backend.delete_file(path)
            result.disks_deleted.append(path)
            logger.info(f"🗑️  Deleted {path}")
        except Exception as e:
            record(f"deleting {path} failed: {e}")

    def _remove_storage_root_if_empty(self, storage_root: str, report: ReclaimReport) -> None:
        try:
            if self.backend.directory_exists(storage_root) and self.backend.directory_is_empty(storage_root):
                self.backend.delete_directory(storage_root)
                report.storage_root_removed = True
                logger.info(f"🧹 Removed empty storage root {storage_root}")
        except Exception as e:
            logger.warning(f"⚠️  Could not remove storage root {storage_root}: {e}")
            report.errors.append(f"removing storage root failed: {e}")
