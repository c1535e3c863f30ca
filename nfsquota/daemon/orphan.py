"""Orphaned directory detection and cleanup.

An orphan is a volume directory under the NFS export which doesn't belong
to any volume in the cluster.  Two layouts are recognised: flat
(`<base>/<volume>`) and nested (`<base>/<namespace>/<volume>`).  A
top-level directory with subdirectories is treated as a namespace
directory: its subdirectories are checked, but it is never itself an
orphan.

The first time an orphan is seen is remembered.  Once it has been an
orphan for at least the grace period, it may be deleted.  If the
directory becomes valid again (a volume appears for it), it is forgotten.

Orphans are only ever deleted when automatic cleanup is enabled *and*
dry-run mode is off.  In dry-run mode, the deletion is only logged.
"""

from __future__ import annotations

import datetime
import logging
import os
import shutil
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..common import util
from ..common.metrics import Metric
from ..usage import IGNORED_NAMES, get_dir_size, visible_subdirs

if TYPE_CHECKING:
    from ..audit import AuditLogger
    from ..kube import VolumeRef
    from ..quota import QuotaBackend

log = logging.getLogger(__name__)


@dataclass
class OrphanInfo:
    """An orphaned directory.

    Attributes
    ----------
    path : str
        The directory
    dir_name : str
        Last component of `path`
    first_seen : datetime
        When this directory was first found to be an orphan
    size : int
        Total size of the files in the directory, in bytes
    age : timedelta
        How long the directory has been an orphan
    can_delete : bool
        True if the grace period has expired
    """

    path: str
    dir_name: str
    first_seen: datetime.datetime
    size: int
    age: datetime.timedelta
    can_delete: bool


class OrphanManager:
    """Finds and removes orphaned directories.

    Parameters
    ----------
    base_path : str
        Local path of the NFS export.
    local_path_for : callable
        Returns the local directory of a `VolumeRef`, or None.
    grace_period : float, optional
        Seconds a directory must be an orphan before it may be deleted.
    dry_run : bool, optional
        If True (the default), never delete anything.
    auto_cleanup : bool, optional
        If False (the default), `cleanup` never deletes anything.
    backend : QuotaBackend, optional
        Used to remove the project entries of deleted directories.
    audit_logger : AuditLogger, optional
        Where to record deletions.
    """

    def __init__(
        self,
        base_path: str,
        local_path_for: Callable[[VolumeRef], str | None] | None,
        grace_period: float = 86400,
        dry_run: bool = True,
        auto_cleanup: bool = False,
        backend: QuotaBackend | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        if grace_period < 0:
            raise ValueError("grace period may not be negative")

        self.base_path = base_path
        self.local_path_for = local_path_for
        self.grace_period = grace_period
        self.dry_run = dry_run
        self.auto_cleanup = auto_cleanup
        self.backend = backend
        self.audit_logger = audit_logger

        # Guards _first_seen
        self._lock = threading.Lock()

        # Path -> time first seen as an orphan
        self._first_seen = {}

        self._found_metric = Metric("orphans", "Number of orphaned directories")
        self._removed_metric = Metric(
            "orphans_removed",
            "Count of orphaned directories removed",
            counter=True,
            unbound={"result"},
        )

    def __repr__(self) -> str:
        return f"<OrphanManager base_path={self.base_path} dry_run={self.dry_run}>"

    def tracked(self) -> dict[str, datetime.datetime]:
        """A copy of the path to first-seen time map."""
        with self._lock:
            return dict(self._first_seen)

    def _valid_paths(self, volumes: Iterable[VolumeRef]) -> set[str]:
        paths = set()
        for volume in volumes:
            path = self.local_path_for(volume)
            if path is not None:
                paths.add(path)
        return paths

    def _track(self, path: str, now: datetime.datetime) -> OrphanInfo:
        """Record and describe an orphan.  Requires the lock."""
        first_seen = self._first_seen.setdefault(path, now)
        age = now - first_seen
        return OrphanInfo(
            path=path,
            dir_name=os.path.basename(path),
            first_seen=first_seen,
            size=get_dir_size(path),
            age=age,
            can_delete=age >= datetime.timedelta(seconds=self.grace_period),
        )

    def find_orphans(
        self, volumes: Iterable[VolumeRef], now: datetime.datetime | None = None
    ) -> list[OrphanInfo]:
        """Find orphaned directories.

        Parameters
        ----------
        volumes : iterable of VolumeRef
            All the volumes in the cluster.
        now : datetime, optional
            The current time.

        Returns
        -------
        orphans : list of OrphanInfo
            The orphans found.  Empty if the base path couldn't be read.
        """
        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)

        valid = self._valid_paths(volumes)

        try:
            with os.scandir(self.base_path) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as e:
            log.error(f"Failed to read base path {self.base_path}: {e}")
            return []

        orphans = []
        with self._lock:
            for entry in entries:
                if not entry.is_dir(follow_symlinks=False):
                    continue
                if entry.name.startswith(".") or entry.name in IGNORED_NAMES:
                    continue

                subdirs = visible_subdirs(entry.path)
                if subdirs is None:
                    continue

                for name in subdirs:
                    subpath = os.path.join(entry.path, name)
                    if subpath not in valid:
                        orphans.append(self._track(subpath, now))

                if not subdirs and entry.path not in valid:
                    orphans.append(self._track(entry.path, now))

            for path in [path for path in self._first_seen if path in valid]:
                del self._first_seen[path]

        self._found_metric.set(len(orphans))
        return orphans

    def remove_orphan(self, orphan: OrphanInfo) -> None:
        """Delete an orphaned directory and its quota project.

        The project entries are removed first (failure to do so is ignored),
        then the directory.  The removal is audited.

        Raises
        ------
        OSError
            The directory couldn't be removed.
        """
        project_id = 0
        project_name = orphan.dir_name
        if self.backend is not None:
            try:
                found_id, found_name = self.backend.mapping.find_by_path(orphan.path)
                if found_id is not None:
                    project_id = int(found_id)
                if found_name:
                    project_name = found_name
                self.backend.remove_project_entry(orphan.path)
            except (OSError, ValueError) as e:
                log.debug(f"Ignoring failure to remove project for {orphan.path}: {e}")

        try:
            shutil.rmtree(orphan.path)
        except OSError as e:
            self._removed_metric.inc(result="failure")
            if self.audit_logger is not None:
                self.audit_logger.log_cleanup(orphan.path, project_name, project_id, e)
            raise

        with self._lock:
            self._first_seen.pop(orphan.path, None)

        self._removed_metric.inc(result="success")
        if self.audit_logger is not None:
            self.audit_logger.log_cleanup(orphan.path, project_name, project_id)

    def cleanup(
        self, volumes: Iterable[VolumeRef], now: datetime.datetime | None = None
    ) -> int:
        """Find orphans and delete the ones past their grace period.

        Nothing is deleted unless automatic cleanup is enabled and dry-run
        mode is off.

        Returns
        -------
        removed : int
            The number of directories deleted.
        """
        orphans = self.find_orphans(volumes, now)
        if not orphans:
            log.debug("No orphaned directories found")
            return 0

        log.info(f"Found {len(orphans)} orphaned directories")

        removed = 0
        for orphan in orphans:
            if not orphan.can_delete:
                log.debug(
                    f"Orphan {orphan.path} still in grace period "
                    f"(age {util.pretty_deltat(orphan.age.total_seconds())})"
                )
                continue

            if self.dry_run or not self.auto_cleanup:
                log.info(
                    f"[DRY-RUN] Would delete orphan {orphan.path} "
                    f"(size {util.pretty_bytes(orphan.size)}, "
                    f"age {util.pretty_deltat(orphan.age.total_seconds())})"
                )
                continue

            try:
                self.remove_orphan(orphan)
            except OSError as e:
                log.error(f"Failed to remove orphan {orphan.path}: {e}")
                continue

            log.info(
                f"Removed orphan directory {orphan.path} "
                f"(size {util.pretty_bytes(orphan.size)})"
            )
            removed += 1

        if removed:
            log.info(f"Cleanup completed: removed {removed} of {len(orphans)}")

        return removed
