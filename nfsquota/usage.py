"""Directory usage collection."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .quota import QuotaError

if TYPE_CHECKING:
    from .quota import QuotaBackend

log = logging.getLogger(__name__)

# Top-level entries in the export which are never volumes
IGNORED_NAMES = {"projects", "projid", "lost+found"}


@dataclass
class DirUsage:
    """Space used by a volume directory.

    `quota` is zero if the directory has no quota; in that case `quota_pct`
    is also zero.
    """

    path: str
    used: int
    quota: int = 0
    quota_pct: float = 0.0


def get_dir_size(path: str | os.PathLike) -> int:
    """Total size, in bytes, of the files under `path`.

    Unreadable entries are skipped.  Symlinks are not followed.
    """
    total = 0
    for dirpath, _, filenames in os.walk(path):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                pass
    return total


def visible_subdirs(path: str) -> list[str] | None:
    """The non-hidden subdirectories of `path`.

    Returns None if `path` couldn't be read.
    """
    try:
        with os.scandir(path) as it:
            return sorted(
                entry.name
                for entry in it
                if entry.is_dir(follow_symlinks=False)
                and not entry.name.startswith(".")
            )
    except OSError:
        return None


def scan_volume_dirs(base_path: str) -> list[str]:
    """Find the candidate volume directories under `base_path`.

    Two layouts are supported: flat (`base/pvc-x`) and nested
    (`base/namespace/pvc-x`).  A top-level directory containing
    subdirectories is taken to be a namespace directory, and its
    subdirectories are returned instead of it.

    Raises OSError if `base_path` can't be read.
    """
    result = []
    with os.scandir(base_path) as it:
        entries = sorted(it, key=lambda entry: entry.name)

    for entry in entries:
        if not entry.is_dir(follow_symlinks=False):
            continue
        if entry.name.startswith(".") or entry.name in IGNORED_NAMES:
            continue

        subdirs = visible_subdirs(entry.path)
        if subdirs:
            result.extend(os.path.join(entry.path, name) for name in subdirs)
        else:
            result.append(entry.path)

    return result


def get_dir_usages(
    base_path: str, backend: QuotaBackend | None = None
) -> list[DirUsage]:
    """Get the usage of every volume directory under `base_path`.

    If a quota `backend` is given, its report provides the usage and limit
    of directories with quotas; the usage of other directories is measured
    by walking them.  Failure to get the report is not an error.

    Raises
    ------
    OSError
        `base_path` couldn't be read.
    """
    quota_map = {}
    usage_map = {}
    if backend is not None:
        try:
            quota_map, usage_map = backend.report()
        except (QuotaError, OSError) as e:
            log.warning(f"Quota report failed; measuring directories instead: {e}")

    paths = set(quota_map)
    paths.update(scan_volume_dirs(base_path))

    usages = []
    for path in sorted(paths):
        if not os.path.isdir(path):
            continue

        used = usage_map.get(path)
        if used is None:
            used = get_dir_size(path)

        quota = quota_map.get(path, 0)
        usages.append(
            DirUsage(
                path=path,
                used=used,
                quota=quota,
                quota_pct=used / quota * 100 if quota > 0 else 0.0,
            )
        )

    return usages
