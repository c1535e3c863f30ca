"""Filesystem detection and backend selection."""

from __future__ import annotations

import logging

from ..common import util
from .base import QuotaBackend, UnsupportedFilesystemError
from .ext4 import Ext4Backend
from .project import ProjectMapping
from .xfs import XFSBackend

log = logging.getLogger(__name__)

# Supported filesystems
BACKENDS = {cls.fs_type: cls for cls in (XFSBackend, Ext4Backend)}


def detect_fs_type_df(path: str) -> str | None:
    """Detect the filesystem type of `path` using `df -T`.

    Returns None if df failed or its output couldn't be parsed.
    """
    ret, stdout, _ = util.run_command(["df", "-T", str(path)], timeout=30)
    if ret != 0:
        return None

    lines = stdout.splitlines()
    if len(lines) < 2:
        return None

    # Long device names wrap onto their own line, so join all the data
    # lines.  Columns: Filesystem, Type, 1K-blocks, Used, Available, Use%,
    # Mounted on
    fields = " ".join(lines[1:]).split()
    if len(fields) < 2:
        return None

    return fields[1].lower()


def detect_fs_type(path: str) -> str | None:
    """Detect the filesystem type of `path`.

    Uses `findmnt`, falling back to `df -T`.

    Returns
    -------
    fs_type : str or None
        The lower-cased filesystem type, or None if detection failed.
    """
    ret, stdout, _ = util.run_command(
        ["findmnt", "-n", "-o", "FSTYPE", "-T", str(path)], timeout=30
    )
    if ret == 0 and stdout.strip():
        return stdout.strip().splitlines()[0].lower()

    return detect_fs_type_df(path)


def select_backend(
    quota_path: str,
    projects_file: str,
    projid_file: str,
    timeout: float = 60,
) -> QuotaBackend:
    """Create the quota backend for the filesystem holding `quota_path`.

    Detection happens once, here; the returned backend is used for the
    lifetime of the agent.

    Raises
    ------
    UnsupportedFilesystemError
        Detection failed or the filesystem has no backend.
    """
    fs_type = detect_fs_type(quota_path)
    if fs_type is None:
        raise UnsupportedFilesystemError(
            f"unable to detect filesystem type of {quota_path}"
        )

    try:
        backend_class = BACKENDS[fs_type]
    except KeyError:
        raise UnsupportedFilesystemError(
            f"unsupported filesystem type: {fs_type} "
            f"(only {' and '.join(BACKENDS)} are supported)"
        ) from None

    log.info(f"Detected filesystem type {fs_type} for {quota_path}")

    return backend_class(
        quota_path, ProjectMapping(projects_file, projid_file), timeout=timeout
    )
