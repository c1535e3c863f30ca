"""Filesystem quota backends.

Submodules
==========

.. autosummary::
    :toctree: _autosummary

    base
    detect
    ext4
    project
    xfs
"""

from .base import (
    QuotaBackend,
    QuotaError,
    QuotaUnavailableError,
    UnsupportedFilesystemError,
)
from .detect import detect_fs_type, select_backend
from .ext4 import Ext4Backend
from .project import ProjectMapping
from .xfs import XFSBackend
