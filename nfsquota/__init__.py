"""nfsquota

Per-volume filesystem quota enforcement for NFS-backed Kubernetes volumes.

Submodules
==========

.. autosummary::
    :toctree: _autosummary

    audit
    common
    daemon
    history
    kube
    policy
    quota
    usage
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("nfsquota")
except PackageNotFoundError:
    # package is not installed
    pass

del version, PackageNotFoundError
