"""Quota backend base class.

A quota backend wraps the OS tools which apply project quotas on one
filesystem type.  The reconciliation engine only ever sees the
`QuotaBackend` interface; all tool invocation and output parsing stays
in the concrete subclasses.
"""

from __future__ import annotations

import logging

from ..common import util
from .project import ProjectMapping

log = logging.getLogger(__name__)


class QuotaError(Exception):
    """A quota tool invocation failed."""


class QuotaUnavailableError(Exception):
    """Project quotas can't be managed on this node."""


class UnsupportedFilesystemError(QuotaUnavailableError):
    """The filesystem type has no quota backend."""


class QuotaBackend:
    """Base class for quota backends.

    Parameters
    ----------
    quota_path : str
        The mount point (or a path on it) passed to the quota tools.
    mapping : ProjectMapping
        The project mapping files.
    timeout : float, optional
        Timeout, in seconds, for a single tool invocation.
    """

    # Set in subclasses
    fs_type = None

    def __init__(
        self, quota_path: str, mapping: ProjectMapping, timeout: float = 60
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive.")

        self.quota_path = str(quota_path)
        self.mapping = mapping
        self._timeout = timeout

    def __repr__(self) -> str:
        return f"<{type(self).__name__} quota_path={self.quota_path}>"

    def run(self, *args: str) -> str:
        """Run a quota tool.

        Parameters
        ----------
        *args : strings
            The command and its arguments.

        Returns
        -------
        output : str
            The standard output of the command.

        Raises
        ------
        QuotaError
            The command timed out or returned non-zero.
        """
        args = [str(arg) for arg in args]

        ret, stdout, stderr = util.run_command(args, timeout=self._timeout)

        if ret is None:
            raise QuotaError(f"command timed out: {' '.join(args)}")

        if ret != 0:
            output = (stdout + stderr).strip()
            raise QuotaError(
                f"command failed [{ret}]: {' '.join(args)}, output: {output}"
            )

        return stdout

    @staticmethod
    def size_kib(size_bytes: int) -> int:
        """Convert bytes to KiB, rounding down, but never below one."""
        return max(size_bytes // 1024, 1)

    def check_available(self) -> None:
        """Check the quota tools can be used.

        Raises
        ------
        QuotaUnavailableError
            Quotas can't be managed.
        """
        raise NotImplementedError("must be re-implemented by subclass")

    def apply(
        self, path: str, project_name: str, project_id: int, size_bytes: int
    ) -> None:
        """Apply a `size_bytes` hard limit to `path`.

        Raises
        ------
        QuotaError
            The quota could not be applied.
        """
        raise NotImplementedError("must be re-implemented by subclass")

    def report(self) -> tuple[dict[str, int], dict[str, int]]:
        """Fetch the current quota state.

        Returns
        -------
        quota_map, usage_map : dict
            Maps from directory path to hard limit and usage, both in bytes.

        Raises
        ------
        QuotaError
            The report could not be produced.
        """
        raise NotImplementedError("must be re-implemented by subclass")

    def remove_project_entry(self, path: str) -> bool:
        """Forget the project associated with `path`.

        Returns False if there was no project for `path`.
        """
        return self.mapping.remove(path)

    def _paths_by_project(self) -> dict[str, str]:
        """Map both project names and project IDs to paths."""
        projects = self.mapping.read_projects()
        result = dict(projects)
        for project_id, name in self.mapping.read_projid().items():
            if project_id in projects:
                result[name] = projects[project_id]
        return result


def parse_kib(token: str) -> int:
    """Parse a quota report size in KiB, with an optional K/M/G suffix.

    The result is in KiB.  Raises ValueError if `token` isn't a size.
    """
    token = token.strip()
    multiplier = 1
    if token and token[-1] in "kKmMgGtT":
        multiplier = {"k": 1, "m": 2**10, "g": 2**20, "t": 2**30}[token[-1].lower()]
        token = token[:-1]

    return int(token) * multiplier
