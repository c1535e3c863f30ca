"""XFS project quota backend.

Wraps xfs_quota(8).  Only these commands are used:

* `xfs_quota -V`
    to check the tool is installed
* `xfs_quota -x -c state <mount>`
    to check project quota accounting is on
* `xfs_quota -x -c "project -s -p <path> <id>" <mount>`
    to tag a directory tree with a project ID
* `xfs_quota -x -c "limit -p bhard=<n>k <id>" <mount>`
    to set the hard block limit for the project
* `xfs_quota -x -c "report -p -b" <mount>`
    to report per-project usage and limits (in KiB)
"""

from __future__ import annotations

import logging

from .base import QuotaBackend, QuotaError, QuotaUnavailableError, parse_kib

log = logging.getLogger(__name__)


class XFSBackend(QuotaBackend):
    """Project quotas on XFS."""

    fs_type = "xfs"

    def xfs_quota(self, command: str) -> str:
        """Run an expert-mode xfs_quota `command` on our mount."""
        return self.run("xfs_quota", "-x", "-c", command, self.quota_path)

    def check_available(self) -> None:
        """Check xfs_quota is installed and can query our mount."""
        try:
            self.run("xfs_quota", "-V")
        except QuotaError as e:
            raise QuotaUnavailableError(f"xfs_quota command not found: {e}") from e

        try:
            output = self.xfs_quota("state")
        except QuotaError as e:
            raise QuotaUnavailableError(f"failed to check quota state: {e}") from e

        if "Project quota state" not in output:
            log.warning(f"Project quota may not be enabled on {self.quota_path}")

        log.info("XFS quota is available")

    def apply(
        self, path: str, project_name: str, project_id: int, size_bytes: int
    ) -> None:
        """Add the project mapping, tag `path` and set the hard limit."""
        try:
            self.mapping.add(path, project_name, project_id)
        except OSError as e:
            raise QuotaError(f"failed to add project: {e}") from e

        self.xfs_quota(f"project -s -p {path} {project_id}")

        size_kib = self.size_kib(size_bytes)
        self.xfs_quota(f"limit -p bhard={size_kib}k {project_id}")

        log.debug(
            f"XFS quota applied: path={path} project={project_name} "
            f"id={project_id} size={size_kib}k"
        )

    def report(self) -> tuple[dict[str, int], dict[str, int]]:
        """Parse `report -p -b` output.

        Columns are: project, used, soft, hard, warn/grace.  Projects
        without a name in the projid file are shown as "#<id>".
        """
        output = self.xfs_quota("report -p -b")
        paths = self._paths_by_project()

        quota_map = {}
        usage_map = {}
        for line in output.splitlines():
            fields = line.split()
            if len(fields) < 4:
                continue

            # Headers
            if fields[0] == "Project" or fields[0].startswith("-"):
                continue

            path = paths.get(fields[0].lstrip("#"))
            if path is None:
                continue

            try:
                usage_map[path] = parse_kib(fields[1]) * 1024
                hard = parse_kib(fields[3])
            except ValueError:
                log.debug(f"Unparseable xfs_quota report line: {line}")
                continue

            if hard > 0:
                quota_map[path] = hard * 1024

        return quota_map, usage_map
