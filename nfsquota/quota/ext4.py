"""ext4 project quota backend.

Uses the quota tools package:

* `setquota -V`
    to check the tools are installed
* `findmnt -n -o OPTIONS <mount>`
    to check for the `prjquota` mount option
* `chattr -R +P -p <id> <path>`
    to tag a directory tree with a project ID (and make it inheritable)
* `setquota -P <id> 0 <n> 0 0 <mount>`
    to set the hard block limit (in KiB) for the project
* `repquota -P <mount>`
    to report per-project usage and limits
"""

from __future__ import annotations

import logging

from .base import QuotaBackend, QuotaError, QuotaUnavailableError, parse_kib

log = logging.getLogger(__name__)


class Ext4Backend(QuotaBackend):
    """Project quotas on ext4."""

    fs_type = "ext4"

    def check_available(self) -> None:
        """Check setquota is installed; warn if prjquota seems to be off."""
        try:
            self.run("setquota", "-V")
        except QuotaError as e:
            raise QuotaUnavailableError(
                f"setquota command not found (install quota package): {e}"
            ) from e

        try:
            options = self.run("findmnt", "-n", "-o", "OPTIONS", self.quota_path)
        except QuotaError as e:
            log.warning(f"Failed to check mount options: {e}")
        else:
            if "prjquota" not in options:
                log.warning(
                    "Project quota may not be enabled "
                    f"(prjquota mount option not found): {options.strip()}"
                )

        log.info("ext4 quota tools available")

    def apply(
        self, path: str, project_name: str, project_id: int, size_bytes: int
    ) -> None:
        """Add the project mapping, tag `path` and set the hard limit."""
        try:
            self.mapping.add(path, project_name, project_id)
        except OSError as e:
            raise QuotaError(f"failed to add project: {e}") from e

        # A failure here still lets the limit be set; new files created
        # under an already-tagged parent inherit the project anyways.
        try:
            self.run("chattr", "-R", "+P", "-p", project_id, path)
        except QuotaError as e:
            log.warning(f"Failed to set project attribute on {path}: {e}")

        size_kib = self.size_kib(size_bytes)
        self.run("setquota", "-P", project_id, 0, size_kib, 0, 0, self.quota_path)

        log.debug(
            f"ext4 quota applied: path={path} project={project_name} "
            f"id={project_id} size={size_kib}k"
        )

    def report(self) -> tuple[dict[str, int], dict[str, int]]:
        """Parse `repquota -P` output.

        Columns are: project, flags, used, soft, hard, grace...  The
        flags ("--", "+-", ...) may be glued onto the project column.
        """
        output = self.run("repquota", "-P", self.quota_path)
        paths = self._paths_by_project()

        quota_map = {}
        usage_map = {}
        for line in output.splitlines():
            fields = line.split()
            if len(fields) < 5:
                continue

            if fields[0] == "Project" or line.startswith(("-", "*")):
                continue

            project = fields[0]
            for flags in ("--", "+-", "-+", "++"):
                if project.endswith(flags):
                    project = project[: -len(flags)]
                    # Re-align columns so "used" is at index 2
                    fields.insert(1, flags)
                    break

            path = paths.get(project.lstrip("#"))
            if path is None or len(fields) < 5:
                continue

            try:
                usage_map[path] = parse_kib(fields[2]) * 1024
                hard = parse_kib(fields[4])
            except ValueError:
                log.debug(f"Unparseable repquota line: {line}")
                continue

            if hard > 0:
                quota_map[path] = hard * 1024

        return quota_map, usage_map
