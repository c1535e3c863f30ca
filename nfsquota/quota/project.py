"""Project mapping files.

The OS quota tools associate directories with numeric project IDs via two
plain-text files:

* the projects file (usually `/etc/projects`), with lines `projectID:path`
* the projid file (usually `/etc/projid`), with lines `projectName:projectID`

Lines starting with `#` are comments.  Entries are only ever appended if
no entry with the same key (the first field) is already present, so
adding the same project twice leaves a single line in each file.
"""

from __future__ import annotations

import logging
import os
import pathlib

log = logging.getLogger(__name__)


def read_entries(filename: str | os.PathLike) -> list[tuple[str, str]]:
    """Read the `key:value` entries in a mapping file.

    Blank lines, comments and lines without a colon are skipped.  A
    missing file has no entries.

    Raises
    ------
    OSError
        The file existed but could not be read.
    """
    try:
        with open(filename) as f:
            lines = f.read().splitlines()
    except FileNotFoundError:
        return []

    entries = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition(":")
        if sep:
            entries.append((key, value))

    return entries


def append_entry(filename: str | os.PathLike, key: str, value: str) -> bool:
    """Append `key:value` to `filename` unless `key` is already present.

    Returns
    -------
    added : bool
        False if an entry for `key` already existed.
    """
    for existing, _ in read_entries(filename):
        if existing == key:
            return False

    # Don't glue the new entry onto an unterminated last line
    prefix = ""
    try:
        with open(filename, "rb") as f:
            f.seek(0, os.SEEK_END)
            if f.tell() > 0:
                f.seek(-1, os.SEEK_END)
                if f.read(1) != b"\n":
                    prefix = "\n"
    except FileNotFoundError:
        pass

    with open(filename, "a") as f:
        f.write(f"{prefix}{key}:{value}\n")

    return True


def remove_entries(filename: str | os.PathLike, key: str) -> int:
    """Remove all entries for `key` from `filename`.

    Comments and other entries are preserved.  The file is rewritten
    atomically.

    Returns
    -------
    removed : int
        The number of lines removed.
    """
    path = pathlib.Path(filename)
    try:
        lines = path.read_text().splitlines(keepends=True)
    except FileNotFoundError:
        return 0

    prefix = key + ":"
    kept = [line for line in lines if not line.strip().startswith(prefix)]
    removed = len(lines) - len(kept)

    if removed:
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text("".join(kept))
        os.replace(tmp, path)

    return removed


class ProjectMapping:
    """The pair of project mapping files used by a quota backend.

    Parameters
    ----------
    projects_file : path-like
        The file of `projectID:path` entries
    projid_file : path-like
        The file of `projectName:projectID` entries
    """

    def __init__(
        self, projects_file: str | os.PathLike, projid_file: str | os.PathLike
    ) -> None:
        self.projects_file = pathlib.Path(projects_file)
        self.projid_file = pathlib.Path(projid_file)

    def __repr__(self) -> str:
        return f"ProjectMapping({str(self.projects_file)!r}, {str(self.projid_file)!r})"

    def add(self, path: str, project_name: str, project_id: int) -> None:
        """Record the project `project_name` with ID `project_id` for `path`.

        Raises OSError if a mapping file can't be written.
        """
        if append_entry(self.projid_file, project_name, str(project_id)):
            log.debug(f"Added {project_name}:{project_id} to {self.projid_file}")
        if append_entry(self.projects_file, str(project_id), path):
            log.debug(f"Added {project_id}:{path} to {self.projects_file}")

    def read_projects(self) -> dict[str, str]:
        """Return the projectID -> path mapping."""
        return dict(read_entries(self.projects_file))

    def read_projid(self) -> dict[str, str]:
        """Return the projectID -> projectName mapping."""
        return {value: key for key, value in read_entries(self.projid_file)}

    def count(self) -> int:
        """Number of entries in the projects file."""
        return len(read_entries(self.projects_file))

    def find_by_path(self, path: str) -> tuple[str | None, str | None]:
        """Find the project owning `path`.

        Returns
        -------
        project_id, project_name : str or None
            Either may be None if no matching entry was found.
        """
        project_id = None
        for key, value in read_entries(self.projects_file):
            if value == path:
                project_id = key
                break

        if project_id is None:
            return None, None

        return project_id, self.read_projid().get(project_id)

    def remove(self, path: str) -> bool:
        """Remove the entries for the project owning `path`.

        Returns
        -------
        removed : bool
            False if there was no project for `path`.
        """
        project_id, project_name = self.find_by_path(path)
        if project_id is None:
            return False

        remove_entries(self.projects_file, project_id)
        if project_name is not None:
            remove_entries(self.projid_file, project_name)

        log.debug(f"Removed project {project_name}:{project_id} for {path}")
        return True
