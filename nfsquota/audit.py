"""Audit log of quota operations.

The audit log is a file of newline-delimited JSON objects, one per quota
operation attempt, whether it succeeded or not.  Each object has these
keys:

* `timestamp`: RFC 3339 UTC time of the operation
* `action`: one of "CREATE", "UPDATE", "DELETE", "CLEANUP"
* `pv_name`, `namespace`, `pvc_name`: the volume and its claim
* `path`: the directory the operation was performed on
* `project_id`, `project_name`: the quota project
* `old_quota_bytes`, `new_quota_bytes`: the limits before and after
* `fs_type`: the filesystem type
* `success`: whether the operation succeeded
* `error`: the error message, for failed operations
* `node_name`, `agent_id`: who performed the operation

Keys with empty values are omitted, except for `path` and `success`, which
are always present.

The log file is rotated when it grows past a size threshold: the current
file is renamed with a timestamp suffix and a new file is started.
"""

from __future__ import annotations

import datetime
import enum
import json
import logging
import os
import pathlib
import threading
from dataclasses import dataclass, replace

log = logging.getLogger(__name__)

# strftime format of the suffix added to rotated log files
ROTATE_SUFFIX = "%Y%m%d-%H%M%S"


class Action(str, enum.Enum):
    """Audited quota actions."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CLEANUP = "CLEANUP"


@dataclass(frozen=True)
class AuditEntry:
    """A single audit log record."""

    action: Action
    path: str
    success: bool
    timestamp: datetime.datetime | None = None
    pv_name: str = ""
    namespace: str = ""
    pvc_name: str = ""
    project_id: int = 0
    project_name: str = ""
    old_quota_bytes: int = 0
    new_quota_bytes: int = 0
    fs_type: str = ""
    error: str = ""
    node_name: str = ""
    agent_id: str = ""

    def to_dict(self) -> dict:
        """Return the JSON-ready representation of this entry."""
        data = {}
        if self.timestamp is not None:
            data["timestamp"] = format_time(self.timestamp)
        data["action"] = self.action.value

        for key in ("pv_name", "namespace", "pvc_name"):
            if getattr(self, key):
                data[key] = getattr(self, key)

        data["path"] = self.path

        for key in (
            "project_id",
            "project_name",
            "old_quota_bytes",
            "new_quota_bytes",
            "fs_type",
        ):
            if getattr(self, key):
                data[key] = getattr(self, key)

        data["success"] = self.success

        for key in ("error", "node_name", "agent_id"):
            if getattr(self, key):
                data[key] = getattr(self, key)

        return data

    @classmethod
    def from_dict(cls, data: dict) -> AuditEntry:
        """Create an entry from its JSON representation.

        Raises
        ------
        KeyError, TypeError, ValueError
            `data` isn't a valid audit record.
        """
        timestamp = data.get("timestamp")
        return cls(
            action=Action(data["action"]),
            path=str(data.get("path", "")),
            success=bool(data.get("success", False)),
            timestamp=parse_time(timestamp) if timestamp else None,
            pv_name=data.get("pv_name", ""),
            namespace=data.get("namespace", ""),
            pvc_name=data.get("pvc_name", ""),
            project_id=int(data.get("project_id", 0)),
            project_name=data.get("project_name", ""),
            old_quota_bytes=int(data.get("old_quota_bytes", 0)),
            new_quota_bytes=int(data.get("new_quota_bytes", 0)),
            fs_type=data.get("fs_type", ""),
            error=data.get("error", ""),
            node_name=data.get("node_name", ""),
            agent_id=data.get("agent_id", ""),
        )


def format_time(value: datetime.datetime) -> str:
    """Format a timestamp as RFC 3339."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def parse_time(value: str) -> datetime.datetime:
    """Parse an RFC 3339 timestamp into an aware datetime.

    Raises ValueError if `value` can't be parsed.
    """
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    result = datetime.datetime.fromisoformat(value)
    if result.tzinfo is None:
        result = result.replace(tzinfo=datetime.timezone.utc)
    return result


def _error_text(error: BaseException | str | None) -> str:
    if error is None:
        return ""
    return str(error)


class AuditLogger:
    """Writes `AuditEntry` records to the audit log.

    When disabled, every method is a no-op, so callers never need to check
    whether auditing is on.

    Parameters
    ----------
    enabled : bool
        Whether to write anything at all.
    path : path-like
        The audit log file.  Its directory is created, if necessary.
    max_bytes : int
        The log is rotated before a write if it is at least this big.
        Zero or less disables rotation.
    node_name : str
        Recorded in every entry.
    agent_id : str, optional
        Recorded in every entry.  Defaults to "agent-<pid>".

    Raises
    ------
    OSError
        The log file couldn't be opened.
    """

    def __init__(
        self,
        enabled: bool = True,
        path: str | os.PathLike | None = None,
        max_bytes: int = 100 * 2**20,
        node_name: str = "",
        agent_id: str | None = None,
    ) -> None:
        self.enabled = enabled
        self.path = pathlib.Path(path) if path is not None else None
        self.max_bytes = max_bytes
        self.node_name = node_name
        self.agent_id = agent_id if agent_id is not None else f"agent-{os.getpid()}"

        self._lock = threading.Lock()
        self._file = None

        if not enabled:
            return

        if self.path is None:
            raise ValueError("no audit log path given")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a")
        log.info(f"Audit log: {self.path}")

    def __repr__(self) -> str:
        if not self.enabled:
            return "<AuditLogger disabled>"
        return f"<AuditLogger path={self.path}>"

    def _rotate_if_needed(self) -> None:
        """Rotate the log if it's too big.  Must be called with the lock held.

        Raises OSError if rotation failed.
        """
        if self._file is None or self.max_bytes <= 0:
            return

        if os.fstat(self._file.fileno()).st_size < self.max_bytes:
            return

        self._file.close()
        self._file = None
        rotated = self.path.with_name(
            self.path.name
            + "."
            + datetime.datetime.now().strftime(ROTATE_SUFFIX)
        )
        try:
            os.rename(self.path, rotated)
        finally:
            # Either way, we need an open log file
            self._file = open(self.path, "a")

        log.info(f"Rotated audit log to {rotated}")

    def log(self, entry: AuditEntry) -> None:
        """Write `entry` to the log.

        The timestamp and agent identity are filled in here.  Failure to
        write is logged, but not raised.
        """
        if not self.enabled:
            return

        entry = replace(
            entry,
            timestamp=datetime.datetime.now(datetime.timezone.utc),
            node_name=self.node_name,
            agent_id=self.agent_id,
        )
        line = json.dumps(entry.to_dict()) + "\n"

        with self._lock:
            if self._file is None:
                log.warning(f"Audit log closed; dropping entry: {line.strip()}")
                return

            try:
                self._rotate_if_needed()
            except OSError as e:
                log.warning(f"Audit log rotation failed: {e}")

            if self._file is None:
                log.error(f"Audit log unavailable; dropping entry: {line.strip()}")
                return

            try:
                self._file.write(line)
                self._file.flush()
            except OSError as e:
                log.error(f"Failed to write audit entry: {e}")

    def log_create(
        self,
        pv_name: str,
        namespace: str,
        pvc_name: str,
        path: str,
        project_name: str,
        project_id: int,
        quota_bytes: int,
        fs_type: str,
        error: BaseException | str | None = None,
    ) -> None:
        """Record the creation of a quota."""
        self.log(
            AuditEntry(
                action=Action.CREATE,
                pv_name=pv_name,
                namespace=namespace or "",
                pvc_name=pvc_name or "",
                path=path,
                project_id=project_id,
                project_name=project_name,
                new_quota_bytes=quota_bytes,
                fs_type=fs_type or "",
                success=error is None,
                error=_error_text(error),
            )
        )

    def log_update(
        self,
        pv_name: str,
        path: str,
        project_name: str,
        project_id: int,
        old_quota: int,
        new_quota: int,
        fs_type: str,
        error: BaseException | str | None = None,
        namespace: str = "",
        pvc_name: str = "",
    ) -> None:
        """Record a change in a quota limit."""
        self.log(
            AuditEntry(
                action=Action.UPDATE,
                pv_name=pv_name,
                namespace=namespace or "",
                pvc_name=pvc_name or "",
                path=path,
                project_id=project_id,
                project_name=project_name,
                old_quota_bytes=old_quota,
                new_quota_bytes=new_quota,
                fs_type=fs_type or "",
                success=error is None,
                error=_error_text(error),
            )
        )

    def log_delete(
        self,
        pv_name: str,
        path: str,
        project_name: str,
        project_id: int,
        error: BaseException | str | None = None,
    ) -> None:
        """Record the removal of a quota."""
        self.log(
            AuditEntry(
                action=Action.DELETE,
                pv_name=pv_name,
                path=path,
                project_id=project_id,
                project_name=project_name,
                success=error is None,
                error=_error_text(error),
            )
        )

    def log_cleanup(
        self,
        path: str,
        project_name: str = "",
        project_id: int = 0,
        error: BaseException | str | None = None,
    ) -> None:
        """Record the removal of an orphaned directory."""
        self.log(
            AuditEntry(
                action=Action.CLEANUP,
                path=path,
                project_id=project_id,
                project_name=project_name,
                success=error is None,
                error=_error_text(error),
            )
        )

    def close(self) -> None:
        """Close the log file.  Further entries are dropped."""
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None


@dataclass
class AuditFilter:
    """Criteria for selecting audit entries.

    Unset criteria match everything.  The time range is inclusive.
    """

    action: Action | str | None = None
    pv_name: str | None = None
    namespace: str | None = None
    path: str | None = None
    start: datetime.datetime | None = None
    end: datetime.datetime | None = None
    only_fails: bool = False

    def __post_init__(self) -> None:
        # Raises ValueError for unknown actions
        if self.action and not isinstance(self.action, Action):
            self.action = Action(self.action.upper())

    def matches(self, entry: AuditEntry) -> bool:
        """Returns True if `entry` satisfies all the criteria."""
        if self.action and entry.action != self.action:
            return False
        if self.pv_name and entry.pv_name != self.pv_name:
            return False
        if self.namespace and entry.namespace != self.namespace:
            return False
        if self.path and entry.path != self.path:
            return False
        if self.start is not None or self.end is not None:
            if entry.timestamp is None:
                return False
            if self.start is not None and entry.timestamp < _aware(self.start):
                return False
            if self.end is not None and entry.timestamp > _aware(self.end):
                return False
        if self.only_fails and entry.success:
            return False
        return True


def _aware(value: datetime.datetime) -> datetime.datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


def query_log(
    path: str | os.PathLike, filter: AuditFilter | None = None
) -> list[AuditEntry]:
    """Read the audit log at `path`, returning entries matching `filter`.

    Malformed lines are skipped.

    Raises
    ------
    OSError
        The log couldn't be read.
    """
    if filter is None:
        filter = AuditFilter()

    entries = []
    with open(path, "rb") as f:
        for lineno, raw in enumerate(f, start=1):
            raw = raw.strip()
            if not raw:
                continue
            try:
                entry = AuditEntry.from_dict(json.loads(raw.decode("utf-8")))
            except (ValueError, KeyError, TypeError, AttributeError):
                log.debug(f"Skipping malformed audit entry at {path}:{lineno}")
                continue

            if filter.matches(entry):
                entries.append(entry)

    return entries
