"""The quota agent: keeps filesystem quotas in step with cluster volumes.

The `QuotaAgent` applies a project quota to the local directory of each
NFS volume it's responsible for, with the limit set to the capacity of the
volume.  It learns about volumes in two ways:

* a watch on the volume list, which reacts to changes as they happen
* a periodic full re-sync, which catches anything the watch missed.

Both paths end up in `QuotaAgent.ensure_quota`, which is idempotent: the
last limit successfully applied to each directory is cached, and nothing
is done if the requested limit matches it.  A single lock serialises all
quota operations.

After every attempt to apply a quota, the volume is annotated with the
outcome (`nfs.io/quota-status`) and an audit record is written.  Failed
attempts leave the cache alone, so they're retried on the next pass.

The agent also, optionally, runs the orphan cleanup loop (see
`nfsquota.daemon.orphan`) and the usage history collection loop.
"""

from __future__ import annotations

import logging
import os
import posixpath
import threading
import time
from typing import TYPE_CHECKING

from ..audit import AuditLogger
from ..common import config, util
from ..common.metrics import Metric
from ..kube import ANNOTATION_PROVISIONED_BY, ClusterError, VolumeError, VolumeRef
from ..policy import parse_quota_size, validate_quota
from ..quota import QuotaError, select_backend
from ..usage import get_dir_usages
from . import watch
from .orphan import OrphanManager

if TYPE_CHECKING:
    from ..history import HistoryStore
    from ..kube import KubeCluster
    from ..quota import QuotaBackend

log = logging.getLogger(__name__)

# Annotations
ANNOTATION_PROJECT_NAME = "nfs.io/project-name"
ANNOTATION_QUOTA_STATUS = "nfs.io/quota-status"

# Quota status values
STATUS_PENDING = "pending"
STATUS_APPLIED = "applied"
STATUS_FAILED = "failed"

# Generated project names are "pv_" plus at most this many characters
PROJECT_NAME_LENGTH = 32

# FNV-1a (32-bit) parameters
_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619


def generate_project_id(project_name: str) -> int:
    """Derive a project ID from a project name.

    The ID is a 32-bit FNV-1a hash of the name, folded into the range
    [1, 4294967294].
    """
    value = _FNV_OFFSET
    for char in project_name:
        value ^= ord(char)
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value % 4294967293 + 1


class QuotaAgent:
    """The reconciliation engine.

    Parameters
    ----------
    cluster : KubeCluster
        Used to list, watch and annotate volumes.
    base_path : str
        Local path of the NFS export.
    server_path : str
        The export path as seen in the volumes.  Volume paths starting with
        this prefix are mapped to `base_path`.
    provisioner_name : str
        Provisioner (or CSI driver) whose volumes are managed.
    process_all : bool, optional
        If True, manage every native NFS volume, regardless of provisioner.
    quota_path : str, optional
        Path passed to the quota tools.  Defaults to `base_path`.
    projects_file, projid_file : str, optional
        The project mapping files.
    backend : QuotaBackend, optional
        The quota backend.  If not given, it's selected by `start`.
    sync_interval : float, optional
        Seconds between full re-syncs.
    watch_timeout : float, optional
        Server-side timeout, in seconds, of a single volume watch.
    command_timeout : float, optional
        Timeout, in seconds, for quota tool invocations.
    audit_logger : AuditLogger, optional
        Where to record quota operations.  By default, nothing is recorded.
    history_store : HistoryStore, optional
        If given, usage snapshots are recorded in it.
    enable_policy : bool, optional
        If True, check requested quotas against the namespace policy.
    enforce_max : bool, optional
        If True (and `enable_policy` is), refuse quotas above the
        namespace maximum.
    default_quota : int, optional
        The global default quota, in bytes, for policy resolution.
    orphans : OrphanManager, optional
        The orphan manager.  If not given, one is created in dry-run mode
        with automatic cleanup off.
    cleanup_interval : float, optional
        Seconds between automatic orphan cleanup passes.
    """

    def __init__(
        self,
        cluster: KubeCluster,
        base_path: str,
        server_path: str,
        provisioner_name: str,
        process_all: bool = False,
        quota_path: str | None = None,
        projects_file: str = "/etc/projects",
        projid_file: str = "/etc/projid",
        backend: QuotaBackend | None = None,
        sync_interval: float = 30,
        watch_timeout: float = 300,
        command_timeout: float = 60,
        audit_logger: AuditLogger | None = None,
        history_store: HistoryStore | None = None,
        enable_policy: bool = False,
        enforce_max: bool = False,
        default_quota: int = 0,
        orphans: OrphanManager | None = None,
        cleanup_interval: float = 3600,
    ) -> None:
        if sync_interval <= 0:
            raise ValueError("sync interval must be positive")
        if cleanup_interval <= 0:
            raise ValueError("cleanup interval must be positive")

        self.cluster = cluster
        self.base_path = base_path
        self.server_path = server_path
        self.provisioner_name = provisioner_name
        self.process_all = process_all
        self.quota_path = quota_path or base_path
        self.projects_file = projects_file
        self.projid_file = projid_file
        self.backend = backend
        self.sync_interval = sync_interval
        self.watch_timeout = watch_timeout
        self.command_timeout = command_timeout
        self.history_store = history_store
        self.enable_policy = enable_policy
        self.enforce_max = enforce_max
        self.default_quota = default_quota
        self.cleanup_interval = cleanup_interval

        if audit_logger is None:
            audit_logger = AuditLogger(enabled=False)
        self._audit_logger = audit_logger

        if orphans is None:
            orphans = OrphanManager(base_path, self.volume_local_path)
        self.orphans = orphans
        if self.orphans.backend is None:
            self.orphans.backend = backend
        if self.orphans.audit_logger is None:
            self.orphans.audit_logger = audit_logger

        # Guards _applied and all backend calls
        self._lock = threading.Lock()

        # Local path -> last successfully applied limit in bytes
        self._applied = {}

        self._apply_metric = Metric(
            "quota_operations",
            "Count of quota application attempts",
            counter=True,
            unbound={"action", "result"},
        )
        self._applied_metric = Metric(
            "applied_quotas", "Number of directories with an applied quota"
        )

    def __repr__(self) -> str:
        return f"<QuotaAgent base_path={self.base_path} backend={self.backend!r}>"

    @classmethod
    def from_config(
        cls,
        cluster: KubeCluster,
        audit_logger: AuditLogger | None = None,
        history_store: HistoryStore | None = None,
    ) -> QuotaAgent:
        """Create an agent configured from the nfsquota config.

        Raises
        ------
        KeyError, ValueError
            The config was invalid.
        """
        base_path = config.get("nfs.base_path", as_type=str)

        orphans = OrphanManager(
            base_path,
            None,
            grace_period=config.get_seconds("cleanup.grace_period"),
            dry_run=config.get("cleanup.dry_run", as_type=bool),
            auto_cleanup=config.get("cleanup.enable", as_type=bool),
            audit_logger=audit_logger,
        )

        agent = cls(
            cluster,
            base_path=base_path,
            server_path=config.get("nfs.server_path", as_type=str),
            provisioner_name=config.get("nfs.provisioner_name", as_type=str),
            process_all=config.get("nfs.process_all", as_type=bool),
            quota_path=config.get("quota.path", default=None),
            projects_file=config.get("quota.projects_file", as_type=str),
            projid_file=config.get("quota.projid_file", as_type=str),
            sync_interval=config.get_seconds("daemon.sync_interval"),
            watch_timeout=config.get_seconds("daemon.watch_timeout"),
            command_timeout=config.get_seconds("quota.command_timeout"),
            audit_logger=audit_logger,
            history_store=history_store,
            enable_policy=config.get("policy.enable", as_type=bool),
            enforce_max=config.get("policy.enforce_max", as_type=bool),
            default_quota=parse_quota_size(
                str(config.get("policy.default_quota", default="0"))
            ),
            orphans=orphans,
            cleanup_interval=config.get_seconds("cleanup.interval"),
        )
        orphans.local_path_for = agent.volume_local_path
        return agent

    @property
    def audit_logger(self) -> AuditLogger:
        """The audit logger."""
        return self._audit_logger

    @property
    def fs_type(self) -> str | None:
        """The filesystem type, once the backend has been selected."""
        return self.backend.fs_type if self.backend else None

    def applied_quota_count(self) -> int:
        """Number of directories with an applied quota."""
        with self._lock:
            return len(self._applied)

    def applied_quotas(self) -> dict[str, int]:
        """A copy of the local path to applied limit map."""
        with self._lock:
            return dict(self._applied)

    # Volume selection and naming

    def should_process(self, volume: VolumeRef) -> bool:
        """Is this agent responsible for `volume`?

        The volume must be bound and be either a native NFS volume or a CSI
        volume from our driver.  Native NFS volumes must also have been
        provisioned by our provisioner, unless `process_all` is set.
        """
        if not volume.bound:
            return False

        is_csi = volume.csi_driver is not None and (
            volume.csi_driver == self.provisioner_name
        )
        if not volume.native_nfs and not is_csi:
            return False

        if self.process_all or is_csi:
            return True

        return volume.annotations.get(ANNOTATION_PROVISIONED_BY) == (
            self.provisioner_name
        )

    def nfs_path_to_local(self, nfs_path: str) -> str:
        """Map an export path to the local directory.

        If `nfs_path` starts with the server path, that prefix is replaced
        by the base path.  Otherwise, the last component of `nfs_path` is
        joined to the base path.
        """
        if nfs_path.startswith(self.server_path):
            rest = nfs_path[len(self.server_path) :].lstrip("/")
            return posixpath.normpath(posixpath.join(self.base_path, rest))

        return posixpath.join(
            self.base_path, posixpath.basename(nfs_path.rstrip("/"))
        )

    def volume_local_path(self, volume: VolumeRef) -> str | None:
        """The local directory of `volume`, or None if it has no NFS path."""
        if not volume.nfs_path:
            return None
        return self.nfs_path_to_local(volume.nfs_path)

    @staticmethod
    def get_project_name(volume: VolumeRef) -> str:
        """The quota project name for `volume`.

        This is the value of the `nfs.io/project-name` annotation, if
        present, or else generated from the volume name.
        """
        name = volume.annotations.get(ANNOTATION_PROJECT_NAME)
        if name:
            return name

        return "pv_" + volume.name.replace("-", "_")[:PROJECT_NAME_LENGTH]

    generate_project_id = staticmethod(generate_project_id)

    # Quota application

    def update_quota_status(self, volume: VolumeRef, status: str) -> None:
        """Annotate `volume` with the quota `status`.

        Failures are logged.
        """
        try:
            self.cluster.annotate_volume(volume.name, ANNOTATION_QUOTA_STATUS, status)
        except ClusterError as e:
            log.error(f"Failed to update quota status of PV {volume.name}: {e}")

    def _check_policy(self, volume: VolumeRef, capacity: int) -> str | None:
        """Check `capacity` against the policy of `volume`'s namespace."""
        if not self.enable_policy or not volume.claim_namespace:
            return None

        return validate_quota(
            self.cluster,
            volume.claim_namespace,
            capacity,
            enforce_max=self.enforce_max,
            global_default=self.default_quota,
        )

    def ensure_quota(self, volume: VolumeRef) -> bool:
        """Make sure the quota on `volume`'s directory matches its capacity.

        Returns
        -------
        applied : bool
            True if the quota is in place (whether or not anything had to be
            done).  False if the directory doesn't exist yet.

        Raises
        ------
        VolumeError
            The volume has no capacity or NFS path, or its capacity is not
            allowed by the namespace policy.
        QuotaError
            Applying the quota failed.
        """
        with self._lock:
            capacity = volume.capacity
            if capacity is None:
                raise VolumeError(f"PV {volume.name} has no storage capacity")

            local_path = self.volume_local_path(volume)
            if local_path is None:
                raise VolumeError(f"PV {volume.name} has no NFS path")

            if not os.path.exists(local_path):
                log.warning(
                    f"Directory {local_path} for PV {volume.name} does not exist; "
                    "skipping quota"
                )
                return False

            old_quota = self._applied.get(local_path, 0)
            if old_quota == capacity:
                return True

            project_name = self.get_project_name(volume)
            project_id = self.generate_project_id(project_name)
            is_update = old_quota > 0

            error = self._check_policy(volume, capacity)
            exc = None
            if error is None:
                try:
                    self.backend.apply(local_path, project_name, project_id, capacity)
                except QuotaError as e:
                    error = str(e)
                    exc = e
            else:
                exc = VolumeError(error)

            if is_update:
                self._audit_logger.log_update(
                    volume.name,
                    local_path,
                    project_name,
                    project_id,
                    old_quota,
                    capacity,
                    self.fs_type,
                    error,
                    namespace=volume.claim_namespace,
                    pvc_name=volume.claim_name,
                )
            else:
                self._audit_logger.log_create(
                    volume.name,
                    volume.claim_namespace,
                    volume.claim_name,
                    local_path,
                    project_name,
                    project_id,
                    capacity,
                    self.fs_type,
                    error,
                )

            action = "update" if is_update else "create"
            if exc is not None:
                self._apply_metric.inc(action=action, result="failure")
                self.update_quota_status(volume, STATUS_FAILED)
                raise exc

            self._applied[local_path] = capacity
            self._apply_metric.inc(action=action, result="success")
            self._applied_metric.set(len(self._applied))
            self.update_quota_status(volume, STATUS_APPLIED)

        log.info(
            f"Quota applied: PV {volume.name} path={local_path} "
            f"capacity={util.pretty_bytes(capacity)}"
        )
        return True

    def forget_volume(self, volume: VolumeRef) -> None:
        """Stop tracking the quota of a deleted volume.

        The quota itself, and the directory, are left alone.
        """
        local_path = self.volume_local_path(volume)

        with self._lock:
            if local_path is not None:
                self._applied.pop(local_path, None)
            self._applied_metric.set(len(self._applied))

        log.debug(f"PV {volume.name} deleted; quota tracking removed")

    def sync_all_quotas(self) -> int:
        """Ensure the quota of every volume we're responsible for.

        Returns
        -------
        synced : int
            The number of volumes whose quota is in place.
        """
        try:
            volumes = self.cluster.list_volumes()
        except ClusterError as e:
            log.error(f"Quota sync failed: {e}")
            return 0

        synced = 0
        for volume in volumes:
            if not self.should_process(volume):
                continue
            try:
                if self.ensure_quota(volume):
                    synced += 1
            except (VolumeError, QuotaError, OSError) as e:
                log.error(f"Failed to ensure quota for PV {volume.name}: {e}")

        log.debug(f"Quota sync completed: {synced} synced of {len(volumes)} PVs")
        return synced

    # Background work

    def record_history(self) -> None:
        """Record a usage snapshot in the history store, if there is one."""
        if self.history_store is None:
            return

        try:
            usages = get_dir_usages(self.base_path, self.backend)
        except OSError as e:
            log.error(f"Failed to get usages for history: {e}")
            return

        try:
            self.history_store.record(usages)
        except OSError as e:
            log.error(f"Failed to record history: {e}")

    def cleanup_orphans(self) -> int:
        """Run one orphan cleanup pass.  Returns the number removed."""
        try:
            volumes = self.cluster.list_volumes()
        except ClusterError as e:
            log.error(f"Failed to list PVs for orphan detection: {e}")
            return 0

        return self.orphans.cleanup(volumes)

    def find_orphans(self) -> list:
        """List orphaned directories.

        Raises ClusterError if the volumes couldn't be listed.
        """
        return self.orphans.find_orphans(self.cluster.list_volumes())

    def start(self) -> None:
        """Prepare the agent and perform the initial sync.

        Raises
        ------
        QuotaUnavailableError
            Quotas can't be managed on this node.
        """
        if self.backend is None:
            self.backend = select_backend(
                self.quota_path,
                self.projects_file,
                self.projid_file,
                timeout=self.command_timeout,
            )
            if self.orphans.backend is None:
                self.orphans.backend = self.backend

        log.info(
            f"Starting quota agent: base_path={self.base_path} "
            f"server_path={self.server_path} provisioner={self.provisioner_name} "
            f"process_all={self.process_all} fs_type={self.fs_type}"
        )

        self.backend.check_available()

        try:
            log.info(f"Found {self.backend.mapping.count()} existing projects")
        except OSError as e:
            log.warning(f"Failed to load existing projects: {e}")

        self.sync_all_quotas()

    def _loop(
        self, stop_event: threading.Event, interval: float, func, immediate: bool
    ) -> None:
        """Call `func` every `interval` seconds until `stop_event` is set.

        An uncaught exception sets `stop_event`.
        """
        try:
            if immediate:
                func()
            while not stop_event.wait(interval):
                func()
        except Exception:
            log.exception("Aborting due to uncaught exception")
            stop_event.set()

    def _watch(self, stop_event: threading.Event) -> None:
        """Run the volume watch.  An uncaught exception sets `stop_event`."""
        try:
            watch.watch_loop(self, stop_event, self.watch_timeout)
        except Exception:
            log.exception("PV watch aborted due to uncaught exception")
            stop_event.set()

    def _start_thread(self, name: str, target, *args) -> threading.Thread:
        # daemon=True means the thread will be cancelled if the main thread dies
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        return thread

    def run(self, stop_event: threading.Event) -> None:
        """Run the agent until `stop_event` is set.

        `start` must have been called first.  Starts the watch, cleanup
        and history threads, and then performs the periodic re-sync in the
        calling thread.
        """
        self._start_thread("Watch", self._watch, stop_event)

        if self.orphans.auto_cleanup:
            log.info(
                "Starting auto-cleanup loop: "
                f"interval={util.pretty_deltat(self.cleanup_interval)} "
                f"grace_period={util.pretty_deltat(self.orphans.grace_period)} "
                f"dry_run={self.orphans.dry_run}"
            )
            self._start_thread(
                "Cleanup",
                self._loop,
                stop_event,
                self.cleanup_interval,
                self.cleanup_orphans,
                False,
            )

        if self.history_store is not None:
            log.info(
                "Starting history collection: "
                f"interval={util.pretty_deltat(self.history_store.interval)}"
            )
            self._start_thread(
                "History",
                self._loop,
                stop_event,
                self.history_store.interval,
                self.record_history,
                True,
            )

        while not stop_event.wait(self.sync_interval):
            loop_start = time.monotonic()
            self.sync_all_quotas()
            log.debug(
                "Sync pass took "
                f"{util.pretty_deltat(time.monotonic() - loop_start)}"
            )

        log.info("Quota agent shutting down")
