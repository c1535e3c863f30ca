"""Kubernetes cluster adapter.

The rest of nfsquota never sees kubernetes API objects.  Everything it needs
from the cluster is converted here into the small dataclasses below, and all
API calls go through `KubeCluster`.  Any object implementing the same methods
as `KubeCluster` can stand in for it (the test suite uses a fake cluster).

Errors talking to the API server are raised as `ClusterError`.
"""

from __future__ import annotations

import logging
import math
import posixpath
from collections.abc import Iterator
from dataclasses import dataclass, field

import urllib3
from kubernetes import client, watch
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.utils import parse_quantity

log = logging.getLogger(__name__)

# Volume phase which means the volume is in use
PHASE_BOUND = "Bound"

# Annotation set by external provisioners on volumes they create
ANNOTATION_PROVISIONED_BY = "pv.kubernetes.io/provisioned-by"

# LimitRange limit type for claims
LIMIT_TYPE_PVC = "PersistentVolumeClaim"

# Resource names
RESOURCE_STORAGE = "storage"
RESOURCE_REQUESTS_STORAGE = "requests.storage"


class ClusterError(Exception):
    """A request to the cluster failed."""


class VolumeError(Exception):
    """A volume can't be given a quota."""


@dataclass
class VolumeRef:
    """The parts of a PersistentVolume which nfsquota cares about.

    Attributes
    ----------
    name : str
        Name of the PersistentVolume
    phase : str
        Status phase ("Bound", "Available", ...)
    capacity : int or None
        Storage capacity in bytes, or None if the volume has none.
    claim_namespace, claim_name : str or None
        The bound claim, if any
    nfs_path : str or None
        The export path of the volume.  For CSI volumes, this is derived
        from the volume attributes.
    csi_driver : str or None
        The CSI driver name, for CSI volumes
    native_nfs : bool
        True if this is an in-tree NFS volume
    annotations : dict
        The volume's annotations.
    """

    name: str
    phase: str | None = None
    capacity: int | None = None
    claim_namespace: str | None = None
    claim_name: str | None = None
    nfs_path: str | None = None
    csi_driver: str | None = None
    native_nfs: bool = False
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def bound(self) -> bool:
        return self.phase == PHASE_BOUND


@dataclass
class LimitRangeLimit:
    """The storage bounds from one LimitRange limit entry.

    Byte values are None when the entry didn't specify them.
    """

    limit_range: str
    type: str
    max: int | None = None
    min: int | None = None
    default: int | None = None
    default_request: int | None = None
    max_str: str | None = None
    min_str: str | None = None
    default_str: str | None = None
    default_request_str: str | None = None


@dataclass
class ResourceQuotaInfo:
    """The `requests.storage` values of a ResourceQuota."""

    name: str
    namespace: str
    hard: int | None = None
    used: int | None = None
    hard_str: str | None = None
    used_str: str | None = None


def quantity_bytes(value) -> int | None:
    """Convert a resource quantity (like "10Gi") to an integer.

    Fractional values are rounded up.

    Returns None if `value` is None or can't be parsed.
    """
    if value is None:
        return None

    try:
        return math.ceil(parse_quantity(value))
    except ValueError:
        log.warning(f"Ignoring unparseable quantity: {value!r}")
        return None


def csi_nfs_path(name: str, attributes: dict | None) -> str | None:
    """Derive the export path of a CSI volume from its attributes.

    The path is "share/subDir" (or "share/subdir"); if there's no
    subdirectory attribute, the volume name is used instead.
    """
    if not attributes:
        return None

    share = attributes.get("share")
    if not share:
        return None

    subdir = attributes.get("subDir") or attributes.get("subdir")
    return posixpath.join(share, subdir or name)


def volume_from_k8s(pv: client.V1PersistentVolume) -> VolumeRef:
    """Convert a V1PersistentVolume into a `VolumeRef`."""
    meta = pv.metadata
    spec = pv.spec
    status = pv.status

    volume = VolumeRef(
        name=meta.name,
        phase=status.phase if status else None,
        annotations=dict(meta.annotations or {}),
    )

    if spec is None:
        return volume

    capacity = spec.capacity or {}
    volume.capacity = quantity_bytes(capacity.get(RESOURCE_STORAGE))

    if spec.claim_ref is not None:
        volume.claim_namespace = spec.claim_ref.namespace
        volume.claim_name = spec.claim_ref.name

    if spec.nfs is not None:
        volume.native_nfs = True
        volume.nfs_path = spec.nfs.path or None
    elif spec.csi is not None:
        volume.csi_driver = spec.csi.driver
        volume.nfs_path = csi_nfs_path(meta.name, spec.csi.volume_attributes)

    return volume


def _limit_from_k8s(name: str, item: client.V1LimitRangeItem) -> LimitRangeLimit:
    """Convert a V1LimitRangeItem to a `LimitRangeLimit`."""
    limit = LimitRangeLimit(limit_range=name, type=item.type)
    for attr in ("max", "min", "default", "default_request"):
        values = getattr(item, attr) or {}
        value = values.get(RESOURCE_STORAGE)
        if value is not None:
            setattr(limit, attr, quantity_bytes(value))
            setattr(limit, attr + "_str", str(value))
    return limit


class KubeCluster:
    """Access to the kubernetes API.

    Parameters
    ----------
    api : kubernetes.client.CoreV1Api, optional
        The API client to use.  If not given, one is created from the
        already-loaded kubernetes client configuration.
    """

    def __init__(self, api: client.CoreV1Api | None = None) -> None:
        self._api = api if api is not None else client.CoreV1Api()

    @classmethod
    def from_config(cls, kubeconfig: str | None = None) -> KubeCluster:
        """Create a `KubeCluster` after loading the client configuration.

        If `kubeconfig` is given, that file is used.  Otherwise the
        in-cluster service account configuration is tried first, followed by
        the default kubeconfig.

        Raises
        ------
        ClusterError
            No usable configuration was found.
        """
        try:
            if kubeconfig:
                kube_config.load_kube_config(config_file=kubeconfig)
            else:
                try:
                    kube_config.load_incluster_config()
                except kube_config.ConfigException:
                    log.debug("Not in-cluster; trying kubeconfig.")
                    kube_config.load_kube_config()
        except (kube_config.ConfigException, OSError) as e:
            raise ClusterError(f"unable to load kubernetes config: {e}") from e

        return cls()

    def _call(self, what: str, func, *args, **kwargs):
        """Call an API method, converting errors into ClusterError."""
        try:
            return func(*args, **kwargs)
        except ApiException as e:
            raise ClusterError(f"failed to {what}: {e.status} {e.reason}") from e
        except urllib3.exceptions.HTTPError as e:
            raise ClusterError(f"failed to {what}: {e}") from e

    def list_volumes(self) -> list[VolumeRef]:
        """List all PersistentVolumes."""
        result = self._call("list PVs", self._api.list_persistent_volume)
        return [volume_from_k8s(pv) for pv in result.items]

    def watch_volumes(self, timeout: int | None = None) -> Iterator[tuple[str, VolumeRef]]:
        """Watch PersistentVolume changes.

        Yields `(event_type, volume)` pairs, where `event_type` is one of
        "ADDED", "MODIFIED" or "DELETED".  The iterator ends when the server
        closes the stream, which it will do after `timeout` seconds, if given.

        Raises
        ------
        ClusterError
            The watch couldn't be started or failed part way through.
        """
        kwargs = {}
        if timeout:
            kwargs["timeout_seconds"] = int(timeout)

        try:
            stream = watch.Watch().stream(self._api.list_persistent_volume, **kwargs)
            for event in stream:
                obj = event.get("object")
                if not isinstance(obj, client.V1PersistentVolume):
                    log.debug(f"Ignoring watch event: {event.get('type')}")
                    continue
                yield event["type"], volume_from_k8s(obj)
        except ApiException as e:
            raise ClusterError(f"PV watch failed: {e.status} {e.reason}") from e
        except urllib3.exceptions.HTTPError as e:
            raise ClusterError(f"PV watch failed: {e}") from e

    def annotate_volume(self, name: str, key: str, value: str) -> None:
        """Set annotation `key` to `value` on the PersistentVolume `name`.

        The volume is re-read before it's updated.
        """
        pv = self._call("get PV", self._api.read_persistent_volume, name)
        if pv.metadata.annotations is None:
            pv.metadata.annotations = {}
        pv.metadata.annotations[key] = value
        self._call("update PV", self._api.replace_persistent_volume, name, pv)

    def get_namespace_annotations(self, namespace: str) -> dict[str, str]:
        """Return the annotations of `namespace`."""
        ns = self._call("get namespace", self._api.read_namespace, namespace)
        return dict(ns.metadata.annotations or {})

    def list_namespaces(self) -> dict[str, dict[str, str]]:
        """Return a dict of namespace name to annotations."""
        result = self._call("list namespaces", self._api.list_namespace)
        return {
            ns.metadata.name: dict(ns.metadata.annotations or {})
            for ns in result.items
        }

    def list_limit_ranges(
        self, namespace: str | None = None
    ) -> list[tuple[str, str, list[LimitRangeLimit]]]:
        """List LimitRanges in `namespace`, or in all namespaces if None.

        Returns
        -------
        limit_ranges : list of tuples
            Each element is `(namespace, name, limits)`, with limits in the
            order they appear in the LimitRange.
        """
        if namespace is None:
            result = self._call(
                "list LimitRanges", self._api.list_limit_range_for_all_namespaces
            )
        else:
            result = self._call(
                "list LimitRanges", self._api.list_namespaced_limit_range, namespace
            )

        limit_ranges = []
        for lr in result.items:
            name = lr.metadata.name
            items = lr.spec.limits if lr.spec else None
            limits = [_limit_from_k8s(name, item) for item in items or []]
            limit_ranges.append((lr.metadata.namespace, name, limits))
        return limit_ranges

    def list_resource_quotas(
        self, namespace: str | None = None
    ) -> list[ResourceQuotaInfo]:
        """List ResourceQuotas with a `requests.storage` hard limit.

        If `namespace` is None, all namespaces are listed.
        """
        if namespace is None:
            result = self._call(
                "list ResourceQuotas",
                self._api.list_resource_quota_for_all_namespaces,
            )
        else:
            result = self._call(
                "list ResourceQuotas",
                self._api.list_namespaced_resource_quota,
                namespace,
            )

        quotas = []
        for rq in result.items:
            hard = (rq.spec.hard if rq.spec else None) or {}
            if RESOURCE_REQUESTS_STORAGE not in hard:
                continue
            used = (rq.status.used if rq.status else None) or {}

            info = ResourceQuotaInfo(
                name=rq.metadata.name,
                namespace=rq.metadata.namespace,
                hard=quantity_bytes(hard[RESOURCE_REQUESTS_STORAGE]),
                hard_str=str(hard[RESOURCE_REQUESTS_STORAGE]),
            )
            if RESOURCE_REQUESTS_STORAGE in used:
                info.used = quantity_bytes(used[RESOURCE_REQUESTS_STORAGE])
                info.used_str = str(used[RESOURCE_REQUESTS_STORAGE])
            quotas.append(info)
        return quotas
