"""Namespace quota policy.

The quota bounds for volumes in a namespace are taken from the first
of these which applies:

1. a LimitRange in the namespace with a "PersistentVolumeClaim" limit.
   The first such limit of the first such LimitRange provides the
   max, min and default storage.  If there's no default, the
   defaultRequest is used.
2. the namespace annotations `nfs.io/default-quota` and `nfs.io/max-quota`
3. the global default quota.

The `source` of a `NamespacePolicy` records which of these applied.

The `requests.storage` limit of a ResourceQuota in the namespace is
reported alongside, but plays no part in the bounds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .common import util
from .kube import LIMIT_TYPE_PVC, ClusterError

log = logging.getLogger(__name__)

# Namespace annotations, used when there's no LimitRange
ANNOTATION_DEFAULT_QUOTA = "nfs.io/default-quota"
ANNOTATION_MAX_QUOTA = "nfs.io/max-quota"

# Policy sources
SOURCE_LIMIT_RANGE = "LimitRange"
SOURCE_ANNOTATION = "Annotation"
SOURCE_GLOBAL = "Global"
SOURCE_NONE = "None"

# Violation types
EXCEEDS_MAX = "exceeds_max"
BELOW_MIN = "below_min"

# Size suffixes, most specific first
_SUFFIXES = (
    ("TI", 2**40),
    ("GI", 2**30),
    ("MI", 2**20),
    ("KI", 2**10),
    ("T", 1000**4),
    ("G", 1000**3),
    ("M", 1000**2),
    ("K", 1000),
)


def parse_quota_size(value: str) -> int:
    """Parse a size like "10Gi" or "500M" into bytes.

    Binary (Ki, Mi, Gi, Ti) and decimal (K, M, G, T) suffixes are
    supported, in any case.  Fractional values are allowed: "5.5Gi"
    is 5905580032 bytes.

    Raises
    ------
    ValueError
        `value` is empty or not a size.
    """
    text = value.strip().upper()
    if not text:
        raise ValueError("empty size string")

    multiplier = 1
    number = text
    for suffix, factor in _SUFFIXES:
        if text.endswith(suffix):
            multiplier = factor
            number = text[: -len(suffix)]
            break

    try:
        return int(float(number) * multiplier)
    except (ValueError, OverflowError):
        raise ValueError(f"invalid number: {number}") from None


@dataclass
class NamespacePolicy:
    """Resolved quota bounds for a namespace.

    Byte values of zero mean "unset".
    """

    namespace: str

    # LimitRange values
    limit_range_name: str = ""
    limit_range_max: int = 0
    limit_range_min: int = 0
    limit_range_default: int = 0

    # ResourceQuota values (namespace total)
    resource_quota_name: str = ""
    resource_quota_hard: int = 0
    resource_quota_used: int = 0
    resource_quota_hard_str: str = ""
    resource_quota_used_str: str = ""

    # Effective values
    default_quota: int = 0
    max_quota: int = 0
    min_quota: int = 0
    default_str: str = ""
    max_str: str = ""
    min_str: str = ""

    source: str = SOURCE_NONE


@dataclass
class PolicyViolation:
    """A volume whose capacity is outside its namespace's bounds."""

    namespace: str
    pvc_name: str
    pv_name: str
    requested_bytes: int
    violation_type: str
    max_quota_bytes: int = 0
    min_quota_bytes: int = 0
    bound_str: str = ""

    @property
    def bound_bytes(self) -> int:
        """The bound which was violated."""
        if self.violation_type == EXCEEDS_MAX:
            return self.max_quota_bytes
        return self.min_quota_bytes


def _apply_limit_range(pol: NamespacePolicy, limit_ranges) -> None:
    """Fill in `pol` from the first PVC limit found in `limit_ranges`."""
    for _, name, limits in limit_ranges:
        for limit in limits:
            if limit.type != LIMIT_TYPE_PVC:
                continue

            pol.limit_range_name = name
            pol.source = SOURCE_LIMIT_RANGE

            if limit.max:
                pol.limit_range_max = pol.max_quota = limit.max
                pol.max_str = limit.max_str
            if limit.min:
                pol.limit_range_min = pol.min_quota = limit.min
                pol.min_str = limit.min_str
            if limit.default:
                pol.limit_range_default = pol.default_quota = limit.default
                pol.default_str = limit.default_str
            elif limit.default_request:
                pol.default_quota = limit.default_request
                pol.default_str = limit.default_request_str
            return


def _apply_annotations(pol: NamespacePolicy, annotations: dict[str, str]) -> None:
    """Fill in `pol` from the namespace quota annotations."""
    for key, attr in (
        (ANNOTATION_DEFAULT_QUOTA, "default"),
        (ANNOTATION_MAX_QUOTA, "max"),
    ):
        if key not in annotations:
            continue

        text = annotations[key]
        try:
            size = parse_quota_size(text)
        except ValueError as e:
            log.warning(
                f'Invalid quota annotation {key}="{text}" '
                f"on namespace {pol.namespace}: {e}"
            )
            continue

        setattr(pol, attr + "_quota", size)
        setattr(pol, attr + "_str", text)
        pol.source = SOURCE_ANNOTATION


def get_namespace_policy(
    cluster, namespace: str, global_default: int = 0
) -> NamespacePolicy:
    """Resolve the quota policy of `namespace`.

    Parameters
    ----------
    cluster : KubeCluster
        The cluster to query.
    namespace : str
        The namespace.
    global_default : int, optional
        Default quota, in bytes, for namespaces with no other policy.
        Zero for none.

    Lookups which fail are logged and treated as finding nothing.
    """
    pol = NamespacePolicy(namespace=namespace)

    try:
        _apply_limit_range(pol, cluster.list_limit_ranges(namespace))
    except ClusterError as e:
        log.debug(f"Unable to list LimitRanges in {namespace}: {e}")

    try:
        quotas = cluster.list_resource_quotas(namespace)
    except ClusterError as e:
        log.debug(f"Unable to list ResourceQuotas in {namespace}: {e}")
        quotas = []

    if quotas:
        rq = quotas[0]
        pol.resource_quota_name = rq.name
        pol.resource_quota_hard = rq.hard or 0
        pol.resource_quota_hard_str = rq.hard_str or ""
        pol.resource_quota_used = rq.used or 0
        pol.resource_quota_used_str = rq.used_str or ""

    if pol.source == SOURCE_NONE:
        try:
            _apply_annotations(pol, cluster.get_namespace_annotations(namespace))
        except ClusterError as e:
            log.debug(f"Unable to get namespace {namespace}: {e}")

    if pol.source == SOURCE_NONE and global_default > 0:
        pol.default_quota = global_default
        pol.default_str = util.pretty_bytes(global_default)
        pol.source = SOURCE_GLOBAL

    return pol


def validate_quota(
    cluster,
    namespace: str,
    requested: int,
    enforce_max: bool = False,
    global_default: int = 0,
) -> str | None:
    """Check a requested quota against the namespace policy.

    The maximum is only checked if `enforce_max` is True.  The minimum is
    always checked.

    Returns
    -------
    error : str or None
        A description of the violation, or None if the request is allowed
        (or the policy couldn't be determined).
    """
    try:
        pol = get_namespace_policy(cluster, namespace, global_default)
    except ClusterError as e:
        log.debug(f"Could not get policy for namespace {namespace}: {e}")
        return None

    if enforce_max and pol.max_quota > 0 and requested > pol.max_quota:
        return (
            f"requested quota {util.pretty_bytes(requested)} exceeds maximum "
            f"allowed {pol.max_str} for namespace {namespace} "
            f"(source: {pol.source})"
        )

    if pol.min_quota > 0 and requested < pol.min_quota:
        return (
            f"requested quota {util.pretty_bytes(requested)} is below minimum "
            f"required {pol.min_str} for namespace {namespace} "
            f"(source: {pol.source})"
        )

    return None


def get_all_namespace_policies(
    cluster, global_default: int = 0
) -> list[NamespacePolicy]:
    """Policies of all namespaces which have one.

    A namespace has a policy if it has a LimitRange with a PVC limit, a
    ResourceQuota on `requests.storage` or a quota annotation.  The result
    is sorted by namespace.
    """
    namespaces = set()

    try:
        for ns, _, limits in cluster.list_limit_ranges(None):
            if any(limit.type == LIMIT_TYPE_PVC for limit in limits):
                namespaces.add(ns)
    except ClusterError as e:
        log.warning(f"Unable to list LimitRanges: {e}")

    try:
        namespaces.update(rq.namespace for rq in cluster.list_resource_quotas(None))
    except ClusterError as e:
        log.warning(f"Unable to list ResourceQuotas: {e}")

    try:
        for ns, annotations in cluster.list_namespaces().items():
            if (
                ANNOTATION_DEFAULT_QUOTA in annotations
                or ANNOTATION_MAX_QUOTA in annotations
            ):
                namespaces.add(ns)
    except ClusterError as e:
        log.warning(f"Unable to list namespaces: {e}")

    return [
        get_namespace_policy(cluster, ns, global_default) for ns in sorted(namespaces)
    ]


def get_violations(cluster, global_default: int = 0) -> list[PolicyViolation]:
    """Find bound volumes whose capacity violates their namespace policy.

    Raises
    ------
    ClusterError
        The volumes couldn't be listed.
    """
    violations = []
    policies = {}

    for volume in cluster.list_volumes():
        if not volume.bound or not volume.claim_namespace:
            continue
        if volume.capacity is None:
            continue

        namespace = volume.claim_namespace
        if namespace not in policies:
            policies[namespace] = get_namespace_policy(
                cluster, namespace, global_default
            )
        pol = policies[namespace]

        if pol.max_quota > 0 and volume.capacity > pol.max_quota:
            violations.append(
                PolicyViolation(
                    namespace=namespace,
                    pvc_name=volume.claim_name or "",
                    pv_name=volume.name,
                    requested_bytes=volume.capacity,
                    violation_type=EXCEEDS_MAX,
                    max_quota_bytes=pol.max_quota,
                    bound_str=pol.max_str,
                )
            )

        if pol.min_quota > 0 and volume.capacity < pol.min_quota:
            violations.append(
                PolicyViolation(
                    namespace=namespace,
                    pvc_name=volume.claim_name or "",
                    pv_name=volume.name,
                    requested_bytes=volume.capacity,
                    violation_type=BELOW_MIN,
                    min_quota_bytes=pol.min_quota,
                    bound_str=pol.min_str,
                )
            )

    return violations
