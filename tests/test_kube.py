"""Test nfsquota.kube"""

from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException

from nfsquota.kube import (
    ClusterError,
    KubeCluster,
    csi_nfs_path,
    quantity_bytes,
    volume_from_k8s,
)

GI = 2**30


def make_pv(name="pv-1", annotations=None, phase="Bound", nfs_path=None, csi=None):
    """A V1PersistentVolume."""
    spec = client.V1PersistentVolumeSpec(
        capacity={"storage": "1Gi"},
        claim_ref=client.V1ObjectReference(namespace="ns", name="claim"),
    )
    if nfs_path:
        spec.nfs = client.V1NFSVolumeSource(path=nfs_path, server="nfs.local")
    if csi:
        spec.csi = client.V1CSIPersistentVolumeSource(
            driver="nfs.csi.k8s.io", volume_handle="handle", volume_attributes=csi
        )

    return client.V1PersistentVolume(
        metadata=client.V1ObjectMeta(name=name, annotations=annotations),
        spec=spec,
        status=client.V1PersistentVolumeStatus(phase=phase),
    )


@pytest.fixture
def api():
    """A mock CoreV1Api."""
    return MagicMock()


@pytest.fixture
def kube(api):
    return KubeCluster(api)


def test_quantity_bytes():
    assert quantity_bytes("1Gi") == GI
    assert quantity_bytes("500M") == 500 * 10**6

    # Fractions round up
    assert quantity_bytes("1.5") == 2
    assert quantity_bytes("100m") == 1
    assert quantity_bytes("0.5Ki") == 512

    assert quantity_bytes(None) is None
    assert quantity_bytes("lots") is None


def test_csi_nfs_path():
    assert csi_nfs_path("pv", {"share": "/data", "subDir": "ns/pvc"}) == "/data/ns/pvc"
    assert csi_nfs_path("pv", {"share": "/data", "subdir": "x"}) == "/data/x"
    assert csi_nfs_path("pv", {"share": "/data"}) == "/data/pv"
    assert csi_nfs_path("pv", {"server": "nfs"}) is None
    assert csi_nfs_path("pv", None) is None


def test_native_volume():
    volume = volume_from_k8s(
        make_pv(annotations={"a": "b"}, nfs_path="/data/ns/pv-1")
    )

    assert volume.name == "pv-1"
    assert volume.bound
    assert volume.capacity == GI
    assert volume.claim_namespace == "ns"
    assert volume.claim_name == "claim"
    assert volume.native_nfs
    assert volume.csi_driver is None
    assert volume.nfs_path == "/data/ns/pv-1"
    assert volume.annotations == {"a": "b"}


def test_csi_volume():
    volume = volume_from_k8s(
        make_pv(phase="Available", csi={"share": "/data", "subDir": "ns/pv-1"})
    )

    assert not volume.bound
    assert not volume.native_nfs
    assert volume.csi_driver == "nfs.csi.k8s.io"
    assert volume.nfs_path == "/data/ns/pv-1"
    assert volume.annotations == {}


def test_other_volume():
    volume = volume_from_k8s(make_pv())

    assert not volume.native_nfs
    assert volume.csi_driver is None
    assert volume.nfs_path is None


def test_list_volumes(kube, api):
    api.list_persistent_volume.return_value = MagicMock(
        items=[make_pv("a", nfs_path="/data/a"), make_pv("b", nfs_path="/data/b")]
    )

    assert [volume.name for volume in kube.list_volumes()] == ["a", "b"]


def test_api_error(kube, api):
    api.list_persistent_volume.side_effect = ApiException(status=500, reason="Boom")

    with pytest.raises(ClusterError, match="500 Boom"):
        kube.list_volumes()


def test_watch_volumes(kube, api):
    events = [
        {"type": "ADDED", "object": make_pv("a", nfs_path="/data/a")},
        {"type": "ERROR", "object": {"kind": "Status"}},
        {"type": "DELETED", "object": make_pv("b", nfs_path="/data/b")},
    ]
    watcher = MagicMock()
    watcher.stream.return_value = iter(events)

    with patch("nfsquota.kube.watch.Watch", return_value=watcher):
        result = [(kind, volume.name) for kind, volume in kube.watch_volumes(300)]

    assert result == [("ADDED", "a"), ("DELETED", "b")]
    watcher.stream.assert_called_once_with(
        api.list_persistent_volume, timeout_seconds=300
    )


def test_watch_fails(kube, api):
    watcher = MagicMock()
    watcher.stream.side_effect = ApiException(status=410, reason="Gone")

    with patch("nfsquota.kube.watch.Watch", return_value=watcher):
        with pytest.raises(ClusterError, match="410 Gone"):
            list(kube.watch_volumes())


def test_annotate_volume(kube, api):
    pv = make_pv(nfs_path="/data/a")
    api.read_persistent_volume.return_value = pv

    kube.annotate_volume("pv-1", "nfs.io/quota-status", "applied")

    api.read_persistent_volume.assert_called_once_with("pv-1")
    api.replace_persistent_volume.assert_called_once_with("pv-1", pv)
    assert pv.metadata.annotations == {"nfs.io/quota-status": "applied"}


def test_namespaces(kube, api):
    ns = client.V1Namespace(
        metadata=client.V1ObjectMeta(name="ns", annotations={"k": "v"})
    )
    other = client.V1Namespace(metadata=client.V1ObjectMeta(name="other"))
    api.read_namespace.return_value = ns
    api.list_namespace.return_value = MagicMock(items=[ns, other])

    assert kube.get_namespace_annotations("ns") == {"k": "v"}
    assert kube.list_namespaces() == {"ns": {"k": "v"}, "other": {}}


def test_limit_ranges(kube, api):
    lr = client.V1LimitRange(
        metadata=client.V1ObjectMeta(name="limits", namespace="ns"),
        spec=client.V1LimitRangeSpec(
            limits=[
                client.V1LimitRangeItem(type="Container", max={"cpu": "2"}),
                client.V1LimitRangeItem(
                    type="PersistentVolumeClaim",
                    max={"storage": "5Gi"},
                    default_request={"storage": "1Gi"},
                ),
            ]
        ),
    )
    api.list_namespaced_limit_range.return_value = MagicMock(items=[lr])
    api.list_limit_range_for_all_namespaces.return_value = MagicMock(items=[lr])

    result = kube.list_limit_ranges("ns")
    api.list_namespaced_limit_range.assert_called_once_with("ns")

    assert len(result) == 1
    namespace, name, limits = result[0]
    assert (namespace, name) == ("ns", "limits")
    assert limits[0].type == "Container"
    assert limits[0].max is None

    assert limits[1].max == 5 * GI
    assert limits[1].max_str == "5Gi"
    assert limits[1].default_request == GI
    assert limits[1].min is None

    assert kube.list_limit_ranges() == result


def test_resource_quotas(kube, api):
    rqs = [
        client.V1ResourceQuota(
            metadata=client.V1ObjectMeta(name="compute", namespace="ns"),
            spec=client.V1ResourceQuotaSpec(hard={"cpu": "10"}),
        ),
        client.V1ResourceQuota(
            metadata=client.V1ObjectMeta(name="storage", namespace="ns"),
            spec=client.V1ResourceQuotaSpec(hard={"requests.storage": "100Gi"}),
            status=client.V1ResourceQuotaStatus(used={"requests.storage": "10Gi"}),
        ),
    ]
    api.list_resource_quota_for_all_namespaces.return_value = MagicMock(items=rqs)

    result = kube.list_resource_quotas()

    assert len(result) == 1
    assert result[0].name == "storage"
    assert result[0].hard == 100 * GI
    assert result[0].used == 10 * GI
    assert result[0].hard_str == "100Gi"
    assert result[0].used_str == "10Gi"


def test_from_config_incluster():
    with patch("nfsquota.kube.kube_config.load_incluster_config") as incluster, patch(
        "nfsquota.kube.kube_config.load_kube_config"
    ) as kubeconfig, patch("nfsquota.kube.client.CoreV1Api"):
        KubeCluster.from_config()

    incluster.assert_called_once_with()
    kubeconfig.assert_not_called()


def test_from_config_fallback():
    with patch(
        "nfsquota.kube.kube_config.load_incluster_config",
        side_effect=ConfigException("not in cluster"),
    ), patch("nfsquota.kube.kube_config.load_kube_config") as kubeconfig, patch(
        "nfsquota.kube.client.CoreV1Api"
    ):
        KubeCluster.from_config()

    kubeconfig.assert_called_once_with()


def test_from_config_file():
    with patch("nfsquota.kube.kube_config.load_incluster_config") as incluster, patch(
        "nfsquota.kube.kube_config.load_kube_config"
    ) as kubeconfig, patch("nfsquota.kube.client.CoreV1Api"):
        KubeCluster.from_config("/path/to/kubeconfig")

    incluster.assert_not_called()
    kubeconfig.assert_called_once_with(config_file="/path/to/kubeconfig")


def test_from_config_fails():
    with patch(
        "nfsquota.kube.kube_config.load_incluster_config",
        side_effect=ConfigException("not in cluster"),
    ), patch(
        "nfsquota.kube.kube_config.load_kube_config",
        side_effect=ConfigException("no kubeconfig"),
    ):
        with pytest.raises(ClusterError, match="no kubeconfig"):
            KubeCluster.from_config()
