"""Common fixtures"""

import logging
from unittest.mock import patch

import pytest

import nfsquota.common.logger
from nfsquota.common import config
from nfsquota.kube import ANNOTATION_PROVISIONED_BY, ClusterError, VolumeRef
from nfsquota.quota import (
    ProjectMapping,
    QuotaBackend,
    QuotaError,
    QuotaUnavailableError,
)


def pytest_configure(config):
    """This function extends the pytest config file."""

    config.addinivalue_line(
        "markers",
        "run_command_result(ret, stdout, stderr): "
        "used on tests which mock nfsquota.common.util.run_command to "
        "set the desired return value for the mocked call.",
    )
    config.addinivalue_line(
        "markers",
        "run_command_results(results): "
        "used on tests which mock nfsquota.common.util.run_command to "
        "set per-command return values.  results is a dict whose keys are "
        "command prefixes (the command joined with spaces) and whose "
        "values are (ret, stdout, stderr) tuples.  Commands not matching "
        "any key use the run_command_result mark, if present.",
    )
    config.addinivalue_line(
        "markers",
        "nfsquota_config(*config_dict): "
        "used to set the nfsquota.config for testing.  config_dict"
        "is merged with the default config.",
    )


@pytest.fixture
def logger():
    """Set up for log testing

    Yields nfsquota.common.logger.
    """

    nfsquota.common.logger.init_logging()

    yield nfsquota.common.logger

    # Teardown
    root = logging.getLogger()

    # Remove all handlers from the root logger
    handlers = root.handlers
    for handler in handlers:
        root.removeHandler(handler)

    nfsquota.common.logger.log_buffer = None


@pytest.fixture
def set_config(request, logger):
    """Set nfsquota.common.config.config for testing.

    Any value given in the nfsquota_config mark is merged into the
    default config.

    Yields nfsquota.common.config.config.

    After the test completes, nfsquota.common.config.config is set to None.
    """
    # Initialise with the default
    config.config = config.merge_dict_tree({}, config._default_config)

    marker = request.node.get_closest_marker("nfsquota_config")
    if marker is not None:
        config.config = config.merge_dict_tree(config.config, marker.args[0])

    yield config.config

    # Reset globals
    config.config = None


@pytest.fixture
def mock_run_command(request, set_config):
    """Mock nfsquota.common.util.run_command to _not_ run a command.

    The value returned by run_command() can be set by the test via the
    run_command_result and run_command_results marks.

    This fixture yields a function which returns a dictionary containing
    the arguments passed to the last run_command call.  The "calls" key
    of the dictionary lists the commands of all calls made.
    """
    run_command_report = {"calls": []}

    marker = request.node.get_closest_marker("run_command_result")
    if marker is None:
        run_command_result = (0, "", "")
    else:
        run_command_result = tuple(marker.args)

    marker = request.node.get_closest_marker("run_command_results")
    run_command_results = {} if marker is None else marker.args[0]

    def _mocked_run_command(cmd, timeout=None, **kwargs):
        # This just reports its input
        run_command_report["cmd"] = cmd
        run_command_report["timeout"] = timeout
        run_command_report["kwargs"] = kwargs
        run_command_report["calls"].append(cmd)

        # Return the requested value (or maybe the default)
        joined = " ".join(cmd)
        for prefix, result in run_command_results.items():
            if joined.startswith(prefix):
                return tuple(result)
        return run_command_result

    def _get_run_command_report():
        return run_command_report

    with patch("nfsquota.common.util.run_command", _mocked_run_command):
        yield _get_run_command_report


class FakeCluster:
    """Stands in for nfsquota.kube.KubeCluster.

    Volumes, namespaces, LimitRanges and ResourceQuotas are set directly
    on the instance.  Annotations made with `annotate_volume` are recorded
    in `annotations` and applied to the stored volume, if any.

    `watches` is a list consumed by `watch_volumes`: each element is either
    a list of (event_type, volume) pairs to yield or an exception to raise.
    When `watches` is exhausted, `on_watch_exhausted` is called (if set)
    and nothing is yielded.
    """

    def __init__(self):
        self.volumes = {}
        self.annotations = []
        self.namespaces = {}
        self.limit_ranges = []
        self.resource_quotas = []
        self.watches = []
        self.watch_calls = 0
        self.on_watch_exhausted = None
        self.fail_list = False
        self.fail_annotate = False

    def add_volume(self, volume):
        self.volumes[volume.name] = volume
        return volume

    def list_volumes(self):
        if self.fail_list:
            raise ClusterError("failed to list PVs: 500 Internal Server Error")
        return list(self.volumes.values())

    def watch_volumes(self, timeout=None):
        self.watch_calls += 1
        if not self.watches:
            if self.on_watch_exhausted is not None:
                self.on_watch_exhausted()
            return

        item = self.watches.pop(0)
        if isinstance(item, Exception):
            raise item
        yield from item

    def annotate_volume(self, name, key, value):
        if self.fail_annotate:
            raise ClusterError("failed to update PV: 409 Conflict")
        self.annotations.append((name, key, value))
        if name in self.volumes:
            self.volumes[name].annotations[key] = value

    def get_namespace_annotations(self, namespace):
        if namespace not in self.namespaces:
            raise ClusterError("failed to get namespace: 404 Not Found")
        return dict(self.namespaces[namespace])

    def list_namespaces(self):
        return {ns: dict(annotations) for ns, annotations in self.namespaces.items()}

    def list_limit_ranges(self, namespace=None):
        return [lr for lr in self.limit_ranges if namespace in (None, lr[0])]

    def list_resource_quotas(self, namespace=None):
        return [rq for rq in self.resource_quotas if namespace in (None, rq.namespace)]


class FakeBackend(QuotaBackend):
    """A quota backend which records what it's asked to do.

    Set `fail` to a message to make `apply` raise QuotaError.
    """

    fs_type = "xfs"

    def __init__(self, quota_path, mapping):
        super().__init__(quota_path, mapping)
        self.applied = []
        self.fail = None
        self.report_result = ({}, {})
        self.available = True

    def check_available(self):
        if not self.available:
            raise QuotaUnavailableError("unavailable")

    def apply(self, path, project_name, project_id, size_bytes):
        self.applied.append((path, project_name, project_id, size_bytes))
        if self.fail:
            raise QuotaError(self.fail)
        self.mapping.add(path, project_name, project_id)

    def report(self):
        return self.report_result


@pytest.fixture
def cluster():
    """A FakeCluster."""
    return FakeCluster()


@pytest.fixture
def backend(fs):
    """A FakeBackend on /export, with mapping files in /etc."""
    fs.makedirs("/etc", exist_ok=True)
    fs.makedirs("/export", exist_ok=True)
    return FakeBackend("/export", ProjectMapping("/etc/projects", "/etc/projid"))


@pytest.fixture
def make_volume():
    """Returns a factory for bound native NFS VolumeRefs.

    By default, the volume is provisioned by "test-provisioner", with
    a 1 GiB capacity and an export path under "/data/ns".
    """

    def _make_volume(name="pv-1", capacity=2**30, **kwargs):
        kwargs.setdefault("phase", "Bound")
        kwargs.setdefault("native_nfs", True)
        kwargs.setdefault("nfs_path", f"/data/ns/{name}")
        kwargs.setdefault("claim_namespace", "ns")
        kwargs.setdefault("claim_name", f"claim-{name}")
        kwargs.setdefault(
            "annotations", {ANNOTATION_PROVISIONED_BY: "test-provisioner"}
        )
        return VolumeRef(name=name, capacity=capacity, **kwargs)

    return _make_volume
