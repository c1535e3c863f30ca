"""nfsquota interface to prometheus_client

Metrics should be created and accessed through the `Metric` class, which
is a light-weight wrapper around the prometheus_client's Counter and
Gauge metrics.

All instances of a metric of a given name share the same underlying
prometheus metric, so a `Metric` may be cheaply re-created wherever it
is needed.  Labels may be bound at creation, so repetition of common label
values is not necessary.
"""

from __future__ import annotations

import logging

import prometheus_client as prom

from . import config

log = logging.getLogger(__name__)

# A dict of all the metrics we're using.  Keys are names.
# Values are two-tuples with elements:
#  * the prometheus_client metric object
#  * the set of all labelnames
_metrics = {}


class Metric:
    """A wrapper for prometheus_client metrics.

    Parameters
    ----------
    name:
        Name of the metric, excluding the initial `nfsquota_`.
    description:
        A human-readable description of the data in the metric.
    counter:
        If True, create a Counter metric.  Otherwise a Gauge metric is created.
    unbound:
        A set (or list or tuple) of names of unbound labels.
    bound:
        A dict of label key-value pairs for bound labels.

    Raises
    ------
    KeyError:
        The same label name was specified in both `unbound` and `bound`.
    TypeError:
        An attempt was made to access an existing metric using the wrong
        value for `counter`.
    ValueError:
        An attempt was made to access an existing metric using the wrong
        set of label names.
    """

    def __init__(
        self,
        name: str,
        description: str,
        counter: bool = False,
        unbound: list | tuple | set = (),
        bound: dict | None = None,
    ) -> None:
        if bound is None:
            bound = {}

        for key in bound.keys():
            if key in unbound:
                raise KeyError(f'label "{key}" is both bound and unbound')

        self._name = name
        self._unbound_labels = set(unbound)
        self._bound_labels = dict(bound)
        self._counter = counter

        _type = prom.Counter if counter else prom.Gauge

        if name in _metrics:
            existing_metric, existing_labels = _metrics[name]
            if not isinstance(existing_metric, _type):
                raise TypeError(f"wrong metric type for metric: {name}")
            if existing_labels != set(self.labelnames):
                raise ValueError(
                    f"wrong labels for metric.  Expected: {existing_labels}"
                )
            self._metric = existing_metric
        else:
            self._metric = _type(
                "nfsquota_" + name, description, labelnames=self.labelnames
            )
            _metrics[name] = (self._metric, set(self.labelnames))

    @property
    def labelnames(self) -> list[str]:
        """An ordered list of label names."""
        return sorted(self._unbound_labels | set(self._bound_labels.keys()))

    def _labelled_metric(self, labels: dict):
        """Returns the prometheus child metric for the merged labelset."""

        # Unlabelled metrics have no children
        if not self._unbound_labels and not self._bound_labels:
            return self._metric

        keys = set(labels.keys())
        missing_keys = self._unbound_labels - keys
        if missing_keys:
            raise ValueError("not bound: " + ", ".join(missing_keys))
        extra_keys = keys - self._unbound_labels
        if extra_keys:
            raise TypeError("not unbound: " + ", ".join(extra_keys))

        return self._metric.labels(**labels, **self._bound_labels)

    def add(self, value: float, /, **labels: str) -> None:
        """Add `value` to the metric."""
        self._labelled_metric(labels).inc(value)

    def inc(self, /, **labels: str) -> None:
        """Increment the metric by one."""
        self.add(1, **labels)

    def set(self, value: float, /, **labels: str) -> None:
        """Set the gauge to `value`."""
        if self._counter:
            raise TypeError(f"attempt to set counter {self._name}")
        self._labelled_metric(labels).set(value)


def start_promclient() -> None:
    """Start the prometheus client

    The client is only started if `daemon.prom_client_port`
    is set to a positive value in the config.
    """

    port = config.get_int("daemon.prom_client_port", default=0)
    if port <= 0:
        return

    log.info(f"Starting prometheus client on port {port}")
    prom.disable_created_metrics()
    prom.start_http_server(port)
