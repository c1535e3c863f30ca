r"""For configuring nfsquota from the config file.

Configuration file search order:

- `/etc/nfsquota/nfsquota.conf`
- `/etc/xdg/nfsquota/nfsquota.conf`
- `~/.config/nfsquota/nfsquota.conf`
- `NFSQUOTA_CONFIG_FILE` environment variable
- the path passed via `-c` or `--conf` on the command line

This is in order of increasing precedence, with options in later files
overriding those in earlier entries. Configuration is merged recursively by
`merge_dict_tree`.

Every option has a default, so running without any config file is allowed.

Example config:

.. codeblock:: yaml

    # Base configuration
    base:
        # Node name recorded in the audit log.  Defaults to the local hostname.
        hostname: nfs-node-1

    # Where the NFS export lives
    nfs:
        # Local path where the NFS export is mounted on this node
        base_path: /export

        # The export path as seen by clients (and recorded in the PVs).
        # This prefix is replaced by base_path to find the local directory.
        server_path: /data

        # Provisioner (or CSI driver) name used to select volumes
        provisioner_name: nfs.csi.k8s.io

        # Process all NFS volumes, regardless of provisioner annotation
        process_all: false

    # Quota backend configuration
    quota:
        # Path used for filesystem detection and quota commands.  Defaults
        # to nfs.base_path
        path: /export
        projects_file: /etc/projects
        projid_file: /etc/projid

        # Timeout, in seconds, for a single quota tool invocation
        command_timeout: 60

    # Logging configuration.  By default, nfsquota sends all log message to
    # standard error.
    logging:
        # Set the overall logging level
        level: debug

        # Allow overriding the level on a module by module basis
        module_levels:
            nfsquota.history: info

        # Syslog logging, in addition to standard error.
        syslog:
            enable: true
            address: localhost
            port: 514
            facility: user
            use_tcp: false

        # File logging, in addition to standard error.
        file:
            name: /path/to/file.log
            # Set to true if someone else (e.g. logrotate) rotates the file
            watch: false
            # Or let nfsquota rotate it.  At most one of "watch" and
            # "rotate" may be true.
            rotate: true
            backup_count: 100
            max_bytes: 4G

    # Configure the operation of the agent
    daemon:
        # Interval between full resyncs.  Durations may be given as a number
        # of seconds or with a suffix: s, m, h, d
        sync_interval: 30s

        # Prometheus client port.  If positive, the prometheus client HTTP
        # server is started on that port (but not in --once mode).
        prom_client_port: 9090

        # Server-side timeout of a single volume watch.  When it expires, the
        # watch is restarted.
        watch_timeout: 5m

    # Orphaned directory reclamation
    cleanup:
        enable: false
        interval: 1h
        grace_period: 24h
        # Nothing is ever deleted unless dry_run is false
        dry_run: true

    # Usage history collection
    history:
        enable: false
        path: /var/lib/nfsquota/history.json
        interval: 5m
        retention: 30d

    # Namespace quota policy
    policy:
        enable: false
        # Global default used when a namespace has neither a LimitRange nor
        # quota annotations
        default_quota: 1Gi
        # Refuse to apply quotas above the namespace maximum
        enforce_max: false

    # Audit log of quota operations
    audit:
        enable: false
        path: /var/log/nfsquota/audit.log
        # Size at which the audit log is rotated
        max_bytes: 100M
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any

import yaml
from click import ClickException

log = logging.getLogger(__name__)

config = None

_default_config = {
    "logging": {"level": "info"},
    "nfs": {
        "base_path": "/export",
        "server_path": "/data",
        "provisioner_name": "cluster.local/nfs-subdir-external-provisioner",
        "process_all": False,
    },
    "quota": {
        "projects_file": "/etc/projects",
        "projid_file": "/etc/projid",
        "command_timeout": 60,
    },
    "daemon": {
        "sync_interval": "30s",
        "watch_timeout": "5m",
        "prom_client_port": 0,
    },
    "cleanup": {
        "enable": False,
        "interval": "1h",
        "grace_period": "24h",
        "dry_run": True,
    },
    "history": {
        "enable": False,
        "path": "/var/lib/nfsquota/history.json",
        "interval": "5m",
        "retention": "30d",
    },
    "policy": {
        "enable": False,
        "default_quota": "1Gi",
        "enforce_max": False,
    },
    "audit": {
        "enable": False,
        "path": "/var/log/nfsquota/audit.log",
        "max_bytes": "100M",
    },
}

_test_isolation = False

# Sentinel for `get` without a default
_REQUIRED = object()


def test_isolation(enable: bool = True) -> None:
    """Enable or disable test isolation.

    Test isolation disables the reading of config files installed
    in the standard paths, but still allows specifying a config
    file via command line or environmental variable.

    For this function to have an effect, it must be called before
    the first `load_config` call.

    Parameters:
    -----------
    enable : bool
        Whether to enable (the default) or disable test
        isolation.
    """
    global _test_isolation
    _test_isolation = enable


def load_config(cli_conf: str | os.PathLike | None) -> None:
    """Find and load the configuration from a file."""

    global config, _test_isolation

    # Initialise with the default configuration
    config = merge_dict_tree({}, _default_config)

    # Construct the configuration file path
    if _test_isolation:
        config_files = []
    else:
        config_files = [
            "/etc/nfsquota/nfsquota.conf",
            "/etc/xdg/nfsquota/nfsquota.conf",
            "~/.config/nfsquota/nfsquota.conf",
        ]

    enviro_conf = os.environ.get("NFSQUOTA_CONFIG_FILE", None)
    if enviro_conf:
        config_files.append(enviro_conf)

    if cli_conf:
        config_files.append(str(cli_conf))

    for cfile in config_files:
        # Expand the configuration file path
        absfile = os.path.abspath(os.path.expanduser(os.path.expandvars(cfile)))

        if not os.path.exists(absfile):
            # Warn if a user-supplied config file is missing
            if cfile == str(cli_conf):
                log.warning(f"Config file {absfile} defined on command line not found.")
            elif cfile == enviro_conf:
                log.warning(
                    f"Config file {absfile} defined by NFSQUOTA_CONFIG_FILE not found."
                )
            continue

        log.info("Loading config file %s", cfile)

        with open(absfile) as fh:
            try:
                conf = yaml.safe_load(fh)
            except yaml.YAMLError as e:
                raise ClickException(f"Unable to parse config file {absfile}: {e}")

        if conf is None:
            continue

        if not isinstance(conf, dict):
            raise ClickException(f"Config file {absfile} is not a YAML mapping.")

        config = merge_dict_tree(config, conf)


def merge_dict_tree(a: Any, b: Any) -> Any:
    """Merge two dictionaries recursively.

    The following rules applied:

      - Dictionaries at each level are merged, with `b` updating `a`.
      - Lists at the same level are combined, with that in `b` appended to `a`.
      - For all other cases, scalars, mixed types etc, `b` replaces `a`.

    Parameters
    ----------
    a, b : dict
        Two dictionaries to merge recursively. Where there are conflicts `b`
        takes preference over `a`.

    Returns
    -------
    c : dict
        Merged dictionary.
    """

    # Different types should return b
    if type(a) is not type(b):
        return b

    if isinstance(a, list):
        return a + b

    # Dict's should be merged recursively
    if isinstance(a, dict):
        c = {}

        for k in a.keys() - b.keys():
            c[k] = a[k]

        for k in b.keys() - a.keys():
            c[k] = merge_dict_tree({}, b[k]) if isinstance(b[k], dict) else b[k]

        for k in a.keys() & b.keys():
            c[k] = merge_dict_tree(a[k], b[k])

        return c

    return b


def get(key: str, default: Any = _REQUIRED, as_type: type | None = None) -> Any:
    """Fetch a value from the config.

    Parameters
    ----------
    key : str
        A dotted path into the config, e.g. "cleanup.dry_run"
    default : optional
        Returned if `key` isn't present.  If not given, a missing key
        is an error.
    as_type : type, optional
        If given, the value found must be an instance of this type.
        (For `float`, `int` values are also accepted.)

    Returns
    -------
    value
        The value found, or `default`.

    Raises
    ------
    KeyError
        `key` was not found and no `default` was given.
    ValueError
        The value found was not of type `as_type`.
    """
    value = config if config is not None else _default_config
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            if default is _REQUIRED:
                raise KeyError(f"{key} missing from config")
            return default
        value = value[part]

    if as_type is not None and value is not None:
        # YAML bools are ints, but we don't want ints to be bools
        if as_type is float and type(value) is int:
            value = float(value)
        elif as_type is int and type(value) is bool:
            raise ValueError(f"expected int for {key}, got: {value!r}")
        elif not isinstance(value, as_type):
            raise ValueError(
                f"expected {as_type.__name__} for {key}, got: {value!r}"
            )

    return value


def get_int(
    key: str,
    default: Any = _REQUIRED,
    min: int | None = None,
    max: int | None = None,
) -> int:
    """Fetch an integer from the config, optionally bounded.

    Raises ValueError if the value is out of bounds.
    """
    value = get(key, default=default, as_type=int)

    if min is not None and value < min:
        raise ValueError(f"{key} must be at least {min} (got {value})")
    if max is not None and value > max:
        raise ValueError(f"{key} must be at most {max} (got {value})")

    return value


_BYTES_SUFFIX = {"": 1, "k": 2**10, "M": 2**20, "G": 2**30, "T": 2**40}


def get_bytes(key: str, default: Any = _REQUIRED) -> int:
    """Fetch a size in bytes from the config.

    The config value may be an integer or a string with a binary suffix:
    "k", "M", "G" or "T", e.g. "100M".

    Raises ValueError if the value can't be parsed or is not positive.
    """
    return parse_bytes(get(key, default=default), key)


def parse_bytes(value: Any, key: str = "value") -> int:
    """Convert a size with an optional k/M/G/T suffix into bytes."""

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        size = int(value)
    elif isinstance(value, str):
        match = re.fullmatch(r"\s*([0-9]*\.?[0-9]+)\s*([kMGT]?)\s*", value)
        if not match:
            raise ValueError(f"unable to parse {key}: {value!r}")
        size = int(float(match.group(1)) * _BYTES_SUFFIX[match.group(2)])
    else:
        raise ValueError(f"unable to parse {key}: {value!r}")

    if size <= 0:
        raise ValueError(f"{key} must be positive (got {value!r})")

    return size


_SECONDS_SUFFIX = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def get_seconds(key: str, default: Any = _REQUIRED) -> float:
    """Fetch a duration, in seconds, from the config.

    The config value may be a number of seconds or a string with a
    suffix: "s", "m", "h" or "d", e.g. "30s" or "24h".

    Raises ValueError if the value can't be parsed or is negative.
    """
    return parse_seconds(get(key, default=default), key)


def parse_seconds(value: Any, key: str = "value") -> float:
    """Convert a duration with an optional s/m/h/d suffix into seconds."""

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    elif isinstance(value, str):
        match = re.fullmatch(r"\s*([0-9]*\.?[0-9]+)\s*([smhd]?)\s*", value)
        if not match:
            raise ValueError(f"unable to parse {key}: {value!r}")
        seconds = float(match.group(1)) * _SECONDS_SUFFIX[match.group(2)]
    else:
        raise ValueError(f"unable to parse {key}: {value!r}")

    if seconds < 0:
        raise ValueError(f"{key} must not be negative (got {value!r})")

    return seconds
