"""Utility functions."""

from __future__ import annotations

import logging
import socket
import subprocess

import click

from . import config, logger

log = logging.getLogger(__name__)


def version_option(func):
    """Click --version option"""
    return click.option(
        "--version",
        is_flag=True,
        callback=print_version,
        expose_value=False,
        is_eager=True,
        help="Show version information and exit.",
    )(func)


def print_version(ctx, param, value):
    """Click callback for the --version eager option."""

    import sys

    from .. import __version__

    if not value or ctx.resilient_parsing:
        return

    click.echo(f"nfsquota {__version__} (Python {sys.version})")
    ctx.exit(0)


def start_nfsquota(cli_conf: str | None) -> None:
    """Initialise nfsquota logging and configuration.

    Parameters
    ----------
    cli_conf : str or None
        The config file given on the command line, if any.
    """
    logger.init_logging()

    config.load_config(cli_conf)

    logger.configure_logging()


def run_command(
    cmd: list[str], timeout: float | None = None, **kwargs
) -> tuple[int | None, str, str]:
    """Run a command.

    Parameters
    ----------
    cmd : list of strings
        A command as a list of strings including all arguments.
    timeout : float or None
        Number of seconds to wait before forceably killing the process,
        or None to wait forever.

    Other keyword args are passed directly on to subprocess.Popen

    Returns
    -------
    retval : int or None
        Return code, or None if the process was killed after timing out.
        Integer zero indicates success.  If the command couldn't be found,
        this is 127.
    stdout : string
        Value of stdout.
    stderr : string
        Value of stderr.
    """

    log.debug(f"Running command [timeout={timeout}]: " + " ".join(cmd))

    try:
        proc = subprocess.Popen(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, **kwargs
        )
    except FileNotFoundError as e:
        return (127, "", str(e))

    try:
        stdout_val, stderr_val = proc.communicate(timeout=timeout)
        retval = proc.returncode
    except subprocess.TimeoutExpired:
        log.warning(f"Process overrun [timeout={timeout}]: " + " ".join(cmd))
        proc.kill()
        proc.communicate()
        return (None, "", "")

    return (
        retval,
        stdout_val.decode(errors="replace"),
        stderr_val.decode(errors="replace"),
    )


def get_hostname() -> str:
    """Returns the hostname for the machine we're running on.

    If there is a host name specified in the config, that is returned
    otherwise the local hostname up to the first '.' is returned"""
    hostname = config.get("base.hostname", default=None)
    if hostname:
        return str(hostname)

    return socket.gethostname().split(".")[0]


def pretty_bytes(num: int | None) -> str:
    """Return a nicely formatted string describing a size in bytes.

    Parameters
    ----------
    num : int or None
        Number of bytes

    Returns
    -------
    pretty_bytes : str
        If `num` was None, this will be "-".  Otherwise, it's a
        formatted string using power-of-two prefixes, e.g. "103.4 GiB".

    Raises
    ------
    TypeError
        `num` was non-numeric
    ValueError
        `num` was less than zero
    """

    if num is None:
        return "-"

    try:
        num = int(num)
        if num < 0:
            raise ValueError("negative size")
    except TypeError:
        raise TypeError("non-numeric size")

    if num < 2**10:
        return f"{num} B"

    for x, p in enumerate("kMGTPE"):
        if num < 2 ** ((2 + x) * 10):
            num /= 2 ** ((1 + x) * 10)
            if num >= 100:
                return f"{num:.1f} {p}iB"
            if num >= 10:
                return f"{num:.2f} {p}iB"
            return f"{num:.3f} {p}iB"

    return f"{num} B"


def pretty_deltat(seconds: float) -> str:
    """Return a nicely formatted time delta.

    Deltas of a day or more are shown with a day count, e.g. "1d02h03m".

    Raises
    ------
    TypeError
        `seconds` was non-numeric
    """

    try:
        seconds = float(seconds)
    except (TypeError, ValueError):
        raise TypeError("non-numeric time delta")

    if seconds < 0:
        return f"{seconds:.1f}s"

    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)

    if days > 0:
        return f"{int(days)}d{int(hours):02}h{int(minutes):02}m"
    if hours > 0:
        return f"{int(hours)}h{int(minutes):02}m{int(seconds):02}s"
    if minutes > 0:
        return f"{int(minutes)}m{int(seconds):02}s"

    return f"{seconds:.1f}s"
