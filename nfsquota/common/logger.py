"""Set up logging for nfsquota.

Basic Configuration
-------------------

The daemon should call the `init_logging()` function as soon as possible
after program start to turn on logging to standard error.  Any log
messages produced before this call are discarded.

Immediately after the config is loaded, `configure_logging()` should be
called.  This re-configures the root logger based on the nfsquota
configuration, including starting file or syslog-based logging, if
requested.

Log messages emitted between the `init_logging` and `configure_logging`
calls are buffered and flushed to any additonal log destinations started by
`configure_logging` so that these messages are not lost.  (They are also
sent immediately to standard error, which always happens.)

Between the two calls, the log level of the root logger is DEBUG.
"""

import logging
import logging.handlers
import pathlib
import socket

import click

from . import config

try:
    from concurrent_log_handler import (
        ConcurrentRotatingFileHandler as RotatingFileHandler,
    )
except ImportError:
    RotatingFileHandler = logging.handlers.RotatingFileHandler

# The log format.  Used by the stderr log and any other log destinations
daemon_fmt = logging.Formatter(
    "%(asctime)s %(levelname)s >> [%(threadName)s] %(name)s: %(message)s",
    "%b %d %H:%M:%S",
)

# initialised by init_logging
log_buffer = None


class StartupHandler(logging.handlers.BufferingHandler):
    """Start-up logging handler.

    Like logging.handlers.MemoryHandler, except:
    * it can flush to potentially multiple target handlers
    * it never automatically flushes.
    * once the buffer is full, further messages are silently discarded

    Parameters
    ----------
    capacity
        The maximum number of log messages to buffer.
    """

    def __init__(self, capacity: int) -> None:
        super().__init__(capacity)
        self.targets = []

    def addTarget(self, handler: logging.Handler) -> None:
        """Add `handler` to the list of targets."""
        self.targets.append(handler)

    def shouldFlush(self, record) -> bool:
        """Returns false to disable autoflushing."""
        return False

    def emit(self, record) -> None:
        """Buffer `record` if not full."""
        with self.lock:
            if len(self.buffer) < self.capacity:
                self.buffer.append(record)

    def flush(self) -> None:
        """Flush to all targets, then clear the buffer."""
        with self.lock:
            for target in self.targets:
                for record in self.buffer:
                    target.handle(record)
            self.buffer.clear()

    def close(self) -> None:
        """Discard all targets and drop the buffer."""
        with self.lock:
            self.targets = []
            super().close()


def init_logging() -> None:
    """Initialise the logger.

    This function is called before the config is read.  It sets up logging to
    standard error and also starts a log buffer where messages accumulate
    before the logging facilities defined by the configuration are started.
    """

    # This is the stderr logger.  It is always present, regardless of logging config
    log_stream = logging.StreamHandler()
    log_stream.setFormatter(daemon_fmt)

    root_logger = logging.getLogger()
    root_logger.addHandler(log_stream)
    root_logger.setLevel(logging.DEBUG)

    # Buffer messages until configure_logging() has started the configured
    # handlers, so nothing logged during start-up is lost from them.
    global log_buffer
    log_buffer = StartupHandler(10000)

    root_logger.addHandler(log_buffer)

    root_logger.info("nfsquota start.")


def configure_sys_logging() -> logging.handlers.SysLogHandler | None:
    """Configure a syslog logging handler based on the config.

    Returns
    -------
    syslog_handler
        The configured syslog handler, or None if syslog was disabled.

    Raises
    ------
    click.ClickException
        a bad value was encountered in the logging config
    """

    if not config.get("logging.syslog.enable", default=True, as_type=bool):
        return None

    address = config.get("logging.syslog.address", default="localhost", as_type=str)
    port = config.get_int("logging.syslog.port", default=514, min=0, max=65535)

    # If port is zero, then address is a local socket.
    if port:
        address = (address, port)

    use_tcp = config.get("logging.syslog.use_tcp", default=False, as_type=bool)

    facname = config.get("logging.syslog.facility", default="user", as_type=str).lower()
    try:
        facility = logging.handlers.SysLogHandler.facility_names[facname]
    except KeyError:
        raise click.ClickException(
            f"unknown facility {facname} in logging.syslog.facility"
        )

    handler = logging.handlers.SysLogHandler(
        address=address,
        facility=facility,
        socktype=socket.SOCK_STREAM if use_tcp else socket.SOCK_DGRAM,
    )
    handler.setFormatter(daemon_fmt)

    # Logged before the handler is added, so it isn't duplicated by the
    # start-up buffer flush.
    nfsq_logger = logging.getLogger("nfsquota")
    if port:
        nfsq_logger.info(
            f"Logging to syslog at {address[0]}:{port} via "
            + ("TCP" if use_tcp else "UDP")
            + f" as facility {facname}"
        )
    else:
        nfsq_logger.info(f"Logging to syslog socket {address} as facility {facname}")

    return handler


def configure_file_logging() -> logging.Handler:
    """Configure a file logging handler based on the config.

    Returns
    -------
    file_handler
        The configured file handler

    Raises
    ------
    click.ClickException
        a bad value was encountered in the logging config
    """

    name = pathlib.Path(config.get("logging.file.name", as_type=str)).expanduser()

    watch = config.get("logging.file.watch", default=False, as_type=bool)
    rotate = config.get("logging.file.rotate", default=False, as_type=bool)

    if rotate and watch:
        raise click.ClickException(
            "logging.file.rotate and logging.file.watch both true in config"
        )

    if rotate:
        backup_count = config.get_int("logging.file.backup_count", default=10, min=1)
        max_bytes = config.get_bytes("logging.file.max_bytes", default="4M")
        handler = RotatingFileHandler(
            name, maxBytes=max_bytes, backupCount=backup_count
        )
        how = " [rotating]"
    elif watch:
        # Someone else is rotating the log
        handler = logging.handlers.WatchedFileHandler(name)
        how = " [watching]"
    else:
        handler = logging.FileHandler(name)
        how = ""

    handler.setFormatter(daemon_fmt)

    logging.getLogger("nfsquota").info(f"Logging to{how} {name}")

    return handler


def configure_logging() -> None:
    """Configure the logger from from the config, and start logging.

    This will flush any log messages accumulated from program start until now
    to the log after it has been started.

    Raises
    ------
    KeyError
        A required key was missing from the logging config.
    ValueError
        An invalid value was found in the logging config.
    """

    def _get_level(path: str, default: str = "INFO") -> str:
        level = config.get(path, default=default, as_type=str).upper()
        if level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError(f"Log level {level} defined by {path} is not valid")
        return level

    root_logger = logging.getLogger()
    root_logger.setLevel(_get_level("logging.level"))

    module_levels = config.get("logging.module_levels", default={}, as_type=dict)
    for name in module_levels:
        logging.getLogger(name).setLevel(_get_level(f"logging.module_levels.{name}"))

    if config.get("logging.syslog", default=None, as_type=dict):
        syslog_handler = configure_sys_logging()
    else:
        syslog_handler = None

    if config.get("logging.file", default=None, as_type=dict):
        file_handler = configure_file_logging()
    else:
        file_handler = None

    global log_buffer
    for handler in [syslog_handler, file_handler]:
        if handler:
            root_logger.addHandler(handler)
            if log_buffer is not None:
                log_buffer.addTarget(handler)

    if log_buffer is not None:
        # Flush the start-up buffer to all targets, then shut it down
        log_buffer.flush()
        root_logger.removeHandler(log_buffer)
        log_buffer.close()
        log_buffer = None
