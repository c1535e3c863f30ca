"""nfsquota daemon entry point."""

import logging
import signal
import sys
import threading

import click

from ..audit import AuditLogger
from ..common import config, metrics, util
from ..common.util import start_nfsquota, version_option
from ..history import HistoryStore
from ..kube import ClusterError, KubeCluster
from ..quota import QuotaUnavailableError
from .agent import QuotaAgent

log = logging.getLogger(__name__)

# Set to shut down the daemon
shutdown = threading.Event()

# Register Hook to Log Exception
# ==============================


def log_exception(*args):
    log.error("Fatal error!", exc_info=args)


sys.excepthook = log_exception


def _handle_term(signum, frame) -> None:
    """SIGTERM signal handler."""
    log.info("Caught SIGTERM: shutting down.")
    shutdown.set()


def make_audit_logger() -> AuditLogger:
    """Create the audit logger from the config."""
    if not config.get("audit.enable", as_type=bool):
        return AuditLogger(enabled=False)

    return AuditLogger(
        enabled=True,
        path=config.get("audit.path", as_type=str),
        max_bytes=config.get_bytes("audit.max_bytes"),
        node_name=util.get_hostname(),
    )


def make_history_store() -> HistoryStore | None:
    """Create the history store from the config, if enabled."""
    if not config.get("history.enable", as_type=bool):
        return None

    return HistoryStore(
        config.get("history.path", as_type=str),
        interval=config.get_seconds("history.interval"),
        retention=config.get_seconds("history.retention"),
    )


@click.command()
@click.option(
    "--conf",
    "-c",
    type=click.Path(exists=True),
    help="Configuration file to read.",
    default=None,
    metavar="FILE",
)
@click.option(
    "--kubeconfig",
    type=click.Path(exists=True),
    help="Kubeconfig file.  If not given, the in-cluster config is used.",
    default=None,
    metavar="FILE",
)
@click.option(
    "once",
    "--once",
    "-o",
    is_flag=True,
    help="Run a single quota sync and then exit.",
)
@click.option(
    "--test-isolation",
    is_flag=True,
    help=(
        "Enable test isolation.  Using this option prevents nfsquotad "
        "from reading config from the standard config paths."
    ),
)
@version_option
@click.pass_context
def entry(ctx, conf, kubeconfig, once, test_isolation):
    """nfsquotad: NFS volume quota agent.

    The nfsquota daemon keeps the filesystem project quotas of the NFS
    export on this node in step with the capacities of the cluster's
    PersistentVolumes.

    By default, the daemon will keep running until killed, but you can instead
    tell it to run a single quota sync and then exit by using the "--once"
    flag.
    """

    # Turn on test isolation, if requested
    config.test_isolation(enable=test_isolation)

    # Initialise nfsquota
    start_nfsquota(conf)

    try:
        audit_logger = make_audit_logger()
        history_store = make_history_store()
    except (KeyError, ValueError) as e:
        raise click.ClickException(f"bad config: {e}")
    except OSError as e:
        raise click.ClickException(str(e))

    try:
        cluster = KubeCluster.from_config(kubeconfig)
    except ClusterError as e:
        raise click.ClickException(str(e))

    try:
        agent = QuotaAgent.from_config(cluster, audit_logger, history_store)
    except (KeyError, ValueError) as e:
        raise click.ClickException(f"bad config: {e}")

    try:
        agent.start()
    except QuotaUnavailableError as e:
        audit_logger.close()
        raise click.ClickException(f"quota not available: {e}")

    if once:
        log.info("Sync complete.  Exiting.")
        audit_logger.close()
        ctx.exit(0)

    # Start the prometheus client, if appropriate.
    metrics.start_promclient()

    signal.signal(signal.SIGTERM, _handle_term)

    # Enter main loop
    try:
        agent.run(shutdown)
    # Catch keyboard interrupt
    except KeyboardInterrupt:
        log.info("Exiting due to SIGINT")
        shutdown.set()
    finally:
        audit_logger.close()

    ctx.exit(0)
