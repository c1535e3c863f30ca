"""The volume watch loop."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from ..kube import ClusterError, VolumeError
from ..quota import QuotaError

if TYPE_CHECKING:
    from ..kube import VolumeRef
    from .agent import QuotaAgent

log = logging.getLogger(__name__)

# Seconds to wait after failing to start a watch
RETRY_DELAY = 5

# Seconds to wait before restarting a watch which has ended
RESTART_DELAY = 1


def handle_event(agent: QuotaAgent, event_type: str, volume: VolumeRef) -> None:
    """Act on a single watch event."""
    if event_type in ("ADDED", "MODIFIED"):
        if agent.should_process(volume):
            try:
                agent.ensure_quota(volume)
            except (VolumeError, QuotaError, OSError) as e:
                log.error(f"Failed to ensure quota for PV {volume.name}: {e}")
    elif event_type == "DELETED":
        agent.forget_volume(volume)


def watch_loop(
    agent: QuotaAgent, stop_event: threading.Event, timeout: float | None = None
) -> None:
    """Watch volumes until `stop_event` is set.

    If the watch can't be started, it's retried after `RETRY_DELAY`
    seconds.  When a watch ends, for whatever reason, it's restarted after
    `RESTART_DELAY` seconds.
    """
    log.info("Starting PV watch")

    while not stop_event.is_set():
        started = False
        try:
            for event_type, volume in agent.cluster.watch_volumes(timeout):
                started = True
                if stop_event.is_set():
                    break
                handle_event(agent, event_type, volume)
        except ClusterError as e:
            if not started:
                log.error(f"Failed to start PV watch: {e}")
                stop_event.wait(RETRY_DELAY)
                continue
            log.warning(f"PV watch failed: {e}")

        if stop_event.is_set():
            break

        log.warning("PV watch ended, restarting...")
        stop_event.wait(RESTART_DELAY)

    log.info("PV watch stopped")
