"""Discovery of new update operations by polling a matcher."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass

from .models import VULNERABILITY_KIND, UpdateOperation
from .store import Matcher, NoReceiptError, Store

log = logging.getLogger(__name__)

# Maximum number of update operations queued between poller and processors.
MAX_CHAN_SIZE = 1024


@dataclass(frozen=True)
class Event:
    """A newly discovered update operation for an updater."""

    updater: str
    uo: UpdateOperation


class Poller:
    """Polls a matcher and queues an Event for each update operation lacking a receipt."""

    def __init__(self, store: Store, differ: Matcher, interval: float) -> None:
        self.interval = interval
        self._store = store
        self._differ = differ

    def poll(self, events: queue.Queue, stop: threading.Event) -> None:
        """Run ``on_tick`` every interval until ``stop`` is set."""
        if stop.is_set():
            log.info("stopped before polling began")
            return
        while not stop.wait(self.interval):
            log.debug("poll interval tick")
            self.on_tick(events)
        log.info("polling ended")

    def on_tick(self, events: queue.Queue) -> None:
        """Queue an Event for each updater whose latest operation has no receipt."""
        try:
            latest = self._differ.latest_update_operations(VULNERABILITY_KIND)
        except Exception:
            log.exception(
                "error retrieving latest update operations. backing off until next interval"
            )
            return

        for updater, uos in latest.items():
            if not uos:
                log.debug("received 0 update operations for updater %s", updater)
                return
            newest = uos[0]
            try:
                self._store.receipt_by_uoid(newest.ref)
            except NoReceiptError:
                try:
                    events.put_nowait(Event(updater=updater, uo=newest))
                except queue.Full:
                    log.warning(
                        "could not deliver event for updater %s (UOID %s). skipping updater",
                        updater,
                        newest.ref,
                    )
                continue
            except Exception:
                log.exception(
                    "error getting receipt by UOID %s. backing off till next tick", newest.ref
                )
                return