"""Periodic delivery of created and failed notifications through a Deliverer."""

from __future__ import annotations

import logging
import threading
from uuid import UUID

from .store import DeliveryFailedError, Deliverer, DirectDeliverer, Locker, Store

log = logging.getLogger(__name__)


class Delivery:
    """Finds notifications awaiting delivery and hands them to a Deliverer."""

    def __init__(self, store: Store, locks: Locker, deliverer: Deliverer, interval: float) -> None:
        self.deliverer = deliverer
        self.interval = interval
        self._store = store
        self._locks = locks

    def deliver(self, stop: threading.Event) -> None:
        """Run a delivery pass every interval until ``stop`` is set.

        Errors from a pass are logged and the loop carries on.
        """
        log.info("delivering notifications (deliverer=%s)", self.deliverer.name())
        while not stop.wait(self.interval):
            log.debug("delivery tick (deliverer=%s)", self.deliverer.name())
            try:
                self.run_delivery()
            except Exception:
                log.exception("encountered error on tick (deliverer=%s)", self.deliverer.name())

    def run_delivery(self) -> None:
        """Deliver every notification id in created or delivery-failed status."""
        to_deliver: list[UUID] = []

        created = self._store.created()
        if created:
            log.info("%d notification ids in created status", len(created))
            to_deliver.extend(created)

        failed = self._store.failed()
        if failed:
            log.info("%d notification ids in failed status", len(failed))
            to_deliver.extend(failed)

        for notification_id in to_deliver:
            with self._locks.try_lock(str(notification_id)) as acquired:
                if not acquired:
                    log.debug("unable to get lock for notification %s", notification_id)
                    continue
                self._do(notification_id)

    def _do(self, notification_id: UUID) -> None:
        """Deliver one notification id; must run under the id's lock."""
        direct = isinstance(self.deliverer, DirectDeliverer)
        if direct:
            log.debug("providing direct deliverer notifications for %s", notification_id)
            notifications, _ = self._store.notifications(notification_id, None)
            self.deliverer.notifications(notifications)

        try:
            self.deliverer.deliver(notification_id)
        except DeliveryFailedError:
            log.info("failed to deliver notifications for %s", notification_id)
            self._store.set_delivery_failed(notification_id)
            return

        # Delivered but not acknowledged here means it is delivered again later.
        self._store.set_delivered(notification_id)

        if direct:
            self._store.set_deleted(notification_id)
        log.info("successfully delivered notifications for %s", notification_id)