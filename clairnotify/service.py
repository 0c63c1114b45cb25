"""The local notifier service: wires poller, processors, delivery and garbage collection."""

from __future__ import annotations

import dataclasses
import logging
import os
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional
from uuid import UUID

import requests

from .amqp import AMQPConfig, AMQPDeliverer, AMQPDirectDeliverer
from .delivery import Delivery
from .models import Notification, Page
from .poller import MAX_CHAN_SIZE, Poller
from .processor import Processor
from .stomp import STOMPConfig, STOMPDeliverer, STOMPDirectDeliverer
from .store import Deliverer, Locker, NotifierError, Service, Store
from .testmode import StubIndexer, StubMatcher
from .webhook import Signer, WebhookConfig, WebhookDeliverer

log = logging.getLogger(__name__)

_WORKERS = os.cpu_count() or 1
_GC_INTERVAL = 3600.0
TEST_MODE_ENV = "NOTIFIER_TEST_MODE"


class NoDeliveryError(NotifierError):
    """No delivery mechanism is configured."""

    def __init__(self, message: str = "no delivery mechanisms configured") -> None:
        super().__init__(message)


@dataclass
class Options:
    """Configuration for the notifier service. Intervals are in seconds."""

    poll_interval: float
    delivery_interval: float
    matcher: Any = None
    indexer: Any = None
    signer: Optional[Signer] = None
    session: Optional[requests.Session] = None
    webhook: Optional[WebhookConfig] = None
    amqp: Optional[AMQPConfig] = None
    stomp: Optional[STOMPConfig] = None
    disable_summary: bool = False


class Notifier(Service):
    """Local notifier service backed by a Store."""

    def __init__(
        self,
        store: Store,
        poller: Poller,
        processor: Processor,
        delivery: Delivery,
        processors: int = _WORKERS,
        deliveries: int = _WORKERS,
    ) -> None:
        self.store = store
        self.poller = poller
        self.processor = processor
        self.delivery = delivery
        self.processors = processors
        self.deliveries = deliveries
        self.gc_interval = _GC_INTERVAL

    def notifications(
        self, notification_id: UUID, page: Optional[Page] = None
    ) -> tuple[list[Notification], Page]:
        return self.store.notifications(notification_id, page)

    def delete_notifications(self, notification_id: UUID) -> None:
        self.store.set_deleted(notification_id)

    def run(self, stop: threading.Event) -> None:
        """Run all background workers until ``stop`` is set or one of them fails.

        The first failure sets ``stop`` and is raised once every worker ended.
        """
        events: queue.Queue = queue.Queue(maxsize=MAX_CHAN_SIZE)
        errors: list[Exception] = []
        errors_lock = threading.Lock()

        def guarded(fn: Callable[[], None]) -> Callable[[], None]:
            def target() -> None:
                try:
                    fn()
                except Exception as exc:
                    with errors_lock:
                        errors.append(exc)
                    stop.set()

            return target

        workers: list[tuple[str, Callable[[], None]]] = [
            ("poller", lambda: self.poller.poll(events, stop))
        ]
        workers += [
            (f"processor-{i}", lambda: self.processor.process(events, stop))
            for i in range(self.processors)
        ]
        workers.append(("gc", lambda: self._gc(stop)))
        workers += [
            (f"delivery-{i}", lambda: self.delivery.deliver(stop))
            for i in range(self.deliveries)
        ]

        threads = [
            threading.Thread(target=guarded(fn), name=name, daemon=True) for name, fn in workers
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        if errors:
            raise errors[0]

    def _gc(self, stop: threading.Event) -> None:
        while not stop.wait(self.gc_interval):
            try:
                self.store.collect_notifications()
            except Exception:
                log.info("gc errored", exc_info=True)
            log.info("gc done")


def _deliverer(opts: Options) -> Optional[Deliverer]:
    # Only one delivery mechanism is used, checked in this order.
    if opts.webhook is not None:
        log.info("initializing webhook deliverers (count=%d)", _WORKERS)
        try:
            return WebhookDeliverer(opts.webhook, opts.session, opts.signer)
        except ValueError as exc:
            raise NotifierError(f"failed to create webhook deliverer: {exc}") from exc
    if opts.amqp is not None:
        conf = opts.amqp
        if not conf.uris:
            log.warning("amqp delivery misconfigured: no broker URIs to connect to")
            return None
        try:
            return AMQPDirectDeliverer(conf) if conf.direct else AMQPDeliverer(conf)
        except ValueError as exc:
            raise NotifierError(f"failed to create AMQP deliverer: {exc}") from exc
    if opts.stomp is not None:
        conf = opts.stomp
        if not conf.uris:
            log.warning("stomp delivery misconfigured: no broker URIs to connect to")
            return None
        if conf.direct:
            try:
                return STOMPDirectDeliverer(conf)
            except ValueError as exc:
                raise NotifierError(f"failed to create STOMP direct deliverer: {exc}") from exc
        try:
            return STOMPDeliverer(conf)
        except ValueError as exc:
            raise NotifierError(f"failed to create STOMP deliverer: {exc}") from exc
    return None


def create_notifier(store: Store, locks: Locker, opts: Options) -> Notifier:
    """Build a configured notifier service.

    Raises NoDeliveryError when no delivery mechanism is usable.
    """
    if opts.poll_interval <= 0 or opts.delivery_interval <= 0:
        raise ValueError("poll and delivery intervals must be positive")

    if os.environ.get(TEST_MODE_ENV):
        log.warning(
            "NOTIFIER TEST MODE ENABLED. NOTIFIER WILL CREATE TEST NOTIFICATIONS "
            "ON A SET INTERVAL (interval=%ss)",
            opts.poll_interval,
        )
        opts = dataclasses.replace(opts, matcher=StubMatcher(), indexer=StubIndexer())

    log.info("initializing poller (interval=%ss)", opts.poll_interval)
    poller = Poller(store, opts.matcher, opts.poll_interval)

    log.info("initializing processors (count=%d)", _WORKERS)
    processor = Processor(
        store, locks, opts.indexer, opts.matcher, no_summary=opts.disable_summary
    )

    deliverer = _deliverer(opts)
    if deliverer is None:
        raise NoDeliveryError()
    delivery = Delivery(store, locks, deliverer, opts.delivery_interval)
    return Notifier(store, poller, processor, delivery)