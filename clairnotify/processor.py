"""Creation of notifications for newly discovered update operations."""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID, uuid4

from .models import (
    NIL_UUID,
    VULNERABILITY_KIND,
    Digest,
    Notification,
    Reason,
    Receipt,
    Severity,
    Status,
    Vulnerability,
    VulnSummary,
)
from .poller import Event
from .store import Indexer, Locker, Matcher, NoReceiptError, NotifierError, PutOpts, Store

log = logging.getLogger(__name__)

_CHUNK = 1000
_QUEUE_WAIT = 0.1


@dataclass
class _NotificationTable:
    lock: threading.Lock = field(default_factory=threading.Lock)
    lookup: dict[str, int] = field(default_factory=dict)
    notifications: list[Notification] = field(default_factory=list)


class Processor:
    """Turns update-operation events into persisted notifications.

    Work for one update operation happens under that operation's lock, so no
    two processors create notifications for the same operation.
    """

    def __init__(
        self,
        store: Store,
        locks: Optional[Locker],
        indexer: Indexer,
        matcher: Matcher,
        no_summary: bool = False,
    ) -> None:
        self.no_summary = no_summary
        self._store = store
        self._locks = locks
        self._indexer = indexer
        self._matcher = matcher

    def process(self, events: queue.Queue, stop: threading.Event) -> None:
        """Handle events from the queue until ``stop`` is set."""
        log.debug("processing events")
        while not stop.is_set():
            try:
                event = events.get(timeout=_QUEUE_WAIT)
            except queue.Empty:
                continue
            log.debug("processing updater %s UOID %s", event.updater, event.uo.ref)
            try:
                self._handle(event)
            except Exception:
                log.exception(
                    "failed to create notifications for updater %s UOID %s",
                    event.updater,
                    event.uo.ref,
                )
        log.info("stopped: ending event processing")

    def _handle(self, event: Event) -> None:
        if self._locks is None:
            raise NotifierError("processor has no locker configured")
        with self._locks.try_lock(str(event.uo.ref)) as acquired:
            if not acquired:
                raise NotifierError(f"unable to lock update operation {event.uo.ref}")
            safe, prev = self.safe(event)
            if safe:
                self.create(event, prev)

    def create(self, event: Event, prev: UUID) -> None:
        """Diff ``prev`` against the event's operation and persist the notifications."""
        log.debug("retrieving diff prev=%s cur=%s", prev, event.uo.ref)
        try:
            diff = self._matcher.update_diff(prev, event.uo.ref)
        except Exception as exc:
            raise NotifierError(f"failed to get update diff: {exc}") from exc
        log.debug("diff results: removed=%d added=%d", len(diff.removed), len(diff.added))

        table = _NotificationTable()
        cancel = threading.Event()

        def run(vulns: list[Vulnerability], reason: Reason) -> None:
            try:
                self._get_affected(vulns, reason, table, cancel)
            except Exception:
                cancel.set()
                raise

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(run, diff.added, Reason.ADDED),
                pool.submit(run, diff.removed, Reason.REMOVED),
            ]
        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            raise NotifierError(f"failed to get affected manifests: {errors[0]}") from errors[0]

        if log.isEnabledFor(logging.DEBUG):
            added = sum(1 for n in table.notifications if n.reason is Reason.ADDED)
            removed = sum(1 for n in table.notifications if n.reason is Reason.REMOVED)
            log.debug("affected manifest counts: added=%d removed=%d", added, removed)

        if not table.notifications:
            # A delivered receipt stops further processing and delivery attempts.
            receipt = Receipt(uoid=event.uo.ref, notification_id=uuid4(), status=Status.DELIVERED)
            log.debug("no affected manifests for update operation, setting to delivered")
            try:
                self._store.put_receipt(event.uo.updater, receipt)
            except Exception as exc:
                raise NotifierError(f"failed to put receipt: {exc}") from exc
            return

        opts = PutOpts(
            updater=event.updater,
            update_id=event.uo.ref,
            notification_id=uuid4(),
            notifications=table.notifications,
        )
        try:
            self._store.put_notifications(opts)
        except Exception as exc:
            raise NotifierError(f"failed to store notifications: {exc}") from exc

    def _get_affected(
        self,
        vulns: list[Vulnerability],
        reason: Reason,
        table: _NotificationTable,
        cancel: threading.Event,
    ) -> None:
        """Ask the indexer about vulnerabilities in chunks and merge the results."""
        for start in range(0, len(vulns), _CHUNK):
            if cancel.is_set():
                return
            affected = self._indexer.affected_manifests(vulns[start : start + _CHUNK])
            for manifest, vuln_ids in affected.vulnerable_manifests.items():
                digest = Digest.parse(manifest)
                if not self.no_summary:
                    # Ids are sorted most severe first.
                    self._merge_summary(table, digest, reason, affected.vulnerabilities[vuln_ids[0]])
                    continue
                for vuln_id in vuln_ids:
                    vuln = affected.vulnerabilities[vuln_id]
                    with table.lock:
                        table.notifications.append(
                            Notification(
                                manifest=digest,
                                reason=reason,
                                vulnerability=VulnSummary.from_vulnerability(vuln),
                            )
                        )

    @staticmethod
    def _merge_summary(
        table: _NotificationTable, digest: Digest, reason: Reason, vuln: Vulnerability
    ) -> None:
        key = str(digest)
        with table.lock:
            index = table.lookup.get(key)
            if index is None:
                table.lookup[key] = len(table.notifications)
                table.notifications.append(
                    Notification(
                        manifest=digest,
                        reason=reason,
                        vulnerability=VulnSummary.from_vulnerability(vuln),
                    )
                )
                return
            existing = table.notifications[index]
            current = Severity(existing.vulnerability.severity)
            if current < vuln.normalized_severity:
                existing.vulnerability = VulnSummary.from_vulnerability(vuln)

    def safe(self, event: Event) -> tuple[bool, UUID]:
        """Report whether creating notifications for the event is safe, and the
        previous update operation id to diff against."""
        try:
            self._store.receipt_by_uoid(event.uo.ref)
        except NoReceiptError:
            pass
        except Exception:
            log.exception("error getting receipt by UOID %s", event.uo.ref)
            return False, NIL_UUID
        else:
            log.info("receipt created by another processor. will not process notifications")
            return False, NIL_UUID

        try:
            all_ops = self._matcher.update_operations(VULNERABILITY_KIND)
        except Exception:
            log.exception("error getting update operations from matcher")
            return False, NIL_UUID

        uos = all_ops.get(event.updater)
        if uos is None:
            log.warning(
                "updater %s missing from update operations returned from matcher", event.updater
            )
            return False, NIL_UUID
        if not uos:
            return False, NIL_UUID

        current = uos[0]
        prev = uos[1].ref if len(uos) > 1 else NIL_UUID

        if current.ref != event.uo.ref:
            log.info(
                "newer update operation %s is present, will not process notifications", current.ref
            )
            return False, NIL_UUID
        return True, prev