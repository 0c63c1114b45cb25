import queue
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from clairnotify.mockstore import MockStore
from clairnotify.models import (
    NIL_UUID,
    AffectedManifests,
    Digest,
    Notification,
    Reason,
    Receipt,
    Severity,
    Status,
    UpdateDiff,
    UpdateOperation,
    Vulnerability,
    VulnSummary,
)
from clairnotify.poller import Event
from clairnotify.processor import Processor
from clairnotify.store import Indexer, Locker, Matcher, NoReceiptError, NotifierError

TEST_UPDATER = "test-updater"
START = datetime.now()
PROCESSOR_UPDATE_OPS = {
    TEST_UPDATER: [
        UpdateOperation(ref=uuid4(), date=START, fingerprint="fp", updater=TEST_UPDATER),
        UpdateOperation(
            ref=uuid4(), date=START - timedelta(minutes=10), fingerprint="fp", updater=TEST_UPDATER
        ),
    ]
}

VULN_ADD = Vulnerability(id="0", name="added vulnerability", description="a vulnerability added")
VULN_REMOVED = Vulnerability(
    id="1", name="removed vulnerability", description="a vulnerability removed"
)
MANIFEST_ADD = "sha256:5f70bf18a086007016e948b04aed3b82103a36bea41755b6cddfaf10ace3c6ef"
MANIFEST_REMOVED = "sha256:fc92eec5cac70b0c324cec2933cd7db1c0eae7c9e2649e42d02e77eb6da0d15f"
AFFECTED_ADD = AffectedManifests(
    vulnerabilities={VULN_ADD.id: VULN_ADD},
    vulnerable_manifests={MANIFEST_ADD: [VULN_ADD.id]},
)
AFFECTED_REMOVED = AffectedManifests(
    vulnerabilities={VULN_REMOVED.id: VULN_REMOVED},
    vulnerable_manifests={MANIFEST_REMOVED: [VULN_REMOVED.id]},
)
EXPECTED_NOTIFICATIONS = [
    Notification(
        manifest=Digest.parse(MANIFEST_ADD),
        reason=Reason.ADDED,
        vulnerability=VulnSummary(
            description=VULN_ADD.description, name=VULN_ADD.name, severity=str(Severity.UNKNOWN)
        ),
    ),
    Notification(
        manifest=Digest.parse(MANIFEST_REMOVED),
        reason=Reason.REMOVED,
        vulnerability=VulnSummary(
            description=VULN_REMOVED.description,
            name=VULN_REMOVED.name,
            severity=str(Severity.UNKNOWN),
        ),
    ),
]


class FakeMatcher(Matcher):
    def __init__(self, update_diff_fn=None, update_operations_fn=None):
        self.update_diff_fn = update_diff_fn
        self.update_operations_fn = update_operations_fn

    def latest_update_operations(self, kind):
        raise AssertionError("not used")

    def update_operations(self, kind, *updaters):
        return self.update_operations_fn()

    def update_diff(self, prev, cur):
        return self.update_diff_fn(prev, cur)


class FakeIndexer(Indexer):
    def __init__(self, fn):
        self.fn = fn

    def affected_manifests(self, vulnerabilities):
        return self.fn(vulnerabilities)


class FakeLocker(Locker):
    def __init__(self, available=True):
        self.available = available
        self.keys = []
        self.released = threading.Event()

    @contextmanager
    def try_lock(self, key):
        self.keys.append(key)
        try:
            yield self.available
        finally:
            self.released.set()

    @contextmanager
    def lock(self, key):
        yield

    def close(self):
        pass


def no_receipt(uoid):
    raise NoReceiptError(uoid)


def diff_both(prev, cur):
    return UpdateDiff(added=[VULN_ADD], removed=[VULN_REMOVED])


def newest_event():
    return Event(updater=TEST_UPDATER, uo=PROCESSOR_UPDATE_OPS[TEST_UPDATER][0])


# create


def test_create():
    e = newest_event()
    count = []
    lock = threading.Lock()

    def affected(vulns):
        with lock:
            if len(count) > 1:
                raise RuntimeError("unexpected number of calls")
            count.append(1)
        return {"0": AFFECTED_ADD, "1": AFFECTED_REMOVED}[vulns[0].id]

    captured = []
    store = MockStore(put_notifications_fn=captured.append)
    p = Processor(store, None, FakeIndexer(affected), FakeMatcher(update_diff_fn=diff_both))
    p.create(e, NIL_UUID)

    assert len(captured) == 1
    opts = captured[0]
    assert opts.updater == e.updater
    assert opts.update_id == e.uo.ref
    assert opts.notification_id != NIL_UUID
    got = sorted(opts.notifications, key=lambda n: n.reason.value)
    assert got == EXPECTED_NOTIFICATIONS


def test_create_matcher_error():
    def diff(prev, cur):
        raise RuntimeError("expected")

    store = MockStore(put_notifications_fn=lambda opts: None)
    p = Processor(
        store, None, FakeIndexer(lambda v: AffectedManifests()), FakeMatcher(update_diff_fn=diff)
    )
    with pytest.raises(NotifierError, match="failed to get update diff"):
        p.create(newest_event(), NIL_UUID)


def test_create_indexer_error():
    def affected(vulns):
        raise RuntimeError("expected")

    store = MockStore(put_notifications_fn=lambda opts: None)
    p = Processor(store, None, FakeIndexer(affected), FakeMatcher(update_diff_fn=diff_both))
    with pytest.raises(NotifierError, match="failed to get affected manifests"):
        p.create(newest_event(), NIL_UUID)


def test_create_store_error():
    def put(opts):
        raise RuntimeError("expected")

    store = MockStore(put_notifications_fn=put)
    p = Processor(
        store, None, FakeIndexer(lambda v: AFFECTED_ADD), FakeMatcher(update_diff_fn=diff_both)
    )
    with pytest.raises(NotifierError, match="failed to store notifications"):
        p.create(newest_event(), NIL_UUID)


def test_create_without_affected_puts_delivered_receipt():
    e = newest_event()
    receipts = []
    store = MockStore(put_receipt_fn=lambda updater, r: receipts.append((updater, r)))
    p = Processor(
        store,
        None,
        FakeIndexer(lambda v: AffectedManifests()),
        FakeMatcher(update_diff_fn=diff_both),
    )
    p.create(e, NIL_UUID)
    assert len(receipts) == 1
    updater, receipt = receipts[0]
    assert updater == e.uo.updater
    assert receipt.uoid == e.uo.ref
    assert receipt.status is Status.DELIVERED
    assert receipt.notification_id != NIL_UUID


# summary


def _summary_processor():
    updater = str(uuid4())
    e = Event(updater=updater, uo=UpdateOperation(ref=uuid4(), updater=updater))
    manifest = "sha256:8d502da610b3c153d5aedaaf5323c0d49f61401d4791b4b1ffe9e36c6cbe09a0"
    vs = [
        Vulnerability(id="🖳", name="uncool vulnerability"),
        Vulnerability(id="☃", name="cool vulnerability", normalized_severity=Severity.CRITICAL),
    ]
    am = AffectedManifests(
        vulnerabilities={"☃": vs[0], "🖳": vs[1]},
        vulnerable_manifests={manifest: [v.id for v in vs]},
    )
    prevs = []

    def diff(prev, cur):
        prevs.append(prev)
        return UpdateDiff(added=vs, removed=[])

    indexer = FakeIndexer(lambda given: am if given else AffectedManifests())
    return e, vs, prevs, indexer, FakeMatcher(update_diff_fn=diff)


def test_notification_summary():
    e, vs, prevs, indexer, matcher = _summary_processor()
    captured = []
    p = Processor(MockStore(put_notifications_fn=captured.append), None, indexer, matcher)
    p.no_summary = False
    p.create(e, NIL_UUID)
    assert prevs == [NIL_UUID]
    assert len(captured[0].notifications) == 1
    assert captured[0].notifications[0].vulnerability.name == vs[1].name


def test_notification_no_summary():
    e, vs, prevs, indexer, matcher = _summary_processor()
    captured = []
    p = Processor(MockStore(put_notifications_fn=captured.append), None, indexer, matcher)
    p.no_summary = True
    p.create(e, NIL_UUID)
    assert len(captured[0].notifications) == len(vs)


def test_summary_swaps_to_more_severe_across_chunks():
    manifest = "sha256:8d502da610b3c153d5aedaaf5323c0d49f61401d4791b4b1ffe9e36c6cbe09a0"
    low = Vulnerability(id="low", name="low one", normalized_severity=Severity.LOW)
    high = Vulnerability(id="high", name="high one", normalized_severity=Severity.HIGH)

    def affected(vulns):
        v = vulns[0]
        return AffectedManifests(
            vulnerabilities={v.id: v}, vulnerable_manifests={manifest: [v.id]}
        )

    captured = []
    p = Processor(
        MockStore(put_notifications_fn=captured.append),
        None,
        FakeIndexer(affected),
        FakeMatcher(update_diff_fn=lambda prev, cur: UpdateDiff(added=[low], removed=[high])),
    )
    p.create(newest_event(), NIL_UUID)
    notes = captured[0].notifications
    assert len(notes) == 1
    assert notes[0].vulnerability.name == high.name
    assert notes[0].vulnerability.severity == str(Severity.HIGH)


# safe


def _safe_processor(receipt_fn, ops_fn):
    return Processor(
        MockStore(receipt_by_uoid_fn=receipt_fn),
        None,
        FakeIndexer(lambda v: AffectedManifests()),
        FakeMatcher(update_operations_fn=ops_fn),
    )


def test_safe():
    p = _safe_processor(no_receipt, lambda: PROCESSOR_UPDATE_OPS)
    ok, prev = p.safe(newest_event())
    assert ok is True
    assert prev == PROCESSOR_UPDATE_OPS[TEST_UPDATER][1].ref


def test_unsafe_store_error():
    def broken(uoid):
        raise RuntimeError("expected")

    p = _safe_processor(broken, lambda: PROCESSOR_UPDATE_OPS)
    assert p.safe(newest_event()) == (False, NIL_UUID)


def test_unsafe_matcher_error():
    def broken():
        raise RuntimeError("expected")

    p = _safe_processor(no_receipt, broken)
    assert p.safe(newest_event()) == (False, NIL_UUID)


def test_unsafe_stale_uoid():
    p = _safe_processor(no_receipt, lambda: PROCESSOR_UPDATE_OPS)
    e = Event(updater=TEST_UPDATER, uo=PROCESSOR_UPDATE_OPS[TEST_UPDATER][1])
    assert p.safe(e) == (False, NIL_UUID)


def test_unsafe_duplications():
    p = _safe_processor(lambda uoid: Receipt(), lambda: PROCESSOR_UPDATE_OPS)
    assert p.safe(newest_event()) == (False, NIL_UUID)


def test_unsafe_missing_updater():
    p = _safe_processor(no_receipt, lambda: {})
    assert p.safe(newest_event()) == (False, NIL_UUID)


def test_safe_single_operation_has_nil_prev():
    only = PROCESSOR_UPDATE_OPS[TEST_UPDATER][0]
    p = _safe_processor(no_receipt, lambda: {TEST_UPDATER: [only]})
    assert p.safe(newest_event()) == (True, NIL_UUID)


# process


def test_process_creates_notifications_under_lock():
    e = newest_event()
    done = threading.Event()
    captured = []

    def put(opts):
        captured.append(opts)
        done.set()

    store = MockStore(receipt_by_uoid_fn=no_receipt, put_notifications_fn=put)
    locker = FakeLocker()
    p = Processor(
        store,
        locker,
        FakeIndexer(lambda v: AFFECTED_ADD),
        FakeMatcher(update_diff_fn=diff_both, update_operations_fn=lambda: PROCESSOR_UPDATE_OPS),
    )
    events = queue.Queue()
    events.put(e)
    stop = threading.Event()
    worker = threading.Thread(target=p.process, args=(events, stop, 0.01))
    worker.start()
    assert done.wait(5)
    stop.set()
    worker.join(5)
    assert not worker.is_alive()
    assert locker.keys == [str(e.uo.ref)]
    assert captured[0].update_id == e.uo.ref


def test_process_skips_when_lock_unavailable():
    asked = []

    def lookup(uoid):
        asked.append(uoid)
        raise NoReceiptError(uoid)

    locker = FakeLocker(available=False)
    p = Processor(
        MockStore(receipt_by_uoid_fn=lookup),
        locker,
        FakeIndexer(lambda v: AFFECTED_ADD),
        FakeMatcher(update_diff_fn=diff_both, update_operations_fn=lambda: PROCESSOR_UPDATE_OPS),
    )
    events = queue.Queue()
    events.put(newest_event())
    stop = threading.Event()
    worker = threading.Thread(target=p.process, args=(events, stop, 0.01))
    worker.start()
    assert locker.released.wait(5)
    stop.set()
    worker.join(5)
    assert not worker.is_alive()
    assert asked == []
    assert locker.keys == [str(newest_event().uo.ref)]