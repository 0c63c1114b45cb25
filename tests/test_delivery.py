import threading
from contextlib import contextmanager
from uuid import uuid4

import pytest

from clairnotify.delivery import Delivery
from clairnotify.mockstore import MockStore
from clairnotify.models import Digest, Notification, Page, Reason
from clairnotify.store import DeliveryFailedError, Deliverer, DirectDeliverer, Locker

MANIFEST = "sha256:35c102085707f703de2d9eaad8752d6fe1b8f02b5d2149f1d8357c9cc7fb7d0a"


class FakeLocker(Locker):
    def __init__(self, available=True):
        self.available = available
        self.keys = []

    @contextmanager
    def try_lock(self, key):
        self.keys.append(key)
        yield self.available

    @contextmanager
    def lock(self, key):
        yield

    def close(self):
        pass


class RecordingDeliverer(Deliverer):
    def __init__(self, error=None):
        self.error = error
        self.delivered = []

    def name(self):
        return "recording"

    def deliver(self, notification_id):
        self.delivered.append(notification_id)
        if self.error is not None:
            raise self.error


class RecordingDirectDeliverer(RecordingDeliverer, DirectDeliverer):
    def __init__(self, error=None):
        super().__init__(error)
        self.given = []

    def notifications(self, notifications):
        self.given.append(list(notifications))


def make_store(created, failed, calls):
    return MockStore(
        created_fn=lambda: list(created),
        failed_fn=lambda: list(failed),
        set_delivered_fn=lambda i: calls.append(("delivered", i)),
        set_delivery_failed_fn=lambda i: calls.append(("failed", i)),
        set_deleted_fn=lambda i: calls.append(("deleted", i)),
    )


def test_run_delivery_delivers_created_then_failed():
    a, b, c = uuid4(), uuid4(), uuid4()
    calls = []
    deliverer = RecordingDeliverer()
    locker = FakeLocker()
    d = Delivery(make_store([a, b], [c], calls), locker, deliverer, 1.0)
    d.run_delivery()
    assert deliverer.delivered == [a, b, c]
    assert calls == [("delivered", a), ("delivered", b), ("delivered", c)]
    assert locker.keys == [str(a), str(b), str(c)]


def test_delivery_failure_marks_failed():
    a = uuid4()
    calls = []
    deliverer = RecordingDeliverer(DeliveryFailedError(RuntimeError("broker down")))
    d = Delivery(make_store([a], [], calls), FakeLocker(), deliverer, 1.0)
    d.run_delivery()
    assert calls == [("failed", a)]


def test_other_errors_propagate():
    a, b = uuid4(), uuid4()
    calls = []
    deliverer = RecordingDeliverer(ValueError("boom"))
    d = Delivery(make_store([a, b], [], calls), FakeLocker(), deliverer, 1.0)
    with pytest.raises(ValueError, match="boom"):
        d.run_delivery()
    assert deliverer.delivered == [a]
    assert calls == []


def test_store_error_propagates():
    def created():
        raise RuntimeError("store down")

    d = Delivery(MockStore(created_fn=created), FakeLocker(), RecordingDeliverer(), 1.0)
    with pytest.raises(RuntimeError, match="store down"):
        d.run_delivery()


def test_locked_ids_are_skipped():
    a = uuid4()
    calls = []
    deliverer = RecordingDeliverer()
    d = Delivery(make_store([a], [], calls), FakeLocker(available=False), deliverer, 1.0)
    d.run_delivery()
    assert deliverer.delivered == []
    assert calls == []


def test_direct_deliverer_gets_notifications_and_deletes():
    a = uuid4()
    calls = []
    notes = [Notification(Digest.parse(MANIFEST), Reason.ADDED)]
    requested = []

    def notifications(nid, page):
        requested.append((nid, page))
        return notes, Page()

    store = make_store([a], [], calls)
    store.notifications_fn = notifications
    deliverer = RecordingDirectDeliverer()
    Delivery(store, FakeLocker(), deliverer, 1.0).run_delivery()
    assert requested == [(a, None)]
    assert deliverer.given == [notes]
    assert calls == [("delivered", a), ("deleted", a)]


def test_direct_deliverer_failure_does_not_delete():
    a = uuid4()
    calls = []
    store = make_store([], [a], calls)
    store.notifications_fn = lambda nid, page: ([], Page())
    deliverer = RecordingDirectDeliverer(DeliveryFailedError(RuntimeError("x")))
    Delivery(store, FakeLocker(), deliverer, 1.0).run_delivery()
    assert calls == [("failed", a)]


def test_deliver_loop_survives_errors_and_stops():
    stop = threading.Event()
    ticks = []
    enough = threading.Event()

    def created():
        ticks.append(1)
        if len(ticks) >= 2:
            enough.set()
        raise RuntimeError("transient")

    d = Delivery(MockStore(created_fn=created), FakeLocker(), RecordingDeliverer(), 0.01)
    worker = threading.Thread(target=d.deliver, args=(stop,))
    worker.start()
    assert enough.wait(5)
    stop.set()
    worker.join(5)
    assert not worker.is_alive()
    assert len(ticks) >= 2


def test_deliver_returns_without_tick_when_stopped():
    stop = threading.Event()
    stop.set()
    ticks = []
    store = MockStore(created_fn=lambda: ticks.append(1) or [])
    Delivery(store, FakeLocker(), RecordingDeliverer(), 0.01).deliver(stop)
    assert ticks == []