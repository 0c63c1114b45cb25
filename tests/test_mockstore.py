import uuid

import pytest

from clairnotify.mockstore import MockService, MockStore
from clairnotify.models import Digest, Notification, Page, Reason, Receipt, Status
from clairnotify.store import NoReceiptError, PutOpts

MANIFEST = "sha256:fc92eec5cac70b0c324cec2933cd7db1c0eae7c9e2649e42d02e77eb6da0d15f"


def test_receipt_by_uoid_returns_configured_receipt():
    uoid = uuid.uuid4()
    receipt = Receipt(uoid=uoid, notification_id=uuid.uuid4(), status=Status.CREATED)
    seen = []

    def fn(i):
        seen.append(i)
        return receipt

    store = MockStore(receipt_by_uoid_fn=fn)
    assert store.receipt_by_uoid(uoid) is receipt
    assert seen == [uoid]


def test_notifications_forwards_arguments():
    calls = []
    note = Notification(manifest=Digest.parse(MANIFEST), reason=Reason.ADDED)

    def fn(nid, page):
        calls.append((nid, page))
        return [note], Page(size=1)

    store = MockStore(notifications_fn=fn)
    uid = uuid.uuid4()
    page = Page(size=1)
    got, out = store.notifications(uid, page)
    assert got == [note]
    assert out == Page(size=1)
    assert calls == [(uid, page)]


def test_status_lists():
    ids = [uuid.uuid4(), uuid.uuid4()]
    store = MockStore(created_fn=lambda: ids, failed_fn=lambda: ids[:1], deleted_fn=lambda: [])
    assert store.created() == ids
    assert store.failed() == ids[:1]
    assert store.deleted() == []


def test_setters_receive_id():
    seen = {}
    store = MockStore(
        set_delivered_fn=lambda i: seen.__setitem__("delivered", i),
        set_delivery_failed_fn=lambda i: seen.__setitem__("failed", i),
        set_deleted_fn=lambda i: seen.__setitem__("deleted", i),
    )
    uid = uuid.uuid4()
    store.set_delivered(uid)
    store.set_delivery_failed(uid)
    store.set_deleted(uid)
    assert seen == {"delivered": uid, "failed": uid, "deleted": uid}


def test_receipts_and_puts():
    uid = uuid.uuid4()
    receipt = Receipt(notification_id=uid, status=Status.DELIVERED)
    put = []
    store = MockStore(
        receipt_fn=lambda i: receipt,
        put_receipt_fn=lambda updater, r: put.append((updater, r)),
        put_notifications_fn=lambda opts: put.append(opts),
    )
    assert store.receipt(uid) is receipt
    store.put_receipt("test-updater", receipt)
    opts = PutOpts(updater="test-updater", update_id=uuid.uuid4(), notification_id=uid)
    store.put_notifications(opts)
    assert put == [("test-updater", receipt), opts]


def test_receipt_by_uoid_errors_propagate():
    def fn(uoid):
        raise NoReceiptError(uoid)

    store = MockStore(receipt_by_uoid_fn=fn)
    uid = uuid.uuid4()
    with pytest.raises(NoReceiptError) as info:
        store.receipt_by_uoid(uid)
    assert info.value.notification_id == uid


@pytest.mark.parametrize(
    "method, args",
    [
        ("created", ()),
        ("failed", ()),
        ("collect_notifications", ()),
        ("receipt", (uuid.uuid4(),)),
        ("set_deleted", (uuid.uuid4(),)),
    ],
)
def test_unconfigured_method_raises(method, args):
    with pytest.raises(RuntimeError, match=method):
        getattr(MockStore(), method)(*args)


def test_mock_service_forwards():
    deleted = []
    svc = MockService(
        notifications_fn=lambda nid, page: ([], Page(size=0)),
        delete_notifications_fn=deleted.append,
    )
    uid = uuid.uuid4()
    svc.delete_notifications(uid)
    assert deleted == [uid]
    assert svc.notifications(uid, None) == ([], Page(size=0))
    with pytest.raises(RuntimeError):
        MockService().delete_notifications(uid)