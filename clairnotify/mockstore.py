"""Store and service doubles whose behaviour is supplied as callables."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional
from uuid import UUID

from .models import Notification, Page, Receipt
from .store import PutOpts, Service, Store


def _configured(fn: Optional[Callable[..., Any]], name: str) -> Callable[..., Any]:
    if fn is None:
        raise RuntimeError(f"{name} called on a mock with no function configured")
    return fn


@dataclass
class MockStore(Store):
    """A Store whose every method delegates to the matching ``*_fn`` field."""

    notifications_fn: Optional[Callable[[UUID, Optional[Page]], tuple[list[Notification], Page]]] = None
    put_notifications_fn: Optional[Callable[[PutOpts], None]] = None
    put_receipt_fn: Optional[Callable[[str, Receipt], None]] = None
    collect_notifications_fn: Optional[Callable[[], None]] = None
    receipt_fn: Optional[Callable[[UUID], Receipt]] = None
    receipt_by_uoid_fn: Optional[Callable[[UUID], Receipt]] = None
    created_fn: Optional[Callable[[], list[UUID]]] = None
    failed_fn: Optional[Callable[[], list[UUID]]] = None
    deleted_fn: Optional[Callable[[], list[UUID]]] = None
    set_delivered_fn: Optional[Callable[[UUID], None]] = None
    set_delivery_failed_fn: Optional[Callable[[UUID], None]] = None
    set_deleted_fn: Optional[Callable[[UUID], None]] = None

    def notifications(self, notification_id, page=None):
        return _configured(self.notifications_fn, "notifications")(notification_id, page)

    def put_notifications(self, opts):
        return _configured(self.put_notifications_fn, "put_notifications")(opts)

    def put_receipt(self, updater, receipt):
        return _configured(self.put_receipt_fn, "put_receipt")(updater, receipt)

    def collect_notifications(self):
        return _configured(self.collect_notifications_fn, "collect_notifications")()

    def receipt(self, notification_id):
        return _configured(self.receipt_fn, "receipt")(notification_id)

    def receipt_by_uoid(self, uoid):
        return _configured(self.receipt_by_uoid_fn, "receipt_by_uoid")(uoid)

    def created(self):
        return _configured(self.created_fn, "created")()

    def failed(self):
        return _configured(self.failed_fn, "failed")()

    def deleted(self):
        return _configured(self.deleted_fn, "deleted")()

    def set_delivered(self, notification_id):
        return _configured(self.set_delivered_fn, "set_delivered")(notification_id)

    def set_delivery_failed(self, notification_id):
        return _configured(self.set_delivery_failed_fn, "set_delivery_failed")(notification_id)

    def set_deleted(self, notification_id):
        return _configured(self.set_deleted_fn, "set_deleted")(notification_id)


@dataclass
class MockService(Service):
    """A notifier Service whose methods delegate to ``*_fn`` fields."""

    notifications_fn: Optional[Callable[[UUID, Optional[Page]], tuple[list[Notification], Page]]] = None
    delete_notifications_fn: Optional[Callable[[UUID], None]] = None

    def notifications(self, notification_id, page=None):
        return _configured(self.notifications_fn, "notifications")(notification_id, page)

    def delete_notifications(self, notification_id):
        return _configured(self.delete_notifications_fn, "delete_notifications")(notification_id)