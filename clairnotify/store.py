"""Errors and the interfaces the notifier is built from."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from uuid import UUID

from .models import (
    NIL_UUID,
    AffectedManifests,
    Notification,
    Page,
    Receipt,
    UpdateDiff,
    UpdateOperation,
    Vulnerability,
)


class NotifierError(Exception):
    """Base class for notifier errors."""


class DeliveryFailedError(NotifierError):
    """Delivery of a notification to its client failed."""

    def __init__(self, error: BaseException) -> None:
        super().__init__(f"notification delivery failed: {error}")
        self.error = error
        self.__cause__ = error


class RequestFailedError(NotifierError):
    """A remote server answered with an unexpected status."""

    def __init__(self, code: int, status: str) -> None:
        super().__init__(f"request failed: {status}")
        self.code = code
        self.status = status


class NoReceiptError(NotifierError):
    """No receipt exists for the requested id."""

    def __init__(self, notification_id: UUID = NIL_UUID) -> None:
        super().__init__(f"no receipt exists for id {notification_id}")
        self.notification_id = notification_id


class _WrappedError(NotifierError):
    _what = "error"

    def __init__(self, notification_id: UUID, error: BaseException) -> None:
        super().__init__(f"{self._what} for notification id {notification_id}: {error}")
        self.notification_id = notification_id
        self.error = error
        self.__cause__ = error


class ReceiptError(_WrappedError):
    """Retrieving a receipt failed."""

    _what = "failed to retrieve receipt"


class BadNotificationError(_WrappedError):
    """Retrieving notifications failed."""

    _what = "failed to retrieve notifications"


class PutNotificationsError(_WrappedError):
    """Persisting notifications failed."""

    _what = "failed to persist notifications"


@dataclass
class PutOpts:
    """Everything needed to persist a set of notifications."""

    updater: str
    update_id: UUID
    notification_id: UUID
    notifications: list[Notification] = field(default_factory=list)


class Store(ABC):
    """Persistence for notifications and their receipts."""

    @abstractmethod
    def notifications(
        self, notification_id: UUID, page: Page | None = None
    ) -> tuple[list[Notification], Page]:
        """Return notifications for an id; with a page, at most page.size of them
        and a page whose ``next`` is set while more remain."""

    @abstractmethod
    def put_notifications(self, opts: PutOpts) -> None:
        """Persist notifications and create a receipt in created status."""

    @abstractmethod
    def put_receipt(self, updater: str, receipt: Receipt) -> None:
        """Add a receipt directly, without notifications."""

    @abstractmethod
    def collect_notifications(self) -> None:
        """Garbage-collect notifications."""

    @abstractmethod
    def receipt(self, notification_id: UUID) -> Receipt:
        """Return the receipt for a notification id; raise NoReceiptError if none."""

    @abstractmethod
    def receipt_by_uoid(self, uoid: UUID) -> Receipt:
        """Return the receipt for an update operation; raise NoReceiptError if none."""

    @abstractmethod
    def created(self) -> list[UUID]:
        """Notification ids in created status."""

    @abstractmethod
    def failed(self) -> list[UUID]:
        """Notification ids in delivery-failed status."""

    @abstractmethod
    def deleted(self) -> list[UUID]:
        """Notification ids in deleted status."""

    @abstractmethod
    def set_delivered(self, notification_id: UUID) -> None:
        """Mark a notification id delivered."""

    @abstractmethod
    def set_delivery_failed(self, notification_id: UUID) -> None:
        """Mark a notification id as failed to deliver."""

    @abstractmethod
    def set_deleted(self, notification_id: UUID) -> None:
        """Mark a notification id deleted."""


class Service(ABC):
    """The client-facing notifier operations."""

    @abstractmethod
    def notifications(
        self, notification_id: UUID, page: Page | None = None
    ) -> tuple[list[Notification], Page]:
        """Return an optionally paged set of notifications."""

    @abstractmethod
    def delete_notifications(self, notification_id: UUID) -> None:
        """Delete the notifications for an id."""


class Deliverer(ABC):
    """Pushes notification ids to subscribed clients."""

    @abstractmethod
    def name(self) -> str:
        """A unique name for the deliverer."""

    @abstractmethod
    def deliver(self, notification_id: UUID) -> None:
        """Deliver a notification id; raise DeliveryFailedError on failure."""


class DirectDeliverer(ABC):
    """A deliverer that is handed the notifications themselves before delivery."""

    @abstractmethod
    def notifications(self, notifications: list[Notification]) -> None:
        """Receive the notifications to deliver on the next ``deliver`` call."""


class Locker(ABC):
    """Named, possibly distributed, mutual exclusion."""

    @abstractmethod
    def try_lock(self, key: str) -> AbstractContextManager[bool]:
        """Attempt the lock without waiting; the context yields whether it was taken."""

    @abstractmethod
    def lock(self, key: str) -> AbstractContextManager[None]:
        """Hold the lock for the duration of the context."""

    @abstractmethod
    def close(self) -> None:
        """Release all resources."""


class Indexer(ABC):
    """The part of an indexer service the notifier uses."""

    @abstractmethod
    def affected_manifests(self, vulnerabilities: list[Vulnerability]) -> AffectedManifests:
        """Report the manifests affected by the vulnerabilities."""


class Matcher(ABC):
    """The part of a matcher service the notifier uses."""

    @abstractmethod
    def latest_update_operations(self, kind: str) -> dict[str, list[UpdateOperation]]:
        """The latest update operation for each updater."""

    @abstractmethod
    def update_operations(self, kind: str, *updaters: str) -> dict[str, list[UpdateOperation]]:
        """Update operations per updater, newest first."""

    @abstractmethod
    def update_diff(self, prev: UUID, cur: UUID) -> UpdateDiff:
        """The difference between two update operations."""