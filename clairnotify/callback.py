"""The callback message that tells a client where to fetch its notifications."""

from __future__ import annotations

import json
from dataclasses import dataclass
from urllib.parse import urlsplit
from uuid import UUID


@dataclass(frozen=True)
class Callback:
    """A notification id and the URL a client calls back to retrieve it."""

    notification_id: UUID
    callback: str

    def to_json(self) -> str:
        """Serialize with sorted keys and compact separators."""
        body = {"notification_id": str(self.notification_id), "callback": self.callback}
        return json.dumps(body, sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, data: str | bytes) -> Callback:
        """Parse a callback message, raising ValueError when it is malformed."""
        fields = json.loads(data)
        if not isinstance(fields, dict) or not all(
            isinstance(v, str) for v in fields.values()
        ):
            raise ValueError("json unmarshal failed. callback must be an object of strings")
        if "notification_id" not in fields:
            raise ValueError('json unmarshal failed. webhook requires a "notification_id" field')
        if "callback" not in fields:
            raise ValueError('json unmarshal failed. webhook requires a "callback" field')
        try:
            uid = UUID(fields["notification_id"])
        except ValueError as exc:
            raise ValueError(f"json unmarshal failed. malformed notification uuid: {exc}") from exc
        try:
            urlsplit(fields["callback"])
        except ValueError as exc:
            raise ValueError(f"json unmarshal failed. malformed callback url: {exc}") from exc
        return cls(notification_id=uid, callback=fields["callback"])