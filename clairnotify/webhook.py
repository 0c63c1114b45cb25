"""Delivery of notification callbacks by HTTP POST to a webhook target."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin, urlsplit
from uuid import UUID

import requests

from .callback import Callback
from .store import DeliveryFailedError, Deliverer, RequestFailedError

log = logging.getLogger(__name__)


@dataclass
class WebhookConfig:
    """Where to POST webhooks and the base URL clients call back."""

    target: str
    callback: str
    headers: Optional[dict[str, list[str]]] = None


class Signer(ABC):
    """Signs an outgoing request, e.g. by adding an Authorization header."""

    @abstractmethod
    def sign(self, request: requests.PreparedRequest) -> None:
        """Sign the prepared request in place."""


class WebhookDeliverer(Deliverer):
    """POSTs a Callback for each notification id to the configured target."""

    def __init__(
        self,
        config: Optional[WebhookConfig],
        session: Optional[requests.Session],
        signer: Optional[Signer] = None,
    ) -> None:
        if config is None:
            raise ValueError("config not provided")
        if session is None:
            raise ValueError("http client not provided")
        urlsplit(config.callback)
        urlsplit(config.target)
        self._callback = config.callback
        self._target = config.target
        self._headers: dict[str, list[str]] = {
            key: list(values)
            for key, values in (config.headers or {}).items()
            if key.lower() != "content-type"
        }
        self._headers["Content-Type"] = ["application/json"]
        self._signer = signer
        self._session = session

    def name(self) -> str:
        return "webhook"

    def deliver(self, notification_id: UUID) -> None:
        """POST the callback for ``notification_id``; raise DeliveryFailedError on failure."""
        callback = urljoin(self._callback, str(notification_id))
        body = Callback(notification_id=notification_id, callback=callback).to_json()
        request = requests.Request(
            "POST",
            self._target,
            data=body.encode(),
            headers={key: ", ".join(values) for key, values in self._headers.items()},
        )
        prepared = self._session.prepare_request(request)
        if self._signer is not None:
            self._signer.sign(prepared)

        log.info(
            "dispatching webhook (notification_id=%s callback=%s target=%s)",
            notification_id,
            callback,
            self._target,
        )
        try:
            response = self._session.send(prepared)
        except requests.RequestException as exc:
            raise DeliveryFailedError(exc) from exc
        with response:
            if response.status_code != 200:
                raise DeliveryFailedError(
                    RequestFailedError(
                        response.status_code, f"{response.status_code} {response.reason}"
                    )
                )