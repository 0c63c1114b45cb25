"""Delivery of notifications to an AMQP broker, with failover between brokers."""

from __future__ import annotations

import contextlib
import json
import logging
import posixpath
import ssl
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence
from urllib.parse import urljoin, urlsplit, urlunsplit
from uuid import UUID

import pika

from .callback import Callback
from .models import Notification
from .store import DeliveryFailedError, Deliverer, DirectDeliverer, NotifierError

log = logging.getLogger(__name__)

_CONTENT_TYPE = "application/json"
_APP_ID = "clairV4-notifier"

Connector = Callable[[str, Optional[ssl.SSLContext]], Any]


@dataclass(frozen=True)
class Exchange:
    """An AMQP exchange; the empty name is the broker's default exchange."""

    name: str = ""
    type: str = ""
    durable: bool = False
    auto_delete: bool = False


@dataclass
class AMQPConfig:
    """Configuration for the AMQP deliverers."""

    uris: list[str] = field(default_factory=list)
    exchange: Exchange = field(default_factory=Exchange)
    routing_key: str = ""
    callback: str = ""
    direct: bool = False
    rollup: int = 0
    tls: Optional[ssl.SSLContext] = None


def _pika_connect(uri: str, tls: Optional[ssl.SSLContext]) -> Any:
    params = pika.URLParameters(uri)
    parts = urlsplit(uri)
    if tls is not None and parts.scheme == "amqps":
        params.ssl_options = pika.SSLOptions(tls, server_hostname=parts.hostname)
    return pika.BlockingConnection(params)


def _close_quietly(resource: Any) -> None:
    with contextlib.suppress(Exception):
        resource.close()


def _join_path(base: str, notification_id: UUID) -> str:
    """Append the id as a path element of ``base``, cleaning the resulting path."""
    parts = urlsplit(base)
    joined = posixpath.normpath(posixpath.join(parts.path, str(notification_id)))
    if parts.netloc and not joined.startswith("/"):
        joined = "/" + joined
    return urlunsplit(parts._replace(path=joined))


class FailOver:
    """Hands out a connection to the first broker that accepts one.

    An open connection is reused until it closes. Safe for concurrent use.
    """

    def __init__(
        self,
        uris: Sequence[str],
        exchange: Exchange,
        tls: Optional[ssl.SSLContext] = None,
        connect: Optional[Connector] = None,
    ) -> None:
        self.uris = list(uris)
        self.exchange = exchange
        self.tls = tls
        self._connect = connect or _pika_connect
        self._lock = threading.Lock()
        self._conn: Any = None

    def connection(self) -> Any:
        """Return an open connection, dialing brokers in order if needed."""
        with self._lock:
            if self._conn is not None and not self._conn.is_closed:
                log.debug("existing connection is open; reusing it")
                return self._conn

        for uri in self.uris:
            try:
                conn = self._connect(uri, self.tls)
            except Exception:
                log.info("failed to connect to AMQP broker %s. attempting next broker", uri)
                continue
            try:
                channel = conn.channel()
                # The default exchange cannot be declared.
                if self.exchange.name:
                    channel.exchange_declare(
                        exchange=self.exchange.name,
                        exchange_type=self.exchange.type or "direct",
                        passive=True,
                        durable=self.exchange.durable,
                        auto_delete=self.exchange.auto_delete,
                    )
                channel.close()
            except Exception:
                _close_quietly(conn)
                log.info(
                    "could not passively declare exchange on broker %s. attempting next broker",
                    uri,
                )
                continue

            with self._lock:
                if self._conn is None or self._conn.is_closed:
                    self._conn = conn
                else:
                    _close_quietly(conn)
                return self._conn
        raise ConnectionError("all failover URIs failed to connect")


class AMQPDeliverer(Deliverer):
    """Publishes a Callback for each notification id to the configured exchange."""

    def __init__(self, config: AMQPConfig, connect: Optional[Connector] = None) -> None:
        self._callback: Optional[str] = None
        if not config.direct:
            urlsplit(config.callback)
            self._callback = config.callback
        for uri in config.uris:
            urlsplit(uri)
        self.direct = config.direct
        self.rollup = config.rollup
        self.exchange = config.exchange
        self.routing_key = config.routing_key
        self._failover = FailOver(config.uris, config.exchange, config.tls, connect)

    def name(self) -> str:
        return f"amqp-{self.exchange.name}"

    def _publish(self, channel: Any, body: bytes) -> None:
        channel.basic_publish(
            exchange=self.exchange.name,
            routing_key=self.routing_key,
            body=body,
            properties=pika.BasicProperties(content_type=_CONTENT_TYPE, app_id=_APP_ID),
        )

    @contextlib.contextmanager
    def _channel(self):
        try:
            conn = self._failover.connection()
        except Exception as exc:
            raise DeliveryFailedError(exc) from exc
        try:
            try:
                channel = conn.channel()
            except Exception as exc:
                raise DeliveryFailedError(exc) from exc
            try:
                yield channel
            finally:
                _close_quietly(channel)
        finally:
            _close_quietly(conn)

    def deliver(self, notification_id: UUID) -> None:
        """Publish the callback for ``notification_id``."""
        if self._callback is None:
            raise NotifierError("no callback configured for amqp deliverer")
        callback = Callback(
            notification_id=notification_id,
            callback=_join_path(self._callback, notification_id),
        )
        with self._channel() as channel:
            try:
                self._publish(channel, callback.to_json().encode())
            except Exception as exc:
                raise DeliveryFailedError(exc) from exc


class AMQPDirectDeliverer(AMQPDeliverer, DirectDeliverer):
    """Publishes the notifications themselves, in blocks of at most ``rollup``."""

    def __init__(self, config: AMQPConfig, connect: Optional[Connector] = None) -> None:
        super().__init__(config, connect)
        self._pending: list[Notification] = []

    def name(self) -> str:
        return f"amqp-direct-{self.exchange.name}"

    def notifications(self, notifications: list[Notification]) -> None:
        """Keep a copy of the notifications for the next delivery."""
        self._pending = list(notifications)

    def deliver(self, notification_id: UUID) -> None:
        """Publish all held notifications within one transaction."""
        with self._channel() as channel:
            try:
                channel.tx_select()
            except Exception as exc:
                raise DeliveryFailedError(exc) from exc

            rollup = self.rollup if self.rollup > 0 else 1
            for start in range(0, len(self._pending), rollup):
                block = self._pending[start:start + rollup]
                try:
                    body = json.dumps([n.to_dict() for n in block], separators=(",", ":")) + "\n"
                    self._publish(channel, body.encode())
                except Exception as exc:
                    with contextlib.suppress(Exception):
                        channel.tx_rollback()
                    raise DeliveryFailedError(exc) from exc

            try:
                channel.tx_commit()
            except Exception as exc:
                raise DeliveryFailedError(exc) from exc