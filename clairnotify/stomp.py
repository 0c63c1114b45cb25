"""Delivery of notifications to a STOMP broker, with failover between brokers."""

from __future__ import annotations

import contextlib
import itertools
import json
import logging
import re
import socket
import ssl
import threading
from dataclasses import dataclass, field
from typing import Optional, Sequence
from urllib.parse import urljoin, urlsplit
from uuid import UUID

from .callback import Callback
from .models import Notification
from .store import DeliveryFailedError, Deliverer, DirectDeliverer, NotifierError

log = logging.getLogger(__name__)

_CONTENT_TYPE = "application/json"
_UNESCAPES = {"\\": "\\", "r": "\r", "n": "\n", "c": ":"}
_UNESCAPE_RE = re.compile(r"\\([\\rnc])")


@dataclass(frozen=True)
class Login:
    """Credentials sent in the STOMP CONNECT frame."""

    login: str
    passcode: str


@dataclass
class STOMPConfig:
    """Configuration for the STOMP deliverers."""

    uris: list[str] = field(default_factory=list)
    destination: str = ""
    callback: str = ""
    direct: bool = False
    rollup: int = 0
    tls: Optional[ssl.SSLContext] = None
    login: Optional[Login] = None


class StompError(Exception):
    """The broker reported an error or broke the protocol."""

    def __init__(self, message: str, body: bytes = b"") -> None:
        super().__init__(message)
        self.body = body


@dataclass(frozen=True)
class _Frame:
    command: str
    headers: dict[str, str]
    body: bytes


def _escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\").replace("\r", "\\r").replace("\n", "\\n").replace(":", "\\c")
    )


def _unescape(value: str) -> str:
    return _UNESCAPE_RE.sub(lambda m: _UNESCAPES[m.group(1)], value)


class StompConnection:
    """A STOMP session over an already connected socket.

    The CONNECT handshake happens on construction. Every request waits for the
    broker's RECEIPT.
    """

    def __init__(
        self,
        stream: socket.socket,
        login: Optional[str] = None,
        passcode: Optional[str] = None,
        host: str = "/",
    ) -> None:
        self._sock = stream
        self._reader = stream.makefile("rb")
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._escape = False
        self._closed = False
        headers = {"accept-version": "1.0,1.1,1.2", "host": host, "heart-beat": "0,0"}
        if login is not None:
            headers["login"] = login
            headers["passcode"] = passcode or ""
        self._write("CONNECT", headers)
        frame = self._read()
        if frame.command == "ERROR":
            raise StompError(frame.headers.get("message", "connection refused"), frame.body)
        if frame.command != "CONNECTED":
            raise StompError(f"unexpected frame during handshake: {frame.command}")
        self.version = frame.headers.get("version", "1.0")
        self._escape = self.version != "1.0"

    def __enter__(self) -> StompConnection:
        return self

    def __exit__(self, *exc_info) -> None:
        with contextlib.suppress(StompError, OSError):
            self.disconnect()

    def _write(self, command: str, headers: dict[str, str], body: bytes = b"") -> None:
        escape = self._escape and command != "CONNECT"
        lines = [command]
        for key, value in headers.items():
            if escape:
                key, value = _escape(key), _escape(value)
            lines.append(f"{key}:{value}")
        frame = ("\n".join(lines) + "\n\n").encode() + body + b"\0"
        self._sock.sendall(frame)

    def _readline(self) -> str:
        line = self._reader.readline()
        if not line:
            raise StompError("connection closed by broker")
        text = line.decode("utf-8")
        if text.endswith("\n"):
            text = text[:-1]
        if text.endswith("\r"):
            text = text[:-1]
        return text

    def _read(self) -> _Frame:
        command = self._readline()
        while not command:  # heart-beats
            command = self._readline()
        unescape = self._escape and command != "CONNECTED"
        headers: dict[str, str] = {}
        while True:
            line = self._readline()
            if not line:
                break
            key, _, value = line.partition(":")
            if unescape:
                key, value = _unescape(key), _unescape(value)
            headers.setdefault(key, value)

        length = headers.get("content-length")
        if length:
            body = self._reader.read(int(length))
            if len(body) != int(length) or self._reader.read(1) != b"\0":
                raise StompError("malformed frame body")
            return _Frame(command, headers, body)
        buf = bytearray()
        while True:
            byte = self._reader.read(1)
            if not byte:
                raise StompError("connection closed by broker")
            if byte == b"\0":
                break
            buf += byte
        return _Frame(command, headers, bytes(buf))

    def _request(self, command: str, headers: dict[str, str], body: bytes = b"") -> None:
        receipt = f"receipt-{next(self._ids)}"
        with self._lock:
            self._write(command, {**headers, "receipt": receipt}, body)
            while True:
                frame = self._read()
                if frame.command == "RECEIPT" and frame.headers.get("receipt-id") == receipt:
                    return
                if frame.command == "ERROR":
                    raise StompError(frame.headers.get("message", "broker error"), frame.body)

    def send(
        self,
        destination: str,
        content_type: str,
        body: bytes,
        transaction: Optional[str] = None,
    ) -> None:
        """Send a message and wait for the broker's receipt."""
        headers = {
            "destination": destination,
            "content-type": content_type,
            "content-length": str(len(body)),
        }
        if transaction is not None:
            headers["transaction"] = transaction
        self._request("SEND", headers, body)

    def begin(self) -> str:
        """Begin a transaction and return its id."""
        transaction = f"tx-{next(self._ids)}"
        self._request("BEGIN", {"transaction": transaction})
        return transaction

    def commit(self, transaction: str) -> None:
        """Commit a transaction."""
        self._request("COMMIT", {"transaction": transaction})

    def abort(self, transaction: str) -> None:
        """Abort a transaction."""
        self._request("ABORT", {"transaction": transaction})

    def disconnect(self) -> None:
        """End the session gracefully and close the socket."""
        if self._closed:
            return
        self._closed = True
        try:
            self._request("DISCONNECT", {})
        finally:
            with contextlib.suppress(OSError):
                self._reader.close()
            with contextlib.suppress(OSError):
                self._sock.close()


def _split_host_port(uri: str) -> tuple[str, int]:
    if uri.startswith("["):
        host, _, rest = uri[1:].partition("]")
        if not rest.startswith(":"):
            raise ValueError(f"missing port in address {uri!r}")
        return host, int(rest[1:])
    host, sep, port = uri.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {uri!r}")
    return host, int(port)


class FailOver:
    """Opens a new STOMP session to the first broker that completes a handshake.

    STOMP does not multiplex, so each call makes a fresh TCP connection; the
    caller must disconnect it when finished.
    """

    def __init__(
        self,
        uris: Sequence[str],
        tls: Optional[ssl.SSLContext] = None,
        login: Optional[Login] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.uris = list(uris)
        self.tls = tls
        self.login = login
        self.timeout = timeout

    def dial(self, uri: str) -> StompConnection:
        """Connect to ``uri`` (``host:port``) and perform the STOMP handshake."""
        try:
            host, port = _split_host_port(uri)
            sock = socket.create_connection((host, port), timeout=self.timeout)
        except (OSError, ValueError) as exc:
            raise ConnectionError(f"failed to connect to broker @ {uri}: {exc}") from exc
        if self.tls is not None:
            try:
                sock = self.tls.wrap_socket(sock, server_hostname=host)
            except OSError as exc:
                sock.close()
                raise ConnectionError(f"failed to connect to tls broker @ {uri}: {exc}") from exc
        try:
            if self.login is not None:
                return StompConnection(sock, self.login.login, self.login.passcode)
            return StompConnection(sock)
        except (StompError, OSError, UnicodeDecodeError) as exc:
            sock.close()
            raise ConnectionError(
                f"stomp connect handshake to broker @ {uri} failed: {exc}"
            ) from exc

    def connection(self) -> StompConnection:
        """Return a session with the first broker that accepts one."""
        for uri in self.uris:
            try:
                return self.dial(uri)
            except ConnectionError as exc:
                log.debug("failed to dial broker %s: %s. attempting next", uri, exc)
        raise ConnectionError("exhausted all brokers and unable to make connection")


class STOMPDeliverer(Deliverer):
    """Sends a Callback for each notification id to the configured destination."""

    def __init__(self, config: STOMPConfig) -> None:
        self._callback: Optional[str] = None
        if not config.direct:
            urlsplit(config.callback)
            self._callback = config.callback
        self.destination = config.destination
        self.rollup = config.rollup
        self._failover = FailOver(config.uris, tls=config.tls, login=config.login)

    def name(self) -> str:
        return f"stomp-{self.destination}"

    @contextlib.contextmanager
    def _session(self):
        try:
            conn = self._failover.connection()
        except Exception as exc:
            raise DeliveryFailedError(exc) from exc
        try:
            yield conn
        finally:
            with contextlib.suppress(StompError, OSError):
                conn.disconnect()

    def deliver(self, notification_id: UUID) -> None:
        """Send the callback for ``notification_id``."""
        if self._callback is None:
            raise NotifierError("no callback configured for stomp deliverer")
        with self._session() as conn:
            callback = Callback(
                notification_id=notification_id,
                callback=urljoin(self._callback, str(notification_id)),
            )
            try:
                conn.send(self.destination, _CONTENT_TYPE, callback.to_json().encode())
            except Exception as exc:
                raise DeliveryFailedError(exc) from exc


class STOMPDirectDeliverer(STOMPDeliverer, DirectDeliverer):
    """Sends the notifications themselves, in blocks of at most ``rollup``."""

    def __init__(self, config: STOMPConfig) -> None:
        super().__init__(config)
        self._pending: list[Notification] = []

    def name(self) -> str:
        return f"stomp-direct-{self.destination}"

    def notifications(self, notifications: list[Notification]) -> None:
        """Keep a copy of the notifications for the next delivery."""
        self._pending = list(notifications)

    def deliver(self, notification_id: UUID) -> None:
        """Send all held notifications within one transaction."""
        with self._session() as conn:
            try:
                transaction = conn.begin()
            except Exception as exc:
                raise DeliveryFailedError(exc) from exc

            rollup = self.rollup if self.rollup > 0 else 1
            for start in range(0, len(self._pending), rollup):
                block = self._pending[start:start + rollup]
                try:
                    body = json.dumps([n.to_dict() for n in block], separators=(",", ":")) + "\n"
                    conn.send(self.destination, _CONTENT_TYPE, body.encode(), transaction)
                except Exception as exc:
                    with contextlib.suppress(StompError, OSError):
                        conn.abort(transaction)
                    raise DeliveryFailedError(exc) from exc

            try:
                conn.commit(transaction)
            except Exception as exc:
                raise DeliveryFailedError(exc) from exc