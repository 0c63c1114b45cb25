"""A small webhook receiver that fetches and deletes the notifications it is told about."""

from __future__ import annotations

import argparse
import base64
import binascii
import json
import logging
import posixpath
import socket
import time
from http import HTTPStatus
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urlsplit
from wsgiref.simple_server import make_server

import jwt
import requests

from .callback import Callback
from .models import Notification, Page

log = logging.getLogger(__name__)

# Validity window of minted tokens on each side of now, in seconds.
_LEEWAY = 60


def _error(start_response: Callable[..., Any], code: int, message: str) -> list[bytes]:
    start_response(
        f"{code} {HTTPStatus(code).phrase}",
        [("Content-Type", "text/plain; charset=utf-8"), ("X-Content-Type-Options", "nosniff")],
    )
    return [(message + "\n").encode()]


def _base(path: str) -> str:
    trimmed = path.rstrip("/")
    if not trimmed:
        return "/" if path else "."
    return posixpath.basename(trimmed)


def _status_line(response: requests.Response) -> str:
    return json.dumps(f"{response.status_code} {response.reason}")


class Receiver:
    """WSGI app that answers webhooks by paging through and deleting notifications."""

    def __init__(
        self,
        client: Optional[requests.Session] = None,
        key: Optional[bytes] = None,
        issuer: str = "quay",
        debug: bool = False,
    ) -> None:
        self.client = client or requests.Session()
        self.key = key
        self.issuer = issuer
        self.debug = debug

    def __call__(
        self, environ: dict, start_response: Callable[..., Any]
    ) -> Iterable[bytes]:
        method = environ.get("REQUEST_METHOD", "GET")
        if self.debug:
            log.debug("D received hook: %s %s", method, environ.get("PATH_INFO", ""))
        if method != "POST":
            log.error("E bad method: %s", method)
            return _error(start_response, 400, f"bad method: {method}")
        content_type = environ.get("CONTENT_TYPE", "")
        if content_type != "application/json":
            log.error("E bad content-type: %s", content_type)
            return _error(start_response, 400, f"bad content-type: {content_type}")

        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        body = environ["wsgi.input"].read(length) if length > 0 else b""
        try:
            payload = Callback.from_json(body)
        except ValueError as exc:
            log.error("E bad content: %s", exc)
            return _error(start_response, 400, f"bad content: {exc}")
        whid = _base(urlsplit(payload.callback).path)

        next_page = None
        while True:
            headers: dict[str, str] = {}
            try:
                self.sign(headers)
            except jwt.PyJWTError as exc:
                log.error("E unable to sign request: %s", exc)
                return _error(start_response, 500, f"unable to sign request: {exc}")
            params = {"next": str(next_page)} if next_page is not None else None
            try:
                response = self.client.get(payload.callback, params=params, headers=headers)
            except requests.RequestException as exc:
                log.error("E unable to make request: %s", exc)
                return _error(start_response, 500, f"error making request: {exc}")
            with response:
                if self.debug:
                    log.debug("D got response: %s %r", response.status_code, response.content)
                if response.status_code != 200:
                    log.error("E bad status: %s %s", response.status_code, response.reason)
                    return _error(
                        start_response, 500, f"bad response from upstream: {_status_line(response)}"
                    )
                try:
                    data = response.json()
                    page = Page.from_dict(data.get("page") or {})
                    notes = [Notification.from_dict(n) for n in data.get("notifications") or []]
                except (ValueError, KeyError, TypeError, AttributeError) as exc:
                    log.error("E bad content: %s", exc)
                    return _error(start_response, 418, f"bad content from upstream: {exc}")
            for note in notes:
                log.info(
                    ": %s %s %s %s %s",
                    whid,
                    note.id,
                    note.manifest,
                    note.reason.value,
                    note.vulnerability.name,
                )
            next_page = page.next
            if next_page is None:
                break

        headers = {}
        try:
            self.sign(headers)
        except jwt.PyJWTError as exc:
            log.error("E unable to sign request: %s", exc)
            return _error(start_response, 500, f"unable to sign request: {exc}")
        try:
            response = self.client.delete(payload.callback, headers=headers)
        except requests.RequestException as exc:
            return _error(start_response, 500, f"error making request: {exc}")
        with response:
            if response.status_code != 200:
                log.error("E bad status: %s %s", response.status_code, response.reason)
                return _error(
                    start_response, 500, f"bad response from upstream: {_status_line(response)}"
                )
        log.info(": deleted: %s", whid)
        start_response("200 OK", [("Content-Length", "0")])
        return [b""]

    def sign(self, headers: dict[str, str]) -> None:
        """Add a short-lived bearer credential to ``headers`` when a key is configured."""
        if self.key is None:
            return
        now = int(time.time())
        claims = {"iss": self.issuer, "iat": now, "nbf": now - _LEEWAY, "exp": now + _LEEWAY}
        encoded = jwt.encode(claims, self.key, algorithm="HS256")
        headers["Authorization"] = "Bearer " + encoded


def _parse_listen(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    if port.isdigit():
        return host, int(port)
    return host, socket.getservbyname(port, "tcp")


def main(argv: Optional[list[str]] = None) -> int:
    """Serve the receiver until interrupted."""
    parser = argparse.ArgumentParser(description="Receive and drain notifier webhooks.")
    parser.add_argument("-D", dest="debug", action="store_true", help="print debugging output")
    parser.add_argument("-listen", default=":http", help="address to listen on")
    parser.add_argument("-key", default="", help="base64 encoded PSK for signed requests")
    parser.add_argument("-iss", default="quay", help="issuer for signed requests")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)

    decoded = None
    if args.key:
        try:
            decoded = base64.b64decode(args.key, validate=True)
        except binascii.Error as exc:
            log.error("invalid key: %s", exc)
            return 1
        if args.debug:
            log.debug("D decoded key: %r", decoded)

    try:
        host, port = _parse_listen(args.listen)
    except OSError as exc:
        log.error("invalid listen address %r: %s", args.listen, exc)
        return 1

    app = Receiver(requests.Session(), key=decoded, issuer=args.iss, debug=args.debug)
    with make_server(host, port, app) as server:
        log.info(": ready")
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            pass
        finally:
            log.info(": shutting down")
    return 0