"""WSGI authentication middleware gating requests behind checkers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence

import jwt

log = logging.getLogger(__name__)

_BEARER = "Bearer "
# Clock skew tolerated when validating token times, in seconds.
_LEEWAY = 15
_ALGORITHMS = ["HS256", "HS384", "HS512"]

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]


class Checker(ABC):
    """Reports whether a request may continue."""

    @abstractmethod
    def check(self, environ: dict) -> bool:
        """Return True when the request described by ``environ`` is allowed."""


@dataclass(frozen=True)
class AnyChecker(Checker):
    """Tries each checker in order and allows the request if any succeeds."""

    checkers: Sequence[Checker] = ()

    def check(self, environ: dict) -> bool:
        return any(checker.check(environ) for checker in self.checkers)


class FailChecker(Checker):
    """A checker that refuses every request."""

    def check(self, environ: dict) -> bool:
        return False


class AuthMiddleware:
    """Answers 401 unless the configured checkers allow the request."""

    def __init__(self, app: WSGIApp, *checkers: Checker) -> None:
        self.app = app
        self.checker: Checker = checkers[0] if len(checkers) == 1 else AnyChecker(tuple(checkers))

    def __call__(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        if not self.checker.check(environ):
            start_response("401 Unauthorized", [("Content-Length", "0")])
            return []
        return self.app(environ, start_response)


def bearer_token(environ: dict) -> Optional[str]:
    """Return the bearer token from the Authorization header, or None."""
    header = environ.get("HTTP_AUTHORIZATION")
    if header is None:
        return None
    for part in header.split(","):
        part = part.lstrip()
        if part.startswith(_BEARER):
            return part[len(_BEARER):]
    return None


class PSK(Checker):
    """Validates a request's JWT against a pre-shared key and known issuers."""

    def __init__(self, key: bytes, issuers: Sequence[str]) -> None:
        self.key = key
        self.issuers = list(issuers)

    def check(self, environ: dict) -> bool:
        token = bearer_token(environ)
        if token is None:
            log.debug("failed to retrieve jwt from header")
            return False
        try:
            claims = jwt.decode(
                token,
                self.key,
                algorithms=_ALGORITHMS,
                leeway=_LEEWAY,
                options={"verify_aud": False},
            )
        except jwt.PyJWTError as exc:
            log.debug("could not validate jwt: %s", exc)
            return False
        issuer = claims.get("iss", "")
        if self.issuers and issuer not in self.issuers:
            log.debug("could not verify issuer %r", issuer)
            return False
        return True