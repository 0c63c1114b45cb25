"""WSGI middleware compressing response bodies per the Accept-Encoding header."""

from __future__ import annotations

import zlib
from typing import Any, Callable, Iterable, Optional

_TSPECIALS = frozenset('()<>@,;:\\"/[]?=')
_NOT_ACCEPTABLE = "!not-acceptable"

_SNAPPY_STREAM_ID = b"\xff\x06\x00\x00sNaPpY"
_SNAPPY_UNCOMPRESSED = 0x01
_SNAPPY_MAX_BLOCK = 65536


def _is_token(text: str) -> bool:
    return bool(text) and all(33 <= ord(c) < 127 and c not in _TSPECIALS for c in text)


def _parse_media_type(segment: str) -> Optional[tuple[str, dict[str, str]]]:
    base, *raw_params = segment.split(";")
    mediatype = base.strip().lower()
    major, slash, minor = mediatype.partition("/")
    if not _is_token(major) or (slash and not _is_token(minor)):
        return None
    params: dict[str, str] = {}
    for raw in raw_params:
        raw = raw.strip()
        if not raw:
            continue
        key, eq, value = raw.partition("=")
        key = key.strip().lower()
        value = value.strip()
        if not eq or not _is_token(key) or key in params:
            return None
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        elif not _is_token(value):
            return None
        params[key] = value
    return mediatype, params


def parse_accept(header: str) -> tuple[Optional[list[tuple[str, float]]], Optional[set[str]]]:
    """Parse an Accept-Encoding header.

    Returns the acceptable encodings as ``(name, q)`` pairs sorted by
    descending q (stable), and the set of refused encodings. Both are None
    for an empty header. An encoding without a q value gets q of 0.
    """
    if not header:
        return None, None
    accepted: list[tuple[str, float]] = []
    refused: set[str] = set()
    for segment in header.split(","):
        parsed = _parse_media_type(segment)
        if parsed is None:
            continue
        name, params = parsed
        q = 0.0
        if "q" in params:
            if params["q"] == "0":
                refused.add(name)
                continue
            try:
                q = float(params["q"])
            except ValueError:
                refused.add(name)
                continue
        accepted.append((name, q))
    accepted.sort(key=lambda item: -item[1])
    return accepted, refused


def _make_crc_table() -> tuple[int, ...]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            crc = (crc >> 1) ^ 0x82F63B78 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _make_crc_table()


def _crc32c(data: bytes) -> int:
    crc = 0xFFFFFFFF
    for byte in data:
        crc = _CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


def _masked_crc(data: bytes) -> int:
    crc = _crc32c(data)
    return (((crc >> 15) | (crc << 17)) + 0xA282EAD8) & 0xFFFFFFFF


def _snappy_chunks(data: bytes) -> bytes:
    out = bytearray()
    for start in range(0, len(data), _SNAPPY_MAX_BLOCK):
        block = data[start:start + _SNAPPY_MAX_BLOCK]
        out.append(_SNAPPY_UNCOMPRESSED)
        out += (len(block) + 4).to_bytes(3, "little")
        out += _masked_crc(block).to_bytes(4, "little")
        out += block
    return bytes(out)


def snappy_frame(data: bytes) -> bytes:
    """Encode ``data`` in the snappy framing format using uncompressed chunks."""
    if not data:
        return b""
    return _SNAPPY_STREAM_ID + _snappy_chunks(data)


class _SnappyEncoder:
    def __init__(self) -> None:
        self._started = False

    def compress(self, data: bytes) -> bytes:
        if not data:
            return b""
        prefix = b"" if self._started else _SNAPPY_STREAM_ID
        self._started = True
        return prefix + _snappy_chunks(data)

    def flush(self) -> bytes:
        return b""


_ENCODERS: dict[str, Callable[[], Any]] = {
    "gzip": lambda: zlib.compressobj(1, zlib.DEFLATED, 31),
    "deflate": lambda: zlib.compressobj(1, zlib.DEFLATED, -15),
    "snappy": _SnappyEncoder,
}


def _choose(accepted: list[tuple[str, float]], refused: set[str]) -> Optional[str]:
    for name, _ in accepted:
        if name in _ENCODERS or name == "identity":
            return name
        if name == "*":
            # Any encoding not explicitly refused is allowed: try gzip, then identity.
            if "gzip" not in refused:
                return "gzip"
            if "identity" not in refused:
                return "identity"
            return _NOT_ACCEPTABLE
    return None


class CompressMiddleware:
    """Transparently compresses the wrapped application's response body."""

    def __init__(self, app: Callable[[dict, Callable[..., Any]], Iterable[bytes]]) -> None:
        self.app = app

    def __call__(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        accepted, refused = parse_accept(environ.get("HTTP_ACCEPT_ENCODING", ""))
        if accepted is None:
            return self.app(environ, start_response)
        encoding = _choose(accepted, refused or set())
        if encoding is None:
            return self.app(environ, start_response)
        if encoding == _NOT_ACCEPTABLE:
            start_response("406 Not Acceptable", [("Content-Length", "0")])
            return []

        encoder = _ENCODERS[encoding]() if encoding in _ENCODERS else None
        dropped = {"content-encoding"}
        if encoder is not None:
            dropped.add("content-length")

        def _start(status, headers, exc_info=None):
            headers = [(k, v) for k, v in headers if k.lower() not in dropped]
            headers.append(("Content-Encoding", encoding))
            write = start_response(status, headers, exc_info)
            if encoder is None:
                return write
            return lambda data: write(encoder.compress(data))

        body = self.app(environ, _start)
        if encoder is None:
            return body
        return self._encode(body, encoder)

    @staticmethod
    def _encode(body: Iterable[bytes], encoder: Any) -> Iterable[bytes]:
        try:
            for chunk in body:
                out = encoder.compress(chunk)
                if out:
                    yield out
            tail = encoder.flush()
            if tail:
                yield tail
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()