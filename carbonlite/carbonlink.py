"""Carbonlink protocol: pickle cache queries from graphite-web answered from the cache."""

from __future__ import annotations

import logging
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Iterable

from carbonlite.cache import Cache, Point

logger = logging.getLogger("carbonlink")

MAX_FRAME_SIZE = 1_048_576
DEFAULT_READ_TIMEOUT = 30.0
_ACCEPT_POLL = 0.2

_HEADER = b"\x80\x02}"
_METRIC_KEY = b"U\x06metric"
_TYPE_KEY = b"U\x04type"
_REPLY_HEADER = b"\x80\x02}U\ndatapoints]"
_ERROR_PREFIX = b"\x80\x02}q\x00U\x05errorq\x01U\x1aInvalid request type "
_ERROR_SUFFIX = b"q\x02s."
_LENGTH = struct.Struct(">I")


@dataclass
class CarbonlinkRequest:
    """A decoded carbonlink request."""

    type: str = ""
    metric: str = ""
    key: str = ""
    value: str = ""


class BadPickleError(ValueError):
    """The request is not a carbonlink pickle this server understands."""

    def __init__(self, message: str = "Bad pickle message") -> None:
        super().__init__(message)


class _FrameError(Exception):
    pass


class _Reader:
    """Cursor over a pickle byte string."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def expect(self, token: bytes) -> bool:
        if self._data.startswith(token, self._pos):
            self._pos += len(token)
            return True
        return False

    def require(self, token: bytes) -> None:
        if not self.expect(token):
            raise BadPickleError()

    def skip_memo(self) -> None:
        if len(self._data) - self._pos > 1 and self._data[self._pos] == ord("q"):
            self._pos += 2

    def string(self) -> str:
        data, pos = self._data, self._pos
        if pos >= len(data):
            raise BadPickleError()
        opcode = data[pos]
        if opcode == ord("U"):
            if len(data) - pos >= 2:
                length = data[pos + 1]
                start = pos + 2
                if len(data) >= start + length:
                    self._pos = start + length
                    return data[start:start + length].decode("utf-8", errors="replace")
        elif opcode in (ord("T"), ord("X")):
            if len(data) - pos >= 5:
                (length,) = struct.unpack_from("<I", data, pos + 1)
                start = pos + 5
                if len(data) >= start + length:
                    self._pos = start + length
                    return data[start:start + length].decode("utf-8", errors="replace")
        raise BadPickleError()

    def pair(self, key: bytes) -> str:
        """Read the value, then the expected key that follows it, then its value."""
        self.skip_memo()
        first = self.string()
        self.skip_memo()
        self.require(key)
        self.skip_memo()
        return first


def parse_carbonlink_request(data: bytes) -> CarbonlinkRequest:
    """Decode a pickled ``{'metric': ..., 'type': ...}`` dictionary."""
    reader = _Reader(bytes(data))
    reader.require(_HEADER)
    reader.skip_memo()
    reader.require(b"(")

    if reader.expect(_METRIC_KEY):
        metric = reader.pair(_TYPE_KEY)
        request_type = reader.string()
    elif reader.expect(_TYPE_KEY):
        request_type = reader.pair(_METRIC_KEY)
        metric = reader.string()
    else:
        raise BadPickleError()
    reader.skip_memo()
    return CarbonlinkRequest(type=request_type, metric=metric)


def _pickle_point(point: Point) -> bytes:
    return (
        b"J"
        + struct.pack("<I", int(point.timestamp) & 0xFFFFFFFF)
        + b"G"
        + struct.pack(">d", float(point.value))
        + b"\x86"
    )


def pack_reply(data: Iterable[Point] | None) -> bytes:
    """Pickle ``{'datapoints': [(timestamp, value), ...]}``."""
    points = list(data or ())
    parts = [_REPLY_HEADER]
    if len(points) > 1:
        parts.append(b"(")
    parts.extend(_pickle_point(p) for p in points)
    if not points:
        parts.append(b"s.")
    elif len(points) == 1:
        parts.append(b"as.")
    else:
        parts.append(b"es.")
    return b"".join(parts)


_ESCAPES = {
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
    "\\": "\\\\",
    '"': '\\"',
}


def _quote(text: str) -> str:
    out = []
    for ch in text:
        code = ord(ch)
        if ch in _ESCAPES:
            out.append(_ESCAPES[ch])
        elif ch.isprintable():
            out.append(ch)
        elif code < 0x80:
            out.append(f"\\x{code:02x}")
        elif code < 0x10000:
            out.append(f"\\u{code:04x}")
        else:
            out.append(f"\\U{code:08x}")
    return '"' + "".join(out) + '"'


def error_reply(request_type: str) -> bytes:
    """Pickled error answer for an unsupported request type."""
    return _ERROR_PREFIX + _quote(request_type).encode("utf-8") + _ERROR_SUFFIX


def _frame(payload: bytes) -> bytes:
    if len(payload) > MAX_FRAME_SIZE:
        raise _FrameError(f"frame of {len(payload)} bytes exceeds the limit")
    return _LENGTH.pack(len(payload)) + payload


def _recv_exact(conn: socket.socket, size: int) -> bytes:
    chunks = bytearray()
    while len(chunks) < size:
        chunk = conn.recv(size - len(chunks))
        if not chunk:
            raise ConnectionError("connection closed by peer")
        chunks += chunk
    return bytes(chunks)


def _read_frame(conn: socket.socket) -> bytes:
    (length,) = _LENGTH.unpack(_recv_exact(conn, _LENGTH.size))
    if length > MAX_FRAME_SIZE:
        raise _FrameError(f"frame of {length} bytes exceeds the limit")
    return _recv_exact(conn, length)


def _reset(conn: socket.socket) -> None:
    try:
        conn.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    except OSError:
        pass


class CarbonlinkListener:
    """TCP server answering carbonlink cache queries."""

    def __init__(self, cache: Cache, read_timeout: float = DEFAULT_READ_TIMEOUT) -> None:
        self._cache = cache
        self.read_timeout = read_timeout
        self._sock: socket.socket | None = None
        self._address: tuple[str, int] | None = None
        self._thread: threading.Thread | None = None
        self._stopping = threading.Event()

    def __enter__(self) -> "CarbonlinkListener":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def listen(self, host: str = "127.0.0.1", port: int = 0) -> None:
        """Bind the address and start accepting connections in the background."""
        if self._sock is not None:
            raise RuntimeError("listener is already running")
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen()
            sock.settimeout(_ACCEPT_POLL)
        except OSError:
            sock.close()
            raise
        self._stopping.clear()
        self._sock = sock
        self._address = sock.getsockname()[:2]
        self._thread = threading.Thread(
            target=self._serve, args=(sock,), name="carbonlink-accept", daemon=True
        )
        self._thread.start()

    def addr(self) -> tuple[str, int] | None:
        """The bound (host, port), or None before listen."""
        return self._address

    def _serve(self, sock: socket.socket) -> None:
        try:
            while not self._stopping.is_set():
                try:
                    conn, _ = sock.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    if self._stopping.is_set():
                        break
                    logger.error("failed to accept connection: %s", exc)
                    continue
                threading.Thread(
                    target=self.handle_connection, args=(conn,), daemon=True
                ).start()
        finally:
            sock.close()

    def handle_connection(self, conn: socket.socket) -> None:
        """Serve framed requests on one connection until it fails or closes."""
        with conn:
            while True:
                conn.settimeout(self.read_timeout)
                try:
                    frame = _read_frame(conn)
                except (OSError, _FrameError) as exc:
                    _reset(conn)
                    logger.debug("request read failed: %s", exc)
                    break

                try:
                    request = parse_carbonlink_request(frame)
                except BadPickleError as exc:
                    _reset(conn)
                    logger.warning("request parse failed: %s", exc)
                    break

                if request.type != "cache-query":
                    logger.warning("unknown query type %r", request.type)
                    try:
                        conn.sendall(_frame(error_reply(request.type)))
                    except (OSError, _FrameError):
                        pass
                    break

                try:
                    conn.sendall(_frame(pack_reply(self._cache.get(request.metric))))
                except (OSError, _FrameError) as exc:
                    logger.info("reply error: %s", exc)
                    break

    def stop(self) -> None:
        """Stop accepting connections and release the port."""
        self._stopping.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join()
        self._sock = None