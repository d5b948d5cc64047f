"""
Control bridge to a local engine process.

Length-prefixed JSON messages over a TCP socket. The engine listens on the
address given in its ``--accept`` argument; the worker connects once the
process is up and keeps the connection for the lifetime of that process.

Protocol:
    <4-byte big-endian length><JSON payload>

Message Types:
    - PING: Host -> Engine, liveness check (answered by PONG)
    - CONVERT: Host -> Engine, convert one document
    - RESULT: Engine -> Host, request succeeded
    - ERROR: Engine -> Host, request failed
    - SHUTDOWN: Host -> Engine, exit gracefully (no reply expected)

Every request carries an ``id``; the engine echoes it in its reply so a
late reply to an abandoned request is never mistaken for the current one.
"""

from __future__ import annotations

import itertools
import json
import logging
import socket
import struct
import threading
import time
from typing import Any, Dict, Optional

from docpool.exceptions import BridgeError, TaskExecutionError, TaskTimeoutError

logger = logging.getLogger(__name__)

# Message type constants
MSG_PING = "PING"
MSG_PONG = "PONG"
MSG_CONVERT = "CONVERT"
MSG_RESULT = "RESULT"
MSG_ERROR = "ERROR"
MSG_SHUTDOWN = "SHUTDOWN"

# Protocol limits
MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10MB limit to prevent memory exhaustion
HEADER_SIZE = 4  # 4-byte big-endian length prefix


def encode_message(
    msg_type: str, payload: Dict[str, Any], msg_id: Optional[int] = None
) -> bytes:
    """
    Encode a message with length prefix.

    Format: <4-byte big-endian length><JSON payload>

    Raises:
        ValueError: If message exceeds size limit
    """
    message: Dict[str, Any] = {"type": msg_type, "payload": payload}
    if msg_id is not None:
        message["id"] = msg_id
    json_bytes = json.dumps(message).encode("utf-8")

    if len(json_bytes) > MAX_MESSAGE_SIZE:
        raise ValueError(
            f"Message size {len(json_bytes)} exceeds limit {MAX_MESSAGE_SIZE}"
        )

    length_prefix = struct.pack(">I", len(json_bytes))
    return length_prefix + json_bytes


def decode_message(data: bytes) -> Dict[str, Any]:
    """Decode a message from raw bytes (without length prefix)."""
    message = json.loads(data.decode("utf-8"))
    if not isinstance(message, dict) or "type" not in message:
        raise ValueError("Malformed message: missing 'type'")
    return message


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_message(sock: socket.socket) -> Optional[Dict[str, Any]]:
    """
    Read one length-prefixed message from a socket.

    Returns:
        Decoded message dict, or None if the peer closed the connection

    Raises:
        ValueError: If message exceeds size limit or is malformed
    """
    header = _recv_exact(sock, HEADER_SIZE)
    if not header:
        return None
    if len(header) < HEADER_SIZE:
        raise ValueError(f"Incomplete header: got {len(header)} bytes")

    length = struct.unpack(">I", header)[0]
    if length > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message size {length} exceeds limit {MAX_MESSAGE_SIZE}")

    data = _recv_exact(sock, length)
    if len(data) < length:
        raise ValueError(f"Incomplete message: expected {length}, got {len(data)}")

    return decode_message(data)


def write_message(
    sock: socket.socket,
    msg_type: str,
    payload: Dict[str, Any],
    msg_id: Optional[int] = None,
) -> None:
    """Write one length-prefixed message to a socket."""
    sock.sendall(encode_message(msg_type, payload, msg_id))


class Bridge:
    """
    Host-side connection to an engine process.

    One request is in flight at a time. Any timeout or protocol error leaves
    the stream in an unknown position, so the bridge is marked broken and
    the owning worker must reconnect (in practice: restart the engine).

    Example:
        bridge = Bridge.connect("127.0.0.1", 2002, timeout=5.0)
        payload = bridge.request(MSG_CONVERT, {...}, timeout=60.0)
        bridge.close()
    """

    def __init__(self, sock: socket.socket, *, address: str = "") -> None:
        self._sock = sock
        self._address = address
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._broken = False
        self._closed = False

    @classmethod
    def connect(cls, host: str, port: int, timeout: float = 5.0) -> "Bridge":
        """
        Open a connection to an engine.

        Raises:
            OSError: If the engine is not accepting connections
        """
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return cls(sock, address=f"{host}:{port}")

    @property
    def address(self) -> str:
        return self._address

    @property
    def usable(self) -> bool:
        return not (self._broken or self._closed)

    def request(
        self,
        msg_type: str,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send a request and wait for the matching RESULT.

        Args:
            msg_type: Request type (PING, CONVERT)
            payload: Request payload
            timeout: Max seconds to wait for the reply (None waits forever)

        Returns:
            Payload of the RESULT (or PONG) message

        Raises:
            TaskTimeoutError: No reply within timeout
            TaskExecutionError: Engine replied with ERROR
            BridgeError: Connection closed or protocol violation
        """
        with self._lock:
            if not self.usable:
                raise BridgeError(f"Bridge to {self._address} is not usable")

            msg_id = next(self._ids)
            deadline = None if timeout is None else time.monotonic() + timeout
            try:
                self._sock.settimeout(timeout)
                write_message(self._sock, msg_type, payload, msg_id)
                while True:
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            raise socket.timeout()
                        self._sock.settimeout(remaining)
                    message = read_message(self._sock)
                    if message is None:
                        self._broken = True
                        raise BridgeError(
                            f"Engine at {self._address} closed the connection"
                        )
                    if message.get("id") != msg_id:
                        logger.debug(
                            "Discarding stale reply %s from %s",
                            message.get("id"),
                            self._address,
                        )
                        continue
                    break
            except socket.timeout:
                self._broken = True
                raise TaskTimeoutError(
                    f"No reply from engine at {self._address} after {timeout}s",
                    timeout=timeout,
                )
            except ValueError as exc:
                self._broken = True
                raise BridgeError(f"Protocol error from {self._address}: {exc}")
            except OSError as exc:
                self._broken = True
                raise BridgeError(f"Connection to {self._address} failed: {exc}")

        reply_type = message.get("type")
        reply_payload = message.get("payload") or {}
        if reply_type == MSG_ERROR:
            raise TaskExecutionError(
                reply_payload.get("error", "Unknown engine error"),
                details={"engine": self._address},
            )
        if reply_type not in (MSG_RESULT, MSG_PONG):
            self._broken = True
            raise BridgeError(f"Unexpected reply type: {reply_type}")
        return reply_payload

    def ping(self, timeout: float = 2.0) -> bool:
        """Check the engine answers. Never raises."""
        try:
            self.request(MSG_PING, {}, timeout=timeout)
            return True
        except (BridgeError, TaskTimeoutError, TaskExecutionError):
            return False

    def shutdown(self) -> None:
        """Ask the engine to exit. Best effort, no reply expected."""
        with self._lock:
            if not self.usable:
                return
            try:
                self._sock.settimeout(1.0)
                write_message(self._sock, MSG_SHUTDOWN, {}, next(self._ids))
            except OSError as exc:
                logger.debug("Shutdown request to %s failed: %s", self._address, exc)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            # Wakes a reader blocked in recv() on another thread.
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._sock.close()
        except OSError:
            pass
