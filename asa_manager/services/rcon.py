"""Minimal Source RCON client for servers that are not inside a container."""

import socket
import struct
import time
from typing import Optional

AUTH = 3
AUTH_RESPONSE = 2
EXEC_COMMAND = 2
RESPONSE_VALUE = 0


class RconError(Exception):
    pass


class RconClient:
    def __init__(self, host: str, port: int, password: str, timeout: float = 5.0) -> None:
        self.host = host
        self.port = int(port)
        self.password = password
        self.timeout = float(timeout)
        self._sock: Optional[socket.socket] = None
        self._request_id = 0

    def __enter__(self) -> "RconClient":
        self.connect()
        try:
            self.login()
        except RconError:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def connect(self) -> None:
        try:
            self._sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as exc:
            raise RconError(f"cannot connect to {self.host}:{self.port}: {exc}") from exc

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def login(self) -> None:
        request_id = self._send(AUTH, self.password)
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            reply_id, kind, _ = self._receive()
            if kind != AUTH_RESPONSE:
                continue
            if reply_id == -1:
                raise RconError("authentication failed")
            if reply_id == request_id:
                return
        raise RconError("no authentication response")

    def command(self, command: str) -> str:
        request_id = self._send(EXEC_COMMAND, command)
        reply_id, kind, payload = self._receive()
        while reply_id != request_id or kind != RESPONSE_VALUE:
            if reply_id == -1:
                raise RconError("authentication failed")
            reply_id, kind, payload = self._receive()
        return payload

    def _send(self, kind: int, payload: str) -> int:
        self._request_id += 1
        body = struct.pack("<ii", self._request_id, kind) + payload.encode("utf-8") + b"\x00\x00"
        try:
            self._socket().sendall(struct.pack("<i", len(body)) + body)
        except OSError as exc:
            raise RconError(str(exc)) from exc
        return self._request_id

    def _receive(self) -> tuple[int, int, str]:
        (length,) = struct.unpack("<i", self._read(4))
        data = self._read(length)
        if length < 10:
            raise RconError("malformed packet")
        request_id, kind = struct.unpack("<ii", data[:8])
        return request_id, kind, data[8:-2].decode("utf-8", errors="replace")

    def _read(self, size: int) -> bytes:
        buffer = b""
        while len(buffer) < size:
            try:
                chunk = self._socket().recv(size - len(buffer))
            except OSError as exc:
                raise RconError(str(exc)) from exc
            if not chunk:
                raise RconError("connection closed by server")
            buffer += chunk
        return buffer

    def _socket(self) -> socket.socket:
        if self._sock is None:
            raise RconError("not connected")
        return self._sock
