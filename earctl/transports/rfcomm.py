"""RFCOMM transport implementation using Python sockets."""

from __future__ import annotations

import logging
import socket

from earctl.core.errors import TransportIOError, TransportOpenError

LOGGER = logging.getLogger(__name__)


class RFCOMMTransport:
    def __init__(self) -> None:
        self._socket: socket.socket | None = None
        self.endpoint: str | None = None

    @property
    def is_open(self) -> bool:
        return self._socket is not None

    def open(self, address: str, channel: int, *, timeout_s: float = 10.0) -> None:
        try:
            af_bluetooth = socket.AF_BLUETOOTH
            btproto_rfcomm = socket.BTPROTO_RFCOMM
        except AttributeError as exc:
            raise TransportOpenError(
                "This Python build does not expose Bluetooth socket APIs (AF_BLUETOOTH/BTPROTO_RFCOMM)."
            ) from exc

        try:
            bt_socket = socket.socket(af_bluetooth, socket.SOCK_STREAM, btproto_rfcomm)
        except OSError as exc:
            raise TransportOpenError(f"Could not create RFCOMM socket: {exc}") from exc

        bt_socket.settimeout(timeout_s)
        try:
            bt_socket.connect((address, channel))
        except TimeoutError as exc:
            bt_socket.close()
            raise TransportOpenError(f"RFCOMM connect timed out for {address} on channel {channel}") from exc
        except OSError as exc:
            bt_socket.close()
            raise TransportOpenError(f"RFCOMM connect failed for {address} on channel {channel}: {exc}") from exc

        self._socket = bt_socket
        self.endpoint = f"{address}/{channel}"
        LOGGER.info("Connected to RFCOMM %s", self.endpoint)

    def _require_socket(self) -> socket.socket:
        if self._socket is None:
            raise TransportIOError("RFCOMM transport is not open")
        return self._socket

    def write(self, data: bytes) -> None:
        bt_socket = self._require_socket()
        try:
            bt_socket.sendall(data)
        except OSError as exc:
            raise TransportIOError(f"RFCOMM write failed: {exc}") from exc

    def read(self, max_bytes: int, timeout_s: float) -> bytes:
        bt_socket = self._require_socket()
        bt_socket.settimeout(max(timeout_s, 0.001))
        try:
            data = bt_socket.recv(max_bytes)
        except TimeoutError:
            return b""
        except OSError as exc:
            raise TransportIOError(f"RFCOMM receive failed: {exc}") from exc
        if not data:
            raise TransportIOError("RFCOMM stream closed by peer")
        return data

    def close(self) -> None:
        if self._socket is None:
            return
        try:
            self._socket.close()
        except OSError as exc:
            LOGGER.warning("Error while closing RFCOMM socket %s: %s", self.endpoint, exc)
        finally:
            self._socket = None
            LOGGER.info("Closed RFCOMM %s", self.endpoint)
