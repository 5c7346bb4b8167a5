"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol


class Transport(Protocol):
    def open(self, address: str, channel: int, *, timeout_s: float = 10.0) -> None:
        """Connect to ``address`` on RFCOMM ``channel``."""

    def write(self, data: bytes) -> None:
        """Send ``data``; raises ``TransportIOError`` when the link is broken."""

    def read(self, max_bytes: int, timeout_s: float) -> bytes:
        """Return up to ``max_bytes``, or ``b""`` if nothing arrived within ``timeout_s``.

        Raises ``TransportIOError`` when the peer closed the link.
        """

    def close(self) -> None:
        """Release the link. Safe to call more than once."""
