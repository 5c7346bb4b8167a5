"""Shared fixtures: an in-memory earbuds peer speaking the frame protocol."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from pathlib import Path

import pytest

from earctl.core import codec
from earctl.core.cache import StateCache
from earctl.core.catalog import ModelCatalog, load_catalog
from earctl.core.config import Settings
from earctl.core.errors import TransportIOError, TransportOpenError
from earctl.core.model import AncLevel, BluetoothDevice, Category, Command, CustomEq, Direction
from earctl.core.session import SessionManager

NOTHING_EAR_SERIAL = "SH10610000000001"

_RESPONSE_OPCODES = {
    Category.SERIAL: codec.RESPONSE_SERIAL,
    Category.BATTERY: codec.RESPONSE_BATTERY[1],
    Category.ANC: codec.RESPONSE_ANC[1],
    Category.EQ: codec.RESPONSE_EQ[0],
    Category.CUSTOM_EQ: codec.RESPONSE_CUSTOM_EQ,
    Category.LATENCY: codec.RESPONSE_LATENCY,
    Category.IN_EAR: codec.RESPONSE_IN_EAR,
    Category.ENHANCED_BASS: codec.RESPONSE_ENHANCED_BASS,
    Category.PERSONALIZED_ANC: codec.RESPONSE_PERSONALIZED_ANC,
    Category.GESTURES: codec.RESPONSE_GESTURES,
    Category.LED: codec.RESPONSE_LED_CASE_COLORS,
    Category.FIRMWARE: codec.RESPONSE_FIRMWARE,
    Category.EAR_FIT: codec.RESPONSE_EAR_FIT_RESULT,
}

# Set commands whose request payload has the same layout as the query reply.
_MIRRORED_WRITES = frozenset(
    {
        Category.ANC,
        Category.EQ,
        Category.CUSTOM_EQ,
        Category.LATENCY,
        Category.IN_EAR,
        Category.ENHANCED_BASS,
        Category.PERSONALIZED_ANC,
        Category.LED,
    }
)


def serial_payload(serial: str) -> bytes:
    return bytes(7) + f"1,1,SKU\n2,4,{serial}\n".encode()


class FakeEarbuds:
    """Transport double that decodes each written frame and answers queries."""

    def __init__(self, serial: str | None = NOTHING_EAR_SERIAL) -> None:
        self.payloads: dict[Category, bytes] = {
            Category.BATTERY: bytes([3, 0x02, 80, 0x03, 75, 0x04, 0x80 | 50]),
            Category.ANC: bytes([0x01, AncLevel.NC_HIGH.to_device(), 0x00]),
            Category.EQ: bytes([0x00, 0x00]),
            Category.CUSTOM_EQ: codec.encode_custom_eq(CustomEq(bass=0.0, mid=0.0, treble=0.0)),
            Category.LATENCY: bytes([0x02, 0x00]),
            Category.IN_EAR: bytes([0x01, 0x01, 0x01]),
            Category.ENHANCED_BASS: bytes([0x00, 0x00]),
            Category.PERSONALIZED_ANC: bytes([0x00]),
            Category.GESTURES: bytes([2, 0x02, 0x01, 0x02, 0x08, 0x03, 0x01, 0x02, 0x09]),
            Category.LED: bytes([0]),
            Category.FIRMWARE: b"1.0.1.40",
            Category.EAR_FIT: bytes([0x01, 0x02]),
        }
        if serial is not None:
            self.payloads[Category.SERIAL] = serial_payload(serial)
        self.drop_replies: dict[Category, int] = {}
        self.fail_open = False
        self.opened: list[tuple[str, int]] = []
        self.written: list[bytes] = []
        self.commands: list[Command] = []
        self.writer_threads: set[str] = set()
        self.write_gate = threading.Event()
        self.write_gate.set()
        self.in_write = threading.Event()
        self.closed = False
        self.broken = False
        self._inbox = bytearray()
        self._cond = threading.Condition()

    # Transport protocol

    def open(self, address: str, channel: int, *, timeout_s: float = 10.0) -> None:
        if self.fail_open:
            raise TransportOpenError(f"Could not connect to {address} on RFCOMM channel {channel}")
        self.opened.append((address, channel))
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.broken:
            raise TransportIOError("link down")
        self.in_write.set()
        self.write_gate.wait(5)
        self.writer_threads.add(threading.current_thread().name)
        self.written.append(data)
        command = codec.parse_command(codec.decode(data))
        self.commands.append(command)

        if command.direction is Direction.WRITE:
            if command.category in _MIRRORED_WRITES:
                self.payloads[command.category] = codec.decode(data).payload
            return

        pending = self.drop_replies.get(command.category, 0)
        if pending:
            self.drop_replies[command.category] = pending - 1
            return
        payload = self.payloads.get(command.category)
        if payload is not None:
            self.push(_RESPONSE_OPCODES[command.category], payload)

    def read(self, max_bytes: int, timeout_s: float) -> bytes:
        with self._cond:
            self._cond.wait_for(lambda: self._inbox or self.broken or self.closed, timeout=timeout_s)
            if self.broken:
                raise TransportIOError("peer closed the RFCOMM link")
            chunk = bytes(self._inbox[:max_bytes])
            del self._inbox[:max_bytes]
            return chunk

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()

    # Test helpers

    def push(self, opcode: int, payload: bytes, operation_id: int = 0) -> None:
        frame = codec.Frame(command=opcode, operation_id=operation_id, payload=payload)
        self.push_raw(codec.frame_to_bytes(frame))

    def push_raw(self, data: bytes) -> None:
        with self._cond:
            self._inbox += data
            self._cond.notify_all()

    def drop_link(self) -> None:
        with self._cond:
            self.broken = True
            self._cond.notify_all()

    def categories(self, direction: Direction | None = None) -> list[Category]:
        return [
            command.category
            for command in self.commands
            if direction is None or command.direction is direction
        ]


class FakeDiscovery:
    def __init__(
        self,
        devices: list[BluetoothDevice] | None = None,
        *,
        channel: int = 1,
        error: Exception | None = None,
    ) -> None:
        self.devices = devices or []
        self.channel = channel
        self.error = error
        self.resolved: list[str] = []

    def list_connected_devices(self, name_filter: str | None = None) -> list[BluetoothDevice]:
        if name_filter is None:
            return list(self.devices)
        return [device for device in self.devices if name_filter.lower() in device.name.lower()]

    def resolve_channel(self, address: str, service_hint: str = "") -> int:
        self.resolved.append(address)
        if self.error is not None:
            raise self.error
        return self.channel


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    config_home = tmp_path / "cfg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.delenv("EARCTL_LOG_LEVEL", raising=False)
    return config_home


@pytest.fixture
def settings() -> Settings:
    return Settings(response_timeout_s=0.2, connect_timeout_s=1.0, discovery_timeout_s=1.0)


@pytest.fixture
def catalog() -> ModelCatalog:
    return load_catalog()


@pytest.fixture
def earbuds() -> FakeEarbuds:
    return FakeEarbuds()


@pytest.fixture
def manager(earbuds: FakeEarbuds, catalog: ModelCatalog, settings: Settings) -> Iterator[SessionManager]:
    manager = SessionManager(
        transport_factory=lambda: earbuds,
        catalog=catalog,
        settings=settings,
        cache=StateCache(),
    )
    yield manager
    manager.disconnect()
