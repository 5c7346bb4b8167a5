"""Frame codec for the earbuds SPP protocol.

Frame layout (all multi-byte integers little-endian):

- Magic: 0x55 0x60 0x01
- Opcode: u16
- Payload length: u8
- Reserved: 0x00
- Operation id: u8
- Payload
- CRC-16/MODBUS over everything before it: u16

Request opcodes live in the 0xC0xx (query) and 0xF0xx (set) ranges; the device
answers queries with 0x40xx or 0xE0xx frames and may push unsolicited 0xE0xx
notifications at any time.
"""

from __future__ import annotations

import math
import struct
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from earctl.core.errors import (
    ChecksumMismatchError,
    InvalidArgumentError,
    MalformedFrameError,
    OutOfRangeError,
)
from earctl.core.model import (
    AncLevel,
    BatteryReading,
    BatteryStatus,
    Category,
    Command,
    CustomEq,
    Direction,
    EarFitResult,
    EarSide,
    EnhancedBassState,
    EqMode,
    FirmwareInfo,
    Frame,
    GestureSlot,
    InEarState,
    LatencyState,
    LedColor,
    LedColorSet,
    PersonalizedAncState,
    RingRequest,
)

HEADER_MAGIC = bytes([0x55, 0x60, 0x01])
HEADER_LEN = 8
CRC_LEN = 2
MAX_PAYLOAD_LEN = 0xFF

# Query opcodes
REQUEST_SERIAL = 0xC006
REQUEST_BATTERY = 0xC007
REQUEST_IN_EAR_STATUS = 0xC00E
REQUEST_LED_CASE_COLORS = 0xC017
REQUEST_GESTURES = 0xC018
REQUEST_ANC = 0xC01E
REQUEST_EQ = 0xC01F
REQUEST_PERSONALIZED_ANC = 0xC020
REQUEST_LATENCY_STATUS = 0xC041
REQUEST_FIRMWARE = 0xC042
REQUEST_CUSTOM_EQ = 0xC044
REQUEST_ENHANCED_BASS = 0xC04E

# Set opcodes
CMD_RING = 0xF002
CMD_SET_GESTURE = 0xF003
CMD_SET_IN_EAR = 0xF004
CMD_SET_LED_CASE_COLORS = 0xF00D
CMD_SET_ANC = 0xF00F
CMD_SET_EQ = 0xF010
CMD_SET_PERSONALIZED_ANC = 0xF011
CMD_EAR_FIT_TEST = 0xF014
CMD_SET_LATENCY = 0xF040
CMD_SET_CUSTOM_EQ = 0xF041
CMD_SET_ENHANCED_BASS = 0xF051

# Response opcodes
RESPONSE_SERIAL = 0x4006
RESPONSE_BATTERY = (0xE001, 0x4007)
RESPONSE_IN_EAR = 0x400E
RESPONSE_LED_CASE_COLORS = 0x4017
RESPONSE_GESTURES = 0x4018
RESPONSE_ANC = (0xE003, 0x401E)
RESPONSE_EQ = (0x401F, 0x4050)
RESPONSE_PERSONALIZED_ANC = 0x4020
RESPONSE_LATENCY = 0x4041
RESPONSE_FIRMWARE = 0x4042
RESPONSE_CUSTOM_EQ = 0x4044
RESPONSE_ENHANCED_BASS = 0x404E
RESPONSE_EAR_FIT_RESULT = 0xE00D

# Custom EQ gains are in dB with 0.1 dB resolution.
CUSTOM_EQ_MIN_DB = -6.0
CUSTOM_EQ_MAX_DB = 6.0
CUSTOM_EQ_DECIMALS = 1
ENHANCED_BASS_MAX_LEVEL = 0x7F

# Device-provided custom EQ block; band gains are patched in at _CUSTOM_EQ_OFFSETS.
_CUSTOM_EQ_TEMPLATE = bytes(
    [
        0x03, 0x00, 0x00, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x75, 0x44,
        0xC3, 0xF5, 0x28, 0x3F, 0x02, 0x00, 0x00, 0x00, 0x00, 0x00, 0xC0, 0x5A, 0x45, 0x00,
        0x00, 0x80, 0x3F, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x0C, 0x43, 0xCD, 0xCC,
        0x4C, 0x3F, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00,
    ]
)
_CUSTOM_EQ_OFFSETS = (6, 19, 32)  # mid, treble, bass
_CUSTOM_EQ_MIN_LEN = 45

_BATTERY_LEFT = 0x02
_BATTERY_RIGHT = 0x03
_BATTERY_CASE = 0x04
_RING_SIDES = {EarSide.LEFT: 0x02, EarSide.RIGHT: 0x03}


def crc16(data: bytes) -> int:
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc


def frame_to_bytes(frame: Frame) -> bytes:
    if len(frame.payload) > MAX_PAYLOAD_LEN:
        raise OutOfRangeError(
            f"payload of {len(frame.payload)} bytes exceeds max frame payload {MAX_PAYLOAD_LEN}"
        )
    packet = bytearray(HEADER_MAGIC)
    packet += struct.pack("<HBBB", frame.command, len(frame.payload), 0x00, frame.operation_id)
    packet += frame.payload
    packet += struct.pack("<H", crc16(bytes(packet)))
    return bytes(packet)


def decode(data: bytes) -> Frame:
    """Decode exactly one frame from ``data``."""
    if len(data) < HEADER_LEN + CRC_LEN:
        raise MalformedFrameError(f"frame of {len(data)} bytes is shorter than the minimum frame size")
    if data[:3] != HEADER_MAGIC:
        raise MalformedFrameError(f"bad frame magic {data[:3].hex()}")
    payload_len = data[5]
    expected = HEADER_LEN + payload_len + CRC_LEN
    if len(data) != expected:
        raise MalformedFrameError(
            f"header declares {payload_len} payload bytes ({expected} total) but frame has {len(data)}"
        )
    (crc_expected,) = struct.unpack_from("<H", data, expected - CRC_LEN)
    crc_actual = crc16(data[: expected - CRC_LEN])
    if crc_actual != crc_expected:
        raise ChecksumMismatchError(f"checksum mismatch: got 0x{crc_expected:04x}, computed 0x{crc_actual:04x}")
    (command,) = struct.unpack_from("<H", data, 3)
    return Frame(command=command, operation_id=data[7], payload=bytes(data[HEADER_LEN : expected - CRC_LEN]))


class FrameBuffer:
    """Reassembles frames from an RFCOMM byte stream, resyncing on the header magic."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer += data

    def clear(self) -> None:
        self._buffer.clear()

    def next_frame(self) -> Frame | None:
        """Pop the next complete frame, or return ``None`` until more bytes arrive.

        A frame with a bad checksum is consumed and reported as
        ``ChecksumMismatchError`` so the stream stays aligned.
        """
        buffer = self._buffer
        while True:
            start = buffer.find(HEADER_MAGIC[0])
            if start < 0:
                buffer.clear()
                return None
            if start > 0:
                del buffer[:start]
            if len(buffer) < HEADER_LEN:
                return None
            if buffer[1] != HEADER_MAGIC[1] or buffer[2] != HEADER_MAGIC[2]:
                del buffer[:1]
                continue
            total = HEADER_LEN + buffer[5] + CRC_LEN
            if len(buffer) < total:
                return None
            packet = bytes(buffer[:total])
            del buffer[:total]
            return decode(packet)


def _byte(value: int, name: str, low: int = 0, high: int = 0xFF) -> int:
    if not low <= value <= high:
        raise OutOfRangeError(f"{name} must be in [{low}, {high}], got {value}")
    return value


def _require(payload: bytes, size: int, what: str) -> None:
    if len(payload) < size:
        raise MalformedFrameError(f"{what} payload needs {size} bytes, got {len(payload)}")


def _expect(payload: Any, kind: type, category: Category) -> None:
    if not isinstance(payload, kind):
        raise InvalidArgumentError(f"{category.value} write expects {kind.__name__}, got {type(payload).__name__}")


# ---------------------------------------------------------------------------
# Category payloads
# ---------------------------------------------------------------------------


def _quantize_gain(value: float, band: str) -> float:
    if math.isnan(value) or not CUSTOM_EQ_MIN_DB <= value <= CUSTOM_EQ_MAX_DB:
        raise OutOfRangeError(
            f"custom EQ {band} must be in [{CUSTOM_EQ_MIN_DB:g}, {CUSTOM_EQ_MAX_DB:g}] dB, got {value}"
        )
    return round(float(value), CUSTOM_EQ_DECIMALS)


def encode_custom_eq(eq: CustomEq) -> bytes:
    bands = (
        _quantize_gain(eq.mid, "mid"),
        _quantize_gain(eq.treble, "treble"),
        _quantize_gain(eq.bass, "bass"),
    )
    payload = bytearray(_CUSTOM_EQ_TEMPLATE)
    # Overall gain is the negated highest boost; a flat or cut-only curve sends -0.0.
    highest = max(0.0, *bands)
    payload[1:5] = struct.pack("<f", -highest)
    for offset, gain in zip(_CUSTOM_EQ_OFFSETS, bands):
        payload[offset : offset + 4] = struct.pack("<f", gain)
    return bytes(payload)


def decode_custom_eq(payload: bytes) -> CustomEq:
    _require(payload, _CUSTOM_EQ_MIN_LEN, "custom EQ")
    mid, treble, bass = (
        round(struct.unpack_from("<f", payload, offset)[0], CUSTOM_EQ_DECIMALS) + 0.0
        for offset in _CUSTOM_EQ_OFFSETS
    )
    return CustomEq(bass=bass, mid=mid, treble=treble)


def parse_battery(payload: bytes) -> BatteryStatus:
    readings: dict[int, BatteryReading] = {}
    if payload:
        for index in range(payload[0]):
            idx = 1 + index * 2
            if idx + 1 >= len(payload):
                break
            level = payload[idx + 1]
            readings[payload[idx]] = BatteryReading(percent=level & 0x7F, charging=bool(level & 0x80))
    return BatteryStatus(
        left=readings.get(_BATTERY_LEFT),
        right=readings.get(_BATTERY_RIGHT),
        case=readings.get(_BATTERY_CASE),
    )


def parse_serial_number(payload: bytes) -> str | None:
    if len(payload) < 8:
        return None
    text = payload[7:].decode("utf-8", errors="replace")
    for line in text.splitlines():
        parts = line.split(",")
        if len(parts) == 3 and parts[1].strip() == "4" and parts[2].strip():
            return parts[2].strip()
    return None


def parse_gestures(payload: bytes) -> tuple[GestureSlot, ...]:
    if not payload:
        return ()
    slots: list[GestureSlot] = []
    for index in range(payload[0]):
        base = 1 + index * 4
        if base + 3 >= len(payload):
            break
        slots.append(GestureSlot(*payload[base : base + 4]))
    return tuple(slots)


def encode_led_colors(colors: LedColorSet) -> bytes:
    payload = bytearray([_byte(len(colors.pixels), "LED pixel count")])
    for index, pixel in enumerate(colors.pixels, start=1):
        payload.append(index)
        payload += bytes(
            [
                _byte(pixel.red, "LED red"),
                _byte(pixel.green, "LED green"),
                _byte(pixel.blue, "LED blue"),
            ]
        )
    return bytes(payload)


def parse_led_colors(payload: bytes) -> LedColorSet:
    if not payload:
        return LedColorSet()
    pixels: list[LedColor] = []
    for index in range(payload[0]):
        base = 2 + index * 4
        if base + 2 >= len(payload):
            break
        pixels.append(LedColor(*payload[base : base + 3]))
    return LedColorSet(pixels=tuple(pixels))


def _encode_ring(request: RingRequest) -> bytes:
    enabled = 0x01 if request.enabled else 0x00
    if request.side is None:
        return bytes([enabled])
    device = _RING_SIDES.get(request.side)
    if device is None:
        raise OutOfRangeError(f"ring side must be left or right, got {request.side.value}")
    return bytes([device, enabled])


def _decode_ring(payload: bytes) -> RingRequest:
    if len(payload) == 1:
        return RingRequest(enabled=payload[0] == 0x01)
    _require(payload, 2, "ring")
    for side, device in _RING_SIDES.items():
        if device == payload[0]:
            return RingRequest(enabled=payload[1] == 0x01, side=side)
    raise MalformedFrameError(f"unknown ring target 0x{payload[0]:02x}")


def _decode_anc_level(code: int) -> AncLevel:
    level = AncLevel.from_device(code)
    if level is None:
        raise MalformedFrameError(f"unknown ANC level 0x{code:02x}")
    return level


def _parse_anc_response(payload: bytes) -> AncLevel:
    _require(payload, 2, "ANC")
    return _decode_anc_level(payload[1])


def _parse_eq_response(payload: bytes) -> EqMode:
    _require(payload, 1, "EQ")
    return EqMode(mode=payload[0])


def _parse_enhanced_bass(payload: bytes) -> EnhancedBassState:
    _require(payload, 2, "enhanced bass")
    return EnhancedBassState(enabled=payload[0] > 0, level=payload[1] // 2)


def _parse_in_ear(payload: bytes) -> InEarState:
    _require(payload, 3, "in-ear")
    return InEarState(detection_enabled=payload[2] == 0x01)


def _parse_latency(payload: bytes) -> LatencyState:
    _require(payload, 1, "latency")
    return LatencyState(low_latency_enabled=payload[0] == 0x01)


def _parse_personalized_anc(payload: bytes) -> PersonalizedAncState:
    _require(payload, 1, "personalized ANC")
    return PersonalizedAncState(enabled=payload[0] == 0x01)


def _parse_ear_fit(payload: bytes) -> EarFitResult:
    left = payload[0] if len(payload) > 0 else 0
    right = payload[1] if len(payload) > 1 else 0
    return EarFitResult(left=left, right=right)


def _parse_firmware(payload: bytes) -> FirmwareInfo:
    return FirmwareInfo(version=payload.decode("utf-8", errors="replace").strip())


# ---------------------------------------------------------------------------
# Routing tables
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _ReadRoute:
    opcode: int
    responses: tuple[int, ...]
    parse: Callable[[bytes], Any]
    request: bytes = b""


@dataclass(frozen=True)
class _WriteRoute:
    opcode: int
    payload_type: type | None
    encode: Callable[[Any], bytes]
    decode: Callable[[bytes], Any]


def _as_tuple(value: int | tuple[int, ...]) -> tuple[int, ...]:
    return value if isinstance(value, tuple) else (value,)


_READS: dict[Category, _ReadRoute] = {
    Category.SERIAL: _ReadRoute(REQUEST_SERIAL, _as_tuple(RESPONSE_SERIAL), parse_serial_number),
    Category.BATTERY: _ReadRoute(REQUEST_BATTERY, RESPONSE_BATTERY, parse_battery),
    Category.ANC: _ReadRoute(REQUEST_ANC, RESPONSE_ANC, _parse_anc_response),
    Category.EQ: _ReadRoute(REQUEST_EQ, RESPONSE_EQ, _parse_eq_response),
    Category.CUSTOM_EQ: _ReadRoute(REQUEST_CUSTOM_EQ, _as_tuple(RESPONSE_CUSTOM_EQ), decode_custom_eq),
    Category.LATENCY: _ReadRoute(REQUEST_LATENCY_STATUS, _as_tuple(RESPONSE_LATENCY), _parse_latency),
    Category.IN_EAR: _ReadRoute(REQUEST_IN_EAR_STATUS, _as_tuple(RESPONSE_IN_EAR), _parse_in_ear),
    Category.ENHANCED_BASS: _ReadRoute(
        REQUEST_ENHANCED_BASS, _as_tuple(RESPONSE_ENHANCED_BASS), _parse_enhanced_bass
    ),
    Category.PERSONALIZED_ANC: _ReadRoute(
        REQUEST_PERSONALIZED_ANC, _as_tuple(RESPONSE_PERSONALIZED_ANC), _parse_personalized_anc
    ),
    Category.GESTURES: _ReadRoute(REQUEST_GESTURES, _as_tuple(RESPONSE_GESTURES), parse_gestures),
    Category.LED: _ReadRoute(REQUEST_LED_CASE_COLORS, _as_tuple(RESPONSE_LED_CASE_COLORS), parse_led_colors),
    Category.FIRMWARE: _ReadRoute(REQUEST_FIRMWARE, _as_tuple(RESPONSE_FIRMWARE), _parse_firmware),
    Category.EAR_FIT: _ReadRoute(
        CMD_EAR_FIT_TEST, _as_tuple(RESPONSE_EAR_FIT_RESULT), _parse_ear_fit, request=b"\x00"
    ),
}

_WRITES: dict[Category, _WriteRoute] = {
    Category.ANC: _WriteRoute(
        CMD_SET_ANC,
        AncLevel,
        lambda level: bytes([0x01, level.to_device(), 0x00]),
        lambda payload: _decode_anc_level(payload[1]),
    ),
    Category.EQ: _WriteRoute(
        CMD_SET_EQ,
        EqMode,
        lambda eq: bytes([_byte(eq.mode, "EQ mode"), 0x00]),
        _parse_eq_response,
    ),
    Category.CUSTOM_EQ: _WriteRoute(CMD_SET_CUSTOM_EQ, CustomEq, encode_custom_eq, decode_custom_eq),
    Category.LATENCY: _WriteRoute(
        CMD_SET_LATENCY,
        LatencyState,
        lambda state: bytes([0x01 if state.low_latency_enabled else 0x02, 0x00]),
        _parse_latency,
    ),
    Category.IN_EAR: _WriteRoute(
        CMD_SET_IN_EAR,
        InEarState,
        lambda state: bytes([0x01, 0x01, 0x01 if state.detection_enabled else 0x00]),
        _parse_in_ear,
    ),
    Category.ENHANCED_BASS: _WriteRoute(
        CMD_SET_ENHANCED_BASS,
        EnhancedBassState,
        lambda state: bytes(
            [
                0x01 if state.enabled else 0x00,
                _byte(state.level, "enhanced bass level", high=ENHANCED_BASS_MAX_LEVEL) * 2,
            ]
        ),
        _parse_enhanced_bass,
    ),
    Category.PERSONALIZED_ANC: _WriteRoute(
        CMD_SET_PERSONALIZED_ANC,
        PersonalizedAncState,
        lambda state: bytes([0x01 if state.enabled else 0x00]),
        _parse_personalized_anc,
    ),
    Category.GESTURES: _WriteRoute(
        CMD_SET_GESTURE,
        GestureSlot,
        lambda slot: bytes(
            [
                0x01,
                _byte(slot.device, "gesture device"),
                _byte(slot.common, "gesture common"),
                _byte(slot.gesture_type, "gesture type"),
                _byte(slot.action, "gesture action"),
            ]
        ),
        lambda payload: parse_gestures(payload)[0],
    ),
    Category.LED: _WriteRoute(CMD_SET_LED_CASE_COLORS, LedColorSet, encode_led_colors, parse_led_colors),
    Category.RING: _WriteRoute(CMD_RING, RingRequest, _encode_ring, _decode_ring),
    Category.EAR_FIT: _WriteRoute(CMD_EAR_FIT_TEST, None, lambda _: b"\x01", lambda _: None),
}


def is_defined(category: Category, direction: Direction) -> bool:
    table = _READS if direction is Direction.READ else _WRITES
    return category in table


def expects_reply(command: Command) -> bool:
    """Set commands are fire-and-forget on the wire; only queries are answered."""
    return command.direction is Direction.READ


def encode_payload(command: Command) -> tuple[int, bytes]:
    if command.direction is Direction.READ:
        route = _READS.get(command.category)
        if route is None:
            raise InvalidArgumentError(f"{command.category.value} cannot be read")
        return route.opcode, route.request

    write = _WRITES.get(command.category)
    if write is None:
        raise InvalidArgumentError(f"{command.category.value} cannot be written")
    if write.payload_type is not None:
        _expect(command.payload, write.payload_type, command.category)
    return write.opcode, write.encode(command.payload)


def encode(command: Command, operation_id: int = 1) -> Frame:
    opcode, payload = encode_payload(command)
    if len(payload) > MAX_PAYLOAD_LEN:
        raise OutOfRangeError(f"{command.category.value} payload of {len(payload)} bytes is too large")
    return Frame(command=opcode, operation_id=_byte(operation_id, "operation id"), payload=payload)


def parse_command(frame: Frame) -> Command:
    """Turn a request frame back into the command that produced it."""
    if frame.command == CMD_EAR_FIT_TEST:
        direction = Direction.READ if frame.payload == b"\x00" else Direction.WRITE
        return Command(Category.EAR_FIT, direction)
    for category, route in _READS.items():
        if route.opcode == frame.command:
            return Command(category, Direction.READ)
    for category, write in _WRITES.items():
        if write.opcode == frame.command:
            try:
                value = write.decode(frame.payload)
            except IndexError as exc:
                raise MalformedFrameError(f"truncated {category.value} payload") from exc
            return Command(category, Direction.WRITE, value)
    raise MalformedFrameError(f"unknown request opcode 0x{frame.command:04x}")


def matches_response(command: Command, frame: Frame) -> bool:
    route = _READS.get(command.category)
    return command.direction is Direction.READ and route is not None and frame.command in route.responses


def decode_response(command: Command, frame: Frame) -> Any:
    """Decode the typed value carried by ``frame`` in answer to ``command``."""
    if not matches_response(command, frame):
        raise MalformedFrameError(
            f"frame 0x{frame.command:04x} does not answer {command.category.value} {command.direction.value}"
        )
    try:
        return _READS[command.category].parse(frame.payload)
    except IndexError as exc:
        raise MalformedFrameError(f"truncated {command.category.value} payload") from exc
