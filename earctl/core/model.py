"""Core data models used across codec, session, dispatcher, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from earctl.core.errors import InvalidArgumentError


class Capability(str, Enum):
    ANC = "anc"
    CUSTOM_EQ = "custom_eq"
    ENHANCED_BASS = "enhanced_bass"
    IN_EAR_DETECTION = "in_ear_detection"
    LED_CASE = "led_case"
    PERSONALIZED_ANC = "personalized_anc"
    LISTENING_MODES = "listening_modes"


class Category(str, Enum):
    BATTERY = "battery"
    ANC = "anc"
    EQ = "eq"
    CUSTOM_EQ = "custom_eq"
    LATENCY = "latency"
    IN_EAR = "in_ear"
    ENHANCED_BASS = "enhanced_bass"
    PERSONALIZED_ANC = "personalized_anc"
    GESTURES = "gestures"
    LED = "led"
    RING = "ring"
    FIRMWARE = "firmware"
    EAR_FIT = "ear_fit"
    SERIAL = "serial"


class Direction(str, Enum):
    READ = "read"
    WRITE = "write"


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class EarSide(str, Enum):
    LEFT = "left"
    RIGHT = "right"
    CASE = "case"


_ANC_DEVICE_CODES = {
    "off": 0x05,
    "transparency": 0x07,
    "nc-low": 0x03,
    "nc-high": 0x01,
    "nc-mid": 0x02,
    "adaptive": 0x04,
}

_ANC_ALIASES = {
    "transparent": "transparency",
    "low": "nc-low",
    "high": "nc-high",
    "mid": "nc-mid",
}


class AncLevel(str, Enum):
    OFF = "off"
    TRANSPARENCY = "transparency"
    NC_LOW = "nc-low"
    NC_HIGH = "nc-high"
    NC_MID = "nc-mid"
    ADAPTIVE = "adaptive"

    @classmethod
    def parse(cls, text: str) -> AncLevel:
        """Parse a user-supplied level, accepting the short aliases (``low``, ``transparent``...)."""
        lowered = text.strip().lower()
        try:
            return cls(_ANC_ALIASES.get(lowered, lowered))
        except ValueError:
            raise InvalidArgumentError(f"unknown ANC level '{text}'") from None

    @classmethod
    def from_device(cls, code: int) -> AncLevel | None:
        for label, value in _ANC_DEVICE_CODES.items():
            if value == code:
                return cls(label)
        return None

    def to_device(self) -> int:
        return _ANC_DEVICE_CODES[self.value]


@dataclass(frozen=True)
class Command:
    category: Category
    direction: Direction
    payload: Any = None


@dataclass(frozen=True)
class Frame:
    command: int
    operation_id: int
    payload: bytes = b""


@dataclass(frozen=True)
class DeviceModel:
    base: str
    capabilities: tuple[Capability, ...]
    model_id: str | None = None
    name: str | None = None
    sku: str | None = None
    serial_number: str | None = None

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities


@dataclass(frozen=True)
class CachedValue:
    value: Any
    timestamp: float


@dataclass(frozen=True)
class BluetoothDevice:
    address: str
    name: str


@dataclass(frozen=True)
class BatteryReading:
    percent: int
    charging: bool


@dataclass(frozen=True)
class BatteryStatus:
    left: BatteryReading | None = None
    right: BatteryReading | None = None
    case: BatteryReading | None = None


@dataclass(frozen=True)
class EqMode:
    mode: int


@dataclass(frozen=True)
class CustomEq:
    bass: float
    mid: float
    treble: float


@dataclass(frozen=True)
class EnhancedBassState:
    enabled: bool
    level: int


@dataclass(frozen=True)
class PersonalizedAncState:
    enabled: bool


@dataclass(frozen=True)
class LatencyState:
    low_latency_enabled: bool


@dataclass(frozen=True)
class InEarState:
    detection_enabled: bool


@dataclass(frozen=True)
class FirmwareInfo:
    version: str


@dataclass(frozen=True)
class EarFitResult:
    left: int
    right: int


@dataclass(frozen=True)
class GestureSlot:
    device: int
    common: int
    gesture_type: int
    action: int


@dataclass(frozen=True)
class LedColor:
    red: int
    green: int
    blue: int


@dataclass(frozen=True)
class LedColorSet:
    pixels: tuple[LedColor, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RingRequest:
    """Ring the buds. ``side`` is ``None`` for models that only ring both buds at once."""

    enabled: bool
    side: EarSide | None = None


@dataclass(frozen=True)
class SerialIdentity:
    serial_number: str | None
    sku: str | None
    model_id: str | None


@dataclass(frozen=True)
class SessionInfo:
    id: str
    address: str
    channel: int
    status: SessionStatus
    model: DeviceModel | None
