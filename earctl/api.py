"""Stable public API for building tooling on top of earctl.

This module is the supported integration surface for third-party callers
(GUIs, tray applets, home-automation bridges). Avoid importing from internal
modules unless intentionally depending on non-stable internals.
"""

from __future__ import annotations

from collections.abc import Callable

from earctl.core.catalog import ModelCatalog
from earctl.core.config import Settings
from earctl.core.discovery import Discovery
from earctl.core.errors import (
    DiscoveryError,
    DispatchError,
    EarctlError,
    InvalidArgumentError,
    NoMatchingDeviceError,
    NoSessionError,
    OutOfRangeError,
    ProtocolError,
    TransportError,
    UnsupportedError,
)
from earctl.core.model import (
    AncLevel,
    BatteryStatus,
    BluetoothDevice,
    CustomEq,
    DeviceModel,
    EarFitResult,
    EarSide,
    EnhancedBassState,
    EqMode,
    FirmwareInfo,
    GestureSlot,
    InEarState,
    LatencyState,
    LedColor,
    LedColorSet,
    PersonalizedAncState,
    RingRequest,
    SerialIdentity,
    SessionInfo,
)
from earctl.core.service import EarService
from earctl.transports.base import Transport
from earctl.transports.rfcomm import RFCOMMTransport

__all__ = [
    "EarctlError",
    "InvalidArgumentError",
    "DiscoveryError",
    "NoMatchingDeviceError",
    "TransportError",
    "ProtocolError",
    "OutOfRangeError",
    "DispatchError",
    "NoSessionError",
    "UnsupportedError",
    "AncLevel",
    "BatteryStatus",
    "BluetoothDevice",
    "CustomEq",
    "DeviceModel",
    "EarFitResult",
    "EarSide",
    "EnhancedBassState",
    "EqMode",
    "FirmwareInfo",
    "GestureSlot",
    "InEarState",
    "LatencyState",
    "LedColor",
    "LedColorSet",
    "PersonalizedAncState",
    "RingRequest",
    "SerialIdentity",
    "SessionInfo",
    "Client",
]


class Client:
    """Public client for a single earbuds session.

    A `Client` wraps discovery, the session lifecycle and the serialized
    command dispatcher. All methods block until the device answers; they are
    safe to call from several threads at once.
    """

    def __init__(
        self,
        *,
        transport_factory: Callable[[], Transport] = RFCOMMTransport,
        discovery: Discovery | None = None,
        settings: Settings | None = None,
        catalog: ModelCatalog | None = None,
    ) -> None:
        self._service = EarService(
            transport_factory=transport_factory,
            discovery=discovery,
            settings=settings,
            catalog=catalog,
        )

    @property
    def settings(self) -> Settings:
        return self._service.settings

    @property
    def catalog_warnings(self) -> tuple[str, ...]:
        return self._service.catalog.warnings

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    def list_devices(self, name_filter: str | None = None) -> list[BluetoothDevice]:
        return self._service.list_devices(name_filter)

    def connect(
        self,
        address: str,
        channel: int | None = None,
        *,
        model_id: str | None = None,
        sku: str | None = None,
        base: str | None = None,
    ) -> SessionInfo:
        return self._service.connect(address, channel, model_id=model_id, sku=sku, base=base)

    def auto_connect(
        self,
        name_filter: str | None = None,
        channel: int | None = None,
        *,
        address: str | None = None,
        model_id: str | None = None,
        sku: str | None = None,
        base: str | None = None,
    ) -> SessionInfo:
        return self._service.auto_connect(
            name_filter,
            channel,
            address=address,
            model_id=model_id,
            sku=sku,
            base=base,
        )

    def disconnect(self) -> None:
        self._service.disconnect()

    def session_info(self) -> SessionInfo:
        return self._service.session_info()

    def detect(self) -> SerialIdentity:
        return self._service.detect()

    def override_model(
        self,
        *,
        model_id: str | None = None,
        sku: str | None = None,
        base: str | None = None,
    ) -> DeviceModel:
        return self._service.override_model(model_id=model_id, sku=sku, base=base)

    def get_battery(self, *, cached: bool = False) -> BatteryStatus:
        return self._service.read_battery(cached=cached)

    def get_firmware(self, *, cached: bool = False) -> FirmwareInfo:
        return self._service.read_firmware(cached=cached)

    def get_anc(self, *, cached: bool = False) -> AncLevel:
        return self._service.read_anc(cached=cached)

    def set_anc(self, level: AncLevel | str) -> AncLevel:
        if not isinstance(level, AncLevel):
            level = AncLevel.parse(level)
        return self._service.set_anc(level)

    def get_eq(self, *, cached: bool = False) -> EqMode:
        return self._service.read_eq(cached=cached)

    def set_eq(self, mode: int) -> EqMode:
        return self._service.set_eq(mode)

    def get_custom_eq(self, *, cached: bool = False) -> CustomEq:
        return self._service.read_custom_eq(cached=cached)

    def set_custom_eq(self, bass: float, mid: float, treble: float) -> CustomEq:
        return self._service.set_custom_eq(CustomEq(bass=bass, mid=mid, treble=treble))

    def get_latency(self, *, cached: bool = False) -> LatencyState:
        return self._service.read_latency(cached=cached)

    def set_latency(self, low_latency_enabled: bool) -> LatencyState:
        return self._service.set_latency(low_latency_enabled)

    def get_in_ear(self, *, cached: bool = False) -> InEarState:
        return self._service.read_in_ear(cached=cached)

    def set_in_ear(self, detection_enabled: bool) -> InEarState:
        return self._service.set_in_ear(detection_enabled)

    def get_enhanced_bass(self, *, cached: bool = False) -> EnhancedBassState:
        return self._service.read_enhanced_bass(cached=cached)

    def set_enhanced_bass(self, enabled: bool, level: int = 0) -> EnhancedBassState:
        return self._service.set_enhanced_bass(enabled, level)

    def get_personalized_anc(self, *, cached: bool = False) -> PersonalizedAncState:
        return self._service.read_personalized_anc(cached=cached)

    def set_personalized_anc(self, enabled: bool) -> PersonalizedAncState:
        return self._service.set_personalized_anc(enabled)

    def get_gestures(self, *, cached: bool = False) -> tuple[GestureSlot, ...]:
        return self._service.read_gestures(cached=cached)

    def set_gesture(self, slot: GestureSlot) -> GestureSlot:
        return self._service.set_gesture(slot)

    def get_led_colors(self, *, cached: bool = False) -> LedColorSet:
        return self._service.read_led_colors(cached=cached)

    def set_led_colors(self, colors: LedColorSet) -> LedColorSet:
        return self._service.set_led_colors(colors)

    def start_ear_fit_test(self) -> None:
        self._service.start_ear_fit_test()

    def get_ear_fit_result(self) -> EarFitResult:
        return self._service.read_ear_fit_result()

    def ring(self, enabled: bool = True, side: EarSide | None = None) -> RingRequest:
        return self._service.ring(enabled, side)
