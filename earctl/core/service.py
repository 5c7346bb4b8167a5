"""Service layer used by the public API and CLI frontends."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from earctl.core.catalog import ModelCatalog
from earctl.core.config import Settings, load_settings
from earctl.core.discovery import BluezDiscovery, Discovery
from earctl.core.dispatcher import REQUIRED_CAPABILITY
from earctl.core.errors import DiscoveryError, NoMatchingDeviceError, UnknownModelError, UnsupportedError
from earctl.core.model import (
    AncLevel,
    BatteryStatus,
    BluetoothDevice,
    Category,
    Command,
    CustomEq,
    DeviceModel,
    Direction,
    EarFitResult,
    EarSide,
    EnhancedBassState,
    EqMode,
    FirmwareInfo,
    GestureSlot,
    InEarState,
    LatencyState,
    LedColorSet,
    PersonalizedAncState,
    RingRequest,
    SerialIdentity,
    SessionInfo,
)
from earctl.core.session import SessionManager
from earctl.transports.base import Transport
from earctl.transports.rfcomm import RFCOMMTransport

LOGGER = logging.getLogger(__name__)

# Case-LED models ring both buds with a single on/off byte.
_SINGLE_TARGET_RING_BASES = frozenset({"B181"})


class EarService:
    def __init__(
        self,
        *,
        transport_factory: Callable[[], Transport] = RFCOMMTransport,
        discovery: Discovery | None = None,
        settings: Settings | None = None,
        catalog: ModelCatalog | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.discovery = discovery or BluezDiscovery(timeout_s=self.settings.discovery_timeout_s)
        self.sessions = SessionManager(
            transport_factory=transport_factory,
            catalog=catalog,
            settings=self.settings,
        )

    @property
    def catalog(self) -> ModelCatalog:
        return self.sessions.catalog

    # -- session lifecycle -------------------------------------------------

    def list_devices(self, name_filter: str | None = None) -> list[BluetoothDevice]:
        return self.discovery.list_connected_devices(name_filter)

    def connect(
        self,
        address: str,
        channel: int | None = None,
        *,
        model_id: str | None = None,
        sku: str | None = None,
        base: str | None = None,
    ) -> SessionInfo:
        override = self._select_model(model_id=model_id, sku=sku, base=base)
        session = self.sessions.connect(
            address,
            channel if channel is not None else self.settings.default_channel,
            model=override,
        )
        return session.info()

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
        device = self._pick_device(name_filter, address)
        if channel is None:
            channel = self._resolve_channel(device.address)
        return self.connect(device.address, channel, model_id=model_id, sku=sku, base=base)

    def disconnect(self) -> None:
        self.sessions.disconnect()

    def session_info(self) -> SessionInfo:
        return self.sessions.current().info()

    def detect(self) -> SerialIdentity:
        """Re-read the serial number and refresh the session model when it maps to a known SKU."""
        session = self.sessions.current()
        serial = self._read(Category.SERIAL)
        model = self.catalog.model_for_serial(serial)
        if model.model_id is not None:
            session.replace_model(model)
        return SerialIdentity(serial_number=serial, sku=model.sku, model_id=model.model_id)

    def override_model(
        self,
        *,
        model_id: str | None = None,
        sku: str | None = None,
        base: str | None = None,
    ) -> DeviceModel:
        session = self.sessions.current()
        model = self._select_model(model_id=model_id, sku=sku, base=base)
        if model is None:
            raise UnknownModelError("Provide a model id, SKU or base to override the detected model")
        session.replace_model(model)
        return model

    # -- settings ----------------------------------------------------------

    def read_battery(self, *, cached: bool = False) -> BatteryStatus:
        return self._read(Category.BATTERY, cached=cached)

    def read_firmware(self, *, cached: bool = False) -> FirmwareInfo:
        return self._read(Category.FIRMWARE, cached=cached)

    def read_anc(self, *, cached: bool = False) -> AncLevel:
        return self._read(Category.ANC, cached=cached)

    def set_anc(self, level: AncLevel) -> AncLevel:
        return self._write(Category.ANC, level)

    def read_eq(self, *, cached: bool = False) -> EqMode:
        return self._read(Category.EQ, cached=cached)

    def set_eq(self, mode: int) -> EqMode:
        return self._write(Category.EQ, EqMode(mode=mode))

    def read_custom_eq(self, *, cached: bool = False) -> CustomEq:
        return self._read(Category.CUSTOM_EQ, cached=cached)

    def set_custom_eq(self, eq: CustomEq) -> CustomEq:
        return self._write(Category.CUSTOM_EQ, eq)

    def read_latency(self, *, cached: bool = False) -> LatencyState:
        return self._read(Category.LATENCY, cached=cached)

    def set_latency(self, low_latency_enabled: bool) -> LatencyState:
        return self._write(Category.LATENCY, LatencyState(low_latency_enabled=low_latency_enabled))

    def read_in_ear(self, *, cached: bool = False) -> InEarState:
        return self._read(Category.IN_EAR, cached=cached)

    def set_in_ear(self, detection_enabled: bool) -> InEarState:
        return self._write(Category.IN_EAR, InEarState(detection_enabled=detection_enabled))

    def read_enhanced_bass(self, *, cached: bool = False) -> EnhancedBassState:
        return self._read(Category.ENHANCED_BASS, cached=cached)

    def set_enhanced_bass(self, enabled: bool, level: int = 0) -> EnhancedBassState:
        return self._write(Category.ENHANCED_BASS, EnhancedBassState(enabled=enabled, level=level))

    def read_personalized_anc(self, *, cached: bool = False) -> PersonalizedAncState:
        return self._read(Category.PERSONALIZED_ANC, cached=cached)

    def set_personalized_anc(self, enabled: bool) -> PersonalizedAncState:
        return self._write(Category.PERSONALIZED_ANC, PersonalizedAncState(enabled=enabled))

    def read_gestures(self, *, cached: bool = False) -> tuple[GestureSlot, ...]:
        return self._read(Category.GESTURES, cached=cached)

    def set_gesture(self, slot: GestureSlot) -> GestureSlot:
        return self._write(Category.GESTURES, slot)

    def read_led_colors(self, *, cached: bool = False) -> LedColorSet:
        return self._read(Category.LED, cached=cached)

    def set_led_colors(self, colors: LedColorSet) -> LedColorSet:
        return self._write(Category.LED, colors)

    def start_ear_fit_test(self) -> None:
        self._write(Category.EAR_FIT, None)

    def read_ear_fit_result(self) -> EarFitResult:
        return self._read(Category.EAR_FIT)

    def ring(self, enabled: bool = True, side: EarSide | None = None) -> RingRequest:
        model = self.sessions.current().model
        if model is not None and model.base in _SINGLE_TARGET_RING_BASES:
            request = RingRequest(enabled=enabled)
        else:
            request = RingRequest(enabled=enabled, side=side or EarSide.RIGHT)
        return self._write(Category.RING, request)

    # -- helpers -----------------------------------------------------------

    def _read(self, category: Category, *, cached: bool = False) -> Any:
        session = self.sessions.current()
        if cached:
            capability = REQUIRED_CAPABILITY.get(category)
            if capability is not None and session.model is not None and not session.model.supports(capability):
                raise UnsupportedError(capability.value)
            entry = self.sessions.cache.get(category)
            if entry is not None:
                LOGGER.debug("Serving %s from cache (%.1fs old)", category.value, time.time() - entry.timestamp)
                return entry.value
        return session.dispatcher.execute(Command(category, Direction.READ))

    def _write(self, category: Category, value: Any) -> Any:
        session = self.sessions.current()
        return session.dispatcher.execute(Command(category, Direction.WRITE, value))

    def _select_model(
        self,
        *,
        model_id: str | None,
        sku: str | None,
        base: str | None,
    ) -> DeviceModel | None:
        if model_id:
            return self.catalog.model_for_id(model_id)
        if sku:
            return self.catalog.model_for_sku(sku)
        if base:
            return self.catalog.model_for_base(base)
        return None

    def _pick_device(self, name_filter: str | None, address: str | None) -> BluetoothDevice:
        if address:
            try:
                known = self.discovery.list_connected_devices()
            except DiscoveryError as exc:
                LOGGER.warning("Could not enumerate connected devices: %s", exc)
                known = []
            for device in known:
                if device.address.upper() == address.upper():
                    return device
            return BluetoothDevice(address=address.upper(), name="")

        devices = self.discovery.list_connected_devices(name_filter)
        if not devices:
            if name_filter:
                raise NoMatchingDeviceError(f"Could not find a connected device matching name '{name_filter}'")
            raise NoMatchingDeviceError(
                "No connected Bluetooth devices were found; please connect your earbuds first"
            )
        return devices[0]

    def _resolve_channel(self, address: str) -> int:
        try:
            return self.discovery.resolve_channel(address)
        except DiscoveryError as exc:
            LOGGER.warning(
                "Failed to detect RFCOMM channel for %s: %s. Falling back to channel %d",
                address,
                exc,
                self.settings.default_channel,
            )
            return self.settings.default_channel
