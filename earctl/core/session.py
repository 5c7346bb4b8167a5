"""Session lifecycle: one owned RFCOMM link and the device model behind it."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable

from earctl.core.cache import StateCache
from earctl.core.catalog import ModelCatalog, load_catalog
from earctl.core.config import Settings
from earctl.core.dispatcher import Dispatcher
from earctl.core.errors import (
    CommandTimeoutError,
    EarctlError,
    HandshakeTimeoutError,
    NoSessionError,
    TransportError,
)
from earctl.core.model import DeviceModel, SessionInfo, SessionStatus
from earctl.transports.base import Transport
from earctl.transports.rfcomm import RFCOMMTransport

LOGGER = logging.getLogger(__name__)


class Session:
    """State machine ``disconnected -> connecting -> connected -> closing -> disconnected``."""

    def __init__(
        self,
        address: str,
        channel: int,
        *,
        transport: Transport,
        cache: StateCache,
        settings: Settings,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.address = address
        self.channel = channel
        self._transport = transport
        self._cache = cache
        self._settings = settings
        self._lock = threading.Lock()
        self._status = SessionStatus.DISCONNECTED
        self._model: DeviceModel | None = None
        self.dispatcher = Dispatcher(self, cache, settings)

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def model(self) -> DeviceModel | None:
        return self._model

    @property
    def transport(self) -> Transport:
        return self._transport

    def _transition(self, expected: set[SessionStatus], target: SessionStatus) -> bool:
        with self._lock:
            if self._status not in expected:
                return False
            LOGGER.debug("Session %s: %s -> %s", self.id, self._status.value, target.value)
            self._status = target
            return True

    def open(self, resolve_model: Callable[[str | None], DeviceModel]) -> None:
        """Open the transport and run the detect handshake.

        ``resolve_model`` turns the serial number reported by the device (or
        ``None``) into the session's ``DeviceModel``.
        """
        if not self._transition({SessionStatus.DISCONNECTED}, SessionStatus.CONNECTING):
            raise TransportError(f"session {self.id} cannot be opened from state {self._status.value}")

        try:
            self._transport.open(self.address, self.channel, timeout_s=self._settings.connect_timeout_s)
        except TransportError:
            self._transition({SessionStatus.CONNECTING}, SessionStatus.DISCONNECTED)
            raise

        self.dispatcher.start()
        try:
            serial = self.dispatcher.handshake()
            model = resolve_model(serial)
        except CommandTimeoutError as exc:
            self.shutdown()
            raise HandshakeTimeoutError(
                f"{self.address} on channel {self.channel} did not answer the detect handshake"
            ) from exc
        except EarctlError:
            self.shutdown()
            raise

        self._model = model
        if not self._transition({SessionStatus.CONNECTING}, SessionStatus.CONNECTED):
            raise NoSessionError(f"session {self.id} was closed during the handshake")
        LOGGER.info(
            "Session %s connected to %s channel %d (model=%s base=%s)",
            self.id,
            self.address,
            self.channel,
            model.model_id or "unknown",
            model.base,
        )

    def replace_model(self, model: DeviceModel) -> None:
        """Swap in a new model; cached values may not match its capabilities."""
        self._model = model
        self._cache.invalidate_all()
        LOGGER.info("Session %s model set to %s (base=%s)", self.id, model.model_id or "-", model.base)

    def shutdown(self) -> None:
        """Tear the session down; safe to call from any thread, including the dispatcher's."""
        if not self._transition(
            {SessionStatus.CONNECTED, SessionStatus.CONNECTING}, SessionStatus.CLOSING
        ):
            return
        try:
            self.dispatcher.stop()
        finally:
            self._transport.close()
            self._cache.invalidate_all()
            self._transition({SessionStatus.CLOSING}, SessionStatus.DISCONNECTED)
            LOGGER.info("Session %s disconnected", self.id)

    def info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            address=self.address,
            channel=self.channel,
            status=self._status,
            model=self._model,
        )


class SessionManager:
    """Holds at most one connected session for the process."""

    def __init__(
        self,
        *,
        transport_factory: Callable[[], Transport] = RFCOMMTransport,
        catalog: ModelCatalog | None = None,
        settings: Settings | None = None,
        cache: StateCache | None = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._catalog = catalog
        self.settings = settings or Settings()
        self.cache = cache or StateCache()
        self._lock = threading.RLock()
        self._session: Session | None = None

    @property
    def catalog(self) -> ModelCatalog:
        if self._catalog is None:
            self._catalog = load_catalog()
        return self._catalog

    def connect(self, address: str, channel: int, model: DeviceModel | None = None) -> Session:
        """Connect to ``address``, first tearing down any active session.

        ``model`` overrides the model detected during the handshake.
        """
        with self._lock:
            previous = self._session
            if previous is not None:
                LOGGER.info("Replacing session %s with a new connection to %s", previous.id, address)
                previous.shutdown()
                self._session = None

            session = Session(
                address.upper(),
                channel,
                transport=self._transport_factory(),
                cache=self.cache,
                settings=self.settings,
            )
            catalog = self.catalog
            session.open(lambda serial: model or catalog.model_for_serial(serial))
            self._session = session
            return session

    def current(self) -> Session:
        session = self._session
        if session is None or session.status is not SessionStatus.CONNECTED:
            raise NoSessionError()
        return session

    def disconnect(self) -> None:
        with self._lock:
            session = self._session
            self._session = None
        if session is not None:
            session.shutdown()
