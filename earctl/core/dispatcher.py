"""Serialized command execution against a session's single RFCOMM link.

Each session gets one worker thread that owns the transport. Callers enqueue
commands and block on a ``concurrent.futures.Future``; the worker runs one
write-then-await exchange at a time in FIFO order. Frames carry no correlation
id, so a second exchange must never start before the first one finishes.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from earctl.core import codec
from earctl.core.cache import StateCache
from earctl.core.config import Settings
from earctl.core.errors import (
    CommandTimeoutError,
    EarctlError,
    InvalidArgumentError,
    MalformedFrameError,
    NoSessionError,
    ProtocolError,
    SessionClosedError,
    TransportIOError,
    UnsupportedError,
)
from earctl.core.model import Capability, Category, Command, Direction, SessionStatus

if TYPE_CHECKING:
    from earctl.core.session import Session

READ_CHUNK_SIZE = 512
MAX_OPERATION_ID = 250
LOGGER = logging.getLogger(__name__)

REQUIRED_CAPABILITY: dict[Category, Capability] = {
    Category.ANC: Capability.ANC,
    Category.CUSTOM_EQ: Capability.CUSTOM_EQ,
    Category.ENHANCED_BASS: Capability.ENHANCED_BASS,
    Category.IN_EAR: Capability.IN_EAR_DETECTION,
    Category.LED: Capability.LED_CASE,
    Category.PERSONALIZED_ANC: Capability.PERSONALIZED_ANC,
}

# Categories whose written value is what a later read returns.
_WRITE_THROUGH = frozenset(
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
_UNCACHED = frozenset({Category.SERIAL, Category.RING})

_STOP = object()
_TIMED_OUT = object()


@dataclass
class _Job:
    command: Command
    future: Future = field(default_factory=Future)
    during_handshake: bool = False


class Dispatcher:
    def __init__(self, session: Session, cache: StateCache, settings: Settings) -> None:
        self._session = session
        self._cache = cache
        self._settings = settings
        self._queue: queue.Queue[Any] = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._buffer = codec.FrameBuffer()
        self._operation_id = 0
        self._worker: threading.Thread | None = None

    def start(self) -> None:
        self._worker = threading.Thread(
            target=self._run,
            name=f"earctl-dispatch-{self._session.id[:8]}",
            daemon=True,
        )
        self._worker.start()

    def submit(self, command: Command) -> Future:
        """Queue ``command`` and return a future for its result.

        The future may be cancelled while the command is still queued.
        """
        return self._enqueue(command, during_handshake=False)

    def execute(self, command: Command, timeout: float | None = None) -> Any:
        return self.submit(command).result(timeout=timeout)

    def handshake(self) -> str | None:
        """Run the serial-number query that completes a connect."""
        job_future = self._enqueue(Command(Category.SERIAL, Direction.READ), during_handshake=True)
        return job_future.result()

    def stop(self) -> None:
        """Cancel queued commands and stop the worker after the in-flight exchange drains."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            cancelled = 0
            while True:
                try:
                    job = self._queue.get_nowait()
                except queue.Empty:
                    break
                if job is not _STOP and job.future.set_running_or_notify_cancel():
                    job.future.set_exception(SessionClosedError())
                    cancelled += 1
            self._queue.put(_STOP)
        if cancelled:
            LOGGER.info("Cancelled %d queued command(s) for session %s", cancelled, self._session.id)
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join()

    def _check(self, command: Command, *, during_handshake: bool) -> None:
        status = self._session.status
        if during_handshake:
            if status is not SessionStatus.CONNECTING:
                raise NoSessionError("handshake requires a connecting session")
        elif status is not SessionStatus.CONNECTED:
            raise NoSessionError()

        capability = REQUIRED_CAPABILITY.get(command.category)
        model = self._session.model
        if capability is not None and model is not None and not model.supports(capability):
            raise UnsupportedError(
                capability.value,
                f"{command.category.value} {command.direction.value} is not supported by "
                f"{model.name or model.base} (missing '{capability.value}')",
            )

    def _enqueue(self, command: Command, *, during_handshake: bool) -> Future:
        if not codec.is_defined(command.category, command.direction):
            raise InvalidArgumentError(f"{command.category.value} has no {command.direction.value} operation")
        self._check(command, during_handshake=during_handshake)
        job = _Job(command=command, during_handshake=during_handshake)
        with self._lock:
            if self._closed:
                raise SessionClosedError()
            self._queue.put(job)
        return job.future

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            if job is _STOP:
                break
            if not job.future.set_running_or_notify_cancel():
                LOGGER.debug("Skipping cancelled %s %s", job.command.category.value, job.command.direction.value)
                continue
            expected = SessionStatus.CONNECTING if job.during_handshake else SessionStatus.CONNECTED
            if self._closed or self._session.status is not expected:
                job.future.set_exception(SessionClosedError())
                continue
            self._process(job)
        LOGGER.debug("Dispatcher worker for session %s stopped", self._session.id)

    def _process(self, job: _Job) -> None:
        command = job.command
        try:
            value = self._exchange(command)
        except (CommandTimeoutError, TransportIOError) as exc:
            LOGGER.error("Tearing down session %s: %s", self._session.id, exc)
            self._session.shutdown()
            job.future.set_exception(exc)
        except ProtocolError as exc:
            if command.direction is Direction.WRITE:
                self._cache.invalidate(command.category)
            job.future.set_exception(exc)
        except EarctlError as exc:
            job.future.set_exception(exc)
        except Exception as exc:
            LOGGER.exception("Unexpected error while dispatching %s", command.category.value)
            if command.direction is Direction.WRITE:
                self._cache.invalidate(command.category)
            job.future.set_exception(exc)
        else:
            self._remember(command, value)
            job.future.set_result(value)

    def _next_operation_id(self) -> int:
        self._operation_id = 1 if self._operation_id >= MAX_OPERATION_ID else self._operation_id + 1
        return self._operation_id

    def _exchange(self, command: Command) -> Any:
        frame = codec.encode(command, self._next_operation_id())
        data = codec.frame_to_bytes(frame)
        timeout_s = self._settings.timeout_for(command.category)
        transport = self._session.transport
        attempts = 1 + self._settings.retries

        for attempt in range(1, attempts + 1):
            transport.write(data)
            LOGGER.debug(
                "Sent %s %s opcode=0x%04x op=%d attempt=%d",
                command.category.value,
                command.direction.value,
                frame.command,
                frame.operation_id,
                attempt,
            )
            if not codec.expects_reply(command):
                return codec.parse_command(frame).payload
            value = self._await_response(command, timeout_s)
            if value is not _TIMED_OUT:
                return value
            if attempt < attempts:
                LOGGER.warning(
                    "No %s response within %.1fs, resending (attempt %d/%d)",
                    command.category.value,
                    timeout_s,
                    attempt + 1,
                    attempts,
                )

        raise CommandTimeoutError(
            f"timed out waiting for {command.category.value} response after {attempts} attempt(s)"
        )

    def _await_response(self, command: Command, timeout_s: float) -> Any:
        deadline = time.monotonic() + timeout_s
        transport = self._session.transport
        undecodable: MalformedFrameError | None = None
        while True:
            frame = self._buffer.next_frame()
            if frame is not None:
                if codec.matches_response(command, frame):
                    try:
                        value = codec.decode_response(command, frame)
                    except MalformedFrameError as exc:
                        LOGGER.debug("Skipping undecodable frame opcode=0x%04x: %s", frame.command, exc)
                        undecodable = exc
                        continue
                    LOGGER.debug("Received response opcode=0x%04x", frame.command)
                    return value
                LOGGER.debug("Ignoring unsolicited frame opcode=0x%04x", frame.command)
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if undecodable is not None:
                    raise undecodable
                return _TIMED_OUT
            chunk = transport.read(READ_CHUNK_SIZE, remaining)
            if chunk:
                self._buffer.feed(chunk)

    def _remember(self, command: Command, value: Any) -> None:
        category = command.category
        capability = REQUIRED_CAPABILITY.get(category)
        model = self._session.model
        if capability is not None and (model is None or not model.supports(capability)):
            return
        if category in _UNCACHED:
            return
        if command.direction is Direction.READ or category in _WRITE_THROUGH:
            self._cache.put(category, value)
        else:
            # Partial writes (one gesture slot, starting a fit test) make the old value stale.
            self._cache.invalidate(category)
