from __future__ import annotations

import pytest

from earctl.core.cache import StateCache
from earctl.core.errors import HandshakeTimeoutError, NoSessionError, TransportOpenError
from earctl.core.model import AncLevel, Category, Command, Direction, SessionStatus
from earctl.core.session import SessionManager

from conftest import FakeEarbuds, serial_payload

ADDRESS = "3C:B0:ED:C4:B0:31"


def test_connect_runs_handshake_and_resolves_model(manager, earbuds) -> None:
    session = manager.connect(ADDRESS.lower(), 15)

    assert session.status is SessionStatus.CONNECTED
    assert session.address == ADDRESS
    assert earbuds.opened == [(ADDRESS, 15)]
    assert earbuds.commands[0] == Command(Category.SERIAL, Direction.READ)
    assert session.model.model_id == "entei_black"
    assert session.model.name == "Nothing Ear"
    assert session.model.serial_number == "SH10610000000001"
    assert manager.current() is session


def test_factory_test_serial_maps_to_first_generation(manager, earbuds) -> None:
    earbuds.payloads[Category.SERIAL] = serial_payload("12345678901234567")
    session = manager.connect(ADDRESS, 15)
    assert session.model.sku == "01"
    assert session.model.base == "B181"


def test_unmapped_serial_degrades_to_unknown_base(manager, earbuds) -> None:
    earbuds.payloads[Category.SERIAL] = bytes(7) + b"1,1,nothing useful\n"
    session = manager.connect(ADDRESS, 15)
    assert session.model.base == "UNKNOWN"
    assert session.model.model_id is None
    assert session.status is SessionStatus.CONNECTED


def test_explicit_model_overrides_detection(manager, catalog) -> None:
    session = manager.connect(ADDRESS, 15, model=catalog.model_for_base("b181"))
    assert session.model.base == "B181"
    assert session.model.model_id is None


def test_open_failure_leaves_no_session(manager, earbuds) -> None:
    earbuds.fail_open = True
    with pytest.raises(TransportOpenError):
        manager.connect(ADDRESS, 15)
    with pytest.raises(NoSessionError):
        manager.current()


def test_handshake_timeout_closes_transport(manager, earbuds) -> None:
    earbuds.drop_replies[Category.SERIAL] = 2
    with pytest.raises(HandshakeTimeoutError):
        manager.connect(ADDRESS, 15)
    assert earbuds.closed
    with pytest.raises(NoSessionError):
        manager.current()


def test_second_connect_replaces_first(catalog, settings) -> None:
    links = [FakeEarbuds(), FakeEarbuds()]
    manager = SessionManager(transport_factory=lambda: links.pop(0), catalog=catalog, settings=settings)
    first_link, second_link = links

    first = manager.connect(ADDRESS, 15)
    second = manager.connect("2C:BE:EB:00:11:22", 1)

    assert first.status is SessionStatus.DISCONNECTED
    assert first_link.closed
    assert second.status is SessionStatus.CONNECTED
    assert not second_link.closed
    assert manager.current() is second
    manager.disconnect()


def test_new_session_starts_with_empty_cache(manager) -> None:
    first = manager.connect(ADDRESS, 15)
    first.dispatcher.execute(Command(Category.ANC, Direction.WRITE, AncLevel.OFF))
    assert manager.cache.get(Category.ANC) is not None

    manager.connect(ADDRESS, 15)
    assert manager.cache.get(Category.ANC) is None


def test_disconnect_is_idempotent(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    manager.disconnect()
    manager.disconnect()
    session.shutdown()

    assert session.status is SessionStatus.DISCONNECTED
    assert earbuds.closed
    with pytest.raises(NoSessionError):
        manager.current()


def test_replace_model_invalidates_cache(manager, catalog) -> None:
    session = manager.connect(ADDRESS, 15)
    session.dispatcher.execute(Command(Category.BATTERY, Direction.READ))
    assert len(manager.cache) == 1

    session.replace_model(catalog.model_for_id("ear_1_white"))
    assert session.model.base == "B181"
    assert len(manager.cache) == 0


def test_info_reports_metadata(manager) -> None:
    session = manager.connect(ADDRESS, 15)
    info = session.info()
    assert info.id == session.id
    assert info.channel == 15
    assert info.status is SessionStatus.CONNECTED
    assert info.model is session.model


def test_cache_clock_is_injectable() -> None:
    cache = StateCache(clock=lambda: 42.0)
    entry = cache.put(Category.EQ, "value")
    assert entry.timestamp == 42.0
    assert cache.get(Category.EQ) is entry
    cache.invalidate(Category.EQ)
    assert cache.get(Category.EQ) is None
