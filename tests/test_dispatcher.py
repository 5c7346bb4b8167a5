from __future__ import annotations

import threading

import pytest

from earctl.core import codec
from earctl.core.errors import (
    CommandTimeoutError,
    InvalidArgumentError,
    MalformedFrameError,
    NoSessionError,
    OutOfRangeError,
    SessionClosedError,
    TransportIOError,
    UnsupportedError,
)
from earctl.core.model import (
    AncLevel,
    BatteryReading,
    Category,
    Command,
    CustomEq,
    Direction,
    FirmwareInfo,
    GestureSlot,
    LedColorSet,
    SessionStatus,
)

ADDRESS = "3C:B0:ED:C4:B0:31"


def _read(category: Category) -> Command:
    return Command(category, Direction.READ)


def test_queued_commands_run_in_submission_order(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    earbuds.in_write.clear()
    earbuds.write_gate.clear()

    order = [Category.BATTERY, Category.FIRMWARE, Category.EQ, Category.LATENCY, Category.IN_EAR]
    futures = [session.dispatcher.submit(_read(category)) for category in order]
    assert earbuds.in_write.wait(2)
    earbuds.write_gate.set()

    for future in futures:
        future.result(timeout=2)
    assert earbuds.categories(Direction.READ)[1:] == order
    assert len(earbuds.writer_threads) == 1


def test_concurrent_callers_share_one_exchange_at_a_time(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    results: dict[str, object] = {}

    def call(category: Category) -> None:
        results[category.value] = session.dispatcher.execute(_read(category), timeout=5)

    threads = [
        threading.Thread(target=call, args=(category,))
        for category in (Category.BATTERY, Category.FIRMWARE, Category.ANC, Category.GESTURES)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert results["battery"].left == BatteryReading(percent=80, charging=False)
    assert results["firmware"] == FirmwareInfo(version="1.0.1.40")
    assert results["anc"] is AncLevel.NC_HIGH
    assert results["gestures"][0] == GestureSlot(device=2, common=1, gesture_type=2, action=8)
    assert len(earbuds.writer_threads) == 1


def test_operation_ids_increase_per_frame(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    session.dispatcher.execute(_read(Category.BATTERY))
    session.dispatcher.execute(_read(Category.FIRMWARE))
    assert [codec.decode(data).operation_id for data in earbuds.written] == [1, 2, 3]


def test_unsupported_category_is_rejected_before_any_write(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    sent = len(earbuds.written)

    with pytest.raises(UnsupportedError) as excinfo:
        session.dispatcher.submit(Command(Category.LED, Direction.WRITE, LedColorSet()))

    assert excinfo.value.capability == "led_case"
    assert len(earbuds.written) == sent


def test_single_timeout_is_retried_with_same_frame(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    earbuds.drop_replies[Category.FIRMWARE] = 1

    assert session.dispatcher.execute(_read(Category.FIRMWARE)) == FirmwareInfo(version="1.0.1.40")
    assert earbuds.categories().count(Category.FIRMWARE) == 2
    assert earbuds.written[-1] == earbuds.written[-2]
    assert session.status is SessionStatus.CONNECTED


def test_repeated_timeout_tears_down_and_clears_cache(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    session.dispatcher.execute(_read(Category.ANC))
    assert manager.cache.get(Category.ANC) is not None

    earbuds.drop_replies[Category.BATTERY] = 2
    with pytest.raises(CommandTimeoutError):
        session.dispatcher.execute(_read(Category.BATTERY))

    assert session.status is SessionStatus.DISCONNECTED
    assert earbuds.closed
    assert len(manager.cache) == 0
    with pytest.raises(NoSessionError):
        manager.current()
    with pytest.raises(NoSessionError):
        session.dispatcher.submit(_read(Category.ANC))


def test_link_loss_tears_down_session(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    earbuds.drop_link()

    with pytest.raises(TransportIOError):
        session.dispatcher.execute(_read(Category.BATTERY))
    assert session.status is SessionStatus.DISCONNECTED


def test_queued_command_can_be_cancelled(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    earbuds.in_write.clear()
    earbuds.write_gate.clear()

    first = session.dispatcher.submit(_read(Category.BATTERY))
    assert earbuds.in_write.wait(2)
    second = session.dispatcher.submit(_read(Category.FIRMWARE))
    assert second.cancel()
    earbuds.write_gate.set()

    first.result(timeout=2)
    session.dispatcher.execute(_read(Category.EQ))
    assert Category.FIRMWARE not in earbuds.categories()


def test_queued_commands_fail_when_session_closes(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    earbuds.in_write.clear()
    earbuds.write_gate.clear()

    in_flight = session.dispatcher.submit(_read(Category.BATTERY))
    assert earbuds.in_write.wait(2)
    queued = session.dispatcher.submit(_read(Category.FIRMWARE))

    closer = threading.Thread(target=manager.disconnect)
    closer.start()
    assert isinstance(queued.exception(timeout=2), SessionClosedError)
    earbuds.write_gate.set()
    closer.join(5)

    assert in_flight.result(timeout=2).left is not None
    assert session.status is SessionStatus.DISCONNECTED
    assert Category.FIRMWARE not in earbuds.categories()
    assert len(manager.cache) == 0


def test_unsolicited_notifications_are_skipped(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    earbuds.push(codec.RESPONSE_ANC[0], bytes([0x01, AncLevel.OFF.to_device()]))

    status = session.dispatcher.execute(_read(Category.BATTERY))
    assert status.case == BatteryReading(percent=50, charging=True)


def test_undecodable_notification_does_not_fail_read(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    earbuds.push(codec.RESPONSE_ANC[0], bytes([0x01, 0x0A]))

    assert session.dispatcher.execute(_read(Category.ANC)) is AncLevel.NC_HIGH
    assert earbuds.categories(Direction.READ).count(Category.ANC) == 1


def test_undecodable_frame_reported_when_no_reply_follows(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    earbuds.drop_replies[Category.ANC] = 1
    earbuds.push(codec.RESPONSE_ANC[0], bytes([0x01, 0x0A]))

    with pytest.raises(MalformedFrameError):
        session.dispatcher.execute(_read(Category.ANC))
    assert session.status is SessionStatus.CONNECTED
    assert manager.cache.get(Category.ANC) is None


def test_writes_are_cached_write_through(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)

    result = session.dispatcher.execute(Command(Category.ANC, Direction.WRITE, AncLevel.TRANSPARENCY))

    assert result is AncLevel.TRANSPARENCY
    assert manager.cache.get(Category.ANC).value is AncLevel.TRANSPARENCY
    assert earbuds.categories(Direction.WRITE) == [Category.ANC]


def test_partial_write_invalidates_cached_value(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    session.dispatcher.execute(_read(Category.GESTURES))
    assert manager.cache.get(Category.GESTURES) is not None

    slot = GestureSlot(device=2, common=1, gesture_type=2, action=9)
    session.dispatcher.execute(Command(Category.GESTURES, Direction.WRITE, slot))
    assert manager.cache.get(Category.GESTURES) is None


def test_rejected_write_invalidates_and_sends_nothing(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    session.dispatcher.execute(_read(Category.CUSTOM_EQ))
    sent = len(earbuds.written)

    with pytest.raises(OutOfRangeError):
        session.dispatcher.execute(
            Command(Category.CUSTOM_EQ, Direction.WRITE, CustomEq(bass=9.0, mid=0.0, treble=0.0))
        )

    assert len(earbuds.written) == sent
    assert manager.cache.get(Category.CUSTOM_EQ) is None
    assert session.status is SessionStatus.CONNECTED


def test_undefined_operation_is_an_invalid_argument(manager, earbuds) -> None:
    session = manager.connect(ADDRESS, 15)
    sent = len(earbuds.written)

    with pytest.raises(InvalidArgumentError):
        session.dispatcher.submit(_read(Category.RING))
    assert len(earbuds.written) == sent
