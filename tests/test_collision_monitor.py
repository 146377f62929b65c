import pytest

from ebuslink.collision_monitor import (
    ArbitrationFailedError,
    ArbitrationFailureReason,
    CollisionMonitor,
    CollisionMonitorConfig,
    CollisionReason,
    is_arbitration_failed,
)
from ebuslink.frame import BusCollisionError, Frame


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_monitor(config=None):
    clock = FakeClock()
    monitor = CollisionMonitor(config, clock=clock)
    return monitor, clock


def test_foreign_same_source_triggers_collision():
    monitor, clock = make_monitor(
        CollisionMonitorConfig(echo_window=0.2, history_capacity=16, grace_after_rejoin=0.75)
    )
    monitor.set_initiator(0x31)
    monitor.record_tx(Frame(0x31, 0x15, 0xB5, 0x24, bytes([0x06, 0x02, 0x00, 0x03, 0x00])))

    clock.advance(0.01)
    event = monitor.observe_rx(Frame(0x31, 0x15, 0xB5, 0x24, bytes([0x06, 0x03, 0x00, 0x03, 0x00])))
    assert event is not None
    assert event.reason == CollisionReason.FOREIGN_SAME_SOURCE
    assert event.initiator == 0x31
    assert monitor.collision_active() is True


def test_matching_echo_does_not_trigger_collision():
    monitor, clock = make_monitor(CollisionMonitorConfig(echo_window=0.2))
    monitor.set_initiator(0x31)
    frame = Frame(0x31, 0x15, 0x07, 0x04, bytes([0x00]))
    monitor.record_tx(frame)

    clock.advance(0.025)
    assert monitor.observe_rx(frame) is None
    assert monitor.collision_active() is False


def test_muted_mode_treats_same_source_as_collision():
    monitor, _ = make_monitor()
    monitor.set_initiator(0x31)
    monitor.set_muted(True)

    event = monitor.observe_rx(Frame(0x31, 0x15, 0xB5, 0x24, bytes([0x03, 0x00, 0x00])))
    assert event is not None
    assert event.reason == CollisionReason.OBSERVED_WHILE_MUTED


def test_record_tx_fails_fast_while_collision_active():
    monitor, _ = make_monitor()
    monitor.set_initiator(0x31)
    monitor.observe_rx(Frame(0x31, 0x15, 0xB5, 0x24, bytes([0x03, 0x00, 0x00])))

    with pytest.raises(ArbitrationFailedError) as info:
        monitor.record_tx(Frame(0x31, 0x15, 0xB5, 0x24, bytes([0x06, 0x02, 0x00, 0x0F, 0x00])))
    assert info.value.reason == ArbitrationFailureReason.ADDRESS_COLLISION
    assert isinstance(info.value, BusCollisionError)
    assert str(info.value) == "ebus: arbitration failed (address_collision)"


def test_grace_after_rejoin_ignores_old_initiator():
    monitor, clock = make_monitor(
        CollisionMonitorConfig(echo_window=0.2, history_capacity=16, grace_after_rejoin=0.5)
    )
    monitor.set_initiator(0x31)
    monitor.set_initiator(0x33)

    clock.advance(0.15)
    assert monitor.observe_rx(Frame(0x31, 0x15, 0x07, 0x04, bytes([0x00]))) is None

    clock.advance(0.6)
    event = monitor.observe_rx(Frame(0x33, 0x15, 0x07, 0x04, bytes([0x00])))
    assert event is not None
    assert event.initiator == 0x33


def test_is_arbitration_failed():
    assert is_arbitration_failed(None) is False
    assert is_arbitration_failed(ArbitrationFailedError(ArbitrationFailureReason.ADDRESS_COLLISION)) is True
    assert is_arbitration_failed(BusCollisionError("plain collision")) is False


def test_is_arbitration_failed_follows_cause_chain():
    inner = ArbitrationFailedError(ArbitrationFailureReason.ADDRESS_COLLISION)
    try:
        try:
            raise inner
        except ArbitrationFailedError as exc:
            raise RuntimeError("send failed") from exc
    except RuntimeError as outer:
        assert is_arbitration_failed(outer) is True


def test_observe_rx_event_cannot_alter_stored_event():
    monitor, _ = make_monitor()
    monitor.set_initiator(0x31)
    event = monitor.observe_rx(Frame(0x31, 0x15, 0xB5, 0x24, bytes([0x01, 0x02])))
    assert event is not None

    with pytest.raises(TypeError):
        event.frame.data[0] = 0xAA
    stored = monitor.last_event()
    assert stored is not None
    assert stored.frame.data[0] == 0x01


def test_last_event_snapshot_is_stable():
    monitor, _ = make_monitor()
    monitor.set_initiator(0x31)
    monitor.observe_rx(Frame(0x31, 0x15, 0xB5, 0x24, bytes([0x03, 0x04])))

    first = monitor.last_event()
    assert first is not None
    with pytest.raises(TypeError):
        first.frame.data[0] = 0xBB
    second = monitor.last_event()
    assert second == first
    assert second.frame.data[0] == 0x03


def test_unrelated_source_is_ignored():
    monitor, _ = make_monitor()
    monitor.set_initiator(0x31)
    assert monitor.observe_rx(Frame(0x10, 0x15, 0xB5, 0x24)) is None
    assert monitor.collision_active() is False


def test_no_initiator_never_collides():
    monitor, _ = make_monitor()
    assert monitor.observe_rx(Frame(0x00, 0x15, 0xB5, 0x24)) is None
    assert monitor.last_event() is None


def test_echo_outside_window_is_collision():
    monitor, clock = make_monitor(CollisionMonitorConfig(echo_window=0.2))
    monitor.set_initiator(0x31)
    frame = Frame(0x31, 0x15, 0x07, 0x04, bytes([0x00]))
    monitor.record_tx(frame)

    clock.advance(0.5)
    event = monitor.observe_rx(frame)
    assert event is not None
    assert event.reason == CollisionReason.FOREIGN_SAME_SOURCE


def test_history_capacity_evicts_oldest():
    monitor, _ = make_monitor(CollisionMonitorConfig(history_capacity=2))
    monitor.set_initiator(0x31)
    frames = [Frame(0x31, 0x15, 0x07, 0x04, bytes([value])) for value in (1, 2, 3)]
    for frame in frames:
        monitor.record_tx(frame)

    assert monitor.observe_rx(frames[2]) is None
    assert monitor.observe_rx(frames[1]) is None
    assert monitor.observe_rx(frames[0]) is not None


def test_set_initiator_clears_collision():
    monitor, _ = make_monitor()
    monitor.set_initiator(0x31)
    monitor.observe_rx(Frame(0x31, 0x15, 0xB5, 0x24))
    assert monitor.collision_active() is True

    monitor.set_initiator(0x33)
    assert monitor.collision_active() is False
    assert monitor.last_event() is None
    monitor.record_tx(Frame(0x33, 0x15, 0xB5, 0x24))
    assert monitor.collision_active() is False