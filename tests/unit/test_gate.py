"""Unit tests for the clock and boot-delay gate."""
import pytest

from slowboot_app import BootDelayGate, DelayConfig, GateState, ServiceClock


@pytest.mark.unit
class TestServiceClock:
    """Test ServiceClock."""

    def test_start_reads_source_once(self, fake_time):
        clock = ServiceClock.start(source=fake_time)
        assert clock.process_start_ms == fake_time.ms
        assert clock.elapsed_ms() == 0

    def test_elapsed_follows_source(self, fake_time):
        clock = ServiceClock.start(source=fake_time)
        fake_time.advance(seconds=3, ms=250)
        assert clock.elapsed_ms() == 3250

    def test_explicit_now(self, fake_time):
        clock = ServiceClock.start(source=fake_time)
        assert clock.elapsed_ms(clock.process_start_ms + 42) == 42

    def test_elapsed_never_negative(self, fake_time):
        clock = ServiceClock.start(source=fake_time)
        assert clock.elapsed_ms(clock.process_start_ms - 10) == 0

    def test_timestamp_is_utc_iso(self, make_context):
        ctx = make_context()
        assert ctx.clock.timestamp() == "2024-05-01T12:30:45.123Z"

    def test_default_source_is_monotonic(self):
        clock = ServiceClock.start()
        first = clock.now()
        assert clock.now() >= first


@pytest.mark.unit
class TestDelayConfig:
    """Test DelayConfig."""

    def test_grace_ms(self):
        assert DelayConfig(45).grace_ms == 45_000

    def test_zero(self):
        assert DelayConfig(0).grace_ms == 0

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            DelayConfig(-1)


@pytest.mark.unit
class TestBootDelayGate:
    """Test BootDelayGate classification."""

    def _gate(self, fake_time, delay):
        return BootDelayGate(DelayConfig(delay), ServiceClock.start(source=fake_time))

    def test_zero_delay_ready_immediately(self, fake_time):
        gate = self._gate(fake_time, 0)
        assert gate.classify() is GateState.READY
        assert gate.remaining_seconds() == 0

    def test_booting_before_grace(self, fake_time):
        gate = self._gate(fake_time, 2)
        fake_time.advance(ms=1999)
        assert gate.classify() is GateState.BOOTING

    def test_boundary_is_ready(self, fake_time):
        gate = self._gate(fake_time, 2)
        fake_time.advance(ms=2000)
        assert gate.classify() is GateState.READY

    def test_ready_is_sticky(self, fake_time):
        gate = self._gate(fake_time, 2)
        fake_time.advance(seconds=2)
        for _ in range(5):
            assert gate.classify() is GateState.READY
            fake_time.advance(seconds=7)

    def test_remaining_rounds_up(self, fake_time):
        gate = self._gate(fake_time, 2)
        assert gate.remaining_seconds() == 2
        fake_time.advance(ms=1)
        assert gate.remaining_seconds() == 2
        fake_time.advance(ms=1000)
        assert gate.remaining_seconds() == 1
        fake_time.advance(ms=999)
        assert gate.remaining_seconds() == 0

    def test_remaining_clamped_after_grace(self, fake_time):
        gate = self._gate(fake_time, 2)
        fake_time.advance(seconds=30)
        assert gate.remaining_ms() == 0
        assert gate.remaining_seconds() == 0

    def test_elapsed_seconds_floors(self, fake_time):
        gate = self._gate(fake_time, 2)
        fake_time.advance(ms=2999)
        assert gate.elapsed_seconds() == 2

    def test_remaining_positive_while_booting(self, fake_time):
        gate = self._gate(fake_time, 5)
        for step in range(0, 5000, 250):
            now = gate.clock.process_start_ms + step
            assert gate.classify(now) is GateState.BOOTING
            assert gate.remaining_seconds(now) >= 1
