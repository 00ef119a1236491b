"""
Tests for the clock synchronization handshake.
"""

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock

from ledger_sync.clock import ClockSynchronizer, corrected_time, server_time_offset
from ledger_sync.errors import ClockUnstableError
from ledger_sync.values import ms_between


CLIENT_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def fake_server(skew_ms):
    """Probe answering like a server whose clock runs skew_ms ahead."""
    server_now = CLIENT_NOW + timedelta(milliseconds=skew_ms)
    return MagicMock(side_effect=lambda start: ms_between(server_now, start))


class TestServerHalf:
    """Tests for the server side of the handshake."""

    def test_offset_from_iso_string(self):
        """The server answers server_now - start."""
        start = "2024-05-01T11:59:58.500Z"
        assert server_time_offset(start, lambda: CLIENT_NOW) == 1500

    def test_offset_is_signed(self):
        """A start in the server's future gives a negative answer."""
        start = CLIENT_NOW + timedelta(seconds=2)
        assert server_time_offset(start, lambda: CLIENT_NOW) == -2000

    def test_corrected_time(self):
        """The lapse is added to the client timestamp."""
        assert corrected_time(CLIENT_NOW, 250) == CLIENT_NOW + timedelta(milliseconds=250)
        assert corrected_time(CLIENT_NOW, 0) == CLIENT_NOW


class TestClockSynchronizer:
    """Tests for the client side of the handshake."""

    def test_synchronized_clocks(self):
        """In-sync clocks converge on the first probe with a zero lapse."""
        probe = fake_server(0)
        sync = ClockSynchronizer(probe, now=lambda: CLIENT_NOW)
        assert sync.compute_lapse() == 0
        assert probe.call_count == 1

    def test_skewed_clock_converges(self):
        """A skewed client learns the skew on the second probe."""
        probe = fake_server(7200000)
        sync = ClockSynchronizer(probe, now=lambda: CLIENT_NOW)
        assert sync.compute_lapse() == 7200000
        assert probe.call_count == 2
        # second probe already carries the correction
        assert probe.call_args_list[1][0][0] == CLIENT_NOW + timedelta(hours=2)

    def test_negative_skew(self):
        """A client running ahead gets a negative lapse."""
        sync = ClockSynchronizer(fake_server(-90000), now=lambda: CLIENT_NOW)
        assert sync.compute_lapse() == -90000

    def test_reply_sequence_is_deterministic(self):
        """The lapse is the sum of the non-converged replies."""
        probe = MagicMock(side_effect=[3000, -800, 100])
        sync = ClockSynchronizer(probe, now=lambda: CLIENT_NOW)
        assert sync.compute_lapse() == 2200
        assert probe.call_count == 3

    def test_tolerance_is_exclusive(self):
        """A reply of exactly the tolerance is not accepted."""
        probe = MagicMock(side_effect=[500, 499])
        sync = ClockSynchronizer(probe, now=lambda: CLIENT_NOW)
        assert sync.compute_lapse() == 500
        assert probe.call_count == 2

    def test_unstable_after_ten_probes(self):
        """A reply that never shrinks fails after exactly ten probes."""
        probe = MagicMock(return_value=1000)
        sync = ClockSynchronizer(probe, now=lambda: CLIENT_NOW)
        with pytest.raises(ClockUnstableError) as exc_info:
            sync.compute_lapse()
        assert probe.call_count == 10
        assert exc_info.value.attempts == 10
        assert "unstable" in str(exc_info.value)

    def test_custom_limits(self):
        """Tolerance and attempts are configurable."""
        probe = MagicMock(return_value=100)
        sync = ClockSynchronizer(probe, tolerance_ms=50, max_attempts=3, now=lambda: CLIENT_NOW)
        with pytest.raises(ClockUnstableError):
            sync.compute_lapse()
        assert probe.call_count == 3

    def test_probe_failure_propagates(self):
        """Transport failures are not swallowed."""
        probe = MagicMock(side_effect=ConnectionError("down"))
        sync = ClockSynchronizer(probe, now=lambda: CLIENT_NOW)
        with pytest.raises(ConnectionError):
            sync.compute_lapse()
