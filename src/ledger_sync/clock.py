"""
Clock synchronization for sync ordering.

Offline devices have unsynchronized clocks. Before pushing changes the
client estimates the "lapse", the correction to add to its own clock to
approximate server time, with a short handshake:

1. the client sends start = client_now + lapse (lapse starts at 0)
2. the server answers server_now - start in milliseconds
3. if the answer is below the tolerance the current lapse is accepted,
   otherwise lapse += answer and the handshake is retried

The tolerance is coarse on purpose: it only has to tell which of two
offline users edited first, to within about a second.
"""

import logging
from datetime import datetime
from typing import Any, Callable

from .errors import ClockUnstableError, TransportError
from .values import ms_between, shift_ms, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_MS = 500
DEFAULT_MAX_ATTEMPTS = 10

Probe = Callable[[datetime], int]


def server_time_offset(start: Any, now: Callable[[], datetime] = utcnow) -> int:
    """
    Server half of the handshake.

    Args:
        start: the client's estimate of server time (datetime or ISO string)
        now: source of server time

    Returns:
        server_now - start in whole milliseconds
    """
    return ms_between(now(), start)


def corrected_time(client_time: Any, lapse_ms: int) -> datetime:
    """Translate a client-clock timestamp into server-time terms."""
    return shift_ms(client_time, lapse_ms or 0)


class ClockSynchronizer:
    """
    Client half of the handshake.

    The probe sends a timestamp to the server and returns its signed
    millisecond answer; it is usually Transport.sync_get_time.
    """

    def __init__(
        self,
        probe: Probe,
        tolerance_ms: int = DEFAULT_TOLERANCE_MS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now: Callable[[], datetime] = utcnow,
    ):
        self.probe = probe
        self.tolerance_ms = tolerance_ms
        self.max_attempts = max_attempts
        self.now = now

    def compute_lapse(self) -> int:
        """
        Run the handshake.

        Returns:
            The lapse in milliseconds to add to the client clock

        Raises:
            ClockUnstableError: if no answer falls within the tolerance
                after max_attempts probes
            TransportError: if a probe fails
        """
        lapse = 0
        for attempt in range(1, self.max_attempts + 1):
            start = shift_ms(self.now(), lapse)
            reply = self.probe(start)
            if isinstance(reply, bool) or not isinstance(reply, int):
                raise TransportError(f"Malformed clock reply: {reply!r}")
            logger.debug("Clock probe %d: lapse=%dms reply=%dms", attempt, lapse, reply)
            if abs(reply) < self.tolerance_ms:
                return lapse
            lapse += reply

        raise ClockUnstableError(self.max_attempts)
