"""
Gate liveness tracking from heartbeat messages.
"""
import logging
import time
from datetime import datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_TIMEOUT = 120.0


class LivenessMonitor:
    """
    Derives an online/offline verdict for the gate.

    Freshness is measured with the local clock at receive time; the device's
    own timestamp is kept for display only, because its clock is not trusted
    for ordering. Callers poll `evaluate()` on a fixed interval, and every
    heartbeat re-evaluates immediately.
    """

    def __init__(self,
                 timeout: float = DEFAULT_HEARTBEAT_TIMEOUT,
                 clock: Callable[[], float] = time.monotonic,
                 on_change: Optional[Callable[[bool], None]] = None):
        self.timeout = timeout
        self._clock = clock
        self._on_change = on_change
        self.last_seen: Optional[float] = None
        self.last_remote_timestamp: Optional[datetime] = None
        self._online = False

    @property
    def online(self) -> bool:
        """Verdict as of the last evaluation."""
        return self._online

    def is_online(self, now: Optional[float] = None) -> bool:
        if self.last_seen is None:
            return False
        now = self._clock() if now is None else now
        return now - self.last_seen < self.timeout

    def record_heartbeat(self, remote_timestamp: Optional[datetime] = None) -> bool:
        self.last_seen = self._clock()
        self.last_remote_timestamp = remote_timestamp
        return self.evaluate()

    def evaluate(self) -> bool:
        online = self.is_online()
        if online != self._online:
            self._online = online
            logger.info(f"Gate is now {'online' if online else 'offline'}")
            if self._on_change:
                self._on_change(online)
        return online

    def reset(self):
        """Back to 'never seen'."""
        self.last_seen = None
        self.last_remote_timestamp = None
        self.evaluate()
