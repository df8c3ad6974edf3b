"""Per-room, per-identity message throttling.

Two independent guards run before any message is created:

    - Slow mode: a minimum interval between consecutive accepted messages
      from the same identity, configured per room (0 disables it).
    - Rate limit: a fixed-window counter (``max_messages`` per
      ``window_seconds``) that applies to every room.

Both checks are synchronous and commit their state in the same call that
decides, so two sends from one identity cannot both pass before either
records itself.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from .errors import ChatError, ErrorCode

logger = logging.getLogger(__name__)

# Defaults matching the shipped configuration
DEFAULT_WINDOW_SECONDS = 5.0
DEFAULT_MAX_MESSAGES = 10


@dataclass
class SlowModeDecision:
    allowed: bool
    wait_ms: int = 0

    def __bool__(self) -> bool:
        return self.allowed


@dataclass
class _Window:
    started_at: float
    count: int


class RateGovernor:
    """Throttling state keyed by ``(room_id, identity)``.

    Args:
        window_seconds: Length of the rate-limit window.
        max_messages: Messages allowed per window.
        clock: Time source returning seconds (injectable for tests).
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_messages = max_messages
        self._clock = clock
        self._last_accepted: Dict[Tuple[str, str], float] = {}
        self._windows: Dict[Tuple[str, str], _Window] = {}

    def check_slow_mode(
        self, room_id: str, identity: str, interval_seconds: int
    ) -> SlowModeDecision:
        """Decide and, when allowed, record the send for slow mode."""
        if interval_seconds <= 0:
            return SlowModeDecision(True)
        key = (room_id, identity)
        now = self._clock()
        last = self._last_accepted.get(key)
        interval_ms = interval_seconds * 1000
        if last is not None:
            elapsed_ms = (now - last) * 1000
            if elapsed_ms < interval_ms:
                return SlowModeDecision(False, int(interval_ms - elapsed_ms) or 1)
        self._last_accepted[key] = now
        return SlowModeDecision(True)

    def check_rate_limit(self, room_id: str, identity: str) -> bool:
        key = (room_id, identity)
        now = self._clock()
        window = self._windows.get(key)
        if window is None or now - window.started_at >= self.window_seconds:
            self._windows[key] = _Window(started_at=now, count=1)
            return True
        window.count += 1
        return window.count <= self.max_messages

    def retry_after_ms(self, room_id: str, identity: str) -> int:
        window = self._windows.get((room_id, identity))
        if window is None:
            return 0
        remaining = window.started_at + self.window_seconds - self._clock()
        return max(0, int(remaining * 1000))

    def admit(self, room_id: str, identity: str, slow_mode_seconds: int) -> None:
        """Run both guards for a new message.

        Raises:
            ChatError: RATE_LIMIT (with ``retryAfterMs``) or SLOW_MODE
                (with ``waitMs``).
        """
        if not self.check_rate_limit(room_id, identity):
            logger.info(f"[Governor] Rate limit hit by {identity} in {room_id}")
            raise ChatError(
                ErrorCode.RATE_LIMIT,
                retryAfterMs=self.retry_after_ms(room_id, identity),
            )
        decision = self.check_slow_mode(room_id, identity, slow_mode_seconds)
        if not decision:
            raise ChatError(
                ErrorCode.SLOW_MODE,
                waitMs=decision.wait_ms,
                seconds=slow_mode_seconds,
            )
