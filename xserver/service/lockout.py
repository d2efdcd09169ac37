from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from xserver.logging import get_logger
from xserver.service.clock import Clock, utc_now
from xserver.storage.models import LockoutState

logger = get_logger(__name__)


class LockoutTracker:
    """Counts failed logins per username and computes lockout windows.

    The counter is cleared only by :meth:`reset` (a successful login), never
    by the passage of time. Every failure at or past the threshold re-arms a
    fresh lockout window from that moment.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        lockout: timedelta = timedelta(minutes=15),
        clock: Clock = utc_now,
    ) -> None:
        self.max_attempts = max_attempts
        self.lockout = lockout
        self._clock = clock
        self._states: Dict[str, LockoutState] = {}
        self._state_lock = threading.Lock()

    def state(self, username: str) -> LockoutState:
        with self._state_lock:
            current = self._states.get(username)
            return replace(current) if current else LockoutState()

    def locked_until(self, username: str) -> Optional[datetime]:
        """Return the lockout expiry if the account is locked right now."""
        with self._state_lock:
            current = self._states.get(username)
            if not current or current.locked_until is None:
                return None
            if self._clock() < current.locked_until:
                return current.locked_until
            return None

    def record_failure(self, username: str) -> LockoutState:
        now = self._clock()
        with self._state_lock:
            current = self._states.setdefault(username, LockoutState())
            current.failed_attempts += 1
            if current.failed_attempts >= self.max_attempts:
                current.locked_until = now + self.lockout
            snapshot = replace(current)
        if snapshot.locked_until is not None and snapshot.failed_attempts == self.max_attempts:
            logger.warning(
                "account_locked",
                username=username,
                attempts=snapshot.failed_attempts,
                locked_until=snapshot.locked_until.isoformat(),
            )
        return snapshot

    def reset(self, username: str) -> None:
        with self._state_lock:
            self._states.pop(username, None)

    def prune(self, is_unknown: Callable[[str], bool]) -> int:
        """Drop unlocked entries for usernames that have no account.

        Failures against names that were never registered would otherwise
        accumulate without bound. Entries that are locked right now, or that
        changed while the names were being checked, are kept.
        """
        now = self._clock()
        with self._state_lock:
            candidates = {
                name: state.failed_attempts
                for name, state in self._states.items()
                if state.locked_until is None or now >= state.locked_until
            }
        unknown = [name for name in candidates if is_unknown(name)]
        removed = 0
        with self._state_lock:
            for name in unknown:
                state = self._states.get(name)
                if state is not None and state.failed_attempts == candidates[name]:
                    del self._states[name]
                    removed += 1
        return removed

    def __len__(self) -> int:
        with self._state_lock:
            return len(self._states)
