from __future__ import annotations

import threading
from dataclasses import replace
from datetime import timedelta
from typing import Dict, List, Optional

from xserver.logging import get_logger
from xserver.service.clock import Clock, utc_now
from xserver.storage.models import DeviceInfo, DeviceSession

logger = get_logger(__name__)


class SessionRegistry:
    """Tracks active device sessions per username."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._by_user: Dict[str, Dict[str, DeviceSession]] = {}
        self._owners: Dict[str, str] = {}
        self._state_lock = threading.Lock()

    def open(
        self,
        username: str,
        device: DeviceInfo,
        *,
        ip_address: Optional[str] = None,
    ) -> DeviceSession:
        session = DeviceSession.new(username, device, self._clock(), ip_address=ip_address)
        with self._state_lock:
            self._by_user.setdefault(username, {})[session.id] = session
            self._owners[session.id] = username
        logger.info(
            "device_session_opened",
            username=username,
            session_id=session.id,
            device_type=device.device_type,
        )
        return session

    def get(self, session_id: str) -> Optional[DeviceSession]:
        with self._state_lock:
            owner = self._owners.get(session_id)
            if owner is None:
                return None
            return self._by_user.get(owner, {}).get(session_id)

    def list_active(
        self, username: str, current_session_id: Optional[str] = None
    ) -> List[DeviceSession]:
        """Snapshot of a user's sessions, newest login first.

        ``current_device`` is set on the copy matching ``current_session_id``.
        """
        with self._state_lock:
            sessions = list(self._by_user.get(username, {}).values())
        return [
            replace(s, current_device=s.id == current_session_id)
            for s in sorted(sessions, key=lambda s: s.login_time, reverse=True)
        ]

    def touch(self, session_id: str) -> bool:
        now = self._clock()
        with self._state_lock:
            owner = self._owners.get(session_id)
            session = self._by_user.get(owner, {}).get(session_id) if owner else None
            if session is None:
                return False
            if now > session.last_activity:
                session.last_activity = now
            return True

    def revoke(self, username: str, session_id: str) -> bool:
        """Remove one session. Returns False if it is unknown or owned by another user."""
        with self._state_lock:
            if self._owners.get(session_id) != username:
                return False
            self._owners.pop(session_id, None)
            sessions = self._by_user.get(username, {})
            sessions.pop(session_id, None)
            if not sessions:
                self._by_user.pop(username, None)
        logger.info("device_session_revoked", username=username, session_id=session_id)
        return True

    def revoke_all(self, username: str) -> List[str]:
        with self._state_lock:
            sessions = self._by_user.pop(username, {})
            for session_id in sessions:
                self._owners.pop(session_id, None)
        if sessions:
            logger.info("device_sessions_revoked", username=username, count=len(sessions))
        return list(sessions)

    def prune_idle(self, max_idle: timedelta) -> List[DeviceSession]:
        """Drop sessions whose last activity is older than ``max_idle``."""
        cutoff = self._clock() - max_idle
        pruned: List[DeviceSession] = []
        with self._state_lock:
            for username in list(self._by_user):
                sessions = self._by_user[username]
                for session_id, session in list(sessions.items()):
                    if session.last_activity < cutoff:
                        pruned.append(sessions.pop(session_id))
                        self._owners.pop(session_id, None)
                if not sessions:
                    del self._by_user[username]
        if pruned:
            logger.info("device_sessions_pruned", count=len(pruned))
        return pruned

    def __len__(self) -> int:
        with self._state_lock:
            return len(self._owners)
