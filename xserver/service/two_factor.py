from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
from datetime import timedelta
from typing import Dict, Optional, Tuple

from xserver.logging import get_logger
from xserver.service.clock import Clock, utc_now
from xserver.service.errors import TwoFactorError
from xserver.storage.models import TwoFactorChallenge

logger = get_logger(__name__)

CODE_DIGITS = 6


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class TwoFactorManager:
    """Issues and validates short-lived verification codes bound to one-time tokens.

    A username has at most one pending challenge; issuing another invalidates
    the previous token. Codes are never held in plaintext, only as an HMAC
    digest keyed by the user's two-factor secret.
    """

    def __init__(
        self,
        *,
        code_ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 5,
        clock: Clock = utc_now,
    ) -> None:
        self.code_ttl = code_ttl
        self.max_attempts = max_attempts
        self._clock = clock
        self._pepper = secrets.token_bytes(32)
        self._challenges: Dict[str, TwoFactorChallenge] = {}
        self._by_user: Dict[str, str] = {}
        self._state_lock = threading.Lock()

    def _digest(self, secret: Optional[str], token: str, code: str) -> str:
        key = self._pepper + (secret or "").encode()
        return hmac.new(key, f"{token}:{code}".encode(), hashlib.sha256).hexdigest()

    def issue(
        self, username: str, secret: Optional[str] = None
    ) -> Tuple[TwoFactorChallenge, str]:
        """Create a challenge and return it with the plaintext code to dispatch."""
        code = generate_code()
        token = secrets.token_urlsafe(32)
        challenge = TwoFactorChallenge(
            token=token,
            username=username,
            code_digest=self._digest(secret, token, code),
            expires_at=self._clock() + self.code_ttl,
        )
        with self._state_lock:
            previous = self._by_user.get(username)
            if previous:
                self._challenges.pop(previous, None)
            self._challenges[token] = challenge
            self._by_user[username] = token
        logger.info(
            "two_factor_challenge_issued",
            username=username,
            expires_at=challenge.expires_at.isoformat(),
        )
        return challenge, code

    def owner(self, token: str) -> Optional[str]:
        with self._state_lock:
            challenge = self._challenges.get(token)
            return challenge.username if challenge else None

    def _discard(self, challenge: TwoFactorChallenge) -> None:
        self._challenges.pop(challenge.token, None)
        if self._by_user.get(challenge.username) == challenge.token:
            self._by_user.pop(challenge.username, None)

    def verify(self, token: str, code: str, secret: Optional[str] = None) -> str:
        """Consume the challenge and return its username, or raise TwoFactorError."""
        now = self._clock()
        with self._state_lock:
            challenge = self._challenges.get(token)
            if challenge is None:
                raise TwoFactorError()
            if challenge.is_expired(now):
                self._discard(challenge)
                logger.info("two_factor_challenge_expired", username=challenge.username)
                raise TwoFactorError("Verification code has expired")
            expected = challenge.code_digest
            supplied = self._digest(secret, token, (code or "").strip())
            if not hmac.compare_digest(expected, supplied):
                challenge.attempts += 1
                exhausted = challenge.attempts >= self.max_attempts
                if exhausted:
                    self._discard(challenge)
                logger.warning(
                    "two_factor_code_mismatch",
                    username=challenge.username,
                    attempts=challenge.attempts,
                    discarded=exhausted,
                )
                raise TwoFactorError()
            self._discard(challenge)
        return challenge.username

    def discard_for(self, username: str) -> None:
        with self._state_lock:
            token = self._by_user.pop(username, None)
            if token:
                self._challenges.pop(token, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._state_lock:
            expired = [c for c in self._challenges.values() if c.is_expired(now)]
            for challenge in expired:
                self._discard(challenge)
        return len(expired)

    def __len__(self) -> int:
        with self._state_lock:
            return len(self._challenges)
