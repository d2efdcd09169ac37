from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from xserver.logging import get_logger
from xserver.service.clock import Clock, utc_now
from xserver.service.errors import TokenError, TokenExpiredError
from xserver.storage.models import TokenPair, TokenRecord

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenIssuer:
    """Mints HS256-signed bearer tokens and tracks their server-side records.

    A signature alone is not sufficient: a token is only honoured while its
    record exists and the injected clock says it has not expired. This is what
    makes revocation and refresh-token purging possible.

    Each username holds one active refresh token; a fresh :meth:`issue`
    replaces it. Access tokens are never overwritten, so several may be valid
    for the same user at once.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "xserver",
        access_ttl: timedelta = timedelta(minutes=30),
        refresh_ttl: timedelta = timedelta(days=30),
        remember_me_refresh_ttl: timedelta = timedelta(days=30),
        clock: Clock = utc_now,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.remember_me_refresh_ttl = remember_me_refresh_ttl
        self._clock = clock
        self._access: Dict[str, TokenRecord] = {}
        self._refresh: Dict[str, TokenRecord] = {}
        self._refresh_by_user: Dict[str, str] = {}
        self._state_lock = threading.Lock()

    # -- signing -----------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Verify signature, algorithm and issuer. Expiry is judged from the record."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # Reject anything but HS256 to prevent algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogateescape")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.issuer:
            return None
        return payload

    def _mint(
        self, username: str, token_type: str, ttl: timedelta, session_id: Optional[str]
    ) -> TokenRecord:
        now = self._clock()
        expires_at = now + ttl
        payload = {
            "iss": self.issuer,
            "sub": username,
            "sid": session_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return TokenRecord(
            token=self._encode_jwt(payload),
            username=username,
            token_type=token_type,
            issued_at=now,
            expires_at=expires_at,
            session_id=session_id,
        )

    # -- issuance ----------------------------------------------------------

    def issue(
        self,
        username: str,
        *,
        remember_me: bool = False,
        session_id: Optional[str] = None,
    ) -> TokenPair:
        refresh_ttl = self.remember_me_refresh_ttl if remember_me else self.refresh_ttl
        access = self._mint(username, ACCESS, self.access_ttl, session_id)
        refresh = self._mint(username, REFRESH, refresh_ttl, session_id)
        with self._state_lock:
            self._access[access.token] = access
            previous = self._refresh_by_user.get(username)
            if previous:
                self._refresh.pop(previous, None)
            self._refresh[refresh.token] = refresh
            self._refresh_by_user[username] = refresh.token
        logger.info(
            "tokens_issued",
            username=username,
            session_id=session_id,
            remember_me=remember_me,
        )
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
            session_id=session_id,
        )

    def refresh_owner(self, refresh_token: str) -> Optional[str]:
        """Username a refresh token was issued to, if it is currently on record."""
        with self._state_lock:
            record = self._refresh.get(refresh_token)
            return record.username if record else None

    def refresh(self, refresh_token: str) -> TokenPair:
        """Mint a new access token; the refresh token itself is returned unchanged."""
        payload = self._decode_jwt(refresh_token)
        if not payload or payload.get("token_type") != REFRESH:
            raise TokenError("Invalid refresh token")
        now = self._clock()
        with self._state_lock:
            record = self._refresh.get(refresh_token)
            if record is None:
                raise TokenError("Invalid refresh token")
            if record.is_expired(now):
                self._drop_refresh(record)
                logger.info("refresh_token_expired", username=record.username)
                raise TokenExpiredError("Refresh token has expired")
        access = self._mint(record.username, ACCESS, self.access_ttl, record.session_id)
        with self._state_lock:
            self._access[access.token] = access
        logger.info("access_token_refreshed", username=record.username, session_id=record.session_id)
        return TokenPair(
            access_token=access.token,
            refresh_token=record.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=record.expires_at,
            session_id=record.session_id,
        )

    # -- validation --------------------------------------------------------

    def resolve(self, access_token: str) -> Optional[TokenRecord]:
        """Return the record for a signed, known and unexpired access token."""
        payload = self._decode_jwt(access_token)
        if not payload or payload.get("token_type") != ACCESS:
            return None
        now = self._clock()
        with self._state_lock:
            record = self._access.get(access_token)
            if record is None:
                return None
            if record.is_expired(now):
                self._access.pop(access_token, None)
                return None
            return record

    def validate(self, access_token: str) -> bool:
        return self.resolve(access_token) is not None

    # -- revocation --------------------------------------------------------

    def _drop_refresh(self, record: TokenRecord) -> None:
        self._refresh.pop(record.token, None)
        if self._refresh_by_user.get(record.username) == record.token:
            self._refresh_by_user.pop(record.username, None)

    def revoke_access(self, access_token: str) -> bool:
        with self._state_lock:
            return self._access.pop(access_token, None) is not None

    def revoke_session(self, session_id: str) -> int:
        """Drop every token bound to a device session."""
        with self._state_lock:
            access = [t for t, r in self._access.items() if r.session_id == session_id]
            for token in access:
                del self._access[token]
            refresh = [r for r in self._refresh.values() if r.session_id == session_id]
            for record in refresh:
                self._drop_refresh(record)
        return len(access) + len(refresh)

    def revoke_user(self, username: str) -> int:
        with self._state_lock:
            access = [t for t, r in self._access.items() if r.username == username]
            for token in access:
                del self._access[token]
            refresh = [r for r in self._refresh.values() if r.username == username]
            for record in refresh:
                self._drop_refresh(record)
        return len(access) + len(refresh)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._state_lock:
            access = [t for t, r in self._access.items() if r.is_expired(now)]
            for token in access:
                del self._access[token]
            refresh = [r for r in self._refresh.values() if r.is_expired(now)]
            for record in refresh:
                self._drop_refresh(record)
        return len(access) + len(refresh)

    def active_access_tokens(self, username: str) -> int:
        now = self._clock()
        with self._state_lock:
            return sum(
                1
                for r in self._access.values()
                if r.username == username and not r.is_expired(now)
            )
