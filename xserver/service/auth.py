from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from xserver.config import Settings
from xserver.logging import get_logger
from xserver.service.clock import Clock, utc_now
from xserver.service.errors import (
    AccountLockedError,
    EmailTakenError,
    InvalidCredentialsError,
    NotFoundError,
    TokenError,
    TwoFactorError,
    UsernameTakenError,
    ValidationError,
)
from xserver.service.locks import KeyedLocks
from xserver.service.lockout import LockoutTracker
from xserver.service.sessions import SessionRegistry
from xserver.service.tokens import TokenIssuer
from xserver.service.two_factor import TwoFactorManager
from xserver.storage.errors import ConstraintViolation
from xserver.storage.models import DeviceInfo, DeviceSession, LoginResult, TokenPair, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        phone: Optional[str] = None,
        password_algo: str = "argon2id",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def set_two_factor(
        self, user_id: str, *, enabled: bool, secret: Optional[str] = None
    ) -> User: ...

    def get_two_factor_secret(self, user_id: str) -> Optional[str]: ...


class TwoFactorNotifier(Protocol):
    def send_two_factor_code(self, to_email: str, code: str, ttl_minutes: int) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    username: str
    session_id: Optional[str] = None
    access_token: Optional[str] = field(default=None, repr=False)


class AuthService:
    """Registration, login, two-factor challenge/response and token lifecycle.

    All per-username state (lockout counter, token records, device sessions,
    pending challenge) is mutated while holding that username's lock from a
    :class:`KeyedLocks` table, so operations for one user are serialized and
    different users never wait on each other.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        notifier: Optional[TwoFactorNotifier] = None,
        clock: Optional[Clock] = None,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self._clock: Clock = clock or utc_now
        self._locks = KeyedLocks()
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # Verified against when the username is unknown so both paths cost a hash
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.lockout = LockoutTracker(
            max_attempts=settings.max_failed_login_attempts,
            lockout=timedelta(minutes=settings.lockout_minutes),
            clock=self._clock,
        )
        self.two_factor = TwoFactorManager(
            code_ttl=timedelta(minutes=settings.two_factor_code_ttl_minutes),
            max_attempts=settings.two_factor_max_attempts,
            clock=self._clock,
        )
        self.tokens = TokenIssuer(
            settings.jwt_secret or "",
            issuer=settings.jwt_issuer,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            remember_me_refresh_ttl=timedelta(
                minutes=settings.remember_me_refresh_ttl_minutes
            ),
            clock=self._clock,
        )
        self.sessions = SessionRegistry(clock=self._clock)
        self.logger = logger

    def _now(self):
        return self._clock()

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def _check_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_password(self, user: User, password: str) -> bool:
        if user.password_algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=user.password_algo)
            return False
        return self._check_hash(user.password_hash, password)

    # -- registration ------------------------------------------------------

    def register(
        self,
        username: str,
        password: str,
        email: str,
        phone: Optional[str] = None,
    ) -> User:
        for name, value in (("Username", username), ("Password", password), ("Email", email)):
            if not value:
                raise ValidationError(f"{name} is required", detail={"field": name.lower()})
        pwd_hash, algo = self._hash_password(password)
        # Uniqueness is checked and claimed atomically inside the store
        try:
            user = self.store.create_user(
                username, email, pwd_hash, phone=phone, password_algo=algo
            )
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", username=username, field=exc.field)
            if exc.field == "email":
                raise EmailTakenError() from exc
            raise UsernameTakenError() from exc
        self.logger.info("user_registered", user_id=user.id, username=username)
        return user

    # -- login -------------------------------------------------------------

    def _record_failure(self, username: str) -> None:
        state = self.lockout.record_failure(username)
        self.logger.warning(
            "login_failed",
            username=username,
            attempts=state.failed_attempts,
            locked=state.locked_until is not None,
        )

    def _reject_if_locked(self, username: str) -> None:
        locked_until = self.lockout.locked_until(username)
        if locked_until is not None:
            self.logger.warning(
                "login_rejected_locked",
                username=username,
                locked_until=locked_until.isoformat(),
            )
            raise AccountLockedError(locked_until, self._now())

    def login(
        self,
        username: str,
        password: str,
        *,
        device: Optional[DeviceInfo] = None,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        """Check credentials and either issue tokens or start a two-factor challenge.

        Raises:
            AccountLockedError: if the username is currently locked out.
            InvalidCredentialsError: for an unknown user or a wrong password.
        """
        self._reject_if_locked(username)

        # The hash check runs outside the per-user lock; the lockout is
        # re-checked under the lock before any state changes.
        user = self.store.get_user_by_username(username)
        if user is None or not user.is_active:
            self._check_hash(self._dummy_hash, password)
            valid = False
        else:
            valid = self.verify_password(user, password)

        with self._locks.hold(username):
            self._reject_if_locked(username)
            if not valid or user is None:
                self._record_failure(username)
                raise InvalidCredentialsError()

            self.lockout.reset(username)
            if user.two_factor_enabled:
                return self._start_two_factor(user)
            return self._complete_login(
                user, device=device, remember_me=remember_me, ip_address=ip_address
            )

    def _start_two_factor(self, user: User) -> LoginResult:
        secret = self.store.get_two_factor_secret(user.id)
        challenge, code = self.two_factor.issue(user.username, secret)
        if self.notifier is not None:
            delivered = self.notifier.send_two_factor_code(
                user.email, code, self.settings.two_factor_code_ttl_minutes
            )
            if not delivered:
                self.logger.warning("two_factor_dispatch_failed", user_id=user.id)
        else:
            self.logger.warning("two_factor_notifier_missing", user_id=user.id)
        return LoginResult(
            user=user, two_factor_required=True, two_factor_token=challenge.token
        )

    def _complete_login(
        self,
        user: User,
        *,
        device: Optional[DeviceInfo],
        remember_me: bool,
        ip_address: Optional[str],
    ) -> LoginResult:
        session: Optional[DeviceSession] = None
        if device is not None:
            session = self.sessions.open(user.username, device, ip_address=ip_address)
        tokens = self.tokens.issue(
            user.username,
            remember_me=remember_me,
            session_id=session.id if session else None,
        )
        active = self.sessions.list_active(
            user.username, current_session_id=session.id if session else None
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.id if session else None,
            active_sessions=len(active),
        )
        return LoginResult(user=user, tokens=tokens, sessions=active)

    def verify_two_factor(
        self,
        challenge_token: str,
        code: str,
        *,
        device: Optional[DeviceInfo] = None,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        username = self.two_factor.owner(challenge_token)
        if username is None:
            raise TwoFactorError()
        with self._locks.hold(username):
            user = self.store.get_user_by_username(username)
            secret = self.store.get_two_factor_secret(user.id) if user else None
            self.two_factor.verify(challenge_token, code, secret)
            if user is None or not user.is_active:
                raise TwoFactorError()
            return self._complete_login(
                user, device=device, remember_me=remember_me, ip_address=ip_address
            )

    # -- tokens ------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        username = self.tokens.refresh_owner(refresh_token)
        if username is None:
            raise TokenError("Invalid refresh token")
        with self._locks.hold(username):
            pair = self.tokens.refresh(refresh_token)
            if pair.session_id:
                self.sessions.touch(pair.session_id)
            return pair

    def validate_access_token(self, access_token: str) -> bool:
        return self.tokens.validate(access_token)

    def get_user_by_access_token(self, access_token: str) -> Optional[User]:
        record = self.tokens.resolve(access_token)
        if record is None:
            return None
        return self.store.get_user_by_username(record.username)

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, value = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization: Bearer`` header to the calling user."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        record = self.tokens.resolve(token)
        if record is None:
            return None
        user = self.store.get_user_by_username(record.username)
        if user is None or not user.is_active:
            return None
        if record.session_id:
            self.sessions.touch(record.session_id)
        return AuthContext(
            user_id=user.id,
            username=user.username,
            session_id=record.session_id,
            access_token=token,
        )

    # -- sessions ----------------------------------------------------------

    def list_sessions(
        self, username: str, current_session_id: Optional[str] = None
    ) -> List[DeviceSession]:
        return self.sessions.list_active(username, current_session_id=current_session_id)

    def revoke_session(self, username: str, session_id: str) -> None:
        with self._locks.hold(username):
            if not self.sessions.revoke(username, session_id):
                raise NotFoundError("Session not found")
            revoked = self.tokens.revoke_session(session_id)
        self.logger.info(
            "session_revoked", username=username, session_id=session_id, tokens=revoked
        )

    def revoke_all_sessions(self, username: str) -> int:
        """Drop every session and token of a user, plus any pending challenge."""
        with self._locks.hold(username):
            session_ids = self.sessions.revoke_all(username)
            revoked = self.tokens.revoke_user(username)
            self.two_factor.discard_for(username)
        self.logger.info(
            "all_sessions_revoked", username=username, sessions=len(session_ids), tokens=revoked
        )
        return len(session_ids)

    def logout(self, ctx: AuthContext) -> None:
        if ctx.session_id:
            self.revoke_session(ctx.username, ctx.session_id)
        elif ctx.access_token:
            self.tokens.revoke_access(ctx.access_token)
            self.logger.info("access_token_revoked", username=ctx.username)

    def prune_idle_sessions(self, max_idle: Optional[timedelta] = None) -> int:
        idle = max_idle or timedelta(minutes=self.settings.session_idle_timeout_minutes)
        pruned = self.sessions.prune_idle(idle)
        for session in pruned:
            self.tokens.revoke_session(session.id)
        return len(pruned)

    def cleanup_expired_states(self) -> Dict[str, int]:
        return {
            "tokens": self.tokens.purge_expired(),
            "two_factor_challenges": self.two_factor.purge_expired(),
            "lockout_states": self.lockout.prune(
                lambda name: self.store.get_user_by_username(name) is None
            ),
        }

    # -- account -----------------------------------------------------------

    def set_two_factor(self, username: str, enabled: bool) -> User:
        with self._locks.hold(username):
            user = self.store.get_user_by_username(username)
            if user is None:
                raise NotFoundError("User not found")
            current = self.store.get_two_factor_secret(user.id)
            if enabled and user.two_factor_enabled and current:
                # Pending challenge digests are keyed by the current secret
                secret: Optional[str] = current
            else:
                secret = secrets.token_hex(20) if enabled else None
                self.two_factor.discard_for(username)
            user = self.store.set_two_factor(user.id, enabled=enabled, secret=secret)
        self.logger.info("two_factor_updated", user_id=user.id, enabled=enabled)
        send_status = getattr(self.notifier, "send_two_factor_status", None)
        if send_status is not None:
            send_status(user.email, enabled)
        return user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)
