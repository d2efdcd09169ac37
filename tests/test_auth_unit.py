"""Unit tests for the auth service.

Tests for:
- Registration and uniqueness of usernames/emails
- Password login and indistinguishable credential failures
- Lockout after repeated failures
- Two-factor challenge/response
- Access/refresh token lifecycle
- Device session revocation
"""

from datetime import timedelta

import pytest

from xserver.config import Settings
from xserver.service.auth import AuthService
from xserver.service.errors import (
    AccountLockedError,
    EmailTakenError,
    InvalidCredentialsError,
    NotFoundError,
    TokenError,
    TokenExpiredError,
    TwoFactorError,
    UsernameTakenError,
    ValidationError,
)
from xserver.storage.memory import MemoryStore
from xserver.storage.models import DeviceInfo

PASSWORD = "TestPassword123!"


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=30,
        refresh_token_ttl_minutes=60,
        remember_me_refresh_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path), secret_key="store-key")


@pytest.fixture
def auth_service(memory_store, settings, fake_clock, notifier, fast_hasher):
    """Create auth service for testing."""
    return AuthService(
        memory_store,
        settings,
        notifier=notifier,
        clock=fake_clock,
        password_hasher=fast_hasher,
    )


@pytest.fixture
def test_user(auth_service):
    return auth_service.register("alice", PASSWORD, "alice@example.com")


def _device(name="Pixel"):
    return DeviceInfo(device_id=f"{name}-id", device_name=name, device_type="ANDROID")


class TestRegistration:
    """Tests for account creation."""

    def test_register_hashes_password(self, auth_service, test_user):
        """Stored hash is argon2id and not the plaintext."""
        assert test_user.password_hash != PASSWORD
        assert test_user.password_hash.startswith("$argon2id$")
        assert test_user.password_algo == "argon2id"

    def test_duplicate_username_rejected(self, auth_service, test_user):
        with pytest.raises(UsernameTakenError) as exc:
            auth_service.register("alice", PASSWORD, "other@example.com")
        assert exc.value.message == "Username already exists"

    def test_duplicate_email_rejected(self, auth_service, test_user):
        with pytest.raises(EmailTakenError) as exc:
            auth_service.register("bob", PASSWORD, "alice@example.com")
        assert exc.value.message == "Email already exists"

    def test_username_checked_before_email(self, auth_service, test_user):
        """When both collide the username conflict is reported."""
        with pytest.raises(UsernameTakenError):
            auth_service.register("alice", PASSWORD, "alice@example.com")

    @pytest.mark.parametrize(
        "username,password,email,message",
        [
            ("", PASSWORD, "a@example.com", "Username is required"),
            ("carol", "", "a@example.com", "Password is required"),
            ("carol", PASSWORD, "", "Email is required"),
        ],
    )
    def test_missing_field(self, auth_service, username, password, email, message):
        with pytest.raises(ValidationError) as exc:
            auth_service.register(username, password, email)
        assert exc.value.message == message


class TestPasswordLogin:
    """Tests for primary credential login."""

    def test_login_issues_tokens(self, auth_service, test_user):
        result = auth_service.login("alice", PASSWORD)

        assert result.two_factor_required is False
        assert result.tokens is not None
        assert result.tokens.token_type == "Bearer"
        assert auth_service.validate_access_token(result.tokens.access_token)
        assert auth_service.get_user_by_access_token(result.tokens.access_token).id == test_user.id

    def test_login_with_device_opens_session(self, auth_service, test_user):
        result = auth_service.login("alice", PASSWORD, device=_device(), ip_address="10.0.0.1")

        assert result.tokens.session_id is not None
        assert len(result.sessions) == 1
        session = result.sessions[0]
        assert session.id == result.tokens.session_id
        assert session.current_device is True
        assert session.ip_address == "10.0.0.1"

    def test_unknown_user_and_wrong_password_look_the_same(self, auth_service, test_user):
        """Both failures raise the same error type and message."""
        with pytest.raises(InvalidCredentialsError) as unknown:
            auth_service.login("nobody", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            auth_service.login("alice", "wrong-password")

        assert unknown.value.message == wrong.value.message == "Invalid username or password"
        assert unknown.value.status_code == wrong.value.status_code == 400

    def test_multiple_access_tokens_stay_valid(self, auth_service, test_user):
        """A new login does not invalidate access tokens from earlier logins."""
        first = auth_service.login("alice", PASSWORD, device=_device("phone"))
        second = auth_service.login("alice", PASSWORD, device=_device("laptop"))

        assert first.tokens.access_token != second.tokens.access_token
        assert auth_service.validate_access_token(first.tokens.access_token)
        assert auth_service.validate_access_token(second.tokens.access_token)
        assert auth_service.tokens.active_access_tokens("alice") == 2
        assert len(second.sessions) == 2

    def test_access_token_expires(self, auth_service, test_user, fake_clock):
        result = auth_service.login("alice", PASSWORD)
        fake_clock.advance(minutes=30, seconds=1)

        assert not auth_service.validate_access_token(result.tokens.access_token)


class TestLockout:
    """Tests for failed-login lockout."""

    def _fail(self, auth_service, times, username="alice"):
        for _ in range(times):
            with pytest.raises(InvalidCredentialsError):
                auth_service.login(username, "wrong-password")

    def test_fifth_failure_locks_account(self, auth_service, test_user):
        """After five failures even the correct password is refused."""
        self._fail(auth_service, 5)

        with pytest.raises(AccountLockedError) as exc:
            auth_service.login("alice", PASSWORD)
        assert exc.value.status_code == 403
        assert exc.value.retry_after_seconds == 15 * 60
        assert exc.value.detail["retryAfterSeconds"] == 15 * 60

    def test_four_failures_do_not_lock(self, auth_service, test_user):
        self._fail(auth_service, 4)

        result = auth_service.login("alice", PASSWORD)
        assert result.tokens is not None

    def test_lockout_expires_after_window(self, auth_service, test_user, fake_clock):
        self._fail(auth_service, 5)
        fake_clock.advance(minutes=14, seconds=59)
        with pytest.raises(AccountLockedError):
            auth_service.login("alice", PASSWORD)

        fake_clock.advance(seconds=1)
        result = auth_service.login("alice", PASSWORD)
        assert result.tokens is not None
        assert auth_service.lockout.state("alice").failed_attempts == 0

    def test_success_resets_counter(self, auth_service, test_user):
        self._fail(auth_service, 4)
        auth_service.login("alice", PASSWORD)
        self._fail(auth_service, 4)

        assert auth_service.lockout.state("alice").failed_attempts == 4
        assert auth_service.login("alice", PASSWORD).tokens is not None

    def test_failure_after_expiry_relocks_immediately(self, auth_service, test_user, fake_clock):
        """The counter is not cleared by time, so one more miss re-locks."""
        self._fail(auth_service, 5)
        fake_clock.advance(minutes=15)
        self._fail(auth_service, 1)

        with pytest.raises(AccountLockedError):
            auth_service.login("alice", PASSWORD)

    def test_unknown_username_is_also_locked(self, auth_service):
        self._fail(auth_service, 5, username="ghost")

        with pytest.raises(AccountLockedError):
            auth_service.login("ghost", "anything")

    def test_cleanup_evicts_unknown_usernames(self, auth_service, test_user, fake_clock):
        for i in range(50):
            self._fail(auth_service, 1, username=f"ghost-{i}")
        self._fail(auth_service, 5, username="locked-ghost")
        self._fail(auth_service, 2)

        counts = auth_service.cleanup_expired_states()

        assert counts["lockout_states"] == 50
        assert auth_service.lockout.state("alice").failed_attempts == 2
        with pytest.raises(AccountLockedError):
            auth_service.login("locked-ghost", "anything")

        fake_clock.advance(days=365)
        assert auth_service.cleanup_expired_states()["lockout_states"] == 1
        assert len(auth_service.lockout) == 1
        assert auth_service.lockout.state("alice").failed_attempts == 2

    def test_lockout_is_per_username(self, auth_service, test_user):
        auth_service.register("bob", PASSWORD, "bob@example.com")
        self._fail(auth_service, 5)

        assert auth_service.login("bob", PASSWORD).tokens is not None


class TestTwoFactor:
    """Tests for the two-factor login step."""

    @pytest.fixture
    def mfa_user(self, auth_service, test_user, notifier):
        auth_service.set_two_factor("alice", True)
        return test_user

    def test_enable_notifies_user(self, auth_service, mfa_user, notifier, memory_store):
        assert notifier.status_changes == [("alice@example.com", True)]
        assert memory_store.get_user(mfa_user.id).two_factor_enabled
        assert memory_store.get_two_factor_secret(mfa_user.id)

    def test_login_returns_challenge_instead_of_tokens(self, auth_service, mfa_user, notifier):
        result = auth_service.login("alice", PASSWORD)

        assert result.two_factor_required is True
        assert result.two_factor_token
        assert result.tokens is None
        to_email, code, ttl = notifier.codes[-1]
        assert to_email == "alice@example.com"
        assert len(code) == 6 and code.isdigit()
        assert ttl == 10

    def test_verify_completes_login(self, auth_service, mfa_user, notifier):
        challenge = auth_service.login("alice", PASSWORD)
        result = auth_service.verify_two_factor(
            challenge.two_factor_token, notifier.last_code, device=_device()
        )

        assert result.tokens is not None
        assert auth_service.validate_access_token(result.tokens.access_token)
        assert len(result.sessions) == 1

    def test_challenge_is_single_use(self, auth_service, mfa_user, notifier):
        challenge = auth_service.login("alice", PASSWORD)
        code = notifier.last_code
        auth_service.verify_two_factor(challenge.two_factor_token, code)

        with pytest.raises(TwoFactorError):
            auth_service.verify_two_factor(challenge.two_factor_token, code)

    def test_code_expires_after_ten_minutes(self, auth_service, mfa_user, notifier, fake_clock):
        challenge = auth_service.login("alice", PASSWORD)
        fake_clock.advance(minutes=10, seconds=1)

        with pytest.raises(TwoFactorError):
            auth_service.verify_two_factor(challenge.two_factor_token, notifier.last_code)

    def test_code_valid_at_expiry_instant(self, auth_service, mfa_user, notifier, fake_clock):
        challenge = auth_service.login("alice", PASSWORD)
        fake_clock.advance(minutes=10)

        result = auth_service.verify_two_factor(challenge.two_factor_token, notifier.last_code)
        assert result.tokens is not None

    def test_wrong_code_rejected(self, auth_service, mfa_user, notifier):
        challenge = auth_service.login("alice", PASSWORD)
        wrong = "000000" if notifier.last_code != "000000" else "111111"

        with pytest.raises(TwoFactorError) as exc:
            auth_service.verify_two_factor(challenge.two_factor_token, wrong)
        assert exc.value.message == "Invalid token or code"

    def test_new_login_invalidates_previous_challenge(self, auth_service, mfa_user, notifier):
        first = auth_service.login("alice", PASSWORD)
        first_code = notifier.last_code
        auth_service.login("alice", PASSWORD)

        with pytest.raises(TwoFactorError):
            auth_service.verify_two_factor(first.two_factor_token, first_code)

    def test_unknown_challenge_token(self, auth_service):
        with pytest.raises(TwoFactorError):
            auth_service.verify_two_factor("not-a-token", "123456")

    def test_re_enable_keeps_secret_and_pending_challenge(
        self, auth_service, mfa_user, notifier, memory_store
    ):
        secret = memory_store.get_two_factor_secret(mfa_user.id)
        challenge = auth_service.login("alice", PASSWORD)
        code = notifier.last_code
        auth_service.set_two_factor("alice", True)

        assert memory_store.get_two_factor_secret(mfa_user.id) == secret
        result = auth_service.verify_two_factor(challenge.two_factor_token, code)
        assert result.tokens is not None

    def test_enable_after_disable_issues_new_secret(
        self, auth_service, mfa_user, memory_store
    ):
        old = memory_store.get_two_factor_secret(mfa_user.id)
        auth_service.set_two_factor("alice", False)
        auth_service.set_two_factor("alice", True)

        assert memory_store.get_two_factor_secret(mfa_user.id) != old

    def test_disable_drops_pending_challenge(self, auth_service, mfa_user, notifier):
        challenge = auth_service.login("alice", PASSWORD)
        auth_service.set_two_factor("alice", False)

        with pytest.raises(TwoFactorError):
            auth_service.verify_two_factor(challenge.two_factor_token, notifier.last_code)
        assert auth_service.login("alice", PASSWORD).tokens is not None


class TestRefresh:
    """Tests for exchanging refresh tokens."""

    def test_refresh_returns_same_refresh_token(self, auth_service, test_user):
        tokens = auth_service.login("alice", PASSWORD).tokens
        refreshed = auth_service.refresh(tokens.refresh_token)

        assert refreshed.refresh_token == tokens.refresh_token
        assert refreshed.refresh_expires_at == tokens.refresh_expires_at
        assert refreshed.access_token != tokens.access_token
        assert auth_service.validate_access_token(refreshed.access_token)

    def test_expired_refresh_token_is_purged(self, auth_service, test_user, fake_clock):
        tokens = auth_service.login("alice", PASSWORD).tokens
        fake_clock.advance(minutes=60, seconds=1)

        with pytest.raises(TokenExpiredError):
            auth_service.refresh(tokens.refresh_token)
        with pytest.raises(TokenError) as exc:
            auth_service.refresh(tokens.refresh_token)
        assert not isinstance(exc.value, TokenExpiredError)

    def test_remember_me_extends_refresh_lifetime(self, auth_service, test_user, fake_clock):
        tokens = auth_service.login("alice", PASSWORD, remember_me=True).tokens
        fake_clock.advance(hours=2)

        assert auth_service.refresh(tokens.refresh_token).access_token

    def test_new_login_replaces_refresh_token(self, auth_service, test_user):
        first = auth_service.login("alice", PASSWORD).tokens
        auth_service.login("alice", PASSWORD)

        with pytest.raises(TokenError):
            auth_service.refresh(first.refresh_token)

    def test_access_token_cannot_refresh(self, auth_service, test_user):
        tokens = auth_service.login("alice", PASSWORD).tokens

        with pytest.raises(TokenError):
            auth_service.refresh(tokens.access_token)


class TestBearerAuthentication:
    """Tests for resolving Authorization headers."""

    def test_authenticate_bearer_header(self, auth_service, test_user):
        tokens = auth_service.login("alice", PASSWORD, device=_device()).tokens
        ctx = auth_service.authenticate(f"Bearer {tokens.access_token}")

        assert ctx.user_id == test_user.id
        assert ctx.username == "alice"
        assert ctx.session_id == tokens.session_id

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "Bearer not.a.jwt"])
    def test_authenticate_rejects_bad_headers(self, auth_service, test_user, header):
        assert auth_service.authenticate(header) is None

    def test_authenticate_touches_session(self, auth_service, test_user, fake_clock):
        tokens = auth_service.login("alice", PASSWORD, device=_device()).tokens
        fake_clock.advance(minutes=5)
        auth_service.authenticate(f"Bearer {tokens.access_token}")

        session = auth_service.sessions.get(tokens.session_id)
        assert session.last_activity == fake_clock()


class TestSessionManagement:
    """Tests for device session revocation."""

    def test_revoke_session_drops_its_tokens(self, auth_service, test_user):
        phone = auth_service.login("alice", PASSWORD, device=_device("phone")).tokens
        laptop = auth_service.login("alice", PASSWORD, device=_device("laptop")).tokens

        auth_service.revoke_session("alice", phone.session_id)

        assert not auth_service.validate_access_token(phone.access_token)
        assert auth_service.validate_access_token(laptop.access_token)
        assert [s.id for s in auth_service.list_sessions("alice")] == [laptop.session_id]

    def test_cannot_revoke_another_users_session(self, auth_service, test_user):
        auth_service.register("bob", PASSWORD, "bob@example.com")
        bob = auth_service.login("bob", PASSWORD, device=_device()).tokens

        with pytest.raises(NotFoundError):
            auth_service.revoke_session("alice", bob.session_id)
        assert auth_service.validate_access_token(bob.access_token)

    def test_revoke_all_sessions(self, auth_service, test_user):
        a = auth_service.login("alice", PASSWORD, device=_device("a")).tokens
        b = auth_service.login("alice", PASSWORD, device=_device("b")).tokens

        assert auth_service.revoke_all_sessions("alice") == 2
        assert auth_service.list_sessions("alice") == []
        assert not auth_service.validate_access_token(a.access_token)
        assert not auth_service.validate_access_token(b.access_token)
        with pytest.raises(TokenError):
            auth_service.refresh(b.refresh_token)

    def test_logout_without_session_revokes_access_token(self, auth_service, test_user):
        tokens = auth_service.login("alice", PASSWORD).tokens
        ctx = auth_service.authenticate(f"Bearer {tokens.access_token}")

        auth_service.logout(ctx)
        assert not auth_service.validate_access_token(tokens.access_token)

    def test_prune_idle_sessions(self, auth_service, test_user, fake_clock):
        stale = auth_service.login("alice", PASSWORD, device=_device("old")).tokens
        fake_clock.advance(hours=2)
        fresh = auth_service.login("alice", PASSWORD, device=_device("new")).tokens

        assert auth_service.prune_idle_sessions(timedelta(hours=1)) == 1
        assert [s.id for s in auth_service.list_sessions("alice")] == [fresh.session_id]
        assert not auth_service.validate_access_token(stale.access_token)

    def test_cleanup_expired_states(self, auth_service, test_user, fake_clock):
        auth_service.login("alice", PASSWORD)
        fake_clock.advance(days=2)

        counts = auth_service.cleanup_expired_states()
        assert counts["tokens"] == 2
        assert counts["two_factor_challenges"] == 0
