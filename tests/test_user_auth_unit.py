"""Unit tests for the end-user auth service.

Tests for:
- Signup and stored credential integrity
- Enumeration-resistant login failures and lockout
- Refresh under both session policies
- Logout and request authorization
- Password reset single use, including concurrent redemption
- Email verification
- Federated login
"""

import asyncio
import uuid
from datetime import timedelta
from typing import Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from nestauth.config import RefreshPolicy, Settings
from nestauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from nestauth.service.oauth import OAuthIdentity
from nestauth.service.passwords import PasswordService
from nestauth.service.result import Err, Ok
from nestauth.service.tokens import TokenService
from nestauth.service.user_auth import UserAuthService, UserProfile
from nestauth.storage.memory import MemoryStore
from nestauth.storage.models import UserStatus
from nestauth.storage.redis_cache import RedisTokenStore

PASSWORD = "Sunshine42"
SECRET = "Unit-Test-Signing-Secret_0123456789abcdef"


class RecordingNotifier:
    def __init__(self):
        self.resets = []
        self.verifications = []

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.resets.append((to_email, token))
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        self.verifications.append((to_email, token))
        return True


class StaticOAuthVerifier:
    """Answers every token with one fixed identity (or None)."""

    def __init__(self, identity: Optional[OAuthIdentity]):
        self.identity = identity
        self.calls = []

    async def verify(self, provider: str, external_token: str):
        self.calls.append((provider, external_token))
        return self.identity


def _build(settings, clock, oauth=None, one_time_tokens=None):
    store = MemoryStore(persist=False)
    one_time_tokens = one_time_tokens or store
    notifier = RecordingNotifier()
    service = UserAuthService(
        settings,
        TokenService(settings, clock=clock),
        users=store,
        credentials=store,
        sessions=store,
        resets=one_time_tokens,
        verifications=one_time_tokens,
        notifier=notifier,
        passwords=PasswordService(fast=True),
        oauth=oauth or StaticOAuthVerifier(None),
        clock=clock,
    )
    return service, store, notifier


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, test_mode=True, use_memory_store=True)


@pytest.fixture
def env(settings, clock):
    return _build(settings, clock)


async def _signup_active(service, notifier, email="parent@example.com"):
    result = await service.signup(email, PASSWORD)
    assert isinstance(result, Ok)
    _, token = notifier.verifications[-1]
    verified = await service.verify_email(token)
    assert isinstance(verified, Ok)
    return result.value


class TestSignup:
    async def test_signup_creates_pending_user_with_session(self, env):
        service, store, notifier = env
        result = await service.signup(
            " Parent@Example.com ",
            PASSWORD,
            UserProfile(first_name="Ada"),
            user_agent="pytest",
            ip_addr="10.0.0.1",
        )

        assert isinstance(result, Ok)
        auth = result.value
        assert auth.user.email == "parent@example.com"
        assert auth.user.status == UserStatus.PENDING_VERIFICATION
        assert auth.user.email_verified is False
        assert auth.user.first_name == "Ada"
        assert str(uuid.UUID(auth.user.family_id)) == auth.user.family_id
        claims = service.tokens.verify_access(auth.tokens.access_token).value
        assert claims.family_id == auth.user.family_id
        assert auth.session.user_id == auth.user.id
        assert auth.session.user_agent == "pytest"
        assert auth.session.ip_addr == "10.0.0.1"
        assert notifier.verifications[0][0] == "parent@example.com"

    async def test_stored_credential_is_a_hash(self, env):
        service, store, _ = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value
        pwd_hash, algo = store.get_password_record(auth.user.id)

        assert algo == "argon2id"
        assert pwd_hash != PASSWORD
        assert PASSWORD not in pwd_hash

    async def test_session_stores_token_fingerprints_only(self, env):
        service, store, _ = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value
        stored = store.sessions[auth.session.id]

        assert stored.session_token_hash == service.tokens.fingerprint(auth.tokens.access_token)
        assert stored.refresh_token_hash == service.tokens.fingerprint(auth.tokens.refresh_token)
        assert auth.tokens.access_token not in (stored.session_token_hash, stored.refresh_token_hash)

    async def test_duplicate_email_is_a_conflict(self, env):
        service, _, _ = env
        await service.signup("parent@example.com", PASSWORD)
        result = await service.signup("PARENT@example.com", PASSWORD)

        assert isinstance(result, Err)
        assert isinstance(result.error, ConflictError)

    async def test_weak_password_creates_nothing(self, env):
        service, store, _ = env
        result = await service.signup("parent@example.com", "weak")

        assert isinstance(result, Err)
        assert isinstance(result.error, ValidationError)
        assert store.users == {}

    async def test_invalid_email(self, env):
        service, _, _ = env
        result = await service.signup("not-an-email", PASSWORD)

        assert isinstance(result.error, ValidationError)


class TestLogin:
    async def test_login_succeeds_and_records_last_login(self, env, clock):
        service, store, _ = env
        await service.signup("parent@example.com", PASSWORD)
        result = await service.login("parent@example.com", PASSWORD)

        assert isinstance(result, Ok)
        assert result.value.user.last_login_at == clock()
        assert store.users[result.value.user.id].last_login_at == clock()

    async def test_unknown_email_and_wrong_password_look_identical(self, env):
        service, _, _ = env
        await service.signup("parent@example.com", PASSWORD)

        unknown = await service.login("nobody@example.com", PASSWORD)
        wrong = await service.login("parent@example.com", "Wrong-password1")

        for result in (unknown, wrong):
            assert isinstance(result, Err)
            assert type(result.error) is AuthenticationError
            assert result.error.message == "invalid credentials"
            assert result.error.status_code == 401

    async def test_suspended_user_cannot_login(self, env):
        service, store, _ = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value
        store.update_user_status(auth.user.id, UserStatus.SUSPENDED)

        result = await service.login("parent@example.com", PASSWORD)
        assert result.error.message == "invalid credentials"

    async def test_each_login_issues_distinct_tokens_and_sessions(self, env):
        service, _, _ = env
        await service.signup("parent@example.com", PASSWORD)
        first = (await service.login("parent@example.com", PASSWORD)).value
        second = (await service.login("parent@example.com", PASSWORD)).value

        assert first.tokens.access_token != second.tokens.access_token
        assert first.session.id != second.session.id


class TestLockout:
    async def test_lock_engages_at_threshold_and_releases_after_window(self, env, clock):
        service, store, _ = env
        user_id = (await service.signup("parent@example.com", PASSWORD)).value.user.id

        results = [await service.login("parent@example.com", "Wrong-password1") for _ in range(5)]
        assert all(isinstance(r, Err) for r in results)
        assert not isinstance(results[3].error, AccountLockedError)
        assert isinstance(results[4].error, AccountLockedError)
        # same external shape as any bad credential
        assert results[4].error.message == "invalid credentials"
        assert results[4].error.status_code == 401

        locked = await service.login("parent@example.com", PASSWORD)
        assert isinstance(locked, Err)
        assert isinstance(locked.error, AccountLockedError)

        clock.advance(1800)
        unlocked = await service.login("parent@example.com", PASSWORD)
        assert isinstance(unlocked, Ok)
        assert store.users[user_id].failed_login_attempts == 0
        assert store.users[user_id].locked_until is None

    async def test_success_resets_counter(self, env):
        service, store, _ = env
        user_id = (await service.signup("parent@example.com", PASSWORD)).value.user.id
        for _ in range(4):
            await service.login("parent@example.com", "Wrong-password1")
        assert store.users[user_id].failed_login_attempts == 4

        assert isinstance(await service.login("parent@example.com", PASSWORD), Ok)
        assert store.users[user_id].failed_login_attempts == 0

    async def test_failure_after_elapsed_lock_restarts_count(self, env, clock):
        service, store, _ = env
        user_id = (await service.signup("parent@example.com", PASSWORD)).value.user.id
        for _ in range(5):
            await service.login("parent@example.com", "Wrong-password1")
        clock.advance(1801)

        result = await service.login("parent@example.com", "Wrong-password1")
        assert not isinstance(result.error, AccountLockedError)
        assert store.users[user_id].failed_login_attempts == 1

    async def test_lock_engaged_during_a_correct_login_holds(self, env, clock, monkeypatch):
        service, store, _ = env
        user_id = (await service.signup("parent@example.com", PASSWORD)).value.user.id
        sessions_before = len(store.sessions)
        lock_until = clock() + timedelta(minutes=30)
        reset = store.record_successful_login

        def lock_then_reset(uid, now):
            # a burst of failures lands after the login read the unlocked row
            store.record_failed_login(uid, threshold=1, lock_until=lock_until, now=now)
            return reset(uid, now)

        monkeypatch.setattr(store, "record_successful_login", lock_then_reset)
        result = await service.login("parent@example.com", PASSWORD)

        assert isinstance(result, Err)
        assert isinstance(result.error, AccountLockedError)
        assert store.users[user_id].locked_until == lock_until
        assert len(store.sessions) == sessions_before

    async def test_federated_login_respects_lock(self, settings, clock):
        identity = OAuthIdentity(
            provider="google", provider_uid="g-1", email="parent@example.com"
        )
        service, store, _ = _build(settings, clock, StaticOAuthVerifier(identity))
        await service.signup("parent@example.com", PASSWORD)
        for _ in range(5):
            await service.login("parent@example.com", "Wrong-password1")

        result = await service.federated_login("google", "provider-token", "parent@example.com")

        assert isinstance(result, Err)
        assert isinstance(result.error, AccountLockedError)


class TestSessionTokens:
    async def test_authenticate_and_logout(self, env):
        service, _, _ = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value

        claims = await service.authenticate(auth.tokens.access_token)
        assert isinstance(claims, Ok)
        assert claims.value.user_id == auth.user.id

        assert (await service.logout(auth.tokens.access_token)).value is True
        assert (await service.logout(auth.tokens.access_token)).value is False
        assert isinstance(await service.authenticate(auth.tokens.access_token), Err)

    async def test_logout_unknown_token(self, env):
        service, _, _ = env
        assert (await service.logout("not-a-token")).value is False

    async def test_refresh_token_cannot_authorize_requests(self, env):
        service, _, _ = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value

        assert isinstance(await service.authenticate(auth.tokens.refresh_token), Err)

    async def test_expired_session_rejected(self, env, clock, settings):
        service, _, _ = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value
        clock.advance(settings.access_token_ttl_seconds + 1)

        assert isinstance(await service.authenticate(auth.tokens.access_token), Err)

    async def test_get_user(self, env):
        service, _, _ = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value

        assert (await service.get_user(auth.user.id)).value.email == "parent@example.com"
        assert isinstance((await service.get_user("missing")).error, NotFoundError)


class TestRefresh:
    async def test_additive_keeps_old_session(self, env):
        service, _, notifier = env
        auth = await _signup_active(service, notifier)

        refreshed = await service.refresh(auth.tokens.refresh_token)
        assert isinstance(refreshed, Ok)
        assert refreshed.value.session.id != auth.session.id
        assert refreshed.value.tokens.access_token != auth.tokens.access_token

        assert isinstance(await service.authenticate(auth.tokens.access_token), Ok)
        assert isinstance(await service.authenticate(refreshed.value.tokens.access_token), Ok)
        assert isinstance(await service.refresh(auth.tokens.refresh_token), Ok)

    async def test_rotate_invalidates_presented_session(self, settings, clock):
        rotate = settings.model_copy(update={"refresh_policy": RefreshPolicy.ROTATE})
        service, _, notifier = _build(rotate, clock)
        auth = await _signup_active(service, notifier)

        refreshed = await service.refresh(auth.tokens.refresh_token)
        assert isinstance(refreshed, Ok)

        replay = await service.refresh(auth.tokens.refresh_token)
        assert isinstance(replay, Err)
        assert isinstance(replay.error, AuthenticationError)
        assert isinstance(await service.authenticate(auth.tokens.access_token), Err)
        assert isinstance(await service.refresh(refreshed.value.tokens.refresh_token), Ok)

    async def test_rotate_concurrent_refresh_has_one_winner(self, settings, clock):
        rotate = settings.model_copy(update={"refresh_policy": RefreshPolicy.ROTATE})
        service, _, notifier = _build(rotate, clock)
        auth = await _signup_active(service, notifier)

        results = await asyncio.gather(
            *(service.refresh(auth.tokens.refresh_token) for _ in range(4))
        )
        assert sum(isinstance(r, Ok) for r in results) == 1

    async def test_access_token_is_not_a_refresh_token(self, env):
        service, _, notifier = env
        auth = await _signup_active(service, notifier)

        assert isinstance(await service.refresh(auth.tokens.access_token), Err)

    async def test_pending_user_cannot_refresh(self, env):
        service, _, _ = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value

        result = await service.refresh(auth.tokens.refresh_token)
        assert isinstance(result, Err)
        assert result.error.message == "invalid token"

    async def test_logged_out_session_cannot_refresh(self, env):
        service, _, notifier = env
        auth = await _signup_active(service, notifier)
        await service.logout(auth.tokens.access_token)

        assert isinstance(await service.refresh(auth.tokens.refresh_token), Err)


class TestPasswordReset:
    async def test_unknown_email_is_silent(self, env):
        service, _, notifier = env

        assert (await service.request_password_reset("nobody@example.com")) == Ok(None)
        assert notifier.resets == []

    async def test_reset_replaces_password_and_revokes_sessions(self, env):
        service, _, notifier = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value
        second = (await service.login("parent@example.com", PASSWORD)).value

        assert (await service.request_password_reset("Parent@example.com")) == Ok(None)
        to_email, token = notifier.resets[-1]
        assert to_email == "parent@example.com"

        result = await service.confirm_password_reset(token, "Moonlight77")
        assert result == Ok(2)

        for access in (auth.tokens.access_token, second.tokens.access_token):
            assert isinstance(await service.authenticate(access), Err)
        assert isinstance(await service.login("parent@example.com", PASSWORD), Err)
        assert isinstance(await service.login("parent@example.com", "Moonlight77"), Ok)

    async def test_token_is_single_use(self, env):
        service, _, notifier = env
        await service.signup("parent@example.com", PASSWORD)
        await service.request_password_reset("parent@example.com")
        _, token = notifier.resets[-1]

        assert isinstance(await service.confirm_password_reset(token, "Moonlight77"), Ok)
        again = await service.confirm_password_reset(token, "Starlight88")
        assert isinstance(again, Err)
        assert isinstance(again.error, NotFoundError)

    async def test_concurrent_redemption_has_one_winner(self, env):
        service, _, notifier = env
        await service.signup("parent@example.com", PASSWORD)
        await service.request_password_reset("parent@example.com")
        _, token = notifier.resets[-1]

        results = await asyncio.gather(
            service.confirm_password_reset(token, "Moonlight77"),
            service.confirm_password_reset(token, "Starlight88"),
        )
        assert sum(isinstance(r, Ok) for r in results) == 1
        assert sum(isinstance(r, Err) and isinstance(r.error, NotFoundError) for r in results) == 1

    async def test_weak_password_keeps_token_usable(self, env):
        service, _, notifier = env
        await service.signup("parent@example.com", PASSWORD)
        await service.request_password_reset("parent@example.com")
        _, token = notifier.resets[-1]

        weak = await service.confirm_password_reset(token, "short")
        assert isinstance(weak.error, ValidationError)
        assert isinstance(await service.confirm_password_reset(token, "Moonlight77"), Ok)

    async def test_expired_token_rejected(self, env, clock, settings):
        service, _, notifier = env
        await service.signup("parent@example.com", PASSWORD)
        await service.request_password_reset("parent@example.com")
        _, token = notifier.resets[-1]
        clock.advance(settings.password_reset_ttl_seconds)

        result = await service.confirm_password_reset(token, "Moonlight77")
        assert isinstance(result.error, NotFoundError)

    async def test_unknown_token_rejected(self, env):
        service, _, _ = env
        result = await service.confirm_password_reset("made-up", "Moonlight77")

        assert isinstance(result.error, NotFoundError)


class TestEmailVerification:
    async def test_verify_activates_pending_user(self, env):
        service, store, notifier = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value
        _, token = notifier.verifications[-1]

        result = await service.verify_email(token)
        assert isinstance(result, Ok)
        assert result.value.status == UserStatus.ACTIVE
        assert result.value.email_verified is True
        assert store.users[auth.user.id].status == UserStatus.ACTIVE

        reuse = await service.verify_email(token)
        assert isinstance(reuse.error, NotFoundError)

    async def test_verify_keeps_suspended_status(self, env):
        service, store, notifier = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value
        store.update_user_status(auth.user.id, UserStatus.SUSPENDED)
        _, token = notifier.verifications[-1]

        result = await service.verify_email(token)
        assert result.value.status == UserStatus.SUSPENDED
        assert result.value.email_verified is True

    async def test_resend_only_for_unverified(self, env):
        service, _, notifier = env
        auth = await _signup_active(service, notifier)

        assert (await service.request_email_verification(auth.user.id)) == Ok(False)
        missing = await service.request_email_verification("missing")
        assert isinstance(missing.error, NotFoundError)

    async def test_resend_issues_new_token(self, env):
        service, _, notifier = env
        auth = (await service.signup("parent@example.com", PASSWORD)).value

        assert (await service.request_email_verification(auth.user.id)) == Ok(True)
        assert len(notifier.verifications) == 2
        assert notifier.verifications[0][1] != notifier.verifications[1][1]


class TestFederatedLogin:
    def _identity(self, email="kid.parent@example.com"):
        return OAuthIdentity(
            provider="google",
            provider_uid="g-123",
            email=email,
            first_name="Grace",
            last_name="Hopper",
        )

    async def test_first_login_creates_active_verified_user(self, settings, clock):
        oauth = StaticOAuthVerifier(self._identity())
        service, _, notifier = _build(settings, clock, oauth)

        result = await service.federated_login(
            "google", "provider-token", "kid.parent@example.com"
        )
        assert isinstance(result, Ok)
        user = result.value.user
        assert user.status == UserStatus.ACTIVE
        assert user.email_verified is True
        assert user.auth_provider == "google"
        assert user.first_name == "Grace"
        assert user.family_id is not None
        assert oauth.calls == [("google", "provider-token")]
        assert notifier.verifications == []

    async def test_repeat_login_reuses_user(self, settings, clock):
        service, store, _ = _build(settings, clock, StaticOAuthVerifier(self._identity()))
        first = (await service.federated_login("google", "t", "kid.parent@example.com")).value
        second = (await service.federated_login("google", "t", "kid.parent@example.com")).value

        assert first.user.id == second.user.id
        assert len(store.users) == 1

    async def test_email_mismatch_rejected(self, settings, clock):
        service, store, _ = _build(
            settings, clock, StaticOAuthVerifier(self._identity("someone.else@example.com"))
        )
        result = await service.federated_login("google", "t", "kid.parent@example.com")

        assert isinstance(result.error, AuthenticationError)
        assert store.users == {}

    async def test_provider_rejection(self, settings, clock):
        service, _, _ = _build(settings, clock, StaticOAuthVerifier(None))
        result = await service.federated_login("facebook", "t", "kid.parent@example.com")

        assert isinstance(result.error, AuthenticationError)

    async def test_unsupported_provider(self, env):
        service, _, _ = env
        result = await service.federated_login("myspace", "t", "kid.parent@example.com")

        assert isinstance(result.error, ValidationError)


class TestCleanup:
    async def test_cleanup_removes_expired_state(self, env, clock, settings):
        service, store, notifier = env
        await service.signup("parent@example.com", PASSWORD)
        await service.request_password_reset("parent@example.com")
        clock.advance(settings.refresh_token_ttl_seconds + 1)

        counts = (await service.cleanup_expired()).value
        assert counts == {"sessions": 1, "reset_tokens": 1, "verification_tokens": 1}
        assert store.sessions == {}


class UnreachableRedis:
    """Redis client whose every command fails as if the server were down."""

    def _fail(self, *args, **kwargs):
        raise RedisConnectionError("Connection refused")

    def register_script(self, source):
        return self._fail

    def pipeline(self):
        return self

    hset = expire = execute = ping = _fail


class TestTokenStoreOutage:
    @pytest.fixture
    def env(self, settings, clock):
        return _build(
            settings,
            clock,
            one_time_tokens=RedisTokenStore("redis://stub", client=UnreachableRedis()),
        )

    async def test_signup_still_succeeds_without_verification_mail(self, env):
        service, store, notifier = env
        result = await service.signup("parent@example.com", PASSWORD)

        assert isinstance(result, Ok)
        assert notifier.verifications == []
        user = store.get_user_by_email("parent@example.com")
        assert user is not None
        assert user.status == UserStatus.PENDING_VERIFICATION
        fingerprint = service.tokens.fingerprint(result.value.tokens.access_token)
        assert store.get_session_by_token(fingerprint) is not None

    async def test_password_reset_request_stays_silent(self, env):
        service, store, notifier = env
        await service.signup("parent@example.com", PASSWORD)

        result = await service.request_password_reset("parent@example.com")

        assert result == Ok(None)
        assert notifier.resets == []

    async def test_redeeming_a_token_reports_an_internal_error(self, env):
        service, _, _ = env

        result = await service.confirm_password_reset("any-token", "Moonlight77")

        assert isinstance(result, Err)
        assert result.error.status_code == 500
