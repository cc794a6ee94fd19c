"""End-to-end orchestrator flows over the memory store and fake Redis."""

import asyncio
from unittest.mock import patch

import pytest

from authcore.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    OtpResendTooSoonError,
    OtpVerificationError,
    RateLimitedError,
    StoreUnavailableError,
    TokenExpiredError,
    TokenRevokedError,
    UserInactiveError,
    UserNotRegisteredError,
    UserSuspendedError,
    ValidationError,
)
from authcore.service.tokens import token_hash
from authcore.storage.cache_keys import CacheKeys
from authcore.storage.models import IdentityProfile

PHONE = "+15551234567"


async def _login(runtime, phone=PHONE):
    await runtime.auth.send_otp(phone)
    return await runtime.auth.verify_otp_and_login(phone, "123456")


async def test_first_login_registers_user_and_role_atomically(runtime):
    result = await _login(runtime)

    assert list(runtime.store.users) == [result.user.id]
    assert runtime.store.user_roles[result.user.id] == ["RIDER"]
    assert result.user.role == "RIDER"
    assert result.user.phone_verified_at is not None
    assert result.expires_in == runtime.codec.expires_in_seconds
    claims = runtime.codec.verify(result.token)
    assert claims["sub"] == result.user.id
    assert claims["role"] == "RIDER"
    assert claims["phone"] == PHONE
    assert await runtime.refresh_tokens.is_usable(result.refresh_token)
    sessions = await runtime.sessions.active_for_user(result.user.id)
    assert [s.token_hash for s in sessions] == [token_hash(result.token)]


async def test_failed_role_assignment_leaves_no_user(runtime):
    await runtime.auth.send_otp(PHONE)
    with patch.object(runtime.store, "assign_role", side_effect=RuntimeError("db down")):
        with pytest.raises(RuntimeError):
            await runtime.auth.verify_otp_and_login(PHONE, "123456")

    assert runtime.store.users == {}
    assert runtime.store.user_roles == {}
    assert runtime.store.refresh_tokens == {}


async def test_returning_user_is_synced_not_duplicated(runtime):
    first = await _login(runtime)
    runtime.store.users[first.user.id].external_id = "stale-id"

    second = await _login(runtime)

    assert second.user.id == first.user.id
    assert len(runtime.store.users) == 1
    assert second.user.external_id == runtime.identity.external_id_for(PHONE)
    assert second.user.last_login_at >= first.user.last_login_at
    assert second.refresh_token != first.refresh_token


async def test_wrong_otp_creates_nothing(runtime):
    await runtime.auth.send_otp(PHONE)
    with pytest.raises(OtpVerificationError) as excinfo:
        await runtime.auth.verify_otp_and_login(PHONE, "000000")
    assert excinfo.value.detail["reason"] == "INVALID_OTP"
    assert runtime.store.users == {}


async def test_otp_send_limit_and_window_reset(runtime, fake_redis):
    for _ in range(3):
        dispatch = await runtime.auth.send_otp(PHONE)
        assert dispatch.expires_in == 600

    with pytest.raises(RateLimitedError) as excinfo:
        await runtime.auth.send_otp(PHONE)
    assert 0 < excinfo.value.retry_after <= 600
    assert runtime.identity.sent == [PHONE] * 3

    # Limits are per phone
    await runtime.auth.send_otp("+15550000000")

    fake_redis.advance(601)
    await runtime.auth.send_otp(PHONE)


async def test_resend_cooldown(runtime, fake_redis):
    await runtime.auth.send_otp(PHONE)
    with pytest.raises(OtpResendTooSoonError) as excinfo:
        await runtime.auth.resend_otp(PHONE)
    assert 0 < excinfo.value.retry_after <= 60

    fake_redis.advance(61)
    await runtime.auth.resend_otp(PHONE)
    assert runtime.identity.sent == [PHONE, PHONE]


async def test_resend_counts_toward_send_limit(runtime, fake_redis):
    await runtime.auth.send_otp(PHONE)
    for _ in range(2):
        fake_redis.advance(61)
        await runtime.auth.resend_otp(PHONE)
    fake_redis.advance(61)
    with pytest.raises(RateLimitedError):
        await runtime.auth.resend_otp(PHONE)


async def test_suspended_user_gets_no_tokens(runtime):
    first = await _login(runtime)
    await runtime.store.update_user(first.user.id, {"is_suspended": True})
    tokens_before = len(runtime.store.refresh_tokens)

    with pytest.raises(UserSuspendedError):
        await _login(runtime)
    assert len(runtime.store.refresh_tokens) == tokens_before

    with pytest.raises(UserSuspendedError):
        await runtime.auth.refresh(first.refresh_token)
    # The rotation rolled back with the failed refresh
    assert await runtime.refresh_tokens.is_usable(first.refresh_token)


async def test_inactive_user_gets_no_tokens(runtime):
    first = await _login(runtime)
    await runtime.store.update_user(first.user.id, {"is_active": False})
    with pytest.raises(UserInactiveError):
        await _login(runtime)


async def test_refresh_picks_up_current_role(runtime):
    first = await _login(runtime)
    await runtime.store.assign_role(first.user.id, "DRIVER")

    refreshed = await runtime.auth.refresh(first.refresh_token)

    assert refreshed.user.role == "DRIVER"
    assert runtime.codec.verify(refreshed.token)["role"] == "DRIVER"
    assert refreshed.refresh_token != first.refresh_token
    assert not await runtime.refresh_tokens.is_usable(first.refresh_token)


async def test_concurrent_refresh_has_single_winner(runtime):
    first = await _login(runtime)
    results = await asyncio.gather(
        runtime.auth.refresh(first.refresh_token),
        runtime.auth.refresh(first.refresh_token),
        return_exceptions=True,
    )
    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1 and isinstance(failures[0], TokenRevokedError)


async def test_logout_revokes_everything(runtime):
    result = await _login(runtime)
    header = f"Bearer {result.token}"
    ctx = await runtime.auth.authenticate(header)
    assert ctx.user_id == result.user.id

    outcome = await runtime.auth.logout(ctx.user_id, ctx.token)

    assert outcome.sessions_revoked == 1
    assert outcome.refresh_tokens_revoked == 1
    assert outcome.blacklisted
    with pytest.raises(TokenRevokedError):
        await runtime.auth.authenticate(header)
    with pytest.raises(TokenRevokedError):
        await runtime.auth.refresh(result.refresh_token)
    assert await runtime.sessions.active_for_user(result.user.id) == []


async def test_authenticate_rejects_bad_headers(runtime):
    for header in (None, "", "Basic abc", "Bearer "):
        with pytest.raises(AuthenticationError):
            await runtime.auth.authenticate(header)
    with pytest.raises(InvalidTokenError):
        await runtime.auth.authenticate("Bearer not.a.jwt")


async def test_authenticate_expired_token(runtime):
    token = runtime.codec.sign({"sub": "user-1", "role": "RIDER"}, expires_in_seconds=-5)
    with pytest.raises(TokenExpiredError):
        await runtime.auth.authenticate(f"Bearer {token}")


async def test_authenticate_rechecks_expiry_of_cached_claims(runtime):
    token = runtime.codec.sign({"sub": "user-1", "role": "RIDER"})
    hashed = token_hash(token)
    claims = runtime.codec.verify(token)
    claims["exp"] = claims["iat"] - 1
    await runtime.revocation.cache_decoded(hashed, claims, 60)

    with pytest.raises(TokenExpiredError):
        await runtime.auth.authenticate(f"Bearer {token}")
    assert await runtime.revocation.get_cached(hashed) is None


async def test_authenticate_caches_verified_claims(runtime):
    result = await _login(runtime)
    ctx = await runtime.auth.authenticate(f"bearer {result.token}")
    assert ctx.role == "RIDER"
    assert ctx.phone == PHONE
    cached = await runtime.revocation.get_cached(token_hash(result.token))
    assert cached["sub"] == result.user.id


async def test_oauth_requires_existing_account(runtime):
    runtime.identity.register_access_token(
        "google-token", IdentityProfile(external_id="google-1", email="new@example.com")
    )
    with pytest.raises(UserNotRegisteredError):
        await runtime.auth.oauth_exchange("google-token")
    assert runtime.store.users == {}


async def test_oauth_links_existing_user_by_phone(runtime):
    registered = await _login(runtime)
    runtime.identity.register_access_token(
        "google-token",
        IdentityProfile(
            external_id="google-1",
            phone=PHONE,
            email="ada@example.com",
            first_name="Ada",
            last_name="Lovelace",
        ),
    )

    result = await runtime.auth.oauth_exchange("google-token")

    assert result.user.id == registered.user.id
    assert result.user.external_id == "google-1"
    assert result.user.email == "ada@example.com"
    assert runtime.codec.verify(result.token)["first_name"] == "Ada"
    # Later sign-ins resolve by external id alone
    runtime.identity.register_access_token("google-token-2", IdentityProfile(external_id="google-1"))
    again = await runtime.auth.oauth_exchange("google-token-2")
    assert again.user.id == registered.user.id


async def test_oauth_invalid_provider_token(runtime):
    with pytest.raises(InvalidTokenError) as excinfo:
        await runtime.auth.oauth_exchange("nope")
    assert excinfo.value.status_code == 400


def test_oauth_url_uses_frontend_callback(runtime):
    url = runtime.auth.oauth_url("google")
    assert "provider=google" in url
    assert "redirect_to=http%3A%2F%2Flocalhost%3A3000%2Fauth%2Fcallback" in url


async def test_login_populates_user_cache_in_background(runtime, fake_redis):
    result = await _login(runtime)
    await runtime.auth.wait_for_background()

    assert await runtime.cache.get(CacheKeys.user_by_id(result.user.id)) is not None
    assert await runtime.cache.get(CacheKeys.user_by_phone(PHONE)) is not None
    external = CacheKeys.user_by_external_id(result.user.external_id)
    assert await runtime.cache.get(external) is not None

    user = await runtime.auth.get_user_by_id(result.user.id)
    assert user.id == result.user.id
    assert user.created_at == result.user.created_at


async def test_login_survives_cache_outage(runtime, fake_redis):
    fake_redis.fail = True
    result = await _login(runtime)
    await runtime.auth.wait_for_background()

    ctx = await runtime.auth.authenticate(f"Bearer {result.token}")
    assert ctx.user_id == result.user.id
    user = await runtime.auth.current_user(ctx)
    assert user.phone == PHONE


async def test_assign_role(runtime):
    result = await _login(runtime)
    updated = await runtime.auth.assign_role(result.user.id, "driver")
    assert updated.role == "DRIVER"
    assert await runtime.store.get_user_role(result.user.id) == "DRIVER"
    with pytest.raises(ValidationError):
        await runtime.auth.assign_role(result.user.id, "PILOT")


async def _stall(*args, **kwargs):
    await asyncio.sleep(5)


async def test_stalled_store_fails_refresh_and_logout(runtime):
    result = await _login(runtime)
    runtime.auth.settings = runtime.settings.model_copy(
        update={"store_operation_timeout_seconds": 0.05}
    )

    with patch.object(runtime.store, "get_refresh_token", side_effect=_stall):
        with pytest.raises(StoreUnavailableError):
            await runtime.auth.refresh(result.refresh_token)
    assert await runtime.refresh_tokens.is_usable(result.refresh_token)

    with patch.object(runtime.store, "revoke_user_refresh_tokens", side_effect=_stall):
        with pytest.raises(StoreUnavailableError):
            await runtime.auth.logout(result.user.id, result.token)
    # The session revocation that ran before the stall was rolled back
    assert len(await runtime.sessions.active_for_user(result.user.id)) == 1
    assert not await runtime.revocation.is_blacklisted(token_hash(result.token))


async def test_active_sessions_cached_until_next_issue(runtime):
    result = await _login(runtime)
    key = CacheKeys.sessions_by_user(result.user.id)

    sessions = await runtime.sessions.active_for_user(result.user.id)
    assert [s.token_hash for s in sessions] == [token_hash(result.token)]
    assert await runtime.cache.exists(key)
    cached = await runtime.sessions.active_for_user(result.user.id)
    assert cached[0].expires_at == sessions[0].expires_at

    await runtime.auth.refresh(result.refresh_token)
    assert not await runtime.cache.exists(key)
    assert len(await runtime.sessions.active_for_user(result.user.id)) == 2
