import json

import httpx
import pytest

from authcore.service.errors import (
    IdentityProviderError,
    InvalidTokenError,
    OtpVerificationError,
    RateLimitedError,
)
from authcore.service.identity import LocalIdentityProvider, SupabaseIdentityProvider

BASE = "https://project.supabase.co"


def _provider(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SupabaseIdentityProvider(BASE, "anon-key", client=client)


async def test_send_otp_posts_phone():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    provider = _provider(handler)
    await provider.send_otp("15551234567")
    await provider.close()

    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == f"{BASE}/auth/v1/otp"
    assert json.loads(request.content) == {"phone": "+15551234567", "create_user": True}
    assert request.headers["Authorization"] == "Bearer anon-key"


async def test_verify_otp_maps_profile():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body == {"type": "sms", "phone": "+15551234567", "token": "123456"}
        return httpx.Response(
            200,
            json={
                "access_token": "provider-token",
                "user": {
                    "id": "sb-1",
                    "phone": "15551234567",
                    "email": "ada@example.com",
                    "user_metadata": {"full_name": "Ada Lovelace", "avatar_url": "http://img"},
                },
            },
        )

    profile = await _provider(handler).verify_otp("+15551234567", "123456")
    assert profile.external_id == "sb-1"
    assert profile.email == "ada@example.com"
    assert (profile.first_name, profile.last_name) == ("Ada", "Lovelace")
    assert profile.avatar_url == "http://img"


async def test_verify_otp_rejection_and_outage():
    def rejected(request):
        return httpx.Response(400, json={"msg": "Token has expired or is invalid"})

    with pytest.raises(OtpVerificationError) as excinfo:
        await _provider(rejected).verify_otp("+15551234567", "000000")
    assert excinfo.value.detail["reason"] == "Token has expired or is invalid"

    def broken(request):
        return httpx.Response(503, text="unavailable")

    with pytest.raises(IdentityProviderError):
        await _provider(broken).verify_otp("+15551234567", "000000")


async def test_network_failure_and_throttling():
    def unreachable(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(IdentityProviderError):
        await _provider(unreachable).send_otp("+15551234567")

    def throttled(request):
        return httpx.Response(429, json={"msg": "slow down"})

    with pytest.raises(RateLimitedError) as excinfo:
        await _provider(throttled).resend_otp("+15551234567")
    assert excinfo.value.retry_after == 60


async def test_get_user_from_token():
    def handler(request):
        if request.headers["Authorization"] == "Bearer good":
            return httpx.Response(200, json={"id": "sb-2", "email": "x@example.com"})
        return httpx.Response(401, json={"msg": "invalid JWT"})

    provider = _provider(handler)
    profile = await provider.get_user_from_token("good")
    assert profile.external_id == "sb-2"

    with pytest.raises(InvalidTokenError) as excinfo:
        await provider.get_user_from_token("bad")
    assert excinfo.value.status_code == 400


async def test_health_check():
    assert await _provider(lambda request: httpx.Response(200, json={})).health_check()
    assert not await _provider(lambda request: httpx.Response(500)).health_check()


def test_oauth_url():
    provider = SupabaseIdentityProvider(BASE + "/", "anon-key")
    url = provider.oauth_url("google", "http://app/auth/callback")
    assert url == (
        f"{BASE}/auth/v1/authorize?provider=google&redirect_to=http%3A%2F%2Fapp%2Fauth%2Fcallback"
    )


async def test_local_provider_accepts_configured_code():
    provider = LocalIdentityProvider(otp_code="654321")
    await provider.send_otp("+15551234567")
    profile = await provider.verify_otp("+15551234567", "654321")
    assert profile.external_id == LocalIdentityProvider.external_id_for("+15551234567")
    # Codes are single use
    with pytest.raises(OtpVerificationError) as excinfo:
        await provider.verify_otp("+15551234567", "654321")
    assert excinfo.value.detail["reason"] == "OTP_NOT_FOUND"


async def test_local_provider_limits_wrong_attempts():
    provider = LocalIdentityProvider()
    await provider.send_otp("+15551234567")
    for _ in range(3):
        with pytest.raises(OtpVerificationError) as excinfo:
            await provider.verify_otp("+15551234567", "000000")
        assert excinfo.value.detail["reason"] == "INVALID_OTP"
    with pytest.raises(OtpVerificationError) as excinfo:
        await provider.verify_otp("+15551234567", "123456")
    assert excinfo.value.detail["reason"] == "MAX_ATTEMPTS_EXCEEDED"


async def test_local_provider_expiry():
    provider = LocalIdentityProvider(otp_ttl_seconds=-1)
    await provider.send_otp("+15551234567")
    with pytest.raises(OtpVerificationError) as excinfo:
        await provider.verify_otp("+15551234567", "123456")
    assert excinfo.value.detail["reason"] == "OTP_EXPIRED"


async def test_local_provider_tokens():
    provider = LocalIdentityProvider()
    with pytest.raises(InvalidTokenError):
        await provider.get_user_from_token("unknown")
    assert provider.oauth_url("google", "http://app/cb").startswith(
        "http://localhost:8000/local-auth/authorize?provider=google"
    )
