from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Any, Optional, Protocol
from urllib.parse import urlencode

import httpx

from authcore.logging import get_logger, sanitize_error_message
from authcore.service.errors import (
    IdentityProviderError,
    InvalidTokenError,
    OtpVerificationError,
    RateLimitedError,
)
from authcore.storage.models import IdentityProfile

logger = get_logger(__name__)

MAX_OTP_ATTEMPTS = 3


class IdentityProvider(Protocol):
    """External system that owns OTP delivery/verification and OAuth sign-in."""

    async def send_otp(self, phone: str) -> None: ...

    async def resend_otp(self, phone: str) -> None: ...

    async def verify_otp(self, phone: str, code: str) -> IdentityProfile: ...

    def oauth_url(self, provider: str, redirect_to: str) -> str: ...

    async def get_user_from_token(self, access_token: str) -> IdentityProfile: ...

    async def health_check(self) -> bool: ...

    async def close(self) -> None: ...


def _profile_from_payload(user: dict[str, Any]) -> IdentityProfile:
    metadata = user.get("user_metadata") or {}
    full_name = metadata.get("full_name") or metadata.get("name") or ""
    first, _, last = full_name.partition(" ")
    return IdentityProfile(
        external_id=str(user["id"]),
        phone=user.get("phone") or None,
        email=user.get("email") or metadata.get("email") or None,
        first_name=metadata.get("first_name") or first or None,
        last_name=metadata.get("last_name") or last or None,
        avatar_url=metadata.get("avatar_url") or metadata.get("picture"),
        metadata=metadata,
    )


def _normalize_phone(phone: str) -> str:
    return phone if phone.startswith("+") else f"+{phone}"


class SupabaseIdentityProvider:
    """Supabase Auth (GoTrue) REST client."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout
        self._client = client

    def _auth_url(self, path: str) -> str:
        return f"{self.base_url}/auth/v1/{path}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                headers={"apikey": self.anon_key, "Content-Type": "application/json"},
            )
        return self._client

    async def _request(
        self,
        op: str,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        bearer: Optional[str] = None,
    ) -> httpx.Response:
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {bearer or self.anon_key}"}
        try:
            response = await client.request(method, self._auth_url(path), json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("identity_provider_unreachable", op=op, error=str(exc))
            raise IdentityProviderError("identity provider unavailable") from exc
        if response.status_code == 429:
            logger.warning("identity_provider_rate_limited", op=op)
            raise RateLimitedError("too many requests to identity provider", retry_after=60)
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return sanitize_error_message(response.text[:200])
        if isinstance(body, dict):
            body = body.get("msg") or body.get("error_description") or body.get("error") or body
        return sanitize_error_message(str(body))

    async def send_otp(self, phone: str) -> None:
        response = await self._request(
            "send_otp", "POST", "otp", json={"phone": _normalize_phone(phone), "create_user": True}
        )
        if response.is_error:
            logger.error(
                "identity_send_otp_failed",
                status_code=response.status_code,
                error=self._error_message(response),
            )
            raise IdentityProviderError("failed to send OTP")

    async def resend_otp(self, phone: str) -> None:
        response = await self._request(
            "resend_otp", "POST", "resend", json={"type": "sms", "phone": _normalize_phone(phone)}
        )
        if response.is_error:
            logger.error(
                "identity_resend_otp_failed",
                status_code=response.status_code,
                error=self._error_message(response),
            )
            raise IdentityProviderError("failed to resend OTP")

    async def verify_otp(self, phone: str, code: str) -> IdentityProfile:
        response = await self._request(
            "verify_otp",
            "POST",
            "verify",
            json={"type": "sms", "phone": _normalize_phone(phone), "token": code},
        )
        if response.status_code >= 500:
            raise IdentityProviderError("identity provider error")
        if response.is_error:
            reason = self._error_message(response)
            logger.info("identity_verify_otp_rejected", status_code=response.status_code, reason=reason)
            raise OtpVerificationError("OTP verification failed", detail={"reason": reason})
        body = response.json()
        user = body.get("user") if isinstance(body, dict) else None
        if not user or not user.get("id"):
            raise OtpVerificationError("OTP verification failed", detail={"reason": "no user returned"})
        return _profile_from_payload(user)

    def oauth_url(self, provider: str, redirect_to: str) -> str:
        query = urlencode({"provider": provider, "redirect_to": redirect_to})
        return f"{self._auth_url('authorize')}?{query}"

    async def get_user_from_token(self, access_token: str) -> IdentityProfile:
        response = await self._request("get_user", "GET", "user", bearer=access_token)
        if response.status_code >= 500:
            raise IdentityProviderError("identity provider error")
        if response.is_error:
            raise InvalidTokenError(
                "invalid provider token", status_code=400, detail={"reason": self._error_message(response)}
            )
        body = response.json()
        if not isinstance(body, dict) or not body.get("id"):
            raise InvalidTokenError("invalid provider token", status_code=400)
        return _profile_from_payload(body)

    async def health_check(self) -> bool:
        try:
            response = await self._request("health", "GET", "health")
        except (IdentityProviderError, RateLimitedError):
            return False
        return response.is_success

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class LocalIdentityProvider:
    """In-process provider for development and tests.

    Every sent OTP equals ``otp_code``. Each pending OTP expires after
    ``otp_ttl_seconds`` and allows ``MAX_OTP_ATTEMPTS`` wrong guesses. OAuth
    access tokens must be registered with :meth:`register_access_token`.
    """

    def __init__(
        self,
        *,
        otp_code: str = "123456",
        otp_ttl_seconds: int = 600,
        base_url: str = "http://localhost:8000",
    ) -> None:
        self.otp_code = otp_code
        self.otp_ttl_seconds = otp_ttl_seconds
        self.base_url = base_url.rstrip("/")
        # phone -> (expires_at, wrong attempts)
        self._pending: dict[str, tuple[float, int]] = {}
        self._tokens: dict[str, IdentityProfile] = {}
        self._lock = asyncio.Lock()
        self.sent: list[str] = []

    @staticmethod
    def external_id_for(phone: str) -> str:
        return "local-" + hashlib.sha256(phone.encode()).hexdigest()[:24]

    def register_access_token(self, access_token: str, profile: IdentityProfile) -> None:
        self._tokens[access_token] = profile

    async def send_otp(self, phone: str) -> None:
        async with self._lock:
            self._pending[phone] = (time.time() + self.otp_ttl_seconds, 0)
            self.sent.append(phone)
        logger.info("local_otp_issued", phone=phone)

    async def resend_otp(self, phone: str) -> None:
        await self.send_otp(phone)

    async def verify_otp(self, phone: str, code: str) -> IdentityProfile:
        async with self._lock:
            pending = self._pending.get(phone)
            if pending is None:
                raise OtpVerificationError("OTP verification failed", detail={"reason": "OTP_NOT_FOUND"})
            expires_at, attempts = pending
            if time.time() > expires_at:
                self._pending.pop(phone, None)
                raise OtpVerificationError("OTP verification failed", detail={"reason": "OTP_EXPIRED"})
            if attempts >= MAX_OTP_ATTEMPTS:
                raise OtpVerificationError(
                    "OTP verification failed", detail={"reason": "MAX_ATTEMPTS_EXCEEDED"}
                )
            if code != self.otp_code:
                self._pending[phone] = (expires_at, attempts + 1)
                raise OtpVerificationError("OTP verification failed", detail={"reason": "INVALID_OTP"})
            self._pending.pop(phone, None)
        return IdentityProfile(external_id=self.external_id_for(phone), phone=phone)

    def oauth_url(self, provider: str, redirect_to: str) -> str:
        query = urlencode({"provider": provider, "redirect_to": redirect_to})
        return f"{self.base_url}/local-auth/authorize?{query}"

    async def get_user_from_token(self, access_token: str) -> IdentityProfile:
        profile = self._tokens.get(access_token)
        if profile is None:
            raise InvalidTokenError("invalid provider token", status_code=400)
        return profile

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
