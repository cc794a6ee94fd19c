from __future__ import annotations


class CacheKeys:
    """Namespaced cache key builders.

    Raw bearer tokens never appear in a key; token entries are keyed by
    ``token_hash``.
    """

    @staticmethod
    def user_by_id(user_id: str) -> str:
        return f"user:{user_id}"

    @staticmethod
    def user_by_external_id(external_id: str) -> str:
        return f"user:external:{external_id}"

    @staticmethod
    def user_by_phone(phone: str) -> str:
        return f"user:phone:{phone}"

    @staticmethod
    def sessions_by_user(user_id: str) -> str:
        return f"session:user:{user_id}"

    @staticmethod
    def token_decoded(token_hash: str) -> str:
        return f"token:{token_hash}"

    @staticmethod
    def token_blacklist(token_hash: str) -> str:
        return f"token:blacklist:{token_hash}"

    @staticmethod
    def otp_attempts(phone: str) -> str:
        return f"otp:attempts:{phone}"

    @staticmethod
    def otp_last_sent(phone: str) -> str:
        return f"otp:last_sent:{phone}"

    @staticmethod
    def lock(key: str) -> str:
        return f"lock:{key}"

    @staticmethod
    def rate_limit(prefix: str, ip: str, user_id: str | None) -> str:
        return f"ratelimit:{prefix}:{ip}:{user_id or 'anonymous'}"


class CacheTTL:
    """Default lifetimes in seconds."""

    TOKEN_DECODED = 600
    TOKEN_BLACKLIST = 7 * 24 * 3600
    SESSION = 1800
    USER_DATA = 3600
