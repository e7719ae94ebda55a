from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

SESSION_STORE_KINDS = ("cookie", "memory")


@dataclass(frozen=True)
class AuthConfig:
    # Session configuration
    public_base_url: Optional[str]
    session_secret: Optional[str]  # Required for session signing
    session_ttl_seconds: int
    cookie_secure: bool
    session_store: str  # cookie|memory
    session_memory_max_records: int  # Cap for the in-process store

    # CSRF / caching
    csrf_enforce: bool
    cache_public_max_age: int  # Cache-Control max-age for anonymous pages

    # Identity provider (trusted issuer)
    idp_issuer: Optional[str]
    idp_audience: Optional[str]
    idp_jwks_url: Optional[str]
    idp_account_url: Optional[str]  # Template with {subject}
    idp_revoke_url: Optional[str]  # Template with {subject}
    idp_admin_token: Optional[str]
    idp_timeout_seconds: float

    @property
    def idp_configured(self) -> bool:
        """Verification needs an issuer, an audience and a key source."""
        return bool(self.idp_issuer and self.idp_audience and self.idp_jwks_url)


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load session/authentication configuration from environment variables.

    The identity provider is considered configured when IDP_ISSUER, IDP_AUDIENCE
    and IDP_JWKS_URL are all set.
    """
    public_base_url = _env_str("AUTH_PUBLIC_BASE_URL")
    # Default: secure cookies when base URL is https; otherwise allow local dev.
    cookie_secure = _env_bool("AUTH_COOKIE_SECURE", (public_base_url or "").startswith("https://"))

    ttl = _env_int("AUTH_SESSION_TTL_SECONDS", 5 * 24 * 3600)
    if ttl <= 60:
        ttl = 60

    store = (os.getenv("SESSION_STORE", "") or "cookie").strip().lower()
    if store not in SESSION_STORE_KINDS:
        raise ValueError(f"SESSION_STORE must be one of {', '.join(SESSION_STORE_KINDS)} (got {store!r})")

    max_records = _env_int("SESSION_MEMORY_MAX_RECORDS", 10000)
    if max_records < 1:
        max_records = 1

    max_age = _env_int("CACHE_PUBLIC_MAX_AGE", 300)
    if max_age < 0:
        max_age = 0

    try:
        timeout = float((os.getenv("IDP_TIMEOUT_SECONDS", "") or "10").strip())
    except ValueError:
        timeout = 10.0

    return AuthConfig(
        public_base_url=public_base_url,
        session_secret=_env_str("AUTH_SESSION_SECRET"),
        session_ttl_seconds=ttl,
        cookie_secure=cookie_secure,
        session_store=store,
        session_memory_max_records=max_records,
        csrf_enforce=_env_bool("CSRF_ENFORCE", True),
        cache_public_max_age=max_age,
        idp_issuer=_env_str("IDP_ISSUER"),
        idp_audience=_env_str("IDP_AUDIENCE"),
        idp_jwks_url=_env_str("IDP_JWKS_URL"),
        idp_account_url=_env_str("IDP_ACCOUNT_URL"),
        idp_revoke_url=_env_str("IDP_REVOKE_URL"),
        idp_admin_token=_env_str("IDP_ADMIN_TOKEN"),
        idp_timeout_seconds=timeout if timeout > 0 else 10.0,
    )
