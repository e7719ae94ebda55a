"""
Pytest config.

Pins the repo root on sys.path so `import jamon` works when invoking a global
`pytest` entrypoint without installing the package, and resets every piece of
process-wide auth state (config cache, provider handle, session store, JWKS cache)
around each test.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

TEST_SECRET = "test-secret-key-for-testing-purposes-only"


def _reset_auth_state() -> None:
    from jamon.auth.config import load_auth_config
    from jamon.auth.idp import clear_jwks_cache
    from jamon.auth.provider import reset_provider
    from jamon.auth.store import set_session_store

    load_auth_config.cache_clear()
    reset_provider()
    set_session_store(None)
    clear_jwks_cache()


@pytest.fixture(autouse=True)
def _auth_env(monkeypatch: pytest.MonkeyPatch):
    """
    Every test starts from a known environment: signing secret set, no identity
    provider configured, cookie store, CSRF enforced.
    """
    for name in (
        "AUTH_PUBLIC_BASE_URL",
        "AUTH_COOKIE_SECURE",
        "AUTH_SESSION_TTL_SECONDS",
        "SESSION_STORE",
        "SESSION_MEMORY_MAX_RECORDS",
        "CSRF_ENFORCE",
        "CACHE_PUBLIC_MAX_AGE",
        "IDP_ISSUER",
        "IDP_AUDIENCE",
        "IDP_JWKS_URL",
        "IDP_ACCOUNT_URL",
        "IDP_REVOKE_URL",
        "IDP_ADMIN_TOKEN",
        "IDP_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AUTH_SESSION_SECRET", TEST_SECRET)
    _reset_auth_state()
    yield
    _reset_auth_state()


class FakeIdentityProvider:
    """
    In-memory identity provider.

    `tokens` maps credential -> subject. Revoking a subject makes its credentials
    fail verification with REVOKED; revoking twice is a no-op, like the real thing.
    """

    def __init__(self, tokens: Optional[Dict[str, str]] = None) -> None:
        self.tokens: Dict[str, str] = dict(tokens or {})
        self.revoked: Set[str] = set()
        self.verify_calls: List[str] = []
        self.revoke_calls: List[str] = []
        self.verify_error: Optional[Exception] = None
        self.revoke_error: Optional[Exception] = None

    def verify_session_credential(self, credential: str, *, check_revoked: bool = True) -> Dict[str, Any]:
        from jamon.auth.errors import VerificationFailure, VerificationFailureKind

        self.verify_calls.append(credential)
        if self.verify_error is not None:
            raise self.verify_error
        subject = self.tokens.get(credential)
        if subject is None:
            raise VerificationFailure(VerificationFailureKind.MALFORMED)
        if check_revoked and subject in self.revoked:
            raise VerificationFailure(VerificationFailureKind.REVOKED)
        return {"sub": subject, "iss": "https://idp.test"}

    def revoke_refresh_tokens(self, subject: str) -> None:
        self.revoke_calls.append(subject)
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.add(subject)


@pytest.fixture
def fake_provider() -> FakeIdentityProvider:
    """A FakeIdentityProvider installed as the process-wide provider."""
    from jamon.auth.provider import initialize_provider

    p = FakeIdentityProvider({"cred-u1": "u1", "cred-u2": "u2"})
    initialize_provider(p)
    return p


@pytest.fixture
def memory_store(monkeypatch: pytest.MonkeyPatch):
    """Switch to the keyed in-memory store so destroy is observable server-side."""
    from jamon.auth.config import load_auth_config
    from jamon.auth.store import get_session_store, set_session_store

    monkeypatch.setenv("SESSION_STORE", "memory")
    load_auth_config.cache_clear()
    set_session_store(None)
    return get_session_store()


@pytest.fixture
def provider_factory():
    """Build extra (uninstalled) fake providers."""
    return FakeIdentityProvider
