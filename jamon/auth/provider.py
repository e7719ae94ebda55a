"""
Identity-provider boundary and the process-wide provider handle.

The handle is initialized once (explicitly at startup, or lazily on first use) and
re-initialization is a no-op. Tests install a fake with `initialize_provider(fake)`
after `reset_provider()`.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class IdentityProvider(Protocol):
    """Protocol for the trusted issuer of identity credentials."""

    def verify_session_credential(self, credential: str, *, check_revoked: bool = True) -> Dict[str, Any]:
        """
        Verify an opaque session credential.

        Asserts the credential is cryptographically valid, unexpired, issued by the
        expected issuer for the expected audience, and (with `check_revoked`) not
        revoked.

        Returns:
            Verified claims; `sub` holds the canonical subject identifier.

        Raises:
            VerificationFailure: with the kind of failure.
        """
        ...

    def revoke_refresh_tokens(self, subject: str) -> None:
        """
        Revoke every refresh-capable credential of `subject`.

        Idempotent: revoking an already-revoked subject succeeds.

        Raises:
            RevocationFailure: provider unreachable or request rejected.
        """
        ...


_provider: IdentityProvider | None = None
_provider_lock = threading.Lock()


def initialize_provider(provider: Optional[IdentityProvider] = None) -> IdentityProvider:
    """
    Install the process-wide provider if none is installed yet.

    With no argument the default HTTP provider is built from `load_auth_config()`.
    Returns the installed provider (the existing one when already initialized).
    """
    global _provider
    with _provider_lock:
        if _provider is not None:
            return _provider
        if provider is None:
            from jamon.auth.config import load_auth_config
            from jamon.auth.idp import HttpIdentityProvider

            provider = HttpIdentityProvider.from_config(load_auth_config())
        _provider = provider
        logger.info("Identity provider initialized (%s)", type(provider).__name__)
        return _provider


def get_provider() -> IdentityProvider:
    if _provider is not None:
        return _provider
    return initialize_provider()


def is_initialized() -> bool:
    return _provider is not None


def reset_provider() -> None:
    global _provider
    with _provider_lock:
        _provider = None
