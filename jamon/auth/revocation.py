"""
Logout: revoke upstream, then destroy the local session.

    LoadSession -> CheckCsrf -> VerifyCredential -> RevokeAllForSubject -> DestroySession -> Commit

Each step either completes or raises, and nothing local is destroyed until the
identity provider has confirmed revocation. A failure (or a cancelled request) at
any earlier step leaves the session exactly as it was: a stuck session is safe, a
live credential that looks logged out is not.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from fastapi.responses import RedirectResponse

from jamon.auth.config import load_auth_config
from jamon.auth.csrf import extract_submitted_token, verify_csrf
from jamon.auth.deps import get_session_data
from jamon.auth.errors import RevocationFailure, StoreFailure
from jamon.auth.identity import verify_identity
from jamon.auth.provider import IdentityProvider, get_provider
from jamon.auth.store import SessionStore, clear_session_cookie_kwargs, get_session_store

logger = logging.getLogger(__name__)

LOGGED_OUT_LANDING = "/"


@dataclass(frozen=True)
class LogoutResult:
    subject: str
    session_id: Optional[str]


async def revoke_session(
    request: Request,
    *,
    store: Optional[SessionStore] = None,
    provider: Optional[IdentityProvider] = None,
    check_csrf: Optional[bool] = None,
) -> LogoutResult:
    """
    Run the logout sequence for the session of `request`.

    Raises:
        MissingCredential: no credential in the session (nothing touched).
        CsrfMismatch: submitted token does not match the session (nothing touched).
        VerificationFailure: credential not verifiable (nothing touched).
        RevocationFailure: provider did not revoke (session preserved).
        StoreFailure: session could not be loaded or destroyed.
    """
    cfg = load_auth_config()
    s = store or get_session_store()
    p = provider or get_provider()

    data = await get_session_data(request, require_credential=True, store=s)
    session = data.session

    if cfg.csrf_enforce if check_csrf is None else check_csrf:
        verify_csrf(session, await extract_submitted_token(request))

    identity = await verify_identity(data.identity_credential, provider=p)

    try:
        await asyncio.to_thread(p.revoke_refresh_tokens, identity.subject)
    except RevocationFailure:
        logger.warning("Refresh token revocation failed for subject=%s; local session preserved", identity.subject)
        raise
    except Exception as e:
        logger.exception("Refresh token revocation error for subject=%s; local session preserved", identity.subject)
        raise RevocationFailure(f"Revocation error ({type(e).__name__})") from e

    try:
        await s.destroy_session(session)
    except StoreFailure:
        raise
    except Exception as e:
        raise StoreFailure(f"Session destroy failed ({type(e).__name__})") from e

    logger.info("Logged out subject=%s (refresh tokens revoked, session destroyed)", identity.subject)
    return LogoutResult(subject=identity.subject, session_id=session.session_id)


async def revoke(
    request: Request,
    *,
    store: Optional[SessionStore] = None,
    provider: Optional[IdentityProvider] = None,
    check_csrf: Optional[bool] = None,
) -> RedirectResponse:
    """Logout and build the committed response: redirect to `/` and clear the session cookie."""
    await revoke_session(request, store=store, provider=provider, check_csrf=check_csrf)
    cfg = load_auth_config()
    resp = RedirectResponse(url=LOGGED_OUT_LANDING, status_code=303)
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**clear_session_cookie_kwargs(cfg))
    return resp
