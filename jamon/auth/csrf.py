from __future__ import annotations

import hmac
import logging
import secrets
from typing import Optional

from fastapi import Request

from jamon.auth.errors import CsrfMismatch
from jamon.auth.models import Session

logger = logging.getLogger(__name__)

CSRF_HEADER = "X-CSRF-Token"
CSRF_FORM_FIELD = "csrf"


def should_issue_csrf(is_authenticated: bool) -> bool:
    """
    Cache policy for token issuance.

    Only anonymous sessions get a token from this path. Anonymous responses are
    served from the shared public cache and must not differ per user; responses for
    sessions that carry a credential are private anyway and keep whatever token the
    session already holds.
    """
    return not is_authenticated


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def issue_if_anonymous(session: Session) -> Session:
    """
    Mint a CSRF token into `session` when the cache policy allows it.

    Existing tokens are kept, so the token a client sees is whatever the store holds:
    a second call only returns the first call's token if that session was committed.
    """
    if not should_issue_csrf(session.identity_credential is not None):
        return session
    if session.csrf_token is None:
        session.csrf_token = generate_csrf_token()
    return session


def verify_csrf(session: Session, submitted: Optional[str]) -> None:
    expected = session.csrf_token
    if not expected:
        raise CsrfMismatch("Session has no CSRF token")
    if not submitted:
        raise CsrfMismatch("Missing CSRF token")
    if not hmac.compare_digest(expected.encode("utf-8"), submitted.encode("utf-8")):
        raise CsrfMismatch("CSRF token mismatch")


async def extract_submitted_token(request: Request) -> Optional[str]:
    """Header first, then the `csrf` form field of urlencoded/multipart bodies."""
    token = (request.headers.get(CSRF_HEADER) or "").strip()
    if token:
        return token
    content_type = (request.headers.get("content-type") or "").lower()
    if content_type.startswith("application/x-www-form-urlencoded") or content_type.startswith("multipart/form-data"):
        form = await request.form()
        value = form.get(CSRF_FORM_FIELD)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
