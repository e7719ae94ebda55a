from __future__ import annotations

import asyncio
import logging
from typing import Optional

from jamon.auth.errors import VerificationFailure, VerificationFailureKind
from jamon.auth.models import Session, VerifiedIdentity
from jamon.auth.provider import IdentityProvider, get_provider

logger = logging.getLogger(__name__)


async def verify_identity(
    credential: Optional[str], *, provider: Optional[IdentityProvider] = None
) -> VerifiedIdentity:
    """
    Verify an identity credential against the trusted issuer.

    Fails closed: any error, including unexpected provider exceptions, raises
    `VerificationFailure`. No retries; callers send the client to an
    unauthenticated flow.
    """
    if not credential:
        raise VerificationFailure(VerificationFailureKind.MALFORMED, "empty credential")
    p = provider or get_provider()
    try:
        claims = await asyncio.to_thread(p.verify_session_credential, credential, check_revoked=True)
    except VerificationFailure as e:
        logger.info("Identity verification failed: kind=%s", e.kind.value)
        raise
    except Exception as e:
        logger.warning("Identity verification error (treated as unauthenticated): %s", type(e).__name__)
        raise VerificationFailure(VerificationFailureKind.UNAVAILABLE, type(e).__name__) from e

    subject = claims.get("sub") if isinstance(claims, dict) else None
    if not isinstance(subject, str) or not subject:
        logger.info("Identity verification failed: kind=%s", VerificationFailureKind.MALFORMED.value)
        raise VerificationFailure(VerificationFailureKind.MALFORMED, "missing subject")
    return VerifiedIdentity(subject=subject, claims=dict(claims))


async def authenticate_session(
    session: Session, *, provider: Optional[IdentityProvider] = None
) -> Optional[VerifiedIdentity]:
    """Verified identity of the session holder, or None when unauthenticated."""
    if session.identity_credential is None:
        return None
    try:
        return await verify_identity(session.identity_credential, provider=provider)
    except VerificationFailure:
        return None
