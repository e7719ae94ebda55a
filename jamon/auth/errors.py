"""
Error taxonomy for the session lifecycle.

Library code raises these; `jamon.api.server` is the only place that maps them to
HTTP responses.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthError(Exception):
    """Base class; `code` is the stable identifier surfaced in JSON error bodies."""

    code = "auth_error"


class MissingCredential(AuthError):
    """The session carries no identity credential but the operation needs one."""

    code = "missing_credential"


class VerificationFailureKind(str, Enum):
    MALFORMED = "malformed"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ISSUER_MISMATCH = "issuer_mismatch"
    # Issuer could not be reached to complete the checks.
    UNAVAILABLE = "unavailable"


class VerificationFailure(AuthError):
    """
    The identity credential could not be verified.

    Every kind means "not authenticated". The kind is kept for logs only and must
    never be used to grant partial trust.
    """

    code = "verification_failed"

    def __init__(self, kind: VerificationFailureKind, detail: Optional[str] = None) -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)


class RevocationFailure(AuthError):
    """The provider was unreachable or rejected the revoke call. Local state is preserved."""

    code = "revocation_failed"


class StoreFailure(AuthError):
    """The session store is unusable; no session from this request can be trusted."""

    code = "store_unavailable"


class CsrfMismatch(AuthError):
    code = "csrf_failed"
