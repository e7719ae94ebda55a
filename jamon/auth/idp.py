"""
Default identity provider: JWT session credentials verified against a JWKS, with an
HTTP admin API for revocation status and revoke-all-refresh-tokens.
"""

from __future__ import annotations

import json
import logging
import math
import time
from datetime import timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import jwt  # PyJWT
import requests
from dateutil import parser as date_parser

from jamon.auth.config import AuthConfig
from jamon.auth.errors import RevocationFailure, VerificationFailure, VerificationFailureKind

logger = logging.getLogger(__name__)

JWKS_CACHE_TTL_SECONDS = 3600
# Floor between forced refetches triggered by an unknown `kid`.
JWKS_MIN_REFRESH_SECONDS = 60

_jwks_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}


def _get_jwks(jwks_url: str, *, timeout: float, force: bool = False) -> Dict[str, Any]:
    """
    Fetch the JSON Web Key Set of the issuer.
    Caches result for 1 hour per URL; `force` refetches a cached set older than
    JWKS_MIN_REFRESH_SECONDS (key rotation).
    """
    ts, cached = _jwks_cache.get(jwks_url, (0.0, None))
    now = time.time()
    if cached is not None:
        max_age = JWKS_MIN_REFRESH_SECONDS if force else JWKS_CACHE_TTL_SECONDS
        if now - ts < max_age:
            return cached
    r = requests.get(jwks_url, timeout=timeout)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid JWKS")
    _jwks_cache[jwks_url] = (now, data)
    return data


def clear_jwks_cache() -> None:
    _jwks_cache.clear()


def _parse_valid_after(value: Any) -> Optional[float]:
    """
    `tokensValidAfterTime` may be epoch seconds (number or digit string) or ISO-8601.
    Non-finite values raise ValueError.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("boolean tokensValidAfterTime")
    if isinstance(value, (int, float)):
        ts = float(value)
    else:
        s = str(value).strip()
        try:
            ts = float(s)
        except ValueError:
            dt = date_parser.isoparse(s)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            ts = dt.timestamp()
    if not math.isfinite(ts):
        raise ValueError("non-finite tokensValidAfterTime")
    return ts


class HttpIdentityProvider:
    """
    Verifies RS256 session credentials and talks to the issuer's admin API.

    URL templates take a `{subject}` placeholder, e.g.
    `https://idp.example.com/admin/users/{subject}/revoke-refresh-tokens`.
    """

    def __init__(
        self,
        *,
        issuer: Optional[str],
        audience: Optional[str],
        jwks_url: Optional[str],
        account_url: Optional[str] = None,
        revoke_url: Optional[str] = None,
        admin_token: Optional[str] = None,
        timeout: float = 10.0,
        leeway_seconds: int = 0,
    ) -> None:
        self.issuer = issuer
        self.audience = audience
        self.jwks_url = jwks_url
        self.account_url = account_url
        self.revoke_url = revoke_url
        self._admin_token = admin_token
        self.timeout = timeout
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_config(cls, cfg: AuthConfig) -> "HttpIdentityProvider":
        if not cfg.idp_configured:
            logger.warning(
                "Identity provider is not configured (IDP_ISSUER/IDP_AUDIENCE/IDP_JWKS_URL); "
                "all credentials will fail verification"
            )
        return cls(
            issuer=cfg.idp_issuer,
            audience=cfg.idp_audience,
            jwks_url=cfg.idp_jwks_url,
            account_url=cfg.idp_account_url,
            revoke_url=cfg.idp_revoke_url,
            admin_token=cfg.idp_admin_token,
            timeout=cfg.idp_timeout_seconds,
        )

    def _admin_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._admin_token:
            headers["Authorization"] = f"Bearer {self._admin_token}"
        return headers

    def _subject_url(self, template: str, subject: str) -> str:
        return template.format(subject=quote(subject, safe=""))

    def _signing_key(self, credential: str) -> Any:
        try:
            hdr = jwt.get_unverified_header(credential)
        except jwt.InvalidTokenError as e:
            raise VerificationFailure(VerificationFailureKind.MALFORMED, "undecodable header") from e
        kid = str(hdr.get("kid") or "")
        if not kid:
            raise VerificationFailure(VerificationFailureKind.MALFORMED, "missing kid")

        # A miss on the cached set may be a key rotation: refetch once before rejecting.
        for force in (False, True):
            try:
                jwks = _get_jwks(str(self.jwks_url), timeout=self.timeout, force=force)
            except (requests.RequestException, ValueError) as e:
                raise VerificationFailure(VerificationFailureKind.UNAVAILABLE, "signing keys unavailable") from e
            keys = jwks.get("keys")
            if not isinstance(keys, list):
                raise VerificationFailure(VerificationFailureKind.UNAVAILABLE, "invalid JWKS keys")

            for k in keys:
                if isinstance(k, dict) and str(k.get("kid") or "") == kid:
                    return jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(k))
        raise VerificationFailure(VerificationFailureKind.MALFORMED, "unknown signing key (kid)")

    def verify_session_credential(self, credential: str, *, check_revoked: bool = True) -> Dict[str, Any]:
        if not (self.issuer and self.audience and self.jwks_url):
            raise VerificationFailure(VerificationFailureKind.UNAVAILABLE, "identity provider not configured")
        if not credential:
            raise VerificationFailure(VerificationFailureKind.MALFORMED, "empty credential")

        key = self._signing_key(credential)
        try:
            claims = jwt.decode(
                credential,
                key=key,
                algorithms=["RS256"],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway_seconds,
                options={
                    "require": ["exp", "iat", "iss", "aud", "sub"],
                },
            )
        except jwt.ExpiredSignatureError as e:
            raise VerificationFailure(VerificationFailureKind.EXPIRED) from e
        except (jwt.InvalidIssuerError, jwt.InvalidAudienceError) as e:
            raise VerificationFailure(VerificationFailureKind.ISSUER_MISMATCH, str(e)) from e
        except jwt.InvalidTokenError as e:
            raise VerificationFailure(VerificationFailureKind.MALFORMED, str(e)) from e

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise VerificationFailure(VerificationFailureKind.MALFORMED, "invalid sub")

        if check_revoked:
            self._check_not_revoked(subject, claims)
        return claims

    def _check_not_revoked(self, subject: str, claims: Dict[str, Any]) -> None:
        if not self.account_url:
            # Fail closed: a revocation check was requested but cannot be performed.
            raise VerificationFailure(VerificationFailureKind.UNAVAILABLE, "IDP_ACCOUNT_URL not configured")
        try:
            r = requests.get(
                self._subject_url(self.account_url, subject), headers=self._admin_headers(), timeout=self.timeout
            )
        except requests.RequestException as e:
            raise VerificationFailure(VerificationFailureKind.UNAVAILABLE, "account lookup failed") from e

        if r.status_code == 404:
            # Deleted accounts keep no valid sessions.
            raise VerificationFailure(VerificationFailureKind.REVOKED, "account not found")
        if r.status_code >= 400:
            raise VerificationFailure(VerificationFailureKind.UNAVAILABLE, f"account lookup status={r.status_code}")
        try:
            account = r.json()
        except ValueError as e:
            raise VerificationFailure(VerificationFailureKind.UNAVAILABLE, "invalid account response") from e
        if not isinstance(account, dict):
            raise VerificationFailure(VerificationFailureKind.UNAVAILABLE, "invalid account response")

        if account.get("disabled") is True:
            raise VerificationFailure(VerificationFailureKind.REVOKED, "account disabled")

        try:
            valid_after = _parse_valid_after(account.get("tokensValidAfterTime"))
        except (ValueError, OverflowError) as e:
            raise VerificationFailure(VerificationFailureKind.UNAVAILABLE, "invalid tokensValidAfterTime") from e
        if valid_after is None:
            return
        auth_time = claims.get("auth_time", claims.get("iat"))
        try:
            auth_ts = float(auth_time)
        except (TypeError, ValueError) as e:
            raise VerificationFailure(VerificationFailureKind.MALFORMED, "invalid auth_time") from e
        if auth_ts < valid_after:
            raise VerificationFailure(VerificationFailureKind.REVOKED)

    def revoke_refresh_tokens(self, subject: str) -> None:
        if not self.revoke_url:
            raise RevocationFailure("IDP_REVOKE_URL not configured")
        try:
            r = requests.post(
                self._subject_url(self.revoke_url, subject), headers=self._admin_headers(), timeout=self.timeout
            )
        except requests.RequestException as e:
            raise RevocationFailure(f"Revocation request failed ({type(e).__name__})") from e
        if r.status_code >= 400:
            # Avoid leaking sensitive info; include minimal context.
            raise RevocationFailure(f"Revocation rejected (status={r.status_code})")
