from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Record keys. Other keys belong to provider bookkeeping and are carried through untouched.
CSRF_KEY = "csrf"
CREDENTIAL_KEY = "idToken"


@dataclass
class Session:
    """
    Server-signed key/value session record.

    `session_id` is only set by keyed stores; cookie-backed sessions have none.
    `is_new` is True when no valid cookie was presented.
    """

    data: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    is_new: bool = True

    def get(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def unset(self, key: str) -> None:
        self.data.pop(key, None)

    @property
    def csrf_token(self) -> Optional[str]:
        v = self.data.get(CSRF_KEY)
        return v if isinstance(v, str) and v else None

    @csrf_token.setter
    def csrf_token(self, value: str) -> None:
        self.data[CSRF_KEY] = value

    @property
    def identity_credential(self) -> Optional[str]:
        v = self.data.get(CREDENTIAL_KEY)
        return v if isinstance(v, str) and v else None

    @identity_credential.setter
    def identity_credential(self, value: str) -> None:
        self.data[CREDENTIAL_KEY] = value


@dataclass(frozen=True)
class VerifiedIdentity:
    """Result of a successful verification. Never persisted."""

    subject: str
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionData:
    """What request handlers read from an incoming request."""

    session: Session
    csrf_token: Optional[str]
    identity_credential: Optional[str]

    @property
    def is_authenticated(self) -> bool:
        """
        True when the session claims an identity.

        Presence only: this drives cache policy, not authorization. Use
        `jamon.auth.identity.verify_identity` before trusting the credential.
        """
        return self.identity_credential is not None
