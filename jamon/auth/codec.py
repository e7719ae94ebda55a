from __future__ import annotations

from typing import Any, Dict, Optional

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

SESSION_SALT = "jamon-session-v1"


class SignedBlobCodec:
    """
    Encode/decode tamper-evident cookie values.

    The signature check is the trust boundary between client-held cookie values and
    server-side session state: `decode` returns None for anything that was not produced
    by `encode` with the same secret and salt, or that is older than `max_age` seconds.
    """

    def __init__(self, secret: str, *, salt: str = SESSION_SALT, max_age: Optional[int] = None) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._serializer = URLSafeTimedSerializer(secret_key=secret, salt=salt)
        self._max_age = max_age

    def encode(self, payload: Any) -> str:
        return self._serializer.dumps(payload)

    def decode(self, value: Optional[str]) -> Optional[Any]:
        if not value:
            return None
        try:
            return self._serializer.loads(value, max_age=self._max_age)
        except (BadSignature, BadTimeSignature, ValueError):
            return None

    def decode_dict(self, value: Optional[str]) -> Optional[Dict[str, Any]]:
        data = self.decode(value)
        return data if isinstance(data, dict) else None
