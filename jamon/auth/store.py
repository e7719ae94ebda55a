from __future__ import annotations

import logging
import secrets
import threading
import time
from typing import Any, Dict, Optional, Protocol, Tuple

from jamon.auth.codec import SignedBlobCodec
from jamon.auth.config import AuthConfig, load_auth_config
from jamon.auth.errors import StoreFailure
from jamon.auth.models import Session

logger = logging.getLogger(__name__)

# Browsers drop cookies larger than this (name + value + attributes).
MAX_COOKIE_BYTES = 4096


def session_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-jamon_session" if cfg.cookie_secure else "jamon_session"


def session_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": value,
        "max_age": cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def clear_session_cookie_kwargs(cfg: AuthConfig) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


class SessionStore(Protocol):
    """
    Session persistence addressed by the value of the session cookie.

    Implementations raise `StoreFailure` when the backend is unusable.
    """

    async def get_session(self, cookie_value: Optional[str]) -> Session:
        """
        Load the session referenced by `cookie_value`.

        Missing, tampered or expired values yield a fresh empty session.
        """
        ...

    async def commit_session(self, session: Session) -> str:
        """Persist the session and return the cookie value to send back."""
        ...

    async def destroy_session(self, session: Session) -> None:
        """Invalidate the session. The caller clears the cookie."""
        ...

    async def regenerate_session(self, session: Session) -> Session:
        """
        Move the session's data under a new identity and invalidate the old one.

        Called on privilege change (login) so a cookie issued before the change
        never refers to the upgraded session. The returned session is uncommitted.
        """
        ...


class CookieSessionStore:
    """The signed cookie value is the whole session record."""

    def __init__(self, codec: SignedBlobCodec) -> None:
        self._codec = codec

    async def get_session(self, cookie_value: Optional[str]) -> Session:
        data = self._codec.decode_dict(cookie_value)
        if data is None:
            return Session()
        return Session(data=data, is_new=False)

    async def commit_session(self, session: Session) -> str:
        value = self._codec.encode(dict(session.data))
        if len(value) > MAX_COOKIE_BYTES:
            raise StoreFailure(f"Session too large for cookie storage ({len(value)} bytes)")
        return value

    async def destroy_session(self, session: Session) -> None:
        # Nothing is held server-side; clearing the cookie is the whole operation.
        session.data.clear()

    async def regenerate_session(self, session: Session) -> Session:
        return Session(data=dict(session.data))


def new_session_id() -> str:
    return secrets.token_urlsafe(24)


class MemorySessionStore:
    """
    Keyed in-process store: the cookie carries a signed random session id and the
    record lives here until it expires, is destroyed, or is evicted.

    Holds at most `max_records` sessions; committing past the cap evicts the least
    recently committed record. Suitable for a single process (dev/tests); records
    are lost on restart.
    """

    def __init__(self, codec: SignedBlobCodec, *, ttl_seconds: int, max_records: int = 10000) -> None:
        self._codec = codec
        self._ttl = ttl_seconds
        self._max_records = max(1, max_records)
        self._records: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _expire_locked(self, now: float) -> None:
        expired = [sid for sid, (exp, _) in self._records.items() if exp <= now]
        for sid in expired:
            del self._records[sid]

    def _evict_locked(self) -> None:
        while len(self._records) >= self._max_records:
            # Dicts keep insertion order and commits re-insert, so the first key is the stalest.
            sid = next(iter(self._records))
            del self._records[sid]
            logger.debug("Evicted session record (cap=%d)", self._max_records)

    def contains(self, session_id: str) -> bool:
        with self._lock:
            self._expire_locked(time.time())
            return session_id in self._records

    async def get_session(self, cookie_value: Optional[str]) -> Session:
        sid = self._codec.decode(cookie_value)
        if not isinstance(sid, str) or not sid:
            return Session()
        with self._lock:
            self._expire_locked(time.time())
            entry = self._records.get(sid)
            if entry is None:
                return Session()
            # Copy so uncommitted mutations never leak into the stored record.
            return Session(data=dict(entry[1]), session_id=sid, is_new=False)

    async def commit_session(self, session: Session) -> str:
        if not session.session_id:
            session.session_id = new_session_id()
        now = time.time()
        with self._lock:
            self._records.pop(session.session_id, None)
            self._expire_locked(now)
            self._evict_locked()
            self._records[session.session_id] = (now + self._ttl, dict(session.data))
        return self._codec.encode(session.session_id)

    async def destroy_session(self, session: Session) -> None:
        if not session.session_id:
            return
        with self._lock:
            self._records.pop(session.session_id, None)

    async def regenerate_session(self, session: Session) -> Session:
        await self.destroy_session(session)
        return Session(data=dict(session.data))


def build_session_store(cfg: AuthConfig) -> SessionStore:
    if not cfg.session_secret:
        raise StoreFailure("Session signing is not configured (AUTH_SESSION_SECRET)")
    codec = SignedBlobCodec(cfg.session_secret, max_age=cfg.session_ttl_seconds)
    if cfg.session_store == "memory":
        return MemorySessionStore(
            codec, ttl_seconds=cfg.session_ttl_seconds, max_records=cfg.session_memory_max_records
        )
    return CookieSessionStore(codec)


# Global store instance
_global_store: SessionStore | None = None
_global_store_lock = threading.Lock()


def get_session_store() -> SessionStore:
    """Get the process-wide session store, building it from config on first use."""
    global _global_store
    with _global_store_lock:
        if _global_store is None:
            cfg = load_auth_config()
            _global_store = build_session_store(cfg)
            logger.info("Session store initialized (kind=%s)", cfg.session_store)
        return _global_store


def set_session_store(store: SessionStore | None) -> None:
    """Replace (or with None, drop) the process-wide store."""
    global _global_store
    with _global_store_lock:
        _global_store = store
