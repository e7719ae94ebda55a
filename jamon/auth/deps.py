from __future__ import annotations

from typing import Optional

from fastapi import Request

from jamon.auth.config import load_auth_config
from jamon.auth.errors import MissingCredential, StoreFailure
from jamon.auth.models import SessionData
from jamon.auth.store import SessionStore, get_session_store, session_cookie_name


async def get_session_data(
    request: Request,
    *,
    require_credential: bool = False,
    store: Optional[SessionStore] = None,
) -> SessionData:
    """
    Load the session referenced by the request cookie.

    A missing or invalid cookie yields a fresh empty session; nothing is written
    back here, callers decide whether to commit.

    Raises:
        MissingCredential: `require_credential` is set and the session has no credential.
        StoreFailure: the session store is unusable.
    """
    cfg = load_auth_config()
    s = store or get_session_store()
    try:
        session = await s.get_session(request.cookies.get(session_cookie_name(cfg)))
    except StoreFailure:
        raise
    except Exception as e:
        raise StoreFailure(f"Session load failed ({type(e).__name__})") from e
    credential = session.identity_credential
    if require_credential and credential is None:
        raise MissingCredential("Session has no identity credential")
    return SessionData(session=session, csrf_token=session.csrf_token, identity_credential=credential)
