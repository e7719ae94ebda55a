"""
HTTP surface for the session lifecycle.

The first anonymous `GET /` mints a CSRF token into a new session, sets the session
cookie and is `private, no-store`. Later anonymous requests carrying that cookie get
the same token back without a cookie and are `public` with `Vary: Cookie`, so a
cookie-keyed edge cache may serve them. Sessions holding a credential are never
cached. Login regenerates the session so a pre-login cookie is never upgraded.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse

from jamon.auth.config import load_auth_config
from jamon.auth.csrf import extract_submitted_token, generate_csrf_token, issue_if_anonymous, verify_csrf
from jamon.auth.deps import get_session_data
from jamon.auth.errors import (
    AuthError,
    CsrfMismatch,
    MissingCredential,
    RevocationFailure,
    StoreFailure,
    VerificationFailure,
)
from jamon.auth.identity import verify_identity
from jamon.auth.revocation import LOGGED_OUT_LANDING, revoke
from jamon.auth.store import get_session_store, session_cookie_kwargs

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
HOME_PATH = "/"

app = FastAPI(title="jamon session service")


def _error(status_code: int, err: AuthError) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content={"ok": False, "error": err.code})
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _redirect(url: str) -> RedirectResponse:
    resp = RedirectResponse(url=url, status_code=303)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _post_login_target(raw: Any) -> str:
    """
    Where to send the browser after login: a same-origin absolute path, else `/`.

    Scheme-relative (`//host`, `/\\host`) targets and anything with control
    characters fall back to the landing page.
    """
    target = str(raw or "").strip()
    if not target.startswith("/") or target.startswith(("//", "/\\")):
        return HOME_PATH
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in target):
        return HOME_PATH
    return target


@app.on_event("startup")
def _startup_initialize_auth() -> None:
    """
    Initialize the identity provider and session store once per process.
    Startup never fails on these; requests surface the errors instead.
    """
    try:
        from jamon.auth.provider import initialize_provider

        initialize_provider()
    except Exception as e:
        logger.warning("Identity provider initialization failed: %s", str(e))
    try:
        get_session_store()
    except StoreFailure as e:
        logger.warning("Session store unavailable: %s", str(e))


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming HTTP requests."""
    start_time = time.time()
    logger.debug("%s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/")
async def root_loader(request: Request) -> JSONResponse:
    """
    Page data for the layout: CSRF token and whether the session claims a login.

    Anonymous visitors get a token minted into their session on first visit (the only
    response that sets a cookie). Later anonymous responses are a pure function of the
    cookie and may be cached by a cookie-keyed edge cache; responses for sessions that
    carry a credential are private.
    """
    cfg = load_auth_config()
    cookie_value = None
    try:
        data = await get_session_data(request)
        session = data.session
        minted = session.csrf_token is None and not data.is_authenticated
        issue_if_anonymous(session)
        if minted:
            cookie_value = await get_session_store().commit_session(session)
        csrf, logged_in = session.csrf_token, data.is_authenticated
    except StoreFailure as e:
        # No session can be trusted; serve the anonymous view and mutate nothing.
        logger.warning("Session store failure on %s: %s", request.url.path, str(e))
        csrf, logged_in, cookie_value = None, False, None

    resp = JSONResponse(content={"csrf": csrf, "isLoggedIn": logged_in})
    if logged_in or cookie_value is not None:
        resp.headers["Cache-Control"] = "private, no-store"
    else:
        resp.headers["Cache-Control"] = f"public, max-age={cfg.cache_public_max_age}"
        resp.headers["Vary"] = "Cookie"
    if cookie_value is not None:
        resp.set_cookie(**session_cookie_kwargs(cfg, cookie_value))
    return resp


@app.post("/")
async def root_action(request: Request):
    """Start a login: attach a CSRF token to the session and send the user to the login page."""
    cfg = load_auth_config()
    try:
        data = await get_session_data(request)
        session = issue_if_anonymous(data.session)
        value = await get_session_store().commit_session(session)
    except StoreFailure as e:
        logger.warning("Session store failure on %s: %s", request.url.path, str(e))
        return _error(503, e)

    resp = _redirect(LOGIN_PATH)
    resp.set_cookie(**session_cookie_kwargs(cfg, value))
    return resp


@app.post("/login")
async def login(request: Request):
    """
    Complete a login: verify the provider-issued session credential and store it.

    Form fields: `credential`, `csrf` (or the X-CSRF-Token header), optional `next`.
    """
    cfg = load_auth_config()
    try:
        data = await get_session_data(request)
        session = data.session
        if cfg.csrf_enforce:
            verify_csrf(session, await extract_submitted_token(request))

        form = await request.form()
        credential = str(form.get("credential") or "").strip()
        next_path = _post_login_target(form.get("next"))

        try:
            identity = await verify_identity(credential)
        except VerificationFailure:
            return _redirect(LOGIN_PATH)

        store = get_session_store()
        session = await store.regenerate_session(session)
        session.identity_credential = credential
        session.csrf_token = generate_csrf_token()
        value = await store.commit_session(session)
    except CsrfMismatch as e:
        logger.info("Login rejected: %s", str(e))
        return _error(403, e)
    except StoreFailure as e:
        logger.warning("Session store failure on %s: %s", request.url.path, str(e))
        return _error(503, e)

    logger.info("Logged in subject=%s", identity.subject)
    resp = _redirect(next_path)
    resp.set_cookie(**session_cookie_kwargs(cfg, value))
    return resp


@app.get("/logout")
async def logout_page() -> RedirectResponse:
    return _redirect(LOGGED_OUT_LANDING)


@app.post("/logout")
async def logout(request: Request):
    """
    Revoke the subject's refresh tokens at the provider, then destroy the session.

    Failures never destroy the session: missing or unverifiable credentials send the
    client back to the anonymous landing page; provider or store failures are
    reported so the whole logout can be retried.
    """
    try:
        return await revoke(request)
    except MissingCredential:
        return _redirect(LOGGED_OUT_LANDING)
    except VerificationFailure as e:
        logger.info("Logout with unverifiable credential (kind=%s); session left intact", e.kind.value)
        return _redirect(LOGGED_OUT_LANDING)
    except CsrfMismatch as e:
        logger.info("Logout rejected: %s", str(e))
        return _error(403, e)
    except RevocationFailure as e:
        return _error(502, e)
    except StoreFailure as e:
        logger.warning("Session store failure on %s: %s", request.url.path, str(e))
        return _error(503, e)


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting session service on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
