from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

import jamon.api.server as srv
from jamon.auth.errors import RevocationFailure
from jamon.auth.models import Session
from jamon.auth.store import get_session_store

COOKIE = "jamon_session"


def _client() -> TestClient:
    return TestClient(srv.app)


def _commit(data: dict) -> str:
    return asyncio.run(get_session_store().commit_session(Session(data=dict(data))))


def _load(value: str) -> Session:
    return asyncio.run(get_session_store().get_session(value))


def test_healthz() -> None:
    r = _client().get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_anonymous_get_mints_csrf_and_cookie_reuse_keeps_it() -> None:
    c = _client()
    r = c.get("/")
    assert r.status_code == 200
    body = r.json()
    assert body["isLoggedIn"] is False
    token = body["csrf"]
    assert token
    assert COOKIE in r.cookies
    assert "private" in r.headers["cache-control"]
    assert _load(r.cookies[COOKIE]).csrf_token == token

    # Same cookie: same token, no new cookie, cacheable per cookie.
    r2 = c.get("/")
    assert r2.json() == {"csrf": token, "isLoggedIn": False}
    assert "set-cookie" not in r2.headers
    assert r2.headers["cache-control"].startswith("public")
    assert r2.headers["vary"] == "Cookie"


def test_get_with_tampered_cookie_starts_fresh() -> None:
    c = _client()
    c.cookies.set(COOKIE, "garbage.value.sig")
    r = c.get("/")
    assert r.json()["isLoggedIn"] is False
    assert r.json()["csrf"]
    assert "set-cookie" in r.headers


def test_authenticated_get_is_private_and_mints_nothing() -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"idToken": "cred-u1"}))
    r = c.get("/")
    assert r.json() == {"csrf": None, "isLoggedIn": True}
    assert r.headers["cache-control"] == "private, no-store"
    assert "set-cookie" not in r.headers


def test_store_failure_on_get_serves_anonymous_view_without_cookie(monkeypatch) -> None:
    monkeypatch.delenv("AUTH_SESSION_SECRET", raising=False)
    from jamon.auth.config import load_auth_config

    load_auth_config.cache_clear()
    r = _client().get("/")
    assert r.status_code == 200
    assert r.json() == {"csrf": None, "isLoggedIn": False}
    assert "set-cookie" not in r.headers


def test_root_action_mints_csrf_and_redirects_to_login() -> None:
    c = _client()
    r = c.post("/", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/login"
    session = _load(r.cookies[COOKIE])
    assert session.csrf_token


def test_root_action_keeps_existing_token() -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok"}))
    r = c.post("/", follow_redirects=False)
    assert _load(r.cookies[COOKIE]).csrf_token == "tok"


def test_login_stores_verified_credential(fake_provider) -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok"}))
    r = c.post("/login", data={"csrf": "tok", "credential": "cred-u1", "next": "/account"}, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/account"
    session = _load(r.cookies[COOKIE])
    assert session.identity_credential == "cred-u1"
    # The anonymous token is rotated on login.
    assert session.csrf_token and session.csrf_token != "tok"


def test_login_regenerates_session_so_pre_login_cookie_stays_anonymous(fake_provider, memory_store) -> None:
    c = _client()
    r = c.get("/")
    pre_login = r.cookies[COOKIE]
    token = r.json()["csrf"]
    sid_before = _load(pre_login).session_id

    r = c.post("/login", data={"csrf": token, "credential": "cred-u1"}, follow_redirects=False)
    assert r.status_code == 303
    post_login = r.cookies[COOKIE]
    upgraded = _load(post_login)
    assert upgraded.identity_credential == "cred-u1"
    assert upgraded.session_id != sid_before
    assert upgraded.csrf_token != token

    stale = _load(pre_login)
    assert stale.is_new is True
    assert stale.identity_credential is None
    assert len(memory_store) == 1


@pytest.mark.parametrize(
    "next_path,expected",
    [
        ("/account?tab=1", "/account?tab=1"),
        ("", "/"),
        ("account", "/"),
        ("https://evil.test/", "/"),
        ("//evil.test", "/"),
        ("/\\evil.test", "/"),
        ("/a\r\nSet-Cookie: x=1", "/"),
    ],
)
def test_login_redirect_target_is_same_origin_path(fake_provider, next_path, expected) -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok"}))
    r = c.post("/login", data={"csrf": "tok", "credential": "cred-u1", "next": next_path}, follow_redirects=False)
    assert r.headers["location"] == expected


def test_memory_store_stays_bounded_under_cookieless_traffic(monkeypatch) -> None:
    from jamon.auth.config import load_auth_config

    monkeypatch.setenv("SESSION_STORE", "memory")
    monkeypatch.setenv("SESSION_MEMORY_MAX_RECORDS", "10")
    load_auth_config.cache_clear()
    for _ in range(50):
        r = _client().get("/")
        assert r.status_code == 200
    assert len(get_session_store()) == 10


def test_login_rejects_open_redirect(fake_provider) -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok"}))
    r = c.post("/login", data={"csrf": "tok", "credential": "cred-u1", "next": "//evil.test"}, follow_redirects=False)
    assert r.headers["location"] == "/"


def test_login_with_bad_credential_changes_nothing(fake_provider) -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok"}))
    r = c.post("/login", data={"csrf": "tok", "credential": "forged"}, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/login"
    assert "set-cookie" not in r.headers


def test_login_requires_csrf(fake_provider) -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok"}))
    r = c.post("/login", data={"credential": "cred-u1"}, follow_redirects=False)
    assert r.status_code == 403
    assert r.json() == {"ok": False, "error": "csrf_failed"}
    assert fake_provider.verify_calls == []


def test_logout_get_redirects_home() -> None:
    r = _client().get("/logout", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/"


def test_logout_end_to_end(fake_provider, memory_store) -> None:
    c = _client()
    value = _commit({"csrf": "tok", "idToken": "cred-u1"})
    c.cookies.set(COOKIE, value)
    r = c.post("/logout", data={"csrf": "tok"}, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/"
    assert r.headers["cache-control"] == "no-store"
    assert "Max-Age=0" in r.headers["set-cookie"]
    assert fake_provider.revoke_calls == ["u1"]
    assert len(memory_store) == 0

    # Replaying the old cookie yields an anonymous session.
    replay = _client()
    replay.cookies.set(COOKIE, value)
    assert replay.get("/").json()["isLoggedIn"] is False


def test_logout_with_csrf_header(fake_provider) -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok", "idToken": "cred-u1"}))
    r = c.post("/logout", headers={"X-CSRF-Token": "tok"}, follow_redirects=False)
    assert r.status_code == 303
    assert fake_provider.revoke_calls == ["u1"]


def test_logout_without_credential_redirects_without_side_effects(fake_provider, memory_store) -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok"}))
    r = c.post("/logout", data={"csrf": "tok"}, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/"
    assert "set-cookie" not in r.headers
    assert len(memory_store) == 1
    assert fake_provider.revoke_calls == []


def test_logout_with_bad_csrf_is_forbidden(fake_provider, memory_store) -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok", "idToken": "cred-u1"}))
    r = c.post("/logout", data={"csrf": "nope"}, follow_redirects=False)
    assert r.status_code == 403
    assert len(memory_store) == 1
    assert fake_provider.revoke_calls == []


def test_logout_with_unverifiable_credential_keeps_session(fake_provider, memory_store) -> None:
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok", "idToken": "forged"}))
    r = c.post("/logout", data={"csrf": "tok"}, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/"
    assert "set-cookie" not in r.headers
    assert len(memory_store) == 1
    assert fake_provider.revoke_calls == []


def test_logout_revocation_failure_reports_and_keeps_session(fake_provider, memory_store) -> None:
    fake_provider.revoke_error = RevocationFailure("provider unreachable")
    c = _client()
    c.cookies.set(COOKIE, _commit({"csrf": "tok", "idToken": "cred-u1"}))
    r = c.post("/logout", data={"csrf": "tok"}, follow_redirects=False)
    assert r.status_code == 502
    assert r.json() == {"ok": False, "error": "revocation_failed"}
    assert "set-cookie" not in r.headers
    assert len(memory_store) == 1
