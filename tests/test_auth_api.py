"""End-to-end scenarios through the HTTP API."""

import pytest

from fintrack.core.config import settings
from fintrack.models import VerificationTokenType
from fintrack.services import email_service

from conftest import PASSWORD

NEW_PASSWORD = "AnotherPass123"


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client, email="user@example.com", password=PASSWORD, **extra):
    return client.post("/api/auth/login", json={"email": email, "password": password, **extra})


def _register(client, email="new@example.com", password=PASSWORD, confirm=None):
    return client.post(
        "/api/auth/register",
        json={
            "email": email,
            "password": password,
            "confirm_password": confirm if confirm is not None else password,
            "first_name": "Ada",
            "last_name": "Lovelace",
        },
    )


# ── Registration & verification ──────────────────────────────────────


def test_register_verify_login(client, latest_token):
    resp = _register(client)
    assert resp.status_code == 201, resp.text
    assert "user_id" in resp.json()

    # Not verified yet.
    resp = _login(client, email="new@example.com")
    assert resp.status_code == 403
    assert resp.json()["code"] == "EMAIL_NOT_VERIFIED"

    token = latest_token("new@example.com")
    resp = client.post("/api/auth/verify-email", json={"token": token})
    assert resp.status_code == 200

    resp = _login(client, email="new@example.com")
    assert resp.status_code == 200
    body = resp.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["email"] == "new@example.com"
    assert body["user"]["email_verified"] is True

    # Verification links are single use.
    resp = client.post("/api/auth/verify-email", json={"token": token})
    assert resp.status_code == 410


def test_register_duplicate_email(client, seed_user):
    seed_user(email="taken@example.com")
    resp = _register(client, email="TAKEN@example.com")
    assert resp.status_code == 409
    assert resp.json()["code"] == "EMAIL_EXISTS"


def test_register_password_mismatch_is_rejected(client):
    resp = _register(client, confirm="something-else")
    assert resp.status_code == 422


def test_register_weak_and_invalid_input(client):
    assert _register(client, password="short").status_code == 422
    assert _register(client, email="not-an-email").status_code == 422


def test_registration_is_rate_limited(client, monkeypatch):
    monkeypatch.setattr(settings, "REGISTRATION_RATE_LIMIT", 2)
    assert _register(client, email="a@example.com").status_code == 201
    assert _register(client, email="b@example.com").status_code == 201

    resp = _register(client, email="c@example.com")
    assert resp.status_code == 429
    assert resp.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert int(resp.headers["retry-after"]) > 0


def test_resend_verification(client, seed_user, latest_token):
    seed_user(email="pending@example.com", verified=False)

    resp = client.post("/api/auth/verify-email/resend", json={"email": "pending@example.com"})
    assert resp.status_code == 200
    assert latest_token("pending@example.com") is not None

    # Unknown emails look the same.
    resp = client.post("/api/auth/verify-email/resend", json={"email": "ghost@example.com"})
    assert resp.status_code == 200


def test_resend_for_verified_account_is_rejected(client, seed_user):
    seed_user()
    resp = client.post("/api/auth/verify-email/resend", json={"email": "user@example.com"})
    assert resp.status_code == 400


def test_invalid_verification_token(client):
    resp = client.post("/api/auth/verify-email", json={"token": "no-such-token"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "INVALID_TOKEN"


# ── Login, refresh, logout ───────────────────────────────────────────


def test_login_sets_cookies_and_returns_pair(client, seed_user):
    seed_user()
    resp = _login(client, remember_me=True)
    assert resp.status_code == 200
    body = resp.json()
    assert body["access_token"] and body["refresh_token"]
    assert body["expires_in"] == settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    set_cookie = " ".join(resp.headers.get_list("set-cookie"))
    assert f"{settings.ACCESS_TOKEN_COOKIE}=" in set_cookie
    assert f"{settings.REFRESH_TOKEN_COOKIE}=" in set_cookie
    assert "httponly" in set_cookie.lower()
    assert f"Path={settings.REFRESH_COOKIE_PATH}" in set_cookie


def test_wrong_password_and_unknown_email_look_identical(client, seed_user):
    seed_user()
    wrong = _login(client, password="wrong-password")
    unknown = _login(client, email="ghost@example.com")
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()
    assert "www-authenticate" in wrong.headers


def test_refresh_rotates_and_old_access_token_still_works(client, seed_user):
    seed_user()
    first = _login(client).json()
    client.cookies.clear()

    resp = client.post("/api/auth/refresh", json={"refresh_token": first["refresh_token"]})
    assert resp.status_code == 200
    second = resp.json()
    assert second["session_id"] == first["session_id"]
    assert second["refresh_token"] != first["refresh_token"]
    client.cookies.clear()

    assert client.get("/api/auth/me", headers=_bearer(first["access_token"])).status_code == 200
    assert client.get("/api/auth/me", headers=_bearer(second["access_token"])).status_code == 200

    # Replaying the rotated-out token burns the session.
    resp = client.post("/api/auth/refresh", json={"refresh_token": first["refresh_token"]})
    assert resp.status_code == 401
    assert resp.json()["code"] == "TOKEN_REUSE"
    resp = client.post("/api/auth/refresh", json={"refresh_token": second["refresh_token"]})
    assert resp.status_code == 404


def test_refresh_from_cookie(client, seed_user):
    seed_user()
    assert _login(client).status_code == 200

    resp = client.post("/api/auth/refresh")
    assert resp.status_code == 200, resp.text


def test_refresh_without_token(client):
    resp = client.post("/api/auth/refresh")
    assert resp.status_code == 401
    assert resp.json()["code"] == "INVALID_TOKEN"


def test_refresh_with_access_token_is_rejected(client, seed_user):
    seed_user()
    tokens = _login(client).json()
    client.cookies.clear()
    resp = client.post("/api/auth/refresh", json={"refresh_token": tokens["access_token"]})
    assert resp.status_code == 401


def test_logout_revokes_refresh_but_not_issued_access(client, seed_user):
    seed_user()
    tokens = _login(client).json()
    client.cookies.clear()

    resp = client.post("/api/auth/logout", headers=_bearer(tokens["access_token"]))
    assert resp.status_code == 200

    resp = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 404
    assert resp.json()["code"] == "SESSION_NOT_FOUND"

    # Access tokens are stateless; a single logout leaves them valid until expiry.
    assert client.get("/api/auth/me", headers=_bearer(tokens["access_token"])).status_code == 200


def test_logout_with_cookie_only(client, seed_user):
    seed_user()
    tokens = _login(client).json()

    # Only the refresh cookie travels to /api/auth/logout once the access cookie is gone.
    client.cookies.delete(settings.ACCESS_TOKEN_COOKIE)
    assert client.post("/api/auth/logout").status_code == 200
    client.cookies.clear()

    resp = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 404


def test_anonymous_logout_is_ok(client):
    assert client.post("/api/auth/logout").status_code == 200


def test_logout_all_revokes_every_device(client, seed_user):
    seed_user()
    laptop = _login(client).json()
    phone = _login(client).json()
    client.cookies.clear()

    resp = client.delete("/api/auth/sessions", headers=_bearer(laptop["access_token"]))
    assert resp.status_code == 200

    for tokens in (laptop, phone):
        resp = client.get("/api/auth/me", headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 401
        resp = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 404

    fresh = _login(client).json()
    client.cookies.clear()
    assert client.get("/api/auth/me", headers=_bearer(fresh["access_token"])).status_code == 200


# ── Lockout ──────────────────────────────────────────────────────────


def test_lockout_and_automatic_unlock(client, seed_user, expire_lock):
    seed_user()
    for _ in range(settings.MAX_FAILED_LOGIN_ATTEMPTS):
        assert _login(client, password="wrong-password").status_code == 401

    resp = _login(client)
    assert resp.status_code == 423
    assert resp.json()["code"] == "ACCOUNT_LOCKED"

    expire_lock("user@example.com")

    assert _login(client).status_code == 200
    # Counter was reset: one more mistake does not re-lock.
    assert _login(client, password="wrong-password").status_code == 401
    assert _login(client).status_code == 200


# ── Passwords ────────────────────────────────────────────────────────


def test_password_reset_flow(client, seed_user, latest_token):
    seed_user()
    old = _login(client).json()
    client.cookies.clear()

    resp = client.post("/api/auth/password/forgot", json={"email": "user@example.com"})
    assert resp.status_code == 200
    token = latest_token("user@example.com", VerificationTokenType.PASSWORD_RESET)
    assert token

    resp = client.post(
        "/api/auth/password/reset",
        json={"token": token, "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
    )
    assert resp.status_code == 200

    assert client.get("/api/auth/me", headers=_bearer(old["access_token"])).status_code == 401
    resp = client.post("/api/auth/refresh", json={"refresh_token": old["refresh_token"]})
    assert resp.status_code == 404
    assert _login(client).status_code == 401
    assert _login(client, password=NEW_PASSWORD).status_code == 200

    # Reset links are single use.
    resp = client.post(
        "/api/auth/password/reset",
        json={"token": token, "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
    )
    assert resp.status_code == 410


def test_forgot_password_unknown_email_looks_successful(client):
    resp = client.post("/api/auth/password/forgot", json={"email": "ghost@example.com"})
    assert resp.status_code == 200


def test_forgot_password_is_rate_limited_per_account(client, seed_user):
    seed_user()
    for _ in range(settings.PASSWORD_RESET_RATE_LIMIT):
        assert client.post("/api/auth/password/forgot", json={"email": "user@example.com"}).status_code == 200

    resp = client.post("/api/auth/password/forgot", json={"email": "user@example.com"})
    assert resp.status_code == 429
    assert "retry-after" in resp.headers


def test_password_reset_mismatch_is_rejected(client):
    resp = client.post(
        "/api/auth/password/reset",
        json={"token": "whatever", "new_password": NEW_PASSWORD, "confirm_password": "different1"},
    )
    assert resp.status_code == 422


def test_change_password(client, seed_user):
    seed_user()
    current = _login(client).json()
    other = _login(client).json()
    client.cookies.clear()

    resp = client.post(
        "/api/auth/password/change",
        headers=_bearer(current["access_token"]),
        json={
            "current_password": PASSWORD,
            "new_password": NEW_PASSWORD,
            "confirm_password": NEW_PASSWORD,
        },
    )
    assert resp.status_code == 200, resp.text
    fresh = resp.json()
    client.cookies.clear()
    assert fresh["session_id"] == current["session_id"]

    assert client.get("/api/auth/me", headers=_bearer(fresh["access_token"])).status_code == 200
    assert client.get("/api/auth/me", headers=_bearer(other["access_token"])).status_code == 401
    resp = client.post("/api/auth/refresh", json={"refresh_token": other["refresh_token"]})
    assert resp.status_code == 404


def test_change_password_wrong_current(client, seed_user):
    seed_user()
    tokens = _login(client).json()
    client.cookies.clear()
    resp = client.post(
        "/api/auth/password/change",
        headers=_bearer(tokens["access_token"]),
        json={
            "current_password": "not-it-at-all",
            "new_password": NEW_PASSWORD,
            "confirm_password": NEW_PASSWORD,
        },
    )
    assert resp.status_code == 401


def test_change_password_requires_authentication(client):
    resp = client.post(
        "/api/auth/password/change",
        json={"current_password": PASSWORD, "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
    )
    assert resp.status_code == 401


# ── Sessions ─────────────────────────────────────────────────────────


def test_list_and_revoke_sessions(client, seed_user):
    seed_user()
    current = _login(client).json()
    other = _login(client).json()
    client.cookies.clear()

    resp = client.get("/api/auth/sessions", headers=_bearer(current["access_token"]))
    assert resp.status_code == 200
    sessions = resp.json()["sessions"]
    assert {s["id"] for s in sessions} == {current["session_id"], other["session_id"]}
    assert [s["current"] for s in sessions if s["id"] == current["session_id"]] == [True]

    # The current session must be closed through logout instead.
    resp = client.delete(f"/api/auth/sessions/{current['session_id']}", headers=_bearer(current["access_token"]))
    assert resp.status_code == 400

    resp = client.delete(f"/api/auth/sessions/{other['session_id']}", headers=_bearer(current["access_token"]))
    assert resp.status_code == 200
    resp = client.post("/api/auth/refresh", json={"refresh_token": other["refresh_token"]})
    assert resp.status_code == 404

    sessions = client.get("/api/auth/sessions", headers=_bearer(current["access_token"])).json()["sessions"]
    assert [s["id"] for s in sessions] == [current["session_id"]]


def test_cannot_revoke_another_users_session(client, seed_user):
    seed_user(email="alice@example.com")
    seed_user(email="bob@example.com")
    alice = _login(client, email="alice@example.com").json()
    bob = _login(client, email="bob@example.com").json()
    client.cookies.clear()

    resp = client.delete(f"/api/auth/sessions/{alice['session_id']}", headers=_bearer(bob["access_token"]))
    assert resp.status_code == 404

    resp = client.post("/api/auth/refresh", json={"refresh_token": alice["refresh_token"]})
    assert resp.status_code == 200


def test_me_returns_profile(client, seed_user):
    user_id = seed_user()
    tokens = _login(client).json()
    client.cookies.clear()

    resp = client.get("/api/auth/me", headers=_bearer(tokens["access_token"]))
    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == str(user_id)
    assert body["email"] == "user@example.com"


# ── Email delivery failures ──────────────────────────────────────────


def _refuse_smtp(monkeypatch):
    async def refuse(*args, **kwargs):
        raise OSError("Connection refused")

    monkeypatch.setattr(settings, "EMAIL_ENABLED", True)
    monkeypatch.setattr(email_service.aiosmtplib, "send", refuse)


@pytest.fixture
def smtp_down(monkeypatch):
    _refuse_smtp(monkeypatch)


def test_logout_all_completes_when_smtp_is_down(client, seed_user, smtp_down):
    seed_user()
    tokens = _login(client).json()
    client.cookies.clear()

    resp = client.delete("/api/auth/sessions", headers=_bearer(tokens["access_token"]))
    assert resp.status_code == 200

    assert client.get("/api/auth/me", headers=_bearer(tokens["access_token"])).status_code == 401
    resp = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 404


def test_change_password_completes_when_smtp_is_down(client, seed_user, smtp_down):
    seed_user()
    current = _login(client).json()
    other = _login(client).json()
    client.cookies.clear()

    resp = client.post(
        "/api/auth/password/change",
        headers=_bearer(current["access_token"]),
        json={
            "current_password": PASSWORD,
            "new_password": NEW_PASSWORD,
            "confirm_password": NEW_PASSWORD,
        },
    )
    assert resp.status_code == 200, resp.text
    client.cookies.clear()

    assert client.get("/api/auth/me", headers=_bearer(other["access_token"])).status_code == 401
    assert _login(client, password=NEW_PASSWORD).status_code == 200


def test_password_reset_completes_when_smtp_is_down(client, seed_user, latest_token, monkeypatch):
    seed_user()
    old = _login(client).json()
    client.cookies.clear()
    assert client.post("/api/auth/password/forgot", json={"email": "user@example.com"}).status_code == 200
    token = latest_token("user@example.com", VerificationTokenType.PASSWORD_RESET)

    _refuse_smtp(monkeypatch)
    resp = client.post(
        "/api/auth/password/reset",
        json={"token": token, "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
    )
    assert resp.status_code == 200

    assert client.get("/api/auth/me", headers=_bearer(old["access_token"])).status_code == 401
    assert _login(client, password=NEW_PASSWORD).status_code == 200


def test_password_changed_email_escapes_client_ip(client, seed_user, monkeypatch):
    sent = []

    async def capture(to, subject, html_body):
        sent.append((subject, html_body))

    monkeypatch.setattr(email_service, "send_email", capture)
    seed_user()
    tokens = _login(client).json()
    client.cookies.clear()

    resp = client.post(
        "/api/auth/password/change",
        headers={**_bearer(tokens["access_token"]), "X-Forwarded-For": "<script>alert(1)</script>"},
        json={
            "current_password": PASSWORD,
            "new_password": NEW_PASSWORD,
            "confirm_password": NEW_PASSWORD,
        },
    )
    assert resp.status_code == 200, resp.text

    bodies = [body for subject, body in sent if "password was changed" in subject]
    assert len(bodies) == 1
    body = bodies[0]
    assert "<script>" not in body
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in body
