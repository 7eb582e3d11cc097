"""End-to-end tests for admin login, refresh, logout and the SMTP record routes."""

import os

from authcore.service.runtime import get_runtime

ADMIN_EMAIL = os.environ["ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["ADMIN_PASSWORD"]


def _login(client, password=ADMIN_PASSWORD, email=ADMIN_EMAIL, **kwargs):
    return client.post(
        "/admin/auth/login", json={"email": email, "password": password}, **kwargs
    )


def _with_cookies(client, rt=None, csrf=None):
    """Replace the client's cookie jar so each request carries exactly these values."""
    client.cookies.clear()
    if rt is not None:
        client.cookies.set("rt", rt)
    if csrf is not None:
        client.cookies.set("csrf", csrf)


def _csrf_headers(csrf):
    return {"X-CSRF-Token": csrf}


def _seed_csrf(client) -> str:
    resp = client.get("/csrf")
    assert resp.status_code == 200
    return resp.json()["data"]["csrf_token"]


class TestAdminLogin:
    def test_login_returns_access_token_and_refresh_cookie(self, client):
        resp = _login(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["token_type"] == "bearer"
        assert data["role"] == "admin"
        assert data["access_token"].count(".") == 2

        set_cookie = resp.headers["set-cookie"].lower()
        assert set_cookie.startswith("rt=")
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie
        assert "path=/" in set_cookie
        assert resp.headers["cache-control"] == "no-store"

    def test_email_is_matched_case_insensitively(self, client):
        assert _login(client, email="  ADMIN@Example.com ").status_code == 200

    def test_login_reuses_admin_profile(self, client):
        first = _login(client).json()["data"]
        second = _login(client).json()["data"]
        assert first["subject_id"] == second["subject_id"]
        assert first["session_id"] != second["session_id"]

    def test_wrong_password_is_unauthorized(self, client):
        resp = _login(client, password="wrong")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid credentials"
        assert "set-cookie" not in resp.headers

    def test_unknown_fields_rejected(self, client):
        resp = client.post(
            "/admin/auth/login",
            json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD, "role": "admin"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Invalid input"

    def test_lockout_after_five_failures(self, client):
        for _ in range(5):
            assert _login(client, password="wrong").status_code == 401
        locked = _login(client)
        assert locked.status_code == 429
        assert locked.json()["error"] == {
            "code": "rate_limited",
            "message": "Too many attempts. Try later.",
            "details": None,
        }

    def test_success_resets_failure_count(self, client):
        for _ in range(4):
            _login(client, password="wrong")
        assert _login(client).status_code == 200
        for _ in range(4):
            assert _login(client, password="wrong").status_code == 401
        assert _login(client).status_code == 200

    def test_lockout_is_per_source_address(self, client, monkeypatch):
        runtime = get_runtime()
        monkeypatch.setattr(runtime.settings, "trust_proxy_headers", True)
        for _ in range(5):
            _login(client, password="wrong", headers={"X-Forwarded-For": "203.0.113.9"})
        assert _login(client, headers={"X-Forwarded-For": "203.0.113.9"}).status_code == 429
        assert _login(client, headers={"X-Forwarded-For": "198.51.100.1"}).status_code == 200


class TestAdminRefresh:
    def test_refresh_rotates_session(self, client):
        login = _login(client)
        old_rt = login.cookies.get("rt")
        csrf = _seed_csrf(client)

        _with_cookies(client, rt=old_rt, csrf=csrf)
        resp = client.post("/admin/auth/refresh", headers=_csrf_headers(csrf))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["session_id"] != login.json()["data"]["session_id"]
        new_rt = resp.cookies.get("rt")
        assert new_rt and new_rt != old_rt

        store = get_runtime().store
        assert not store.get_session(login.json()["data"]["session_id"]).is_active
        assert store.get_session(data["session_id"]).is_active

    def test_replayed_refresh_token_is_rejected(self, client):
        old_rt = _login(client).cookies.get("rt")
        csrf = "csrf-value"
        _with_cookies(client, rt=old_rt, csrf=csrf)
        assert client.post("/admin/auth/refresh", headers=_csrf_headers(csrf)).status_code == 200

        _with_cookies(client, rt=old_rt, csrf=csrf)
        replay = client.post("/admin/auth/refresh", headers=_csrf_headers(csrf))
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "Unauthorized"

    def test_missing_or_mismatched_csrf_is_unauthorized(self, client):
        rt = _login(client).cookies.get("rt")

        _with_cookies(client, rt=rt)
        assert client.post("/admin/auth/refresh").status_code == 401

        _with_cookies(client, rt=rt, csrf="cookie-side")
        mismatch = client.post("/admin/auth/refresh", headers=_csrf_headers("header-side"))
        assert mismatch.status_code == 401

        # The session survives CSRF failures
        _with_cookies(client, rt=rt, csrf="same")
        assert client.post("/admin/auth/refresh", headers=_csrf_headers("same")).status_code == 200

    def test_missing_refresh_cookie_is_unauthorized(self, client):
        _with_cookies(client, csrf="same")
        assert client.post("/admin/auth/refresh", headers=_csrf_headers("same")).status_code == 401

    def test_admin_refresh_rejects_user_session(self, client):
        runtime = get_runtime()
        profile = runtime.store.upsert_profile("user@example.com", "user")
        _, user_rt = runtime.auth.sessions.create(profile.id, "user")

        _with_cookies(client, rt=user_rt, csrf="same")
        assert client.post("/admin/auth/refresh", headers=_csrf_headers("same")).status_code == 401
        _with_cookies(client, rt=user_rt, csrf="same")
        assert client.post("/auth/refresh", headers=_csrf_headers("same")).status_code == 200


class TestAdminLogout:
    def test_logout_revokes_and_clears_cookie(self, client):
        login = _login(client)
        rt = login.cookies.get("rt")
        _with_cookies(client, rt=rt, csrf="same")
        resp = client.post("/admin/auth/logout", headers=_csrf_headers("same"))
        assert resp.status_code == 200
        assert resp.json()["data"] == {"message": "logged out"}
        assert "max-age=0" in resp.headers["set-cookie"].lower()

        session_id = login.json()["data"]["session_id"]
        assert not get_runtime().store.get_session(session_id).is_active

        _with_cookies(client, rt=rt, csrf="same")
        assert client.post("/admin/auth/refresh", headers=_csrf_headers("same")).status_code == 401

    def test_logout_without_cookie_still_succeeds(self, client):
        _with_cookies(client, csrf="same")
        assert client.post("/admin/auth/logout", headers=_csrf_headers("same")).status_code == 200

    def test_logout_requires_csrf(self, client):
        rt = _login(client).cookies.get("rt")
        _with_cookies(client, rt=rt)
        assert client.post("/admin/auth/logout").status_code == 401


class TestSmtpAdmin:
    def _bearer(self, client):
        token = _login(client).json()["data"]["access_token"]
        return {"Authorization": f"Bearer {token}"}

    def test_requires_admin_bearer(self, client):
        assert client.get("/admin/smtp").status_code == 401
        assert client.get("/admin/smtp", headers={"Authorization": "Bearer junk"}).status_code == 401

        runtime = get_runtime()
        user_token = runtime.auth.tokens.issue_access("some-user", "user")
        forbidden = client.get("/admin/smtp", headers={"Authorization": f"Bearer {user_token}"})
        assert forbidden.status_code == 403

    def test_non_ascii_signature_is_unauthorized(self, client):
        token = _login(client).json()["data"]["access_token"]
        head, payload, _ = token.split(".")
        raw = f"Bearer {head}.{payload}.\u00e9\u00e9".encode("utf-8")
        resp = client.get("/admin/smtp", headers={"Authorization": raw})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_create_get_delete_cycle(self, client, monkeypatch):
        runtime = get_runtime()
        monkeypatch.setattr(runtime.email, "verify_config", lambda config: True)
        headers = self._bearer(client)

        assert client.get("/admin/smtp", headers=headers).status_code == 404

        resp = client.post(
            "/admin/smtp",
            headers=headers,
            json={"host": " smtp.example.com ", "port": 465, "username": "mailer", "password": "pw"},
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["host"] == "smtp.example.com"
        assert data["password_set"] is True
        assert "password" not in data

        fetched = client.get("/admin/smtp", headers=headers).json()["data"]
        assert fetched["port"] == 465
        assert runtime.email.is_configured

        assert client.delete("/admin/smtp", headers=headers).status_code == 200
        assert client.delete("/admin/smtp", headers=headers).status_code == 404

    def test_create_replaces_existing_record(self, client, monkeypatch):
        runtime = get_runtime()
        monkeypatch.setattr(runtime.email, "verify_config", lambda config: True)
        headers = self._bearer(client)
        first = {"host": "smtp.example.com", "port": 465, "username": "mailer", "password": "pw"}
        second = {"host": "mail.example.org", "port": 587, "username": "other", "password": "pw2"}
        assert client.post("/admin/smtp", headers=headers, json=first).status_code == 201
        assert client.post("/admin/smtp", headers=headers, json=second).status_code == 201

        stored = runtime.store.get_smtp_config()
        assert (stored.host, stored.port, stored.username) == ("mail.example.org", 587, "other")

    def test_create_requires_every_field(self, client):
        resp = client.post(
            "/admin/smtp",
            headers=self._bearer(client),
            json={"host": "smtp.example.com", "port": 587},
        )
        assert resp.status_code == 400

    def test_failed_verification_is_not_saved(self, client, monkeypatch):
        runtime = get_runtime()
        monkeypatch.setattr(runtime.email, "verify_config", lambda config: False)
        resp = client.post(
            "/admin/smtp",
            headers=self._bearer(client),
            json={"host": "smtp.example.com", "port": 587, "username": "u", "password": "bad"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "SMTP verification failed"
        assert runtime.store.get_smtp_config() is None

    def test_port_out_of_range_is_invalid(self, client):
        resp = client.post(
            "/admin/smtp",
            headers=self._bearer(client),
            json={"host": "smtp.example.com", "port": 70000, "username": "u", "password": "p"},
        )
        assert resp.status_code == 400


class TestSmtpPartialUpdate:
    def _bearer(self, client):
        token = _login(client).json()["data"]["access_token"]
        return {"Authorization": f"Bearer {token}"}

    def _seed(self, client, headers):
        resp = client.post(
            "/admin/smtp",
            headers=headers,
            json={"host": "smtp.example.com", "port": 465, "username": "mailer", "password": "pw"},
        )
        assert resp.status_code == 201

    def test_update_without_record_is_not_found(self, client, monkeypatch):
        runtime = get_runtime()
        monkeypatch.setattr(runtime.email, "verify_config", lambda config: True)
        resp = client.put("/admin/smtp", headers=self._bearer(client), json={"port": 587})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_update_with_no_fields_is_invalid(self, client, monkeypatch):
        runtime = get_runtime()
        monkeypatch.setattr(runtime.email, "verify_config", lambda config: True)
        headers = self._bearer(client)
        self._seed(client, headers)

        resp = client.put("/admin/smtp", headers=headers, json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"].startswith("Provide at least one field")

    def test_update_merges_into_stored_record(self, client, monkeypatch):
        runtime = get_runtime()
        monkeypatch.setattr(runtime.email, "verify_config", lambda config: True)
        headers = self._bearer(client)
        self._seed(client, headers)

        verified = []

        def capture(config):
            verified.append(config)
            return True

        monkeypatch.setattr(runtime.email, "verify_config", capture)
        resp = client.put("/admin/smtp", headers=headers, json={"port": 587})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["port"] == 587
        assert data["host"] == "smtp.example.com"
        assert data["username"] == "mailer"

        # The merged record, including the kept password, is what gets verified
        assert len(verified) == 1
        assert verified[0].password == "pw"
        assert runtime.store.get_smtp_config().password == "pw"

    def test_failed_verification_keeps_previous_record(self, client, monkeypatch):
        runtime = get_runtime()
        monkeypatch.setattr(runtime.email, "verify_config", lambda config: True)
        headers = self._bearer(client)
        self._seed(client, headers)

        monkeypatch.setattr(runtime.email, "verify_config", lambda config: False)
        resp = client.put("/admin/smtp", headers=headers, json={"password": "wrong"})
        assert resp.status_code == 400
        assert runtime.store.get_smtp_config().password == "pw"

    def test_blank_host_is_invalid(self, client, monkeypatch):
        runtime = get_runtime()
        monkeypatch.setattr(runtime.email, "verify_config", lambda config: True)
        headers = self._bearer(client)
        self._seed(client, headers)
        assert client.put("/admin/smtp", headers=headers, json={"host": "   "}).status_code == 400
