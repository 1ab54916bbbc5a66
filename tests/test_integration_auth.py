"""Integration tests for the authentication flow over HTTP.

Covers:
- Registration and login
- Current-user lookup with bearer tokens
- Refresh token rotation and logout
- Password reset and change
- Email verification
- Per-IP rate limiting of the credential-checking routes
"""

import asyncio

import pytest

from conftest import STRONG_PASSWORD


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def _login(client, email="user@example.com", password=STRONG_PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


class TestRegistration:
    """Tests for POST /v1/auth/register."""

    def test_register_returns_profile_and_tokens(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "New.User@Example.com",
                "password": STRONG_PASSWORD,
                "firstName": "New",
                "lastName": "User",
                "department": "finance",
                "companyId": "acme",
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "User registered successfully"
        data = body["data"]
        assert data["token"]
        assert data["refreshToken"]
        assert data["expiresIn"] == 24 * 60 * 60
        user = data["user"]
        assert user["email"] == "new.user@example.com"
        assert user["role"] == "employee"
        assert user["department"] == "finance"
        assert user["companyId"] == "acme"
        assert user["permissions"] == [
            "read",
            "financial:read",
            "financial:write",
            "financial:delete",
        ]
        assert user["isActive"] is True
        assert user["emailVerified"] is False

    def test_password_hash_never_returned(self, client, register_user):
        data = register_user()
        assert "password" not in str(data["user"]).lower()
        assert "$argon2" not in str(data)

    def test_duplicate_email_conflicts(self, client, register_user):
        """Email uniqueness ignores case."""
        register_user(email="dup@example.com")
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "DUP@example.com",
                "password": STRONG_PASSWORD,
                "firstName": "A",
                "lastName": "B",
            },
        )

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "User with this email already exists"
        assert body["error"]["code"] == "conflict"

    def test_invalid_email_is_validation_error(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "invalid-email",
                "password": STRONG_PASSWORD,
                "firstName": "A",
                "lastName": "B",
            },
        )

        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Validation failed"
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["field"] == "email"

    def test_weak_password_lists_every_violation(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "weak@example.com", "password": "short", "firstName": "A", "lastName": "B"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Password does not meet requirements"
        assert body["error"]["details"]["errors"] == [
            "Password must be at least 8 characters long",
            "Password must contain at least one uppercase letter",
            "Password must contain at least one number",
            "Password must contain at least one special character",
        ]

    @pytest.mark.parametrize("role", ["admin", "super_admin", "manager"])
    def test_privileged_roles_cannot_be_self_assigned(self, client, role):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "climber@example.com",
                "password": STRONG_PASSWORD,
                "firstName": "A",
                "lastName": "B",
                "role": role,
            },
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Role cannot be self-assigned"

    def test_viewer_role_may_be_requested(self, register_user):
        data = register_user(email="viewer@example.com", role="viewer")
        assert data["user"]["role"] == "viewer"
        assert data["user"]["permissions"] == ["read"]

    def test_unknown_department_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "dept@example.com",
                "password": STRONG_PASSWORD,
                "firstName": "A",
                "lastName": "B",
                "department": "marketing",
            },
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid department"

    def test_registration_can_be_disabled(self, client, runtime):
        runtime.settings.allow_registration = False
        response = client.post(
            "/v1/auth/register",
            json={"email": "x@example.com", "password": STRONG_PASSWORD, "firstName": "A", "lastName": "B"},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_registration_sends_verification_email(self, register_user, runtime):
        register_user(email="mail@example.com")
        assert runtime.email.outbox[-1] == ("mail@example.com", "Verify your ERP Platform email")
        assert len(runtime.store.verification_tokens) == 1


class TestLoginFlow:
    """Tests for POST /v1/auth/login."""

    def test_register_then_login(self, client, register_user):
        register_user(email="a@b.com", password="Abc12345!")

        response = _login(client, "a@b.com", "Abc12345!")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["token"]
        assert body["data"]["refreshToken"]
        assert body["data"]["sessionId"]
        assert body["data"]["user"]["lastLoginAt"]

    def test_wrong_password_is_generic_401(self, client, register_user):
        register_user(email="a@b.com", password="Abc12345!")

        response = _login(client, "a@b.com", "Wrong12345!")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Invalid credentials"
        assert body["error"]["code"] == "unauthorized"

    def test_unknown_email_matches_wrong_password(self, client, register_user):
        register_user()
        unknown = _login(client, "nobody@example.com")
        wrong = _login(client, "user@example.com", "Wrong12345!")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_inactive_account_cannot_login(self, client, register_user, runtime):
        data = register_user()
        runtime.store.set_subject_active(data["user"]["id"], False)

        response = _login(client)

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid credentials"

    def test_email_lookup_is_case_insensitive(self, client, register_user):
        register_user(email="case@example.com")
        assert _login(client, "  CASE@Example.COM ").status_code == 200

    def test_remember_me_extends_token_lifetime(self, client, register_user):
        register_user()
        response = _login(client, rememberMe=True)
        assert response.json()["data"]["expiresIn"] == 7 * 24 * 60 * 60

    def test_unverified_email_blocked_when_required(self, client, register_user, runtime):
        register_user()
        runtime.settings.require_email_verification = True

        response = _login(client)

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid credentials"
        failures = runtime.store.list_security_events(event="LOGIN_FAILURE")
        assert failures[0].detail["reason"] == "email_not_verified"

    def test_login_records_audit_events(self, client, register_user, runtime):
        data = register_user()
        _login(client, password="Wrong12345!")
        _login(client)

        events = [e.event for e in runtime.store.list_security_events(subject_id=data["user"]["id"])]
        assert "LOGIN_FAILURE" in events
        assert "LOGIN_SUCCESS" in events


class TestCurrentUser:
    """Tests for GET /v1/auth/me and bearer authentication."""

    def test_me_returns_profile(self, client, register_user):
        data = register_user()
        response = client.get("/v1/auth/me", headers=auth_header(data["token"]))

        assert response.status_code == 200
        assert response.json()["data"]["id"] == data["user"]["id"]

    def test_missing_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["message"] == "Access token required"

    def test_malformed_header(self, client, register_user):
        data = register_user()
        response = client.get("/v1/auth/me", headers={"Authorization": f"Token {data['token']}"})

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid authorization header"

    def test_garbage_token(self, client):
        response = client.get("/v1/auth/me", headers=auth_header("not.a.jwt"))

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token"

    def test_token_of_deactivated_subject_rejected(self, client, register_user, runtime):
        data = register_user()
        runtime.store.set_subject_active(data["user"]["id"], False)

        response = client.get("/v1/auth/me", headers=auth_header(data["token"]))

        assert response.status_code == 401
        assert response.json()["message"] == "User not found or inactive"

    def test_role_change_is_seen_without_new_token(self, client, register_user, runtime):
        """Identity comes from the stored subject, not from stale claims."""
        data = register_user()
        runtime.store.update_subject_role(data["user"]["id"], "manager", ["read", "write"])

        response = client.get("/v1/auth/me", headers=auth_header(data["token"]))

        assert response.json()["data"]["role"] == "manager"


class TestTokenRefresh:
    """Tests for POST /v1/auth/refresh."""

    def test_refresh_rotates_tokens(self, client, register_user):
        data = register_user()

        response = client.post("/v1/auth/refresh", json={"refreshToken": data["refreshToken"]})

        assert response.status_code == 200
        refreshed = response.json()["data"]
        assert refreshed["refreshToken"] != data["refreshToken"]
        me = client.get("/v1/auth/me", headers=auth_header(refreshed["token"]))
        assert me.status_code == 200

    def test_refresh_token_is_single_use(self, client, register_user):
        data = register_user()
        client.post("/v1/auth/refresh", json={"refreshToken": data["refreshToken"]})

        replay = client.post("/v1/auth/refresh", json={"refreshToken": data["refreshToken"]})

        assert replay.status_code == 401
        assert replay.json()["message"] == "Invalid or expired refresh token"

    def test_unknown_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refreshToken": "bogus"})
        assert response.status_code == 401

    def test_missing_refresh_token_is_validation_error(self, client):
        response = client.post("/v1/auth/refresh", json={})
        assert response.status_code == 400
        assert response.json()["error"]["details"][0]["field"] == "refreshToken"


class TestLogout:
    """Tests for POST /v1/auth/logout."""

    def test_logout_revokes_refresh_token_and_session(self, client, register_user, runtime):
        data = register_user()

        response = client.post(
            "/v1/auth/logout",
            json={"refreshToken": data["refreshToken"], "sessionId": data["sessionId"]},
            headers=auth_header(data["token"]),
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Logout successful"
        assert runtime.store.get_refresh_token(data["refreshToken"]) is None
        assert asyncio.run(runtime.sessions.get(data["sessionId"])) is None
        refresh = client.post("/v1/auth/refresh", json={"refreshToken": data["refreshToken"]})
        assert refresh.status_code == 401

    def test_logout_is_idempotent(self, client, register_user):
        data = register_user()
        body = {"refreshToken": data["refreshToken"], "sessionId": data["sessionId"]}

        first = client.post("/v1/auth/logout", json=body)
        second = client.post("/v1/auth/logout", json=body)

        assert first.status_code == second.status_code == 200

    def test_logout_without_access_token_is_attributed(self, client, register_user, runtime):
        data = register_user()

        response = client.post("/v1/auth/logout", json={"sessionId": data["sessionId"]})

        assert response.status_code == 200
        assert asyncio.run(runtime.sessions.get(data["sessionId"])) is None
        (event,) = runtime.store.list_security_events(event="LOGOUT")
        assert event.subject_id == data["user"]["id"]

    def test_cannot_end_another_subjects_session(self, client, register_user, runtime):
        other = register_user(email="other@example.com")
        me = register_user(email="me@example.com")

        response = client.post(
            "/v1/auth/logout",
            json={"sessionId": other["sessionId"]},
            headers=auth_header(me["token"]),
        )

        assert response.status_code == 200
        assert asyncio.run(runtime.sessions.get(other["sessionId"])) is not None

    def test_logout_without_body_or_token(self, client):
        response = client.post("/v1/auth/logout")
        assert response.status_code == 200
        assert response.json()["success"] is True


class TestPasswordReset:
    """Tests for forgot-password and reset-password."""

    def test_forgot_password_does_not_disclose_accounts(self, client, register_user):
        register_user()

        known = client.post("/v1/auth/forgot-password", json={"email": "user@example.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_reset_flow(self, client, register_user, runtime):
        data = register_user()
        client.post("/v1/auth/forgot-password", json={"email": "user@example.com"})
        (token,) = list(runtime.store.reset_tokens)
        assert runtime.email.outbox[-1] == ("user@example.com", "Reset your ERP Platform password")

        response = client.post(
            "/v1/auth/reset-password", json={"token": token, "password": "N3w-Passw0rd!"}
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Password reset successful"
        assert _login(client, password=STRONG_PASSWORD).status_code == 401
        assert _login(client, password="N3w-Passw0rd!").status_code == 200
        # Existing refresh tokens are revoked
        refresh = client.post("/v1/auth/refresh", json={"refreshToken": data["refreshToken"]})
        assert refresh.status_code == 401

    def test_reset_token_is_single_use(self, client, register_user, runtime):
        register_user()
        client.post("/v1/auth/forgot-password", json={"email": "user@example.com"})
        (token,) = list(runtime.store.reset_tokens)
        client.post("/v1/auth/reset-password", json={"token": token, "password": "N3w-Passw0rd!"})

        again = client.post(
            "/v1/auth/reset-password", json={"token": token, "password": "An0ther-Pass!"}
        )

        assert again.status_code == 401
        assert again.json()["message"] == "Invalid or expired reset token"

    def test_reset_enforces_policy(self, client, register_user, runtime):
        register_user()
        client.post("/v1/auth/forgot-password", json={"email": "user@example.com"})
        (token,) = list(runtime.store.reset_tokens)

        response = client.post("/v1/auth/reset-password", json={"token": token, "password": "weak"})

        assert response.status_code == 400
        # A rejected password does not burn the token
        assert token in runtime.store.reset_tokens


class TestPasswordChange:
    """Tests for POST /v1/auth/change-password."""

    def test_change_password(self, client, register_user):
        data = register_user()

        response = client.post(
            "/v1/auth/change-password",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": "Chang3d-Pass!"},
            headers=auth_header(data["token"]),
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Password changed successfully"
        assert _login(client, password="Chang3d-Pass!").status_code == 200

    def test_wrong_current_password(self, client, register_user):
        data = register_user()

        response = client.post(
            "/v1/auth/change-password",
            json={"currentPassword": "Wrong12345!", "newPassword": "Chang3d-Pass!"},
            headers=auth_header(data["token"]),
        )

        assert response.status_code == 401
        assert response.json()["message"] == "Current password is incorrect"

    def test_requires_authentication(self, client):
        response = client.post(
            "/v1/auth/change-password",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": "Chang3d-Pass!"},
        )
        assert response.status_code == 401

    def test_current_password_guessing_is_rate_limited(self, client, register_user, runtime):
        data = register_user()
        headers = auth_header(data["token"])
        guesses = [
            client.post(
                "/v1/auth/change-password",
                json={"currentPassword": f"Guess{i}2345!", "newPassword": "Chang3d-Pass!"},
                headers=headers,
            ).status_code
            for i in range(5)
        ]

        response = client.post(
            "/v1/auth/change-password",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": "Chang3d-Pass!"},
            headers=headers,
        )

        assert guesses == [401] * 5
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0
        # The blocked attempt never reached the password check
        assert _login(client).status_code == 200
        (event,) = runtime.store.list_security_events(event="AUTH_RATE_LIMIT_EXCEEDED")
        assert event.detail["scope"] == "change-password"


class TestProfileUpdate:
    """Tests for PATCH /v1/auth/profile."""

    def test_update_names(self, client, register_user, runtime):
        data = register_user()

        response = client.patch(
            "/v1/auth/profile",
            json={"firstName": "  Grace ", "lastName": "Hopper"},
            headers=auth_header(data["token"]),
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Profile updated successfully"
        assert response.json()["data"]["firstName"] == "Grace"
        me = client.get("/v1/auth/me", headers=auth_header(data["token"]))
        assert me.json()["data"]["lastName"] == "Hopper"
        (event,) = runtime.store.list_security_events(event="PROFILE_UPDATED")
        assert event.detail == {"fields": ["first_name", "last_name"]}

    def test_partial_update_keeps_other_name(self, client, register_user):
        data = register_user()
        before = data["user"]["firstName"]

        response = client.patch(
            "/v1/auth/profile", json={"lastName": "Hopper"}, headers=auth_header(data["token"])
        )

        assert response.json()["data"]["firstName"] == before
        assert response.json()["data"]["lastName"] == "Hopper"

    @pytest.mark.parametrize(
        "body,message",
        [({}, "No profile fields to update"), ({"firstName": "   "}, "Name must not be blank")],
    )
    def test_rejects_empty_changes(self, client, register_user, body, message):
        data = register_user()

        response = client.patch("/v1/auth/profile", json=body, headers=auth_header(data["token"]))

        assert response.status_code == 400
        assert response.json()["message"] == message

    def test_requires_authentication(self, client):
        response = client.patch("/v1/auth/profile", json={"firstName": "Grace"})
        assert response.status_code == 401


class TestEmailVerification:
    """Tests for verify-email and resend-verification."""

    def test_verify_email(self, client, register_user, runtime):
        data = register_user()
        (token,) = list(runtime.store.verification_tokens)

        response = client.post("/v1/auth/verify-email", json={"token": token})

        assert response.status_code == 200
        assert response.json()["message"] == "Email verified successfully"
        me = client.get("/v1/auth/me", headers=auth_header(data["token"]))
        assert me.json()["data"]["emailVerified"] is True

    def test_verification_token_is_single_use(self, client, register_user, runtime):
        register_user()
        (token,) = list(runtime.store.verification_tokens)
        client.post("/v1/auth/verify-email", json={"token": token})

        again = client.post("/v1/auth/verify-email", json={"token": token})

        assert again.status_code == 401
        assert again.json()["message"] == "Invalid or expired verification token"

    def test_resend_verification(self, client, register_user, runtime):
        register_user()
        sent_before = len(runtime.email.outbox)

        response = client.post("/v1/auth/resend-verification", json={"email": "user@example.com"})
        unknown = client.post("/v1/auth/resend-verification", json={"email": "ghost@example.com"})

        assert response.status_code == unknown.status_code == 200
        assert response.json()["message"] == unknown.json()["message"]
        assert len(runtime.email.outbox) == sent_before + 1


class TestRateLimiting:
    """Unauthenticated auth routes allow five attempts per IP per window."""

    def test_sixth_login_attempt_is_limited(self, client, register_user):
        register_user()
        for _ in range(5):
            assert _login(client, password="Wrong12345!").status_code == 401

        response = _login(client)

        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

    def test_successful_attempts_also_count(self, client, register_user):
        register_user()
        for _ in range(5):
            assert _login(client).status_code == 200
        assert _login(client).status_code == 429

    def test_scopes_are_counted_separately(self, client, register_user):
        register_user()
        for _ in range(5):
            _login(client, password="Wrong12345!")
        assert _login(client).status_code == 429

        response = client.post("/v1/auth/forgot-password", json={"email": "user@example.com"})
        assert response.status_code == 200

    def test_limit_is_audited(self, client, runtime):
        for _ in range(6):
            _login(client, "nobody@example.com")
        events = runtime.store.list_security_events(event="AUTH_RATE_LIMIT_EXCEEDED")
        assert len(events) == 1
        assert events[0].detail["scope"] == "login"


class TestResponseHeaders:
    def test_security_headers_and_request_id(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_health(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["data"]["status"] == "healthy"
        assert body["data"]["checks"]["database"]["type"] == "memory"
        assert body["data"]["checks"]["redis"]["status"] == "not_configured"
