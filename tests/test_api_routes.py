"""
tests/test_api_routes.py -- Integration tests for the /api/v1/users routes.

These tests exercise the full stack: FastAPI routing -> AuthorizationGate
dependency -> AuthenticationService -> UserStore -> response model
serialization and the error envelope. Unit tests of the service would miss
the camelCase wire format, status codes, and exception handlers.

Coverage:
  - Registration, login, /me, refresh rotation, logout
  - Error envelope shape and codes (TOKEN_EXPIRED, TOKEN_REVOKED, VALIDATION_ERROR, ...)
  - forgot-password answers identically for known and unknown emails
  - reset-password and invitation flows end to end
  - Admin routes: role gate, list, get, create, update, delete
  - Social login dispatch

Fixtures used (from conftest.py):
  - api_client:    (client, service) with a fresh shared-memory database
  - admin_headers: Authorization header for admin@x.com
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from auth.errors import IdentityVerificationFailed
from auth.identity import SocialVerifier
from auth.models import Principal, Provider, Role, TokenKind, VerifiedIdentity

PASSWORD = "Passw0rd"
USERS = "/api/v1/users"

ApiClient = tuple[TestClient, object]


def _register(client: TestClient, email: str = "alice@x.com", password: str = PASSWORD):
    return client.post(
        f"{USERS}/register",
        json={"name": "Alice", "email": email, "password": password, "confirmPassword": password},
    )


def _login(client: TestClient, email: str = "alice@x.com", password: str = PASSWORD):
    return client.post(f"{USERS}/login", json={"email": email, "password": password})


def _bearer(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


def _session(client: TestClient, email: str = "alice@x.com") -> dict:
    """Register and log in; return the login response's data block."""
    assert _register(client, email).status_code == 201
    resp = _login(client, email)
    assert resp.status_code == 200
    return resp.json()["data"]


class TestRegisterAndLogin:
    def test_register_returns_created_user(self, api_client: ApiClient) -> None:
        """POST /register returns 201 with the public user view, no secrets."""
        client, _ = api_client
        resp = _register(client)
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        user = body["data"]
        assert user["email"] == "alice@x.com"
        assert user["role"] == "USER"
        assert user["provider"] == "manual"
        assert user["emailVerified"] is False
        assert "passwordHash" not in user and "password_hash" not in user

    def test_duplicate_register_is_409(self, api_client: ApiClient) -> None:
        client, _ = api_client
        _register(client)
        resp = _register(client, email="ALICE@x.com")
        assert resp.status_code == 409
        assert resp.json()["code"] == "CONFLICT"

    def test_password_mismatch(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.post(
            f"{USERS}/register",
            json={"name": "A", "email": "a@x.com", "password": PASSWORD, "confirmPassword": "Other0ne"},
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "PASSWORD_MISMATCH"
        assert body["errors"] == [{"field": "confirmPassword", "msg": "Passwords do not match."}]

    def test_weak_password(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = _register(client, password="weak")
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert {e["field"] for e in body["errors"]} == {"password"}

    def test_malformed_body_is_400_with_field_errors(self, api_client: ApiClient) -> None:
        """Schema failures use the same envelope as domain validation errors."""
        client, _ = api_client
        resp = client.post(f"{USERS}/register", json={"name": "A", "email": "not-an-email"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["code"] == "VALIDATION_ERROR"
        fields = {e["field"] for e in body["errors"]}
        assert {"email", "password", "confirmPassword"} <= fields

    def test_login_returns_tokens_and_user(self, api_client: ApiClient) -> None:
        client, _ = api_client
        _register(client)
        resp = _login(client)
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()["data"]
        assert data["accessToken"] and data["refreshToken"]
        assert data["user"]["email"] == "alice@x.com"
        assert data["user"]["lastLogin"] is not None

    def test_login_failures_are_indistinguishable(self, api_client: ApiClient) -> None:
        """Unknown email and wrong password produce byte-identical 401 bodies."""
        client, _ = api_client
        _register(client)
        wrong = _login(client, password="Wr0ngpass")
        unknown = _login(client, email="nobody@x.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.content == unknown.content
        assert wrong.json()["code"] == "INVALID_CREDENTIALS"

    def test_password_whitespace_is_significant(self, api_client: ApiClient) -> None:
        """Emails are trimmed; passwords are stored exactly as typed."""
        client, _ = api_client
        padded = "  Passw0rd  "
        resp = _register(client, email="  alice@x.com ", password=padded)
        assert resp.status_code == 201
        assert resp.json()["data"]["email"] == "alice@x.com"
        assert _login(client, password=padded).status_code == 200
        assert _login(client, password=PASSWORD).status_code == 401


class TestSession:
    def test_me(self, api_client: ApiClient) -> None:
        client, _ = api_client
        data = _session(client)
        resp = client.get(f"{USERS}/me", headers=_bearer(data["accessToken"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == "alice@x.com"

    def test_me_without_token(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.get(f"{USERS}/me")
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "message": "Authentication required.", "code": "MISSING_TOKEN"}

    def test_refresh_token_is_not_an_access_token(self, api_client: ApiClient) -> None:
        client, _ = api_client
        data = _session(client)
        resp = client.get(f"{USERS}/me", headers=_bearer(data["refreshToken"]))
        assert resp.status_code == 401
        assert resp.json()["code"] == "TOKEN_INVALID"

    def test_expired_access_token_has_distinct_code(self, api_client: ApiClient) -> None:
        client, service = api_client
        _register(client)
        user = service.store.get_by_email("alice@x.com")
        expired = service.codec.issue(user.id, Role.USER, TokenKind.access, ttl=-5)
        resp = client.get(f"{USERS}/me", headers=_bearer(expired))
        assert resp.status_code == 401
        assert resp.json()["code"] == "TOKEN_EXPIRED"

    def test_expired_access_token_cannot_refresh(self, api_client: ApiClient) -> None:
        """An expired token of the wrong kind is invalid, not expired."""
        client, service = api_client
        _register(client)
        user = service.store.get_by_email("alice@x.com")
        expired = service.codec.issue(user.id, Role.USER, TokenKind.access, ttl=-5)
        resp = client.post(f"{USERS}/refresh-token", json={"refreshToken": expired})
        assert resp.status_code == 401
        assert resp.json()["code"] == "TOKEN_INVALID"

    def test_refresh_rotation(self, api_client: ApiClient) -> None:
        """A refresh token works once; replaying it is 401 TOKEN_REVOKED."""
        client, _ = api_client
        data = _session(client)

        first = client.post(f"{USERS}/refresh-token", json={"refreshToken": data["refreshToken"]})
        assert first.status_code == 200
        assert first.headers["cache-control"] == "no-store"
        rotated = first.json()["data"]
        assert rotated["refreshToken"] != data["refreshToken"]

        replay = client.post(f"{USERS}/refresh-token", json={"refreshToken": data["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["code"] == "TOKEN_REVOKED"

        again = client.post(f"{USERS}/refresh-token", json={"refreshToken": rotated["refreshToken"]})
        assert again.status_code == 200

    def test_logout_revokes_refresh_token(self, api_client: ApiClient) -> None:
        client, _ = api_client
        data = _session(client)
        assert client.post(f"{USERS}/logout", headers=_bearer(data["accessToken"])).status_code == 200
        resp = client.post(f"{USERS}/refresh-token", json={"refreshToken": data["refreshToken"]})
        assert resp.status_code == 401
        assert resp.json()["code"] == "TOKEN_REVOKED"

    def test_change_password(self, api_client: ApiClient) -> None:
        client, _ = api_client
        data = _session(client)
        headers = _bearer(data["accessToken"])

        wrong = client.post(
            f"{USERS}/change-password",
            headers=headers,
            json={"currentPassword": "Wr0ngpass", "password": "N3wPassword", "confirmPassword": "N3wPassword"},
        )
        assert wrong.status_code == 400
        assert wrong.json()["code"] == "WRONG_CURRENT_PASSWORD"
        assert _login(client).status_code == 200

        ok = client.post(
            f"{USERS}/change-password",
            headers=headers,
            json={"currentPassword": PASSWORD, "password": "N3wPassword", "confirmPassword": "N3wPassword"},
        )
        assert ok.status_code == 200
        assert _login(client, password="N3wPassword").status_code == 200

    def test_blocked_user_is_403(self, api_client: ApiClient) -> None:
        client, service = api_client
        data = _session(client)
        service.store.update_user(data["user"]["id"], blocked=True)
        resp = client.get(f"{USERS}/me", headers=_bearer(data["accessToken"]))
        assert resp.status_code == 403
        assert resp.json()["code"] == "ACCOUNT_BLOCKED"


class TestPasswordReset:
    def test_forgot_password_response_is_identical(self, api_client: ApiClient) -> None:
        """Known and unknown emails get byte-identical 200 responses."""
        client, service = api_client
        _register(client)
        known = client.post(f"{USERS}/forgot-password", json={"email": "alice@x.com"})
        unknown = client.post(f"{USERS}/forgot-password", json={"email": "nobody@x.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.content == unknown.content
        assert service.mailer.send_password_reset.call_count == 1

    def test_reset_flow(self, api_client: ApiClient) -> None:
        client, service = api_client
        data = _session(client)
        client.post(f"{USERS}/forgot-password", json={"email": "alice@x.com"})
        token = service.mailer.send_password_reset.call_args.args[1]

        body = {"token": token, "password": "N3wPassword", "confirmPassword": "N3wPassword"}
        assert client.post(f"{USERS}/reset-password", json=body).status_code == 200

        reused = client.post(f"{USERS}/reset-password", json=body)
        assert reused.status_code == 401
        assert reused.json()["code"] == "TOKEN_INVALID"

        assert _login(client).status_code == 401
        assert _login(client, password="N3wPassword").status_code == 200
        stale = client.post(f"{USERS}/refresh-token", json={"refreshToken": data["refreshToken"]})
        assert stale.status_code == 401

    def test_access_token_cannot_reset(self, api_client: ApiClient) -> None:
        client, _ = api_client
        data = _session(client)
        body = {"token": data["accessToken"], "password": "N3wPassword", "confirmPassword": "N3wPassword"}
        resp = client.post(f"{USERS}/reset-password", json=body)
        assert resp.status_code == 401
        assert resp.json()["code"] == "TOKEN_INVALID"


class TestAdminRoutes:
    def test_user_cannot_list_users(self, api_client: ApiClient) -> None:
        client, _ = api_client
        data = _session(client)
        resp = client.get(USERS, headers=_bearer(data["accessToken"]))
        assert resp.status_code == 403
        assert resp.json()["code"] == "FORBIDDEN"

    def test_admin_lists_users(self, api_client: ApiClient, admin_headers: dict[str, str]) -> None:
        client, _ = api_client
        _register(client)
        resp = client.get(USERS, headers=admin_headers)
        assert resp.status_code == 200
        assert [u["email"] for u in resp.json()["data"]] == ["admin@x.com", "alice@x.com"]

    def test_admin_gets_one_user(self, api_client: ApiClient, admin_headers: dict[str, str]) -> None:
        client, _ = api_client
        data = _session(client)
        uid = data["user"]["id"]

        resp = client.get(f"{USERS}/{uid}", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == "alice@x.com"

        missing = client.get(f"{USERS}/9999", headers=admin_headers)
        assert missing.status_code == 404
        assert missing.json()["code"] == "NOT_FOUND"

        forbidden = client.get(f"{USERS}/{uid}", headers=_bearer(data["accessToken"]))
        assert forbidden.status_code == 403
        assert forbidden.json()["code"] == "FORBIDDEN"

    def test_user_lookup_does_not_shadow_me(self, api_client: ApiClient) -> None:
        client, _ = api_client
        data = _session(client)
        resp = client.get(f"{USERS}/me", headers=_bearer(data["accessToken"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == "alice@x.com"

    def test_invite_and_accept(self, api_client: ApiClient, admin_headers: dict[str, str]) -> None:
        client, service = api_client
        resp = client.post(f"{USERS}/invite", headers=admin_headers, json={"email": "bob@x.com", "name": "Bob"})
        assert resp.status_code == 201
        assert resp.json()["data"]["active"] is False
        token = service.mailer.send_invitation.call_args.args[1]

        accepted = client.post(
            f"{USERS}/verify-invitation",
            json={"token": token, "password": PASSWORD, "confirmPassword": PASSWORD},
        )
        assert accepted.status_code == 200
        data = accepted.json()["data"]
        assert data["user"]["active"] is True
        assert data["user"]["emailVerified"] is True
        assert client.get(f"{USERS}/me", headers=_bearer(data["accessToken"])).status_code == 200

    def test_invite_existing_is_409(self, api_client: ApiClient, admin_headers: dict[str, str]) -> None:
        client, _ = api_client
        _register(client)
        resp = client.post(f"{USERS}/invite", headers=admin_headers, json={"email": "alice@x.com"})
        assert resp.status_code == 409

    def test_create_admin(self, api_client: ApiClient, admin_headers: dict[str, str]) -> None:
        client, _ = api_client
        resp = client.post(
            f"{USERS}/admin/create",
            headers=admin_headers,
            json={"name": "Root", "email": "root@x.com", "password": PASSWORD, "confirmPassword": PASSWORD},
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["role"] == "ADMIN"

    def test_update_and_block(self, api_client: ApiClient, admin_headers: dict[str, str]) -> None:
        client, _ = api_client
        data = _session(client)
        uid = data["user"]["id"]

        resp = client.put(f"{USERS}/admin/update/{uid}", headers=admin_headers, json={"name": "A.", "blocked": True})
        assert resp.status_code == 200
        assert resp.json()["data"]["name"] == "A."
        assert resp.json()["data"]["blocked"] is True

        assert client.get(f"{USERS}/me", headers=_bearer(data["accessToken"])).status_code == 403
        assert _login(client).status_code == 403

    def test_update_with_empty_body(self, api_client: ApiClient, admin_headers: dict[str, str]) -> None:
        client, _ = api_client
        data = _session(client)
        resp = client.put(f"{USERS}/admin/update/{data['user']['id']}", headers=admin_headers, json={})
        assert resp.status_code == 400

    def test_admin_cannot_demote_self(self, api_client: ApiClient, admin_headers: dict[str, str]) -> None:
        client, service = api_client
        admin_id = service.store.get_by_email("admin@x.com").id
        resp = client.put(f"{USERS}/admin/update/{admin_id}", headers=admin_headers, json={"role": "USER"})
        assert resp.status_code == 400
        assert service.store.get_by_id(admin_id).role is Role.ADMIN

    def test_delete_user(self, api_client: ApiClient, admin_headers: dict[str, str]) -> None:
        client, _ = api_client
        data = _session(client)
        uid = data["user"]["id"]
        assert client.delete(f"{USERS}/{uid}", headers=admin_headers).status_code == 200
        assert client.delete(f"{USERS}/{uid}", headers=admin_headers).status_code == 404
        # The deleted user's still-unexpired access token no longer authenticates.
        resp = client.get(f"{USERS}/me", headers=_bearer(data["accessToken"]))
        assert resp.status_code == 401


class _FakeLinkedIn(SocialVerifier):
    provider = Provider.linkedin

    def verify(self, token: str) -> VerifiedIdentity:
        if token != "good":
            raise IdentityVerificationFailed()
        return VerifiedIdentity(provider=self.provider, email="lin@x.com", subject="li-1", name="Lin")


class TestSocialRoutes:
    def test_social_login_creates_account(self, api_client: ApiClient) -> None:
        client, service = api_client
        service.verifiers[Provider.linkedin] = _FakeLinkedIn()
        resp = client.post(f"{USERS}/social/linkedin", json={"access_token": "good"})
        assert resp.status_code == 200
        user = resp.json()["data"]["user"]
        assert user["provider"] == "linkedin"
        assert user["emailVerified"] is True

    def test_bad_provider_token(self, api_client: ApiClient) -> None:
        client, service = api_client
        service.verifiers[Provider.linkedin] = _FakeLinkedIn()
        resp = client.post(f"{USERS}/social/linkedin", json={"access_token": "bad"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "SOCIAL_TOKEN_INVALID"

    def test_disabled_provider(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.post(f"{USERS}/social/google", json={"access_token": "anything"})
        assert resp.status_code == 401

    def test_manual_is_not_a_social_route(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.post(f"{USERS}/social/manual", json={"access_token": "x"})
        assert resp.status_code == 404

    def test_apple_takes_id_token(self, api_client: ApiClient) -> None:
        client, _ = api_client
        resp = client.post(f"{USERS}/social/apple", json={"access_token": "x"})
        assert resp.status_code == 400
        assert resp.json()["errors"][0]["field"] == "id_token"


def test_store_principal_defaults_are_not_exposed(api_client: ApiClient) -> None:
    """UserOut never leaks refresh-token or version bookkeeping."""
    client, service = api_client
    service.store.create_user(Principal(email="z@x.com", name="Z", password_hash=service.passwords.hash(PASSWORD)))
    data = _login(client, email="z@x.com").json()["data"]["user"]
    assert not {"refreshTokenHash", "tokenVersion", "passwordHash"} & set(data)
