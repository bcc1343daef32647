import unittest
from unittest import mock
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from pollboard.app import create_app
from pollboard.auth import AuthError, InMemoryAuthClient, pkce_challenge
from pollboard.db import InMemoryDbClient
from pollboard.dependencies import (
    get_auth_client,
    get_db_client,
    get_rate_limit_store,
    get_storage_client,
)
from pollboard.ratelimit import InMemoryRateLimitStore
from pollboard.storage import InMemoryStorageClient


class AuthApiTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.auth = InMemoryAuthClient()
        self.limits = InMemoryRateLimitStore()

        app = create_app()
        app.dependency_overrides[get_db_client] = lambda: self.db
        app.dependency_overrides[get_auth_client] = lambda: self.auth
        app.dependency_overrides[get_storage_client] = lambda: InMemoryStorageClient()
        app.dependency_overrides[get_rate_limit_store] = lambda: self.limits
        self.client = TestClient(app, base_url="https://testserver")

        self.user = self.auth.create_user("alice@example.com", "Secret123!")

    def _bearer(self, user_id=None):
        token = self.auth.issue_token(user_id or self.user.id)
        return {"Authorization": f"Bearer {token}"}

    def test_register_with_session(self):
        response = self.client.post(
            "/api/auth/register",
            json={
                "email": "New.User@Example.com",
                "password": "hunter22",
                "fullName": "New User",
                "username": "newbie",
            },
        )
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertFalse(body["requires_confirmation"])
        self.assertEqual(body["user"]["email"], "new.user@example.com")
        self.assertEqual(body["user"]["profile"]["username"], "newbie")
        self.assertIsNotNone(body["session"]["access_token"])
        self.assertIn("access_token=", response.headers["set-cookie"])
        self.assertIn("httponly", response.headers["set-cookie"].lower())

        profile = self.db.get_profile(body["user"]["id"])
        self.assertEqual(profile.full_name, "New User")
        self.assertEqual([entry.action for entry in self.db.audit_logs], ["register"])

    def test_register_requires_confirmation(self):
        self.auth.auto_confirm = False
        response = self.client.post(
            "/api/auth/register",
            json={"email": "pending@example.com", "password": "hunter22"},
        )
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body["requires_confirmation"])
        self.assertIsNone(body["session"])
        sent = self.auth.outbox[-1]
        self.assertEqual(sent["kind"], "signup")
        self.assertEqual(
            sent["redirect_to"],
            "http://localhost:3000/api/auth/callback?type=signup",
        )

    def test_register_rejects_short_password_and_duplicates(self):
        response = self.client.post(
            "/api/auth/register",
            json={"email": "x@example.com", "password": "12345"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json()["detail"], "Password must be at least 6 characters long"
        )

        response = self.client.post(
            "/api/auth/register",
            json={"email": "alice@example.com", "password": "hunter22"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "User already registered")

    def test_login_and_current_user(self):
        response = self.client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "Secret123!"},
        )
        self.assertEqual(response.status_code, 200)
        token = response.json()["session"]["access_token"]
        self.assertIn("access_token=", response.headers["set-cookie"])
        self.assertIn("login", [entry.action for entry in self.db.audit_logs])
        self.assertIsNotNone(self.db.get_profile(self.user.id))

        response = self.client.get(
            "/api/auth/user", headers={"Authorization": f"Bearer {token}"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["email"], "alice@example.com")
        self.assertTrue(response.json()["email_confirmed"])

    def test_login_failure(self):
        response = self.client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "wrong"},
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"], "Invalid login credentials")

    def test_current_user_requires_session(self):
        self.assertEqual(self.client.get("/api/auth/user").status_code, 401)
        response = self.client.get(
            "/api/auth/user", headers={"Authorization": "Bearer nope"}
        )
        self.assertEqual(response.status_code, 401)

    def test_logout_ends_session(self):
        headers = self._bearer()
        response = self.client.post("/api/auth/logout", headers=headers)
        self.assertEqual(response.status_code, 200)
        self.assertIn("access_token=", response.headers["set-cookie"])
        self.assertEqual(self.client.get("/api/auth/user", headers=headers).status_code, 401)

    def test_generate_magic_link(self):
        response = self.client.post(
            "/api/auth/magic-link/generate", json={"email": "Alice@Example.com"}
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["email"], "alice@example.com")
        self.assertEqual(body["message"], "Magic link sent to your email!")
        self.assertEqual(
            body["login_url"], "http://localhost:3000/login?email=alice%40example.com"
        )
        self.assertTrue(body["qr_code"].startswith("data:image/png;base64,"))

        self.assertEqual(len(self.db.magic_links), 1)
        token = next(iter(self.db.magic_links))
        self.assertGreaterEqual(len(token), 32)
        self.assertEqual(
            self.auth.outbox[-1]["redirect_to"],
            f"http://localhost:3000/auth/magic-link?token={token}",
        )

    def test_generate_magic_link_unknown_user(self):
        response = self.client.post(
            "/api/auth/magic-link/generate", json={"email": "ghost@example.com"}
        )
        self.assertEqual(response.status_code, 404)
        self.assertTrue(response.json()["detail"].startswith("User not found"))
        self.assertEqual(self.db.magic_links, {})

    def test_generate_magic_link_rate_limited(self):
        for _ in range(3):
            response = self.client.post(
                "/api/auth/magic-link/generate", json={"email": "alice@example.com"}
            )
            self.assertEqual(response.status_code, 200)
        response = self.client.post(
            "/api/auth/magic-link/generate", json={"email": "alice@example.com"}
        )
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["detail"], "Too many requests")

    def test_verify_magic_link_once(self):
        self.client.post("/api/auth/magic-link/generate", json={"email": "alice@example.com"})
        token = next(iter(self.db.magic_links))

        response = self.client.post("/api/auth/magic-link/verify", json={"token": token})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["email"], "alice@example.com")
        self.assertIsNotNone(self.db.magic_links[token].used_at)

        response = self.client.post("/api/auth/magic-link/verify", json={"token": token})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Invalid or expired magic link")

    def test_verify_magic_link_rejects_expired_and_malformed(self):
        self.db.create_magic_link("alice@example.com", "e" * 40, 0.0)
        response = self.client.post("/api/auth/magic-link/verify", json={"token": "e" * 40})
        self.assertEqual(response.status_code, 400)

        response = self.client.post("/api/auth/magic-link/verify", json={"token": "short"})
        self.assertEqual(response.status_code, 400)

    def test_verify_magic_link_redirects(self):
        self.client.post("/api/auth/magic-link/generate", json={"email": "alice@example.com"})
        token = next(iter(self.db.magic_links))

        response = self.client.get(
            "/api/auth/magic-link/verify", params={"token": token}, follow_redirects=False
        )
        self.assertEqual(response.status_code, 307)
        self.assertEqual(
            response.headers["location"],
            "http://localhost:3000/login?magic_link_sent=alice%40example.com",
        )

        response = self.client.get(
            "/api/auth/magic-link/verify", params={"token": token}, follow_redirects=False
        )
        self.assertEqual(
            response.headers["location"],
            "http://localhost:3000/login?error=invalid_or_expired_token",
        )

        response = self.client.get("/api/auth/magic-link/verify", follow_redirects=False)
        self.assertEqual(
            response.headers["location"], "http://localhost:3000/login?error=invalid_token"
        )

    def test_otp_flow(self):
        response = self.client.post("/api/auth/otp/send", json={"email": "alice@example.com"})
        self.assertEqual(response.status_code, 200)
        code = self.auth.outbox[-1]["code"]

        response = self.client.post(
            "/api/auth/otp/verify",
            json={"email": "alice@example.com", "token": "000000" if code != "000000" else "111111"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Invalid or expired verification code")

        response = self.client.post(
            "/api/auth/otp/verify", json={"email": "alice@example.com", "token": code}
        )
        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(response.json()["session"])
        self.assertIn("access_token=", response.headers["set-cookie"])

    def test_otp_unknown_user(self):
        response = self.client.post("/api/auth/otp/send", json={"email": "ghost@example.com"})
        self.assertEqual(response.status_code, 404)

    def test_password_reset(self):
        response = self.client.post(
            "/api/auth/password/reset", json={"email": "alice@example.com"}
        )
        self.assertEqual(response.status_code, 200)
        sent = self.auth.outbox[-1]
        self.assertEqual(sent["kind"], "recovery")
        self.assertEqual(sent["redirect_to"], "http://localhost:3000/reset-password")

        response = self.client.post(
            "/api/auth/password/reset", json={"email": "ghost@example.com"}
        )
        self.assertEqual(response.status_code, 200)

    def test_password_update(self):
        headers = self._bearer()
        response = self.client.post(
            "/api/auth/password/update",
            json={"password": "weakpass", "confirmPassword": "weakpass"},
            headers=headers,
        )
        self.assertEqual(response.status_code, 400)

        response = self.client.post(
            "/api/auth/password/update",
            json={"password": "N3w!Secret", "confirmPassword": "N3w!Secret"},
            headers=headers,
        )
        self.assertEqual(response.status_code, 200)
        result = self.auth.sign_in_with_password("alice@example.com", "N3w!Secret")
        self.assertEqual(result.user.id, self.user.id)

    def test_password_update_requires_auth(self):
        response = self.client.post(
            "/api/auth/password/update",
            json={"password": "N3w!Secret", "confirmPassword": "N3w!Secret"},
        )
        self.assertEqual(response.status_code, 401)

    def test_resend_confirmation(self):
        self.auth.auto_confirm = False
        self.auth.sign_up("late@example.com", "hunter22")
        response = self.client.post(
            "/api/auth/resend-confirmation", json={"email": "late@example.com"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.auth.outbox[-1]["kind"], "signup")

        response = self.client.post(
            "/api/auth/resend-confirmation", json={"email": "alice@example.com"}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Email already confirmed")

    def test_callback_signup_confirmation(self):
        self.auth.auto_confirm = False
        self.auth.sign_up("late@example.com", "hunter22")
        auth_code = self.auth.outbox[-1]["auth_code"]

        response = self.client.get(
            "/api/auth/callback",
            params={"code": auth_code, "type": "signup"},
            follow_redirects=False,
        )
        self.assertEqual(response.status_code, 307)
        location = urlparse(response.headers["location"])
        self.assertEqual(location.path, "/login")
        query = parse_qs(location.query)
        self.assertEqual(query["confirmed"], ["true"])
        self.assertEqual(
            query["message"], ["Email confirmed successfully! You can now sign in."]
        )

    def test_callback_uses_forwarded_host_and_next(self):
        self.client.post("/api/auth/otp/send", json={"email": "alice@example.com"})
        auth_code = self.auth.outbox[-1]["auth_code"]

        response = self.client.get(
            "/api/auth/callback",
            params={"code": auth_code, "next": "/dashboard"},
            headers={"x-forwarded-host": "polls.example.com"},
            follow_redirects=False,
        )
        self.assertEqual(response.headers["location"], "https://polls.example.com/dashboard")
        self.assertIn("access_token=", response.headers["set-cookie"])

    def test_callback_exchanges_code_with_verifier_cookie(self):
        response = self.client.post("/api/auth/otp/send", json={"email": "alice@example.com"})
        verifier = response.cookies["auth_code_verifier"]
        sent = self.auth.outbox[-1]
        self.assertEqual(sent["code_challenge"], pkce_challenge(verifier))
        self.assertEqual(
            sent["redirect_to"], "http://localhost:3000/api/auth/callback?type=magiclink"
        )

        with mock.patch.object(
            self.auth,
            "exchange_code_for_session",
            wraps=self.auth.exchange_code_for_session,
        ) as exchange:
            response = self.client.get(
                "/api/auth/callback",
                params={"code": sent["auth_code"]},
                follow_redirects=False,
            )
        exchange.assert_called_once_with(sent["auth_code"], code_verifier=verifier)
        self.assertEqual(response.headers["location"], "http://localhost:3000/polls")
        self.assertIn("access_token=", response.headers["set-cookie"])

    def test_callback_without_verifier_fails(self):
        self.client.post("/api/auth/otp/send", json={"email": "alice@example.com"})
        auth_code = self.auth.outbox[-1]["auth_code"]
        self.client.cookies.clear()

        response = self.client.get(
            "/api/auth/callback", params={"code": auth_code}, follow_redirects=False
        )
        query = parse_qs(urlparse(response.headers["location"]).query)
        self.assertEqual(query["confirmed"], ["false"])

    def test_register_and_resend_carry_code_challenge(self):
        self.auth.auto_confirm = False
        response = self.client.post(
            "/api/auth/register",
            json={"email": "pending@example.com", "password": "hunter22"},
        )
        verifier = response.cookies["auth_code_verifier"]
        self.assertEqual(self.auth.outbox[-1]["code_challenge"], pkce_challenge(verifier))

        response = self.client.post(
            "/api/auth/resend-confirmation", json={"email": "pending@example.com"}
        )
        verifier = response.cookies["auth_code_verifier"]
        sent = self.auth.outbox[-1]
        self.assertEqual(sent["code_challenge"], pkce_challenge(verifier))

        response = self.client.get(
            "/api/auth/callback",
            params={"code": sent["auth_code"], "type": "signup"},
            follow_redirects=False,
        )
        query = parse_qs(urlparse(response.headers["location"]).query)
        self.assertEqual(query["confirmed"], ["true"])

    def test_callback_failures(self):
        response = self.client.get(
            "/api/auth/callback", params={"code": "bogus"}, follow_redirects=False
        )
        query = parse_qs(urlparse(response.headers["location"]).query)
        self.assertEqual(query["confirmed"], ["false"])
        self.assertEqual(query["message"], ["Email confirmation failed. Please try again."])

        response = self.client.get("/api/auth/callback", follow_redirects=False)
        query = parse_qs(urlparse(response.headers["location"]).query)
        self.assertEqual(query["error"], ["Invalid or expired confirmation link"])

    def test_callback_ignores_offsite_next(self):
        self.client.post("/api/auth/otp/send", json={"email": "alice@example.com"})
        auth_code = self.auth.outbox[-1]["auth_code"]
        response = self.client.get(
            "/api/auth/callback",
            params={"code": auth_code, "next": "//evil.example.net"},
            follow_redirects=False,
        )
        self.assertEqual(response.headers["location"], "http://localhost:3000/polls")

    def test_profile_read_and_update(self):
        headers = self._bearer()
        self.assertEqual(self.client.get("/api/profile", headers=headers).status_code, 404)

        response = self.client.patch(
            "/api/profile",
            json={"username": "alice", "avatarUrl": "https://cdn.example.com/a.png"},
            headers=headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["username"], "alice")

        response = self.client.patch(
            "/api/profile", json={"fullName": "Alice Liddell"}, headers=headers
        )
        body = response.json()
        self.assertEqual(body["full_name"], "Alice Liddell")
        self.assertEqual(body["avatar_url"], "https://cdn.example.com/a.png")

        response = self.client.patch(
            "/api/profile", json={"avatarUrl": "javascript:alert(1)"}, headers=headers
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            self.client.get("/api/profile", headers=headers).json()["username"], "alice"
        )

    def test_auth_service_outage(self):
        class DownAuthClient(InMemoryAuthClient):
            def sign_in_with_password(self, email, password):
                raise AuthError("Authentication service unavailable", 503)

        self.auth = DownAuthClient()
        response = self.client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "Secret123!"},
        )
        self.assertEqual(response.status_code, 503)


if __name__ == "__main__":
    unittest.main()
