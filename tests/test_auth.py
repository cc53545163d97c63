"""
Authentication tests: registration, password login with account lock, refresh, logout and Google login.
"""

from unittest.mock import AsyncMock, patch

import pytest

from backlify.auth.database_models import AccountStatus, RefreshTokenDB, UserDB
from backlify.auth.models import TokenType
from backlify.errors import SecurityEventType, Unauthenticated
from backlify.integrations.google_oauth import GoogleProfile

from conftest import TEST_PASSWORD, auth_headers, create_user, fetch_all, security_event_types

NEW_USER = {"username": "newuser", "email": "NewUser@Example.com", "password": "Sup3r$ecret"}


def login(client, identifier="alice", password=TEST_PASSWORD, field="username"):
    return client.post("/auth/login", json={field: identifier, "password": password})


# ============================================================================
# REGISTRATION
# ============================================================================

@pytest.mark.auth
@pytest.mark.integration
class TestRegistration:

    def test_register_user_success(self, client, services, run):
        response = client.post("/auth/register", json=NEW_USER)

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["user"]["username"] == "newuser"
        assert data["user"]["email"] == "newuser@example.com"
        assert data["user"]["plan_id"] == "basic"
        assert "password" not in str(data)

        users = run(fetch_all, services, UserDB)
        assert users[0].password_hash != NEW_USER["password"]

    def test_register_duplicate(self, client, services, run):
        run(create_user, services, "newuser")

        response = client.post("/auth/register", json=NEW_USER)

        assert response.status_code == 400
        assert response.json()["error"] == "User exists"

    @pytest.mark.parametrize("password", ["short1!", "alllowercase1!", "NoDigits!!", "NoSpecial123"])
    def test_register_weak_password(self, client, password):
        response = client.post("/auth/register", json={**NEW_USER, "password": password})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_register_missing_fields(self, client):
        response = client.post("/auth/register", json={"email": "incomplete@example.com"})

        assert response.status_code == 400

    def test_register_response_is_not_cached(self, client):
        response = client.post("/auth/register", json=NEW_USER)

        assert "no-store" in response.headers["Cache-Control"]


# ============================================================================
# LOGIN AND ACCOUNT LOCK
# ============================================================================

@pytest.mark.auth
@pytest.mark.integration
class TestLogin:

    def test_login_with_username(self, client, services, run):
        run(create_user, services, "alice")

        response = login(client)

        assert response.status_code == 200
        data = response.json()
        assert data["username"] == "alice"
        assert data["XAuthUserId"] == "alice"
        assert data["tokenType"] == "bearer"
        assert services.tokens.verify(data["accessToken"]).username == "alice"
        assert SecurityEventType.SUCCESSFUL_LOGIN in run(security_event_types, services)

    def test_login_with_email(self, client, services, run):
        run(create_user, services, "alice")

        response = login(client, "alice@example.com", field="email")

        assert response.status_code == 200
        assert response.json()["email"] == "alice@example.com"

    def test_unknown_user(self, client):
        response = login(client, "ghost")

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid username or password"

    def test_remaining_attempts_count_down(self, client, services, run):
        run(create_user, services, "alice")

        remaining = [login(client, password="wrong").json()["remainingAttempts"] for _ in range(4)]

        assert remaining == [4, 3, 2, 1]

    def test_fifth_failure_locks_account(self, client, services, run):
        run(create_user, services, "alice")
        for _ in range(4):
            assert login(client, password="wrong").status_code == 401

        response = login(client, password="wrong")

        assert response.status_code == 403
        assert response.json()["error"] == "Account locked"
        user = run(fetch_all, services, UserDB)[0]
        assert user.account_status == AccountStatus.LOCKED
        assert user.login_attempts == 5
        assert SecurityEventType.ACCOUNT_LOCKED in run(security_event_types, services)

    def test_locked_account_rejects_correct_password(self, client, services, run):
        run(create_user, services, "alice")
        for _ in range(5):
            login(client, password="wrong")

        response = login(client)

        assert response.status_code == 403
        assert SecurityEventType.LOCKED_ACCOUNT_ACCESS_ATTEMPT in run(security_event_types, services)

    def test_lock_expires_after_five_minutes(self, client, services, clock, run):
        run(create_user, services, "alice")
        for _ in range(5):
            login(client, password="wrong")

        clock.advance(minutes=4, seconds=59)
        assert login(client).status_code == 403

        clock.advance(seconds=1)
        response = login(client)

        assert response.status_code == 200
        user = run(fetch_all, services, UserDB)[0]
        assert user.account_status == AccountStatus.ACTIVE
        assert user.login_attempts == 0
        assert user.unlocked_by == "system-auto"
        assert SecurityEventType.ACCOUNT_AUTO_UNLOCKED in run(security_event_types, services)

    def test_success_resets_counter(self, client, services, run):
        run(create_user, services, "alice")
        login(client, password="wrong")
        login(client, password="wrong")

        assert login(client).status_code == 200
        assert run(fetch_all, services, UserDB)[0].login_attempts == 0
        assert login(client, password="wrong").json()["remainingAttempts"] == 4

    def test_login_response_is_not_cached(self, client, services, run):
        run(create_user, services, "alice")

        response = login(client)

        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["Pragma"] == "no-cache"


# ============================================================================
# REFRESH AND LOGOUT
# ============================================================================

@pytest.mark.auth
@pytest.mark.integration
class TestRefreshAndLogout:

    def test_refresh_issues_access_token(self, client, services, run):
        run(create_user, services, "alice")
        tokens = login(client).json()

        response = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})

        assert response.status_code == 200
        data = response.json()
        assert data["username"] == "alice"
        assert services.tokens.verify(data["accessToken"]).username == "alice"

    def test_refresh_rejects_access_token(self, client, services, run):
        run(create_user, services, "alice")
        tokens = login(client).json()

        response = client.post("/auth/refresh", json={"refreshToken": tokens["accessToken"]})

        assert response.status_code == 401

    def test_refresh_rejects_unknown_token(self, client, services):
        # Correctly signed but never persisted
        forged = services.tokens._encode("alice", TokenType.REFRESH, services.tokens.refresh_ttl)

        response = client.post("/auth/refresh", json={"refreshToken": forged})

        assert response.status_code == 401

    def test_logout_revokes_refresh_token(self, client, services, run):
        run(create_user, services, "alice")
        tokens = login(client).json()
        headers = {"Authorization": f"Bearer {tokens['accessToken']}"}

        response = client.post("/auth/logout", json={"refreshToken": tokens["refreshToken"]}, headers=headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.headers["Cache-Control"].startswith("no-store")
        record = run(fetch_all, services, RefreshTokenDB)[0]
        assert record.revoked is True
        assert SecurityEventType.TOKEN_REVOKED in run(security_event_types, services)

        refreshed = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert refreshed.status_code == 401

    def test_logout_twice_still_succeeds(self, client, services, run):
        run(create_user, services, "alice")
        tokens = login(client).json()
        headers = {"Authorization": f"Bearer {tokens['accessToken']}"}
        body = {"refreshToken": tokens["refreshToken"]}

        assert client.post("/auth/logout", json=body, headers=headers).status_code == 200
        assert client.post("/auth/logout", json=body, headers=headers).status_code == 200
        assert run(security_event_types, services).count(SecurityEventType.TOKEN_REVOKED) == 1

    def test_logout_requires_refresh_token(self, client, services, run):
        run(create_user, services, "alice")

        response = client.post("/auth/logout", json={}, headers=auth_headers(services))

        assert response.status_code == 400
        assert response.json()["error"] == "Missing refresh token"

    def test_logout_requires_access_token(self, client):
        assert client.post("/auth/logout", json={"refreshToken": "x"}).status_code == 401


# ============================================================================
# GOOGLE LOGIN
# ============================================================================

def google_profile(email="gina@example.com", google_id="g-123"):
    return GoogleProfile(email=email, id=google_id, name="Gina", picture="https://pics/g.png", verified_email=True)


@pytest.mark.auth
@pytest.mark.integration
class TestGoogleLogin:

    payload = {"google_token": "ya29.token", "email": "gina@example.com", "google_id": "g-123", "name": "Gina"}

    def test_creates_user(self, client, services, run):
        with patch.object(services.google, "fetch_userinfo", AsyncMock(return_value=google_profile())):
            response = client.post("/auth/google-login", json=self.payload)

        assert response.status_code == 200
        data = response.json()
        assert data["username"] == "gina"
        assert data["loginMethod"] == "google"
        assert data["picture"] == "https://pics/g.png"
        user = run(fetch_all, services, UserDB)[0]
        assert user.google_id == "g-123"
        assert user.password_hash is None
        assert user.email_verified is True

    def test_links_existing_email_account(self, client, services, run):
        run(create_user, services, "gina")

        with patch.object(services.google, "fetch_userinfo", AsyncMock(return_value=google_profile())):
            response = client.post("/auth/google-login", json=self.payload)

        assert response.status_code == 200
        users = run(fetch_all, services, UserDB)
        assert len(users) == 1
        assert users[0].google_id == "g-123"
        assert users[0].login_method == "email"

    def test_username_collision_gets_suffix(self, client, services, run):
        run(create_user, services, "gina", email="other@example.com")

        with patch.object(services.google, "fetch_userinfo", AsyncMock(return_value=google_profile())):
            response = client.post("/auth/google-login", json=self.payload)

        assert response.json()["username"] == "gina1"

    def test_email_mismatch_rejected(self, client, services):
        profile = google_profile(email="someone-else@example.com")
        with patch.object(services.google, "fetch_userinfo", AsyncMock(return_value=profile)):
            response = client.post("/auth/google-login", json=self.payload)

        assert response.status_code == 401

    def test_claimed_google_id_must_be_googles(self, client, services, run):
        run(create_user, services, "victim", google_id="g-victim")
        attacker = google_profile(email="mallory@example.com", google_id="g-mallory")
        payload = {**self.payload, "email": "mallory@example.com", "google_id": "g-victim"}

        with patch.object(services.google, "fetch_userinfo", AsyncMock(return_value=attacker)):
            response = client.post("/auth/google-login", json=payload)

        assert response.status_code == 401
        assert response.json()["message"] == "Google account id does not match"
        assert "accessToken" not in response.json()
        assert [u.username for u in run(fetch_all, services, UserDB)] == ["victim"]

    def test_returning_user_found_by_google_account(self, client, services, run):
        run(create_user, services, "gina", google_id="g-123")

        with patch.object(services.google, "fetch_userinfo", AsyncMock(return_value=google_profile())):
            response = client.post("/auth/google-login", json=self.payload)

        assert response.status_code == 200
        assert response.json()["username"] == "gina"

    def test_email_linked_to_another_google_account_rejected(self, client, services, run):
        run(create_user, services, "gina", google_id="g-old")

        with patch.object(services.google, "fetch_userinfo", AsyncMock(return_value=google_profile())):
            response = client.post("/auth/google-login", json=self.payload)

        assert response.status_code == 401
        assert run(fetch_all, services, UserDB)[0].google_id == "g-old"

    def test_unverified_google_email_rejected(self, client, services, run):
        run(create_user, services, "gina")
        unverified = GoogleProfile(email="gina@example.com", id="g-123", verified_email=False)

        with patch.object(services.google, "fetch_userinfo", AsyncMock(return_value=unverified)):
            response = client.post("/auth/google-login", json=self.payload)

        assert response.status_code == 401
        assert run(fetch_all, services, UserDB)[0].google_id is None

    def test_google_failure_rejected(self, client, services):
        failure = AsyncMock(side_effect=Unauthenticated("Google token verification failed"))
        with patch.object(services.google, "fetch_userinfo", failure):
            response = client.post("/auth/google-login", json=self.payload)

        assert response.status_code == 401
        assert response.json()["message"] == "Google token verification failed"
