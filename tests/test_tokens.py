"""
Token service and account lock unit tests.
"""

from datetime import timedelta

import jwt
import pytest

from backlify.auth.database_models import AccountStatus
from backlify.auth.models import TokenType, get_password_hash, verify_password
from backlify.errors import Unauthenticated

from conftest import create_user


@pytest.mark.unit
@pytest.mark.auth
class TestTokenService:

    def test_access_token_claims(self, services, clock):
        token = services.tokens.issue_access("alice")

        claims = services.tokens.verify(token)

        assert claims.username == "alice"
        assert claims.type == TokenType.ACCESS
        assert claims.exp - claims.iat == 3600
        assert claims.issued_at == clock.now()

    def test_token_valid_until_expiry(self, services, clock):
        token = services.tokens.issue_access("alice")

        clock.advance(minutes=59, seconds=59)
        assert services.tokens.decode(token) is not None

        clock.advance(seconds=1)
        assert services.tokens.decode(token) is None

    def test_token_from_the_future_is_rejected(self, services, clock):
        token = services.tokens.issue_access("alice")
        clock.advance(seconds=-1)

        assert services.tokens.decode(token) is None

    def test_wrong_secret_rejected(self, services):
        token = jwt.encode(
            {"username": "alice", "type": "access", "iat": 0, "exp": 2 ** 31},
            "another-secret-that-is-long-enough-to-pass",
            algorithm="HS256",
        )

        assert services.tokens.decode(token) is None

    def test_missing_claims_rejected(self, services, settings, clock):
        token = jwt.encode({"username": "alice"}, settings.jwt_secret_key, algorithm="HS256")

        assert services.tokens.decode(token) is None

    def test_verify_requires_expected_type(self, services):
        with pytest.raises(Unauthenticated):
            services.tokens.verify(services.tokens.issue_access("alice"), TokenType.REFRESH)

    def test_verify_requires_token(self, services):
        with pytest.raises(Unauthenticated) as exc_info:
            services.tokens.verify(None)
        assert exc_info.value.message == "Authentication required"

    async def test_refresh_round_trip_and_revoke(self, store, clock):
        async with store.database.session() as db:
            token = await store.tokens.issue_refresh(db, "alice")
            claims = await store.tokens.refresh(db, token)
            assert claims.type == TokenType.REFRESH

            assert await store.tokens.revoke(db, token) is True
            assert await store.tokens.revoke(db, token) is False

            with pytest.raises(Unauthenticated):
                await store.tokens.refresh(db, token)

    async def test_refresh_token_lifetime(self, store, clock):
        async with store.database.session() as db:
            token = await store.tokens.issue_refresh(db, "alice")
            clock.advance(days=7)

            with pytest.raises(Unauthenticated):
                await store.tokens.refresh(db, token)


@pytest.mark.unit
@pytest.mark.auth
class TestPasswords:

    def test_hash_and_verify(self):
        hashed = get_password_hash("Str0ng!Pass")

        assert hashed != "Str0ng!Pass"
        assert verify_password("Str0ng!Pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_long_password(self):
        password = "Aa1!" * 40
        hashed = get_password_hash(password)

        assert verify_password(password, hashed)
        assert not verify_password(password[:-1], hashed)

    def test_missing_hash_never_verifies(self):
        assert not verify_password("anything", None)


@pytest.mark.unit
@pytest.mark.auth
class TestAccountLock:

    async def test_failures_stop_counting_once_locked(self, store):
        await create_user(store, "alice")
        async with store.database.session() as db:
            user = await store.account_lock.find_user(db, "alice")
            for _ in range(7):
                await store.account_lock.register_failure(db, user)
            await db.refresh(user)

        assert user.account_status == AccountStatus.LOCKED
        assert user.login_attempts == 5

    async def test_unlock_due(self, store, clock):
        user = await create_user(store, "alice", account_status="locked", locked_at=clock.now())

        assert not store.account_lock.unlock_due(user)
        clock.advance(minutes=5)
        assert store.account_lock.unlock_due(user)

    async def test_ensure_unlocked_resets_state(self, store, clock):
        await create_user(
            store, "alice", account_status="locked", locked_at=clock.now() - timedelta(minutes=6), login_attempts=5
        )
        async with store.database.session() as db:
            user = await store.account_lock.find_user(db, "alice")
            assert await store.account_lock.ensure_unlocked(db, user)

        assert user.account_status == AccountStatus.ACTIVE
        assert user.login_attempts == 0
        assert user.unlocked_at == clock.now()
