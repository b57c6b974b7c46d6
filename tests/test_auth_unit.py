"""Unit tests for the token lifecycle in AuthService.

Tests for:
- Login and credential rejection
- Issue, rotation and revocation of token pairs
- The protected-route guard
- One-time passwords
- Store failures and timeouts
"""

import asyncio
import time

import pytest
from argon2 import PasswordHasher, Type
from structlog.testing import capture_logs

from chatauth.service.auth import AuthService
from chatauth.service.errors import (
    InvalidCredentialsError,
    StoreUnavailableError,
    UnauthenticatedError,
)
from chatauth.service.tokens import TokenKind
from chatauth.storage.errors import StoreUnavailable
from chatauth.storage.memory import MemoryStore
from conftest import TEST_EMAIL, TEST_PASSWORD, make_settings


class TestLogin:
    async def test_login_issues_pair_accepted_by_guard(self, auth_service, test_user):
        user, pair = await auth_service.login(TEST_EMAIL, TEST_PASSWORD)

        ctx = await auth_service.authenticate(pair.access_token)

        assert user.id == test_user.id
        assert ctx.user_id == test_user.id
        assert ctx.email == TEST_EMAIL
        assert ctx.status == "online"
        assert pair.issued_at < pair.access_expires_at < pair.refresh_expires_at

    async def test_login_rejections_are_indistinguishable(
        self, auth_service, memory_store, test_user
    ):
        memory_store.create_user(
            "inactive@example.com", auth_service.passwords.hash(TEST_PASSWORD)
        )
        inactive = memory_store.get_user_by_email("inactive@example.com")
        memory_store.set_user_active(inactive.id, False)

        messages = set()
        for email, password in (
            (TEST_EMAIL, "WrongPass1!"),
            ("nobody@example.com", TEST_PASSWORD),
            ("inactive@example.com", TEST_PASSWORD),
        ):
            with pytest.raises(InvalidCredentialsError) as excinfo:
                await auth_service.login(email, password)
            messages.add((excinfo.value.status_code, excinfo.value.message))

        assert messages == {(401, "invalid email or password")}
        assert memory_store.get_user(test_user.id).access_token is None

    async def test_login_is_case_insensitive_on_email(self, auth_service, test_user):
        user, _ = await auth_service.login("USER@Example.com", TEST_PASSWORD)

        assert user.id == test_user.id

    async def test_login_upgrades_outdated_hash(self, auth_service, memory_store):
        legacy = PasswordHasher(time_cost=2, memory_cost=512, parallelism=1, type=Type.ID)
        user = memory_store.create_user("legacy@example.com", legacy.hash(TEST_PASSWORD))

        await auth_service.login("legacy@example.com", TEST_PASSWORD)

        upgraded = memory_store.get_user(user.id).password_hash
        assert upgraded != user.password_hash
        assert auth_service.passwords.needs_rehash(upgraded) is False
        assert auth_service.passwords.verify(TEST_PASSWORD, upgraded) is True

    async def test_register_then_login(self, auth_service):
        user = await auth_service.register("New@Example.com", TEST_PASSWORD, "New User")

        logged_in, _ = await auth_service.login("new@example.com", TEST_PASSWORD)

        assert logged_in.id == user.id
        assert user.password_hash.startswith("$argon2id$")


class TestRefresh:
    async def test_refresh_succeeds_once(self, auth_service, test_user):
        first = await auth_service.issue(test_user.id)

        second = await auth_service.refresh(first.refresh_token)

        assert second.refresh_token != first.refresh_token
        with pytest.raises(UnauthenticatedError):
            await auth_service.refresh(first.refresh_token)
        assert (await auth_service.authenticate(second.access_token)).user_id == test_user.id

    async def test_refresh_supersedes_previous_access_token(self, auth_service, test_user):
        first = await auth_service.issue(test_user.id)
        await auth_service.refresh(first.refresh_token)

        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(first.access_token)

    async def test_access_token_cannot_refresh(self, auth_service, test_user):
        pair = await auth_service.issue(test_user.id)

        with pytest.raises(UnauthenticatedError):
            await auth_service.refresh(pair.access_token)

    async def test_refresh_after_revoke_rejected(self, auth_service, test_user):
        pair = await auth_service.issue(test_user.id)
        await auth_service.revoke(test_user.id)

        with pytest.raises(UnauthenticatedError):
            await auth_service.refresh(pair.refresh_token)

    async def test_refresh_rejected_for_deactivated_user(
        self, auth_service, memory_store, test_user
    ):
        pair = await auth_service.issue(test_user.id)
        memory_store.set_user_active(test_user.id, False)

        with capture_logs() as logs:
            with pytest.raises(UnauthenticatedError):
                await auth_service.refresh(pair.refresh_token)

        rejected = [entry for entry in logs if entry["event"] == "token_rejected"]
        assert rejected[0]["reason"] == "inactive"
        assert memory_store.get_user(test_user.id).refresh_token == pair.refresh_token

    async def test_new_login_supersedes_old_pair(self, auth_service, test_user):
        old = await auth_service.issue(test_user.id)
        new = await auth_service.issue(test_user.id)

        with pytest.raises(UnauthenticatedError):
            await auth_service.refresh(old.refresh_token)
        assert (await auth_service.refresh(new.refresh_token)).access_token

    async def test_concurrent_refreshes_have_single_winner(
        self, auth_service, memory_store, test_user
    ):
        pair = await auth_service.issue(test_user.id)

        results = await asyncio.gather(
            *(auth_service.refresh(pair.refresh_token) for _ in range(6)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, UnauthenticatedError) for r in losers)
        stored = memory_store.get_user(test_user.id)
        assert stored.refresh_token == winners[0].refresh_token
        assert stored.access_token == winners[0].access_token

    async def test_rejection_reason_logged_not_returned(self, auth_service, test_user):
        pair = await auth_service.issue(test_user.id)
        await auth_service.refresh(pair.refresh_token)

        with capture_logs() as logs:
            with pytest.raises(UnauthenticatedError) as excinfo:
                await auth_service.refresh(pair.refresh_token)

        assert excinfo.value.message == "invalid token"
        rejected = [entry for entry in logs if entry["event"] == "token_rejected"]
        assert rejected[0]["reason"] == "superseded"
        assert rejected[0]["token_kind"] == TokenKind.REFRESH.value
        assert rejected[0]["user_id"] == test_user.id


class TestRevoke:
    async def test_revoke_invalidates_guard_and_is_idempotent(
        self, auth_service, memory_store, test_user
    ):
        pair = await auth_service.issue(test_user.id)

        await auth_service.revoke(test_user.id)
        await auth_service.revoke(test_user.id)

        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(pair.access_token)
        stored = memory_store.get_user(test_user.id)
        assert stored.is_logged_out is True
        assert stored.status.value == "offline"

    async def test_revoke_unknown_identity_rejected(self, auth_service):
        with pytest.raises(UnauthenticatedError):
            await auth_service.revoke("no-such-user")

    async def test_logout_repeatable_with_same_token(self, auth_service, test_user):
        pair = await auth_service.issue(test_user.id)

        assert await auth_service.logout(pair.access_token) == test_user.id
        assert await auth_service.logout(pair.access_token) == test_user.id

    async def test_stale_token_cannot_end_newer_session(self, auth_service, test_user):
        old = await auth_service.issue(test_user.id)
        new = await auth_service.issue(test_user.id)

        with pytest.raises(UnauthenticatedError):
            await auth_service.logout(old.access_token)
        assert (await auth_service.authenticate(new.access_token)).user_id == test_user.id

    @pytest.mark.parametrize("token", [None, "", "not.a.token"])
    async def test_guard_rejects_missing_or_garbage_tokens(self, auth_service, token):
        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(token)

    async def test_guard_rejects_deactivated_user(self, auth_service, memory_store, test_user):
        pair = await auth_service.issue(test_user.id)
        memory_store.set_user_active(test_user.id, False)

        with pytest.raises(UnauthenticatedError):
            await auth_service.authenticate(pair.access_token)


class TestOneTimePassword:
    async def test_one_time_password_works_once(self, auth_service, test_user):
        token, expires_at = await auth_service.issue_one_time_password(test_user.id)

        ctx = await auth_service.consume_one_time_password(token)

        assert ctx.user_id == test_user.id
        assert ctx.token_expires_at == expires_at
        with pytest.raises(UnauthenticatedError):
            await auth_service.consume_one_time_password(token)

    async def test_newer_one_time_password_replaces_older(self, auth_service, test_user):
        old, _ = await auth_service.issue_one_time_password(test_user.id)
        new, _ = await auth_service.issue_one_time_password(test_user.id)

        with pytest.raises(UnauthenticatedError):
            await auth_service.consume_one_time_password(old)
        assert (await auth_service.consume_one_time_password(new)).user_id == test_user.id

    async def test_one_time_password_void_after_logout(self, auth_service, test_user):
        pair = await auth_service.issue(test_user.id)
        token, _ = await auth_service.issue_one_time_password(test_user.id)

        await auth_service.logout(pair.access_token)

        with pytest.raises(UnauthenticatedError):
            await auth_service.consume_one_time_password(token)

    async def test_one_time_password_void_for_deactivated_user(
        self, auth_service, memory_store, test_user
    ):
        token, _ = await auth_service.issue_one_time_password(test_user.id)
        memory_store.set_user_active(test_user.id, False)

        with pytest.raises(UnauthenticatedError):
            await auth_service.consume_one_time_password(token)
        assert memory_store.get_user(test_user.id).one_time_password_token == token

    async def test_access_token_is_not_a_one_time_password(self, auth_service, test_user):
        pair = await auth_service.issue(test_user.id)

        with pytest.raises(UnauthenticatedError):
            await auth_service.consume_one_time_password(pair.access_token)


class SlowStore(MemoryStore):
    def get_user(self, user_id):
        time.sleep(0.3)
        return super().get_user(user_id)


class BrokenStore(MemoryStore):
    def get_user_by_email(self, email):
        raise StoreUnavailable("connection refused")


class TestStoreFailures:
    async def test_slow_store_times_out_as_unavailable(self, passwords):
        settings = make_settings(server={"request_timeout_secs": 0.05})
        store = SlowStore()
        user = store.create_user(TEST_EMAIL, passwords.hash(TEST_PASSWORD))
        service = AuthService(store, settings, passwords=passwords)
        pair = await service.issue(user.id)

        with pytest.raises(StoreUnavailableError) as excinfo:
            await service.authenticate(pair.access_token)

        assert excinfo.value.status_code == 503

    async def test_unreachable_store_reported_as_unavailable(self, settings, passwords):
        service = AuthService(BrokenStore(), settings, passwords=passwords)

        with pytest.raises(StoreUnavailableError):
            await service.login(TEST_EMAIL, TEST_PASSWORD)
