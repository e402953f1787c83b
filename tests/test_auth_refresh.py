"""Tests for refresh-token rotation."""

import pytest

from ssoauth.service.errors import (
    InvalidTokenError,
    MissingFieldError,
    RefreshTokenMismatchError,
    SessionRevokedError,
    StaleTokenError,
    TokenExpiredError,
    UserNotFoundError,
)
from ssoauth.storage.errors import RecordNotFound, StoreUnavailable


class TestRefreshRotation:
    async def test_refresh_rotates_and_bumps_version(self, auth, codec, registry):
        login = await auth.login("alice@gmail.com", "Password1", "phone")

        pair = await auth.refresh_access(login.refresh_token)

        assert pair.refresh_token != login.refresh_token
        assert codec.verify_access(pair.access_token).ver == 2
        assert await registry.get_refresh_token("u1:phone") == pair.refresh_token

    async def test_only_latest_refresh_token_is_accepted(self, auth):
        current = (await auth.login("alice@gmail.com", "Password1", "phone")).refresh_token
        issued = [current]
        for _ in range(4):
            current = (await auth.refresh_access(current)).refresh_token
            issued.append(current)

        for stale in issued[:-1]:
            with pytest.raises(RefreshTokenMismatchError):
                await auth.refresh_access(stale)
        # The rejected attempts did not consume the current token
        assert (await auth.refresh_access(issued[-1])).refresh_token

    async def test_refresh_invalidates_earlier_access_tokens(self, auth):
        login = await auth.login("alice@gmail.com", "Password1", "phone")
        await auth.refresh_access(login.refresh_token)

        with pytest.raises(StaleTokenError):
            await auth.logout(login.access_token)

    async def test_refresh_picks_up_profile_changes(self, auth, users, codec):
        login = await auth.login("alice@gmail.com", "Password1", "phone")
        users.users["alice@gmail.com"]["role"] = "admin"

        pair = await auth.refresh_access(login.refresh_token)

        assert codec.verify_access(pair.access_token).role == "admin"

    async def test_refresh_after_logout_is_revoked(self, auth):
        login = await auth.login("alice@gmail.com", "Password1", "phone")
        await auth.logout(login.access_token)

        with pytest.raises(SessionRevokedError):
            await auth.refresh_access(login.refresh_token)


class TestRefreshRejections:
    async def test_empty_token(self, auth):
        with pytest.raises(MissingFieldError):
            await auth.refresh_access("")

    async def test_garbage_token(self, auth):
        with pytest.raises(InvalidTokenError):
            await auth.refresh_access("a.b.c")

    async def test_expired_token_is_reported_as_expired(self, auth, clock, settings):
        login = await auth.login("alice@gmail.com", "Password1", "phone")
        clock.advance(settings.refresh_token_ttl_seconds)

        with pytest.raises(TokenExpiredError):
            await auth.refresh_access(login.refresh_token)

    async def test_access_token_cannot_refresh(self, auth):
        login = await auth.login("alice@gmail.com", "Password1", "phone")
        with pytest.raises(InvalidTokenError):
            await auth.refresh_access(login.access_token)

    async def test_malformed_session_claim(self, auth, codec, registry):
        token = codec.issue_refresh("no-separator")
        await registry.save_refresh_token("no-separator", token)

        with pytest.raises(InvalidTokenError, match="invalid session format"):
            await auth.refresh_access(token)

    async def test_vanished_user_keeps_stored_token(self, auth, users, registry):
        login = await auth.login("alice@gmail.com", "Password1", "phone")
        del users.users["alice@gmail.com"]

        with pytest.raises(UserNotFoundError):
            await auth.refresh_access(login.refresh_token)
        assert await registry.get_refresh_token("u1:phone") == login.refresh_token
        assert await registry.get_version("u1:phone") == 1

    async def test_rotation_failure_keeps_old_token(self, auth, registry):
        login = await auth.login("alice@gmail.com", "Password1", "phone")
        registry.fail("rotate_refresh_token")

        with pytest.raises(StoreUnavailable):
            await auth.refresh_access(login.refresh_token)
        assert await registry.get_refresh_token("u1:phone") == login.refresh_token
        assert await registry.get_version("u1:phone") == 1

        registry.failures.clear()
        assert (await auth.refresh_access(login.refresh_token)).refresh_token

    async def test_logout_during_refresh_is_revoked(self, auth, users, registry):
        login = await auth.login("alice@gmail.com", "Password1", "phone")
        original = users.find_user_by_id

        async def lookup_then_logout(user_id):
            await auth.logout(login.access_token)
            return await original(user_id)

        users.find_user_by_id = lookup_then_logout

        with pytest.raises(SessionRevokedError):
            await auth.refresh_access(login.refresh_token)
        with pytest.raises(RecordNotFound):
            await registry.get_refresh_token("u1:phone")

    async def test_login_during_refresh_wins(self, auth, users, registry):
        login = await auth.login("alice@gmail.com", "Password1", "phone")
        original = users.find_user_by_id
        relogin = []

        async def lookup_with_relogin(user_id):
            relogin.append(await auth.login("alice@gmail.com", "Password1", "phone"))
            return await original(user_id)

        users.find_user_by_id = lookup_with_relogin

        with pytest.raises(RefreshTokenMismatchError):
            await auth.refresh_access(login.refresh_token)
        assert await registry.get_refresh_token("u1:phone") == relogin[0].refresh_token
        assert await registry.get_version("u1:phone") == 2

    async def test_refresh_does_not_check_access_version(self, auth, codec):
        """A current refresh token is enough; the access version is not consulted."""
        await auth.login("alice@gmail.com", "Password1", "phone")
        latest = await auth.login("alice@gmail.com", "Password1", "phone")

        pair = await auth.refresh_access(latest.refresh_token)
        assert codec.verify_access(pair.access_token).ver == 3
