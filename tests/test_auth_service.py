"""Unit tests for AuthService session flows.

Tests for:
- Login (plain and MFA-gated) and credential enumeration resistance
- Refresh rotation, replay and the rotation race
- Logout, logout everywhere and role changes
- Registration gating
- Infrastructure failures surfacing as a generic result
"""

import asyncio

import pytest

from sessionguard.service.errors import AuthErrorCode
from sessionguard.service.tokens import TokenKind, hash_refresh_token
from sessionguard.storage.common import ALLOW_REGISTRATION_KEY, SYSTEM_INITIALIZED_KEY
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import UserRole

PASSWORD = "Correct-Horse7Battery!"


async def _login(auth_service, username="alice", password=PASSWORD, **kwargs):
    result = await auth_service.login(username, password, **kwargs)
    assert result.success, result.message
    return result


class TestLogin:
    async def test_login_issues_pair_and_persists_hashed_refresh(
        self, auth_service, memory_store, test_user, settings, clock
    ):
        result = await auth_service.login(
            "alice", PASSWORD, device_info="laptop", ip_address="10.0.0.1"
        )

        assert result.success
        assert result.status_code == 200
        assert result.token_type == "Bearer"
        assert result.user.id == test_user.id
        assert result.user.roles == ["user"]
        assert result.access_token_expires_at == int(clock.now) + settings.access_token_ttl_seconds
        assert result.refresh_token_expires_at == int(clock.now) + settings.refresh_token_ttl_seconds

        record = await memory_store.get_refresh_token_by_hash(
            hash_refresh_token(result.refresh_token)
        )
        assert record is not None
        assert record.user_id == test_user.id
        assert record.device_info == "laptop"
        assert record.ip_address == "10.0.0.1"
        assert result.refresh_token not in memory_store.refresh_tokens

    async def test_wrong_password_and_unknown_user_look_identical(
        self, auth_service, test_user
    ):
        wrong = await auth_service.login("alice", "Wrong-Password9!")
        unknown = await auth_service.login("mallory", "Wrong-Password9!")

        assert wrong.error is unknown.error is AuthErrorCode.INVALID_CREDENTIALS
        assert wrong.message == unknown.message
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.access_token is None and unknown.access_token is None

    async def test_unknown_user_still_spends_a_hash_verification(
        self, auth_service, passwords, monkeypatch
    ):
        calls = []
        original = passwords.verify_dummy

        def counting(password):
            calls.append(password)
            return original(password)

        monkeypatch.setattr(passwords, "verify_dummy", counting)

        await auth_service.login("nobody", "whatever")

        assert calls == ["whatever"]

    async def test_mfa_user_gets_temp_token_instead_of_session(
        self, auth_service, test_user
    ):
        await auth_service.enable_mfa(test_user.id)

        result = await auth_service.login("alice", PASSWORD)

        assert not result.success
        assert result.error is AuthErrorCode.MFA_REQUIRED
        assert result.mfa_token
        assert result.access_token is None
        assert result.refresh_token is None
        assert result.user is None

    async def test_mfa_login_completes_with_totp(self, auth_service, mfa, test_user):
        setup = (await auth_service.enable_mfa(test_user.id)).mfa_setup
        pending = await auth_service.login("alice", PASSWORD)

        result = await auth_service.complete_mfa_login(
            pending.mfa_token, mfa.generate_code(setup.secret)
        )

        assert result.success
        assert result.access_token and result.refresh_token
        assert result.user.id == test_user.id

    async def test_mfa_temp_token_is_single_use(self, auth_service, mfa, test_user):
        setup = (await auth_service.enable_mfa(test_user.id)).mfa_setup
        pending = await auth_service.login("alice", PASSWORD)
        code = mfa.generate_code(setup.secret)

        assert (await auth_service.complete_mfa_login(pending.mfa_token, code)).success
        replay = await auth_service.complete_mfa_login(pending.mfa_token, code)

        assert replay.error is AuthErrorCode.TOKEN_REVOKED

    async def test_wrong_totp_is_rejected(self, auth_service, test_user):
        await auth_service.enable_mfa(test_user.id)
        pending = await auth_service.login("alice", PASSWORD)

        result = await auth_service.complete_mfa_login(pending.mfa_token, "000000")

        # a wrong guess leaves the temp token usable for a retry
        assert result.error is AuthErrorCode.INVALID_MFA_CODE
        assert result.status_code == 401

    async def test_backup_code_is_consumed(self, auth_service, memory_store, test_user):
        setup = (await auth_service.enable_mfa(test_user.id)).mfa_setup
        code = setup.backup_codes[0]

        first = await auth_service.verify_mfa_and_issue(test_user.id, backup_code=code)
        second = await auth_service.verify_mfa_and_issue(test_user.id, backup_code=code)

        assert first.success
        assert second.error is AuthErrorCode.INVALID_MFA_CODE
        stored = await memory_store.get_user(test_user.id)
        assert code not in stored.backup_codes
        assert len(stored.backup_codes) == len(setup.backup_codes) - 1

    async def test_backup_code_accepted_in_code_field(self, auth_service, test_user):
        setup = (await auth_service.enable_mfa(test_user.id)).mfa_setup

        result = await auth_service.verify_mfa_and_issue(
            test_user.id, setup.backup_codes[3].lower()
        )

        assert result.success

    async def test_mfa_verification_for_user_without_mfa(self, auth_service, test_user):
        result = await auth_service.verify_mfa_and_issue(test_user.id, "123456")

        assert result.error is AuthErrorCode.MFA_NOT_ENABLED

    async def test_mfa_verification_for_unknown_user(self, auth_service):
        result = await auth_service.verify_mfa_and_issue("missing", "123456")

        assert result.error is AuthErrorCode.USER_NOT_FOUND

    async def test_reset_token_cannot_complete_mfa_login(self, auth_service, test_user):
        await auth_service.enable_mfa(test_user.id)
        reset = await auth_service.request_password_reset("alice")

        result = await auth_service.complete_mfa_login(reset.reset_token, "000000")

        assert result.error is AuthErrorCode.TOKEN_MALFORMED

    async def test_failed_attempt_keeps_mfa_token_usable(self, auth_service, mfa, test_user):
        setup = (await auth_service.enable_mfa(test_user.id)).mfa_setup
        pending = await auth_service.login("alice", PASSWORD)

        wrong = await auth_service.complete_mfa_login(pending.mfa_token, "000000")
        right = await auth_service.complete_mfa_login(
            pending.mfa_token, mfa.generate_code(setup.secret)
        )

        assert wrong.error is AuthErrorCode.INVALID_MFA_CODE
        assert right.success

    async def test_concurrent_backup_code_redemption_yields_one_session(
        self, auth_service, memory_store, test_user, monkeypatch
    ):
        setup = (await auth_service.enable_mfa(test_user.id)).mfa_setup
        code = setup.backup_codes[0]
        original_get_user = memory_store.get_user

        async def slow_get_user(user_id):
            # both callers read the user before either consumes the code
            user = await original_get_user(user_id)
            await asyncio.sleep(0)
            return user

        monkeypatch.setattr(memory_store, "get_user", slow_get_user)

        first, second = await asyncio.gather(
            auth_service.verify_mfa_and_issue(test_user.id, backup_code=code),
            auth_service.verify_mfa_and_issue(test_user.id, backup_code=code),
        )

        assert sorted([first.success, second.success]) == [False, True]
        loser = first if not first.success else second
        assert loser.error is AuthErrorCode.INVALID_MFA_CODE
        assert loser.access_token is None
        stored = await original_get_user(test_user.id)
        assert len(stored.backup_codes) == len(setup.backup_codes) - 1

    async def test_concurrent_mfa_completion_yields_one_session(
        self, auth_service, registry, mfa, test_user, monkeypatch
    ):
        setup = (await auth_service.enable_mfa(test_user.id)).mfa_setup
        pending = await auth_service.login("alice", PASSWORD)
        code = mfa.generate_code(setup.secret)
        original_is_blacklisted = registry.is_blacklisted

        async def slow_is_blacklisted(jti):
            # both callers pass token verification before either claims it
            revoked = await original_is_blacklisted(jti)
            await asyncio.sleep(0)
            return revoked

        monkeypatch.setattr(registry, "is_blacklisted", slow_is_blacklisted)

        first, second = await asyncio.gather(
            auth_service.complete_mfa_login(pending.mfa_token, code),
            auth_service.complete_mfa_login(pending.mfa_token, code),
        )

        assert sorted([first.success, second.success]) == [False, True]
        loser = first if not first.success else second
        assert loser.error is AuthErrorCode.TOKEN_REVOKED
        assert loser.access_token is None


class TestRefresh:
    async def test_refresh_rotates_pair(self, auth_service, memory_store, test_user):
        session = await _login(auth_service)

        rotated = await auth_service.refresh(session.refresh_token)

        assert rotated.success
        assert rotated.refresh_token != session.refresh_token
        assert rotated.access_token != session.access_token
        old = await memory_store.get_refresh_token_by_hash(
            hash_refresh_token(session.refresh_token)
        )
        assert old.is_revoked
        assert old.revoked_reason == "token refresh"

    async def test_refresh_keeps_device_metadata(self, auth_service, memory_store, test_user):
        session = await _login(auth_service, device_info="phone", user_agent="ua/1.0")

        rotated = await auth_service.refresh(session.refresh_token)

        record = await memory_store.get_refresh_token_by_hash(
            hash_refresh_token(rotated.refresh_token)
        )
        assert record.device_info == "phone"
        assert record.user_agent == "ua/1.0"

    async def test_replayed_refresh_token_is_revoked(self, auth_service, test_user):
        session = await _login(auth_service)
        assert (await auth_service.refresh(session.refresh_token)).success

        replay = await auth_service.refresh(session.refresh_token)

        assert replay.error is AuthErrorCode.TOKEN_REVOKED
        assert replay.access_token is None

    async def test_concurrent_redemption_yields_one_pair(
        self, auth_service, memory_store, test_user
    ):
        session = await _login(auth_service)
        before = len(memory_store.refresh_tokens)

        first, second = await asyncio.gather(
            auth_service.refresh(session.refresh_token),
            auth_service.refresh(session.refresh_token),
        )

        outcomes = sorted([first.success, second.success])
        assert outcomes == [False, True]
        loser = first if not first.success else second
        assert loser.error is AuthErrorCode.TOKEN_REVOKED
        assert len(memory_store.refresh_tokens) == before + 1

    async def test_losing_the_revocation_write_mints_nothing(
        self, auth_service, memory_store, test_user, monkeypatch
    ):
        session = await _login(auth_service)
        before = len(memory_store.refresh_tokens)

        async def already_flipped(token_hash, reason):
            return False

        monkeypatch.setattr(memory_store, "revoke_refresh_token_by_hash", already_flipped)

        result = await auth_service.refresh(session.refresh_token)

        assert result.error is AuthErrorCode.TOKEN_REVOKED
        assert result.refresh_token is None
        assert len(memory_store.refresh_tokens) == before

    async def test_access_token_cannot_refresh(self, auth_service, test_user):
        session = await _login(auth_service)

        result = await auth_service.refresh(session.access_token)

        assert result.error is AuthErrorCode.TOKEN_MALFORMED

    async def test_expired_refresh_token(self, auth_service, settings, clock, test_user):
        session = await _login(auth_service)
        clock.advance(settings.refresh_token_ttl_seconds)

        result = await auth_service.refresh(session.refresh_token)

        assert result.error is AuthErrorCode.TOKEN_EXPIRED

    async def test_garbage_refresh_token(self, auth_service):
        result = await auth_service.refresh("not-a-token")

        assert result.error is AuthErrorCode.TOKEN_MALFORMED

    async def test_refresh_without_stored_record_is_revoked(
        self, auth_service, tokens, test_user
    ):
        orphan = await tokens.issue_refresh(test_user.id)

        result = await auth_service.refresh(orphan.token)

        assert result.error is AuthErrorCode.TOKEN_REVOKED


class TestLogout:
    async def test_logout_revokes_refresh_and_is_idempotent(
        self, auth_service, memory_store, test_user
    ):
        session = await _login(auth_service)

        first = await auth_service.logout(session.refresh_token)
        second = await auth_service.logout(session.refresh_token)

        assert first.success and second.success
        record = await memory_store.get_refresh_token_by_hash(
            hash_refresh_token(session.refresh_token)
        )
        assert record.revoked_reason == "user logout"
        assert (await auth_service.refresh(session.refresh_token)).error is AuthErrorCode.TOKEN_REVOKED

    async def test_logout_with_access_token_blacklists_it(self, auth_service, test_user):
        session = await _login(auth_service)
        assert await auth_service.authenticate(session.access_token) is not None

        await auth_service.logout(session.refresh_token, access_token=session.access_token)

        assert await auth_service.authenticate(session.access_token) is None

    async def test_logout_of_garbage_still_succeeds(self, auth_service):
        assert (await auth_service.logout("garbage")).success

    async def test_logout_everywhere_kills_every_refresh_token(
        self, auth_service, memory_store, test_user
    ):
        sessions = [await _login(auth_service) for _ in range(3)]

        result = await auth_service.logout_everywhere(test_user.id)

        assert result.success
        assert result.details["revoked"] == 3
        for session in sessions:
            refreshed = await auth_service.refresh(session.refresh_token)
            assert refreshed.error is AuthErrorCode.TOKEN_REVOKED
        assert await memory_store.list_active_refresh_tokens(test_user.id) == []

    async def test_logout_everywhere_leaves_access_tokens_until_expiry(
        self, auth_service, settings, clock, test_user
    ):
        session = await _login(auth_service)

        await auth_service.logout_everywhere(test_user.id)

        assert await auth_service.authenticate(session.access_token) is not None
        clock.advance(settings.access_token_ttl_seconds)
        assert await auth_service.authenticate(session.access_token) is None

    async def test_login_after_logout_everywhere_works(self, auth_service, test_user):
        await _login(auth_service)
        await auth_service.logout_everywhere(test_user.id)

        fresh = await _login(auth_service)

        assert (await auth_service.refresh(fresh.refresh_token)).success

    async def test_logout_everywhere_unknown_user(self, auth_service):
        result = await auth_service.logout_everywhere("missing")

        assert result.error is AuthErrorCode.USER_NOT_FOUND


class TestRegistration:
    async def test_uninitialized_system_refuses(self, auth_service):
        result = await auth_service.register("bob", "bob@example.com", PASSWORD)

        assert result.error is AuthErrorCode.SYSTEM_NOT_INITIALIZED
        assert result.status_code == 403

    async def test_disabled_registration_refuses(self, auth_service, memory_store):
        await memory_store.set_system_setting(SYSTEM_INITIALIZED_KEY, "true")
        await memory_store.set_system_setting(ALLOW_REGISTRATION_KEY, "false")

        result = await auth_service.register("bob", "bob@example.com", PASSWORD)

        assert result.error is AuthErrorCode.REGISTRATION_DISABLED

    async def test_register_logs_in(self, auth_service, memory_store, open_registration):
        result = await auth_service.register("bob", "bob@example.com", PASSWORD)

        assert result.success
        assert result.access_token and result.refresh_token
        stored = await memory_store.get_user_by_username("bob")
        assert stored.role is UserRole.USER
        assert stored.password_hash != PASSWORD
        assert result.user.email == "bob@example.com"

    async def test_duplicate_username(self, auth_service, open_registration, test_user):
        result = await auth_service.register("alice", "other@example.com", PASSWORD)

        assert result.error is AuthErrorCode.USER_EXISTS
        assert result.status_code == 409

    async def test_duplicate_email(self, auth_service, open_registration, test_user):
        result = await auth_service.register("alice2", "ALICE@example.com", PASSWORD)

        assert result.error is AuthErrorCode.USER_EXISTS

    async def test_weak_password(self, auth_service, memory_store, open_registration):
        result = await auth_service.register("bob", None, "aaaaaa")

        assert result.error is AuthErrorCode.WEAK_PASSWORD
        assert result.password_strength is not None
        assert result.password_strength.is_weak
        assert await memory_store.get_user_by_username("bob") is None


class TestAccessAndRoles:
    async def test_authenticate_returns_context(self, auth_service, test_user):
        session = await _login(auth_service)

        context = await auth_service.authenticate(session.access_token)

        assert context.user_id == test_user.id
        assert context.username == "alice"
        assert context.role == "user"

    async def test_authenticate_rejects_refresh_and_missing_tokens(
        self, auth_service, test_user
    ):
        session = await _login(auth_service)

        assert await auth_service.authenticate(session.refresh_token) is None
        assert await auth_service.authenticate(None) is None
        assert await auth_service.authenticate("") is None

    async def test_required_role(self, auth_service, test_user):
        session = await _login(auth_service)

        assert await auth_service.authenticate(session.access_token, required_role="admin") is None
        assert await auth_service.authenticate(session.access_token, required_role="user")

    async def test_role_change_revokes_sessions(self, auth_service, test_user):
        before = await _login(auth_service)

        result = await auth_service.set_user_role(test_user.id, UserRole.ADMIN)

        assert result.success
        assert result.user.roles == ["admin"]
        # the old access token still claims the old role
        assert await auth_service.authenticate(before.access_token) is None
        assert (await auth_service.refresh(before.refresh_token)).error is AuthErrorCode.TOKEN_REVOKED

        after = await _login(auth_service)
        context = await auth_service.authenticate(after.access_token, required_role="user")
        assert context.role == "admin"

    async def test_profile(self, auth_service, test_user):
        result = await auth_service.get_user_profile(test_user.id)

        assert result.user.username == "alice"
        assert result.user.email == "alice@example.com"
        assert (await auth_service.get_user_profile("missing")).error is AuthErrorCode.USER_NOT_FOUND


class TestInfrastructureFailures:
    async def test_store_outage_is_generic(self, auth_service, memory_store, monkeypatch):
        async def unavailable(*args, **kwargs):
            raise StoreUnavailableError("connection to 10.0.0.5 refused")

        monkeypatch.setattr(memory_store, "get_user_by_username", unavailable)

        result = await auth_service.login("alice", PASSWORD)

        assert result.error is AuthErrorCode.INFRASTRUCTURE_FAILURE
        assert result.status_code == 503
        assert "10.0.0.5" not in result.message

    async def test_refresh_record_failure_voids_minted_pair(
        self, auth_service, memory_store, registry, test_user, monkeypatch
    ):
        async def unavailable(record):
            raise StoreUnavailableError("database unavailable")

        monkeypatch.setattr(memory_store, "create_refresh_token", unavailable)

        result = await auth_service.login("alice", PASSWORD)

        assert result.error is AuthErrorCode.INFRASTRUCTURE_FAILURE
        assert result.access_token is None and result.refresh_token is None
        assert len(registry._blacklist) == 2

    async def test_authenticate_fails_closed(self, auth_service, memory_store, test_user, monkeypatch):
        session = await _login(auth_service)

        async def unavailable(user_id):
            raise StoreUnavailableError("database unavailable")

        monkeypatch.setattr(memory_store, "get_user", unavailable)

        assert await auth_service.authenticate(session.access_token) is None


class TestMaintenance:
    async def test_cleanup_purges_expired_records_and_blacklist(
        self, auth_service, memory_store, registry, settings, clock, test_user
    ):
        session = await _login(auth_service)
        await auth_service.logout(session.refresh_token, access_token=session.access_token)
        assert len(registry._blacklist) == 2

        clock.advance(settings.refresh_token_ttl_seconds + 1)
        cleaned = await auth_service.cleanup_expired_state()

        assert cleaned == 3
        assert registry._blacklist == {}
        assert memory_store.refresh_tokens == {}


@pytest.mark.parametrize(
    "code, status",
    [
        (AuthErrorCode.INVALID_CREDENTIALS, 401),
        (AuthErrorCode.WEAK_PASSWORD, 400),
        (AuthErrorCode.USER_NOT_FOUND, 404),
        (AuthErrorCode.API_KEY_NAME_INVALID, 400),
        (AuthErrorCode.API_KEY_NOT_FOUND, 404),
        (AuthErrorCode.API_KEY_NAME_TAKEN, 409),
        (AuthErrorCode.INFRASTRUCTURE_FAILURE, 503),
        (None, 200),
    ],
)
def test_status_codes(code, status):
    from sessionguard.service.errors import status_code_for

    assert status_code_for(code) == status


def test_token_kind_values():
    assert [k.value for k in TokenKind] == ["access", "refresh", "temp"]
