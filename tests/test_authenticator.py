"""
Tests for authenticator.py - login, lockout, registration and token lifecycle
"""
import logging

import pytest
from argon2 import PasswordHasher

from conftest import PASSWORD
from utils.audit import AuditAction, get_audit_logs
from utils.authenticator import CrewRegistration
from utils.errors import AuthError, AuthErrorKind, TokenError, TokenErrorKind
from utils.rbac import CrewRole, Department


@pytest.fixture
def captain(make_crew):
    return make_crew("AA12345", clearance_level=5, name="Captain Sarah Johnson")


class TestLogin:

    def test_valid_login_returns_working_tokens(self, services, captain):
        pair = services.authenticator.login("AA12345", PASSWORD)

        claims = services.authenticator.authenticate_token(pair.access_token)
        assert claims.employee_id == "AA12345"
        assert claims.clearance_level == 5
        assert services.identities.get("AA12345").last_login_at is not None

    def test_authenticate_alias(self, services, captain):
        assert services.authenticator.authenticate("AA12345", PASSWORD).access_token

    def test_unknown_employee_and_wrong_password_look_the_same(self, services, captain):
        with pytest.raises(AuthError) as unknown:
            services.authenticator.login("ZZ99999", PASSWORD)
        with pytest.raises(AuthError) as wrong:
            services.authenticator.login("AA12345", "Wrong1!pass")

        assert unknown.value.kind is wrong.value.kind is AuthErrorKind.INVALID_CREDENTIALS
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == 401

    def test_failed_login_is_audited(self, services, captain):
        with pytest.raises(AuthError):
            services.authenticator.login("AA12345", "Wrong1!pass", "10.0.0.7")

        logs = get_audit_logs(services.audit_store, employee_id="AA12345", action=AuditAction.LOGIN_FAILED)
        assert len(logs) == 1
        assert logs[0]["details"]["failed_attempts"] == 1
        assert logs[0]["ip_address"] == "10.0.0.0"

    def test_success_resets_failure_counter(self, services, captain):
        for _ in range(3):
            with pytest.raises(AuthError):
                services.authenticator.login("AA12345", "Wrong1!pass")

        services.authenticator.login("AA12345", PASSWORD)
        assert services.identities.get("AA12345").failed_attempts == 0

    def test_outdated_hash_is_upgraded_on_login(self, services, captain):
        legacy = PasswordHasher(time_cost=2, memory_cost=2048, parallelism=1)
        services.identities.update(
            "AA12345", lambda i: setattr(i, "credential_hash", legacy.hash(PASSWORD))
        )

        services.authenticator.login("AA12345", PASSWORD)

        stored = services.identities.get("AA12345").credential_hash
        assert not services.authenticator.hasher.check_needs_rehash(stored)
        services.authenticator.login("AA12345", PASSWORD)


class TestLockout:

    def _fail(self, services, times):
        for _ in range(times):
            with pytest.raises(AuthError) as exc:
                services.authenticator.login("AA12345", "Wrong1!pass")
            assert exc.value.kind is AuthErrorKind.INVALID_CREDENTIALS

    def test_fifth_failure_locks_and_sixth_attempt_is_refused(self, services, captain):
        self._fail(services, 5)
        assert services.identities.get("AA12345").locked_until is not None

        # Correct password no longer helps while locked
        with pytest.raises(AuthError) as exc:
            services.authenticator.login("AA12345", PASSWORD)

        assert exc.value.kind is AuthErrorKind.ACCOUNT_LOCKED
        assert exc.value.status_code == 423
        assert exc.value.details["minutes_remaining"] == 30

    def test_four_failures_do_not_lock(self, services, captain):
        self._fail(services, 4)
        assert services.identities.get("AA12345").locked_until is None
        services.authenticator.login("AA12345", PASSWORD)

    def test_lock_expires(self, services, captain, clock):
        self._fail(services, 5)
        clock.advance(minutes=29)
        with pytest.raises(AuthError) as exc:
            services.authenticator.login("AA12345", PASSWORD)
        assert exc.value.details["minutes_remaining"] == 1

        clock.advance(minutes=1)
        services.authenticator.login("AA12345", PASSWORD)

        identity = services.identities.get("AA12345")
        assert identity.failed_attempts == 0
        assert identity.locked_until is None

    def test_lock_reset_is_logged_only_when_it_happens(self, services, captain, clock, caplog):
        caplog.set_level(logging.INFO, logger="utils.authenticator")
        services.authenticator.login("AA12345", PASSWORD)
        assert "Lock expired" not in caplog.text

        self._fail(services, 5)
        clock.advance(minutes=31)
        services.authenticator.login("AA12345", PASSWORD)
        services.authenticator.login("AA12345", PASSWORD)

        assert caplog.text.count("Lock expired for AA12345") == 1

    def test_counter_restarts_after_lock_expiry(self, services, captain, clock):
        self._fail(services, 5)
        clock.advance(minutes=31)

        self._fail(services, 1)
        assert services.identities.get("AA12345").failed_attempts == 1
        assert services.identities.get("AA12345").locked_until is None

    def test_lockout_raises_security_alert(self, services, captain):
        self._fail(services, 5)

        alerts = services.monitor.get_alerts()
        assert [a.alert_type for a in alerts] == ["account_lockout"]
        assert alerts[0].employee_id == "AA12345"

    def test_deactivated_account_cannot_login(self, services, captain):
        services.identities.update("AA12345", lambda i: setattr(i, "is_active", False))

        with pytest.raises(AuthError) as exc:
            services.authenticator.login("AA12345", PASSWORD)

        assert exc.value.kind is AuthErrorKind.ACCOUNT_DEACTIVATED


class TestRegistration:

    def _registration(self, **overrides):
        fields = dict(
            employee_id="AA20001",
            name="Jennifer Wilson",
            role=CrewRole.DISPATCHER,
            department=Department.DISPATCH,
            clearance_level=4,
            airline="American Airlines",
        )
        fields.update(overrides)
        return CrewRegistration(**fields)

    def test_register_issues_tokens_and_hashes_password(self, services):
        pair = services.authenticator.register(self._registration(), PASSWORD)

        stored = services.identities.get("AA20001")
        assert stored.credential_hash.startswith("$argon2id$")
        assert PASSWORD not in stored.credential_hash
        assert services.tokens.verify_access_token(pair.access_token).role is CrewRole.DISPATCHER

    def test_duplicate_employee_id(self, services):
        services.authenticator.register(self._registration(), PASSWORD)

        with pytest.raises(AuthError) as exc:
            services.authenticator.register(self._registration(), PASSWORD)

        assert exc.value.kind is AuthErrorKind.ALREADY_EXISTS
        assert exc.value.code == "USER_EXISTS"
        assert exc.value.status_code == 409

    @pytest.mark.parametrize("password", ["short1!", "alllowercase1!", "NoDigits!!", "NoSpecial123"])
    def test_weak_password(self, services, password):
        with pytest.raises(AuthError) as exc:
            services.authenticator.register(self._registration(), password)

        assert exc.value.kind is AuthErrorKind.WEAK_PASSWORD
        assert not services.identities.exists("AA20001")

    @pytest.mark.parametrize("field, value", [
        ("employee_id", "aa123"),
        ("clearance_level", 6),
        ("name", "R2-D2 <script>"),
    ])
    def test_invalid_registration_fields(self, field, value):
        with pytest.raises(ValueError):
            self._registration(**{field: value})


class TestPasswordChange:

    def test_change_password(self, services, captain):
        services.authenticator.change_password("AA12345", PASSWORD, "Brand-New2!")

        services.authenticator.login("AA12345", "Brand-New2!")
        with pytest.raises(AuthError):
            services.authenticator.login("AA12345", PASSWORD)

    def test_wrong_current_password(self, services, captain):
        with pytest.raises(AuthError) as exc:
            services.authenticator.change_password("AA12345", "Wrong1!pass", "Brand-New2!")

        assert exc.value.kind is AuthErrorKind.INVALID_CURRENT_SECRET

    def test_same_password_rejected(self, services, captain):
        with pytest.raises(AuthError) as exc:
            services.authenticator.change_password("AA12345", PASSWORD, PASSWORD)

        assert exc.value.kind is AuthErrorKind.WEAK_PASSWORD

    def test_unknown_employee(self, services):
        with pytest.raises(AuthError) as exc:
            services.authenticator.change_password("ZZ99999", PASSWORD, "Brand-New2!")

        assert exc.value.kind is AuthErrorKind.NOT_FOUND


class TestRefreshAndLogout:

    def test_refresh_issues_new_pair(self, services, captain):
        pair = services.authenticator.login("AA12345", PASSWORD)
        refreshed = services.authenticator.refresh(pair.refresh_token)

        assert refreshed.refresh_token != pair.refresh_token
        assert services.authenticator.authenticate_token(refreshed.access_token).employee_id == "AA12345"

    def test_refresh_token_can_be_used_twice(self, services, captain):
        pair = services.authenticator.login("AA12345", PASSWORD)

        services.authenticator.refresh(pair.refresh_token)
        services.authenticator.refresh(pair.refresh_token)

    def test_refresh_with_access_token_fails(self, services, captain):
        pair = services.authenticator.login("AA12345", PASSWORD)

        with pytest.raises(TokenError) as exc:
            services.authenticator.refresh(pair.access_token)

        assert exc.value.code == "INVALID_REFRESH_TOKEN"

    def test_expired_refresh_token(self, services, captain, clock):
        pair = services.authenticator.login("AA12345", PASSWORD)
        clock.advance(days=7)

        with pytest.raises(TokenError) as exc:
            services.authenticator.refresh(pair.refresh_token)

        assert exc.value.kind is TokenErrorKind.EXPIRED
        assert exc.value.code == "INVALID_REFRESH_TOKEN"

    def test_refresh_for_deactivated_account(self, services, captain):
        pair = services.authenticator.login("AA12345", PASSWORD)
        services.identities.update("AA12345", lambda i: setattr(i, "is_active", False))

        with pytest.raises(TokenError):
            services.authenticator.refresh(pair.refresh_token)

    def test_logout_revokes_both_tokens(self, services, captain):
        pair = services.authenticator.login("AA12345", PASSWORD)
        services.authenticator.logout(pair.access_token, pair.refresh_token)

        with pytest.raises(TokenError) as exc:
            services.authenticator.authenticate_token(pair.access_token)
        assert exc.value.kind is TokenErrorKind.REVOKED

        with pytest.raises(TokenError):
            services.authenticator.refresh(pair.refresh_token)

    def test_logout_ignores_another_members_refresh_token(self, services, captain, make_crew):
        make_crew("AA12346", role=CrewRole.CO_PILOT, name="First Officer Mike Chen")
        mine = services.authenticator.login("AA12345", PASSWORD)
        theirs = services.authenticator.login("AA12346", PASSWORD)

        services.authenticator.logout(mine.access_token, theirs.refresh_token)

        services.authenticator.refresh(theirs.refresh_token)

    def test_revoked_token_use_is_tracked(self, services, captain):
        pair = services.authenticator.login("AA12345", PASSWORD)
        services.authenticator.logout(pair.access_token)

        for _ in range(3):
            with pytest.raises(TokenError):
                services.authenticator.authenticate_token(pair.access_token)

        assert "revoked_token_reuse" in [a.alert_type for a in services.monitor.get_alerts()]


class TestAuthenticateToken:

    def test_claims_follow_stored_identity(self, services, captain):
        pair = services.authenticator.login("AA12345", PASSWORD)
        services.identities.update("AA12345", lambda i: setattr(i, "clearance_level", 2))

        assert services.authenticator.authenticate_token(pair.access_token).clearance_level == 2

    def test_deactivated_identity(self, services, captain):
        pair = services.authenticator.login("AA12345", PASSWORD)
        services.identities.update("AA12345", lambda i: setattr(i, "is_active", False))

        with pytest.raises(AuthError) as exc:
            services.authenticator.authenticate_token(pair.access_token)

        assert exc.value.kind is AuthErrorKind.ACCOUNT_DEACTIVATED
