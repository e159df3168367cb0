import pytest

from warden.service.auth import AuthContext, AuthService
from warden.service.errors import (
    BadCredentialsError,
    NonceExpiredError,
    NotAllowedError,
    UnauthorizedError,
)
from warden.service.users import FederatedIdentity
from warden.storage.models import Role, SessionTokenType

PASSWORD = "Password123!"


@pytest.fixture
def alice(runtime):
    return runtime.users.create_user("alice@example.com", password=PASSWORD, send_welcome=False)


class TestExtractBearer:
    def test_parses_bearer_header(self):
        assert AuthService.extract_bearer("Bearer abc.def") == "abc.def"
        assert AuthService.extract_bearer("bearer   abc ") == "abc"

    def test_rejects_other_schemes(self):
        assert AuthService.extract_bearer("Basic Zm9vOmJhcg==") is None
        assert AuthService.extract_bearer("Bearer ") is None
        assert AuthService.extract_bearer(None) is None


class TestPasswordLogin:
    """Credential checks and the failed-login lockout."""

    def test_login_returns_working_pair(self, runtime, alice):
        pair = runtime.auth.login("Alice@Example.com", PASSWORD, user_agent="pytest")
        ctx = runtime.auth.authenticate(pair.access_token)
        assert ctx.user_id == alice.id
        assert ctx.token_type == SessionTokenType.ACCESS
        assert ctx.api_token_id is None

    def test_wrong_password(self, runtime, alice):
        with pytest.raises(BadCredentialsError):
            runtime.auth.login(alice.email, "wrong-password")
        assert runtime.raw_store.get_user(alice.id).failed_login_attempts == 1

    def test_unknown_user_looks_like_wrong_password(self, runtime):
        with pytest.raises(BadCredentialsError) as exc:
            runtime.auth.login("nobody@example.com", PASSWORD)
        assert exc.value.message == "Bad credentials"

    def test_success_resets_failure_counter(self, runtime, alice):
        with pytest.raises(BadCredentialsError):
            runtime.auth.login(alice.email, "wrong-password")
        runtime.auth.login(alice.email, PASSWORD)
        assert runtime.raw_store.get_user(alice.id).failed_login_attempts == 0

    def test_account_locks_after_max_failures(self, runtime, alice, settings):
        for _ in range(settings.max_failed_logins):
            with pytest.raises(BadCredentialsError):
                runtime.auth.login(alice.email, "wrong-password")

        stored = runtime.raw_store.get_user(alice.id)
        assert stored.login_disabled is True
        with pytest.raises(UnauthorizedError) as exc:
            runtime.auth.login(alice.email, PASSWORD)
        assert not isinstance(exc.value, BadCredentialsError)

    def test_lockout_ends_existing_sessions(self, runtime, alice, settings):
        pair = runtime.auth.login(alice.email, PASSWORD)
        for _ in range(settings.max_failed_logins):
            with pytest.raises(BadCredentialsError):
                runtime.auth.login(alice.email, "wrong-password")
        with pytest.raises(UnauthorizedError):
            runtime.auth.authenticate(pair.access_token)

    def test_disabled_user_cannot_login(self, runtime, alice):
        runtime.users.patch_user(alice.id, {"enabled": False})
        with pytest.raises(UnauthorizedError):
            runtime.auth.login(alice.email, PASSWORD)

    def test_federated_user_cannot_use_password_login(self, runtime):
        runtime.auth.login_federated(FederatedIdentity(username="dave@example.com"))
        with pytest.raises(BadCredentialsError):
            runtime.auth.login("dave@example.com", PASSWORD)


class TestFederatedLogin:
    def test_first_login_creates_user(self, runtime):
        pair = runtime.auth.login_federated(
            FederatedIdentity(username="dave@example.com", first_name="Dave", last_name="Lee")
        )
        ctx = runtime.auth.authenticate(pair.access_token)
        assert ctx.user.source == "ldap"
        assert ctx.user.first_name == "Dave"
        assert ctx.user.roles == {"USER"}

    def test_claimed_role_is_used_when_known(self, runtime):
        pair = runtime.auth.login_federated(
            FederatedIdentity(username="erin@example.com", claimed_role="ADMIN")
        )
        assert runtime.auth.authenticate(pair.access_token).user.roles == {"ADMIN"}

    def test_directory_attributes_are_synced(self, runtime):
        runtime.auth.login_federated(FederatedIdentity(username="dave@example.com", first_name="Dave"))
        runtime.auth.login_federated(FederatedIdentity(username="dave@example.com", first_name="David"))
        assert runtime.raw_store.get_user_by_email("dave@example.com").first_name == "David"


class TestAuthenticate:
    def test_missing_bearer(self, runtime):
        with pytest.raises(UnauthorizedError):
            runtime.auth.authenticate(None)

    def test_refresh_token_cannot_authenticate(self, runtime, alice):
        pair = runtime.auth.issue_tokens(alice)
        with pytest.raises(BadCredentialsError):
            runtime.auth.authenticate(pair.refresh_token)

    def test_nonce_rotation_rejects_old_access_token(self, runtime, alice):
        pair = runtime.auth.issue_tokens(alice)
        runtime.users.update_password(alice.id, "NewPassword456!", "NewPassword456!")
        with pytest.raises(NonceExpiredError):
            runtime.auth.authenticate(pair.access_token)

    def test_rights_come_from_current_roles(self, runtime):
        admin = runtime.users.create_user(
            "root@example.com", password=PASSWORD, roles=["ADMIN"], send_welcome=False
        )
        ctx = runtime.auth.authenticate(runtime.auth.issue_tokens(admin).access_token)
        assert "USER_READ" in ctx.rights
        assert "USER_TOKEN_CREATE" in ctx.rights

    def test_require_right(self, runtime, alice):
        ctx = runtime.auth.authenticate(runtime.auth.issue_tokens(alice).access_token)
        with pytest.raises(NotAllowedError):
            AuthService.require_right(ctx, "USER_READ")
        AuthService.require_right(
            AuthContext(user=alice, token_type=SessionTokenType.ACCESS, session_token_id="x", rights=frozenset({"USER_READ"})),
            "USER_READ",
        )


class TestApiTokenAuthentication:
    """Requests signed with API tokens."""

    @pytest.fixture
    def reader(self, runtime):
        runtime.roles.create_role(Role(name="READER", rights={"USER_READ", "USER_TOKEN_CREATE"}))
        return runtime.users.create_user(
            "carol@example.com", password=PASSWORD, roles=["READER"], send_welcome=False
        )

    def test_api_token_authenticates_as_owner(self, runtime, reader):
        api_token, raw = runtime.api_tokens.create_token(reader, "ci", ["USER_READ"])
        ctx = runtime.auth.authenticate(raw)
        assert ctx.token_type == SessionTokenType.API
        assert ctx.user_id == reader.id
        assert ctx.api_token_id == api_token.id
        assert ctx.rights == frozenset({"USER_READ"})
        assert ctx.claims["linked_user"] == reader.email

    def test_rights_shrink_with_owner_role(self, runtime, reader):
        _, raw = runtime.api_tokens.create_token(reader, "ci", ["USER_READ"])
        runtime.roles.update_role("READER", Role(name="READER", rights={"USER_TOKEN_CREATE"}))
        assert runtime.auth.authenticate(raw).rights == frozenset()

    def test_revoked_token_is_rejected(self, runtime, reader):
        api_token, raw = runtime.api_tokens.create_token(reader, "ci", ["USER_READ"])
        runtime.api_tokens.revoke_token(reader, api_token.id)
        with pytest.raises(UnauthorizedError):
            runtime.auth.authenticate(raw)

    def test_owner_changes_remove_api_tokens(self, runtime, reader):
        api_token, raw = runtime.api_tokens.create_token(reader, "ci", ["USER_READ"])
        runtime.users.patch_user(reader.id, {"roles": ["USER"]})
        assert runtime.raw_store.get_api_token(api_token.id) is None
        with pytest.raises(UnauthorizedError):
            runtime.auth.authenticate(raw)

    def test_expired_api_token_is_rejected(self, runtime, reader, clock, settings):
        _, raw = runtime.api_tokens.create_token(reader, "ci", ["USER_READ"])
        clock.advance(days=settings.api_token_default_ttl_days)
        with pytest.raises(UnauthorizedError):
            runtime.auth.authenticate(raw)
