from datetime import timedelta, timezone

import jwt
import pytest

from warden.service.errors import (
    ConflictError,
    IllegalArgumentError,
    NotAllowedError,
    ResourceNotFoundError,
)
from warden.storage.models import ApiTokenStatus, SessionTokenType

PASSWORD = "Password123!"


@pytest.fixture
def admin(runtime):
    return runtime.users.create_user(
        "root@example.com", password=PASSWORD, roles=["ADMIN"], send_welcome=False
    )


class TestCreateApiToken:
    def test_create_mints_api_session(self, runtime, admin, clock, settings):
        api_token, raw = runtime.api_tokens.create_token(admin, "deploy", ["USER_READ", "ROLE_READ"])

        assert api_token.status == ApiTokenStatus.ACTIVE
        assert api_token.valid_until == clock.now() + timedelta(days=settings.api_token_default_ttl_days)
        header = jwt.get_unverified_header(raw)
        assert header["typ"] == "API"
        session = runtime.raw_store.get_session_token(header["kid"])
        assert session.type == SessionTokenType.API
        assert session.username == f"root@example.com-api-token-{api_token.id}"
        claims = runtime.verifier.verify(raw)
        assert claims["uid"] == api_token.id
        assert claims["rights"] == ["ROLE_READ", "USER_READ"]

    def test_explicit_expiry(self, runtime, admin, clock):
        until = clock.now() + timedelta(days=2)
        api_token, raw = runtime.api_tokens.create_token(admin, "short", ["USER_READ"], valid_until=until)
        assert api_token.valid_until == until
        assert runtime.raw_store.get_session_token(jwt.get_unverified_header(raw)["kid"]).expiration == until

    def test_expiry_in_past(self, runtime, admin, clock):
        with pytest.raises(IllegalArgumentError):
            runtime.api_tokens.create_token(
                admin, "late", ["USER_READ"], valid_until=clock.now() - timedelta(minutes=1)
            )

    def test_expiry_at_now_is_rejected(self, runtime, admin, clock):
        with pytest.raises(IllegalArgumentError):
            runtime.api_tokens.create_token(admin, "instant", ["USER_READ"], valid_until=clock.now())
        assert runtime.api_tokens.list_tokens(admin) == []

    def test_naive_expiry_is_read_as_utc(self, runtime, admin, clock):
        until = (clock.now() + timedelta(days=2)).replace(tzinfo=None)
        api_token, _ = runtime.api_tokens.create_token(admin, "naive", ["USER_READ"], valid_until=until)
        assert api_token.valid_until == until.replace(tzinfo=timezone.utc)

    def test_duplicate_description(self, runtime, admin):
        runtime.api_tokens.create_token(admin, "deploy", ["USER_READ"])
        with pytest.raises(ConflictError):
            runtime.api_tokens.create_token(admin, "deploy", ["ROLE_READ"])

    def test_requires_rights(self, runtime, admin):
        with pytest.raises(IllegalArgumentError):
            runtime.api_tokens.create_token(admin, "empty", [])

    def test_token_rights_cannot_be_delegated(self, runtime, admin):
        with pytest.raises(IllegalArgumentError):
            runtime.api_tokens.create_token(admin, "minter", ["USER_TOKEN_CREATE"])

    def test_cannot_grant_rights_not_held(self, runtime):
        user = runtime.users.create_user("alice@example.com", password=PASSWORD, send_welcome=False)
        with pytest.raises(NotAllowedError) as exc:
            runtime.api_tokens.create_token(user, "sneaky", ["USER_DELETE"])
        assert exc.value.detail == {"rights": ["USER_DELETE"]}


class TestManageApiTokens:
    def test_list_marks_expired(self, runtime, admin, clock):
        runtime.api_tokens.create_token(admin, "short", ["USER_READ"], valid_until=clock.now() + timedelta(hours=1))
        runtime.api_tokens.create_token(admin, "long", ["USER_READ"])
        clock.advance(hours=2)

        statuses = {t.description: t.status for t in runtime.api_tokens.list_tokens(admin)}

        assert statuses == {"short": ApiTokenStatus.EXPIRED, "long": ApiTokenStatus.ACTIVE}

    def test_revoke(self, runtime, admin):
        api_token, raw = runtime.api_tokens.create_token(admin, "deploy", ["USER_READ"])
        revoked = runtime.api_tokens.revoke_token(admin, api_token.id)
        assert revoked.status == ApiTokenStatus.REVOKED
        assert runtime.raw_store.get_session_token(jwt.get_unverified_header(raw)["kid"]) is None

    def test_revoke_twice(self, runtime, admin):
        api_token, _ = runtime.api_tokens.create_token(admin, "deploy", ["USER_READ"])
        runtime.api_tokens.revoke_token(admin, api_token.id)
        with pytest.raises(IllegalArgumentError):
            runtime.api_tokens.revoke_token(admin, api_token.id)

    def test_other_users_token_is_not_found(self, runtime, admin):
        api_token, _ = runtime.api_tokens.create_token(admin, "deploy", ["USER_READ"])
        other = runtime.users.create_user("alice@example.com", password=PASSWORD, send_welcome=False)
        with pytest.raises(ResourceNotFoundError):
            runtime.api_tokens.get_token(other, api_token.id)
