import pytest

from shared.utils import AuthenticatedUser, UnauthorizedException, verify_token, verify_refresh_token

from conftest import run


def user_from(access_token: str) -> AuthenticatedUser:
    payload = verify_token(access_token)
    return AuthenticatedUser(id=payload["sub"], role=payload["role"], jti=payload["jti"], exp=payload["exp"])


def test_issue_returns_token_pair(core):
    tokens = run(core.tokens.issue("user-1", "admin"))

    assert tokens["token_type"] == "bearer"
    access = verify_token(tokens["access_token"])
    assert access["sub"] == "user-1"
    assert access["role"] == "admin"
    refresh = verify_refresh_token(tokens["refresh_token"])
    assert refresh["jti"] in core.tokens.tokens.tokens


def test_rotate_revokes_the_presented_token(core):
    first = run(core.tokens.issue("user-1"))
    second = run(core.tokens.rotate(first["refresh_token"]))

    assert second["refresh_token"] != first["refresh_token"]
    assert verify_refresh_token(second["refresh_token"])["sub"] == "user-1"
    with pytest.raises(UnauthorizedException):
        run(core.tokens.rotate(first["refresh_token"]))
    # The replacement still works
    run(core.tokens.rotate(second["refresh_token"]))


def test_access_token_cannot_be_used_as_refresh_token(core):
    tokens = run(core.tokens.issue("user-1"))
    with pytest.raises(UnauthorizedException):
        run(core.tokens.rotate(tokens["access_token"]))


def test_logout_revokes_access_and_refresh_tokens(core):
    tokens = run(core.tokens.issue("user-1"))
    user = user_from(tokens["access_token"])
    assert run(core.tokens.is_revoked(user.jti)) is False

    run(core.tokens.logout(user, tokens["refresh_token"]))

    assert run(core.tokens.is_revoked(user.jti)) is True
    with pytest.raises(UnauthorizedException):
        run(core.tokens.rotate(tokens["refresh_token"]))


def test_logout_rejects_another_users_refresh_token(core):
    mine = run(core.tokens.issue("user-1"))
    theirs = run(core.tokens.issue("user-2"))
    with pytest.raises(UnauthorizedException):
        run(core.tokens.logout(user_from(mine["access_token"]), theirs["refresh_token"]))


def test_tokens_without_jti_are_never_revoked(core):
    assert run(core.tokens.is_revoked(None)) is False
