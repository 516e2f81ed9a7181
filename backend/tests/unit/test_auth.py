import pytest
from fastapi import HTTPException

from app.infra import jwt as jwt_helper
from app.infra.auth import verify_access_jwt


def test_roles_from_top_level_claim():
    token = jwt_helper.encode_access({"sub": "u1", "roles": ["president", "member"]})

    user = verify_access_jwt(token)

    assert user.id == "u1"
    assert user.roles == ("president", "member")


def test_roles_from_app_metadata_string():
    token = jwt_helper.encode_access({"sub": "u2", "app_metadata": {"roles": "coach, treasurer"}})

    assert verify_access_jwt(token).roles == ("coach", "treasurer")


def test_expired_token_rejected():
    token = jwt_helper.encode_access({"sub": "u3"}, ttl_seconds=-60)

    with pytest.raises(HTTPException) as exc:
        verify_access_jwt(token)
    assert exc.value.status_code == 401


def test_garbage_token_rejected():
    with pytest.raises(HTTPException):
        verify_access_jwt("not-a-jwt")
