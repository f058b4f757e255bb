import httpx
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

import auth
from crud import get_profile
from models import UserRole


def bearer(token="tok"):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_missing_credentials_are_unauthorized():
    with pytest.raises(HTTPException) as excinfo:
        auth.resolve_account(None)
    assert excinfo.value.status_code == 401


def test_account_is_resolved_through_the_auth_service(monkeypatch):
    calls = []

    def fake_get(url, headers, timeout):
        calls.append((url, headers["Authorization"]))
        return httpx.Response(200, json={"id": 11, "role": "student"})

    monkeypatch.setattr(auth.httpx, "get", fake_get)

    assert auth.resolve_account(bearer("abc")) == {"id": 11, "role": "student"}
    assert calls == [(f"{auth.AUTH_SERVICE_URL}/api/v1/auth/me", "Bearer abc")]


@pytest.mark.parametrize("response", [httpx.Response(401), httpx.Response(200, json={"email": "x"})])
def test_rejected_tokens_are_unauthorized(monkeypatch, response):
    monkeypatch.setattr(auth.httpx, "get", lambda *args, **kwargs: response)

    with pytest.raises(HTTPException) as excinfo:
        auth.resolve_account(bearer())
    assert excinfo.value.status_code == 401


def test_unreachable_auth_service_is_a_bad_gateway(monkeypatch):
    def fake_get(*args, **kwargs):
        raise httpx.ConnectError("no route to host")

    monkeypatch.setattr(auth.httpx, "get", fake_get)

    with pytest.raises(HTTPException) as excinfo:
        auth.resolve_account(bearer())
    assert excinfo.value.status_code == 502


def test_known_profile_becomes_the_actor(db, people):
    actor = auth.actor_for_account(db, {"id": people.teacher.id, "role": "student"})
    assert (actor.id, actor.role) == (people.teacher.id, UserRole.TEACHER)


def test_unmirrored_account_is_added_from_the_payload(db):
    actor = auth.actor_for_account(
        db, {"id": 31, "role": "teacher", "email": "nina@guitar.test", "name": "Nina"}
    )

    assert actor.role == UserRole.TEACHER
    assert get_profile(db, 31).full_name == "Nina"


def test_accounts_without_a_portal_role_are_forbidden(db):
    with pytest.raises(HTTPException) as excinfo:
        auth.actor_for_account(db, {"id": 41, "role": "admin"})
    assert excinfo.value.status_code == 403
    assert get_profile(db, 41) is None
