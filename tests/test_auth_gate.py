"""Tests for the FastAPI auth dependencies on a throwaway app."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from conftest import STRONG_PASSWORD
from oceanblog.api.auth_gate import (
    authenticate,
    authorize,
    check_ownership,
    extract_bearer,
    optional_auth,
    require_email_verification,
)
from oceanblog.api.error_handling import register_exception_handlers
from oceanblog.service.runtime import get_runtime
from oceanblog.service.tokens import TokenIssuer
from oceanblog.storage.models import User

POSTS = {
    "p1": {"id": "p1", "title": "Tides", "user": None},
}


async def _load_post(post_id: str):
    return POSTS.get(post_id)


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/private")
    async def private(request: Request, user: User = Depends(authenticate)):
        return {"user_id": user.id, "attached": request.state.user.id}

    @app.get("/maybe")
    async def maybe(user: Optional[User] = Depends(optional_auth)):
        return {"user_id": user.id if user else None}

    @app.get("/admin")
    async def admin_only(user: User = Depends(authorize("admin"))):
        return {"user_id": user.id}

    @app.get("/staff")
    async def staff(user: User = Depends(authorize("admin", "moderator"))):
        return {"role": user.role}

    @app.get("/posts/{id}")
    async def owned_post(request: Request, post=Depends(check_ownership(_load_post))):
        return {"title": post["title"], "attached": request.state.resource["id"]}

    @app.get("/verified")
    async def verified(user: User = Depends(require_email_verification)):
        return {"user_id": user.id}

    return app


@pytest.fixture
def client():
    return TestClient(_build_app())


def _account(email: str, role: str = "user") -> tuple[User, str]:
    runtime = get_runtime()
    result = asyncio.run(runtime.auth.register("Gate Tester", email, STRONG_PASSWORD, STRONG_PASSWORD))
    if role != "user":
        runtime.store.update_user_role(result.user.id, role)
    user = runtime.store.get_user(result.user.id)
    token = runtime.auth.tokens.issue_access_token(user.id, user.email, user.role)
    return user, token


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc", "abc"),
        ("bearer   abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected


def test_authenticate_attaches_user(client):
    user, token = _account("gate@example.com")

    response = client.get("/private", headers=_bearer(token))

    assert response.status_code == 200
    assert response.json() == {"user_id": user.id, "attached": user.id}


def test_authenticate_rejects_missing_and_bad_tokens(client):
    missing = client.get("/private")
    bad = client.get("/private", headers=_bearer("nonsense"))

    assert missing.status_code == bad.status_code == 401
    assert missing.json()["error"]["message"] == "Access token is required"
    assert bad.json()["error"]["message"] == "Invalid token"


def test_authenticate_rejects_expired_token(client):
    user, _ = _account("late@example.com")
    settings = get_runtime().settings
    issued = datetime.now(timezone.utc) - timedelta(minutes=settings.access_token_ttl_minutes + 5)
    expired = TokenIssuer(settings, clock=lambda: issued).issue_access_token(user.id, user.email, user.role)

    response = client.get("/private", headers=_bearer(expired))

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Token expired"


def test_authenticate_rejects_non_ascii_signature(client):
    _, token = _account("accent@example.com")
    head, body, _ = token.split(".")

    # header values travel as latin-1
    header = f"Bearer {head}.{body}.\u00e9".encode("latin-1")

    response = client.get("/private", headers={"Authorization": header})

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid token"


def test_authenticate_rejects_deleted_user(client):
    token = get_runtime().auth.tokens.issue_access_token("no-such-user", "x@example.com", "user")

    response = client.get("/private", headers=_bearer(token))

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "User no longer exists"


def test_authenticate_rejects_deactivated_user(client):
    user, token = _account("sleepy@example.com")
    asyncio.run(get_runtime().auth.set_active(user.id, False))

    response = client.get("/private", headers=_bearer(token))

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "account_deactivated"


def test_optional_auth_never_rejects(client):
    user, token = _account("maybe@example.com")

    assert client.get("/maybe").json() == {"user_id": None}
    assert client.get("/maybe", headers=_bearer("garbage")).json() == {"user_id": None}
    assert client.get("/maybe", headers=_bearer(token)).json() == {"user_id": user.id}


def test_authorize_requires_authentication(client):
    response = client.get("/admin")

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Authentication required"


def test_authorize_keeps_the_token_failure_reason(client):
    response = client.get("/admin", headers=_bearer("garbage"))

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid token"


def test_authorize_checks_roles(client):
    _, user_token = _account("plain@example.com")
    _, admin_token = _account("boss@example.com", role="admin")
    _, mod_token = _account("mod@example.com", role="moderator")

    denied = client.get("/admin", headers=_bearer(user_token))
    assert denied.status_code == 403
    assert denied.json()["error"]["message"] == "Insufficient permissions"
    assert client.get("/admin", headers=_bearer(admin_token)).status_code == 200
    assert client.get("/staff", headers=_bearer(mod_token)).json() == {"role": "moderator"}


def test_check_ownership(client):
    owner, owner_token = _account("owner@example.com")
    _, other_token = _account("other@example.com")
    _, admin_token = _account("root@example.com", role="admin")
    POSTS["p1"]["user"] = owner.id

    mine = client.get("/posts/p1", headers=_bearer(owner_token))
    assert mine.status_code == 200
    assert mine.json() == {"title": "Tides", "attached": "p1"}

    theirs = client.get("/posts/p1", headers=_bearer(other_token))
    assert theirs.status_code == 403
    assert theirs.json()["error"]["message"] == "Not authorized to access this resource"

    assert client.get("/posts/p1", headers=_bearer(admin_token)).status_code == 200

    missing = client.get("/posts/nope", headers=_bearer(owner_token))
    assert missing.status_code == 404
    assert missing.json()["error"]["message"] == "Resource not found"


def test_require_email_verification(client):
    user, token = _account("unverified@example.com")

    blocked = client.get("/verified", headers=_bearer(token))
    assert blocked.status_code == 403
    assert blocked.json()["error"]["message"] == "Email verification required"

    stored = get_runtime().store.get_user(user.id)
    stored.is_email_verified = True
    get_runtime().store.save_user(stored)
    assert client.get("/verified", headers=_bearer(token)).status_code == 200
