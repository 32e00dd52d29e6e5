"""Admin console auth over HTTP: login, 2FA gate, refresh, session listing and revocation."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from nestauth import app as app_module
from nestauth.config import get_settings
from nestauth.service import totp
from nestauth.service.runtime import Runtime, reset_runtime_for_tests
from nestauth.storage.models import AdminRole

ADMIN_EMAIL = "ops@example.com"
ADMIN_PASSWORD = "Console-Pass1"


@pytest.fixture
def runtime(clock):
    return reset_runtime_for_tests(Runtime(get_settings(), clock=clock))


@pytest.fixture
def client(runtime):
    return TestClient(app_module.app)


def _provision(runtime, **kwargs):
    result = asyncio.run(
        runtime.admin_auth.provision_admin(
            ADMIN_EMAIL, ADMIN_PASSWORD, AdminRole.SUPER_ADMIN, **kwargs
        )
    )
    assert result.ok
    return result.value


def _login(client, code=None, password=ADMIN_PASSWORD, user_agent="console"):
    payload = {"email": ADMIN_EMAIL, "password": password}
    if code is not None:
        payload["two_factor_code"] = code
    return client.post("/admin/auth/login", json=payload, headers={"User-Agent": user_agent})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def test_login_returns_role_and_session(runtime, client):
    provisioned = _provision(runtime)
    response = _login(client)

    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["requires_two_factor"] is False
    assert data["admin_id"] == provisioned.account.id
    assert data["role"] == "super_admin"
    assert data["role_level"] == AdminRole.SUPER_ADMIN.level
    assert data["permissions"] == sorted(provisioned.account.permissions)
    assert data["session_id"]


def test_wrong_password_and_unknown_admin(runtime, client):
    _provision(runtime)

    wrong = _login(client, password="Wrong-pass1")
    unknown = client.post(
        "/admin/auth/login", json={"email": "nobody@example.com", "password": ADMIN_PASSWORD}
    )
    for response in (wrong, unknown):
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"


def test_admin_lockout_window(runtime, client, clock):
    _provision(runtime)
    for _ in range(5):
        assert _login(client, password="Wrong-pass1").status_code == 401

    assert _login(client).status_code == 401
    clock.advance(30 * 60)
    assert _login(client).status_code == 200


def test_two_factor_gate(runtime, client, clock):
    provisioned = _provision(runtime, enable_two_factor=True)

    first = _login(client)
    assert first.status_code == 200
    gated = first.json()["data"]
    assert gated["requires_two_factor"] is True
    assert gated["access_token"] == ""
    assert gated["session_id"] is None

    code = totp.generate_totp(provisioned.account.two_factor_secret, clock().timestamp())
    second = _login(client, code=code)
    assert second.status_code == 200
    assert second.json()["data"]["access_token"]


def test_refresh_keeps_session_id(runtime, client):
    _provision(runtime)
    login = _login(client).json()["data"]

    response = client.post("/admin/auth/refresh", json={"refresh_token": login["refresh_token"]})
    assert response.status_code == 200
    refreshed = response.json()["data"]
    assert refreshed["session_id"] == login["session_id"]
    assert refreshed["access_token"] != login["access_token"]

    replay = client.post("/admin/auth/refresh", json={"refresh_token": login["refresh_token"]})
    assert replay.status_code == 401
    assert client.get("/admin/auth/sessions", headers=_auth(login["access_token"])).status_code == 401
    assert client.get("/admin/auth/sessions", headers=_auth(refreshed["access_token"])).status_code == 200


def test_sessions_list_marks_current(runtime, client):
    _provision(runtime)
    first = _login(client, user_agent="laptop").json()["data"]
    second = _login(client, user_agent="tablet").json()["data"]

    response = client.get("/admin/auth/sessions", headers=_auth(second["access_token"]))
    assert response.status_code == 200
    items = response.json()["data"]["items"]
    assert {item["id"] for item in items} == {first["session_id"], second["session_id"]}
    current = [item for item in items if item["current"]]
    assert len(current) == 1
    assert current[0]["id"] == second["session_id"]
    assert current[0]["user_agent"] == "tablet"


def test_profile_describes_the_calling_admin(runtime, client):
    provisioned = _provision(runtime, first_name="Grace", last_name="Hopper")
    login = _login(client).json()["data"]

    response = client.get("/admin/auth/profile", headers=_auth(login["access_token"]))

    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["admin_id"] == provisioned.account.id
    assert data["email"] == ADMIN_EMAIL
    assert data["role"] == "super_admin"
    assert data["role_level"] == AdminRole.SUPER_ADMIN.level
    assert data["permissions"] == sorted(provisioned.account.permissions)
    assert data["first_name"] == "Grace"
    assert data["last_name"] == "Hopper"
    assert data["two_factor_enabled"] is False
    assert data["last_login_at"] is not None
    assert data["session_id"] == login["session_id"]
    assert "password_hash" not in data
    assert "two_factor_secret" not in data


def test_profile_requires_a_live_admin_session(runtime, client):
    _provision(runtime)
    login = _login(client).json()["data"]
    client.post("/admin/auth/logout", headers=_auth(login["access_token"]))

    assert client.get("/admin/auth/profile").status_code == 401
    assert client.get("/admin/auth/profile", headers=_auth(login["access_token"])).status_code == 401
    assert client.get("/admin/auth/profile", headers=_auth(login["refresh_token"])).status_code == 401


def test_revoke_all_sessions(runtime, client):
    _provision(runtime)
    first = _login(client).json()["data"]
    second = _login(client).json()["data"]

    response = client.post("/admin/auth/sessions/revoke", headers=_auth(first["access_token"]))
    assert response.status_code == 200
    assert response.json()["data"] == {"revoked": 2}

    for login in (first, second):
        assert client.get("/admin/auth/sessions", headers=_auth(login["access_token"])).status_code == 401


def test_logout_with_body_or_bearer(runtime, client):
    _provision(runtime)
    first = _login(client).json()["data"]
    second = _login(client).json()["data"]

    by_body = client.post("/admin/auth/logout", json={"token": first["refresh_token"]})
    assert by_body.json()["data"] == {"logged_out": True}

    by_header = client.post("/admin/auth/logout", headers=_auth(second["access_token"]))
    assert by_header.json()["data"] == {"logged_out": True}

    assert client.get("/admin/auth/sessions", headers=_auth(second["access_token"])).status_code == 401
    assert client.post("/admin/auth/logout").status_code == 401


def test_user_tokens_are_rejected_by_admin_routes(runtime, client):
    _provision(runtime)
    signup = client.post(
        "/auth/signup", json={"email": "parent@example.com", "password": "Sunshine42"}
    ).json()["data"]

    response = client.get("/admin/auth/sessions", headers=_auth(signup["access_token"]))
    assert response.status_code == 401


def test_admin_tokens_are_rejected_by_user_routes(runtime, client):
    _provision(runtime)
    login = _login(client).json()["data"]

    assert client.get("/auth/me", headers=_auth(login["access_token"])).status_code == 401
