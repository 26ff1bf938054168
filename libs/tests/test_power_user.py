# pytest libs/tests/test_power_user.py -q

import httpx
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from conftest import make_config
from libs.auth.power_user import PowerUserVerifier, check_is_power_user, require_power_user

pytestmark = pytest.mark.unit


def auth_server(payload, status=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=payload)

    return handler


@pytest.mark.parametrize(
    "role,expected",
    [("POWER_USER", True), ("admin", True), ("USER", False), ("", False), (None, False)],
)
def test_check_is_power_user(role, expected):
    assert check_is_power_user(role) is expected


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [{"user": {"role": "ADMIN"}}, {"data": {"role": "ADMIN"}}, {"role": "ADMIN"}],
)
async def test_get_role_reads_known_shapes(payload):
    async with httpx.AsyncClient(transport=httpx.MockTransport(auth_server(payload))) as client:
        verifier = PowerUserVerifier(make_config(), http_client=client)
        assert await verifier.get_role("Bearer abc", None) == "ADMIN"


@pytest.mark.asyncio
async def test_get_role_forwards_credentials():
    seen = []
    handler = auth_server({"user": {"role": "USER"}}, seen=seen)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        verifier = PowerUserVerifier(make_config(), http_client=client)
        await verifier.get_role("Bearer abc", "session=xyz")

    assert str(seen[0].url) == "https://auth.test/api/auth/me"
    assert seen[0].headers["Authorization"] == "Bearer abc"
    assert seen[0].headers["Cookie"] == "session=xyz"


@pytest.mark.asyncio
async def test_get_role_none_without_credentials_or_config():
    verifier = PowerUserVerifier(make_config())
    assert await verifier.get_role(None, None) is None

    verifier = PowerUserVerifier(make_config(AUTH_SERVER_URL=None))
    assert await verifier.get_role("Bearer abc", None) is None


@pytest.mark.asyncio
async def test_get_role_rejected_caller():
    handler = auth_server({"error": "unauthorized"}, status=401)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        verifier = PowerUserVerifier(make_config(), http_client=client)
        assert await verifier.get_role("Bearer bad", None) is None


def make_gated_app(role_payload):
    client = httpx.AsyncClient(transport=httpx.MockTransport(auth_server(role_payload)))
    app = FastAPI()
    app.state.power_user_verifier = PowerUserVerifier(make_config(), http_client=client)

    @app.get("/admin")
    async def admin(_: bool = Depends(require_power_user)):
        return {"ok": True}

    return app


def test_require_power_user_allows_admin():
    client = TestClient(make_gated_app({"user": {"role": "ADMIN"}}))
    r = client.get("/admin", headers={"Authorization": "Bearer abc"})
    assert r.status_code == 200


def test_require_power_user_forbids_regular_user():
    client = TestClient(make_gated_app({"user": {"role": "USER"}}))
    r = client.get("/admin", headers={"Authorization": "Bearer abc"})
    assert r.status_code == 403
    assert r.json()["detail"].startswith("アクセス権限がありません")
