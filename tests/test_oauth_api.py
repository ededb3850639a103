from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ghl_sync.core.clock import utcnow
from ghl_sync.core.config import get_settings
from ghl_sync.core.database import get_db
from ghl_sync.integrations.api import get_oauth_http_client, get_token_refresher
from ghl_sync.integrations.config import CLIENT_ID_KEY, CLIENT_SECRET_KEY
from ghl_sync.integrations.models import Connection, InstallationConfig
from ghl_sync.integrations.oauth import build_authorize_url, decode_state, encode_state
from ghl_sync.main import app
from ghl_sync.workspace.models import Account
from tests.factories import make_account, make_connection, make_member, make_subscription


TOKEN_RESPONSE = {
    "access_token": "oauth-access",
    "refresh_token": "oauth-refresh",
    "expires_in": 86399,
    "token_type": "Bearer",
    "userType": "Location",
    "locationId": "loc-oauth",
    "companyId": "comp-oauth",
    "userId": "u-1",
}


class TokenEndpoint:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/token":
            if self.status_code != 200:
                return httpx.Response(self.status_code, json={"error": "invalid_grant"})
            return httpx.Response(200, json=TOKEN_RESPONSE)
        if request.url.path == "/locations/loc-oauth":
            return httpx.Response(
                200,
                json={"location": {"name": "Sunny Clinic", "email": "Front@Sunny.Example", "firstName": "Sam"}},
            )
        return httpx.Response(404, json={})


def _user_headers(sub: str = "agent@acme.example") -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": sub, "roles": ["user"]}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"authorization": f"Bearer {token}"}


@pytest.fixture()
def endpoint() -> TokenEndpoint:
    return TokenEndpoint()


@pytest.fixture()
def client(db_session: Session, endpoint: TokenEndpoint) -> Generator[TestClient, None, None]:
    db_session.add_all(
        [
            InstallationConfig(name=CLIENT_ID_KEY, value="client-id"),
            InstallationConfig(name=CLIENT_SECRET_KEY, value="client-secret"),
        ]
    )
    db_session.commit()
    http_client = httpx.Client(transport=httpx.MockTransport(endpoint))

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_oauth_http_client] = lambda: http_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    http_client.close()


def test_state_round_trip_and_expiry(integration_config) -> None:
    account_id = uuid.uuid4()
    state = encode_state(integration_config, account_id)

    assert decode_state(integration_config, state) == account_id
    assert decode_state(integration_config, "garbage") is None

    expired = encode_state(integration_config, account_id, now=utcnow() - timedelta(minutes=20))
    assert decode_state(integration_config, expired) is None


def test_authorize_url_carries_scopes_and_redirect(integration_config) -> None:
    url = build_authorize_url(integration_config, uuid.uuid4())
    query = parse_qs(urlparse(url).query)

    assert query["client_id"] == ["client-id"]
    assert query["redirect_uri"] == ["https://app.example.test/ghl/callback"]
    assert "conversations/message.write" in query["scope"][0].split(" ")
    assert query["response_type"] == ["code"]


def test_marketplace_install_provisions_workspace(client: TestClient, db_session: Session, endpoint: TokenEndpoint) -> None:
    response = client.get("/ghl/callback", params={"code": "auth-code"}, follow_redirects=False)

    assert response.status_code == 302
    assert "connected=1" in response.headers["location"]

    token_request = endpoint.requests[0]
    form = parse_qs(token_request.content.decode("utf-8"))
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["auth-code"]
    assert form["user_type"] == ["Location"]

    account = db_session.scalar(select(Account).where(Account.ghl_location_id == "loc-oauth"))
    assert account is not None
    assert account.name == "Sunny Clinic"
    connection = db_session.scalar(select(Connection).where(Connection.account_id == account.id))
    assert connection.access_token == "oauth-access"


def test_repeated_marketplace_install_does_not_duplicate(client: TestClient, db_session: Session) -> None:
    client.get("/ghl/callback", params={"code": "first"}, follow_redirects=False)
    client.get("/ghl/callback", params={"code": "second"}, follow_redirects=False)

    assert db_session.scalar(select(func.count(Account.id))) == 1


def test_state_flow_binds_existing_account(client: TestClient, db_session: Session) -> None:
    account = make_account(db_session, location_id=None, company_id=None)
    make_member(db_session, account)

    authorize = client.get(f"/ghl/accounts/{account.id}/authorize", headers=_user_headers())
    assert authorize.status_code == 200
    state = parse_qs(urlparse(authorize.json()["url"]).query)["state"][0]

    response = client.get("/ghl/callback", params={"code": "c", "state": state}, follow_redirects=False)

    assert f"account_id={account.id}" in response.headers["location"]
    db_session.refresh(account)
    assert account.ghl_location_id == "loc-oauth"
    assert db_session.scalar(select(func.count(Account.id))) == 1


def test_callback_errors_redirect_with_reason(client: TestClient, endpoint: TokenEndpoint) -> None:
    invalid_state = client.get("/ghl/callback", params={"code": "c", "state": "forged"}, follow_redirects=False)
    assert "error=invalid_state" in invalid_state.headers["location"]

    missing_code = client.get("/ghl/callback", follow_redirects=False)
    assert "error=missing_code" in missing_code.headers["location"]

    endpoint.status_code = 400
    failed = client.get("/ghl/callback", params={"code": "c"}, follow_redirects=False)
    assert "error=token_exchange_failed" in failed.headers["location"]


def test_status_refresh_usage_and_disconnect(client: TestClient, db_session: Session) -> None:
    account = make_account(db_session)
    connection = make_connection(db_session, account)
    make_subscription(db_session, account)
    make_member(db_session, account)
    headers = _user_headers()

    def refresher(config, refresh_token: str) -> dict:
        return {"access_token": "manual", "expires_in": 3600}

    app.dependency_overrides[get_token_refresher] = lambda: refresher

    status = client.get(f"/ghl/accounts/{account.id}/status", headers=headers).json()
    assert status["connected"] is True
    assert status["subscription"]["plan"] == "starter"

    refreshed = client.post(f"/ghl/accounts/{account.id}/refresh", headers=headers)
    assert refreshed.status_code == 200
    db_session.refresh(connection)
    assert connection.access_token == "manual"

    usage = client.get(f"/ghl/accounts/{account.id}/usage", headers=headers).json()
    assert usage["usage"]["ai_credits_limit"] == 500

    assert client.delete(f"/ghl/accounts/{account.id}/connection", headers=headers).json() == {"status": "disconnected"}
    db_session.refresh(connection)
    assert connection.status == "disabled"
    assert connection.access_token is None


def test_manual_refresh_without_refresh_token_returns_422(client: TestClient, db_session: Session) -> None:
    account = make_account(db_session)
    make_connection(db_session, account, refresh_token=None)
    make_member(db_session, account)

    response = client.post(f"/ghl/accounts/{account.id}/refresh", headers=_user_headers())

    assert response.status_code == 422
    assert response.json()["detail"] == "Refresh token not available"


def test_account_routes_require_authentication(client: TestClient, db_session: Session) -> None:
    account = make_account(db_session)

    assert client.get(f"/ghl/accounts/{account.id}/status").status_code == 401


def test_account_routes_reject_members_of_other_tenants(client: TestClient, db_session: Session) -> None:
    account = make_account(db_session)
    make_connection(db_session, account)
    other = make_account(db_session, name="Other Clinic", location_id="loc-other", company_id=None)
    outsider = make_member(db_session, other, email="someone@other.example")
    headers = _user_headers(str(outsider.id))

    assert client.get(f"/ghl/accounts/{account.id}/status", headers=headers).status_code == 403
    assert client.get(f"/ghl/accounts/{account.id}/authorize", headers=headers).status_code == 403
    assert client.delete(f"/ghl/accounts/{account.id}/connection", headers=headers).status_code == 403
    assert db_session.scalar(select(Connection.status).where(Connection.account_id == account.id)) == "enabled"

    assert client.get(f"/ghl/accounts/{other.id}/status", headers=headers).status_code == 200


def test_admin_can_act_on_any_account(client: TestClient, db_session: Session) -> None:
    account = make_account(db_session)
    make_connection(db_session, account)
    settings = get_settings()
    token = jwt.encode({"sub": "ops", "roles": ["system.admin"]}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    response = client.get(f"/ghl/accounts/{account.id}/status", headers={"authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["connected"] is True
