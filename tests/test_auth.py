import pytest
from jose import jwt

from conftest import facial_checkout
from medspa_pos.config import JWT_ALGORITHM, JWT_SECRET


@pytest.fixture
def principal():
    # Real token decoding for this module
    return None


def bearer(**claims):
    token = jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


def test_missing_token(client):
    response = client.get("/api/payments")

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing token"


@pytest.mark.parametrize("header", [
    "Bearer not-a-jwt",
    "Basic dXNlcjpwYXNz",
    "Bearer",
])
def test_malformed_token(client, header):
    assert client.get("/api/payments", headers={"Authorization": header}).status_code == 401


def test_token_signed_with_another_secret(client):
    token = jwt.encode({"sub": "admin-1", "role": "admin"}, "not-the-secret", algorithm="HS256")

    response = client.get("/api/payments", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_unknown_role(client):
    assert client.get("/api/payments", headers=bearer(sub="x", role="superuser")).status_code == 401


def test_valid_token(client, catalog):
    response = client.post("/api/payments", json=facial_checkout(),
                           headers=bearer(sub="reception-7", role="reception"))

    assert response.status_code == 201
    assert response.json()["payment"]["transaction_id"].startswith("TXN-")


def test_client_token_carries_client_id(client, catalog):
    staff = bearer(sub="reception-7", role="reception")
    client.post("/api/payments", json=facial_checkout(), headers=staff)
    client.post("/api/payments", json=facial_checkout(client_id=2), headers=staff)

    response = client.get("/api/payments", headers=bearer(sub="client-user-1", role="client", client_id=1))

    assert [p["client_id"] for p in response.json()["data"]] == [1]


def test_role_not_allowed(client):
    response = client.get("/api/audit-logs", headers=bearer(sub="provider-1", role="provider"))

    assert response.status_code == 403
