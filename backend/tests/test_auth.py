from datetime import timedelta

from fastapi.testclient import TestClient

from finance_ledger.auth_utils import ACCESS_TOKEN, VERIFICATION_TOKEN, issue_token


def test_health(client: TestClient) -> None:
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_register_sends_verification_email_and_creates_defaults(client: TestClient, mailer, services) -> None:
    res = client.post("/auth/register", json={"name": "Ana", "email": "Ana@Example.com ", "password": "Secret123!"})
    assert res.status_code == 200
    assert "message" in res.json()

    assert len(mailer.sent) == 1
    assert mailer.sent[0].to == "ana@example.com"
    assert "Ana" in mailer.sent[0].html
    assert "http://testserver/auth/verify?token=" in mailer.sent[0].html

    user = services.persistence.get_user_by_email("ana@example.com")
    assert user["is_verified"] is False
    accounts = services.persistence.list_accounts(user["id"])
    assert [a["name"] for a in accounts] == ["Wallet"]
    categories = {c["name"] for c in services.persistence.list_categories(user["id"])}
    assert {"Food", "Salary", "Transfer"} <= categories


def test_register_duplicate_email_returns_400(client: TestClient, register) -> None:
    register(email="dup@example.com")
    res = client.post("/auth/register", json={"name": "Again", "email": "DUP@example.com", "password": "Secret123!"})
    assert res.status_code == 400
    assert res.json()["error"] == "email already registered"


def test_register_validation_error_has_details(client: TestClient) -> None:
    res = client.post("/auth/register", json={"name": "X", "email": "not-an-email", "password": "short"})
    assert res.status_code == 400
    body = res.json()
    assert body["error"] == "Invalid request payload"
    fields = {d["field"] for d in body["details"]}
    assert {"email", "password"} <= fields


def test_login_requires_verified_email(client: TestClient, register) -> None:
    token = register(email="new@example.com")
    res = client.post("/auth/login", json={"email": "new@example.com", "password": "Secret123!"})
    assert res.status_code == 400
    assert "not verified" in res.json()["error"]

    verify = client.get("/auth/verify", params={"token": token})
    assert verify.status_code == 200
    assert verify.json()["message"] == "E-mail verified successfully."

    again = client.get("/auth/verify", params={"token": token})
    assert again.status_code == 200
    assert again.json()["message"] == "E-mail already verified."

    res = client.post("/auth/login", json={"email": "new@example.com", "password": "Secret123!"})
    assert res.status_code == 200
    body = res.json()
    assert body["token"]
    assert body["name"] == "Test User"
    assert body["email"] == "new@example.com"


def test_login_with_wrong_password_returns_400(client: TestClient, login) -> None:
    login(email="pw@example.com")
    res = client.post("/auth/login", json={"email": "pw@example.com", "password": "WrongPass1"})
    assert res.status_code == 400
    assert res.json() == {"error": "invalid credentials"}
    res = client.post("/auth/login", json={"email": "nobody@example.com", "password": "WrongPass1"})
    assert res.status_code == 400


def test_verify_rejects_garbage_and_access_tokens(client: TestClient, login, services) -> None:
    assert client.get("/auth/verify", params={"token": "not-a-jwt"}).status_code == 400

    headers = login()
    access = headers["Authorization"].split(" ", 1)[1]
    assert client.get("/auth/verify", params={"token": access}).status_code == 400

    user = services.persistence.get_user_by_email("tester@example.com")
    expired = issue_token(str(user["id"]), VERIFICATION_TOKEN, services.settings.jwt_secret, timedelta(seconds=-5))
    assert client.get("/auth/verify", params={"token": expired}).status_code == 400


def test_protected_routes_require_bearer_access_token(client: TestClient, register, services) -> None:
    assert client.get("/accounts").status_code == 401
    assert client.get("/accounts", headers={"Authorization": "Token abc"}).status_code == 401
    assert client.get("/accounts", headers={"Authorization": "Bearer abc"}).status_code == 401

    verification = register(email="v@example.com")
    res = client.get("/accounts", headers={"Authorization": f"Bearer {verification}"})
    assert res.status_code == 401
    assert "error" in res.json()

    user = services.persistence.get_user_by_email("v@example.com")
    forged = issue_token(str(user["id"]), ACCESS_TOKEN, "other-secret", timedelta(minutes=5))
    assert client.get("/accounts", headers={"Authorization": f"Bearer {forged}"}).status_code == 401


def test_failed_email_delivery_does_not_fail_registration(client: TestClient, mailer, monkeypatch) -> None:
    def explode(message):
        raise OSError("smtp down")

    monkeypatch.setattr(mailer, "send", explode)
    res = client.post("/auth/register", json={"name": "Ana", "email": "ana@example.com", "password": "Secret123!"})
    assert res.status_code == 200
