import re
from dataclasses import replace
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient

from finance_ledger.bootstrap import Services, build_services
from finance_ledger.config import Settings
from finance_ledger.mailer import Mailer, OutgoingEmail
from finance_ledger.main import create_app
from finance_ledger.persistence import InMemoryPersistence
from finance_ledger.receipts import InMemoryReceiptStorage

TOKEN_RE = re.compile(r"verify\?token=([A-Za-z0-9_\-\.]+)")


class RecordingMailer(Mailer):
    def __init__(self) -> None:
        self.sent: list[OutgoingEmail] = []

    def send(self, message: OutgoingEmail) -> None:
        self.sent.append(message)

    def last_token(self, to: str) -> str:
        for message in reversed(self.sent):
            if message.to == to:
                match = TOKEN_RE.search(message.html)
                assert match, message.html
                return match.group(1)
        raise AssertionError(f"no e-mail sent to {to}")


@pytest.fixture()
def settings() -> Settings:
    return replace(
        Settings(),
        storage_backend="memory",
        receipt_storage="memory",
        jwt_secret="test-secret",
        public_base_url="http://testserver",
        smtp_host=None,
        log_file=None,
    )


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def services(settings: Settings, mailer: RecordingMailer) -> Services:
    return build_services(
        settings,
        persistence=InMemoryPersistence(),
        receipts=InMemoryReceiptStorage(),
        mailer=mailer,
    )


@pytest.fixture()
def client(settings: Settings, services: Services) -> TestClient:
    app = create_app(settings, services)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def register(client: TestClient, mailer: RecordingMailer):
    def _register(email: str = "tester@example.com", password: str = "Secret123!", name: str = "Test User") -> str:
        res = client.post("/auth/register", json={"name": name, "email": email, "password": password})
        assert res.status_code == 200, res.text
        return mailer.last_token(email)

    return _register


@pytest.fixture()
def login(client: TestClient, register):
    def _login(email: str = "tester@example.com", password: str = "Secret123!", name: str = "Test User") -> dict[str, str]:
        token = register(email=email, password=password, name=name)
        assert client.get("/auth/verify", params={"token": token}).status_code == 200
        res = client.post("/auth/login", json={"email": email, "password": password})
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['token']}"}

    return _login


@pytest.fixture()
def headers(login) -> dict[str, str]:
    return login()


def find_by_name(items: list[dict[str, Any]], name: str) -> dict[str, Any]:
    for item in items:
        if item["name"] == name:
            return item
    raise AssertionError(f"{name} not found in {[i['name'] for i in items]}")


def money(value: Any) -> Decimal:
    return Decimal(str(value))
