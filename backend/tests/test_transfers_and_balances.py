import pytest
from fastapi.testclient import TestClient

from conftest import find_by_name, money


@pytest.fixture()
def accounts(client: TestClient, headers) -> dict:
    checking = client.post("/accounts", json={"name": "Checking", "initialBalance": 1000}, headers=headers).json()
    savings = client.post("/accounts", json={"name": "Savings", "accountType": "savings", "initialBalance": 0}, headers=headers).json()
    return {"checking": checking, "savings": savings}


def _balance(client: TestClient, headers, account_id: str):
    return money(client.get(f"/accounts/{account_id}", headers=headers).json()["currentBalance"])


def _transfer(client: TestClient, headers, source: dict, destination: dict, amount=100, date="2026-03-05T10:00:00Z", **extra):
    payload = {"sourceAccountId": source["id"], "destinationAccountId": destination["id"], "amount": amount, "date": date}
    payload.update(extra)
    return client.post("/accounts/transfer", json=payload, headers=headers)


def test_transfer_creates_linked_legs(client: TestClient, headers, accounts) -> None:
    res = _transfer(client, headers, accounts["checking"], accounts["savings"])
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["message"]
    assert body["outgoing"]["type"] == "TRANSFER_OUT"
    assert body["incoming"]["type"] == "TRANSFER_IN"
    assert body["outgoing"]["description"] == "Transfer to Savings"
    assert body["incoming"]["description"] == "Transfer from Checking"
    assert body["outgoing"]["transferGroupId"] == body["incoming"]["transferGroupId"] == body["transferGroupId"]

    transfer_category = find_by_name(client.get("/categories", headers=headers).json(), "Transfer")
    assert body["outgoing"]["categoryId"] == transfer_category["id"]

    assert _balance(client, headers, accounts["checking"]["id"]) == money("900")
    assert _balance(client, headers, accounts["savings"]["id"]) == money("100")
    assert len(client.get("/expenses", headers=headers).json()) == 2


def test_transfer_uses_given_description(client: TestClient, headers, accounts) -> None:
    body = _transfer(client, headers, accounts["checking"], accounts["savings"], description="Rainy day").json()
    assert body["outgoing"]["description"] == "Rainy day"
    assert body["incoming"]["description"] == "Rainy day"


@pytest.mark.parametrize("amount", [0, -10])
def test_transfer_rejects_non_positive_amount(client: TestClient, headers, accounts, amount) -> None:
    res = _transfer(client, headers, accounts["checking"], accounts["savings"], amount=amount)
    assert res.status_code == 400
    assert _balance(client, headers, accounts["checking"]["id"]) == money("1000")


def test_transfer_rejects_same_account(client: TestClient, headers, accounts) -> None:
    res = _transfer(client, headers, accounts["checking"], accounts["checking"])
    assert res.status_code == 400
    assert "different" in res.json()["error"]


def test_transfer_to_foreign_account_is_rejected(client: TestClient, headers, login, accounts) -> None:
    intruder = login(email="intruder@example.com")
    foreign = client.get("/accounts", headers=intruder).json()[0]
    res = _transfer(client, headers, accounts["checking"], foreign)
    assert res.status_code == 400
    assert _balance(client, headers, accounts["checking"]["id"]) == money("1000")
    assert client.get("/expenses", headers=headers).json() == []


def test_deleting_one_leg_deletes_both(client: TestClient, headers, accounts) -> None:
    body = _transfer(client, headers, accounts["checking"], accounts["savings"]).json()
    res = client.delete(f"/expenses/{body['incoming']['id']}", headers=headers)
    assert res.status_code == 200
    assert client.get("/expenses", headers=headers).json() == []
    assert _balance(client, headers, accounts["checking"]["id"]) == money("1000")
    assert _balance(client, headers, accounts["savings"]["id"]) == money("0")


def test_editing_leg_amount_mirrors_to_counterpart(client: TestClient, headers, accounts) -> None:
    body = _transfer(client, headers, accounts["checking"], accounts["savings"]).json()
    res = client.put(f"/expenses/{body['outgoing']['id']}", json={"amount": 250, "date": "2026-03-06T10:00:00Z"}, headers=headers)
    assert res.status_code == 200

    assert _balance(client, headers, accounts["checking"]["id"]) == money("750")
    assert _balance(client, headers, accounts["savings"]["id"]) == money("250")
    legs = client.get("/expenses", headers=headers).json()
    assert {money(leg["amount"]) for leg in legs} == {money("250")}
    assert {leg["date"][:10] for leg in legs} == {"2026-03-06"}


def test_leg_cannot_move_onto_counterpart_account(client: TestClient, headers, accounts) -> None:
    body = _transfer(client, headers, accounts["checking"], accounts["savings"]).json()
    res = client.put(f"/expenses/{body['outgoing']['id']}", json={"accountId": accounts["savings"]["id"]}, headers=headers)
    assert res.status_code == 400
    assert _balance(client, headers, accounts["checking"]["id"]) == money("900")
    assert _balance(client, headers, accounts["savings"]["id"]) == money("100")


def test_balance_overview_matches_cache(client: TestClient, headers, accounts) -> None:
    _transfer(client, headers, accounts["checking"], accounts["savings"], amount="33.33")
    res = client.get("/accounts/balance", headers=headers)
    assert res.status_code == 200
    rows = {row["accountName"]: row for row in res.json()}
    assert set(rows) == {"Wallet", "Checking", "Savings"}
    for row in rows.values():
        assert money(row["balance"]) == money(row["cachedBalance"])
    assert money(rows["Checking"]["balance"]) == money("966.67")


def test_period_balance_for_single_account(client: TestClient, headers, accounts) -> None:
    checking = accounts["checking"]
    _transfer(client, headers, checking, accounts["savings"], amount=100, date="2026-02-20T10:00:00Z")
    _transfer(client, headers, checking, accounts["savings"], amount=40, date="2026-03-10T10:00:00Z")
    _transfer(client, headers, accounts["savings"], checking, amount=15, date="2026-03-12T10:00:00Z")
    _transfer(client, headers, checking, accounts["savings"], amount=5, date="2026-04-02T10:00:00Z")

    res = client.get(
        f"/accounts/balance/{checking['id']}",
        params={"startDate": "2026-03-01", "endDate": "2026-03-31"},
        headers=headers,
    )
    assert res.status_code == 200
    body = res.json()
    assert body["accountName"] == "Checking"
    assert money(body["balance"]) == money("1000") - money("40") + money("15")
    assert money(body["openingBalance"]) == money("900")
    assert money(body["closingBalance"]) == money("875")
    assert money(body["netChange"]) == money("-25")
    assert money(body["inflow"]) == money("15")
    assert money(body["outflow"]) == money("40")
    assert body["period"] == {"start": "2026-03-01", "end": "2026-03-31"}

    unbounded = client.get(f"/accounts/balance/{checking['id']}", headers=headers).json()
    assert money(unbounded["balance"]) == _balance(client, headers, checking["id"])
    assert money(unbounded["closingBalance"]) == _balance(client, headers, checking["id"])
    assert money(unbounded["openingBalance"]) == money("1000")


def test_period_balance_errors(client: TestClient, headers, login, accounts) -> None:
    checking = accounts["checking"]
    inverted = client.get(
        f"/accounts/balance/{checking['id']}",
        params={"startDate": "2026-03-31", "endDate": "2026-03-01"},
        headers=headers,
    )
    assert inverted.status_code == 400

    intruder = login(email="intruder@example.com")
    assert client.get(f"/accounts/balance/{checking['id']}", headers=intruder).status_code == 404


def test_balances_for_several_accounts(client: TestClient, headers, accounts) -> None:
    _transfer(client, headers, accounts["checking"], accounts["savings"], amount=60, date="2026-03-15T10:00:00Z")
    res = client.post(
        "/accounts/balances",
        json={
            "accountIds": [accounts["checking"]["id"], accounts["savings"]["id"]],
            "startDate": "2026-03-01",
            "endDate": "2026-03-31",
        },
        headers=headers,
    )
    assert res.status_code == 200
    rows = {row["accountName"]: row for row in res.json()}
    assert money(rows["Checking"]["netChange"]) == money("-60")
    assert money(rows["Savings"]["netChange"]) == money("60")
    for row in rows.values():
        assert money(row["closingBalance"]) - money(row["openingBalance"]) == money(row["netChange"])


def test_balances_request_validation(client: TestClient, headers, accounts) -> None:
    empty = client.post("/accounts/balances", json={"accountIds": [], "startDate": "2026-03-01", "endDate": "2026-03-31"}, headers=headers)
    assert empty.status_code == 400
    inverted = client.post(
        "/accounts/balances",
        json={"accountIds": [accounts["checking"]["id"]], "startDate": "2026-03-31", "endDate": "2026-03-01"},
        headers=headers,
    )
    assert inverted.status_code == 400
