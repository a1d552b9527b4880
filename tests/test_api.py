from collections.abc import Generator
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from ledgerflow.app import build_services, create_app
from ledgerflow.categorization.gate import ConfidenceGate
from ledgerflow.models import BankConnection, BankTransaction
from ledgerflow.storage.memory import InMemoryStore

from .conftest import OTHER_USER, USER, Seeder

AUTH = {"Authorization": "Bearer tok-1"}
OTHER_AUTH = {"Authorization": "Bearer tok-2"}


@pytest.fixture
def client(store: InMemoryStore, tmp_path, monkeypatch) -> Generator[TestClient, None, None]:
    monkeypatch.setenv("API_TOKENS", f"tok-1={USER},tok-2={OTHER_USER}")
    app = create_app()
    services = build_services(store, data_dir=str(tmp_path), gate=ConfidenceGate(threshold=0.95, ai_threshold=0.99))
    for name, service in services.items():
        setattr(app.state, name, service)
    yield TestClient(app)


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer nope"}])
def test_requests_need_a_valid_token(client: TestClient, headers: dict[str, str]) -> None:
    response = client.get("/api/accounts", headers=headers)
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


def test_uninitialized_service_is_500(monkeypatch) -> None:
    monkeypatch.setenv("API_TOKENS", f"tok-1={USER}")
    response = TestClient(create_app()).get("/api/rules", headers=AUTH)
    assert response.status_code == 500
    assert response.json() == {"detail": "Service not initialized"}


def test_rule_flow_through_pipeline(client: TestClient) -> None:
    account = client.post("/api/accounts", json={"name": "Everyday"}, headers=AUTH).json()
    category = client.post("/api/categories", json={"name": "Transport"}, headers=AUTH).json()
    rule = client.post(
        "/api/rules",
        json={"name": "Uber", "pattern": "UBER", "category_id": category["id"]},
        headers=AUTH,
    )
    assert rule.status_code == 201

    txn = client.post(
        "/api/transactions",
        json={
            "account_id": account["id"],
            "amount": "-23.40",
            "transaction_date": "2024-03-01",
            "description": "Uber Eats Order #123",
        },
        headers=AUTH,
    ).json()

    result = client.post("/api/categorization/process", json={}, headers=AUTH).json()
    assert result["candidates_created"] == 1
    assert result["by_method"] == {"Rule": 1}

    candidates = client.get("/api/categorization/candidates", headers=AUTH).json()
    assert [c["transaction_id"] for c in candidates] == [txn["id"]]

    applied = client.post(f"/api/categorization/candidates/{candidates[0]['id']}/apply", headers=AUTH)
    assert applied.status_code == 200
    assert applied.json()["status"] == "Applied"
    assert client.get(f"/api/transactions/{txn['id']}", headers=AUTH).json()["category_id"] == category["id"]

    again = client.post(f"/api/categorization/candidates/{candidates[0]['id']}/reject", headers=AUTH)
    assert again.status_code == 400
    assert again.json() == {"detail": f"Candidate {candidates[0]['id']} is not pending"}


def test_draft_rule_test_endpoint(client: TestClient, store: InMemoryStore) -> None:
    category = Seeder(store).category("Transport")

    response = client.post(
        "/api/rules/test",
        json={
            "rule": {"name": "Uber", "pattern": "uber", "match_type": "Equals", "category_id": category.id},
            "description": "UBER",
        },
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json()["matched"] is True
    assert response.json()["confidence"] == pytest.approx(0.96)

    invalid = client.post(
        "/api/rules/test",
        json={"rule": {"name": "Bad", "pattern": "([", "match_type": "Regex", "category_id": category.id}},
        headers=AUTH,
    )
    assert invalid.status_code == 400


def test_bulk_delete_partial(client: TestClient, store: InMemoryStore) -> None:
    seed = Seeder(store)
    mine = seed.transaction(seed.account(), "mine")
    theirs = seed.transaction(seed.account(user_id=OTHER_USER), "theirs")

    response = client.post(
        "/api/transactions/bulk-delete",
        json={"transaction_ids": [mine.id, theirs.id]},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": False,
        "transactions_deleted": 1,
        "errors": [f"Transactions not found or access denied: {theirs.id}"],
    }


def test_foreign_transaction_is_404(client: TestClient, store: InMemoryStore) -> None:
    seed = Seeder(store)
    txn = seed.transaction(seed.account(), "mine")

    response = client.get(f"/api/transactions/{txn.id}", headers=OTHER_AUTH)

    assert response.status_code == 404
    assert response.json() == {"detail": f"Transaction {txn.id} not found"}


def test_viewer_cannot_modify(client: TestClient, store: InMemoryStore) -> None:
    seed = Seeder(store)
    account = seed.account()
    txn = seed.transaction(account, "Power")
    shared = client.post(f"/api/accounts/{account.id}/shares", json={"user_id": OTHER_USER}, headers=AUTH)
    assert shared.status_code == 200

    assert client.get(f"/api/transactions/{txn.id}", headers=OTHER_AUTH).status_code == 200
    response = client.put(f"/api/transactions/{txn.id}", json={"notes": "mine now"}, headers=OTHER_AUTH)
    assert response.status_code == 401


def test_bulk_approve_recategorizes_in_background(client: TestClient, store: InMemoryStore) -> None:
    seed = Seeder(store)
    account = seed.account()
    transport = seed.category("Transport")
    seed.rule(transport, "uber", match_type="Equals")
    txn = seed.transaction(account, "UBER", "-20.00", date(2024, 3, 5))

    reconciliation = client.post(
        "/api/reconciliation",
        json={
            "account_id": account.id,
            "statement_start_date": "2024-03-01",
            "statement_end_date": "2024-03-31",
            "statement_balance": "100.00",
        },
        headers=AUTH,
    ).json()
    matched = client.post(
        f"/api/reconciliation/{reconciliation['id']}/match",
        json={"bank_transactions": [{"transaction_date": "2024-03-05", "amount": "-20.00", "description": "UBER"}]},
        headers=AUTH,
    ).json()
    assert matched["exact"] == 1

    approved = client.post(f"/api/reconciliation/{reconciliation['id']}/bulk-approve", json={}, headers=AUTH).json()

    assert approved["approved"] == 1
    assert approved["recategorize_transaction_ids"] == [txn.id]
    assert store.transactions.get(txn.id).category_id == transport.id

    details = client.get(f"/api/reconciliation/{reconciliation['id']}/details", headers=AUTH).json()
    assert details["summary"]["approved_count"] == 1
    assert len(details["exact_matches"]) == 1


def test_import_without_selection_is_400(client: TestClient, store: InMemoryStore) -> None:
    account = Seeder(store).account()
    reconciliation = client.post(
        "/api/reconciliation",
        json={
            "account_id": account.id,
            "statement_start_date": "2024-03-01",
            "statement_end_date": "2024-03-31",
            "statement_balance": "0",
        },
        headers=AUTH,
    ).json()

    response = client.post(f"/api/reconciliation/{reconciliation['id']}/import-unmatched", json={}, headers=AUTH)

    assert response.status_code == 400
    assert response.json() == {"detail": "No items specified for import"}


def test_mapping_endpoints(client: TestClient, store: InMemoryStore) -> None:
    category = Seeder(store).category("Food")

    created = client.post(
        "/api/bank-category-mappings",
        json={"bank_category_name": "Supermarkets", "category_id": category.id},
        headers=AUTH,
    ).json()
    assert created["source"] == "User"

    excluded = client.put(
        f"/api/bank-category-mappings/{created['id']}/exclude", json={"is_excluded": True}, headers=AUTH
    ).json()
    assert excluded["is_excluded"] is True

    assert client.delete(f"/api/bank-category-mappings/{created['id']}", headers=AUTH).status_code == 204
    assert client.get("/api/bank-category-mappings", headers=AUTH).json() == []


def test_rule_update_with_null_required_field_is_400(client: TestClient, store: InMemoryStore) -> None:
    category = Seeder(store).category("Transport")
    rule = client.post(
        "/api/rules",
        json={"name": "Uber", "pattern": "UBER", "category_id": category.id, "max_amount": "100"},
        headers=AUTH,
    ).json()

    response = client.put(f"/api/rules/{rule['id']}", json={"name": None}, headers=AUTH)
    assert response.status_code == 400
    assert response.json()["detail"].startswith("Invalid name")

    cleared = client.put(f"/api/rules/{rule['id']}", json={"max_amount": None}, headers=AUTH)
    assert cleared.status_code == 200
    assert cleared.json()["max_amount"] is None


def test_update_reconciliation_endpoint(client: TestClient, store: InMemoryStore) -> None:
    account = Seeder(store).account()
    reconciliation = client.post(
        "/api/reconciliation",
        json={
            "account_id": account.id,
            "statement_start_date": "2024-03-01",
            "statement_end_date": "2024-03-31",
            "statement_balance": "100.00",
        },
        headers=AUTH,
    ).json()

    response = client.put(
        f"/api/reconciliation/{reconciliation['id']}",
        json={"statement_balance": "99.50", "notes": "checked"},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json()["notes"] == "checked"
    assert Decimal(response.json()["statement_balance"]) == Decimal("99.50")


def test_reconciliation_from_bank_endpoint(client: TestClient, store: InMemoryStore) -> None:
    seed = Seeder(store)
    account = seed.account()
    seed.transaction(account, "Countdown", "-50.00", date(2024, 3, 1))
    bank_client = MagicMock()
    bank_client.get_transactions = AsyncMock(return_value=[
        BankTransaction(external_id="ext-1", transaction_date=date(2024, 3, 1), amount=Decimal("-50.00"),
                        description="COUNTDOWN"),
    ])
    bank_client.get_balance = AsyncMock(return_value=Decimal("950.00"))
    client.app.state.reconciliation.bank_client = bank_client
    body = {"account_id": account.id, "statement_start_date": "2024-03-01", "statement_end_date": "2024-03-31"}

    missing = client.post("/api/reconciliation/from-bank", json=body, headers=AUTH)
    assert missing.status_code == 400
    assert missing.json() == {"detail": f"No bank connection found for account {account.id}"}

    store.connections.add(BankConnection(
        user_id=USER, account_id=account.id, external_account_id="acc_1", access_token="user-token"
    ))
    response = client.post("/api/reconciliation/from-bank", json=body, headers=AUTH)

    assert response.status_code == 201
    assert response.json()["match"]["exact"] == 1
    assert Decimal(response.json()["reconciliation"]["statement_balance"]) == Decimal("950.00")
