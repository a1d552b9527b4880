from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ledgerflow.errors import NotFoundError, ServiceUnavailableError, ValidationError
from ledgerflow.integration.akahu import AkahuClient, parse_bank_transaction
from ledgerflow.models import BankConnection, BankTransaction, ConnectionStatus, RuleMatchType, SyncStatus
from ledgerflow.services.bank_sync import SYNC_OVERLAP

from .conftest import OTHER_USER, USER


def _page(items: list[dict], cursor: str | None = None) -> MagicMock:
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = {"items": items, "cursor": {"next": cursor}}
    return response


def test_parse_bank_transaction() -> None:
    parsed = parse_bank_transaction({
        "_id": "trans_1",
        "date": "2024-03-01T11:00:00.000Z",
        "amount": -12.5,
        "description": "POS W/D COUNTDOWN",
        "merchant": {"name": "Countdown"},
        "category": {"name": "Supermarkets"},
        "meta": {"reference": "1234"},
    })

    assert parsed.external_id == "trans_1"
    assert parsed.transaction_date == date(2024, 3, 1)
    assert parsed.amount == Decimal("-12.5")
    assert parsed.display_description == "Countdown"
    assert parsed.category == "Supermarkets"
    assert parsed.reference == "1234"


@pytest.mark.parametrize("raw", [{"amount": 1}, {"date": "yesterday", "amount": 1}, {"date": "2024-03-01", "amount": "x"}])
def test_parse_bank_transaction_rejects_malformed(raw) -> None:
    assert parse_bank_transaction(raw) is None


@pytest.mark.anyio
async def test_akahu_follows_cursor() -> None:
    mock_client = AsyncMock()
    mock_client.is_closed = False
    mock_client.get = AsyncMock(side_effect=[
        _page([{"_id": "a", "date": "2024-03-01", "amount": "-1.00", "description": "one"}], cursor="c2"),
        _page([{"_id": "b", "date": "2024-03-02", "amount": "-2.00", "description": "two"}, {"_id": "bad"}]),
    ])
    client = AkahuClient(base_url="http://test/", app_token="app", client=mock_client)

    lines = await client.get_transactions("user-token", "acc_1", start=datetime(2024, 3, 1, tzinfo=timezone.utc))

    assert [line.external_id for line in lines] == ["a", "b"]
    assert mock_client.get.await_count == 2
    first_call = mock_client.get.await_args_list[0]
    assert first_call.args[0] == "http://test/accounts/acc_1/transactions"
    assert first_call.kwargs["headers"]["Authorization"] == "Bearer user-token"
    assert first_call.kwargs["headers"]["X-Akahu-Id"] == "app"
    assert mock_client.get.await_args_list[1].kwargs["params"]["cursor"] == "c2"


@pytest.mark.anyio
async def test_akahu_http_error_is_unavailable() -> None:
    mock_client = AsyncMock()
    mock_client.is_closed = False
    mock_client.get = AsyncMock(side_effect=httpx.ConnectError("boom"))
    client = AkahuClient(base_url="http://test", app_token="app", client=mock_client)

    with pytest.raises(ServiceUnavailableError):
        await client.get_accounts("user-token")


@pytest.mark.anyio
async def test_akahu_balance_and_end_bound() -> None:
    balance = MagicMock()
    balance.raise_for_status.return_value = None
    balance.json.return_value = {"item": {"_id": "acc_1", "balance": {"current": 1234.56}}}
    mock_client = AsyncMock()
    mock_client.is_closed = False
    mock_client.get = AsyncMock(side_effect=[balance, _page([])])
    client = AkahuClient(base_url="http://test", app_token="app", client=mock_client)

    assert await client.get_balance("user-token", "acc_1") == Decimal("1234.56")
    await client.get_transactions(
        "user-token",
        "acc_1",
        start=datetime(2024, 3, 1, tzinfo=timezone.utc),
        end=datetime(2024, 3, 31, tzinfo=timezone.utc),
    )

    assert mock_client.get.await_args_list[0].args[0] == "http://test/accounts/acc_1"
    params = mock_client.get.await_args_list[1].kwargs["params"]
    assert params["end"] == "2024-03-31T00:00:00+00:00"


def test_akahu_configuration(monkeypatch) -> None:
    monkeypatch.delenv("AKAHU_APP_TOKEN", raising=False)
    assert not AkahuClient().is_configured
    assert AkahuClient(app_token="app").is_configured


@pytest.fixture
def bank_client() -> MagicMock:
    client = MagicMock()
    client.get_transactions = AsyncMock(return_value=[])
    return client


@pytest.fixture
def sync_service(services, bank_client):
    service = services["bank_sync"]
    service.client = bank_client
    return service


def _connect(seed, sync_service, token: str | None = "user-token"):
    account = seed.account()
    connection = sync_service.create(USER, BankConnection(
        user_id="ignored",
        account_id=account.id,
        external_account_id="acc_1",
        access_token=token,
    ))
    return account, connection


def test_create_connection_rules(seed, sync_service) -> None:
    account, connection = _connect(seed, sync_service)

    assert connection.user_id == USER
    with pytest.raises(ValidationError, match="already has an active bank connection"):
        sync_service.create(USER, BankConnection(user_id=USER, account_id=account.id, external_account_id="x"))
    with pytest.raises(NotFoundError):
        sync_service.create(OTHER_USER, BankConnection(user_id=OTHER_USER, account_id=account.id,
                                                       external_account_id="x"))
    assert "access_token" not in connection.model_dump()


@pytest.mark.anyio
async def test_sync_imports_dedups_and_categorizes(seed, sync_service, bank_client, store) -> None:
    account, connection = _connect(seed, sync_service)
    transport = seed.category("Transport")
    seed.rule(transport, "uber", match_type=RuleMatchType.EQUALS)
    seed.transaction(account, "Already here", external_id="dup")
    bank_client.get_transactions.return_value = [
        BankTransaction(external_id="dup", transaction_date=date(2024, 3, 1), amount=Decimal("-5")),
        BankTransaction(external_id="new", transaction_date=date(2024, 3, 2), amount=Decimal("-20"),
                        description="UBER", category="Travel"),
    ]

    result = await sync_service.sync(USER, connection.id)

    assert result.log.status == SyncStatus.SUCCESS
    assert (result.log.imported_count, result.log.skipped_count) == (1, 1)
    assert result.categorization.auto_applied == 1
    imported = store.transactions.find_by_external_id(account.id, "new")
    assert imported.category_id == transport.id
    assert imported.bank_category == "Travel"
    bank_client.get_transactions.assert_awaited_once_with("user-token", "acc_1", start=None)

    last_synced = sync_service.get(USER, connection.id).last_synced_at
    assert last_synced is not None
    await sync_service.sync(USER, connection.id)
    assert bank_client.get_transactions.await_args.kwargs["start"] == last_synced - SYNC_OVERLAP
    assert len(sync_service.logs(USER, connection.id)) == 2


@pytest.mark.anyio
async def test_sync_failure_marks_connection(seed, sync_service, bank_client) -> None:
    _, connection = _connect(seed, sync_service)
    bank_client.get_transactions.side_effect = ServiceUnavailableError("Bank provider request failed")

    with pytest.raises(ServiceUnavailableError):
        await sync_service.sync(USER, connection.id)

    log = sync_service.logs(USER, connection.id)[0]
    assert log.status == SyncStatus.FAILED
    assert log.error_message == "Bank provider request failed"
    assert sync_service.get(USER, connection.id).status == ConnectionStatus.ERROR


@pytest.mark.anyio
async def test_sync_requires_token_and_active_connection(seed, sync_service) -> None:
    _, connection = _connect(seed, sync_service, token=None)
    with pytest.raises(ValidationError, match="no access token"):
        await sync_service.sync(USER, connection.id)

    sync_service.disconnect(USER, connection.id)
    assert sync_service.list_connections(USER) == []
    with pytest.raises(ValidationError, match="disconnected"):
        await sync_service.sync(USER, connection.id)
