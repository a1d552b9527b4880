from collections.abc import Generator
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from ledgerflow.errors import ServiceUnavailableError
from ledgerflow.integration.llm import LlmProvider, extract_output_text, strip_code_fences
from ledgerflow.models import Category, Transaction


@pytest.fixture
def mock_openai_client() -> Generator[MagicMock, None, None]:
    with patch("ledgerflow.integration.llm.OpenAI") as mock:
        yield mock


def _respond(mock: MagicMock, text: str) -> MagicMock:
    mock_instance = mock.return_value
    mock_instance.responses.create.return_value = SimpleNamespace(output_text=text, output=[])
    return mock_instance


CATEGORIES = [Category(id=1, user_id="u", name="Dining"), Category(id=2, user_id="u", name="Fuel")]
TRANSACTIONS = [
    Transaction(id=10, user_id="u", account_id=1, amount=Decimal("-4.50"), transaction_date=date(2024, 3, 1),
                description="FLAT WHITE CO"),
    Transaction(id=11, user_id="u", account_id=1, amount=Decimal("-80"), transaction_date=date(2024, 3, 2),
                description="Z ENERGY"),
]


def test_strip_code_fences() -> None:
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences("  [1]  ") == "[1]"


def test_extract_output_text_from_blocks() -> None:
    response = SimpleNamespace(
        output_text=None,
        output=[SimpleNamespace(content=[
            SimpleNamespace(type="output_text", text="[1,"),
            SimpleNamespace(type="refusal", text="no"),
            SimpleNamespace(type="text", text="2]"),
        ])],
    )
    assert extract_output_text(response) == "[1,2]"
    assert extract_output_text(SimpleNamespace()) is None


@pytest.mark.anyio
async def test_llm_categorize(mock_openai_client: MagicMock) -> None:
    mock_instance = _respond(mock_openai_client, """```json
    [{"transactionId": 10, "categoryId": 1, "confidence": 0.9, "reasoning": "coffee"},
     {"transactionId": 11, "categoryId": "not-a-number"},
     "garbage"]
    ```""")

    provider = LlmProvider(api_key="sk-fake", model="gpt-test")
    suggestions = await provider.categorize_transactions(TRANSACTIONS, CATEGORIES)

    assert len(suggestions) == 1
    assert suggestions[0].transaction_id == 10
    assert suggestions[0].category_id == 1
    assert suggestions[0].reasoning == "coffee"

    mock_instance.responses.create.assert_called_once()
    kwargs = mock_instance.responses.create.call_args.kwargs
    assert kwargs["model"] == "gpt-test"
    assert "id=10: 'FLAT WHITE CO'" in kwargs["input"]


@pytest.mark.anyio
async def test_llm_categorize_accepts_wrapped_results(mock_openai_client: MagicMock) -> None:
    _respond(mock_openai_client, '{"results": [{"transactionId": 11, "categoryId": 2, "confidence": 0.7}]}')

    provider = LlmProvider(api_key="sk-fake")
    suggestions = await provider.categorize_transactions(TRANSACTIONS, CATEGORIES)

    assert [(s.transaction_id, s.category_id) for s in suggestions] == [(11, 2)]


@pytest.mark.anyio
async def test_llm_skips_call_without_categories(mock_openai_client: MagicMock) -> None:
    provider = LlmProvider(api_key="sk-fake")

    assert await provider.categorize_transactions(TRANSACTIONS, []) == []
    mock_openai_client.return_value.responses.create.assert_not_called()


@pytest.mark.anyio
async def test_llm_map_bank_categories(mock_openai_client: MagicMock) -> None:
    _respond(mock_openai_client, """{"mappings": [
        {"bankCategory": "Cafes", "action": "map", "mappedCategoryId": 1, "confidence": 0.92},
        {"bankCategory": "Pets", "action": "CREATE_NEW", "mappedCategoryId": null, "suggestedName": "Pets"},
        {"action": "MAP"}
    ]}""")

    provider = LlmProvider(api_key="sk-fake")
    suggestions = await provider.map_bank_categories(["Cafes", "Pets"], CATEGORIES)

    assert [s.bank_category for s in suggestions] == ["Cafes", "Pets"]
    assert suggestions[0].action == "MAP"
    assert suggestions[0].category_id == 1
    assert suggestions[1].suggested_name == "Pets"
    assert suggestions[1].confidence == 0.0


@pytest.mark.anyio
async def test_llm_request_failure_is_unavailable(mock_openai_client: MagicMock) -> None:
    mock_openai_client.return_value.responses.create.side_effect = RuntimeError("timeout")

    provider = LlmProvider(api_key="sk-fake")
    with pytest.raises(ServiceUnavailableError, match="request failed"):
        await provider.categorize_transactions(TRANSACTIONS, CATEGORIES)


@pytest.mark.anyio
async def test_llm_invalid_json_is_unavailable(mock_openai_client: MagicMock) -> None:
    _respond(mock_openai_client, "Sorry, I cannot help with that.")

    provider = LlmProvider(api_key="sk-fake")
    with pytest.raises(ServiceUnavailableError, match="invalid JSON"):
        await provider.map_bank_categories(["Cafes"], CATEGORIES)


def test_llm_uses_injected_client(mock_openai_client: MagicMock) -> None:
    client = MagicMock()
    provider = LlmProvider(client=client, model="m")

    assert provider.client is client
    mock_openai_client.assert_not_called()
