from unittest.mock import AsyncMock, MagicMock

import pytest

from ledgerflow.categorization.base import CategorizationContext, CategorizationHandler, HandlerResult
from ledgerflow.categorization.gate import ConfidenceGate, GateDecision
from ledgerflow.categorization.llm import LLMHandler
from ledgerflow.categorization.pipeline import CategorizationPipeline, confidence_band
from ledgerflow.errors import ServiceUnavailableError
from ledgerflow.integration.llm import LlmSuggestion
from ledgerflow.models import CandidateStatus, CategorizationMethod, RuleMatchType, Transaction

from .conftest import USER


class ExplodingHandler(CategorizationHandler):
    name = "exploding"
    method = CategorizationMethod.RULE

    async def handle(self, context: CategorizationContext, transactions: list[Transaction]) -> HandlerResult:
        raise RuntimeError("boom")


class RecordingHandler(CategorizationHandler):
    name = "recording"
    method = CategorizationMethod.ML

    def __init__(self) -> None:
        self.seen: list[int] = []

    async def handle(self, context: CategorizationContext, transactions: list[Transaction]) -> HandlerResult:
        self.seen = [t.id for t in transactions]
        return HandlerResult(remaining=list(transactions))


def test_gate_thresholds():
    gate = ConfidenceGate(threshold=0.9, ai_threshold=0.99)
    assert gate.decide(CategorizationMethod.RULE, 0.9) == GateDecision.AUTO_APPLY
    assert gate.decide(CategorizationMethod.BANK_CATEGORY, 0.89) == GateDecision.CANDIDATE
    assert gate.decide(CategorizationMethod.ML, 0.95) == GateDecision.CANDIDATE
    assert gate.decide(CategorizationMethod.LLM, 0.99) == GateDecision.AUTO_APPLY


def test_confidence_bands():
    assert confidence_band(0.95) == "High"
    assert confidence_band(0.7) == "Medium"
    assert confidence_band(0.5) == "Low"
    assert confidence_band(0.2) == "Very Low"


@pytest.mark.anyio
async def test_rule_auto_apply_and_candidate(services, seed, store):
    account = seed.account()
    streaming = seed.category("Streaming")
    transport = seed.category("Transport")
    seed.rule(streaming, "netflix", match_type=RuleMatchType.EQUALS)
    seed.rule(transport, "UBER")
    netflix = seed.transaction(account, "NETFLIX")
    uber = seed.transaction(account, "Uber Eats Order #123")

    result = await services["pipeline"].process(USER)

    assert result.total_processed == 2
    assert result.auto_applied == 1
    assert result.candidates_created == 1
    assert result.estimated_cost_savings == pytest.approx(0.01)

    assert store.transactions.get(netflix.id).category_id == streaming.id
    assert store.transactions.get(netflix.id).is_auto_categorized
    assert store.transactions.get(netflix.id).categorization_method == CategorizationMethod.RULE
    assert store.transactions.get(uber.id).category_id is None

    candidates = services["candidates"].list_candidates(USER)
    assert len(candidates) == 1
    assert candidates[0].transaction_id == uber.id
    assert candidates[0].method == CategorizationMethod.RULE
    assert candidates[0].reasoning == "Matched rule 'UBER rule' (pattern: 'UBER')"


@pytest.mark.anyio
async def test_rule_priority_lower_first(services, seed, store):
    account = seed.account()
    first = seed.category("First")
    second = seed.category("Second")
    seed.rule(second, "shop", match_type=RuleMatchType.EQUALS, priority=20)
    seed.rule(first, "shop", match_type=RuleMatchType.EQUALS, priority=10)
    txn = seed.transaction(account, "shop")

    await services["pipeline"].process(USER)

    assert store.transactions.get(txn.id).category_id == first.id


@pytest.mark.anyio
@pytest.mark.parametrize("confidence", [0.95, 0.75])
async def test_excluded_mapping_produces_nothing(services, seed, store, confidence):
    account = seed.account()
    food = seed.category("Food")
    seed.mapping("Supermarkets", food, confidence=confidence, is_excluded=True)
    txn = seed.transaction(account, "PAK N SAVE", bank_category="Supermarkets")

    result = await services["pipeline"].process(USER)

    assert result.auto_applied == 0
    assert result.candidates_created == 0
    assert result.unresolved == 1
    assert store.transactions.get(txn.id).category_id is None
    assert store.candidates.find() == []


@pytest.mark.anyio
async def test_bank_mapping_auto_apply_and_candidate(services, seed, store):
    account = seed.account()
    food = seed.category("Food")
    fuel = seed.category("Fuel")
    strong = seed.mapping("Supermarkets", food, confidence=0.95)
    seed.mapping("Petrol Stations", fuel, confidence=0.75)
    grocery = seed.transaction(account, "PAK N SAVE", bank_category="Supermarkets")
    petrol = seed.transaction(account, "Z ENERGY", bank_category="petrol stations ")

    result = await services["pipeline"].process(USER)

    assert store.transactions.get(grocery.id).category_id == food.id
    assert store.transactions.get(grocery.id).categorization_mapping_id == strong.id
    assert store.mappings.get(strong.id).application_count == 1
    assert result.candidates_created == 1
    candidate = services["candidates"].list_candidates(USER)[0]
    assert candidate.transaction_id == petrol.id
    assert candidate.method == CategorizationMethod.BANK_CATEGORY
    assert candidate.confidence == 0.75


@pytest.mark.anyio
async def test_bank_category_matching_category_name_is_exact(services, seed, store):
    account = seed.account()
    groceries = seed.category("Groceries")
    txn = seed.transaction(account, "NEW WORLD", bank_category="groceries")

    await services["pipeline"].process(USER)

    updated = store.transactions.get(txn.id)
    assert updated.category_id == groceries.id
    assert updated.categorization_method == CategorizationMethod.BANK_CATEGORY


@pytest.mark.anyio
async def test_unknown_bank_category_without_ai_stays_unresolved(services, seed, store):
    account = seed.account()
    seed.category("Food")
    txn = seed.transaction(account, "MYSTERY", bank_category="Lifestyle")

    result = await services["pipeline"].process(USER)

    assert result.unresolved == 1
    assert store.transactions.get(txn.id).category_id is None
    assert store.mappings.find() == []


@pytest.mark.anyio
async def test_already_categorized_transactions_are_skipped(services, seed, store):
    account = seed.account()
    transport = seed.category("Transport")
    seed.rule(transport, "UBER")
    done = seed.transaction(account, "Uber trip", category_id=transport.id)

    result = await services["pipeline"].process(USER, [done.id])

    assert result.total_processed == 0
    assert store.candidates.find() == []


@pytest.mark.anyio
async def test_other_users_transactions_are_ignored(services, seed, store):
    theirs = seed.account(user_id="user-2")
    seed.transaction(theirs, "Uber trip")

    result = await services["pipeline"].process(USER)

    assert result.total_processed == 0


@pytest.mark.anyio
async def test_failing_handler_does_not_block_the_next(services, seed, store):
    account = seed.account()
    seed.category("Misc")
    txn = seed.transaction(account, "anything")
    recording = RecordingHandler()
    pipeline = CategorizationPipeline(store, [ExplodingHandler(), recording], services["candidates"])

    result = await pipeline.process(USER)

    assert recording.seen == [txn.id]
    assert result.unresolved == 1
    assert result.errors == ["exploding: boom"]
    assert result.handlers[0].failed
    assert not result.handlers[1].failed


@pytest.mark.anyio
async def test_ml_learns_from_manual_categorization(services, seed, store):
    account = seed.account()
    music = seed.category("Music")
    first = seed.transaction(account, "Spotify Premium")
    services["transactions"].categorize(USER, first.id, music.id)
    second = seed.transaction(account, "SPOTIFY   premium")

    result = await services["pipeline"].process(USER, [second.id])

    assert result.by_method == {"ML": 1}
    assert store.transactions.get(second.id).category_id == music.id
    assert result.estimated_cost_savings == 0.0


@pytest.mark.anyio
async def test_llm_suggestions_become_candidates(seed, store, services, gate):
    account = seed.account()
    dining = seed.category("Dining")
    txn = seed.transaction(account, "SOME CAFE")
    provider = MagicMock()
    provider.categorize_transactions = AsyncMock(return_value=[
        LlmSuggestion(transaction_id=txn.id, category_id=dining.id, confidence=0.9, reasoning="cafe"),
        LlmSuggestion(transaction_id=txn.id + 100, category_id=999, confidence=0.9),
    ])
    pipeline = CategorizationPipeline(store, [LLMHandler(provider, gate)], services["candidates"])

    result = await pipeline.process(USER)

    assert result.candidates_created == 1
    candidate = store.candidates.find()[0]
    assert candidate.method == CategorizationMethod.LLM
    assert candidate.status == CandidateStatus.PENDING
    assert store.transactions.get(txn.id).category_id is None


@pytest.mark.anyio
async def test_llm_failure_is_reported_not_raised(seed, store, services, gate):
    account = seed.account()
    seed.category("Dining")
    seed.transaction(account, "SOME CAFE")
    provider = MagicMock()
    provider.categorize_transactions = AsyncMock(side_effect=ServiceUnavailableError("LLM provider request failed"))
    pipeline = CategorizationPipeline(store, [LLMHandler(provider, gate)], services["candidates"])

    result = await pipeline.process(USER)

    assert result.unresolved == 1
    assert result.errors == ["LLM categorization failed: LLM provider request failed"]
    assert not result.handlers[0].failed
