import asyncio
import time
from collections import Counter
from collections.abc import Iterable

from pydantic import BaseModel, Field

from ledgerflow.logger import get_logger
from ledgerflow.manager import CategoryLearner
from ledgerflow.models import CategorizationMethod, ConnectionStatus, Transaction, utcnow
from ledgerflow.services.candidates import CandidatesService
from ledgerflow.storage.repositories import Store

from .base import CategorizationContext, CategorizationHandler, CategorizationProposal

logger = get_logger(__name__)

# Rough per-transaction saving versus sending it to the LLM.
COST_SAVINGS_PER_TRANSACTION = 0.005
COST_SAVING_METHODS = {CategorizationMethod.RULE, CategorizationMethod.BANK_CATEGORY}


def confidence_band(confidence: float) -> str:
    if confidence >= 0.9:
        return "High"
    if confidence >= 0.7:
        return "Medium"
    if confidence >= 0.5:
        return "Low"
    return "Very Low"


class HandlerMetrics(BaseModel):
    handler: str
    processed: int = 0
    auto_applied: int = 0
    candidates: int = 0
    failed: bool = False
    duration_ms: float = 0.0


class PipelineResult(BaseModel):
    total_processed: int = 0
    auto_applied: int = 0
    candidates_created: int = 0
    unresolved: int = 0
    handlers: list[HandlerMetrics] = Field(default_factory=list)
    by_method: dict[str, int] = Field(default_factory=dict)
    confidence_distribution: dict[str, int] = Field(default_factory=dict)
    estimated_cost_savings: float = 0.0
    errors: list[str] = Field(default_factory=list)


class CategorizationPipeline:
    """
    Runs transactions through the handlers in order.

    Each handler sees only what earlier handlers left unresolved. A handler
    that raises is logged and skipped: its whole input goes on to the next
    handler.
    """

    def __init__(
        self,
        store: Store,
        handlers: list[CategorizationHandler],
        candidates: CandidatesService,
        learner: CategoryLearner | None = None,
    ) -> None:
        self.store = store
        self.handlers = handlers
        self.candidates = candidates
        self.learner = learner

    def build_context(self, user_id: str) -> CategorizationContext:
        accounts = {
            a.id: a for a in self.store.accounts.find(lambda a: not a.is_deleted)
            if a.user_id == user_id or any(s.user_id == user_id for s in a.shares)
        }
        categories = {
            c.id: c for c in self.store.categories.find(lambda c: c.user_id == user_id and not c.is_deleted)
        }
        providers = {
            conn.account_id: conn.provider
            for conn in self.store.connections.find(
                lambda c: c.account_id in accounts and c.status == ConnectionStatus.ACTIVE
            )
        }
        return CategorizationContext(user_id=user_id, accounts=accounts, categories=categories, providers=providers)

    def _load_transactions(self, user_id: str, transaction_ids: Iterable[int] | None) -> list[Transaction]:
        if transaction_ids is None:
            txns = self.store.transactions.find(lambda t: t.user_id == user_id)
        else:
            txns = [t for t in self.store.transactions.get_many(dict.fromkeys(transaction_ids)) if t.user_id == user_id]
        return [t for t in txns if not t.is_deleted and not t.is_categorized]

    async def process(self, user_id: str, transaction_ids: Iterable[int] | None = None) -> PipelineResult:
        transactions = self._load_transactions(user_id, transaction_ids)
        result = PipelineResult(total_processed=len(transactions))
        if not transactions:
            return result

        context = self.build_context(user_id)
        remaining = transactions
        applied: list[CategorizationProposal] = []
        proposed: list[CategorizationProposal] = []

        for handler in self.handlers:
            if not remaining:
                break
            metrics = HandlerMetrics(handler=handler.name, processed=len(remaining))
            started = time.perf_counter()
            try:
                outcome = await handler.handle(context, remaining)
            except Exception as e:
                logger.exception(f"[PIPELINE] Handler {handler.name} failed; passing {len(remaining)} on.")
                metrics.failed = True
                result.errors.append(f"{handler.name}: {e}")
            else:
                metrics.auto_applied = len(outcome.auto_applied)
                metrics.candidates = len(outcome.candidates)
                applied.extend(outcome.auto_applied)
                proposed.extend(outcome.candidates)
                result.errors.extend(outcome.errors)
                remaining = outcome.remaining
            metrics.duration_ms = round((time.perf_counter() - started) * 1000, 2)
            result.handlers.append(metrics)
            logger.debug(
                f"[PIPELINE] {handler.name}: {metrics.auto_applied} applied, "
                f"{metrics.candidates} candidates in {metrics.duration_ms} ms"
            )

        await self._apply(user_id, applied)
        created = self.candidates.create_candidates(user_id, proposed)

        result.auto_applied = len(applied)
        result.candidates_created = len(created)
        result.unresolved = len(remaining)
        resolved = applied + proposed
        result.by_method = dict(Counter(str(p.method) for p in resolved))
        result.confidence_distribution = dict(Counter(confidence_band(p.confidence) for p in resolved))
        savings = sum(1 for p in resolved if p.method in COST_SAVING_METHODS)
        result.estimated_cost_savings = round(savings * COST_SAVINGS_PER_TRANSACTION, 4)

        logger.info(
            "[PIPELINE] User %s: %s transactions, %s auto-applied, %s candidates, %s unresolved.",
            user_id,
            result.total_processed,
            result.auto_applied,
            result.candidates_created,
            result.unresolved,
        )
        return result

    async def _apply(self, user_id: str, proposals: list[CategorizationProposal]) -> None:
        now = utcnow()
        for proposal in proposals:
            txn = self.store.transactions.get(proposal.transaction_id)
            if txn is None or txn.is_categorized:
                continue
            txn.category_id = proposal.category_id
            txn.is_auto_categorized = True
            txn.categorization_method = proposal.method
            txn.categorization_rule_id = proposal.rule_id
            txn.categorization_mapping_id = proposal.mapping_id
            txn.categorized_at = now
            self.store.transactions.update(txn)
            if self.learner is not None:
                await asyncio.to_thread(self.learner.learn, user_id, txn.display_description, proposal.category_id)
