from ledgerflow.errors import ServiceUnavailableError
from ledgerflow.integration.llm import LlmProvider
from ledgerflow.logger import get_logger
from ledgerflow.models import CategorizationMethod, Transaction

from .base import CategorizationContext, CategorizationHandler, CategorizationProposal, HandlerResult
from .gate import ConfidenceGate

logger = get_logger(__name__)


class LLMHandler(CategorizationHandler):
    name = "llm"
    method = CategorizationMethod.LLM

    def __init__(self, provider: LlmProvider, gate: ConfidenceGate) -> None:
        self.provider = provider
        self.gate = gate

    async def handle(self, context: CategorizationContext, transactions: list[Transaction]) -> HandlerResult:
        result = HandlerResult()
        if not transactions or not context.categories:
            result.remaining = list(transactions)
            return result

        try:
            suggestions = await self.provider.categorize_transactions(
                transactions,
                list(context.categories.values()),
            )
        except ServiceUnavailableError as e:
            logger.warning(f"[LLM] Categorization unavailable: {e}")
            result.errors.append(f"LLM categorization failed: {e}")
            result.remaining = list(transactions)
            return result

        by_transaction = {
            s.transaction_id: s for s in suggestions
            if s.category_id in context.categories
        }
        for txn in transactions:
            suggestion = by_transaction.get(txn.id)
            if suggestion is None:
                result.remaining.append(txn)
                continue
            self.gate.route(
                CategorizationProposal(
                    transaction_id=txn.id,
                    category_id=suggestion.category_id,
                    method=self.method,
                    confidence=max(0.0, min(1.0, suggestion.confidence)),
                    reasoning=suggestion.reasoning,
                ),
                result,
            )
        return result
