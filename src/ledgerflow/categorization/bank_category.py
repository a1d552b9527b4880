from collections import defaultdict

from ledgerflow.logger import get_logger
from ledgerflow.models import CategorizationMethod, Transaction
from ledgerflow.services.bank_mapping import DEFAULT_PROVIDER, BankCategoryMappingService, MappingResolution

from .base import CategorizationContext, CategorizationHandler, CategorizationProposal, HandlerResult
from .gate import ConfidenceGate, GateDecision

logger = get_logger(__name__)


def _reasoning(resolution: MappingResolution, category_name: str) -> str:
    name = resolution.bank_category_name
    if resolution.was_exact_match:
        return f"Bank category '{name}' matches category '{category_name}'"
    if resolution.is_ai_mapped:
        return f"Bank category '{name}' mapped to '{category_name}' by AI"
    return f"Bank category '{name}' mapped to '{category_name}'"


class BankCategoryHandler(CategorizationHandler):
    name = "bank_category"
    method = CategorizationMethod.BANK_CATEGORY

    def __init__(self, mappings: BankCategoryMappingService, gate: ConfidenceGate) -> None:
        self.mappings = mappings
        self.gate = gate

    async def handle(self, context: CategorizationContext, transactions: list[Transaction]) -> HandlerResult:
        result = HandlerResult()
        by_provider: dict[str, list[Transaction]] = defaultdict(list)
        for txn in transactions:
            if txn.bank_category and txn.bank_category.strip():
                provider = context.providers.get(txn.account_id, DEFAULT_PROVIDER)
                by_provider[provider].append(txn)
            else:
                result.remaining.append(txn)

        for provider, txns in by_provider.items():
            names = sorted({txn.bank_category.strip() for txn in txns})
            resolutions = await self.mappings.resolve_and_create_mappings(context.user_id, names, provider)
            lookup = {name.strip().lower(): res for name, res in resolutions.items()}

            for txn in txns:
                resolution = lookup.get(txn.bank_category.strip().lower())
                category = context.categories.get(resolution.category_id) if resolution else None
                # Excluded mappings are skipped whatever their confidence.
                if resolution is None or not resolution.is_usable or category is None:
                    result.remaining.append(txn)
                    continue

                proposal = CategorizationProposal(
                    transaction_id=txn.id,
                    category_id=resolution.category_id,
                    method=self.method,
                    confidence=resolution.confidence,
                    reasoning=_reasoning(resolution, category.name),
                    mapping_id=resolution.mapping_id,
                )
                if self.gate.route(proposal, result) == GateDecision.AUTO_APPLY:
                    self.mappings.record_application(resolution.mapping_id)

        logger.debug(
            "[BANK-MAP] %s auto-applied, %s candidates, %s unresolved.",
            len(result.auto_applied),
            len(result.candidates),
            len(result.remaining),
        )
        return result
