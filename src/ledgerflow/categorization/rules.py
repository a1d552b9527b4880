from ledgerflow.logger import get_logger
from ledgerflow.models import CategorizationMethod, Transaction, utcnow
from ledgerflow.rules.matcher import rule_confidence, rule_matches
from ledgerflow.storage.repositories import Store

from .base import CategorizationContext, CategorizationHandler, CategorizationProposal, HandlerResult
from .gate import ConfidenceGate

logger = get_logger(__name__)


class RulesHandler(CategorizationHandler):
    name = "rules"
    method = CategorizationMethod.RULE

    def __init__(self, store: Store, gate: ConfidenceGate) -> None:
        self.store = store
        self.gate = gate

    async def handle(self, context: CategorizationContext, transactions: list[Transaction]) -> HandlerResult:
        result = HandlerResult()
        rules = [
            rule for rule in self.store.rules.active_for_user(context.user_id)
            if rule.category_id in context.categories
        ]
        if not rules:
            result.remaining = list(transactions)
            return result

        for txn in transactions:
            account = context.accounts.get(txn.account_id)
            rule = next((r for r in rules if rule_matches(r, txn, account)), None)
            if rule is None:
                result.remaining.append(txn)
                continue

            proposal = CategorizationProposal(
                transaction_id=txn.id,
                category_id=rule.category_id,
                method=self.method,
                confidence=rule_confidence(rule, txn),
                reasoning=f"Matched rule '{rule.name}' (pattern: '{rule.pattern}')",
                rule_id=rule.id,
            )
            self.gate.route(proposal, result)

            rule.match_count += 1
            rule.last_matched_at = utcnow()
            self.store.rules.update(rule)

        logger.debug(
            "[RULES] %s auto-applied, %s candidates, %s unmatched.",
            len(result.auto_applied),
            len(result.candidates),
            len(result.remaining),
        )
        return result
