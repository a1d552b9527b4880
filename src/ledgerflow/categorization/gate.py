from enum import StrEnum

from ledgerflow.core import settings
from ledgerflow.models import CategorizationMethod

from .base import CategorizationProposal, HandlerResult

DETERMINISTIC_METHODS = {CategorizationMethod.RULE, CategorizationMethod.BANK_CATEGORY}


class GateDecision(StrEnum):
    AUTO_APPLY = "auto_apply"
    CANDIDATE = "candidate"


class ConfidenceGate:
    """
    Decides between committing a categorization and queueing it for review.

    Rule and bank-category proposals auto-apply at ``threshold``. ML and LLM
    proposals must clear the stricter ``ai_threshold``.
    """

    def __init__(self, threshold: float | None = None, ai_threshold: float | None = None) -> None:
        self.threshold = threshold if threshold is not None else settings.auto_apply_threshold()
        self.ai_threshold = ai_threshold if ai_threshold is not None else settings.ai_auto_apply_threshold()

    def threshold_for(self, method: CategorizationMethod) -> float:
        if method in DETERMINISTIC_METHODS:
            return self.threshold
        return max(self.threshold, self.ai_threshold)

    def decide(self, method: CategorizationMethod, confidence: float) -> GateDecision:
        if confidence >= self.threshold_for(method):
            return GateDecision.AUTO_APPLY
        return GateDecision.CANDIDATE

    def route(self, proposal: CategorizationProposal, result: HandlerResult) -> GateDecision:
        decision = self.decide(proposal.method, proposal.confidence)
        if decision == GateDecision.AUTO_APPLY:
            result.auto_applied.append(proposal)
        else:
            result.candidates.append(proposal)
        return decision
