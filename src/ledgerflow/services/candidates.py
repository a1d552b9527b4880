from collections import Counter
from collections.abc import Iterable

from pydantic import BaseModel, Field

from ledgerflow.categorization.base import CategorizationProposal
from ledgerflow.errors import NotFoundError, ValidationError
from ledgerflow.logger import get_logger
from ledgerflow.manager import CategoryLearner
from ledgerflow.models import (
    CandidateStatus,
    CategorizationCandidate,
    CategorizationMethod,
    utcnow,
)
from ledgerflow.storage.repositories import Store

logger = get_logger(__name__)


class BatchResult(BaseModel):
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class CandidateStats(BaseModel):
    pending: int = 0
    applied: int = 0
    rejected: int = 0
    by_method: dict[str, int] = Field(default_factory=dict)
    average_pending_confidence: float | None = None


class CandidatesService:
    def __init__(self, store: Store, learner: CategoryLearner | None = None) -> None:
        self.store = store
        self.learner = learner

    def create_candidates(
        self,
        user_id: str,
        proposals: Iterable[CategorizationProposal],
    ) -> list[CategorizationCandidate]:
        """
        Persist review candidates, skipping categorized transactions and any
        (transaction, category, method) triple that is already pending.
        """
        proposals = list(proposals)
        if not proposals:
            return []

        transaction_ids = {p.transaction_id for p in proposals}
        categorized = self.store.transactions.categorized_ids(transaction_ids)
        seen = {
            (c.transaction_id, c.category_id, c.method)
            for c in self.store.candidates.pending_for_transactions(transaction_ids)
        }

        created: list[CategorizationCandidate] = []
        for proposal in proposals:
            key = (proposal.transaction_id, proposal.category_id, proposal.method)
            if proposal.transaction_id in categorized or key in seen:
                continue
            seen.add(key)
            created.append(self.store.candidates.add(CategorizationCandidate(
                user_id=user_id,
                transaction_id=proposal.transaction_id,
                category_id=proposal.category_id,
                method=proposal.method,
                confidence=proposal.confidence,
                rule_id=proposal.rule_id,
                mapping_id=proposal.mapping_id,
                reasoning=proposal.reasoning,
            )))

        skipped = len(proposals) - len(created)
        if skipped:
            logger.debug("[CANDIDATES] Skipped %s duplicate or already-categorized proposals.", skipped)
        return created

    def get(self, user_id: str, candidate_id: int) -> CategorizationCandidate:
        candidate = self.store.candidates.get(candidate_id)
        if candidate is None or candidate.user_id != user_id:
            raise NotFoundError.for_entity("Candidate", candidate_id)
        return candidate

    def list_candidates(
        self,
        user_id: str,
        status: CandidateStatus | None = CandidateStatus.PENDING,
        transaction_id: int | None = None,
    ) -> list[CategorizationCandidate]:
        candidates = self.store.candidates.find(
            lambda c: c.user_id == user_id
            and (status is None or c.status == status)
            and (transaction_id is None or c.transaction_id == transaction_id)
        )
        return sorted(candidates, key=lambda c: (-c.confidence, c.id or 0))

    def apply(self, user_id: str, candidate_id: int) -> bool:
        candidate = self.get(user_id, candidate_id)
        if candidate.status != CandidateStatus.PENDING:
            return False

        txn = self.store.transactions.get(candidate.transaction_id)
        if txn is None or txn.is_deleted:
            raise NotFoundError.for_entity("Transaction", candidate.transaction_id)

        txn.category_id = candidate.category_id
        txn.is_reviewed = True
        txn.is_auto_categorized = False
        txn.categorization_method = candidate.method
        txn.categorization_rule_id = candidate.rule_id
        txn.categorization_mapping_id = candidate.mapping_id
        txn.categorized_at = utcnow()
        self.store.transactions.update(txn)

        candidate.status = CandidateStatus.APPLIED
        candidate.processed_at = utcnow()
        self.store.candidates.update(candidate)

        # Other suggestions for the same transaction are now moot.
        for sibling in self.store.candidates.pending_for_transactions([txn.id]):
            sibling.status = CandidateStatus.REJECTED
            sibling.processed_at = utcnow()
            self.store.candidates.update(sibling)

        if self.learner is not None:
            self.learner.learn(user_id, txn.display_description, candidate.category_id)
        logger.info(
            "[CANDIDATES] Applied %s candidate %s: transaction %s -> category %s.",
            candidate.method,
            candidate.id,
            txn.id,
            candidate.category_id,
        )
        return True

    def reject(self, user_id: str, candidate_id: int) -> bool:
        candidate = self.get(user_id, candidate_id)
        if candidate.status != CandidateStatus.PENDING:
            return False
        candidate.status = CandidateStatus.REJECTED
        candidate.processed_at = utcnow()
        self.store.candidates.update(candidate)
        return True

    def _batch(self, user_id: str, candidate_ids: list[int], action, verb: str) -> BatchResult:
        if not candidate_ids:
            raise ValidationError("No candidate ids supplied")
        result = BatchResult()
        for candidate_id in dict.fromkeys(candidate_ids):
            try:
                ok = action(user_id, candidate_id)
            except NotFoundError as e:
                result.failed += 1
                result.errors.append(e.message)
                continue
            if ok:
                result.succeeded += 1
            else:
                result.failed += 1
                result.errors.append(f"Candidate {candidate_id} could not be {verb}: not pending")
        return result

    def apply_batch(self, user_id: str, candidate_ids: list[int]) -> BatchResult:
        return self._batch(user_id, candidate_ids, self.apply, "applied")

    def reject_batch(self, user_id: str, candidate_ids: list[int]) -> BatchResult:
        return self._batch(user_id, candidate_ids, self.reject, "rejected")

    def stats(self, user_id: str) -> CandidateStats:
        candidates = self.store.candidates.find(lambda c: c.user_id == user_id)
        statuses = Counter(c.status for c in candidates)
        pending = [c for c in candidates if c.status == CandidateStatus.PENDING]
        methods = Counter(str(c.method) for c in pending)
        average = round(sum(c.confidence for c in pending) / len(pending), 4) if pending else None
        return CandidateStats(
            pending=statuses[CandidateStatus.PENDING],
            applied=statuses[CandidateStatus.APPLIED],
            rejected=statuses[CandidateStatus.REJECTED],
            by_method={str(m): methods.get(str(m), 0) for m in CategorizationMethod},
            average_pending_confidence=average,
        )
