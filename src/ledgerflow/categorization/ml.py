import asyncio

from ledgerflow.manager import CategoryLearner
from ledgerflow.models import CategorizationMethod, Transaction

from .base import CategorizationContext, CategorizationHandler, CategorizationProposal, HandlerResult
from .gate import ConfidenceGate


class MLHandler(CategorizationHandler):
    name = "ml"
    method = CategorizationMethod.ML

    def __init__(self, learner: CategoryLearner, gate: ConfidenceGate) -> None:
        self.learner = learner
        self.gate = gate

    async def handle(self, context: CategorizationContext, transactions: list[Transaction]) -> HandlerResult:
        result = HandlerResult()
        valid_ids = set(context.categories)
        for txn in transactions:
            prediction = await asyncio.to_thread(
                self.learner.predict,
                context.user_id,
                txn.display_description,
                valid_ids,
            )
            if prediction is None:
                result.remaining.append(txn)
                continue
            self.gate.route(
                CategorizationProposal(
                    transaction_id=txn.id,
                    category_id=int(prediction.label),
                    method=self.method,
                    confidence=prediction.confidence,
                    reasoning=f"Predicted by {prediction.source}",
                ),
                result,
            )
        return result
