from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ledgerflow.models import Account, CategorizationMethod, Category, Transaction


@dataclass
class CategorizationContext:
    user_id: str
    accounts: dict[int, Account] = field(default_factory=dict)
    categories: dict[int, Category] = field(default_factory=dict)
    # account id -> bank provider name, for accounts with a bank connection
    providers: dict[int, str] = field(default_factory=dict)


@dataclass
class CategorizationProposal:
    transaction_id: int
    category_id: int
    method: CategorizationMethod
    confidence: float
    reasoning: str | None = None
    rule_id: int | None = None
    mapping_id: int | None = None


@dataclass
class HandlerResult:
    auto_applied: list[CategorizationProposal] = field(default_factory=list)
    candidates: list[CategorizationProposal] = field(default_factory=list)
    remaining: list[Transaction] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def resolved_count(self) -> int:
        return len(self.auto_applied) + len(self.candidates)


class CategorizationHandler(ABC):
    name: str = "handler"
    method: CategorizationMethod

    @abstractmethod
    async def handle(self, context: CategorizationContext, transactions: list[Transaction]) -> HandlerResult:
        """
        Categorize what the handler can.

        Every input transaction must end up in exactly one of ``auto_applied``,
        ``candidates`` or ``remaining``.
        """
