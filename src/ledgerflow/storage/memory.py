import threading
from collections.abc import Callable, Iterable
from typing import Generic, TypeVar

from ledgerflow.models import (
    Account,
    AuditLog,
    BankCategoryMapping,
    BankConnection,
    BankSyncLog,
    Budget,
    CandidateStatus,
    CategorizationCandidate,
    CategorizationRule,
    Category,
    Goal,
    Reconciliation,
    ReconciliationItem,
    Transaction,
)

ModelT = TypeVar("ModelT", bound=object)


class InMemoryRepository(Generic[ModelT]):
    """Dict-backed repository; ids are assigned on ``add``."""

    def __init__(self) -> None:
        self._items: dict[int, ModelT] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def add(self, item: ModelT) -> ModelT:
        with self._lock:
            item_id = self._next_id
            self._next_id += 1
            item.id = item_id  # type: ignore[attr-defined]
            self._items[item_id] = item
        return item

    def get(self, item_id: int) -> ModelT | None:
        return self._items.get(item_id)

    def update(self, item: ModelT) -> ModelT:
        item_id = item.id  # type: ignore[attr-defined]
        if item_id is None or item_id not in self._items:
            raise KeyError(item_id)
        self._items[item_id] = item
        return item

    def remove(self, item_id: int) -> None:
        self._items.pop(item_id, None)

    def find(self, predicate: Callable[[ModelT], bool] | None = None) -> list[ModelT]:
        items = list(self._items.values())
        if predicate is None:
            return items
        return [item for item in items if predicate(item)]

    def __len__(self) -> int:
        return len(self._items)


class InMemoryTransactionRepository(InMemoryRepository[Transaction]):
    def get_many(self, ids: Iterable[int]) -> list[Transaction]:
        return [self._items[item_id] for item_id in ids if item_id in self._items]

    def find_by_external_id(self, account_id: int, external_id: str) -> Transaction | None:
        for txn in self._items.values():
            if txn.account_id == account_id and txn.external_id == external_id and not txn.is_deleted:
                return txn
        return None

    def categorized_ids(self, ids: Iterable[int]) -> set[int]:
        return {
            item_id
            for item_id in ids
            if item_id in self._items and self._items[item_id].category_id is not None
        }


class InMemoryRuleRepository(InMemoryRepository[CategorizationRule]):
    def active_for_user(self, user_id: str) -> list[CategorizationRule]:
        rules = self.find(lambda r: r.user_id == user_id and r.is_active and not r.is_deleted)
        return sorted(rules, key=lambda r: (r.priority, r.id or 0))


class InMemoryCandidateRepository(InMemoryRepository[CategorizationCandidate]):
    def pending_for_transactions(self, ids: Iterable[int]) -> list[CategorizationCandidate]:
        wanted = set(ids)
        return self.find(lambda c: c.transaction_id in wanted and c.status == CandidateStatus.PENDING)


class InMemoryMappingRepository(InMemoryRepository[BankCategoryMapping]):
    def find_active(self, user_id: str, normalized_name: str, provider: str) -> BankCategoryMapping | None:
        for mapping in self._items.values():
            if (
                mapping.user_id == user_id
                and mapping.is_active
                and mapping.normalized_name == normalized_name
                and mapping.provider.lower() == provider.lower()
            ):
                return mapping
        return None


class InMemoryReconciliationItemRepository(InMemoryRepository[ReconciliationItem]):
    def for_reconciliation(self, reconciliation_id: int) -> list[ReconciliationItem]:
        return self.find(lambda i: i.reconciliation_id == reconciliation_id)


class InMemoryStore:
    def __init__(self) -> None:
        self.accounts: InMemoryRepository[Account] = InMemoryRepository()
        self.categories: InMemoryRepository[Category] = InMemoryRepository()
        self.transactions = InMemoryTransactionRepository()
        self.rules = InMemoryRuleRepository()
        self.candidates = InMemoryCandidateRepository()
        self.mappings = InMemoryMappingRepository()
        self.reconciliations: InMemoryRepository[Reconciliation] = InMemoryRepository()
        self.reconciliation_items = InMemoryReconciliationItemRepository()
        self.connections: InMemoryRepository[BankConnection] = InMemoryRepository()
        self.sync_logs: InMemoryRepository[BankSyncLog] = InMemoryRepository()
        self.budgets: InMemoryRepository[Budget] = InMemoryRepository()
        self.goals: InMemoryRepository[Goal] = InMemoryRepository()
        self.audit_logs: InMemoryRepository[AuditLog] = InMemoryRepository()
