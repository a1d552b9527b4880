from collections.abc import Callable, Iterable
from typing import Protocol, TypeVar

from ledgerflow.models import (
    Account,
    AuditLog,
    BankCategoryMapping,
    BankConnection,
    BankSyncLog,
    Budget,
    CategorizationCandidate,
    CategorizationRule,
    Category,
    Goal,
    Reconciliation,
    ReconciliationItem,
    Transaction,
)

ModelT = TypeVar("ModelT")


class Repository(Protocol[ModelT]):
    def add(self, item: ModelT) -> ModelT: ...

    def get(self, item_id: int) -> ModelT | None: ...

    def update(self, item: ModelT) -> ModelT: ...

    def remove(self, item_id: int) -> None: ...

    def find(self, predicate: Callable[[ModelT], bool] | None = None) -> list[ModelT]: ...


class TransactionRepository(Repository[Transaction], Protocol):
    def get_many(self, ids: Iterable[int]) -> list[Transaction]: ...

    def find_by_external_id(self, account_id: int, external_id: str) -> Transaction | None: ...

    def categorized_ids(self, ids: Iterable[int]) -> set[int]: ...


class RuleRepository(Repository[CategorizationRule], Protocol):
    def active_for_user(self, user_id: str) -> list[CategorizationRule]: ...


class CandidateRepository(Repository[CategorizationCandidate], Protocol):
    def pending_for_transactions(self, ids: Iterable[int]) -> list[CategorizationCandidate]: ...


class MappingRepository(Repository[BankCategoryMapping], Protocol):
    def find_active(self, user_id: str, normalized_name: str, provider: str) -> BankCategoryMapping | None: ...


class ReconciliationItemRepository(Repository[ReconciliationItem], Protocol):
    def for_reconciliation(self, reconciliation_id: int) -> list[ReconciliationItem]: ...


class Store(Protocol):
    """The set of repositories services read from and write to."""

    accounts: Repository[Account]
    categories: Repository[Category]
    transactions: TransactionRepository
    rules: RuleRepository
    candidates: CandidateRepository
    mappings: MappingRepository
    reconciliations: Repository[Reconciliation]
    reconciliation_items: ReconciliationItemRepository
    connections: Repository[BankConnection]
    sync_logs: Repository[BankSyncLog]
    budgets: Repository[Budget]
    goals: Repository[Goal]
    audit_logs: Repository[AuditLog]
