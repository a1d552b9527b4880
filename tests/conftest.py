from datetime import date
from decimal import Decimal
from typing import Any

import pytest

from ledgerflow.app import build_services
from ledgerflow.categorization.gate import ConfidenceGate
from ledgerflow.models import (
    Account,
    AccountType,
    BankCategoryMapping,
    CategorizationRule,
    Category,
    MappingSource,
    Transaction,
)
from ledgerflow.storage.memory import InMemoryStore

USER = "user-1"
OTHER_USER = "user-2"


class Seeder:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def account(self, user_id: str = USER, name: str = "Everyday", account_type: AccountType = AccountType.CHECKING) -> Account:
        return self.store.accounts.add(Account(user_id=user_id, name=name, account_type=account_type))

    def category(self, name: str, user_id: str = USER) -> Category:
        return self.store.categories.add(Category(user_id=user_id, name=name))

    def transaction(
        self,
        account: Account,
        description: str,
        amount: str = "-10.00",
        when: date = date(2024, 3, 1),
        **extra: Any,
    ) -> Transaction:
        return self.store.transactions.add(Transaction(
            user_id=account.user_id,
            account_id=account.id,
            amount=Decimal(amount),
            transaction_date=when,
            description=description,
            **extra,
        ))

    def rule(self, category: Category, pattern: str, user_id: str = USER, **extra: Any) -> CategorizationRule:
        return self.store.rules.add(CategorizationRule(
            user_id=user_id,
            name=extra.pop("name", f"{pattern} rule"),
            pattern=pattern,
            category_id=category.id,
            **extra,
        ))

    def mapping(
        self,
        name: str,
        category: Category,
        confidence: float = 1.0,
        is_excluded: bool = False,
        user_id: str = USER,
    ) -> BankCategoryMapping:
        return self.store.mappings.add(BankCategoryMapping(
            user_id=user_id,
            bank_category_name=name,
            normalized_name=name.strip().lower(),
            category_id=category.id,
            confidence=confidence,
            source=MappingSource.AI,
            is_excluded=is_excluded,
        ))


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def seed(store: InMemoryStore) -> Seeder:
    return Seeder(store)


@pytest.fixture
def gate() -> ConfidenceGate:
    return ConfidenceGate(threshold=0.95, ai_threshold=0.99)


@pytest.fixture
def services(store: InMemoryStore, gate: ConfidenceGate, tmp_path) -> dict[str, Any]:
    return build_services(store, data_dir=str(tmp_path), gate=gate)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
