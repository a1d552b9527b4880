from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from ledgerflow.errors import NotFoundError, ValidationError
from ledgerflow.logger import get_logger
from ledgerflow.manager import CategoryLearner
from ledgerflow.models import (
    Account,
    AccountShare,
    AuditLog,
    CategorizationMethod,
    Category,
    SharePermission,
    Transaction,
    TransactionStatus,
    utcnow,
)
from ledgerflow.services.access import AccountAccess
from ledgerflow.services.bank_mapping import BankCategoryMappingService
from ledgerflow.storage.repositories import Store

logger = get_logger(__name__)

_ACCOUNT_FIELDS = {"name", "account_type", "currency", "balance"}
_TRANSACTION_FIELDS = {
    "amount",
    "transaction_date",
    "description",
    "user_description",
    "status",
    "notes",
    "reference_number",
    "transaction_type",
}


class BulkDeleteResult(BaseModel):
    success: bool
    transactions_deleted: int = 0
    errors: list[str] = Field(default_factory=list)


class TransactionService:
    def __init__(
        self,
        store: Store,
        access: AccountAccess,
        mappings: BankCategoryMappingService | None = None,
        learner: CategoryLearner | None = None,
    ) -> None:
        self.store = store
        self.access = access
        self.mappings = mappings
        self.learner = learner

    # Accounts

    def create_account(self, user_id: str, account: Account) -> Account:
        if not account.name.strip():
            raise ValidationError("Account name is required")
        account.user_id = user_id
        return self.store.accounts.add(account)

    def list_accounts(self, user_id: str) -> list[Account]:
        ids = self.access.readable_account_ids(user_id)
        return sorted(self.store.accounts.find(lambda a: a.id in ids), key=lambda a: a.name.lower())

    def update_account(self, user_id: str, account_id: int, changes: dict[str, Any]) -> Account:
        account = self.access.writable_account(user_id, account_id)
        for key, value in changes.items():
            if key in _ACCOUNT_FIELDS and value is not None:
                setattr(account, key, value)
        return self.store.accounts.update(account)

    def delete_account(self, user_id: str, account_id: int) -> None:
        account = self.access.owned_account(user_id, account_id)
        account.is_deleted = True
        self.store.accounts.update(account)

    def share_account(self, user_id: str, account_id: int, target_user_id: str,
                      permission: SharePermission) -> Account:
        account = self.access.owned_account(user_id, account_id)
        if target_user_id == user_id:
            raise ValidationError("Cannot share an account with its owner")
        account.shares = [s for s in account.shares if s.user_id != target_user_id]
        account.shares.append(AccountShare(user_id=target_user_id, permission=permission))
        return self.store.accounts.update(account)

    def unshare_account(self, user_id: str, account_id: int, target_user_id: str) -> Account:
        account = self.access.owned_account(user_id, account_id)
        account.shares = [s for s in account.shares if s.user_id != target_user_id]
        return self.store.accounts.update(account)

    # Categories

    def _user_categories(self, user_id: str) -> list[Category]:
        return self.store.categories.find(lambda c: c.user_id == user_id and not c.is_deleted)

    def get_category(self, user_id: str, category_id: int) -> Category:
        category = self.store.categories.get(category_id)
        if category is None or category.user_id != user_id or category.is_deleted:
            raise NotFoundError.for_entity("Category", category_id)
        return category

    def _ensure_unique_category(self, user_id: str, name: str, exclude_id: int | None = None) -> None:
        wanted = name.strip().lower()
        if not wanted:
            raise ValidationError("Category name is required")
        for existing in self._user_categories(user_id):
            if existing.id != exclude_id and existing.name.strip().lower() == wanted:
                raise ValidationError(f"Category '{name}' already exists")

    def create_category(self, user_id: str, category: Category) -> Category:
        self._ensure_unique_category(user_id, category.name)
        category.user_id = user_id
        category.name = category.name.strip()
        return self.store.categories.add(category)

    def list_categories(self, user_id: str) -> list[Category]:
        return sorted(self._user_categories(user_id), key=lambda c: c.name.lower())

    def update_category(self, user_id: str, category_id: int, name: str | None = None,
                        category_type: Any = None) -> Category:
        category = self.get_category(user_id, category_id)
        if name is not None:
            self._ensure_unique_category(user_id, name, exclude_id=category_id)
            category.name = name.strip()
        if category_type is not None:
            category.type = category_type
        return self.store.categories.update(category)

    def delete_category(self, user_id: str, category_id: int) -> None:
        category = self.get_category(user_id, category_id)
        category.is_deleted = True
        self.store.categories.update(category)
        if self.learner is not None:
            self.learner.forget_category(user_id, category_id)

    # Transactions

    def create_transaction(self, user_id: str, txn: Transaction) -> Transaction:
        account = self.access.writable_account(user_id, txn.account_id)
        if not txn.description.strip():
            raise ValidationError("Description is required")
        if txn.category_id is not None:
            self.get_category(account.user_id, txn.category_id)
            txn.categorization_method = CategorizationMethod.MANUAL
            txn.categorized_at = utcnow()
            txn.is_reviewed = True
        txn.user_id = account.user_id
        return self.store.transactions.add(txn)

    def get_transaction(self, user_id: str, transaction_id: int) -> Transaction:
        return self.access.readable_transaction(user_id, transaction_id)

    def list_transactions(
        self,
        user_id: str,
        account_id: int | None = None,
        status: TransactionStatus | None = None,
        uncategorized: bool = False,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[Transaction]:
        if account_id is not None:
            account_ids = {self.access.readable_account(user_id, account_id).id}
        else:
            account_ids = self.access.readable_account_ids(user_id)
        txns = self.store.transactions.find(
            lambda t: t.account_id in account_ids
            and not t.is_deleted
            and (status is None or t.status == status)
            and (not uncategorized or t.category_id is None)
            and (start_date is None or t.transaction_date >= start_date)
            and (end_date is None or t.transaction_date <= end_date)
        )
        return sorted(txns, key=lambda t: (t.transaction_date, t.id or 0), reverse=True)

    def update_transaction(self, user_id: str, transaction_id: int, changes: dict[str, Any]) -> Transaction:
        txn = self.access.writable_transaction(user_id, transaction_id)
        for key, value in changes.items():
            if key in _TRANSACTION_FIELDS and value is not None:
                setattr(txn, key, value)
        if "amount" in changes and changes["amount"] is not None:
            txn.amount = Decimal(txn.amount)
        return self.store.transactions.update(txn)

    def categorize(self, user_id: str, transaction_id: int, category_id: int) -> Transaction:
        """Manual categorization; corrections feed back into rules, mappings and the ML models."""
        txn = self.access.writable_transaction(user_id, transaction_id)
        self.get_category(txn.user_id, category_id)

        corrected = txn.category_id is not None and txn.category_id != category_id
        if corrected and txn.categorization_rule_id is not None:
            rule = self.store.rules.get(txn.categorization_rule_id)
            if rule is not None:
                rule.correction_count += 1
                self.store.rules.update(rule)
        if corrected and txn.categorization_mapping_id is not None and self.mappings is not None:
            self.mappings.record_override(txn.user_id, txn.categorization_mapping_id, category_id)

        txn.category_id = category_id
        txn.is_reviewed = True
        txn.is_auto_categorized = False
        txn.categorization_method = CategorizationMethod.MANUAL
        txn.categorization_rule_id = None
        txn.categorization_mapping_id = None
        txn.categorized_at = utcnow()
        self.store.transactions.update(txn)

        if self.learner is not None:
            self.learner.learn(txn.user_id, txn.display_description, category_id)
        return txn

    def delete_transaction(self, user_id: str, transaction_id: int) -> None:
        txn = self.access.writable_transaction(user_id, transaction_id)
        txn.is_deleted = True
        txn.deleted_at = utcnow()
        self.store.transactions.update(txn)

    def bulk_delete(self, user_id: str, transaction_ids: list[int]) -> BulkDeleteResult:
        if not transaction_ids:
            raise ValidationError("No transaction ids supplied")

        requested = list(dict.fromkeys(transaction_ids))
        found = {
            t.id: t for t in self.store.transactions.get_many(requested)
            if t.user_id == user_id and not t.is_deleted
        }
        missing = [tid for tid in requested if tid not in found]

        now = utcnow()
        for txn in found.values():
            txn.is_deleted = True
            txn.deleted_at = now
            self.store.transactions.update(txn)

        if found:
            self.store.audit_logs.add(AuditLog(
                user_id=user_id,
                action="BulkDelete",
                entity="Transaction",
                details=f"Deleted {len(found)} transactions",
            ))

        errors = []
        if missing:
            errors.append(
                "Transactions not found or access denied: " + ", ".join(str(tid) for tid in missing)
            )
        logger.info("[TXN] Bulk delete for %s: %s deleted, %s missing.", user_id, len(found), len(missing))
        return BulkDeleteResult(success=not missing, transactions_deleted=len(found), errors=errors)
