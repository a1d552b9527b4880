from collections import Counter
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from ledgerflow.core import settings
from ledgerflow.errors import NotFoundError, ValidationError
from ledgerflow.integration.akahu import AkahuClient
from ledgerflow.logger import get_logger
from ledgerflow.models import (
    AuditLog,
    BankConnection,
    BankTransaction,
    CategorizationMethod,
    ConnectionStatus,
    MatchMethod,
    Reconciliation,
    ReconciliationItem,
    ReconciliationItemType,
    ReconciliationStatus,
    Transaction,
    TransactionSource,
    TransactionStatus,
    utcnow,
)
from ledgerflow.reconciliation.matcher import (
    EXACT_MATCH_THRESHOLD,
    find_matches,
    match_confidence,
    normalize_description,
)
from ledgerflow.services.access import AccountAccess
from ledgerflow.services.bank_mapping import DEFAULT_PROVIDER, BankCategoryMappingService
from ledgerflow.storage.repositories import Store

logger = get_logger(__name__)

DEFAULT_BULK_APPROVE_CONFIDENCE = 0.95
REVIEWED_MAPPING_CONFIDENCE = 0.9
BANK_RECONCILIATION_NOTE = "Reconciliation from Akahu bank data"
_EDITABLE_FIELDS = {"statement_end_date", "statement_balance", "notes"}


class ItemFilters(BaseModel):
    item_type: ReconciliationItemType | None = None
    match_method: MatchMethod | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    start_date: date | None = None
    end_date: date | None = None
    search: str | None = None


class ItemView(BaseModel):
    item: ReconciliationItem
    transaction: Transaction | None = None


class ReconciliationSummary(BaseModel):
    total_items: int = 0
    exact_count: int = 0
    fuzzy_count: int = 0
    unmatched_bank_count: int = 0
    unmatched_app_count: int = 0
    approved_count: int = 0
    match_percentage: float = 0.0


class ReconciliationDetails(BaseModel):
    reconciliation: Reconciliation
    summary: ReconciliationSummary
    exact_matches: list[ItemView] = Field(default_factory=list)
    fuzzy_matches: list[ItemView] = Field(default_factory=list)
    unmatched_bank: list[ItemView] = Field(default_factory=list)
    unmatched_app: list[ItemView] = Field(default_factory=list)


class AutoMatchResult(BaseModel):
    matched: int = 0
    exact: int = 0
    fuzzy: int = 0
    unmatched_bank: int = 0
    unmatched_app: int = 0


class BulkApproveResult(BaseModel):
    success: bool = True
    approved: int = 0
    enriched: int = 0
    categorized: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    recategorize_transaction_ids: list[int] = Field(default_factory=list)


class ImportResult(BaseModel):
    success: bool = True
    imported: int = 0
    linked: int = 0
    categorized: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    transaction_ids: list[int] = Field(default_factory=list)


class UnlinkResult(BaseModel):
    unmatched_app_item: ReconciliationItem | None = None
    unmatched_bank_item: ReconciliationItem | None = None


class BankReconciliationResult(BaseModel):
    reconciliation: Reconciliation
    bank_transaction_count: int = 0
    match: AutoMatchResult


def _bank_payload(bank: BankTransaction) -> dict:
    return bank.model_dump(mode="json")


def _line_key(bank: BankTransaction) -> tuple:
    """Identity of a statement line: the provider id when present, else its content."""
    if bank.external_id:
        return ("id", bank.external_id)
    return (
        "line",
        bank.transaction_date,
        Decimal(bank.amount).quantize(Decimal("0.01")),
        normalize_description(bank.description),
    )


def _day_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end, time.max, tzinfo=timezone.utc),
    )


class ReconciliationService:
    def __init__(
        self,
        store: Store,
        access: AccountAccess,
        mappings: BankCategoryMappingService,
        min_confidence: float | None = None,
        amount_tolerance: Decimal | None = None,
        bank_client: AkahuClient | None = None,
    ) -> None:
        self.store = store
        self.access = access
        self.mappings = mappings
        self.bank_client = bank_client
        self.window_days = settings.get_env_int(
            "RECONCILIATION_WINDOW_DAYS", settings.DEFAULT_RECONCILIATION_WINDOW_DAYS, min_value=0
        )
        self.min_confidence = (
            min_confidence
            if min_confidence is not None
            else settings.get_env_float(
                "RECONCILIATION_MIN_CONFIDENCE", settings.DEFAULT_RECONCILIATION_MIN_CONFIDENCE
            )
        )
        self.amount_tolerance = (
            amount_tolerance
            if amount_tolerance is not None
            else Decimal(str(settings.get_env_float(
                "RECONCILIATION_AMOUNT_TOLERANCE", settings.DEFAULT_RECONCILIATION_AMOUNT_TOLERANCE
            )))
        )

    # Lookup helpers

    def get(self, user_id: str, reconciliation_id: int) -> Reconciliation:
        reconciliation = self.store.reconciliations.get(reconciliation_id)
        if reconciliation is None or reconciliation.user_id != user_id:
            raise NotFoundError.for_entity("Reconciliation", reconciliation_id)
        return reconciliation

    def _open(self, user_id: str, reconciliation_id: int) -> Reconciliation:
        reconciliation = self.get(user_id, reconciliation_id)
        if reconciliation.status == ReconciliationStatus.COMPLETED:
            raise ValidationError(f"Reconciliation {reconciliation_id} is already completed")
        return reconciliation

    def _item(self, user_id: str, item_id: int) -> tuple[Reconciliation, ReconciliationItem]:
        item = self.store.reconciliation_items.get(item_id)
        if item is None:
            raise NotFoundError.for_entity("Reconciliation item", item_id)
        reconciliation = self.get(user_id, item.reconciliation_id)
        return reconciliation, item

    def _provider(self, account_id: int) -> str:
        connections: list[BankConnection] = self.store.connections.find(
            lambda c: c.account_id == account_id and c.status == ConnectionStatus.ACTIVE
        )
        return connections[0].provider if connections else DEFAULT_PROVIDER

    def _linked_transaction_ids(self, reconciliation_id: int) -> set[int]:
        return {
            i.transaction_id for i in self.store.reconciliation_items.for_reconciliation(reconciliation_id)
            if i.item_type == ReconciliationItemType.MATCHED and i.transaction_id is not None
        }

    # Lifecycle

    def create(
        self,
        user_id: str,
        account_id: int,
        statement_start_date: date,
        statement_end_date: date,
        statement_balance: Decimal,
        notes: str | None = None,
        bank_balance: Decimal | None = None,
    ) -> Reconciliation:
        self.access.writable_account(user_id, account_id)
        if statement_end_date < statement_start_date:
            raise ValidationError("Statement end date must not precede its start date")
        reconciliation = self.store.reconciliations.add(Reconciliation(
            user_id=user_id,
            account_id=account_id,
            statement_start_date=statement_start_date,
            statement_end_date=statement_end_date,
            statement_balance=statement_balance,
            bank_balance=bank_balance,
            notes=notes,
        ))
        logger.info("[RECON] Created reconciliation %s for account %s.", reconciliation.id, account_id)
        return reconciliation

    async def create_from_bank(
        self,
        user_id: str,
        account_id: int,
        statement_start_date: date,
        statement_end_date: date,
        statement_balance: Decimal | None = None,
        notes: str | None = None,
    ) -> BankReconciliationResult:
        """
        Start a reconciliation from the account's bank connection.

        Statement lines for the period are fetched from the provider and
        matched straight away. Without an explicit statement balance the
        provider's current balance is used, falling back to the ledger
        balance of the account.
        """
        account = self.access.writable_account(user_id, account_id)
        if statement_end_date < statement_start_date:
            raise ValidationError("Statement end date must not precede its start date")
        if self.bank_client is None:
            raise ValidationError("Bank provider is not available")
        connections: list[BankConnection] = self.store.connections.find(
            lambda c: c.account_id == account.id and c.status != ConnectionStatus.DISCONNECTED
        )
        if not connections:
            raise ValidationError(f"No bank connection found for account {account.id}")
        connection = connections[0]
        if connection.provider.lower() != DEFAULT_PROVIDER:
            raise ValidationError(f"Bank connection uses provider '{connection.provider}', not {DEFAULT_PROVIDER}")
        if not connection.access_token:
            raise ValidationError(f"Bank connection {connection.id} has no access token")

        start, end = _day_bounds(statement_start_date, statement_end_date)
        fetched = await self.bank_client.get_transactions(
            connection.access_token,
            connection.external_account_id,
            start=start,
            end=end,
        )
        bank_lines = [b for b in fetched if statement_start_date <= b.transaction_date <= statement_end_date]
        bank_balance = await self.bank_client.get_balance(connection.access_token, connection.external_account_id)
        logger.info(
            "[RECON] Fetched %s bank transactions for account %s (%s to %s).",
            len(bank_lines),
            account.id,
            statement_start_date,
            statement_end_date,
        )

        if statement_balance is None:
            statement_balance = bank_balance if bank_balance is not None else self._ledger_balance(account.id)
        reconciliation = self.create(
            user_id,
            account.id,
            statement_start_date,
            statement_end_date,
            statement_balance,
            notes=notes or BANK_RECONCILIATION_NOTE,
            bank_balance=bank_balance,
        )
        match = self._match(reconciliation, bank_lines)
        return BankReconciliationResult(
            reconciliation=reconciliation,
            bank_transaction_count=len(bank_lines),
            match=match,
        )

    def _ledger_balance(self, account_id: int) -> Decimal:
        txns = self.store.transactions.find(
            lambda t: t.account_id == account_id and not t.is_deleted and t.status != TransactionStatus.CANCELLED
        )
        return sum((t.amount for t in txns), Decimal("0"))

    def update(self, user_id: str, reconciliation_id: int, changes: dict[str, Any]) -> Reconciliation:
        reconciliation = self._open(user_id, reconciliation_id)
        edits = {k: v for k, v in changes.items() if k in _EDITABLE_FIELDS}
        for key, value in edits.items():
            if value is None and key != "notes":
                raise ValidationError(f"{key} cannot be cleared")
        updated = reconciliation.model_copy(update=edits)
        if updated.statement_end_date < updated.statement_start_date:
            raise ValidationError("Statement end date must not precede its start date")

        before = {k: str(getattr(reconciliation, k)) for k in sorted(_EDITABLE_FIELDS)}
        after = {k: str(getattr(updated, k)) for k in sorted(_EDITABLE_FIELDS)}
        self.store.reconciliations.update(updated)
        self.store.audit_logs.add(AuditLog(
            user_id=user_id,
            action="UpdateReconciliation",
            entity="Reconciliation",
            entity_id=updated.id,
            details=f"before={before}, after={after}",
        ))
        return updated

    def list_reconciliations(self, user_id: str, account_id: int | None = None) -> list[Reconciliation]:
        items = self.store.reconciliations.find(
            lambda r: r.user_id == user_id and (account_id is None or r.account_id == account_id)
        )
        return sorted(items, key=lambda r: r.created_at, reverse=True)

    def delete(self, user_id: str, reconciliation_id: int) -> None:
        reconciliation = self._open(user_id, reconciliation_id)
        for item in self.store.reconciliation_items.for_reconciliation(reconciliation.id):
            self.store.reconciliation_items.remove(item.id)
        self.store.reconciliations.remove(reconciliation.id)

    # Matching

    def auto_match(self, user_id: str, reconciliation_id: int, bank_lines: list[BankTransaction]) -> AutoMatchResult:
        """Score a statement against the account's transactions and record the items."""
        reconciliation = self._open(user_id, reconciliation_id)
        if not bank_lines:
            raise ValidationError("No bank transactions supplied")
        return self._match(reconciliation, bank_lines)

    def _match(self, reconciliation: Reconciliation, statement: list[BankTransaction]) -> AutoMatchResult:
        # Re-running replaces earlier automatic results; approved and manual items stay.
        kept: list[ReconciliationItem] = []
        for item in self.store.reconciliation_items.for_reconciliation(reconciliation.id):
            if item.is_approved or item.match_method == MatchMethod.MANUAL:
                kept.append(item)
            else:
                self.store.reconciliation_items.remove(item.id)
        claimed = {i.transaction_id for i in kept if i.transaction_id is not None}
        covered = Counter(_line_key(i.bank_line) for i in kept if i.bank_transaction)
        bank_lines: list[BankTransaction] = []
        for bank in statement:
            key = _line_key(bank)
            if covered[key] > 0:
                covered[key] -= 1
                continue
            bank_lines.append(bank)

        window_start = reconciliation.statement_start_date - timedelta(days=self.window_days)
        window_end = reconciliation.statement_end_date + timedelta(days=self.window_days)
        candidates = self.store.transactions.find(
            lambda t: t.account_id == reconciliation.account_id
            and not t.is_deleted
            and t.id not in claimed
            and t.status != TransactionStatus.CANCELLED
            and window_start <= t.transaction_date <= window_end
        )

        outcome = find_matches(bank_lines, candidates, self.min_confidence, self.amount_tolerance)
        result = AutoMatchResult()
        for pair in outcome.matches:
            self.store.reconciliation_items.add(ReconciliationItem(
                reconciliation_id=reconciliation.id,
                item_type=ReconciliationItemType.MATCHED,
                transaction_id=pair.transaction.id,
                bank_transaction=_bank_payload(bank_lines[pair.bank_index]),
                match_confidence=pair.confidence,
                match_method=pair.method,
            ))
            if pair.method == MatchMethod.EXACT:
                result.exact += 1
            else:
                result.fuzzy += 1
        for index in outcome.unmatched_bank:
            self.store.reconciliation_items.add(ReconciliationItem(
                reconciliation_id=reconciliation.id,
                item_type=ReconciliationItemType.UNMATCHED_BANK,
                bank_transaction=_bank_payload(bank_lines[index]),
            ))
        # Only in-period transactions count as missing from the statement.
        in_period = [
            t for t in outcome.unmatched_system
            if reconciliation.statement_start_date <= t.transaction_date <= reconciliation.statement_end_date
        ]
        for txn in in_period:
            self.store.reconciliation_items.add(ReconciliationItem(
                reconciliation_id=reconciliation.id,
                item_type=ReconciliationItemType.UNMATCHED_APP,
                transaction_id=txn.id,
            ))

        result.matched = len(outcome.matches)
        result.unmatched_bank = len(outcome.unmatched_bank)
        result.unmatched_app = len(in_period)
        logger.info(
            "[RECON] Reconciliation %s: %s exact, %s fuzzy, %s unmatched bank, %s unmatched app.",
            reconciliation.id,
            result.exact,
            result.fuzzy,
            result.unmatched_bank,
            result.unmatched_app,
        )
        return result

    def details(self, user_id: str, reconciliation_id: int, filters: ItemFilters | None = None) -> ReconciliationDetails:
        reconciliation = self.get(user_id, reconciliation_id)
        filters = filters or ItemFilters()
        items = self.store.reconciliation_items.for_reconciliation(reconciliation.id)
        views = [
            ItemView(
                item=item,
                transaction=self.store.transactions.get(item.transaction_id) if item.transaction_id else None,
            )
            for item in sorted(items, key=lambda i: i.id or 0)
        ]

        summary = self._summarize(items)
        details = ReconciliationDetails(reconciliation=reconciliation, summary=summary)
        for view in views:
            if not self._passes(view, filters):
                continue
            item = view.item
            if item.item_type == ReconciliationItemType.MATCHED:
                if (item.match_confidence or 0.0) >= EXACT_MATCH_THRESHOLD:
                    details.exact_matches.append(view)
                else:
                    details.fuzzy_matches.append(view)
            elif item.item_type == ReconciliationItemType.UNMATCHED_BANK:
                details.unmatched_bank.append(view)
            else:
                details.unmatched_app.append(view)
        return details

    @staticmethod
    def _summarize(items: list[ReconciliationItem]) -> ReconciliationSummary:
        summary = ReconciliationSummary(total_items=len(items))
        for item in items:
            if item.item_type == ReconciliationItemType.MATCHED:
                if (item.match_confidence or 0.0) >= EXACT_MATCH_THRESHOLD:
                    summary.exact_count += 1
                else:
                    summary.fuzzy_count += 1
            elif item.item_type == ReconciliationItemType.UNMATCHED_BANK:
                summary.unmatched_bank_count += 1
            else:
                summary.unmatched_app_count += 1
            if item.is_approved:
                summary.approved_count += 1
        if items:
            matched = summary.exact_count + summary.fuzzy_count
            summary.match_percentage = round(matched / len(items) * 100, 2)
        return summary

    @staticmethod
    def _passes(view: ItemView, filters: ItemFilters) -> bool:
        item = view.item
        bank = item.bank_line
        txn = view.transaction
        if filters.item_type is not None and item.item_type != filters.item_type:
            return False
        if filters.match_method is not None and item.match_method != filters.match_method:
            return False

        amount = abs(bank.amount) if bank else abs(txn.amount) if txn else None
        if filters.min_amount is not None and (amount is None or amount < filters.min_amount):
            return False
        if filters.max_amount is not None and (amount is None or amount > filters.max_amount):
            return False

        when = bank.transaction_date if bank else txn.transaction_date if txn else None
        if filters.start_date is not None and (when is None or when < filters.start_date):
            return False
        if filters.end_date is not None and (when is None or when > filters.end_date):
            return False

        if filters.search:
            needle = filters.search.lower()
            haystack = " ".join(filter(None, [
                bank.description if bank else None,
                bank.merchant_name if bank else None,
                txn.description if txn else None,
                txn.user_description if txn else None,
            ])).lower()
            if needle not in haystack:
                return False
        return True

    def manual_match(
        self,
        user_id: str,
        reconciliation_id: int,
        transaction_id: int | None = None,
        bank_transaction: BankTransaction | None = None,
    ) -> ReconciliationItem:
        reconciliation = self._open(user_id, reconciliation_id)
        if transaction_id is None and bank_transaction is None:
            raise ValidationError("Either a transaction or a bank transaction is required")

        txn = None
        if transaction_id is not None:
            txn = self.access.writable_transaction(user_id, transaction_id)
            if txn.account_id != reconciliation.account_id:
                raise ValidationError(f"Transaction {transaction_id} belongs to a different account")
            if transaction_id in self._linked_transaction_ids(reconciliation.id):
                raise ValidationError(f"Transaction {transaction_id} is already matched")

        if txn is not None and bank_transaction is not None:
            item_type = ReconciliationItemType.MATCHED
            confidence = match_confidence(bank_transaction, txn)
        elif txn is not None:
            item_type = ReconciliationItemType.UNMATCHED_APP
            confidence = None
        else:
            item_type = ReconciliationItemType.UNMATCHED_BANK
            confidence = None

        # A manual decision replaces the unmatched placeholders for the same transaction and bank line.
        existing_items = self.store.reconciliation_items.for_reconciliation(reconciliation.id)
        bank_placeholder = None
        if bank_transaction is not None:
            key = _line_key(bank_transaction)
            same_line = [i for i in existing_items if i.bank_transaction and _line_key(i.bank_line) == key]
            bank_placeholder = next(
                (i for i in same_line if i.item_type == ReconciliationItemType.UNMATCHED_BANK), None
            )
            if bank_placeholder is None and any(i.item_type == ReconciliationItemType.MATCHED for i in same_line):
                raise ValidationError("Bank transaction is already matched")
        if bank_placeholder is not None:
            self.store.reconciliation_items.remove(bank_placeholder.id)
        if txn is not None:
            for existing in existing_items:
                if existing.transaction_id == txn.id and existing.item_type == ReconciliationItemType.UNMATCHED_APP:
                    self.store.reconciliation_items.remove(existing.id)

        return self.store.reconciliation_items.add(ReconciliationItem(
            reconciliation_id=reconciliation.id,
            item_type=item_type,
            transaction_id=txn.id if txn else None,
            bank_transaction=_bank_payload(bank_transaction) if bank_transaction else None,
            match_confidence=confidence,
            match_method=MatchMethod.MANUAL,
        ))

    def unlink(self, user_id: str, item_id: int) -> UnlinkResult:
        reconciliation, item = self._item(user_id, item_id)
        if reconciliation.status == ReconciliationStatus.COMPLETED:
            raise ValidationError(f"Reconciliation {reconciliation.id} is already completed")
        if item.item_type != ReconciliationItemType.MATCHED:
            raise ValidationError(f"Item {item_id} is not a matched item")

        self.store.reconciliation_items.remove(item.id)
        if item.is_approved and item.transaction_id is not None:
            txn = self.store.transactions.get(item.transaction_id)
            if txn is not None and txn.status == TransactionStatus.RECONCILED:
                txn.status = TransactionStatus.CLEARED
                self.store.transactions.update(txn)
        result = UnlinkResult()
        if item.transaction_id is not None:
            result.unmatched_app_item = self.store.reconciliation_items.add(ReconciliationItem(
                reconciliation_id=reconciliation.id,
                item_type=ReconciliationItemType.UNMATCHED_APP,
                transaction_id=item.transaction_id,
            ))
        if item.bank_transaction:
            result.unmatched_bank_item = self.store.reconciliation_items.add(ReconciliationItem(
                reconciliation_id=reconciliation.id,
                item_type=ReconciliationItemType.UNMATCHED_BANK,
                bank_transaction=item.bank_transaction,
            ))
        return result

    # Bulk operations

    def _categorize_from_bank(self, user_id: str, txn: Transaction, bank_category: str | None, provider: str) -> bool:
        if txn.is_categorized or not bank_category:
            return False
        resolution = self.mappings.lookup(user_id, bank_category, provider)
        if resolution is None or not resolution.is_usable:
            return False
        txn.category_id = resolution.category_id
        txn.is_auto_categorized = True
        txn.categorization_method = CategorizationMethod.BANK_CATEGORY
        txn.categorization_mapping_id = resolution.mapping_id
        txn.categorized_at = utcnow()
        self.mappings.record_application(resolution.mapping_id)
        return True

    def bulk_approve(
        self,
        user_id: str,
        reconciliation_id: int,
        min_confidence: float | None = None,
        item_ids: Iterable[int] | None = None,
    ) -> BulkApproveResult:
        reconciliation = self._open(user_id, reconciliation_id)
        threshold = DEFAULT_BULK_APPROVE_CONFIDENCE if min_confidence is None else min_confidence
        requested = set(item_ids) if item_ids else None
        provider = self._provider(reconciliation.account_id)

        result = BulkApproveResult()
        items = self.store.reconciliation_items.for_reconciliation(reconciliation.id)
        if requested is not None:
            unknown = requested - {i.id for i in items}
            for item_id in sorted(unknown):
                result.skipped += 1
                result.errors.append(f"Item {item_id} not found in reconciliation {reconciliation.id}")

        for item in items:
            if requested is not None:
                if item.id not in requested:
                    continue
            elif (item.match_confidence or 0.0) < threshold:
                continue
            if (
                item.item_type != ReconciliationItemType.MATCHED
                or item.is_approved
                or item.transaction_id is None
            ):
                if requested is not None:
                    result.skipped += 1
                continue

            txn = self.store.transactions.get(item.transaction_id)
            if txn is None or txn.is_deleted:
                result.skipped += 1
                result.errors.append(f"Transaction {item.transaction_id} for item {item.id} no longer exists")
                continue

            bank = item.bank_line
            enriched = False
            if bank is not None:
                if not txn.external_id and bank.external_id:
                    txn.external_id = bank.external_id
                    enriched = True
                if not txn.reference_number and bank.reference:
                    txn.reference_number = bank.reference
                    enriched = True
                if not txn.bank_category and bank.category:
                    txn.bank_category = bank.category
                    enriched = True
            if enriched:
                result.enriched += 1
            if self._categorize_from_bank(user_id, txn, txn.bank_category, provider):
                result.categorized += 1

            txn.status = TransactionStatus.RECONCILED
            self.store.transactions.update(txn)
            item.is_approved = True
            self.store.reconciliation_items.update(item)
            result.approved += 1
            if not txn.is_categorized:
                result.recategorize_transaction_ids.append(txn.id)

        result.success = not result.errors
        logger.info(
            "[RECON] Bulk approve on %s: %s approved, %s enriched, %s categorized, %s skipped.",
            reconciliation.id,
            result.approved,
            result.enriched,
            result.categorized,
            result.skipped,
        )
        return result

    async def import_unmatched(
        self,
        user_id: str,
        reconciliation_id: int,
        item_ids: Iterable[int] | None = None,
        import_all: bool = False,
    ) -> ImportResult:
        """Turn unmatched bank lines into transactions, linking to existing ones by external id."""
        reconciliation = self._open(user_id, reconciliation_id)
        requested = set(item_ids) if item_ids else None
        if not import_all and not requested:
            raise ValidationError("No items specified for import")
        account = self.access.writable_account(user_id, reconciliation.account_id)
        provider = self._provider(account.id)

        items = [
            i for i in self.store.reconciliation_items.for_reconciliation(reconciliation.id)
            if i.item_type == ReconciliationItemType.UNMATCHED_BANK
            and (requested is None or i.id in requested)
        ]
        result = ImportResult()
        if requested is not None:
            missing = requested - {i.id for i in items}
            for item_id in sorted(missing):
                result.skipped += 1
                result.errors.append(f"Item {item_id} is not an unmatched bank item")

        bank_lines = {item.id: item.bank_line for item in items}
        names = sorted({b.category for b in bank_lines.values() if b is not None and b.category})
        resolutions = {}
        if names:
            resolved = await self.mappings.resolve_and_create_mappings(account.user_id, names, provider)
            resolutions = {name.strip().lower(): res for name, res in resolved.items()}

        for item in items:
            bank = bank_lines[item.id]
            if item.transaction_id is not None or bank is None:
                result.skipped += 1
                continue

            existing = None
            if bank.external_id:
                existing = self.store.transactions.find_by_external_id(account.id, bank.external_id)
            if existing is not None:
                txn = existing
                result.linked += 1
            else:
                txn = Transaction(
                    user_id=account.user_id,
                    account_id=account.id,
                    amount=bank.amount,
                    transaction_date=bank.transaction_date,
                    description=bank.display_description,
                    status=TransactionStatus.CLEARED,
                    source=TransactionSource.BANK_API,
                    bank_category=bank.category,
                    external_id=bank.external_id,
                    reference_number=bank.reference,
                )
                resolution = resolutions.get(bank.category.strip().lower()) if bank.category else None
                if resolution is not None and resolution.is_usable:
                    txn.category_id = resolution.category_id
                    txn.is_auto_categorized = True
                    txn.categorization_method = CategorizationMethod.BANK_CATEGORY
                    txn.categorization_mapping_id = resolution.mapping_id
                    txn.categorized_at = utcnow()
                    txn.is_reviewed = resolution.confidence >= REVIEWED_MAPPING_CONFIDENCE
                    self.mappings.record_application(resolution.mapping_id)
                    result.categorized += 1
                txn = self.store.transactions.add(txn)
                result.imported += 1

            item.item_type = ReconciliationItemType.MATCHED
            item.transaction_id = txn.id
            item.match_method = MatchMethod.MANUAL
            item.match_confidence = 1.0
            self.store.reconciliation_items.update(item)
            result.transaction_ids.append(txn.id)

        result.success = not result.errors
        logger.info(
            "[RECON] Import on %s: %s imported, %s linked, %s skipped.",
            reconciliation.id,
            result.imported,
            result.linked,
            result.skipped,
        )
        return result

    def finalize(self, user_id: str, reconciliation_id: int, force: bool = False) -> Reconciliation:
        reconciliation = self.get(user_id, reconciliation_id)
        if reconciliation.status == ReconciliationStatus.COMPLETED:
            raise ValidationError(f"Reconciliation {reconciliation_id} is already completed")
        account = self.access.writable_account(user_id, reconciliation.account_id)

        items = self.store.reconciliation_items.for_reconciliation(reconciliation.id)
        unmatched = [i for i in items if i.item_type != ReconciliationItemType.MATCHED]
        tolerance = settings.get_env_float(
            "FINALIZE_UNMATCHED_TOLERANCE", settings.DEFAULT_FINALIZE_UNMATCHED_TOLERANCE
        )
        if not force and unmatched and len(unmatched) / len(items) > tolerance:
            raise ValidationError(
                f"{len(unmatched)} of {len(items)} items are unmatched; resolve them or force finalize"
            )

        for item in items:
            if item.item_type != ReconciliationItemType.MATCHED or item.transaction_id is None:
                continue
            txn = self.store.transactions.get(item.transaction_id)
            if txn is not None and not txn.is_deleted:
                txn.status = TransactionStatus.RECONCILED
                self.store.transactions.update(txn)

        reconciliation.status = ReconciliationStatus.COMPLETED
        reconciliation.completed_at = utcnow()
        self.store.reconciliations.update(reconciliation)

        account.last_reconciled_date = reconciliation.statement_end_date
        account.last_reconciled_balance = reconciliation.statement_balance
        self.store.accounts.update(account)

        self.store.audit_logs.add(AuditLog(
            user_id=user_id,
            action="FinalizeReconciliation",
            entity="Reconciliation",
            entity_id=reconciliation.id,
            details=f"forced={force}, unmatched={len(unmatched)}, items={len(items)}",
        ))
        logger.info("[RECON] Finalized reconciliation %s (forced=%s).", reconciliation.id, force)
        return reconciliation
