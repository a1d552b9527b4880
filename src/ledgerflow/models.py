from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountType(StrEnum):
    CHECKING = "Checking"
    SAVINGS = "Savings"
    CREDIT = "Credit"
    INVESTMENT = "Investment"
    LOAN = "Loan"
    CASH = "Cash"
    OTHER = "Other"


class SharePermission(StrEnum):
    VIEWER = "Viewer"
    EDITOR = "Editor"


class CategoryType(StrEnum):
    INCOME = "Income"
    EXPENSE = "Expense"
    TRANSFER = "Transfer"


class TransactionStatus(StrEnum):
    PENDING = "Pending"
    CLEARED = "Cleared"
    RECONCILED = "Reconciled"
    CANCELLED = "Cancelled"


class TransactionSource(StrEnum):
    MANUAL = "Manual"
    CSV_IMPORT = "CsvImport"
    BANK_API = "BankApi"
    OFX_IMPORT = "OfxImport"
    IMPORT = "Import"


class RuleMatchType(StrEnum):
    CONTAINS = "Contains"
    STARTS_WITH = "StartsWith"
    ENDS_WITH = "EndsWith"
    EQUALS = "Equals"
    REGEX = "Regex"


class ConditionLogic(StrEnum):
    ALL = "All"
    ANY = "Any"


class RuleField(StrEnum):
    DESCRIPTION = "Description"
    USER_DESCRIPTION = "UserDescription"
    AMOUNT = "Amount"
    ACCOUNT_TYPE = "AccountType"
    ACCOUNT_NAME = "AccountName"
    TRANSACTION_TYPE = "TransactionType"
    REFERENCE_NUMBER = "ReferenceNumber"
    NOTES = "Notes"


class RuleOperator(StrEnum):
    EQUALS = "Equals"
    NOT_EQUALS = "NotEquals"
    CONTAINS = "Contains"
    NOT_CONTAINS = "NotContains"
    STARTS_WITH = "StartsWith"
    ENDS_WITH = "EndsWith"
    GREATER_THAN = "GreaterThan"
    LESS_THAN = "LessThan"
    GREATER_THAN_OR_EQUAL = "GreaterThanOrEqual"
    LESS_THAN_OR_EQUAL = "LessThanOrEqual"
    REGEX = "Regex"


class CategorizationMethod(StrEnum):
    RULE = "Rule"
    BANK_CATEGORY = "BankCategory"
    ML = "ML"
    LLM = "LLM"
    MANUAL = "Manual"


class CandidateStatus(StrEnum):
    PENDING = "Pending"
    APPLIED = "Applied"
    REJECTED = "Rejected"


class MappingSource(StrEnum):
    AI = "AI"
    USER = "User"
    LEARNED = "Learned"


class ReconciliationStatus(StrEnum):
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


class ReconciliationItemType(StrEnum):
    MATCHED = "Matched"
    UNMATCHED_APP = "UnmatchedApp"
    UNMATCHED_BANK = "UnmatchedBank"


class MatchMethod(StrEnum):
    EXACT = "Exact"
    FUZZY = "Fuzzy"
    MANUAL = "Manual"


class ConnectionStatus(StrEnum):
    ACTIVE = "Active"
    DISCONNECTED = "Disconnected"
    ERROR = "Error"


class SyncStatus(StrEnum):
    SUCCESS = "Success"
    FAILED = "Failed"


class AccountShare(BaseModel):
    user_id: str
    permission: SharePermission = SharePermission.VIEWER


class Account(BaseModel):
    id: int | None = None
    user_id: str
    name: str
    account_type: AccountType = AccountType.CHECKING
    currency: str = "NZD"
    balance: Decimal = Decimal("0")
    last_reconciled_date: date | None = None
    last_reconciled_balance: Decimal | None = None
    shares: list[AccountShare] = Field(default_factory=list)
    is_deleted: bool = False


class Category(BaseModel):
    id: int | None = None
    user_id: str
    name: str
    type: CategoryType = CategoryType.EXPENSE
    is_deleted: bool = False


class Transaction(BaseModel):
    id: int | None = None
    user_id: str
    account_id: int
    amount: Decimal
    transaction_date: date
    description: str
    user_description: str | None = None
    category_id: int | None = None
    status: TransactionStatus = TransactionStatus.CLEARED
    source: TransactionSource = TransactionSource.MANUAL
    bank_category: str | None = None
    external_id: str | None = None
    reference_number: str | None = None
    transaction_type: str | None = None
    notes: str | None = None
    is_reviewed: bool = False
    is_auto_categorized: bool = False
    categorization_method: CategorizationMethod | None = None
    categorization_rule_id: int | None = None
    categorization_mapping_id: int | None = None
    categorized_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None

    @property
    def display_description(self) -> str:
        if self.user_description and self.user_description.strip():
            return self.user_description
        return self.description

    @property
    def is_categorized(self) -> bool:
        return self.category_id is not None


class RuleCondition(BaseModel):
    id: int | None = None
    field: RuleField
    operator: RuleOperator
    value: str
    is_case_sensitive: bool = False
    is_active: bool = True


class CategorizationRule(BaseModel):
    id: int | None = None
    user_id: str
    name: str
    pattern: str = ""
    match_type: RuleMatchType = RuleMatchType.CONTAINS
    is_case_sensitive: bool = False
    category_id: int
    priority: int = 100
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    account_types: str | None = None
    condition_logic: ConditionLogic = ConditionLogic.ALL
    conditions: list[RuleCondition] = Field(default_factory=list)
    confidence_score: float | None = None
    match_count: int = 0
    correction_count: int = 0
    last_matched_at: datetime | None = None
    is_active: bool = True
    is_deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def active_conditions(self) -> list[RuleCondition]:
        return [condition for condition in self.conditions if condition.is_active]

    @property
    def accuracy_rate(self) -> float:
        total = self.match_count + self.correction_count
        if total == 0:
            return 1.0
        return self.match_count / total


class CategorizationCandidate(BaseModel):
    id: int | None = None
    user_id: str
    transaction_id: int
    category_id: int
    method: CategorizationMethod
    confidence: float
    status: CandidateStatus = CandidateStatus.PENDING
    rule_id: int | None = None
    mapping_id: int | None = None
    reasoning: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None


class BankCategoryMapping(BaseModel):
    id: int | None = None
    user_id: str
    provider: str = "akahu"
    bank_category_name: str
    normalized_name: str
    category_id: int
    confidence: float = 1.0
    source: MappingSource = MappingSource.USER
    is_excluded: bool = False
    is_active: bool = True
    application_count: int = 0
    override_count: int = 0
    last_applied_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class BankTransaction(BaseModel):
    """A statement line as reported by the bank."""

    external_id: str | None = None
    transaction_date: date
    amount: Decimal
    description: str = ""
    merchant_name: str | None = None
    reference: str | None = None
    category: str | None = None

    @property
    def display_description(self) -> str:
        return self.merchant_name or self.description or "Unknown"


class ReconciliationItem(BaseModel):
    id: int | None = None
    reconciliation_id: int
    item_type: ReconciliationItemType
    transaction_id: int | None = None
    bank_transaction: dict[str, Any] | None = None
    match_confidence: float | None = None
    match_method: MatchMethod | None = None
    is_approved: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def bank_line(self) -> BankTransaction | None:
        if not self.bank_transaction:
            return None
        return BankTransaction.model_validate(self.bank_transaction)


class Reconciliation(BaseModel):
    id: int | None = None
    user_id: str
    account_id: int
    statement_start_date: date
    statement_end_date: date
    statement_balance: Decimal
    bank_balance: Decimal | None = None
    notes: str | None = None
    status: ReconciliationStatus = ReconciliationStatus.IN_PROGRESS
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class BankConnection(BaseModel):
    id: int | None = None
    user_id: str
    provider: str = "akahu"
    account_id: int
    external_account_id: str
    access_token: str | None = Field(default=None, exclude=True)
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class BankSyncLog(BaseModel):
    id: int | None = None
    connection_id: int
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    status: SyncStatus = SyncStatus.SUCCESS
    imported_count: int = 0
    skipped_count: int = 0
    error_message: str | None = None


class Budget(BaseModel):
    id: int | None = None
    user_id: str
    name: str
    category_id: int
    amount: Decimal
    period_start: date
    period_end: date


class Goal(BaseModel):
    id: int | None = None
    user_id: str
    name: str
    target_amount: Decimal
    current_amount: Decimal = Decimal("0")
    target_date: date | None = None
    is_completed: bool = False


class AuditLog(BaseModel):
    id: int | None = None
    user_id: str
    action: str
    entity: str
    entity_id: int | None = None
    details: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
