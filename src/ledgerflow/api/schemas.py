from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field

from ledgerflow.models import (
    AccountType,
    BankTransaction,
    CategoryType,
    ConditionLogic,
    RuleCondition,
    RuleMatchType,
    SharePermission,
    TransactionStatus,
)


class AccountCreate(BaseModel):
    name: str
    account_type: AccountType = AccountType.CHECKING
    currency: str = "NZD"
    balance: Decimal = Decimal("0")


class AccountUpdate(BaseModel):
    name: str | None = None
    account_type: AccountType | None = None
    currency: str | None = None
    balance: Decimal | None = None


class ShareRequest(BaseModel):
    user_id: str
    permission: SharePermission = SharePermission.VIEWER


class CategoryCreate(BaseModel):
    name: str
    type: CategoryType = CategoryType.EXPENSE


class CategoryUpdate(BaseModel):
    name: str | None = None
    type: CategoryType | None = None


class TransactionCreate(BaseModel):
    account_id: int
    amount: Decimal
    transaction_date: date
    description: str
    user_description: str | None = None
    category_id: int | None = None
    status: TransactionStatus = TransactionStatus.CLEARED
    bank_category: str | None = None
    reference_number: str | None = None
    transaction_type: str | None = None
    notes: str | None = None


class TransactionUpdate(BaseModel):
    amount: Decimal | None = None
    transaction_date: date | None = None
    description: str | None = None
    user_description: str | None = None
    status: TransactionStatus | None = None
    reference_number: str | None = None
    transaction_type: str | None = None
    notes: str | None = None


class CategorizeRequest(BaseModel):
    category_id: int


class BulkDeleteRequest(BaseModel):
    transaction_ids: list[int]


class RuleCreate(BaseModel):
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
    is_active: bool = True


class RuleUpdate(BaseModel):
    name: str | None = None
    pattern: str | None = None
    match_type: RuleMatchType | None = None
    is_case_sensitive: bool | None = None
    category_id: int | None = None
    priority: int | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    account_types: str | None = None
    condition_logic: ConditionLogic | None = None
    conditions: list[RuleCondition] | None = None
    confidence_score: float | None = None
    is_active: bool | None = None


class RuleTestRequest(BaseModel):
    description: str | None = None
    amount: Decimal | None = None
    account_type: AccountType | None = None


class DraftRuleTestRequest(RuleTestRequest):
    rule: RuleCreate


class RulePriority(BaseModel):
    rule_id: int
    priority: int


class RulePrioritiesRequest(BaseModel):
    priorities: list[RulePriority]


class ProcessRequest(BaseModel):
    transaction_ids: list[int] | None = None


class CandidateBatchRequest(BaseModel):
    candidate_ids: list[int]


class MappingUpsert(BaseModel):
    bank_category_name: str
    category_id: int
    provider: str = "akahu"
    is_excluded: bool = False


class ExcludeRequest(BaseModel):
    is_excluded: bool = True


class ResolveRequest(BaseModel):
    bank_categories: list[str]
    provider: str = "akahu"


class ReconciliationCreate(BaseModel):
    account_id: int
    statement_start_date: date
    statement_end_date: date
    statement_balance: Decimal
    notes: str | None = None


class BankReconciliationCreate(BaseModel):
    account_id: int
    statement_start_date: date
    statement_end_date: date
    statement_balance: Decimal | None = None
    notes: str | None = None


class ReconciliationUpdate(BaseModel):
    statement_end_date: date | None = None
    statement_balance: Decimal | None = None
    notes: str | None = None


class AutoMatchRequest(BaseModel):
    bank_transactions: list[BankTransaction]


class ManualMatchRequest(BaseModel):
    transaction_id: int | None = None
    bank_transaction: BankTransaction | None = None


class BulkApproveRequest(BaseModel):
    min_confidence: float | None = Field(default=None, ge=0, le=1)
    item_ids: list[int] | None = None


class ImportUnmatchedRequest(BaseModel):
    item_ids: list[int] | None = None
    import_all: bool = False


class FinalizeRequest(BaseModel):
    force: bool = False


class BankConnectionCreate(BaseModel):
    account_id: int
    external_account_id: str
    access_token: str
    provider: str = "akahu"


class BudgetCreate(BaseModel):
    name: str
    category_id: int
    amount: Decimal
    period_start: date
    period_end: date


class BudgetUpdate(BaseModel):
    name: str | None = None
    category_id: int | None = None
    amount: Decimal | None = None
    period_start: date | None = None
    period_end: date | None = None


class GoalCreate(BaseModel):
    name: str
    target_amount: Decimal
    current_amount: Decimal = Decimal("0")
    target_date: date | None = None


class GoalUpdate(BaseModel):
    name: str | None = None
    target_amount: Decimal | None = None
    target_date: date | None = None


class ContributionRequest(BaseModel):
    amount: Decimal
