import re
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from ledgerflow.errors import NotFoundError, ValidationError
from ledgerflow.logger import get_logger
from ledgerflow.models import (
    Account,
    AccountType,
    CategorizationRule,
    RuleMatchType,
    RuleOperator,
    Transaction,
)
from ledgerflow.rules.matcher import rule_confidence, rule_matches
from ledgerflow.services.access import AccountAccess
from ledgerflow.storage.repositories import Store

logger = get_logger(__name__)

TEST_SAMPLE_LIMIT = 200
_EDITABLE_FIELDS = {
    "name",
    "pattern",
    "match_type",
    "is_case_sensitive",
    "category_id",
    "priority",
    "min_amount",
    "max_amount",
    "account_types",
    "condition_logic",
    "conditions",
    "confidence_score",
    "is_active",
}


class RuleTestResult(BaseModel):
    matched: bool | None = None
    confidence: float | None = None
    matching_transaction_ids: list[int] = Field(default_factory=list)
    tested_count: int = 0


class RuleStatistics(BaseModel):
    total_rules: int = 0
    active_rules: int = 0
    total_matches: int = 0
    total_corrections: int = 0
    average_accuracy: float | None = None
    top_rules: list[dict[str, Any]] = Field(default_factory=list)


def _schema_message(exc: SchemaError) -> str:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or "value"
    return f"Invalid {field}: {first['msg']}"


def validate_rule(rule: CategorizationRule) -> None:
    if not rule.name.strip():
        raise ValidationError("Rule name is required")
    if not rule.pattern.strip() and not rule.active_conditions:
        raise ValidationError("A rule needs a pattern or at least one active condition")
    if rule.match_type == RuleMatchType.REGEX and rule.pattern:
        try:
            re.compile(rule.pattern)
        except re.error as e:
            raise ValidationError(f"Invalid regex pattern: {e}") from e
    if rule.min_amount is not None and rule.max_amount is not None and rule.min_amount > rule.max_amount:
        raise ValidationError("Minimum amount cannot exceed maximum amount")
    if rule.confidence_score is not None and not 0 <= rule.confidence_score <= 1:
        raise ValidationError("Confidence score must be between 0 and 1")
    if rule.account_types:
        known = {t.value.lower() for t in AccountType}
        for part in rule.account_types.split(","):
            if part.strip() and part.strip().lower() not in known:
                raise ValidationError(f"Unknown account type '{part.strip()}'")
    for condition in rule.conditions:
        if condition.operator == RuleOperator.REGEX:
            try:
                re.compile(condition.value)
            except re.error as e:
                raise ValidationError(f"Invalid regex in condition: {e}") from e


class RulesService:
    def __init__(self, store: Store, access: AccountAccess) -> None:
        self.store = store
        self.access = access

    def _check_category(self, user_id: str, category_id: int) -> None:
        category = self.store.categories.get(category_id)
        if category is None or category.user_id != user_id or category.is_deleted:
            raise NotFoundError.for_entity("Category", category_id)

    def get(self, user_id: str, rule_id: int) -> CategorizationRule:
        rule = self.store.rules.get(rule_id)
        if rule is None or rule.user_id != user_id or rule.is_deleted:
            raise NotFoundError.for_entity("Rule", rule_id)
        return rule

    def list_rules(self, user_id: str, include_inactive: bool = True) -> list[CategorizationRule]:
        rules = self.store.rules.find(
            lambda r: r.user_id == user_id and not r.is_deleted and (include_inactive or r.is_active)
        )
        return sorted(rules, key=lambda r: (r.priority, r.id or 0))

    def create(self, user_id: str, rule: CategorizationRule) -> CategorizationRule:
        rule.user_id = user_id
        validate_rule(rule)
        self._check_category(user_id, rule.category_id)
        created = self.store.rules.add(rule)
        logger.info("[RULES] Created rule %s '%s' for %s.", created.id, created.name, user_id)
        return created

    def update(self, user_id: str, rule_id: int, changes: dict[str, Any]) -> CategorizationRule:
        rule = self.get(user_id, rule_id)
        data = rule.model_dump()
        data.update({k: v for k, v in changes.items() if k in _EDITABLE_FIELDS})
        try:
            updated = CategorizationRule.model_validate(data)
        except SchemaError as exc:
            raise ValidationError(_schema_message(exc)) from exc
        validate_rule(updated)
        self._check_category(user_id, updated.category_id)
        return self.store.rules.update(updated)

    def delete(self, user_id: str, rule_id: int) -> None:
        rule = self.get(user_id, rule_id)
        rule.is_deleted = True
        rule.is_active = False
        self.store.rules.update(rule)

    def reorder(self, user_id: str, priorities: dict[int, int]) -> list[CategorizationRule]:
        if not priorities:
            raise ValidationError("No rule priorities supplied")
        rules = [self.get(user_id, rule_id) for rule_id in priorities]
        for rule in rules:
            rule.priority = priorities[rule.id]
            self.store.rules.update(rule)
        return self.list_rules(user_id)

    def test_rule(
        self,
        user_id: str,
        rule: CategorizationRule,
        description: str | None = None,
        amount: Decimal | None = None,
        account_type: AccountType | None = None,
    ) -> RuleTestResult:
        """Dry-run a rule against a sample, or against recent transactions when no sample is given."""
        if description is not None:
            sample = Transaction(
                user_id=user_id,
                account_id=0,
                amount=amount if amount is not None else Decimal("0"),
                transaction_date=rule.created_at.date(),
                description=description,
            )
            account = None
            if account_type is not None:
                account = Account(user_id=user_id, name="sample", account_type=account_type)
            matched = rule_matches(rule, sample, account)
            return RuleTestResult(
                matched=matched,
                confidence=rule_confidence(rule, sample) if matched else None,
                tested_count=1,
            )

        account_ids = self.access.readable_account_ids(user_id)
        accounts = {a.id: a for a in self.store.accounts.find(lambda a: a.id in account_ids)}
        recent = sorted(
            self.store.transactions.find(lambda t: t.account_id in account_ids and not t.is_deleted),
            key=lambda t: (t.transaction_date, t.id or 0),
            reverse=True,
        )[:TEST_SAMPLE_LIMIT]
        matches = [t.id for t in recent if rule_matches(rule, t, accounts.get(t.account_id))]
        return RuleTestResult(matched=bool(matches), matching_transaction_ids=matches, tested_count=len(recent))

    def statistics(self, user_id: str) -> RuleStatistics:
        rules = self.list_rules(user_id)
        if not rules:
            return RuleStatistics()
        with_data = [r for r in rules if r.match_count + r.correction_count > 0]
        top = sorted(rules, key=lambda r: r.match_count, reverse=True)[:5]
        return RuleStatistics(
            total_rules=len(rules),
            active_rules=sum(1 for r in rules if r.is_active),
            total_matches=sum(r.match_count for r in rules),
            total_corrections=sum(r.correction_count for r in rules),
            average_accuracy=(
                round(sum(r.accuracy_rate for r in with_data) / len(with_data), 4) if with_data else None
            ),
            top_rules=[
                {"id": r.id, "name": r.name, "match_count": r.match_count, "accuracy_rate": round(r.accuracy_rate, 4)}
                for r in top
            ],
        )
