"""Evaluation of user categorization rules against transactions.

Everything here is pure: a rule either matches a transaction or it does not,
and ``rule_confidence`` scores a match for the confidence gate.
"""

import re
from decimal import Decimal, InvalidOperation

from ledgerflow.logger import get_logger
from ledgerflow.models import (
    Account,
    CategorizationRule,
    ConditionLogic,
    RuleCondition,
    RuleField,
    RuleMatchType,
    RuleOperator,
    Transaction,
)

logger = get_logger(__name__)

DEFAULT_RULE_CONFIDENCE = 0.8
MIN_RULE_CONFIDENCE = 0.1

_NUMERIC_OPERATORS = {
    RuleOperator.GREATER_THAN,
    RuleOperator.LESS_THAN,
    RuleOperator.GREATER_THAN_OR_EQUAL,
    RuleOperator.LESS_THAN_OR_EQUAL,
}


def _regex_search(pattern: str, text: str, case_sensitive: bool) -> bool:
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        return re.search(pattern, text, flags) is not None
    except re.error:
        logger.debug("[RULES] Invalid regex '%s' treated as no match.", pattern)
        return False


def match_text(text: str, pattern: str, match_type: RuleMatchType, case_sensitive: bool = False) -> bool:
    if not text or not pattern:
        return False
    if match_type == RuleMatchType.REGEX:
        return _regex_search(pattern, text, case_sensitive)

    if not case_sensitive:
        text = text.lower()
        pattern = pattern.lower()

    if match_type == RuleMatchType.CONTAINS:
        return pattern in text
    if match_type == RuleMatchType.STARTS_WITH:
        return text.startswith(pattern)
    if match_type == RuleMatchType.ENDS_WITH:
        return text.endswith(pattern)
    if match_type == RuleMatchType.EQUALS:
        return text == pattern
    return False


def _in_amount_range(rule: CategorizationRule, amount: Decimal) -> bool:
    value = abs(amount)
    if rule.min_amount is not None and value < rule.min_amount:
        return False
    if rule.max_amount is not None and value > rule.max_amount:
        return False
    return True


def _matches_account_type(rule: CategorizationRule, account: Account | None) -> bool:
    if not rule.account_types or not rule.account_types.strip():
        return True
    if account is None:
        return False
    allowed = {part.strip().lower() for part in rule.account_types.split(",") if part.strip()}
    return str(account.account_type).lower() in allowed


def field_value(field: RuleField, transaction: Transaction, account: Account | None) -> str:
    if field == RuleField.DESCRIPTION:
        return transaction.description or ""
    if field == RuleField.USER_DESCRIPTION:
        return transaction.user_description or ""
    if field == RuleField.AMOUNT:
        return f"{abs(transaction.amount):.2f}"
    if field == RuleField.ACCOUNT_TYPE:
        return str(account.account_type) if account else ""
    if field == RuleField.ACCOUNT_NAME:
        return account.name if account else ""
    if field == RuleField.TRANSACTION_TYPE:
        return transaction.transaction_type or ""
    if field == RuleField.REFERENCE_NUMBER:
        return transaction.reference_number or ""
    if field == RuleField.NOTES:
        return transaction.notes or ""
    return ""


def _to_decimal(raw: str) -> Decimal | None:
    try:
        value = Decimal(raw.strip().replace(",", ""))
    except (InvalidOperation, AttributeError):
        return None
    if not value.is_finite():
        return None
    return value


def _compare_numeric(operator: RuleOperator, left_raw: str, right_raw: str) -> bool:
    left = _to_decimal(left_raw)
    right = _to_decimal(right_raw)
    if left is None or right is None:
        return False
    if operator == RuleOperator.GREATER_THAN:
        return left > right
    if operator == RuleOperator.LESS_THAN:
        return left < right
    if operator == RuleOperator.GREATER_THAN_OR_EQUAL:
        return left >= right
    return left <= right


def evaluate_condition(condition: RuleCondition, transaction: Transaction, account: Account | None) -> bool:
    actual = field_value(condition.field, transaction, account)
    expected = condition.value or ""
    operator = condition.operator

    if operator in _NUMERIC_OPERATORS:
        return _compare_numeric(operator, actual, expected)
    if operator == RuleOperator.REGEX:
        return bool(actual) and _regex_search(expected, actual, condition.is_case_sensitive)

    if not condition.is_case_sensitive:
        actual = actual.lower()
        expected = expected.lower()

    if operator == RuleOperator.EQUALS:
        return actual == expected
    if operator == RuleOperator.NOT_EQUALS:
        return actual != expected
    if operator == RuleOperator.CONTAINS:
        return expected in actual
    if operator == RuleOperator.NOT_CONTAINS:
        return expected not in actual
    if operator == RuleOperator.STARTS_WITH:
        return actual.startswith(expected)
    if operator == RuleOperator.ENDS_WITH:
        return actual.endswith(expected)
    return False


def rule_matches(rule: CategorizationRule, transaction: Transaction, account: Account | None = None) -> bool:
    if not rule.is_active or rule.is_deleted:
        return False

    conditions = rule.active_conditions
    pattern = rule.pattern.strip() if rule.pattern else ""
    if pattern or not conditions:
        text = transaction.display_description
        if not match_text(text, rule.pattern, rule.match_type, rule.is_case_sensitive):
            return False

    if not _in_amount_range(rule, transaction.amount):
        return False
    if not _matches_account_type(rule, account):
        return False

    if conditions:
        results = (evaluate_condition(condition, transaction, account) for condition in conditions)
        if rule.condition_logic == ConditionLogic.ANY:
            return any(results)
        return all(results)
    return True


def rule_confidence(rule: CategorizationRule, transaction: Transaction) -> float:
    """Score how strongly a matching rule vouches for its category."""
    base = rule.confidence_score if rule.confidence_score is not None else DEFAULT_RULE_CONFIDENCE
    confidence = base * rule.accuracy_rate

    text = transaction.display_description.strip()
    pattern = (rule.pattern or "").strip()

    if rule.match_type == RuleMatchType.EQUALS:
        confidence *= 1.2
    elif rule.match_type == RuleMatchType.CONTAINS and pattern:
        if text and pattern.lower() == text.lower():
            confidence = 1.0
        elif len(pattern) >= 4 and text:
            ratio = len(pattern) / len(text)
            if ratio >= 0.6:
                confidence *= 1.15
            elif ratio >= 0.4:
                confidence *= 1.1
        elif len(pattern) < 3:
            confidence *= 0.8

    return max(MIN_RULE_CONFIDENCE, min(1.0, confidence))
