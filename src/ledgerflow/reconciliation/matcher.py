"""Scoring and pairing of bank statement lines against recorded transactions."""

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from ledgerflow.models import BankTransaction, MatchMethod, Transaction

AMOUNT_WEIGHT = 0.4
DATE_WEIGHT = 0.3
DESCRIPTION_WEIGHT = 0.3

EXACT_MATCH_THRESHOLD = 0.95
DEFAULT_MIN_CONFIDENCE = 0.5
DEFAULT_AMOUNT_TOLERANCE = Decimal("5.00")

_PUNCTUATION = re.compile(r"[-_.,]")
_WHITESPACE = re.compile(r"\s+")


def normalize_description(text: str | None) -> str:
    if not text:
        return ""
    value = text.lower().replace("&", " and ")
    value = _PUNCTUATION.sub(" ", value)
    return _WHITESPACE.sub(" ", value).strip()


def amount_score(bank_amount: Decimal, system_amount: Decimal) -> float:
    difference = abs(Decimal(bank_amount) - Decimal(system_amount))
    if difference < Decimal("0.01"):
        return 1.0
    if difference <= Decimal("1"):
        return 0.8
    if difference <= Decimal("5"):
        return 0.6
    return 0.3


def date_score(bank_date: date, system_date: date) -> float:
    days = abs((bank_date - system_date).days)
    if days == 0:
        return 1.0
    if days <= 1:
        return 0.9
    if days <= 3:
        return 0.7
    return 0.4


def description_score(bank_description: str | None, system_description: str | None) -> float:
    left = normalize_description(bank_description)
    right = normalize_description(system_description)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    if left in right or right in left:
        return 0.9
    left_words = set(left.split())
    right_words = set(right.split())
    return len(left_words & right_words) / len(left_words | right_words)


@dataclass(frozen=True)
class MatchScore:
    amount: float
    date: float
    description: float

    @property
    def total(self) -> float:
        value = AMOUNT_WEIGHT * self.amount + DATE_WEIGHT * self.date + DESCRIPTION_WEIGHT * self.description
        return round(value, 4)


def score_match(bank: BankTransaction, txn: Transaction) -> MatchScore:
    system_description = txn.display_description
    bank_description = bank.description or bank.merchant_name
    description = description_score(bank_description, system_description)
    if bank.merchant_name and bank.description:
        description = max(description, description_score(bank.merchant_name, system_description))
    return MatchScore(
        amount=amount_score(bank.amount, txn.amount),
        date=date_score(bank.transaction_date, txn.transaction_date),
        description=description,
    )


def is_exact(score: MatchScore) -> bool:
    return score.total >= EXACT_MATCH_THRESHOLD and score.amount == 1.0 and score.date == 1.0


def match_confidence(bank: BankTransaction, txn: Transaction) -> float:
    return score_match(bank, txn).total


@dataclass
class MatchPair:
    bank_index: int
    transaction: Transaction
    score: MatchScore

    @property
    def confidence(self) -> float:
        return self.score.total

    @property
    def method(self) -> MatchMethod:
        return MatchMethod.EXACT if is_exact(self.score) else MatchMethod.FUZZY


@dataclass
class MatchingResult:
    matches: list[MatchPair] = field(default_factory=list)
    unmatched_bank: list[int] = field(default_factory=list)  # indexes into the bank lines
    unmatched_system: list[Transaction] = field(default_factory=list)


def find_matches(
    bank_lines: list[BankTransaction],
    transactions: list[Transaction],
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    amount_tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE,
) -> MatchingResult:
    """
    Pair bank lines with transactions one-to-one.

    Every pair within the amount tolerance is scored, then pairs are taken
    greedily: exact matches first, then by descending confidence.
    """
    pairs: list[MatchPair] = []
    for index, bank in enumerate(bank_lines):
        for txn in transactions:
            if abs(bank.amount - txn.amount) > amount_tolerance:
                continue
            score = score_match(bank, txn)
            if score.total >= min_confidence:
                pairs.append(MatchPair(bank_index=index, transaction=txn, score=score))

    pairs.sort(key=lambda p: (p.method == MatchMethod.EXACT, p.confidence), reverse=True)

    result = MatchingResult()
    used_bank: set[int] = set()
    used_txn: set[int] = set()
    for pair in pairs:
        if pair.bank_index in used_bank or pair.transaction.id in used_txn:
            continue
        used_bank.add(pair.bank_index)
        used_txn.add(pair.transaction.id)
        result.matches.append(pair)

    result.unmatched_bank = [i for i in range(len(bank_lines)) if i not in used_bank]
    result.unmatched_system = [t for t in transactions if t.id not in used_txn]
    return result
