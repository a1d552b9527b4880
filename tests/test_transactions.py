from datetime import date
from decimal import Decimal

import pytest

from ledgerflow.errors import AccessDeniedError, NotFoundError, ValidationError
from ledgerflow.models import Account, CategorizationMethod, Category, SharePermission, Transaction

from .conftest import OTHER_USER, USER


@pytest.fixture
def txns(services):
    return services["transactions"]


def test_bulk_delete_all_found(seed, txns, store) -> None:
    account = seed.account()
    ids = [seed.transaction(account, f"t{i}").id for i in range(3)]

    result = txns.bulk_delete(USER, ids)

    assert result.success
    assert result.transactions_deleted == 3
    assert result.errors == []
    assert all(store.transactions.get(i).is_deleted for i in ids)
    assert [log.action for log in store.audit_logs.find()] == ["BulkDelete"]


def test_bulk_delete_partial_names_missing_ids(seed, txns, store) -> None:
    mine = seed.account()
    theirs = seed.account(user_id=OTHER_USER)
    kept = seed.transaction(mine, "mine")
    foreign = seed.transaction(theirs, "theirs")

    result = txns.bulk_delete(USER, [kept.id, foreign.id, 99])

    assert not result.success
    assert result.transactions_deleted == 1
    assert result.errors == [f"Transactions not found or access denied: {foreign.id}, 99"]
    assert not store.transactions.get(foreign.id).is_deleted


def test_bulk_delete_requires_ids(txns) -> None:
    with pytest.raises(ValidationError):
        txns.bulk_delete(USER, [])


def test_shared_viewer_can_read_but_not_write(seed, txns) -> None:
    account = seed.account()
    txn = seed.transaction(account, "Power bill")
    txns.share_account(USER, account.id, OTHER_USER, SharePermission.VIEWER)

    assert txns.get_transaction(OTHER_USER, txn.id).id == txn.id
    assert [a.id for a in txns.list_accounts(OTHER_USER)] == [account.id]
    with pytest.raises(AccessDeniedError):
        txns.update_transaction(OTHER_USER, txn.id, {"notes": "hi"})
    with pytest.raises(AccessDeniedError):
        txns.delete_account(OTHER_USER, account.id)


def test_shared_editor_can_write(seed, txns) -> None:
    account = seed.account()
    txn = seed.transaction(account, "Power bill")
    txns.share_account(USER, account.id, OTHER_USER, SharePermission.EDITOR)

    updated = txns.update_transaction(OTHER_USER, txn.id, {"notes": "split", "user_id": "nope"})

    assert updated.notes == "split"
    assert updated.user_id == USER


def test_unrelated_user_sees_not_found(seed, txns) -> None:
    account = seed.account()
    txn = seed.transaction(account, "Power bill")

    with pytest.raises(NotFoundError, match=f"Transaction {txn.id} not found"):
        txns.get_transaction(OTHER_USER, txn.id)


def test_unshare_revokes_access(seed, txns) -> None:
    account = seed.account()
    txns.share_account(USER, account.id, OTHER_USER, SharePermission.VIEWER)
    txns.unshare_account(USER, account.id, OTHER_USER)

    assert txns.list_accounts(OTHER_USER) == []
    with pytest.raises(ValidationError):
        txns.share_account(USER, account.id, USER, SharePermission.EDITOR)


def test_create_transaction_with_category_is_manual(seed, txns) -> None:
    account = seed.account()
    food = seed.category("Food")

    created = txns.create_transaction(USER, Transaction(
        user_id="ignored",
        account_id=account.id,
        amount=Decimal("-12.50"),
        transaction_date=date(2024, 3, 2),
        description="Lunch",
        category_id=food.id,
    ))

    assert created.user_id == USER
    assert created.categorization_method == CategorizationMethod.MANUAL
    assert created.is_reviewed


def test_list_transactions_filters(seed, txns) -> None:
    account = seed.account()
    food = seed.category("Food")
    seed.transaction(account, "old", when=date(2024, 1, 1))
    recent = seed.transaction(account, "recent", when=date(2024, 3, 5))
    seed.transaction(account, "done", when=date(2024, 3, 6), category_id=food.id)

    listed = txns.list_transactions(USER, uncategorized=True, start_date=date(2024, 2, 1))

    assert [t.id for t in listed] == [recent.id]


def test_categorize_counts_rule_corrections(seed, txns, store) -> None:
    account = seed.account()
    food = seed.category("Food")
    dining = seed.category("Dining")
    rule = seed.rule(food, "cafe")
    txn = seed.transaction(
        account,
        "CAFE",
        category_id=food.id,
        categorization_method=CategorizationMethod.RULE,
        categorization_rule_id=rule.id,
    )

    result = txns.categorize(USER, txn.id, dining.id)

    assert result.category_id == dining.id
    assert result.categorization_method == CategorizationMethod.MANUAL
    assert result.categorization_rule_id is None
    assert store.rules.get(rule.id).correction_count == 1


def test_categorize_rejects_foreign_category(seed, txns) -> None:
    account = seed.account()
    txn = seed.transaction(account, "CAFE")
    foreign = seed.category("Theirs", user_id=OTHER_USER)

    with pytest.raises(NotFoundError):
        txns.categorize(USER, txn.id, foreign.id)


def test_category_names_are_unique_per_user(txns) -> None:
    txns.create_category(USER, Category(user_id=USER, name="Food"))
    txns.create_category(OTHER_USER, Category(user_id=OTHER_USER, name="food"))

    with pytest.raises(ValidationError, match="already exists"):
        txns.create_category(USER, Category(user_id=USER, name=" FOOD "))


def test_delete_category_forgets_training(seed, txns, services) -> None:
    account = seed.account()
    food = seed.category("Food")
    txn = seed.transaction(account, "Countdown")
    txns.categorize(USER, txn.id, food.id)
    assert services["learner"].predict(USER, "Countdown") is not None

    txns.delete_category(USER, food.id)

    assert services["learner"].predict(USER, "Countdown") is None
    assert txns.list_categories(USER) == []


def test_account_requires_name(txns) -> None:
    with pytest.raises(ValidationError):
        txns.create_account(USER, Account(user_id=USER, name="  "))
