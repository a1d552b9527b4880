from ledgerflow.errors import AccessDeniedError, NotFoundError
from ledgerflow.models import Account, SharePermission, Transaction
from ledgerflow.storage.repositories import Store


class AccountAccess:
    """
    Own-vs-shared account gating.

    Owners may do anything, shared editors may modify, shared viewers may only
    read. Accounts the user has no relation to are reported as not found.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    @staticmethod
    def permission(account: Account, user_id: str) -> SharePermission | None:
        if account.user_id == user_id:
            return SharePermission.EDITOR
        for share in account.shares:
            if share.user_id == user_id:
                return share.permission
        return None

    def readable_account(self, user_id: str, account_id: int) -> Account:
        account = self.store.accounts.get(account_id)
        if account is None or account.is_deleted or self.permission(account, user_id) is None:
            raise NotFoundError.for_entity("Account", account_id)
        return account

    def writable_account(self, user_id: str, account_id: int) -> Account:
        account = self.readable_account(user_id, account_id)
        if self.permission(account, user_id) != SharePermission.EDITOR:
            raise AccessDeniedError(f"No permission to modify account {account_id}")
        return account

    def owned_account(self, user_id: str, account_id: int) -> Account:
        account = self.readable_account(user_id, account_id)
        if account.user_id != user_id:
            raise AccessDeniedError(f"Only the owner can manage account {account_id}")
        return account

    def readable_account_ids(self, user_id: str) -> set[int]:
        return {
            a.id for a in self.store.accounts.find(lambda a: not a.is_deleted)
            if self.permission(a, user_id) is not None
        }

    def readable_transaction(self, user_id: str, transaction_id: int) -> Transaction:
        txn = self.store.transactions.get(transaction_id)
        if txn is None or txn.is_deleted:
            raise NotFoundError.for_entity("Transaction", transaction_id)
        account = self.store.accounts.get(txn.account_id)
        if account is None or self.permission(account, user_id) is None:
            raise NotFoundError.for_entity("Transaction", transaction_id)
        return txn

    def writable_transaction(self, user_id: str, transaction_id: int) -> Transaction:
        txn = self.readable_transaction(user_id, transaction_id)
        self.writable_account(user_id, txn.account_id)
        return txn
