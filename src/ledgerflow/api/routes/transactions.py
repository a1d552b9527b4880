import asyncio
from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends

from ledgerflow.api.dependencies import CurrentUser, get_transactions
from ledgerflow.api.schemas import (
    BulkDeleteRequest,
    CategorizeRequest,
    TransactionCreate,
    TransactionUpdate,
)
from ledgerflow.models import Transaction, TransactionStatus
from ledgerflow.services.transactions import BulkDeleteResult, TransactionService

router = APIRouter(prefix="/api/transactions")

Transactions = Annotated[TransactionService, Depends(get_transactions)]


@router.get("", response_model=list[Transaction])
async def list_transactions(
    user_id: CurrentUser,
    service: Transactions,
    account_id: int | None = None,
    status: TransactionStatus | None = None,
    uncategorized: bool = False,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[Transaction]:
    return service.list_transactions(
        user_id,
        account_id=account_id,
        status=status,
        uncategorized=uncategorized,
        start_date=start_date,
        end_date=end_date,
    )


@router.post("", response_model=Transaction, status_code=201)
async def create_transaction(req: TransactionCreate, user_id: CurrentUser, service: Transactions) -> Transaction:
    return service.create_transaction(user_id, Transaction(user_id=user_id, **req.model_dump()))


@router.post("/bulk-delete", response_model=BulkDeleteResult)
async def bulk_delete(req: BulkDeleteRequest, user_id: CurrentUser, service: Transactions) -> BulkDeleteResult:
    return service.bulk_delete(user_id, req.transaction_ids)


@router.get("/{transaction_id}", response_model=Transaction)
async def get_transaction(transaction_id: int, user_id: CurrentUser, service: Transactions) -> Transaction:
    return service.get_transaction(user_id, transaction_id)


@router.put("/{transaction_id}", response_model=Transaction)
async def update_transaction(
    transaction_id: int, req: TransactionUpdate, user_id: CurrentUser, service: Transactions
) -> Transaction:
    return service.update_transaction(user_id, transaction_id, req.model_dump(exclude_unset=True))


@router.post("/{transaction_id}/categorize", response_model=Transaction)
async def categorize_transaction(
    transaction_id: int, req: CategorizeRequest, user_id: CurrentUser, service: Transactions
) -> Transaction:
    return await asyncio.to_thread(service.categorize, user_id, transaction_id, req.category_id)


@router.delete("/{transaction_id}", status_code=204)
async def delete_transaction(transaction_id: int, user_id: CurrentUser, service: Transactions) -> None:
    service.delete_transaction(user_id, transaction_id)
