import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends

from ledgerflow.api.dependencies import CurrentUser, get_transactions
from ledgerflow.api.schemas import (
    AccountCreate,
    AccountUpdate,
    CategoryCreate,
    CategoryUpdate,
    ShareRequest,
)
from ledgerflow.models import Account, Category
from ledgerflow.services.transactions import TransactionService

router = APIRouter(prefix="/api")

Transactions = Annotated[TransactionService, Depends(get_transactions)]


@router.get("/accounts", response_model=list[Account])
async def list_accounts(user_id: CurrentUser, service: Transactions) -> list[Account]:
    return service.list_accounts(user_id)


@router.post("/accounts", response_model=Account, status_code=201)
async def create_account(req: AccountCreate, user_id: CurrentUser, service: Transactions) -> Account:
    return service.create_account(user_id, Account(user_id=user_id, **req.model_dump()))


@router.get("/accounts/{account_id}", response_model=Account)
async def get_account(account_id: int, user_id: CurrentUser, service: Transactions) -> Account:
    return service.access.readable_account(user_id, account_id)


@router.put("/accounts/{account_id}", response_model=Account)
async def update_account(account_id: int, req: AccountUpdate, user_id: CurrentUser, service: Transactions) -> Account:
    return service.update_account(user_id, account_id, req.model_dump(exclude_unset=True))


@router.delete("/accounts/{account_id}", status_code=204)
async def delete_account(account_id: int, user_id: CurrentUser, service: Transactions) -> None:
    service.delete_account(user_id, account_id)


@router.post("/accounts/{account_id}/shares", response_model=Account)
async def share_account(account_id: int, req: ShareRequest, user_id: CurrentUser, service: Transactions) -> Account:
    return service.share_account(user_id, account_id, req.user_id, req.permission)


@router.delete("/accounts/{account_id}/shares/{target_user_id}", response_model=Account)
async def unshare_account(account_id: int, target_user_id: str, user_id: CurrentUser, service: Transactions) -> Account:
    return service.unshare_account(user_id, account_id, target_user_id)


@router.get("/categories", response_model=list[Category])
async def list_categories(user_id: CurrentUser, service: Transactions) -> list[Category]:
    return service.list_categories(user_id)


@router.post("/categories", response_model=Category, status_code=201)
async def create_category(req: CategoryCreate, user_id: CurrentUser, service: Transactions) -> Category:
    return service.create_category(user_id, Category(user_id=user_id, **req.model_dump()))


@router.put("/categories/{category_id}", response_model=Category)
async def update_category(
    category_id: int, req: CategoryUpdate, user_id: CurrentUser, service: Transactions
) -> Category:
    return service.update_category(user_id, category_id, name=req.name, category_type=req.type)


@router.delete("/categories/{category_id}", status_code=204)
async def delete_category(category_id: int, user_id: CurrentUser, service: Transactions) -> None:
    await asyncio.to_thread(service.delete_category, user_id, category_id)
