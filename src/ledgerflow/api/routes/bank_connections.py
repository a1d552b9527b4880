from typing import Annotated

from fastapi import APIRouter, Depends

from ledgerflow.api.dependencies import CurrentUser, get_bank_sync
from ledgerflow.api.schemas import BankConnectionCreate
from ledgerflow.models import BankConnection, BankSyncLog
from ledgerflow.services.bank_sync import BankSyncService, SyncResult

router = APIRouter(prefix="/api/bank-connections")

Sync = Annotated[BankSyncService, Depends(get_bank_sync)]


@router.get("", response_model=list[BankConnection])
async def list_connections(user_id: CurrentUser, service: Sync) -> list[BankConnection]:
    return service.list_connections(user_id)


@router.post("", response_model=BankConnection, status_code=201)
async def create_connection(req: BankConnectionCreate, user_id: CurrentUser, service: Sync) -> BankConnection:
    return service.create(user_id, BankConnection(user_id=user_id, **req.model_dump()))


@router.delete("/{connection_id}", status_code=204)
async def disconnect(connection_id: int, user_id: CurrentUser, service: Sync) -> None:
    service.disconnect(user_id, connection_id)


@router.post("/{connection_id}/sync", response_model=SyncResult)
async def sync_connection(connection_id: int, user_id: CurrentUser, service: Sync) -> SyncResult:
    return await service.sync(user_id, connection_id)


@router.get("/{connection_id}/logs", response_model=list[BankSyncLog])
async def sync_logs(connection_id: int, user_id: CurrentUser, service: Sync) -> list[BankSyncLog]:
    return service.logs(user_id, connection_id)
