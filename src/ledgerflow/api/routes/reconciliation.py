from datetime import date
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends

from ledgerflow.api.dependencies import CurrentUser, get_pipeline, get_reconciliation
from ledgerflow.api.schemas import (
    AutoMatchRequest,
    BankReconciliationCreate,
    BulkApproveRequest,
    FinalizeRequest,
    ImportUnmatchedRequest,
    ManualMatchRequest,
    ReconciliationCreate,
    ReconciliationUpdate,
)
from ledgerflow.categorization.pipeline import CategorizationPipeline
from ledgerflow.models import MatchMethod, Reconciliation, ReconciliationItem, ReconciliationItemType
from ledgerflow.services.reconciliation import (
    AutoMatchResult,
    BankReconciliationResult,
    BulkApproveResult,
    ImportResult,
    ItemFilters,
    ReconciliationDetails,
    ReconciliationService,
    UnlinkResult,
)

router = APIRouter(prefix="/api/reconciliation")

Reconciler = Annotated[ReconciliationService, Depends(get_reconciliation)]
Pipeline = Annotated[CategorizationPipeline, Depends(get_pipeline)]


@router.get("", response_model=list[Reconciliation])
async def list_reconciliations(
    user_id: CurrentUser, service: Reconciler, account_id: int | None = None
) -> list[Reconciliation]:
    return service.list_reconciliations(user_id, account_id)


@router.post("", response_model=Reconciliation, status_code=201)
async def create_reconciliation(req: ReconciliationCreate, user_id: CurrentUser, service: Reconciler) -> Reconciliation:
    return service.create(
        user_id,
        req.account_id,
        req.statement_start_date,
        req.statement_end_date,
        req.statement_balance,
        notes=req.notes,
    )


@router.post("/from-bank", response_model=BankReconciliationResult, status_code=201)
async def create_from_bank(
    req: BankReconciliationCreate, user_id: CurrentUser, service: Reconciler
) -> BankReconciliationResult:
    return await service.create_from_bank(
        user_id,
        req.account_id,
        req.statement_start_date,
        req.statement_end_date,
        statement_balance=req.statement_balance,
        notes=req.notes,
    )


@router.post("/items/{item_id}/unlink", response_model=UnlinkResult)
async def unlink_item(item_id: int, user_id: CurrentUser, service: Reconciler) -> UnlinkResult:
    return service.unlink(user_id, item_id)


@router.get("/{reconciliation_id}", response_model=Reconciliation)
async def get_reconciliation(reconciliation_id: int, user_id: CurrentUser, service: Reconciler) -> Reconciliation:
    return service.get(user_id, reconciliation_id)


@router.put("/{reconciliation_id}", response_model=Reconciliation)
async def update_reconciliation(
    reconciliation_id: int, req: ReconciliationUpdate, user_id: CurrentUser, service: Reconciler
) -> Reconciliation:
    return service.update(user_id, reconciliation_id, req.model_dump(exclude_unset=True))


@router.delete("/{reconciliation_id}", status_code=204)
async def delete_reconciliation(reconciliation_id: int, user_id: CurrentUser, service: Reconciler) -> None:
    service.delete(user_id, reconciliation_id)


@router.post("/{reconciliation_id}/match", response_model=AutoMatchResult)
async def auto_match(
    reconciliation_id: int, req: AutoMatchRequest, user_id: CurrentUser, service: Reconciler
) -> AutoMatchResult:
    return service.auto_match(user_id, reconciliation_id, req.bank_transactions)


@router.get("/{reconciliation_id}/details", response_model=ReconciliationDetails)
async def get_details(
    reconciliation_id: int,
    user_id: CurrentUser,
    service: Reconciler,
    item_type: ReconciliationItemType | None = None,
    match_method: MatchMethod | None = None,
    min_amount: Decimal | None = None,
    max_amount: Decimal | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    search: str | None = None,
) -> ReconciliationDetails:
    filters = ItemFilters(
        item_type=item_type,
        match_method=match_method,
        min_amount=min_amount,
        max_amount=max_amount,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    return service.details(user_id, reconciliation_id, filters)


@router.post("/{reconciliation_id}/manual-match", response_model=ReconciliationItem)
async def manual_match(
    reconciliation_id: int, req: ManualMatchRequest, user_id: CurrentUser, service: Reconciler
) -> ReconciliationItem:
    return service.manual_match(user_id, reconciliation_id, req.transaction_id, req.bank_transaction)


@router.post("/{reconciliation_id}/bulk-approve", response_model=BulkApproveResult)
async def bulk_approve(
    reconciliation_id: int,
    req: BulkApproveRequest,
    user_id: CurrentUser,
    service: Reconciler,
    pipeline: Pipeline,
    background_tasks: BackgroundTasks,
) -> BulkApproveResult:
    result = service.bulk_approve(user_id, reconciliation_id, req.min_confidence, req.item_ids)
    if result.recategorize_transaction_ids:
        background_tasks.add_task(pipeline.process, user_id, result.recategorize_transaction_ids)
    return result


@router.post("/{reconciliation_id}/import-unmatched", response_model=ImportResult)
async def import_unmatched(
    reconciliation_id: int,
    req: ImportUnmatchedRequest,
    user_id: CurrentUser,
    service: Reconciler,
    pipeline: Pipeline,
    background_tasks: BackgroundTasks,
) -> ImportResult:
    result = await service.import_unmatched(user_id, reconciliation_id, req.item_ids, req.import_all)
    if result.transaction_ids:
        background_tasks.add_task(pipeline.process, user_id, result.transaction_ids)
    return result


@router.post("/{reconciliation_id}/finalize", response_model=Reconciliation)
async def finalize(
    reconciliation_id: int, req: FinalizeRequest, user_id: CurrentUser, service: Reconciler
) -> Reconciliation:
    return service.finalize(user_id, reconciliation_id, force=req.force)
