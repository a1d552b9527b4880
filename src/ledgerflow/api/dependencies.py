from typing import Annotated, Any

from fastapi import Depends, Header, HTTPException, Request

from ledgerflow.categorization.pipeline import CategorizationPipeline
from ledgerflow.core import settings
from ledgerflow.services.bank_mapping import BankCategoryMappingService
from ledgerflow.services.bank_sync import BankSyncService
from ledgerflow.services.candidates import CandidatesService
from ledgerflow.services.planning import PlanningService
from ledgerflow.services.reconciliation import ReconciliationService
from ledgerflow.services.rules import RulesService
from ledgerflow.services.transactions import TransactionService


def _state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return value


def get_current_user(authorization: Annotated[str | None, Header()] = None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=401,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = settings.get_api_tokens().get(token.strip())
    if user_id is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


def get_pipeline(request: Request) -> CategorizationPipeline:
    return _state(request, "pipeline")


def get_candidates(request: Request) -> CandidatesService:
    return _state(request, "candidates")


def get_mappings(request: Request) -> BankCategoryMappingService:
    return _state(request, "mappings")


def get_rules(request: Request) -> RulesService:
    return _state(request, "rules")


def get_transactions(request: Request) -> TransactionService:
    return _state(request, "transactions")


def get_reconciliation(request: Request) -> ReconciliationService:
    return _state(request, "reconciliation")


def get_bank_sync(request: Request) -> BankSyncService:
    return _state(request, "bank_sync")


def get_planning(request: Request) -> PlanningService:
    return _state(request, "planning")


CurrentUser = Annotated[str, Depends(get_current_user)]
