from dataclasses import asdict
from typing import Annotated, Any

from fastapi import APIRouter, Depends

from ledgerflow.api.dependencies import CurrentUser, get_mappings
from ledgerflow.api.schemas import ExcludeRequest, MappingUpsert, ResolveRequest
from ledgerflow.errors import ValidationError
from ledgerflow.models import BankCategoryMapping
from ledgerflow.services.bank_mapping import BankCategoryMappingService

router = APIRouter(prefix="/api/bank-category-mappings")

Mappings = Annotated[BankCategoryMappingService, Depends(get_mappings)]


@router.get("", response_model=list[BankCategoryMapping])
async def list_mappings(user_id: CurrentUser, service: Mappings, provider: str | None = None) -> list[BankCategoryMapping]:
    return service.list_mappings(user_id, provider)


@router.post("", response_model=BankCategoryMapping)
async def upsert_mapping(req: MappingUpsert, user_id: CurrentUser, service: Mappings) -> BankCategoryMapping:
    return service.upsert(
        user_id,
        req.bank_category_name,
        req.category_id,
        provider=req.provider,
        is_excluded=req.is_excluded,
    )


@router.post("/resolve")
async def resolve_mappings(req: ResolveRequest, user_id: CurrentUser, service: Mappings) -> dict[str, Any]:
    if not req.bank_categories:
        raise ValidationError("No bank categories supplied")
    resolutions = await service.resolve_and_create_mappings(user_id, req.bank_categories, req.provider)
    return {name: asdict(resolution) for name, resolution in resolutions.items()}


@router.put("/{mapping_id}/exclude", response_model=BankCategoryMapping)
async def set_excluded(
    mapping_id: int, req: ExcludeRequest, user_id: CurrentUser, service: Mappings
) -> BankCategoryMapping:
    return service.set_excluded(user_id, mapping_id, req.is_excluded)


@router.delete("/{mapping_id}", status_code=204)
async def delete_mapping(mapping_id: int, user_id: CurrentUser, service: Mappings) -> None:
    service.delete(user_id, mapping_id)
