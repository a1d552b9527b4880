import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends

from ledgerflow.api.dependencies import CurrentUser, get_candidates, get_pipeline
from ledgerflow.api.schemas import CandidateBatchRequest, ProcessRequest
from ledgerflow.categorization.pipeline import CategorizationPipeline, PipelineResult
from ledgerflow.errors import ValidationError
from ledgerflow.models import CandidateStatus, CategorizationCandidate
from ledgerflow.services.candidates import BatchResult, CandidateStats, CandidatesService

router = APIRouter(prefix="/api/categorization")

Candidates = Annotated[CandidatesService, Depends(get_candidates)]


@router.post("/process", response_model=PipelineResult)
async def process_transactions(
    req: ProcessRequest,
    user_id: CurrentUser,
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> PipelineResult:
    return await pipeline.process(user_id, req.transaction_ids)


@router.get("/candidates", response_model=list[CategorizationCandidate])
async def list_candidates(
    user_id: CurrentUser,
    service: Candidates,
    status: CandidateStatus | None = CandidateStatus.PENDING,
    transaction_id: int | None = None,
) -> list[CategorizationCandidate]:
    return service.list_candidates(user_id, status=status, transaction_id=transaction_id)


@router.post("/candidates/apply-batch", response_model=BatchResult)
async def apply_batch(req: CandidateBatchRequest, user_id: CurrentUser, service: Candidates) -> BatchResult:
    return await asyncio.to_thread(service.apply_batch, user_id, req.candidate_ids)


@router.post("/candidates/reject-batch", response_model=BatchResult)
async def reject_batch(req: CandidateBatchRequest, user_id: CurrentUser, service: Candidates) -> BatchResult:
    return service.reject_batch(user_id, req.candidate_ids)


@router.post("/candidates/{candidate_id}/apply", response_model=CategorizationCandidate)
async def apply_candidate(candidate_id: int, user_id: CurrentUser, service: Candidates) -> CategorizationCandidate:
    if not await asyncio.to_thread(service.apply, user_id, candidate_id):
        raise ValidationError(f"Candidate {candidate_id} is not pending")
    return service.get(user_id, candidate_id)


@router.post("/candidates/{candidate_id}/reject", response_model=CategorizationCandidate)
async def reject_candidate(candidate_id: int, user_id: CurrentUser, service: Candidates) -> CategorizationCandidate:
    if not service.reject(user_id, candidate_id):
        raise ValidationError(f"Candidate {candidate_id} is not pending")
    return service.get(user_id, candidate_id)


@router.get("/stats", response_model=CandidateStats)
async def candidate_stats(user_id: CurrentUser, service: Candidates) -> CandidateStats:
    return service.stats(user_id)
