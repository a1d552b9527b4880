from typing import Annotated

from fastapi import APIRouter, Depends

from ledgerflow.api.dependencies import CurrentUser, get_rules
from ledgerflow.api.schemas import (
    DraftRuleTestRequest,
    RuleCreate,
    RulePrioritiesRequest,
    RuleTestRequest,
    RuleUpdate,
)
from ledgerflow.models import CategorizationRule
from ledgerflow.services.rules import RuleStatistics, RulesService, RuleTestResult, validate_rule

router = APIRouter(prefix="/api/rules")

Rules = Annotated[RulesService, Depends(get_rules)]


@router.get("", response_model=list[CategorizationRule])
async def list_rules(user_id: CurrentUser, service: Rules, include_inactive: bool = True) -> list[CategorizationRule]:
    return service.list_rules(user_id, include_inactive=include_inactive)


@router.post("", response_model=CategorizationRule, status_code=201)
async def create_rule(req: RuleCreate, user_id: CurrentUser, service: Rules) -> CategorizationRule:
    return service.create(user_id, CategorizationRule(user_id=user_id, **req.model_dump()))


@router.get("/statistics", response_model=RuleStatistics)
async def rule_statistics(user_id: CurrentUser, service: Rules) -> RuleStatistics:
    return service.statistics(user_id)


@router.put("/priorities", response_model=list[CategorizationRule])
async def update_priorities(
    req: RulePrioritiesRequest, user_id: CurrentUser, service: Rules
) -> list[CategorizationRule]:
    return service.reorder(user_id, {p.rule_id: p.priority for p in req.priorities})


@router.post("/test", response_model=RuleTestResult)
async def test_draft_rule(req: DraftRuleTestRequest, user_id: CurrentUser, service: Rules) -> RuleTestResult:
    rule = CategorizationRule(user_id=user_id, **req.rule.model_dump())
    validate_rule(rule)
    return service.test_rule(user_id, rule, req.description, req.amount, req.account_type)


@router.get("/{rule_id}", response_model=CategorizationRule)
async def get_rule(rule_id: int, user_id: CurrentUser, service: Rules) -> CategorizationRule:
    return service.get(user_id, rule_id)


@router.put("/{rule_id}", response_model=CategorizationRule)
async def update_rule(rule_id: int, req: RuleUpdate, user_id: CurrentUser, service: Rules) -> CategorizationRule:
    return service.update(user_id, rule_id, req.model_dump(exclude_unset=True))


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(rule_id: int, user_id: CurrentUser, service: Rules) -> None:
    service.delete(user_id, rule_id)


@router.post("/{rule_id}/test", response_model=RuleTestResult)
async def test_rule(rule_id: int, req: RuleTestRequest, user_id: CurrentUser, service: Rules) -> RuleTestResult:
    rule = service.get(user_id, rule_id)
    return service.test_rule(user_id, rule, req.description, req.amount, req.account_type)
