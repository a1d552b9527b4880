from typing import Annotated

from fastapi import APIRouter, Depends

from ledgerflow.api.dependencies import CurrentUser, get_planning
from ledgerflow.api.schemas import BudgetCreate, BudgetUpdate, ContributionRequest, GoalCreate, GoalUpdate
from ledgerflow.models import Budget, Goal
from ledgerflow.services.planning import BudgetProgress, PlanningService

router = APIRouter(prefix="/api")

Planning = Annotated[PlanningService, Depends(get_planning)]


@router.get("/budgets", response_model=list[Budget])
async def list_budgets(user_id: CurrentUser, service: Planning) -> list[Budget]:
    return service.list_budgets(user_id)


@router.post("/budgets", response_model=Budget, status_code=201)
async def create_budget(req: BudgetCreate, user_id: CurrentUser, service: Planning) -> Budget:
    return service.create_budget(user_id, Budget(user_id=user_id, **req.model_dump()))


@router.put("/budgets/{budget_id}", response_model=Budget)
async def update_budget(budget_id: int, req: BudgetUpdate, user_id: CurrentUser, service: Planning) -> Budget:
    return service.update_budget(user_id, budget_id, req.model_dump(exclude_unset=True))


@router.delete("/budgets/{budget_id}", status_code=204)
async def delete_budget(budget_id: int, user_id: CurrentUser, service: Planning) -> None:
    service.delete_budget(user_id, budget_id)


@router.get("/budgets/{budget_id}/progress", response_model=BudgetProgress)
async def budget_progress(budget_id: int, user_id: CurrentUser, service: Planning) -> BudgetProgress:
    return service.budget_progress(user_id, budget_id)


@router.get("/goals", response_model=list[Goal])
async def list_goals(user_id: CurrentUser, service: Planning) -> list[Goal]:
    return service.list_goals(user_id)


@router.post("/goals", response_model=Goal, status_code=201)
async def create_goal(req: GoalCreate, user_id: CurrentUser, service: Planning) -> Goal:
    return service.create_goal(user_id, Goal(user_id=user_id, **req.model_dump()))


@router.put("/goals/{goal_id}", response_model=Goal)
async def update_goal(goal_id: int, req: GoalUpdate, user_id: CurrentUser, service: Planning) -> Goal:
    return service.update_goal(user_id, goal_id, req.model_dump(exclude_unset=True))


@router.delete("/goals/{goal_id}", status_code=204)
async def delete_goal(goal_id: int, user_id: CurrentUser, service: Planning) -> None:
    service.delete_goal(user_id, goal_id)


@router.post("/goals/{goal_id}/contribute", response_model=Goal)
async def contribute(goal_id: int, req: ContributionRequest, user_id: CurrentUser, service: Planning) -> Goal:
    return service.contribute(user_id, goal_id, req.amount)
