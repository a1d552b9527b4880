from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from ledgerflow.errors import NotFoundError, ValidationError
from ledgerflow.models import Budget, Goal
from ledgerflow.services.access import AccountAccess
from ledgerflow.storage.repositories import Store


class BudgetProgress(BaseModel):
    budget: Budget
    spent: Decimal
    remaining: Decimal
    percent_used: float


class PlanningService:
    """Budgets and savings goals."""

    def __init__(self, store: Store, access: AccountAccess) -> None:
        self.store = store
        self.access = access

    def _check_category(self, user_id: str, category_id: int) -> None:
        category = self.store.categories.get(category_id)
        if category is None or category.user_id != user_id or category.is_deleted:
            raise NotFoundError.for_entity("Category", category_id)

    @staticmethod
    def _validate_budget(budget: Budget) -> None:
        if budget.amount <= 0:
            raise ValidationError("Budget amount must be positive")
        if budget.period_end < budget.period_start:
            raise ValidationError("Budget period end must not precede its start")

    def get_budget(self, user_id: str, budget_id: int) -> Budget:
        budget = self.store.budgets.get(budget_id)
        if budget is None or budget.user_id != user_id:
            raise NotFoundError.for_entity("Budget", budget_id)
        return budget

    def list_budgets(self, user_id: str) -> list[Budget]:
        return self.store.budgets.find(lambda b: b.user_id == user_id)

    def create_budget(self, user_id: str, budget: Budget) -> Budget:
        budget.user_id = user_id
        self._validate_budget(budget)
        self._check_category(user_id, budget.category_id)
        return self.store.budgets.add(budget)

    def update_budget(self, user_id: str, budget_id: int, changes: dict[str, Any]) -> Budget:
        budget = self.get_budget(user_id, budget_id)
        data = budget.model_dump()
        data.update({k: v for k, v in changes.items() if v is not None and k not in {"id", "user_id"}})
        updated = Budget.model_validate(data)
        self._validate_budget(updated)
        self._check_category(user_id, updated.category_id)
        return self.store.budgets.update(updated)

    def delete_budget(self, user_id: str, budget_id: int) -> None:
        self.store.budgets.remove(self.get_budget(user_id, budget_id).id)

    def budget_progress(self, user_id: str, budget_id: int) -> BudgetProgress:
        budget = self.get_budget(user_id, budget_id)
        account_ids = self.access.readable_account_ids(user_id)
        spent = sum(
            (
                abs(t.amount)
                for t in self.store.transactions.find(
                    lambda t: t.account_id in account_ids
                    and not t.is_deleted
                    and t.category_id == budget.category_id
                    and t.amount < 0
                    and budget.period_start <= t.transaction_date <= budget.period_end
                )
            ),
            Decimal("0"),
        )
        return BudgetProgress(
            budget=budget,
            spent=spent,
            remaining=budget.amount - spent,
            percent_used=round(float(spent / budget.amount) * 100, 2),
        )

    def get_goal(self, user_id: str, goal_id: int) -> Goal:
        goal = self.store.goals.get(goal_id)
        if goal is None or goal.user_id != user_id:
            raise NotFoundError.for_entity("Goal", goal_id)
        return goal

    def list_goals(self, user_id: str) -> list[Goal]:
        return self.store.goals.find(lambda g: g.user_id == user_id)

    def create_goal(self, user_id: str, goal: Goal) -> Goal:
        if goal.target_amount <= 0:
            raise ValidationError("Goal target must be positive")
        goal.user_id = user_id
        goal.is_completed = goal.current_amount >= goal.target_amount
        return self.store.goals.add(goal)

    def update_goal(self, user_id: str, goal_id: int, changes: dict[str, Any]) -> Goal:
        goal = self.get_goal(user_id, goal_id)
        data = goal.model_dump()
        data.update({k: v for k, v in changes.items() if v is not None and k not in {"id", "user_id"}})
        updated = Goal.model_validate(data)
        if updated.target_amount <= 0:
            raise ValidationError("Goal target must be positive")
        updated.is_completed = updated.current_amount >= updated.target_amount
        return self.store.goals.update(updated)

    def delete_goal(self, user_id: str, goal_id: int) -> None:
        self.store.goals.remove(self.get_goal(user_id, goal_id).id)

    def contribute(self, user_id: str, goal_id: int, amount: Decimal) -> Goal:
        if amount == 0:
            raise ValidationError("Contribution must be non-zero")
        goal = self.get_goal(user_id, goal_id)
        goal.current_amount = max(Decimal("0"), goal.current_amount + amount)
        goal.is_completed = goal.current_amount >= goal.target_amount
        return self.store.goals.update(goal)
