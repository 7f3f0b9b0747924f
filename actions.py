"""Request-level entry points shared by every transport.

Each public method authenticates, validates the loosely typed payload into a
command object, runs one service call, and returns either
``{"success": True, ...}`` or ``{"error": message, "code": code}``. Nothing
raised by the services escapes this module.
"""

import logging
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from authz import AccessScope
from errors import (
    NotAuthenticated,
    OperationFailed,
    ServiceError,
    Unauthorized,
    ValidationFailed,
)
from identity import ExternalPrincipal, current_user
from models import Category, Expense, Goal, Group, Saving, User
from schemas import (
    CategoryIn,
    CategoryUpdate,
    ExpenseIn,
    ExpenseUpdate,
    GoalIn,
    GoalUpdate,
    GroupIn,
    InviteAcceptIn,
    RecordFilters,
    SavingIn,
    SavingUpdate,
    format_cents,
)
from services import (
    CategoryService,
    ExpenseService,
    GoalService,
    GroupService,
    Invalidator,
    InviteService,
    SavingService,
    SummaryService,
)

logger = logging.getLogger(__name__)

Result = dict[str, Any]


def serialize_user(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "avatar_url": user.avatar_url,
    }


def serialize_group(group: Group) -> dict[str, object]:
    return {
        "id": group.id,
        "name": group.name,
        "created_by": group.created_by,
        "members": [
            {
                "user_id": member.user_id,
                "joined_at": member.joined_at.isoformat(),
                "user": serialize_user(member.user),
            }
            for member in group.members
        ],
    }


def serialize_category(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "icon": category.icon,
        "user_id": category.user_id,
        "group_id": category.group_id,
    }


def serialize_goal(goal: Goal) -> dict[str, object]:
    return {
        "id": goal.id,
        "name": goal.name,
        "target_amount": format_cents(goal.target_amount_cents),
        "color": goal.color,
        "icon": goal.icon,
        "description": goal.description,
        "user_id": goal.user_id,
        "group_id": goal.group_id,
    }


def serialize_expense(expense: Expense) -> dict[str, object]:
    return {
        "id": expense.id,
        "user_id": expense.user_id,
        "group_id": expense.group_id,
        "category_id": expense.category_id,
        "amount": format_cents(expense.amount_cents),
        "description": expense.description,
        "date": expense.date.isoformat(),
    }


def serialize_saving(saving: Saving) -> dict[str, object]:
    return {
        "id": saving.id,
        "user_id": saving.user_id,
        "group_id": saving.group_id,
        "goal_id": saving.goal_id,
        "amount": format_cents(saving.amount_cents),
        "description": saving.description,
        "date": saving.date.isoformat(),
    }


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    message = str(first.get("msg", "Invalid input")).removeprefix("Value error, ")
    field = ".".join(str(part) for part in first.get("loc", ()))
    return f"{field}: {message}" if field else message


def _failure(exc: ServiceError) -> Result:
    result: Result = {"error": exc.message, "code": exc.code}
    if getattr(exc, "retryable", False):
        result["retryable"] = True
    return result


class Actions:
    def __init__(
        self,
        session: Session,
        user: Optional[User],
        invalidate: Optional[Invalidator] = None,
    ) -> None:
        self.session = session
        self.user = user
        self.invalidate = invalidate
        self._scope: Optional[AccessScope] = None

    @classmethod
    def for_principal(
        cls,
        session: Session,
        principal: Optional[ExternalPrincipal],
        invalidate: Optional[Invalidator] = None,
    ) -> "Actions":
        return cls(session, current_user(session, principal), invalidate)

    @property
    def scope(self) -> AccessScope:
        # Memberships are read once per request and reused by every call.
        if self._scope is None:
            self._scope = AccessScope.load(self.session, self.user.id)
        return self._scope

    def _run(
        self,
        action: str,
        call: Callable[..., Result],
        schema: Optional[type[BaseModel]] = None,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Result:
        try:
            if self.user is None:
                raise NotAuthenticated()
            args = []
            if schema is not None:
                try:
                    args.append(schema.model_validate(dict(payload or {})))
                except ValidationError as exc:
                    raise ValidationFailed(_validation_message(exc)) from exc
            result = call(*args)
        except ServiceError as exc:
            self.session.rollback()
            if isinstance(exc, Unauthorized):
                logger.info(
                    f"action_denied: action={action} user_id={self.user.id} "
                    f"reason={exc.message}"
                )
            return _failure(exc)
        except OperationalError:
            self.session.rollback()
            logger.exception(f"action_failed: action={action} retryable=True")
            return _failure(OperationFailed(retryable=True))
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(f"action_failed: action={action}")
            return _failure(OperationFailed())
        return {"success": True, **result}

    def _service(self, service_cls):
        return service_cls(self.session, self.scope, self.invalidate)

    # Groups and membership

    def list_groups(self) -> Result:
        def call() -> Result:
            groups = self._service(GroupService).list_for_user()
            return {"groups": [serialize_group(group) for group in groups]}

        return self._run("list_groups", call)

    def create_group(self, payload: Mapping[str, Any]) -> Result:
        def call(data: GroupIn) -> Result:
            group = self._service(GroupService).create(data)
            return {"group_id": group.id}

        return self._run("create_group", call, GroupIn, payload)

    def rename_group(self, group_id: int, payload: Mapping[str, Any]) -> Result:
        def call(data: GroupIn) -> Result:
            group = self._service(GroupService).rename(group_id, data)
            return {"group_id": group.id, "name": group.name}

        return self._run("rename_group", call, GroupIn, payload)

    def remove_member(self, group_id: int, user_id: int) -> Result:
        def call() -> Result:
            deleted = self._service(GroupService).remove_member(group_id, user_id)
            return {"group_deleted": deleted}

        return self._run("remove_member", call)

    def leave_group(self, group_id: int) -> Result:
        def call() -> Result:
            deleted = self._service(GroupService).leave(group_id)
            return {"group_deleted": deleted}

        return self._run("leave_group", call)

    def generate_invite(self, group_id: int) -> Result:
        def call() -> Result:
            invite = self._service(InviteService).generate(group_id)
            return {
                "invite_code": invite.code,
                "expires_at": invite.expires_at.isoformat(),
            }

        return self._run("generate_invite", call)

    def accept_invite(self, payload: Mapping[str, Any]) -> Result:
        def call(data: InviteAcceptIn) -> Result:
            invite = self._service(InviteService).accept(data)
            return {"group_id": invite.group_id, "group_name": invite.group.name}

        return self._run("accept_invite", call, InviteAcceptIn, payload)

    # Categories

    def list_categories(self, group_id: Optional[int] = None) -> Result:
        def call() -> Result:
            categories = self._service(CategoryService).list_all(group_id)
            return {"categories": [serialize_category(c) for c in categories]}

        return self._run("list_categories", call)

    def create_category(self, payload: Mapping[str, Any]) -> Result:
        def call(data: CategoryIn) -> Result:
            category = self._service(CategoryService).create(data)
            return {"category_id": category.id}

        return self._run("create_category", call, CategoryIn, payload)

    def update_category(self, category_id: int, payload: Mapping[str, Any]) -> Result:
        def call(data: CategoryUpdate) -> Result:
            category = self._service(CategoryService).update(category_id, data)
            return {"category": serialize_category(category)}

        return self._run("update_category", call, CategoryUpdate, payload)

    def delete_category(self, category_id: int) -> Result:
        def call() -> Result:
            self._service(CategoryService).delete(category_id)
            return {}

        return self._run("delete_category", call)

    # Goals

    def list_goals(self, group_id: Optional[int] = None) -> Result:
        def call() -> Result:
            goals = self._service(GoalService).list_all(group_id)
            return {"goals": [serialize_goal(goal) for goal in goals]}

        return self._run("list_goals", call)

    def create_goal(self, payload: Mapping[str, Any]) -> Result:
        def call(data: GoalIn) -> Result:
            goal = self._service(GoalService).create(data)
            return {"goal_id": goal.id}

        return self._run("create_goal", call, GoalIn, payload)

    def update_goal(self, goal_id: int, payload: Mapping[str, Any]) -> Result:
        def call(data: GoalUpdate) -> Result:
            goal = self._service(GoalService).update(goal_id, data)
            return {"goal": serialize_goal(goal)}

        return self._run("update_goal", call, GoalUpdate, payload)

    def delete_goal(self, goal_id: int) -> Result:
        def call() -> Result:
            self._service(GoalService).delete(goal_id)
            return {}

        return self._run("delete_goal", call)

    # Expenses

    def list_expenses(self, payload: Optional[Mapping[str, Any]] = None) -> Result:
        def call(filters: RecordFilters) -> Result:
            expenses = self._service(ExpenseService).list(filters)
            return {"expenses": [serialize_expense(e) for e in expenses]}

        return self._run("list_expenses", call, RecordFilters, payload)

    def create_expense(self, payload: Mapping[str, Any]) -> Result:
        def call(data: ExpenseIn) -> Result:
            expense = self._service(ExpenseService).create(data)
            return {"expense_id": expense.id}

        return self._run("create_expense", call, ExpenseIn, payload)

    def update_expense(self, expense_id: int, payload: Mapping[str, Any]) -> Result:
        def call(data: ExpenseUpdate) -> Result:
            expense = self._service(ExpenseService).update(expense_id, data)
            return {"expense": serialize_expense(expense)}

        return self._run("update_expense", call, ExpenseUpdate, payload)

    def delete_expense(self, expense_id: int) -> Result:
        def call() -> Result:
            self._service(ExpenseService).delete(expense_id)
            return {}

        return self._run("delete_expense", call)

    # Savings

    def list_savings(self, payload: Optional[Mapping[str, Any]] = None) -> Result:
        def call(filters: RecordFilters) -> Result:
            savings = self._service(SavingService).list(filters)
            return {"savings": [serialize_saving(s) for s in savings]}

        return self._run("list_savings", call, RecordFilters, payload)

    def create_saving(self, payload: Mapping[str, Any]) -> Result:
        def call(data: SavingIn) -> Result:
            saving = self._service(SavingService).create(data)
            return {"saving_id": saving.id}

        return self._run("create_saving", call, SavingIn, payload)

    def update_saving(self, saving_id: int, payload: Mapping[str, Any]) -> Result:
        def call(data: SavingUpdate) -> Result:
            saving = self._service(SavingService).update(saving_id, data)
            return {"saving": serialize_saving(saving)}

        return self._run("update_saving", call, SavingUpdate, payload)

    def delete_saving(self, saving_id: int) -> Result:
        def call() -> Result:
            self._service(SavingService).delete(saving_id)
            return {}

        return self._run("delete_saving", call)

    # Dashboard

    def summary(self, payload: Optional[Mapping[str, Any]] = None) -> Result:
        def call(filters: RecordFilters) -> Result:
            return self._service(SummaryService).totals(filters)

        return self._run("summary", call, RecordFilters, payload)

    def goal_progress(self) -> Result:
        def call() -> Result:
            return {"goals": self._service(SummaryService).goal_progress()}

        return self._run("goal_progress", call)
