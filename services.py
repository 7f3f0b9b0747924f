from __future__ import annotations

import logging
import secrets
import string
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from authz import AccessScope
from config import get_settings
from errors import (
    AlreadyMember,
    CannotRemoveCreator,
    Conflict,
    Expired,
    NotFound,
    Unauthorized,
    ValidationFailed,
)
from models import (
    DEFAULT_CATEGORY_COLOR,
    DEFAULT_GOAL_COLOR,
    Category,
    Expense,
    Goal,
    Group,
    GroupMember,
    Invite,
    InviteStatus,
    Saving,
    utcnow,
)
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
)

logger = logging.getLogger(__name__)

Invalidator = Callable[[str], None]

DASHBOARD_PATH = "/dashboard"
INVITE_ALPHABET = string.ascii_uppercase + string.digits
INVITE_CODE_ATTEMPTS = 5


def _log_invalidation(path: str) -> None:
    logger.debug(f"invalidate: path={path}")


def generate_invite_code(length: Optional[int] = None) -> str:
    length = length or get_settings().invite_code_length
    return "".join(secrets.choice(INVITE_ALPHABET) for _ in range(length))


def count_members(session: Session, group_id: int) -> int:
    return int(
        session.execute(
            select(func.count(GroupMember.id)).where(GroupMember.group_id == group_id)
        ).scalar_one()
        or 0
    )


def find_membership(
    session: Session, group_id: int, user_id: int
) -> Optional[GroupMember]:
    return session.scalar(
        select(GroupMember).where(
            GroupMember.group_id == group_id, GroupMember.user_id == user_id
        )
    )


class ScopedService:
    def __init__(
        self,
        session: Session,
        scope: AccessScope,
        invalidate: Optional[Invalidator] = None,
    ) -> None:
        self.session = session
        self.scope = scope
        self.invalidate = invalidate or _log_invalidation

    @property
    def user_id(self) -> int:
        return self.scope.user_id

    def _require_group_access(self, group_id: Optional[int]) -> None:
        if not self.scope.can_create_in(group_id):
            raise Unauthorized("You are not a member of this group")

    def _get_visible(self, model, record_id: int, label: str):
        record = self.session.get(model, record_id)
        if not record or not self.scope.can_view(record):
            raise NotFound(f"{label} not found")
        return record

    def _get_mutable(self, model, record_id: int, label: str):
        record = self.session.get(model, record_id)
        if not record:
            raise NotFound(f"{label} not found")
        if not self.scope.can_mutate(record):
            raise Unauthorized()
        return record


class GroupService(ScopedService):
    def create(self, data: GroupIn) -> Group:
        group = Group(name=data.name, created_by=self.user_id)
        self.session.add(group)
        self.session.flush()
        self.session.add(GroupMember(group_id=group.id, user_id=self.user_id))
        self.session.commit()
        self.session.refresh(group)
        logger.info(f"group_created: group_id={group.id} user_id={self.user_id}")
        self.invalidate(DASHBOARD_PATH)
        return group

    def get(self, group_id: int) -> Group:
        group = self.session.scalar(
            select(Group)
            .options(selectinload(Group.members).joinedload(GroupMember.user))
            .where(Group.id == group_id)
        )
        if not group or not self.scope.can_view(group):
            raise NotFound("Group not found")
        return group

    def list_for_user(self) -> list[Group]:
        stmt = (
            select(Group)
            .options(selectinload(Group.members).joinedload(GroupMember.user))
            .where(self.scope.visible(Group))
            .order_by(Group.created_at, Group.id)
        )
        return self.session.scalars(stmt).all()

    def rename(self, group_id: int, data: GroupIn) -> Group:
        group = self._get_mutable(Group, group_id, "Group")
        group.name = data.name
        self.session.commit()
        self.invalidate(DASHBOARD_PATH)
        return group

    def remove_member(self, group_id: int, target_user_id: int) -> bool:
        """Remove ``target_user_id`` from the group.

        Returns True when the removal emptied the group and the group was
        deleted together with all of its shared records and invites.
        """
        group = self.session.scalar(
            select(Group).where(Group.id == group_id).with_for_update()
        )
        if not group:
            raise NotFound("Group not found")
        if not self.scope.can_mutate(group):
            raise Unauthorized("You are not a member of this group")

        membership = self.session.scalar(
            select(GroupMember)
            .where(
                GroupMember.group_id == group_id,
                GroupMember.user_id == target_user_id,
            )
            .with_for_update()
        )
        if not membership:
            raise NotFound("Member not found")

        remaining = count_members(self.session, group_id)
        if target_user_id == group.created_by and remaining > 1:
            raise CannotRemoveCreator()
        if remaining == 1 and self._personal_entries_using(group_id):
            raise Conflict(
                "Personal entries still use this group's categories or goals"
            )

        self.session.delete(membership)
        self.session.flush()

        deleted = False
        if count_members(self.session, group_id) == 0:
            self._teardown(group)
            deleted = True

        self.session.commit()
        logger.info(
            f"member_removed: group_id={group_id} user_id={target_user_id} "
            f"by={self.user_id} group_deleted={deleted}"
        )
        self.invalidate(DASHBOARD_PATH)
        return deleted

    def leave(self, group_id: int) -> bool:
        return self.remove_member(group_id, self.user_id)

    def _personal_entries_using(self, group_id: int) -> int:
        category_ids = select(Category.id).where(Category.group_id == group_id)
        goal_ids = select(Goal.id).where(Goal.group_id == group_id)
        expenses = self.session.scalar(
            select(func.count(Expense.id)).where(
                Expense.group_id.is_(None), Expense.category_id.in_(category_ids)
            )
        )
        savings = self.session.scalar(
            select(func.count(Saving.id)).where(
                Saving.group_id.is_(None), Saving.goal_id.in_(goal_ids)
            )
        )
        return int(expenses or 0) + int(savings or 0)

    def _teardown(self, group: Group) -> None:
        group_id = group.id
        self.session.execute(
            delete(Expense)
            .where(Expense.group_id == group_id)
            .execution_options(synchronize_session="fetch")
        )
        self.session.execute(
            delete(Saving)
            .where(Saving.group_id == group_id)
            .execution_options(synchronize_session="fetch")
        )
        self.session.execute(delete(Category).where(Category.group_id == group_id))
        self.session.execute(delete(Goal).where(Goal.group_id == group_id))
        self.session.execute(delete(Invite).where(Invite.group_id == group_id))
        self.session.execute(
            delete(GroupMember).where(GroupMember.group_id == group_id)
        )
        self.session.execute(delete(Group).where(Group.id == group_id))
        self.session.flush()
        logger.warning(f"group_deleted: group_id={group_id} reason=last_member_left")


class InviteService(ScopedService):
    def generate(self, group_id: int) -> Invite:
        group = self.session.get(Group, group_id)
        if not group:
            raise NotFound("Group not found")
        if not self.scope.is_member(group_id):
            raise Unauthorized("You are not a member of this group")

        settings = get_settings()
        code = None
        for _ in range(INVITE_CODE_ATTEMPTS):
            candidate = generate_invite_code(settings.invite_code_length)
            taken = self.session.scalar(
                select(Invite.id).where(func.upper(Invite.code) == candidate)
            )
            if not taken:
                code = candidate
                break
        if code is None:
            raise Conflict("Could not generate a unique invite code, please retry")

        invite = Invite(
            group_id=group_id,
            invited_by=self.user_id,
            code=code,
            status=InviteStatus.pending,
            expires_at=utcnow() + timedelta(days=settings.invite_ttl_days),
        )
        self.session.add(invite)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict(
                "Could not generate a unique invite code, please retry"
            ) from exc
        self.session.commit()
        self.session.refresh(invite)
        logger.info(f"invite_generated: group_id={group_id} invite_id={invite.id}")
        self.invalidate(DASHBOARD_PATH)
        return invite

    def accept(self, data: InviteAcceptIn) -> Invite:
        invite = self.session.scalar(
            select(Invite).where(func.upper(Invite.code) == data.code).with_for_update()
        )
        if not invite or invite.status == InviteStatus.rejected:
            raise NotFound("Invalid or expired invite code")
        if invite.status == InviteStatus.accepted:
            raise Conflict("This invite has already been used")
        if invite.status == InviteStatus.expired:
            raise Expired()

        if utcnow() > invite.expires_at:
            invite.status = InviteStatus.expired
            self.session.commit()
            logger.info(f"invite_expired: invite_id={invite.id}")
            raise Expired()

        if find_membership(self.session, invite.group_id, self.user_id):
            raise AlreadyMember()

        # Only one concurrent acceptance can move the invite out of pending.
        result = self.session.execute(
            update(Invite)
            .where(Invite.id == invite.id, Invite.status == InviteStatus.pending)
            .values(status=InviteStatus.accepted)
        )
        if result.rowcount != 1:
            self.session.rollback()
            raise Conflict("This invite has already been used")

        self.session.add(GroupMember(group_id=invite.group_id, user_id=self.user_id))
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise AlreadyMember() from exc

        self.session.commit()
        self.session.refresh(invite)
        logger.info(
            f"invite_accepted: invite_id={invite.id} group_id={invite.group_id} "
            f"user_id={self.user_id}"
        )
        self.invalidate(DASHBOARD_PATH)
        return invite


def reject_invite(session: Session, invite_id: int) -> Invite:
    """Administrative pending -> rejected transition."""
    invite = session.get(Invite, invite_id)
    if not invite:
        raise NotFound("Invite not found")
    if invite.status != InviteStatus.pending:
        raise Conflict(f"Invite is already {invite.status.value}")
    invite.status = InviteStatus.rejected
    session.commit()
    logger.info(f"invite_rejected: invite_id={invite.id}")
    return invite


class CategoryService(ScopedService):
    def list_all(self, group_id: Optional[int] = None) -> list[Category]:
        stmt = select(Category).where(self.scope.visible(Category))
        if group_id is not None:
            stmt = stmt.where(Category.group_id == group_id)
        stmt = stmt.order_by(func.lower(Category.name), Category.id)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        return self._get_visible(Category, category_id, "Category")

    def create(self, data: CategoryIn) -> Category:
        self._require_group_access(data.group_id)
        category = Category(
            user_id=None if data.group_id else self.user_id,
            group_id=data.group_id,
            name=data.name,
            color=data.color or DEFAULT_CATEGORY_COLOR,
            icon=data.icon,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        self.invalidate(DASHBOARD_PATH)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self._get_mutable(Category, category_id, "Category")
        category.name = data.name
        category.color = data.color or DEFAULT_CATEGORY_COLOR
        category.icon = data.icon
        self.session.commit()
        self.session.refresh(category)
        self.invalidate(DASHBOARD_PATH)
        return category

    def delete(self, category_id: int) -> None:
        category = self._get_mutable(Category, category_id, "Category")
        in_use = self.session.scalar(
            select(func.count(Expense.id)).where(Expense.category_id == category.id)
        )
        if in_use:
            raise Conflict("Cannot delete category that is being used")
        self.session.delete(category)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("Cannot delete category that is being used") from exc
        self.session.commit()
        self.invalidate(DASHBOARD_PATH)


class GoalService(ScopedService):
    def list_all(self, group_id: Optional[int] = None) -> list[Goal]:
        stmt = (
            select(Goal)
            .options(joinedload(Goal.group))
            .where(self.scope.visible(Goal))
        )
        if group_id is not None:
            stmt = stmt.where(Goal.group_id == group_id)
        stmt = stmt.order_by(Goal.created_at.desc(), Goal.id.desc())
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> Goal:
        return self._get_visible(Goal, goal_id, "Goal")

    def create(self, data: GoalIn) -> Goal:
        self._require_group_access(data.group_id)
        goal = Goal(
            user_id=None if data.group_id else self.user_id,
            group_id=data.group_id,
            name=data.name,
            target_amount_cents=data.target_amount_cents,
            color=data.color or DEFAULT_GOAL_COLOR,
            icon=data.icon,
            description=data.description,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        self.invalidate(DASHBOARD_PATH)
        return goal

    def update(self, goal_id: int, data: GoalUpdate) -> Goal:
        goal = self._get_mutable(Goal, goal_id, "Goal")
        goal.name = data.name
        goal.target_amount_cents = data.target_amount_cents
        goal.color = data.color or DEFAULT_GOAL_COLOR
        goal.icon = data.icon
        goal.description = data.description
        self.session.commit()
        self.session.refresh(goal)
        self.invalidate(DASHBOARD_PATH)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self._get_mutable(Goal, goal_id, "Goal")
        in_use = self.session.scalar(
            select(func.count(Saving.id)).where(Saving.goal_id == goal.id)
        )
        if in_use:
            raise Conflict("Cannot delete goal that has savings")
        self.session.delete(goal)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("Cannot delete goal that has savings") from exc
        self.session.commit()
        self.invalidate(DASHBOARD_PATH)


class _EntryService(ScopedService):
    """Shared create/update/delete flow for expenses and savings."""

    model: type
    parent_model: type
    parent_field: str
    parent_relationship: str
    label: str
    parent_label: str

    def _resolve_parent(self, parent_id: int, group_id: Optional[int]):
        parent = self.session.get(self.parent_model, parent_id)
        if not parent or not self.scope.can_view(parent):
            raise ValidationFailed(f"{self.parent_label} not found")
        if group_id is not None and parent.group_id != group_id:
            raise ValidationFailed(
                f"{self.parent_label} must belong to the same group"
            )
        return parent

    def _resolve_payer(self, paid_by: Optional[int], group_id: Optional[int]) -> int:
        if group_id is None or paid_by is None or paid_by == self.user_id:
            return self.user_id
        if find_membership(self.session, group_id, paid_by):
            return paid_by
        logger.warning(
            f"payer_not_member: group_id={group_id} paid_by={paid_by} "
            f"fallback_user_id={self.user_id}"
        )
        return self.user_id

    def get(self, record_id: int):
        return self._get_visible(self.model, record_id, self.label)

    def list(self, filters: Optional[RecordFilters] = None) -> list:
        filters = filters or RecordFilters()
        model = self.model
        stmt = (
            select(model)
            .options(
                joinedload(getattr(model, self.parent_relationship)),
                joinedload(model.user),
                joinedload(model.group),
            )
            .where(self.scope.visible(model))
            .order_by(model.date.desc(), model.id.desc())
        )
        if filters.group_id is not None:
            stmt = stmt.where(model.group_id == filters.group_id)
        if filters.start is not None:
            stmt = stmt.where(model.date >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(model.date <= filters.end)
        return self.session.scalars(stmt).all()

    def _create(self, data, parent_id: int):
        self._require_group_access(data.group_id)
        self._resolve_parent(parent_id, data.group_id)
        record = self.model(
            user_id=self._resolve_payer(data.paid_by, data.group_id),
            group_id=data.group_id,
            amount_cents=data.amount_cents,
            description=data.description,
            date=data.date,
        )
        setattr(record, self.parent_field, parent_id)
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        self.invalidate(DASHBOARD_PATH)
        return record

    def _update(self, record_id: int, data, parent_id: int):
        record = self._get_mutable(self.model, record_id, self.label)
        self._resolve_parent(parent_id, record.group_id)
        setattr(record, self.parent_field, parent_id)
        record.amount_cents = data.amount_cents
        record.description = data.description
        record.date = data.date
        if record.group_id is not None and data.paid_by is not None:
            record.user_id = self._resolve_payer(data.paid_by, record.group_id)
        self.session.commit()
        self.session.refresh(record)
        self.invalidate(DASHBOARD_PATH)
        return record

    def delete(self, record_id: int) -> None:
        record = self._get_mutable(self.model, record_id, self.label)
        self.session.delete(record)
        self.session.commit()
        self.invalidate(DASHBOARD_PATH)


class ExpenseService(_EntryService):
    model = Expense
    parent_model = Category
    parent_field = "category_id"
    parent_relationship = "category"
    label = "Expense"
    parent_label = "Category"

    def create(self, data: ExpenseIn) -> Expense:
        return self._create(data, data.category_id)

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        return self._update(expense_id, data, data.category_id)


class SavingService(_EntryService):
    model = Saving
    parent_model = Goal
    parent_field = "goal_id"
    parent_relationship = "goal"
    label = "Saving"
    parent_label = "Goal"

    def create(self, data: SavingIn) -> Saving:
        return self._create(data, data.goal_id)

    def update(self, saving_id: int, data: SavingUpdate) -> Saving:
        return self._update(saving_id, data, data.goal_id)


class SummaryService(ScopedService):
    def totals(self, filters: Optional[RecordFilters] = None) -> dict[str, object]:
        filters = filters or RecordFilters()

        expense_stmt = (
            select(Expense.group_id, func.coalesce(func.sum(Expense.amount_cents), 0))
            .where(self.scope.visible(Expense))
            .group_by(Expense.group_id)
        )
        savings_stmt = select(func.coalesce(func.sum(Saving.amount_cents), 0)).where(
            self.scope.visible(Saving)
        )
        if filters.start is not None:
            expense_stmt = expense_stmt.where(Expense.date >= filters.start)
            savings_stmt = savings_stmt.where(Saving.date >= filters.start)
        if filters.end is not None:
            expense_stmt = expense_stmt.where(Expense.date <= filters.end)
            savings_stmt = savings_stmt.where(Saving.date <= filters.end)

        by_group = {
            group_id: int(total or 0)
            for group_id, total in self.session.execute(expense_stmt).all()
        }
        personal = by_group.pop(None, 0)

        names = {}
        if by_group:
            names = dict(
                self.session.execute(
                    select(Group.id, Group.name).where(Group.id.in_(list(by_group)))
                ).all()
            )
        groups = [
            {
                "group_id": group_id,
                "group_name": names.get(group_id, ""),
                "total_cents": total,
            }
            for group_id, total in sorted(by_group.items())
        ]
        savings = int(self.session.execute(savings_stmt).scalar_one() or 0)
        return {
            "personal_expenses_cents": personal,
            "groups": groups,
            "total_expenses_cents": personal + sum(by_group.values()),
            "total_savings_cents": savings,
        }

    def goal_progress(self) -> list[dict[str, object]]:
        goals = self.session.scalars(
            select(Goal)
            .where(self.scope.visible(Goal), Goal.target_amount_cents.isnot(None))
            .order_by(Goal.created_at.desc(), Goal.id.desc())
        ).all()
        if not goals:
            return []

        saved_by_goal = dict(
            self.session.execute(
                select(Saving.goal_id, func.coalesce(func.sum(Saving.amount_cents), 0))
                .where(
                    self.scope.visible(Saving),
                    Saving.goal_id.in_([goal.id for goal in goals]),
                )
                .group_by(Saving.goal_id)
            ).all()
        )

        progress = []
        for goal in goals:
            saved = int(saved_by_goal.get(goal.id, 0) or 0)
            target = goal.target_amount_cents
            percentage = min(saved * 100 / target, 100.0) if target else 0.0
            progress.append(
                {
                    "goal_id": goal.id,
                    "name": goal.name,
                    "group_id": goal.group_id,
                    "saved_cents": saved,
                    "target_cents": target,
                    "percentage": round(percentage, 1),
                }
            )
        return progress
