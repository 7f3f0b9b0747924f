"""Visibility and mutation rules for personal and group-owned records.

Categories and goals are *owned*: exactly one of ``user_id`` / ``group_id`` is
set. Expenses and savings are *attributed*: ``user_id`` names who paid or saved
and is always set, while ``group_id`` decides whether the entry is shared.

An ``AccessScope`` is built once per request from the user's live memberships
and handed to every service touched by that request, so one response never
mixes two different views of the user's groups.
"""

import logging
from typing import Iterable, Optional, Union

from sqlalchemy import and_, false, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from models import Category, Expense, Goal, Group, GroupMember, Saving

logger = logging.getLogger(__name__)

OwnedRecord = Union[Category, Goal]

OWNED_MODELS = (Category, Goal)
ATTRIBUTED_MODELS = (Expense, Saving)


def load_group_ids(session: Session, user_id: int) -> frozenset[int]:
    rows = session.scalars(
        select(GroupMember.group_id).where(GroupMember.user_id == user_id)
    ).all()
    return frozenset(rows)


class AccessScope:
    def __init__(self, user_id: int, group_ids: Iterable[int] = ()) -> None:
        self.user_id = user_id
        self.group_ids = frozenset(group_ids)

    @classmethod
    def load(cls, session: Session, user_id: int) -> "AccessScope":
        return cls(user_id, load_group_ids(session, user_id))

    def __repr__(self) -> str:
        groups = sorted(self.group_ids)
        return f"AccessScope(user_id={self.user_id}, group_ids={groups})"

    def is_member(self, group_id: Optional[int]) -> bool:
        return group_id is not None and group_id in self.group_ids

    def visible(self, model) -> ColumnElement[bool]:
        """SQL predicate selecting the rows of ``model`` this user may read."""
        if model is Group:
            return self._in_groups(Group.id)
        if model in OWNED_MODELS:
            personal = and_(model.user_id == self.user_id, model.group_id.is_(None))
            shared = and_(model.user_id.is_(None), self._in_groups(model.group_id))
            return or_(personal, shared)
        if model in ATTRIBUTED_MODELS:
            personal = and_(model.user_id == self.user_id, model.group_id.is_(None))
            return or_(personal, self._in_groups(model.group_id))
        raise TypeError(f"No visibility rule for {model!r}")

    def _in_groups(self, column) -> ColumnElement[bool]:
        if not self.group_ids:
            return false()
        return column.in_(sorted(self.group_ids))

    def can_view(self, record) -> bool:
        if isinstance(record, Group):
            return self.is_member(record.id)
        if isinstance(record, OWNED_MODELS):
            if not _has_valid_owner(record):
                return False
            if record.group_id is None:
                return record.user_id == self.user_id
            return self.is_member(record.group_id)
        if isinstance(record, ATTRIBUTED_MODELS):
            if record.user_id is None:
                return False
            if record.group_id is None:
                return record.user_id == self.user_id
            return self.is_member(record.group_id)
        return False

    def can_mutate(self, record) -> bool:
        # Any current member may edit any shared row of the group, so mutation
        # and visibility coincide for every record kind.
        allowed = self.can_view(record)
        if not allowed:
            logger.debug(
                f"authz_denied: user_id={self.user_id} "
                f"record={type(record).__name__} id={getattr(record, 'id', None)}"
            )
        return allowed

    def can_create_in(self, group_id: Optional[int]) -> bool:
        if group_id is None:
            return True
        return self.is_member(group_id)


def _has_valid_owner(record: OwnedRecord) -> bool:
    return (record.user_id is None) != (record.group_id is None)
