from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InviteStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    expired = "expired"


INVITE_STATUS_ENUM = SAEnum(
    InviteStatus,
    name="invitestatus",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

DEFAULT_CATEGORY_COLOR = "#6366f1"
DEFAULT_GOAL_COLOR = "#10b981"

PERSONAL_XOR_SHARED = (
    "(user_id IS NOT NULL AND group_id IS NULL) "
    "OR (user_id IS NULL AND group_id IS NOT NULL)"
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text)

    memberships: Mapped[list["GroupMember"]] = relationship(
        "GroupMember", back_populates="user"
    )


class Group(Base, TimestampMixin):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    creator: Mapped["User"] = relationship("User")
    members: Mapped[list["GroupMember"]] = relationship(
        "GroupMember",
        back_populates="group",
        order_by="GroupMember.joined_at",
        passive_deletes="all",
    )


class GroupMember(Base):
    __tablename__ = "group_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    group: Mapped["Group"] = relationship("Group", back_populates="members")
    user: Mapped["User"] = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member"),
        Index("ix_group_members_user", "user_id"),
    )


class Invite(Base):
    __tablename__ = "invites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    invited_by: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    status: Mapped[InviteStatus] = mapped_column(
        INVITE_STATUS_ENUM, nullable=False, default=InviteStatus.pending
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    group: Mapped["Group"] = relationship("Group")


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE")
    )
    group_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[str] = mapped_column(
        String(7), nullable=False, default=DEFAULT_CATEGORY_COLOR
    )
    icon: Mapped[Optional[str]] = mapped_column(String(50))

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category", passive_deletes="all"
    )

    __table_args__ = (
        CheckConstraint(PERSONAL_XOR_SHARED, name="ck_category_personal_xor_shared"),
        Index("ix_categories_user", "user_id"),
        Index("ix_categories_group", "group_id"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE")
    )
    group_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    target_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    color: Mapped[str] = mapped_column(
        String(7), nullable=False, default=DEFAULT_GOAL_COLOR
    )
    icon: Mapped[Optional[str]] = mapped_column(String(50))
    description: Mapped[Optional[str]] = mapped_column(Text)

    group: Mapped[Optional["Group"]] = relationship("Group")
    savings: Mapped[list["Saving"]] = relationship(
        "Saving", back_populates="goal", passive_deletes="all"
    )

    __table_args__ = (
        CheckConstraint(PERSONAL_XOR_SHARED, name="ck_goal_personal_xor_shared"),
        CheckConstraint(
            "target_amount_cents IS NULL OR target_amount_cents > 0",
            name="ck_goal_target_positive",
        ),
        Index("ix_goals_user", "user_id"),
        Index("ix_goals_group", "group_id"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    group_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE")
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    user: Mapped["User"] = relationship("User")
    group: Mapped[Optional["Group"]] = relationship("Group")
    category: Mapped["Category"] = relationship("Category", back_populates="expenses")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
        Index("ix_expenses_user_date", "user_id", "date"),
        Index("ix_expenses_group_date", "group_id", "date"),
        Index("ix_expenses_category", "category_id"),
    )


class Saving(Base, TimestampMixin):
    __tablename__ = "savings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    group_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE")
    )
    goal_id: Mapped[int] = mapped_column(
        ForeignKey("goals.id", ondelete="RESTRICT"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    user: Mapped["User"] = relationship("User")
    group: Mapped[Optional["Group"]] = relationship("Group")
    goal: Mapped["Goal"] = relationship("Goal", back_populates="savings")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_savings_amount_positive"),
        Index("ix_savings_user_date", "user_id", "date"),
        Index("ix_savings_group_date", "group_id", "date"),
        Index("ix_savings_goal", "goal_id"),
    )
