from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from authz import AccessScope
from database import Base, build_engine
from errors import Conflict, NotFound, Unauthorized, ValidationFailed
from models import Category, Expense, Group, User
from schemas import (
    CategoryIn,
    CategoryUpdate,
    ExpenseIn,
    ExpenseUpdate,
    GoalIn,
    GroupIn,
    InviteAcceptIn,
    RecordFilters,
    SavingIn,
)
from services import (
    CategoryService,
    ExpenseService,
    GoalService,
    GroupService,
    InviteService,
    SavingService,
    SummaryService,
)


def _user(session: Session, name: str) -> User:
    user = User(external_id=f"ext-{name}", email=f"{name}@example.com", name=name)
    session.add(user)
    session.commit()
    return user


def _scope(session: Session, user: User) -> AccessScope:
    return AccessScope.load(session, user.id)


def _couple(session: Session):
    alice = _user(session, "alice")
    bob = _user(session, "bob")
    group = GroupService(session, _scope(session, alice)).create(GroupIn(name="Home"))
    invite = InviteService(session, _scope(session, alice)).generate(group.id)
    InviteService(session, _scope(session, bob)).accept(
        InviteAcceptIn(code=invite.code)
    )
    return alice, bob, group


def test_group_category_is_editable_by_any_member_only() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice, bob, group = _couple(session)
        carol = _user(session, "carol")
        groceries = CategoryService(session, _scope(session, alice)).create(
            CategoryIn(name="Groceries", group_id=group.id)
        )

        assert groceries.user_id is None
        assert groceries.group_id == group.id
        assert groceries.color == "#6366f1"

        renamed = CategoryService(session, _scope(session, bob)).update(
            groceries.id, CategoryUpdate(name="Food", color="#ff0000")
        )
        assert renamed.name == "Food"
        assert renamed.color == "#ff0000"

        with pytest.raises(Unauthorized):
            CategoryService(session, _scope(session, carol)).update(
                groceries.id, CategoryUpdate(name="Mine")
            )
        with pytest.raises(NotFound):
            CategoryService(session, _scope(session, carol)).get(groceries.id)


def test_creating_in_foreign_group_is_unauthorized() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, _, group = _couple(session)
        carol = _user(session, "carol")

        with pytest.raises(Unauthorized):
            CategoryService(session, _scope(session, carol)).create(
                CategoryIn(name="Sneaky", group_id=group.id)
            )
        with pytest.raises(Unauthorized):
            GoalService(session, _scope(session, carol)).create(
                GoalIn(name="Sneaky", group_id=group.id)
            )
        assert session.scalar(select(func.count(Category.id))) == 0


def test_personal_expense_is_invisible_to_partner() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice, bob, _ = _couple(session)
        coffee = CategoryService(session, _scope(session, alice)).create(
            CategoryIn(name="Coffee")
        )
        expense = ExpenseService(session, _scope(session, alice)).create(
            ExpenseIn(amount="42.50", date="2024-03-01", category_id=coffee.id)
        )

        assert expense.amount_cents == 4250
        assert expense.user_id == alice.id
        assert expense.group_id is None

        assert ExpenseService(session, _scope(session, bob)).list() == []
        with pytest.raises(NotFound):
            ExpenseService(session, _scope(session, bob)).get(expense.id)
        with pytest.raises(Unauthorized):
            ExpenseService(session, _scope(session, bob)).delete(expense.id)

        mine = ExpenseService(session, _scope(session, alice)).list()
        assert [e.id for e in mine] == [expense.id]


def test_deleting_category_in_use_is_a_conflict() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice, _, group = _couple(session)
        scope = _scope(session, alice)
        food = CategoryService(session, scope).create(
            CategoryIn(name="Food", group_id=group.id)
        )
        ExpenseService(session, scope).create(
            ExpenseIn(
                amount="12",
                date="2024-03-02",
                category_id=food.id,
                group_id=group.id,
            )
        )

        with pytest.raises(Conflict, match="being used"):
            CategoryService(session, scope).delete(food.id)
        session.rollback()

        assert session.get(Category, food.id) is not None
        assert session.scalar(select(func.count(Expense.id))) == 1


def test_unused_category_can_be_deleted_by_partner() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice, bob, group = _couple(session)
        food = CategoryService(session, _scope(session, alice)).create(
            CategoryIn(name="Food", group_id=group.id)
        )
        food_id = food.id

        CategoryService(session, _scope(session, bob)).delete(food_id)

        assert session.get(Category, food_id) is None


def test_goal_with_savings_cannot_be_deleted() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice")
        scope = _scope(session, alice)
        trip = GoalService(session, scope).create(
            GoalIn(name="Trip", target_amount="500")
        )
        SavingService(session, scope).create(
            SavingIn(amount="50", date="2024-03-01", goal_id=trip.id)
        )

        with pytest.raises(Conflict, match="has savings"):
            GoalService(session, scope).delete(trip.id)


def test_group_entry_requires_category_from_same_group() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice, _, group = _couple(session)
        scope = _scope(session, alice)
        personal = CategoryService(session, scope).create(CategoryIn(name="Coffee"))

        with pytest.raises(ValidationFailed, match="same group"):
            ExpenseService(session, scope).create(
                ExpenseIn(
                    amount="5",
                    date="2024-03-01",
                    category_id=personal.id,
                    group_id=group.id,
                )
            )
        with pytest.raises(ValidationFailed, match="Category not found"):
            ExpenseService(session, scope).create(
                ExpenseIn(amount="5", date="2024-03-01", category_id=personal.id + 99)
            )


def test_unknown_payer_falls_back_to_acting_user() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice, bob, group = _couple(session)
        carol = _user(session, "carol")
        scope = _scope(session, alice)
        food = CategoryService(session, scope).create(
            CategoryIn(name="Food", group_id=group.id)
        )

        paid_by_bob = ExpenseService(session, scope).create(
            ExpenseIn(
                amount="30",
                date="2024-03-01",
                category_id=food.id,
                group_id=group.id,
                paid_by=bob.id,
            )
        )
        paid_by_stranger = ExpenseService(session, scope).create(
            ExpenseIn(
                amount="30",
                date="2024-03-01",
                category_id=food.id,
                group_id=group.id,
                paid_by=carol.id,
            )
        )

        assert paid_by_bob.user_id == bob.id
        assert paid_by_stranger.user_id == alice.id


def test_partner_can_update_shared_expense() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice, bob, group = _couple(session)
        food = CategoryService(session, _scope(session, alice)).create(
            CategoryIn(name="Food", group_id=group.id)
        )
        expense = ExpenseService(session, _scope(session, alice)).create(
            ExpenseIn(
                amount="10",
                date="2024-03-01",
                category_id=food.id,
                group_id=group.id,
            )
        )

        updated = ExpenseService(session, _scope(session, bob)).update(
            expense.id,
            ExpenseUpdate(
                amount="12,75",
                date="05.03.2024",
                category_id=food.id,
                description="Market",
                paid_by=bob.id,
            ),
        )

        assert updated.amount_cents == 1275
        assert updated.date == date(2024, 3, 5)
        assert updated.description == "Market"
        assert updated.user_id == bob.id
        assert updated.group_id == group.id


def test_list_filters_by_group_and_date_range() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice, _, group = _couple(session)
        scope = _scope(session, alice)
        shared = CategoryService(session, scope).create(
            CategoryIn(name="Food", group_id=group.id)
        )
        personal = CategoryService(session, scope).create(CategoryIn(name="Coffee"))
        for day, category_id, group_id in [
            ("2024-02-28", shared.id, group.id),
            ("2024-03-10", shared.id, group.id),
            ("2024-03-11", personal.id, None),
        ]:
            ExpenseService(session, scope).create(
                ExpenseIn(
                    amount="1",
                    date=day,
                    category_id=category_id,
                    group_id=group_id,
                )
            )

        service = ExpenseService(session, scope)
        march = service.list(RecordFilters(start="2024-03-01", end="2024-03-31"))
        in_group = service.list(RecordFilters(group_id=group.id))
        elsewhere = service.list(RecordFilters(group_id=group.id + 5))

        assert [e.date.isoformat() for e in march] == ["2024-03-11", "2024-03-10"]
        assert len(in_group) == 2
        assert elsewhere == []


def test_summary_and_goal_progress() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice, bob, group = _couple(session)
        scope = _scope(session, alice)
        shared = CategoryService(session, scope).create(
            CategoryIn(name="Food", group_id=group.id)
        )
        personal = CategoryService(session, scope).create(CategoryIn(name="Coffee"))
        ExpenseService(session, scope).create(
            ExpenseIn(
                amount="20",
                date="2024-03-01",
                category_id=shared.id,
                group_id=group.id,
            )
        )
        ExpenseService(session, scope).create(
            ExpenseIn(amount="2.50", date="2024-03-01", category_id=personal.id)
        )
        trip = GoalService(session, _scope(session, bob)).create(
            GoalIn(name="Trip", target_amount="200", group_id=group.id)
        )
        SavingService(session, _scope(session, bob)).create(
            SavingIn(amount="50", date="2024-03-01", goal_id=trip.id, group_id=group.id)
        )
        SavingService(session, scope).create(
            SavingIn(
                amount="250",
                date="2024-03-02",
                goal_id=trip.id,
                group_id=group.id,
            )
        )

        totals = SummaryService(session, scope).totals()
        assert totals["personal_expenses_cents"] == 250
        assert totals["groups"] == [
            {"group_id": group.id, "group_name": "Home", "total_cents": 2000}
        ]
        assert totals["total_expenses_cents"] == 2250
        assert totals["total_savings_cents"] == 30000

        bob_totals = SummaryService(session, _scope(session, bob)).totals()
        assert bob_totals["personal_expenses_cents"] == 0
        assert bob_totals["total_expenses_cents"] == 2000

        progress = SummaryService(session, scope).goal_progress()
        assert progress == [
            {
                "goal_id": trip.id,
                "name": "Trip",
                "group_id": group.id,
                "saved_cents": 30000,
                "target_cents": 20000,
                "percentage": 100.0,
            }
        ]


def test_database_enforces_ownership_and_restrict_constraints() -> None:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice")
        group = Group(name="Home", created_by=alice.id)
        session.add(group)
        session.commit()

        session.add(Category(user_id=alice.id, group_id=group.id, name="Both"))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

        session.add(Category(name="Neither"))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

        coffee = Category(user_id=alice.id, name="Coffee")
        session.add(coffee)
        session.flush()
        session.add(
            Expense(
                user_id=alice.id,
                category_id=coffee.id,
                amount_cents=350,
                date=date(2024, 3, 1),
            )
        )
        session.commit()

        session.delete(coffee)
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

        session.add(
            Expense(
                user_id=alice.id,
                category_id=9999,
                amount_cents=100,
                date=date(2024, 3, 1),
            )
        )
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

        assert session.scalar(select(func.count(Expense.id))) == 1
        assert session.scalar(select(func.count(Category.id))) == 1
