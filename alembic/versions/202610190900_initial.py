"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

PERSONAL_XOR_SHARED = (
    "(user_id IS NOT NULL AND group_id IS NULL) "
    "OR (user_id IS NULL AND group_id IS NOT NULL)"
)


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("avatar_url", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("external_id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "created_by",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "group_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("joined_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )
    op.create_index("ix_group_members_user", "group_members", ["user_id"])

    op.create_table(
        "invites",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "invited_by",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "accepted", "rejected", "expired", name="invitestatus"
            ),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("code"),
    )

    for table in ("categories", "goals"):
        columns = [
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE")
            ),
            sa.Column(
                "group_id",
                sa.Integer(),
                sa.ForeignKey("groups.id", ondelete="CASCADE"),
            ),
            sa.Column("name", sa.String(length=100), nullable=False),
        ]
        constraints = [
            sa.CheckConstraint(
                PERSONAL_XOR_SHARED, name=f"ck_{table[:-1]}_personal_xor_shared"
            )
        ]
        if table == "goals":
            columns += [
                sa.Column("target_amount_cents", sa.Integer()),
                sa.Column("color", sa.String(length=7), nullable=False),
                sa.Column("icon", sa.String(length=50)),
                sa.Column("description", sa.Text()),
            ]
            constraints.append(
                sa.CheckConstraint(
                    "target_amount_cents IS NULL OR target_amount_cents > 0",
                    name="ck_goal_target_positive",
                )
            )
        else:
            columns += [
                sa.Column("color", sa.String(length=7), nullable=False),
                sa.Column("icon", sa.String(length=50)),
            ]
        columns += [
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        ]
        op.create_table(table, *columns, *constraints)
        op.create_index(f"ix_{table}_user", table, ["user_id"])
        op.create_index(f"ix_{table}_group", table, ["group_id"])

    for table, parent_column, parent_table in (
        ("expenses", "category_id", "categories"),
        ("savings", "goal_id", "goals"),
    ):
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "user_id",
                sa.Integer(),
                sa.ForeignKey("users.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column(
                "group_id",
                sa.Integer(),
                sa.ForeignKey("groups.id", ondelete="CASCADE"),
            ),
            sa.Column(
                parent_column,
                sa.Integer(),
                sa.ForeignKey(f"{parent_table}.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("amount_cents", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text()),
            sa.Column("date", sa.Date(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint(
                "amount_cents > 0", name=f"ck_{table}_amount_positive"
            ),
        )
        op.create_index(f"ix_{table}_user_date", table, ["user_id", "date"])
        op.create_index(f"ix_{table}_group_date", table, ["group_id", "date"])

    op.create_index("ix_expenses_category", "expenses", ["category_id"])
    op.create_index("ix_savings_goal", "savings", ["goal_id"])


def downgrade():
    for table in ("savings", "expenses", "goals", "categories"):
        op.drop_table(table)
    op.drop_table("invites")
    op.drop_table("group_members")
    op.drop_table("groups")
    op.drop_table("users")
    sa.Enum(name="invitestatus").drop(op.get_bind(), checkfirst=True)
