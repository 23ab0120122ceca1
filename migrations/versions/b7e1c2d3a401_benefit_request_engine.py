"""Benefit request engine: users, contributions, requests, approval steps, history, notifications

Revision ID: b7e1c2d3a401
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "b7e1c2d3a401"
down_revision = None
branch_labels = None
depends_on = None


_OPEN_STATUSES = (
    "status IN ('Active', 'Approved', 'AwaitingApprovals', 'Incomplete', "
    "'Pending', 'Released', 'UnderReviewOfficer')"
)


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("employee_code", sa.String(30), unique=True),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("email", sa.String(255), unique=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="Employee"),
        sa.Column("date_hired", sa.Date()),
        sa.Column("employment_status", sa.String(20), nullable=False, server_default="Active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("contribution_date", sa.Date(), nullable=False),
        sa.Column("employee_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("employer_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_contributions_user_date", "contributions", ["user_id", "contribution_date"])

    op.create_table(
        "benefit_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("subject_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("request_kind", sa.String(20), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="Pending"),
        sa.Column("ready_for_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("assistant_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("officer_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("notes", sa.Text()),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("requested_amount", sa.Numeric(14, 2)),
        sa.Column("term_months", sa.Integer()),
        sa.Column("purpose", sa.Text()),
        sa.Column("withdrawal_type", sa.String(20)),
        sa.Column("vested_balance", sa.Numeric(14, 2)),
        sa.Column("unvested_balance", sa.Numeric(14, 2)),
        sa.Column("total_balance", sa.Numeric(14, 2)),
        sa.Column("consent_acknowledged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("decided_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("decided_at", sa.DateTime(timezone=True)),
        sa.Column("release_reference", sa.String(120)),
        sa.Column("released_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("released_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("consent_acknowledged", name="ck_benefit_requests_consent"),
    )
    op.create_index("ix_benefit_requests_subject_kind_status", "benefit_requests",
                    ["subject_user_id", "request_kind", "status"])
    op.create_index("ix_benefit_requests_status", "benefit_requests", ["status"])
    op.create_index(
        "uq_benefit_requests_one_open", "benefit_requests", ["subject_user_id", "request_kind"],
        unique=True,
        sqlite_where=sa.text(_OPEN_STATUSES),
        postgresql_where=sa.text(_OPEN_STATUSES),
    )

    op.create_table(
        "approval_steps",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("request_id", sa.Integer(), sa.ForeignKey("benefit_requests.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("approver_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("sequence_order", sa.Integer(), nullable=False),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("decision", sa.String(20), nullable=False, server_default="Pending"),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("comments", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("request_id", "sequence_order", name="uq_approval_steps_request_sequence"),
        sa.UniqueConstraint("request_id", "approver_id", name="uq_approval_steps_request_approver"),
    )
    op.create_index(
        "uq_approval_steps_one_current", "approval_steps", ["request_id"],
        unique=True,
        sqlite_where=sa.text("is_current = 1"),
        postgresql_where=sa.text("is_current"),
    )
    op.create_index("ix_approval_steps_approver_current", "approval_steps", ["approver_id", "is_current"])

    op.create_table(
        "history_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("request_id", sa.Integer(), sa.ForeignKey("benefit_requests.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("performed_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("remarks", sa.Text()),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_history_entries_request_ts", "history_entries", ["request_id", "timestamp"])
    op.create_index("ix_history_entries_action", "history_entries", ["action"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("message", sa.Text(), server_default=""),
        sa.Column("severity", sa.String(20), server_default="info"),
        sa.Column("request_id", sa.Integer(), index=True),
        sa.Column("is_read", sa.Boolean(), server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table("notifications")
    op.drop_index("ix_history_entries_action", table_name="history_entries")
    op.drop_index("ix_history_entries_request_ts", table_name="history_entries")
    op.drop_table("history_entries")
    op.drop_index("ix_approval_steps_approver_current", table_name="approval_steps")
    op.drop_index("uq_approval_steps_one_current", table_name="approval_steps")
    op.drop_table("approval_steps")
    op.drop_index("uq_benefit_requests_one_open", table_name="benefit_requests")
    op.drop_index("ix_benefit_requests_status", table_name="benefit_requests")
    op.drop_index("ix_benefit_requests_subject_kind_status", table_name="benefit_requests")
    op.drop_table("benefit_requests")
    op.drop_index("ix_contributions_user_date", table_name="contributions")
    op.drop_table("contributions")
    op.drop_table("users")
