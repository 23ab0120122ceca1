"""
Benefit Request Engine
Employee & contribution ledger models.

Models:
    - User: platform user (employee or HR staff) with employment data
    - Contribution: monthly provident-fund contribution row (read-only ledger)

Both tables are owned by the wider platform.  The engine only reads them:
users for role / relation checks and the eligibility evaluator, contributions
for balance totals.
"""

from datetime import datetime, timezone

from sqlalchemy import func, select

from benefits.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ROLE_EMPLOYEE = "Employee"
ROLE_HR = "HR"
ROLE_ADMIN = "Admin"
USER_ROLES = {ROLE_EMPLOYEE, ROLE_HR, ROLE_ADMIN}


class User(db.Model):
    """Platform user.  ``role`` drives which engine actions are reachable."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    employee_code = db.Column(db.String(30), unique=True, nullable=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=True)
    role = db.Column(db.String(20), nullable=False, default=ROLE_EMPLOYEE,
                     comment="Employee | HR | Admin")
    date_hired = db.Column(db.Date, nullable=True)
    employment_status = db.Column(db.String(20), nullable=False, default="Active",
                                  comment="Active | Retired | Resigned | Terminated")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    contributions = db.relationship(
        "Contribution", backref="user", lazy="dynamic", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "employee_code": self.employee_code,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "date_hired": self.date_hired.isoformat() if self.date_hired else None,
            "employment_status": self.employment_status,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.name} ({self.role})>"


class Contribution(db.Model):
    """One contribution posting: employee share + employer match."""

    __tablename__ = "contributions"
    __table_args__ = (
        db.Index("ix_contributions_user_date", "user_id", "contribution_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    contribution_date = db.Column(db.Date, nullable=False)
    employee_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    employer_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "contribution_date": self.contribution_date.isoformat() if self.contribution_date else None,
            "employee_amount": float(self.employee_amount or 0),
            "employer_amount": float(self.employer_amount or 0),
        }

    def __repr__(self):
        return f"<Contribution {self.id}: user={self.user_id} {self.contribution_date}>"


def contribution_totals(user_id: int) -> tuple:
    """Return ``(employee_total, employer_total)`` for a user as Decimals."""
    row = db.session.execute(
        select(
            func.coalesce(func.sum(Contribution.employee_amount), 0),
            func.coalesce(func.sum(Contribution.employer_amount), 0),
        ).where(Contribution.user_id == user_id)
    ).one()
    return row[0], row[1]
