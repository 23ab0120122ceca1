"""
Shared pytest fixtures for the Benefit Request Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / add_contribution: ORM factories
    - staff, employee: pre-created HR staff and a vested employee
    - loan, loan_in_review, loan_chain: a loan at successive lifecycle stages
"""

from datetime import date

import pytest

from benefits import create_app
from benefits.models import db as _db
from benefits.models.employee import Contribution, User
from benefits.services import benefit_request_service as svc
from benefits.services.lifecycle import Actor


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── ORM factories ────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(role="Employee", name=None, hired=date(2020, 1, 15), status="Active"):
        counter["n"] += 1
        u = User(
            name=name or f"{role} {counter['n']}",
            email=f"user{counter['n']}@benefits.test",
            role=role,
            date_hired=hired,
            employment_status=status,
        )
        _db.session.add(u)
        _db.session.commit()
        return u

    return _make


@pytest.fixture()
def add_contribution():
    def _add(user, employee_amount, employer_amount, on=date(2021, 6, 30)):
        c = Contribution(
            user_id=user.id,
            contribution_date=on,
            employee_amount=employee_amount,
            employer_amount=employer_amount,
        )
        _db.session.add(c)
        _db.session.commit()
        return c

    return _add


def as_actor(user) -> Actor:
    return Actor(id=user.id, role=user.role)


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def staff(make_user):
    """HR staff: a screening assistant, an officer and three approvers."""
    return {
        "assistant": make_user("HR", "Assistant"),
        "officer": make_user("HR", "Officer"),
        "approver_a": make_user("HR", "Approver A"),
        "approver_b": make_user("HR", "Approver B"),
        "approver_c": make_user("HR", "Approver C"),
    }


@pytest.fixture()
def employee(make_user, add_contribution):
    """Active employee past the vesting cliff with a 50,000 vested balance."""
    u = make_user("Employee", "Vested Employee", hired=date(2020, 1, 15))
    add_contribution(u, 25000, 25000)
    return u


@pytest.fixture()
def loan(employee):
    """Pending loan: amount 20,000 over 12 months."""
    return svc.create_request(
        as_actor(employee),
        {"request_kind": "Loan", "amount": 20000, "term_months": 12,
         "purpose": "Home repair", "consent_acknowledged": True},
    )


@pytest.fixture()
def loan_in_review(loan, staff):
    return svc.move_to_review(loan["id"], as_actor(staff["officer"]))


@pytest.fixture()
def loan_chain(loan_in_review, staff):
    """Loan awaiting approvals with chain A(#1) → B(#2)."""
    svc.assign_approvers(
        loan_in_review["id"], as_actor(staff["officer"]),
        [
            {"approver_id": staff["approver_a"].id, "sequence_order": 1},
            {"approver_id": staff["approver_b"].id, "sequence_order": 2},
        ],
    )
    return loan_in_review["id"]
