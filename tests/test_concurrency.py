"""
Concurrent submission and review tests against a file-backed SQLite database.

Each worker thread pushes its own app context, so it gets its own session
and pooled connection.  A barrier holds both workers after their read phase
so the two writes genuinely race.

Tests cover:
  - Two simultaneous creations for one subject: exactly one succeeds
  - Two simultaneous approvals of one step: one wins, one conflicts
"""
import threading
from datetime import date

import pytest
from sqlalchemy import func, select

from benefits import create_app
from benefits.core.exceptions import IneligibleError, TransitionConflictError
from benefits.models import db
from benefits.models.benefit_request import ApprovalStep, BenefitRequest
from benefits.models.employee import Contribution, User
from benefits.models.history import HistoryEntry
from benefits.services import approver_sequencer
from benefits.services import benefit_request_service as svc
from benefits.services.lifecycle import Actor

LOAN_BODY = {"request_kind": "Loan", "amount": 10000, "term_months": 12, "consent_acknowledged": True}


@pytest.fixture()
def file_app(tmp_path):
    """Separate app bound to a throwaway on-disk database."""
    app = create_app("testing", config_overrides={
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'race.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture()
def people(file_app):
    """Vested employee, officer and two approvers; returns their ids."""
    with file_app.app_context():
        users = {
            "employee": User(name="Racer", email="racer@benefits.test", role="Employee",
                             date_hired=date(2020, 1, 15), employment_status="Active"),
            "officer": User(name="Officer", email="officer@benefits.test", role="HR"),
            "approver_a": User(name="Approver A", email="a@benefits.test", role="HR"),
            "approver_b": User(name="Approver B", email="b@benefits.test", role="HR"),
        }
        db.session.add_all(users.values())
        db.session.flush()
        db.session.add(Contribution(
            user_id=users["employee"].id, contribution_date=date(2021, 6, 30),
            employee_amount=25000, employer_amount=25000,
        ))
        db.session.commit()
        return {key: u.id for key, u in users.items()}


def _race(app, work, workers=2):
    """Run ``work(i)`` on ``workers`` threads; returns ``[(outcome, value), ...]``."""
    results = []
    lock = threading.Lock()

    def _worker(i):
        with app.app_context():
            try:
                outcome = ("ok", work(i))
            except Exception as exc:  # collected for the assertions below
                outcome = (type(exc).__name__, exc)
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    assert not any(t.is_alive() for t in threads)
    return results


def _wait_after(fn, barrier):
    def _wrapped(*args, **kwargs):
        value = fn(*args, **kwargs)
        barrier.wait()
        return value
    return _wrapped


class TestThreadedCreate:
    def test_only_one_of_two_simultaneous_loans_is_created(self, file_app, people, monkeypatch):
        barrier = threading.Barrier(2, timeout=15)
        monkeypatch.setattr(svc, "_evaluate", _wait_after(svc._evaluate, barrier))
        employee = Actor(people["employee"], "Employee")

        results = _race(file_app, lambda i: svc.create_request(employee, LOAN_BODY))

        outcomes = sorted(kind for kind, _ in results)
        assert outcomes == ["IneligibleError", "ok"]
        loser = next(value for kind, value in results if kind == "IneligibleError")
        assert isinstance(loser, IneligibleError)
        assert loser.reason == "Existing active loan"

        with file_app.app_context():
            rows = db.session.execute(
                select(BenefitRequest).where(BenefitRequest.subject_user_id == people["employee"])
            ).scalars().all()
            assert [r.status for r in rows] == ["Pending"]
            history = db.session.execute(select(func.count()).select_from(HistoryEntry)).scalar()
            assert history == 1


class TestThreadedReview:
    @pytest.fixture()
    def chain(self, file_app, people):
        with file_app.app_context():
            req = svc.create_request(Actor(people["employee"], "Employee"), LOAN_BODY)
            officer = Actor(people["officer"], "HR")
            svc.move_to_review(req["id"], officer)
            svc.assign_approvers(req["id"], officer, [
                {"approver_id": people["approver_a"], "sequence_order": 1},
                {"approver_id": people["approver_b"], "sequence_order": 2},
            ])
            return req["id"]

    def test_double_approval_of_one_step(self, file_app, people, chain, monkeypatch):
        barrier = threading.Barrier(2, timeout=15)
        monkeypatch.setattr(approver_sequencer, "_load_current_step",
                            _wait_after(approver_sequencer._load_current_step, barrier))
        approver_a = Actor(people["approver_a"], "HR")

        results = _race(file_app, lambda i: svc.review_approval(chain, approver_a, "Approved"))

        outcomes = sorted(kind for kind, _ in results)
        assert outcomes == ["TransitionConflictError", "ok"]
        winner = next(value for kind, value in results if kind == "ok")
        assert winner["next_approver_id"] == people["approver_b"]
        loser = next(value for kind, value in results if kind != "ok")
        assert isinstance(loser, TransitionConflictError)

        with file_app.app_context():
            current = db.session.execute(
                select(ApprovalStep).where(ApprovalStep.request_id == chain,
                                           ApprovalStep.is_current.is_(True))
            ).scalars().all()
            assert [s.approver_id for s in current] == [people["approver_b"]]
            assert db.session.get(BenefitRequest, chain).status == "AwaitingApprovals"
            approvals = db.session.execute(
                select(func.count()).select_from(HistoryEntry).where(
                    HistoryEntry.request_id == chain, HistoryEntry.action == "request.step_approve")
            ).scalar()
            assert approvals == 1
