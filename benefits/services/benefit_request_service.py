"""
Benefit Request Service — engine operations.

One public function per operation.  Each mutating operation:
    1. opens a unit of work (one transaction),
    2. runs the guarded transition (lifecycle / approver_sequencer),
    3. commits the state change and its history entry together,
    4. logs the transition and dispatches notifications after commit.

Errors propagate as ``benefits.core.exceptions`` types; nothing is retried.

Usage:
    from benefits.services import benefit_request_service as svc
    from benefits.services.lifecycle import Actor

    req = svc.create_request(Actor(id=3, role="Employee"), {...})
    svc.move_to_review(req["id"], Actor(id=9, role="HR"))
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from benefits.core.exceptions import IneligibleError, NotAuthorizedError, ValidationError
from benefits.models import db
from benefits.models.benefit_request import (
    KIND_LOAN,
    KIND_WITHDRAWAL,
    REQUEST_KINDS,
    WITHDRAWAL_TYPES,
    BenefitRequest,
)
from benefits.models.employee import ROLE_EMPLOYEE, contribution_totals
from benefits.models.history import history_for, record_history
from benefits.services import approver_sequencer, lifecycle
from benefits.services.access_policy import capabilities
from benefits.services.eligibility import (
    REASON_OPEN_LOAN,
    REASON_OPEN_WITHDRAWAL,
    ContributionTotals,
    LoanPolicy,
    WithdrawalPolicy,
    evaluate_loan,
    evaluate_withdrawal,
)
from benefits.services.lifecycle import Actor, RequestSnapshot
from benefits.services.notification import NotificationService
from benefits.services.request_store import (
    current_step,
    has_open_request,
    is_open_request_violation,
    load_request,
    load_user,
    unit_of_work,
)

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _loan_policy() -> LoanPolicy:
    cfg = current_app.config
    return LoanPolicy(
        loan_cap=Decimal(str(cfg["LOAN_CAP"])),
        min_amount=Decimal(str(cfg["MIN_LOAN_AMOUNT"])),
        max_term_months=int(cfg["MAX_REPAYMENT_MONTHS"]),
        vesting_cliff_months=int(cfg["VESTING_CLIFF_MONTHS"]),
    )


def _withdrawal_policy() -> WithdrawalPolicy:
    cfg = current_app.config
    return WithdrawalPolicy(
        min_amount=Decimal(str(cfg["MIN_WITHDRAWAL_AMOUNT"])),
        vesting_cliff_months=int(cfg["VESTING_CLIFF_MONTHS"]),
    )


def _to_decimal(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: value})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number", details={field: value})
    return amount.quantize(Decimal("0.01"))


def _to_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: value})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: value})


def _evaluate(user, kind: str, as_of: date, *, exclude_id=None):
    totals = ContributionTotals.of(*contribution_totals(user.id))
    open_request = has_open_request(user.id, kind, exclude_id=exclude_id)
    if kind == KIND_LOAN:
        return evaluate_loan(
            totals, user.date_hired, user.employment_status,
            has_open_request=open_request, as_of=as_of, policy=_loan_policy(),
        )
    return evaluate_withdrawal(
        totals, user.date_hired, user.employment_status,
        has_open_request=open_request, as_of=as_of, policy=_withdrawal_policy(),
    )


def _log_transition(event: str, req: dict, actor: Actor, **extra) -> None:
    logger.info(
        "Benefit request %s",
        event,
        extra={
            "event_type": f"request.{event}",
            "request_id": req["id"],
            "request_kind": req["request_kind"],
            "status": req["status"],
            "actor_id": actor.id,
            "actor_role": actor.role,
            **extra,
        },
    )


# ═════════════════════════════════════════════════════════════════════════════
# Eligibility & creation
# ═════════════════════════════════════════════════════════════════════════════


def check_eligibility(subject_user_id: int, kind: str, *, as_of: date | None = None) -> dict:
    """Eligibility verdict for ``kind`` without creating anything."""
    if kind not in REQUEST_KINDS:
        raise ValidationError(f"kind must be one of {sorted(REQUEST_KINDS)}", details={"kind": kind})
    user = load_user(subject_user_id)
    verdict = _evaluate(user, kind, as_of or date.today())
    return {"request_kind": kind, **verdict.to_dict()}


def create_request(actor: Actor, data: dict, *, as_of: date | None = None) -> dict:
    """
    Submit a new Loan or Withdrawal for the acting employee.

    Only Employees create requests, always for themselves.  The eligibility
    verdict is recomputed inside the creation transaction.  Two concurrent
    submissions can both pass that check; the partial unique index
    ``uq_benefit_requests_one_open`` rejects the second insert, which is
    reported as the same IneligibleError the check would have raised.

    Raises:
        NotAuthorizedError, ValidationError, IneligibleError, NotFoundError
    """
    if actor.role != ROLE_EMPLOYEE:
        raise NotAuthorizedError(actor.id, "create", "only employees may submit requests")
    kind = data.get("request_kind")
    if kind not in REQUEST_KINDS:
        raise ValidationError(
            f"request_kind must be one of {sorted(REQUEST_KINDS)}",
            details={"request_kind": kind},
        )
    as_of = as_of or date.today()

    with unit_of_work(None, "create"):
        user = load_user(actor.id, lock=True)
        verdict = _evaluate(user, kind, as_of)

        if kind == KIND_LOAN:
            if not verdict.eligible:
                raise IneligibleError(verdict.reason, verdict.to_dict())
            req = _build_loan(user.id, data, verdict)
        else:
            if not verdict.eligible:
                raise IneligibleError(verdict.reason_if_not_eligible, verdict.to_dict())
            req = _build_withdrawal(user.id, data, verdict)

        if data.get("consent_acknowledged") is not True:
            raise ValidationError("Consent must be acknowledged",
                                  details={"consent_acknowledged": "required"})
        req.consent_acknowledged = True

        db.session.add(req)
        try:
            db.session.flush()
        except IntegrityError as exc:
            if not is_open_request_violation(exc):
                raise
            reason = REASON_OPEN_LOAN if kind == KIND_LOAN else REASON_OPEN_WITHDRAWAL
            raise IneligibleError(reason, {"eligible": False, "has_open_request": True}) from exc
        record_history(req.id, "request.create", actor.id,
                       f"{kind} request submitted for {req.amount}")
        result = req.to_dict()

    _log_transition("created", result, actor)
    NotificationService.dispatch("created", result["id"], NotificationService.hr_user_ids())
    return result


def _build_loan(subject_id: int, data: dict, verdict) -> BenefitRequest:
    amount = _to_decimal(data.get("amount"), "amount")
    if amount < verdict.min_amount or amount > verdict.max_amount:
        raise ValidationError(
            f"amount must be between {verdict.min_amount} and {verdict.max_amount}",
            details={"amount": float(amount), "min": float(verdict.min_amount),
                     "max": float(verdict.max_amount)},
        )
    term = _to_int(data.get("term_months"), "term_months")
    if term < 1 or term > verdict.max_term:
        raise ValidationError(
            f"term_months must be between 1 and {verdict.max_term}",
            details={"term_months": term},
        )
    snap = verdict.snapshot
    return BenefitRequest(
        subject_user_id=subject_id,
        request_kind=KIND_LOAN,
        amount=amount,
        term_months=term,
        purpose=(data.get("purpose") or "").strip() or None,
        vested_balance=snap.vested_amount,
        unvested_balance=snap.unvested_amount,
        total_balance=snap.total_balance,
    )


def _build_withdrawal(subject_id: int, data: dict, verdict) -> BenefitRequest:
    wtype = data.get("withdrawal_type")
    if wtype not in WITHDRAWAL_TYPES:
        raise ValidationError(
            f"withdrawal_type must be one of {sorted(WITHDRAWAL_TYPES)}",
            details={"withdrawal_type": wtype},
        )
    if wtype not in verdict.eligible_types:
        raise IneligibleError(
            f"Withdrawal type '{wtype}' is not available; eligible: {', '.join(verdict.eligible_types)}",
            verdict.to_dict(),
        )
    payout = verdict.payout_by_type[wtype]
    minimum = _withdrawal_policy().min_amount

    requested = None
    if data.get("requested_amount") is not None:
        requested = _to_decimal(data["requested_amount"], "requested_amount")
    amount = requested if requested is not None else payout
    if amount < minimum or amount > payout:
        raise ValidationError(
            f"withdrawal amount must be between {minimum} and {payout}",
            details={"requested_amount": float(amount), "min": float(minimum), "max": float(payout)},
        )

    snap = verdict.snapshot
    return BenefitRequest(
        subject_user_id=subject_id,
        request_kind=KIND_WITHDRAWAL,
        withdrawal_type=wtype,
        amount=amount,
        requested_amount=requested,
        purpose=(data.get("purpose") or "").strip() or None,
        vested_balance=payout,
        unvested_balance=snap.total_balance - payout,
        total_balance=snap.total_balance,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle transitions
# ═════════════════════════════════════════════════════════════════════════════


def mark_ready(request_id: int, actor: Actor, remarks: str | None = None) -> dict:
    with unit_of_work(request_id, "mark_ready"):
        result = lifecycle.mark_ready(request_id, actor, remarks).to_dict()
    _log_transition("marked_ready", result, actor)
    NotificationService.dispatch("marked_ready", request_id, [result["subject_user_id"]])
    return result


def mark_incomplete(request_id: int, actor: Actor, notes: str | None = None) -> dict:
    with unit_of_work(request_id, "mark_incomplete"):
        result = lifecycle.mark_incomplete(request_id, actor, notes).to_dict()
    _log_transition("marked_incomplete", result, actor)
    NotificationService.dispatch("marked_incomplete", request_id, [result["subject_user_id"]], notes or "")
    return result


def move_to_review(request_id: int, actor: Actor, remarks: str | None = None) -> dict:
    with unit_of_work(request_id, "move_to_review"):
        result = lifecycle.move_to_review(request_id, actor, remarks).to_dict()
    _log_transition("moved_to_review", result, actor, officer_id=actor.id)
    NotificationService.dispatch("moved_to_review", request_id, [result["subject_user_id"]])
    return result


def assign_approvers(request_id: int, actor: Actor, approvers: list[dict],
                     remarks: str | None = None) -> dict:
    """Replace the approval chain.  Returns the request and its new steps."""
    with unit_of_work(request_id, "assign_approvers"):
        steps = approver_sequencer.assign_approvers(request_id, actor, approvers, remarks)
        chain = [s.to_dict() for s in steps]
        result = load_request(request_id).to_dict()
    first = next(s["approver_id"] for s in chain if s["is_current"])
    _log_transition("approvers_assigned", result, actor, approver_count=len(chain))
    NotificationService.dispatch("approvers_assigned", request_id, [first])
    return {"request": result, "approval_steps": chain}


def review_approval(request_id: int, actor: Actor, decision: str,
                    comments: str | None = None) -> dict:
    """Current approver decides.  Returns ``{decision, status, next_approver_id}``."""
    with unit_of_work(request_id, "review_approval"):
        outcome = approver_sequencer.review_approval(request_id, actor, decision, comments)
        req = load_request(request_id)
        subject_id = req.subject_user_id
        summary = {"id": req.id, "request_kind": req.request_kind, "status": req.status}

    _log_transition("step_decided", summary, actor, decision=decision,
                    next_approver_id=outcome["next_approver_id"])
    if outcome["next_approver_id"] is not None:
        NotificationService.dispatch("step_approved", request_id, [outcome["next_approver_id"]])
    else:
        event = "approved" if outcome["status"] == "Approved" else "rejected"
        NotificationService.dispatch(event, request_id, [subject_id], comments or "")
    return outcome


def record_decision(request_id: int, actor: Actor, decision: str, remarks: str | None = None) -> dict:
    with unit_of_work(request_id, "record_decision"):
        result = lifecycle.record_decision(request_id, actor, decision, remarks).to_dict()
    _log_transition("officer_decided", result, actor, decision=decision)
    event = "approved" if result["status"] == "Approved" else "rejected"
    NotificationService.dispatch(event, request_id, [result["subject_user_id"]], remarks or "")
    return result


def release(request_id: int, actor: Actor, reference: str | None) -> dict:
    with unit_of_work(request_id, "release"):
        result = lifecycle.release(request_id, actor, reference).to_dict()
    _log_transition("released", result, actor, release_reference=result["release_reference"])
    NotificationService.dispatch("released", request_id, [result["subject_user_id"]])
    return result


def cancel(request_id: int, actor: Actor, remarks: str | None = None) -> dict:
    with unit_of_work(request_id, "cancel"):
        result = lifecycle.cancel(request_id, actor, remarks).to_dict()
    _log_transition("cancelled", result, actor)
    recipients = {result["subject_user_id"], result["officer_id"], result["assistant_id"]}
    recipients.discard(actor.id)
    NotificationService.dispatch("cancelled", request_id, recipients, remarks or "")
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Read model
# ═════════════════════════════════════════════════════════════════════════════


def get_request(request_id: int) -> dict:
    return load_request(request_id).to_dict()


def get_approval_chain(request_id: int) -> list[dict]:
    load_request(request_id)
    return [s.to_dict() for s in approver_sequencer.get_approval_chain(request_id)]


def get_access(request_id: int, actor: Actor) -> dict:
    """Capability set of ``actor`` on the request, from the lifecycle guards."""
    req = load_request(request_id)
    step = current_step(request_id)
    snap = RequestSnapshot.of(
        req,
        current_approver_id=step.approver_id if step else None,
        chain_started=approver_sequencer.chain_started(request_id),
    )
    return {
        "request_id": req.id,
        "status": req.status,
        "actor_id": actor.id,
        "actor_role": actor.role,
        **capabilities(snap, actor),
    }


def get_history(request_id: int) -> list[dict]:
    load_request(request_id)
    return [h.to_dict() for h in history_for(request_id)]


def list_requests(*, kind=None, status=None, subject_user_id=None):
    """Filtered request query, newest first.  Returned un-executed for pagination."""
    q = BenefitRequest.query
    if kind:
        q = q.filter_by(request_kind=kind)
    if status:
        q = q.filter_by(status=status)
    if subject_user_id:
        q = q.filter_by(subject_user_id=subject_user_id)
    return q.order_by(BenefitRequest.created_at.desc(), BenefitRequest.id.desc())


def status_summary(kind: str | None = None) -> dict:
    """Request counts per status: ``{"total": n, "by_status": {status: n}}``."""
    stmt = select(BenefitRequest.status, func.count(BenefitRequest.id)).group_by(BenefitRequest.status)
    if kind:
        stmt = stmt.where(BenefitRequest.request_kind == kind)
    by_status = {status: count for status, count in db.session.execute(stmt).all()}
    return {"request_kind": kind, "total": sum(by_status.values()), "by_status": by_status}
