"""
Benefit Request Lifecycle Service

Manages request status transitions with:
  - Transition validation (LOAN_TRANSITIONS / WITHDRAWAL_TRANSITIONS)
  - Role and relation checks against the acting user
  - Compare-and-swap writes via ``request_store.guarded_update``
  - Audit trail via ``record_history`` in the same transaction

Transitions here never commit; the caller owns the unit of work.

Guard order (first failure wins):
    1. status     → InvalidTransitionError
    2. role       → NotAuthorizedError
    3. relation   → NotAuthorizedError
    4. readiness  → InvalidTransitionError

Usage:
    from benefits.services.lifecycle import Actor, mark_ready

    with unit_of_work(request_id, "mark_ready"):
        req = mark_ready(request_id, Actor(id=7, role="HR"))
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import or_

from benefits.core.exceptions import (
    InvalidTransitionError,
    NotAuthorizedError,
    ValidationError,
)
from benefits.models.benefit_request import (
    AWAITING_APPROVALS,
    REL_ANY,
    REL_ASSISTANT,
    REL_CURRENT_APPROVER,
    REL_NOT_ASSISTANT,
    REL_OFFICER,
    REL_OWNER_OR_HR,
    REVIEW_DECISIONS,
    TRANSITIONS,
    BenefitRequest,
)
from benefits.models.employee import ROLE_HR
from benefits.models.history import record_history
from benefits.services.request_store import guarded_update, load_request

# Guard failure kinds
DENY_STATUS = "invalid_transition"
DENY_ACTOR = "not_authorized"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller: id + role, resolved upstream."""

    id: int
    role: str


@dataclass(frozen=True)
class RequestSnapshot:
    """The slice of a request the guards look at."""

    id: int | None
    kind: str
    status: str
    subject_user_id: int
    assistant_id: int | None = None
    officer_id: int | None = None
    ready_for_review: bool = False
    current_approver_id: int | None = None
    chain_started: bool = False

    @classmethod
    def of(cls, req: BenefitRequest, *, current_approver_id=None, chain_started=False) -> "RequestSnapshot":
        return cls(
            id=req.id,
            kind=req.request_kind,
            status=req.status,
            subject_user_id=req.subject_user_id,
            assistant_id=req.assistant_id,
            officer_id=req.officer_id,
            ready_for_review=bool(req.ready_for_review),
            current_approver_id=current_approver_id,
            chain_started=chain_started,
        )


def _relation_holds(relation: str, snap: RequestSnapshot, actor: Actor) -> bool:
    if relation == REL_ANY:
        return True
    if relation == REL_OWNER_OR_HR:
        return actor.role == ROLE_HR or actor.id == snap.subject_user_id
    if relation == REL_ASSISTANT:
        return snap.assistant_id is None or snap.assistant_id == actor.id
    if relation == REL_NOT_ASSISTANT:
        return snap.assistant_id != actor.id
    if relation == REL_OFFICER:
        return snap.officer_id is not None and snap.officer_id == actor.id
    if relation == REL_CURRENT_APPROVER:
        return snap.current_approver_id is not None and snap.current_approver_id == actor.id
    return False


_RELATION_REASONS = {
    REL_OWNER_OR_HR: "not your own request",
    REL_ASSISTANT: "another assistant is screening this request",
    REL_NOT_ASSISTANT: "the screening assistant cannot also review",
    REL_OFFICER: "not the assigned officer",
    REL_CURRENT_APPROVER: "not your turn",
}


def validate_transition(snap: RequestSnapshot, action: str, actor: Actor) -> dict:
    """
    Evaluate whether ``actor`` may perform ``action`` on the request right now.

    Pure: used both for enforcement (``require_transition``) and for the
    capability projection in ``access_policy``.

    Returns:
        {"valid": bool, "deny": str|None, "from": str, "to": str|None, "reason": str|None}
    """
    table = TRANSITIONS.get(snap.kind, {})
    rule = table.get(action)
    if not rule:
        return {"valid": False, "deny": DENY_STATUS, "from": snap.status, "to": None,
                "reason": f"'{action}' does not apply to {snap.kind} requests"}

    def deny(kind, reason):
        return {"valid": False, "deny": kind, "from": snap.status, "to": rule["to"], "reason": reason}

    # 1. Status
    if snap.status not in rule["from"]:
        return deny(DENY_STATUS, f"Cannot '{action}' from status '{snap.status}'")
    if action == "assign_approvers" and snap.status == AWAITING_APPROVALS and snap.chain_started:
        return deny(DENY_STATUS, "approval chain already has decisions")
    if action == "mark_ready" and snap.ready_for_review:
        return deny(DENY_STATUS, "already marked ready for review")

    # 2. Role
    if actor.role not in rule["roles"]:
        return deny(DENY_ACTOR, f"role '{actor.role}' may not '{action}'")

    # 3. Relation
    if not _relation_holds(rule["relation"], snap, actor):
        return deny(DENY_ACTOR, _RELATION_REASONS.get(rule["relation"], "relation check failed"))

    # 4. Readiness
    if rule["requires_ready"] and not snap.ready_for_review:
        return deny(DENY_STATUS, "requirements have not been marked ready for review")

    return {"valid": True, "deny": None, "from": snap.status, "to": rule["to"], "reason": None}


def require_transition(snap: RequestSnapshot, action: str, actor: Actor) -> dict:
    """Like ``validate_transition`` but raises on failure.  Returns the rule verdict."""
    verdict = validate_transition(snap, action, actor)
    if verdict["valid"]:
        return verdict
    if verdict["deny"] == DENY_ACTOR:
        raise NotAuthorizedError(actor.id, action, verdict["reason"])
    raise InvalidTransitionError(snap.id, action, snap.status, verdict["reason"])


def precondition_criteria(snap: RequestSnapshot, action: str, actor: Actor) -> list:
    """WHERE clauses re-asserting the guard inside the conditional UPDATE."""
    rule = TRANSITIONS[snap.kind][action]
    criteria = [BenefitRequest.status == snap.status]
    relation = rule["relation"]
    if relation == REL_ASSISTANT:
        criteria.append(or_(BenefitRequest.assistant_id.is_(None), BenefitRequest.assistant_id == actor.id))
    elif relation == REL_NOT_ASSISTANT:
        criteria.append(or_(BenefitRequest.assistant_id.is_(None), BenefitRequest.assistant_id != actor.id))
    elif relation == REL_OFFICER:
        criteria.append(BenefitRequest.officer_id == actor.id)
    elif relation == REL_OWNER_OR_HR and actor.role != ROLE_HR:
        criteria.append(BenefitRequest.subject_user_id == actor.id)
    if rule["requires_ready"]:
        criteria.append(BenefitRequest.ready_for_review.is_(True))
    return criteria


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════

def _begin(request_id: int, action: str, actor: Actor) -> tuple[RequestSnapshot, dict]:
    req = load_request(request_id, lock=True)
    snap = RequestSnapshot.of(req)
    return snap, require_transition(snap, action, actor)


def mark_ready(request_id: int, actor: Actor, remarks: str | None = None) -> BenefitRequest:
    """Assistant pre-screen complete.  Withdrawal: Incomplete → Pending."""
    snap, verdict = _begin(request_id, "mark_ready", actor)
    values = {"ready_for_review": True, "assistant_id": actor.id, "notes": None}
    if verdict["to"]:
        values["status"] = verdict["to"]
    criteria = precondition_criteria(snap, "mark_ready", actor)
    criteria.append(BenefitRequest.ready_for_review.is_(False))

    req = guarded_update(request_id, "mark_ready", criteria, values)
    record_history(request_id, "request.mark_ready", actor.id, remarks)
    return req


def mark_incomplete(request_id: int, actor: Actor, notes: str | None = None) -> BenefitRequest:
    """Assistant flags missing requirements.  Withdrawal: Pending → Incomplete."""
    snap, verdict = _begin(request_id, "mark_incomplete", actor)
    values = {"ready_for_review": False, "assistant_id": actor.id, "notes": (notes or "").strip() or None}
    if verdict["to"]:
        values["status"] = verdict["to"]

    req = guarded_update(request_id, "mark_incomplete",
                         precondition_criteria(snap, "mark_incomplete", actor), values)
    record_history(request_id, "request.mark_incomplete", actor.id, notes)
    return req


def move_to_review(request_id: int, actor: Actor, remarks: str | None = None) -> BenefitRequest:
    """Officer picks the request up: → UnderReviewOfficer, officer assigned."""
    snap, verdict = _begin(request_id, "move_to_review", actor)
    criteria = precondition_criteria(snap, "move_to_review", actor)
    criteria.append(BenefitRequest.officer_id.is_(None))

    req = guarded_update(request_id, "move_to_review", criteria,
                         {"status": verdict["to"], "officer_id": actor.id})
    record_history(request_id, "request.move_to_review", actor.id, remarks)
    return req


def record_decision(request_id: int, actor: Actor, decision: str, remarks: str | None = None) -> BenefitRequest:
    """Withdrawal officer decision: UnderReviewOfficer → Approved | Rejected."""
    if decision not in REVIEW_DECISIONS:
        raise ValidationError(
            f"decision must be one of {sorted(REVIEW_DECISIONS)}",
            details={"decision": decision},
        )
    snap, _ = _begin(request_id, "record_decision", actor)

    req = guarded_update(
        request_id, "record_decision",
        precondition_criteria(snap, "record_decision", actor),
        {"status": decision, "decided_by": actor.id, "decided_at": datetime.now(timezone.utc)},
    )
    action = "request.officer_approve" if decision == "Approved" else "request.officer_reject"
    record_history(request_id, action, actor.id, remarks)
    return req


def release(request_id: int, actor: Actor, reference: str | None) -> BenefitRequest:
    """Disburse an approved request.  Loan → Active, Withdrawal → Released."""
    reference = (reference or "").strip()
    if not reference:
        raise ValidationError("release reference is required", details={"reference": "required"})
    snap, verdict = _begin(request_id, "release", actor)

    req = guarded_update(
        request_id, "release",
        precondition_criteria(snap, "release", actor),
        {
            "status": verdict["to"],
            "release_reference": reference,
            "released_by": actor.id,
            "released_at": datetime.now(timezone.utc),
        },
    )
    record_history(request_id, "request.release", actor.id, f"Reference: {reference}")
    return req


def cancel(request_id: int, actor: Actor, remarks: str | None = None) -> BenefitRequest:
    """Owner (own request) or HR (any request) cancels before approval."""
    snap, verdict = _begin(request_id, "cancel", actor)

    req = guarded_update(request_id, "cancel",
                         precondition_criteria(snap, "cancel", actor), {"status": verdict["to"]})
    record_history(request_id, "request.cancel", actor.id, remarks)
    return req
