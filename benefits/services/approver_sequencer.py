"""
Approver Sequencer — ordered approval chain and the single current step.

A loan's chain is a set of ApprovalStep rows with unique ``sequence_order``.
Exactly one Pending step (the lowest order) carries ``is_current`` while the
chain is live.  The flag is only ever flipped inside the same transaction as
the decision that moves it, and every flip is a conditional UPDATE, so two
approvers racing on one step cannot both win.

Operations (transaction-agnostic; caller owns the unit of work):
    assign_approvers   — delete-then-insert the whole chain
    review_approval    — decide the current step and advance / short-circuit
    get_approval_chain — steps ordered by sequence_order
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import delete, exists, select

from benefits.core.exceptions import NotAuthorizedError, ValidationError
from benefits.models import db
from benefits.models.benefit_request import (
    APPROVED,
    AWAITING_APPROVALS,
    DECISION_PENDING,
    DECISION_REJECTED,
    REJECTED,
    REVIEW_DECISIONS,
    ApprovalStep,
    BenefitRequest,
)
from benefits.models.employee import ROLE_HR, User
from benefits.models.history import record_history
from benefits.services.lifecycle import (
    Actor,
    RequestSnapshot,
    precondition_criteria,
    require_transition,
)
from benefits.services.request_store import (
    guarded_step_update,
    guarded_update,
    load_request,
)

logger = logging.getLogger(__name__)


def chain_started(request_id: int) -> bool:
    """True once any step of the chain has been decided."""
    return bool(db.session.execute(
        select(exists().where(
            ApprovalStep.request_id == request_id,
            ApprovalStep.decision != DECISION_PENDING,
        ))
    ).scalar())


def get_approval_chain(request_id: int) -> list[ApprovalStep]:
    return list(db.session.execute(
        select(ApprovalStep)
        .where(ApprovalStep.request_id == request_id)
        .order_by(ApprovalStep.sequence_order.asc())
        .execution_options(populate_existing=True)
    ).scalars())


def _normalise_chain(officer_id: int, approvers: list[dict]) -> list[tuple[int, int]]:
    """Validate the submitted chain.  Returns ``[(approver_id, sequence_order)]`` sorted by order."""
    minimum = current_app.config.get("MIN_LOAN_APPROVERS", 2)
    if not isinstance(approvers, list) or len(approvers) < minimum:
        raise ValidationError(
            f"At least {minimum} approvers are required",
            details={"approvers": f"min {minimum}"},
        )

    chain = []
    for idx, item in enumerate(approvers):
        try:
            approver_id = int(item["approver_id"])
            order = int(item["sequence_order"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError(
                "Each approver needs integer approver_id and sequence_order",
                details={"approvers": f"entry {idx} is malformed"},
            )
        if order < 1:
            raise ValidationError("sequence_order must be positive",
                                  details={"sequence_order": order})
        chain.append((approver_id, order))

    ids = [a for a, _ in chain]
    orders = [o for _, o in chain]
    if len(set(ids)) != len(ids):
        raise ValidationError("Duplicate approver in chain", details={"approvers": "duplicate approver_id"})
    if len(set(orders)) != len(orders):
        raise ValidationError("Duplicate sequence_order in chain",
                              details={"sequence_order": "values must be unique"})
    if officer_id in ids:
        raise ValidationError("The assigned officer cannot approve their own review",
                              details={"approvers": f"officer {officer_id} listed"})

    hr_ids = set(db.session.execute(
        select(User.id).where(User.id.in_(ids), User.role == ROLE_HR)
    ).scalars())
    unknown = sorted(set(ids) - hr_ids)
    if unknown:
        raise ValidationError("Approvers must be existing HR users",
                              details={"approvers": unknown})

    return sorted(chain, key=lambda pair: pair[1])


def assign_approvers(request_id: int, actor: Actor, approvers: list[dict],
                     remarks: str | None = None) -> list[ApprovalStep]:
    """
    Replace the request's approval chain and mark its first step current.

    Allowed while UnderReviewOfficer, or AwaitingApprovals before any step
    has been decided.  Re-running fully replaces the previous chain.

    Raises:
        InvalidTransitionError, NotAuthorizedError, ValidationError,
        TransitionConflictError
    """
    req = load_request(request_id, lock=True)
    snap = RequestSnapshot.of(req, chain_started=chain_started(request_id))
    verdict = require_transition(snap, "assign_approvers", actor)
    chain = _normalise_chain(actor.id, approvers)

    # Claim the request first; a concurrent re-assignment or decision loses here.
    criteria = precondition_criteria(snap, "assign_approvers", actor)
    criteria.append(~exists().where(
        ApprovalStep.request_id == request_id,
        ApprovalStep.decision != DECISION_PENDING,
    ))
    guarded_update(request_id, "assign_approvers", criteria, {"status": verdict["to"]})

    db.session.execute(
        delete(ApprovalStep)
        .where(ApprovalStep.request_id == request_id)
        .execution_options(synchronize_session="fetch")
    )
    db.session.flush()

    steps = []
    for position, (approver_id, order) in enumerate(chain):
        step = ApprovalStep(
            request_id=request_id,
            approver_id=approver_id,
            sequence_order=order,
            is_current=position == 0,
            decision=DECISION_PENDING,
        )
        db.session.add(step)
        steps.append(step)
    db.session.flush()

    summary = ", ".join(f"#{o}:{a}" for a, o in chain)
    record_history(request_id, "request.assign_approvers", actor.id,
                   remarks or f"Approval chain: {summary}")
    return steps


def _load_current_step(request_id: int, approver_id: int) -> ApprovalStep | None:
    return db.session.execute(
        select(ApprovalStep)
        .where(
            ApprovalStep.request_id == request_id,
            ApprovalStep.approver_id == approver_id,
            ApprovalStep.is_current.is_(True),
        )
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _next_step(request_id: int, after_order: int) -> ApprovalStep | None:
    return db.session.execute(
        select(ApprovalStep)
        .where(
            ApprovalStep.request_id == request_id,
            ApprovalStep.sequence_order > after_order,
            ApprovalStep.decision == DECISION_PENDING,
        )
        .order_by(ApprovalStep.sequence_order.asc())
        .limit(1)
    ).scalar_one_or_none()


def review_approval(request_id: int, actor: Actor, decision: str,
                    comments: str | None = None) -> dict:
    """
    Record the caller's decision on their current step.

    Rejected → request Rejected; unreviewed steps stay Pending.
    Approved → next step becomes current, or request Approved if none left.

    Returns:
        {"decision", "status", "next_approver_id"}

    Raises:
        NotFoundError, NotAuthorizedError (not your turn), InvalidTransitionError,
        ValidationError, TransitionConflictError (lost the race)
    """
    if decision not in REVIEW_DECISIONS:
        raise ValidationError(
            f"decision must be one of {sorted(REVIEW_DECISIONS)}",
            details={"decision": decision},
        )
    req = load_request(request_id, lock=True)

    # 1. Caller's current step
    step = _load_current_step(request_id, actor.id)
    if step is None:
        raise NotAuthorizedError(actor.id, "review_approval", "not your turn")

    # 2. Request status
    snap = RequestSnapshot.of(req, current_approver_id=step.approver_id)
    require_transition(snap, "review_approval", actor)

    # 3. Decide the step: still current, still pending, still ours
    now = datetime.now(timezone.utc)
    guarded_step_update(
        step.id, request_id, "review_approval",
        [
            ApprovalStep.is_current.is_(True),
            ApprovalStep.decision == DECISION_PENDING,
            ApprovalStep.approver_id == actor.id,
        ],
        {"decision": decision, "reviewed_at": now, "comments": comments, "is_current": False},
    )

    status_criteria = [BenefitRequest.status == AWAITING_APPROVALS]
    next_approver_id = None

    if decision == DECISION_REJECTED:
        # 4. Short-circuit
        guarded_update(request_id, "review_approval", status_criteria,
                       {"status": REJECTED, "decided_by": actor.id, "decided_at": now})
        new_status = REJECTED
        history_action = "request.step_reject"
    else:
        # 5. Advance or finish
        nxt = _next_step(request_id, step.sequence_order)
        if nxt is not None:
            guarded_step_update(
                nxt.id, request_id, "review_approval",
                [ApprovalStep.is_current.is_(False), ApprovalStep.decision == DECISION_PENDING],
                {"is_current": True},
            )
            guarded_update(request_id, "review_approval", status_criteria, {})
            new_status = AWAITING_APPROVALS
            next_approver_id = nxt.approver_id
        else:
            guarded_update(request_id, "review_approval", status_criteria,
                           {"status": APPROVED, "decided_by": actor.id, "decided_at": now})
            new_status = APPROVED
        history_action = "request.step_approve"

    remark = f"Step #{step.sequence_order} {decision.lower()}"
    if comments:
        remark += f": {comments}"
    record_history(request_id, history_action, actor.id, remark)

    logger.debug("Step %s of request %s decided %s", step.id, request_id, decision)
    return {
        "decision": decision,
        "status": new_status,
        "next_approver_id": next_approver_id,
    }
