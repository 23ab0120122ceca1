"""
Benefit Request Blueprint — thin HTTP surface over the engine operations.

The upstream gateway authenticates the caller and forwards its identity as
``X-User-Id`` / ``X-User-Role`` headers; no token handling happens here.

Routes:
  GET    /benefit-requests/eligibility?kind=       – eligibility verdict
  POST   /benefit-requests                         – create request
  GET    /benefit-requests                         – list (kind, status, subject_user_id)
  GET    /benefit-requests/summary?kind=           – counts per status
  GET    /benefit-requests/<id>                    – request detail
  POST   /benefit-requests/<id>/mark-ready         – assistant: requirements complete
  POST   /benefit-requests/<id>/mark-incomplete    – assistant: requirements missing
  POST   /benefit-requests/<id>/move-to-review     – officer picks up
  PUT    /benefit-requests/<id>/approvers          – (re)assign approval chain
  GET    /benefit-requests/<id>/approvers          – approval chain
  POST   /benefit-requests/<id>/review             – current approver decides
  POST   /benefit-requests/<id>/decision           – withdrawal officer decides
  POST   /benefit-requests/<id>/release            – disburse
  POST   /benefit-requests/<id>/cancel             – cancel
  GET    /benefit-requests/<id>/access             – caller's capability set
  GET    /benefit-requests/<id>/history            – audit trail
  GET    /notifications?unread_only=               – caller's in-app inbox
"""

import logging

from flask import Blueprint, g, jsonify, request

from benefits.blueprints import page_of, page_window
from benefits.core.exceptions import (
    IneligibleError,
    InvalidTransitionError,
    NotAuthorizedError,
    NotFoundError,
    TransitionConflictError,
    ValidationError,
)
from benefits.models.benefit_request import LOAN_STATUSES, REQUEST_KINDS, WITHDRAWAL_STATUSES
from benefits.models.employee import ROLE_EMPLOYEE, USER_ROLES
from benefits.services import benefit_request_service as svc
from benefits.services.lifecycle import Actor
from benefits.services.notification import NotificationService
from benefits.utils.errors import E, api_error

logger = logging.getLogger(__name__)

benefit_request_bp = Blueprint("benefit_request_bp", __name__, url_prefix="/api/v1")


class _Unauthenticated(Exception):
    pass


# ── helpers ──────────────────────────────────────────────────────────────

def _actor() -> Actor:
    """Resolve the gateway-authenticated caller from request headers."""
    raw_id = request.headers.get("X-User-Id", "")
    role = request.headers.get("X-User-Role", "")
    try:
        actor_id = int(raw_id)
    except (TypeError, ValueError):
        raise _Unauthenticated("X-User-Id header is required")
    if role not in USER_ROLES:
        raise _Unauthenticated(f"X-User-Role must be one of {sorted(USER_ROLES)}")
    g.actor_id = actor_id
    return Actor(id=actor_id, role=role)


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ── error handlers ───────────────────────────────────────────────────────

@benefit_request_bp.errorhandler(_Unauthenticated)
def _handle_unauthenticated(error):
    return api_error(E.UNAUTHENTICATED, str(error))


@benefit_request_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@benefit_request_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@benefit_request_bp.errorhandler(IneligibleError)
def _handle_ineligible(error: IneligibleError):
    return api_error(E.INELIGIBLE, str(error),
                     details={"reason": error.reason, "eligibility": error.eligibility})


@benefit_request_bp.errorhandler(InvalidTransitionError)
def _handle_invalid_transition(error: InvalidTransitionError):
    return api_error(E.INVALID_TRANSITION, str(error),
                     details={"action": error.action, "current_status": error.current_status})


@benefit_request_bp.errorhandler(NotAuthorizedError)
def _handle_not_authorized(error: NotAuthorizedError):
    return api_error(E.FORBIDDEN, str(error), details={"action": error.action, "reason": error.reason})


@benefit_request_bp.errorhandler(TransitionConflictError)
def _handle_conflict(error: TransitionConflictError):
    return api_error(E.TRANSITION_CONFLICT, str(error),
                     details={"action": error.action, "retryable": True})


# ═════════════════════════════════════════════════════════════════════════════
# CREATE / QUERY
# ═════════════════════════════════════════════════════════════════════════════

@benefit_request_bp.route("/benefit-requests/eligibility", methods=["GET"])
def eligibility():
    """Eligibility for the caller (HR/Admin may pass ``subject_user_id``)."""
    actor = _actor()
    kind = request.args.get("kind", "")
    if kind not in REQUEST_KINDS:
        return api_error(E.VALIDATION_REQUIRED, f"kind must be one of {sorted(REQUEST_KINDS)}")
    subject_id = actor.id
    if actor.role != ROLE_EMPLOYEE:
        subject_id = request.args.get("subject_user_id", actor.id, type=int)
    return jsonify(svc.check_eligibility(subject_id, kind))


@benefit_request_bp.route("/benefit-requests", methods=["POST"])
def create_request():
    """Create a request for the caller.

    Body (Loan):       { request_kind, amount, term_months, purpose?, consent_acknowledged }
    Body (Withdrawal): { request_kind, withdrawal_type, requested_amount?, purpose?, consent_acknowledged }
    """
    actor = _actor()
    data = _body()
    if not data.get("request_kind"):
        return api_error(E.VALIDATION_REQUIRED, "request_kind is required")
    return jsonify(svc.create_request(actor, data)), 201


@benefit_request_bp.route("/benefit-requests", methods=["GET"])
def list_requests():
    """List requests.  Employees only ever see their own."""
    actor = _actor()
    kind = request.args.get("kind")
    status = request.args.get("status")
    if kind and kind not in REQUEST_KINDS:
        return api_error(E.VALIDATION_INVALID, f"kind must be one of {sorted(REQUEST_KINDS)}", status=400)
    if status and status not in LOAN_STATUSES | WITHDRAWAL_STATUSES:
        return api_error(E.VALIDATION_INVALID, f"Unknown status: {status}", status=400)

    subject_id = request.args.get("subject_user_id", type=int)
    if actor.role == ROLE_EMPLOYEE:
        subject_id = actor.id
    q = svc.list_requests(kind=kind, status=status, subject_user_id=subject_id)
    return jsonify(page_of(q, lambda r: r.to_dict()))


@benefit_request_bp.route("/benefit-requests/summary", methods=["GET"])
def summary():
    _actor()
    return jsonify(svc.status_summary(request.args.get("kind")))


@benefit_request_bp.route("/benefit-requests/<int:rid>", methods=["GET"])
def get_request(rid):
    _actor()
    return jsonify(svc.get_request(rid))


# ═════════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════════

@benefit_request_bp.route("/benefit-requests/<int:rid>/mark-ready", methods=["POST"])
def mark_ready(rid):
    actor = _actor()
    return jsonify(svc.mark_ready(rid, actor, _body().get("remarks")))


@benefit_request_bp.route("/benefit-requests/<int:rid>/mark-incomplete", methods=["POST"])
def mark_incomplete(rid):
    actor = _actor()
    return jsonify(svc.mark_incomplete(rid, actor, _body().get("notes")))


@benefit_request_bp.route("/benefit-requests/<int:rid>/move-to-review", methods=["POST"])
def move_to_review(rid):
    actor = _actor()
    return jsonify(svc.move_to_review(rid, actor, _body().get("remarks")))


@benefit_request_bp.route("/benefit-requests/<int:rid>/approvers", methods=["PUT"])
def assign_approvers(rid):
    """Replace the approval chain.

    Body: { approvers: [{approver_id, sequence_order}], remarks? }
    """
    actor = _actor()
    data = _body()
    if "approvers" not in data:
        return api_error(E.VALIDATION_REQUIRED, "approvers is required")
    return jsonify(svc.assign_approvers(rid, actor, data["approvers"], data.get("remarks")))


@benefit_request_bp.route("/benefit-requests/<int:rid>/approvers", methods=["GET"])
def approval_chain(rid):
    _actor()
    return jsonify(svc.get_approval_chain(rid))


@benefit_request_bp.route("/benefit-requests/<int:rid>/review", methods=["POST"])
def review(rid):
    """Body: { decision: Approved|Rejected, comments? }"""
    actor = _actor()
    data = _body()
    if not data.get("decision"):
        return api_error(E.VALIDATION_REQUIRED, "decision is required")
    return jsonify(svc.review_approval(rid, actor, data["decision"], data.get("comments")))


@benefit_request_bp.route("/benefit-requests/<int:rid>/decision", methods=["POST"])
def decision(rid):
    """Body: { decision: Approved|Rejected, remarks? }"""
    actor = _actor()
    data = _body()
    if not data.get("decision"):
        return api_error(E.VALIDATION_REQUIRED, "decision is required")
    return jsonify(svc.record_decision(rid, actor, data["decision"], data.get("remarks")))


@benefit_request_bp.route("/benefit-requests/<int:rid>/release", methods=["POST"])
def release(rid):
    """Body: { reference }"""
    actor = _actor()
    return jsonify(svc.release(rid, actor, _body().get("reference")))


@benefit_request_bp.route("/benefit-requests/<int:rid>/cancel", methods=["POST"])
def cancel(rid):
    actor = _actor()
    return jsonify(svc.cancel(rid, actor, _body().get("remarks")))


# ═════════════════════════════════════════════════════════════════════════════
# ACCESS & HISTORY
# ═════════════════════════════════════════════════════════════════════════════

@benefit_request_bp.route("/benefit-requests/<int:rid>/access", methods=["GET"])
def access(rid):
    actor = _actor()
    return jsonify(svc.get_access(rid, actor))


@benefit_request_bp.route("/benefit-requests/<int:rid>/history", methods=["GET"])
def history(rid):
    _actor()
    return jsonify(svc.get_history(rid))


@benefit_request_bp.route("/notifications", methods=["GET"])
def notifications():
    """Caller's in-app notifications, newest first.  ``unread_only``, ``limit``."""
    actor = _actor()
    unread_only = request.args.get("unread_only", "").lower() in ("1", "true", "yes")
    limit, _ = page_window()
    items = NotificationService.list_for_user(actor.id, unread_only=unread_only, limit=limit)
    return jsonify({"items": [n.to_dict() for n in items], "unread_only": unread_only})
