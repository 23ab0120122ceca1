"""
Benefit Request Engine
Benefit request domain model.

Models:
    - BenefitRequest: one loan or withdrawal application (aggregate root)
    - ApprovalStep: one (request, approver) position in a sequential chain

Transition tables:
    LOAN_TRANSITIONS / WITHDRAWAL_TRANSITIONS map an action to its guard:
        from            statuses the action may start from
        to              resulting status (None = status unchanged)
        roles           actor roles allowed to attempt it
        relation        actor ↔ request relation that must hold
        requires_ready  assistant pre-screen must be complete
"""

from datetime import datetime, timezone

from benefits.models import db

# ── Kinds ────────────────────────────────────────────────────────────────────

KIND_LOAN = "Loan"
KIND_WITHDRAWAL = "Withdrawal"
REQUEST_KINDS = {KIND_LOAN, KIND_WITHDRAWAL}

# ── Statuses ─────────────────────────────────────────────────────────────────

PENDING = "Pending"
INCOMPLETE = "Incomplete"
UNDER_REVIEW_OFFICER = "UnderReviewOfficer"
AWAITING_APPROVALS = "AwaitingApprovals"
APPROVED = "Approved"
REJECTED = "Rejected"
CANCELLED = "Cancelled"
ACTIVE = "Active"
RELEASED = "Released"

LOAN_STATUSES = {PENDING, UNDER_REVIEW_OFFICER, AWAITING_APPROVALS, APPROVED, REJECTED, ACTIVE, CANCELLED}
WITHDRAWAL_STATUSES = {PENDING, INCOMPLETE, UNDER_REVIEW_OFFICER, APPROVED, REJECTED, RELEASED, CANCELLED}

TERMINAL_STATUSES = {
    KIND_LOAN: frozenset({ACTIVE, REJECTED, CANCELLED}),
    KIND_WITHDRAWAL: frozenset({RELEASED, REJECTED, CANCELLED}),
}

# A subject holding a request in any of these cannot open another of the same kind.
BLOCKING_STATUSES = frozenset({
    PENDING, INCOMPLETE, UNDER_REVIEW_OFFICER, AWAITING_APPROVALS, APPROVED, RELEASED, ACTIVE,
})

# Enforced in the database: at most one blocking request per subject and kind.
OPEN_REQUEST_INDEX = "uq_benefit_requests_one_open"
OPEN_REQUEST_PREDICATE = "status IN ({})".format(
    ", ".join(f"'{s}'" for s in sorted(BLOCKING_STATUSES))
)

# ── Step decisions ───────────────────────────────────────────────────────────

DECISION_PENDING = "Pending"
DECISION_APPROVED = "Approved"
DECISION_REJECTED = "Rejected"
REVIEW_DECISIONS = {DECISION_APPROVED, DECISION_REJECTED}

# ── Withdrawal types ─────────────────────────────────────────────────────────

WITHDRAWAL_TYPES = {"Retirement", "Resignation", "Redundancy", "Disability", "Death"}
# Employer share vests immediately for these, regardless of tenure.
IMMEDIATE_VESTING_TYPES = frozenset({"Retirement", "Disability", "Death", "Redundancy"})

# ── Actor relations ──────────────────────────────────────────────────────────

REL_ANY = "any"
REL_OWNER_OR_HR = "owner_or_hr"
REL_ASSISTANT = "assistant"            # unassigned, or the assistant already on it
REL_NOT_ASSISTANT = "not_assistant"
REL_OFFICER = "officer"
REL_CURRENT_APPROVER = "current_approver"

# ── Transition tables ────────────────────────────────────────────────────────

_HR = frozenset({"HR"})
_ANY_ROLE = frozenset({"Employee", "HR", "Admin"})

LOAN_TRANSITIONS = {
    "mark_ready": {
        "from": {PENDING}, "to": None,
        "roles": _HR, "relation": REL_ASSISTANT, "requires_ready": False,
    },
    "mark_incomplete": {
        "from": {PENDING}, "to": None,
        "roles": _HR, "relation": REL_ASSISTANT, "requires_ready": False,
    },
    "move_to_review": {
        "from": {PENDING}, "to": UNDER_REVIEW_OFFICER,
        "roles": _HR, "relation": REL_NOT_ASSISTANT, "requires_ready": False,
    },
    "assign_approvers": {
        "from": {UNDER_REVIEW_OFFICER, AWAITING_APPROVALS}, "to": AWAITING_APPROVALS,
        "roles": _HR, "relation": REL_OFFICER, "requires_ready": False,
    },
    "review_approval": {
        "from": {AWAITING_APPROVALS}, "to": None,   # Approved / Rejected / unchanged
        "roles": _ANY_ROLE, "relation": REL_CURRENT_APPROVER, "requires_ready": False,
    },
    "release": {
        "from": {APPROVED}, "to": ACTIVE,
        "roles": _HR, "relation": REL_OFFICER, "requires_ready": False,
    },
    "cancel": {
        "from": {PENDING, UNDER_REVIEW_OFFICER, AWAITING_APPROVALS}, "to": CANCELLED,
        "roles": frozenset({"Employee", "HR"}), "relation": REL_OWNER_OR_HR, "requires_ready": False,
    },
}

WITHDRAWAL_TRANSITIONS = {
    "mark_ready": {
        "from": {PENDING, INCOMPLETE}, "to": PENDING,
        "roles": _HR, "relation": REL_ASSISTANT, "requires_ready": False,
    },
    "mark_incomplete": {
        "from": {PENDING}, "to": INCOMPLETE,
        "roles": _HR, "relation": REL_ASSISTANT, "requires_ready": False,
    },
    "move_to_review": {
        "from": {PENDING}, "to": UNDER_REVIEW_OFFICER,
        "roles": _HR, "relation": REL_NOT_ASSISTANT, "requires_ready": True,
    },
    "record_decision": {
        "from": {UNDER_REVIEW_OFFICER}, "to": None,   # Approved / Rejected
        "roles": _HR, "relation": REL_OFFICER, "requires_ready": False,
    },
    "release": {
        "from": {APPROVED}, "to": RELEASED,
        "roles": _HR, "relation": REL_OFFICER, "requires_ready": False,
    },
    "cancel": {
        "from": {PENDING, INCOMPLETE, UNDER_REVIEW_OFFICER}, "to": CANCELLED,
        "roles": frozenset({"Employee", "HR"}), "relation": REL_OWNER_OR_HR, "requires_ready": False,
    },
}

TRANSITIONS = {
    KIND_LOAN: LOAN_TRANSITIONS,
    KIND_WITHDRAWAL: WITHDRAWAL_TRANSITIONS,
}


def is_terminal(kind: str, status: str) -> bool:
    return status in TERMINAL_STATUSES.get(kind, frozenset())


def _utcnow():
    return datetime.now(timezone.utc)


def _money(value):
    return float(value) if value is not None else None


class BenefitRequest(db.Model):
    """
    Loan or withdrawal application.

    Lifecycle (Loan):       Pending → UnderReviewOfficer → AwaitingApprovals
                            → Approved → Active   (or Rejected / Cancelled)
    Lifecycle (Withdrawal): Pending ⇄ Incomplete → UnderReviewOfficer
                            → Approved → Released (or Rejected / Cancelled)

    ``status`` is written only through the guarded conditional updates in
    ``benefits.services.lifecycle``.  Rows are never deleted.
    """

    __tablename__ = "benefit_requests"
    __table_args__ = (
        db.Index("ix_benefit_requests_subject_kind_status", "subject_user_id", "request_kind", "status"),
        db.Index("ix_benefit_requests_status", "status"),
        db.Index(
            OPEN_REQUEST_INDEX, "subject_user_id", "request_kind",
            unique=True,
            sqlite_where=db.text(OPEN_REQUEST_PREDICATE),
            postgresql_where=db.text(OPEN_REQUEST_PREDICATE),
        ),
        db.CheckConstraint("consent_acknowledged", name="ck_benefit_requests_consent"),
    )

    id = db.Column(db.Integer, primary_key=True)
    subject_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    request_kind = db.Column(db.String(20), nullable=False, comment="Loan | Withdrawal")
    status = db.Column(db.String(30), nullable=False, default=PENDING)

    # Pre-review / review stage actors
    ready_for_review = db.Column(db.Boolean, nullable=False, default=False)
    assistant_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    officer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Domain fields (opaque to the engine beyond creation-time bounds)
    amount = db.Column(db.Numeric(14, 2), nullable=False, comment="Loan principal / withdrawal payout")
    requested_amount = db.Column(db.Numeric(14, 2), nullable=True)
    term_months = db.Column(db.Integer, nullable=True)
    purpose = db.Column(db.Text, nullable=True)
    withdrawal_type = db.Column(db.String(20), nullable=True)

    # Eligibility snapshot captured at creation
    vested_balance = db.Column(db.Numeric(14, 2), nullable=True)
    unvested_balance = db.Column(db.Numeric(14, 2), nullable=True)
    total_balance = db.Column(db.Numeric(14, 2), nullable=True)

    consent_acknowledged = db.Column(db.Boolean, nullable=False, default=False)

    # Decision / release
    decided_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    release_reference = db.Column(db.String(120), nullable=True)
    released_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    approval_steps = db.relationship(
        "ApprovalStep", backref="request", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ApprovalStep.sequence_order",
    )
    history = db.relationship(
        "HistoryEntry", backref="request", lazy="dynamic",
        cascade="all, delete-orphan", order_by="HistoryEntry.id",
    )

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.request_kind, self.status)

    def to_dict(self):
        return {
            "id": self.id,
            "subject_user_id": self.subject_user_id,
            "request_kind": self.request_kind,
            "status": self.status,
            "ready_for_review": self.ready_for_review,
            "assistant_id": self.assistant_id,
            "officer_id": self.officer_id,
            "notes": self.notes,
            "amount": _money(self.amount),
            "requested_amount": _money(self.requested_amount),
            "term_months": self.term_months,
            "purpose": self.purpose,
            "withdrawal_type": self.withdrawal_type,
            "vested_balance": _money(self.vested_balance),
            "unvested_balance": _money(self.unvested_balance),
            "total_balance": _money(self.total_balance),
            "consent_acknowledged": self.consent_acknowledged,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "release_reference": self.release_reference,
            "released_by": self.released_by,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "is_terminal": self.is_terminal,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<BenefitRequest {self.id}: {self.request_kind} [{self.status}]>"


class ApprovalStep(db.Model):
    """
    One approver's position in a request's sequential approval chain.

    At most one step per request has ``is_current`` set; the partial unique
    index below makes a second current step a constraint violation even if
    application code got it wrong.
    """

    __tablename__ = "approval_steps"
    __table_args__ = (
        db.UniqueConstraint("request_id", "sequence_order", name="uq_approval_steps_request_sequence"),
        db.UniqueConstraint("request_id", "approver_id", name="uq_approval_steps_request_approver"),
        db.Index(
            "uq_approval_steps_one_current", "request_id",
            unique=True,
            sqlite_where=db.text("is_current = 1"),
            postgresql_where=db.text("is_current"),
        ),
        db.Index("ix_approval_steps_approver_current", "approver_id", "is_current"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("benefit_requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    sequence_order = db.Column(db.Integer, nullable=False)
    is_current = db.Column(db.Boolean, nullable=False, default=False)
    decision = db.Column(db.String(20), nullable=False, default=DECISION_PENDING,
                         comment="Pending | Approved | Rejected")
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "approver_id": self.approver_id,
            "sequence_order": self.sequence_order,
            "is_current": self.is_current,
            "decision": self.decision,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "comments": self.comments,
        }

    def __repr__(self):
        return f"<ApprovalStep {self.id}: req={self.request_id} #{self.sequence_order} [{self.decision}]>"
