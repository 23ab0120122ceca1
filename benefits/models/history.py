"""
Benefit Request Engine
Request history — the append-only audit trail.

Models:
    - HistoryEntry: one immutable row per lifecycle event on a request.

Every mutating engine operation appends exactly one entry inside its own
transaction, so a state change is never observable without its audit row.
"""

from datetime import datetime, timezone

from sqlalchemy import select

from benefits.models import db

# ── Action vocabulary ────────────────────────────────────────────────────────

HISTORY_ACTIONS = {
    "request.create",
    "request.mark_ready",
    "request.mark_incomplete",
    "request.move_to_review",
    "request.assign_approvers",
    "request.step_approve",
    "request.step_reject",
    "request.officer_approve",
    "request.officer_reject",
    "request.release",
    "request.cancel",
}


class HistoryEntry(db.Model):
    """
    Immutable history row.

    Never updated or deleted by the engine; the only way rows disappear is
    a cascade from a purged parent request, which the engine never does.
    """

    __tablename__ = "history_entries"
    __table_args__ = (
        db.Index("ix_history_entries_request_ts", "request_id", "timestamp"),
        db.Index("ix_history_entries_action", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("benefit_requests.id", ondelete="CASCADE"), nullable=False,
    )
    action = db.Column(db.String(40), nullable=False, comment="request.create | request.cancel | …")
    performed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    remarks = db.Column(db.Text, nullable=True)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "action": self.action,
            "performed_by": self.performed_by,
            "remarks": self.remarks,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<HistoryEntry {self.id}: {self.action} on request {self.request_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def record_history(
    request_id: int,
    action: str,
    performed_by: int | None,
    remarks: str | None = None,
) -> HistoryEntry:
    """
    Append a single history row.  Uses ``flush`` so callers keep
    transaction control; a failure here aborts the caller's transaction.

    Raises:
        ValueError: ``action`` is not part of HISTORY_ACTIONS.
    """
    if action not in HISTORY_ACTIONS:
        raise ValueError(f"Unknown history action: {action}")

    entry = HistoryEntry(
        request_id=request_id,
        action=action,
        performed_by=performed_by,
        remarks=(remarks or "").strip() or None,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def history_for(request_id: int) -> list[HistoryEntry]:
    """Return every entry for a request, oldest first."""
    return list(
        db.session.execute(
            select(HistoryEntry)
            .where(HistoryEntry.request_id == request_id)
            .order_by(HistoryEntry.timestamp.asc(), HistoryEntry.id.asc())
        ).scalars()
    )
