"""
Access Policy — "what can this actor do next" for one request.

Read-only projection of the lifecycle guard table.  Each capability is the
answer ``validate_transition`` gives for the matching action, so the
projection and enforcement cannot drift apart.  Terminal requests project
an all-false capability set.
"""

from __future__ import annotations

from benefits.models.benefit_request import TRANSITIONS, is_terminal
from benefits.services.lifecycle import Actor, RequestSnapshot, validate_transition

# capability → guarded action
CAPABILITY_ACTIONS = {
    "can_mark_ready": "mark_ready",
    "can_mark_incomplete": "mark_incomplete",
    "can_move_to_review": "move_to_review",
    "can_assign_approvers": "assign_approvers",
    "can_approve": "review_approval",
    "can_reject": "review_approval",
    "can_release": "release",
    "can_cancel": "cancel",
}

# Withdrawal officer decisions surface as approve / reject too.
_DECISION_ACTION = {
    "Loan": "review_approval",
    "Withdrawal": "record_decision",
}


def capabilities(snap: RequestSnapshot, actor: Actor) -> dict[str, bool]:
    """Compute the boolean capability set for ``actor`` on ``snap``."""
    if is_terminal(snap.kind, snap.status):
        return {cap: False for cap in CAPABILITY_ACTIONS}

    table = TRANSITIONS.get(snap.kind, {})
    result = {}
    for cap, action in CAPABILITY_ACTIONS.items():
        if cap in ("can_approve", "can_reject"):
            action = _DECISION_ACTION.get(snap.kind, action)
        if action not in table:
            result[cap] = False
            continue
        result[cap] = validate_transition(snap, action, actor)["valid"]
    return result
