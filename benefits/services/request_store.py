"""
Request store — transactional read-modify-write primitives.

All exclusion is pushed to the database:
    - ``unit_of_work`` wraps one engine operation in one transaction and maps
      driver failures onto the engine's exception types.
    - ``guarded_update`` is the compare-and-swap primitive: an
      ``UPDATE … WHERE id = :id AND <expected state>`` whose zero-row outcome
      becomes TransitionConflictError, never a silent no-op.
    - ``load_request(lock=True)`` issues ``SELECT … FOR UPDATE`` on backends
      that support it (ignored by SQLite).

Nothing here caches state in process memory; every check re-reads the row
inside the caller's transaction.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import exists, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from benefits.core.exceptions import NotFoundError, TransitionConflictError, ValidationError
from benefits.models import db
from benefits.models.benefit_request import (
    ApprovalStep,
    BenefitRequest,
    BLOCKING_STATUSES,
    OPEN_REQUEST_INDEX,
)
from benefits.models.employee import User

logger = logging.getLogger(__name__)

# SQLSTATE for serialization_failure / deadlock_detected (PostgreSQL)
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


@contextmanager
def unit_of_work(request_id: int | None = None, action: str = ""):
    """Run the enclosed block as one transaction.

    Commits on success, rolls back on any exception.

    IntegrityError        → ValidationError (duplicate / constraint violation)
    serialization failure → TransitionConflictError (caller may retry)
    everything else       → re-raised unchanged after rollback
    """
    try:
        yield db.session
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error during %s on request %s: %s", action, request_id, exc.orig)
        raise ValidationError("Duplicate or constraint violation") from exc
    except DBAPIError as exc:
        db.session.rollback()
        if _sqlstate(exc) in _RETRYABLE_SQLSTATES:
            logger.warning(
                "Serialization failure during %s on request %s", action, request_id,
                extra={"request_id": request_id, "event_type": "transition_conflict"},
            )
            raise TransitionConflictError(request_id, action, "serialization failure") from exc
        logger.exception("Database error during %s on request %s", action, request_id)
        raise
    except Exception:
        db.session.rollback()
        raise


def load_request(request_id: int, *, lock: bool = False) -> BenefitRequest:
    """Fetch a request by id, optionally row-locked.  Raises NotFoundError."""
    stmt = select(BenefitRequest).where(BenefitRequest.id == request_id)
    if lock:
        stmt = stmt.with_for_update()
    req = db.session.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
    if req is None:
        raise NotFoundError(resource="BenefitRequest", resource_id=request_id)
    return req


def load_user(user_id: int, *, lock: bool = False) -> User:
    stmt = select(User).where(User.id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    user = db.session.execute(stmt).scalar_one_or_none()
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def guarded_update(request_id: int, action: str, criteria: list, values: dict) -> BenefitRequest:
    """Conditionally update one request row.

    Args:
        criteria: extra WHERE clauses asserting the expected current state
                  (status, assigned actor, readiness …).
        values:   column values to set; ``updated_at`` is always bumped.

    Returns:
        The refreshed BenefitRequest.

    Raises:
        TransitionConflictError: no row matched — someone else moved it.
    """
    values = dict(values)
    values.setdefault("updated_at", datetime.now(timezone.utc))
    result = db.session.execute(
        update(BenefitRequest)
        .where(BenefitRequest.id == request_id, *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning(
            "Conditional update matched no rows: %s on request %s", action, request_id,
            extra={"request_id": request_id, "event_type": "transition_conflict"},
        )
        raise TransitionConflictError(request_id, action)
    return db.session.get(BenefitRequest, request_id, populate_existing=True)


def guarded_step_update(step_id: int, request_id: int, action: str, criteria: list, values: dict) -> None:
    """Conditionally update one approval step.  Zero rows → TransitionConflictError."""
    result = db.session.execute(
        update(ApprovalStep)
        .where(ApprovalStep.id == step_id, *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning(
            "Conditional step update matched no rows: %s on step %s", action, step_id,
            extra={"request_id": request_id, "event_type": "transition_conflict"},
        )
        raise TransitionConflictError(request_id, action, f"approval step {step_id} already moved")


def current_step(request_id: int) -> ApprovalStep | None:
    """Return the single current step of a request's chain, if any."""
    return db.session.execute(
        select(ApprovalStep)
        .where(ApprovalStep.request_id == request_id, ApprovalStep.is_current.is_(True))
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def has_open_request(subject_user_id: int, kind: str, *, exclude_id: int | None = None) -> bool:
    """True if the subject already holds a request of ``kind`` in a blocking status."""
    clauses = [
        BenefitRequest.subject_user_id == subject_user_id,
        BenefitRequest.request_kind == kind,
        BenefitRequest.status.in_(BLOCKING_STATUSES),
    ]
    if exclude_id is not None:
        clauses.append(BenefitRequest.id != exclude_id)
    return bool(db.session.execute(select(exists().where(*clauses))).scalar())


def is_open_request_violation(exc: IntegrityError) -> bool:
    """True if ``exc`` came from the one-open-request-per-kind unique index.

    PostgreSQL names the index; SQLite only lists the indexed columns.
    """
    message = str(exc.orig)
    return OPEN_REQUEST_INDEX in message or (
        "benefit_requests.subject_user_id" in message and "benefit_requests.request_kind" in message
    )
