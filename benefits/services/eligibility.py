"""
Eligibility Evaluator — balance / vesting snapshot and creation verdict.

Pure functions: inputs are contribution totals, employment data and an
"open request exists" flag; nothing here touches the database.  The engine
gathers the inputs (``benefit_request_service.check_eligibility``) and calls
in here both at evaluation time and again inside the creation transaction.

Vesting rule:
    employer share vests on a cliff — 0% strictly before hire_date + 24
    months, 100% at or after it.  Retirement, Disability, Death and
    Redundancy withdrawals bypass the cliff.

Usage:
    from benefits.services.eligibility import evaluate_loan, LoanPolicy
    verdict = evaluate_loan(totals, hire_date, "Active", has_open_request=False,
                            policy=LoanPolicy(), as_of=date.today())
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_FLOOR, Decimal

from benefits.models.benefit_request import IMMEDIATE_VESTING_TYPES

REASON_NOT_ACTIVE = "Employment status not Active"
REASON_NO_BALANCE = "No vested balance"
REASON_OPEN_LOAN = "Existing active loan"
REASON_OPEN_WITHDRAWAL = "Existing open withdrawal request"
REASON_NO_WITHDRAWAL_TYPE = "Employee not eligible for withdrawal under current status"

# Employment status → withdrawal types it unlocks
_TYPES_BY_EMPLOYMENT_STATUS = {
    "Retired": ["Retirement"],
    "Resigned": ["Resignation"],
    "Terminated": ["Redundancy"],
}
_DEFAULT_WITHDRAWAL_TYPES = ["Disability", "Death"]


# ═════════════════════════════════════════════════════════════════════════════
# Data Classes
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LoanPolicy:
    loan_cap: Decimal = Decimal("0.5")
    min_amount: Decimal = Decimal("5000")
    max_term_months: int = 24
    vesting_cliff_months: int = 24


@dataclass(frozen=True)
class WithdrawalPolicy:
    min_amount: Decimal = Decimal("5000")
    vesting_cliff_months: int = 24


@dataclass(frozen=True)
class ContributionTotals:
    employee_total: Decimal
    employer_total: Decimal

    @classmethod
    def of(cls, employee_total, employer_total) -> "ContributionTotals":
        return cls(_dec(employee_total), _dec(employer_total))


@dataclass
class VestingSnapshot:
    employee_total: Decimal
    employer_total: Decimal
    vested_amount: Decimal
    unvested_amount: Decimal

    @property
    def total_balance(self) -> Decimal:
        return self.employee_total + self.employer_total

    def to_dict(self) -> dict:
        return {
            "employee_total": float(self.employee_total),
            "employer_total": float(self.employer_total),
            "vested_amount": float(self.vested_amount),
            "unvested_amount": float(self.unvested_amount),
            "total_balance": float(self.total_balance),
        }


@dataclass
class LoanEligibility:
    eligible: bool
    reason: str | None
    vested_balance: Decimal
    max_amount: Decimal
    min_amount: Decimal
    max_term: int
    has_open_request: bool
    snapshot: VestingSnapshot | None = None

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "vested_balance": float(self.vested_balance),
            "max_amount": float(self.max_amount),
            "min_amount": float(self.min_amount),
            "max_term": self.max_term,
            "has_open_request": self.has_open_request,
        }


@dataclass
class WithdrawalEligibility:
    eligible: bool
    eligible_types: list[str]
    snapshot: VestingSnapshot
    reason_if_not_eligible: str | None = None
    has_open_request: bool = False
    payout_by_type: dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "eligible_types": list(self.eligible_types),
            "snapshot": self.snapshot.to_dict(),
            "reason_if_not_eligible": self.reason_if_not_eligible,
            "has_open_request": self.has_open_request,
            "payout_by_type": {k: float(v) for k, v in self.payout_by_type.items()},
        }


# ═════════════════════════════════════════════════════════════════════════════
# Vesting
# ═════════════════════════════════════════════════════════════════════════════

def _dec(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def add_months(start: date, months: int) -> date:
    """Calendar month addition, clamping to the last day of the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def is_cliff_vested(hire_date: date | None, as_of: date, cliff_months: int = 24) -> bool:
    """True once ``hire_date + cliff_months <= as_of``."""
    if hire_date is None:
        return False
    return add_months(hire_date, cliff_months) <= as_of


def compute_vesting(
    totals: ContributionTotals,
    hire_date: date | None,
    as_of: date,
    *,
    withdrawal_type: str | None = None,
    cliff_months: int = 24,
) -> VestingSnapshot:
    """Split the balance into vested / unvested under the cliff rule."""
    vested_employer = Decimal("0")
    if is_cliff_vested(hire_date, as_of, cliff_months):
        vested_employer = totals.employer_total
    if withdrawal_type in IMMEDIATE_VESTING_TYPES:
        vested_employer = totals.employer_total

    vested = totals.employee_total + vested_employer
    return VestingSnapshot(
        employee_total=totals.employee_total,
        employer_total=totals.employer_total,
        vested_amount=vested,
        unvested_amount=totals.employer_total - vested_employer,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Verdicts
# ═════════════════════════════════════════════════════════════════════════════

def evaluate_loan(
    totals: ContributionTotals,
    hire_date: date | None,
    employment_status: str,
    *,
    has_open_request: bool,
    as_of: date,
    policy: LoanPolicy | None = None,
) -> LoanEligibility:
    """Loan verdict.  First failing rule wins: employment, balance, open loan."""
    policy = policy or LoanPolicy()
    snapshot = compute_vesting(totals, hire_date, as_of, cliff_months=policy.vesting_cliff_months)
    vested = snapshot.vested_amount
    max_amount = (vested * policy.loan_cap).to_integral_value(rounding=ROUND_FLOOR)

    reason = None
    if employment_status != "Active":
        reason = REASON_NOT_ACTIVE
    elif vested <= 0:
        reason = REASON_NO_BALANCE
    elif has_open_request:
        reason = REASON_OPEN_LOAN

    return LoanEligibility(
        eligible=reason is None,
        reason=reason,
        vested_balance=vested,
        max_amount=max_amount,
        min_amount=policy.min_amount,
        max_term=policy.max_term_months,
        has_open_request=has_open_request,
        snapshot=snapshot,
    )


def eligible_withdrawal_types(employment_status: str) -> list[str]:
    return list(_TYPES_BY_EMPLOYMENT_STATUS.get(employment_status, _DEFAULT_WITHDRAWAL_TYPES))


def payout_for(totals: ContributionTotals, hire_date: date | None, as_of: date,
               withdrawal_type: str, cliff_months: int = 24) -> Decimal:
    """Maximum payout for a withdrawal type: vested amount under the cliff rule."""
    return compute_vesting(
        totals, hire_date, as_of, withdrawal_type=withdrawal_type, cliff_months=cliff_months,
    ).vested_amount


def evaluate_withdrawal(
    totals: ContributionTotals,
    hire_date: date | None,
    employment_status: str,
    *,
    has_open_request: bool,
    as_of: date,
    policy: WithdrawalPolicy | None = None,
) -> WithdrawalEligibility:
    """Withdrawal verdict with the eligible types and a balance snapshot."""
    policy = policy or WithdrawalPolicy()
    snapshot = compute_vesting(totals, hire_date, as_of, cliff_months=policy.vesting_cliff_months)
    types = eligible_withdrawal_types(employment_status)

    reason = None
    if has_open_request:
        reason = REASON_OPEN_WITHDRAWAL
    elif not types:
        reason = REASON_NO_WITHDRAWAL_TYPE

    return WithdrawalEligibility(
        eligible=reason is None,
        eligible_types=types,
        snapshot=snapshot,
        reason_if_not_eligible=reason,
        has_open_request=has_open_request,
        payout_by_type={
            t: payout_for(totals, hire_date, as_of, t, policy.vesting_cliff_months) for t in types
        },
    )
