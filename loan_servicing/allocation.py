"""
Payment Allocation Module

The repayment waterfall. A payment is applied to outstanding installments
oldest first; within an installment the money fills penalty, then fee, then
interest, then principal. Whatever is left once every outstanding
installment is settled is reported as excess, never dropped.

The allocator is pure: it works on copies of the installments and returns a
plan that the engine persists.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .schedule import Installment, InstallmentStatus, ALLOCATABLE_STATUSES
from .penalties import PenaltyCalculator, PenaltyPolicy
from .errors import ValidationError
from .money import ZERO, TOLERANCE, round_money, money_add, money_sub, money_sum


@dataclass
class InstallmentSplit:
    """Money applied to one installment by one payment"""
    installment_id: str
    installment_number: int
    due_date: date
    penalty_paid: Decimal = ZERO
    fee_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    principal_paid: Decimal = ZERO
    status_before: InstallmentStatus = InstallmentStatus.PENDING
    status_after: InstallmentStatus = InstallmentStatus.PENDING

    @property
    def amount(self) -> Decimal:
        return money_add(self.penalty_paid, self.fee_paid, self.interest_paid, self.principal_paid)

    @property
    def became_paid(self) -> bool:
        return (self.status_after == InstallmentStatus.PAID
                and self.status_before != InstallmentStatus.PAID)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installment_id": self.installment_id,
            "installment_number": self.installment_number,
            "due_date": self.due_date.isoformat(),
            "penalty_paid": str(self.penalty_paid),
            "fee_paid": str(self.fee_paid),
            "interest_paid": str(self.interest_paid),
            "principal_paid": str(self.principal_paid),
            "status_before": self.status_before.value,
            "status_after": self.status_after.value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InstallmentSplit':
        return cls(
            installment_id=data["installment_id"],
            installment_number=int(data["installment_number"]),
            due_date=date.fromisoformat(data["due_date"]),
            penalty_paid=Decimal(data.get("penalty_paid", "0")),
            fee_paid=Decimal(data.get("fee_paid", "0")),
            interest_paid=Decimal(data.get("interest_paid", "0")),
            principal_paid=Decimal(data.get("principal_paid", "0")),
            status_before=InstallmentStatus(data.get("status_before", "pending")),
            status_after=InstallmentStatus(data.get("status_after", "pending"))
        )


@dataclass
class AllocationPlan:
    """Result of running the waterfall for one payment"""
    amount: Decimal
    payment_date: date
    splits: List[InstallmentSplit] = field(default_factory=list)
    updated_installments: List[Installment] = field(default_factory=list)
    excess_amount: Decimal = ZERO

    @property
    def principal_paid(self) -> Decimal:
        return money_sum(split.principal_paid for split in self.splits)

    @property
    def interest_paid(self) -> Decimal:
        return money_sum(split.interest_paid for split in self.splits)

    @property
    def fee_paid(self) -> Decimal:
        return money_sum(split.fee_paid for split in self.splits)

    @property
    def penalty_paid(self) -> Decimal:
        return money_sum(split.penalty_paid for split in self.splits)

    @property
    def allocated_amount(self) -> Decimal:
        return money_sum(split.amount for split in self.splits)

    @property
    def installments_completed(self) -> int:
        return sum(1 for split in self.splits if split.became_paid)

    def is_conserved(self) -> bool:
        """Allocated money plus excess equals the payment"""
        return abs(money_add(self.allocated_amount, self.excess_amount) - self.amount) <= TOLERANCE


def _take(remaining: Decimal, outstanding: Decimal) -> Tuple[Decimal, Decimal]:
    """Apply up to ``remaining`` to one bucket; returns (applied, remaining)"""
    applied = min(remaining, outstanding)
    if applied < ZERO:
        applied = ZERO
    return applied, money_sub(remaining, applied)


class PaymentAllocator:
    """
    Applies a payment to a loan's installments
    """

    def __init__(self, penalty_calculator: Optional[PenaltyCalculator] = None):
        self.penalty_calculator = penalty_calculator or PenaltyCalculator()

    def allocate(
        self,
        installments: List[Installment],
        amount: Decimal,
        payment_date: date,
        policy: Optional[PenaltyPolicy] = None,
        assess_penalties: bool = True
    ) -> AllocationPlan:
        """
        Run the waterfall

        Args:
            installments: The loan's installments; only pending, partial and
                overdue ones receive money
            amount: Payment amount, must be positive
            payment_date: Date the payment was received
            policy: Penalty policy of the loan's product
            assess_penalties: Recompute penalties at the payment date; when
                False only the stored penalty figures are used

        Returns:
            AllocationPlan with per-installment splits and updated copies

        Raises:
            ValidationError: If the amount is not positive
        """
        amount = round_money(amount)
        if amount <= ZERO:
            raise ValidationError("Payment amount must be positive", {"amount": str(amount)})

        plan = AllocationPlan(amount=amount, payment_date=payment_date)
        remaining = amount

        candidates = sorted(
            (inst for inst in installments if inst.status in ALLOCATABLE_STATUSES),
            key=lambda inst: inst.installment_number
        )

        for original in candidates:
            if remaining <= ZERO:
                break

            installment = replace(original)
            if assess_penalties:
                installment.penalty_due = self.penalty_calculator.assess_installment(
                    installment, policy, payment_date
                )

            if installment.total_outstanding <= ZERO:
                continue

            split = InstallmentSplit(
                installment_id=installment.id,
                installment_number=installment.installment_number,
                due_date=installment.due_date,
                status_before=original.status
            )

            # Strict priority: penalty, fee, interest, principal
            split.penalty_paid, remaining = _take(remaining, installment.outstanding_penalty)
            split.fee_paid, remaining = _take(remaining, installment.outstanding_fee)
            split.interest_paid, remaining = _take(remaining, installment.outstanding_interest)
            split.principal_paid, remaining = _take(remaining, installment.outstanding_principal)

            installment.penalty_paid = money_add(installment.penalty_paid, split.penalty_paid)
            installment.fee_paid = money_add(installment.fee_paid, split.fee_paid)
            installment.interest_paid = money_add(installment.interest_paid, split.interest_paid)
            installment.principal_paid = money_add(installment.principal_paid, split.principal_paid)
            installment.payment_date = payment_date

            # Payments only move a status forward
            new_status = installment.derived_status()
            if new_status.rank < original.status.rank:
                new_status = original.status
            installment.status = new_status
            split.status_after = new_status

            plan.splits.append(split)
            plan.updated_installments.append(installment)

        plan.excess_amount = remaining
        return plan
