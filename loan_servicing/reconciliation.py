"""
Balance Reconciliation Module

Keeps a loan's aggregate balances and installment counters in step with its
schedule. Two modes converge on the same figures for a consistent ledger:

- incremental: adjust the stored balances by one payment's split
- full: rebuild everything from the confirmed ledger entries, ignoring
  whatever the stored balances say
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .loans import Loan, LoanStatus
from .schedule import Installment, InstallmentStatus
from .allocation import AllocationPlan
from .repayments import Repayment
from .money import ZERO, money_add, money_sub, money_sum, clamp_floor


@dataclass
class ReconciliationResult:
    """Balances before and after a full recomputation"""
    loan_id: str
    before: Dict[str, Any]
    after: Dict[str, Any]
    repayments_replayed: int
    changed_installments: List[Installment] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.before != self.after or bool(self.changed_installments)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "before": self.before,
            "after": self.after,
            "repayments_replayed": self.repayments_replayed,
            "installments_updated": len(self.changed_installments),
            "changed": self.changed
        }


def _apply_status_rules(loan: Loan, has_payments: bool) -> None:
    """Status transitions driven by balances"""
    if loan.status in (LoanStatus.DEFAULTED, LoanStatus.WRITTEN_OFF):
        return

    if loan.loan_balance <= ZERO and loan.installments_outstanding <= 0:
        loan.status = LoanStatus.COMPLETED
    elif loan.status == LoanStatus.COMPLETED:
        # Balance reopened by a reversal
        loan.status = LoanStatus.ACTIVE if has_payments else LoanStatus.DISBURSED
    elif loan.status == LoanStatus.DISBURSED and has_payments:
        loan.status = LoanStatus.ACTIVE


class BalanceReconciler:
    """
    Incremental and full balance reconciliation
    """

    def apply_payment(self, loan: Loan, plan: AllocationPlan) -> Loan:
        """
        Adjust a loan by one payment (incremental mode)

        Args:
            loan: Loan to update in place
            plan: Allocation that was just applied to its installments

        Returns:
            The updated loan
        """
        loan.principal_balance = clamp_floor(money_sub(loan.principal_balance, plan.principal_paid))
        loan.interest_balance = clamp_floor(money_sub(loan.interest_balance, plan.interest_paid))
        loan.loan_balance = money_add(loan.principal_balance, loan.interest_balance)

        loan.installments_paid += plan.installments_completed
        loan.installments_outstanding = max(0, loan.total_installments - loan.installments_paid)

        loan.total_paid_amount = money_add(loan.total_paid_amount, plan.amount)
        if loan.last_payment_date is None or plan.payment_date > loan.last_payment_date:
            loan.last_payment_date = plan.payment_date

        _apply_status_rules(loan, has_payments=True)
        return loan

    def recompute(
        self,
        loan: Loan,
        installments: List[Installment],
        confirmed_repayments: List[Repayment]
    ) -> ReconciliationResult:
        """
        Rebuild installment paid amounts and loan balances from the ledger
        (full mode)

        Idempotent: the outcome depends only on the confirmed entries and the
        installment due amounts.

        Args:
            loan: Loan to update in place
            installments: All of the loan's installments; updated in place
            confirmed_repayments: Confirmed ledger entries in replay order

        Returns:
            ReconciliationResult with before/after balances and the
            installments whose stored values changed
        """
        before = self._snapshot(loan)
        original = {inst.id: inst.to_dict() for inst in installments}
        by_id = {inst.id: inst for inst in installments}

        for installment in installments:
            installment.reset_payments()
            if installment.status in (InstallmentStatus.PAID, InstallmentStatus.PARTIAL):
                installment.status = InstallmentStatus.PENDING

        for repayment in confirmed_repayments:
            for split in repayment.installment_splits():
                installment = by_id.get(split.installment_id)
                if installment is None:
                    continue
                installment.penalty_paid = money_add(installment.penalty_paid, split.penalty_paid)
                installment.fee_paid = money_add(installment.fee_paid, split.fee_paid)
                installment.interest_paid = money_add(installment.interest_paid, split.interest_paid)
                installment.principal_paid = money_add(installment.principal_paid, split.principal_paid)
                # Penalty paid implies at least that much was assessed
                if installment.penalty_due < installment.penalty_paid:
                    installment.penalty_due = installment.penalty_paid
                if installment.payment_date is None or repayment.payment_date > installment.payment_date:
                    installment.payment_date = repayment.payment_date

        for installment in installments:
            installment.status = installment.derived_status()

        principal_paid = money_sum(r.principal_paid for r in confirmed_repayments)
        interest_paid = money_sum(r.interest_paid for r in confirmed_repayments)

        loan.principal_balance = clamp_floor(money_sub(loan.principal_amount, principal_paid))
        loan.interest_balance = clamp_floor(money_sub(loan.total_interest, interest_paid))
        loan.loan_balance = money_add(loan.principal_balance, loan.interest_balance)

        loan.installments_paid = sum(1 for inst in installments
                                     if inst.status == InstallmentStatus.PAID)
        loan.installments_outstanding = max(0, loan.total_installments - loan.installments_paid)

        loan.total_paid_amount = money_sum(r.amount for r in confirmed_repayments)
        loan.last_payment_date = max((r.payment_date for r in confirmed_repayments), default=None)

        _apply_status_rules(loan, has_payments=bool(confirmed_repayments))

        changed = [inst for inst in installments if inst.to_dict() != original[inst.id]]
        return ReconciliationResult(
            loan_id=loan.id,
            before=before,
            after=self._snapshot(loan),
            repayments_replayed=len(confirmed_repayments),
            changed_installments=changed
        )

    @staticmethod
    def _snapshot(loan: Loan) -> Dict[str, Any]:
        return {
            "principal_balance": str(loan.principal_balance),
            "interest_balance": str(loan.interest_balance),
            "loan_balance": str(loan.loan_balance),
            "installments_paid": loan.installments_paid,
            "installments_outstanding": loan.installments_outstanding,
            "total_paid_amount": str(loan.total_paid_amount),
            "last_payment_date": loan.last_payment_date.isoformat() if loan.last_payment_date else None,
            "status": loan.status.value
        }
