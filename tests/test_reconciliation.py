"""
Test suite for balance reconciliation

Incremental updates after each payment and a full rebuild from the
ledger must agree.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.loans import LoanStatus
from loan_servicing.schedule import InstallmentStatus
from loan_servicing.reconciliation import BalanceReconciler


class TestConvergence:
    """Test incremental and full modes reach the same balances"""

    def test_two_payments_then_full_recompute(self, engine, two_installment_loan):
        engine.allocate_payment(two_installment_loan.id, Decimal("500.00"), date(2024, 1, 31))
        engine.allocate_payment(two_installment_loan.id, Decimal("1000.00"), date(2024, 2, 5))

        loan = engine.get_loan(two_installment_loan.id)
        assert loan.principal_balance == Decimal("680.00")
        assert loan.interest_balance == Decimal("0")
        assert loan.installments_paid == 1
        assert loan.installments_outstanding == 1
        assert loan.status == LoanStatus.ACTIVE

        result = engine.reconcile_loan_balances(loan.id)

        assert not result.changed
        assert result.repayments_replayed == 2
        assert result.after["principal_balance"] == "680.00"

    def test_recompute_repairs_drifted_balances(self, engine, two_installment_loan):
        engine.allocate_payment(two_installment_loan.id, Decimal("1500.00"), date(2024, 1, 31))

        loan = engine.get_loan(two_installment_loan.id)
        loan.principal_balance = Decimal("9999.00")
        loan.installments_paid = 0
        engine.loans.save_loan(loan)

        result = engine.reconcile_loan_balances(loan.id)

        assert result.changed
        repaired = engine.get_loan(loan.id)
        assert repaired.principal_balance == Decimal("680.00")
        assert repaired.interest_balance == Decimal("0.00")
        assert repaired.installments_paid == 1

        # A second run finds nothing to do
        assert not engine.reconcile_loan_balances(loan.id).changed

    def test_recompute_repairs_installments(self, engine, two_installment_loan):
        engine.allocate_payment(two_installment_loan.id, Decimal("1500.00"), date(2024, 1, 31))

        first = engine.get_schedule(two_installment_loan.id)[0]
        first.principal_paid = Decimal("0")
        first.status = InstallmentStatus.PENDING
        engine.schedule.save_installment(first)

        result = engine.reconcile_loan_balances(two_installment_loan.id)

        assert len(result.changed_installments) == 1
        rebuilt = engine.get_schedule(two_installment_loan.id)
        assert rebuilt[0].status == InstallmentStatus.PAID
        assert rebuilt[0].principal_paid == Decimal("1000.00")
        assert rebuilt[1].status == InstallmentStatus.PARTIAL
        assert rebuilt[1].principal_paid == Decimal("320.00")

    def test_overdue_status_survives_recompute(self, engine, two_installment_loan):
        engine.run_overdue_sweep(date(2024, 2, 10))

        engine.reconcile_loan_balances(two_installment_loan.id)

        schedule = engine.get_schedule(two_installment_loan.id)
        assert schedule[0].status == InstallmentStatus.OVERDUE
        assert schedule[1].status == InstallmentStatus.PENDING


class TestStatusRules:
    """Test loan status transitions driven by balances"""

    def test_full_payment_completes_loan(self, engine, single_installment_loan):
        result = engine.allocate_payment(single_installment_loan.id, Decimal("102000000.00"),
                                         date(2024, 3, 31))

        loan = engine.get_loan(single_installment_loan.id)
        assert loan.status == LoanStatus.COMPLETED
        assert loan.loan_balance == Decimal("0")
        assert result.excess_amount == Decimal("0")

    def test_empty_ledger_resets_to_disbursed(self, engine, two_installment_loan):
        reconciler = BalanceReconciler()
        loan = engine.get_loan(two_installment_loan.id)
        loan.status = LoanStatus.COMPLETED
        loan.loan_balance = Decimal("0")
        loan.installments_outstanding = 0

        result = reconciler.recompute(loan, engine.get_schedule(loan.id), [])

        assert loan.status == LoanStatus.DISBURSED
        assert loan.loan_balance == Decimal("2180.00")
        assert loan.installments_outstanding == 2
        assert result.before["status"] == "completed"
        assert result.after["status"] == "disbursed"

    @pytest.mark.parametrize("status", [LoanStatus.DEFAULTED, LoanStatus.WRITTEN_OFF])
    def test_terminal_statuses_untouched(self, engine, two_installment_loan, status):
        reconciler = BalanceReconciler()
        loan = engine.get_loan(two_installment_loan.id)
        loan.status = status

        reconciler.recompute(loan, engine.get_schedule(loan.id), [])

        assert loan.status == status
