"""
Test suite for the repayment waterfall
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_servicing.allocation import PaymentAllocator, InstallmentSplit
from loan_servicing.schedule import Installment, InstallmentStatus, installment_id
from loan_servicing.penalties import PenaltyPolicy, PenaltyType
from loan_servicing.errors import ValidationError


def make_installment(number, due_date, principal, interest, **kwargs):
    now = datetime.now(timezone.utc)
    return Installment(
        id=installment_id("LOAN001", number),
        created_at=now,
        updated_at=now,
        loan_id="LOAN001",
        installment_number=number,
        due_date=due_date,
        principal_due=Decimal(principal),
        interest_due=Decimal(interest),
        **kwargs
    )


@pytest.fixture
def installments():
    return [
        make_installment(1, date(2024, 1, 31), "1000.00", "100.00"),
        make_installment(2, date(2024, 2, 29), "1000.00", "80.00"),
    ]


@pytest.fixture
def allocator():
    return PaymentAllocator()


class TestWaterfall:
    """Test ordering across and within installments"""

    def test_oldest_first_interest_before_principal(self, allocator, installments):
        plan = allocator.allocate(installments, Decimal("1500.00"), date(2024, 1, 31))

        first, second = plan.splits
        assert (first.interest_paid, first.principal_paid) == (Decimal("100.00"), Decimal("1000.00"))
        assert first.status_after == InstallmentStatus.PAID
        assert (second.interest_paid, second.principal_paid) == (Decimal("80.00"), Decimal("320.00"))
        assert second.status_after == InstallmentStatus.PARTIAL

        assert plan.principal_paid == Decimal("1320.00")
        assert plan.interest_paid == Decimal("180.00")
        assert plan.excess_amount == Decimal("0")
        assert plan.installments_completed == 1
        assert plan.is_conserved()

    def test_penalty_and_fee_come_first(self, allocator):
        installment = make_installment(1, date(2024, 1, 31), "1000.00", "100.00",
                                       fee_due=Decimal("10.00"), penalty_due=Decimal("15.00"))
        plan = allocator.allocate([installment], Decimal("20.00"), date(2024, 1, 31),
                                  assess_penalties=False)

        split = plan.splits[0]
        assert split.penalty_paid == Decimal("15.00")
        assert split.fee_paid == Decimal("5.00")
        assert split.interest_paid == Decimal("0")
        assert split.principal_paid == Decimal("0")

    def test_penalty_assessed_at_payment_date(self, allocator, installments):
        policy = PenaltyPolicy(
            id="POL001", created_at=datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc), product_id="MICRO",
            penalty_type=PenaltyType.DAILY, rate=Decimal("0.01")
        )
        plan = allocator.allocate(installments, Decimal("200.00"), date(2024, 2, 10),
                                  policy=policy)

        split = plan.splits[0]
        assert split.penalty_paid == Decimal("110.00")
        assert split.interest_paid == Decimal("90.00")
        assert plan.updated_installments[0].penalty_due == Decimal("110.00")

    def test_excess_is_reported(self, allocator, installments):
        plan = allocator.allocate(installments, Decimal("2300.00"), date(2024, 1, 31))

        assert plan.allocated_amount == Decimal("2180.00")
        assert plan.excess_amount == Decimal("120.00")
        assert all(s.status_after == InstallmentStatus.PAID for s in plan.splits)
        assert plan.is_conserved()

    def test_inputs_are_not_mutated(self, allocator, installments):
        allocator.allocate(installments, Decimal("1500.00"), date(2024, 1, 31))
        assert installments[0].principal_paid == Decimal("0")
        assert installments[0].status == InstallmentStatus.PENDING


class TestEligibility:
    """Test which installments may receive money"""

    def test_paid_and_follow_up_are_skipped(self, allocator):
        paid = make_installment(1, date(2024, 1, 31), "100.00", "10.00",
                                principal_paid=Decimal("100.00"), interest_paid=Decimal("10.00"),
                                status=InstallmentStatus.PAID)
        follow_up = make_installment(2, date(2024, 2, 29), "100.00", "10.00",
                                     status=InstallmentStatus.FOLLOW_UP)
        overdue = make_installment(3, date(2024, 3, 31), "100.00", "10.00",
                                   status=InstallmentStatus.OVERDUE)

        plan = allocator.allocate([paid, follow_up, overdue], Decimal("50.00"), date(2024, 4, 1))

        assert [s.installment_number for s in plan.splits] == [3]

    def test_overdue_never_regresses_to_pending(self, allocator):
        overdue = make_installment(1, date(2024, 1, 31), "100.00", "10.00",
                                   status=InstallmentStatus.OVERDUE)
        plan = allocator.allocate([overdue], Decimal("5.00"), date(2024, 2, 1),
                                  assess_penalties=False)
        assert plan.splits[0].status_before == InstallmentStatus.OVERDUE
        assert plan.splits[0].status_after == InstallmentStatus.PARTIAL

    def test_nothing_outstanding(self, allocator):
        plan = allocator.allocate([], Decimal("50.00"), date(2024, 2, 1))
        assert plan.splits == []
        assert plan.excess_amount == Decimal("50.00")

    def test_non_positive_amount_rejected(self, allocator, installments):
        with pytest.raises(ValidationError):
            allocator.allocate(installments, Decimal("0"), date(2024, 1, 31))
        with pytest.raises(ValidationError):
            allocator.allocate(installments, Decimal("-5"), date(2024, 1, 31))


class TestInstallmentSplit:

    def test_stored_form_restores(self):
        split = InstallmentSplit(
            installment_id="LOAN001_1", installment_number=1, due_date=date(2024, 1, 31),
            interest_paid=Decimal("100.00"), principal_paid=Decimal("50.00"),
            status_after=InstallmentStatus.PARTIAL
        )
        restored = InstallmentSplit.from_dict(split.to_dict())
        assert restored == split
        assert restored.amount == Decimal("150.00")
        assert not restored.became_paid
