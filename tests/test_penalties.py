"""
Test suite for penalty policies and the penalty calculator
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_servicing.storage import InMemoryStorage
from loan_servicing.penalties import (
    PenaltyType, PenaltyPolicy, PenaltyPolicyStore, PenaltyCalculator
)
from loan_servicing.schedule import Installment, installment_id
from loan_servicing.errors import ValidationError


def make_policy(penalty_type=PenaltyType.DAILY, rate="0.01", grace_period_days=0,
                max_penalty=None, is_active=True):
    now = datetime.now(timezone.utc)
    return PenaltyPolicy(
        id="POL001",
        created_at=now,
        updated_at=now,
        product_id="MICRO",
        penalty_type=penalty_type,
        rate=Decimal(rate),
        grace_period_days=grace_period_days,
        max_penalty=Decimal(max_penalty) if max_penalty else None,
        is_active=is_active
    )


class TestPenaltyCalculator:
    """Test penalty amounts for each policy type"""

    def setup_method(self):
        self.calculator = PenaltyCalculator()
        self.due = date(2024, 1, 31)

    def test_daily_penalty(self):
        penalty = self.calculator.calculate(
            self.due, Decimal("1100.00"), make_policy(), date(2024, 2, 10)
        )
        assert penalty == Decimal("110.00")

    def test_monthly_penalty_counts_started_periods(self):
        policy = make_policy(PenaltyType.MONTHLY, rate="0.05")
        assert self.calculator.calculate(
            self.due, Decimal("1000.00"), policy, date(2024, 3, 1)
        ) == Decimal("50.00")   # 30 days, one period
        assert self.calculator.calculate(
            self.due, Decimal("1000.00"), policy, date(2024, 3, 2)
        ) == Decimal("100.00")  # 31 days, two periods

    def test_fixed_penalty(self):
        policy = make_policy(PenaltyType.FIXED, rate="25")
        assert self.calculator.calculate(
            self.due, Decimal("1000.00"), policy, date(2024, 2, 1)
        ) == Decimal("25.00")

    def test_grace_period(self):
        policy = make_policy(grace_period_days=5)
        assert self.calculator.calculate(
            self.due, Decimal("1000.00"), policy, date(2024, 2, 5)
        ) == Decimal("0")
        assert self.calculator.calculate(
            self.due, Decimal("1000.00"), policy, date(2024, 2, 10)
        ) == Decimal("50.00")

    def test_cap(self):
        policy = make_policy(max_penalty="30.00")
        assert self.calculator.calculate(
            self.due, Decimal("1000.00"), policy, date(2024, 3, 31)
        ) == Decimal("30.00")

    def test_no_penalty_cases(self):
        assert self.calculator.calculate(self.due, Decimal("1000"), None, date(2024, 3, 1)) == 0
        assert self.calculator.calculate(
            self.due, Decimal("1000"), make_policy(is_active=False), date(2024, 3, 1)
        ) == 0
        assert self.calculator.calculate(
            self.due, Decimal("1000"), make_policy(), self.due
        ) == 0
        assert self.calculator.calculate(
            self.due, Decimal("0"), make_policy(), date(2024, 3, 1)
        ) == 0

    def test_days_overdue_never_negative(self):
        assert PenaltyCalculator.days_overdue(self.due, date(2024, 1, 1)) == 0
        assert PenaltyCalculator.days_overdue(self.due, date(2024, 2, 10)) == 10


class TestAssessInstallment:
    """Test installment-level assessment"""

    def make_installment(self, **kwargs):
        now = datetime.now(timezone.utc)
        values = dict(
            id=installment_id("LOAN001", 1),
            created_at=now,
            updated_at=now,
            loan_id="LOAN001",
            installment_number=1,
            due_date=date(2024, 1, 31),
            principal_due=Decimal("1000.00"),
            interest_due=Decimal("100.00"),
        )
        values.update(kwargs)
        return Installment(**values)

    def test_base_excludes_penalty(self):
        installment = self.make_installment(penalty_due=Decimal("5.00"))
        penalty = PenaltyCalculator().assess_installment(
            installment, make_policy(), date(2024, 2, 10)
        )
        # 1% of 1100 for 10 days; the earlier 5.00 does not compound
        assert penalty == Decimal("110.00")

    def test_never_lowered(self):
        installment = self.make_installment(penalty_due=Decimal("500.00"))
        penalty = PenaltyCalculator().assess_installment(
            installment, make_policy(), date(2024, 2, 10)
        )
        assert penalty == Decimal("500.00")

    def test_partially_paid_base(self):
        installment = self.make_installment(interest_paid=Decimal("100.00"),
                                            principal_paid=Decimal("400.00"))
        penalty = PenaltyCalculator().assess_installment(
            installment, make_policy(), date(2024, 2, 1)
        )
        assert penalty == Decimal("6.00")


class TestPenaltyPolicyStore:
    """Test policy registration and lookup"""

    def setup_method(self):
        self.store = PenaltyPolicyStore(InMemoryStorage())

    def test_new_policy_replaces_active_one(self):
        first = self.store.create_policy("MICRO", PenaltyType.DAILY, Decimal("0.01"))
        second = self.store.create_policy("MICRO", PenaltyType.FIXED, Decimal("20"))

        active = self.store.get_active_policy("MICRO")
        assert active.id == second.id
        assert active.penalty_type == PenaltyType.FIXED
        stored_first = [p for p in self.store.list_policies("MICRO") if p.id == first.id][0]
        assert not stored_first.is_active

    def test_unknown_product(self):
        assert self.store.get_active_policy("SME") is None

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValidationError):
            self.store.create_policy("MICRO", PenaltyType.DAILY, Decimal("-0.01"))
        with pytest.raises(ValidationError):
            self.store.create_policy("MICRO", PenaltyType.DAILY, Decimal("0.01"),
                                     grace_period_days=-1)


class TestDocumentedExample:

    def test_daily_with_and_without_cap(self):
        calculator = PenaltyCalculator()
        due = date(2024, 1, 1)
        as_of = date(2024, 1, 11)

        assert calculator.calculate(due, Decimal("1000000"), make_policy(), as_of) == Decimal("100000.00")
        assert calculator.calculate(
            due, Decimal("1000000"), make_policy(max_penalty="50000"), as_of
        ) == Decimal("50000.00")
