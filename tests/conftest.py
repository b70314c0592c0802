"""
Shared fixtures for the loan servicing test suite
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta
from typing import List, Tuple

from loan_servicing.config import LoanServicingConfig
from loan_servicing.storage import InMemoryStorage
from loan_servicing.engine import RepaymentEngine
from loan_servicing.loans import Loan, LoanStatus
from loan_servicing.schedule import ScheduleRegenerator, ScheduledInstallment


def build_loan(
    engine: RepaymentEngine,
    lines: List[Tuple[date, str, str]],
    status: LoanStatus = LoanStatus.DISBURSED,
    loan_type_id: str = "MICRO",
    loan_id: str = None
) -> Loan:
    """
    Create a loan whose schedule is exactly ``lines``

    Args:
        engine: Engine whose storage receives the loan
        lines: (due_date, principal_due, interest_due) per installment
        status: Status the loan ends up in
        loan_type_id: Product id, used for penalty policy lookup
        loan_id: Explicit loan id
    """
    principal = sum(Decimal(p) for _, p, _ in lines)
    loan = engine.loans.create_loan(
        client_id="CLIENT001",
        loan_type_id=loan_type_id,
        principal_amount=principal,
        annual_interest_rate=Decimal("0.24"),
        term_months=len(lines),
        first_payment_date=lines[0][0],
        status=LoanStatus.APPROVED,
        loan_id=loan_id
    )

    def generator(_loan):
        remaining = principal
        scheduled = []
        for number, (due, p, i) in enumerate(lines, start=1):
            remaining -= Decimal(p)
            scheduled.append(ScheduledInstallment(
                installment_number=number,
                due_date=due,
                principal_due=Decimal(p),
                interest_due=Decimal(i),
                balance_after=remaining
            ))
        return scheduled

    ScheduleRegenerator(engine.schedule, generator).regenerate(loan)
    loan.status = status
    if status not in (LoanStatus.PENDING, LoanStatus.APPROVED):
        loan.disbursement_date = lines[0][0] - timedelta(days=30)
    engine.loans.save_loan(loan)
    return loan


@pytest.fixture
def config():
    """Configuration isolated from the environment and any .env file"""
    return LoanServicingConfig(_env_file=None, database_url="memory://",
                               lock_timeout_seconds=2.0)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def engine(storage, config):
    return RepaymentEngine(storage, config=config)


@pytest.fixture
def make_loan(engine):
    """Factory fixture: make_loan(lines, status=..., loan_type_id=...)"""
    def _make(lines, **kwargs):
        return build_loan(engine, lines, **kwargs)
    return _make


@pytest.fixture
def single_installment_loan(make_loan):
    """One installment of 100,000,000 principal and 2,000,000 interest"""
    return make_loan([(date(2024, 3, 31), "100000000.00", "2000000.00")])


@pytest.fixture
def two_installment_loan(make_loan):
    """Two monthly installments: 1000/100 and 1000/80"""
    return make_loan([
        (date(2024, 1, 31), "1000.00", "100.00"),
        (date(2024, 2, 29), "1000.00", "80.00"),
    ])


@pytest.fixture
def loan_factory():
    """build_loan for engines other than the ``engine`` fixture"""
    return build_loan
