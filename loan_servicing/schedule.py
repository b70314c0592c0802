"""
Installment Schedule Module

Per-loan ordered installment lines, the default amortization calculator that
produces them, and the delete-then-recreate regeneration step that is only
allowed before a loan is disbursed.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Iterable
from enum import Enum
import calendar
import math

from .storage import StorageInterface, StorageRecord
from .loans import Loan, RepaymentFrequency, InterestMethod
from .errors import InvalidState, ValidationError
from .money import ZERO, TOLERANCE, round_money, money_add, money_sub, money_sum, clamp_floor


class InstallmentStatus(Enum):
    """Installment states"""
    PENDING = "pending"        # Not yet due or due and untouched
    OVERDUE = "overdue"        # Marked past due by the overdue sweep
    PARTIAL = "partial"        # Some money received
    PAID = "paid"              # Fully settled
    FOLLOW_UP = "follow_up"    # Flagged for collection follow-up

    @property
    def rank(self) -> int:
        """Ordering used to stop payments from moving a status backwards"""
        return _STATUS_RANK[self]


_STATUS_RANK = {
    InstallmentStatus.PENDING: 0,
    InstallmentStatus.OVERDUE: 1,
    InstallmentStatus.FOLLOW_UP: 1,
    InstallmentStatus.PARTIAL: 2,
    InstallmentStatus.PAID: 3
}

# Installments the allocator may apply money to
ALLOCATABLE_STATUSES = (
    InstallmentStatus.PENDING,
    InstallmentStatus.PARTIAL,
    InstallmentStatus.OVERDUE
)

# Installments that still owe money
UNPAID_STATUSES = (
    InstallmentStatus.PENDING,
    InstallmentStatus.PARTIAL,
    InstallmentStatus.OVERDUE,
    InstallmentStatus.FOLLOW_UP
)


@dataclass
class Installment(StorageRecord):
    """One scheduled due line of a loan"""
    loan_id: str
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    fee_due: Decimal = ZERO
    penalty_due: Decimal = ZERO          # Penalty assessed so far
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    fee_paid: Decimal = ZERO
    penalty_paid: Decimal = ZERO
    balance_after: Decimal = ZERO        # Scheduled principal left after this line
    status: InstallmentStatus = InstallmentStatus.PENDING
    days_overdue: int = 0
    payment_date: Optional[date] = None  # Date of the last payment applied

    @property
    def total_due(self) -> Decimal:
        return money_add(self.principal_due, self.interest_due, self.fee_due, self.penalty_due)

    @property
    def total_paid(self) -> Decimal:
        return money_add(self.principal_paid, self.interest_paid, self.fee_paid, self.penalty_paid)

    @property
    def outstanding_principal(self) -> Decimal:
        return clamp_floor(money_sub(self.principal_due, self.principal_paid))

    @property
    def outstanding_interest(self) -> Decimal:
        return clamp_floor(money_sub(self.interest_due, self.interest_paid))

    @property
    def outstanding_fee(self) -> Decimal:
        return clamp_floor(money_sub(self.fee_due, self.fee_paid))

    @property
    def outstanding_penalty(self) -> Decimal:
        return clamp_floor(money_sub(self.penalty_due, self.penalty_paid))

    @property
    def total_outstanding(self) -> Decimal:
        return money_add(self.outstanding_penalty, self.outstanding_fee,
                         self.outstanding_interest, self.outstanding_principal)

    @property
    def is_unpaid(self) -> bool:
        return self.status in UNPAID_STATUSES

    def reset_payments(self) -> None:
        """Forget all money applied, keeping what is due"""
        self.principal_paid = ZERO
        self.interest_paid = ZERO
        self.fee_paid = ZERO
        self.penalty_paid = ZERO
        self.payment_date = None

    def derived_status(self) -> InstallmentStatus:
        """Status implied by the paid amounts alone"""
        if self.total_outstanding <= ZERO:
            return InstallmentStatus.PAID
        if self.total_paid > ZERO:
            return InstallmentStatus.PARTIAL
        if self.status in (InstallmentStatus.OVERDUE, InstallmentStatus.FOLLOW_UP):
            return self.status
        return InstallmentStatus.PENDING


def installment_id(loan_id: str, installment_number: int) -> str:
    return f"{loan_id}_{installment_number}"


class ScheduleStore:
    """
    Storage-backed access to a loan's installment lines
    """

    def __init__(self, storage: StorageInterface, table_name: str = "installments"):
        self.storage = storage
        self.table_name = table_name

    def get_installments(
        self,
        loan_id: str,
        statuses: Optional[Iterable[InstallmentStatus]] = None
    ) -> List[Installment]:
        """
        Get a loan's installments ordered by installment number

        Args:
            loan_id: Loan ID
            statuses: Only return installments in these statuses

        Returns:
            List of Installment objects, oldest first
        """
        installments = [Installment.from_dict(data)
                        for data in self.storage.find(self.table_name, {"loan_id": loan_id})]
        if statuses is not None:
            wanted = set(statuses)
            installments = [inst for inst in installments if inst.status in wanted]
        installments.sort(key=lambda inst: inst.installment_number)
        return installments

    def save_installment(self, installment: Installment) -> None:
        installment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, installment.id, installment.to_dict())

    def save_installments(self, installments: Iterable[Installment]) -> None:
        for installment in installments:
            self.save_installment(installment)

    def replace_schedule(self, loan_id: str, installments: List[Installment]) -> int:
        """
        Delete every installment of a loan, then insert the new ones

        Returns:
            Number of installments deleted
        """
        deleted = 0
        for data in self.storage.find(self.table_name, {"loan_id": loan_id}):
            if self.storage.delete(self.table_name, data["id"]):
                deleted += 1
        self.save_installments(installments)
        return deleted


@dataclass
class ScheduledInstallment:
    """One line produced by an amortization calculation"""
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    balance_after: Decimal
    fee_due: Decimal = ZERO


ScheduleGenerator = Callable[[Loan], List[ScheduledInstallment]]


class AmortizationCalculator:
    """
    Default schedule generator for reducing-balance and flat loans
    """

    def installment_count(self, loan: Loan) -> int:
        """Number of installments for the loan's term and frequency"""
        months = loan.term_months
        return {
            RepaymentFrequency.DAILY: months * 30,
            RepaymentFrequency.WEEKLY: months * 4,
            RepaymentFrequency.BI_WEEKLY: months * 2,
            RepaymentFrequency.MONTHLY: months,
            RepaymentFrequency.QUARTERLY: math.ceil(months / 3)
        }[loan.repayment_frequency]

    def due_date(self, first_payment_date: date, frequency: RepaymentFrequency,
                 offset: int) -> date:
        """Due date of the installment ``offset`` periods after the first"""
        if frequency == RepaymentFrequency.DAILY:
            return first_payment_date + timedelta(days=offset)
        elif frequency == RepaymentFrequency.WEEKLY:
            return first_payment_date + timedelta(days=7 * offset)
        elif frequency == RepaymentFrequency.BI_WEEKLY:
            return first_payment_date + timedelta(days=14 * offset)
        elif frequency == RepaymentFrequency.MONTHLY:
            return self._add_months(first_payment_date, offset)
        elif frequency == RepaymentFrequency.QUARTERLY:
            return self._add_months(first_payment_date, 3 * offset)
        raise ValueError(f"Unsupported repayment frequency: {frequency}")

    def _add_months(self, start_date: date, months: int) -> date:
        """Add months to a date, clamping to the end of shorter months"""
        month = start_date.month - 1 + months
        year = start_date.year + month // 12
        month = month % 12 + 1
        day = min(start_date.day, calendar.monthrange(year, month)[1])
        return date(year, month, day)

    def __call__(self, loan: Loan) -> List[ScheduledInstallment]:
        return self.generate(loan)

    def generate(self, loan: Loan) -> List[ScheduledInstallment]:
        """
        Generate the installment lines for a loan's approved terms

        Args:
            loan: Loan with principal, rate, term, frequency and method set

        Returns:
            List of ScheduledInstallment, numbered from 1
        """
        if loan.interest_method == InterestMethod.REDUCING_BALANCE:
            return self._generate_reducing_balance(loan)
        elif loan.interest_method == InterestMethod.FLAT:
            return self._generate_flat(loan)
        raise ValueError(f"Unsupported interest method: {loan.interest_method}")

    def _generate_reducing_balance(self, loan: Loan) -> List[ScheduledInstallment]:
        """Equal installments, interest charged on the remaining balance"""
        count = self.installment_count(loan)
        principal = loan.principal_amount
        periodic_rate = loan.annual_interest_rate / Decimal(loan.repayment_frequency.periods_per_year)

        if periodic_rate == 0:
            payment = principal / Decimal(count)
        else:
            # Standard formula: P * [r(1+r)^n] / [(1+r)^n - 1]
            factor = (Decimal('1') + periodic_rate) ** count
            payment = principal * (periodic_rate * factor) / (factor - Decimal('1'))
        payment = round_money(payment)

        schedule = []
        remaining = principal
        for number in range(1, count + 1):
            interest = round_money(remaining * periodic_rate)
            if number == count:
                # Final installment pays off exactly what is left
                principal_part = remaining
            else:
                principal_part = min(money_sub(payment, interest), remaining)
            remaining = money_sub(remaining, principal_part)

            schedule.append(ScheduledInstallment(
                installment_number=number,
                due_date=self.due_date(loan.first_payment_date, loan.repayment_frequency, number - 1),
                principal_due=principal_part,
                interest_due=interest,
                balance_after=remaining
            ))
        return schedule

    def _generate_flat(self, loan: Loan) -> List[ScheduledInstallment]:
        """Interest on the original principal, spread evenly"""
        count = self.installment_count(loan)
        principal = loan.principal_amount
        total_interest = round_money(
            principal * loan.annual_interest_rate * Decimal(loan.term_months) / Decimal('12')
        )
        principal_each = round_money(principal / Decimal(count))
        interest_each = round_money(total_interest / Decimal(count))

        schedule = []
        remaining = principal
        interest_left = total_interest
        for number in range(1, count + 1):
            if number == count:
                # Rounding remainders land on the last line
                principal_part, interest_part = remaining, interest_left
            else:
                principal_part = min(principal_each, remaining)
                interest_part = min(interest_each, interest_left)
            remaining = money_sub(remaining, principal_part)
            interest_left = money_sub(interest_left, interest_part)

            schedule.append(ScheduledInstallment(
                installment_number=number,
                due_date=self.due_date(loan.first_payment_date, loan.repayment_frequency, number - 1),
                principal_due=principal_part,
                interest_due=interest_part,
                balance_after=remaining
            ))
        return schedule


class ScheduleRegenerator:
    """
    Replaces a loan's schedule from its approved terms

    Only owns the delete-then-insert transition; the amortization itself is
    delegated to the injected generator.
    """

    def __init__(self, schedule_store: ScheduleStore,
                 generator: Optional[ScheduleGenerator] = None):
        self.schedule_store = schedule_store
        self.generator = generator or AmortizationCalculator()

    def regenerate(self, loan: Loan) -> Dict[str, object]:
        """
        Rebuild the installments of a pre-disbursement loan

        Updates the loan's installment counters and balances in place; the
        caller saves the loan inside the same unit of work.

        Returns:
            Dictionary with the new installments and the number deleted
        """
        if not loan.is_pre_disbursement:
            raise InvalidState(
                f"Cannot regenerate schedule for loan in status {loan.status.value}",
                {"loan_id": loan.id, "status": loan.status.value}
            )

        lines = self.generator(loan)
        self._validate_lines(loan, lines)

        now = datetime.now(timezone.utc)
        installments = [
            Installment(
                id=installment_id(loan.id, line.installment_number),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                installment_number=line.installment_number,
                due_date=line.due_date,
                principal_due=round_money(line.principal_due),
                interest_due=round_money(line.interest_due),
                fee_due=round_money(line.fee_due),
                balance_after=round_money(line.balance_after)
            )
            for line in lines
        ]
        deleted = self.schedule_store.replace_schedule(loan.id, installments)

        total_interest = money_sum(inst.interest_due for inst in installments)
        loan.total_installments = len(installments)
        loan.installments_paid = 0
        loan.installments_outstanding = len(installments)
        loan.principal_balance = loan.principal_amount
        loan.interest_balance = total_interest
        loan.total_interest = total_interest
        loan.loan_balance = money_add(loan.principal_amount, total_interest)

        return {"installments": installments, "deleted": deleted}

    def _validate_lines(self, loan: Loan, lines: List[ScheduledInstallment]) -> None:
        if not lines:
            raise ValidationError("Schedule generator produced no installments",
                                  {"loan_id": loan.id})

        numbers = [line.installment_number for line in lines]
        if sorted(numbers) != list(range(1, len(lines) + 1)):
            raise ValidationError("Installment numbers must run 1..n without gaps",
                                  {"loan_id": loan.id, "numbers": numbers})

        principal_total = money_sum(line.principal_due for line in lines)
        if abs(principal_total - loan.principal_amount) > TOLERANCE:
            raise ValidationError(
                "Scheduled principal does not match the loan principal",
                {"loan_id": loan.id, "scheduled": str(principal_total),
                 "principal_amount": str(loan.principal_amount)}
            )
