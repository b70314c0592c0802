"""
Loan Module

The Loan aggregate: statuses, performance stages, repayment terms and the
current balance/arrears picture. Loans are created by origination (outside
this package) and mutated here only by the reconciler and classifier,
always inside a unit of work.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Iterable
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import NotFound, ValidationError
from .money import ZERO, round_money, to_decimal


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"            # Application captured
    APPROVED = "approved"          # Terms approved, schedule may still change
    DISBURSED = "disbursed"        # Funds released, no payment yet
    ACTIVE = "active"              # At least one payment received
    COMPLETED = "completed"        # Fully repaid
    DEFAULTED = "defaulted"
    WRITTEN_OFF = "written_off"


# Statuses that accept payments
PAYABLE_STATUSES = (LoanStatus.DISBURSED, LoanStatus.ACTIVE)

# Statuses whose schedule may still be regenerated
PRE_DISBURSEMENT_STATUSES = (LoanStatus.PENDING, LoanStatus.APPROVED)


class PerformanceStage(Enum):
    """Risk classification by days in arrears"""
    PERFORMING = "performing"      # Nothing past due
    WATCH = "watch"                # 1-30 days
    SUBSTANDARD = "substandard"    # 31-90 days
    DOUBTFUL = "doubtful"          # 91-180 days
    LOSS = "loss"                  # Over 180 days


class RepaymentFrequency(Enum):
    """How often installments fall due"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi_weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"

    @property
    def periods_per_year(self) -> int:
        return {
            RepaymentFrequency.DAILY: 365,
            RepaymentFrequency.WEEKLY: 52,
            RepaymentFrequency.BI_WEEKLY: 26,
            RepaymentFrequency.MONTHLY: 12,
            RepaymentFrequency.QUARTERLY: 4
        }[self]


class InterestMethod(Enum):
    """Interest calculation methods"""
    REDUCING_BALANCE = "reducing_balance"  # Equal installments, interest on balance
    FLAT = "flat"                          # Interest on original principal


@dataclass
class Loan(StorageRecord):
    """Loan with approved terms and current balances"""
    loan_number: str
    client_id: str
    loan_type_id: str                   # Product, selects the penalty policy
    status: LoanStatus
    principal_amount: Decimal
    annual_interest_rate: Decimal       # e.g. 0.24 for 24%
    term_months: int
    repayment_frequency: RepaymentFrequency
    interest_method: InterestMethod
    first_payment_date: date

    # Outstanding balances
    principal_balance: Decimal = ZERO
    interest_balance: Decimal = ZERO
    loan_balance: Decimal = ZERO
    total_interest: Decimal = ZERO
    total_paid_amount: Decimal = ZERO

    # Installment counters
    total_installments: int = 0
    installments_paid: int = 0
    installments_outstanding: int = 0

    # Performance
    performance_class: PerformanceStage = PerformanceStage.PERFORMING
    days_in_arrears: int = 0
    arrears_start_date: Optional[date] = None
    installments_in_arrears: int = 0
    arrears_principal: Decimal = ZERO
    arrears_interest: Decimal = ZERO

    # Dates
    disbursement_date: Optional[date] = None
    last_payment_date: Optional[date] = None

    @property
    def is_payable(self) -> bool:
        """Check if loan accepts payments"""
        return self.status in PAYABLE_STATUSES

    @property
    def is_pre_disbursement(self) -> bool:
        return self.status in PRE_DISBURSEMENT_STATUSES

    @property
    def is_in_arrears(self) -> bool:
        return self.days_in_arrears > 0

    def balance_snapshot(self) -> Dict[str, str]:
        """Current balances as strings, for audit metadata and API results"""
        return {
            "principal_balance": str(self.principal_balance),
            "interest_balance": str(self.interest_balance),
            "loan_balance": str(self.loan_balance),
            "installments_paid": self.installments_paid,
            "installments_outstanding": self.installments_outstanding,
            "status": self.status.value
        }


class LoanBook:
    """
    Storage-backed access to Loan records
    """

    def __init__(self, storage: StorageInterface, table_name: str = "loans"):
        self.storage = storage
        self.table_name = table_name

    def create_loan(
        self,
        client_id: str,
        loan_type_id: str,
        principal_amount: Decimal,
        annual_interest_rate: Decimal,
        term_months: int,
        first_payment_date: date,
        repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY,
        interest_method: InterestMethod = InterestMethod.REDUCING_BALANCE,
        status: LoanStatus = LoanStatus.PENDING,
        loan_number: Optional[str] = None,
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Record an originated loan

        Balances stay at zero until a schedule is generated for it.

        Args:
            client_id: Borrower
            loan_type_id: Loan product
            principal_amount: Approved principal
            annual_interest_rate: Nominal annual rate as a fraction
            term_months: Term length in months
            first_payment_date: Due date of installment 1
            repayment_frequency: Installment frequency
            interest_method: Amortization method
            status: Initial status
            loan_number: Human readable number, generated when omitted
            loan_id: Explicit id, generated when omitted

        Returns:
            Created Loan object
        """
        principal_amount = round_money(principal_amount)
        annual_interest_rate = to_decimal(annual_interest_rate)
        if principal_amount <= ZERO:
            raise ValidationError("Principal amount must be positive",
                                  {"principal_amount": str(principal_amount)})
        if annual_interest_rate < 0:
            raise ValidationError("Interest rate cannot be negative",
                                  {"annual_interest_rate": str(annual_interest_rate)})
        if term_months <= 0:
            raise ValidationError("Term must be at least one month",
                                  {"term_months": term_months})

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number=loan_number or self._next_loan_number(),
            client_id=client_id,
            loan_type_id=loan_type_id,
            status=status,
            principal_amount=principal_amount,
            annual_interest_rate=annual_interest_rate,
            term_months=term_months,
            repayment_frequency=repayment_frequency,
            interest_method=interest_method,
            first_payment_date=first_payment_date
        )
        self.storage.save(self.table_name, loan.id, loan.to_dict())
        return loan

    def _next_loan_number(self) -> str:
        return f"LN{self.storage.count(self.table_name) + 1:06d}"

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.table_name, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        """Get loan by ID or raise NotFound"""
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return loan

    def save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, loan.id, loan.to_dict())

    def list_loans(self, statuses: Optional[Iterable[LoanStatus]] = None) -> List[Loan]:
        """List loans, optionally restricted to some statuses"""
        loans = [Loan.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if statuses is not None:
            wanted = set(statuses)
            loans = [loan for loan in loans if loan.status in wanted]
        loans.sort(key=lambda loan: loan.loan_number)
        return loans
