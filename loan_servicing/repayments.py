"""
Repayment Ledger Module

Immutable record of every accepted payment. An entry is never updated after
creation except to flip it to ``reversed``; it is never deleted. Receipt
numbers are unique across the ledger.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Iterable
from enum import Enum
import re
import uuid

from .storage import StorageInterface, StorageRecord
from .allocation import AllocationPlan, InstallmentSplit
from .errors import DuplicateReceipt, InvalidState, NotFound, ValidationError


class RepaymentStatus(Enum):
    """Ledger entry states"""
    CONFIRMED = "confirmed"
    REVERSED = "reversed"


class PaymentMethod(Enum):
    """How the money was received"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CHEQUE = "cheque"
    CARD = "card"


@dataclass
class Repayment(StorageRecord):
    """One accepted payment and the split actually applied"""
    loan_id: str
    receipt_number: str
    ledger_sequence: int                # Replay order
    amount: Decimal
    payment_date: date
    payment_method: PaymentMethod
    principal_paid: Decimal
    interest_paid: Decimal
    fee_paid: Decimal
    penalty_paid: Decimal
    excess_amount: Decimal
    splits: List[Dict[str, Any]] = field(default_factory=list)
    status: RepaymentStatus = RepaymentStatus.CONFIRMED
    reference_number: Optional[str] = None
    received_by: Optional[str] = None
    reversal_reason: Optional[str] = None
    reversed_by: Optional[str] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == RepaymentStatus.CONFIRMED

    def installment_splits(self) -> List[InstallmentSplit]:
        return [InstallmentSplit.from_dict(data) for data in self.splits]


class RepaymentLedger:
    """
    Append-only repayment ledger with receipt numbering
    """

    SEQUENCE_TABLE = "ledger_sequence"
    SEQUENCE_ID = "repayments"

    def __init__(self, storage: StorageInterface, table_name: str = "repayments",
                 receipt_prefix: str = "RPT", receipt_number_width: int = 3):
        self.storage = storage
        self.table_name = table_name
        self.receipt_prefix = receipt_prefix
        self.receipt_number_width = receipt_number_width

    def get_by_receipt(self, receipt_number: str) -> Optional[Repayment]:
        """Get the ledger entry for a receipt number"""
        found = self.storage.find(self.table_name, {"receipt_number": receipt_number})
        if found:
            return Repayment.from_dict(found[0])
        return None

    def require_by_receipt(self, receipt_number: str) -> Repayment:
        repayment = self.get_by_receipt(receipt_number)
        if repayment is None:
            raise NotFound(f"Repayment {receipt_number} not found",
                           {"receipt_number": receipt_number})
        return repayment

    def list_for_loan(
        self,
        loan_id: str,
        statuses: Optional[Iterable[RepaymentStatus]] = None
    ) -> List[Repayment]:
        """
        Get a loan's ledger entries in replay order

        Args:
            loan_id: Loan ID
            statuses: Only return entries in these statuses

        Returns:
            List of Repayment objects ordered by ledger sequence
        """
        repayments = [Repayment.from_dict(data)
                      for data in self.storage.find(self.table_name, {"loan_id": loan_id})]
        if statuses is not None:
            wanted = set(statuses)
            repayments = [r for r in repayments if r.status in wanted]
        repayments.sort(key=lambda r: r.ledger_sequence)
        return repayments

    def confirmed_for_loan(self, loan_id: str) -> List[Repayment]:
        return self.list_for_loan(loan_id, [RepaymentStatus.CONFIRMED])

    def _next_sequence(self) -> int:
        counter = self.storage.load(self.SEQUENCE_TABLE, self.SEQUENCE_ID)
        value = (counter or {}).get("value", 0) + 1
        self.storage.save(self.SEQUENCE_TABLE, self.SEQUENCE_ID,
                          {"id": self.SEQUENCE_ID, "value": value})
        return value

    def _format_receipt(self, number: int) -> str:
        return f"{self.receipt_prefix}{number:0{self.receipt_number_width}d}"

    def _next_receipt_number(self) -> str:
        """Next free sequential receipt number after the highest one issued"""
        pattern = re.compile(rf"^{re.escape(self.receipt_prefix)}(\d+)$")
        highest = 0
        for data in self.storage.load_all(self.table_name):
            match = pattern.match(data.get("receipt_number", ""))
            if match:
                highest = max(highest, int(match.group(1)))
        return self._format_receipt(highest + 1)

    def record(
        self,
        loan_id: str,
        plan: AllocationPlan,
        payment_method: PaymentMethod,
        receipt_number: Optional[str] = None,
        reference_number: Optional[str] = None,
        received_by: Optional[str] = None
    ) -> Repayment:
        """
        Append a confirmed ledger entry for an allocation plan

        Must run inside the caller's unit of work so the uniqueness check and
        the insert see the same state.

        Args:
            loan_id: Loan the payment is for
            plan: Allocation produced by the PaymentAllocator
            payment_method: How the money was received
            receipt_number: Caller-supplied receipt, generated when omitted
            reference_number: External reference (bank or mobile money id)
            received_by: Actor recording the payment

        Returns:
            Created Repayment

        Raises:
            DuplicateReceipt: If the receipt number is already on the ledger
        """
        if receipt_number is not None:
            receipt_number = receipt_number.strip()
            if not receipt_number:
                raise ValidationError("Receipt number cannot be blank")
            existing = self.get_by_receipt(receipt_number)
            if existing is not None:
                raise DuplicateReceipt(
                    f"Receipt {receipt_number} already recorded",
                    {"receipt_number": receipt_number, "loan_id": existing.loan_id,
                     "repayment_id": existing.id}
                )
        else:
            receipt_number = self._next_receipt_number()

        now = datetime.now(timezone.utc)
        repayment = Repayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            receipt_number=receipt_number,
            ledger_sequence=self._next_sequence(),
            amount=plan.amount,
            payment_date=plan.payment_date,
            payment_method=payment_method,
            principal_paid=plan.principal_paid,
            interest_paid=plan.interest_paid,
            fee_paid=plan.fee_paid,
            penalty_paid=plan.penalty_paid,
            excess_amount=plan.excess_amount,
            splits=[split.to_dict() for split in plan.splits],
            reference_number=reference_number,
            received_by=received_by
        )
        self.storage.save(self.table_name, repayment.id, repayment.to_dict())
        return repayment

    def mark_reversed(self, repayment: Repayment, reason: str,
                      reversed_by: Optional[str] = None) -> Repayment:
        """
        Flip a confirmed entry to reversed

        Raises:
            InvalidState: If the entry is already reversed
        """
        if repayment.status != RepaymentStatus.CONFIRMED:
            raise InvalidState(
                f"Repayment {repayment.receipt_number} is already {repayment.status.value}",
                {"receipt_number": repayment.receipt_number, "status": repayment.status.value}
            )
        repayment.status = RepaymentStatus.REVERSED
        repayment.reversal_reason = reason
        repayment.reversed_by = reversed_by
        repayment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, repayment.id, repayment.to_dict())
        return repayment
