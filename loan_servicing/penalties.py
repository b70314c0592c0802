"""
Penalty Module

Late-payment penalty policies per loan product and the calculator that
turns a policy, an overdue amount and an evaluation date into a penalty.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import math
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import ValidationError
from .money import ZERO, round_money, money_add, to_decimal


class PenaltyType(Enum):
    """How a penalty grows with time"""
    DAILY = "daily"        # outstanding x rate x days
    MONTHLY = "monthly"    # outstanding x rate x started 30-day periods
    FIXED = "fixed"        # flat amount


@dataclass
class PenaltyPolicy(StorageRecord):
    """Late payment penalty configuration for one loan product"""
    product_id: str
    penalty_type: PenaltyType
    rate: Decimal                       # Fraction, or a flat amount for FIXED
    grace_period_days: int = 0
    max_penalty: Optional[Decimal] = None
    is_active: bool = True

    def __post_init__(self):
        if self.rate < 0:
            raise ValueError("Penalty rate cannot be negative")
        if self.grace_period_days < 0:
            raise ValueError("Grace period cannot be negative")
        if self.max_penalty is not None and self.max_penalty < 0:
            raise ValueError("Maximum penalty cannot be negative")


class PenaltyPolicyStore:
    """
    Read access to penalty policies, keyed by loan product
    """

    def __init__(self, storage: StorageInterface, table_name: str = "penalty_policies"):
        self.storage = storage
        self.table_name = table_name

    def create_policy(
        self,
        product_id: str,
        penalty_type: PenaltyType,
        rate: Decimal,
        grace_period_days: int = 0,
        max_penalty: Optional[Decimal] = None
    ) -> PenaltyPolicy:
        """
        Register a penalty policy for a product

        Any earlier active policy for the same product is deactivated.
        """
        try:
            now = datetime.now(timezone.utc)
            policy = PenaltyPolicy(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                product_id=product_id,
                penalty_type=penalty_type,
                rate=to_decimal(rate),
                grace_period_days=grace_period_days,
                max_penalty=round_money(max_penalty) if max_penalty is not None else None
            )
        except ValueError as e:
            raise ValidationError(str(e), {"product_id": product_id})

        with self.storage.atomic():
            for existing in self.list_policies(product_id):
                if existing.is_active:
                    existing.is_active = False
                    existing.updated_at = now
                    self.storage.save(self.table_name, existing.id, existing.to_dict())
            self.storage.save(self.table_name, policy.id, policy.to_dict())
        return policy

    def list_policies(self, product_id: str) -> List[PenaltyPolicy]:
        return [PenaltyPolicy.from_dict(data)
                for data in self.storage.find(self.table_name, {"product_id": product_id})]

    def get_active_policy(self, product_id: str) -> Optional[PenaltyPolicy]:
        """Get the active policy for a product, None when it has none"""
        active = [policy for policy in self.list_policies(product_id) if policy.is_active]
        if not active:
            return None
        return max(active, key=lambda policy: policy.created_at)


class PenaltyCalculator:
    """
    Computes penalties for overdue amounts

    The evaluation date is always passed in.
    """

    @staticmethod
    def days_overdue(due_date: date, as_of: date) -> int:
        """Whole days between the due date and the evaluation date, never negative"""
        return max(0, (as_of - due_date).days)

    def calculate(
        self,
        due_date: date,
        outstanding: Decimal,
        policy: Optional[PenaltyPolicy],
        as_of: date
    ) -> Decimal:
        """
        Calculate the penalty on an overdue amount

        Args:
            due_date: When the amount fell due
            outstanding: Unpaid amount (due minus paid)
            policy: Applicable policy, None for no penalty
            as_of: Evaluation date

        Returns:
            Penalty rounded to 2 decimal places
        """
        if policy is None or not policy.is_active:
            return ZERO

        outstanding = to_decimal(outstanding)
        days = (as_of - due_date).days - policy.grace_period_days
        if days <= 0:
            return ZERO

        if policy.penalty_type == PenaltyType.DAILY:
            if outstanding <= ZERO:
                return ZERO
            penalty = round_money(round_money(outstanding * policy.rate) * days)
        elif policy.penalty_type == PenaltyType.MONTHLY:
            if outstanding <= ZERO:
                return ZERO
            months = math.ceil(days / 30)
            penalty = round_money(round_money(outstanding * policy.rate) * months)
        elif policy.penalty_type == PenaltyType.FIXED:
            penalty = round_money(policy.rate)
        else:
            raise ValueError(f"Unsupported penalty type: {policy.penalty_type}")

        if policy.max_penalty is not None and penalty > policy.max_penalty:
            penalty = policy.max_penalty
        return penalty

    def assess_installment(self, installment, policy: Optional[PenaltyPolicy],
                           as_of: date) -> Decimal:
        """
        Penalty due on an installment at a date

        The base is the unpaid principal, interest and fee; penalties do not
        compound. A penalty already assessed is never lowered.
        """
        base = money_add(installment.outstanding_principal,
                         installment.outstanding_interest,
                         installment.outstanding_fee)
        assessed = self.calculate(installment.due_date, base, policy, as_of)
        return max(assessed, installment.penalty_due)
