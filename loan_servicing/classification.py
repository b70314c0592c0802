"""
Performance Classification Module

Derives days in arrears and a risk stage from a loan's oldest unpaid
installment that is already past due.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .loans import Loan, PerformanceStage
from .schedule import Installment, UNPAID_STATUSES
from .money import ZERO, money_sum

# Upper bound of days in arrears for each stage; anything above is LOSS
STAGE_THRESHOLDS = (
    (30, PerformanceStage.WATCH),
    (90, PerformanceStage.SUBSTANDARD),
    (180, PerformanceStage.DOUBTFUL),
)


def stage_for_days(days_in_arrears: int) -> PerformanceStage:
    """Map days in arrears to a performance stage"""
    if days_in_arrears <= 0:
        return PerformanceStage.PERFORMING
    for upper_bound, stage in STAGE_THRESHOLDS:
        if days_in_arrears <= upper_bound:
            return stage
    return PerformanceStage.LOSS


@dataclass
class ClassificationResult:
    """Outcome of classifying one loan at a date"""
    loan_id: str
    as_of: date
    stage: PerformanceStage
    days_in_arrears: int
    arrears_start_date: Optional[date]
    installments_in_arrears: int = 0
    arrears_principal: Decimal = ZERO
    arrears_interest: Decimal = ZERO
    previous_stage: Optional[PerformanceStage] = None

    @property
    def stage_changed(self) -> bool:
        return self.previous_stage is not None and self.previous_stage != self.stage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "as_of": self.as_of.isoformat(),
            "stage": self.stage.value,
            "days_in_arrears": self.days_in_arrears,
            "arrears_start_date": self.arrears_start_date.isoformat() if self.arrears_start_date else None,
            "installments_in_arrears": self.installments_in_arrears,
            "arrears_principal": str(self.arrears_principal),
            "arrears_interest": str(self.arrears_interest),
            "previous_stage": self.previous_stage.value if self.previous_stage else None
        }


class PerformanceClassifier:
    """
    Classifies loans by arrears
    """

    def past_due_installments(self, installments: List[Installment], as_of: date) -> List[Installment]:
        """Unpaid installments whose due date is strictly before ``as_of``, oldest first"""
        past_due = [inst for inst in installments
                    if inst.status in UNPAID_STATUSES and inst.due_date < as_of]
        past_due.sort(key=lambda inst: (inst.due_date, inst.installment_number))
        return past_due

    def classify(self, loan: Loan, installments: List[Installment], as_of: date) -> ClassificationResult:
        """
        Classify a loan at a date without changing it

        Args:
            loan: Loan being classified; its current arrears start date is
                kept while the loan stays in arrears
            installments: The loan's installments
            as_of: Evaluation date

        Returns:
            ClassificationResult
        """
        past_due = self.past_due_installments(installments, as_of)
        if not past_due:
            return ClassificationResult(
                loan_id=loan.id,
                as_of=as_of,
                stage=PerformanceStage.PERFORMING,
                days_in_arrears=0,
                arrears_start_date=None,
                previous_stage=loan.performance_class
            )

        oldest = past_due[0]
        days_in_arrears = (as_of - oldest.due_date).days

        # Set once when arrears begin
        arrears_start_date = loan.arrears_start_date or oldest.due_date

        return ClassificationResult(
            loan_id=loan.id,
            as_of=as_of,
            stage=stage_for_days(days_in_arrears),
            days_in_arrears=days_in_arrears,
            arrears_start_date=arrears_start_date,
            installments_in_arrears=len(past_due),
            arrears_principal=money_sum(inst.outstanding_principal for inst in past_due),
            arrears_interest=money_sum(inst.outstanding_interest for inst in past_due),
            previous_stage=loan.performance_class
        )

    def apply(self, loan: Loan, result: ClassificationResult) -> Loan:
        """Copy a classification onto the loan"""
        loan.performance_class = result.stage
        loan.days_in_arrears = result.days_in_arrears
        loan.arrears_start_date = result.arrears_start_date
        loan.installments_in_arrears = result.installments_in_arrears
        loan.arrears_principal = result.arrears_principal
        loan.arrears_interest = result.arrears_interest
        return loan
