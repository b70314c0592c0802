"""
Repayment Engine Module

Entry point for every repayment-time operation: allocating a payment,
reconciling balances, classifying performance, regenerating schedules,
reversing payments, disbursing loans and the overdue sweep.

Each mutating operation is one unit of work: the per-loan lock is taken,
a storage transaction opens, the loan row is locked, and every read,
computation and write (ledger, schedule, loan, audit) happens inside it.
Any error rolls the whole unit back.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Union

from .config import LoanServicingConfig, get_config
from .logging_config import get_logger, log_action
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .errors import (
    LoanServicingError, InvalidState, ValidationError, NothingToAllocate
)
from .money import ZERO, round_money, money_sum
from .loans import Loan, LoanBook, LoanStatus, PerformanceStage, PAYABLE_STATUSES
from .schedule import (
    Installment, InstallmentStatus, ScheduleStore, ScheduleRegenerator, ScheduleGenerator,
    ALLOCATABLE_STATUSES
)
from .penalties import PenaltyCalculator, PenaltyPolicyStore
from .allocation import PaymentAllocator, InstallmentSplit
from .repayments import RepaymentLedger, Repayment, PaymentMethod
from .reconciliation import BalanceReconciler, ReconciliationResult
from .classification import PerformanceClassifier, ClassificationResult
from .locking import LoanLockRegistry


@dataclass
class PaymentResult:
    """Outcome of one allocated payment"""
    receipt_number: str
    repayment_id: str
    loan_id: str
    amount: Decimal
    payment_date: date
    splits: List[InstallmentSplit]
    principal_paid: Decimal
    interest_paid: Decimal
    fee_paid: Decimal
    penalty_paid: Decimal
    excess_amount: Decimal
    loan_balances: Dict[str, Any]
    classification: ClassificationResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receipt_number": self.receipt_number,
            "repayment_id": self.repayment_id,
            "loan_id": self.loan_id,
            "amount": str(self.amount),
            "payment_date": self.payment_date.isoformat(),
            "splits": [split.to_dict() for split in self.splits],
            "principal_paid": str(self.principal_paid),
            "interest_paid": str(self.interest_paid),
            "fee_paid": str(self.fee_paid),
            "penalty_paid": str(self.penalty_paid),
            "excess_amount": str(self.excess_amount),
            "loan_balances": self.loan_balances,
            "classification": self.classification.to_dict()
        }


@dataclass
class RegenerationResult:
    """Outcome of a schedule regeneration"""
    loan_id: str
    installments: List[Installment]
    deleted: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "deleted": self.deleted,
            "installments": [installment_to_dict(inst) for inst in self.installments]
        }


@dataclass
class ReversalResult:
    """Outcome of reversing one ledger entry"""
    receipt_number: str
    loan_id: str
    reason: str
    reconciliation: ReconciliationResult
    classification: ClassificationResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receipt_number": self.receipt_number,
            "loan_id": self.loan_id,
            "reason": self.reason,
            "reconciliation": self.reconciliation.to_dict(),
            "classification": self.classification.to_dict()
        }


@dataclass
class SweepResult:
    """Outcome of an overdue sweep over the active portfolio"""
    as_of: date
    loans_processed: int = 0
    installments_marked_overdue: int = 0
    penalties_assessed: int = 0
    stage_counts: Dict[str, int] = field(default_factory=dict)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "loans_processed": self.loans_processed,
            "installments_marked_overdue": self.installments_marked_overdue,
            "penalties_assessed": self.penalties_assessed,
            "stage_counts": self.stage_counts,
            "failures": self.failures
        }


def installment_to_dict(installment: Installment) -> Dict[str, Any]:
    """Installment as JSON-safe dict including derived totals"""
    data = installment.to_dict()
    data["total_due"] = str(installment.total_due)
    data["total_paid"] = str(installment.total_paid)
    data["total_outstanding"] = str(installment.total_outstanding)
    return data


def _empty_stage_counts() -> Dict[str, int]:
    return {stage.value: 0 for stage in PerformanceStage}


class RepaymentEngine:
    """
    Repayment allocation and loan performance engine
    """

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[LoanServicingConfig] = None,
        audit_trail: Optional[AuditTrail] = None,
        schedule_generator: Optional[ScheduleGenerator] = None,
        lock_registry: Optional[LoanLockRegistry] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.audit_trail = audit_trail or AuditTrail(storage)
        self.logger = get_logger("loan_servicing.engine")

        self.loans = LoanBook(storage)
        self.schedule = ScheduleStore(storage)
        self.penalty_policies = PenaltyPolicyStore(storage)
        self.ledger = RepaymentLedger(
            storage,
            receipt_prefix=self.config.receipt_prefix,
            receipt_number_width=self.config.receipt_number_width
        )

        self.penalty_calculator = PenaltyCalculator()
        self.allocator = PaymentAllocator(self.penalty_calculator)
        self.reconciler = BalanceReconciler()
        self.classifier = PerformanceClassifier()
        self.regenerator = ScheduleRegenerator(self.schedule, schedule_generator)
        self.locks = lock_registry or LoanLockRegistry(self.config.lock_timeout_seconds)

    # Unit of work

    @contextmanager
    def _unit_of_work(self, loan_id: str, action: str):
        """Per-loan lock, then one storage transaction with the loan row locked"""
        try:
            with self.locks.hold(loan_id, self.config.lock_timeout_seconds):
                with self.storage.atomic():
                    self.storage.lock_row(self.loans.table_name, loan_id)
                    yield
        except LoanServicingError as e:
            log_action(
                self.logger, "warning", f"{action} rejected: {e.message}",
                action=action, resource=f"loan:{loan_id}",
                extra={"error": e.code, "retryable": e.retryable, "details": e.details}
            )
            raise

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               description: str, metadata: Dict[str, Any], actor: Optional[str]) -> None:
        if not self.config.enable_audit_logging:
            return
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            description=description,
            metadata=metadata,
            actor=actor or self.config.default_actor
        )

    def _classify_and_apply(self, loan: Loan, as_of: date) -> ClassificationResult:
        installments = self.schedule.get_installments(loan.id)
        result = self.classifier.classify(loan, installments, as_of)
        self.classifier.apply(loan, result)
        return result

    # Payments

    def allocate_payment(
        self,
        loan_id: str,
        amount: Union[Decimal, str, int],
        payment_date: date,
        payment_method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        receipt_number: Optional[str] = None,
        reference_number: Optional[str] = None,
        actor: Optional[str] = None,
        enforce_balance_limit: Optional[bool] = None
    ) -> PaymentResult:
        """
        Allocate a payment across a loan's outstanding installments

        Args:
            loan_id: Loan being paid
            amount: Payment amount, must be positive
            payment_date: Date the money was received
            payment_method: How the money was received
            receipt_number: Caller-supplied receipt, generated when omitted
            reference_number: External reference
            actor: Who recorded the payment
            enforce_balance_limit: Reject amounts above the loan balance;
                the configured default when None

        Returns:
            PaymentResult with the splits, aggregates, excess and new balances

        Raises:
            ValidationError: Bad amount or method, or amount above the
                balance when the limit is enforced
            NotFound: Unknown loan
            InvalidState: Loan does not accept payments
            NothingToAllocate: No installment has anything outstanding
            DuplicateReceipt: Receipt number already on the ledger
            ConcurrencyConflict: Lock or serialization failure, retry
        """
        try:
            amount = round_money(amount)
        except (ValueError, ArithmeticError):
            raise ValidationError("Payment amount is not a number", {"amount": str(amount)})
        if amount <= ZERO:
            raise ValidationError("Payment amount must be positive", {"amount": str(amount)})

        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {payment_method}",
                                  {"payment_method": str(payment_method)})

        strict = (self.config.strict_balance_validation
                  if enforce_balance_limit is None else enforce_balance_limit)

        with self._unit_of_work(loan_id, "allocate_payment"):
            loan = self.loans.require_loan(loan_id)
            if not loan.is_payable:
                raise InvalidState(
                    f"Loan {loan_id} is not active for payments",
                    {"loan_id": loan_id, "status": loan.status.value}
                )
            if strict and amount > loan.loan_balance:
                raise ValidationError(
                    "Payment amount exceeds loan balance",
                    {"loan_id": loan_id, "amount": str(amount),
                     "loan_balance": str(loan.loan_balance)}
                )

            installments = self.schedule.get_installments(loan_id, ALLOCATABLE_STATUSES)
            policy = self.penalty_policies.get_active_policy(loan.loan_type_id)
            plan = self.allocator.allocate(
                installments, amount, payment_date,
                policy=policy, assess_penalties=self.config.assess_penalties_on_payment
            )
            if not plan.splits:
                raise NothingToAllocate(
                    f"Loan {loan_id} has no outstanding installments",
                    {"loan_id": loan_id, "amount": str(amount)}
                )

            repayment = self.ledger.record(
                loan_id, plan, method,
                receipt_number=receipt_number,
                reference_number=reference_number,
                received_by=actor or self.config.default_actor
            )
            self.schedule.save_installments(plan.updated_installments)
            self.reconciler.apply_payment(loan, plan)
            classification = self._classify_and_apply(loan, payment_date)
            self.loans.save_loan(loan)

            self._audit(
                AuditEventType.PAYMENT_ALLOCATED, "loan", loan_id,
                f"Payment {repayment.receipt_number} of {amount} allocated",
                {
                    "receipt_number": repayment.receipt_number,
                    "amount": amount,
                    "payment_date": payment_date,
                    "payment_method": method,
                    "principal_paid": plan.principal_paid,
                    "interest_paid": plan.interest_paid,
                    "fee_paid": plan.fee_paid,
                    "penalty_paid": plan.penalty_paid,
                    "excess_amount": plan.excess_amount,
                    "installments": [split.installment_number for split in plan.splits],
                    "balances": loan.balance_snapshot()
                },
                actor
            )

        log_action(
            self.logger, "info", f"Payment {repayment.receipt_number} allocated",
            user_id=actor, action="allocate_payment", resource=f"loan:{loan_id}",
            extra={"amount": str(amount), "excess_amount": str(plan.excess_amount),
                   "loan_balance": str(loan.loan_balance), "status": loan.status.value}
        )

        return PaymentResult(
            receipt_number=repayment.receipt_number,
            repayment_id=repayment.id,
            loan_id=loan_id,
            amount=amount,
            payment_date=payment_date,
            splits=plan.splits,
            principal_paid=plan.principal_paid,
            interest_paid=plan.interest_paid,
            fee_paid=plan.fee_paid,
            penalty_paid=plan.penalty_paid,
            excess_amount=plan.excess_amount,
            loan_balances=loan.balance_snapshot(),
            classification=classification
        )

    def reverse_repayment(
        self,
        receipt_number: str,
        reason: str,
        reversal_date: date,
        actor: Optional[str] = None
    ) -> ReversalResult:
        """
        Reverse a confirmed ledger entry and rebuild the loan from the ledger

        Args:
            receipt_number: Receipt of the entry to reverse
            reason: Why the payment is reversed
            reversal_date: Evaluation date for re-classification
            actor: Who reversed it

        Returns:
            ReversalResult with the recomputed balances and classification
        """
        if not reason or not reason.strip():
            raise ValidationError("A reversal reason is required",
                                  {"receipt_number": receipt_number})

        loan_id = self.ledger.require_by_receipt(receipt_number).loan_id

        with self._unit_of_work(loan_id, "reverse_repayment"):
            repayment = self.ledger.require_by_receipt(receipt_number)
            loan = self.loans.require_loan(loan_id)

            self.ledger.mark_reversed(repayment, reason.strip(), actor or self.config.default_actor)
            reconciliation = self._recompute(loan)
            classification = self._classify_and_apply(loan, reversal_date)
            self.loans.save_loan(loan)

            self._audit(
                AuditEventType.PAYMENT_REVERSED, "loan", loan_id,
                f"Payment {receipt_number} reversed: {reason.strip()}",
                {
                    "receipt_number": receipt_number,
                    "amount": repayment.amount,
                    "reason": reason.strip(),
                    "balances": loan.balance_snapshot()
                },
                actor
            )

        log_action(
            self.logger, "info", f"Payment {receipt_number} reversed",
            user_id=actor, action="reverse_repayment", resource=f"loan:{loan_id}",
            extra={"reason": reason.strip(), "loan_balance": str(loan.loan_balance)}
        )
        return ReversalResult(
            receipt_number=receipt_number,
            loan_id=loan_id,
            reason=reason.strip(),
            reconciliation=reconciliation,
            classification=classification
        )

    # Maintenance

    def _recompute(self, loan: Loan) -> ReconciliationResult:
        installments = self.schedule.get_installments(loan.id)
        confirmed = self.ledger.confirmed_for_loan(loan.id)
        result = self.reconciler.recompute(loan, installments, confirmed)
        self.schedule.save_installments(result.changed_installments)
        return result

    def reconcile_loan_balances(self, loan_id: str, actor: Optional[str] = None) -> ReconciliationResult:
        """
        Recompute a loan's balances from its confirmed ledger entries

        Safe to run any number of times; a second run changes nothing.
        """
        with self._unit_of_work(loan_id, "reconcile_loan_balances"):
            loan = self.loans.require_loan(loan_id)
            result = self._recompute(loan)
            self.loans.save_loan(loan)

            self._audit(
                AuditEventType.BALANCES_RECONCILED, "loan", loan_id,
                "Balances recomputed from ledger" if result.changed else "Balances verified against ledger",
                result.to_dict(),
                actor
            )

        log_action(
            self.logger, "info", f"Loan {loan_id} reconciled",
            user_id=actor, action="reconcile_loan_balances", resource=f"loan:{loan_id}",
            extra={"changed": result.changed, "repayments_replayed": result.repayments_replayed}
        )
        return result

    def classify_loan(self, loan_id: str, as_of: date,
                      actor: Optional[str] = None) -> ClassificationResult:
        """Re-derive days in arrears and performance stage at a date"""
        with self._unit_of_work(loan_id, "classify_loan"):
            loan = self.loans.require_loan(loan_id)
            result = self._classify_and_apply(loan, as_of)
            self.loans.save_loan(loan)

            self._audit(
                AuditEventType.LOAN_CLASSIFIED, "loan", loan_id,
                f"Loan classified {result.stage.value} at {as_of.isoformat()}",
                result.to_dict(),
                actor
            )

        log_action(
            self.logger, "info", f"Loan {loan_id} classified {result.stage.value}",
            user_id=actor, action="classify_loan", resource=f"loan:{loan_id}",
            extra={"days_in_arrears": result.days_in_arrears, "stage_changed": result.stage_changed}
        )
        return result

    # Lifecycle

    def regenerate_schedule(self, loan_id: str, actor: Optional[str] = None) -> RegenerationResult:
        """
        Delete and recreate a loan's installments from its approved terms

        Raises:
            InvalidState: If the loan is past approval or has ledger entries
        """
        with self._unit_of_work(loan_id, "regenerate_schedule"):
            loan = self.loans.require_loan(loan_id)
            if self.ledger.confirmed_for_loan(loan_id):
                raise InvalidState(
                    f"Loan {loan_id} has recorded repayments",
                    {"loan_id": loan_id}
                )
            outcome = self.regenerator.regenerate(loan)
            self.loans.save_loan(loan)

            installments = outcome["installments"]
            self._audit(
                AuditEventType.SCHEDULE_REGENERATED, "loan", loan_id,
                f"Schedule regenerated with {len(installments)} installments",
                {
                    "deleted": outcome["deleted"],
                    "created": len(installments),
                    "total_interest": loan.total_interest,
                    "loan_balance": loan.loan_balance
                },
                actor
            )

        log_action(
            self.logger, "info", f"Schedule regenerated for loan {loan_id}",
            user_id=actor, action="regenerate_schedule", resource=f"loan:{loan_id}",
            extra={"installments": len(installments), "deleted": outcome["deleted"]}
        )
        return RegenerationResult(loan_id=loan_id, installments=installments,
                                  deleted=outcome["deleted"])

    def disburse_loan(self, loan_id: str, disbursement_date: date,
                      actor: Optional[str] = None) -> Loan:
        """
        Move an approved loan to disbursed, freezing its schedule

        Raises:
            InvalidState: If the loan is not approved or has no schedule
        """
        with self._unit_of_work(loan_id, "disburse_loan"):
            loan = self.loans.require_loan(loan_id)
            if loan.status != LoanStatus.APPROVED:
                raise InvalidState(
                    f"Can only disburse approved loans, loan is {loan.status.value}",
                    {"loan_id": loan_id, "status": loan.status.value}
                )
            if loan.total_installments <= 0:
                raise InvalidState(f"Loan {loan_id} has no repayment schedule",
                                   {"loan_id": loan_id})

            loan.status = LoanStatus.DISBURSED
            loan.disbursement_date = disbursement_date
            self.loans.save_loan(loan)

            self._audit(
                AuditEventType.LOAN_DISBURSED, "loan", loan_id,
                f"Loan disbursed on {disbursement_date.isoformat()}",
                {"principal_amount": loan.principal_amount,
                 "disbursement_date": disbursement_date},
                actor
            )

        log_action(
            self.logger, "info", f"Loan {loan_id} disbursed",
            user_id=actor, action="disburse_loan", resource=f"loan:{loan_id}"
        )
        return loan

    # Portfolio

    def run_overdue_sweep(self, as_of: date, actor: Optional[str] = None) -> SweepResult:
        """
        Mark past-due installments overdue, refresh penalties and re-classify
        every disbursed or active loan

        Each loan is its own unit of work. A loan that fails with a typed
        error is reported and skipped; the rest of the portfolio proceeds.
        """
        result = SweepResult(as_of=as_of, stage_counts=_empty_stage_counts())

        for candidate in self.loans.list_loans(PAYABLE_STATUSES):
            try:
                with self._unit_of_work(candidate.id, "run_overdue_sweep"):
                    loan = self.loans.require_loan(candidate.id)
                    if not loan.is_payable:
                        continue
                    marked, assessed = self._sweep_installments(loan, as_of)
                    classification = self._classify_and_apply(loan, as_of)
                    self.loans.save_loan(loan)
            except LoanServicingError as e:
                result.failures.append({"loan_id": candidate.id, **e.to_dict()})
                continue

            result.loans_processed += 1
            result.installments_marked_overdue += marked
            result.penalties_assessed += assessed
            result.stage_counts[classification.stage.value] += 1

        self._audit(
            AuditEventType.OVERDUE_SWEEP_COMPLETED, "portfolio", as_of.isoformat(),
            f"Overdue sweep processed {result.loans_processed} loans",
            result.to_dict(),
            actor
        )

        log_action(
            self.logger, "warning" if result.failures else "info",
            f"Overdue sweep processed {result.loans_processed} loans",
            user_id=actor, action="run_overdue_sweep", resource="portfolio",
            extra=result.to_dict()
        )
        return result

    def _sweep_installments(self, loan: Loan, as_of: date):
        policy = self.penalty_policies.get_active_policy(loan.loan_type_id)
        marked = 0
        assessed = 0
        for installment in self.schedule.get_installments(loan.id):
            if not installment.is_unpaid or installment.due_date >= as_of:
                continue

            changed = False
            if installment.status == InstallmentStatus.PENDING:
                installment.status = InstallmentStatus.OVERDUE
                marked += 1
                changed = True

            days_overdue = self.penalty_calculator.days_overdue(installment.due_date, as_of)
            if days_overdue != installment.days_overdue:
                installment.days_overdue = days_overdue
                changed = True

            penalty = self.penalty_calculator.assess_installment(installment, policy, as_of)
            if penalty > installment.penalty_due:
                installment.penalty_due = penalty
                assessed += 1
                changed = True

            if changed:
                self.schedule.save_installment(installment)
        return marked, assessed

    def portfolio_summary(self) -> Dict[str, Any]:
        """Stage counts and balances across disbursed and active loans"""
        loans = self.loans.list_loans(PAYABLE_STATUSES)
        stage_counts = _empty_stage_counts()
        for loan in loans:
            stage_counts[loan.performance_class.value] += 1

        in_arrears = [loan for loan in loans if loan.is_in_arrears]
        return {
            "total_loans": len(loans),
            "stage_counts": stage_counts,
            "loans_in_arrears": len(in_arrears),
            "outstanding_balance": str(money_sum(loan.loan_balance for loan in loans)),
            "outstanding_principal": str(money_sum(loan.principal_balance for loan in loans)),
            "arrears_principal": str(money_sum(loan.arrears_principal for loan in in_arrears)),
            "arrears_interest": str(money_sum(loan.arrears_interest for loan in in_arrears))
        }

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.require_loan(loan_id)

    def get_schedule(self, loan_id: str) -> List[Installment]:
        self.loans.require_loan(loan_id)
        return self.schedule.get_installments(loan_id)

    def get_repayments(self, loan_id: str) -> List[Repayment]:
        self.loans.require_loan(loan_id)
        return self.ledger.list_for_loan(loan_id)

    def get_repayment(self, receipt_number: str) -> Repayment:
        """Ledger entry for one receipt, confirmed or reversed"""
        return self.ledger.require_by_receipt(receipt_number)
