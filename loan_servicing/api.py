"""
FastAPI REST API Module

Exposes the repayment engine over HTTP: payment allocation, reversal,
reconciliation, classification, schedule regeneration, disbursement, the
overdue sweep and read-only loan, schedule, ledger and audit views.

Dates default to the server's date here and only here; the engine always
receives explicit dates.
"""

from datetime import date
from typing import Any, Dict, Optional

from fastapi import FastAPI, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from . import __version__
from .config import LoanServicingConfig, get_config
from .logging_config import setup_logging
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .engine import RepaymentEngine, installment_to_dict
from .errors import (
    LoanServicingError, NotFound, InvalidState, ValidationError,
    DuplicateReceipt, NothingToAllocate, ConcurrencyConflict
)
from .schemas import (
    AllocatePaymentRequest, ReverseRepaymentRequest, ClassifyLoanRequest,
    DisburseLoanRequest, ActorRequest, OverdueSweepRequest, ErrorResponse,
    HealthResponse, PortfolioSummaryResponse, AuditEventResponse, AuditTrailResponse
)


ERROR_STATUS_CODES = {
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidState: status.HTTP_409_CONFLICT,
    DuplicateReceipt: status.HTTP_409_CONFLICT,
    NothingToAllocate: status.HTTP_409_CONFLICT,
    ValidationError: 422,
    ConcurrencyConflict: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(error: LoanServicingError) -> int:
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


class ServicingSystem:
    """Loan servicing components wired to one storage backend"""

    def __init__(self, config: Optional[LoanServicingConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.database_url, self.config.lock_timeout_seconds
        )
        self.audit_trail = AuditTrail(self.storage)
        self.engine = RepaymentEngine(self.storage, config=self.config,
                                      audit_trail=self.audit_trail)

    def close(self) -> None:
        self.storage.close()


_servicing_system: Optional[ServicingSystem] = None


def get_servicing_system() -> ServicingSystem:
    """Dependency returning the process-wide servicing system"""
    global _servicing_system
    if _servicing_system is None:
        _servicing_system = ServicingSystem()
    return _servicing_system


def _loan_payload(system: ServicingSystem, loan_id: str) -> Dict[str, Any]:
    return system.engine.get_loan(loan_id).to_dict()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Servicing API",
        description="Repayment allocation and loan performance engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        responses={
            404: {"model": ErrorResponse},
            409: {"model": ErrorResponse},
            422: {"model": ErrorResponse},
            503: {"model": ErrorResponse}
        }
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LoanServicingError)
    async def loan_servicing_error_handler(request: Request, exc: LoanServicingError):
        headers = {"Retry-After": "1"} if exc.retryable else None
        return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict(),
                            headers=headers)

    @app.get("/health", response_model=HealthResponse)
    def health_check(system: ServicingSystem = Depends(get_servicing_system)):
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__,
            "storage": type(system.storage).__name__
        }

    # Loans

    @app.get("/loans/{loan_id}")
    def get_loan(loan_id: str, system: ServicingSystem = Depends(get_servicing_system)):
        """Get a loan with its balances and classification"""
        return _loan_payload(system, loan_id)

    @app.get("/loans/{loan_id}/schedule")
    def get_schedule(loan_id: str, system: ServicingSystem = Depends(get_servicing_system)):
        """List a loan's installments, oldest first"""
        return {
            "loan_id": loan_id,
            "installments": [installment_to_dict(inst)
                             for inst in system.engine.get_schedule(loan_id)]
        }

    @app.get("/loans/{loan_id}/repayments")
    def get_repayments(loan_id: str, system: ServicingSystem = Depends(get_servicing_system)):
        """List a loan's ledger entries in ledger order"""
        return {
            "loan_id": loan_id,
            "repayments": [r.to_dict() for r in system.engine.get_repayments(loan_id)]
        }

    @app.get("/loans/{loan_id}/audit", response_model=AuditTrailResponse)
    def get_loan_audit(loan_id: str, system: ServicingSystem = Depends(get_servicing_system)):
        """List a loan's audit trail"""
        system.engine.get_loan(loan_id)
        events = system.audit_trail.get_events_for_entity("loan", loan_id)
        return {
            "loan_id": loan_id,
            "events": [
                AuditEventResponse(
                    id=event.id,
                    sequence=event.sequence,
                    event_type=event.event_type.value,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    description=event.description,
                    actor=event.actor,
                    created_at=event.created_at.isoformat(),
                    metadata=event.metadata
                )
                for event in events
            ]
        }

    @app.post("/loans/{loan_id}/repayments", status_code=status.HTTP_201_CREATED)
    def allocate_payment(
        loan_id: str,
        request: AllocatePaymentRequest,
        system: ServicingSystem = Depends(get_servicing_system)
    ):
        """Allocate a payment across the loan's outstanding installments"""
        result = system.engine.allocate_payment(
            loan_id=loan_id,
            amount=request.amount,
            payment_date=request.payment_date or date.today(),
            payment_method=request.payment_method,
            receipt_number=request.receipt_number,
            reference_number=request.reference_number,
            actor=request.received_by,
            enforce_balance_limit=request.enforce_balance_limit
        )
        return result.to_dict()

    @app.post("/loans/{loan_id}/reconcile")
    def reconcile_loan(
        loan_id: str,
        request: Optional[ActorRequest] = None,
        system: ServicingSystem = Depends(get_servicing_system)
    ):
        """Recompute balances from the confirmed ledger"""
        actor = request.actor if request else None
        return system.engine.reconcile_loan_balances(loan_id, actor=actor).to_dict()

    @app.post("/loans/{loan_id}/classify")
    def classify_loan(
        loan_id: str,
        request: Optional[ClassifyLoanRequest] = None,
        system: ServicingSystem = Depends(get_servicing_system)
    ):
        """Re-derive days in arrears and performance stage"""
        request = request or ClassifyLoanRequest()
        result = system.engine.classify_loan(
            loan_id, as_of=request.as_of or date.today(), actor=request.actor
        )
        return result.to_dict()

    @app.post("/loans/{loan_id}/schedule/regenerate")
    def regenerate_schedule(
        loan_id: str,
        request: Optional[ActorRequest] = None,
        system: ServicingSystem = Depends(get_servicing_system)
    ):
        """Recreate the schedule of a loan that is not yet disbursed"""
        actor = request.actor if request else None
        return system.engine.regenerate_schedule(loan_id, actor=actor).to_dict()

    @app.post("/loans/{loan_id}/disburse")
    def disburse_loan(
        loan_id: str,
        request: Optional[DisburseLoanRequest] = None,
        system: ServicingSystem = Depends(get_servicing_system)
    ):
        """Disburse an approved loan"""
        request = request or DisburseLoanRequest()
        loan = system.engine.disburse_loan(
            loan_id, request.disbursement_date or date.today(), actor=request.actor
        )
        return loan.to_dict()

    # Repayments

    @app.get("/repayments/{receipt_number}")
    def get_repayment(receipt_number: str, system: ServicingSystem = Depends(get_servicing_system)):
        """Get one ledger entry by receipt number"""
        return system.engine.get_repayment(receipt_number).to_dict()

    @app.post("/repayments/{receipt_number}/reverse")
    def reverse_repayment(
        receipt_number: str,
        request: ReverseRepaymentRequest,
        system: ServicingSystem = Depends(get_servicing_system)
    ):
        """Reverse a confirmed payment and rebuild the loan from the ledger"""
        result = system.engine.reverse_repayment(
            receipt_number, request.reason,
            reversal_date=request.reversal_date or date.today(),
            actor=request.actor
        )
        return result.to_dict()

    # Portfolio

    @app.post("/portfolio/overdue-sweep")
    def run_overdue_sweep(
        request: Optional[OverdueSweepRequest] = None,
        system: ServicingSystem = Depends(get_servicing_system)
    ):
        """Mark overdue installments, refresh penalties and re-classify"""
        request = request or OverdueSweepRequest()
        result = system.engine.run_overdue_sweep(request.as_of or date.today(),
                                                 actor=request.actor)
        return result.to_dict()

    @app.get("/portfolio/summary", response_model=PortfolioSummaryResponse)
    def portfolio_summary(system: ServicingSystem = Depends(get_servicing_system)):
        """Stage counts across disbursed and active loans"""
        return system.engine.portfolio_summary()

    @app.get("/audit/verify")
    def verify_audit_trail(system: ServicingSystem = Depends(get_servicing_system)):
        """Re-derive every audit hash and check chain continuity"""
        return system.audit_trail.verify_integrity()

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the API server"""
    config = get_config()
    setup_logging(level="DEBUG" if debug else config.log_level,
                  log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "loan_servicing.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="debug" if debug else "info"
    )


if __name__ == "__main__":
    run_server(debug=True)
