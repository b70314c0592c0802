"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field


class AllocatePaymentRequest(BaseModel):
    amount: Decimal = Field(..., description="Payment amount, decimal string or number")
    payment_date: Optional[date] = Field(None, description="Defaults to today")
    payment_method: str = Field("cash", description="cash, bank_transfer, mobile_money, cheque, card")
    receipt_number: Optional[str] = Field(None, description="Generated when omitted")
    reference_number: Optional[str] = None
    received_by: Optional[str] = None
    enforce_balance_limit: Optional[bool] = Field(
        None, description="Reject amounts above the loan balance; configured default when omitted"
    )


class ReverseRepaymentRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    reversal_date: Optional[date] = None
    actor: Optional[str] = None


class ClassifyLoanRequest(BaseModel):
    as_of: Optional[date] = None
    actor: Optional[str] = None


class DisburseLoanRequest(BaseModel):
    disbursement_date: Optional[date] = None
    actor: Optional[str] = None


class ActorRequest(BaseModel):
    actor: Optional[str] = None


class OverdueSweepRequest(BaseModel):
    as_of: Optional[date] = None
    actor: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool
    details: Dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    storage: str


class PortfolioSummaryResponse(BaseModel):
    total_loans: int
    stage_counts: Dict[str, int]
    loans_in_arrears: int
    outstanding_balance: str
    outstanding_principal: str
    arrears_principal: str
    arrears_interest: str


class AuditEventResponse(BaseModel):
    id: str
    sequence: int
    event_type: str
    entity_type: str
    entity_id: str
    description: str
    actor: Optional[str] = None
    created_at: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AuditTrailResponse(BaseModel):
    loan_id: str
    events: List[AuditEventResponse]
