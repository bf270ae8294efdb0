"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class StkPushRequest(BaseModel):
    """
    Request schema for initiating an STK push.

    Fields are optional; presence is validated by the orchestrator (400).
    """

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "amount": 100,
                    "phoneNumber": "0712345678",
                    "accountReference": "INV-1001",
                    "transactionDesc": "Invoice 1001",
                }
            ]
        },
    )

    amount: Optional[int] = Field(default=None, description="Amount in whole currency units")
    phone_number: Optional[str] = Field(
        default=None, alias="phoneNumber", description="Payer phone number"
    )
    account_reference: Optional[str] = Field(
        default=None, alias="accountReference", description="Merchant account reference"
    )
    transaction_desc: Optional[str] = Field(
        default=None, alias="transactionDesc", description="Transaction description"
    )


class StkPushResponse(BaseModel):
    """Response schema for an accepted STK push."""

    status: str = Field(..., description="Always 'success'")
    message: str = Field(..., description="Human readable message")
    data: Dict[str, Any] = Field(..., description="M-PESA acknowledgement body")


class TransactionData(BaseModel):
    """Stored transaction as returned by the status lookup."""

    id: str
    type: str
    amount: int
    phone_number: str
    account_reference: Optional[str] = None
    status: str = Field(..., description="Initiated, Pending, Success or Failed")
    merchant_request_id: str
    checkout_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class TransactionStatusResponse(BaseModel):
    """Response schema for a transaction lookup."""

    status: str = Field(..., description="Always 'success'")
    data: TransactionData


class CallbackAckResponse(BaseModel):
    """Acknowledgement returned to M-PESA for a callback."""

    message: str = Field(..., description="Acknowledgement message")
    outcome: str = Field(..., description="Reconciliation outcome")


class TokenStatusData(BaseModel):
    """Token cache diagnostics (the token itself is never returned)."""

    cached: bool
    expires_in_seconds: int
    refresh_in_progress: bool
    safety_margin_seconds: int


class TokenStatusResponse(BaseModel):
    """Response schema for token status and refresh."""

    status: str = Field(..., description="Always 'success'")
    message: Optional[str] = Field(default=None, description="Status message")
    data: TokenStatusData


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
