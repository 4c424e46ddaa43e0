"""
Pydantic Payment Models

PaymentAttempt is the record of one STK push attempt. It leaves `pending`
exactly once, to `completed` or `failed`, and is never deleted.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class PaymentState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentState.PENDING


class PaymentAttempt(BaseModel):
    """
    Payment attempt document.

    Wire format is camelCase (correlationId, subjectId, ...); Python code
    uses the snake_case field names.
    """
    id: str
    correlation_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    subject_id: str
    requester_id: str
    amount: Decimal = Field(gt=0)
    phone: str = Field(pattern=r"^\d{12}$")
    state: PaymentState = PaymentState.PENDING
    receipt_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    result_code: Optional[int] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "id": "TXN_5F2C7A9B1D3E4F60",
                "correlationId": "ws_CO_191020261030123456",
                "merchantRequestId": "29115-34620561-1",
                "subjectId": "T1",
                "requesterId": "uid_123",
                "amount": "500",
                "phone": "254712345678",
                "state": "completed",
                "receiptReference": "QAI12345",
                "failureReason": None,
                "resultCode": 0,
                "createdAt": "2026-10-19T10:30:00",
                "resolvedAt": "2026-10-19T10:30:41"
            }
        }
    )

    @model_validator(mode="after")
    def validate_terminal_fields(self):
        """Receipt only on completed, failure reason only on failed."""
        if self.receipt_reference and self.state is not PaymentState.COMPLETED:
            raise ValueError("receipt_reference is only set on completed attempts")
        if self.failure_reason and self.state is not PaymentState.FAILED:
            raise ValueError("failure_reason is only set on failed attempts")
        if self.state.is_terminal != (self.resolved_at is not None):
            raise ValueError("resolved_at is set exactly when the attempt is terminal")
        return self

    def to_public_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class PaymentOutcome(BaseModel):
    """Resolution reported by the provider callback."""
    result_code: int
    description: str = ""
    receipt_reference: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


@dataclass
class ResolveResult:
    """
    Result of PaymentStore.resolve.

    attempt is None when no record matched the correlation id; transitioned is
    False when the record was already terminal.
    """
    attempt: Optional[PaymentAttempt]
    transitioned: bool


class StkPushRequest(BaseModel):
    """Body of the initiation endpoint."""
    amount: Decimal = Field(gt=0)
    phone: str = Field(min_length=1)
    subject_id: str = Field(min_length=1)
    transaction_id: Optional[str] = Field(default=None, max_length=64)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
