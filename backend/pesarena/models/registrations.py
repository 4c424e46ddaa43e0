"""
Pydantic Tournament Registration Models
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RegistrationPaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class RegistrationRecord(BaseModel):
    """
    A user's entry into a tournament.

    payment_status mirrors the linked payment attempt. Approval is only
    allowed once the entry fee is paid.
    """
    id: str
    user_id: str
    tournament_id: str
    tournament_name: Optional[str] = None
    gamer_tag: Optional[str] = None
    status: RegistrationStatus = RegistrationStatus.PENDING
    payment_status: RegistrationPaymentStatus = RegistrationPaymentStatus.PENDING
    receipt_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "id": "REG_9A1B2C3D4E5F6071",
                "userId": "uid_123",
                "tournamentId": "T1",
                "tournamentName": "PES 2026 Freshers Cup",
                "gamerTag": "kamau_fc",
                "status": "approved",
                "paymentStatus": "completed",
                "receiptReference": "QAI12345",
                "createdAt": "2026-10-19T10:29:00",
                "updatedAt": "2026-10-19T10:30:41"
            }
        }
    )

    @property
    def can_be_approved(self) -> bool:
        return self.payment_status is RegistrationPaymentStatus.COMPLETED

    def to_public_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class RegistrationCreateRequest(BaseModel):
    tournament_name: Optional[str] = Field(default=None, max_length=120)
    gamer_tag: Optional[str] = Field(default=None, max_length=40)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
