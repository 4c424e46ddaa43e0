"""
Pydantic Prize Payout Models
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PayoutStatus(str, Enum):
    INITIATED = "initiated"   # accepted by M-Pesa, result callback pending
    REJECTED = "rejected"     # request refused, no money moved
    COMPLETED = "completed"
    FAILED = "failed"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PrizeBreakdown(_CamelModel):
    """Prize split in whole shillings; the arena fee takes the rounding remainder."""
    total_pool: int
    first_place: int
    second_place: int
    third_place: int
    arena_fee: int


class PayoutWinners(_CamelModel):
    first_place: str = Field(min_length=1)
    second_place: str = Field(min_length=1)
    third_place: str = Field(min_length=1)


class PayoutRequest(_CamelModel):
    tournament_id: str = Field(min_length=1)
    total_pool: int = Field(gt=0)
    winners: PayoutWinners


class PayoutRecord(_CamelModel):
    id: str
    tournament_id: str
    position: str
    amount: int
    phone: str
    conversation_id: Optional[str] = None
    originator_conversation_id: Optional[str] = None
    status: PayoutStatus
    result_desc: Optional[str] = None
    receipt_reference: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None


class PayoutSummary(_CamelModel):
    tournament_id: str
    prizes: PrizeBreakdown
    payouts_initiated: int
    payouts_failed: int
    results: List[PayoutRecord]
