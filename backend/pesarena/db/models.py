"""
SQLAlchemy ORM Models for PES Arena Payments

One table per document collection of the original site: payments,
tournament_registrations and payouts. Rows are never deleted; a payment row
doubles as the audit record of the attempt.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo on the way back anyway."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentModel(Base):
    """
    ORM model for payments table.

    One row per STK push attempt, keyed by the local transaction id and
    correlated to the provider through correlation_id (CheckoutRequestID).
    """
    __tablename__ = "payments"

    id = Column(String, primary_key=True)
    correlation_id = Column(String, unique=True, nullable=True)
    merchant_request_id = Column(String)
    subject_id = Column(String, nullable=False, index=True)
    requester_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    phone = Column(String, nullable=False)
    state = Column(String, nullable=False, default="pending", index=True)
    receipt_reference = Column(String)
    failure_reason = Column(String)
    result_code = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    resolved_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint("state IN ('pending', 'completed', 'failed')", name="payment_state_check"),
        Index("idx_payments_requester_subject", "requester_id", "subject_id"),
    )


class RegistrationModel(Base):
    """
    ORM model for tournament_registrations table.

    payment_status mirrors the linked payment; status is the admin-facing
    approval state gated on payment_status.
    """
    __tablename__ = "tournament_registrations"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    tournament_id = Column(String, nullable=False, index=True)
    tournament_name = Column(String)
    gamer_tag = Column(String)
    status = Column(String, nullable=False, default="pending", index=True)
    payment_status = Column(String, nullable=False, default="pending")
    receipt_reference = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "tournament_id", name="registration_user_tournament_unique"),
        CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="registration_status_check"),
        CheckConstraint("payment_status IN ('pending', 'completed')", name="registration_payment_status_check"),
    )


class PayoutModel(Base):
    """
    ORM model for payouts table.

    One row per B2C prize transfer; conversation_id is the provider's
    correlation key for the result callback.
    """
    __tablename__ = "payouts"

    id = Column(String, primary_key=True)
    tournament_id = Column(String, nullable=False, index=True)
    position = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    phone = Column(String, nullable=False)
    conversation_id = Column(String, unique=True, nullable=True)
    originator_conversation_id = Column(String)
    status = Column(String, nullable=False, index=True)
    result_desc = Column(String)
    receipt_reference = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('initiated', 'rejected', 'completed', 'failed')",
            name="payout_status_check"
        ),
    )
