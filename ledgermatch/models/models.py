from __future__ import annotations

import enum
from datetime import date, datetime, timezone

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ledgermatch.config import settings
from ledgermatch.db.base import Base

EMBEDDING_DIMENSIONS = settings.embedding_dimensions


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InboxStatus(str, enum.Enum):
    new = "new"
    processing = "processing"
    analyzing = "analyzing"
    pending = "pending"
    suggested_match = "suggested_match"
    no_match = "no_match"
    done = "done"
    archived = "archived"
    deleted = "deleted"


class InboxType(str, enum.Enum):
    invoice = "invoice"
    expense = "expense"
    receipt = "receipt"
    other = "other"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class MatchType(str, enum.Enum):
    auto_matched = "auto_matched"
    high_confidence = "high_confidence"
    suggested = "suggested"


class SuggestionStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    declined = "declined"
    unmatched = "unmatched"


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class Payment(Base):
    """A ledger transaction. Read-only for the matching engine."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    merchant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[float | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    base_amount: Mapped[float | None] = mapped_column(Numeric(14, 2), nullable=True)
    base_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.completed, server_default=PaymentStatus.completed.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_payments_tenant_status_date", "tenant_id", "status", "payment_date"),
    )


class InboxItem(Base):
    __tablename__ = "inbox"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    website: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[float | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    base_amount: Mapped[float | None] = mapped_column(Numeric(14, 2), nullable=True)
    base_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    document_date: Mapped[date | None] = mapped_column("date", Date, nullable=True)
    type: Mapped[InboxType | None] = mapped_column(Enum(InboxType), nullable=True)
    status: Mapped[InboxStatus] = mapped_column(Enum(InboxStatus), nullable=False, default=InboxStatus.new, server_default=InboxStatus.new.value)
    transaction_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_inbox_tenant_status", "tenant_id", "status"),
        Index("ix_inbox_tenant_date", "tenant_id", "date"),
    )


class InboxEmbedding(Base):
    __tablename__ = "inbox_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    inbox_id: Mapped[int] = mapped_column(ForeignKey("inbox.id", ondelete="CASCADE"), nullable=False, unique=True)
    embedding = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class TransactionEmbedding(Base):
    __tablename__ = "transaction_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, unique=True)
    embedding = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class MatchSuggestion(Base):
    __tablename__ = "transaction_match_suggestions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    inbox_id: Mapped[int] = mapped_column(ForeignKey("inbox.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id: Mapped[int] = mapped_column(ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)

    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    amount_score: Mapped[float] = mapped_column(Float, nullable=False)
    currency_score: Mapped[float] = mapped_column(Float, nullable=False)
    date_score: Mapped[float] = mapped_column(Float, nullable=False)
    embedding_score: Mapped[float] = mapped_column(Float, nullable=False)
    match_type: Mapped[MatchType] = mapped_column(Enum(MatchType), nullable=False)
    match_details: Mapped[dict] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    status: Mapped[SuggestionStatus] = mapped_column(Enum(SuggestionStatus), nullable=False, default=SuggestionStatus.pending, server_default=SuggestionStatus.pending.value)
    user_action_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "inbox_id", "transaction_id", name="uq_suggestion_triplet"),
        Index("ix_suggestion_tenant_status_created", "tenant_id", "status", "created_at"),
    )


class TenantMatchCalibration(Base):
    __tablename__ = "tenant_match_calibration"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)

    calibrated_suggested_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.6)
    calibrated_auto_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.9)
    calibrated_high_confidence_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.72)

    total_suggestions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confirmed_suggestions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    declined_suggestions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unmatched_suggestions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    suggested_match_accuracy: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_confidence_confirmed: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_confidence_declined: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_confidence_unmatched: Mapped[float | None] = mapped_column(Float, nullable=True)

    last_calibrated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_calibration_tenant"),
    )
