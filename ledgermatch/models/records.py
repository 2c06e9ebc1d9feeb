"""Plain records that cross the store boundary.

Rows are parsed into these once, in the store; scoring and orchestration never see
ORM objects or raw result mappings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

from ledgermatch.models.models import InboxStatus, InboxType, MatchType, SuggestionStatus


@dataclass(frozen=True)
class InboxRecord:
    id: int
    tenant_id: int
    display_name: str | None = None
    website: str | None = None
    description: str | None = None
    amount: float | None = None
    base_amount: float | None = None
    currency: str | None = None
    base_currency: str | None = None
    date: date | None = None
    type: InboxType | None = None
    status: InboxStatus = InboxStatus.pending
    transaction_id: int | None = None
    embedding: list[float] | None = None


@dataclass(frozen=True)
class PaymentRecord:
    id: int
    tenant_id: int
    name: str | None = None
    description: str | None = None
    merchant_name: str | None = None
    amount: float | None = None
    currency: str | None = None
    base_amount: float | None = None
    base_currency: str | None = None
    date: date | None = None
    embedding: list[float] | None = None
    # cosine distance to the query vector when the row came from a vector search
    embedding_distance: float | None = None


@dataclass(frozen=True)
class CandidateQuery:
    """Filter set for one vector-ordered payment lookup."""

    embedding: list[float]
    date_from: date
    date_to: date
    max_distance: float
    limit: int
    min_amount: float | None = None
    max_amount: float | None = None
    # "amount" or "base_amount"
    amount_field: str = "amount"
    currency: str | None = None
    exclude_currency: str | None = None
    base_currency: str | None = None
    require_embedding: bool = False


@dataclass(frozen=True)
class SuggestionDraft:
    tenant_id: int
    inbox_id: int
    transaction_id: int
    confidence_score: float
    amount_score: float
    currency_score: float
    date_score: float
    embedding_score: float
    match_type: MatchType
    match_details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SuggestionRecord:
    id: int
    tenant_id: int
    inbox_id: int
    transaction_id: int
    confidence_score: float
    match_type: MatchType
    status: SuggestionStatus
    match_details: dict = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class FeedbackSummary:
    """Counts and average confidences of reviewed suggestions in a lookback window."""

    confirmed: int = 0
    declined: int = 0
    unmatched: int = 0
    avg_confidence_confirmed: float | None = None
    avg_confidence_declined: float | None = None
    avg_confidence_unmatched: float | None = None

    @property
    def total(self) -> int:
        return self.confirmed + self.declined + self.unmatched

    @property
    def negative(self) -> int:
        return self.declined + self.unmatched

    @property
    def accuracy(self) -> float:
        return self.confirmed / self.total if self.total > 0 else 0.0

    @property
    def confidence_gap(self) -> float:
        """Average confirmed confidence minus the count-weighted negative average."""
        if self.avg_confidence_confirmed is None or self.negative == 0:
            return 0.0
        avg_negative = (
            (self.avg_confidence_declined or 0.0) * self.declined
            + (self.avg_confidence_unmatched or 0.0) * self.unmatched
        ) / self.negative
        return self.avg_confidence_confirmed - avg_negative


@dataclass(frozen=True)
class PatternHistoryItem:
    suggestion_id: int
    status: SuggestionStatus
    confidence_score: float
    inbox_similarity: float
    transaction_similarity: float
    created_at: datetime


@dataclass(frozen=True)
class TenantCalibration:
    tenant_id: int
    calibrated_suggested_threshold: float
    calibrated_auto_threshold: float
    calibrated_high_confidence_threshold: float
    total_suggestions: int = 0
    confirmed_suggestions: int = 0
    declined_suggestions: int = 0
    unmatched_suggestions: int = 0
    suggested_match_accuracy: float = 0.0
    avg_confidence_confirmed: float | None = None
    avg_confidence_declined: float | None = None
    avg_confidence_unmatched: float | None = None
    last_calibrated_at: datetime | None = None
