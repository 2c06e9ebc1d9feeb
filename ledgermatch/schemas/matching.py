from __future__ import annotations

from pydantic import BaseModel, Field

from ledgermatch.models.models import MatchType
from ledgermatch.schemas.common import OrmBase


class MatchResultOut(OrmBase):
    inbox_id: int
    transaction_id: int
    embedding_score: float
    amount_score: float
    currency_score: float
    date_score: float
    confidence_score: float
    match_type: MatchType
    is_perfect_financial_match: bool
    tier: int
    merchant_pattern_eligible: bool
    reason: str | None = None


class InboxMatchOut(OrmBase):
    inbox_id: int
    matched: bool
    auto_matched: bool
    matches: int
    suggestion_id: int | None = None
    match: MatchResultOut | None = None
    error: str | None = None


class TransactionMatchOut(OrmBase):
    transaction_id: int
    matched: bool
    auto_matched: bool
    inbox_id: int | None = None
    suggestion_id: int | None = None
    match: MatchResultOut | None = None
    error: str | None = None


class BatchMatchingRequest(BaseModel):
    inbox_ids: list[int] = Field(min_length=1, max_length=500)


class BidirectionalMatchingRequest(BaseModel):
    transaction_ids: list[int] = Field(min_length=1, max_length=500)


class SmartMatchingRequest(BaseModel):
    inbox_ids: list[int] | None = None
    transaction_ids: list[int] | None = None


class MatchingJobOut(OrmBase):
    processed: int
    auto_matched: int
    suggestions: int
    no_matches: int
    errors: int
