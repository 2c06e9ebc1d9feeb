"""Confidence scoring for (inbox item, payment) pairs.

Four sub-scores are combined with one of two weight sets, lifted by an ordered table of
floors, nudged by embedding strength and then penalised for weak currency/date evidence.
The result is classified against the tenant's calibrated thresholds.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import date

from ledgermatch.models.models import InboxType, MatchType
from ledgermatch.models.records import InboxRecord, PaymentRecord, TenantCalibration
from ledgermatch.services.store import MatchingStore
from ledgermatch.utils.scoring import (
    calculate_amount_score,
    calculate_currency_score,
    calculate_date_score,
    clamp01,
    cosine_similarity,
    is_perfect_financial_match,
)

logger = logging.getLogger(__name__)

# used when neither a vector nor a precomputed distance is available
DEFAULT_EMBEDDING_SCORE = 0.5


@dataclass(frozen=True)
class ScoreWeights:
    embedding: float
    amount: float
    currency: float
    date: float


DEFAULT_WEIGHTS = ScoreWeights(embedding=0.5, amount=0.35, currency=0.1, date=0.05)
PERFECT_FINANCIAL_WEIGHTS = ScoreWeights(embedding=0.25, amount=0.45, currency=0.15, date=0.15)


@dataclass(frozen=True)
class SubScores:
    embedding: float
    amount: float
    currency: float
    date: float
    is_perfect_financial_match: bool


# Evaluated top to bottom; only the first matching row raises the floor.
BOOST_FLOORS: tuple[tuple[Callable[[SubScores], bool], float], ...] = (
    (lambda s: s.is_perfect_financial_match and s.embedding > 0.85 and s.date > 0.7, 0.96),
    (lambda s: s.is_perfect_financial_match and s.embedding > 0.75 and s.date > 0.7, 0.94),
    (lambda s: s.is_perfect_financial_match and s.embedding > 0.65 and s.date > 0.6, 0.88),
    (lambda s: s.is_perfect_financial_match and s.embedding > 0.6 and s.date > 0.5, 0.90),
    (lambda s: s.is_perfect_financial_match and s.date > 0.5, 0.88),
)


@dataclass(frozen=True)
class MatchResult:
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
    merchant_pattern_eligible: bool = False
    reason: str | None = None

    def with_pattern(self, *, eligible: bool, upgrade: bool, reason: str | None) -> MatchResult:
        if upgrade:
            return replace(self, merchant_pattern_eligible=eligible, match_type=MatchType.auto_matched, reason=reason)
        return replace(self, merchant_pattern_eligible=eligible)


def select_weights(is_perfect: bool) -> ScoreWeights:
    return PERFECT_FINANCIAL_WEIGHTS if is_perfect else DEFAULT_WEIGHTS


def apply_confidence_boosts(base_score: float, s: SubScores) -> float:
    score = base_score

    for predicate, floor in BOOST_FLOORS:
        if predicate(s):
            score = max(score, floor)
            break

    if s.embedding > 0.85:
        score = min(1.0, score + 0.08)
    elif s.embedding > 0.75:
        score = min(1.0, score + 0.05)

    if s.amount > 0.85 and s.embedding > 0.75:
        score = max(score, 0.82)

    # penalties
    if s.currency < 0.5 and s.embedding < 0.7:
        score *= 0.95
    if s.date < 0.2:
        score *= 0.95 if s.embedding >= 0.85 else 0.85

    return clamp01(score)


def compute_confidence(s: SubScores) -> float:
    w = select_weights(s.is_perfect_financial_match)
    base = s.embedding * w.embedding + s.amount * w.amount + s.currency * w.currency + s.date * w.date
    return apply_confidence_boosts(base, s)


def classify(confidence: float, calibration: TenantCalibration) -> MatchType | None:
    if confidence >= calibration.calibrated_auto_threshold:
        return MatchType.auto_matched
    if confidence >= calibration.calibrated_high_confidence_threshold:
        return MatchType.high_confidence
    if confidence >= calibration.calibrated_suggested_threshold:
        return MatchType.suggested
    return None


def determine_tier(is_perfect: bool, embedding_score: float) -> int:
    if is_perfect:
        return 1
    if embedding_score > 0.65:
        return 3
    return 4


AmountScorer = Callable[[float | None, float | None], float]
CurrencyScorer = Callable[[str | None, str | None], float]
DateScorer = Callable[[date | None, date | None, InboxType | None], float]


class ScoringEngine:
    def __init__(
        self,
        store: MatchingStore | None = None,
        *,
        amount_scorer: AmountScorer = calculate_amount_score,
        currency_scorer: CurrencyScorer = calculate_currency_score,
        date_scorer: DateScorer = calculate_date_score,
    ) -> None:
        self._store = store
        self._amount_scorer = amount_scorer
        self._currency_scorer = currency_scorer
        self._date_scorer = date_scorer

    async def embedding_score(self, inbox: InboxRecord, candidate: PaymentRecord) -> float:
        if inbox.embedding is not None and candidate.embedding is not None:
            return clamp01(cosine_similarity(inbox.embedding, candidate.embedding))
        if candidate.embedding_distance is not None:
            return clamp01(1.0 - candidate.embedding_distance)
        if inbox.embedding is not None and self._store is not None:
            vector = await self._store.get_payment_embedding(tenant_id=inbox.tenant_id, payment_id=candidate.id)
            if vector is not None:
                return clamp01(cosine_similarity(inbox.embedding, vector))
        return DEFAULT_EMBEDDING_SCORE

    def sub_scores(self, inbox: InboxRecord, candidate: PaymentRecord, embedding_score: float) -> SubScores:
        return SubScores(
            embedding=clamp01(embedding_score),
            amount=clamp01(self._amount_scorer(inbox.amount, candidate.amount)),
            currency=clamp01(self._currency_scorer(inbox.currency, candidate.currency)),
            date=clamp01(self._date_scorer(inbox.date, candidate.date, inbox.type)),
            is_perfect_financial_match=is_perfect_financial_match(
                inbox.amount, inbox.currency, candidate.amount, candidate.currency
            ),
        )

    async def score(
        self,
        inbox: InboxRecord,
        candidate: PaymentRecord,
        calibration: TenantCalibration,
        *,
        embedding_score: float | None = None,
    ) -> MatchResult | None:
        """Score one pair; None when the confidence falls below the suggested threshold."""
        if embedding_score is None:
            embedding_score = await self.embedding_score(inbox, candidate)
        s = self.sub_scores(inbox, candidate, embedding_score)
        confidence = compute_confidence(s)

        match_type = classify(confidence, calibration)
        if match_type is None:
            return None

        return MatchResult(
            inbox_id=inbox.id,
            transaction_id=candidate.id,
            embedding_score=s.embedding,
            amount_score=s.amount,
            currency_score=s.currency,
            date_score=s.date,
            confidence_score=confidence,
            match_type=match_type,
            is_perfect_financial_match=s.is_perfect_financial_match,
            tier=determine_tier(s.is_perfect_financial_match, s.embedding),
        )

    async def score_candidates(
        self,
        inbox: InboxRecord,
        candidates: list[PaymentRecord],
        calibration: TenantCalibration,
    ) -> list[MatchResult]:
        """Score all candidates concurrently, best first.

        Every candidate runs to completion; the first failure is then re-raised so the
        caller can count the item as failed.
        """
        outcomes = await asyncio.gather(
            *(self.score(inbox, c, calibration) for c in candidates),
            return_exceptions=True,
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            logger.error(
                "Scoring failed for %d of %d candidates",
                len(errors),
                len(candidates),
                extra={"tenant_id": inbox.tenant_id, "inbox_id": inbox.id},
            )
            raise errors[0]

        scored = [o for o in outcomes if isinstance(o, MatchResult)]
        scored.sort(key=lambda r: r.confidence_score, reverse=True)
        return scored
