from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from ledgermatch.models.models import SuggestionStatus, utcnow
from ledgermatch.models.records import PatternHistoryItem
from ledgermatch.services.store import MatchingStore

logger = logging.getLogger(__name__)

# cosine distance; only near-identical merchants count
SIMILARITY_THRESHOLD = 0.15
LOOKBACK = timedelta(days=182)
HISTORY_LIMIT = 20

MIN_CONFIRMED_MATCHES = 3
MIN_ACCURACY = 0.9
MAX_NEGATIVE_SIGNALS = 1
MIN_AVG_CONFIDENCE = 0.85

CURRENT_MIN_EMBEDDING = 0.85
CURRENT_MIN_DATE_SCORE = 0.7
CURRENT_MIN_AMOUNT_SCORE = 0.95


@dataclass(frozen=True)
class CurrentMatch:
    embedding_score: float
    amount_score: float
    date_score: float
    confidence_score: float
    is_perfect_financial_match: bool


@dataclass(frozen=True)
class PatternEligibility:
    can_auto_match: bool
    reason: str
    confirmed_count: int = 0
    negative_count: int = 0
    historical_accuracy: float = 0.0
    avg_confidence: float = 0.0


@dataclass(frozen=True)
class PatternAnalysis:
    total: int
    confirmed: int
    negative: int
    accuracy: float
    avg_confidence_confirmed: float


def analyze_patterns(history: list[PatternHistoryItem]) -> PatternAnalysis:
    confirmed = [p for p in history if p.status == SuggestionStatus.confirmed]
    negative = sum(1 for p in history if p.status in (SuggestionStatus.declined, SuggestionStatus.unmatched))
    total = len(history)
    return PatternAnalysis(
        total=total,
        confirmed=len(confirmed),
        negative=negative,
        accuracy=len(confirmed) / total if total else 0.0,
        avg_confidence_confirmed=sum(p.confidence_score for p in confirmed) / len(confirmed) if confirmed else 0.0,
    )


def check_eligibility(analysis: PatternAnalysis, current: CurrentMatch | None = None) -> PatternEligibility:
    def reject(reason: str) -> PatternEligibility:
        return PatternEligibility(
            can_auto_match=False,
            reason=reason,
            confirmed_count=analysis.confirmed,
            negative_count=analysis.negative,
            historical_accuracy=analysis.accuracy,
            avg_confidence=analysis.avg_confidence_confirmed,
        )

    if analysis.confirmed < MIN_CONFIRMED_MATCHES:
        return reject(f"Insufficient confirmed matches ({analysis.confirmed}/{MIN_CONFIRMED_MATCHES})")
    if analysis.accuracy < MIN_ACCURACY:
        return reject(f"Accuracy too low ({analysis.accuracy * 100:.1f}% < {MIN_ACCURACY * 100:.0f}%)")
    if analysis.negative > MAX_NEGATIVE_SIGNALS:
        return reject(f"Too many negative signals ({analysis.negative} > {MAX_NEGATIVE_SIGNALS})")
    if analysis.avg_confidence_confirmed < MIN_AVG_CONFIDENCE:
        return reject(f"Average confidence too low ({analysis.avg_confidence_confirmed * 100:.1f}%)")

    if current is not None:
        if current.embedding_score < CURRENT_MIN_EMBEDDING:
            return reject(f"Current embedding score too low ({current.embedding_score * 100:.1f}%)")
        if current.date_score < CURRENT_MIN_DATE_SCORE:
            return reject(f"Current date score too low ({current.date_score * 100:.1f}%)")
        if not current.is_perfect_financial_match and current.amount_score < CURRENT_MIN_AMOUNT_SCORE:
            return reject("Financial match not strong enough for pattern-based auto-match")
        min_confidence = min(0.9, analysis.avg_confidence_confirmed - 0.05)
        if current.confidence_score < min_confidence:
            return reject(
                f"Current confidence below threshold ({current.confidence_score * 100:.1f}% < {min_confidence * 100:.1f}%)"
            )

    return PatternEligibility(
        can_auto_match=True,
        reason=f"Proven merchant pattern ({analysis.confirmed} matches, {analysis.accuracy * 100:.0f}% accuracy)",
        confirmed_count=analysis.confirmed,
        negative_count=analysis.negative,
        historical_accuracy=analysis.accuracy,
        avg_confidence=analysis.avg_confidence_confirmed,
    )


class MerchantPatternService:
    def __init__(self, store: MatchingStore) -> None:
        self.store = store

    async def check_eligibility(
        self,
        *,
        tenant_id: int,
        inbox_embedding: list[float],
        transaction_embedding: list[float],
        current: CurrentMatch | None = None,
    ) -> PatternEligibility:
        try:
            history = await self.store.find_merchant_patterns(
                tenant_id=tenant_id,
                inbox_embedding=inbox_embedding,
                transaction_embedding=transaction_embedding,
                since=utcnow() - LOOKBACK,
                max_distance=SIMILARITY_THRESHOLD,
                limit=HISTORY_LIMIT,
            )
            analysis = analyze_patterns(history)
        except Exception:
            logger.exception("Error checking merchant patterns", extra={"tenant_id": tenant_id})
            return PatternEligibility(can_auto_match=False, reason="Error checking patterns")

        result = check_eligibility(analysis, current)
        logger.debug(
            "Merchant pattern check: %d history rows, %d confirmed, eligible=%s",
            analysis.total,
            analysis.confirmed,
            result.can_auto_match,
            extra={"tenant_id": tenant_id},
        )
        return result
