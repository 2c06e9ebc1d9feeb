"""Turns retrieval and scoring into persisted suggestions and inbox state changes.

Forward direction (inbox -> payment) uses tiered retrieval; the reverse direction
(payment -> pending inbox items) is a single vector lookup over an expense-style window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from ledgermatch.models.models import InboxStatus, InboxType, MatchType
from ledgermatch.models.records import SuggestionDraft
from ledgermatch.services.calibration import CalibrationStore, default_calibration
from ledgermatch.services.embeddings import EmbeddingClient, prepare_inbox_text, prepare_transaction_text
from ledgermatch.services.merchant_patterns import CurrentMatch, MerchantPatternService
from ledgermatch.services.retrieval import CandidateRetriever, date_window
from ledgermatch.services.scoring import MatchResult, ScoringEngine
from ledgermatch.services.store import MatchingStore
from ledgermatch.utils.scoring import clamp01, cosine_similarity

logger = logging.getLogger(__name__)

REVERSE_MAX_DISTANCE = 0.6
REVERSE_CANDIDATE_LIMIT = 20

ON_THE_FLY_PAYMENT_LIMIT = 100
ON_THE_FLY_RESULT_LIMIT = 5


@dataclass(frozen=True)
class InboxMatchOutcome:
    inbox_id: int
    matched: bool = False
    auto_matched: bool = False
    match: MatchResult | None = None
    suggestion_id: int | None = None
    error: str | None = None

    @property
    def matches(self) -> int:
        return 1 if self.matched else 0


@dataclass(frozen=True)
class TransactionMatchOutcome:
    transaction_id: int
    matched: bool = False
    auto_matched: bool = False
    inbox_id: int | None = None
    match: MatchResult | None = None
    suggestion_id: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class BatchProcessResult:
    processed: int = 0
    auto_matched: int = 0
    suggestions: int = 0


def _error_text(e: Exception) -> str:
    return str(e) or type(e).__name__


class MatchOrchestrator:
    def __init__(
        self,
        store: MatchingStore,
        embeddings: EmbeddingClient,
        *,
        retriever: CandidateRetriever | None = None,
        scoring: ScoringEngine | None = None,
        calibration: CalibrationStore | None = None,
        patterns: MerchantPatternService | None = None,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.retriever = retriever or CandidateRetriever(store)
        self.scoring = scoring or ScoringEngine(store)
        self.calibration = calibration or CalibrationStore(store)
        self.patterns = patterns or MerchantPatternService(store)

    # ---------------------------
    # Find
    # ---------------------------

    async def find_matches_tiered(self, tenant_id: int, inbox_id: int) -> MatchResult | None:
        try:
            return await self._find_best_payment(tenant_id, inbox_id)
        except Exception:
            logger.exception("Error in tiered matching", extra={"tenant_id": tenant_id, "inbox_id": inbox_id})
            return None

    async def find_inbox_matches_for_transaction(self, tenant_id: int, transaction_id: int) -> MatchResult | None:
        try:
            return await self._find_best_inbox(tenant_id, transaction_id)
        except Exception:
            logger.exception(
                "Error in reverse matching", extra={"tenant_id": tenant_id, "transaction_id": transaction_id}
            )
            return None

    async def find_matches_for_inbox(self, tenant_id: int, inbox_id: int) -> list[MatchResult]:
        """Score recent payments against an inbox item without relying on stored embeddings."""
        log_ctx = {"tenant_id": tenant_id, "inbox_id": inbox_id}
        try:
            inbox = await self.store.get_inbox(tenant_id=tenant_id, inbox_id=inbox_id)
            if inbox is None:
                logger.warning("Inbox item not found", extra=log_ctx)
                return []

            window = date_window(None, inbox.date or date.today())
            payments = await self.store.list_recent_payments(
                tenant_id=tenant_id,
                date_from=window.start,
                date_to=window.end,
                limit=ON_THE_FLY_PAYMENT_LIMIT,
            )
            if not payments:
                logger.info("No payment candidates found", extra=log_ctx)
                return []

            texts = [prepare_inbox_text(display_name=inbox.display_name, website=inbox.website, description=inbox.description)]
            texts.extend(
                prepare_transaction_text(name=p.name, description=p.description, merchant_name=p.merchant_name)
                for p in payments
            )
            batch = await self.embeddings.generate_embeddings(texts)
            inbox_vector, payment_vectors = batch.vectors[0], batch.vectors[1:]

            thresholds = default_calibration(tenant_id)
            results: list[MatchResult] = []
            for payment, vector in zip(payments, payment_vectors):
                result = await self.scoring.score(
                    inbox,
                    payment,
                    thresholds,
                    embedding_score=clamp01(cosine_similarity(inbox_vector, vector)),
                )
                if result is not None:
                    results.append(result)

            results.sort(key=lambda r: r.confidence_score, reverse=True)
            return results[:ON_THE_FLY_RESULT_LIMIT]
        except Exception:
            logger.exception("Error finding matches", extra=log_ctx)
            return []

    async def _find_best_payment(self, tenant_id: int, inbox_id: int) -> MatchResult | None:
        log_ctx = {"tenant_id": tenant_id, "inbox_id": inbox_id}

        inbox = await self.store.get_inbox(tenant_id=tenant_id, inbox_id=inbox_id)
        if inbox is None or inbox.embedding is None:
            logger.warning("No inbox item or embedding found", extra=log_ctx)
            return None
        if inbox.date is None:
            logger.warning("No date on inbox item, skipping matching", extra=log_ctx)
            return None

        calibration = await self.calibration.get_calibration(tenant_id)

        candidates = await self.retriever.retrieve(inbox)
        if not candidates:
            logger.info("No candidates found from tiered queries", extra=log_ctx)
            return None

        scored = await self.scoring.score_candidates(inbox, candidates, calibration)

        best: MatchResult | None = None
        for result in scored:
            dismissed = await self.store.was_previously_dismissed(
                tenant_id=tenant_id, inbox_id=inbox_id, transaction_id=result.transaction_id
            )
            if not dismissed:
                best = result
                break
        if best is None:
            logger.info("No candidate cleared the threshold or all were dismissed", extra=log_ctx)
            return None

        if best.confidence_score >= calibration.calibrated_suggested_threshold:
            payment_embedding = await self.store.get_payment_embedding(tenant_id=tenant_id, payment_id=best.transaction_id)
            if payment_embedding is not None:
                eligibility = await self.patterns.check_eligibility(
                    tenant_id=tenant_id,
                    inbox_embedding=inbox.embedding,
                    transaction_embedding=payment_embedding,
                    current=CurrentMatch(
                        embedding_score=best.embedding_score,
                        amount_score=best.amount_score,
                        date_score=best.date_score,
                        confidence_score=best.confidence_score,
                        is_perfect_financial_match=best.is_perfect_financial_match,
                    ),
                )
                upgrade = (
                    eligibility.can_auto_match
                    and best.match_type != MatchType.auto_matched
                    and best.confidence_score >= calibration.calibrated_high_confidence_threshold
                )
                best = best.with_pattern(
                    eligible=eligibility.can_auto_match,
                    upgrade=upgrade,
                    reason=eligibility.reason if upgrade else None,
                )

        logger.info(
            "Best match found: payment=%s confidence=%.3f type=%s tier=%d",
            best.transaction_id,
            best.confidence_score,
            best.match_type.value,
            best.tier,
            extra=log_ctx,
        )
        return best

    async def _find_best_inbox(self, tenant_id: int, transaction_id: int) -> MatchResult | None:
        log_ctx = {"tenant_id": tenant_id, "transaction_id": transaction_id}

        payment = await self.store.get_payment(tenant_id=tenant_id, payment_id=transaction_id)
        if payment is None or payment.embedding is None:
            logger.warning("No transaction or embedding found", extra=log_ctx)
            return None
        if payment.date is None:
            logger.warning("No date on transaction, skipping matching", extra=log_ctx)
            return None

        calibration = await self.calibration.get_calibration(tenant_id)

        window = date_window(InboxType.expense, payment.date)
        inbox_items = await self.store.find_pending_inbox_candidates(
            tenant_id=tenant_id,
            embedding=payment.embedding,
            date_from=window.start,
            date_to=window.end,
            max_distance=REVERSE_MAX_DISTANCE,
            limit=REVERSE_CANDIDATE_LIMIT,
        )
        if not inbox_items:
            logger.info("No pending inbox candidates found", extra=log_ctx)
            return None

        best: MatchResult | None = None
        for inbox in inbox_items:
            if await self.store.was_previously_dismissed(
                tenant_id=tenant_id, inbox_id=inbox.id, transaction_id=transaction_id
            ):
                continue
            result = await self.scoring.score(inbox, payment, calibration)
            if result is None:
                continue
            if best is None or result.confidence_score > best.confidence_score:
                best = result
        return best

    # ---------------------------
    # Persist
    # ---------------------------

    async def process_inbox_matching(self, tenant_id: int, inbox_id: int) -> InboxMatchOutcome:
        log_ctx = {"tenant_id": tenant_id, "inbox_id": inbox_id}
        try:
            match = await self._find_best_payment(tenant_id, inbox_id)
            if match is None:
                await self.store.update_inbox_status(tenant_id=tenant_id, inbox_id=inbox_id, status=InboxStatus.no_match)
                return InboxMatchOutcome(inbox_id=inbox_id)

            suggestion_id = await self.store.upsert_suggestion(
                _draft(
                    tenant_id,
                    match,
                    {
                        "tier": match.tier,
                        "is_perfect_financial_match": match.is_perfect_financial_match,
                        "merchant_pattern_eligible": match.merchant_pattern_eligible,
                        "reason": match.reason,
                    },
                )
            )
            auto_matched = await self._apply_outcome(tenant_id, match)
        except Exception as e:
            logger.exception("Error processing inbox matching", extra=log_ctx)
            return InboxMatchOutcome(inbox_id=inbox_id, error=_error_text(e))

        logger.info(
            "Inbox matching completed: payment=%s confidence=%.3f type=%s auto=%s",
            match.transaction_id,
            match.confidence_score,
            match.match_type.value,
            auto_matched,
            extra=log_ctx,
        )
        return InboxMatchOutcome(
            inbox_id=inbox_id,
            matched=True,
            auto_matched=auto_matched,
            match=match,
            suggestion_id=suggestion_id,
        )

    async def process_transaction_matching(self, tenant_id: int, transaction_id: int) -> TransactionMatchOutcome:
        log_ctx = {"tenant_id": tenant_id, "transaction_id": transaction_id}
        try:
            match = await self._find_best_inbox(tenant_id, transaction_id)
            if match is None:
                return TransactionMatchOutcome(transaction_id=transaction_id)

            suggestion_id = await self.store.upsert_suggestion(
                _draft(
                    tenant_id,
                    match,
                    {
                        "direction": "transaction_to_inbox",
                        "tier": match.tier,
                        "is_perfect_financial_match": match.is_perfect_financial_match,
                    },
                )
            )
            auto_matched = await self._apply_outcome(tenant_id, match)
        except Exception as e:
            logger.exception("Error processing transaction matching", extra=log_ctx)
            return TransactionMatchOutcome(transaction_id=transaction_id, error=_error_text(e))

        logger.info(
            "Transaction matching completed: inbox=%s confidence=%.3f type=%s auto=%s",
            match.inbox_id,
            match.confidence_score,
            match.match_type.value,
            auto_matched,
            extra=log_ctx,
        )
        return TransactionMatchOutcome(
            transaction_id=transaction_id,
            matched=True,
            auto_matched=auto_matched,
            inbox_id=match.inbox_id,
            match=match,
            suggestion_id=suggestion_id,
        )

    async def batch_process_matching(self, tenant_id: int, inbox_ids: list[int]) -> BatchProcessResult:
        processed = auto_matched = suggestions = 0
        for inbox_id in inbox_ids:
            outcome = await self.process_inbox_matching(tenant_id, inbox_id)
            processed += 1
            if outcome.auto_matched:
                auto_matched += 1
            suggestions += outcome.matches
        return BatchProcessResult(processed=processed, auto_matched=auto_matched, suggestions=suggestions)

    async def _apply_outcome(self, tenant_id: int, match: MatchResult) -> bool:
        """Move the inbox item along; True when it ended up linked."""
        if match.match_type == MatchType.auto_matched:
            linked = await self.store.link_inbox_transaction(
                tenant_id=tenant_id, inbox_id=match.inbox_id, transaction_id=match.transaction_id
            )
            if linked:
                return True
            logger.warning(
                "Inbox item already linked, auto match kept as suggestion",
                extra={"tenant_id": tenant_id, "inbox_id": match.inbox_id},
            )
        await self.store.update_inbox_status(
            tenant_id=tenant_id, inbox_id=match.inbox_id, status=InboxStatus.suggested_match
        )
        return False


def _draft(tenant_id: int, match: MatchResult, details: dict) -> SuggestionDraft:
    return SuggestionDraft(
        tenant_id=tenant_id,
        inbox_id=match.inbox_id,
        transaction_id=match.transaction_id,
        confidence_score=match.confidence_score,
        amount_score=match.amount_score,
        currency_score=match.currency_score,
        date_score=match.date_score,
        embedding_score=match.embedding_score,
        match_type=match.match_type,
        match_details=details,
    )
