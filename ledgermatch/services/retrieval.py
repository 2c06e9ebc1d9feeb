from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta

from ledgermatch.models.models import InboxType
from ledgermatch.models.records import CandidateQuery, InboxRecord, PaymentRecord
from ledgermatch.services.errors import SchemaMismatchError
from ledgermatch.services.store import MatchingStore

logger = logging.getLogger(__name__)

# (days before, days after) the inbox document date
DATE_WINDOWS: dict[InboxType, tuple[int, int]] = {
    # receipts/expenses are often filed well after the payment
    InboxType.expense: (93, 10),
    # invoices get paid on net terms, up to ~4 months later
    InboxType.invoice: (10, 123),
}
DEFAULT_DATE_WINDOW = (60, 30)

NARROW_WINDOW_DAYS = 30


@dataclass(frozen=True)
class DateWindow:
    start: date
    end: date

    def narrowed(self, days: int) -> DateWindow | None:
        start = self.start + timedelta(days=days)
        end = self.end - timedelta(days=days)
        if start > end:
            return None
        return DateWindow(start=start, end=end)


def date_window(inbox_type: InboxType | None, anchor: date) -> DateWindow:
    before, after = DATE_WINDOWS.get(inbox_type, DEFAULT_DATE_WINDOW) if inbox_type else DEFAULT_DATE_WINDOW
    return DateWindow(start=anchor - timedelta(days=before), end=anchor + timedelta(days=after))


def amount_range(amount: float | None, tolerance: float) -> tuple[float | None, float | None]:
    if amount is None:
        return None, None
    base = abs(amount)
    return base * (1 - tolerance), base * (1 + tolerance)


class RetrievalStrategy:
    tier: int = 0
    amount_tolerance: float = 0.0
    max_distance: float = 0.0
    max_results: int = 0

    def should_run(self, found: int, inbox: InboxRecord) -> bool:
        return True

    def build_query(self, inbox: InboxRecord, window: DateWindow) -> CandidateQuery | None:
        raise NotImplementedError

    async def fetch(self, store: MatchingStore, inbox: InboxRecord, window: DateWindow) -> list[PaymentRecord]:
        query = self.build_query(inbox, window)
        if query is None:
            return []
        return await store.search_payments(tenant_id=inbox.tenant_id, query=query)


class ExactCurrencyTier(RetrievalStrategy):
    """Same currency, amount within 1%; payments without an embedding still qualify."""

    tier = 1
    amount_tolerance = 0.01
    max_distance = 0.6
    max_results = 5

    def build_query(self, inbox: InboxRecord, window: DateWindow) -> CandidateQuery | None:
        if inbox.amount is None or inbox.currency is None:
            return None
        lo, hi = amount_range(inbox.amount, self.amount_tolerance)
        return CandidateQuery(
            embedding=inbox.embedding,
            date_from=window.start,
            date_to=window.end,
            max_distance=self.max_distance,
            limit=self.max_results,
            min_amount=lo,
            max_amount=hi,
            currency=inbox.currency,
        )


class BaseCurrencyTier(RetrievalStrategy):
    """Cross-currency lookup on base-currency amounts."""

    tier = 2
    amount_tolerance = 0.15
    max_distance = 0.6
    max_results = 5

    def should_run(self, found: int, inbox: InboxRecord) -> bool:
        return found < 15 and inbox.base_currency is not None

    def build_query(self, inbox: InboxRecord, window: DateWindow) -> CandidateQuery | None:
        if inbox.base_amount is None or inbox.base_currency is None:
            return None
        lo, hi = amount_range(inbox.base_amount, self.amount_tolerance)
        return CandidateQuery(
            embedding=inbox.embedding,
            date_from=window.start,
            date_to=window.end,
            max_distance=self.max_distance,
            limit=self.max_results,
            min_amount=lo,
            max_amount=hi,
            amount_field="base_amount",
            exclude_currency=inbox.currency,
            base_currency=inbox.base_currency,
        )

    async def fetch(self, store: MatchingStore, inbox: InboxRecord, window: DateWindow) -> list[PaymentRecord]:
        try:
            return await super().fetch(store, inbox, window)
        except SchemaMismatchError as e:
            logger.warning(
                "Base-currency lookup unavailable, skipping tier 2: %s",
                e,
                extra={"tenant_id": inbox.tenant_id, "inbox_id": inbox.id},
            )
            return []


class SemanticTier(RetrievalStrategy):
    tier = 3
    amount_tolerance = 0.2
    max_distance = 0.35
    max_results = 10
    min_found = 15

    def should_run(self, found: int, inbox: InboxRecord) -> bool:
        return found < self.min_found

    def query_window(self, window: DateWindow) -> DateWindow | None:
        return window

    def build_query(self, inbox: InboxRecord, window: DateWindow) -> CandidateQuery | None:
        effective = self.query_window(window)
        if effective is None:
            return None
        # unknown amount: no amount filter at all
        lo, hi = amount_range(inbox.amount, self.amount_tolerance)
        return CandidateQuery(
            embedding=inbox.embedding,
            date_from=effective.start,
            date_to=effective.end,
            max_distance=self.max_distance,
            limit=self.max_results,
            min_amount=lo,
            max_amount=hi,
            require_embedding=True,
        )


class NarrowSemanticTier(SemanticTier):
    tier = 4
    max_distance = 0.45
    min_found = 10

    def query_window(self, window: DateWindow) -> DateWindow | None:
        return window.narrowed(NARROW_WINDOW_DAYS)


DEFAULT_STRATEGIES: tuple[RetrievalStrategy, ...] = (
    ExactCurrencyTier(),
    BaseCurrencyTier(),
    SemanticTier(),
    NarrowSemanticTier(),
)


class CandidateRetriever:
    def __init__(self, store: MatchingStore, strategies: tuple[RetrievalStrategy, ...] = DEFAULT_STRATEGIES) -> None:
        self.store = store
        self.strategies = strategies

    async def retrieve(self, inbox: InboxRecord) -> list[PaymentRecord]:
        if inbox.embedding is None or inbox.date is None:
            raise ValueError("Retrieval needs an inbox embedding and date")

        window = date_window(inbox.type, inbox.date)
        collected: list[PaymentRecord] = []
        seen: set[int] = set()

        for strategy in self.strategies:
            if not strategy.should_run(len(collected), inbox):
                continue
            found = await strategy.fetch(self.store, inbox, window)
            added = 0
            for candidate in found:
                if candidate.id in seen:
                    continue
                seen.add(candidate.id)
                collected.append(candidate)
                added += 1
            logger.debug(
                "Tier %d returned %d candidates (%d new)",
                strategy.tier,
                len(found),
                added,
                extra={"tenant_id": inbox.tenant_id, "inbox_id": inbox.id},
            )

        return collected
