"""Background matching jobs: batched inbox matching, bidirectional runs, smart dispatch.

Items run in fixed-size windows; each window is gathered with per-task result capture so
one failing item never cancels its siblings.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any

from ledgermatch.config import settings
from ledgermatch.services.calibration import CalibrationRefresher
from ledgermatch.services.orchestrator import InboxMatchOutcome, MatchOrchestrator, TransactionMatchOutcome
from ledgermatch.services.store import MatchingStore

logger = logging.getLogger(__name__)

JOB_BIDIRECTIONAL = "inbox-bidirectional-matching"
JOB_BATCH_INBOX = "inbox-batch-matching"
JOB_SMART = "inbox-smart-matching"


@dataclass
class MatchingJobResult:
    processed: int = 0
    auto_matched: int = 0
    suggestions: int = 0
    no_matches: int = 0
    errors: int = 0

    def record(self, outcome: InboxMatchOutcome | TransactionMatchOutcome) -> None:
        self.processed += 1
        if outcome.error is not None:
            self.errors += 1
        elif outcome.auto_matched:
            self.auto_matched += 1
        elif outcome.matched:
            self.suggestions += 1
        else:
            self.no_matches += 1

    def record_failure(self) -> None:
        self.processed += 1
        self.errors += 1

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _windows(ids: list[int], size: int) -> list[list[int]]:
    return [ids[i : i + size] for i in range(0, len(ids), size)]


class BatchCoordinator:
    def __init__(
        self,
        store: MatchingStore,
        orchestrator: MatchOrchestrator,
        refresher: CalibrationRefresher,
        *,
        inbox_batch_size: int | None = None,
        reverse_batch_size: int | None = None,
        bidirectional_pending_limit: int | None = None,
        smart_pending_limit: int | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.refresher = refresher
        self.inbox_batch_size = inbox_batch_size or settings.inbox_batch_size
        self.reverse_batch_size = reverse_batch_size or settings.reverse_batch_size
        self.bidirectional_pending_limit = bidirectional_pending_limit or settings.bidirectional_pending_limit
        self.smart_pending_limit = smart_pending_limit or settings.smart_pending_limit

        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[MatchingJobResult]]] = {
            JOB_BIDIRECTIONAL: lambda p: self.handle_bidirectional_matching(p["tenant_id"], p.get("transaction_ids") or []),
            JOB_BATCH_INBOX: lambda p: self.handle_batch_inbox_matching(p["tenant_id"], p.get("inbox_ids") or []),
            JOB_SMART: lambda p: self.smart_matching(
                p["tenant_id"], inbox_ids=p.get("inbox_ids"), transaction_ids=p.get("transaction_ids")
            ),
        }

    @property
    def job_types(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, job_type: str, payload: dict[str, Any]) -> MatchingJobResult:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise ValueError(f"Unknown matching job type: {job_type}")
        if "tenant_id" not in payload:
            raise ValueError("Job payload requires tenant_id")
        return await handler(payload)

    async def _run_inbox_windows(self, tenant_id: int, inbox_ids: list[int], size: int, result: MatchingJobResult) -> None:
        for window in _windows(inbox_ids, size):
            outcomes = await asyncio.gather(
                *(self.orchestrator.process_inbox_matching(tenant_id, inbox_id) for inbox_id in window),
                return_exceptions=True,
            )
            for inbox_id, outcome in zip(window, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "Error processing inbox item in batch: %s",
                        outcome,
                        extra={"tenant_id": tenant_id, "inbox_id": inbox_id},
                    )
                    result.record_failure()
                else:
                    result.record(outcome)

    async def handle_batch_inbox_matching(self, tenant_id: int, inbox_ids: list[int]) -> MatchingJobResult:
        result = MatchingJobResult()
        logger.info("Starting batch inbox matching for %d items", len(inbox_ids), extra={"tenant_id": tenant_id})

        await self._run_inbox_windows(tenant_id, list(inbox_ids), self.inbox_batch_size, result)

        self.refresher.schedule(tenant_id)
        logger.info("Batch inbox matching completed: %s", result.to_dict(), extra={"tenant_id": tenant_id})
        return result

    async def handle_bidirectional_matching(self, tenant_id: int, transaction_ids: list[int]) -> MatchingJobResult:
        result = MatchingJobResult()
        touched: set[int] = set()
        logger.info(
            "Starting bidirectional matching for %d transactions", len(transaction_ids), extra={"tenant_id": tenant_id}
        )

        # Phase 1: transaction -> pending inbox items
        for transaction_id in transaction_ids:
            try:
                outcome = await self.orchestrator.process_transaction_matching(tenant_id, transaction_id)
            except Exception:
                logger.exception(
                    "Error in transaction matching", extra={"tenant_id": tenant_id, "transaction_id": transaction_id}
                )
                result.record_failure()
                continue
            result.record(outcome)
            if outcome.matched and outcome.inbox_id is not None:
                touched.add(outcome.inbox_id)

        # Phase 2: remaining pending inbox items -> payments
        try:
            pending = await self.store.list_pending_inbox_ids(tenant_id=tenant_id, limit=self.bidirectional_pending_limit)
        except Exception:
            logger.exception("Error loading pending inbox items", extra={"tenant_id": tenant_id})
            result.errors += 1
        else:
            remaining = [inbox_id for inbox_id in pending if inbox_id not in touched]
            if remaining:
                logger.info("Matching %d pending inbox items", len(remaining), extra={"tenant_id": tenant_id})
                await self._run_inbox_windows(tenant_id, remaining, self.reverse_batch_size, result)

        self.refresher.schedule(tenant_id)
        logger.info("Bidirectional matching completed: %s", result.to_dict(), extra={"tenant_id": tenant_id})
        return result

    async def smart_matching(
        self,
        tenant_id: int,
        *,
        inbox_ids: list[int] | None = None,
        transaction_ids: list[int] | None = None,
    ) -> MatchingJobResult:
        if inbox_ids:
            return await self.handle_batch_inbox_matching(tenant_id, inbox_ids)
        if transaction_ids:
            return await self.handle_bidirectional_matching(tenant_id, transaction_ids)

        pending = await self.store.list_pending_inbox_ids(tenant_id=tenant_id, limit=self.smart_pending_limit)
        if not pending:
            return MatchingJobResult()
        return await self.handle_batch_inbox_matching(tenant_id, pending)
