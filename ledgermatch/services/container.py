from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from ledgermatch.services.calibration import CalibrationRefresher, CalibrationStore
from ledgermatch.services.embeddings import EmbeddingClient, build_embedding_client
from ledgermatch.services.feedback import FeedbackService
from ledgermatch.services.jobs import BatchCoordinator
from ledgermatch.services.merchant_patterns import MerchantPatternService
from ledgermatch.services.orchestrator import MatchOrchestrator
from ledgermatch.services.retrieval import CandidateRetriever
from ledgermatch.services.scoring import ScoringEngine
from ledgermatch.services.store import MatchingStore, SqlMatchingStore


@dataclass
class MatchingComponents:
    """Process-wide matching services, built once at startup and passed by reference."""

    store: MatchingStore
    embeddings: EmbeddingClient
    calibration: CalibrationStore
    refresher: CalibrationRefresher
    orchestrator: MatchOrchestrator
    jobs: BatchCoordinator
    feedback: FeedbackService

    @classmethod
    def build(cls, store: MatchingStore, embeddings: EmbeddingClient, **job_options: int) -> MatchingComponents:
        calibration = CalibrationStore(store)
        refresher = CalibrationRefresher(calibration)
        orchestrator = MatchOrchestrator(
            store,
            embeddings,
            retriever=CandidateRetriever(store),
            scoring=ScoringEngine(store),
            calibration=calibration,
            patterns=MerchantPatternService(store),
        )
        return cls(
            store=store,
            embeddings=embeddings,
            calibration=calibration,
            refresher=refresher,
            orchestrator=orchestrator,
            jobs=BatchCoordinator(store, orchestrator, refresher, **job_options),
            feedback=FeedbackService(store, refresher),
        )

    async def aclose(self) -> None:
        await self.refresher.drain()


def build_components(engine: AsyncEngine) -> MatchingComponents:
    return MatchingComponents.build(SqlMatchingStore(engine), build_embedding_client())
