from __future__ import annotations

from datetime import datetime
from enum import Enum

import strawberry
from fastapi import Depends
from strawberry.fastapi import BaseContext, GraphQLRouter
from strawberry.types import Info

from ledgermatch.api.deps import get_components
from ledgermatch.models.records import TenantCalibration
from ledgermatch.services.container import MatchingComponents
from ledgermatch.services.jobs import MatchingJobResult
from ledgermatch.services.scoring import MatchResult


# ---------------------------
# GraphQL context (per request)
# ---------------------------

class Context(BaseContext):
    def __init__(self, components: MatchingComponents) -> None:
        super().__init__()
        self.components = components


async def get_context(components: MatchingComponents = Depends(get_components)) -> Context:
    return Context(components)


# ---------------------------
# GraphQL Types
# ---------------------------

@strawberry.enum
class GMatchType(Enum):
    auto_matched = "auto_matched"
    high_confidence = "high_confidence"
    suggested = "suggested"


@strawberry.type
class CalibrationType:
    tenant_id: int
    suggested_threshold: float
    high_confidence_threshold: float
    auto_threshold: float
    total_suggestions: int
    confirmed_suggestions: int
    accuracy: float
    last_calibrated_at: datetime | None

    @classmethod
    def from_record(cls, c: TenantCalibration) -> CalibrationType:
        return cls(
            tenant_id=c.tenant_id,
            suggested_threshold=c.calibrated_suggested_threshold,
            high_confidence_threshold=c.calibrated_high_confidence_threshold,
            auto_threshold=c.calibrated_auto_threshold,
            total_suggestions=c.total_suggestions,
            confirmed_suggestions=c.confirmed_suggestions,
            accuracy=c.suggested_match_accuracy,
            last_calibrated_at=c.last_calibrated_at,
        )


@strawberry.type
class MatchResultType:
    inbox_id: int
    transaction_id: int
    confidence_score: float
    embedding_score: float
    amount_score: float
    currency_score: float
    date_score: float
    match_type: GMatchType
    tier: int
    merchant_pattern_eligible: bool
    reason: str | None

    @classmethod
    def from_result(cls, m: MatchResult) -> MatchResultType:
        return cls(
            inbox_id=m.inbox_id,
            transaction_id=m.transaction_id,
            confidence_score=m.confidence_score,
            embedding_score=m.embedding_score,
            amount_score=m.amount_score,
            currency_score=m.currency_score,
            date_score=m.date_score,
            match_type=GMatchType(m.match_type.value),
            tier=m.tier,
            merchant_pattern_eligible=m.merchant_pattern_eligible,
            reason=m.reason,
        )


@strawberry.type
class InboxMatchType:
    inbox_id: int
    matched: bool
    auto_matched: bool
    suggestion_id: int | None
    match: MatchResultType | None
    error: str | None


@strawberry.type
class MatchingJobType:
    processed: int
    auto_matched: int
    suggestions: int
    no_matches: int
    errors: int

    @classmethod
    def from_result(cls, r: MatchingJobResult) -> MatchingJobType:
        return cls(**r.to_dict())


# ---------------------------
# Query
# ---------------------------

@strawberry.type
class Query:
    @strawberry.field
    async def calibration(self, info: Info, tenant_id: int) -> CalibrationType:
        c = await info.context.components.calibration.get_calibration(tenant_id)
        return CalibrationType.from_record(c)


# ---------------------------
# Mutation
# ---------------------------

@strawberry.type
class Mutation:
    @strawberry.field
    async def match_inbox(self, info: Info, tenant_id: int, inbox_id: int) -> InboxMatchType:
        outcome = await info.context.components.orchestrator.process_inbox_matching(tenant_id, inbox_id)
        return InboxMatchType(
            inbox_id=outcome.inbox_id,
            matched=outcome.matched,
            auto_matched=outcome.auto_matched,
            suggestion_id=outcome.suggestion_id,
            match=MatchResultType.from_result(outcome.match) if outcome.match else None,
            error=outcome.error,
        )

    @strawberry.field
    async def smart_matching(
        self,
        info: Info,
        tenant_id: int,
        inbox_ids: list[int] | None = None,
        transaction_ids: list[int] | None = None,
    ) -> MatchingJobType:
        result = await info.context.components.jobs.smart_matching(
            tenant_id, inbox_ids=inbox_ids, transaction_ids=transaction_ids
        )
        return MatchingJobType.from_result(result)

    @strawberry.field
    async def recalibrate(self, info: Info, tenant_id: int) -> CalibrationType:
        c = await info.context.components.calibration.update_calibration(tenant_id)
        return CalibrationType.from_record(c)

    @strawberry.field
    async def reset_calibration(self, info: Info, tenant_id: int) -> CalibrationType:
        components = info.context.components
        await components.calibration.reset_calibration(tenant_id)
        return CalibrationType.from_record(await components.calibration.get_calibration(tenant_id))


schema = strawberry.Schema(query=Query, mutation=Mutation)
graphql_router = GraphQLRouter(schema, context_getter=get_context)
