from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ledgermatch.api.deps import get_components
from ledgermatch.schemas.matching import (
    BatchMatchingRequest,
    BidirectionalMatchingRequest,
    InboxMatchOut,
    MatchingJobOut,
    MatchResultOut,
    SmartMatchingRequest,
    TransactionMatchOut,
)
from ledgermatch.services.container import MatchingComponents

router = APIRouter(prefix="/tenants/{tenant_id}/matching", tags=["matching"])


@router.post("/inbox/{inbox_id}", response_model=InboxMatchOut, status_code=status.HTTP_200_OK)
async def match_inbox(tenant_id: int, inbox_id: int, components: MatchingComponents = Depends(get_components)):
    outcome = await components.orchestrator.process_inbox_matching(tenant_id, inbox_id)
    return InboxMatchOut.model_validate(outcome)


@router.get("/inbox/{inbox_id}/candidates", response_model=list[MatchResultOut])
async def inbox_candidates(tenant_id: int, inbox_id: int, components: MatchingComponents = Depends(get_components)):
    results = await components.orchestrator.find_matches_for_inbox(tenant_id, inbox_id)
    return [MatchResultOut.model_validate(r) for r in results]


@router.post("/transactions/{transaction_id}", response_model=TransactionMatchOut, status_code=status.HTTP_200_OK)
async def match_transaction(
    tenant_id: int, transaction_id: int, components: MatchingComponents = Depends(get_components)
):
    outcome = await components.orchestrator.process_transaction_matching(tenant_id, transaction_id)
    return TransactionMatchOut.model_validate(outcome)


@router.post("/batch", response_model=MatchingJobOut)
async def batch_matching(
    tenant_id: int, payload: BatchMatchingRequest, components: MatchingComponents = Depends(get_components)
):
    result = await components.jobs.handle_batch_inbox_matching(tenant_id, payload.inbox_ids)
    return MatchingJobOut.model_validate(result)


@router.post("/bidirectional", response_model=MatchingJobOut)
async def bidirectional_matching(
    tenant_id: int, payload: BidirectionalMatchingRequest, components: MatchingComponents = Depends(get_components)
):
    result = await components.jobs.handle_bidirectional_matching(tenant_id, payload.transaction_ids)
    return MatchingJobOut.model_validate(result)


@router.post("/smart", response_model=MatchingJobOut)
async def smart_matching(
    tenant_id: int,
    payload: SmartMatchingRequest | None = None,
    components: MatchingComponents = Depends(get_components),
):
    req = payload or SmartMatchingRequest()
    result = await components.jobs.smart_matching(
        tenant_id, inbox_ids=req.inbox_ids, transaction_ids=req.transaction_ids
    )
    return MatchingJobOut.model_validate(result)
