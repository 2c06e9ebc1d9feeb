from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ledgermatch.api.deps import get_components
from ledgermatch.schemas.suggestion import SuggestionOut
from ledgermatch.services.container import MatchingComponents
from ledgermatch.services.errors import InvalidFeedbackTransition, SuggestionNotFound

router = APIRouter(prefix="/tenants/{tenant_id}", tags=["feedback"])


@router.post("/suggestions/{suggestion_id}/confirm", response_model=SuggestionOut)
async def confirm_suggestion(tenant_id: int, suggestion_id: int, components: MatchingComponents = Depends(get_components)):
    try:
        return SuggestionOut.model_validate(await components.feedback.confirm(tenant_id, suggestion_id))
    except SuggestionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidFeedbackTransition as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/suggestions/{suggestion_id}/decline", response_model=SuggestionOut)
async def decline_suggestion(tenant_id: int, suggestion_id: int, components: MatchingComponents = Depends(get_components)):
    try:
        return SuggestionOut.model_validate(await components.feedback.decline(tenant_id, suggestion_id))
    except SuggestionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidFeedbackTransition as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/inbox/{inbox_id}/unmatch", response_model=SuggestionOut | None)
async def unmatch_inbox(tenant_id: int, inbox_id: int, components: MatchingComponents = Depends(get_components)):
    try:
        suggestion = await components.feedback.unmatch(tenant_id, inbox_id)
    except SuggestionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidFeedbackTransition as e:
        raise HTTPException(status_code=400, detail=str(e))
    if suggestion is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return SuggestionOut.model_validate(suggestion)
