from __future__ import annotations

from datetime import datetime

from ledgermatch.models.models import MatchType, SuggestionStatus
from ledgermatch.schemas.common import OrmBase


class SuggestionOut(OrmBase):
    id: int
    tenant_id: int
    inbox_id: int
    transaction_id: int
    confidence_score: float
    match_type: MatchType
    status: SuggestionStatus
    match_details: dict
    created_at: datetime | None = None
