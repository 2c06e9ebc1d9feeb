from __future__ import annotations

from datetime import datetime

from ledgermatch.schemas.common import OrmBase


class CalibrationOut(OrmBase):
    tenant_id: int
    calibrated_suggested_threshold: float
    calibrated_auto_threshold: float
    calibrated_high_confidence_threshold: float
    total_suggestions: int
    confirmed_suggestions: int
    declined_suggestions: int
    unmatched_suggestions: int
    suggested_match_accuracy: float
    avg_confidence_confirmed: float | None = None
    avg_confidence_declined: float | None = None
    avg_confidence_unmatched: float | None = None
    last_calibrated_at: datetime | None = None
