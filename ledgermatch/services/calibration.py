"""Per-tenant threshold calibration driven by review feedback."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from ledgermatch.models.models import utcnow
from ledgermatch.models.records import FeedbackSummary, TenantCalibration
from ledgermatch.services.store import MatchingStore

logger = logging.getLogger(__name__)

DEFAULT_SUGGESTED_THRESHOLD = 0.6
DEFAULT_AUTO_THRESHOLD = 0.9
DEFAULT_HIGH_CONFIDENCE_THRESHOLD = 0.72

MAX_ADJUSTMENT = 0.03
MIN_SAMPLES_FOR_CALIBRATION = 5
MIN_SAMPLES_CONSERVATIVE = 8
LOOKBACK_DAYS = 90

MIN_SUGGESTED_THRESHOLD = 0.55
MAX_SUGGESTED_THRESHOLD = 0.85
MIN_AUTO_THRESHOLD = 0.85
MAX_AUTO_THRESHOLD = 0.95
RELAXED_AUTO_THRESHOLD = 0.88

# high-confidence sits this far from suggested towards auto
HIGH_CONFIDENCE_POSITION = 0.4


@dataclass(frozen=True)
class CalibratedThresholds:
    suggested: float
    auto: float
    high_confidence: float


def default_calibration(tenant_id: int) -> TenantCalibration:
    return TenantCalibration(
        tenant_id=tenant_id,
        calibrated_suggested_threshold=DEFAULT_SUGGESTED_THRESHOLD,
        calibrated_auto_threshold=DEFAULT_AUTO_THRESHOLD,
        calibrated_high_confidence_threshold=DEFAULT_HIGH_CONFIDENCE_THRESHOLD,
        last_calibrated_at=utcnow(),
    )


def _nudge(value: float, delta: float) -> float:
    return max(MIN_SUGGESTED_THRESHOLD, min(MAX_SUGGESTED_THRESHOLD, value + delta))


def compute_thresholds(feedback: FeedbackSummary) -> CalibratedThresholds:
    suggested = DEFAULT_SUGGESTED_THRESHOLD
    auto = DEFAULT_AUTO_THRESHOLD

    accuracy = feedback.accuracy
    confirmed = feedback.confirmed
    negative = feedback.negative
    gap = feedback.confidence_gap

    # acceptance rate
    if accuracy > 0.9 and confirmed >= MIN_SAMPLES_CONSERVATIVE:
        suggested = _nudge(suggested, -MAX_ADJUSTMENT)
    elif accuracy > 0.8 and confirmed >= MIN_SAMPLES_FOR_CALIBRATION:
        suggested = _nudge(suggested, -MAX_ADJUSTMENT * 0.66)
    elif accuracy < 0.3 and negative >= MIN_SAMPLES_FOR_CALIBRATION:
        suggested = _nudge(suggested, MAX_ADJUSTMENT)

    # separation between confirmed and rejected confidences
    if gap > 0.2:
        suggested = _nudge(suggested, -MAX_ADJUSTMENT * 0.5)
    elif gap < 0.08 and feedback.total > 10:
        suggested = _nudge(suggested, MAX_ADJUSTMENT * 0.5)

    # volume
    if confirmed > 25 and accuracy > 0.8:
        suggested = _nudge(suggested, -MAX_ADJUSTMENT * 0.33)
    if negative > 20 and accuracy < 0.7:
        suggested = _nudge(suggested, MAX_ADJUSTMENT * 0.5)

    if accuracy > 0.95 and confirmed >= 15:
        auto = max(MIN_AUTO_THRESHOLD, RELAXED_AUTO_THRESHOLD)
    auto = max(MIN_AUTO_THRESHOLD, min(MAX_AUTO_THRESHOLD, auto))

    high_confidence = suggested + (auto - suggested) * HIGH_CONFIDENCE_POSITION

    return CalibratedThresholds(
        suggested=round(suggested, 3),
        auto=round(auto, 3),
        high_confidence=round(high_confidence, 3),
    )


class CalibrationStore:
    def __init__(self, store: MatchingStore) -> None:
        self.store = store

    async def get_calibration(self, tenant_id: int) -> TenantCalibration:
        try:
            row = await self.store.get_calibration(tenant_id=tenant_id)
        except Exception:
            logger.exception("Error getting calibration, using defaults", extra={"tenant_id": tenant_id})
            return default_calibration(tenant_id)
        return row if row is not None else default_calibration(tenant_id)

    async def update_calibration(self, tenant_id: int) -> TenantCalibration:
        since = utcnow() - timedelta(days=LOOKBACK_DAYS)
        feedback = await self.store.feedback_summary(tenant_id=tenant_id, since=since)

        if feedback.total < MIN_SAMPLES_FOR_CALIBRATION:
            logger.info(
                "Not enough samples for calibration (%d)",
                feedback.total,
                extra={"tenant_id": tenant_id},
            )
            return await self.get_calibration(tenant_id)

        thresholds = compute_thresholds(feedback)
        calibration = TenantCalibration(
            tenant_id=tenant_id,
            calibrated_suggested_threshold=thresholds.suggested,
            calibrated_auto_threshold=thresholds.auto,
            calibrated_high_confidence_threshold=thresholds.high_confidence,
            total_suggestions=feedback.total,
            confirmed_suggestions=feedback.confirmed,
            declined_suggestions=feedback.declined,
            unmatched_suggestions=feedback.unmatched,
            suggested_match_accuracy=feedback.accuracy,
            avg_confidence_confirmed=feedback.avg_confidence_confirmed,
            avg_confidence_declined=feedback.avg_confidence_declined,
            avg_confidence_unmatched=feedback.avg_confidence_unmatched,
            last_calibrated_at=utcnow(),
        )
        await self.store.save_calibration(calibration)

        logger.info(
            "Calibration updated: accuracy=%.3f suggested=%.3f auto=%.3f",
            feedback.accuracy,
            thresholds.suggested,
            thresholds.auto,
            extra={"tenant_id": tenant_id},
        )
        return calibration

    async def reset_calibration(self, tenant_id: int) -> None:
        await self.store.delete_calibration(tenant_id=tenant_id)
        logger.info("Calibration reset to defaults", extra={"tenant_id": tenant_id})


class CalibrationRefresher:
    """Schedules calibration updates as detached tasks.

    Callers never wait on, or see errors from, a scheduled refresh; failures are logged.
    References are held until each task finishes so the loop cannot drop them.
    """

    def __init__(self, calibration: CalibrationStore) -> None:
        self.calibration = calibration
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, tenant_id: int) -> asyncio.Task:
        task = asyncio.create_task(self._run(tenant_id), name=f"calibration-refresh-{tenant_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, tenant_id: int) -> None:
        try:
            await self.calibration.update_calibration(tenant_id)
        except Exception:
            logger.exception("Failed to update calibration after matching", extra={"tenant_id": tenant_id})

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
