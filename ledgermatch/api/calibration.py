from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ledgermatch.api.deps import get_components
from ledgermatch.schemas.calibration import CalibrationOut
from ledgermatch.services.container import MatchingComponents

router = APIRouter(prefix="/tenants/{tenant_id}/calibration", tags=["calibration"])


@router.get("", response_model=CalibrationOut)
async def get_calibration(tenant_id: int, components: MatchingComponents = Depends(get_components)):
    return CalibrationOut.model_validate(await components.calibration.get_calibration(tenant_id))


@router.post("", response_model=CalibrationOut)
async def recalibrate(tenant_id: int, components: MatchingComponents = Depends(get_components)):
    return CalibrationOut.model_validate(await components.calibration.update_calibration(tenant_id))


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def reset_calibration(tenant_id: int, components: MatchingComponents = Depends(get_components)):
    await components.calibration.reset_calibration(tenant_id)
