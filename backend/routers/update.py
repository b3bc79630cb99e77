"""Client update checks for devices holding a lease token."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from models.device import Device
from schemas.update import UpdateCheckRequest, UpdateCheckResponse
from services.lease_tokens import get_current_device
from services.update_service import UpdateService

router = APIRouter()


@router.post("/check", response_model=UpdateCheckResponse)
def check_for_update(
    request: UpdateCheckRequest,
    device: Device = Depends(get_current_device),
    db: Session = Depends(get_db),
):
    """
    Whether a newer build should be offered to the authenticated device.

    The rollout bucket comes from the authenticated device fingerprint, never
    from the request body.

    Raises: 401/400/403 as for /license/status, 409 if no active build exists
    or the client reports a build newer than any released one
    """
    result = UpdateService(db).check_for_update(
        device.device_hash,
        request.current_build,
        request.platform,
        channel=request.channel,
        arch=request.arch,
    )
    return UpdateCheckResponse(**result.to_dict())
