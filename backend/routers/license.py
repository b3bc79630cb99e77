"""License status endpoint for clients holding a lease token."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from models.device import Device
from schemas.license import LicenseStatusResponse
from services.lease_tokens import create_lease_token, get_current_device
from services.license_service import LicenseService

router = APIRouter()


@router.get("/status", response_model=LicenseStatusResponse)
def license_status(
    device: Device = Depends(get_current_device),
    db: Session = Depends(get_db),
):
    """
    Current license for the authenticated device, with a refreshed lease token.

    Headers: Authorization: Bearer <lease_token>, X-Device-Id: <device_hash>
    Raises: 401 if the token is missing, invalid or expired, 400 if
    X-Device-Id is missing, 403 if the token belongs to another device
    """
    service = LicenseService(db)
    snapshot = service.evaluate_device(device)
    lease_token = create_lease_token(device.id, snapshot.status.value, snapshot.expires_at)
    service.touch_device(device)

    return LicenseStatusResponse(
        status=snapshot.status.value,
        state=snapshot.state.value,
        plan=snapshot.plan.value if snapshot.plan else None,
        features=snapshot.features.to_dict(),
        expires_at=snapshot.expires_at,
        days_left=snapshot.days_left,
        entitled=snapshot.entitled,
        lease_token=lease_token,
    )
