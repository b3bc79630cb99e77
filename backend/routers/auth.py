"""Device registration endpoint."""

from fastapi import APIRouter, Depends, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

import config
from config import REGISTER_RATE_LIMIT
from database import get_db
from schemas.license import DeviceRegisterRequest, DeviceRegisterResponse
from services.lease_tokens import create_lease_token
from services.license_service import LicenseService


def get_client_ip(request: Request) -> str:
    """Client IP; the first X-Forwarded-For hop when TRUST_PROXY_HEADERS is on."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for and config.TRUST_PROXY_HEADERS:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    return get_remote_address(request)


limiter = Limiter(key_func=get_client_ip)
router = APIRouter()


@router.post("/register", response_model=DeviceRegisterResponse)
@limiter.limit(REGISTER_RATE_LIMIT)
def register(
    request: Request,
    payload: DeviceRegisterRequest,
    db: Session = Depends(get_db),
):
    """
    Register a device for a user and start the device's trial if eligible.

    Body: email, device_hash
    Returns: license status, trial dates, features and a lease token
    Raises: 409 if the user is at their device cap, 429 if too many devices
    were created recently, 422 if validation fails
    """
    result = LicenseService(db).register_device_user(
        payload.email,
        payload.device_hash,
        source_ip=get_client_ip(request),
    )
    snapshot = result.license

    return DeviceRegisterResponse(
        license_status=snapshot.status.value,
        trial_started_at=result.trial_started_at,
        trial_expires_at=result.trial_expires_at,
        days_left=snapshot.days_left,
        plan=snapshot.plan.value if snapshot.plan else None,
        features=snapshot.features.to_dict(),
        lease_token=create_lease_token(
            result.device_id, snapshot.status.value, snapshot.expires_at
        ),
    )
