from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, field_validator

DEVICE_HASH_MIN_LENGTH = 64
DEVICE_HASH_MAX_LENGTH = 255


def validate_device_hash(device_hash: str) -> str:
    """Device fingerprints are opaque, but must be long enough to be unguessable."""
    device_hash = device_hash.strip()
    if len(device_hash) < DEVICE_HASH_MIN_LENGTH:
        raise ValueError(
            f"device_hash must be at least {DEVICE_HASH_MIN_LENGTH} characters long"
        )
    if len(device_hash) > DEVICE_HASH_MAX_LENGTH:
        raise ValueError(
            f"device_hash must be at most {DEVICE_HASH_MAX_LENGTH} characters long"
        )
    return device_hash


class DeviceRegisterRequest(BaseModel):
    email: EmailStr
    device_hash: str

    @field_validator("device_hash")
    @classmethod
    def validate_device_hash(cls, v: str) -> str:
        return validate_device_hash(v)


class FeaturesResponse(BaseModel):
    max_cameras: int
    pdf_export: bool
    fps_limit: int
    cloud_backup: bool


class DeviceRegisterResponse(BaseModel):
    success: bool = True
    license_status: str
    trial_started_at: Optional[datetime] = None
    trial_expires_at: Optional[datetime] = None
    days_left: Optional[int] = None
    plan: Optional[str] = None
    features: FeaturesResponse
    lease_token: str


class LicenseStatusResponse(BaseModel):
    status: str
    state: str
    plan: Optional[str] = None
    features: FeaturesResponse
    expires_at: Optional[datetime] = None
    days_left: Optional[int] = None
    entitled: bool
    lease_token: str
