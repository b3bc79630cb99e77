from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from config import ALGORITHM, LEASE_TOKEN_EXPIRE_HOURS, SECRET_KEY
from database import get_db
from models.device import Device

# Bearer scheme for Swagger UI integration; errors are raised below
bearer_scheme = HTTPBearer(auto_error=False)


def create_lease_token(
    device_id: int,
    license_status: str,
    expires_at: Optional[datetime] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed lease token the client presents on later status checks."""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(hours=LEASE_TOKEN_EXPIRE_HOURS)
    )
    to_encode = {
        "device_id": device_id,
        "license_status": license_status,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "exp": expire,
        "type": "lease",
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_lease_token(token: str) -> dict:
    """Decode and validate a lease token."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired lease token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if payload.get("type") != "lease" or payload.get("device_id") is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


def get_current_device(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_device_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Device:
    """Resolve the device from the lease token and check it against X-Device-Id."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_lease_token(credentials.credentials)

    if not x_device_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Device-Id header is required",
        )

    device = db.query(Device).filter(Device.id == payload["device_id"]).first()
    if device is None or device.device_hash != x_device_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Device ID mismatch",
        )

    return device
