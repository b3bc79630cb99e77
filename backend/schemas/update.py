from typing import Optional

from pydantic import BaseModel, Field

from models.app_version import Arch, Channel, Platform


class UpdateCheckRequest(BaseModel):
    current_version: Optional[str] = Field(None, max_length=50)
    current_build: int = Field(..., ge=0)
    platform: Platform
    arch: Optional[Arch] = None
    channel: Channel = Channel.STABLE


class UpdateCheckResponse(BaseModel):
    update_available: bool
    mandatory: bool = False
    latest_version: Optional[str] = None
    build_number: Optional[int] = None
    min_supported_build: Optional[int] = None
    release_notes: Optional[str] = None
    download_url: Optional[str] = None
    message: Optional[str] = None
