"""
Client update checks.

All version decisions are made here from build numbers; the client only
reports what it runs. Rollout buckets are derived from the device
fingerprint so a device sees the same answer on every check.
"""

import hashlib
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from models.app_version import AppVersion, Arch, Channel, Platform
from services.exceptions import UpdateUnavailableError


logger = logging.getLogger(__name__)

UNSUPPORTED_MESSAGE = "Your version is no longer supported. Please update to continue."


@dataclass(frozen=True)
class UpdateCheckResult:
    update_available: bool
    mandatory: bool = False
    latest_version: Optional[str] = None
    build_number: Optional[int] = None
    min_supported_build: Optional[int] = None
    release_notes: Optional[str] = None
    download_url: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def rollout_bucket(device_hash: str) -> int:
    """Stable bucket in 1..100 for a device."""
    digest = hashlib.sha256(device_hash.encode()).hexdigest()
    return int(digest[:8], 16) % 100 + 1


def in_rollout(device_hash: str, rollout_percentage: int) -> bool:
    if rollout_percentage >= 100:
        return True
    if rollout_percentage <= 0:
        return False
    return rollout_bucket(device_hash) <= rollout_percentage


class UpdateService:
    """Answers "is there a newer build for me" for authenticated devices."""

    def __init__(self, db: Session):
        self.db = db

    def latest_version(
        self,
        platform: Platform,
        channel: Channel,
        arch: Optional[Arch] = None,
    ) -> Optional[AppVersion]:
        """Newest active build; universal builds match every arch."""
        query = self.db.query(AppVersion).filter(
            AppVersion.platform == platform,
            AppVersion.channel == channel,
            AppVersion.is_active.is_(True),
        )
        if arch is not None:
            query = query.filter(or_(AppVersion.arch == arch, AppVersion.arch.is_(None)))
        else:
            query = query.filter(AppVersion.arch.is_(None))

        return query.order_by(AppVersion.build_number.desc(), AppVersion.id.desc()).first()

    def check_for_update(
        self,
        device_hash: str,
        current_build: int,
        platform: Platform,
        channel: Channel = Channel.STABLE,
        arch: Optional[Arch] = None,
    ) -> UpdateCheckResult:
        """Decide whether this device should be offered the latest build.

        Raises:
            UpdateUnavailableError: no active build exists, or the client
                reports a build newer than any released one
        """
        latest = self.latest_version(platform, channel, arch)
        if latest is None:
            raise UpdateUnavailableError(
                "No active version available for this platform",
                details={"platform": platform.value, "channel": channel.value},
            )

        # Kill switch for old builds; ignores rollout
        if latest.min_supported_build is not None and current_build < latest.min_supported_build:
            logger.info(
                "unsupported client build",
                extra={"current_build": current_build, "min_build": latest.min_supported_build},
            )
            return UpdateCheckResult(
                update_available=True,
                mandatory=True,
                latest_version=latest.version,
                build_number=latest.build_number,
                min_supported_build=latest.min_supported_build,
                release_notes=latest.release_notes,
                download_url=latest.download_url,
                message=UNSUPPORTED_MESSAGE,
            )

        if current_build > latest.build_number:
            raise UpdateUnavailableError(
                "Client version is newer than any released version",
                details={"current_build": current_build, "latest_build": latest.build_number},
            )

        if current_build == latest.build_number:
            return UpdateCheckResult(update_available=False)

        if not in_rollout(device_hash, latest.rollout_percentage):
            return UpdateCheckResult(update_available=False)

        return UpdateCheckResult(
            update_available=True,
            mandatory=latest.is_mandatory,
            latest_version=latest.version,
            build_number=latest.build_number,
            release_notes=latest.release_notes,
            download_url=latest.download_url,
        )
