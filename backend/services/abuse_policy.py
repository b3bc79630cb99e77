"""Abuse mitigation policy: thresholds plus block-vs-detect enforcement modes."""

import enum
from dataclasses import dataclass

import config


class EnforcementMode(str, enum.Enum):
    """BLOCK refuses the operation; DETECT lets it through. Both record a risk event."""

    BLOCK = "block"
    DETECT = "detect"

    @classmethod
    def parse(cls, value: str) -> "EnforcementMode":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid enforcement mode {value!r}; expected 'block' or 'detect'"
            ) from None


@dataclass(frozen=True)
class AbusePolicy:
    default_max_devices_per_user: int = 2
    max_devices_per_ip_per_window: int = 5
    max_devices_per_user_per_window: int = 3
    churn_threshold: int = 5
    churn_window_minutes: int = 60
    rapid_creation_interval_seconds: int = 60
    device_cap_mode: EnforcementMode = EnforcementMode.BLOCK
    rate_limit_mode: EnforcementMode = EnforcementMode.BLOCK

    @classmethod
    def from_config(cls) -> "AbusePolicy":
        return cls(
            default_max_devices_per_user=config.DEFAULT_MAX_DEVICES_PER_USER,
            max_devices_per_ip_per_window=config.MAX_DEVICES_PER_IP_PER_24H,
            max_devices_per_user_per_window=config.MAX_DEVICES_PER_USER_PER_24H,
            churn_threshold=config.DEVICE_CHURN_THRESHOLD,
            churn_window_minutes=config.DEVICE_CHURN_WINDOW_MINUTES,
            rapid_creation_interval_seconds=config.RAPID_CREATION_INTERVAL_SECONDS,
            device_cap_mode=EnforcementMode.parse(config.DEVICE_CAP_MODE),
            rate_limit_mode=EnforcementMode.parse(config.RATE_LIMIT_MODE),
        )
