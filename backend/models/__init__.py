from models.abuse import DeviceCreationLimit, IdentifierType, RiskEvent, RiskEventType
from models.app_version import AppVersion, Arch, Channel, Platform
from models.billing import Plan, PlanName, Subscription, SubscriptionStatus, WebhookEvent
from models.device import Device, DeviceUser
from models.user import User

__all__ = [
    "AppVersion",
    "Arch",
    "Channel",
    "Device",
    "DeviceCreationLimit",
    "DeviceUser",
    "IdentifierType",
    "Plan",
    "PlanName",
    "Platform",
    "RiskEvent",
    "RiskEventType",
    "Subscription",
    "SubscriptionStatus",
    "User",
    "WebhookEvent",
]
