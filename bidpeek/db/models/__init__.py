# Database models
from .scan import ScanRecord
from .credit import CreditGrant
from .subscription import SubscriptionState
from .identity import DeviceLink
from .webhook_event import WebhookEvent

__all__ = [
    "ScanRecord",
    "CreditGrant",
    "SubscriptionState",
    "DeviceLink",
    "WebhookEvent",
]
