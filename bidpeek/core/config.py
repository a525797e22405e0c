"""
Application configuration constants and enums.
"""
from enum import Enum
from typing import Optional


class Tier(str, Enum):
    """Subscription tiers, ordered from cheapest to most generous."""
    FREE = "free"
    HOBBY = "hobby"
    PRO = "pro"
    BUSINESS = "business"
    UNLIMITED = "unlimited"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class ActionKind(str, Enum):
    """Metered scan kinds. All kinds draw from the same allowance."""
    TEXT_SEARCH_CURRENT = "text_search_current"
    IMAGE_SEARCH_CURRENT = "image_search_current"
    TEXT_SEARCH_SOLD = "text_search_sold"


class BillingInterval(str, Enum):
    """Provider billing intervals."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PrincipalKind(str, Enum):
    """Kinds of canonical identity."""
    USER = "user"
    DEVICE = "device"


# Names used by older mobile clients
LEGACY_ACTION_KINDS = {
    "current_text": ActionKind.TEXT_SEARCH_CURRENT,
    "current_image": ActionKind.IMAGE_SEARCH_CURRENT,
    "sold_text": ActionKind.TEXT_SEARCH_SOLD,
}

TIER_RANK = {
    Tier.FREE: 0,
    Tier.HOBBY: 1,
    Tier.PRO: 2,
    Tier.BUSINESS: 3,
    Tier.UNLIMITED: 4,
}

# Provider subscription statuses mapped onto the local lifecycle
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def parse_action_kind(value: str) -> Optional[ActionKind]:
    """Parse an action kind, accepting legacy client names."""
    if value is None:
        return None
    value = str(value).strip().lower()
    if value in LEGACY_ACTION_KINDS:
        return LEGACY_ACTION_KINDS[value]
    try:
        return ActionKind(value)
    except ValueError:
        return None


def parse_tier(value: str) -> Optional[Tier]:
    """Parse a tier name, returning None for unknown values."""
    if not value:
        return None
    try:
        return Tier(str(value).strip().lower())
    except ValueError:
        return None
