"""
Plan catalog: tier allotments, feature flags, pricing and scan packs.

The provider price IDs let the webhook reconciler infer a tier or a scan
pack when checkout metadata is incomplete.
"""
from typing import Dict, List, Optional

from bidpeek.core.config import Tier, BillingInterval


# Allotment sentinel for tiers that skip counting entirely
UNLIMITED_SCANS = -1


PLAN_TEMPLATES: Dict[Tier, dict] = {
    Tier.FREE: {
        "name": "Basic Explorer",
        "description": "Try all search types with 3 scans",
        "monthly_scans": 3,
        "pricing": {"monthly": 0, "yearly": 0},
        "price_ids": {},
        "features": {
            "has_advanced_search": False,
            "can_save_searches": False,
            "max_saved_searches": 0,
            "has_full_market_data": False,
            "sold_data_days": 90,
            "has_analytics": False,
            "has_market_trends": False,
            "has_priority_support": False,
            "show_ads": True,
        },
    },
    Tier.HOBBY: {
        "name": "Casual Flipper",
        "description": "Perfect for weekend resellers",
        "monthly_scans": 25,
        "pricing": {"monthly": 3.99, "yearly": 39.99},
        "price_ids": {
            BillingInterval.MONTHLY: "price_1RWQvGR96MkVj8srDUEE5JJA",
            BillingInterval.YEARLY: "price_1RWQvNR96MkVj8srTLZz6OEM",
        },
        "features": {
            "has_advanced_search": True,
            "can_save_searches": True,
            "max_saved_searches": 10,
            "has_full_market_data": True,
            "sold_data_days": 90,
            "has_analytics": False,
            "has_market_trends": False,
            "has_priority_support": False,
            "show_ads": False,
        },
    },
    Tier.PRO: {
        "name": "Serious Reseller",
        "description": "For dedicated resellers and small businesses",
        "monthly_scans": 100,
        "pricing": {"monthly": 7.99, "yearly": 79.99},
        "price_ids": {
            BillingInterval.MONTHLY: "price_1RWQvYR96MkVj8srXJdwKnPi",
            BillingInterval.YEARLY: "price_1RWQvYR96MkVj8sr1HUyp8ac",
        },
        "features": {
            "has_advanced_search": True,
            "can_save_searches": True,
            "max_saved_searches": -1,
            "has_full_market_data": True,
            "sold_data_days": 90,
            "has_analytics": True,
            "has_market_trends": True,
            "has_priority_support": False,
            "show_ads": False,
        },
    },
    Tier.BUSINESS: {
        "name": "Power Seller",
        "description": "For high-volume sellers and businesses",
        "monthly_scans": 100,
        "pricing": {"monthly": 15.99, "yearly": 159.99},
        "price_ids": {
            BillingInterval.MONTHLY: "price_1RWQvhR96MkVj8srXAHJNEZy",
            BillingInterval.YEARLY: "price_1RWQvhR96MkVj8srkeR7Ssad",
        },
        "features": {
            "has_advanced_search": True,
            "can_save_searches": True,
            "max_saved_searches": -1,
            "has_full_market_data": True,
            "sold_data_days": 90,
            "has_analytics": True,
            "has_market_trends": True,
            "has_priority_support": True,
            "show_ads": False,
        },
    },
    Tier.UNLIMITED: {
        "name": "Enterprise Pro",
        "description": "Unlimited scanning for serious businesses",
        "monthly_scans": UNLIMITED_SCANS,
        "pricing": {"monthly": 29.99, "yearly": 299.99},
        "price_ids": {
            BillingInterval.MONTHLY: "price_1RWQvqR96MkVj8srneZ54nI0",
            BillingInterval.YEARLY: "price_1RWQvrR96MkVj8srF4Lm2WOv",
        },
        "features": {
            "has_advanced_search": True,
            "can_save_searches": True,
            "max_saved_searches": -1,
            "has_full_market_data": True,
            "sold_data_days": 90,
            "has_analytics": True,
            "has_market_trends": True,
            "has_priority_support": True,
            "show_ads": False,
        },
    },
}


SCAN_PACKS: List[dict] = [
    {"id": "pack_10", "name": "10 Quick Scans", "scan_count": 10, "price": 2.99,
     "price_id": "price_1RWQwCR96MkVj8srBq1EJCny"},
    {"id": "pack_30", "name": "30 Scan Boost", "scan_count": 30, "price": 7.99,
     "price_id": "price_1RWQwHR96MkVj8srQFpc8eNu"},
    {"id": "pack_75", "name": "75 Scan Bundle", "scan_count": 75, "price": 15.99,
     "price_id": "price_1RWQwQR96MkVj8srK6xuy1ih"},
]


def base_allotment(tier: Tier) -> Optional[int]:
    """Monthly base scans for a tier, or None when the tier is unlimited."""
    scans = PLAN_TEMPLATES[tier]["monthly_scans"]
    return None if scans == UNLIMITED_SCANS else scans


def is_unlimited(tier: Tier) -> bool:
    return PLAN_TEMPLATES[tier]["monthly_scans"] == UNLIMITED_SCANS


def display_name(tier: Tier) -> str:
    return tier.value.capitalize()


def get_feature_flags(tier: Tier) -> dict:
    """Feature flags for a tier (copy, safe to mutate)."""
    return dict(PLAN_TEMPLATES[tier]["features"])


def tier_for_price_id(price_id: str) -> Optional[Tier]:
    """Find the tier whose monthly or yearly price matches."""
    if not price_id:
        return None
    for tier, plan in PLAN_TEMPLATES.items():
        if price_id in plan["price_ids"].values():
            return tier
    return None


def interval_for_price_id(price_id: str) -> Optional[BillingInterval]:
    if not price_id:
        return None
    for plan in PLAN_TEMPLATES.values():
        for interval, candidate in plan["price_ids"].items():
            if candidate == price_id:
                return interval
    return None


def get_scan_pack(pack_id: str = None, price_id: str = None) -> Optional[dict]:
    """Look up a scan pack by its ID or provider price ID."""
    for pack in SCAN_PACKS:
        if pack_id and pack["id"] == pack_id:
            return pack
        if price_id and pack["price_id"] == price_id:
            return pack
    return None


def get_catalog() -> dict:
    """Serializable plan catalog for API responses."""
    return {
        "plans": [
            {
                "tier": tier.value,
                "name": plan["name"],
                "description": plan["description"],
                "monthly_scans": plan["monthly_scans"],
                "pricing": plan["pricing"],
                "price_ids": {interval.value: price for interval, price in plan["price_ids"].items()},
                "features": dict(plan["features"]),
            }
            for tier, plan in PLAN_TEMPLATES.items()
        ],
        "scan_packs": [dict(pack) for pack in SCAN_PACKS],
    }
