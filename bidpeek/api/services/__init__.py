# Services package
from .identity import IdentityResolver, Principal
from .scans import ScanLedgerService, ScanRecordResult
from .credits import CreditService
from .subscriptions import SubscriptionStore
from .entitlements import Entitlement, EntitlementsService, ScanDecision
from .reconciler import WebhookReconciler, WebhookResult

__all__ = [
    "IdentityResolver",
    "Principal",
    "ScanLedgerService",
    "ScanRecordResult",
    "CreditService",
    "SubscriptionStore",
    "Entitlement",
    "EntitlementsService",
    "ScanDecision",
    "WebhookReconciler",
    "WebhookResult",
]
