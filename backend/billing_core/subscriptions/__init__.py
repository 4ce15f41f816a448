"""
Subscription reconciliation: canonical events, the state machine, the
ledger and the services that drive them.
"""

from .events import CanonicalEvent, CanonicalEventType
from .followups import FollowUpQueue
from .ledger import SubscriptionLedger
from .locks import KeyedLock
from .notifications import FireAndForgetNotifier, LoggingUsageTracker, UsageTracker
from .reconciler import ApplyOutcome, ReconcileResult, SubscriptionReconciler
from .service import SubscriptionService
from .state_machine import SubscriptionSnapshot, SubscriptionStateMachine, Transition
from .sweeper import ExpirySweeper, SweepReport
from .verifier import ReceiptVerifier, VerifiedReceipt, WebhookVerifier
from .webhooks import WebhookProcessor, WebhookResult

__all__ = [
    "CanonicalEvent",
    "CanonicalEventType",
    "FollowUpQueue",
    "SubscriptionLedger",
    "KeyedLock",
    "FireAndForgetNotifier",
    "LoggingUsageTracker",
    "UsageTracker",
    "ApplyOutcome",
    "ReconcileResult",
    "SubscriptionReconciler",
    "SubscriptionService",
    "SubscriptionSnapshot",
    "SubscriptionStateMachine",
    "Transition",
    "ExpirySweeper",
    "SweepReport",
    "ReceiptVerifier",
    "VerifiedReceipt",
    "WebhookVerifier",
    "WebhookProcessor",
    "WebhookResult",
]
