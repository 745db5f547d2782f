from .api_client import EntitlementApiClient, ServerEvent
from .change_listener import SubscriptionChangeListener
from .context import EntitlementContext, EntitlementSession
from .gate import EntitlementGate
from .service import EntitlementService
from .verifier import SubscriptionVerifier

__all__ = [
    "EntitlementApiClient",
    "EntitlementContext",
    "EntitlementGate",
    "EntitlementService",
    "EntitlementSession",
    "ServerEvent",
    "SubscriptionChangeListener",
    "SubscriptionVerifier",
]
