"""External integrations: Finix, the webhook queue and adjacent systems."""
from .finix_client import FinixClient, FinixError
from .listings import ListingStore
from .webhook_queue import WebhookQueue

__all__ = ["FinixClient", "FinixError", "ListingStore", "WebhookQueue"]
