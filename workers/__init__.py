"""Background workers for async processing."""
from .outbox_publisher import start_outbox_publisher
from .transfer_sweep import start_transfer_sweep
from .webhook_worker import start_webhook_worker

__all__ = ["start_outbox_publisher", "start_transfer_sweep", "start_webhook_worker"]
