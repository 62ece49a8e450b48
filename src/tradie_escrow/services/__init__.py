"""Application services: use case orchestration."""

from tradie_escrow.services.escrow_orchestrator import EscrowOrchestrator
from tradie_escrow.services.marketplace_service import MarketplaceService
from tradie_escrow.services.notification_service import (
    HttpNotifier,
    LoggingNotifier,
    NotificationDispatcher,
    create_notifier,
)

__all__ = [
    "EscrowOrchestrator",
    "MarketplaceService",
    "HttpNotifier",
    "LoggingNotifier",
    "NotificationDispatcher",
    "create_notifier",
]
