"""FastAPI dependency injection providers.

The lifespan builds one ServiceContainer and stores it on ``app.state``;
these providers hand its services to route handlers via Depends().
"""

from __future__ import annotations

from fastapi import Depends, Request

from tradie_escrow.bootstrap import ServiceContainer
from tradie_escrow.config import Settings
from tradie_escrow.services import EscrowOrchestrator, MarketplaceService


def get_container(request: Request) -> ServiceContainer:
    """Provide the container built at startup."""
    return request.app.state.container


def get_orchestrator(
    container: ServiceContainer = Depends(get_container),
) -> EscrowOrchestrator:
    """Provide an EscrowOrchestrator for the current request."""
    return container.orchestrator()


def get_marketplace(
    container: ServiceContainer = Depends(get_container),
) -> MarketplaceService:
    """Provide a MarketplaceService for the current request."""
    return container.marketplace()


def get_app_settings(
    container: ServiceContainer = Depends(get_container),
) -> Settings:
    """Provide the settings the container was built with."""
    return container.settings
