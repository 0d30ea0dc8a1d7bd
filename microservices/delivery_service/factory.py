"""
Delivery Service Factory

Factory functions for creating service instances with real dependencies.
This is the ONLY place that imports I/O-dependent modules.

Usage:
    from .factory import create_delivery_service
    service = create_delivery_service(config, event_bus)
"""
from typing import Optional

from core.config import DeliveryConfig, get_settings

from .delivery_service import DeliveryService


def create_delivery_service(
    config: Optional[DeliveryConfig] = None,
    event_bus=None,
    repository=None,
    identity_client=None,
    location_client=None,
) -> DeliveryService:
    """
    Create DeliveryService with real dependencies.

    This function imports the real repository and HTTP clients (which have
    I/O dependencies). Use this in production, NOT in tests.

    Args:
        config: Delivery configuration (defaults to global settings)
        event_bus: Event bus for publishing events
        repository: Pre-built repository (a DeliveryRepository is created if omitted)
        identity_client: Account service client
        location_client: Location service client

    Returns:
        Configured DeliveryService instance
    """
    # Import real implementations here (not at module level)
    from .delivery_repository import DeliveryRepository
    from .clients import IdentityClient, LocationClient

    config = config or get_settings()

    if repository is None:
        repository = DeliveryRepository(config=config.infrastructure)
    if identity_client is None:
        identity_client = IdentityClient(base_url=config.services.identity_service_url)
    if location_client is None:
        location_client = LocationClient(base_url=config.services.location_service_url)

    return DeliveryService(
        repository=repository,
        event_bus=event_bus,
        identity_client=identity_client,
        location_client=location_client,
        dispatch=config.dispatch,
    )
