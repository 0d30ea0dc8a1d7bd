#!/usr/bin/env python3
"""
Core Module for Microservices Architecture

Shared infrastructure components for the delivery platform services.

COMPONENTS:
    - config/: Dataclass configuration loaded from the environment
    - logger.py: Service logging setup
    - nats_client.py: NATS JetStream event bus
    - service_client_base.py: httpx base client for peer services
    - auth_dependencies.py: FastAPI caller identification
    - internal_service_auth.py: Service-to-service authentication headers

USAGE:
    from core.config import get_settings
    from core.nats_client import get_event_bus

    settings = get_settings()
    event_bus = await get_event_bus(settings.service_name)
"""

__version__ = "2.0.0"
