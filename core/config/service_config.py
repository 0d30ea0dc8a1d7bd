#!/usr/bin/env python3
"""Service configuration for peer services

Peer services the delivery service calls synchronously over HTTP.
"""
import os
from dataclasses import dataclass


@dataclass
class ServiceConfig:
    """Peer service endpoints"""

    # Resolves a user id to an actor role (driver/admin)
    identity_service_url: str = "http://localhost:8202"

    # Latest known driver coordinates
    location_service_url: str = "http://localhost:8224"

    @classmethod
    def from_env(cls) -> 'ServiceConfig':
        """Load service configuration from environment variables"""
        return cls(
            identity_service_url=os.getenv("IDENTITY_SERVICE_URL") or os.getenv("ACCOUNT_SERVICE_URL", "http://localhost:8202"),
            location_service_url=os.getenv("LOCATION_SERVICE_URL", "http://localhost:8224"),
        )
