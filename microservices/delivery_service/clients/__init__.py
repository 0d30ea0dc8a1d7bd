"""
Delivery Service Clients Module

HTTP clients for synchronous communication with other services
"""

from .identity_client import IdentityClient
from .location_client import LocationClient

__all__ = [
    "IdentityClient",
    "LocationClient"
]
