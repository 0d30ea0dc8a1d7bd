"""
Delivery Service

Delivery lifecycle microservice for last-mile logistics.
Handles the delivery state machine, driver assignment and lifecycle events.

Port: 8231
"""

__version__ = "1.0.0"
__service_name__ = "delivery_service"
__service_port__ = 8231
