"""
Delivery Service Contracts

Data contracts for delivery_service testing.
"""

from .data_contract import (
    # Enums
    DeliveryStatusContract,
    DeliveryKindContract,
    PaymentTypeContract,
    DriverStatusContract,
    # Request Contracts
    DeliveryCreateRequestContract,
    TransitionRequestContract,
    DriverCreateRequestContract,
    # Response Contracts
    DeliveryContract,
    HistoryEventContract,
    AutoAssignResultContract,
    ErrorResponseContract,
    # Test Data Factory
    DeliveryTestDataFactory,
)

__all__ = [
    "DeliveryStatusContract",
    "DeliveryKindContract",
    "PaymentTypeContract",
    "DriverStatusContract",
    "DeliveryCreateRequestContract",
    "TransitionRequestContract",
    "DriverCreateRequestContract",
    "DeliveryContract",
    "HistoryEventContract",
    "AutoAssignResultContract",
    "ErrorResponseContract",
    "DeliveryTestDataFactory",
]
