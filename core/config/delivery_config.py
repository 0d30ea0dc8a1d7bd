#!/usr/bin/env python3
"""Delivery service main configuration

Combines all sub-configs and includes the delivery-specific dispatch settings.
"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .service_config import ServiceConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


# ===========================================
# Dispatch Configuration
# ===========================================

@dataclass
class DispatchConfig:
    """Assignment and auto-assign settings"""
    # Drivers at or above this many non-terminal deliveries are not eligible
    max_active_load: int = 5

    auto_assign_enabled: bool = False
    auto_assign_interval_seconds: float = 30.0
    auto_assign_batch_size: int = 100

    # Actor recorded on history events written by the dispatcher
    system_actor_id: str = "system-dispatcher"

    # Re-reads after losing a conditional write to a concurrent writer
    transition_retry_limit: int = 3

    @classmethod
    def from_env(cls) -> 'DispatchConfig':
        return cls(
            max_active_load=_int(os.getenv("DELIVERY_MAX_ACTIVE_LOAD", "5"), 5),
            auto_assign_enabled=_bool(os.getenv("DELIVERY_AUTO_ASSIGN_ENABLED", "false")),
            auto_assign_interval_seconds=_float(os.getenv("DELIVERY_AUTO_ASSIGN_INTERVAL", "30"), 30.0),
            auto_assign_batch_size=_int(os.getenv("DELIVERY_AUTO_ASSIGN_BATCH", "100"), 100),
            system_actor_id=os.getenv("DELIVERY_SYSTEM_ACTOR_ID", "system-dispatcher"),
            transition_retry_limit=_int(os.getenv("DELIVERY_TRANSITION_RETRY_LIMIT", "3"), 3),
        )


# ===========================================
# Main Delivery Configuration
# ===========================================

@dataclass
class DeliveryConfig:
    """Main delivery platform configuration with all sub-configs"""

    # Environment
    environment: str = "development"
    debug: bool = False

    # Service settings
    service_name: str = "delivery_service"
    service_host: str = "0.0.0.0"
    service_port: int = 8231

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)

    @classmethod
    def from_env(cls) -> 'DeliveryConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),

            service_name=os.getenv("SERVICE_NAME", "delivery_service"),
            service_host=os.getenv("HOST", "0.0.0.0"),
            service_port=_int(os.getenv("DELIVERY_SERVICE_PORT") or os.getenv("PORT", "8231"), 8231),

            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            services=ServiceConfig.from_env(),
            dispatch=DispatchConfig.from_env(),
        )
