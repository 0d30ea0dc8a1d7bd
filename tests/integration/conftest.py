#!/usr/bin/env python3
"""
Integration Test Configuration

Repository tests run against a real PostgreSQL. Connection settings come from
the usual POSTGRES_* variables; tests are skipped when the database cannot be
reached.
"""

import asyncio
import os
import sys

import asyncpg
import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))

from core.config import InfraConfig
from microservices.delivery_service.delivery_repository import DeliveryRepository


@pytest.fixture(scope="session")
def infra_config() -> InfraConfig:
    return InfraConfig.from_env()


@pytest_asyncio.fixture
async def delivery_repository(infra_config):
    """DeliveryRepository on a short-timeout pool; skips if PostgreSQL is down"""
    try:
        pool = await asyncpg.create_pool(
            dsn=infra_config.postgres_dsn,
            min_size=1,
            max_size=4,
            timeout=5,
        )
    except (OSError, asyncio.TimeoutError, asyncpg.exceptions.PostgresError) as e:
        pytest.skip(f"PostgreSQL not available: {e}")

    repository = DeliveryRepository(config=infra_config, pool=pool)
    await repository.initialize()
    yield repository
    await repository.close()
