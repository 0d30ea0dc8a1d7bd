"""
Delivery Repository

Data access layer for deliveries, drivers and delivery history using asyncpg.

Status changes are conditional writes (UPDATE ... WHERE status = expected)
committed in the same transaction as the history insert.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import InfraConfig
from .models import (
    Actor, Delivery, DeliveryCreateRequest, DeliveryStatus, Driver,
    DriverCreateRequest, DriverStatus, GeoPoint, HistoryEvent
)
from .protocols import DuplicateDriverError, DuplicateReferenceError
from .state_machine import IN_PROGRESS_STATUSES, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

SCHEMA = "delivery"

SCHEMA_DDL = f"""
CREATE SCHEMA IF NOT EXISTS {SCHEMA};

CREATE TABLE IF NOT EXISTS {SCHEMA}.drivers (
    driver_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    vehicle TEXT,
    phone TEXT,
    status TEXT NOT NULL DEFAULT 'offline',
    last_latitude DOUBLE PRECISION,
    last_longitude DOUBLE PRECISION,
    last_seen_at TIMESTAMPTZ,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    deactivation_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS {SCHEMA}.deliveries (
    delivery_id TEXT PRIMARY KEY,
    ref_no TEXT NOT NULL UNIQUE,
    customer_name TEXT NOT NULL,
    customer_phone TEXT,
    address TEXT NOT NULL,
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION,
    payment_type TEXT NOT NULL,
    amount_due NUMERIC(12, 2),
    kind TEXT NOT NULL DEFAULT 'outbound',
    priority TEXT NOT NULL DEFAULT 'normal',
    status TEXT NOT NULL DEFAULT 'pending',
    driver_id TEXT REFERENCES {SCHEMA}.drivers (driver_id),
    notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT pending_without_driver CHECK (status <> 'pending' OR driver_id IS NULL),
    CONSTRAINT dispatched_with_driver CHECK (status = 'pending' OR driver_id IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_deliveries_unassigned
    ON {SCHEMA}.deliveries (created_at, delivery_id)
    WHERE status = 'pending' AND driver_id IS NULL;

CREATE INDEX IF NOT EXISTS idx_deliveries_driver_status
    ON {SCHEMA}.deliveries (driver_id, status);

CREATE TABLE IF NOT EXISTS {SCHEMA}.delivery_history (
    event_id TEXT PRIMARY KEY,
    delivery_id TEXT NOT NULL REFERENCES {SCHEMA}.deliveries (delivery_id),
    ref_no TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    from_status TEXT NOT NULL,
    to_status TEXT NOT NULL,
    reason TEXT,
    actor_id TEXT NOT NULL,
    actor_role TEXT NOT NULL,
    driver_id TEXT,
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (delivery_id, sequence)
);
"""

_TERMINAL = [s.value for s in TERMINAL_STATUSES]
_IN_PROGRESS = [s.value for s in IN_PROGRESS_STATUSES]

# Connection failures worth retrying on startup
_TRANSIENT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.PostgresConnectionError,
)


def _geo(lat: Optional[float], lon: Optional[float]) -> Optional[GeoPoint]:
    if lat is None or lon is None:
        return None
    return GeoPoint(latitude=lat, longitude=lon)


class DeliveryRepository:
    """
    Repository for delivery data operations

    Owns an asyncpg pool created lazily by initialize().
    """

    def __init__(self, config: Optional[InfraConfig] = None, pool: Optional[asyncpg.Pool] = None):
        self.config = config or InfraConfig.from_env()
        self.schema = SCHEMA
        self._pool = pool
        logger.info(
            f"DeliveryRepository configured for {self.config.postgres_host}:"
            f"{self.config.postgres_port}/{self.config.postgres_db}"
        )

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        reraise=True
    )
    async def _create_pool(self) -> asyncpg.Pool:
        logger.info(f"Connecting to PostgreSQL at {self.config.postgres_host}:{self.config.postgres_port}")
        return await asyncpg.create_pool(
            host=self.config.postgres_host,
            port=self.config.postgres_port,
            user=self.config.postgres_user,
            password=self.config.postgres_password,
            database=self.config.postgres_db,
            min_size=self.config.postgres_pool_min,
            max_size=self.config.postgres_pool_max,
            timeout=30
        )

    async def initialize(self, create_schema: bool = True):
        """Create the pool and ensure the schema exists"""
        if self._pool is None:
            self._pool = await self._create_pool()
        if create_schema:
            await self.init_schema()

    async def init_schema(self):
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_DDL)
        logger.info(f"Schema '{self.schema}' ready")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("DeliveryRepository not initialized")
        return self._pool

    async def close(self):
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    # ==================== Deliveries ====================

    async def create_delivery(self, request: DeliveryCreateRequest) -> Delivery:
        """Insert a pending delivery"""
        delivery_id = f"dlv_{uuid.uuid4().hex[:12]}"
        now = datetime.now(timezone.utc)
        query = f'''
            INSERT INTO {self.schema}.deliveries (
                delivery_id, ref_no, customer_name, customer_phone, address,
                latitude, longitude, payment_type, amount_due, kind, priority,
                status, driver_id, notes, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, NULL, $13, $14, $14)
            RETURNING *
        '''
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    query,
                    delivery_id,
                    request.ref_no,
                    request.customer_name,
                    request.customer_phone,
                    request.address,
                    request.location.latitude if request.location else None,
                    request.location.longitude if request.location else None,
                    request.payment_type.value,
                    request.amount_due,
                    request.kind.value,
                    request.priority.value,
                    DeliveryStatus.PENDING.value,
                    request.notes,
                    now,
                )
            return self._row_to_delivery(row)
        except asyncpg.exceptions.UniqueViolationError:
            raise DuplicateReferenceError(request.ref_no)
        except Exception as e:
            logger.error(f"Failed to create delivery {request.ref_no}: {e}")
            raise

    async def get_delivery(self, delivery_id: str) -> Optional[Delivery]:
        query = f'SELECT * FROM {self.schema}.deliveries WHERE delivery_id = $1'
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, delivery_id)
        return self._row_to_delivery(row) if row else None

    async def get_delivery_by_ref(self, ref_no: str) -> Optional[Delivery]:
        query = f'SELECT * FROM {self.schema}.deliveries WHERE ref_no = $1'
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, ref_no)
        return self._row_to_delivery(row) if row else None

    async def list_deliveries(
        self,
        status: Optional[DeliveryStatus] = None,
        driver_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Delivery]:
        """List deliveries with filtering, newest first"""
        conditions = []
        params: List[Any] = []

        if status:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")

        if driver_id:
            params.append(driver_id)
            conditions.append(f"driver_id = ${len(params)}")

        where_clause = " AND ".join(conditions) if conditions else "TRUE"
        params.extend([limit, offset])
        query = f'''
            SELECT * FROM {self.schema}.deliveries
            WHERE {where_clause}
            ORDER BY created_at DESC, delivery_id DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
        '''

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_delivery(row) for row in rows]

    async def list_pending_unassigned(self, limit: Optional[int] = None) -> List[Delivery]:
        """Pending deliveries without a driver, oldest first"""
        query = f'''
            SELECT * FROM {self.schema}.deliveries
            WHERE status = $1 AND driver_id IS NULL
            ORDER BY created_at ASC, delivery_id ASC
        '''
        params: List[Any] = [DeliveryStatus.PENDING.value]
        if limit is not None:
            query += " LIMIT $2"
            params.append(limit)

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_delivery(row) for row in rows]

    async def apply_transition(
        self,
        delivery_id: str,
        expected_status: DeliveryStatus,
        new_status: DeliveryStatus,
        actor: Actor,
        reason: Optional[str] = None,
        driver_id: Optional[str] = None,
        location: Optional[GeoPoint] = None
    ) -> Optional[Tuple[Delivery, HistoryEvent]]:
        """
        Conditionally move a delivery from expected_status to new_status and
        append its history event, in one transaction.

        driver_id, when given, is written in the same statement. Returns None
        if the row is no longer in expected_status.
        """
        now = datetime.now(timezone.utc)
        update_query = f'''
            UPDATE {self.schema}.deliveries
            SET status = $3,
                driver_id = COALESCE($4, driver_id),
                updated_at = $5
            WHERE delivery_id = $1 AND status = $2
            RETURNING *
        '''
        sequence_query = f'''
            SELECT COALESCE(MAX(sequence), 0) + 1
            FROM {self.schema}.delivery_history
            WHERE delivery_id = $1
        '''
        insert_query = f'''
            INSERT INTO {self.schema}.delivery_history (
                event_id, delivery_id, ref_no, sequence, from_status, to_status,
                reason, actor_id, actor_role, driver_id, latitude, longitude, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            RETURNING *
        '''

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        update_query,
                        delivery_id,
                        expected_status.value,
                        new_status.value,
                        driver_id,
                        now,
                    )
                    if row is None:
                        return None

                    # The updated row stays locked until commit, so the
                    # sequence cannot be taken by a concurrent writer
                    sequence = await conn.fetchval(sequence_query, delivery_id)
                    event_row = await conn.fetchrow(
                        insert_query,
                        f"evt_{uuid.uuid4().hex}",
                        delivery_id,
                        row["ref_no"],
                        sequence,
                        expected_status.value,
                        new_status.value,
                        reason,
                        actor.actor_id,
                        actor.role.value,
                        row["driver_id"],
                        location.latitude if location else None,
                        location.longitude if location else None,
                        now,
                    )

            return self._row_to_delivery(row), self._row_to_history(event_row)

        except Exception as e:
            logger.error(f"Failed to apply transition on delivery {delivery_id}: {e}")
            raise

    async def get_history(self, delivery_id: str) -> List[HistoryEvent]:
        query = f'''
            SELECT * FROM {self.schema}.delivery_history
            WHERE delivery_id = $1
            ORDER BY sequence ASC
        '''
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, delivery_id)
        return [self._row_to_history(row) for row in rows]

    async def get_active_loads(self) -> Dict[str, int]:
        query = f'''
            SELECT driver_id, COUNT(*) AS active
            FROM {self.schema}.deliveries
            WHERE driver_id IS NOT NULL AND status <> ALL($1::text[])
            GROUP BY driver_id
        '''
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, _TERMINAL)
        return {row["driver_id"]: row["active"] for row in rows}

    async def count_in_progress(self, driver_id: str) -> int:
        query = f'''
            SELECT COUNT(*) FROM {self.schema}.deliveries
            WHERE driver_id = $1 AND status = ANY($2::text[])
        '''
        async with self.pool.acquire() as conn:
            return await conn.fetchval(query, driver_id, _IN_PROGRESS)

    # ==================== Drivers ====================

    async def create_driver(self, request: DriverCreateRequest) -> Driver:
        driver_id = f"drv_{uuid.uuid4().hex[:12]}"
        now = datetime.now(timezone.utc)
        query = f'''
            INSERT INTO {self.schema}.drivers (
                driver_id, user_id, name, vehicle, phone, status, is_active, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, TRUE, $7, $7)
            RETURNING *
        '''
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    query, driver_id, request.user_id, request.name,
                    request.vehicle, request.phone, DriverStatus.OFFLINE.value, now
                )
            return self._row_to_driver(row)
        except asyncpg.exceptions.UniqueViolationError:
            raise DuplicateDriverError(request.user_id)

    async def get_driver(self, driver_id: str) -> Optional[Driver]:
        query = f'SELECT * FROM {self.schema}.drivers WHERE driver_id = $1'
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, driver_id)
        return self._row_to_driver(row) if row else None

    async def get_driver_by_user(self, user_id: str) -> Optional[Driver]:
        query = f'SELECT * FROM {self.schema}.drivers WHERE user_id = $1'
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, user_id)
        return self._row_to_driver(row) if row else None

    async def list_drivers(
        self,
        status: Optional[DriverStatus] = None,
        active_only: bool = False
    ) -> List[Driver]:
        conditions = []
        params: List[Any] = []

        if status:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")
        if active_only:
            conditions.append("is_active")

        where_clause = " AND ".join(conditions) if conditions else "TRUE"
        query = f'''
            SELECT * FROM {self.schema}.drivers
            WHERE {where_clause}
            ORDER BY driver_id ASC
        '''
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_driver(row) for row in rows]

    async def update_driver_status(
        self,
        driver_id: str,
        status: DriverStatus,
        expected_status: Optional[DriverStatus] = None
    ) -> Optional[Driver]:
        """Returns None when the driver is unknown or no longer in expected_status"""
        query = f'''
            UPDATE {self.schema}.drivers
            SET status = $2, updated_at = $3
            WHERE driver_id = $1 AND ($4::text IS NULL OR status = $4)
            RETURNING *
        '''
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                driver_id,
                status.value,
                datetime.now(timezone.utc),
                expected_status.value if expected_status else None,
            )
        return self._row_to_driver(row) if row else None

    async def update_driver_location(
        self, driver_id: str, location: GeoPoint, seen_at: datetime
    ) -> Optional[Driver]:
        query = f'''
            UPDATE {self.schema}.drivers
            SET last_latitude = $2, last_longitude = $3, last_seen_at = $4, updated_at = $5
            WHERE driver_id = $1
            RETURNING *
        '''
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                query, driver_id, location.latitude, location.longitude,
                seen_at, datetime.now(timezone.utc)
            )
        return self._row_to_driver(row) if row else None

    async def deactivate_driver(self, driver_id: str, reason: str) -> Optional[Driver]:
        query = f'''
            UPDATE {self.schema}.drivers
            SET is_active = FALSE, deactivation_reason = $2, status = $3, updated_at = $4
            WHERE driver_id = $1
            RETURNING *
        '''
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                query, driver_id, reason, DriverStatus.OFFLINE.value, datetime.now(timezone.utc)
            )
        return self._row_to_driver(row) if row else None

    # ==================== Row mapping ====================

    def _row_to_delivery(self, row) -> Delivery:
        return Delivery(
            delivery_id=row["delivery_id"],
            ref_no=row["ref_no"],
            customer_name=row["customer_name"],
            customer_phone=row["customer_phone"],
            address=row["address"],
            location=_geo(row["latitude"], row["longitude"]),
            payment_type=row["payment_type"],
            amount_due=row["amount_due"],
            kind=row["kind"],
            priority=row["priority"],
            status=row["status"],
            driver_id=row["driver_id"],
            notes=row["notes"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_driver(self, row) -> Driver:
        return Driver(
            driver_id=row["driver_id"],
            user_id=row["user_id"],
            name=row["name"],
            vehicle=row["vehicle"],
            phone=row["phone"],
            status=row["status"],
            last_location=_geo(row["last_latitude"], row["last_longitude"]),
            last_seen_at=row["last_seen_at"],
            is_active=row["is_active"],
            deactivation_reason=row["deactivation_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_history(self, row) -> HistoryEvent:
        return HistoryEvent(
            event_id=row["event_id"],
            delivery_id=row["delivery_id"],
            ref_no=row["ref_no"],
            sequence=row["sequence"],
            from_status=row["from_status"],
            to_status=row["to_status"],
            reason=row["reason"],
            actor_id=row["actor_id"],
            actor_role=row["actor_role"],
            driver_id=row["driver_id"],
            location=_geo(row["latitude"], row["longitude"]),
            created_at=row["created_at"],
        )
