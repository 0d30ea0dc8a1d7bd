"""
Delivery Microservice

Responsibilities:
- Delivery intake and lifecycle transitions
- Manual and automatic driver assignment
- Driver availability and location
- Public tracking by reference number
- Lifecycle event publishing over NATS
"""

from fastapi import FastAPI, HTTPException, Depends, status, Query, Path, Body, Request
from fastapi.responses import JSONResponse
import asyncio
import asyncpg
import uvicorn
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from core.config import get_settings
from core.logger import setup_service_logger
from core.nats_client import get_event_bus
from core.auth_dependencies import AuthenticatedCaller, require_auth_or_internal_service

from .delivery_service import DeliveryService
from .events import get_event_handlers
from .factory import create_delivery_service
from .models import (
    Actor, AssignRequest, AutoAssignRequest, AutoAssignResult, Delivery,
    DeliveryCreateRequest, DeliveryHistoryResponse, DeliveryListResponse,
    DeliveryServiceStatus, DeliveryStatus, Driver, DriverCreateRequest,
    DriverDeactivateRequest, DriverListResponse, DriverLocationUpdateRequest,
    DriverStatus, DriverStatusUpdateRequest, GeoPoint, TrackingResponse,
    TransitionRequest
)
from .protocols import (
    DeliveryNotPendingError,
    DeliveryServiceError,
    DeliveryValidationError,
    DriverUnavailableError,
    InvalidTransitionError,
    MissingReasonError,
    NotFoundError,
    ServiceUnavailableError,
    TerminalStateError,
    UnauthorizedError,
)

# Initialize configuration
config = get_settings()

# Setup loggers (use actual service name)
logger = setup_service_logger(config.service_name, config.logging)


async def run_auto_assign_loop(service: DeliveryService, stop_event: asyncio.Event):
    """Periodic auto-assign until stop_event is set"""
    interval = config.dispatch.auto_assign_interval_seconds
    batch_size = config.dispatch.auto_assign_batch_size
    logger.info(f"Auto-assign loop started (every {interval}s, batch {batch_size})")

    while not stop_event.is_set():
        try:
            await service.auto_assign(limit=batch_size, stop_event=stop_event)
        except Exception as e:
            logger.error(f"Auto-assign batch failed: {e}", exc_info=True)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Auto-assign loop stopped")


class DeliveryMicroservice:
    """Delivery microservice core class"""

    def __init__(self):
        self.delivery_service: Optional[DeliveryService] = None
        self.event_bus = None
        self._stop_event: Optional[asyncio.Event] = None
        self._auto_assign_task: Optional[asyncio.Task] = None

    async def initialize(self, event_bus=None):
        """Initialize the microservice"""
        try:
            self.event_bus = event_bus
            self.delivery_service = create_delivery_service(config=config, event_bus=event_bus)
            await self.delivery_service.repository.initialize()
            logger.info("Delivery microservice initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize delivery microservice: {e}")
            raise

    def start_auto_assign(self):
        self._stop_event = asyncio.Event()
        self._auto_assign_task = asyncio.create_task(
            run_auto_assign_loop(self.delivery_service, self._stop_event)
        )

    async def shutdown(self):
        """Shutdown the microservice"""
        try:
            if self._auto_assign_task:
                # Lets the running batch finish its current delivery
                self._stop_event.set()
                try:
                    await asyncio.wait_for(self._auto_assign_task, timeout=10)
                except asyncio.TimeoutError:
                    self._auto_assign_task.cancel()
                    logger.warning("Auto-assign loop did not stop in time, cancelled")

            if self.delivery_service:
                for client in (self.delivery_service.identity_client, self.delivery_service.location_client):
                    if client is not None:
                        await client.close()
                await self.delivery_service.repository.close()

            if self.event_bus:
                await self.event_bus.close()
                logger.info("Event bus closed")
            logger.info("Delivery microservice shutdown completed")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")


# Global microservice instance
delivery_microservice = DeliveryMicroservice()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    # Initialize event bus
    event_bus = None
    try:
        event_bus = await get_event_bus(config.service_name, config.infrastructure)
        logger.info("✅ Event bus initialized successfully")
    except Exception as e:
        logger.warning(f"⚠️  Failed to initialize event bus: {e}. Continuing without event publishing.")
        event_bus = None

    # Initialize microservice with event bus
    await delivery_microservice.initialize(event_bus=event_bus)

    # Subscribe to events
    if event_bus:
        try:
            handlers = get_event_handlers(delivery_microservice.delivery_service)
            for pattern, handler in handlers.items():
                await event_bus.subscribe_to_events(
                    pattern=pattern,
                    handler=handler,
                    durable=f"delivery-{pattern.replace('.', '-')}-consumer"
                )
                logger.info(f"✅ Subscribed to {pattern} events")
        except Exception as e:
            logger.warning(f"⚠️  Failed to subscribe to events: {e}")

    if config.dispatch.auto_assign_enabled:
        delivery_microservice.start_auto_assign()

    yield

    # Cleanup
    await delivery_microservice.shutdown()


# Create FastAPI application
app = FastAPI(
    title="Delivery Service",
    description="Delivery lifecycle, driver assignment and tracking microservice",
    version="1.0.0",
    lifespan=lifespan
)

# CORS handled by Gateway


# Dependency injection
def get_delivery_service() -> DeliveryService:
    """Get delivery service instance"""
    if not delivery_microservice.delivery_service:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Delivery service not initialized"
        )
    return delivery_microservice.delivery_service


async def get_current_actor(
    caller: AuthenticatedCaller = Depends(require_auth_or_internal_service),
    delivery_service: DeliveryService = Depends(get_delivery_service)
) -> Actor:
    """Resolve the calling user to a driver or admin actor"""
    return await delivery_service.resolve_actor(
        caller.user_id, is_internal_service=caller.is_internal_service
    )


# ==================== Error Mapping ====================

ERROR_STATUS_CODES = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    TerminalStateError: status.HTTP_409_CONFLICT,
    DeliveryNotPendingError: status.HTTP_409_CONFLICT,
    DriverUnavailableError: status.HTTP_409_CONFLICT,
    MissingReasonError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UnauthorizedError: status.HTTP_403_FORBIDDEN,
    DeliveryValidationError: status.HTTP_400_BAD_REQUEST,
    ServiceUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(exc: DeliveryServiceError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(DeliveryServiceError)
async def delivery_error_handler(request: Request, exc: DeliveryServiceError):
    code = status_code_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=code,
        content={"detail": {"error_code": exc.error_code, "message": exc.message}}
    )


@app.exception_handler(asyncpg.exceptions.PostgresConnectionError)
@app.exception_handler(asyncpg.exceptions.InterfaceError)
@app.exception_handler(OSError)
async def infrastructure_error_handler(request: Request, exc: Exception):
    logger.error(f"{request.method} {request.url.path} infrastructure failure: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"error_code": "service_unavailable", "message": "Storage is unavailable"}}
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} unexpected error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": {"error_code": "internal_error", "message": str(exc)}}
    )


# ==================== Health ====================

@app.get("/health")
async def health_check():
    """Service health check"""
    return {
        "status": "healthy",
        "service": config.service_name,
        "port": config.service_port,
        "version": "1.0.0",
        "timestamp": datetime.utcnow().isoformat()
    }


@app.get("/health/detailed", response_model=DeliveryServiceStatus)
async def detailed_health_check(
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Detailed health check with database and event bus connectivity"""
    return await delivery_service.health_check()


# ==================== Deliveries ====================

@app.post("/api/v1/deliveries", response_model=Delivery)
async def create_delivery(
    request: DeliveryCreateRequest,
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Create a pending delivery (intake)"""
    return await delivery_service.create_delivery(request, actor)


@app.get("/api/v1/deliveries", response_model=DeliveryListResponse)
async def list_deliveries(
    status_filter: Optional[DeliveryStatus] = Query(None, alias="status", description="Filter by status"),
    driver_id: Optional[str] = Query(None, description="Filter by driver"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """List deliveries; drivers see only their own"""
    deliveries = await delivery_service.list_deliveries(
        status=status_filter, driver_id=driver_id, limit=limit, offset=offset, actor=actor
    )
    return DeliveryListResponse(deliveries=deliveries, count=len(deliveries), limit=limit, offset=offset)


@app.post("/api/v1/deliveries/auto-assign", response_model=AutoAssignResult)
async def auto_assign(
    request: Optional[AutoAssignRequest] = Body(None),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Assign pending deliveries to the least-loaded online drivers"""
    limit = request.limit if request else None
    return await delivery_service.auto_assign(limit=limit, actor=actor)


@app.get("/api/v1/deliveries/{delivery_id}", response_model=Delivery)
async def get_delivery(
    delivery_id: str = Path(..., description="Delivery ID"),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Get delivery details"""
    return await delivery_service.get_delivery(delivery_id, actor)


@app.get("/api/v1/deliveries/{delivery_id}/history", response_model=DeliveryHistoryResponse)
async def get_delivery_history(
    delivery_id: str = Path(..., description="Delivery ID"),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Lifecycle history in commit order"""
    events = await delivery_service.get_history(delivery_id, actor)
    return DeliveryHistoryResponse(delivery_id=delivery_id, events=events, count=len(events))


@app.post("/api/v1/deliveries/{delivery_id}/transitions", response_model=Delivery)
async def transition_delivery(
    delivery_id: str = Path(..., description="Delivery ID"),
    request: TransitionRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Request a status change"""
    return await delivery_service.transition(
        delivery_id,
        request.status,
        actor,
        reason=request.reason,
        driver_id=request.driver_id,
        location=request.location,
    )


@app.post("/api/v1/deliveries/{delivery_id}/assign", response_model=Delivery)
async def assign_delivery(
    delivery_id: str = Path(..., description="Delivery ID"),
    request: AssignRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Assign a pending delivery to a driver"""
    return await delivery_service.assign_manually(delivery_id, request.driver_id, actor)


# ==================== Tracking ====================

@app.get("/api/v1/tracking/{ref_no}", response_model=TrackingResponse)
async def track_delivery(
    ref_no: str = Path(..., description="Delivery reference number"),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Public tracking (no authentication, no customer contact data)"""
    return await delivery_service.track_delivery(ref_no)


# ==================== Drivers ====================

@app.post("/api/v1/drivers", response_model=Driver)
async def register_driver(
    request: DriverCreateRequest,
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Register a platform user as a driver"""
    return await delivery_service.register_driver(request, actor)


@app.get("/api/v1/drivers", response_model=DriverListResponse)
async def list_drivers(
    status_filter: Optional[DriverStatus] = Query(None, alias="status", description="Filter by availability"),
    active_only: bool = Query(False),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """List drivers"""
    drivers = await delivery_service.list_drivers(status=status_filter, active_only=active_only)
    return DriverListResponse(drivers=drivers, count=len(drivers))


@app.get("/api/v1/drivers/{driver_id}", response_model=Driver)
async def get_driver(
    driver_id: str = Path(..., description="Driver ID"),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Get driver details"""
    return await delivery_service.get_driver(driver_id)


@app.put("/api/v1/drivers/{driver_id}/status", response_model=Driver)
async def update_driver_status(
    driver_id: str = Path(..., description="Driver ID"),
    request: DriverStatusUpdateRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Go online or offline"""
    return await delivery_service.update_driver_status(driver_id, request.status, actor)


@app.put("/api/v1/drivers/{driver_id}/location", response_model=Driver)
async def update_driver_location(
    driver_id: str = Path(..., description="Driver ID"),
    request: DriverLocationUpdateRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Report the driver's current coordinate"""
    location = GeoPoint(latitude=request.latitude, longitude=request.longitude)
    return await delivery_service.update_driver_location(driver_id, location, actor)


@app.post("/api/v1/drivers/{driver_id}/deactivate", response_model=Driver)
async def deactivate_driver(
    driver_id: str = Path(..., description="Driver ID"),
    request: DriverDeactivateRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    delivery_service: DeliveryService = Depends(get_delivery_service)
):
    """Soft-deactivate a driver"""
    return await delivery_service.deactivate_driver(driver_id, request.reason, actor)


if __name__ == "__main__":
    uvicorn.run(
        "microservices.delivery_service.main:app",
        host=config.service_host,
        port=config.service_port,
        reload=config.debug,
        log_level=config.logging.log_level.lower()
    )
