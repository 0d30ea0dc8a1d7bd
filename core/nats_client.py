"""
NATS JetStream Client for Python Microservices

Event-driven communication between delivery platform services, using the
native nats-py JetStream client.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import nats
from nats.errors import TimeoutError as NATSTimeoutError

from core.config import InfraConfig


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event subjects"""

    # Delivery lifecycle
    DELIVERY_CREATED = "delivery.created"
    DELIVERY_ASSIGNED = "delivery.assigned"
    DELIVERY_PICKED_UP = "delivery.picked_up"
    DELIVERY_IN_TRANSIT = "delivery.in_transit"
    DELIVERY_DELIVERED = "delivery.delivered"
    DELIVERY_RETURNED = "delivery.returned"
    DELIVERY_RESCHEDULED = "delivery.rescheduled"
    DELIVERY_CANCELLED = "delivery.cancelled"

    # Driver
    DRIVER_STATUS_CHANGED = "delivery.driver.status_changed"

    # Location Service Events (consumed)
    LOCATION_UPDATED = "location.updated"


class ServiceSource(Enum):
    """Service sources"""

    DELIVERY_SERVICE = "delivery_service"
    LOCATION_SERVICE = "location_service"
    ACCOUNT_SERVICE = "account_service"
    GATEWAY = "api_gateway"


class Event:
    """Event envelope"""

    def __init__(
        self,
        event_type: EventType,
        source: ServiceSource,
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type.value
        self.source = source.value
        self.data = data
        self.subject = subject
        self.timestamp = datetime.utcnow().isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event = cls.__new__(cls)
        event.id = data.get("id")
        event.type = data.get("type")
        event.source = data.get("source")
        event.subject = data.get("subject")
        event.timestamp = data.get("timestamp")
        event.data = data.get("data", {})
        event.metadata = data.get("metadata", {})
        event.version = data.get("version", "1.0.0")
        return event


class NATSEventBus:
    """
    NATS JetStream event bus.

    Publishes Event envelopes to per-prefix streams and runs pull consumers
    for subscriptions.
    """

    def __init__(self, service_name: str, config: Optional[InfraConfig] = None):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used for consumer names and logs)
            config: Infrastructure config; loaded from environment if omitted
        """
        self.service_name = service_name
        config = config or InfraConfig.from_env()
        self.servers = config.nats_servers

        self._nc = None
        self._js = None
        self._subscriptions: Dict[str, bool] = {}  # pattern -> active
        self._subscription_tasks: List[asyncio.Task] = []
        self._known_streams: Dict[str, bool] = {}
        self._is_connected = False

        logger.info(f"NATS EventBus initialized: {self.servers}")

    async def connect(self):
        """Connect to NATS and open a JetStream context"""
        try:
            self._nc = await nats.connect(servers=self.servers, name=self.service_name)
            self._js = self._nc.jetstream()
            self._is_connected = True
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS at {self.servers}: {e}")
            raise

    async def _ensure_stream(self, stream_name: str, subjects: List[str]):
        """Create the stream if needed (idempotent)"""
        if self._known_streams.get(stream_name):
            return
        try:
            await self._js.add_stream(name=stream_name, subjects=subjects, max_msgs=100000)
        except Exception as e:
            logger.debug(f"Stream creation note: {e}")
        self._known_streams[stream_name] = True

    async def publish_event(self, event: Event) -> bool:
        """
        Publish an event to NATS JetStream.

        The subject is the event type. The stream is derived from the subject
        prefix (delivery.* -> delivery-stream).
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return False

        try:
            subject = event.type
            data = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()

            prefix = event.type.split('.')[0]
            stream_name = self._get_stream_name_for_event(event.type)
            await self._ensure_stream(stream_name, [f"{prefix}.>"])

            ack = await self._js.publish(subject, data, headers={"event_id": event.id})
            logger.info(f"Published event {event.type} [{event.id}] to stream {ack.stream}, seq={ack.seq}")
            return True

        except Exception as e:
            logger.error(f"Error publishing event {event.id}: {e}")
            return False

    def _get_stream_name_for_event(self, event_type: str) -> str:
        """Map a subject to its JetStream stream name"""
        prefix = event_type.split('.')[0]
        stream_mappings = {
            "delivery": "delivery-stream",
            "location": "location-stream",
            "user": "user-stream",
        }
        return stream_mappings.get(prefix, f"{prefix}-stream")

    async def subscribe_to_events(
        self, pattern: str, handler: Callable, durable: Optional[str] = None
    ) -> Optional[str]:
        """
        Subscribe to events with a pattern using a JetStream pull consumer.

        Args:
            pattern: Subject pattern to subscribe to (e.g., "location.updated")
            handler: Async callback receiving an Event
            durable: Optional durable consumer name
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return None

        try:
            self._subscriptions[pattern] = True
            task = asyncio.create_task(
                self._jetstream_consumer_loop(pattern, handler, durable)
            )
            self._subscription_tasks.append(task)

            logger.info(f"Subscribed to {pattern} (JetStream consumer)")
            return durable or pattern

        except Exception as e:
            logger.error(f"Error subscribing to events: {e}")
            return None

    async def _jetstream_consumer_loop(self, pattern: str, handler: Callable, durable: Optional[str]):
        """Pull messages in batches, hand each to the handler, then ack"""
        prefix = pattern.split('.')[0]
        stream_name = self._get_stream_name_for_event(prefix)
        consumer_name = durable or f"{self.service_name}-{prefix}-consumer"
        filter_subject = pattern.replace("*", ">")

        logger.info(f"Starting JetStream consumer: stream={stream_name}, consumer={consumer_name}, pattern={pattern}")

        try:
            await self._ensure_stream(stream_name, [f"{prefix}.>"])
            psub = await self._js.pull_subscribe(filter_subject, durable=consumer_name, stream=stream_name)

            while self._subscriptions.get(pattern, False):
                try:
                    messages = await psub.fetch(batch=10, timeout=1)
                except NATSTimeoutError:
                    continue
                except Exception as pull_e:
                    logger.warning(f"Pull error (will retry): {pull_e}")
                    await asyncio.sleep(5)
                    continue

                for msg in messages:
                    try:
                        data = json.loads(msg.data.decode())
                        if 'type' in data and 'source' in data and 'data' in data:
                            event = Event.from_dict(data)
                        else:
                            # Raw payload published without an envelope
                            event = Event.__new__(Event)
                            event.id = (msg.headers or {}).get("event_id") or str(uuid.uuid4())
                            event.type = msg.subject
                            event.source = 'unknown'
                            event.subject = msg.subject
                            event.timestamp = data.get('timestamp', datetime.utcnow().isoformat())
                            event.data = data
                            event.metadata = {}
                            event.version = '1.0.0'

                        await handler(event)
                        await msg.ack()

                    except Exception as msg_e:
                        logger.error(f"Error processing message on {msg.subject}: {msg_e}")
                        await msg.nak()

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"JetStream consumer loop error for {pattern}: {e}")
        finally:
            self._subscriptions[pattern] = False
            logger.info(f"JetStream consumer stopped: {consumer_name}")

    async def close(self):
        """Stop consumers and drain the connection"""
        for pattern in list(self._subscriptions.keys()):
            self._subscriptions[pattern] = False

        for task in self._subscription_tasks:
            if not task.done():
                task.cancel()

        if self._nc:
            try:
                await self._nc.drain()
            except Exception as e:
                logger.warning(f"Error draining NATS connection: {e}")
            self._nc = None
            self._js = None

        self._is_connected = False
        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        return self._is_connected


# Singleton instance
_event_bus: Optional[NATSEventBus] = None


async def get_event_bus(service_name: str, config: Optional[InfraConfig] = None) -> NATSEventBus:
    """
    Get or create the process event bus.

    Args:
        service_name: Name of the service using the event bus
        config: Optional infrastructure config

    Returns:
        Connected NATSEventBus instance
    """
    global _event_bus

    if _event_bus is None:
        bus = NATSEventBus(service_name=service_name, config=config)
        await bus.connect()
        _event_bus = bus

    return _event_bus

