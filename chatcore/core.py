import os
import asyncio
from prometheus_client import Counter, Gauge, start_http_server
import logging

logger = logging.getLogger(__name__)

REDIS = None

REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
METRICS_PORT = int(os.getenv('METRICS_PORT', '8001'))

# gateway
WS_RELAY = os.getenv('WS_RELAY', 'local')  # local | redis
WS_MAX_THREADS = int(os.getenv('WS_MAX_THREADS', '100'))

# advisory store TTLs (seconds)
PRESENCE_CONNECTION_TTL = int(os.getenv('PRESENCE_CONNECTION_TTL', '3600'))
PRESENCE_ONLINE_TTL = int(os.getenv('PRESENCE_ONLINE_TTL', '300'))
RECENT_MESSAGES_LIMIT = int(os.getenv('RECENT_MESSAGES_LIMIT', '100'))
RECENT_MESSAGES_TTL = int(os.getenv('RECENT_MESSAGES_TTL', str(24 * 60 * 60)))
UNREAD_TTL = int(os.getenv('UNREAD_TTL', str(24 * 60 * 60)))

MESSAGES_SENT = Counter('chatcore_messages_sent_total', 'Messages persisted to the log', ['message_type'])
WS_EVENTS = Counter('chatcore_ws_events_total', 'Client events handled by the gateway', ['event'])
WS_CONNECTIONS = Gauge('chatcore_ws_connections', 'Live gateway connections in this process')


def init_metrics(port: int = METRICS_PORT):
    """Initialize Prometheus metrics server"""
    try:
        start_http_server(port)
        logger.info(f"Prometheus metrics server started on port {port}")
    except Exception as e:
        logger.warning(f'Prometheus start failed: {e}')


def get_redis():
    return REDIS


async def redis_startup():
    """Start Redis connection with retries and connection pooling"""
    global REDIS

    import redis.asyncio as aioredis

    max_retries = 3
    retry_delay = 3  # seconds

    for attempt in range(max_retries):
        try:
            logger.info(f"Attempting to connect to Redis: {REDIS_URL} (attempt {attempt + 1}/{max_retries})")

            REDIS = aioredis.from_url(
                REDIS_URL,
                decode_responses=False,
                max_connections=20,
                retry_on_timeout=True,
                retry_on_error=[aioredis.ConnectionError, aioredis.TimeoutError],
                health_check_interval=30,
                socket_connect_timeout=5,
                socket_timeout=5
            )

            # Test the connection
            await REDIS.ping()

            logger.info("Redis connected successfully")
            break

        except Exception as e:
            logger.warning(f'Redis startup attempt {attempt + 1} failed: {e}')
            if REDIS:
                try:
                    await REDIS.aclose()
                except Exception:
                    pass
                REDIS = None

            if attempt < max_retries - 1:
                logger.info(f"Retrying Redis connection in {retry_delay} seconds...")
                await asyncio.sleep(retry_delay)
            else:
                logger.error("Failed to connect to Redis after all retries")


async def shutdown_connections():
    """Gracefully shutdown all connections"""
    global REDIS
    logger.info("Shutting down connections...")

    if REDIS:
        try:
            await REDIS.aclose()
            logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
        REDIS = None

    from .models import engine
    try:
        await engine.dispose()
        logger.info("Database engine disposed")
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}")
