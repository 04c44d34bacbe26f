"""
Cross-process fan-out for the gateway.

Group tables live in process memory, so an event raised in one server
process only reaches sockets held by that process. A relay carries the
event to every other process, which then delivers it to its own groups.
"""
import json
import logging
from typing import Awaitable, Callable, Dict
from . import core

logger = logging.getLogger(__name__)

RelayHandler = Callable[[Dict], Awaitable[None]]


class LocalRelay:
    """Single-process deployment: nothing leaves the process"""

    async def publish(self, envelope: Dict) -> bool:
        return False

    async def listen(self, handler: RelayHandler):
        return None


class RedisRelay:
    """Relay envelopes over a Redis pub/sub channel"""

    def __init__(self, channel: str = 'ws_events'):
        self.channel = channel

    async def publish(self, envelope: Dict) -> bool:
        client = core.get_redis()
        if client is None:
            return False
        try:
            await client.publish(self.channel, json.dumps(envelope))
            return True
        except Exception as e:
            logger.warning({'msg': 'relay_publish_failed', 'error': str(e)})
            return False

    async def listen(self, handler: RelayHandler):
        client = core.get_redis()
        if client is None:
            logger.warning({'msg': 'relay_listener_skipped', 'reason': 'redis unavailable'})
            return
        pubsub = client.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info({'msg': 'relay_listener_started', 'channel': self.channel})
        try:
            async for item in pubsub.listen():
                if not item or item.get('type') != 'message':
                    continue
                try:
                    envelope = json.loads(item.get('data'))
                except (TypeError, ValueError):
                    logger.warning({'msg': 'relay_envelope_invalid'})
                    continue
                await handler(envelope)
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()


def build_relay(kind: str = None):
    kind = kind or core.WS_RELAY
    if kind == 'redis':
        return RedisRelay()
    if kind != 'local':
        logger.warning({'msg': 'unknown_relay', 'relay': kind})
    return LocalRelay()
