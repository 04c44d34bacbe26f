from typing import Dict, Optional, Set
import logging
import uuid
from fastapi import WebSocket
from . import core
from .cache import set_connection, get_connection, clear_connection, set_online, set_offline
from .relay import LocalRelay

logger = logging.getLogger(__name__)


def user_group(user_id) -> str:
    return f'user:{user_id}'

def thread_group(thread_id: str) -> str:
    return f'thread:{thread_id}'


class Connection:
    """One authenticated socket and the groups it belongs to"""

    def __init__(self, websocket: WebSocket, user_id: int):
        self.handle = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self.groups: Set[str] = set()

    @property
    def threads(self) -> Set[str]:
        return {g for g in self.groups if g.startswith('thread:')}


class ConnectionManager:
    """
    Per-process connection groups. join/leave/broadcast is the whole
    interface; events for other processes go through the relay.
    """

    def __init__(self, relay=None, max_threads: int = None):
        self.node_id = uuid.uuid4().hex
        self.relay = relay or LocalRelay()
        self.max_threads = max_threads or core.WS_MAX_THREADS
        self.groups: Dict[str, Set[Connection]] = {}
        self.connections: Dict[str, Connection] = {}

    async def connect(self, user_id: int, websocket: WebSocket) -> Connection:
        await websocket.accept()
        conn = Connection(websocket, user_id)
        await set_connection(user_id, conn.handle)
        await set_online(user_id)
        self.connections[conn.handle] = conn
        self.join(conn, user_group(user_id))
        core.WS_CONNECTIONS.inc()
        logger.info({'msg': 'ws_connected', 'user_id': user_id, 'handle': conn.handle})
        return conn

    async def disconnect(self, conn: Connection):
        if self.connections.pop(conn.handle, None) is None:
            return
        for group in list(conn.groups):
            self.leave(conn, group)
        core.WS_CONNECTIONS.dec()
        if not self.user_connections(conn.user_id):
            # another process may hold a newer socket for this user
            if await get_connection(conn.user_id) in (None, conn.handle):
                await clear_connection(conn.user_id)
                await set_offline(conn.user_id)
        logger.info({'msg': 'ws_disconnected', 'user_id': conn.user_id, 'handle': conn.handle})

    def join(self, conn: Connection, group: str) -> bool:
        if group.startswith('thread:') and group not in conn.groups and len(conn.threads) >= self.max_threads:
            return False
        self.groups.setdefault(group, set()).add(conn)
        conn.groups.add(group)
        return True

    def leave(self, conn: Connection, group: str):
        members = self.groups.get(group)
        if members is not None:
            members.discard(conn)
            if not members:
                del self.groups[group]
        conn.groups.discard(group)

    def user_connections(self, user_id: int) -> Set[Connection]:
        return set(self.groups.get(user_group(user_id), set()))

    def group_size(self, group: str) -> int:
        return len(self.groups.get(group, ()))

    async def send(self, conn: Connection, event: str, data: dict) -> bool:
        try:
            await conn.websocket.send_json({'event': event, 'data': data})
            return True
        except Exception as e:
            logger.warning({'msg': 'ws_send_failed', 'handle': conn.handle, 'error': str(e)})
            await self.disconnect(conn)
            return False

    async def _deliver(self, group: str, event: str, data: dict,
                       exclude_user: Optional[int] = None, exclude_handle: Optional[str] = None) -> int:
        delivered = 0
        for conn in list(self.groups.get(group, set())):
            if exclude_handle is not None and conn.handle == exclude_handle:
                continue
            if exclude_user is not None and str(conn.user_id) == str(exclude_user):
                continue
            if await self.send(conn, event, data):
                delivered += 1
        return delivered

    async def broadcast(self, group: str, event: str, data: dict,
                        exclude_user: Optional[int] = None, exclude: Optional[Connection] = None) -> int:
        """Fan an event out to a group here and, through the relay, everywhere else"""
        exclude_handle = exclude.handle if exclude is not None else None
        delivered = await self._deliver(group, event, data, exclude_user, exclude_handle)
        await self.relay.publish({
            'origin': self.node_id,
            'group': group,
            'event': event,
            'data': data,
            'exclude_user': exclude_user,
            'exclude_handle': exclude_handle,
        })
        return delivered

    async def emit_to_thread(self, thread_id: str, event: str, data: dict, **kwargs) -> int:
        return await self.broadcast(thread_group(thread_id), event, data, **kwargs)

    async def emit_to_user(self, user_id: int, event: str, data: dict) -> int:
        return await self.broadcast(user_group(user_id), event, data)

    async def handle_relay_message(self, envelope: dict):
        if envelope.get('origin') == self.node_id:
            return
        group, event = envelope.get('group'), envelope.get('event')
        if not group or not event:
            return
        await self._deliver(group, event, envelope.get('data') or {},
                            envelope.get('exclude_user'), envelope.get('exclude_handle'))

    async def start_relay_listener(self):
        """Deliver events published by other app instances to local sockets"""
        try:
            await self.relay.listen(self.handle_relay_message)
        except Exception as e:
            # live delivery degrades to this process only
            logger.error({'msg': 'relay_listener_stopped', 'error': str(e)})
