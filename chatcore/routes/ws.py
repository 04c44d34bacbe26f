import json
import logging
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query, status
from ..auth import authenticate_websocket
from ..cache import clear_unread, invalidate_recent_messages, set_online
from ..crud import mark_read
from ..errors import AuthenticationFailure, PersistenceFailure
from ..threads import is_participant
from ..ws_manager import ConnectionManager, Connection, thread_group
from .. import core

logger = logging.getLogger(__name__)

router = APIRouter()


def _thread_id(data):
    # clients send either {"threadId": ...} or the bare id
    if isinstance(data, dict):
        data = data.get('threadId')
    return data if isinstance(data, str) and data else None


async def on_join_thread(manager: ConnectionManager, conn: Connection, thread_id: str):
    if not manager.join(conn, thread_group(thread_id)):
        await manager.send(conn, 'error', {'message': f'Cannot join more than {manager.max_threads} threads',
                                           'threadId': thread_id})
        return
    await manager.send(conn, 'thread-joined', {'threadId': thread_id})

async def on_leave_thread(manager: ConnectionManager, conn: Connection, thread_id: str):
    manager.leave(conn, thread_group(thread_id))
    await manager.send(conn, 'thread-left', {'threadId': thread_id})

async def on_typing_start(manager: ConnectionManager, conn: Connection, thread_id: str):
    await manager.emit_to_thread(thread_id, 'user-typing', {'userId': conn.user_id, 'threadId': thread_id},
                                 exclude=conn)

async def on_typing_stop(manager: ConnectionManager, conn: Connection, thread_id: str):
    await manager.emit_to_thread(thread_id, 'user-stopped-typing', {'userId': conn.user_id, 'threadId': thread_id},
                                 exclude=conn)

async def on_mark_read(manager: ConnectionManager, conn: Connection, thread_id: str):
    try:
        modified = await mark_read(thread_id, conn.user_id)
    except PersistenceFailure:
        await manager.send(conn, 'error', {'message': 'Failed to mark messages read', 'threadId': thread_id})
        return
    await clear_unread(conn.user_id, thread_id)
    if modified:
        await invalidate_recent_messages(thread_id)
    await manager.emit_to_thread(thread_id, 'messages-read', {'userId': conn.user_id, 'threadId': thread_id},
                                 exclude=conn)
    logger.info({'msg': 'messages_marked_read', 'user_id': conn.user_id, 'thread_id': thread_id, 'count': modified})

async def on_refresh(manager: ConnectionManager, conn: Connection, thread_id: str):
    await manager.send(conn, 'refresh-requested', {'threadId': thread_id})


THREAD_EVENTS = {
    'join-thread': on_join_thread,
    'leave-thread': on_leave_thread,
    'typing-start': on_typing_start,
    'typing-stop': on_typing_stop,
    'mark-messages-read': on_mark_read,
    'refresh-messages': on_refresh,
}


async def dispatch(manager: ConnectionManager, conn: Connection, frame):
    if not isinstance(frame, dict):
        await manager.send(conn, 'error', {'message': 'Frames must be JSON objects'})
        return
    event = frame.get('event')
    # any inbound frame renews the online flag
    await set_online(conn.user_id)
    if event == 'heartbeat':
        return
    handler = THREAD_EVENTS.get(event)
    if handler is None:
        await manager.send(conn, 'error', {'message': f'Unknown event: {event}'})
        return
    thread_id = _thread_id(frame.get('data'))
    if thread_id is None:
        await manager.send(conn, 'error', {'message': 'threadId is required', 'event': event})
        return
    if event != 'leave-thread' and not is_participant(thread_id, conn.user_id):
        await manager.send(conn, 'error', {'message': 'Not a participant of this thread', 'threadId': thread_id})
        return
    core.WS_EVENTS.labels(event=event).inc()
    await handler(manager, conn, thread_id)


async def serve(manager: ConnectionManager, websocket: WebSocket, token: str | None = None):
    try:
        user = authenticate_websocket(websocket, token)
    except AuthenticationFailure as e:
        logger.info({'msg': 'ws_auth_rejected', 'reason': str(e)})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    conn = await manager.connect(user['id'], websocket)
    try:
        while True:
            message = await websocket.receive()
            if message['type'] == 'websocket.disconnect':
                break
            raw = message.get('text')
            if raw is None:
                await manager.send(conn, 'error', {'message': 'Binary frames are not supported'})
                continue
            try:
                frame = json.loads(raw)
            except ValueError:
                await manager.send(conn, 'error', {'message': 'Invalid JSON'})
                continue
            await dispatch(manager, conn, frame)
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(conn)


@router.websocket('/chat')
async def chat_ws(websocket: WebSocket, token: str = Query(None)):
    await serve(websocket.app.state.ws_manager, websocket, token)
