from fastapi import APIRouter, Depends, HTTPException, Query, Request
import logging
from ..schemas.messages import (
    MessageIn,
    SystemMessageIn,
    MessageOut,
    CounterpartOut,
    DirectoryUserOut,
    ConversationOut,
    ConversationsOut,
    UnreadCountOut,
    MarkReadOut,
    DirectoryOut,
    PresenceOut,
)
from ..crud import (
    append_message,
    get_user_by_id,
    list_conversation,
    count_thread_messages,
    mark_read,
    list_user_conversations,
    unread_total,
    unread_in_thread,
    list_admins,
    list_users_for_messaging,
)
from ..cache import (
    push_recent_message,
    get_recent_messages,
    increment_unread,
    clear_unread,
    reconcile_unread,
    invalidate_recent_messages,
    is_online,
)
from ..auth import get_current_user, require_admin
from ..errors import InvalidArgument, NotFound, PersistenceFailure
from ..threads import thread_key
from .. import core
from typing import List

logger = logging.getLogger(__name__)

router = APIRouter()


def get_ws_manager(request: Request):
    return request.app.state.ws_manager


def serialize_message(m) -> dict:
    return MessageOut.model_validate(m).model_dump(mode='json', by_alias=True)


def _raise_http(e: Exception, action: str):
    if isinstance(e, InvalidArgument):
        raise HTTPException(400, str(e))
    if isinstance(e, NotFound):
        raise HTTPException(404, str(e))
    logger.error({'msg': f'{action}_failed', 'error': str(e)})
    raise HTTPException(500, f'Error {action.replace("_", " ")}')


async def _deliver(manager, m) -> dict:
    """Everything after the durable write is advisory"""
    data = serialize_message(m)
    await push_recent_message(m.thread_id, data)
    await manager.emit_to_thread(m.thread_id, 'new-message', {'message': data, 'threadId': m.thread_id},
                                 exclude_user=m.sender_id)
    await increment_unread(m.recipient_id, m.thread_id)
    core.MESSAGES_SENT.labels(message_type=m.message_type).inc()
    return data


async def _acknowledge_read(manager, reader_id: int, thread_id: str) -> int:
    """Mark the thread read in the log, clear the counter and emit the receipt"""
    modified = await mark_read(thread_id, reader_id)
    await clear_unread(reader_id, thread_id)
    if modified:
        # cached copies still carry the old read state
        await invalidate_recent_messages(thread_id)
        await manager.emit_to_thread(thread_id, 'messages-read', {'userId': reader_id, 'threadId': thread_id},
                                     exclude_user=reader_id)
    return modified


@router.post('/send', response_model=MessageOut, status_code=201)
async def send(payload: MessageIn, current_user: dict = Depends(get_current_user), manager=Depends(get_ws_manager)):
    if payload.recipient_id is None:
        raise HTTPException(400, 'Recipient ID is required')
    if payload.message_type == 'text' and not (payload.content or '').strip():
        raise HTTPException(400, 'Content is required for text messages')

    content = payload.content
    attachments = []
    if payload.message_type == 'image':
        if payload.attachment is None:
            raise HTTPException(400, 'No image attachment received')
        content = payload.caption or payload.content
        attachments = [payload.attachment.model_dump()]

    try:
        m = await append_message(
            current_user['id'],
            payload.recipient_id,
            content,
            message_type=payload.message_type,
            priority=payload.priority,
            attachments=attachments,
        )
    except (InvalidArgument, NotFound, PersistenceFailure) as e:
        _raise_http(e, 'sending_message')

    return await _deliver(manager, m)


@router.post('/system', response_model=MessageOut, status_code=201)
async def send_system(payload: SystemMessageIn, current_user: dict = Depends(require_admin),
                      manager=Depends(get_ws_manager)):
    try:
        m = await append_message(
            current_user['id'],
            payload.recipient_id,
            payload.content,
            message_type=payload.message_type,
            priority=payload.priority,
        )
    except (InvalidArgument, NotFound, PersistenceFailure) as e:
        _raise_http(e, 'sending_message')

    data = await _deliver(manager, m)
    # out-of-thread alert, the recipient may not have the thread open
    await manager.emit_to_user(m.recipient_id, 'notification', {
        'type': m.message_type,
        'threadId': m.thread_id,
        'message': data,
    })
    return data


@router.get('/conversation/{user_id}', response_model=ConversationOut)
async def conversation(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
    manager=Depends(get_ws_manager),
):
    try:
        other = await get_user_by_id(user_id)
        if not other:
            raise NotFound('User not found')
        thread_id = thread_key(current_user['id'], user_id)
        messages = await list_conversation(current_user['id'], user_id, limit=limit, offset=(page - 1) * limit)
        await _acknowledge_read(manager, current_user['id'], thread_id)
        total = await count_thread_messages(thread_id)
    except (InvalidArgument, NotFound, PersistenceFailure) as e:
        _raise_http(e, 'fetching_conversation')

    return {
        'messages': messages,
        'other_user': other,
        'pagination': {
            'current': page,
            'total': -(-total // limit),
            'count': len(messages),
            'total_items': total,
        },
    }


@router.get('/recent/{user_id}', response_model=List[MessageOut])
async def recent(
    user_id: int,
    limit: int = Query(50, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
):
    thread_id = thread_key(current_user['id'], user_id)
    cached = await get_recent_messages(thread_id, limit)
    try:
        # a list rebuilt after eviction only holds the newest tail
        if cached and (len(cached) >= limit or len(cached) >= await count_thread_messages(thread_id)):
            return cached
        newest = await list_conversation(current_user['id'], user_id, limit=limit, order='desc')
    except PersistenceFailure as e:
        _raise_http(e, 'fetching_messages')
    return list(reversed(newest))


@router.get('/conversations', response_model=ConversationsOut)
async def conversations(current_user: dict = Depends(get_current_user)):
    me = current_user['id']
    try:
        rows = await list_user_conversations(me)
        summaries = []
        for row in rows:
            last = row['last_message']
            other_id = last.recipient_id if last.sender_id == me else last.sender_id
            other = await get_user_by_id(other_id)
            summaries.append({
                'thread_id': row['thread_id'],
                'other_user': other,
                'last_message': {
                    'id': last.id,
                    'content': last.content,
                    'created_at': last.created_at,
                    'is_from_current_user': last.sender_id == me,
                    'message_type': last.message_type,
                    'priority': last.priority,
                },
                'unread_count': row['unread_count'],
            })
    except PersistenceFailure as e:
        _raise_http(e, 'fetching_conversations')
    return {'conversations': summaries}


@router.get('/unread-count', response_model=UnreadCountOut)
async def unread_count(current_user: dict = Depends(get_current_user)):
    try:
        return {'unread_count': await unread_total(current_user['id'])}
    except PersistenceFailure as e:
        _raise_http(e, 'fetching_unread_count')


@router.put('/mark-read/{user_id}', response_model=MarkReadOut)
async def mark_thread_read(user_id: int, current_user: dict = Depends(get_current_user),
                           manager=Depends(get_ws_manager)):
    try:
        modified = await _acknowledge_read(manager, current_user['id'], thread_key(current_user['id'], user_id))
    except PersistenceFailure as e:
        _raise_http(e, 'marking_messages_read')
    return {'modified_count': modified}


async def _with_unread(me: int, users) -> list:
    annotated = []
    for u in users:
        thread_id = thread_key(me, u.id)
        exact = await unread_in_thread(me, thread_id)
        await reconcile_unread(me, thread_id, exact)
        row = DirectoryUserOut.model_validate(u).model_dump()
        row['unread_count'] = exact
        annotated.append(row)
    return annotated


@router.get('/admins', response_model=DirectoryOut)
async def admins(current_user: dict = Depends(get_current_user)):
    try:
        users = await list_admins(current_user['id'])
        return {'users': await _with_unread(current_user['id'], users)}
    except PersistenceFailure as e:
        _raise_http(e, 'fetching_admin_users')


@router.get('/admin/users', response_model=DirectoryOut)
async def admin_users(
    search: str | None = None,
    role: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(require_admin),
):
    try:
        users, total = await list_users_for_messaging(current_user['id'], search, role, page, limit)
        rows = await _with_unread(current_user['id'], users)
    except PersistenceFailure as e:
        _raise_http(e, 'fetching_users')
    return {
        'users': rows,
        'pagination': {
            'current': page,
            'total': -(-total // limit),
            'count': len(rows),
            'total_items': total,
        },
    }


@router.get('/presence/{user_id}', response_model=PresenceOut)
async def presence(user_id: int, current_user: dict = Depends(get_current_user)):
    return {'user_id': user_id, 'online': await is_online(user_id)}
