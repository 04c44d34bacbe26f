from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.exc import SQLAlchemyError

from .models import AsyncSessionLocal
from .models.users import User, ROLES
from .models.messages import Message, MESSAGE_TYPES, PRIORITIES, MAX_CONTENT_LENGTH
from .threads import thread_key
from .errors import InvalidArgument, NotFound, PersistenceFailure

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _session():
    """Session whose database errors surface as PersistenceFailure"""
    try:
        async with AsyncSessionLocal() as session:
            yield session
    except (SQLAlchemyError, OSError) as e:
        logger.error({'msg': 'persistence_failure', 'error': str(e)})
        raise PersistenceFailure(str(e)) from e


# users
async def create_user(name: str, email: str, role: str = 'member'):
    if role not in ROLES:
        raise InvalidArgument(f'role must be one of {", ".join(ROLES)}')
    async with _session() as session:
        user = User(name=name, email=email, role=role)
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user

async def get_user_by_id(user_id: int):
    async with _session() as session:
        q = await session.execute(select(User).where(User.id == user_id))
        return q.scalars().first()

async def list_admins(exclude_id: int):
    async with _session() as session:
        q = await session.execute(
            select(User).where(User.role == 'admin', User.id != exclude_id).order_by(User.name.asc())
        )
        return q.scalars().all()

async def list_users_for_messaging(exclude_id: int, search: str | None = None, role: str | None = None,
                                   page: int = 1, limit: int = 20):
    """Directory page for staff, returns (users, total)"""
    filters = [User.id != exclude_id]
    if search:
        pattern = f'%{search.lower()}%'
        filters.append(or_(func.lower(User.name).like(pattern), func.lower(User.email).like(pattern)))
    if role:
        filters.append(User.role == role)
    async with _session() as session:
        total = await session.scalar(select(func.count()).select_from(User).where(*filters))
        q = await session.execute(
            select(User).where(*filters).order_by(User.name.asc()).offset((page - 1) * limit).limit(limit)
        )
        return q.scalars().all(), total or 0


# messaging
def _validate_message(content, message_type, priority, attachments):
    if message_type not in MESSAGE_TYPES:
        raise InvalidArgument(f'messageType must be one of {", ".join(MESSAGE_TYPES)}')
    if priority not in PRIORITIES:
        raise InvalidArgument(f'priority must be one of {", ".join(PRIORITIES)}')
    content = (content or '').strip()
    if message_type == 'image':
        if not attachments:
            raise InvalidArgument('Image messages require an attachment')
        content = content or 'Image'
    elif not content:
        raise InvalidArgument(f'Content is required for {message_type} messages')
    if len(content) > MAX_CONTENT_LENGTH:
        raise InvalidArgument(f'Message cannot exceed {MAX_CONTENT_LENGTH} characters')
    return content

async def append_message(sender_id: int, recipient_id: int, content: str | None,
                         message_type: str = 'text', priority: str = 'normal', attachments=None):
    if sender_id == recipient_id:
        raise InvalidArgument('Cannot send a message to yourself')
    attachments = list(attachments or [])
    content = _validate_message(content, message_type, priority, attachments)
    async with _session() as session:
        recipient = await session.get(User, recipient_id)
        if recipient is None:
            raise NotFound('Recipient not found')
        m = Message(
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content,
            message_type=message_type,
            thread_id=thread_key(sender_id, recipient_id),
            priority=priority,
            attachments=attachments,
            is_read=False,
        )
        session.add(m)
        await session.commit()
        await session.refresh(m)
        logger.info({'msg': 'message_appended', 'message_id': m.id, 'thread_id': m.thread_id})
        return m

async def list_conversation(user_a: int, user_b: int, limit: int = 50, offset: int = 0, order: str = 'asc'):
    if order not in ('asc', 'desc'):
        raise InvalidArgument('order must be asc or desc')
    if order == 'asc':
        ordering = (Message.created_at.asc(), Message.id.asc())
    else:
        ordering = (Message.created_at.desc(), Message.id.desc())
    async with _session() as session:
        q = select(Message).where(
            Message.thread_id == thread_key(user_a, user_b)
        ).order_by(*ordering).offset(offset).limit(limit)
        res = await session.execute(q)
        return res.scalars().all()

async def count_thread_messages(thread_id: str) -> int:
    async with _session() as session:
        total = await session.scalar(
            select(func.count()).select_from(Message).where(Message.thread_id == thread_id)
        )
        return total or 0

async def mark_read(thread_id: str, reader_id: int) -> int:
    """Flip every unread message addressed to reader_id in the thread, returns how many changed"""
    now = datetime.now(timezone.utc)
    async with _session() as session:
        res = await session.execute(
            update(Message)
            .where(Message.thread_id == thread_id, Message.recipient_id == reader_id, Message.is_read.is_(False))
            .values(is_read=True, read_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return res.rowcount or 0

async def list_user_conversations(user_id: int):
    """Last message per thread plus the exact unread tally, newest thread first"""
    involved = or_(Message.sender_id == user_id, Message.recipient_id == user_id)
    ranked = select(
        Message.id.label('id'),
        func.row_number().over(
            partition_by=Message.thread_id,
            order_by=(Message.created_at.desc(), Message.id.desc()),
        ).label('rank'),
    ).where(involved).subquery()
    async with _session() as session:
        last = await session.execute(
            select(Message)
            .join(ranked, and_(ranked.c.id == Message.id, ranked.c.rank == 1))
            .order_by(Message.created_at.desc(), Message.id.desc())
        )
        last_messages = last.scalars().all()
        unread = await session.execute(
            select(Message.thread_id, func.count())
            .where(Message.recipient_id == user_id, Message.is_read.is_(False))
            .group_by(Message.thread_id)
        )
        unread_by_thread = dict(unread.all())
    return [
        {'thread_id': m.thread_id, 'last_message': m, 'unread_count': unread_by_thread.get(m.thread_id, 0)}
        for m in last_messages
    ]

async def unread_total(user_id: int) -> int:
    async with _session() as session:
        total = await session.scalar(
            select(func.count()).select_from(Message)
            .where(Message.recipient_id == user_id, Message.is_read.is_(False))
        )
        return total or 0

async def unread_in_thread(user_id: int, thread_id: str) -> int:
    async with _session() as session:
        total = await session.scalar(
            select(func.count()).select_from(Message)
            .where(Message.thread_id == thread_id, Message.recipient_id == user_id, Message.is_read.is_(False))
        )
        return total or 0
