import pytest

from chatcore import core
from chatcore.cache import (
    set_connection,
    get_connection,
    clear_connection,
    set_online,
    is_online,
    set_offline,
    push_recent_message,
    get_recent_messages,
    invalidate_recent_messages,
    increment_unread,
    get_unread,
    clear_unread,
    reconcile_unread,
)
from chatcore.crud import append_message, list_conversation
from chatcore.routes.messages import serialize_message

from conftest import BrokenRedis


@pytest.mark.asyncio
async def test_presence_entries_carry_ttls(redis):
    await set_connection(7, 'abc123')
    await set_online(7)

    assert await get_connection(7) == 'abc123'
    assert await is_online(7) is True
    assert 0 < await redis.ttl('user:7:socket') <= core.PRESENCE_CONNECTION_TTL
    assert 0 < await redis.ttl('user:7:online') <= core.PRESENCE_ONLINE_TTL
    assert core.PRESENCE_ONLINE_TTL < core.PRESENCE_CONNECTION_TTL

    await clear_connection(7)
    await set_offline(7)
    assert await get_connection(7) is None
    assert await is_online(7) is False


@pytest.mark.asyncio
async def test_unknown_presence_is_not_an_error():
    assert await get_connection(404) is None
    assert await is_online(404) is False


@pytest.mark.asyncio
async def test_recent_cache_keeps_newest_hundred_in_order(redis):
    thread_id = 'thread_1_2'
    for i in range(150):
        await push_recent_message(thread_id, {'id': i, 'content': f'm{i}'})

    recent = await get_recent_messages(thread_id, 100)
    assert [m['id'] for m in recent] == list(range(50, 150))
    assert await redis.llen(f'thread:{thread_id}:messages') == 100
    assert 0 < await redis.ttl(f'thread:{thread_id}:messages') <= 24 * 60 * 60

    newest = await get_recent_messages(thread_id, 3)
    assert [m['id'] for m in newest] == [147, 148, 149]


@pytest.mark.asyncio
async def test_recent_cache_miss_is_empty():
    assert await get_recent_messages('thread_8_9', 50) == []
    assert await get_recent_messages('thread_8_9', 0) == []


@pytest.mark.asyncio
async def test_dropping_cache_does_not_change_history(member, staff):
    for text in ('one', 'two', 'three'):
        m = await append_message(member.id, staff.id, text)
        await push_recent_message(m.thread_id, serialize_message(m))

    before = [serialize_message(m) for m in await list_conversation(member.id, staff.id)]
    await invalidate_recent_messages(m.thread_id)
    after = [serialize_message(m) for m in await list_conversation(member.id, staff.id)]

    assert before == after
    assert await get_recent_messages(m.thread_id, 10) == []


@pytest.mark.asyncio
async def test_unread_counter_lifecycle(redis):
    assert await get_unread(3, 'thread_3_4') == 0
    assert await increment_unread(3, 'thread_3_4') == 1
    assert await increment_unread(3, 'thread_3_4') == 2
    assert await get_unread(3, 'thread_3_4') == 2
    assert 0 < await redis.ttl('user:3:unread:thread_3_4') <= core.UNREAD_TTL

    await clear_unread(3, 'thread_3_4')
    assert await get_unread(3, 'thread_3_4') == 0


@pytest.mark.asyncio
async def test_reconcile_prefers_log_count():
    for _ in range(4):
        await increment_unread(3, 'thread_3_4')

    assert await reconcile_unread(3, 'thread_3_4', 1) == 1
    assert await get_unread(3, 'thread_3_4') == 1

    assert await reconcile_unread(3, 'thread_3_4', 0) == 0
    assert await get_unread(3, 'thread_3_4') == 0


@pytest.mark.asyncio
@pytest.mark.parametrize('client_factory', [lambda: None, BrokenRedis])
async def test_store_outage_degrades_to_defaults(client_factory):
    core.REDIS = client_factory()

    assert await set_connection(1, 'h') is False
    assert await get_connection(1) is None
    assert await clear_connection(1) is False
    assert await set_online(1) is False
    assert await is_online(1) is False
    assert await set_offline(1) is False
    assert await push_recent_message('thread_1_2', {'id': 1}) is False
    assert await get_recent_messages('thread_1_2', 10) == []
    assert await increment_unread(1, 'thread_1_2') is None
    assert await get_unread(1, 'thread_1_2') == 0
    assert await clear_unread(1, 'thread_1_2') is False
    assert await reconcile_unread(1, 'thread_1_2', 2) == 2
