import asyncio
import json
import os
import tempfile
import uuid

# Configure test environment before the app reads it
DB_PATH = os.path.join(tempfile.gettempdir(), f'chatcore-test-{uuid.uuid4().hex}.db')
os.environ['DATABASE_URL'] = f'sqlite+aiosqlite:///{DB_PATH}'
os.environ.setdefault('JWT_SECRET', 'test-secret')

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fakeredis import aioredis as fake_aioredis  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402

from chatcore import core  # noqa: E402
from chatcore.auth import create_access_token  # noqa: E402
from chatcore.crud import create_user  # noqa: E402
from chatcore.main import app  # noqa: E402
from chatcore.models import Base, engine  # noqa: E402
from chatcore.ws_manager import ConnectionManager  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest_asyncio.fixture(autouse=True)
async def redis():
    client = fake_aioredis.FakeRedis()
    await client.flushall()
    core.REDIS = client
    yield client
    core.REDIS = None
    await client.aclose()


@pytest.fixture(autouse=True)
def manager():
    m = ConnectionManager()
    app.state.ws_manager = m
    return m


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as ac:
        yield ac


@pytest_asyncio.fixture
async def member():
    return await create_user('Aisha Member', 'aisha@example.com', 'member')


@pytest_asyncio.fixture
async def staff():
    return await create_user('Bilal Staff', 'bilal@example.com', 'admin')


def token_for(user) -> str:
    return create_access_token({'id': user.id, 'role': user.role})


def auth_headers(user) -> dict:
    return {'Authorization': f'Bearer {token_for(user)}'}


class BrokenRedis:
    """Stands in for an unreachable Redis server"""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise ConnectionError('redis is down')
        return fail


class FakeWebSocket:
    """In-process socket driven by the test, records every frame sent to it"""

    def __init__(self, headers=None):
        self.headers = headers or {}
        self.accepted = False
        self.close_code = None
        self.sent = []
        self.inbox = asyncio.Queue()

    async def accept(self):
        self.accepted = True

    async def close(self, code: int = 1000):
        self.close_code = code

    async def send_json(self, data):
        self.sent.append(data)

    async def receive(self):
        item = await self.inbox.get()
        if item is None:
            return {'type': 'websocket.disconnect', 'code': 1000}
        if isinstance(item, bytes):
            return {'type': 'websocket.receive', 'bytes': item}
        return {'type': 'websocket.receive', 'text': item}

    def emit(self, event, data=None):
        self.inbox.put_nowait(json.dumps({'event': event, 'data': data}))

    def hang_up(self):
        self.inbox.put_nowait(None)

    def events(self, name):
        return [frame['data'] for frame in self.sent if frame['event'] == name]


async def wait_for(predicate, timeout: float = 3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('condition not met in time')
        await asyncio.sleep(0.01)
