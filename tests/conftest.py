"""
Fixtures compartidas: una base remota falsa guionada y un almacenamiento de
medios falso, sin red.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from chatsync.core.config import SyncConfig
from chatsync.core.errors import StoreError
from chatsync.schemas.messages import Message
from chatsync.services.engine import ChatSession
from chatsync.services.notifier import LoggingNotifier

LOCAL = "daymaker"
REMOTE = "mystiqueen"


@dataclass
class Call:
    op: str
    path: str
    value: Any
    at: float


class FakeStore:
    """RemoteStore guionado: los tests empujan snapshots a las colas."""

    def __init__(self):
        self.calls: List[Call] = []
        self.recent: asyncio.Queue = asyncio.Queue()
        self.values: Dict[str, asyncio.Queue] = defaultdict(asyncio.Queue)
        self.older_pages: List[Any] = []
        self.query_args: List[tuple] = []
        self.query_gate: Optional[asyncio.Event] = None
        self.fail_writes = False

    def _record(self, op: str, path: str, value: Any) -> None:
        if self.fail_writes:
            raise StoreError(f"fallo simulado en {op} {path}")
        self.calls.append(Call(op, path, value, asyncio.get_running_loop().time()))

    async def put(self, path, value):
        self._record("put", path, value)

    async def set_field(self, path, value):
        self._record("set", path, value)

    async def remove(self, path):
        self._record("remove", path, None)

    async def subscribe_recent(self, path, order_key, limit):
        while True:
            item = await self.recent.get()
            if isinstance(item, Exception):
                raise item
            yield item

    async def subscribe_value(self, path):
        queue = self.values[path]
        while True:
            item = await queue.get()
            if isinstance(item, Exception):
                raise item
            yield item

    async def query_older_than(self, path, order_key, cutoff, limit):
        self.query_args.append((path, order_key, cutoff, limit))
        if self.query_gate is not None:
            await self.query_gate.wait()
        page = self.older_pages.pop(0) if self.older_pages else []
        if isinstance(page, Exception):
            raise page
        return page

    def sets(self, path: str) -> List[Call]:
        return [c for c in self.calls if c.op == "set" and c.path == path]


class FakeMedia:
    def __init__(self, url: str = "https://raw.githubusercontent.com/o/r/main/images/x.jpg"):
        self.url = url
        self.uploads: List[tuple] = []
        self.error: Optional[Exception] = None

    async def upload(self, data: bytes, destination: str) -> str:
        if self.error is not None:
            raise self.error
        self.uploads.append((data, destination))
        return self.url


def wire(
    message_id: str,
    sent_at: int,
    sender: str = REMOTE,
    receiver: str = LOCAL,
    status: str = "sent",
    text: str = "hola",
) -> Dict[str, Any]:
    return {
        "messageId": message_id,
        "senderId": sender,
        "receiverId": receiver,
        "type": "text",
        "text": text,
        "mediaUrl": "",
        "timestamp": sent_at,
        "status": status,
    }


def msg(message_id: str, sent_at: int, **kwargs) -> Message:
    return Message.model_validate(wire(message_id, sent_at, **kwargs))


async def until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("la condición no se cumplió a tiempo")
        await asyncio.sleep(0.01)


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(
        local_user_id=LOCAL,
        remote_user_id=REMOTE,
        chat_id="mystiqueen_daymaker",
        recent_window_size=10,
        page_size=10,
        typing_timeout_ms=100,
        status_promotion_delay_ms=30,
        max_image_bytes=64,
        max_video_bytes=128,
        max_audio_bytes=96,
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def media() -> FakeMedia:
    return FakeMedia()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest_asyncio.fixture
async def session(config, store, media, notifier):
    s = ChatSession(config, store, media, notifier, clock=lambda: 1_000)
    yield s
    await s.close()
