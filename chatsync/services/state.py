import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Optional, Tuple

from chatsync.schemas.messages import Message


class PagingState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"


@dataclass(frozen=True)
class ChatState:
    messages: Tuple[Message, ...] = ()
    input_text: str = ""
    remote_typing: bool = False
    remote_presence: str = "offline"
    loading: bool = False
    error: Optional[str] = None
    upload_progress: int = 0
    oldest_sent_at: Optional[int] = None
    paging: PagingState = PagingState.IDLE


class StateHolder:
    """Estado publicado: se reemplaza entero, nunca se ve a medio combinar."""

    def __init__(self, initial: Optional[ChatState] = None):
        self._value = initial or ChatState()
        self._version = 0
        self._changed: Optional[asyncio.Event] = None

    @property
    def value(self) -> ChatState:
        return self._value

    def update(self, **changes) -> ChatState:
        self._value = replace(self._value, **changes)
        self._version += 1
        event, self._changed = self._changed, None
        if event is not None:
            event.set()
        return self._value

    async def watch(self) -> AsyncIterator[ChatState]:
        """Emite el estado actual y luego cada versión nueva."""
        version = self._version
        yield self._value
        while True:
            if self._version == version:
                if self._changed is None:
                    self._changed = asyncio.Event()
                await self._changed.wait()
            version = self._version
            yield self._value
