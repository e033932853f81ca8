import asyncio
import logging
from typing import Awaitable, Callable, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class TaskScope:
    """
    Dueño de todas las tareas de una sesión. Al cerrar se cancelan juntas:
    ninguna subida lenta ni timer viejo puede tocar el estado después.
    """

    def __init__(self, name: str = "session"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()
        self._long_lived: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def spawn(self, coro: Coroutine, name: Optional[str] = None, long_lived: bool = False) -> asyncio.Task:
        if self._closed:
            coro.close()
            raise RuntimeError(f"TaskScope {self.name} ya está cerrado")
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        if long_lived:
            self._long_lived.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._long_lived.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Tarea %s falló: %s", task.get_name(), exc, exc_info=exc)

    async def wait_idle(self) -> None:
        """Espera a que terminen las tareas de un solo uso (escrituras, envíos)."""
        current = asyncio.current_task()
        while True:
            pending = [t for t in self._tasks if t not in self._long_lived and t is not current]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> None:
        self._closed = True
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class SingleSlotTimer:
    """Acción diferida de un solo lugar: programar de nuevo cancela la pendiente."""

    def __init__(self, scope: TaskScope, name: str):
        self._scope = scope
        self._name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, delay_ms: int, action: Callable[[], Awaitable[None]]) -> None:
        self.cancel()

        async def _fire() -> None:
            await asyncio.sleep(delay_ms / 1000)
            await action()

        self._task = self._scope.spawn(_fire(), name=self._name, long_lived=True)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
