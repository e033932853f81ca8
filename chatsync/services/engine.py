# chatsync/services/engine.py
import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, FrozenSet, List, Optional, Sequence

from pydantic import ValidationError

from chatsync.core.config import SyncConfig
from chatsync.core.errors import MediaError
from chatsync.schemas.messages import DeliveryState, Message, MessageKind, new_message_id
from chatsync.services.media import MediaStorage, prepare_upload
from chatsync.services.notifier import LoggingNotifier, Notifier
from chatsync.services.state import ChatState, PagingState, StateHolder
from chatsync.services.store import RemoteStore
from chatsync.services.sync import MergeResult, merge_local, merge_older, merge_snapshot, without
from chatsync.services.tasks import SingleSlotTimer, TaskScope

logger = logging.getLogger(__name__)

ORDER_KEY = "timestamp"
ONLINE = "online"
OFFLINE = "offline"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChatSession:
    """
    Motor de sincronización de una conversación entre dos participantes.

    Mantiene la ventana de mensajes en memoria reconciliando la suscripción a los
    últimos K mensajes con las páginas viejas pedidas a demanda, promueve estados
    de entrega y publica typing/presencia del otro participante. Todo lo que corre
    en segundo plano vive en un TaskScope que se cancela en close().
    """

    def __init__(
        self,
        config: SyncConfig,
        store: RemoteStore,
        media: MediaStorage,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.config = config
        self.state = StateHolder()
        self._store = store
        self._media = media
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._scope = TaskScope(f"chat:{config.chat_id}")
        self._typing_timer = SingleSlotTimer(self._scope, "typing-timeout")
        self._status_timer = SingleSlotTimer(self._scope, "status-promotion")
        self._subscriptions: Dict[str, asyncio.Task] = {}
        self._observed: Dict[str, DeliveryState] = {}
        self._promoted: FrozenSet[str] = frozenset()
        self._had_snapshot = False
        self._started = False

    # ---------- ciclo de vida ----------

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def store(self) -> RemoteStore:
        return self._store

    @property
    def media(self) -> MediaStorage:
        return self._media

    @property
    def closed(self) -> bool:
        return self._scope.closed

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._start_subscriptions()
        self.set_online(True)
        logger.info("Sesión %s iniciada como %s", self.config.chat_id, self.config.local_user_id)

    def reconnect(self) -> List[str]:
        """Vuelve a levantar las suscripciones que terminaron. Devuelve cuáles."""
        return self._start_subscriptions()

    async def close(self) -> None:
        if self._scope.closed:
            return
        self._typing_timer.cancel()
        self._status_timer.cancel()
        try:
            await self._store.set_field(self.config.status_path(self.config.local_user_id), OFFLINE)
        except Exception as e:
            logger.warning("No se pudo publicar offline: %s", e)
        await self._scope.cancel_all()
        logger.info("Sesión %s cerrada", self.config.chat_id)

    async def wait_idle(self) -> None:
        await self._scope.wait_idle()

    def _start_subscriptions(self) -> List[str]:
        runners = {
            "messages": self._run_messages,
            "typing": self._run_typing,
            "presence": self._run_presence,
        }
        started = []
        for name, runner in runners.items():
            task = self._subscriptions.get(name)
            if task is not None and not task.done():
                continue
            self._subscriptions[name] = self._scope.spawn(runner(), name=f"sub:{name}", long_lived=True)
            started.append(name)
        return started

    def subscription_alive(self, name: str) -> bool:
        task = self._subscriptions.get(name)
        return task is not None and not task.done()

    # ---------- helpers ----------

    def _fire(self, coro: Coroutine, what: str) -> None:
        """Escritura fire-and-forget: el fallo se loguea y no se reintenta."""
        if self._scope.closed:
            coro.close()
            logger.debug("Sesión cerrada, se descarta: %s", what)
            return

        async def _guarded() -> None:
            try:
                await coro
            except Exception as e:
                logger.error("❌ Falló %s: %s", what, e)

        self._scope.spawn(_guarded(), name=what)

    def _message_path(self, message_id: str) -> str:
        return f"{self.config.messages_path}/{message_id}"

    def _parse(self, raw: Sequence[Any]) -> List[Message]:
        parsed = []
        for child in raw:
            try:
                parsed.append(Message.model_validate(child))
            except ValidationError as e:
                logger.warning("Mensaje ilegible en snapshot, se omite: %s", e.errors()[:1])
        return parsed

    def _build(
        self,
        kind: MessageKind,
        body: str = "",
        media_ref: str = "",
        message_id: Optional[str] = None,
        reply_to_id: Optional[str] = None,
        reply_preview: Optional[str] = None,
    ) -> Message:
        return Message(
            id=message_id or new_message_id(),
            sender_id=self.config.local_user_id,
            receiver_id=self.config.remote_user_id,
            kind=kind,
            body=body,
            media_ref=media_ref,
            sent_at=self._clock(),
            delivery_state=DeliveryState.SENT,
            reply_to_id=reply_to_id,
            reply_preview=reply_preview,
        )

    # ---------- ventana en vivo ----------

    async def _run_messages(self) -> None:
        path = self.config.messages_path
        try:
            async for raw in self._store.subscribe_recent(path, ORDER_KEY, self.config.recent_window_size):
                self.apply_snapshot(self._parse(raw))
        except Exception as e:
            logger.error("Suscripción de mensajes terminada: %s", e)
        else:
            logger.info("Suscripción de mensajes cerrada por el servidor")

    def apply_snapshot(self, snapshot: Sequence[Message]) -> MergeResult:
        current = self.state.value
        result = merge_snapshot(
            current.messages,
            snapshot,
            self.config.local_user_id,
            observed=self._observed,
            first_snapshot=not self._had_snapshot,
            promoted=self._promoted,
        )
        self._had_snapshot = True
        self._observed = result.observed
        self._promoted = result.promoted
        self.state.update(messages=result.messages, oldest_sent_at=result.oldest_sent_at)

        for message_id in result.to_promote:
            self._fire(
                self._store.set_field(f"{self._message_path(message_id)}/status", DeliveryState.SEEN.value),
                f"marcar {message_id} como visto",
            )
        for msg in result.new_inbound:
            self._notify(msg)
        return result

    def _notify(self, msg: Message) -> None:
        try:
            self._notifier.notify(self.config.remote_user_id, msg.preview_text())
        except Exception as e:
            logger.warning("No se pudo notificar %s: %s", msg.id, e)

    # ---------- typing / presencia ----------

    async def _run_typing(self) -> None:
        try:
            async for value in self._store.subscribe_value(self.config.typing_path(self.config.remote_user_id)):
                self.state.update(remote_typing=value is True)
        except Exception as e:
            logger.warning("Suscripción de typing terminada: %s", e)
        # sin señal no hay "escribiendo..."
        self.state.update(remote_typing=False)

    async def _run_presence(self) -> None:
        try:
            async for value in self._store.subscribe_value(self.config.status_path(self.config.remote_user_id)):
                status = value if isinstance(value, str) and value else OFFLINE
                self.state.update(remote_presence=status)
        except Exception as e:
            logger.warning("Suscripción de presencia terminada: %s", e)
        self.state.update(remote_presence=OFFLINE)

    def _publish_typing(self, is_typing: bool) -> None:
        self._fire(
            self._store.set_field(self.config.typing_path(self.config.local_user_id), is_typing),
            f"typing={is_typing}",
        )

    async def _typing_expired(self) -> None:
        await self._store.set_field(self.config.typing_path(self.config.local_user_id), False)

    def on_text_change(self, text: str) -> None:
        self.state.update(input_text=text)
        self._typing_timer.cancel()
        if self._scope.closed:
            return
        if text.strip():
            self._publish_typing(True)
            self._typing_timer.schedule(self.config.typing_timeout_ms, self._typing_expired)
        else:
            self._publish_typing(False)

    def set_online(self, online: bool) -> None:
        self._fire(
            self._store.set_field(self.config.status_path(self.config.local_user_id), ONLINE if online else OFFLINE),
            f"presencia={'online' if online else 'offline'}",
        )

    # ---------- envío ----------

    async def _deliver(self, msg: Message) -> bool:
        try:
            await self._store.put(self._message_path(msg.id), msg.to_wire())
        except Exception as e:
            logger.error("❌ No se pudo enviar %s: %s", msg.id, e)
            return False
        logger.info("📤 Enviado %s (%s)", msg.id, msg.kind.value)
        self._schedule_delivered(msg.id)
        return True

    def _schedule_delivered(self, message_id: str) -> None:
        async def _promote() -> None:
            await self._store.set_field(f"{self._message_path(message_id)}/status", DeliveryState.DELIVERED.value)

        self._status_timer.schedule(self.config.status_promotion_delay_ms, _promote)

    def send_text(
        self,
        text: Optional[str] = None,
        message_id: Optional[str] = None,
        reply_to_id: Optional[str] = None,
        reply_preview: Optional[str] = None,
    ) -> Optional[Message]:
        """Envía `text` (o el buffer de entrada). Vacío o solo espacios no hace nada."""
        body = (self.state.value.input_text if text is None else text).strip()
        if not body:
            logger.warning("Se intentó enviar un mensaje vacío")
            return None

        msg = self._build(
            MessageKind.TEXT,
            body=body,
            message_id=message_id,
            reply_to_id=reply_to_id,
            reply_preview=reply_preview,
        )
        self.state.update(messages=merge_local(self.state.value.messages, msg), input_text="")
        self._typing_timer.cancel()
        self._publish_typing(False)

        if self._scope.closed:
            logger.warning("Sesión cerrada, %s no se envía", msg.id)
            return msg
        self._scope.spawn(self._deliver(msg), name=f"send:{msg.id}")
        return msg

    async def send_media(self, path: Path, kind: MessageKind) -> Optional[Message]:
        """Sube el archivo y envía el mensaje. Los errores quedan en state.error."""
        task = self._scope.spawn(self._send_media(Path(path), kind), name=f"media:{kind.value}")
        return await task

    async def _send_media(self, path: Path, kind: MessageKind) -> Optional[Message]:
        self.state.update(loading=True, error=None, upload_progress=0)
        try:
            data, destination = prepare_upload(path, kind, self.config)
            logger.info("Subiendo %s (%s, %d bytes)", path.name, kind.value, len(data))
            url = await self._media.upload(data, destination)
            if not url:
                raise MediaError("No se obtuvo la URL del archivo")

            msg = self._build(kind, media_ref=url)
            self.state.update(messages=merge_local(self.state.value.messages, msg), upload_progress=100)
            await self._deliver(msg)

            # liberar el temporal local
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("No se pudo borrar %s: %s", path, e)
            return msg
        except MediaError as e:
            logger.error("Falló el envío de media: %s", e.message)
            self.state.update(error=e.message)
        except OSError as e:
            logger.error("Error leyendo %s: %s", path, e)
            self.state.update(error=f"Error de subida: {e}")
        except Exception as e:
            logger.exception("Error inesperado subiendo %s", path.name)
            self.state.update(error=f"Error de subida: {e}")
        finally:
            self.state.update(loading=False)
        return None

    # ---------- paginación ----------

    async def load_older(self) -> int:
        """Trae la página anterior al mensaje más viejo cargado. Devuelve cuántos se sumaron."""
        current = self.state.value
        if current.oldest_sent_at is None or current.paging == PagingState.FETCHING:
            return 0

        self.state.update(paging=PagingState.FETCHING)
        try:
            raw = await self._scope.spawn(
                self._store.query_older_than(
                    self.config.messages_path, ORDER_KEY, current.oldest_sent_at, self.config.page_size
                ),
                name="paginate",
            )
        except Exception as e:
            logger.error("No se pudieron cargar mensajes anteriores: %s", e)
            return 0
        finally:
            self.state.update(paging=PagingState.IDLE)

        older = self._parse(raw)
        if not older:
            return 0

        before = len(self.state.value.messages)
        result = merge_older(self.state.value.messages, older)
        self.state.update(messages=result.messages, oldest_sent_at=result.oldest_sent_at)
        logger.debug("Paginación: %d mensajes nuevos", len(result.messages) - before)
        return len(result.messages) - before

    # ---------- varios ----------

    def delete_message(self, message_id: str) -> None:
        remaining = without(self.state.value.messages, message_id)
        oldest = min((m.sent_at for m in remaining), default=None)
        self.state.update(messages=remaining, oldest_sent_at=oldest)
        self._observed.pop(message_id, None)
        self._promoted = self._promoted - {message_id}
        self._fire(self._store.remove(self._message_path(message_id)), f"borrar {message_id}")

    def clear_error(self) -> None:
        self.state.update(error=None)

    @property
    def snapshot(self) -> ChatState:
        return self.state.value
