import logging
from collections import deque
from typing import Deque, Protocol, Tuple

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, title: str, body: str) -> None: ...


class LoggingNotifier:
    """Presentador por defecto: loguea y guarda las últimas notificaciones."""

    def __init__(self, keep: int = 50):
        self.recent: Deque[Tuple[str, str]] = deque(maxlen=keep)

    def notify(self, title: str, body: str) -> None:
        self.recent.append((title, body))
        logger.info("🔔 %s: %s", title, body[:100])
