# chatsync/services/media.py
import base64
import logging
import uuid
from pathlib import Path
from typing import Optional, Protocol, Tuple

import httpx

from chatsync.core.config import SyncConfig
from chatsync.core.errors import MediaError
from chatsync.schemas.messages import MessageKind

logger = logging.getLogger(__name__)

RAW_BASE = "https://raw.githubusercontent.com"

_FOLDERS = {
    MessageKind.IMAGE: "images/",
    MessageKind.VIDEO: "videos/",
    MessageKind.AUDIO: "audios/",
}

_DEFAULT_EXT = {
    MessageKind.IMAGE: "jpg",
    MessageKind.VIDEO: "mp4",
    MessageKind.AUDIO: "mp3",
}


class MediaStorage(Protocol):
    async def upload(self, data: bytes, destination: str) -> str: ...


def size_limit(config: SyncConfig, kind: MessageKind) -> int:
    if kind == MessageKind.VIDEO:
        return config.max_video_bytes
    if kind == MessageKind.AUDIO:
        return config.max_audio_bytes
    return config.max_image_bytes


def destination_for(path: Path, kind: MessageKind) -> str:
    """images/<uuid>.jpg, videos/<uuid>.mp4 ... La extensión del archivo manda."""
    ext = path.suffix.lstrip(".").lower()
    ext = ext or _DEFAULT_EXT.get(kind, "bin")
    folder = _FOLDERS.get(kind, _FOLDERS[MessageKind.IMAGE])
    return f"{folder}{uuid.uuid4()}.{ext}"


def prepare_upload(path: Path, kind: MessageKind, config: SyncConfig) -> Tuple[bytes, str]:
    """Valida el archivo local y devuelve (bytes, destino)."""
    if kind == MessageKind.TEXT:
        raise MediaError("Un mensaje de texto no lleva archivo")
    if not path.is_file():
        raise MediaError("El archivo ya no existe")

    size = path.stat().st_size
    limit = size_limit(config, kind)
    if size > limit:
        raise MediaError(f"El archivo supera el límite: {size // 1024}KB > {limit // 1024}KB")

    return path.read_bytes(), destination_for(path, kind)


class GithubMediaStorage:
    """Sube archivos a un repo vía la Contents API y devuelve la URL raw."""

    def __init__(
        self,
        owner: str,
        repo: str,
        branch: str = "main",
        token: str = "",
        api_url: str = "https://api.github.com",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.token = token
        self.api_url = api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    def raw_url(self, destination: str) -> str:
        return f"{RAW_BASE}/{self.owner}/{self.repo}/{self.branch}/{destination}"

    async def upload(self, data: bytes, destination: str) -> str:
        url = f"{self.api_url}/repos/{self.owner}/{self.repo}/contents/{destination}"
        kind = destination.split("/", 1)[0].rstrip("s") or "media"
        body = {
            "message": f"Upload {kind} message",
            "content": base64.b64encode(data).decode("ascii"),
            "branch": self.branch,
        }
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }
        try:
            resp = await self._client.put(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise MediaError(f"Error de subida: {e}", 502) from e

        if resp.status_code not in (200, 201):
            logger.error("GitHub upload error (%s): %s", resp.status_code, resp.text[:300])
            raise MediaError(f"Falló la subida a GitHub ({resp.status_code})", 502)

        raw = self.raw_url(destination)
        logger.info("📤 Subido %s (%d bytes)", raw, len(data))
        return raw
