# chatsync/services/store.py
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

import httpx

from chatsync.core.errors import StoreError, SubscriptionError

logger = logging.getLogger(__name__)


class RemoteStore(Protocol):
    """Base remota ordenada clave/valor (colaborador externo)."""

    async def put(self, path: str, value: Any) -> None: ...

    def subscribe_recent(self, path: str, order_key: str, limit: int) -> AsyncIterator[List[Dict[str, Any]]]: ...

    async def query_older_than(self, path: str, order_key: str, cutoff: int, limit: int) -> List[Dict[str, Any]]: ...

    async def set_field(self, path: str, value: Any) -> None: ...

    def subscribe_value(self, path: str) -> AsyncIterator[Any]: ...

    async def remove(self, path: str) -> None: ...


# --------------------------------------------------------------------------------------
# Helpers del espejo local (eventos put/patch del stream REST)
# --------------------------------------------------------------------------------------

def apply_event(root: Any, path: str, data: Any, patch: bool = False) -> Any:
    """
    Aplica un evento put/patch sobre el valor espejado y devuelve el nuevo valor.
    `path` es relativo a la ubicación suscrita ("/" es la raíz). Un valor None borra.
    """
    parts = [p for p in path.split("/") if p]
    if not parts:
        if not patch:
            return data
        merged = dict(root) if isinstance(root, dict) else {}
        for key, value in (data or {}).items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        return merged or None

    merged = dict(root) if isinstance(root, dict) else {}
    merged[parts[0]] = apply_event(merged.get(parts[0]), "/".join(parts[1:]), data, patch)
    if merged[parts[0]] is None:
        merged.pop(parts[0])
    return merged or None


def ordered_children(root: Any, order_key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    if not isinstance(root, dict):
        return []

    def _order(child: Any) -> Any:
        if isinstance(child, dict):
            return child.get(order_key) or 0
        return 0

    children = sorted(root.values(), key=_order)
    if limit is not None:
        children = children[-limit:] if limit > 0 else []
    return children


async def iter_sse(response: httpx.Response) -> AsyncIterator[Tuple[str, str]]:
    """Parsea un stream text/event-stream en pares (event, data)."""
    event = "message"
    data_lines: List[str] = []
    async for line in response.aiter_lines():
        if line == "":
            if data_lines:
                yield event, "\n".join(data_lines)
            event, data_lines = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)
    if data_lines:
        yield event, "\n".join(data_lines)


class FirebaseStore:
    """RemoteStore sobre la API REST de Firebase Realtime Database."""

    def __init__(
        self,
        base_url: str,
        auth: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = auth or None
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.strip('/')}.json"

    def _params(self, **extra: Any) -> Dict[str, Any]:
        params = {k: v for k, v in extra.items() if v is not None}
        if self.auth:
            params["auth"] = self.auth
        return params

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, self._url(path), **kwargs)
        except httpx.HTTPError as e:
            raise StoreError(f"Error de red en {method} {path}: {e}") from e
        if resp.status_code >= 300:
            logger.error("Firebase %s %s (%s): %s", method, path, resp.status_code, resp.text[:200])
            raise StoreError(f"Firebase respondió {resp.status_code} en {method} {path}")
        return resp

    # --- escrituras ---

    async def put(self, path: str, value: Any) -> None:
        await self._request("PUT", path, params=self._params(), json=value)
        logger.debug("PUT %s ok", path)

    async def set_field(self, path: str, value: Any) -> None:
        await self._request("PUT", path, params=self._params(), json=value)

    async def remove(self, path: str) -> None:
        await self._request("DELETE", path, params=self._params())

    # --- lecturas ---

    async def query_older_than(self, path: str, order_key: str, cutoff: int, limit: int) -> List[Dict[str, Any]]:
        params = self._params(
            orderBy=json.dumps(order_key),
            endAt=cutoff - 1,
            limitToLast=limit,
        )
        resp = await self._request("GET", path, params=params)
        return ordered_children(resp.json(), order_key)

    async def _stream(self, path: str, params: Dict[str, Any]) -> AsyncIterator[Any]:
        """Mantiene un espejo de la ubicación y emite el valor completo tras cada cambio."""
        headers = {"Accept": "text/event-stream"}
        root: Any = None
        try:
            async with self._client.stream(
                "GET",
                self._url(path),
                params=params,
                headers=headers,
                timeout=httpx.Timeout(self.timeout, read=None),
            ) as resp:
                if resp.status_code >= 300:
                    body = (await resp.aread()).decode("utf-8", "replace")
                    raise SubscriptionError(f"Firebase respondió {resp.status_code} al suscribir {path}: {body[:200]}")
                async for event, raw in iter_sse(resp):
                    if event == "keep-alive":
                        continue
                    if event in ("cancel", "auth_revoked"):
                        raise SubscriptionError(f"Suscripción a {path} terminada por el servidor ({event})")
                    if event not in ("put", "patch"):
                        continue
                    try:
                        payload = json.loads(raw)
                    except ValueError:
                        logger.warning("Evento %s ilegible en %s: %s", event, path, raw[:200])
                        continue
                    if not isinstance(payload, dict):
                        continue
                    root = apply_event(root, payload.get("path", "/"), payload.get("data"), patch=(event == "patch"))
                    yield root
        except httpx.HTTPError as e:
            raise SubscriptionError(f"Stream de {path} caído: {e}") from e

    async def subscribe_recent(self, path: str, order_key: str, limit: int) -> AsyncIterator[List[Dict[str, Any]]]:
        params = self._params(orderBy=json.dumps(order_key), limitToLast=limit)
        async for root in self._stream(path, params):
            yield ordered_children(root, order_key, limit)

    async def subscribe_value(self, path: str) -> AsyncIterator[Any]:
        async for root in self._stream(path, self._params()):
            yield root
