"""
FirebaseStore contra httpx.MockTransport: armado de requests REST, espejo de
eventos SSE y errores.
"""

import json

import httpx
import pytest

from chatsync.core.errors import StoreError, SubscriptionError
from chatsync.services.store import FirebaseStore, apply_event, ordered_children

from conftest import wire

BASE = "https://demo-rtdb.firebaseio.com"


def make_store(handler, auth=None) -> FirebaseStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FirebaseStore(BASE, auth=auth, client=client)


def sse(*events) -> bytes:
    chunks = []
    for name, data in events:
        chunks.append(f"event: {name}\ndata: {json.dumps(data)}\n\n")
    return "".join(chunks).encode("utf-8")


# --------------------------------------------------------------------------------------
# apply_event / ordered_children
# --------------------------------------------------------------------------------------

def test_apply_event_put_root_and_child():
    root = apply_event(None, "/", {"a": {"timestamp": 1}})
    root = apply_event(root, "/b", {"timestamp": 2})
    assert set(root) == {"a", "b"}

    root = apply_event(root, "/a", None)
    assert set(root) == {"b"}

    assert apply_event(root, "/b", None) is None


def test_apply_event_patch_nested_field():
    root = {"a": {"timestamp": 1, "status": "sent"}}
    root = apply_event(root, "/a", {"status": "seen"}, patch=True)
    assert root == {"a": {"timestamp": 1, "status": "seen"}}

    root = apply_event(root, "/a/status", "delivered")
    assert root["a"]["status"] == "delivered"


def test_apply_event_scalar_value():
    assert apply_event(None, "/", True) is True
    assert apply_event(True, "/", False) is False


def test_ordered_children_sorts_and_trims():
    root = {"x": {"timestamp": 30}, "y": {"timestamp": 10}, "z": {"timestamp": 20}}
    assert [c["timestamp"] for c in ordered_children(root, "timestamp")] == [10, 20, 30]
    assert [c["timestamp"] for c in ordered_children(root, "timestamp", 2)] == [20, 30]
    assert ordered_children(None, "timestamp") == []


# --------------------------------------------------------------------------------------
# Escrituras y consultas
# --------------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_put_sends_json_to_node_url_with_auth():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    store = make_store(handler, auth="secreto")
    await store.put("chats/c/messages/m1", wire("m1", 5))
    await store.set_field("typing/daymaker", True)
    await store.remove("chats/c/messages/m1")

    put, typing, delete = seen
    assert put.method == "PUT"
    assert put.url.path == "/chats/c/messages/m1.json"
    assert put.url.params["auth"] == "secreto"
    assert json.loads(put.content)["messageId"] == "m1"
    assert json.loads(typing.content) is True
    assert delete.method == "DELETE"


@pytest.mark.asyncio
async def test_query_older_than_builds_firebase_query():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["params"] = request.url.params
        return httpx.Response(200, json={"m2": wire("m2", 75), "m1": wire("m1", 50)})

    store = make_store(handler)
    page = await store.query_older_than("chats/c/messages", "timestamp", 100, 10)

    assert [m["messageId"] for m in page] == ["m1", "m2"]
    assert captured["params"]["orderBy"] == '"timestamp"'
    assert captured["params"]["endAt"] == "99"
    assert captured["params"]["limitToLast"] == "10"
    assert "auth" not in captured["params"]


@pytest.mark.asyncio
async def test_query_older_than_empty_result():
    store = make_store(lambda request: httpx.Response(200, json=None))
    assert await store.query_older_than("chats/c/messages", "timestamp", 100, 10) == []


@pytest.mark.asyncio
async def test_http_error_becomes_store_error():
    store = make_store(lambda request: httpx.Response(401, json={"error": "Permission denied"}))
    with pytest.raises(StoreError) as exc:
        await store.put("typing/daymaker", True)
    assert "401" in exc.value.message


# --------------------------------------------------------------------------------------
# Streams
# --------------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_subscribe_recent_mirrors_put_and_patch_events():
    body = sse(
        ("put", {"path": "/", "data": {"m1": wire("m1", 10), "m2": wire("m2", 20)}}),
        ("keep-alive", None),
        ("put", {"path": "/m3", "data": wire("m3", 30)}),
        ("patch", {"path": "/m1", "data": {"status": "seen"}}),
        ("put", {"path": "/m2", "data": None}),
    )
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    store = make_store(handler)
    snapshots = [s async for s in store.subscribe_recent("chats/c/messages", "timestamp", 2)]

    assert requests[0].headers["accept"] == "text/event-stream"
    assert requests[0].url.params["limitToLast"] == "2"
    assert [[m["messageId"] for m in s] for s in snapshots] == [
        ["m1", "m2"],
        ["m2", "m3"],
        ["m2", "m3"],
        ["m1", "m3"],
    ]
    assert snapshots[-1][0]["status"] == "seen"


@pytest.mark.asyncio
async def test_subscribe_value_yields_scalars():
    body = sse(
        ("put", {"path": "/", "data": None}),
        ("put", {"path": "/", "data": "online"}),
    )
    store = make_store(lambda request: httpx.Response(200, content=body))

    values = [v async for v in store.subscribe_value("status/mystiqueen")]

    assert values == [None, "online"]


@pytest.mark.asyncio
async def test_cancel_event_ends_subscription_with_error():
    body = sse(
        ("put", {"path": "/", "data": True}),
        ("cancel", None),
    )
    store = make_store(lambda request: httpx.Response(200, content=body))

    values = []
    with pytest.raises(SubscriptionError):
        async for v in store.subscribe_value("typing/mystiqueen"):
            values.append(v)
    assert values == [True]


@pytest.mark.asyncio
async def test_stream_http_error_is_subscription_error():
    store = make_store(lambda request: httpx.Response(403, text="forbidden"))
    with pytest.raises(SubscriptionError):
        async for _ in store.subscribe_value("typing/mystiqueen"):
            pass


@pytest.mark.asyncio
async def test_transport_failure_is_subscription_error():
    def handler(request):
        raise httpx.ConnectError("sin red", request=request)

    store = make_store(handler)
    with pytest.raises(SubscriptionError):
        async for _ in store.subscribe_recent("chats/c/messages", "timestamp", 10):
            pass
