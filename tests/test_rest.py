import json

import httpx
import pytest

from arena_realtime_core import ChatApi, ChatApiError


def make_api(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatApi("http://api.test/api/", http=http, **kwargs), http


@pytest.mark.asyncio
async def test_send_message_posts_text_and_returns_id():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"id": "m42", "createdAt": "2024-05-01T12:00:00Z"})

    api, http = make_api(handler, token="secret")
    result = await api.send_message("t 1", "hello")
    assert result["id"] == "m42"
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == "http://api.test/api/threads/t%201/messages"
    assert json.loads(request.content) == {"text": "hello"}
    assert request.headers["Authorization"] == "Bearer secret"
    await http.aclose()


@pytest.mark.asyncio
async def test_send_message_without_id_is_an_error():
    api, http = make_api(lambda request: httpx.Response(200, json={}))
    with pytest.raises(ChatApiError):
        await api.send_message("t1", "hello")
    await http.aclose()


@pytest.mark.asyncio
async def test_error_status_raises_with_code():
    api, http = make_api(lambda request: httpx.Response(403, text="blocked"))
    with pytest.raises(ChatApiError) as info:
        await api.mark_read("t1")
    assert info.value.status_code == 403
    assert info.value.detail == "blocked"
    await http.aclose()


@pytest.mark.asyncio
async def test_transport_failure_raises_api_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    api, http = make_api(handler)
    with pytest.raises(ChatApiError) as info:
        await api.list_threads()
    assert info.value.status_code is None
    await http.aclose()


@pytest.mark.asyncio
async def test_get_messages_passes_cursor_and_limit():
    seen = []

    def handler(request):
        seen.append(request.url)
        return httpx.Response(200, json=[{"id": "m1"}])

    api, http = make_api(handler)
    assert await api.get_messages("t1", cursor="abc", limit=20) == [{"id": "m1"}]
    assert seen[0].params["cursor"] == "abc"
    assert seen[0].params["limit"] == "20"
    await http.aclose()


@pytest.mark.asyncio
async def test_settings_and_block_endpoints():
    calls = []

    def handler(request):
        calls.append((request.url.path, request.content))
        return httpx.Response(204)

    api, http = make_api(handler)
    assert await api.block("t1") == {}
    assert await api.unblock("t1") == {}
    await api.update_settings("t1", disappearing_after_hours=24)
    assert [path for path, _ in calls] == [
        "/api/threads/t1/block",
        "/api/threads/t1/unblock",
        "/api/threads/t1/settings",
    ]
    assert json.loads(calls[2][1]) == {"disappearingAfterHours": 24}
    with pytest.raises(ValueError):
        await api.update_settings("t1", disappearing_after_hours=-1)
    await http.aclose()


@pytest.mark.asyncio
async def test_owned_client_is_closed_on_exit():
    async with ChatApi("http://api.test") as api:
        http = api.http
    assert http.is_closed
