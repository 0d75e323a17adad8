import asyncio
import json

import httpx
import pytest

from leadflow.contracts import HttpRequest
from leadflow.errors import HttpCallError, HttpTimeoutError
from leadflow.http import encode_body


@pytest.mark.asyncio
async def test_json_text_and_binary_bodies_are_decoded(mock_http):
    def handler(request):
        if request.url.path == "/json":
            return httpx.Response(200, json={"a": 1})
        if request.url.path == "/text":
            return httpx.Response(200, text="hello")
        return httpx.Response(
            200, content=b"\x89PNG", headers={"content-type": "image/png"}
        )

    http = mock_http(handler)

    assert (await http.execute(HttpRequest(url="http://h.test/json"))).data == {"a": 1}
    assert (await http.execute(HttpRequest(url="http://h.test/text"))).data == "hello"
    assert (await http.execute(HttpRequest(url="http://h.test/png"))).data == b"\x89PNG"


@pytest.mark.asyncio
async def test_status_codes_are_not_interpreted(mock_http):
    http = mock_http(lambda request: httpx.Response(404, json={"detail": "missing"}))

    response = await http.execute(HttpRequest(url="http://h.test/x"))

    assert response.status == 404
    assert not response.ok
    assert response.reason == "Not Found"
    assert response.data == {"detail": "missing"}


@pytest.mark.asyncio
async def test_structured_body_is_sent_as_json(mock_http):
    seen = {}

    def handler(request):
        seen["content_type"] = request.headers.get("content-type")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201)

    http = mock_http(handler)
    await http.execute(
        HttpRequest(url="http://h.test/leads", method="post", body={"name": "Ada"})
    )

    assert seen == {"content_type": "application/json", "body": {"name": "Ada"}}


def test_string_body_passes_through_without_content_type():
    headers = {}
    assert encode_body("raw=1", headers) == "raw=1"
    assert headers == {}
    headers = {"content-type": "application/vnd.api+json"}
    assert encode_body([1], headers) == "[1]"
    assert headers == {"content-type": "application/vnd.api+json"}


@pytest.mark.asyncio
async def test_timeout_cancels_the_call(mock_http):
    async def slow(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    http = mock_http(slow)

    with pytest.raises(HttpTimeoutError) as excinfo:
        await http.execute(HttpRequest(url="http://h.test/slow", timeoutMs=50))
    assert excinfo.value.timeout_ms == 50


@pytest.mark.asyncio
async def test_network_error_is_wrapped(mock_http):
    def handler(request):
        raise httpx.ConnectError("no route to host", request=request)

    with pytest.raises(HttpCallError, match="no route to host"):
        await mock_http(handler).execute(HttpRequest(url="http://h.test/"))


@pytest.mark.asyncio
async def test_invalid_json_falls_back_to_text(mock_http):
    def handler(request):
        return httpx.Response(
            200, content=b"{broken", headers={"content-type": "application/json"}
        )

    response = await mock_http(handler).execute(HttpRequest(url="http://h.test/"))

    assert response.data == "{broken"
