import asyncio
import json

import httpx
import pytest

from bulk_data.errors import DownloadError, ResourceValidationError, TaskCanceledError
from bulk_data.importer import download_task
from bulk_data.importer.download_task import DownloadTask
from tests.conftest import make_resource


def ndjson(*resources):
    return "\n".join(json.dumps(r) for r in resources).encode("utf-8")


def client_for(routes):
    """An AsyncClient answering from a {url: Response} map."""
    def handler(request):
        factory = routes.get(str(request.url))
        if factory is None:
            return httpx.Response(404)
        return factory(request)
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def serve(body, content_type="application/fhir+ndjson", status_code=200):
    def factory(_request):
        return httpx.Response(status_code, content=body, headers={"content-type": content_type})
    return factory


async def collect(task):
    return [resource async for resource in task.start()]


async def test_downloads_and_validates():
    body = ndjson(make_resource(), make_resource())
    async with client_for({"https://files.test/Patient.ndjson": serve(body)}) as client:
        task = DownloadTask("https://files.test/Patient.ndjson", "Patient", client=client)
        await task.init()
        assert task.total == len(body)

        resources = await collect(task)

    assert len(resources) == 2
    assert task.count == 2
    assert task.position == len(body)
    assert task.ended
    assert task.error is None
    assert task.to_json()["count"] == 2


async def test_start_initializes_when_needed():
    body = ndjson(make_resource("Observation"))
    async with client_for({"https://files.test/obs": serve(body, "text/plain")}) as client:
        task = DownloadTask("https://files.test/obs", "Observation", client=client)
        resources = await collect(task)
    assert len(resources) == 1


async def test_rejects_plain_http():
    task = DownloadTask("http://files.test/Patient.ndjson", "Patient")
    with pytest.raises(DownloadError, match='Protocol "http:" not supported'):
        await task.init()
    assert task.ended
    assert isinstance(task.error, DownloadError)


async def test_http_errors_end_the_task():
    async with client_for({}) as client:
        task = DownloadTask("https://files.test/missing", "Patient", client=client)
        with pytest.raises(DownloadError, match="404 Not Found"):
            await task.init()
    assert str(task.error) == "404 Not Found"


async def test_rejects_unknown_content_type():
    routes = {"https://files.test/page": serve(b"<html></html>", "text/html; charset=utf-8")}
    async with client_for(routes) as client:
        task = DownloadTask("https://files.test/page", "Patient", client=client)
        with pytest.raises(DownloadError, match='content-type "text/html"'):
            await task.init()


async def test_missing_content_type_is_treated_as_binary():
    body = ndjson(make_resource())

    def factory(_request):
        return httpx.Response(200, content=body, headers={"content-type": ""})

    async with client_for({"https://files.test/raw": factory}) as client:
        task = DownloadTask("https://files.test/raw", "Patient", client=client)
        resources = await collect(task)
    assert len(resources) == 1


async def test_follows_redirects():
    body = ndjson(make_resource())
    routes = {
        "https://files.test/old": lambda r: httpx.Response(302, headers={"location": "https://files.test/new"}),
        "https://files.test/new": serve(body),
    }
    async with client_for(routes) as client:
        task = DownloadTask("https://files.test/old", "Patient", client=client)
        resources = await collect(task)
    assert len(resources) == 1


async def test_too_many_redirects(monkeypatch):
    monkeypatch.setattr("bulk_data.importer.download_task.settings.max_redirects", 2)
    routes = {
        "https://files.test/loop": lambda r: httpx.Response(302, headers={"location": "https://files.test/loop"}),
    }
    async with client_for(routes) as client:
        task = DownloadTask("https://files.test/loop", "Patient", client=client)
        with pytest.raises(DownloadError, match="Too many redirects"):
            await task.init()


async def test_redirect_to_http_is_rejected():
    routes = {
        "https://files.test/a": lambda r: httpx.Response(301, headers={"location": "http://files.test/b"}),
    }
    async with client_for(routes) as client:
        task = DownloadTask("https://files.test/a", "Patient", client=client)
        with pytest.raises(DownloadError, match="not supported"):
            await task.init()


async def test_invalid_resource_ends_with_error():
    body = ndjson(make_resource(), make_resource("Observation"))
    async with client_for({"https://files.test/mixed": serve(body)}) as client:
        task = DownloadTask("https://files.test/mixed", "Patient", client=client)
        with pytest.raises(ResourceValidationError, match="resource number 2"):
            await collect(task)
    assert task.count == 1
    assert task.ended
    assert isinstance(task.error, ResourceValidationError)


async def test_malformed_trailing_line_is_reported():
    body = ndjson(make_resource()) + b'\n{"resourceType":'
    async with client_for({"https://files.test/cut": serve(body)}) as client:
        task = DownloadTask("https://files.test/cut", "Patient", client=client)
        with pytest.raises(ValueError, match="line 2"):
            await collect(task)
    assert task.count == 1
    assert task.error is not None


async def test_cancel_closes_the_open_response():
    release = asyncio.Event()

    async def stalled():
        yield ndjson(make_resource()) + b"\n"
        await release.wait()

    def factory(_request):
        return httpx.Response(200, content=stalled(), headers={"content-type": "application/fhir+ndjson"})

    async with client_for({"https://files.test/slow": factory}) as client:
        task = DownloadTask("https://files.test/slow", "Patient", client=client)
        await task.init()
        before = set(download_task._closing)
        task.cancel()
        closing = download_task._closing - before
        assert len(closing) == 1

        for _ in range(10):
            await asyncio.sleep(0)
        release.set()

        assert task.response.is_closed
        assert not download_task._closing & closing
    assert isinstance(task.error, TaskCanceledError)
