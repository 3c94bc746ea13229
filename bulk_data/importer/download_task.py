import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional, Set
from urllib.parse import urlsplit

import httpx

from bulk_data.config import settings
from bulk_data.errors import DownloadError
from bulk_data.importer.ndjson import NDJSONParser
from bulk_data.importer.task import Task, uint
from bulk_data.importer.validator import ResourceValidator

logger = logging.getLogger(__name__)

# Responses being closed after a cancel, kept until the close completes
_closing: Set[asyncio.Task] = set()

ACCEPTED_CONTENT_TYPES = (
    "application/fhir+ndjson",
    "application/ndjson",
    "application/x-ndjson",
    "application/json",
    "application/fhir+json",
    "text/plain",
    "application/octet-stream",
)


def create_http_client(**kwargs) -> httpx.AsyncClient:
    """HTTP client used for NDJSON downloads."""
    kwargs.setdefault("timeout", httpx.Timeout(settings.download_timeout, read=None))
    kwargs.setdefault("follow_redirects", False)
    return httpx.AsyncClient(**kwargs)


class DownloadTask(Task):
    """
    Downloads one remote NDJSON file and validates its resources.

    `position` is the number of bytes downloaded so far, `total` is the
    declared content length (0 if unknown) and `count` is the number of
    valid resources parsed so far.
    """

    auto_end = False

    def __init__(self, url: str, type: str, client: Optional[httpx.AsyncClient] = None, **options):
        super().__init__(url=url, type=type, **options)
        self.url = url
        self.type = type
        self.count = 0
        self.client = client
        self.response: Optional[httpx.Response] = None

    def _check_protocol(self, url) -> None:
        scheme = urlsplit(str(url)).scheme.lower()
        if scheme != "https":
            raise DownloadError(
                f'Protocol "{scheme}:" not supported for "{url}". '
                'Only "https:" downloads are allowed.'
            )

    async def _request(self, client: httpx.AsyncClient) -> httpx.Response:
        request = client.build_request("GET", self.url)
        response = await client.send(request, stream=True, follow_redirects=False)
        redirects = 0
        while response.is_redirect:
            await response.aclose()
            redirects += 1
            if redirects > settings.max_redirects:
                raise DownloadError(
                    f"Too many redirects (more than {settings.max_redirects}) "
                    f'while requesting "{self.url}"'
                )
            request = response.next_request
            self._check_protocol(request.url)
            response = await client.send(request, stream=True, follow_redirects=False)
        return response

    async def init(self) -> httpx.Response:
        """
        Make the request and wait for the response headers only. The body is
        consumed later by `start()`.
        """
        self.start_time = time.time()
        try:
            self._check_protocol(self.url)
            if self.client is None:
                self.client = create_http_client()
                self.options["owns_client"] = True

            try:
                response = await self._request(self.client)
            except httpx.HTTPError as e:
                raise DownloadError(f'Requesting "{self.url}" failed: {e}') from e

            if response.status_code >= 400:
                await response.aclose()
                raise DownloadError(f"{response.status_code} {response.reason_phrase}")

            header = response.headers.get("content-type") or "application/octet-stream"
            content_type = header.split(";")[0].strip().lower()
            if content_type not in ACCEPTED_CONTENT_TYPES:
                await response.aclose()
                raise DownloadError(
                    f'The "{self.url}" file was served with content-type "{content_type}". '
                    f'Accepted content types are "{", ".join(ACCEPTED_CONTENT_TYPES)}".'
                )

            self.total = uint(response.headers.get("content-length"))
            self.response = response
            logger.info(
                "Download of %s accepted (content-type=%s, content-length=%s)",
                self.url, content_type, self.total or "unknown"
            )
            return response
        except Exception as e:
            self.end(e)
            await self._close_client()
            raise

    def start(self) -> AsyncIterator[Dict[str, Any]]:
        """Return an async iterator over the validated resources of the file."""
        return self._pipeline()

    async def _pipeline(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            if self.response is None:
                await self.init()

            parser = NDJSONParser()
            validator = ResourceValidator(self.type)

            async for chunk in self.response.aiter_bytes():
                if self.ended:
                    break
                self.position = self.response.num_bytes_downloaded
                for resource in parser.feed(chunk):
                    yield validator.validate(resource)
                    self.count += 1

            if not self.ended:
                for resource in parser.close():
                    yield validator.validate(resource)
                    self.count += 1
                self.end()
        except asyncio.CancelledError:
            self.cancel()
            raise
        except Exception as e:
            self.end(e)
            raise
        finally:
            if self.response is not None:
                await self.response.aclose()
            await self._close_client()

    async def _close_client(self) -> None:
        if self.options.pop("owns_client", False) and self.client is not None:
            await self.client.aclose()

    def cancel(self) -> "DownloadTask":
        """End the task and release the open response (if any)."""
        response = self.response
        if response is not None and not response.is_closed:
            try:
                closing = asyncio.get_running_loop().create_task(response.aclose())
                _closing.add(closing)
                closing.add_done_callback(_closing.discard)
            except RuntimeError:
                logger.debug("No running loop to close the response of %s", self.url)
        return super().cancel()

    def to_json(self) -> Dict[str, Any]:
        out = super().to_json()
        out.update(url=self.url, type=self.type, count=self.count)
        return out
