from __future__ import annotations

import asyncio
import gzip
import random
import zlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Final

import httpx

from .errors import FetchError, ParseError, SourceTimeoutError

_RETRYABLE_STATUS: Final[set[int]] = {408, 425, 429, 500, 502, 503, 504}
_GZIP_MAGIC: Final[bytes] = b"\x1f\x8b"


def _format_http_error(resp: httpx.Response) -> str:
    body = ""
    try:
        body = (resp.text or "").strip().replace("\n", " ")
    except Exception:
        # binary or undecodable body; the status is enough
        body = ""
    if len(body) > 200:
        body = body[:200] + "..."
    if body:
        return f"HTTP {resp.status_code} for {resp.request.url}: {body}"
    return f"HTTP {resp.status_code} for {resp.request.url}"


def _describe(exc: BaseException) -> str:
    # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else f"{type(exc).__name__}: {exc!r}"


def decompress_feed(data: bytes) -> bytes:
    """Gunzip ``data`` when it carries the gzip magic; plain payloads pass through."""
    if not data.startswith(_GZIP_MAGIC):
        return data
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
        raise ParseError(f"corrupt gzip payload: {_describe(e)}") from e


async def gunzip_chunks(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Incrementally decompress a byte stream; non-gzip streams pass through."""
    decomp: Any = None
    first = True
    async for chunk in chunks:
        if not chunk:
            continue
        if first:
            first = False
            if chunk.startswith(_GZIP_MAGIC):
                decomp = zlib.decompressobj(wbits=zlib.MAX_WBITS | 16)
        if decomp is None:
            yield chunk
            continue
        try:
            out = decomp.decompress(chunk)
        except zlib.error as e:
            raise ParseError(f"corrupt gzip stream: {_describe(e)}") from e
        if out:
            yield out
    if decomp is not None:
        tail = decomp.flush()
        if tail:
            yield tail


class FeedClient:
    """Async HTTP access to the upstream feeds with bounded retries."""

    def __init__(
        self,
        *,
        timeout_s: float = 30.0,
        max_attempts: int = 3,
        backoff_base_ms: int = 500,
        backoff_max_ms: int = 2_000,
        user_agent: str = "nl-traffic/0.1",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_s = float(timeout_s)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_ms = max(0, int(backoff_base_ms))
        self.backoff_max_ms = max(self.backoff_base_ms, int(backoff_max_ms))
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_s, connect=10.0),
            headers={"user-agent": user_agent},
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _backoff_s(self, attempt_index: int) -> float:
        bounded = min(self.backoff_max_ms, self.backoff_base_ms * (2 ** max(0, attempt_index)))
        if bounded > 0:
            bounded += random.randint(0, max(1, bounded // 4))
        return min(self.backoff_max_ms, bounded) / 1000.0

    async def _get(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
    ) -> httpx.Response:
        timeout = httpx.Timeout(timeout_s) if timeout_s is not None else httpx.USE_CLIENT_DEFAULT
        attempts = self.max_attempts if max_attempts is None else max(1, int(max_attempts))
        last_err: Exception | None = None

        for attempt in range(attempts):
            try:
                resp = await self._client.get(url, headers=headers, params=params, timeout=timeout)
                if resp.status_code in _RETRYABLE_STATUS:
                    last_err = FetchError(_format_http_error(resp), details={"status_code": resp.status_code})
                elif resp.status_code >= 400:
                    # Fast-fail on most 4xx: these are usually request errors.
                    raise FetchError(_format_http_error(resp), details={"status_code": resp.status_code})
                else:
                    return resp
            except httpx.TimeoutException as e:
                last_err = SourceTimeoutError(f"timed out fetching {url}: {_describe(e)}")
            except httpx.TransportError as e:
                last_err = FetchError(f"transport error fetching {url}: {_describe(e)}")
            except httpx.HTTPError as e:
                # redirect loops, bad content encodings: retrying will not help
                raise FetchError(f"request to {url} failed: {_describe(e)}") from e

            if attempt < attempts - 1:
                await asyncio.sleep(self._backoff_s(attempt))

        if isinstance(last_err, FetchError | SourceTimeoutError):
            raise last_err
        raise FetchError(f"request to {url} failed after {attempts} attempts")

    async def get_bytes(self, url: str, *, timeout_s: float | None = None) -> bytes:
        resp = await self._get(url, timeout_s=timeout_s)
        return resp.content

    async def get_text(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> str:
        resp = await self._get(url, headers=headers, timeout_s=timeout_s)
        return resp.text

    async def get_json(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        resp = await self._get(url, headers=headers, params=params, timeout_s=timeout_s, max_attempts=max_attempts)
        try:
            return resp.json()
        except ValueError as e:
            raise ParseError(f"invalid JSON payload from {url}") from e

    @asynccontextmanager
    async def stream_bytes(self, url: str, *, timeout_s: float | None = None) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open ``url`` as a raw byte stream. Leaving the block closes the connection.

        No retries: a stream may be abandoned half-way on purpose.
        """
        timeout = httpx.Timeout(timeout_s) if timeout_s is not None else httpx.USE_CLIENT_DEFAULT
        try:
            async with self._client.stream("GET", url, timeout=timeout) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise FetchError(_format_http_error(resp), details={"status_code": resp.status_code})
                yield resp.aiter_raw()
        except httpx.TimeoutException as e:
            raise SourceTimeoutError(f"timed out streaming {url}: {_describe(e)}") from e
        except httpx.TransportError as e:
            raise FetchError(f"transport error streaming {url}: {_describe(e)}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"stream from {url} failed: {_describe(e)}") from e
