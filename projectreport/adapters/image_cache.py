from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import unquote_to_bytes

import httpx
from reportlab.lib.utils import ImageReader

from ..config import Settings


logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r'^data:(?P<mime>[^;,]*)(?P<params>(?:;[^;,]*)*),(?P<payload>.*)$', re.DOTALL)


@dataclass(frozen=True)
class ImageHandle:
    source_url: str
    data: bytes
    pixel_width: int
    pixel_height: int

    @property
    def aspect_ratio(self) -> float:
        return self.pixel_height / self.pixel_width

    def reader(self) -> ImageReader:
        return ImageReader(io.BytesIO(self.data))

    def fit_within(self, max_width: float, max_height: float | None = None) -> tuple[float, float]:
        """Largest (width, height) inside the box that keeps the pixel aspect ratio."""
        width = max(0.0, float(max_width))
        height = width * self.aspect_ratio
        if max_height is not None and height > max_height > 0:
            height = float(max_height)
            width = height / self.aspect_ratio
        return width, height


@dataclass(frozen=True)
class ImageCacheStats:
    requested: int
    loaded: int
    failed: int


def describe_url(url: str) -> str:
    token = str(url or '')
    if token.startswith('data:'):
        return token.split(',', 1)[0] + ',...'
    return token if len(token) <= 160 else token[:157] + '...'


def decode_image(url: str, data: bytes) -> ImageHandle | None:
    try:
        width, height = ImageReader(io.BytesIO(data)).getSize()
    except Exception as exc:
        logger.warning('image decode failed url=%s error=%s', describe_url(url), exc)
        return None
    if not width or not height or width <= 0 or height <= 0:
        logger.warning('image has no usable size url=%s size=%sx%s', describe_url(url), width, height)
        return None
    return ImageHandle(source_url=url, data=bytes(data), pixel_width=int(width), pixel_height=int(height))


def decode_data_url(url: str) -> bytes | None:
    match = _DATA_URL_RE.match(url)
    if match is None:
        return None
    payload = match.group('payload')
    params = [item.strip().lower() for item in match.group('params').split(';') if item.strip()]
    try:
        if 'base64' in params:
            return base64.b64decode(payload.strip(), validate=False)
        return unquote_to_bytes(payload)
    except (binascii.Error, ValueError):
        return None


class ImageCache:
    """Per-export image loader with URL deduplication.

    ``load`` never raises: every failure (transport error, HTTP status, timeout,
    oversized body, undecodable bytes) is logged and reported as ``None``.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        max_bytes: int = 15 * 1024 * 1024,
        user_agent: str = 'projectreport-export',
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout_seconds = float(timeout_seconds)
        self.max_bytes = int(max_bytes)
        self.user_agent = user_agent
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._results: dict[str, ImageHandle | None] = {}
        self._inflight: dict[str, asyncio.Task[ImageHandle | None]] = {}

    @classmethod
    def from_settings(cls, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> ImageCache:
        return cls(
            timeout_seconds=settings.image_fetch_timeout_seconds,
            max_bytes=settings.image_max_bytes,
            user_agent=settings.image_user_agent,
            transport=transport,
        )

    async def __aenter__(self) -> ImageCache:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                follow_redirects=True,
                headers={'User-Agent': self.user_agent},
                transport=self._transport,
            )
        return self._client

    async def load(self, url: str | None) -> ImageHandle | None:
        key = str(url or '').strip()
        if not key:
            return None
        if key in self._results:
            return self._results[key]
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load_uncached(key))
            self._inflight[key] = task
        try:
            return await task
        finally:
            self._inflight.pop(key, None)

    async def prefetch(self, urls: Iterable[str]) -> list[ImageHandle | None]:
        """Load ``urls`` one after another, in the given order."""
        handles: list[ImageHandle | None] = []
        for url in urls:
            handles.append(await self.load(url))
        return handles

    def peek(self, url: str | None) -> ImageHandle | None:
        return self._results.get(str(url or '').strip())

    def stats(self) -> ImageCacheStats:
        loaded = sum(1 for handle in self._results.values() if handle is not None)
        return ImageCacheStats(
            requested=len(self._results),
            loaded=loaded,
            failed=len(self._results) - loaded,
        )

    def failed_urls(self) -> list[str]:
        return [url for url, handle in self._results.items() if handle is None]

    async def _load_uncached(self, url: str) -> ImageHandle | None:
        try:
            data = await asyncio.wait_for(self._read_bytes(url), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning('image fetch timed out url=%s timeout=%.1fs', describe_url(url), self.timeout_seconds)
            data = None
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError, OSError) as exc:
            logger.warning('image fetch failed url=%s error=%s', describe_url(url), exc)
            data = None

        handle = decode_image(url, data) if data else None
        self._results[url] = handle
        return handle

    async def _read_bytes(self, url: str) -> bytes | None:
        if url.startswith('data:'):
            data = decode_data_url(url)
            if data is None:
                logger.warning('invalid data url url=%s', describe_url(url))
            elif len(data) > self.max_bytes:
                logger.warning('image too large url=%s bytes=%d', describe_url(url), len(data))
                return None
            return data

        if not url.lower().startswith(('http://', 'https://')):
            logger.warning('unsupported image url scheme url=%s', describe_url(url))
            return None

        client = self._get_client()
        async with client.stream('GET', url) as response:
            if response.status_code >= 400:
                logger.warning('image fetch failed url=%s status=%d', describe_url(url), response.status_code)
                return None
            declared = response.headers.get('content-length', '')
            if declared.isdigit() and int(declared) > self.max_bytes:
                logger.warning('image too large url=%s bytes=%s', describe_url(url), declared)
                return None
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > self.max_bytes:
                    logger.warning('image too large url=%s bytes>%d', describe_url(url), self.max_bytes)
                    return None
        return bytes(body)
