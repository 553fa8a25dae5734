from __future__ import annotations

import base64
import struct
import zlib
from collections import Counter
from typing import Callable

import httpx

from projectreport.adapters.image_cache import ImageHandle, decode_image
from projectreport.config import Settings


def _chunk(kind: bytes, data: bytes) -> bytes:
    body = kind + data
    return struct.pack('>I', len(data)) + body + struct.pack('>I', zlib.crc32(body) & 0xFFFFFFFF)


def png_bytes(width: int = 40, height: int = 30, color: tuple[int, int, int] = (200, 80, 40)) -> bytes:
    row = b'\x00' + bytes(color) * width
    raw = row * height
    header = struct.pack('>IIBBBBB', width, height, 8, 2, 0, 0, 0)
    return b''.join(
        [
            b'\x89PNG\r\n\x1a\n',
            _chunk(b'IHDR', header),
            _chunk(b'IDAT', zlib.compress(raw)),
            _chunk(b'IEND', b''),
        ]
    )


def png_data_url(width: int = 40, height: int = 30) -> str:
    return 'data:image/png;base64,' + base64.b64encode(png_bytes(width, height)).decode('ascii')


def png_handle(url: str = 'https://img.test/photo.png', width: int = 40, height: int = 30) -> ImageHandle:
    handle = decode_image(url, png_bytes(width, height))
    assert handle is not None
    return handle


def lookup(handles: dict[str, ImageHandle]) -> Callable[[str], ImageHandle | None]:
    return handles.get


def make_settings(data_dir) -> Settings:
    return Settings(data_dir=data_dir, signature_city='Rio de Janeiro')


class ImageServer:
    """Fake image host for ``httpx.MockTransport``; counts requests per URL."""

    def __init__(self, images: dict[str, bytes] | None = None):
        self.images = dict(images or {})
        self.hits: Counter[str] = Counter()

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.hits[url] += 1
        content = self.images.get(url)
        if content is None:
            return httpx.Response(404, content=b'not found')
        return httpx.Response(200, content=content, headers={'content-type': 'image/png'})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def total_requests(self) -> int:
        return sum(self.hits.values())
