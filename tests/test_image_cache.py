from __future__ import annotations

import asyncio
import unittest

import httpx

from projectreport.adapters.image_cache import ImageCache, decode_data_url, describe_url

from support import ImageServer, png_bytes, png_data_url


PHOTO_URL = 'https://img.test/photo.png'
MISSING_URL = 'https://img.test/missing.png'


class ImageCacheTests(unittest.TestCase):
    def test_loads_and_measures_image(self) -> None:
        server = ImageServer({PHOTO_URL: png_bytes(40, 30)})

        async def run():
            async with ImageCache(transport=server.transport()) as cache:
                return await cache.load(PHOTO_URL)

        handle = asyncio.run(run())
        self.assertIsNotNone(handle)
        self.assertEqual((handle.pixel_width, handle.pixel_height), (40, 30))
        self.assertAlmostEqual(handle.aspect_ratio, 0.75)
        self.assertEqual(handle.source_url, PHOTO_URL)

    def test_repeated_url_is_fetched_once(self) -> None:
        server = ImageServer({PHOTO_URL: png_bytes()})

        async def run():
            async with ImageCache(transport=server.transport()) as cache:
                first, second = await asyncio.gather(cache.load(PHOTO_URL), cache.load(PHOTO_URL))
                third = await cache.load(PHOTO_URL)
                return first, second, third, cache.stats()

        first, second, third, stats = asyncio.run(run())
        self.assertEqual(server.hits[PHOTO_URL], 1)
        self.assertIs(first, second)
        self.assertIs(first, third)
        self.assertEqual((stats.requested, stats.loaded, stats.failed), (1, 1, 0))

    def test_http_error_is_a_failure_not_an_exception(self) -> None:
        server = ImageServer()

        async def run():
            async with ImageCache(transport=server.transport()) as cache:
                first = await cache.load(MISSING_URL)
                again = await cache.load(MISSING_URL)
                return first, again, cache.stats(), cache.failed_urls()

        with self.assertLogs('projectreport.adapters.image_cache', level='WARNING'):
            first, again, stats, failed = asyncio.run(run())
        self.assertIsNone(first)
        self.assertIsNone(again)
        self.assertEqual(server.hits[MISSING_URL], 1)
        self.assertEqual((stats.requested, stats.loaded, stats.failed), (1, 0, 1))
        self.assertEqual(failed, [MISSING_URL])

    def test_transport_error_is_a_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError('connection refused', request=request)

        async def run():
            async with ImageCache(transport=httpx.MockTransport(handler)) as cache:
                return await cache.load(PHOTO_URL)

        with self.assertLogs('projectreport.adapters.image_cache', level='WARNING'):
            self.assertIsNone(asyncio.run(run()))

    def test_timeout_is_a_failure(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1.0)
            return httpx.Response(200, content=png_bytes())

        async def run():
            async with ImageCache(timeout_seconds=0.05, transport=httpx.MockTransport(handler)) as cache:
                return await cache.load(PHOTO_URL)

        with self.assertLogs('projectreport.adapters.image_cache', level='WARNING'):
            self.assertIsNone(asyncio.run(run()))

    def test_undecodable_bytes_are_a_failure(self) -> None:
        server = ImageServer({PHOTO_URL: b'definitely not an image'})

        async def run():
            async with ImageCache(transport=server.transport()) as cache:
                return await cache.load(PHOTO_URL)

        with self.assertLogs('projectreport.adapters.image_cache', level='WARNING'):
            self.assertIsNone(asyncio.run(run()))

    def test_oversized_body_is_a_failure(self) -> None:
        server = ImageServer({PHOTO_URL: png_bytes(200, 200)})

        async def run():
            async with ImageCache(max_bytes=64, transport=server.transport()) as cache:
                return await cache.load(PHOTO_URL)

        with self.assertLogs('projectreport.adapters.image_cache', level='WARNING'):
            self.assertIsNone(asyncio.run(run()))

    def test_data_url_needs_no_network(self) -> None:
        server = ImageServer()
        url = png_data_url(10, 20)

        async def run():
            async with ImageCache(transport=server.transport()) as cache:
                return await cache.load(url)

        handle = asyncio.run(run())
        self.assertIsNotNone(handle)
        self.assertEqual((handle.pixel_width, handle.pixel_height), (10, 20))
        self.assertEqual(server.total_requests, 0)

    def test_unsupported_scheme_and_blank_url(self) -> None:
        async def run():
            async with ImageCache(transport=ImageServer().transport()) as cache:
                return await cache.load('ftp://img.test/a.png'), await cache.load('   '), await cache.load(None)

        with self.assertLogs('projectreport.adapters.image_cache', level='WARNING'):
            results = asyncio.run(run())
        self.assertEqual(results, (None, None, None))

    def test_prefetch_keeps_order_and_peek_reads_results(self) -> None:
        server = ImageServer({PHOTO_URL: png_bytes()})

        async def run():
            async with ImageCache(transport=server.transport()) as cache:
                handles = await cache.prefetch([PHOTO_URL, MISSING_URL, PHOTO_URL])
                return handles, cache.peek(PHOTO_URL), cache.peek(MISSING_URL), cache.peek('https://img.test/never')

        with self.assertLogs('projectreport.adapters.image_cache', level='WARNING'):
            handles, hit, miss, unknown = asyncio.run(run())
        self.assertIsNotNone(handles[0])
        self.assertIsNone(handles[1])
        self.assertIs(handles[0], handles[2])
        self.assertIs(hit, handles[0])
        self.assertIsNone(miss)
        self.assertIsNone(unknown)
        self.assertEqual(server.hits[PHOTO_URL], 1)


class DataUrlTests(unittest.TestCase):
    def test_decode_data_url(self) -> None:
        self.assertEqual(decode_data_url('data:text/plain,hello%20world'), b'hello world')
        self.assertEqual(decode_data_url('data:image/png;base64,aGk='), b'hi')
        self.assertIsNone(decode_data_url('not a data url'))

    def test_describe_url_truncates(self) -> None:
        self.assertEqual(describe_url('data:image/png;base64,AAAA'), 'data:image/png;base64,...')
        self.assertTrue(describe_url('https://x.test/' + 'a' * 300).endswith('...'))
