import asyncio
from collections import defaultdict

import pytest
from aiohttp import web
from multidict import CIMultiDict

from app import create_app
from services.upstream import UpstreamFetcher

VIDEO = bytes(range(256)) * 16
FIRST_CHUNK = b"\x47" * 188 * 4
SECOND_CHUNK = b"\x47" * 188 * 2

MASTER_MANIFEST = (
    '#EXTM3U\n'
    '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="English",URI="audio/en.m3u8"\n'
    '#EXT-X-STREAM-INF:BANDWIDTH=800000,AUDIO="aud"\n'
    'video/720p.m3u8\n'
)

MEDIA_MANIFEST = (
    '#EXTM3U\n'
    '#EXT-X-VERSION:3\n'
    '#EXT-X-TARGETDURATION:10\n'
    '#EXT-X-KEY:METHOD=AES-128,URI="keys/k1.bin"\n'
    '#EXTINF:10.0,\n'
    'seg/1.ts\n'
    '#EXTINF:10.0,\n'
    '/abs/seg/2.ts\n'
    '#EXTINF:10.0,\n'
    'https://cdn.example.test/seg/3.ts\n'
    '#EXT-X-ENDLIST\n'
)

CHAINED_MANIFEST = '#EXTM3U\n#EXTINF:10.0,\n../video.ts\n#EXT-X-ENDLIST\n'

CLASSIC_PLAYLIST = (
    '#EXTM3U\n'
    '#EXTINF:-1 tvg-logo="http://logo.example.test/a.png" group-title="News",Channel A\n'
    'http://iptv.example.test:8080/live/user/pass/1.ts\n'
    '#EXTINF:-1,Channel B\n'
    'https://iptv.example.test/live/user/pass/2.m3u8\n'
)

LATIN1_PLAYLIST = b"#EXTM3U\n#EXTINF:-1,Espa\xf1a TV\nhttp://iptv.example.test/live/es.ts\n"
LATIN1_MANIFEST = b"#EXTM3U\n#EXTINF:10.0,Espa\xf1a\nseg/1.ts\n#EXT-X-ENDLIST\n"
LATIN1_NOTES = b"caf\xe9"


class FakeOrigin:
    """A local IPTV origin that records every request it receives."""

    def __init__(self):
        self.received = defaultdict(list)
        self.release = asyncio.Event()
        self.stream_stopped = asyncio.Event()
        self.server = None

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    def requests(self, path: str) -> list:
        return self.received[path]

    def _record(self, request) -> int:
        self.received[request.path].append(CIMultiDict(request.headers))
        return len(self.received[request.path])

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/gate/{allowed_after}/video.ts', self.gate)
        app.router.add_get('/video.ts', self.video)
        app.router.add_get('/redirect', self.redirect)
        app.router.add_get('/media/dir/index.m3u8', self.media_manifest)
        app.router.add_get('/live/index.m3u8', self.mislabeled_manifest)
        app.router.add_get('/chain/index.m3u8', self.chained_manifest)
        app.router.add_get('/list.m3u', self.classic_playlist)
        app.router.add_get('/player_api.php', self.player_api)
        app.router.add_get('/missing.m3u8', self.missing)
        app.router.add_get('/slow.ts', self.slow)
        app.router.add_get('/broken.ts', self.broken)
        app.router.add_get('/hang', self.hang)
        app.router.add_get('/latin/list.m3u', self.latin1_playlist)
        app.router.add_get('/latin/index.m3u8', self.latin1_manifest)
        app.router.add_get('/latin/notes.txt', self.latin1_notes)
        app.router.add_get('/endless.ts', self.endless)
        return app

    def _serve_video(self, request):
        range_header = request.headers.get('Range')
        if range_header:
            start, end = (int(part) for part in range_header.replace('bytes=', '').split('-'))
            return web.Response(
                status=206,
                body=VIDEO[start:end + 1],
                headers={
                    'Content-Type': 'video/mp2t',
                    'Content-Range': f'bytes {start}-{end}/{len(VIDEO)}',
                    'Accept-Ranges': 'bytes',
                }
            )
        return web.Response(body=VIDEO, headers={'Content-Type': 'video/mp2t', 'Accept-Ranges': 'bytes'})

    async def gate(self, request):
        hits = self._record(request)
        if hits <= int(request.match_info['allowed_after']):
            return web.Response(status=403, text="Forbidden")
        return self._serve_video(request)

    async def video(self, request):
        self._record(request)
        return self._serve_video(request)

    async def redirect(self, request):
        self._record(request)
        raise web.HTTPFound('/media/dir/index.m3u8')

    async def media_manifest(self, request):
        self._record(request)
        return web.Response(text=MEDIA_MANIFEST, headers={'Content-Type': 'application/vnd.apple.mpegurl'})

    async def mislabeled_manifest(self, request):
        self._record(request)
        return web.Response(body=MASTER_MANIFEST.encode(), headers={'Content-Type': 'application/octet-stream'})

    async def chained_manifest(self, request):
        self._record(request)
        return web.Response(body=CHAINED_MANIFEST.encode(), headers={'Content-Type': 'application/x-mpegURL'})

    async def classic_playlist(self, request):
        self._record(request)
        return web.Response(body=CLASSIC_PLAYLIST.encode(), headers={'Content-Type': 'audio/x-mpegurl'})

    async def player_api(self, request):
        self._record(request)
        return web.json_response({"user_info": {"auth": 1, "status": "Active"}})

    async def missing(self, request):
        self._record(request)
        return web.Response(status=404, text="<html><body>Not Found</body></html>", content_type='text/html')

    async def slow(self, request):
        self._record(request)
        response = web.StreamResponse(headers={'Content-Type': 'video/mp2t'})
        await response.prepare(request)
        await response.write(FIRST_CHUNK)
        await asyncio.wait_for(self.release.wait(), timeout=10)
        await response.write(SECOND_CHUNK)
        await response.write_eof()
        return response

    async def broken(self, request):
        self._record(request)
        response = web.StreamResponse(headers={'Content-Type': 'video/mp2t', 'Content-Length': '10000'})
        await response.prepare(request)
        await response.write(b"\x47" * 100)
        request.transport.close()
        return response

    async def hang(self, request):
        self._record(request)
        await asyncio.sleep(1.5)
        return web.Response(text="too late")

    async def latin1_playlist(self, request):
        self._record(request)
        return web.Response(body=LATIN1_PLAYLIST, headers={'Content-Type': 'audio/x-mpegurl'})

    async def latin1_manifest(self, request):
        self._record(request)
        return web.Response(
            body=LATIN1_MANIFEST,
            headers={'Content-Type': 'application/vnd.apple.mpegurl; charset=iso-8859-1'}
        )

    async def latin1_notes(self, request):
        self._record(request)
        return web.Response(body=LATIN1_NOTES, headers={'Content-Type': 'text/plain'})

    async def endless(self, request):
        """A live feed that only stops when the reader goes away."""
        self._record(request)
        response = web.StreamResponse(headers={'Content-Type': 'video/mp2t'})
        await response.prepare(request)
        try:
            while True:
                await response.write(FIRST_CHUNK)
                await asyncio.sleep(0.05)
        except ConnectionResetError:
            pass
        finally:
            self.stream_stopped.set()
        return response


@pytest.fixture
async def origin(aiohttp_server):
    fake = FakeOrigin()
    fake.server = await aiohttp_server(fake.build_app())
    yield fake
    fake.release.set()


@pytest.fixture
def fetcher():
    return UpstreamFetcher(timeout=5, transport_routes=[], global_proxies=[])


@pytest.fixture
async def proxy_client(aiohttp_client, fetcher):
    return await aiohttp_client(create_app(fetcher=fetcher))
