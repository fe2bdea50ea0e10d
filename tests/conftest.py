import asyncio
import json

import pytest
from aiohttp import web

from catalog_store import JsonCatalogStore

MEDIA_BODY = bytes(range(256)) * 4  # 1024 bytes
MAC = '00:1A:79:12:34:56'


class FakePortal:
    """MAG/Stalker middleware answering on a single load.php path."""

    def __init__(self, load_path='/stalker_portal/server/load.php', token='tok123'):
        self.load_path = load_path
        self.token = token
        self.jsonp = False
        self.genres = [{'id': '1', 'title': 'News'}, {'id': '2', 'title': 'Sports'}]
        # (action, genre) -> js payload, or a callable(params) returning one
        self.listings = {}
        # cmd -> fresh cmd returned by create_link
        self.links = {}
        self.failing_actions = set()
        # answer every request with a 200 HTML page
        self.maintenance = False
        self.calls = []

    def reply(self, payload):
        body = json.dumps({'js': payload})
        if self.jsonp:
            body = f'callback({body});'
        return web.Response(text=body, content_type='text/javascript')

    async def handle(self, request):
        if self.maintenance:
            self.calls.append(dict(request.query))
            return web.Response(text='<html><body>Down for maintenance</body></html>', content_type='text/html')
        if request.path != self.load_path:
            return web.Response(status=404, text='not found')
        params = dict(request.query)
        params['_headers'] = dict(request.headers)
        self.calls.append(params)
        action = params.get('action')

        if action in self.failing_actions:
            return web.Response(status=500, text='portal error')
        if action == 'handshake':
            return self.reply({'token': self.token} if self.token else {})
        if action == 'get_main_info':
            return self.reply({'login': 'demo', 'status': 1})
        if action == 'get_profile':
            return self.reply({'id': 7, 'name': 'demo profile'})
        if action == 'get_genres':
            return self.reply(self.genres)
        if action == 'create_link':
            return self.reply({'cmd': self.links.get(params.get('cmd'), '')})

        listing = self.listings.get((action, params.get('genre')))
        if callable(listing):
            listing = listing(params)
        return self.reply(listing if listing is not None else [])

    def app(self):
        app = web.Application()
        app.router.add_route('GET', '/{tail:.*}', self.handle)
        return app

    def actions(self):
        return [call.get('action') for call in self.calls]


class FakePanel:
    """Xtream Codes panel with player_api.php and live stream endpoints."""

    def __init__(self):
        self.username = 'user'
        self.password = 'pass'
        self.status = 'Active'
        self.auth_http_status = None
        self.wrap_streams = False
        # replaces the get_live_streams body when set
        self.streams_payload = None
        self.categories = [{'category_id': '5', 'category_name': 'News'}]
        self.streams = [
            {'stream_id': 101, 'name': 'News HD', 'category_id': '5',
             'stream_icon': 'http://img.example/news.png', 'epg_channel_id': 'news.hd'},
            {'stream_id': 102, 'name': 'Movies', 'category_id': '9', 'category_name': 'Films'},
        ]
        self.calls = []

    async def player_api(self, request):
        self.calls.append(dict(request.query))
        if self.auth_http_status:
            return web.Response(status=self.auth_http_status, text='denied')
        if request.query.get('username') != self.username or request.query.get('password') != self.password:
            return web.json_response({'user_info': {'auth': 0, 'status': 'Disabled'}})

        action = request.query.get('action')
        if action == 'get_live_categories':
            return web.json_response(self.categories)
        if action == 'get_live_streams':
            if self.streams_payload is not None:
                return web.json_response(self.streams_payload)
            return web.json_response({'data': self.streams} if self.wrap_streams else self.streams)
        return web.json_response({
            'user_info': {'username': self.username, 'status': self.status, 'auth': 1},
            'server_info': {'url': 'panel.example', 'port': '80'},
        })

    def app(self):
        app = web.Application()
        app.router.add_get('/player_api.php', self.player_api)
        return app


class FakeMediaHost:
    """Media origin: range-aware files, Xtream path quirks, failures and an HLS manifest."""

    def __init__(self):
        self.requests = []
        # set once the endless stream notices its reader went away
        self.stream_closed = False

    def _record(self, request):
        self.requests.append({'path': request.path, 'headers': dict(request.headers)})

    async def video(self, request):
        self._record(request)
        range_header = request.headers.get('Range')
        if range_header and range_header.startswith('bytes='):
            start = int(range_header[len('bytes='):].split('-')[0])
            body = MEDIA_BODY[start:]
            return web.Response(
                body=body, status=206, content_type='video/mp2t',
                headers={'Content-Range': f'bytes {start}-{len(MEDIA_BODY) - 1}/{len(MEDIA_BODY)}'}
            )
        return web.Response(body=MEDIA_BODY, content_type='video/mp2t')

    async def short_path_only(self, request):
        # panel that serves /u/p/id.ts but not /live/u/p/id.ts
        self._record(request)
        if request.path.startswith('/live/'):
            return web.Response(status=404, text='no such stream')
        return web.Response(body=b'xtream-bytes', content_type='video/mp2t')

    async def always_missing(self, request):
        self._record(request)
        return web.Response(status=404, text='missing')

    async def vlc_only(self, request):
        self._record(request)
        if not request.headers.get('User-Agent', '').startswith('VLC'):
            return web.Response(status=403, text='player not allowed')
        return web.Response(body=b'vlc-bytes', content_type='video/mp2t')

    async def broken(self, request):
        self._record(request)
        return web.Response(status=500, text='origin down')

    async def unauthorized(self, request):
        self._record(request)
        return web.Response(status=401, text='expired')

    async def dies_mid_body(self, request):
        self._record(request)
        response = web.StreamResponse(headers={'Content-Type': 'video/mp2t',
                                               'Content-Length': str(len(MEDIA_BODY))})
        await response.prepare(request)
        await response.write(MEDIA_BODY[:100])
        request.transport.close()
        return response

    async def endless(self, request):
        self._record(request)
        response = web.StreamResponse(headers={'Content-Type': 'video/mp2t'})
        await response.prepare(request)
        try:
            while True:
                await response.write(MEDIA_BODY)
                await asyncio.sleep(0.01)
        except (ConnectionResetError, asyncio.CancelledError):
            self.stream_closed = True
            raise

    async def manifest(self, request):
        self._record(request)
        text = '\n'.join([
            '#EXTM3U',
            '#EXT-X-TARGETDURATION:10',
            '#EXT-X-KEY:METHOD=AES-128,URI="keys/key.bin"',
            '#EXTINF:10.0,',
            'seg1.ts',
            '#EXTINF:10.0,',
            'http://cdn.example/abs/seg2.ts',
        ])
        return web.Response(text=text, content_type='application/vnd.apple.mpegurl')

    def app(self):
        app = web.Application()
        app.router.add_get('/video.ts', self.video)
        app.router.add_get('/live/user/pass/101.ts', self.short_path_only)
        app.router.add_get('/user/pass/101.ts', self.short_path_only)
        app.router.add_get('/live/user/pass/202.ts', self.always_missing)
        app.router.add_get('/user/pass/202.ts', self.always_missing)
        app.router.add_get('/live/user/pass/303.ts', self.vlc_only)
        app.router.add_get('/broken.ts', self.broken)
        app.router.add_get('/expired.ts', self.unauthorized)
        app.router.add_get('/hls/index.m3u8', self.manifest)
        app.router.add_get('/dies.ts', self.dies_mid_body)
        app.router.add_get('/endless.ts', self.endless)
        return app


@pytest.fixture
def portal():
    return FakePortal()


@pytest.fixture
async def portal_server(aiohttp_server, portal):
    return await aiohttp_server(portal.app())


@pytest.fixture
def panel():
    return FakePanel()


@pytest.fixture
async def panel_server(aiohttp_server, panel):
    return await aiohttp_server(panel.app())


@pytest.fixture
def media():
    return FakeMediaHost()


@pytest.fixture
async def media_server(aiohttp_server, media):
    return await aiohttp_server(media.app())


@pytest.fixture
def store():
    return JsonCatalogStore()


def base_url(server) -> str:
    return str(server.make_url('')).rstrip('/')
