import pytest
from aiohttp import web

import app as relay_app
from app import create_app
from channel_models import Channel, Playlist
from conftest import MAC, MEDIA_BODY, base_url


@pytest.fixture
async def client(aiohttp_client, store):
    return await aiohttp_client(create_app(store=store, sync_interval_hours=0))


@pytest.fixture
def locked(monkeypatch):
    monkeypatch.setattr(relay_app, 'API_PASSWORD', 'secret')


async def add(store, playlist, *channels):
    await store.save_playlist(playlist)
    await store.upsert_channels(playlist.id, channels)


async def test_api_info(client):
    for path in ('/', '/api/info'):
        resp = await client.get(path)
        assert resp.status == 200
        info = await resp.json()
        assert info['server'] == 'IPTV Relay'
        assert info['auth_required'] is False
        assert '/api/proxy/stream' in info['endpoints']


async def test_cors_preflight(client):
    resp = await client.options('/api/proxy/stream')
    assert resp.status == 200
    assert resp.headers['Access-Control-Allow-Origin'] == '*'
    assert 'Range' in resp.headers['Access-Control-Allow-Headers']


async def test_get_stream_resolves_stored_channel(client, store):
    await add(store, Playlist(id='p1', source_url='http://lists.example/a.m3u', type='m3u'),
              Channel(channel_id='c1', name='One', cmd='https://cdn.example/one.m3u8'))
    resp = await client.post('/api/channels/get-stream', json={'playlistId': 'p1', 'channelId': 'c1'})
    assert resp.status == 200
    assert await resp.json() == {'success': True, 'url': 'https://cdn.example/one.m3u8', 'dialect': 'raw'}


async def test_get_stream_uses_cmd_from_body(client, store):
    await add(store, Playlist(id='p1', source_url='http://lists.example/a.m3u', type='m3u'))
    resp = await client.post('/api/channels/get-stream',
                             json={'playlistId': 'p1', 'channelId': 5, 'cmd': 'http://other.example/u/p/5'})
    body = await resp.json()
    assert body['url'] == 'http://other.example/u/p/5.ts'
    assert body['dialect'] == 'external-xtream'


@pytest.mark.parametrize('payload', [{}, {'playlistId': 'p1'}, {'channelId': 'c1'}, ['p1', 'c1']])
async def test_get_stream_rejects_incomplete_body(client, payload):
    resp = await client.post('/api/channels/get-stream', json=payload)
    assert resp.status == 400
    assert (await resp.json())['success'] is False


async def test_get_stream_rejects_non_json(client):
    resp = await client.post('/api/channels/get-stream', data='playlistId=p1',
                             headers={'Content-Type': 'application/x-www-form-urlencoded'})
    assert resp.status == 400


async def test_get_stream_unknown_channel(client, store):
    await add(store, Playlist(id='p1', source_url='http://lists.example/a.m3u', type='m3u'))
    resp = await client.post('/api/channels/get-stream', json={'playlistId': 'p1', 'channelId': 'nope'})
    assert resp.status == 404


async def test_get_stream_unresolvable_cmd(client, store):
    await add(store, Playlist(id='p1', source_url='http://lists.example/a.m3u', type='m3u'),
              Channel(channel_id='c1', name='Broken', cmd='not a url'))
    resp = await client.post('/api/channels/get-stream', json={'playlistId': 'p1', 'channelId': 'c1'})
    assert resp.status == 400


async def test_password_is_enforced(client, locked, store):
    await add(store, Playlist(id='p1', source_url='http://lists.example/a.m3u', type='m3u'),
              Channel(channel_id='c1', name='One', cmd='https://cdn.example/one.m3u8'))
    payload = {'playlistId': 'p1', 'channelId': 'c1'}

    assert (await client.post('/api/channels/get-stream', json=payload)).status == 401
    assert (await client.get('/api/proxy/stream', params={'url': 'http://x/a.ts'})).status == 401
    assert (await client.post('/api/playlists/p1/sync')).status == 401

    by_query = await client.post('/api/channels/get-stream', json=payload, params={'api_password': 'secret'})
    assert by_query.status == 200
    by_header = await client.post('/api/channels/get-stream', json=payload, headers={'X-API-Password': 'secret'})
    assert by_header.status == 200

    info = await client.get('/api/info')
    assert info.status == 200
    assert (await info.json())['auth_required'] is True


async def test_channel_stream_for_raw_url(client, store, media_server):
    await add(store, Playlist(id='p1', source_url='http://lists.example/a.m3u', type='m3u'),
              Channel(channel_id='c1', name='Video', cmd=f'{base_url(media_server)}/video.ts'))
    resp = await client.get('/api/stream/p1/c1')
    assert resp.status == 200
    assert await resp.read() == MEDIA_BODY


async def test_channel_stream_for_mag_portal(client, store, portal, portal_server, media, media_server):
    stored = 'ffmpeg http://iptv.example/ch/42'
    short = f'ffmpeg http://iptv.example/play/live.php?mac={MAC}&stream=42&extension=ts'
    portal.links[short] = f'ffmpeg {base_url(media_server)}/video.ts'
    await add(store, Playlist(id='m1', source_url=f"{base_url(portal_server)}/c/", type='stalker', mac_address=MAC),
              Channel(channel_id='42', name='News', cmd=stored, source_type='mag'))

    resp = await client.get('/api/stream/m1/42', headers={'Range': 'bytes=1000-'})
    assert resp.status == 206
    assert await resp.read() == MEDIA_BODY[1000:]
    sent = media.requests[0]['headers']
    assert sent['Authorization'] == 'Bearer tok123'
    assert f'mac={MAC}' in sent['Cookie']


async def test_channel_stream_unknown_playlist(client):
    resp = await client.get('/api/stream/nope/1')
    assert resp.status == 404


async def test_sync_route(client, store, aiohttp_server):
    async def playlist(request):
        return web.Response(text='#EXTM3U\n#EXTINF:-1 tvg-id="a",Alpha\nhttp://a/1.ts\n')

    upstream = web.Application()
    upstream.router.add_get('/list.m3u', playlist)
    server = await aiohttp_server(upstream)
    await store.save_playlist(Playlist(id='p1', source_url=f'{base_url(server)}/list.m3u'))

    resp = await client.post('/api/playlists/p1/sync')
    assert resp.status == 200
    body = await resp.json()
    assert body['success'] is True
    assert body['channelCount'] == 1
    assert body['type'] == 'm3u'


async def test_sync_route_failure(client, store):
    await store.save_playlist(Playlist(id='p1', source_url='http://mystery.example/feed'))
    resp = await client.post('/api/playlists/p1/sync')
    assert resp.status == 500
    assert 'Unsupported playlist type' in (await resp.json())['message']


async def test_sync_route_unknown_playlist(client):
    resp = await client.post('/api/playlists/nope/sync')
    assert resp.status == 404


async def test_connection_route(client, panel_server):
    resp = await client.post('/api/playlists/test-connection',
                             json={'type': 'xtream', 'sourceUrl': base_url(panel_server),
                                   'username': 'user', 'password': 'pass'})
    assert resp.status == 200
    body = await resp.json()
    assert body['success'] is True
    assert body['userInfo']['status'] == 'Active'


async def test_connection_route_failures(client, panel_server):
    resp = await client.post('/api/playlists/test-connection',
                             json={'type': 'xtream', 'sourceUrl': base_url(panel_server),
                                   'username': 'user', 'password': 'nope'})
    assert resp.status == 500
    assert (await resp.json())['success'] is False

    missing = await client.post('/api/playlists/test-connection', json={'type': 'm3u'})
    assert missing.status == 400


async def test_connection_route_requires_password(client, locked):
    resp = await client.post('/api/playlists/test-connection', json={'sourceUrl': 'http://x/a.m3u'})
    assert resp.status == 401
