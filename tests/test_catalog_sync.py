import asyncio

import pytest
from aiohttp import web

from catalog_sync import CatalogSync, detect_playlist_type
from channel_models import ChannelSettings, Playlist
from conftest import MAC, base_url
from relay_errors import AuthenticationError, SyncError, UpstreamError

FIRST = """#EXTM3U
#EXTINF:-1 tvg-id="a" group-title="News",Alpha
http://stream.example/a.m3u8
#EXTINF:-1 tvg-id="b" group-title="News",Beta
http://stream.example/b.m3u8
#EXTINF:-1 tvg-id="c" group-title="Music",Gamma
http://stream.example/c.m3u8
"""

SECOND = """#EXTM3U
#EXTINF:-1 tvg-id="a" group-title="News",Alpha Renamed
http://stream.example/a2.m3u8
#EXTINF:-1 tvg-id="d" group-title="Sports",Delta
http://stream.example/d.m3u8
"""


class PlaylistHost:
    def __init__(self):
        self.text = FIRST
        self.status = 200

    async def handle(self, request):
        if self.status != 200:
            return web.Response(status=self.status, text='gone')
        return web.Response(text=self.text, content_type='audio/x-mpegurl')


@pytest.fixture
def host():
    return PlaylistHost()


@pytest.fixture
async def m3u_url(aiohttp_server, host):
    app = web.Application()
    app.router.add_get('/list.m3u', host.handle)
    server = await aiohttp_server(app)
    return f"{base_url(server)}/list.m3u"


@pytest.fixture
async def m3u_playlist(store, m3u_url):
    return await store.save_playlist(Playlist(id='p1', source_url=m3u_url, type='m3u'))


async def test_first_sync_inserts_everything(store, m3u_playlist):
    report = await CatalogSync(store).sync_playlist('p1')
    assert (report.channel_count, report.inserted, report.deleted, report.updated) == (3, 3, 0, 0)
    assert report.status == 'active'

    playlist = await store.get_playlist('p1')
    assert playlist.status == 'active'
    assert playlist.channel_count == 3
    assert playlist.last_sync is not None
    assert playlist.error is None
    assert sorted(c.channel_id for c in await store.list_channels('p1')) == ['a', 'b', 'c']


async def test_second_sync_is_idempotent_and_keeps_overrides(store, m3u_playlist):
    sync = CatalogSync(store)
    await sync.sync_playlist('p1')

    hidden = await store.get_channel('p1', 'b')
    hidden.is_visible = False
    hidden.custom_name = 'Beta (mine)'
    await store.upsert_channels('p1', [hidden])

    report = await sync.sync_playlist('p1')
    assert (report.inserted, report.deleted, report.updated) == (0, 0, 3)
    again = await store.get_channel('p1', 'b')
    assert again.is_visible is False
    assert again.custom_name == 'Beta (mine)'


async def test_playlist_settings_take_precedence(store, m3u_playlist):
    m3u_playlist.channel_settings = [ChannelSettings(channel_id='a', is_visible=False, custom_order=4)]
    await CatalogSync(store).sync_playlist('p1')
    alpha = await store.get_channel('p1', 'a')
    assert alpha.is_visible is False
    assert alpha.custom_order == 4


async def test_changed_upstream_is_diffed(store, m3u_playlist, host):
    sync = CatalogSync(store)
    await sync.sync_playlist('p1')
    host.text = SECOND
    report = await sync.sync_playlist('p1')
    assert (report.channel_count, report.inserted, report.deleted, report.updated) == (2, 1, 2, 1)
    alpha = await store.get_channel('p1', 'a')
    assert alpha.name == 'Alpha Renamed'
    assert alpha.url == 'http://stream.example/a2.m3u8'


async def test_failure_marks_playlist_and_keeps_channels(store, m3u_playlist, host):
    sync = CatalogSync(store)
    await sync.sync_playlist('p1')
    host.status = 503

    with pytest.raises(SyncError):
        await sync.sync_playlist('p1')
    playlist = await store.get_playlist('p1')
    assert playlist.status == 'error'
    assert '503' in playlist.error
    assert len(await store.list_channels('p1')) == 3


async def test_detected_type_is_persisted(store, m3u_url):
    await store.save_playlist(Playlist(id='p2', source_url=m3u_url))
    report = await CatalogSync(store).sync_playlist('p2')
    assert report.playlist_type == 'm3u'
    assert (await store.get_playlist('p2')).type == 'm3u'


async def test_unsupported_type(store):
    await store.save_playlist(Playlist(id='p3', source_url='http://mystery.example/feed'))
    with pytest.raises(SyncError, match='Unsupported playlist type'):
        await CatalogSync(store).sync_playlist('p3')
    assert (await store.get_playlist('p3')).status == 'error'


async def test_concurrent_runs_for_one_playlist_are_serialised(store, m3u_playlist):
    sync = CatalogSync(store)
    reports = await asyncio.gather(sync.sync_playlist('p1'), sync.sync_playlist('p1'))
    assert sorted(r.inserted for r in reports) == [0, 3]


async def test_xtream_sync(store, panel_server):
    await store.save_playlist(Playlist(id='x1', source_url=f"{base_url(panel_server)}/get.php?username=user&password=pass"))
    report = await CatalogSync(store).sync_playlist('x1')
    assert report.playlist_type == 'xtream'
    assert report.channel_count == 2
    playlist = await store.get_playlist('x1')
    assert playlist.sync_data['userInfo']['status'] == 'Active'


async def test_xtream_auth_failure_marks_error(store, panel_server, panel):
    panel.status = 'Banned'
    await store.save_playlist(Playlist(id='x1', source_url=base_url(panel_server), type='xtream',
                                       xtream_username='user', xtream_password='pass'))
    with pytest.raises(SyncError):
        await CatalogSync(store).sync_playlist('x1')
    assert (await store.get_playlist('x1')).status == 'error'


async def test_mag_sync(store, portal, portal_server):
    portal.listings[('get_all_channels', None)] = [
        {'id': '1', 'name': 'One', 'cmd': 'ffmpeg http://iptv.example/ch/1', 'tv_genre_id': '1'},
    ]
    await store.save_playlist(Playlist(id='m1', source_url=f"{base_url(portal_server)}/c/", type='stalker',
                                       mac_address=MAC))
    report = await CatalogSync(store).sync_playlist('m1')
    assert report.channel_count == 1
    channel = await store.get_channel('m1', '1')
    assert channel.group == 'News'
    assert channel.cmd == 'ffmpeg http://iptv.example/ch/1'
    assert (await store.get_playlist('m1')).sync_data['accountInfo']['login'] == 'demo'


async def test_sync_all_playlists_collects_failures(store, m3u_playlist):
    await store.save_playlist(Playlist(id='bad', source_url='http://mystery.example/feed'))
    results = await CatalogSync(store).sync_all_playlists()
    assert results['p1'].channel_count == 3
    assert isinstance(results['bad'], SyncError)


@pytest.mark.parametrize('playlist, expected', [
    (Playlist(id='1', source_url='http://p.example/get.php?username=a&password=b'), 'xtream'),
    (Playlist(id='2', source_url='http://p.example/', xtream_username='a', xtream_password='b'), 'xtream'),
    (Playlist(id='3', source_url='http://portal.example/c/', mac_address=MAC), 'mag'),
    (Playlist(id='4', source_url='http://lists.example/all.m3u8'), 'm3u'),
    (Playlist(id='5', source_url='http://lists.example/dl?type=m3u'), 'm3u'),
    (Playlist(id='6', source_url='http://lists.example/feed'), None),
])
def test_detect_playlist_type(playlist, expected):
    assert detect_playlist_type(playlist) == expected


async def test_html_page_does_not_wipe_the_catalog(store, m3u_playlist, host):
    sync = CatalogSync(store)
    await sync.sync_playlist('p1')
    host.text = '<html><body>Service unavailable</body></html>'

    with pytest.raises(SyncError, match='did not return an M3U playlist'):
        await sync.sync_playlist('p1')
    playlist = await store.get_playlist('p1')
    assert playlist.status == 'error'
    assert playlist.channel_count == 3
    assert len(await store.list_channels('p1')) == 3


async def test_mag_maintenance_page_does_not_wipe_the_catalog(store, portal, portal_server):
    portal.listings[('get_all_channels', None)] = [
        {'id': '1', 'name': 'One', 'cmd': 'ffmpeg http://iptv.example/ch/1', 'tv_genre_id': '1'},
    ]
    await store.save_playlist(Playlist(id='m1', source_url=f"{base_url(portal_server)}/c/", type='stalker',
                                       mac_address=MAC))
    sync = CatalogSync(store)
    await sync.sync_playlist('m1')

    portal.maintenance = True
    with pytest.raises(SyncError):
        await sync.sync_playlist('m1')
    assert (await store.get_playlist('m1')).status == 'error'
    assert len(await store.list_channels('m1')) == 1


async def test_xtream_junk_stream_list_does_not_wipe_the_catalog(store, panel, panel_server):
    await store.save_playlist(Playlist(id='x1', source_url=base_url(panel_server), type='xtream',
                                       xtream_username='user', xtream_password='pass'))
    sync = CatalogSync(store)
    await sync.sync_playlist('x1')

    panel.streams_payload = {'user_info': {'auth': 0}}
    with pytest.raises(SyncError, match='unreadable stream list'):
        await sync.sync_playlist('x1')
    assert (await store.get_playlist('x1')).status == 'error'
    assert len(await store.list_channels('x1')) == 2


async def test_unexpected_failure_still_marks_the_playlist(store, m3u_playlist):
    def broken_client(source_url):
        raise ValueError('malformed proxy URL')

    with pytest.raises(SyncError, match='malformed proxy URL'):
        await CatalogSync(store, m3u_client_factory=broken_client).sync_playlist('p1')
    playlist = await store.get_playlist('p1')
    assert playlist.status == 'error'
    assert playlist.error == 'malformed proxy URL'
    assert playlist.last_sync is not None


async def test_connection_check_for_each_dialect(store, m3u_url, panel_server, portal_server):
    sync = CatalogSync(store)

    m3u = await sync.test_connection('m3u', m3u_url)
    assert m3u == {'type': 'm3u', 'channelsCount': 3}

    xtream = await sync.test_connection(None, f"{base_url(panel_server)}/get.php?username=user&password=pass")
    assert xtream['type'] == 'xtream'
    assert xtream['userInfo']['status'] == 'Active'

    mag = await sync.test_connection('mag', f"{base_url(portal_server)}/c/", mac_address=MAC)
    assert mag['accountInfo']['login'] == 'demo'

    assert await store.list_playlists() == []


async def test_connection_check_failures(store, portal, portal_server, panel_server):
    sync = CatalogSync(store)
    portal.maintenance = True
    with pytest.raises(UpstreamError):
        await sync.test_connection('mag', f"{base_url(portal_server)}/c/", mac_address=MAC)
    with pytest.raises(AuthenticationError):
        await sync.test_connection('xtream', base_url(panel_server), 'user', 'wrong')
    with pytest.raises(SyncError, match='Unsupported playlist type'):
        await sync.test_connection(None, 'http://mystery.example/feed')
