import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from catalog_store import CatalogStore
from channel_models import Channel, Playlist, SyncReport, utc_now_iso
from m3u_client import M3UClient
from mag_client import MagPortalClient
from relay_config import DEFAULT_MAC
from relay_errors import NotFoundError, RelayError, SyncError, UpstreamError
from xtream_client import XtreamClient

logger = logging.getLogger(__name__)


def detect_playlist_type(playlist: Playlist) -> Optional[str]:
    """Guesses the dialect of a playlist whose type was never set."""
    url = (playlist.source_url or '').lower()
    if 'get.php' in url or 'player_api.php' in url or playlist.has_xtream_credentials:
        return 'xtream'
    if playlist.mac_address:
        return 'mag'
    if '.m3u' in url or 'type=m3u' in url:
        return 'm3u'
    return None


def apply_overrides(channel: Channel, playlist: Playlist, stored: Optional[Channel]):
    """Carries admin overrides over a freshly listed channel: playlist settings win over stored values."""
    settings = playlist.settings_for(channel.channel_id)
    if settings is not None:
        channel.is_visible = settings.is_visible
        channel.custom_name = settings.custom_name
        channel.custom_logo = settings.custom_logo
        channel.custom_order = settings.custom_order
    elif stored is not None:
        for name, value in stored.overrides().items():
            setattr(channel, name, value)


class CatalogSync:
    """Repopulates playlist catalogs from their upstream sources. The only writer of the catalog."""

    def __init__(self, store: CatalogStore, mag_client_factory=MagPortalClient,
                 xtream_client_factory=XtreamClient, m3u_client_factory=M3UClient):
        self.store = store
        self.mag_client_factory = mag_client_factory
        self.xtream_client_factory = xtream_client_factory
        self.m3u_client_factory = m3u_client_factory
        self._sync_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, playlist_id: str) -> asyncio.Lock:
        if playlist_id not in self._sync_locks:
            self._sync_locks[playlist_id] = asyncio.Lock()
        return self._sync_locks[playlist_id]

    async def _list_upstream(self, playlist: Playlist, playlist_type: str) -> Tuple[List[Channel], Dict[str, Any]]:
        if playlist_type in ('mag', 'stalker'):
            async with self.mag_client_factory(playlist.source_url, playlist.mac_address or DEFAULT_MAC) as client:
                snapshot = await client.sync_all()
            sync_data = {
                'accountInfo': snapshot.account_info,
                'profile': snapshot.profile,
                'genres': snapshot.genres,
                'degraded': snapshot.degraded,
            }
            return snapshot.channels, sync_data

        if playlist_type == 'xtream':
            async with self.xtream_client_factory(playlist.source_url, playlist.xtream_username,
                                                  playlist.xtream_password) as client:
                snapshot = await client.sync_all()
            sync_data = {
                'userInfo': snapshot.user_info,
                'serverInfo': snapshot.server_info,
                'categories': snapshot.categories,
                'degraded': snapshot.degraded,
            }
            return snapshot.channels, sync_data

        if playlist_type == 'm3u':
            async with self.m3u_client_factory(playlist.source_url) as client:
                channels = await client.sync_all()
            return channels, {}

        raise SyncError(f"Unsupported playlist type: {playlist_type}")

    async def sync_playlist(self, playlist_id: str) -> SyncReport:
        async with self._lock_for(str(playlist_id)):
            return await self._sync_playlist(str(playlist_id))

    async def _sync_playlist(self, playlist_id: str) -> SyncReport:
        playlist = await self.store.get_playlist(playlist_id)
        playlist_type = playlist.type or detect_playlist_type(playlist)
        logger.info(f"🔄 Syncing playlist {playlist_id} ({playlist_type or 'unknown type'})")

        try:
            if not playlist_type:
                raise SyncError("Unsupported playlist type")
            for problem in playlist.validate():
                logger.warning(f"⚠️ Playlist {playlist_id}: {problem}")

            channels, sync_data = await self._list_upstream(playlist, playlist_type)

            # last occurrence of a duplicated id wins
            fresh: Dict[str, Channel] = {}
            for channel in channels:
                fresh[channel.channel_id] = channel

            existing = {channel.channel_id: channel for channel in await self.store.list_channels(playlist_id)}
            deleted = await self.store.delete_channels_not_in(playlist_id, list(fresh))
            inserted = 0
            updated = 0
            for channel_id, channel in fresh.items():
                channel.playlist_id = playlist_id
                stored = existing.get(channel_id)
                apply_overrides(channel, playlist, stored)
                if stored is None:
                    inserted += 1
                else:
                    updated += 1
            await self.store.upsert_channels(playlist_id, fresh.values())

            await self.store.update_playlist_sync_result(
                playlist_id,
                status='active',
                last_sync=utc_now_iso(),
                channel_count=len(fresh),
                error=None,
                sync_data=sync_data,
                type=playlist_type,
            )
        except Exception as e:
            message = str(e) or e.__class__.__name__
            if isinstance(e, RelayError):
                logger.error(f"❌ Sync of playlist {playlist_id} failed: {message}")
            else:
                logger.exception(f"❌ Sync of playlist {playlist_id} failed unexpectedly: {message}")
            await self.store.update_playlist_sync_result(playlist_id, status='error', error=message,
                                                         last_sync=utc_now_iso())
            if isinstance(e, SyncError):
                raise
            raise SyncError(message) from e

        logger.info(f"✅ Playlist {playlist_id} synced: {len(fresh)} channels "
                    f"(+{inserted} / -{deleted} / ~{updated})")
        return SyncReport(
            playlist_id=playlist_id,
            channel_count=len(fresh),
            status='active',
            inserted=inserted,
            deleted=deleted,
            updated=updated,
            playlist_type=playlist_type,
        )

    async def test_connection(self, playlist_type: Optional[str], source_url: str, username: Optional[str] = None,
                              password: Optional[str] = None, mac_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Checks a source before it is saved as a playlist: MAG handshake + account info,
        Xtream authentication, or an M3U download counted by channel. Nothing is stored.
        """
        candidate = Playlist(id='', source_url=source_url, type=playlist_type, mac_address=mac_address,
                             xtream_username=username, xtream_password=password)
        playlist_type = playlist_type or detect_playlist_type(candidate)
        logger.info(f"🔌 Testing {playlist_type or 'unknown'} connection to {source_url}")

        if playlist_type in ('mag', 'stalker'):
            async with self.mag_client_factory(source_url, mac_address or DEFAULT_MAC) as client:
                await client.handshake()
                account_info = await client.get_account_info()
            if account_info.degraded:
                raise UpstreamError(f"MAG portal did not return account information: {account_info.error}")
            result = {'type': playlist_type, 'accountInfo': account_info.value}
        elif playlist_type == 'xtream':
            async with self.xtream_client_factory(source_url, username, password) as client:
                user_info = await client.authenticate()
            result = {'type': playlist_type, 'userInfo': user_info}
        elif playlist_type == 'm3u':
            async with self.m3u_client_factory(source_url) as client:
                channels = await client.sync_all()
            result = {'type': playlist_type, 'channelsCount': len(channels)}
        else:
            raise SyncError(f"Unsupported playlist type: {playlist_type}")

        logger.info(f"✅ Connection test to {source_url} succeeded")
        return result

    async def sync_all_playlists(self) -> Dict[str, Any]:
        """Syncs every stored playlist; one failure does not stop the others."""
        results: Dict[str, Any] = {}
        for playlist in await self.store.list_playlists():
            try:
                results[playlist.id] = await self.sync_playlist(playlist.id)
            except (SyncError, NotFoundError) as e:
                results[playlist.id] = e
        ok = sum(1 for r in results.values() if isinstance(r, SyncReport))
        logger.info(f"🔄 Scheduled sync finished: {ok}/{len(results)} playlists OK")
        return results
