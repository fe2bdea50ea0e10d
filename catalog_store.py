import abc
import asyncio
import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional

from channel_models import Channel, Playlist
from relay_errors import NotFoundError

logger = logging.getLogger(__name__)


class CatalogStore(abc.ABC):
    """Persistence contract for playlists and their channel catalogs."""

    @abc.abstractmethod
    async def get_playlist(self, playlist_id: str) -> Playlist:
        """Raises NotFoundError when the playlist does not exist."""

    @abc.abstractmethod
    async def list_playlists(self) -> List[Playlist]:
        ...

    @abc.abstractmethod
    async def save_playlist(self, playlist: Playlist) -> Playlist:
        ...

    @abc.abstractmethod
    async def get_channel(self, playlist_id: str, channel_id: str) -> Channel:
        """Raises NotFoundError when the channel does not exist."""

    @abc.abstractmethod
    async def list_channels(self, playlist_id: str) -> List[Channel]:
        ...

    @abc.abstractmethod
    async def upsert_channels(self, playlist_id: str, channels: Iterable[Channel]) -> int:
        """Inserts or replaces channels keyed by (playlist_id, channel_id); returns how many were written."""

    @abc.abstractmethod
    async def delete_channels_not_in(self, playlist_id: str, keep_ids: Iterable[str]) -> int:
        """Deletes the playlist's channels whose id is not in `keep_ids`; returns the deleted count."""

    @abc.abstractmethod
    async def update_playlist_sync_result(self, playlist_id: str, **changes: Any) -> Playlist:
        ...


class JsonCatalogStore(CatalogStore):
    """
    In-memory catalog, optionally mirrored to a JSON file.

    The file is loaded once at construction and rewritten after every mutation.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or None
        self._playlists: Dict[str, Playlist] = {}
        self._channels: Dict[str, Dict[str, Channel]] = {}
        self._write_lock = asyncio.Lock()
        self._load()

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                logger.info(f"💾 Loading catalog from file: {self.path}")
                data = json.load(f)
        except (IOError, ValueError) as e:
            logger.error(f"❌ Error loading catalog: {e}. Starting with an empty catalog.")
            return

        for raw in data.get('playlists', []):
            playlist = Playlist.from_dict(raw)
            self._playlists[playlist.id] = playlist
        for playlist_id, rows in (data.get('channels') or {}).items():
            self._channels[playlist_id] = {}
            for raw in rows:
                channel = Channel.from_dict(raw)
                channel.playlist_id = playlist_id
                self._channels[playlist_id][channel.channel_id] = channel
        logger.info(f"✅ Catalog loaded: {len(self._playlists)} playlists")

    def _snapshot(self) -> Dict[str, Any]:
        return {
            'playlists': [p.to_dict() for p in self._playlists.values()],
            'channels': {
                playlist_id: [c.to_dict() for c in channels.values()]
                for playlist_id, channels in self._channels.items()
            },
        }

    async def _save(self):
        if not self.path:
            return
        async with self._write_lock:
            try:
                tmp_path = self.path + '.tmp'
                with open(tmp_path, 'w', encoding='utf-8') as f:
                    json.dump(self._snapshot(), f, ensure_ascii=False)
                os.replace(tmp_path, self.path)
            except IOError as e:
                logger.error(f"❌ Error saving catalog to {self.path}: {e}")

    async def get_playlist(self, playlist_id: str) -> Playlist:
        playlist = self._playlists.get(str(playlist_id))
        if playlist is None:
            raise NotFoundError(f"Playlist {playlist_id} not found")
        return playlist

    async def list_playlists(self) -> List[Playlist]:
        return list(self._playlists.values())

    async def save_playlist(self, playlist: Playlist) -> Playlist:
        self._playlists[playlist.id] = playlist
        self._channels.setdefault(playlist.id, {})
        await self._save()
        return playlist

    async def get_channel(self, playlist_id: str, channel_id: str) -> Channel:
        channel = self._channels.get(str(playlist_id), {}).get(str(channel_id))
        if channel is None:
            raise NotFoundError(f"Channel {channel_id} not found in playlist {playlist_id}")
        return channel

    async def list_channels(self, playlist_id: str) -> List[Channel]:
        return list(self._channels.get(str(playlist_id), {}).values())

    async def upsert_channels(self, playlist_id: str, channels: Iterable[Channel]) -> int:
        bucket = self._channels.setdefault(str(playlist_id), {})
        written = 0
        for channel in channels:
            channel.playlist_id = str(playlist_id)
            bucket[channel.channel_id] = channel
            written += 1
        await self._save()
        return written

    async def delete_channels_not_in(self, playlist_id: str, keep_ids: Iterable[str]) -> int:
        bucket = self._channels.get(str(playlist_id), {})
        keep = set(keep_ids)
        stale = [channel_id for channel_id in bucket if channel_id not in keep]
        for channel_id in stale:
            del bucket[channel_id]
        if stale:
            await self._save()
        return len(stale)

    async def update_playlist_sync_result(self, playlist_id: str, **changes: Any) -> Playlist:
        playlist = await self.get_playlist(playlist_id)
        for key, value in changes.items():
            if not hasattr(playlist, key):
                raise AttributeError(f"Playlist has no field {key!r}")
            setattr(playlist, key, value)
        await self._save()
        return playlist
