import logging
from typing import Dict, Optional

from catalog_store import CatalogStore
from channel_models import Channel, Playlist, ResolvedStream
from cmd_classifier import (EXTERNAL_XTREAM, MAG, RAW, SAME_HOST_XTREAM, Classification, classify,
                            ensure_ts_extension, inject_stream_id, source_origin)
from mag_client import MagPortalClient, mag_device_headers
from relay_config import DEFAULT_MAC, DEFAULT_USER_AGENT
from relay_errors import NotFoundError, ResolutionError
from xtream_client import PLAYER_PROFILES, player_headers, xtream_stream_url

logger = logging.getLogger(__name__)


class StreamResolver:
    """
    Turns a stored channel cmd into a playable URL plus the headers the upstream expects.

    Never writes to the catalog: a refreshed MAG link lives only in the returned descriptor.
    """

    def __init__(self, store: CatalogStore, mag_client_factory=MagPortalClient):
        self.store = store
        self.mag_client_factory = mag_client_factory

    async def resolve(self, playlist_id: str, channel_id: str, cmd: Optional[str] = None) -> ResolvedStream:
        playlist = await self.store.get_playlist(playlist_id)
        for problem in playlist.validate():
            logger.warning(f"⚠️ Playlist {playlist.id}: {problem}")

        channel: Optional[Channel] = None
        try:
            channel = await self.store.get_channel(playlist_id, channel_id)
        except NotFoundError:
            if not cmd:
                raise
        if not cmd:
            cmd = channel.cmd

        classification = classify(cmd, playlist, channel_id)
        logger.info(f"🔗 Resolving channel {channel_id} of playlist {playlist_id} as {classification.kind}")

        if classification.kind == MAG:
            stream = await self._resolve_mag(playlist, cmd, classification)
        elif classification.kind == EXTERNAL_XTREAM:
            stream = self._resolve_external_xtream(classification)
        elif classification.kind == SAME_HOST_XTREAM:
            stream = self._resolve_same_host_xtream(playlist, classification)
        else:
            stream = self._resolve_raw(classification)

        if stream is None:
            raise ResolutionError(f"No usable stream URL for channel {channel_id}")
        if channel is not None and channel.http_headers:
            stream.headers.update(channel.http_headers)
        logger.info(f"✅ Resolved channel {channel_id} -> {stream.uri}")
        return stream

    def _resolve_external_xtream(self, classification: Classification) -> Optional[ResolvedStream]:
        # Foreign-host Xtream URLs are used as stored, no upstream round trip
        if not classification.raw_url:
            return None
        return ResolvedStream(
            uri=ensure_ts_extension(classification.raw_url),
            dialect=EXTERNAL_XTREAM,
            headers=player_headers(PLAYER_PROFILES[0]),
        )

    def _resolve_same_host_xtream(self, playlist: Playlist, classification: Classification) -> Optional[ResolvedStream]:
        headers = player_headers(PLAYER_PROFILES[0])
        if playlist.has_xtream_credentials and classification.stream_id:
            extension = classification.extension or 'ts'
            uri = xtream_stream_url(source_origin(playlist.source_url), playlist.xtream_username,
                                    playlist.xtream_password, classification.stream_id, extension)
            return ResolvedStream(uri=uri, dialect=SAME_HOST_XTREAM, headers=headers)

        logger.warning(f"⚠️ Playlist {playlist.id} has no Xtream credentials, using the stored URL")
        if not classification.raw_url:
            return None
        return ResolvedStream(uri=ensure_ts_extension(classification.raw_url),
                              dialect=SAME_HOST_XTREAM, headers=headers)

    async def _resolve_mag(self, playlist: Playlist, cmd: str, classification: Classification) -> Optional[ResolvedStream]:
        mac = playlist.mac_address or DEFAULT_MAC
        async with self.mag_client_factory(playlist.source_url, mac) as client:
            await client.handshake()
            fresh_url = await client.resolve_link(cmd)
            token = client.token

        if fresh_url:
            uri = fresh_url
        else:
            uri = classification.raw_url
            if not uri:
                return None
            logger.warning(f"⚠️ create_link gave nothing, falling back to the stored URL {uri}")
        uri = inject_stream_id(uri, classification.stream_id)
        return ResolvedStream(uri=uri, dialect=MAG, headers=mag_device_headers(mac, token, playlist.source_url), mac=mac)

    def _resolve_raw(self, classification: Classification) -> Optional[ResolvedStream]:
        if not classification.raw_url:
            return None
        headers: Dict[str, str] = {'User-Agent': DEFAULT_USER_AGENT, 'Accept': '*/*'}
        return ResolvedStream(uri=inject_stream_id(classification.raw_url, classification.stream_id),
                              dialect=RAW, headers=headers)

