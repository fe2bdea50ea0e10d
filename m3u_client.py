import asyncio
import json
import logging
import re
from typing import Dict, List, Optional

import aiohttp
from aiohttp import ClientTimeout

from channel_models import Channel
from relay_config import DEFAULT_USER_AGENT, M3U_PROXIES, PLAYLIST_FETCH_TIMEOUT
from relay_errors import FetchError
from upstream_http import build_session, read_body

logger = logging.getLogger(__name__)

ATTRIBUTE_RE = re.compile(r'([\w-]+)="([^"]*)"')
DURATION_RE = re.compile(r'^#EXTINF:\s*(-?\d+(?:\.\d+)?)')


def _vlc_header(option: str, headers: Dict[str, str]):
    """Applies one `#EXTVLCOPT:http-...` option to the pending header set."""
    if '=' not in option:
        return
    key, value = option.split('=', 1)
    key, value = key.strip(), value.strip()
    if key == 'http-header' and ':' in value:
        header_key, header_value = value.split(':', 1)
        headers[header_key.strip()] = header_value.strip()
    elif key.startswith('http-'):
        header_key = '-'.join(word.capitalize() for word in key[len('http-'):].split('-'))
        headers[header_key] = value


def _extinf_channel(line: str, index: int) -> Channel:
    attributes = dict(ATTRIBUTE_RE.findall(line))
    # the display name follows the last comma, after all quoted attributes
    name = line.rsplit(',', 1)[1].strip() if ',' in line else ''
    duration_match = DURATION_RE.match(line)

    tvg_id = attributes.get('tvg-id', '').strip()
    channel_id = tvg_id or name or f"m3u_{index}"
    logo = attributes.get('tvg-logo', '')
    return Channel(
        channel_id=channel_id,
        name=name or attributes.get('tvg-name', '') or channel_id,
        original_name=name,
        logo=logo,
        group=attributes.get('group-title') or 'Uncategorized',
        tvg_id=tvg_id,
        tvg_name=attributes.get('tvg-name', ''),
        tvg_logo=logo,
        tvg_shift=attributes.get('tvg-shift', ''),
        duration=duration_match.group(1) if duration_match else '',
        source_type='m3u',
    )


def looks_like_playlist(text: str) -> bool:
    """An extended M3U body starts with #EXTM3U or at least carries #EXTINF directives."""
    return text.lstrip('\ufeff \t\r\n').startswith('#EXTM3U') or '#EXTINF' in text


class M3UClient:
    """Fetches and parses extended M3U playlists."""

    def __init__(self, source_url: str, proxies: Optional[List[str]] = None):
        self.source_url = source_url
        self.proxies = M3U_PROXIES if proxies is None else proxies
        self.user_agent = DEFAULT_USER_AGENT
        self.session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _get_session(self):
        if self.session is None or self.session.closed:
            timeout = ClientTimeout(total=PLAYLIST_FETCH_TIMEOUT, connect=10)
            self.session = build_session(timeout, self.proxies, auto_decompress=False)
        return self.session

    async def fetch(self) -> str:
        headers = {
            'User-Agent': self.user_agent,
            'Accept': '*/*',
            'Accept-Language': 'en-US,en;q=0.9',
            'Accept-Encoding': 'gzip, deflate',
            'Connection': 'keep-alive'
        }
        session = await self._get_session()
        try:
            async with session.get(self.source_url, headers=headers, ssl=False) as response:
                if response.status >= 400:
                    raise FetchError(f"Playlist download returned HTTP {response.status}", status=response.status)
                content = await read_body(response)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Error downloading playlist {self.source_url}: {e}")
            raise FetchError(f"Playlist download failed: {e or e.__class__.__name__}")
        logger.info(f"📡 Downloaded playlist {self.source_url} ({len(content)} chars)")
        return content

    @staticmethod
    def parse(text: str) -> List[Channel]:
        """
        Pairs every #EXTINF directive with the next URL line.
        #EXTVLCOPT / #EXTHTTP lines in between become the channel's HTTP headers.
        """
        channels: List[Channel] = []
        pending: Optional[Channel] = None
        pending_headers: Dict[str, str] = {}

        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line:
                continue

            if line.startswith('#EXTINF:'):
                if pending is not None:
                    # directive with no URL before the next one
                    channels.append(pending)
                pending = _extinf_channel(line, len(channels))
                pending_headers = {}
            elif line.startswith('#EXTVLCOPT:'):
                _vlc_header(line.split(':', 1)[1], pending_headers)
            elif line.startswith('#EXTHTTP:'):
                try:
                    parsed = json.loads(line.split(':', 1)[1])
                except ValueError as e:
                    logger.warning(f"⚠️ Error parsing #EXTHTTP '{line}': {e}")
                    continue
                if isinstance(parsed, dict):
                    pending_headers.update({str(k): str(v) for k, v in parsed.items()})
            elif line.startswith('#'):
                continue
            elif pending is not None:
                pending.cmd = line
                pending.http_headers = dict(pending_headers)
                channels.append(pending)
                pending = None
                pending_headers = {}

        if pending is not None:
            channels.append(pending)
        return channels

    async def sync_all(self) -> List[Channel]:
        logger.info(f"🔄 Starting M3U sync for {self.source_url}")
        content = await self.fetch()
        if not looks_like_playlist(content):
            # error or captive-portal pages arrive with HTTP 200
            raise FetchError(f"{self.source_url} did not return an M3U playlist")
        channels = self.parse(content)
        logger.info(f"✅ Parsed {len(channels)} channels from playlist")
        return channels

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
