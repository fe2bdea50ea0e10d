import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, quote, urlsplit

import aiohttp
from aiohttp import ClientTimeout

from channel_models import Channel
from fallback_chain import Outcome
from portal_decoder import decode_response, is_raw
from relay_config import LISTING_TIMEOUT, PORTAL_CALL_TIMEOUT, XTREAM_PROXIES
from relay_errors import AuthenticationError, UpstreamError
from upstream_http import build_session, read_body

logger = logging.getLogger(__name__)

XTREAM_USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'

# Player identities panels commonly whitelist; the first one is the default
PLAYER_PROFILES = [
    {'name': 'TiviMate', 'User-Agent': 'TiviMate/4.7.0 (Linux; Android 11)'},
    {'name': 'IPTVSmartersPro', 'User-Agent': 'IPTVSmartersPro'},
    {'name': 'VLC', 'User-Agent': 'VLC/3.0.20 LibVLC/3.0.20'},
    {'name': 'Kodi', 'User-Agent': 'Kodi/20.2 (Linux; Android 11) Android/11.0.0 Sys_CPU/aarch64 App_Bitness/64 Version/20.2-(20.2.0)-Git:20230629-5f418d0b13'},
    {'name': 'Lavf', 'User-Agent': 'Lavf/58.76.100'},
]


def player_headers(profile: Dict[str, str]) -> Dict[str, str]:
    return {
        'User-Agent': profile['User-Agent'],
        'Accept': '*/*',
        'Connection': 'keep-alive',
    }


@dataclass
class PanelSnapshot:
    user_info: Dict[str, Any]
    server_info: Dict[str, Any]
    categories: List[Dict[str, Any]]
    channels: List[Channel]
    degraded: List[str] = field(default_factory=list)


def panel_base_url(source_url: str) -> str:
    if '://' not in source_url:
        source_url = 'http://' + source_url
    parts = urlsplit(source_url)
    return f"{parts.scheme}://{parts.netloc}"


def xtream_stream_url(base_url: str, username: str, password: str, stream_id: str, container: str = 'ts') -> str:
    """Canonical live URL; credentials are path segments, so they are percent-encoded whole."""
    return f"{base_url}/live/{quote(str(username), safe='')}/{quote(str(password), safe='')}/{stream_id}.{container}"


def credentials_from_url(source_url: str) -> Tuple[Optional[str], Optional[str]]:
    """Reads username/password from a get.php or player_api.php link."""
    query = parse_qs(urlsplit(source_url or '').query)
    username = query.get('username', [None])[0]
    password = query.get('password', [None])[0]
    return username, password


class XtreamClient:
    """Client for Xtream Codes compatible panels (player_api.php)."""

    def __init__(self, source_url: str, username: Optional[str] = None, password: Optional[str] = None,
                 proxies: Optional[List[str]] = None):
        self.base_url = panel_base_url(source_url)
        if not username or not password:
            url_username, url_password = credentials_from_url(source_url)
            username = username or url_username
            password = password or url_password
        self.username = username
        self.password = password
        self.proxies = XTREAM_PROXIES if proxies is None else proxies
        self.user_info: Dict[str, Any] = {}
        self.server_info: Dict[str, Any] = {}
        self.session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _get_session(self):
        if self.session is None or self.session.closed:
            timeout = ClientTimeout(total=LISTING_TIMEOUT, connect=PORTAL_CALL_TIMEOUT)
            self.session = build_session(timeout, self.proxies, auto_decompress=False)
        return self.session

    async def _api(self, action: Optional[str], timeout: float = PORTAL_CALL_TIMEOUT) -> Any:
        if not self.username or not self.password:
            raise AuthenticationError("Xtream username and password are required")

        session = await self._get_session()
        params = {'username': self.username, 'password': self.password}
        if action:
            params['action'] = action
        url = f"{self.base_url}/player_api.php"
        headers = {'User-Agent': XTREAM_USER_AGENT, 'Accept': '*/*', 'Accept-Encoding': 'gzip, deflate, zstd'}

        try:
            async with session.get(url, params=params, headers=headers,
                                   timeout=ClientTimeout(total=timeout), ssl=False) as response:
                if response.status in (401, 403):
                    raise AuthenticationError(f"Xtream panel rejected credentials (HTTP {response.status})")
                if response.status >= 400:
                    raise UpstreamError(f"player_api.php action={action} returned HTTP {response.status}",
                                        status=response.status)
                body = await read_body(response)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"player_api.php action={action} failed: {e or e.__class__.__name__}")
        return decode_response(body)

    async def authenticate(self) -> Dict[str, Any]:
        data = await self._api('handshake')
        if is_raw(data) or not isinstance(data, dict):
            raise UpstreamError("Xtream panel returned an unreadable authentication response")

        user_info = data.get('user_info') or data.get('user')
        if not isinstance(user_info, dict):
            raise AuthenticationError("Xtream panel did not return account information")
        status = str(user_info.get('status', ''))
        if status != 'Active':
            raise AuthenticationError(f"Xtream account is not active (status: {status or 'unknown'})")

        self.user_info = user_info
        self.server_info = data.get('server_info') or {}
        logger.info(f"✅ Xtream authentication OK for {self.username} on {self.base_url}")
        return user_info

    async def get_live_categories(self) -> Outcome:
        try:
            data = await self._api('get_live_categories')
            if is_raw(data):
                raise UpstreamError("Xtream panel returned an unreadable category list")
        except UpstreamError as e:
            logger.warning(f"⚠️ Get live categories failed: {e}")
            return Outcome.fallback([], e)
        rows = data.get('data') if isinstance(data, dict) else data
        return Outcome([row for row in rows if isinstance(row, dict)] if isinstance(rows, list) else [])

    async def list_live_channels(self, categories: Optional[Outcome] = None) -> List[Channel]:
        if categories is None:
            categories = await self.get_live_categories()
        category_names = {
            str(row.get('category_id')): str(row.get('category_name'))
            for row in categories.value if row.get('category_id') is not None and row.get('category_name')
        }

        data = await self._api('get_live_streams', timeout=LISTING_TIMEOUT)
        rows = data.get('data') if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise UpstreamError("Xtream panel returned an unreadable stream list")

        channels = []
        for row in rows:
            if not isinstance(row, dict) or row.get('stream_id') in (None, ''):
                continue
            channel_id = str(row['stream_id'])
            name = str(row.get('name') or f"Stream {channel_id}")
            category_id = row.get('category_id')
            group = category_names.get(str(category_id)) or row.get('category_name') or 'Uncategorized'
            channels.append(Channel(
                channel_id=channel_id,
                name=name,
                original_name=name,
                cmd=self.stream_url(channel_id),
                logo=str(row.get('stream_icon') or ''),
                group=str(group),
                epg_id=str(row.get('epg_channel_id') or ''),
                tvg_id=str(row.get('epg_channel_id') or ''),
                tvg_logo=str(row.get('stream_icon') or ''),
                genre_id=str(category_id) if category_id not in (None, '') else None,
                age_restricted=row.get('is_adult') in (1, '1'),
                source_type='xtream',
            ))
        logger.info(f"✅ Retrieved {len(channels)} live streams from {self.base_url}")
        return channels

    def stream_url(self, channel_id: str, container: str = 'ts') -> str:
        return xtream_stream_url(self.base_url, self.username, self.password, channel_id, container)

    async def sync_all(self) -> PanelSnapshot:
        logger.info(f"🔄 Starting Xtream sync on {self.base_url}")
        await self.authenticate()
        categories = await self.get_live_categories()
        channels = await self.list_live_channels(categories)
        return PanelSnapshot(
            user_info=self.user_info,
            server_info=self.server_info,
            categories=categories.value,
            channels=channels,
            degraded=['categories'] if categories.degraded else [],
        )

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
