import asyncio
import enum
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlsplit

import aiohttp
from aiohttp import ClientTimeout

from channel_models import Channel
from cmd_classifier import extract_raw_url, guess_stream_id
from fallback_chain import Outcome, first_successful
from portal_decoder import find_token, is_raw, js_payload, decode_response
from relay_config import (GENRE_BATCH_SIZE, HANDSHAKE_TIMEOUT, LISTING_TIMEOUT,
                          MAG_PROXIES, PORTAL_CALL_TIMEOUT, PROFILE_TIMEOUT)
from relay_errors import UpstreamError
from upstream_http import build_session, read_body

logger = logging.getLogger(__name__)

MAG_USER_AGENT = 'Mozilla/5.0 (QtEmbedded; U; Linux; C) AppleWebKit/533.3 (KHTML, like Gecko) MAG200 stbapp ver: 2 rev: 250 Safari/533.3'
MAG_X_USER_AGENT = 'Model: MAG250; Link: WiFi'

API_PATHS = [
    '/server/load.php',
    '/c/server/load.php',
    '/stalker_portal/server/load.php',
    '/portal/server/load.php',
    '/api/server/load.php',
    '/stb/server/load.php',
    '/load.php',
]

# Device fingerprint sent with get_profile
MAG_SERIAL = '313356B172963'
MAG_HW_VERSION_2 = '313356b17296332b483ccaa49f3eb8f7'
MAG_VERSION_STRING = ('ImageDescription: 0.2.18-r14-pub-250; ImageDate: Fri Jan 15 15:20:44 EET 2016; '
                      'PORTAL version: 5.1.0; API Version: JS API version: 328; STB API version: 134; '
                      'Player Engine version: 0x566')

ONE_SHOT_LISTINGS = [
    {'type': 'itv', 'action': 'get_all_channels', 'all': 1},
    {'type': 'itv', 'action': 'get_ordered_list'},
    {'type': 'itv', 'action': 'get_all_channels'},
    {'type': 'itv', 'action': 'get_all_items'},
]

CATEGORY_LISTINGS = [
    {'type': 'itv', 'action': 'get_channels'},
    {'type': 'itv', 'action': 'get_all_channels', 'force_ch_link_check': 1},
    {'type': 'itv', 'action': 'get_all_channels', 'genre': 1},
    {'type': 'itv', 'action': 'get_ordered_list', 'genre': '*', 'fav': 0},
]

MAX_PAGES = 200


class PortalState(enum.Enum):
    UNINITIALIZED = 'uninitialized'
    HANDSHAKING = 'handshaking'
    READY = 'ready'
    LINKING = 'linking'


@dataclass
class PortalSnapshot:
    account_info: Dict[str, Any]
    profile: Optional[Dict[str, Any]]
    genres: List[Dict[str, Any]]
    channels: List[Channel]
    degraded: List[str] = field(default_factory=list)


def portal_base_url(url: str) -> str:
    url = (url or '').strip()
    if url and '://' not in url:
        url = 'http://' + url
    url = url.rstrip('/')
    if url.endswith('/c'):
        url = url[:-2]
    return url


def mag_device_headers(mac_address: str, token: Optional[str] = None, referer_url: Optional[str] = None) -> Dict[str, str]:
    """Set-top-box emulation headers shared by portal calls and media fetches."""
    headers = {
        'User-Agent': MAG_USER_AGENT,
        'X-User-Agent': MAG_X_USER_AGENT,
        'Accept': '*/*',
        'Accept-Language': 'en-US,en;q=0.9',
        'Connection': 'keep-alive',
        'Cookie': f'mac={mac_address}; stb_lang=en; timezone=GMT',
    }
    if token:
        headers['Authorization'] = f'Bearer {token}'
        headers['Cookie'] += f'; token={token}'
    if referer_url:
        parts = urlsplit(referer_url)
        if parts.scheme and parts.netloc:
            headers['Referer'] = f'{parts.scheme}://{parts.netloc}/c/'
    return headers


def extract_rows(payload: Any) -> List[Dict[str, Any]]:
    """Finds the channel rows in a listing payload, whatever wrapper the vendor chose."""
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if isinstance(payload, dict):
        for key in ('data', 'items', 'channels'):
            if isinstance(payload.get(key), list):
                return [row for row in payload[key] if isinstance(row, dict)]
        values = list(payload.values())
        if values and all(isinstance(v, dict) for v in values) and (values[0].get('id') or values[0].get('name')):
            return values
    return []


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _flag(value: Any, *truthy) -> bool:
    return value in truthy


class MagPortalClient:
    """
    Client for MAG/Stalker middleware portals.

    One instance covers one resolution or sync attempt: the handshake token and the
    discovered API path live on the instance and are never shared across requests.
    """

    def __init__(self, portal_url: str, mac_address: str, proxies: Optional[List[str]] = None):
        self.base_url = portal_base_url(portal_url)
        self.mac_address = mac_address
        self.proxies = MAG_PROXIES if proxies is None else proxies
        self.token: Optional[str] = None
        self.api_path: Optional[str] = None
        self.state = PortalState.UNINITIALIZED
        self.genres: Dict[str, str] = {}
        self.session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _get_session(self):
        if self.session is None or self.session.closed:
            timeout = ClientTimeout(total=LISTING_TIMEOUT, connect=HANDSHAKE_TIMEOUT)
            self.session = build_session(timeout, self.proxies, auto_decompress=False)
        return self.session

    def headers(self) -> Dict[str, str]:
        headers = mag_device_headers(self.mac_address, self.token, self.base_url)
        headers['Accept-Encoding'] = 'gzip, deflate, zstd'
        return headers

    async def _call(self, params: Dict[str, Any], timeout: float, api_path: Optional[str] = None,
                    with_token: bool = True) -> Any:
        """One load.php request. Transport failures and error statuses raise UpstreamError."""
        session = await self._get_session()
        url = f"{self.base_url}{api_path or self.api_path or API_PATHS[0]}"
        query = {key: str(value) for key, value in params.items()}
        query['JsHttpRequest'] = '1-xml'
        if with_token and self.token:
            query['token'] = self.token

        try:
            async with session.get(url, params=query, headers=self.headers(),
                                   timeout=ClientTimeout(total=timeout), ssl=False) as response:
                if response.status >= 400:
                    raise UpstreamError(f"{query.get('action')} on {url} returned HTTP {response.status}",
                                        status=response.status)
                body = await read_body(response)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"{query.get('action')} on {url} failed: {e or e.__class__.__name__}")
        return decode_response(body)

    async def _call_structured(self, params: Dict[str, Any], timeout: float) -> Any:
        """Like _call, but a body that is not JSON (maintenance or error page) counts as a failed call."""
        data = await self._call(params, timeout)
        if is_raw(data):
            raise UpstreamError(f"{params.get('action')} on {self.base_url} returned an unreadable body")
        return data

    async def _ensure_ready(self):
        if self.state == PortalState.UNINITIALIZED:
            await self.handshake()

    async def handshake(self) -> Optional[str]:
        """Probes the candidate API paths; the first one handing out a token is kept for the session."""
        self.state = PortalState.HANDSHAKING
        candidates = [
            (path, partial(self._call, {'type': 'stb', 'action': 'handshake', 'token': ''},
                           HANDSHAKE_TIMEOUT, api_path=path, with_token=False))
            for path in API_PATHS
        ]
        chain = await first_successful(candidates, accept=lambda data: find_token(data) is not None,
                                       what="MAG handshake")
        if chain.succeeded:
            self.api_path = chain.winner.label
            self.token = find_token(chain.value)
            logger.info(f"✅ MAG handshake OK on {self.api_path}, token: {self.token}")
        else:
            intelligible = [a.label for a in chain.responses if not is_raw(a.value)]
            self.api_path = intelligible[0] if intelligible else API_PATHS[0]
            self.token = None
            logger.warning(f"⚠️ MAG handshake gave no token on {self.base_url}, continuing without token on {self.api_path}")
        self.state = PortalState.READY
        return self.token

    async def get_account_info(self) -> Outcome:
        await self._ensure_ready()
        try:
            data = await self._call_structured({'type': 'account_info', 'action': 'get_main_info'}, PORTAL_CALL_TIMEOUT)
        except UpstreamError as e:
            logger.warning(f"⚠️ Get account info failed: {e}")
            return Outcome.fallback({'status': 'offline'}, e)
        payload = js_payload(data)
        return Outcome(payload if isinstance(payload, dict) else {'status': 'ok'})

    async def get_profile(self) -> Outcome:
        await self._ensure_ready()
        metrics = json.dumps({
            'mac': self.mac_address,
            'sn': MAG_SERIAL,
            'model': 'MAG250',
            'type': 'STB',
            'uid': '',
            'random': secrets.token_hex(16),
        })
        params = {
            'type': 'stb',
            'action': 'get_profile',
            'hd': 1,
            'ver': MAG_VERSION_STRING,
            'num_banks': 2,
            'sn': MAG_SERIAL,
            'stb_type': 'MAG250',
            'image_version': '218',
            'video_out': 'hdmi',
            'device_id': '',
            'device_id2': '',
            'signature': '',
            'auth_second_step': 1,
            'hw_version': '1.7-BD-00',
            'not_valid_token': 0,
            'client_type': 'STB',
            'hw_version_2': MAG_HW_VERSION_2,
            'timestamp': int(time.time()),
            'api_signature': 263,
            'metrics': metrics,
        }
        try:
            data = await self._call_structured(params, PROFILE_TIMEOUT)
        except UpstreamError as e:
            logger.warning(f"⚠️ Get profile failed: {e}")
            return Outcome.fallback(None, e)
        payload = js_payload(data)
        return Outcome(payload if isinstance(payload, dict) else None)

    async def get_genres(self) -> Outcome:
        await self._ensure_ready()
        try:
            data = await self._call_structured({'type': 'itv', 'action': 'get_genres'}, PORTAL_CALL_TIMEOUT)
        except UpstreamError as e:
            logger.warning(f"⚠️ Get genres failed: {e}")
            return Outcome.fallback([], e)
        genres = extract_rows(js_payload(data))
        self.genres = {
            str(genre['id']): str(genre.get('title') or genre.get('name') or genre['id'])
            for genre in genres if genre.get('id') is not None
        }
        logger.info(f"✅ Found {len(self.genres)} genres")
        return Outcome(genres)

    async def create_link(self, cmd: str) -> Optional[str]:
        """Exchanges a channel cmd for a freshly authorised one. Any failure gives None."""
        await self._ensure_ready()
        self.state = PortalState.LINKING
        params = {
            'type': 'itv',
            'action': 'create_link',
            'cmd': cmd,
            'series': 0,
            'forced_storage': 0,
            'disable_ad': 0,
            'download': 0,
        }
        try:
            data = await self._call(params, PORTAL_CALL_TIMEOUT)
        except UpstreamError as e:
            logger.warning(f"⚠️ create_link error: {e}")
            return None
        finally:
            self.state = PortalState.READY

        payload = js_payload(data)
        fresh_cmd = None
        if isinstance(payload, dict):
            fresh_cmd = payload.get('cmd') or payload.get('url')
        logger.info(f"🔗 create_link response cmd: {fresh_cmd}")
        return str(fresh_cmd) if fresh_cmd else None

    def build_short_cmd(self, cmd: str) -> Optional[str]:
        """Rebuilds a minimal play cmd from host + numeric stream id."""
        raw_url = extract_raw_url(cmd)
        stream_id = guess_stream_id(cmd, raw_url)
        if not stream_id:
            return None
        host = urlsplit(raw_url).netloc if raw_url else urlsplit(self.base_url).netloc
        if not host:
            return None
        short_cmd = f"ffmpeg http://{host}/play/live.php?mac={self.mac_address}&stream={stream_id}&extension=ts"
        return short_cmd if short_cmd != cmd else None

    async def resolve_link(self, cmd: str) -> Optional[str]:
        """create_link with the stored cmd, then with the short cmd; returns the playable URL."""
        candidates = [('stored cmd', partial(self.create_link, cmd))]
        short_cmd = self.build_short_cmd(cmd)
        if short_cmd:
            candidates.append(('short cmd', partial(self.create_link, short_cmd)))
        chain = await first_successful(candidates, accept=lambda fresh: extract_raw_url(fresh) is not None,
                                       what="MAG create_link")
        if not chain.succeeded:
            return None
        fresh_url = extract_raw_url(chain.value)
        logger.info(f"✅ Fresh MAG URL via {chain.winner.label}: {fresh_url}")
        return fresh_url

    async def _fetch_rows(self, params: Dict[str, Any], timeout: float = LISTING_TIMEOUT) -> List[Dict[str, Any]]:
        """Runs a listing action, following `p=` pages while the portal reports more items."""
        rows: List[Dict[str, Any]] = []
        page = 1
        while page <= MAX_PAGES:
            query = dict(params)
            if page > 1:
                query['p'] = page
            payload = js_payload(await self._call_structured(query, timeout))
            page_rows = extract_rows(payload)
            if not page_rows:
                break
            rows.extend(page_rows)

            total = _as_int(payload.get('total_items')) if isinstance(payload, dict) else None
            per_page = _as_int(payload.get('max_page_items')) if isinstance(payload, dict) else None
            if not total or not per_page or len(rows) >= total or len(page_rows) < per_page:
                break
            page += 1
        return rows

    async def _fetch_rows_by_genre(self) -> List[Dict[str, Any]]:
        if not self.genres:
            outcome = await self.get_genres()
            if outcome.degraded:
                # a missing genre list must not pass for an empty catalog
                raise UpstreamError(f"genre list unavailable: {outcome.error}")
        genre_ids = list(self.genres)
        if not genre_ids:
            logger.info("No genres found")
            return []

        logger.info(f"Fetching channels for {len(genre_ids)} genres in batches of {GENRE_BATCH_SIZE}...")
        collected: Dict[str, Dict[str, Any]] = {}
        failures = 0
        for start in range(0, len(genre_ids), GENRE_BATCH_SIZE):
            batch = genre_ids[start:start + GENRE_BATCH_SIZE]
            results = await asyncio.gather(
                *(self._fetch_rows({'type': 'itv', 'action': 'get_ordered_list', 'genre': genre_id}, PROFILE_TIMEOUT)
                  for genre_id in batch),
                return_exceptions=True
            )
            for genre_id, result in zip(batch, results):
                if isinstance(result, Exception):
                    failures += 1
                    logger.warning(f"⚠️ Failed to fetch genre {genre_id}: {result}")
                    continue
                for row in result:
                    key = str(row.get('id') or row.get('channel_id') or row.get('name'))
                    collected.setdefault(key, row)
            logger.info(f"Processed {min(start + GENRE_BATCH_SIZE, len(genre_ids))}/{len(genre_ids)} genres")

        if failures == len(genre_ids):
            raise UpstreamError("every per-genre listing failed")
        logger.info(f"Unique channels after deduplication: {len(collected)}")
        return list(collected.values())

    async def get_all_channels(self) -> List[Channel]:
        """
        Tries one-shot listings, then per-category/page variants, then a per-genre fan-out.
        Raises UpstreamError only when no listing request answered at all.
        """
        await self._ensure_ready()
        candidates = []
        for params in ONE_SHOT_LISTINGS + CATEGORY_LISTINGS:
            label = params['action'] + ''.join(f" {k}={v}" for k, v in params.items() if k not in ('type', 'action'))
            candidates.append((label, partial(self._fetch_rows, params)))
        candidates.append(('per-genre', self._fetch_rows_by_genre))

        started = time.monotonic()
        chain = await first_successful(candidates, accept=bool, what="MAG channel listing")
        if chain.succeeded:
            channels = self.transform_channels(chain.value)
            logger.info(f"✅ Retrieved {len(channels)} channels with {chain.winner.label} "
                        f"in {time.monotonic() - started:.1f}s")
            return channels
        if chain.nobody_answered:
            raise UpstreamError(f"no channel listing action answered on {self.base_url}")
        logger.warning(f"⚠️ Portal {self.base_url} answered but listed no channels")
        return []

    def generate_stream_url(self, channel_id: str) -> str:
        return f"{self.base_url}/live/{quote(self.mac_address or '', safe='')}/{self.token or ''}/{channel_id}.ts"

    def transform_channels(self, rows: List[Dict[str, Any]]) -> List[Channel]:
        channels = []
        for row in rows:
            name = str(row.get('name') or row.get('title') or row.get('display_name') or 'Unknown')
            raw_id = row.get('id') or row.get('channel_id') or row.get('channelId')
            channel_id = str(raw_id) if raw_id not in (None, '') else name
            cmd = row.get('cmd') or row.get('url') or ''
            if not cmd:
                cmd = self.generate_stream_url(channel_id)

            genre_id = row.get('tv_genre_id') or row.get('genre_id')
            genre_id = str(genre_id) if genre_id not in (None, '') else None
            group = (self.genres.get(genre_id) if genre_id else None) or row.get('genre') or \
                row.get('group') or row.get('category') or 'Uncategorized'

            channels.append(Channel(
                channel_id=channel_id,
                name=name,
                original_name=name,
                cmd=str(cmd),
                logo=str(row.get('logo') or row.get('icon') or row.get('logo_uri') or ''),
                group=str(group),
                genre_id=genre_id,
                is_hd=_flag(row.get('hd'), 1, '1'),
                is_4k=_flag(row.get('hs'), 4, '4'),
                use_http_tmp_link=_flag(row.get('use_http_tmp_link'), 1, '1'),
                age_restricted=_flag(row.get('censored'), 1, '1'),
                source_type='mag',
            ))
        return channels

    async def sync_all(self) -> PortalSnapshot:
        logger.info(f"🔄 Starting MAG Stalker sync on {self.base_url} ({self.mac_address})")
        await self.handshake()
        account_info = await self.get_account_info()
        profile = await self.get_profile()
        genres = await self.get_genres()
        channels = await self.get_all_channels()
        degraded = [name for name, outcome in
                    (('account_info', account_info), ('profile', profile), ('genres', genres))
                    if outcome.degraded]
        return PortalSnapshot(
            account_info=account_info.value,
            profile=profile.value,
            genres=genres.value,
            channels=channels,
            degraded=degraded,
        )

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
