import asyncio
import logging
import urllib.parse
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import aiohttp
from aiohttp import ClientSession, ClientTimeout, web

from channel_models import ResolvedStream
from cmd_classifier import (EXTERNAL_XTREAM, MAG, RAW, SAME_HOST_XTREAM, XTREAM_DIALECTS, alternate_xtream_url,
                            is_xtream_shaped)
from mag_client import mag_device_headers
from relay_config import (DEFAULT_MAC, DEFAULT_USER_AGENT, GLOBAL_PROXIES, MAG_PROXIES,
                          MEDIA_CONNECT_TIMEOUT, MEDIA_READ_TIMEOUT, XTREAM_PROXIES)
from upstream_http import pick_proxy
from xtream_client import PLAYER_PROFILES, player_headers

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# Live streams never end, so only connect and per-read bounds apply
MEDIA_TIMEOUT = ClientTimeout(total=None, connect=MEDIA_CONNECT_TIMEOUT, sock_read=MEDIA_READ_TIMEOUT)

FORWARDED_REQUEST_HEADERS = ('Range', 'If-None-Match', 'If-Modified-Since')
MIRRORED_RESPONSE_HEADERS = ('Content-Type', 'Content-Length', 'Content-Range', 'Last-Modified', 'ETag')
MIRRORED_ERROR_STATUSES = (401, 403, 404)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, HEAD, OPTIONS',
    'Access-Control-Allow-Headers': 'Range, Content-Type',
    'Access-Control-Expose-Headers': 'Content-Length, Content-Range, Accept-Ranges',
}

PROXY_ROUTE = '/api/proxy/stream'


def descriptor_from_query(url: str, dialect: Optional[str] = None, mac: Optional[str] = None) -> ResolvedStream:
    """Rebuilds the upstream headers for an already-resolved URL from the dialect/MAC hints."""
    if not dialect:
        if mac:
            dialect = MAG
        elif is_xtream_shaped(url):
            dialect = EXTERNAL_XTREAM
        else:
            dialect = RAW

    if dialect == MAG:
        mac = mac or DEFAULT_MAC
        return ResolvedStream(uri=url, dialect=MAG, headers=mag_device_headers(mac, None, url), mac=mac)
    if dialect in XTREAM_DIALECTS:
        return ResolvedStream(uri=url, dialect=dialect, headers=player_headers(PLAYER_PROFILES[0]), mac=mac)
    return ResolvedStream(uri=url, dialect=RAW, headers={'User-Agent': DEFAULT_USER_AGENT, 'Accept': '*/*'}, mac=mac)


def is_manifest(content_type: str, url: str) -> bool:
    return 'mpegurl' in (content_type or '').lower() or urlsplit(url).path.lower().endswith('.m3u8')


class StreamProxy:
    """Relays upstream media to the client without buffering, mirroring status and range headers."""

    def __init__(self, proxies_by_dialect: Optional[Dict[str, List[str]]] = None):
        self.proxies_by_dialect = proxies_by_dialect if proxies_by_dialect is not None else {
            MAG: MAG_PROXIES,
            EXTERNAL_XTREAM: XTREAM_PROXIES,
            SAME_HOST_XTREAM: XTREAM_PROXIES,
            RAW: GLOBAL_PROXIES,
        }

    def _request_kwargs(self, descriptor: ResolvedStream) -> Dict:
        kwargs = {'ssl': False, 'allow_redirects': True}
        proxy = pick_proxy(self.proxies_by_dialect.get(descriptor.dialect) or GLOBAL_PROXIES)
        if proxy:
            kwargs['proxy'] = proxy
            logger.info(f"Using proxy {proxy} for the stream.")
        return kwargs

    @staticmethod
    def outbound_headers(request: web.Request, descriptor: ResolvedStream) -> Dict[str, str]:
        headers = dict(descriptor.headers)
        for header in FORWARDED_REQUEST_HEADERS:
            if header in request.headers:
                headers[header] = request.headers[header]
        headers['Accept-Encoding'] = 'identity'
        return headers

    async def _get(self, session: ClientSession, url: str, headers: Dict[str, str],
                   kwargs: Dict) -> Tuple[Optional[aiohttp.ClientResponse], Optional[int]]:
        """Opens the upstream response. Returns (response, None) on success, (None, status) otherwise."""
        try:
            upstream = await session.get(url, headers=headers, **kwargs)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ Upstream connection to {url} failed: {e or e.__class__.__name__}")
            return None, None
        if upstream.status >= 400:
            logger.warning(f"⚠️ Upstream {url} answered HTTP {upstream.status}")
            upstream.release()
            return None, upstream.status
        return upstream, None

    async def _open_single(self, session, descriptor, headers, kwargs):
        return await self._get(session, descriptor.uri, headers, kwargs)

    async def _open_xtream(self, session, descriptor, headers, kwargs):
        """
        Rotates player identities on 401/403/5xx and connection failures.
        A 404 switches once to the alternate path shape, a second 404 stops.
        """
        url = descriptor.uri
        switched_shape = False
        status = None
        profile_index = 0
        while profile_index < len(PLAYER_PROFILES):
            attempt_headers = dict(headers)
            if profile_index > 0:
                attempt_headers['User-Agent'] = PLAYER_PROFILES[profile_index]['User-Agent']

            upstream, status = await self._get(session, url, attempt_headers, kwargs)
            if upstream is not None:
                if profile_index > 0 or switched_shape:
                    logger.info(f"✅ Xtream stream opened as {PLAYER_PROFILES[profile_index]['name']} on {url}")
                return upstream, None

            if status == 404:
                alternate = alternate_xtream_url(url)
                if switched_shape or not alternate:
                    break
                logger.info(f"🔄 404 on {url}, retrying as {alternate}")
                url = alternate
                switched_shape = True
                continue
            if status is not None and status not in (401, 403) and status < 500:
                break
            profile_index += 1
        return None, status

    async def proxy(self, request: web.Request, descriptor: ResolvedStream) -> web.StreamResponse:
        headers = self.outbound_headers(request, descriptor)
        kwargs = self._request_kwargs(descriptor)
        logger.info(f"📡 Proxying {descriptor.dialect} stream {descriptor.uri}")

        async with ClientSession(timeout=MEDIA_TIMEOUT, auto_decompress=False) as session:
            if descriptor.dialect in XTREAM_DIALECTS:
                upstream, status = await self._open_xtream(session, descriptor, headers, kwargs)
            else:
                upstream, status = await self._open_single(session, descriptor, headers, kwargs)

            if upstream is None:
                return self.error_response(status)

            try:
                if is_manifest(upstream.headers.get('Content-Type', ''), str(upstream.url)):
                    return await self._relay_manifest(request, upstream, descriptor)
                return await self._relay(request, upstream)
            finally:
                upstream.release()

    @staticmethod
    def error_response(status: Optional[int]) -> web.Response:
        if status in MIRRORED_ERROR_STATUSES:
            return web.Response(text=f"Upstream answered HTTP {status}", status=status, headers=CORS_HEADERS)
        reason = f"HTTP {status}" if status else "connection failed"
        return web.Response(text=f"Bad gateway: upstream {reason}", status=502, headers=CORS_HEADERS)

    async def _relay(self, request: web.Request, upstream: aiohttp.ClientResponse) -> web.StreamResponse:
        response_headers = {}
        for header in MIRRORED_RESPONSE_HEADERS:
            if header in upstream.headers:
                response_headers[header] = upstream.headers[header]
        response_headers.setdefault('Content-Type', 'video/mp2t')
        response_headers['Accept-Ranges'] = 'bytes'
        response_headers['Cache-Control'] = 'no-cache'
        response_headers.update(CORS_HEADERS)

        response = web.StreamResponse(status=upstream.status, headers=response_headers)
        await response.prepare(request)

        try:
            async for chunk in upstream.content.iter_chunked(CHUNK_SIZE):
                await response.write(chunk)
        except ConnectionResetError:
            logger.info(f"Client disconnected from {upstream.url}")
            upstream.close()
            return response
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # headers are already out, the only option left is dropping the connection
            logger.warning(f"❌ Upstream failed mid-stream for {upstream.url}: {e or e.__class__.__name__}")
            upstream.close()
            response.force_close()
            if request.transport is not None:
                request.transport.close()
            return response

        await response.write_eof()
        return response

    async def _relay_manifest(self, request: web.Request, upstream: aiohttp.ClientResponse,
                              descriptor: ResolvedStream) -> web.Response:
        manifest_content = await upstream.text()

        scheme = request.headers.get('X-Forwarded-Proto', request.scheme)
        host = request.headers.get('X-Forwarded-Host', request.host)
        proxy_base = f"{scheme}://{host}"

        params = {'dialect': descriptor.dialect}
        if descriptor.mac:
            params['mac'] = descriptor.mac
        if request.query.get('api_password'):
            params['api_password'] = request.query['api_password']

        rewritten = rewrite_manifest_urls(manifest_content, str(upstream.url), proxy_base, params)
        return web.Response(
            text=rewritten,
            status=upstream.status,
            headers={
                'Content-Type': 'application/vnd.apple.mpegurl',
                'Cache-Control': 'no-cache',
                **CORS_HEADERS,
            }
        )


def proxied_url(url: str, base_url: str, proxy_base: str, params: Dict[str, str]) -> str:
    absolute_url = urljoin(base_url, url)
    query = urllib.parse.urlencode({'url': absolute_url, **params})
    return f"{proxy_base}{PROXY_ROUTE}?{query}"


def _rewrite_uri_attribute(line: str, base_url: str, proxy_base: str, params: Dict[str, str]) -> str:
    uri_start = line.find('URI="') + 5
    uri_end = line.find('"', uri_start)
    if uri_start <= 4 or uri_end <= uri_start:
        return line
    original = line[uri_start:uri_end]
    return line[:uri_start] + proxied_url(original, base_url, proxy_base, params) + line[uri_end:]


def rewrite_manifest_urls(manifest_content: str, base_url: str, proxy_base: str, params: Dict[str, str]) -> str:
    """Routes variant playlists, segments, keys and media renditions back through the proxy."""
    rewritten_lines = []
    for line in manifest_content.split('\n'):
        line = line.strip()
        if line.startswith(('#EXT-X-KEY:', '#EXT-X-MEDIA:', '#EXT-X-MAP:')) and 'URI="' in line:
            rewritten_lines.append(_rewrite_uri_attribute(line, base_url, proxy_base, params))
        elif line and not line.startswith('#'):
            rewritten_lines.append(proxied_url(line, base_url, proxy_base, params))
        else:
            rewritten_lines.append(line)
    return '\n'.join(rewritten_lines)
