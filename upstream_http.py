import gzip
import logging
import random
import zlib
from typing import Dict, List, Optional

import zstandard
from aiohttp import ClientResponse, ClientSession, ClientTimeout, TCPConnector
from aiohttp_proxy import ProxyConnector

logger = logging.getLogger(__name__)


def pick_proxy(proxies: Optional[List[str]]) -> Optional[str]:
    """Returns a random proxy from the list."""
    return random.choice(proxies) if proxies else None


def build_session(timeout: ClientTimeout, proxies: Optional[List[str]] = None,
                  headers: Optional[Dict[str, str]] = None, **kwargs) -> ClientSession:
    proxy = pick_proxy(proxies)
    if proxy:
        logger.info(f"🔗 Using proxy {proxy} for the upstream session.")
        connector = ProxyConnector.from_url(proxy, ssl=False)
    else:
        connector = TCPConnector(
            limit=20,
            limit_per_host=10,
            keepalive_timeout=30,
            enable_cleanup_closed=True,
            force_close=False,
            use_dns_cache=True
        )
    return ClientSession(timeout=timeout, connector=connector, headers=headers, **kwargs)


def decompress_body(raw_body: bytes, content_encoding: Optional[str]) -> bytes:
    """Undoes zstd, gzip or deflate encoding; unknown encodings are returned untouched."""
    encoding = (content_encoding or '').lower().strip()
    if encoding == 'zstd':
        dctx = zstandard.ZstdDecompressor()
        # stream_reader copes with frames that omit the content size
        with dctx.stream_reader(raw_body) as reader:
            return reader.read()
    if encoding == 'gzip':
        return gzip.decompress(raw_body)
    if encoding == 'deflate':
        try:
            return zlib.decompress(raw_body)
        except zlib.error:
            # raw deflate stream without zlib header
            return zlib.decompress(raw_body, -zlib.MAX_WBITS)
    return raw_body


async def read_body(response: ClientResponse) -> str:
    """Reads a response opened with auto_decompress=False and returns its text."""
    raw_body = await response.read()
    content_encoding = response.headers.get('Content-Encoding')
    try:
        body = decompress_body(raw_body, content_encoding)
    except (zstandard.ZstdError, OSError, zlib.error, EOFError) as e:
        # Some portals label plain bodies as compressed
        logger.warning(f"⚠️ Could not decode {content_encoding} body from {response.url}: {e}. Using raw bytes.")
        body = raw_body
    try:
        return body.decode(response.charset or 'utf-8', errors='replace')
    except LookupError:
        return body.decode('utf-8', errors='replace')
