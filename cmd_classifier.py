"""
Heuristic classification of stored channel commands.

A channel's `cmd` may be a bare URL, a player invocation such as
`ffmpeg http://host/play/live.php?mac=...&stream=42` or a portal-only token.
The classifiers below are evaluated in a fixed order and the last one always
matches, so an unrecognised shape degrades to passthrough instead of failing.
"""
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from channel_models import Playlist

logger = logging.getLogger(__name__)

MAG = 'mag'
EXTERNAL_XTREAM = 'external-xtream'
SAME_HOST_XTREAM = 'same-host-xtream'
RAW = 'raw'

XTREAM_DIALECTS = (EXTERNAL_XTREAM, SAME_HOST_XTREAM)

PLAYER_PREFIX_RE = re.compile(r'^\s*(?:ffmpeg|ffrt\d*|auto)\s+', re.IGNORECASE)
CONTROL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f]')
URL_RE = re.compile(r'https?://\S+', re.IGNORECASE)
XTREAM_ID_RE = re.compile(r'^(\d+)(?:\.(ts|m3u8|mp4))?$', re.IGNORECASE)
TRAILING_ID_RE = re.compile(r'/(\d+)(?:\.\w+)?$')
STREAM_PARAM_RE = re.compile(r'[?&]stream=(\d+)')

DEFAULT_PORTS = {'http': 80, 'https': 443}


@dataclass
class XtreamParts:
    username: str
    password: str
    stream_id: str
    extension: Optional[str] = None


@dataclass
class Classification:
    kind: str
    raw_url: Optional[str]
    strategy: str
    stream_id: Optional[str] = None
    extension: Optional[str] = None
    xtream: Optional[XtreamParts] = None


@dataclass
class CmdContext:
    cmd: str
    raw_url: Optional[str]
    playlist: Optional[Playlist]
    channel_id: Optional[str] = None
    xtream: Optional[XtreamParts] = None


def extract_raw_url(cmd: Optional[str]) -> Optional[str]:
    """Strips a player-invocation prefix and control characters, then returns the first http(s) URL."""
    if not cmd:
        return None
    cleaned = PLAYER_PREFIX_RE.sub('', cmd)
    cleaned = CONTROL_CHARS_RE.sub('', cleaned).strip()
    match = URL_RE.search(cleaned)
    return match.group(0) if match else None


def _path_segments(url: str) -> List[str]:
    return [segment for segment in urlsplit(url).path.split('/') if segment]


def split_xtream_url(url: Optional[str]) -> Optional[XtreamParts]:
    if not url:
        return None
    segments = _path_segments(url)
    if len(segments) == 4 and segments[0] == 'live':
        segments = segments[1:]
    elif len(segments) != 3:
        return None
    match = XTREAM_ID_RE.match(segments[2])
    if not match:
        return None
    return XtreamParts(username=segments[0], password=segments[1],
                       stream_id=match.group(1), extension=match.group(2))


def is_xtream_shaped(url: Optional[str]) -> bool:
    return split_xtream_url(url) is not None


def _host_key(url: Optional[str]) -> Optional[Tuple[str, Optional[int]]]:
    if not url:
        return None
    if '://' not in url:
        url = 'http://' + url
    parts = urlsplit(url)
    if not parts.hostname:
        return None
    try:
        port = parts.port
    except ValueError:
        port = None
    return parts.hostname.lower(), port or DEFAULT_PORTS.get(parts.scheme.lower())


def same_host(url_a: Optional[str], url_b: Optional[str]) -> bool:
    key_a, key_b = _host_key(url_a), _host_key(url_b)
    return key_a is not None and key_a == key_b


def source_origin(source_url: str) -> str:
    """`scheme://host[:port]` of a playlist source URL."""
    if '://' not in source_url:
        source_url = 'http://' + source_url
    parts = urlsplit(source_url)
    return f"{parts.scheme}://{parts.netloc}"


def ensure_ts_extension(url: str) -> str:
    """Appends `.ts` when the last path segment is a bare numeric stream id."""
    parts = urlsplit(url)
    segments = parts.path.split('/')
    if segments and segments[-1].isdigit():
        return urlunsplit(parts._replace(path=parts.path + '.ts'))
    return url


def inject_stream_id(url: str, stream_id: Optional[str]) -> str:
    """Sets `stream=<id>` on play endpoints that need it and lack it."""
    if not stream_id:
        return url
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    keys = {key: value for key, value in query}
    needs_stream = parts.path.endswith('live.php') or ('stream' in keys and not keys['stream'])
    if not needs_stream or keys.get('stream'):
        return url
    query = [(key, value) for key, value in query if key != 'stream']
    query.append(('stream', str(stream_id)))
    return urlunsplit(parts._replace(query=urlencode(query, safe=':')))


def alternate_xtream_url(url: str) -> Optional[str]:
    """Inserts or removes the `/live/` segment: panels disagree on which shape they serve."""
    parts = urlsplit(url)
    segments = [segment for segment in parts.path.split('/') if segment]
    if len(segments) == 4 and segments[0] == 'live':
        new_segments = segments[1:]
    elif len(segments) == 3:
        new_segments = ['live'] + segments
    else:
        return None
    return urlunsplit(parts._replace(path='/' + '/'.join(new_segments)))


def guess_stream_id(cmd: Optional[str], raw_url: Optional[str] = None) -> Optional[str]:
    for candidate in (cmd, raw_url):
        if not candidate:
            continue
        match = STREAM_PARAM_RE.search(candidate)
        if match:
            return match.group(1)
    if raw_url:
        match = TRAILING_ID_RE.search(urlsplit(raw_url).path)
        if match:
            return match.group(1)
    return None


# --- Classifiers, in priority order ---

def mag_portal(ctx: CmdContext) -> Optional[Classification]:
    # MAG cmd strings only become URLs after create_link, so the playlist type decides
    if ctx.playlist is None or not ctx.playlist.is_mag:
        return None
    return Classification(MAG, ctx.raw_url, 'mag_portal',
                          stream_id=guess_stream_id(ctx.cmd, ctx.raw_url))


def external_xtream(ctx: CmdContext) -> Optional[Classification]:
    if ctx.xtream is None:
        return None
    source_url = ctx.playlist.source_url if ctx.playlist else None
    if same_host(ctx.raw_url, source_url):
        return None
    return Classification(EXTERNAL_XTREAM, ctx.raw_url, 'external_xtream',
                          stream_id=ctx.xtream.stream_id, extension=ctx.xtream.extension,
                          xtream=ctx.xtream)


def same_host_xtream(ctx: CmdContext) -> Optional[Classification]:
    if ctx.xtream is None or ctx.playlist is None:
        return None
    if not same_host(ctx.raw_url, ctx.playlist.source_url):
        return None
    return Classification(SAME_HOST_XTREAM, ctx.raw_url, 'same_host_xtream',
                          stream_id=ctx.xtream.stream_id, extension=ctx.xtream.extension,
                          xtream=ctx.xtream)


def xtream_playlist(ctx: CmdContext) -> Optional[Classification]:
    if ctx.playlist is None or ctx.playlist.type != 'xtream':
        return None
    stream_id = guess_stream_id(ctx.cmd, ctx.raw_url) or ctx.channel_id
    return Classification(SAME_HOST_XTREAM, ctx.raw_url, 'xtream_playlist', stream_id=stream_id)


def passthrough(ctx: CmdContext) -> Classification:
    return Classification(RAW, ctx.raw_url, 'passthrough',
                          stream_id=guess_stream_id(ctx.cmd, ctx.raw_url) or ctx.channel_id)


CLASSIFIERS: List[Callable[[CmdContext], Optional[Classification]]] = [
    mag_portal,
    external_xtream,
    same_host_xtream,
    xtream_playlist,
    passthrough,
]


def classify(cmd: Optional[str], playlist: Optional[Playlist], channel_id: Optional[str] = None) -> Classification:
    raw_url = extract_raw_url(cmd)
    ctx = CmdContext(cmd=cmd or '', raw_url=raw_url, playlist=playlist,
                     channel_id=channel_id, xtream=split_xtream_url(raw_url))
    for classifier in CLASSIFIERS:
        result = classifier(ctx)
        if result is not None:
            break
    logger.info(f"🧭 cmd classified as {result.kind} by {result.strategy}")
    return result
