import asyncio
import logging

from aiohttp import web

from catalog_store import CatalogStore, JsonCatalogStore
from catalog_sync import CatalogSync
from relay_config import (API_PASSWORD, CATALOG_FILE, GLOBAL_PROXIES, HOST, M3U_PROXIES, MAG_PROXIES, PORT,
                          SYNC_INTERVAL_HOURS, XTREAM_PROXIES)
from relay_errors import (AuthenticationError, NotFoundError, RelayError, ResolutionError, SyncError,
                          UpstreamError)
from stream_proxy import CORS_HEADERS, StreamProxy, descriptor_from_query
from stream_resolver import StreamResolver

logging.basicConfig(
    level=logging.INFO,
    format='%(levelname)s:%(name)s:%(message)s'
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Most specific first: FetchError is an UpstreamError
ERROR_STATUSES = [
    (NotFoundError, 404),
    (AuthenticationError, 401),
    (ResolutionError, 400),
    (SyncError, 500),
    (UpstreamError, 502),
]


def check_password(request) -> bool:
    """Checks the API password when one is configured."""
    if not API_PASSWORD:
        return True
    if request.query.get("api_password") == API_PASSWORD:
        return True
    if request.headers.get("x-api-password") == API_PASSWORD:
        return True
    return False


def status_for(error: Exception) -> int:
    for error_type, status in ERROR_STATUSES:
        if isinstance(error, error_type):
            return status
    return 500


def json_error(message: str, status: int) -> web.Response:
    return web.json_response({"success": False, "message": message}, status=status, headers=CORS_HEADERS)


def unauthorized(request) -> web.Response:
    logger.warning(f"⛔ Access denied: invalid or missing API password. IP: {request.remote}")
    return json_error("Unauthorized: Invalid API Password", 401)


class IPTVRelay:
    """Stream resolution, streaming proxy and catalog sync behind one aiohttp app."""

    def __init__(self, store: CatalogStore, sync_interval_hours: int = SYNC_INTERVAL_HOURS):
        self.store = store
        self.resolver = StreamResolver(store)
        self.stream_proxy = StreamProxy()
        self.catalog_sync = CatalogSync(store)
        self.sync_interval_hours = sync_interval_hours
        self._sync_task = None

    async def handle_get_stream(self, request):
        """POST {playlistId, channelId, cmd} -> {success, url, dialect}"""
        if not check_password(request):
            return unauthorized(request)
        try:
            body = await request.json()
        except ValueError:
            return json_error("Request body must be JSON", 400)
        if not isinstance(body, dict):
            return json_error("Request body must be a JSON object", 400)

        playlist_id = body.get('playlistId')
        channel_id = body.get('channelId')
        if not playlist_id or channel_id in (None, ''):
            return json_error("playlistId and channelId are required", 400)

        try:
            stream = await self.resolver.resolve(str(playlist_id), str(channel_id), body.get('cmd'))
        except RelayError as e:
            logger.warning(f"⚠️ Stream resolution failed for {playlist_id}/{channel_id}: {e}")
            return json_error(str(e), status_for(e))

        return web.json_response(
            {"success": True, "url": stream.uri, "dialect": stream.dialect},
            headers=CORS_HEADERS
        )

    async def handle_proxy_stream(self, request):
        """GET ?url=&dialect=&mac= with optional h_<Header> overrides"""
        if not check_password(request):
            return unauthorized(request)
        target_url = request.query.get('url')
        if not target_url:
            return web.Response(text="Missing 'url' parameter", status=400, headers=CORS_HEADERS)

        descriptor = descriptor_from_query(target_url, request.query.get('dialect'), request.query.get('mac'))
        for param_name, param_value in request.query.items():
            if param_name.startswith('h_'):
                descriptor.headers[param_name[2:]] = param_value

        return await self.stream_proxy.proxy(request, descriptor)

    async def handle_channel_stream(self, request):
        """Resolve + proxy in one step, keeping the headers negotiated during resolution."""
        if not check_password(request):
            return unauthorized(request)
        playlist_id = request.match_info['playlist_id']
        channel_id = request.match_info['channel_id']
        try:
            stream = await self.resolver.resolve(playlist_id, channel_id)
        except RelayError as e:
            logger.warning(f"⚠️ Stream resolution failed for {playlist_id}/{channel_id}: {e}")
            return json_error(str(e), status_for(e))
        return await self.stream_proxy.proxy(request, stream)

    async def handle_sync(self, request):
        if not check_password(request):
            return unauthorized(request)
        playlist_id = request.match_info['playlist_id']
        try:
            report = await self.catalog_sync.sync_playlist(playlist_id)
        except RelayError as e:
            return json_error(str(e), status_for(e))
        return web.json_response({"success": True, **report.to_dict()}, headers=CORS_HEADERS)

    async def handle_test_connection(self, request):
        """POST {type, sourceUrl, username, password, macAddress} -> {success, ...dialect details}"""
        if not check_password(request):
            return unauthorized(request)
        try:
            body = await request.json()
        except ValueError:
            return json_error("Request body must be JSON", 400)
        if not isinstance(body, dict) or not body.get('sourceUrl'):
            return json_error("sourceUrl is required", 400)

        try:
            result = await self.catalog_sync.test_connection(
                body.get('type'),
                body['sourceUrl'],
                username=body.get('username'),
                password=body.get('password'),
                mac_address=body.get('macAddress'),
            )
        except RelayError as e:
            logger.warning(f"⚠️ Connection test to {body['sourceUrl']} failed: {e}")
            return json_error(str(e), 500)
        return web.json_response({"success": True, **result}, headers=CORS_HEADERS)

    async def handle_options(self, request):
        """CORS preflight"""
        headers = dict(CORS_HEADERS)
        headers['Access-Control-Allow-Methods'] = 'GET, POST, HEAD, OPTIONS'
        headers['Access-Control-Allow-Headers'] = 'Range, Content-Type, X-API-Password'
        headers['Access-Control-Max-Age'] = '86400'
        return web.Response(headers=headers)

    async def handle_api_info(self, request):
        info = {
            "server": "IPTV Relay",
            "version": VERSION,
            "status": "✅ Running",
            "features": [
                "✅ MAG/Stalker portal link refresh",
                "✅ Xtream Codes stream URLs with player identity rotation",
                "✅ M3U playlist sync",
                "✅ Range-aware streaming proxy",
                "✅ HLS manifest rewriting",
                "✅ Proxy support (SOCKS5, HTTP/S)",
            ],
            "auth_required": bool(API_PASSWORD),
            "scheduled_sync_hours": self.sync_interval_hours,
            "proxy_config": {
                "global": f"{len(GLOBAL_PROXIES)} proxies loaded",
                "mag": f"{len(MAG_PROXIES)} proxies loaded",
                "xtream": f"{len(XTREAM_PROXIES)} proxies loaded",
                "m3u": f"{len(M3U_PROXIES)} proxies loaded",
            },
            "endpoints": {
                "/api/channels/get-stream": "POST {playlistId, channelId, cmd} -> {url, dialect}",
                "/api/proxy/stream": "Streaming proxy - ?url=<URL>&dialect=<dialect>&mac=<MAC>",
                "/api/stream/{playlist_id}/{channel_id}": "Resolve and stream a stored channel",
                "/api/playlists/test-connection": "POST {type, sourceUrl, username, password, macAddress} - check a source",
                "/api/playlists/{playlist_id}/sync": "POST - refresh a playlist catalog",
                "/api/info": "This document",
            },
        }
        return web.json_response(info)

    async def _scheduled_sync(self):
        interval = self.sync_interval_hours * 3600
        while True:
            await asyncio.sleep(interval)
            logger.info("🔄 Starting scheduled catalog sync")
            try:
                await self.catalog_sync.sync_all_playlists()
            except Exception as e:
                logger.exception(f"❌ Scheduled sync failed: {e}")

    async def start_background_tasks(self, app):
        if self.sync_interval_hours > 0:
            logger.info(f"⏰ Scheduled sync every {self.sync_interval_hours}h")
            self._sync_task = asyncio.create_task(self._scheduled_sync())

    async def cleanup(self, app):
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None


def create_app(store: CatalogStore = None, sync_interval_hours: int = SYNC_INTERVAL_HOURS):
    """Builds and configures the aiohttp application."""
    if store is None:
        store = JsonCatalogStore(CATALOG_FILE or None)
    relay = IPTVRelay(store, sync_interval_hours)

    app = web.Application()

    app.router.add_get('/', relay.handle_api_info)
    app.router.add_get('/api/info', relay.handle_api_info)
    app.router.add_post('/api/channels/get-stream', relay.handle_get_stream)
    app.router.add_get('/api/proxy/stream', relay.handle_proxy_stream)
    app.router.add_get('/api/stream/{playlist_id}/{channel_id}', relay.handle_channel_stream)
    app.router.add_post('/api/playlists/test-connection', relay.handle_test_connection)
    app.router.add_post('/api/playlists/{playlist_id}/sync', relay.handle_sync)

    # Generic OPTIONS handler for CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', relay.handle_options)

    app.on_startup.append(relay.start_background_tasks)
    app.on_cleanup.append(relay.cleanup)
    return app


def main():
    """Starts the server."""
    print("🚀 Starting IPTV Relay...")
    print(f"📡 Server available at: http://localhost:{PORT}")
    print("🔗 Endpoints:")
    print("   • POST /api/channels/get-stream - Resolve a channel stream URL")
    print("   • /api/proxy/stream?url=<URL> - Streaming proxy")
    print("   • /api/stream/<playlist>/<channel> - Resolve and stream")
    print("   • POST /api/playlists/<playlist>/sync - Sync a playlist catalog")
    print("   • POST /api/playlists/test-connection - Check a playlist source")
    print("=" * 50)

    web.run_app(
        create_app(),
        host=HOST,
        port=PORT
    )


if __name__ == '__main__':
    main()
