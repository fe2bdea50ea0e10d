import logging
import os
from dotenv import load_dotenv

load_dotenv() # Loads variables from the .env file

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


# --- Proxy Configuration ---
def parse_proxies(proxy_env_var: str) -> list:
    """Parses a comma-separated proxy string from an environment variable."""
    proxies_str = os.environ.get(proxy_env_var, "").strip()
    if proxies_str:
        return [p.strip() for p in proxies_str.split(',') if p.strip()]
    return []


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}: {raw!r}, using {default}.")
        return default


GLOBAL_PROXIES = parse_proxies('GLOBAL_PROXY')
MAG_PROXIES = parse_proxies('MAG_PROXY') or GLOBAL_PROXIES
XTREAM_PROXIES = parse_proxies('XTREAM_PROXY') or GLOBAL_PROXIES
M3U_PROXIES = parse_proxies('M3U_PROXY') or GLOBAL_PROXIES

if GLOBAL_PROXIES: logger.info(f"🌍 Loaded {len(GLOBAL_PROXIES)} global proxies.")

API_PASSWORD = os.environ.get("API_PASSWORD")

CATALOG_FILE = os.environ.get("CATALOG_FILE", os.path.join(BASE_DIR, "catalog.json"))

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = _int_env("PORT", 7860)

# 0 disables the scheduled catalog sync
SYNC_INTERVAL_HOURS = _int_env("SYNC_INTERVAL_HOURS", 0)

DEFAULT_MAC = os.environ.get("DEFAULT_MAC", "00:1A:79:00:00:00")

# --- Timeouts (seconds) ---
HANDSHAKE_TIMEOUT = 5
PORTAL_CALL_TIMEOUT = 10
PROFILE_TIMEOUT = 15
LISTING_TIMEOUT = 30
PLAYLIST_FETCH_TIMEOUT = 30
MEDIA_CONNECT_TIMEOUT = 15
MEDIA_READ_TIMEOUT = 30

# Per-genre listing fan-out
GENRE_BATCH_SIZE = 5

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
