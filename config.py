import os
import logging
import random
from dotenv import load_dotenv

load_dotenv() # Load variables from .env file

# Logging configuration
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)

# Silence the asyncio "Unknown child process pid" warning (known race condition in asyncio)
class AsyncioWarningFilter(logging.Filter):
    def filter(self, record):
        return "Unknown child process pid" not in record.getMessage()

logging.getLogger('asyncio').addFilter(AsyncioWarningFilter())

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# --- Outbound proxy configuration ---
def parse_proxies(proxy_env_var: str) -> list:
    """Parses a comma-separated proxy string from an environment variable."""
    proxies_str = os.environ.get(proxy_env_var, "").strip()
    if proxies_str:
        return [p.strip() for p in proxies_str.split(',') if p.strip()]
    return []

def parse_transport_routes(routes_str: str = None) -> list:
    """Parses TRANSPORT_ROUTES in the format {URL=domain, PROXY=proxy, DISABLE_SSL=true/false}, {URL=domain2, PROXY=proxy2}"""
    if routes_str is None:
        routes_str = os.environ.get('TRANSPORT_ROUTES', "")
    routes_str = routes_str.strip()
    if not routes_str:
        return []

    routes = []
    try:
        route_parts = [part.strip() for part in routes_str.replace(' ', '').split('},{')]

        for part in route_parts:
            if not part:
                continue

            part = part.strip('{}')

            url_match = None
            proxy_match = None
            disable_ssl_match = None

            for item in part.split(','):
                if item.startswith('URL='):
                    url_match = item[4:]
                elif item.startswith('PROXY='):
                    proxy_match = item[6:]
                elif item.startswith('DISABLE_SSL='):
                    disable_ssl_match = item[12:].lower() in ('true', '1', 'yes', 'on')
                elif item:
                    raise ValueError(f"unknown route attribute '{item}'")

            if url_match:
                routes.append({
                    'url': url_match,
                    'proxy': proxy_match or None,
                    'disable_ssl': bool(disable_ssl_match)
                })

    except ValueError as e:
        logger.warning(f"Error parsing TRANSPORT_ROUTES: {e}")
        return []

    return routes

def get_proxy_for_url(url: str, transport_routes: list, global_proxies: list) -> str:
    """Finds the outbound proxy for a URL; routes win over the global pool, an empty route PROXY means direct."""
    if url and transport_routes:
        for route in transport_routes:
            if route['url'] in url:
                return route['proxy']

    return random.choice(global_proxies) if global_proxies else None

def get_ssl_setting_for_url(url: str, transport_routes: list) -> bool:
    """Determines if SSL verification should be disabled for a URL based on TRANSPORT_ROUTES"""
    if not url or not transport_routes:
        return False

    for route in transport_routes:
        if route['url'] in url:
            return route.get('disable_ssl', False)

    return False

GLOBAL_PROXIES = parse_proxies('GLOBAL_PROXY')
TRANSPORT_ROUTES = parse_transport_routes()

if GLOBAL_PROXIES: logging.info(f"🌍 Loaded {len(GLOBAL_PROXIES)} global proxies.")
if TRANSPORT_ROUTES: logging.info(f"🚦 Loaded {len(TRANSPORT_ROUTES)} transport rules.")

# --- Server ---
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", 8080))

# Upstream fetch budget, given in milliseconds
FETCH_TIMEOUT = int(os.environ.get("FETCH_TIMEOUT", 15000)) / 1000

# Fixed relay buffer for binary passthrough
STREAM_CHUNK_SIZE = int(os.environ.get("STREAM_CHUNK_SIZE", 64 * 1024))

logging.info(f"⏱️ Upstream timeout: {FETCH_TIMEOUT}s, relay chunk: {STREAM_CHUNK_SIZE} bytes")
