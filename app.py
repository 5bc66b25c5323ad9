import logging
import sys

from aiohttp import web

from config import HOST, PORT
from services.hls_proxy import HLSProxy

logger = logging.getLogger(__name__)


def create_app(fetcher=None):
    """Creates and configures the aiohttp application."""
    proxy = HLSProxy(fetcher=fetcher)

    app = web.Application()

    # add_get also answers HEAD
    app.router.add_get('/proxy', proxy.handle_proxy_request)
    app.router.add_get('/api/proxy', proxy.handle_proxy_request)
    app.router.add_get('/health', proxy.handle_health)

    # Generic OPTIONS handler for CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', proxy.handle_options)

    async def cleanup_handler(app):
        await proxy.cleanup()
    app.on_cleanup.append(cleanup_handler)

    return app


def main():
    """Main function to start the server."""
    # Workaround for the asyncio ConnectionResetError noise on Windows
    if sys.platform == 'win32':
        logging.getLogger('asyncio').setLevel(logging.CRITICAL)

    logger.info(f"🚀 Starting IPTV CORS proxy on http://{HOST}:{PORT}")
    logger.info("   • /health - Health check")
    logger.info("   • /proxy?url=<URL> - Proxy for streams, HLS manifests and M3U playlists")

    web.run_app(
        create_app(),
        host=HOST,
        port=PORT
    )


if __name__ == '__main__':
    main()
