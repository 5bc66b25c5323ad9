import asyncio
import logging

from aiohttp import web, ClientError

import config
from services.classifier import ContentClassification, classify
from services.events import EventLog
from services.manifest_rewriter import ManifestRewriter, RewriteContext
from services.upstream import (
    InvalidTarget, ProxyRequest, UpstreamFetcher, UpstreamTimeout, UpstreamUnreachable, parse_target_url
)

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'Content-Type, Accept, Range',
    'Access-Control-Allow-Methods': 'GET, OPTIONS, HEAD',
    'Access-Control-Expose-Headers': 'Content-Length, Content-Range',
}

HLS_CONTENT_TYPE = 'application/vnd.apple.mpegurl'
CLASSIC_PLAYLIST_CONTENT_TYPE = 'audio/x-mpegurl'

# Forwarded verbatim on binary passthrough so seeking works end-to-end
PASSTHROUGH_HEADERS = ('Content-Range', 'Accept-Ranges', 'Last-Modified', 'ETag')


def json_error(status: int, error: str, details: str) -> web.Response:
    return web.json_response({"error": error, "details": details}, status=status, headers=CORS_HEADERS)


class HLSProxy:
    """CORS proxy for IPTV streams: relays media, rewrites HLS manifests and M3U channel lists"""

    def __init__(self, fetcher: UpstreamFetcher = None, chunk_size: int = None):
        self.fetcher = fetcher or UpstreamFetcher()
        self.chunk_size = chunk_size or config.STREAM_CHUNK_SIZE

    def _public_base(self, request) -> str:
        # ✅ Detect the correct scheme and host when behind a reverse proxy
        scheme = request.headers.get('X-Forwarded-Proto', request.scheme)
        host = request.headers.get('X-Forwarded-Host', request.host)
        return f"{scheme}://{host}"

    def _proxy_endpoint(self, request) -> str:
        return f"{self._public_base(request)}{request.path}"

    def _health_response(self, request) -> web.Response:
        base = self._public_base(request)
        info = {
            "status": "ok",
            "message": "IPTV CORS proxy is running",
            "endpoints": [
                f"{base}/proxy?url=<URL-encoded stream or playlist URL>",
                f"{base}/api/proxy?url=<URL-encoded stream or playlist URL>",
                f"{base}/health",
            ],
        }
        return web.json_response(info, headers=CORS_HEADERS)

    async def handle_options(self, request):
        """Handles OPTIONS preflight requests for CORS"""
        return web.Response(status=204, headers=CORS_HEADERS)

    async def handle_health(self, request):
        """Liveness probe, never touches the network"""
        return self._health_response(request)

    async def handle_proxy_request(self, request):
        """Handles main proxy requests"""
        target_url = request.query.get('url')

        # No target doubles as a liveness probe
        if not target_url:
            return self._health_response(request)

        try:
            target_url = parse_target_url(target_url)
        except InvalidTarget as e:
            logger.warning(f"⚠️ Rejected target: {e}")
            return json_error(400, "Invalid URL", str(e))

        proxy_request = ProxyRequest(
            target_url=target_url,
            range_header=request.headers.get('Range'),
            public_base_url=self._proxy_endpoint(request),
            method='HEAD' if request.method == 'HEAD' else 'GET',
        )
        events = EventLog(logger)
        events.emit("request.received", f"🔍 {request.method} {target_url}",
                    url=target_url, range=proxy_request.range_header)

        try:
            async with self.fetcher.open(proxy_request, events) as upstream:
                return await self._relay(request, proxy_request, upstream, events)

        except UpstreamTimeout as e:
            return json_error(504, "Timeout", str(e))

        except asyncio.TimeoutError as e:
            logger.warning(f"⚠️ Timed out reading upstream body: {target_url}")
            return json_error(504, "Timeout", str(e) or "Upstream body read timed out")

        except UpstreamUnreachable as e:
            return json_error(502, "Proxy Error", str(e))

        except Exception as e:
            logger.exception(f"❌ Unexpected error proxying {target_url}: {e}")
            return json_error(502, "Proxy Error", str(e))

    async def _relay(self, request, proxy_request, upstream, events):
        # HEAD carries no body to rewrite; error bodies are relayed untouched
        if proxy_request.method == 'HEAD' or upstream.status >= 400:
            return await self._relay_binary(request, upstream, events)

        classification = classify(upstream.content_type, proxy_request.target_url)
        events.emit("content.classified", f"📋 Classified as {classification.name}",
                    level=logging.DEBUG, classification=classification, content_type=upstream.content_type)

        context = RewriteContext(upstream.final_url, proxy_request.public_base_url)

        if classification is ContentClassification.HLS:
            manifest_content = await upstream.read_text()
            rewritten_manifest = ManifestRewriter.rewrite_hls(manifest_content, context, events)
            content_type = HLS_CONTENT_TYPE
            if upstream.response.charset:
                content_type += f"; charset={upstream.charset}"
            return web.Response(
                body=upstream.encode_text(rewritten_manifest),
                status=upstream.status,
                headers={
                    **CORS_HEADERS,
                    'Content-Type': content_type,
                    'Cache-Control': 'no-cache',
                }
            )

        if classification is ContentClassification.CLASSIC_PLAYLIST:
            playlist_content = await upstream.read_text()
            rewritten_playlist = ManifestRewriter.rewrite_classic(playlist_content, context, events)
            return web.Response(
                body=upstream.encode_text(rewritten_playlist),
                status=upstream.status,
                headers={**CORS_HEADERS, 'Content-Type': upstream.content_type or CLASSIC_PLAYLIST_CONTENT_TYPE}
            )

        if classification is ContentClassification.TEXT:
            return web.Response(
                body=await upstream.read_body(),
                status=upstream.status,
                headers={**CORS_HEADERS, 'Content-Type': upstream.content_type or 'text/plain'}
            )

        return await self._relay_binary(request, upstream, events)

    async def _relay_binary(self, request, upstream, events):
        """Streams the upstream body chunk by chunk; memory stays bounded by one chunk"""
        response_headers = dict(CORS_HEADERS)
        response_headers['Content-Type'] = upstream.content_type or 'application/octet-stream'

        # A decoded (gzip/deflate) body no longer matches the upstream length
        content_length = upstream.headers.get('Content-Length')
        if content_length is not None and not upstream.headers.get('Content-Encoding'):
            response_headers['Content-Length'] = content_length

        for header in PASSTHROUGH_HEADERS:
            if header in upstream.headers:
                response_headers[header] = upstream.headers[header]

        response = web.StreamResponse(status=upstream.status, headers=response_headers)
        await response.prepare(request)
        events.emit("relay.started", level=logging.DEBUG, status=upstream.status)

        sent = 0
        try:
            async for chunk in upstream.iter_chunks(self.chunk_size):
                # write() waits for the client transport to drain
                await response.write(chunk)
                sent += len(chunk)

        except ConnectionResetError as e:
            events.emit("relay.client_disconnected", f"ℹ️ Client disconnected after {sent} bytes: {upstream.final_url}",
                        bytes_sent=sent, reason=str(e))
            return response

        except asyncio.CancelledError:
            events.emit("relay.client_disconnected", f"ℹ️ Client went away after {sent} bytes: {upstream.final_url}",
                        bytes_sent=sent, reason="cancelled")
            raise

        except (ClientError, asyncio.TimeoutError) as e:
            # Headers are already sent, dropping the connection marks the body as truncated
            events.emit("relay.upstream_failed", f"⚠️ Upstream stream broke after {sent} bytes: {upstream.final_url} ({e})",
                        level=logging.WARNING, bytes_sent=sent, reason=str(e))
            if request.transport is not None:
                request.transport.close()
            return response

        await response.write_eof()
        events.emit("relay.completed", level=logging.DEBUG, bytes_sent=sent)
        return response

    async def cleanup(self):
        """Nothing is pooled across requests; kept for the app shutdown hook"""
        logger.info("🛑 HLS proxy stopped")
