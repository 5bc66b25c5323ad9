import asyncio
import codecs
import contextlib
import logging
from typing import NamedTuple, Optional
from urllib.parse import urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout, TCPConnector
from aiohttp_socks import ProxyConnector

import config
from config import get_proxy_for_url, get_ssl_setting_for_url
from services.events import EventLog
from services.identity import IDENTITY_PROFILES, IdentityProfile, build_headers

logger = logging.getLogger(__name__)


class ProxyError(Exception):
    """Base class for failures scoped to a single proxied request"""
    pass


class InvalidTarget(ProxyError):
    """The 'url' parameter is not an absolute http(s) URL"""
    pass


class UpstreamUnreachable(ProxyError):
    """DNS or connection failure while contacting the origin"""
    pass


class UpstreamTimeout(ProxyError):
    """The origin did not answer within the fetch budget"""
    pass


class ProxyRequest(NamedTuple):
    target_url: str
    range_header: Optional[str] = None
    public_base_url: str = ''
    method: str = 'GET'


def parse_target_url(raw: str) -> str:
    """Validates the user supplied target; only absolute http(s) URLs are relayed."""
    try:
        parsed = urlparse(raw.strip())
        parsed.port
    except ValueError as e:
        raise InvalidTarget(f"Malformed URL '{raw}': {e}") from e

    if parsed.scheme.lower() not in ('http', 'https') or not parsed.hostname:
        raise InvalidTarget(f"Expected an absolute http(s) URL, got '{raw}'")

    return raw.strip()


class UpstreamResult:
    """The upstream answer that won the identity fallback.

    ``final_url`` is the URL after redirects; relative manifest entries must be
    resolved against it, not against the requested URL.
    """

    def __init__(self, response, profile: IdentityProfile):
        self.response = response
        self.profile = profile
        self.status = response.status
        self.headers = response.headers
        self.final_url = str(response.url)

    @property
    def content_type(self) -> str:
        return self.headers.get('Content-Type', '')

    @property
    def charset(self) -> str:
        """Declared charset, or latin-1 which maps every byte to one character."""
        charset = self.response.charset or 'latin-1'
        try:
            codecs.lookup(charset)
        except LookupError:
            logger.warning(f"⚠️ Unknown charset '{charset}' from {self.final_url}, reading as latin-1")
            charset = 'latin-1'
        return charset

    async def read_body(self) -> bytes:
        return await self.response.read()

    async def read_text(self) -> str:
        # surrogateescape keeps undecodable bytes so encode_text gives them back unchanged
        body = await self.response.read()
        return body.decode(self.charset, errors='surrogateescape')

    def encode_text(self, text: str) -> bytes:
        return text.encode(self.charset, errors='surrogateescape')

    def iter_chunks(self, chunk_size: int):
        return self.response.content.iter_chunked(chunk_size)


class UpstreamFetcher:
    """Fetches a target, walking the identity profiles while the origin answers 403."""

    def __init__(self, timeout: float = None, profiles=IDENTITY_PROFILES,
                 transport_routes: list = None, global_proxies: list = None):
        self.timeout = timeout if timeout is not None else config.FETCH_TIMEOUT
        self.profiles = tuple(profiles)
        self.transport_routes = config.TRANSPORT_ROUTES if transport_routes is None else transport_routes
        self.global_proxies = config.GLOBAL_PROXIES if global_proxies is None else global_proxies

    def _create_session(self, url: str) -> ClientSession:
        # No total limit: binary bodies are unbounded, each read is bounded instead
        timeout = ClientTimeout(total=None, sock_connect=self.timeout, sock_read=self.timeout)

        proxy = get_proxy_for_url(url, self.transport_routes, self.global_proxies)
        if proxy:
            logger.info(f"🌍 Using outbound proxy {proxy} for: {url}")
            connector = ProxyConnector.from_url(proxy)
        else:
            connector = TCPConnector()

        return ClientSession(timeout=timeout, connector=connector)

    async def _send(self, session, proxy_request: ProxyRequest, headers: dict, ssl: bool):
        return await session.request(
            proxy_request.method,
            proxy_request.target_url,
            headers=headers,
            allow_redirects=True,
            ssl=ssl,
            skip_auto_headers=('Accept-Encoding',),
        )

    async def _fetch_with_fallback(self, session, proxy_request: ProxyRequest, events: EventLog):
        disable_ssl = get_ssl_setting_for_url(proxy_request.target_url, self.transport_routes)
        response = None
        profile = None

        for attempt, profile in enumerate(self.profiles, start=1):
            if response is not None:
                response.close()

            headers = build_headers(profile, proxy_request.target_url, proxy_request.range_header)
            events.emit("upstream.attempt", f"🔗 [{attempt}/{len(self.profiles)}] {proxy_request.method} {proxy_request.target_url} as '{profile.name}'",
                        attempt=attempt, profile=profile.name, headers=headers)

            try:
                response = await asyncio.wait_for(
                    self._send(session, proxy_request, headers, not disable_ssl),
                    timeout=self.timeout
                )
            except asyncio.TimeoutError as e:
                events.emit("upstream.timeout", f"⏱️ Upstream timeout after {self.timeout}s: {proxy_request.target_url}",
                            level=logging.WARNING, attempt=attempt, profile=profile.name)
                raise UpstreamTimeout(f"Upstream did not respond within {self.timeout}s") from e
            except (ClientError, OSError) as e:
                events.emit("upstream.unreachable", f"❌ Upstream unreachable: {proxy_request.target_url} ({e})",
                            level=logging.WARNING, attempt=attempt, profile=profile.name, reason=str(e))
                raise UpstreamUnreachable(str(e) or type(e).__name__) from e

            if response.status != 403:
                break

            if attempt < len(self.profiles):
                events.emit("upstream.forbidden", f"⛔ 403 with '{profile.name}', trying next identity",
                            attempt=attempt, profile=profile.name)
            else:
                events.emit("upstream.forbidden", "⛔ 403 with every identity, relaying the last response",
                            level=logging.WARNING, attempt=attempt, profile=profile.name)

        events.emit("upstream.response", f"✅ Upstream {response.status} [{response.headers.get('Content-Type', '')}] via '{profile.name}'",
                    status=response.status, profile=profile.name, final_url=str(response.url))
        return response, profile

    @contextlib.asynccontextmanager
    async def open(self, proxy_request: ProxyRequest, events: EventLog = None):
        """Yields the UpstreamResult; the response and session are closed on every exit path."""
        events = events or EventLog()
        if not self.profiles:
            raise ValueError("At least one identity profile is required")

        session = self._create_session(proxy_request.target_url)
        response = None
        try:
            response, profile = await self._fetch_with_fallback(session, proxy_request, events)
            yield UpstreamResult(response, profile)
        finally:
            if response is not None:
                response.close()
            await session.close()
