import logging
import re
from collections import namedtuple
from urllib.parse import urlparse, urljoin, quote

from services.events import EventLog

logger = logging.getLogger(__name__)

# base_url is the upstream URL after redirects, proxy_endpoint is this proxy's public URL + path
RewriteContext = namedtuple("RewriteContext", ["base_url", "proxy_endpoint"])

URI_ATTRIBUTE = re.compile(r'URI="([^"]*)"')
ABSOLUTE_HTTP_LINE = re.compile(r'https?://\S+', re.IGNORECASE)


def _split_line(line: str):
    """Splits a line into (leading whitespace, content, trailing whitespace, line ending)."""
    body = line.rstrip('\r\n')
    ending = line[len(body):]
    content = body.strip()
    if not content:
        return body, '', '', ending
    lead = body[:len(body) - len(body.lstrip())]
    trail = body[len(body.rstrip()):]
    return lead, content, trail, ending


class ManifestRewriter:
    """Routes every URL of a playlist back through the proxy."""

    @staticmethod
    def build_proxy_url(proxy_endpoint: str, absolute_url: str) -> str:
        return f"{proxy_endpoint}?url={quote(absolute_url, safe='')}"

    @staticmethod
    def points_to_proxy(url: str, proxy_endpoint: str) -> bool:
        """True if the URL already targets the proxy endpoint (same path, same or no host)."""
        try:
            candidate = urlparse(url)
            endpoint = urlparse(proxy_endpoint)
        except ValueError:
            return False

        if candidate.path != endpoint.path:
            return False
        return not candidate.netloc or candidate.netloc.lower() == endpoint.netloc.lower()

    @classmethod
    def _wrap(cls, value: str, context: RewriteContext, events: EventLog) -> str:
        if cls.points_to_proxy(value, context.proxy_endpoint):
            events.emit("rewrite.skipped_loop", value=value)
            return value

        try:
            absolute_url = urljoin(context.base_url, value)
            parsed = urlparse(absolute_url)
            parsed.port  # validates the port, raises ValueError
            # undecodable bytes (kept as surrogates) cannot be percent-encoded
            absolute_url.encode('utf-8')
        except ValueError as e:
            events.emit("rewrite.failed", f"⚠️ Leaving malformed URL untouched: {value} ({e})",
                        level=logging.WARNING, value=value, reason=str(e))
            return value

        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            events.emit("rewrite.failed", f"ℹ️ Leaving non-HTTP URI untouched: {value[:80]}",
                        value=value, reason=f"unsupported scheme '{parsed.scheme}'")
            return value

        return cls.build_proxy_url(context.proxy_endpoint, absolute_url)

    @classmethod
    def rewrite_hls(cls, manifest_content: str, context: RewriteContext, events: EventLog = None) -> str:
        """Rewrites locator lines and URI="..." attributes of #EXT-X-* tags of an HLS manifest.

        Relative URLs resolve against ``context.base_url``. Whitespace and line
        endings are kept, and a value that cannot be rewritten is kept as-is.
        """
        events = events or EventLog()
        rewritten_lines = []

        def replace_uri(match):
            return f'URI="{cls._wrap(match.group(1), context, events)}"'

        for line in manifest_content.splitlines(keepends=True):
            lead, content, trail, ending = _split_line(line)

            if not content:
                rewritten_lines.append(line)
            elif content.startswith('#EXT-X-'):
                rewritten_lines.append(lead + URI_ATTRIBUTE.sub(replace_uri, content) + trail + ending)
            elif content.startswith('#'):
                rewritten_lines.append(line)
            else:
                rewritten_lines.append(lead + cls._wrap(content, context, events) + trail + ending)

        return ''.join(rewritten_lines)

    @classmethod
    def rewrite_classic(cls, playlist_content: str, context: RewriteContext, events: EventLog = None) -> str:
        """Wraps each standalone absolute http(s) line of a classic M3U channel list."""
        events = events or EventLog()
        rewritten_lines = []

        for line in playlist_content.splitlines(keepends=True):
            lead, content, trail, ending = _split_line(line)

            if content and ABSOLUTE_HTTP_LINE.fullmatch(content):
                rewritten_lines.append(lead + cls._wrap(content, context, events) + trail + ending)
            else:
                rewritten_lines.append(line)

        return ''.join(rewritten_lines)
