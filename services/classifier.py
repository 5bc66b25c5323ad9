import enum
from urllib.parse import urlparse


class ContentClassification(enum.Enum):
    HLS = "hls"
    CLASSIC_PLAYLIST = "classic_playlist"
    TEXT = "text"
    BINARY = "binary"


def _url_path(url: str) -> str:
    try:
        return urlparse(url).path.lower()
    except ValueError:
        return url.lower()


def classify(content_type, target_url: str) -> ContentClassification:
    """Decides how a response is handled, from its Content-Type and the requested URL.

    The URL suffix wins over a generic content type because many IPTV origins
    serve manifests as application/octet-stream. The body is never sniffed.
    A ``.m3u`` URL stays a classic playlist under the shared ``audio/x-mpegurl``
    type; only the Apple HLS type promotes it to a manifest.
    """
    content_type = (content_type or '').lower()
    path = _url_path(target_url or '')

    if path.endswith('.m3u8'):
        return ContentClassification.HLS

    if path.endswith('.m3u') and 'vnd.apple.mpegurl' not in content_type:
        return ContentClassification.CLASSIC_PLAYLIST

    if 'mpegurl' in content_type:
        return ContentClassification.HLS

    if any(marker in content_type for marker in ('text', 'json', 'xml')):
        return ContentClassification.TEXT

    return ContentClassification.BINARY
