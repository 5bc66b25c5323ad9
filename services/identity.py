from typing import NamedTuple, Optional
from urllib.parse import urlparse

# Desktop Chrome, same family the rest of the proxy presents by default
BROWSER_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
PLAYER_USER_AGENT = "VLC/3.0.20 LibVLC/3.0.20"
ALTERNATE_PLAYER_USER_AGENT = "Lavf/60.16.100"


class IdentityProfile(NamedTuple):
    """A named set of outbound headers mimicking one kind of client."""
    name: str
    headers: dict
    with_origin: bool = False


# Ordered from the most minimal player identity to the most browser-like;
# the alternate player is the last resort.
IDENTITY_PROFILES = (
    IdentityProfile("player", {
        "User-Agent": PLAYER_USER_AGENT,
        "Accept": "*/*",
    }),
    IdentityProfile("browser", {
        "User-Agent": BROWSER_USER_AGENT,
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9,es;q=0.8",
    }),
    IdentityProfile("browser-origin", {
        "User-Agent": BROWSER_USER_AGENT,
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9,es;q=0.8",
        "Accept-Encoding": "gzip, deflate",
        "Connection": "keep-alive",
    }, with_origin=True),
    IdentityProfile("alternate-player", {
        "User-Agent": ALTERNATE_PLAYER_USER_AGENT,
        "Accept": "*/*",
    }),
)


def target_origin(url: str) -> str:
    """Returns scheme://host[:port] of a URL, or '' if it has none."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return ''
    if not parsed.scheme or not parsed.netloc:
        return ''
    return f"{parsed.scheme}://{parsed.netloc}"


def build_headers(profile: IdentityProfile, target_url: str, range_header: Optional[str] = None) -> dict:
    """Outbound headers for one attempt; the inbound Range survives every fallback."""
    headers = dict(profile.headers)

    if profile.with_origin:
        origin = target_origin(target_url)
        if origin:
            headers["Referer"] = origin + "/"
            headers["Origin"] = origin

    if range_header:
        headers["Range"] = range_header

    return headers
