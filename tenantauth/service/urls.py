from __future__ import annotations

from typing import Iterable, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

_ALLOWED_SCHEMES = {"http", "https"}
_DEFAULT_PORTS = {"http": 80, "https": 443}

# Destinations reachable through the frontend redirect proxy.
TRUSTED_REDIRECT_DOMAINS = (
    "google.com",
    "stripe.com",
    "github.com",
    "twitter.com",
    "discord.gg",
    "youtube.com",
    "t.me",
    "reddit.com",
    "subsumio.com",
    "subsum.io",
)


def _normalize_hostname(hostname: str) -> str:
    return hostname.lower().rstrip(".")


def _origin(url: str) -> Optional[str]:
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    if parts.scheme not in _ALLOWED_SCHEMES or not parts.hostname:
        return None
    origin = f"{parts.scheme}://{_normalize_hostname(parts.hostname)}"
    if port is not None and port != _DEFAULT_PORTS[parts.scheme]:
        origin += f":{port}"
    return origin


def _is_internal_path(url: str) -> bool:
    return url.startswith("/") and not url.startswith("//")


class URLHelper:
    """Builds links against the public origin and vets user-supplied URLs."""

    def __init__(self, base_url: str, allowed_origins: Iterable[str] = ()) -> None:
        self.base_url = base_url.rstrip("/")
        self.origin = _origin(self.base_url) or self.base_url
        origins = [o for o in (_origin(item) for item in allowed_origins) if o]
        self.allowed_origins = list(dict.fromkeys(origins or [self.origin]))

    def link(self, path: str, query: Optional[Mapping[str, str]] = None) -> str:
        """Absolute URL for ``path`` with ``query`` merged into its query string."""
        parts = urlsplit(urljoin(self.origin + "/", path))
        params = dict(parse_qsl(parts.query, keep_blank_values=True))
        for key, value in (query or {}).items():
            params[key] = str(value)
        return urlunsplit(
            (parts.scheme, parts.netloc, parts.path or "/", urlencode(params), parts.fragment)
        )

    @staticmethod
    def query_param(url: str, name: str) -> Optional[str]:
        try:
            params = dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))
        except ValueError:
            return None
        return params.get(name)

    @staticmethod
    def _absolute_parts(url: str):
        try:
            parts = urlsplit(url)
            parts.port  # raises on a malformed port
        except ValueError:
            return None
        if parts.scheme not in _ALLOWED_SCHEMES or not parts.hostname:
            return None
        if parts.username or parts.password:
            return None
        return parts

    def is_allowed_callback_url(self, url: Optional[str]) -> bool:
        """Relative app paths, or absolute http(s) URLs on an allowed origin."""
        if not url:
            return False
        if _is_internal_path(url):
            return True
        if self._absolute_parts(url) is None:
            return False
        return _origin(url) in self.allowed_origins

    def is_allowed_redirect_uri(self, url: Optional[str]) -> bool:
        """Like callback URLs, but also accepts hosts under a trusted domain."""
        if not url:
            return False
        if _is_internal_path(url):
            return True
        parts = self._absolute_parts(url)
        if parts is None:
            return False
        hostname = _normalize_hostname(parts.hostname)
        for origin in self.allowed_origins:
            if hostname == urlsplit(origin).hostname:
                return True
        return any(
            hostname == domain or hostname.endswith(f".{domain}")
            for domain in TRUSTED_REDIRECT_DOMAINS
        )
