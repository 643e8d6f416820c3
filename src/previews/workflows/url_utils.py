"""URL helpers for the preview pipeline: sanitize, filter, de-duplicate, key."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set
from urllib.parse import SplitResult, parse_qsl, urlencode, urlsplit, urlunsplit

from ..core.keys import K_CACHE_KEY, K_PLACES_URL, K_SANITIZED_URL, K_URL
from .preview_config import ALLOWED_PROTOCOLS, ALLOWED_QUERY_PARAMS, DISALLOWED_HOSTS

logger = logging.getLogger(__name__)

Link = Mapping[str, Any]
UrlRule = Callable[[Link], bool]

_DEFAULT_PORTS = {"http": 80, "https": 443}
_STRIP_SUBDOMAINS = {"www"}


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        h = h.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return h


def normalize_domain(domain: str, strip_subdomains: Set[str]) -> str:
    """Normalize a domain, optionally stripping well-known subdomains."""

    d = idna_normalize(domain)
    if not d:
        return d
    labels = d.split(".")
    if len(labels) > 2 and labels[0] in strip_subdomains:
        return ".".join(labels[1:])
    return d


def parse_url(url: str) -> SplitResult:
    """Split an absolute URL, raising ValueError when it has no scheme/host or a bad port."""

    if not isinstance(url, str):
        raise TypeError(f"URL must be a string, got {type(url).__name__}")
    parts = urlsplit(url.strip())
    if not parts.scheme or not parts.netloc or not parts.hostname:
        raise ValueError(f"Malformed URL: {url!r}")
    parts.port  # raises ValueError for out-of-range or non-numeric ports
    return parts


def _normalize_path(path: str) -> str:
    segments: List[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if segments:
                segments.pop()
            continue
        segments.append(segment)
    return "/" + "/".join(segments)


def _netloc(scheme: str, parts: SplitResult) -> str:
    host = idna_normalize(parts.hostname or "")
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port and _DEFAULT_PORTS.get(scheme) != port:
        return f"{host}:{port}"
    return host


def sanitize_url(url: Optional[str], allowed_query_params: Iterable[str] = ALLOWED_QUERY_PARAMS) -> str:
    """Normalize a URL and strip anything identifying from it.

    - Lower-case scheme and host, drop default ports
    - Drop username/password and the fragment
    - Collapse repeated slashes, resolve ``.``/``..``, drop a trailing slash
    - Keep only whitelisted query parameters (in their original order)

    Returns "" for empty input. Unparseable input raises ValueError.
    """
    if not url:
        return ""
    parts = parse_url(url)
    scheme = parts.scheme.lower()
    allowed = set(allowed_query_params)
    params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k in allowed]
    return urlunsplit((scheme, _netloc(scheme, parts), _normalize_path(parts.path), urlencode(params), ""))


def derive_cache_key(sanitized_url: str) -> str:
    """Return the store key for a sanitized URL: host (sans ``www.``) + path + query."""

    if not sanitized_url:
        raise ValueError("Cannot derive a cache key from an empty URL")
    parts = urlsplit(sanitized_url)
    host = normalize_domain(parts.hostname or "", _STRIP_SUBDOMAINS)
    if ":" in host:
        host = f"[{host}]"
    if parts.port:
        host = f"{host}:{parts.port}"
    key = f"{host}{parts.path or '/'}"
    if parts.query:
        key = f"{key}?{parts.query}"
    return key


def _has_url(link: Link) -> bool:
    return bool(link.get(K_URL))


def _parses(link: Link) -> bool:
    parse_url(link[K_URL])
    return True


def _allowed_protocol(link: Link) -> bool:
    return parse_url(link[K_URL]).scheme.lower() in ALLOWED_PROTOCOLS


def _allowed_host(link: Link) -> bool:
    return (parse_url(link[K_URL]).hostname or "").lower() not in DISALLOWED_HOSTS


DEFAULT_URL_FILTERS: Sequence[UrlRule] = (_has_url, _parses, _allowed_protocol, _allowed_host)


def build_url_filter(rules: Iterable[UrlRule] = DEFAULT_URL_FILTERS) -> Callable[[Any], bool]:
    """Combine rules into one predicate; a link passes only if every rule does.

    A rule that raises while inspecting a link counts as a rejection.
    """
    ordered = tuple(rules)

    def _accept(link: Any) -> bool:
        for rule in ordered:
            try:
                if not rule(link):
                    return False
            except (ValueError, TypeError, AttributeError, KeyError) as exc:
                logger.debug("Rejected link %r: %s", link, exc)
                return False
        return True

    return _accept


def filter_links(links: Iterable[Any], url_filter: Optional[Callable[[Any], bool]] = None) -> List[Link]:
    accept = url_filter or build_url_filter()
    return [link for link in links if accept(link)]


def _link_key(link: Link, allowed_query_params: Iterable[str]) -> str:
    return derive_cache_key(sanitize_url(link[K_URL], allowed_query_params))


def unique_links(links: Iterable[Link], allowed_query_params: Iterable[str] = ALLOWED_QUERY_PARAMS) -> List[Link]:
    """Collapse links sharing a cache key, keeping the first original link of each."""

    allowed = tuple(allowed_query_params)
    seen: Set[str] = set()
    unique: List[Link] = []
    for link in links:
        try:
            key = _link_key(link, allowed)
        except (ValueError, TypeError, KeyError) as exc:
            logger.debug("Skipping unsanitizable link %r: %s", link, exc)
            continue
        if key in seen:
            continue
        seen.add(key)
        unique.append(link)
    return unique


def process_link(link: Link, allowed_query_params: Iterable[str] = ALLOWED_QUERY_PARAMS) -> Dict[str, Any]:
    """Return a copy of the link carrying its sanitized url, cache key and places url."""

    sanitized = sanitize_url(link[K_URL], allowed_query_params)
    return {
        **link,
        K_SANITIZED_URL: sanitized,
        K_CACHE_KEY: derive_cache_key(sanitized),
        K_PLACES_URL: link[K_URL],
    }


def process_links(links: Iterable[Link], allowed_query_params: Iterable[str] = ALLOWED_QUERY_PARAMS) -> List[Dict[str, Any]]:
    allowed = tuple(allowed_query_params)
    return [process_link(link, allowed) for link in links]


def sanity_check() -> None:
    assert idna_normalize("ExAmple.COM") == "example.com"
    assert normalize_domain("www.example.com", {"www"}) == "example.com"
    assert sanitize_url("HTTP://user:pw@Example.com//a/./b/../c/#frag") == "http://example.com/a/c"
    assert derive_cache_key("http://www.example.com/a") == "example.com/a"


sanity_check()

__all__ = [
    "DEFAULT_URL_FILTERS",
    "idna_normalize",
    "normalize_domain",
    "parse_url",
    "sanitize_url",
    "derive_cache_key",
    "build_url_filter",
    "filter_links",
    "unique_links",
    "process_link",
    "process_links",
    "sanity_check",
]
