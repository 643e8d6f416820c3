"""Local fallback provider: favicons and background colors for well-known sites."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

from ..core.keys import K_BACKGROUND_COLOR, K_FAVICON_URL, K_METADATA_SOURCE, K_SANITIZED_URL, K_URL
from .preview_config import TIPPYTOP_IMAGE_PREFIX, TIPPYTOP_PATH, TIPPYTOP_SOURCE
from .url_utils import normalize_domain

logger = logging.getLogger(__name__)

_TABLE_CACHE: Dict[str, Dict[str, Dict[str, str]]] = {}


def reload_tippytop_cache() -> None:
    _TABLE_CACHE.clear()


def load_tippytop_table(path: Path = TIPPYTOP_PATH) -> Dict[str, Dict[str, str]]:
    """Load the bundled site table as ``{domain: {image_url, background_color}}``.

    A missing or malformed file yields an empty table; entries without a
    domain are skipped.
    """
    key = str(path.resolve())
    if key in _TABLE_CACHE:
        return _TABLE_CACHE[key]
    table: Dict[str, Dict[str, str]] = {}
    entries: List[Any] = []
    try:
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, list):
                entries = data
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not load tippy-top table %s: %s", path, exc)
        entries = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        domain = normalize_domain(str(entry.get("domain") or ""), {"www"})
        if not domain:
            continue
        table[domain] = {
            "image_url": str(entry.get("image_url") or ""),
            "background_color": str(entry.get("background_color") or ""),
        }
    _TABLE_CACHE[key] = table
    return table


class TippyTopProvider:
    """Resolve a link's host against the bundled tippy-top table."""

    def __init__(
        self,
        table: Optional[Mapping[str, Mapping[str, str]]] = None,
        *,
        path: Path = TIPPYTOP_PATH,
        image_prefix: str = TIPPYTOP_IMAGE_PREFIX,
    ) -> None:
        self._table = dict(table) if table is not None else load_tippytop_table(path)
        self._image_prefix = image_prefix

    def _lookup(self, link: Mapping[str, Any]) -> Optional[Mapping[str, str]]:
        url = link.get(K_SANITIZED_URL) or link.get(K_URL) or ""
        try:
            host = urlsplit(str(url)).hostname or ""
        except ValueError:
            return None
        return self._table.get(normalize_domain(host, {"www"}))

    def has_site(self, link: Mapping[str, Any]) -> bool:
        return self._lookup(link) is not None

    def resolve(self, link: Mapping[str, Any]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {K_METADATA_SOURCE: TIPPYTOP_SOURCE}
        site = self._lookup(link)
        if not site:
            return fields
        if site.get("image_url"):
            fields[K_FAVICON_URL] = f"{self._image_prefix}{site['image_url']}"
        if site.get("background_color"):
            fields[K_BACKGROUND_COLOR] = site["background_color"]
        return fields

    def process_site(self, link: Mapping[str, Any]) -> Dict[str, Any]:
        return {**link, **self.resolve(link)}
