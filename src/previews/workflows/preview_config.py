"""Preview defaults (endpoints, source names, URL rules, expiry, paths).

Centralizes static defaults so the provider and client have no embedded magic
strings. Callers build a PreviewConfig from these and may override any field,
either directly, from host preferences, or from PREVIEWS_* env vars.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

from .. import __version__

logger = logging.getLogger(__name__)

# Endpoints / headers
EMBEDLY_ENDPOINT = "https://embedly-proxy.services.mozilla.com/v2/extract"
METADATA_SERVICE_ENDPOINT = "https://metadata.services.mozilla.com/v1/metadata"
VERSION_QUERY_PARAM = "addon_version"
USER_AGENT = f"previews/{__version__}"

# Source tags
EMBEDLY_SOURCE = "Embedly"
METADATA_SERVICE_SOURCE = "MetadataService"
TIPPYTOP_SOURCE = "TippyTopProvider"

# Host preference names
PREF_METADATA_SOURCE = "metadataSource"
PREF_EMBEDLY_ENDPOINT = "embedly.endpoint"
PREF_METADATA_ENDPOINT = "metadata.endpoint"
PREF_PREVIEWS_ENABLED = "previews.enabled"

# Experiment flag that moves a provider onto the metadata service
EXPERIMENT_METADATA_SERVICE = "metadataService"

# URL rules
ALLOWED_PROTOCOLS = frozenset({"http", "https"})
DISALLOWED_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0"})
ALLOWED_QUERY_PARAMS: Tuple[str, ...] = ("p", "q", "query", "s", "search", "sitesearch")

# Expiry / timeouts
ONE_DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_CACHE_TTL_MS = 7 * ONE_DAY_MS
DEFAULT_TIMEOUT = 20.0

# Paths (package-relative)
_ROOT = Path(__file__).resolve().parents[1]
TIPPYTOP_PATH = _ROOT / "data" / "tippytop.json"
TIPPYTOP_IMAGE_PREFIX = "tippytop/images/"


class MetadataSource(str, Enum):
    """Remote metadata services a provider can be pointed at."""

    EMBEDLY = EMBEDLY_SOURCE
    METADATA_SERVICE = METADATA_SERVICE_SOURCE

    @classmethod
    def parse(cls, value: Any) -> "MetadataSource":
        """Map a configured source name to a service; unknown names fall back to Embedly."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if value == member.value:
                return member
        logger.debug("Unknown metadata source %r; using %s", value, cls.EMBEDLY.value)
        return cls.EMBEDLY


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    return normalized not in {"0", "false", "off", "no"}


def _safe_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        cleaned = value.strip()
        if not cleaned:
            return default
        return float(cleaned)
    except ValueError:
        return default


@dataclass(frozen=True)
class PreviewConfig:
    """Configuration for the preview provider and its remote metadata client."""

    metadata_source: str = EMBEDLY_SOURCE
    embedly_endpoint: str = EMBEDLY_ENDPOINT
    metadata_endpoint: str = METADATA_SERVICE_ENDPOINT
    previews_enabled: bool = True
    addon_version: str = __version__
    cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS
    timeout: float = DEFAULT_TIMEOUT
    allowed_query_params: Tuple[str, ...] = ALLOWED_QUERY_PARAMS
    prefer_fallback_icons: bool = True
    tippytop_path: Path = TIPPYTOP_PATH

    @property
    def source(self) -> MetadataSource:
        return MetadataSource.parse(self.metadata_source)

    def endpoint_for(self, source: MetadataSource) -> str:
        if source is MetadataSource.METADATA_SERVICE:
            return self.metadata_endpoint
        return self.embedly_endpoint

    def with_experiments(self, experiments: Optional[Mapping[str, Any]]) -> "PreviewConfig":
        """Return a copy with experiment overrides applied."""
        if experiments and experiments.get(EXPERIMENT_METADATA_SERVICE):
            return replace(self, metadata_source=METADATA_SERVICE_SOURCE)
        return self

    @classmethod
    def from_prefs(cls, prefs: Mapping[str, Any], **overrides: Any) -> "PreviewConfig":
        """Build a config from host preference names (``metadataSource``, ``embedly.endpoint``, ...)."""
        values: dict = {}
        if prefs.get(PREF_METADATA_SOURCE) is not None:
            values["metadata_source"] = str(prefs[PREF_METADATA_SOURCE])
        if prefs.get(PREF_EMBEDLY_ENDPOINT):
            values["embedly_endpoint"] = str(prefs[PREF_EMBEDLY_ENDPOINT])
        if prefs.get(PREF_METADATA_ENDPOINT):
            values["metadata_endpoint"] = str(prefs[PREF_METADATA_ENDPOINT])
        if prefs.get(PREF_PREVIEWS_ENABLED) is not None:
            values["previews_enabled"] = bool(prefs[PREF_PREVIEWS_ENABLED])
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_env(cls, **overrides: Any) -> "PreviewConfig":
        """Build a config from PREVIEWS_* environment variables.

        PREVIEWS_METADATA_SOURCE, PREVIEWS_EMBEDLY_ENDPOINT,
        PREVIEWS_METADATA_ENDPOINT, PREVIEWS_ENABLED, PREVIEWS_CACHE_TTL_HOURS,
        PREVIEWS_TIMEOUT, PREVIEWS_PREFER_FALLBACK_ICONS, PREVIEWS_TIPPYTOP_PATH.
        """
        values: dict = {
            "metadata_source": os.getenv("PREVIEWS_METADATA_SOURCE", EMBEDLY_SOURCE).strip() or EMBEDLY_SOURCE,
            "embedly_endpoint": os.getenv("PREVIEWS_EMBEDLY_ENDPOINT", "").strip() or EMBEDLY_ENDPOINT,
            "metadata_endpoint": os.getenv("PREVIEWS_METADATA_ENDPOINT", "").strip() or METADATA_SERVICE_ENDPOINT,
            "previews_enabled": _as_bool(os.getenv("PREVIEWS_ENABLED"), True),
            "timeout": _safe_float(os.getenv("PREVIEWS_TIMEOUT"), DEFAULT_TIMEOUT),
            "prefer_fallback_icons": _as_bool(os.getenv("PREVIEWS_PREFER_FALLBACK_ICONS"), True),
        }
        ttl_hours = _safe_float(os.getenv("PREVIEWS_CACHE_TTL_HOURS"), -1.0)
        if ttl_hours > 0:
            values["cache_ttl_ms"] = int(ttl_hours * 60 * 60 * 1000)
        tippytop_env = os.getenv("PREVIEWS_TIPPYTOP_PATH", "").strip()
        if tippytop_env:
            values["tippytop_path"] = Path(tippytop_env)
        values.update(overrides)
        return cls(**values)
