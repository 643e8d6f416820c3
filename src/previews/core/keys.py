"""Shared record keys to avoid magic strings across the preview pipeline."""

from __future__ import annotations

# Link keys (as supplied by the host's history/bookmark queries)
K_URL = "url"
K_LAST_VISIT_DATE = "lastVisitDate"
K_BOOKMARK_DATE_CREATED = "bookmarkDateCreated"
K_FRECENCY = "frecency"
K_FAVICON = "favicon"
K_TYPE = "type"
K_VISIT_COUNT = "visitCount"

# Keys added by the pipeline
K_SANITIZED_URL = "sanitized_url"
K_CACHE_KEY = "cache_key"
K_PLACES_URL = "places_url"

# Metadata record keys
K_METADATA_SOURCE = "metadata_source"
K_FAVICON_URL = "favicon_url"
K_BACKGROUND_COLOR = "background_color"
K_EXPIRED_AT = "expired_at"

# Remote service wire keys
K_URLS = "urls"
