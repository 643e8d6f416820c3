"""High-level exports for the preview workflows."""

from .metadata_client import MetadataClient, RemoteFetchError
from .metadata_store import InMemoryMetadataStore, JsonFileMetadataStore, MetadataStore
from .preview_config import MetadataSource, PreviewConfig
from .preview_provider import PreviewProvider
from .tippytop import TippyTopProvider, reload_tippytop_cache
from .url_utils import build_url_filter, derive_cache_key, sanitize_url, unique_links

__all__ = [
    "MetadataClient",
    "RemoteFetchError",
    "InMemoryMetadataStore",
    "JsonFileMetadataStore",
    "MetadataStore",
    "MetadataSource",
    "PreviewConfig",
    "PreviewProvider",
    "TippyTopProvider",
    "reload_tippytop_cache",
    "build_url_filter",
    "derive_cache_key",
    "sanitize_url",
    "unique_links",
]
