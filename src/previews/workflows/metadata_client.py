"""Batch client for the remote link metadata services (Embedly proxy / metadata service)."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlencode

import aiohttp

from ..core.keys import K_URLS
from .preview_config import USER_AGENT, VERSION_QUERY_PARAM, MetadataSource, PreviewConfig

logger = logging.getLogger(__name__)


class RemoteFetchError(RuntimeError):
    """A batch request to a metadata service failed as a whole."""

    def __init__(self, message: str, *, endpoint: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status = status


class MetadataClient:
    """POST a batch of sanitized URLs to the configured metadata service.

    The caller may pass a shared ``aiohttp.ClientSession``; otherwise one is
    opened per batch. Responses are keyed by URL and anything the service
    returns for a URL that was not requested is discarded.
    """

    def __init__(self, config: PreviewConfig, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.config = config
        self._session = session

    @property
    def source(self) -> MetadataSource:
        return self.config.source

    def get_metadata_source_name(self) -> str:
        return self.source.value

    def get_metadata_endpoint(self) -> str:
        base = self.config.endpoint_for(self.source)
        query = urlencode({VERSION_QUERY_PARAM: self.config.addon_version})
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{query}"

    async def fetch_batch(self, urls: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        requested: List[str] = list(dict.fromkeys(u for u in urls if u))
        if not requested:
            return {}
        endpoint = self.get_metadata_endpoint()
        if self._session is not None:
            payload = await self._post(self._session, endpoint, requested)
        else:
            headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
            async with aiohttp.ClientSession(headers=headers) as session:
                payload = await self._post(session, endpoint, requested)
        return self._filter_response(payload, requested, endpoint)

    async def _post(self, session: aiohttp.ClientSession, endpoint: str, requested: List[str]) -> Any:
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)
        try:
            async with session.post(endpoint, json={K_URLS: requested}, timeout=timeout) as resp:
                status = resp.status
                body = await resp.text()
        except asyncio.TimeoutError as exc:
            raise RemoteFetchError(f"Metadata request timed out after {self.config.timeout}s", endpoint=endpoint) from exc
        except aiohttp.ClientError as exc:
            raise RemoteFetchError(f"Metadata request failed: {exc}", endpoint=endpoint) from exc

        if not 200 <= status < 300:
            raise RemoteFetchError(f"Metadata service responded {status}", endpoint=endpoint, status=status)
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise RemoteFetchError("Metadata service returned invalid JSON", endpoint=endpoint, status=status) from exc

    def _filter_response(self, payload: Any, requested: List[str], endpoint: str) -> Dict[str, Dict[str, Any]]:
        if not isinstance(payload, dict):
            raise RemoteFetchError("Metadata response is not a JSON object", endpoint=endpoint)
        entries = payload.get(K_URLS) or {}
        if not isinstance(entries, dict):
            raise RemoteFetchError("Metadata response 'urls' is not an object", endpoint=endpoint)

        wanted = set(requested)
        results: Dict[str, Dict[str, Any]] = {}
        dropped: List[str] = []
        for url, data in entries.items():
            if url not in wanted:
                dropped.append(url)
                continue
            if isinstance(data, dict):
                results[url] = data
        if dropped:
            logger.warning(
                "Discarded %d unrequested url(s) from %s: %s",
                len(dropped),
                self.get_metadata_source_name(),
                ", ".join(dropped[:5]),
            )
        logger.info(
            "%s returned metadata for %d/%d url(s)",
            self.get_metadata_source_name(),
            len(results),
            len(requested),
        )
        return results
