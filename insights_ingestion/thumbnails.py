"""
Creative Thumbnail Enrichment

Endpoints:
  - GET https://graph.facebook.com/{version}/{creative_id}
        ?fields=thumbnail_url&thumbnail_width=...&thumbnail_height=...
  - GET https://graph.facebook.com/{version}/{ad_id}
        ?fields=creative.thumbnail_width(...).thumbnail_height(...){thumbnail_url}
    for ad rows that came back without a creative descriptor
Auth: access_token query parameter

Only records whose thumbnail_url is still None after normalization are
looked up, once per distinct creative (or ad) id. Lookups run concurrently
with a semaphore capping in-flight requests. Enrichment is best-effort: a
failed lookup leaves that thumbnail None and is reported, never raised.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

import aiohttp

from insights_ingestion.config import Settings
from insights_ingestion.errors import EnrichmentError, IngestionTimeout
from insights_ingestion.utils.deadline import Deadline

logger = logging.getLogger(__name__)


class ThumbnailLookup(NamedTuple):
    node_id: str
    kind: str = "creative"


def lookup_for(record: Dict[str, Any]) -> Optional[ThumbnailLookup]:
    """Creative id when present, else the ad id; None for rows with neither."""
    if record.get("creative_id"):
        return ThumbnailLookup(record["creative_id"], "creative")
    if record.get("ad_id"):
        return ThumbnailLookup(record["ad_id"], "ad")
    return None


class GraphThumbnailClient:
    """Async Graph API client for creative thumbnails, scoped to one run."""

    def __init__(self, settings: Settings, session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "GraphThumbnailClient":
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout)
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None

    def lookup_params(self, kind: str) -> Dict[str, str]:
        width = self.settings.thumbnail_width
        height = self.settings.thumbnail_height
        params = {"access_token": self.settings.access_token}
        if kind == "ad":
            params["fields"] = f"creative.thumbnail_width({width}).thumbnail_height({height}){{thumbnail_url}}"
        else:
            params["fields"] = "thumbnail_url"
            params["thumbnail_width"] = str(width)
            params["thumbnail_height"] = str(height)
        return params

    async def fetch_thumbnail(self, node_id: str, kind: str = "creative") -> Optional[str]:
        """
        Resolve the thumbnail URL of one creative, or of an ad's creative.

        Returns:
            Thumbnail URL, or None when there is none

        Raises:
            EnrichmentError: On HTTP errors or an unexpected payload
        """
        url = f"{self.settings.base_url}/{self.settings.api_version}/{node_id}"

        async with self.session.get(url, params=self.lookup_params(kind)) as response:
            if response.status >= 400:
                error_text = await response.text()
                raise EnrichmentError(node_id, f"HTTP {response.status}: {error_text}", kind)
            data = await response.json(content_type=None)

        if not isinstance(data, dict):
            raise EnrichmentError(node_id, f"unexpected payload: {data!r}", kind)
        if kind == "ad":
            data = data.get("creative") or {}
            if not isinstance(data, dict):
                raise EnrichmentError(node_id, f"unexpected creative: {data!r}", kind)
        return data.get("thumbnail_url") or None


def thumbnail_candidates(records: List[Dict[str, Any]]) -> List[ThumbnailLookup]:
    """Distinct lookups, in batch order, for records still missing a thumbnail."""
    candidates: Dict[ThumbnailLookup, None] = {}
    for record in records:
        if record.get("thumbnail_url") is not None:
            continue
        lookup = lookup_for(record)
        if lookup is not None:
            candidates[lookup] = None
    return list(candidates)


async def resolve_thumbnails(
    lookups: List[ThumbnailLookup],
    client: Any,
    max_concurrency: int = 20
) -> Tuple[Dict[ThumbnailLookup, Optional[str]], List[EnrichmentError]]:
    """
    Look up thumbnails with at most max_concurrency in flight.

    Args:
        lookups: Distinct (node id, kind) pairs to resolve
        client: Object with an async fetch_thumbnail(node_id, kind) method
        max_concurrency: Cap on simultaneous lookups

    Returns:
        (thumbnail index, failures). Failed lookups are absent from the index.
    """
    semaphore = asyncio.Semaphore(max_concurrency)
    index: Dict[ThumbnailLookup, Optional[str]] = {}
    failures: List[EnrichmentError] = []

    async def resolve(lookup: ThumbnailLookup) -> None:
        async with semaphore:
            try:
                index[lookup] = await client.fetch_thumbnail(lookup.node_id, lookup.kind)
            except EnrichmentError as e:
                logger.warning(str(e))
                failures.append(e)
            except Exception as e:
                error = EnrichmentError(lookup.node_id, f"{type(e).__name__}: {e}", lookup.kind)
                logger.warning(str(error))
                failures.append(error)

    await asyncio.gather(*(resolve(lookup) for lookup in lookups))
    return index, failures


def apply_thumbnails(records: List[Dict[str, Any]], index: Dict[ThumbnailLookup, Optional[str]]) -> int:
    """Fill missing thumbnails in place from the index. Returns how many were filled."""
    filled = 0
    for record in records:
        if record.get("thumbnail_url") is not None:
            continue
        thumbnail = index.get(lookup_for(record))
        if thumbnail:
            record["thumbnail_url"] = thumbnail
            filled += 1
    return filled


async def enrich_thumbnails(
    records: List[Dict[str, Any]],
    client_factory: Callable[[], Any],
    max_concurrency: int = 20
) -> List[EnrichmentError]:
    """
    Resolve and merge thumbnails for records that lack one.

    Args:
        records: Normalized batch, updated in place
        client_factory: Zero-argument callable returning an async context
            manager that yields a thumbnail client
        max_concurrency: Cap on simultaneous lookups

    Returns:
        Per-lookup failures (empty when everything resolved)
    """
    candidates = thumbnail_candidates(records)
    if not candidates:
        logger.info("All records have thumbnails; no lookups needed")
        return []

    logger.info(f"Resolving {len(candidates)} thumbnails (max {max_concurrency} in flight)")
    async with client_factory() as client:
        index, failures = await resolve_thumbnails(candidates, client, max_concurrency)

    filled = apply_thumbnails(records, index)
    logger.info(f"Filled {filled} thumbnails; {len(failures)} lookups failed")
    return failures


def run_enrichment(
    records: List[Dict[str, Any]],
    settings: Settings,
    client_factory: Optional[Callable[[], Any]] = None,
    deadline: Optional[Deadline] = None
) -> List[EnrichmentError]:
    """
    Run thumbnail enrichment to completion within the run deadline.

    Raises:
        IngestionTimeout: If the deadline passes; in-flight lookups are cancelled
    """
    if client_factory is None:
        client_factory = lambda: GraphThumbnailClient(settings)

    timeout = deadline.remaining() if deadline is not None else None
    coro = enrich_thumbnails(records, client_factory, settings.thumbnail_concurrency)
    try:
        return asyncio.run(asyncio.wait_for(coro, timeout=timeout))
    except asyncio.TimeoutError:
        raise IngestionTimeout(
            f"Run deadline of {deadline.seconds}s exceeded during thumbnail enrichment"
        ) from None
