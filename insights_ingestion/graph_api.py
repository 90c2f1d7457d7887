"""
Meta Graph API Insights Extraction

Endpoint: GET https://graph.facebook.com/{version}/{ad_account_id}/insights
Auth: access_token query parameter
Pagination: paging.next holds the full URL of the following page (cursor and
    access token included), absent on the last page
Rate Limits: Not handled here. A non-success status fails the run and is
    surfaced with its status code and body; narrow the date window and re-run.

Pages are requested strictly in sequence because each cursor comes from the
previous response. A page-count cap stops runaway pagination on very large
accounts; reaching it is logged, not raised.
"""

import json
import logging
from typing import Any, Dict, Iterator, Optional, Tuple

import requests

from insights_ingestion.config import Settings
from insights_ingestion.errors import UpstreamError
from insights_ingestion.levels import LevelSpec
from insights_ingestion.utils.deadline import Deadline

logger = logging.getLogger(__name__)


def redact(url: str) -> str:
    """Strip the query string (which carries the access token) for logging."""
    return url.split("?", 1)[0]


def build_insights_request(settings: Settings, level: LevelSpec) -> Tuple[str, Dict[str, Any]]:
    """
    Build the first-page URL and query parameters for an insights request.

    Returns:
        (url, params) tuple
    """
    url = f"{settings.base_url}/{settings.api_version}/{settings.account_id}/insights"
    params: Dict[str, Any] = {
        "access_token": settings.access_token,
        "fields": ",".join(level.fields()),
        "level": level.name,
        "time_increment": settings.time_increment,
        "limit": settings.page_limit,
    }
    if settings.time_range:
        params["time_range"] = json.dumps(
            {"since": settings.time_range["since"], "until": settings.time_range["until"]}
        )
    else:
        params["date_preset"] = settings.date_preset
    return url, params


def get_json(
    session: requests.Session,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 30.0
) -> Dict[str, Any]:
    """
    GET a Graph API URL and return the decoded JSON object.

    Raises:
        UpstreamError: On network failure, non-success status, or a body that
            is not a JSON object
    """
    try:
        response = session.get(url, params=params, timeout=timeout)
    except requests.RequestException as e:
        raise UpstreamError(f"Meta API request failed: {e}") from e

    if not response.ok:
        try:
            body = response.json()
        except ValueError:
            body = response.text
        logger.error(f"Meta API error {response.status_code} for {redact(url)}: {body}")
        raise UpstreamError(
            f"Meta API Error: {response.status_code}",
            status_code=response.status_code,
            body=body
        )

    try:
        data = response.json()
    except ValueError as e:
        raise UpstreamError(
            "Meta API returned a non-JSON body",
            status_code=response.status_code,
            body=response.text
        ) from e

    if not isinstance(data, dict):
        raise UpstreamError(
            "Meta API returned an unexpected payload",
            status_code=response.status_code,
            body=data
        )
    return data


def fetch_insights(
    session: requests.Session,
    settings: Settings,
    level: LevelSpec,
    deadline: Optional[Deadline] = None
) -> Iterator[Dict[str, Any]]:
    """
    Yield raw insight records page by page.

    Args:
        session: HTTP session scoped to the current run
        settings: Credentials, window, page size and page cap
        level: Reporting level to request
        deadline: Run deadline, checked before every page

    Yields:
        Raw insight dicts, in API order

    Raises:
        UpstreamError: If any page fails or is malformed
        IngestionTimeout: If the run deadline passes between pages
    """
    url, params = build_insights_request(settings, level)
    next_url: Optional[str] = url
    page_count = 0
    total = 0

    logger.info(f"Fetching {level.label} insights for {settings.account_id} ({redact(url)})")

    while next_url:
        if deadline is not None:
            deadline.check(f"fetching {level.label} insights page {page_count + 1}")

        page_count += 1
        body = get_json(session, next_url, params=params, timeout=settings.request_timeout)

        items = body.get("data")
        if items is None:
            items = []
        if not isinstance(items, list):
            raise UpstreamError(
                f"Meta API returned a non-list data field on page {page_count}",
                body=body
            )

        logger.info(f"Page {page_count}: {len(items)} {level.label} records")
        for item in items:
            yield item
            total += 1

        if not items:
            break

        paging = body.get("paging")
        next_url = paging.get("next") if isinstance(paging, dict) else None
        params = None

        if next_url and page_count >= settings.max_pages:
            logger.warning(
                f"Stopped after {page_count} pages (max_pages={settings.max_pages}); "
                "more data is available. Re-run with a narrower date window for full coverage."
            )
            break

    logger.info(f"Fetched {total} {level.label} records across {page_count} pages")
