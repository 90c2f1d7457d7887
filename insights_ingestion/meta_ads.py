"""
Meta/Facebook Ads Insights Ingestion

Data Source: Meta Marketing API insights via the Graph API
API Type: REST API with GraphQL-like field selection
Key Endpoints:
  - /{ad_account_id}/insights for ad, ad set and campaign performance
  - /{creative_id} (or /{ad_id} when no creative came back) for thumbnails

Aggregation Level: ad, adset or campaign, daily (time_increment=1)
Incremental Strategy: Re-fetch a rolling window (date_preset, default
    last_30d) or an explicit since/until range; the upsert on
    (entity_id, date_start, date_stop) makes overlapping windows safe.

Stages, one run per level:
  1. fetch_insights       paginated GET, strictly sequential
  2. normalize_insight    pure, per record (metrics + conversions)
  3. run_enrichment       concurrent thumbnail lookups, best-effort
  4. UpsertSink.write     one atomic upsert for the whole batch

Only fetch and storage failures abort a run. When the run deadline passes,
in-flight lookups are cancelled and nothing is written.

Usage:
    python -m insights_ingestion.meta_ads ad
    python -c "from insights_ingestion.meta_ads import load_insights; load_insights('campaign', since='2025-01-01', until='2025-01-31')"
"""

import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from insights_ingestion.config import Settings, load_settings
from insights_ingestion.graph_api import fetch_insights
from insights_ingestion.levels import LevelSpec, get_level
from insights_ingestion.normalize import missing_key_fields, normalize_insight
from insights_ingestion.storage import UpsertSink, create_store
from insights_ingestion.thumbnails import run_enrichment
from insights_ingestion.utils.deadline import Deadline

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    level: str
    message: str
    data: List[Dict[str, Any]]
    fetched: int = 0
    skipped: int = 0
    enrichment_failures: List[str] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {"message": self.message, "data": self.data}


class InsightsPipeline:
    """
    One parameterized pipeline for all reporting levels.

    Clients are injected so a run never touches process-wide state:

    Args:
        settings: Validated settings
        session: requests session for the insights endpoint (created and
            closed per run when omitted)
        store: Storage backend with an upsert(table, rows, conflict_columns)
            method (built from settings.destination when omitted)
        thumbnail_client_factory: Zero-argument callable returning an async
            context manager that yields a thumbnail client
    """

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        store: Optional[Any] = None,
        thumbnail_client_factory: Optional[Callable[[], Any]] = None
    ):
        self.settings = settings
        self.session = session
        self.store = store
        self.thumbnail_client_factory = thumbnail_client_factory

    def normalize(self, raw_records: List[Dict[str, Any]], level: LevelSpec) -> List[Dict[str, Any]]:
        records = []
        for raw in raw_records:
            record = normalize_insight(
                raw,
                level,
                custom_conversions=self.settings.custom_conversions,
                conversion_match=self.settings.conversion_match
            )
            missing = missing_key_fields(record, level)
            if missing:
                logger.error(f"{level.label} record missing {', '.join(missing)}: {record.get(level.id_field)}")
            elif not record["impressions"] or not record["spend"]:
                logger.debug(f"No impressions or spend for {level.label} {record[level.id_field]}")
            records.append(record)
        return records

    def run(self, level_name: str) -> IngestionResult:
        """
        Fetch, normalize, enrich and upsert insights for one level.

        Raises:
            ConfigError: If the level or storage configuration is invalid
            UpstreamError: If the insights endpoint fails
            StorageError: If the upsert fails
            IngestionTimeout: If the run deadline passes before persistence
        """
        level = get_level(level_name)
        self.settings.validate()
        store = self.store if self.store is not None else create_store(self.settings)
        deadline = Deadline(self.settings.timeout_seconds)

        session = self.session or requests.Session()
        try:
            raw_records = list(fetch_insights(session, self.settings, level, deadline))
        finally:
            if self.session is None:
                session.close()

        if not raw_records:
            logger.warning(f"No {level.label} data returned.")
            return IngestionResult(
                level=level.name,
                message=f"No {level.label} data returned from Meta API.",
                data=[]
            )

        records = self.normalize(raw_records, level)
        skipped = sum(1 for record in records if missing_key_fields(record, level))
        logger.info(f"Normalized {len(records)} {level.label} records")

        failures = run_enrichment(
            records,
            self.settings,
            client_factory=self.thumbnail_client_factory,
            deadline=deadline
        )
        deadline.check(f"writing {level.label} insights")

        persisted = UpsertSink(store).write(records, level)

        message = f"{level.label.capitalize()} insights saved!"
        if failures:
            message += f" {len(failures)} thumbnails could not be resolved."

        return IngestionResult(
            level=level.name,
            message=message,
            data=persisted,
            fetched=len(raw_records),
            skipped=skipped,
            enrichment_failures=[failure.node_id for failure in failures]
        )


def load_insights(
    level: str = "ad",
    settings: Optional[Settings] = None,
    date_preset: Optional[str] = None,
    since: Optional[str] = None,
    until: Optional[str] = None
) -> IngestionResult:
    """
    Load Meta insights for one reporting level into the configured store.

    Args:
        level: ad, adset or campaign
        settings: Pre-built settings (loaded from config/env when omitted)
        date_preset: Override the configured date preset
        since: Start of a custom window (YYYY-MM-DD), requires until
        until: End of a custom window (YYYY-MM-DD), requires since

    Returns:
        IngestionResult with the persisted rows
    """
    settings = settings or load_settings()
    settings = settings.with_window(date_preset=date_preset, since=since, until=until).validate()

    logger.info("=" * 60)
    logger.info(f"Starting Meta {level} insights ingestion")
    logger.info("=" * 60)

    result = InsightsPipeline(settings).run(level)

    logger.info(f"{result.message} fetched={result.fetched} persisted={len(result.data)} skipped={result.skipped}")
    return result


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    load_insights(sys.argv[1] if len(sys.argv) > 1 else "ad")
