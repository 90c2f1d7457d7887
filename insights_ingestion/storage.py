"""
Idempotent persistence of normalized insights.

Every backend exposes one primitive:

    store.upsert(table, rows, conflict_columns) -> persisted rows

which inserts new keys and replaces the non-key columns of existing ones in
a single atomic call. Re-ingesting the same window therefore only refreshes
values; it never adds rows. Backends:

  - postgres: psycopg2, INSERT ... ON CONFLICT ... DO UPDATE ... RETURNING *
  - supabase: supabase-py table upsert with on_conflict
  - dlt: dlt pipeline with write_disposition="merge" on the conflict key
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import dlt
import psycopg2
from psycopg2 import sql
from psycopg2.extras import RealDictCursor, execute_values

from insights_ingestion.config import Settings
from insights_ingestion.errors import ConfigError, StorageError
from insights_ingestion.levels import LevelSpec

logger = logging.getLogger(__name__)


# ============================================================================
# BACKENDS
# ============================================================================

def build_upsert_query(
    table: str,
    columns: Sequence[str],
    conflict_columns: Sequence[str]
) -> sql.Composed:
    """INSERT ... VALUES %s ON CONFLICT (key) DO UPDATE SET col = EXCLUDED.col ... RETURNING *"""
    update_columns = [c for c in columns if c not in conflict_columns]
    if update_columns:
        on_conflict = sql.SQL("DO UPDATE SET {}").format(
            sql.SQL(", ").join(
                sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in update_columns
            )
        )
    else:
        on_conflict = sql.SQL("DO NOTHING")

    return sql.SQL(
        "INSERT INTO {table} ({columns}) VALUES %s ON CONFLICT ({conflict}) {action} RETURNING *"
    ).format(
        table=sql.Identifier(table),
        columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
        conflict=sql.SQL(", ").join(map(sql.Identifier, conflict_columns)),
        action=on_conflict,
    )


class PostgresStore:
    """Upserts through a psycopg2 connection, one transaction per batch."""

    def __init__(self, connect: Callable[[], Any]):
        self._connect = connect

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresStore":
        params = dict(settings.postgres)
        return cls(lambda: psycopg2.connect(**params))

    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        conflict_columns: Sequence[str]
    ) -> List[Dict[str, Any]]:
        columns = list(dict.fromkeys(column for row in rows for column in row))
        query = build_upsert_query(table, columns, conflict_columns)
        values = [tuple(row.get(column) for column in columns) for row in rows]

        try:
            conn = self._connect()
        except psycopg2.Error as e:
            raise StorageError(f"Could not connect to PostgreSQL: {e}") from e

        try:
            # Connection context manager commits on success, rolls back on error
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                    result = execute_values(
                        cursor, query, values, page_size=max(len(values), 1), fetch=True
                    )
        except psycopg2.Error as e:
            raise StorageError(f"PostgreSQL upsert into {table} failed: {e}") from e
        finally:
            conn.close()

        return [dict(row) for row in result]


class SupabaseStore:
    """Upserts through the Supabase REST API (PostgREST on_conflict)."""

    def __init__(self, client: Any):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseStore":
        if not settings.supabase_url or not settings.supabase_key:
            raise ConfigError("Missing Supabase credentials (SUPABASE_URL or SUPABASE_KEY).")
        from supabase import create_client

        return cls(create_client(settings.supabase_url, settings.supabase_key))

    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        conflict_columns: Sequence[str]
    ) -> List[Dict[str, Any]]:
        try:
            response = (
                self.client.table(table)
                .upsert(rows, on_conflict=",".join(conflict_columns))
                .execute()
            )
        except Exception as e:
            raise StorageError(f"Supabase Error: {e}") from e
        return list(response.data or [])


class DltStore:
    """Merges through a dlt pipeline; the conflict key becomes the primary key."""

    def __init__(
        self,
        pipeline: Optional[Any] = None,
        destination: str = "postgres",
        dataset_name: str = "meta_ads_raw"
    ):
        self.pipeline = pipeline or dlt.pipeline(
            pipeline_name="meta_ads",
            destination=destination,
            dataset_name=dataset_name
        )

    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        conflict_columns: Sequence[str]
    ) -> List[Dict[str, Any]]:
        resource = dlt.resource(
            rows,
            name=table,
            write_disposition="merge",
            primary_key=list(conflict_columns)
        )
        try:
            load_info = self.pipeline.run(resource)
            load_info.raise_on_failed_jobs()
        except Exception as e:
            raise StorageError(f"dlt merge into {table} failed: {e}") from e

        logger.info(str(load_info))
        return rows


def create_store(settings: Settings) -> Any:
    """Construct the storage backend named by settings.destination."""
    if settings.destination == "postgres":
        return PostgresStore.from_settings(settings)
    if settings.destination == "supabase":
        return SupabaseStore.from_settings(settings)
    if settings.destination == "dlt":
        return DltStore()
    raise ConfigError(f"Unknown destination '{settings.destination}'")


# ============================================================================
# SINK
# ============================================================================

def prepare_batch(
    records: List[Dict[str, Any]],
    conflict_columns: Sequence[str]
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Drop records with an incomplete key and collapse duplicate keys.

    A single upsert statement cannot touch the same row twice, so the last
    record for each key wins, as it would across two separate runs.

    Returns:
        (rows to write, number of records dropped for a missing key)
    """
    by_key: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
    dropped = 0
    for record in records:
        key = tuple(record.get(column) for column in conflict_columns)
        if any(part is None for part in key):
            dropped += 1
            continue
        by_key[key] = record
    return list(by_key.values()), dropped


class UpsertSink:
    """Writes a normalized batch for one reporting level."""

    def __init__(self, store: Any):
        self.store = store

    def write(self, records: List[Dict[str, Any]], level: LevelSpec) -> List[Dict[str, Any]]:
        """
        Upsert the batch keyed on (entity id, date_start, date_stop).

        Returns:
            Persisted rows as returned by the store

        Raises:
            StorageError: If the store rejects the batch; nothing is retried
        """
        key = level.conflict_key
        rows, dropped = prepare_batch(records, key)
        if dropped:
            logger.warning(f"Skipped {dropped} {level.label} records missing one of {key}")
        if not rows:
            logger.info(f"Nothing to write to {level.table}")
            return []

        logger.info(f"Upserting {len(rows)} rows into {level.table} on ({', '.join(key)})")
        try:
            persisted = self.store.upsert(level.table, rows, key)
        except StorageError as e:
            logger.error(f"Upsert into {level.table} failed: {e}")
            raise
        logger.info(f"Upserted {len(persisted)} rows into {level.table}")
        return persisted
