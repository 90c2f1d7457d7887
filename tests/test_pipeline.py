"""
End-to-end tests for one ingestion run with injected fakes.
"""
from dataclasses import replace

import pytest

from conftest import (
    FailingStore,
    FakeResponse,
    FakeSession,
    FakeThumbnailClient,
    ad_record,
    insights_page,
)
from insights_ingestion.errors import ConfigError, IngestionTimeout, StorageError, UpstreamError
from insights_ingestion.meta_ads import IngestionResult, InsightsPipeline, load_insights


def pipeline_for(settings, responses, store, client=None):
    client = client or FakeThumbnailClient()
    return InsightsPipeline(
        settings,
        session=FakeSession(responses),
        store=store,
        thumbnail_client_factory=lambda: client,
    )


class TestAdInsightsRun:
    """Tests for a full ad-level run."""

    def test_records_normalized_and_persisted(self, settings, store):
        """Verify fetched records are normalized, enriched and upserted."""
        client = FakeThumbnailClient({"c1": "https://cdn/c1.jpg"})
        result = pipeline_for(settings, [insights_page([ad_record("1001", "c1")])], store, client).run("ad")

        assert result.message == "Ad insights saved!"
        assert result.fetched == 1
        assert len(result.data) == 1
        row = result.data[0]
        assert row["ad_id"] == "1001"
        assert row["impressions"] == 2000
        assert row["cpm"] == pytest.approx(25.0)
        assert row["cpc"] == pytest.approx(1.25)
        assert row["leads"] == 5
        assert row["cpl"] == pytest.approx(10.0)
        assert row["keizer_sa_sign_up"] == 2
        assert row["salem_sa_sign_up"] == 0
        assert row["thumbnail_url"] == "https://cdn/c1.jpg"
        assert store.count("ad_insights") == 1

    def test_rerun_is_idempotent(self, settings, store):
        """Verify two runs over the same window leave the same row count."""
        def window():
            return [insights_page([ad_record("1", "c1"), ad_record("2", "c2"), ad_record("3", "c3")])]

        pipeline_for(settings, window(), store).run("ad")
        after_first = store.count("ad_insights")

        pipeline_for(settings, window(), store).run("ad")
        assert after_first == 3
        assert store.count("ad_insights") == after_first, "re-ingestion must not duplicate rows"

    def test_rerun_refreshes_values(self, settings, store):
        """Verify the later ingestion overwrites metrics for the same key."""
        pipeline_for(settings, [insights_page([ad_record("1", spend="10")])], store).run("ad")
        pipeline_for(settings, [insights_page([ad_record("1", spend="99.5")])], store).run("ad")
        stored = store.tables["ad_insights"][("1", "2025-03-01", "2025-03-01")]
        assert stored["spend"] == 99.5

    def test_thumbnails_present_no_lookups(self, settings, store):
        """Verify records that already have thumbnails trigger no lookups."""
        client = FakeThumbnailClient()
        records = [
            ad_record("1", "c1", thumbnail_url="https://cdn/1.jpg"),
            ad_record("2", "c2", thumbnail_url="https://cdn/2.jpg"),
        ]
        pipeline_for(settings, [insights_page(records)], store, client).run("ad")
        assert client.calls == []

    def test_one_failed_lookup_keeps_others(self, settings, store):
        """Verify one failing creative leaves only its thumbnail null."""
        client = FakeThumbnailClient(
            {"c1": "https://cdn/1.jpg", "c3": "https://cdn/3.jpg"},
            failing={"c2"},
        )
        records = [ad_record("1", "c1"), ad_record("2", "c2"), ad_record("3", "c3")]
        result = pipeline_for(settings, [insights_page(records)], store, client).run("ad")

        thumbnails = {row["ad_id"]: row["thumbnail_url"] for row in result.data}
        assert thumbnails == {"1": "https://cdn/1.jpg", "2": None, "3": "https://cdn/3.jpg"}
        assert result.enrichment_failures == ["c2"]
        assert store.count("ad_insights") == 3

    def test_records_without_key_skipped(self, settings, store):
        """Verify records missing their entity id are not persisted."""
        records = [ad_record("1"), ad_record(None)]
        result = pipeline_for(settings, [insights_page(records)], store).run("ad")
        assert result.skipped == 1
        assert store.count("ad_insights") == 1

    def test_multiple_pages(self, settings, store):
        """Verify every page of the window is persisted."""
        responses = [
            insights_page([ad_record("1")], next_url="https://graph.facebook.com/next?after=a"),
            insights_page([ad_record("2")]),
        ]
        pipeline_for(settings, responses, store).run("ad")
        assert store.count("ad_insights") == 2


class TestOtherLevels:
    """Tests for ad set and campaign runs through the same pipeline."""

    def test_campaign_level(self, settings, store):
        """Verify campaign rows are keyed on campaign_id and land in campaign_data."""
        record = {
            "campaign_id": "3001",
            "campaign_name": "Always on",
            "date_start": "2025-03-01",
            "date_stop": "2025-03-01",
            "impressions": "100",
            "spend": "5",
        }
        result = pipeline_for(settings, [insights_page([record])], store).run("campaign")
        assert result.message == "Campaign insights saved!"
        assert store.count("campaign_data") == 1
        assert result.data[0]["cpm"] == pytest.approx(50.0)

    def test_adset_level_request(self, settings, store):
        """Verify the request asks for adset level and fields."""
        session = FakeSession([insights_page([])])
        InsightsPipeline(settings, session=session, store=store).run("adset")
        params = session.calls[0]["params"]
        assert params["level"] == "adset"
        assert "adset_id" in params["fields"].split(",")

    def test_missing_storage_credentials_before_fetch(self, settings):
        """Verify missing Supabase credentials fail before any request."""
        session = FakeSession([insights_page([ad_record("1")])])
        pipeline = InsightsPipeline(replace(settings, destination="supabase"), session=session)
        with pytest.raises(ConfigError, match="Supabase"):
            pipeline.run("ad")
        assert session.calls == [], "no request should be made with invalid storage config"

    def test_non_positive_timeout_before_fetch(self, settings, store):
        """Verify a zero run timeout is a configuration error, not a timeout."""
        session = FakeSession([insights_page([ad_record("1")])])
        pipeline = InsightsPipeline(replace(settings, timeout_seconds=0), session=session, store=store)
        with pytest.raises(ConfigError):
            pipeline.run("ad")
        assert session.calls == []

    def test_unknown_level(self, settings, store):
        """Verify an unknown level fails before any request."""
        session = FakeSession([])
        with pytest.raises(ConfigError):
            InsightsPipeline(settings, session=session, store=store).run("account")
        assert session.calls == []


class TestRunFailures:
    """Tests for empty windows and fatal errors."""

    def test_empty_upstream_data(self, settings, store):
        """Verify an empty window is a success with no data and no write."""
        result = pipeline_for(settings, [FakeResponse(200, {"data": []})], store).run("ad")
        assert result.to_response() == {"message": "No ad data returned from Meta API.", "data": []}
        assert store.calls == 0

    def test_upstream_error_skips_storage(self, settings, store):
        """Verify a fetch failure aborts before storage."""
        with pytest.raises(UpstreamError):
            pipeline_for(settings, [FakeResponse(403, {"error": {"message": "forbidden"}})], store).run("ad")
        assert store.calls == 0

    def test_storage_error_surfaces(self, settings):
        """Verify a storage failure fails the run."""
        store = FailingStore(StorageError("relation \"ad_insights\" does not exist"))
        with pytest.raises(StorageError):
            pipeline_for(settings, [insights_page([ad_record("1")])], store).run("ad")

    def test_timeout_during_enrichment_skips_storage(self, settings, store):
        """Verify a deadline hit during enrichment never writes the batch."""
        settings = replace(settings, timeout_seconds=0.2)
        client = FakeThumbnailClient({"c1": "https://cdn/1.jpg"}, delay=5)
        with pytest.raises(IngestionTimeout):
            pipeline_for(settings, [insights_page([ad_record("1", "c1")])], store, client).run("ad")
        assert store.calls == 0
        assert client.cancelled == 1


class TestLoadInsights:
    """Tests for the programmatic entry point."""

    def test_window_override(self, settings, monkeypatch):
        """Verify since/until override the preset and the level is run."""
        captured = {}

        def fake_run(self, level):
            captured["level"] = level
            captured["settings"] = self.settings
            return IngestionResult(level=level, message="ok", data=[])

        monkeypatch.setattr(InsightsPipeline, "run", fake_run)
        result = load_insights("campaign", settings=settings, since="2025-01-01", until="2025-01-31")
        assert result.message == "ok"
        assert captured["level"] == "campaign"
        assert captured["settings"].time_range == {"since": "2025-01-01", "until": "2025-01-31"}

    def test_half_open_window_rejected(self, settings):
        """Verify since without until is a configuration error."""
        with pytest.raises(ConfigError):
            load_insights("ad", settings=settings, since="2025-01-01")
