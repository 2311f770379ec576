"""
Tests for the storage statistics aggregator.
"""

import pytest

from conftest import make_candidate
from filevault.stats import StatsAggregator


class TestCompute:
    def test_empty_store(self, stats: StatsAggregator) -> None:
        snapshot = stats.compute()

        assert snapshot.total_files == 0
        assert snapshot.total_size == 0
        assert snapshot.average_size == 0
        assert snapshot.earliest_upload is None
        assert snapshot.latest_upload is None
        assert snapshot.instance_distribution == {}

    def test_totals_and_distribution(self, stats: StatsAggregator, store) -> None:
        first, _ = store.insert_or_get_existing(make_candidate("a", b"1234", origin_instance="node-a"))
        store.insert_or_get_existing(make_candidate("b", b"12", origin_instance="node-b"))
        last, _ = store.insert_or_get_existing(make_candidate("c", b"123456", origin_instance="node-a"))

        snapshot = stats.compute()

        assert snapshot.total_files == 3
        assert snapshot.total_size == 12
        assert snapshot.average_size == pytest.approx(4.0)
        assert snapshot.earliest_upload.replace(tzinfo=None) == first.uploaded_at.replace(tzinfo=None)
        assert snapshot.latest_upload.replace(tzinfo=None) == last.uploaded_at.replace(tzinfo=None)
        assert list(snapshot.instance_distribution) == ["node-a", "node-b"]
        assert snapshot.instance_distribution["node-a"].files == 2
        assert snapshot.instance_distribution["node-a"].size == 10

    def test_duplicates_are_not_counted(self, stats: StatsAggregator, store) -> None:
        store.insert_or_get_existing(make_candidate("a", b"same"))
        store.insert_or_get_existing(make_candidate("b", b"same"))

        assert stats.compute().total_files == 1

    def test_camel_case_output(self, stats: StatsAggregator) -> None:
        payload = stats.compute().model_dump(by_alias=True)

        assert {"totalFiles", "totalSize", "averageSize", "instanceDistribution"} <= set(payload)


class TestRefresh:
    @pytest.mark.asyncio
    async def test_scheduled_refresh_updates_latest(self, stats: StatsAggregator, store) -> None:
        store.insert_or_get_existing(make_candidate("a", b"abc"))

        stats.schedule_refresh()
        await stats.wait_idle()

        assert stats.latest is not None
        assert stats.latest.total_files == 1
