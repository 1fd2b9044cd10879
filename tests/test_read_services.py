"""Tests for the node-list, node-detail and network-stats read paths."""

import json
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from models.base import utcnow
from models.snapshot import NodeSnapshot
from services.cache import CACHE_MISS, NetworkStatsCache, NodesCache
from services.network_stats_service import (
    build_time_series,
    fetch_network_stats_from_db,
    get_network_stats,
    interval_for_data_age,
    refresh_network_stats_cache,
    resolve_range,
)
from services.nodes_service import (
    MAX_PAGE_LIMIT,
    get_node_detail,
    get_nodes_list,
    paginate_nodes,
    refresh_nodes_cache,
)


def _snapshot(session, node_ip, timestamp, status="active", storage=1.0, credits=10, cpu=0.0, ram=0.0):
    session.add(NodeSnapshot(
        node_ip=node_ip, status=status, storage=storage, credits=credits,
        cpu_percent=cpu, ram_usage=ram, timestamp=timestamp,
    ))


# ---------------------------------------------------------------------------
# Node list
# ---------------------------------------------------------------------------


class TestNodesList:
    def test_ordered_by_credits_with_aggregates(self, session_factory, add_node) -> None:
        add_node(ip="10.0.0.1", credits=5, storage=1.5, uptime=100)
        add_node(ip="10.0.0.2", credits=50, storage=2.5, uptime=300, status="inactive")

        data = get_nodes_list(session_factory, NodesCache())
        assert [n["ip"] for n in data["nodes"]] == ["10.0.0.2", "10.0.0.1"]
        assert data["stats"] == {
            "total_storage": 4.0,
            "total_credits": 55,
            "active_nodes": 1,
            "total_nodes": 2,
            "avg_uptime": 200,
        }

    def test_second_read_is_served_from_cache(self, session_factory, add_node) -> None:
        add_node()
        counting = MagicMock(side_effect=session_factory)
        cache = NodesCache()

        first = get_nodes_list(counting, cache)
        second = get_nodes_list(counting, cache)
        assert counting.call_count == 1
        assert json.dumps(first, sort_keys=True) == json.dumps(second, sort_keys=True)

    def test_refresh_replaces_cached_data(self, session_factory, add_node) -> None:
        cache = NodesCache()
        cache.set({"nodes": [], "stats": {}, "timestamp": "old"})
        add_node()

        assert refresh_nodes_cache(session_factory, cache) is True
        assert len(cache.get()["nodes"]) == 1

    def test_empty_store(self, session_factory) -> None:
        data = get_nodes_list(session_factory, NodesCache())
        assert data["nodes"] == []
        assert data["stats"]["avg_uptime"] == 0

    def test_counters_serialized_as_strings(self, session_factory, add_node) -> None:
        add_node(packets_received=2 ** 53 + 1)
        node = get_nodes_list(session_factory, NodesCache())["nodes"][0]
        assert node["packets_received"] == str(2 ** 53 + 1)


class TestPagination:
    DATA = {"nodes": [{"ip": str(i)} for i in range(120)], "stats": {"total_nodes": 120}}

    def test_first_page(self) -> None:
        page = paginate_nodes(self.DATA, page=1, limit=50)
        assert len(page["nodes"]) == 50
        assert page["pagination"] == {
            "page": 1,
            "limit": 50,
            "total_pages": 3,
            "total_items": 120,
            "has_next_page": True,
            "has_previous_page": False,
        }

    def test_last_page(self) -> None:
        page = paginate_nodes(self.DATA, page=3, limit=50)
        assert [n["ip"] for n in page["nodes"]] == [str(i) for i in range(100, 120)]
        assert page["pagination"]["has_next_page"] is False

    def test_beyond_last_page_is_empty(self) -> None:
        assert paginate_nodes(self.DATA, page=9, limit=50)["nodes"] == []

    @pytest.mark.parametrize("limit,expected", [(0, 1), (-5, 1), (500, MAX_PAGE_LIMIT), (20, 20)])
    def test_limit_clamped(self, limit: int, expected: int) -> None:
        assert paginate_nodes(self.DATA, page=1, limit=limit)["pagination"]["limit"] == expected

    def test_page_floor(self) -> None:
        assert paginate_nodes(self.DATA, page=0)["pagination"]["page"] == 1


class TestNodeDetail:
    def test_unknown_node(self, session) -> None:
        assert get_node_detail(session, "8.8.8.8") is None

    def test_port_suffix_ignored_and_history_ascending(self, session, add_node) -> None:
        add_node(ip="10.0.0.1")
        now = utcnow()
        _snapshot(session, "10.0.0.1", now - timedelta(hours=2))
        _snapshot(session, "10.0.0.1", now - timedelta(hours=1))
        _snapshot(session, "10.0.0.1", now - timedelta(hours=30))
        _snapshot(session, "10.0.0.2", now)
        session.commit()

        detail = get_node_detail(session, "10.0.0.1:9001")
        assert detail["node"]["ip"] == "10.0.0.1"
        history = detail["history"]
        assert len(history) == 2
        assert history[0]["timestamp"] < history[1]["timestamp"]

    def test_history_limit_keeps_most_recent(self, session, add_node) -> None:
        add_node(ip="10.0.0.1")
        now = utcnow()
        for minutes in range(5):
            _snapshot(session, "10.0.0.1", now - timedelta(minutes=minutes), credits=minutes)
        session.commit()

        history = get_node_detail(session, "10.0.0.1", limit=2)["history"]
        assert [h["credits"] for h in history] == [1, 0]


# ---------------------------------------------------------------------------
# Network stats
# ---------------------------------------------------------------------------


class TestBucketing:
    @pytest.mark.parametrize("age,expected", [(0, 3600), (24, 3600), (25, 21600), (168, 21600), (169, 86400)])
    def test_interval_for_data_age(self, age: float, expected: int) -> None:
        assert interval_for_data_age(age) == expected

    def test_latest_snapshot_per_node_wins_in_bucket(self) -> None:
        start = datetime(2024, 1, 1)
        rows = [
            SimpleNamespace(node_ip="a", status="active", storage=1.0, credits=10, cpu_percent=10.0, ram_usage=20.0,
                            timestamp=start + timedelta(seconds=5)),
            SimpleNamespace(node_ip="a", status="inactive", storage=2.0, credits=20, cpu_percent=30.0, ram_usage=40.0,
                            timestamp=start + timedelta(seconds=10)),
            SimpleNamespace(node_ip="b", status="active", storage=3.0, credits=30, cpu_percent=50.0, ram_usage=60.0,
                            timestamp=start + timedelta(seconds=20)),
            SimpleNamespace(node_ip="a", status="active", storage=4.0, credits=40, cpu_percent=0.0, ram_usage=0.0,
                            timestamp=start + timedelta(seconds=45)),
        ]
        series = build_time_series(rows, start, 30)
        assert len(series) == 2

        first = series[0]
        assert first["timestamp"] == start.isoformat()
        assert first["total_nodes"] == 2
        assert first["active_nodes"] == 1
        assert first["inactive_nodes"] == 1
        assert first["total_storage"] == 5.0
        assert first["total_credits"] == "50"
        assert first["avg_cpu"] == 40.0
        assert first["avg_ram"] == 50.0

        assert series[1]["timestamp"] == (start + timedelta(seconds=30)).isoformat()
        assert series[1]["total_nodes"] == 1


class TestResolveRange:
    def test_24h_uses_fine_buckets(self, session) -> None:
        now = datetime(2024, 1, 2)
        label, date_from, grouping = resolve_range(session, "24h", now)
        assert (label, date_from, grouping) == ("24h", datetime(2024, 1, 1), 30)

    def test_unknown_label_falls_back_to_24h(self, session) -> None:
        assert resolve_range(session, "1y", datetime(2024, 1, 2))[0] == "24h"

    def test_all_without_data_spans_a_day(self, session) -> None:
        now = datetime(2024, 1, 2)
        label, date_from, grouping = resolve_range(session, "all", now)
        assert date_from == datetime(2024, 1, 1)
        assert grouping == 3600

    def test_all_starts_at_oldest_snapshot(self, session) -> None:
        now = datetime(2024, 1, 20)
        _snapshot(session, "a", datetime(2024, 1, 10))
        session.commit()
        label, date_from, grouping = resolve_range(session, "all", now)
        assert date_from == datetime(2024, 1, 10)
        assert grouping == 86400

    def test_7d_grouping_follows_data_age(self, session) -> None:
        now = datetime(2024, 1, 20)
        _snapshot(session, "a", now - timedelta(hours=12))
        session.commit()
        label, date_from, grouping = resolve_range(session, "7d", now)
        assert date_from == now - timedelta(days=7)
        assert grouping == 3600


class TestNetworkStats:
    def test_current_counts_and_series(self, session, add_node) -> None:
        add_node(ip="10.0.0.1", status="active")
        add_node(ip="10.0.0.2", status="inactive")
        now = utcnow()
        _snapshot(session, "10.0.0.1", now - timedelta(minutes=1))
        session.commit()

        data = fetch_network_stats_from_db(session, "24h", now)
        assert data["current"]["total_nodes"] == 2
        assert data["current"]["active_nodes"] == 1
        assert data["current"]["inactive_nodes"] == 1
        assert data["range"] == "24h"
        assert data["grouping_seconds"] == 30
        assert len(data["time_series"]) == 1

    def test_cached_per_range(self, session_factory) -> None:
        counting = MagicMock(side_effect=session_factory)
        cache = NetworkStatsCache()
        get_network_stats(counting, cache, "7d")
        get_network_stats(counting, cache, "7d")
        assert counting.call_count == 1
        assert cache.get("24h") is CACHE_MISS

    def test_unknown_range_served_as_24h(self, session_factory) -> None:
        cache = NetworkStatsCache()
        data = get_network_stats(session_factory, cache, "bogus")
        assert data["range"] == "24h"
        assert cache.has("24h")
        assert not cache.has("bogus")

    def test_refresh_computes_every_range(self, session_factory) -> None:
        cache = NetworkStatsCache()
        assert refresh_network_stats_cache(session_factory, cache) is True
        assert all(cache.has(label) for label in ("24h", "7d", "30d", "all"))
