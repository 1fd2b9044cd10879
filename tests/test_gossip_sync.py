"""Tests for the gossip sync cycle."""

from functools import partial
from unittest.mock import MagicMock, patch

import pytest

from data_sources.credits import get_credits
from data_sources.rpc import fetch_pods_with_fallback
from models.error_log import ErrorLog
from models.network_stats import NetworkStats
from models.node import Node
from models.snapshot import NodeSnapshot
from services.exceptions import RpcTimeoutError, TransportError
from services.gossip_sync import GossipSync, SyncState, parse_storage

ENDPOINTS = ["http://seed-a/rpc", "http://seed-b/rpc", "http://seed-c/rpc"]
GEO = {"country": "US", "lat": 40.0, "lon": -74.0}


def _transport(pods_by_endpoint):
    """Fake rpc_call: a value is returned, an exception instance is raised."""

    def call(endpoint, method, params, timeout):
        outcome = pods_by_endpoint[endpoint]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return call


def _sync(session_factory, error_sink, caches, pods_by_endpoint, credits=None, **kwargs):
    return GossipSync(
        session_factory,
        error_sink,
        caches,
        endpoints=ENDPOINTS,
        fetch_pods=partial(fetch_pods_with_fallback, call=_transport(pods_by_endpoint)),
        credits_fetcher=lambda: dict(credits or {}),
        geo_resolver=lambda session, ip: dict(GEO),
        **kwargs,
    )


def _pods(*pods):
    return {endpoint: {"pods": list(pods)} for endpoint in ENDPOINTS}


class TestParseStorage:
    @pytest.mark.parametrize("value,expected", [(None, 0.0), ("", 0.0), ("5.5", 5.5), (3, 3.0)])
    def test_values(self, value, expected) -> None:
        assert parse_storage(value) == expected

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_storage("lots")


class TestGossipSync:
    def test_fallback_to_third_endpoint(self, session_factory, error_sink, caches, session) -> None:
        pods = {
            "http://seed-a/rpc": RpcTimeoutError("timeout of 10000ms exceeded"),
            "http://seed-b/rpc": TransportError("connection refused"),
            "http://seed-c/rpc": {"pods": [{"address": "1.2.3.4:9001", "pubkey": "abc", "storage": "5.5", "uptime": 120}]},
        }
        result = _sync(session_factory, error_sink, caches, pods, credits={"abc": 42}).run()

        assert result.status_code == 200
        assert result.success
        assert result.summary["endpoint"] == "http://seed-c/rpc"
        assert result.summary["nodes_upserted"] == 1

        node = session.query(Node).one()
        assert node.ip == "1.2.3.4"
        assert node.credits == 42
        assert node.storage == 5.5
        assert node.uptime == 120
        assert node.status == "active"
        assert node.country == "US"

        assert session.query(NodeSnapshot).count() == 1
        rollup = session.query(NetworkStats).one()
        assert rollup.active_nodes == 1
        assert rollup.inactive_nodes == 0

        fetch_errors = session.query(ErrorLog).filter(ErrorLog.phase == "fetch").all()
        assert sorted(e.node_id for e in fetch_errors) == ["http://seed-a/rpc", "http://seed-b/rpc"]

    def test_two_timeouts_then_list_payload(self, session_factory, error_sink, caches, session) -> None:
        pods = {
            "http://seed-a/rpc": RpcTimeoutError("timeout of 10s exceeded"),
            "http://seed-b/rpc": RpcTimeoutError("timeout of 10s exceeded"),
            "http://seed-c/rpc": {"list": [{"ip": "10.0.0.1", "pubkey": "abc", "storage": "5.5", "uptime": 120}]},
        }
        result = _sync(session_factory, error_sink, caches, pods).run()

        assert result.status_code == 200
        assert len(result.summary["errors"]) == 2
        node = session.query(Node).one()
        assert (node.ip, node.storage, node.uptime, node.status) == ("10.0.0.1", 5.5, 120, "active")
        assert session.query(NodeSnapshot).count() == 1
        assert session.query(NetworkStats).one().active_nodes == 1
        logged = session.query(ErrorLog).filter(ErrorLog.phase == "fetch").all()
        assert [e.details for e in logged] == ["timeout", "timeout"]

    def test_invalid_pods_are_skipped(self, session_factory, error_sink, caches, session) -> None:
        pods = _pods(
            {"address": "10.0.0.1:9001", "pubkey": "a"},
            {"address": "10.0.0.2:9001", "pubkey": "b"},
            {"address": "", "pubkey": "c"},
            {"address": "0.0.0.0:9001"},
            {"address": "10.0.0.3:9001", "storage": "not-a-number"},
        )
        result = _sync(session_factory, error_sink, caches, pods).run()

        assert result.summary["nodes_upserted"] == 2
        assert result.summary["total_nodes"] == 5
        assert len(result.summary["errors"]) == 3
        assert session.query(Node).count() == 2
        assert session.query(NodeSnapshot).count() == 2

        phases = sorted(e.phase for e in session.query(ErrorLog).all())
        assert phases == ["preprocessing", "validation", "validation"]

    def test_absent_nodes_marked_inactive(self, session_factory, error_sink, caches, session, add_node) -> None:
        add_node(ip="10.9.9.9", status="active", cpu_percent=55.0)
        result = _sync(session_factory, error_sink, caches, _pods({"address": "10.0.0.1:9001"})).run()

        assert result.success
        gone = session.query(Node).filter(Node.ip == "10.9.9.9").one()
        assert gone.status == "inactive"
        assert gone.cpu_percent == 55.0
        assert session.query(NetworkStats).one().inactive_nodes == 1

    def test_stats_owned_fields_preserved_on_update(self, session_factory, error_sink, caches, session, add_node) -> None:
        add_node(ip="10.0.0.1", cpu_percent=12.5, ram_usage=40.0, packets_sent=99, status="inactive")
        _sync(session_factory, error_sink, caches, _pods({"address": "10.0.0.1:9001", "version": "1.2"})).run()

        node = session.query(Node).one()
        assert node.status == "active"
        assert node.version == "1.2"
        assert node.cpu_percent == 12.5
        assert node.ram_usage == 40.0
        assert node.packets_sent == 99

    def test_repeated_run_only_adds_history(self, session_factory, error_sink, caches, session) -> None:
        pods = _pods({"address": "10.0.0.1:9001", "pubkey": "a", "storage": 2}, {"address": "10.0.0.2"})
        sync = _sync(session_factory, error_sink, caches, pods, credits={"a": 9})
        sync.run()
        before = {n.ip: n.to_dict() for n in session.query(Node).all()}
        session.expire_all()
        sync.run()
        after = {n.ip: n.to_dict() for n in session.query(Node).all()}

        for ip in before:
            before[ip].pop("updated_at")
            after[ip].pop("updated_at")
        assert before == after
        assert session.query(NodeSnapshot).count() == 4
        assert session.query(NetworkStats).count() == 2

    def test_duplicate_ips_collapse(self, session_factory, error_sink, caches, session) -> None:
        pods = _pods({"address": "10.0.0.1:9001", "version": "old"}, {"address": "10.0.0.1:6000", "version": "new"})
        result = _sync(session_factory, error_sink, caches, pods).run()

        assert result.summary["nodes_upserted"] == 1
        assert session.query(Node).one().version == "new"

    def test_missing_pubkey_means_zero_credits(self, session_factory, error_sink, caches, session) -> None:
        _sync(session_factory, error_sink, caches, _pods({"address": "10.0.0.1"}), credits={"x": 5}).run()
        node = session.query(Node).one()
        assert node.pubkey is None
        assert node.credits == 0

    def test_all_endpoints_failing_leaves_store_untouched(self, session_factory, error_sink, caches, session, add_node) -> None:
        add_node(ip="10.0.0.1", status="active")
        pods = {endpoint: TransportError("connection refused") for endpoint in ENDPOINTS}
        sync = _sync(session_factory, error_sink, caches, pods)
        result = sync.run()

        assert result.status_code == 500
        assert result.summary["phase"] == "fetch"
        assert sync.state is SyncState.FAILED
        assert session.query(Node).one().status == "active"
        assert session.query(NodeSnapshot).count() == 0
        assert session.query(NetworkStats).count() == 0
        assert session.query(ErrorLog).filter(ErrorLog.phase == "fetch").count() == 4

    def test_empty_pod_list(self, session_factory, error_sink, caches, session) -> None:
        result = _sync(session_factory, error_sink, caches, _pods()).run()
        assert result.status_code == 200
        assert result.success is False
        assert session.query(NetworkStats).count() == 0

    def test_transaction_failure_rolls_back(self, session_factory, error_sink, caches, session, add_node, monkeypatch) -> None:
        add_node(ip="10.9.9.9", status="active")

        def broken_rollup(**kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr("services.gossip_sync.NetworkStats", broken_rollup)
        result = _sync(session_factory, error_sink, caches, _pods({"address": "10.0.0.1"})).run()

        assert result.status_code == 500
        assert result.summary["phase"] == "transaction"
        assert [n.ip for n in session.query(Node).all()] == ["10.9.9.9"]
        assert session.query(Node).one().status == "active"
        assert session.query(NodeSnapshot).count() == 0
        logged = session.query(ErrorLog).filter(ErrorLog.phase == "transaction").one()
        assert "disk full" in logged.error

    def test_caches_refreshed_after_commit(self, session_factory, error_sink, caches) -> None:
        caches.nodes.set({"nodes": [], "stats": {}, "timestamp": "stale"})
        _sync(session_factory, error_sink, caches, _pods({"address": "10.0.0.1"})).run()

        assert [n["ip"] for n in caches.nodes.get()["nodes"]] == ["10.0.0.1"]
        assert caches.network_stats.has("24h")
        assert caches.network_stats.has("all")

    def test_cycle_budget_exceeded(self, session_factory, error_sink, caches, session) -> None:
        result = _sync(session_factory, error_sink, caches, _pods({"address": "10.0.0.1"}), budget_seconds=0).run()
        assert result.status_code == 504
        assert result.summary["phase"] == "timeout"
        assert session.query(Node).count() == 0
        assert session.query(ErrorLog).filter(ErrorLog.phase == "timeout").count() == 1

    def test_malformed_credit_entries_do_not_abort_cycle(self, session_factory, error_sink, caches, session) -> None:
        credits_response = MagicMock()
        credits_response.json.return_value = {"pods_credits": [{"pod_id": ["x"], "credits": 5}, {"pod_id": "a", "credits": 1}]}
        sync = GossipSync(
            session_factory,
            error_sink,
            caches,
            endpoints=ENDPOINTS,
            fetch_pods=partial(fetch_pods_with_fallback, call=_transport(_pods({"address": "10.0.0.1", "pubkey": "a"}))),
            credits_fetcher=partial(get_credits, "http://credits"),
            geo_resolver=lambda session, ip: dict(GEO),
        )
        with patch("data_sources.credits.requests.get", return_value=credits_response):
            result = sync.run()

        assert result.status_code == 200
        assert result.success
        assert session.query(Node).one().credits == 1
