"""Tests for the port-stripping maintenance migration."""

from datetime import datetime

from models.node import Node
from models.snapshot import NodeSnapshot
from services.ip_migration import migrate_remove_ports, verify_ip_format


class TestMigration:
    def test_ports_stripped_and_duplicates_merged(self, session_factory, add_node) -> None:
        add_node(ip="10.0.0.1:9001", version="stale", updated_at=datetime(2024, 1, 1))
        add_node(ip="10.0.0.1", version="fresh", updated_at=datetime(2024, 2, 1))
        add_node(ip="10.0.0.2:6000", version="only")
        add_node(ip="10.0.0.3")

        session = session_factory()
        session.add_all([
            NodeSnapshot(node_ip="10.0.0.1:9001", status="active", timestamp=datetime(2024, 1, 1)),
            NodeSnapshot(node_ip="10.0.0.2:6000", status="active", timestamp=datetime(2024, 1, 1)),
            NodeSnapshot(node_ip="10.0.0.3", status="active", timestamp=datetime(2024, 1, 1)),
        ])
        session.commit()
        session.close()

        session = session_factory()
        try:
            stats = migrate_remove_ports(session)
        finally:
            session.close()
        assert stats == {"nodes_updated": 1, "duplicates_removed": 1, "snapshots_updated": 2}

        session = session_factory()
        try:
            nodes = {n.ip: n.version for n in session.query(Node).all()}
            assert nodes == {"10.0.0.1": "fresh", "10.0.0.2": "only", "10.0.0.3": "0.8.0"}
            assert sorted(s.node_ip for s in session.query(NodeSnapshot).all()) == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
            assert verify_ip_format(session)["ok"] is True
        finally:
            session.close()

    def test_noop_on_clean_store(self, session_factory, add_node) -> None:
        add_node(ip="10.0.0.1")
        session = session_factory()
        try:
            assert migrate_remove_ports(session) == {"nodes_updated": 0, "duplicates_removed": 0, "snapshots_updated": 0}
        finally:
            session.close()


class TestVerify:
    def test_reports_ports(self, session, add_node) -> None:
        add_node(ip="10.0.0.1:9001")
        session.add(NodeSnapshot(node_ip="10.0.0.5:6000", status="inactive"))
        session.commit()

        report = verify_ip_format(session)
        assert report["ok"] is False
        assert report["nodes_with_ports"] == ["10.0.0.1:9001"]
        assert report["snapshot_ips_with_ports"] == ["10.0.0.5:6000"]
        assert report["sample"] == [{"ip": "10.0.0.1:9001", "status": "active"}]
