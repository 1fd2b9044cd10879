"""
One-off maintenance for databases written before IPs were stored without ports.

Node rows whose IP carries a port are collapsed onto the bare IP. When several
rows map to the same IP, the most recently updated one survives; snapshots
follow automatically because their node_ip is stripped to the same bare IP.
"""
import logging
from collections import defaultdict
from datetime import datetime
from data_sources.rpc import canonical_key
from models.node import Node
from models.snapshot import NodeSnapshot

logger = logging.getLogger(__name__)


def migrate_remove_ports(session):
    """Strip ports from nodes.ip and node_snapshots.node_ip in one transaction."""
    stats = {"nodes_updated": 0, "duplicates_removed": 0, "snapshots_updated": 0}

    with session.begin():
        logger.info("📝 Step 1: Identifying node IPs with ports...")
        groups = defaultdict(list)
        for node in session.query(Node).filter(Node.ip.contains(':')).all():
            groups[canonical_key(node.ip)].append(node)
        logger.info(f"  Found {sum(len(rows) for rows in groups.values())} nodes across {len(groups)} IPs")

        bare = {}
        if groups:
            bare = {n.ip: n for n in session.query(Node).filter(Node.ip.in_(list(groups))).all()}

        for clean_ip, rows in groups.items():
            candidates = rows + ([bare[clean_ip]] if clean_ip in bare else [])
            keep = max(candidates, key=lambda n: n.updated_at or datetime.min)
            for row in candidates:
                if row is not keep:
                    logger.info(f"  {clean_ip}: removing duplicate {row.ip}, keeping {keep.ip}")
                    session.delete(row)
                    stats["duplicates_removed"] += 1
            session.flush()
            if keep.ip != clean_ip:
                keep.ip = clean_ip
                stats["nodes_updated"] += 1
        session.flush()

        logger.info("📝 Step 2: Updating snapshots to remove ports...")
        old_ips = [row[0] for row in session.query(NodeSnapshot.node_ip).filter(NodeSnapshot.node_ip.contains(':')).distinct()]
        for old_ip in old_ips:
            stats["snapshots_updated"] += (
                session.query(NodeSnapshot)
                .filter(NodeSnapshot.node_ip == old_ip)
                .update({NodeSnapshot.node_ip: canonical_key(old_ip)}, synchronize_session=False)
            )

    logger.info(f"✅ Migration complete: {stats}")
    return stats


def verify_ip_format(session, sample_size=10):
    """Report node and snapshot IPs still carrying a port, plus a sample of node IPs."""
    nodes_with_ports = [row[0] for row in session.query(Node.ip).filter(Node.ip.contains(':')).all()]
    snapshot_ips_with_ports = [
        row[0] for row in session.query(NodeSnapshot.node_ip).filter(NodeSnapshot.node_ip.contains(':')).distinct()
    ]
    sample = [{"ip": ip, "status": status} for ip, status in session.query(Node.ip, Node.status).limit(sample_size)]
    return {
        "ok": not nodes_with_ports and not snapshot_ips_with_ports,
        "nodes_with_ports": nodes_with_ports,
        "snapshot_ips_with_ports": snapshot_ips_with_ports,
        "sample": sample,
    }
