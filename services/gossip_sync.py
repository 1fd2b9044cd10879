"""
Gossip sync: topology reconciliation from get-pods-with-stats.

Workflow:
1. FETCHING: ask the curated RPC endpoints in order until one answers with a pod list
2. PREPROCESSING: canonical IP, credits, geo and storage per pod, outside any transaction
3. COMMITTING: one transaction marks every node inactive, upserts the gossip pods
   as active, appends one snapshot per pod and one network_stats rollup
4. CACHE_REFRESH: reload the node-list and network-stats caches (best effort)
"""
import logging
import time
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import func

from config import (
    GOSSIP_CYCLE_BUDGET_SECONDS,
    RPC_ENDPOINTS,
    RPC_SHUFFLE,
    RPC_TIMEOUT,
)
from data_sources.credits import get_credits
from data_sources.geo import resolve_geo_location
from data_sources.rpc import canonical_key, fetch_pods_with_fallback
from models.base import utcnow
from models.network_stats import NetworkStats
from models.node import GOSSIP_OWNED_FIELDS, SHARED_FIELDS, STATS_OWNED_FIELDS, Node
from models.snapshot import NodeSnapshot
from services.cache import Caches
from services.cycle import CycleResult, Deadline, elapsed_ms, refresh_caches
from services.exceptions import (
    AllEndpointsFailedError,
    CycleTimeoutError,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

SOURCE = 'cron/gossip-sync'
PROGRESS_EVERY = 50


class SyncState(Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    PREPROCESSING = 'preprocessing'
    COMMITTING = 'committing'
    CACHE_REFRESH = 'cache_refresh'
    FAILED = 'failed'


@dataclass
class PreparedNode:
    ip: str
    pubkey: Optional[str]
    version: Optional[str]
    credits: int
    storage: float
    uptime: int
    country: Optional[str]
    lat: float
    lon: float
    status: str = 'active'

    def gossip_fields(self):
        """Values for every column gossip sync is allowed to write."""
        return {name: getattr(self, name) for name in GOSSIP_OWNED_FIELDS + SHARED_FIELDS}


def parse_storage(value):
    """Pod storage arrives as a number or a numeric string (GB)."""
    if value is None or value == '':
        return 0.0
    if isinstance(value, bool):
        raise ValueError(f"Invalid storage value: {value!r}")
    return float(value)


def pod_address(pod):
    return pod.get('address') or pod.get('addr') or pod.get('ip') or ''


class GossipSync:
    def __init__(
        self,
        session_factory,
        error_sink,
        caches=None,
        endpoints=None,
        shuffle=RPC_SHUFFLE,
        rpc_timeout=RPC_TIMEOUT,
        budget_seconds=GOSSIP_CYCLE_BUDGET_SECONDS,
        fetch_pods=fetch_pods_with_fallback,
        credits_fetcher=get_credits,
        geo_resolver=resolve_geo_location,
    ):
        self.session_factory = session_factory
        self.error_sink = error_sink
        self.caches = caches or Caches()
        self.endpoints = list(endpoints or RPC_ENDPOINTS)
        self.shuffle = shuffle
        self.rpc_timeout = rpc_timeout
        self.budget_seconds = budget_seconds
        self.fetch_pods = fetch_pods
        self.credits_fetcher = credits_fetcher
        self.geo_resolver = geo_resolver
        self.state = SyncState.IDLE

    def _transition(self, state):
        logger.debug(f"Gossip sync: {self.state.value} -> {state.value}")
        self.state = state

    def run(self) -> CycleResult:
        """Run one cycle. Never raises; failures are reported in the result."""
        start = time.monotonic()
        deadline = Deadline(self.budget_seconds)
        errors: List[Dict[str, str]] = []
        self.state = SyncState.IDLE
        logger.info("🌐 Gossip Sync Triggered")

        try:
            return self._run(start, deadline, errors)
        except CycleTimeoutError as e:
            self._transition(SyncState.FAILED)
            logger.error(f"⏱️ Gossip sync aborted: {e}")
            self.error_sink.record(SOURCE, 'timeout', str(e))
            return CycleResult({
                "success": False,
                "error": "Gossip sync exceeded its time budget",
                "details": str(e),
                "phase": "timeout",
                "errors": errors,
                "duration_ms": elapsed_ms(start),
            }, status_code=504)
        except Exception as e:
            self._transition(SyncState.FAILED)
            logger.exception(f"❌ Gossip sync critical failure: {e}")
            self.error_sink.record(SOURCE, 'critical', str(e), details=traceback.format_exc())
            return CycleResult({
                "success": False,
                "error": "Critical failure in gossip sync",
                "details": str(e),
                "phase": "critical",
                "errors": errors,
                "duration_ms": elapsed_ms(start),
            }, status_code=500)

    def _run(self, start, deadline, errors):
        # Step 1: fetch gossip data with fallback
        self._transition(SyncState.FETCHING)
        try:
            fetched = self.fetch_pods(self.endpoints, shuffle=self.shuffle, timeout=self.rpc_timeout)
        except AllEndpointsFailedError as e:
            self._transition(SyncState.FAILED)
            for endpoint_error in e.errors:
                self._record_fetch_error(endpoint_error, errors)
            self.error_sink.record(SOURCE, 'fetch', str(e))
            return CycleResult({
                "success": False,
                "error": "Failed to fetch gossip data from any RPC node",
                "details": str(e),
                "phase": "fetch",
                "errors": errors,
                "duration_ms": elapsed_ms(start),
            }, status_code=500)

        for endpoint_error in fetched.errors:
            self._record_fetch_error(endpoint_error, errors)

        raw_pods = fetched.records
        if not raw_pods:
            logger.warning("⚠️ No pods found in gossip network")
            self._transition(SyncState.IDLE)
            return CycleResult({
                "success": False,
                "error": "No pods found in gossip network",
                "nodes_processed": 0,
                "errors": errors,
                "duration_ms": elapsed_ms(start),
            })
        deadline.check("fetch")

        # Step 2: pre-process outside the transaction (credits, geo, storage)
        self._transition(SyncState.PREPROCESSING)
        logger.info(f"📦 Processing {len(raw_pods)} nodes from gossip network")
        prepared = self.preprocess(raw_pods, errors, deadline)
        logger.info(f"✅ Pre-processed {len(prepared)} nodes")

        # Step 3: atomic commit
        deadline.check("preprocessing")
        self._transition(SyncState.COMMITTING)
        try:
            upserted, snapshots_created, inactive_count = self.commit(prepared)
        except Exception as e:
            self._transition(SyncState.FAILED)
            failure = PersistenceError(f"Database transaction failed: {e}")
            logger.error(f"❌ Transaction failed: {e}")
            self.error_sink.record(SOURCE, 'transaction', str(failure), details=traceback.format_exc())
            return CycleResult({
                "success": False,
                "error": "Database transaction failed",
                "details": str(e),
                "phase": "transaction",
                "nodes_processed": len(prepared),
                "errors": errors,
                "duration_ms": elapsed_ms(start),
            }, status_code=500)
        logger.info(f"✅ Transaction committed (active: {len(prepared)}, inactive: {inactive_count})")

        # Step 4: caches
        self._transition(SyncState.CACHE_REFRESH)
        if not refresh_caches(self.session_factory, self.caches):
            self.error_sink.record(SOURCE, 'cache_refresh', "Failed to refresh caches")

        self._transition(SyncState.IDLE)
        duration = elapsed_ms(start)
        message = (
            f"Gossip sync completed: {upserted}/{len(raw_pods)} nodes synced, "
            f"{snapshots_created} snapshots created"
        )
        if errors:
            message += f", {len(errors)} errors"
        logger.info(f"✅ {message} ({duration}ms)")

        summary = {
            "success": True,
            "nodes_processed": len(prepared),
            "nodes_upserted": upserted,
            "snapshots_created": snapshots_created,
            "total_nodes": len(raw_pods),
            "endpoint": fetched.endpoint,
            "duration_ms": duration,
            "message": message,
        }
        if errors:
            summary["errors"] = errors
        return CycleResult(summary)

    def _record_fetch_error(self, endpoint_error, errors):
        errors.append({"node": endpoint_error.endpoint, "error": endpoint_error.message, "phase": "fetch"})
        self.error_sink.record(
            SOURCE, 'fetch', endpoint_error.message,
            node_id=endpoint_error.endpoint, details=endpoint_error.kind,
        )

    def _record_pod_error(self, errors, node_id, phase, error):
        logger.error(f"  ❌ Failed to process node {node_id}: {error}")
        errors.append({"node": node_id, "error": str(error), "phase": phase})
        self.error_sink.record(SOURCE, phase, str(error), node_id=None if node_id == 'unknown' else node_id)

    def preprocess(self, raw_pods, errors, deadline=None) -> List[PreparedNode]:
        """
        Turn raw pod records into PreparedNode entries keyed by canonical IP.
        Each pod fails alone: it is logged and left out. Duplicate IPs collapse
        to the last record seen.
        """
        credits_map = self.credits_fetcher()
        prepared: Dict[str, PreparedNode] = {}

        session = self.session_factory()
        try:
            for pod in raw_pods:
                if deadline is not None:
                    deadline.check("preprocessing")
                node_id = 'unknown'
                try:
                    if not isinstance(pod, dict):
                        raise ValidationError(f"Pod record is not an object: {pod!r}")
                    node_id = str(pod_address(pod)) or 'unknown'
                    node = self._prepare_pod(session, pod, credits_map)
                except ValidationError as e:
                    self._record_pod_error(errors, 'unknown', 'validation', e)
                    continue
                except Exception as e:
                    session.rollback()
                    self._record_pod_error(errors, node_id, 'preprocessing', e)
                    continue

                if node.ip in prepared:
                    logger.debug(f"Duplicate gossip entry for {node.ip}, keeping the latest")
                prepared[node.ip] = node

                if len(prepared) % PROGRESS_EVERY == 0:
                    logger.info(f"  Processed: {len(prepared)}/{len(raw_pods)} nodes")
        finally:
            session.close()

        return list(prepared.values())

    def _prepare_pod(self, session, pod, credits_map):
        ip = canonical_key(str(pod_address(pod))).strip()
        if not ip or ip == '0.0.0.0':
            raise ValidationError(f"Missing or invalid IP address: {ip!r}")

        pubkey = pod.get('pubkey') or pod.get('node_pubkey') or None
        storage = parse_storage(pod.get('storage'))
        uptime = int(pod.get('uptime') or 0)
        geo = self.geo_resolver(session, ip)

        return PreparedNode(
            ip=ip,
            pubkey=pubkey,
            version=pod.get('version'),
            credits=int(credits_map.get(pubkey, 0)) if pubkey else 0,
            storage=storage,
            uptime=uptime,
            country=geo.get('country'),
            lat=geo.get('lat') or 0.0,
            lon=geo.get('lon') or 0.0,
        )

    def commit(self, prepared):
        """
        One transaction: mark all inactive, upsert, snapshot, rollup.
        Any exception rolls the whole transaction back.
        Returns (nodes_upserted, snapshots_created, inactive_count).
        """
        session = self.session_factory()
        try:
            with session.begin():
                logger.info("🔄 Starting database transaction...")
                marked = session.query(Node).update({Node.status: 'inactive'}, synchronize_session=False)
                logger.info(f"  ✅ Marked {marked} nodes as inactive")

                ips = [p.ip for p in prepared]
                existing = {}
                if ips:
                    existing = {n.ip: n for n in session.query(Node).filter(Node.ip.in_(ips)).all()}

                now = utcnow()
                for p in prepared:
                    node = existing.get(p.ip)
                    if node is None:
                        node = Node(ip=p.ip, is_public=True, created_at=now)
                        for name in STATS_OWNED_FIELDS:
                            setattr(node, name, 0)
                        session.add(node)
                    for name, value in p.gossip_fields().items():
                        setattr(node, name, value)
                    node.updated_at = now

                    session.add(NodeSnapshot(
                        node_ip=p.ip,
                        credits=p.credits,
                        storage=p.storage,
                        uptime=p.uptime,
                        status=p.status,
                        cpu_percent=0.0,
                        ram_usage=0.0,
                        ram_used=0,
                        ram_total=0,
                        active_streams=0,
                        packets_received=0,
                        packets_sent=0,
                        timestamp=now,
                    ))

                session.flush()
                inactive_count = session.query(func.count(Node.id)).filter(Node.status == 'inactive').scalar()
                session.add(NetworkStats(
                    active_nodes=sum(1 for p in prepared if p.status == 'active'),
                    inactive_nodes=inactive_count,
                    total_storage=sum(p.storage for p in prepared),
                    total_credits=sum(p.credits for p in prepared),
                    timestamp=now,
                ))
                logger.info(f"  ✅ Upserted {len(prepared)} nodes, created {len(prepared)} snapshots")
            return len(prepared), len(prepared), inactive_count
        finally:
            session.close()
