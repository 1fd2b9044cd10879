"""
Stats updater: live metrics reconciliation from per-pod get-stats calls.

Nodes are polled in fixed-size batches; each batch's RPC calls run concurrently
over one aiohttp session, then the batch's database updates are applied one by
one. Unlike gossip sync there is no enclosing transaction: every node update is
committed on its own, and a failing node never affects the others.
"""
import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

import aiohttp
from sqlalchemy.exc import SQLAlchemyError

from config import (
    RPC_PORT,
    STATS_BATCH_SIZE,
    STATS_CYCLE_BUDGET_SECONDS,
    STATS_NODE_POLICY,
    STATS_TIMEOUT,
)
from data_sources.rpc import bytes_to_gb, get_stats_async
from models.base import utcnow
from models.network_stats import NetworkStats
from models.node import SHARED_FIELDS, STATS_OWNED_FIELDS, Node
from models.snapshot import NodeSnapshot
from services.cache import Caches
from services.cycle import CycleResult, Deadline, elapsed_ms, refresh_caches
from services.exceptions import CycleTimeoutError, PersistenceError

logger = logging.getLogger(__name__)

SOURCE = 'cron/stats-updater'
NODE_POLICIES = ('active', 'all')


class UpdaterState(Enum):
    IDLE = 'idle'
    QUERYING = 'querying'
    AGGREGATING = 'aggregating'
    CACHE_REFRESH = 'cache_refresh'
    FAILED = 'failed'


def metrics_from_stats(stats):
    """Map a parsed get-stats result onto node columns (storage in GB)."""
    return {
        'cpu_percent': stats['cpu_percent'],
        'ram_usage': stats['ram_percent'],
        'ram_used': stats['ram_used'],
        'ram_total': stats['ram_total'],
        'active_streams': stats['active_streams'],
        'packets_received': stats['packets_received'],
        'packets_sent': stats['packets_sent'],
        'storage': bytes_to_gb(stats['file_size']),
        'uptime': stats['uptime'],
        'status': 'active',
    }


def inactive_metrics():
    metrics = {name: 0 for name in STATS_OWNED_FIELDS}
    metrics.update(storage=0.0, uptime=0, status='inactive')
    return metrics


@dataclass
class _Tally:
    active: int = 0
    inactive: int = 0
    updated: int = 0
    total_storage: float = 0.0
    total_credits: int = 0
    stored: int = 0
    snapshots: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)


class StatsUpdater:
    def __init__(
        self,
        session_factory,
        error_sink,
        caches=None,
        fetcher=get_stats_async,
        node_policy=STATS_NODE_POLICY,
        batch_size=STATS_BATCH_SIZE,
        stats_timeout=STATS_TIMEOUT,
        budget_seconds=STATS_CYCLE_BUDGET_SECONDS,
    ):
        if node_policy not in NODE_POLICIES:
            raise ValueError(f"node_policy must be one of {NODE_POLICIES}, got {node_policy!r}")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.session_factory = session_factory
        self.error_sink = error_sink
        self.caches = caches or Caches()
        self.fetcher = fetcher
        self.node_policy = node_policy
        self.batch_size = batch_size
        self.stats_timeout = stats_timeout
        self.budget_seconds = budget_seconds
        self.state = UpdaterState.IDLE

    def _transition(self, state):
        logger.debug(f"Stats updater: {self.state.value} -> {state.value}")
        self.state = state

    def run(self) -> CycleResult:
        """Run one cycle. Never raises; failures are reported in the result."""
        start = time.monotonic()
        deadline = Deadline(self.budget_seconds)
        tally = _Tally()
        self.state = UpdaterState.IDLE
        logger.info("📊 Stats Updater Triggered")

        try:
            return asyncio.run(self._run(start, deadline, tally))
        except CycleTimeoutError as e:
            self._transition(UpdaterState.FAILED)
            logger.error(f"⏱️ Stats updater aborted: {e}")
            self.error_sink.record(SOURCE, 'timeout', str(e))
            return CycleResult({
                "success": False,
                "error": "Stats updater exceeded its time budget",
                "details": str(e),
                "phase": "timeout",
                "nodes_updated": tally.updated,
                "nodes_inactive": tally.inactive,
                "snapshots_created": tally.stored,
                "errors": tally.errors,
                "duration_ms": elapsed_ms(start),
            }, status_code=504)
        except Exception as e:
            self._transition(UpdaterState.FAILED)
            logger.exception(f"❌ Stats updater critical failure: {e}")
            self.error_sink.record(SOURCE, 'critical', str(e), details=traceback.format_exc())
            return CycleResult({
                "success": False,
                "error": str(e),
                "phase": "critical",
                "duration_ms": elapsed_ms(start),
            }, status_code=500)

    def load_candidates(self, session):
        """(ip, credits) of the nodes to poll, per the configured policy."""
        query = session.query(Node.ip, Node.credits)
        if self.node_policy == 'active':
            query = query.filter(Node.status == 'active')
        return [(row.ip, row.credits or 0) for row in query.order_by(Node.ip).all()]

    async def _run(self, start, deadline, tally):
        self._transition(UpdaterState.QUERYING)
        session = self.session_factory()
        try:
            candidates = self.load_candidates(session)
            if not candidates:
                logger.warning("⚠️ No nodes found in database")
                self._transition(UpdaterState.IDLE)
                return CycleResult({
                    "success": False,
                    "message": "No nodes found in database",
                    "duration_ms": elapsed_ms(start),
                })

            batches = [candidates[i:i + self.batch_size] for i in range(0, len(candidates), self.batch_size)]
            logger.info(f"🚀 Updating stats for {len(candidates)} nodes in {len(batches)} batches of {self.batch_size}...")

            try:
                async with aiohttp.ClientSession() as http_session:
                    for index, batch in enumerate(batches, 1):
                        deadline.check(f"batch {index}/{len(batches)}")
                        results = await self._fetch_batch(http_session, batch, deadline)
                        now = utcnow()
                        for (ip, credits), result in zip(batch, results):
                            self._apply_result(session, ip, credits, result, tally, now)
                        logger.info(f"📊 Batch {index}/{len(batches)} done (active: {tally.active}, inactive: {tally.inactive})")
            except CycleTimeoutError:
                # Committed node updates keep their snapshots; the unfinished batch is dropped
                self._store_snapshots(session, tally)
                raise

            logger.info(f"✅ Processed all batches. Active: {tally.active}, Inactive: {tally.inactive}")

            self._transition(UpdaterState.AGGREGATING)
            snapshots_created = self._store_snapshots(session, tally)
            self._store_network_stats(session, tally)
        finally:
            session.close()

        self._transition(UpdaterState.CACHE_REFRESH)
        if not refresh_caches(self.session_factory, self.caches):
            self.error_sink.record(SOURCE, 'cache_refresh', "Failed to refresh caches")

        self._transition(UpdaterState.IDLE)
        duration = elapsed_ms(start)
        summary = {
            "success": True,
            "nodes_updated": tally.updated,
            "nodes_inactive": tally.inactive,
            "snapshots_created": snapshots_created,
            "total_nodes": len(candidates),
            "duration_ms": duration,
            "message": f"Completed in {duration}ms",
        }
        if tally.errors:
            summary["errors"] = tally.errors
        return CycleResult(summary)

    async def _fetch_batch(self, http_session, batch, deadline):
        calls = [self.fetcher(http_session, f"{ip}:{RPC_PORT}", timeout=self.stats_timeout) for ip, _ in batch]
        try:
            return await asyncio.wait_for(
                asyncio.gather(*calls, return_exceptions=True),
                timeout=deadline.remaining(),
            )
        except asyncio.TimeoutError as e:
            raise CycleTimeoutError(
                f"Cycle budget of {deadline.budget_seconds}s exceeded with {len(batch)} stats calls in flight"
            ) from e

    def _apply_result(self, session, ip, credits, result, tally, now):
        """
        Write one node's outcome. No stats -> inactive with a zeroed snapshot.
        An exception (from the stats call or the update) leaves the node untouched
        and yields no snapshot.
        """
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result

        try:
            if isinstance(result, Exception):
                raise result
            if result is None:
                metrics = inactive_metrics()
                self._update_node(session, ip, {'status': 'inactive', 'updated_at': now})
            else:
                metrics = metrics_from_stats(result)
                values = {name: metrics[name] for name in STATS_OWNED_FIELDS + SHARED_FIELDS}
                values['updated_at'] = now
                self._update_node(session, ip, values)
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"❌ Failed to update {ip}: {e}")
            tally.errors.append({"node": ip, "error": str(e), "phase": "update"})
            self.error_sink.record(SOURCE, 'update', str(e), node_id=ip)
            return

        if metrics['status'] == 'active':
            tally.active += 1
            tally.updated += 1
            tally.total_storage += metrics['storage']
            tally.total_credits += credits
        else:
            tally.inactive += 1
        tally.snapshots.append(dict(metrics, node_ip=ip, credits=credits, timestamp=now))

    def _update_node(self, session, ip, values):
        updated = session.query(Node).filter(Node.ip == ip).update(values, synchronize_session=False)
        if not updated:
            raise PersistenceError(f"Node {ip} no longer exists")

    def _store_snapshots(self, session, tally):
        if not tally.snapshots:
            return 0
        try:
            session.add_all([NodeSnapshot(**snapshot) for snapshot in tally.snapshots])
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Snapshot error: {e}")
            self.error_sink.record(SOURCE, 'snapshot', str(e))
            return 0
        tally.stored = len(tally.snapshots)
        return tally.stored

    def _store_network_stats(self, session, tally):
        try:
            session.add(NetworkStats(
                active_nodes=tally.active,
                inactive_nodes=tally.inactive,
                total_storage=tally.total_storage,
                total_credits=tally.total_credits,
                timestamp=utcnow(),
            ))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Network stats error: {e}")
            self.error_sink.record(SOURCE, 'network_stats', str(e))
