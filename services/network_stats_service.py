import logging
from datetime import timedelta
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from models.base import utcnow
from models.node import Node
from models.snapshot import NodeSnapshot
from services.cache import CACHE_MISS, NETWORK_STATS_RANGES

logger = logging.getLogger(__name__)

DEFAULT_RANGE = '24h'
HIGH_RES_GROUPING_SECONDS = 30  # 24h view
RANGE_WINDOWS = {
    '24h': timedelta(hours=24),
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
}


def interval_for_data_age(age_hours):
    """
    Bucket width from how much data actually exists: a young dataset shown in a
    7-day chart at one point per day would look empty.
    """
    if age_hours <= 24:
        return 3600
    if age_hours <= 7 * 24:
        return 21600
    return 86400


def resolve_range(session, range_label, now=None):
    """Return (range_label, date_from, grouping_seconds); unknown labels fall back to 24h."""
    now = now or utcnow()
    if range_label not in NETWORK_STATS_RANGES:
        range_label = DEFAULT_RANGE

    if range_label == '24h':
        return range_label, now - RANGE_WINDOWS['24h'], HIGH_RES_GROUPING_SECONDS

    oldest = session.query(func.min(NodeSnapshot.timestamp)).scalar()
    if range_label == 'all':
        date_from = oldest or now - RANGE_WINDOWS['24h']
        age_hours = (now - date_from).total_seconds() / 3600
        return range_label, date_from, interval_for_data_age(age_hours)

    first_point = oldest or now
    age_hours = (now - first_point).total_seconds() / 3600
    return range_label, now - RANGE_WINDOWS[range_label], interval_for_data_age(age_hours)


def build_time_series(rows, date_from, grouping_seconds):
    """
    Group snapshot rows into fixed-width buckets starting at date_from.
    Within a bucket only the latest snapshot of each node counts.
    `rows` must be ordered by timestamp ascending.
    """
    buckets = {}
    for row in rows:
        index = int((row.timestamp - date_from).total_seconds() // grouping_seconds)
        buckets.setdefault(index, {})[row.node_ip] = row

    series = []
    for index in sorted(buckets):
        latest = list(buckets[index].values())
        count = len(latest)
        series.append({
            "timestamp": (date_from + timedelta(seconds=index * grouping_seconds)).isoformat(),
            "total_nodes": count,
            "active_nodes": sum(1 for r in latest if r.status == 'active'),
            "inactive_nodes": sum(1 for r in latest if r.status == 'inactive'),
            "total_storage": float(sum(r.storage or 0.0 for r in latest)),
            "total_credits": str(sum(r.credits or 0 for r in latest)),
            "avg_cpu": sum(r.cpu_percent or 0.0 for r in latest) / count,
            "avg_ram": sum(r.ram_usage or 0.0 for r in latest) / count,
        })
    return series


def fetch_network_stats_from_db(session, range_label=DEFAULT_RANGE, now=None):
    now = now or utcnow()
    range_label, date_from, grouping_seconds = resolve_range(session, range_label, now)

    rows = (
        session.query(
            NodeSnapshot.node_ip,
            NodeSnapshot.status,
            NodeSnapshot.storage,
            NodeSnapshot.credits,
            NodeSnapshot.cpu_percent,
            NodeSnapshot.ram_usage,
            NodeSnapshot.timestamp,
        )
        .filter(NodeSnapshot.timestamp >= date_from)
        .order_by(NodeSnapshot.timestamp.asc(), NodeSnapshot.id.asc())
        .all()
    )

    total_nodes = session.query(func.count(Node.id)).scalar()
    active_count = session.query(func.count(Node.id)).filter(Node.status == 'active').scalar()
    inactive_count = session.query(func.count(Node.id)).filter(Node.status == 'inactive').scalar()
    last_updated = session.query(func.max(NodeSnapshot.timestamp)).scalar() or now

    return {
        "current": {
            "total_nodes": total_nodes,
            "active_nodes": active_count,
            "inactive_nodes": inactive_count,
            "last_updated": last_updated.isoformat(),
        },
        "time_series": build_time_series(rows, date_from, grouping_seconds),
        "range": range_label,
        "grouping_seconds": grouping_seconds,
        "date_from": date_from.isoformat(),
    }


def get_network_stats(session_factory, cache, range_label=DEFAULT_RANGE):
    if range_label not in NETWORK_STATS_RANGES:
        range_label = DEFAULT_RANGE
    cached = cache.get(range_label)
    if cached is not CACHE_MISS:
        return cached

    session = session_factory()
    try:
        data = fetch_network_stats_from_db(session, range_label)
    finally:
        session.close()
    cache.set(range_label, data)
    return data


def refresh_network_stats_cache(session_factory, cache):
    """Clear the cache and eagerly recompute every standard range."""
    logger.info("🔄 Refreshing Network Stats Cache...")
    cache.clear()
    session = session_factory()
    try:
        now = utcnow()
        fresh = {label: fetch_network_stats_from_db(session, label, now) for label in NETWORK_STATS_RANGES}
    except SQLAlchemyError as e:
        logger.error(f"❌ Failed to refresh network stats cache: {e}")
        return False
    finally:
        session.close()

    for label, data in fresh.items():
        cache.set(label, data)
    logger.info("✅ Network Stats Cache Refreshed")
    return True
