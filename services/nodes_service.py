import logging
import math
from datetime import timedelta
from sqlalchemy.exc import SQLAlchemyError
from config import NODE_HISTORY_HOURS, NODE_HISTORY_LIMIT
from data_sources.rpc import canonical_key
from models.base import utcnow
from models.node import Node
from models.snapshot import NodeSnapshot
from services.cache import CACHE_MISS

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100


def fetch_nodes_from_db(session):
    """
    Load every node (highest credits first), formatted for the API, plus aggregates.
    The whole list is cached; pages are slices of it.
    """
    nodes = session.query(Node).order_by(Node.credits.desc(), Node.ip.asc()).all()

    total_storage = sum(n.storage or 0.0 for n in nodes)
    total_credits = sum(n.credits or 0 for n in nodes)
    active_nodes = sum(1 for n in nodes if (n.status or '').lower() == 'active')
    avg_uptime = sum(n.uptime or 0 for n in nodes) / len(nodes) if nodes else 0

    return {
        "nodes": [n.to_dict() for n in nodes],
        "stats": {
            "total_storage": total_storage,
            "total_credits": total_credits,
            "active_nodes": active_nodes,
            "total_nodes": len(nodes),
            "avg_uptime": avg_uptime,
        },
        "timestamp": utcnow().isoformat(),
    }


def get_nodes_list(session_factory, cache):
    """Full node list from the cache; computed from the store and cached on a miss."""
    cached = cache.get()
    if cached is not CACHE_MISS:
        return cached

    session = session_factory()
    try:
        data = fetch_nodes_from_db(session)
    finally:
        session.close()
    cache.set(data)
    return data


def refresh_nodes_cache(session_factory, cache):
    """
    Clear and eagerly repopulate the node-list cache.
    Returns False when the reload failed; the slot then stays empty and
    readers compute from the store until the next successful refresh.
    """
    logger.info("🔄 Refreshing Nodes Cache...")
    cache.clear()
    session = session_factory()
    try:
        cache.set(fetch_nodes_from_db(session))
        logger.info("✅ Nodes Cache Refreshed")
        return True
    except SQLAlchemyError as e:
        logger.error(f"❌ Failed to refresh nodes cache: {e}")
        return False
    finally:
        session.close()


def paginate_nodes(data, page=1, limit=DEFAULT_PAGE_LIMIT):
    """Slice the cached list into one page. page >= 1, limit clamped to 1..MAX_PAGE_LIMIT."""
    page = max(1, page)
    limit = min(max(1, limit), MAX_PAGE_LIMIT)
    nodes = data["nodes"]
    total_items = len(nodes)
    total_pages = math.ceil(total_items / limit)
    skip = (page - 1) * limit

    return {
        "nodes": nodes[skip:skip + limit],
        "stats": data["stats"],
        "pagination": {
            "page": page,
            "limit": limit,
            "total_pages": total_pages,
            "total_items": total_items,
            "has_next_page": page < total_pages,
            "has_previous_page": page > 1,
        },
    }


def get_node_detail(session, address, hours=NODE_HISTORY_HOURS, limit=NODE_HISTORY_LIMIT):
    """
    Node row plus its most recent snapshots (oldest first).
    Returns None when the IP is unknown.
    """
    ip = canonical_key(address)
    node = session.query(Node).filter(Node.ip == ip).first()
    if node is None:
        return None

    since = utcnow() - timedelta(hours=hours)
    recent = (
        session.query(NodeSnapshot)
        .filter(NodeSnapshot.node_ip == ip, NodeSnapshot.timestamp >= since)
        .order_by(NodeSnapshot.timestamp.desc(), NodeSnapshot.id.desc())
        .limit(limit)
        .all()
    )
    history = [s.to_dict() for s in reversed(recent)]
    return {"success": True, "node": node.to_dict(), "history": history}
