import logging
import uvicorn
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import API_HOST, API_PORT, ERROR_LOG_ASYNC
from services.cache import Caches
from services.db import SessionLocal
from services.error_log import ErrorLogSink, query_error_logs
from services.gossip_sync import GossipSync
from services.network_stats_service import get_network_stats
from services.nodes_service import DEFAULT_PAGE_LIMIT, get_node_detail, get_nodes_list, paginate_nodes
from services.stats_updater import StatsUpdater

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Drain queued error-log writes before the process exits
    app.state.error_sink.shutdown()


app = FastAPI(
    title="PodNet Explorer API",
    description="""
    Read API and reconciliation triggers for the pod network dashboard.

    READ ENDPOINTS (served from process-local caches refreshed after every sync):
    - /nodes: paginated node list with network aggregates
    - /nodes/{ip}: node detail with recent snapshot history
    - /network-stats: current totals and a time-bucketed series (24h, 7d, 30d, all)
    - /errors: durable pipeline error log

    RECONCILIATION (POST, called by an external scheduler):
    - /cron/gossip-sync: topology sync from get-pods-with-stats
    - /cron/stats-updater: live metrics from per-pod get-stats
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Shared state: the caches are per process, the error sink writes in the background
app.state.session_factory = SessionLocal
app.state.caches = Caches()
app.state.error_sink = ErrorLogSink.background(SessionLocal) if ERROR_LOG_ASYNC else ErrorLogSink(SessionLocal)


# --- Response models ---

class NodeOut(BaseModel):
    id: int
    ip: str
    pubkey: Optional[str] = None
    version: Optional[str] = None
    country: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    credits: int = 0
    storage: float = 0.0
    uptime: int = 0
    status: str
    # Live metrics from get-stats
    cpu_percent: float = 0.0
    ram_usage: float = 0.0
    ram_used: int = 0
    ram_total: int = 0
    active_streams: int = 0
    # 64-bit counters travel as strings
    packets_received: str = "0"
    packets_sent: str = "0"
    is_public: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class SnapshotOut(BaseModel):
    id: int
    node_ip: str
    credits: int = 0
    storage: float = 0.0
    uptime: int = 0
    status: str
    cpu_percent: float = 0.0
    ram_usage: float = 0.0
    ram_used: int = 0
    ram_total: int = 0
    active_streams: int = 0
    packets_received: str = "0"
    packets_sent: str = "0"
    timestamp: Optional[str] = None

class NodeStatsOut(BaseModel):
    total_storage: float
    total_credits: int
    active_nodes: int
    total_nodes: int
    avg_uptime: float

class PaginationOut(BaseModel):
    page: int
    limit: int
    total_pages: int
    total_items: int
    has_next_page: bool
    has_previous_page: bool

class NodesPageOut(BaseModel):
    nodes: List[NodeOut]
    stats: NodeStatsOut
    pagination: PaginationOut

class NodeDetailOut(BaseModel):
    success: bool
    node: NodeOut
    history: List[SnapshotOut]


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", response_model=dict, tags=["Health"])
def health_check():
    """
    Health check endpoint.

    Response:
      - status (str): "ok" if the API is running.
    """
    return {"status": "ok"}


@app.get("/nodes", response_model=NodesPageOut, tags=["Nodes"])
def get_nodes(
    request: Request,
    page: int = Query(1, description="Page number, starting at 1"),
    limit: int = Query(DEFAULT_PAGE_LIMIT, description="Nodes per page (clamped to 1..100)"),
):
    """
    Returns one page of nodes ordered by credits, plus aggregates over all nodes.

    Response: nodes, stats (total_storage, total_credits, active_nodes, total_nodes, avg_uptime),
    pagination (page, limit, total_pages, total_items, has_next_page, has_previous_page).

    The page is a slice of the cached full list; the database is only read on a cache miss.
    """
    try:
        data = get_nodes_list(request.app.state.session_factory, request.app.state.caches.nodes)
        return paginate_nodes(data, page, limit)
    except Exception as e:
        logger.error(f"Error in nodes endpoint: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)


@app.get("/nodes/{ip}", response_model=NodeDetailOut, tags=["Nodes"])
def get_node(request: Request, ip: str):
    """
    Returns a node and its snapshot history for the last 24 hours (oldest first).
    A port suffix on the IP is ignored. 404 when the node is unknown.
    """
    session = request.app.state.session_factory()
    try:
        detail = get_node_detail(session, ip)
    except Exception as e:
        logger.error(f"Failed to fetch node details for {ip}: {e}")
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)
    finally:
        session.close()

    if detail is None:
        return JSONResponse({"success": False, "error": "Node not found"}, status_code=404)
    return detail


@app.get("/network-stats", response_model=dict, tags=["Network"])
def network_stats(
    request: Request,
    range: str = Query("24h", description="Time range: 24h, 7d, 30d or all"),
):
    """
    Returns current node totals and a time series of snapshot aggregates.

    Bucket width: 30s for 24h; for 7d, 30d and all it follows the age of the
    oldest snapshot (1h up to a day of data, 6h up to a week, 24h beyond).
    Unknown ranges fall back to 24h.
    """
    try:
        data = get_network_stats(request.app.state.session_factory, request.app.state.caches.network_stats, range)
        return {"success": True, "data": data}
    except Exception as e:
        logger.error(f"Failed to fetch network stats: {e}")
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)


@app.get("/errors", response_model=dict, tags=["Errors"])
def get_errors(
    request: Request,
    source: Optional[str] = Query(None, description="Filter by source, e.g. cron/gossip-sync"),
    phase: Optional[str] = Query(None, description="Filter by phase, e.g. fetch, validation, update"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of records to return"),
):
    """Returns the latest pipeline errors and their counts per (source, phase)."""
    session = request.app.state.session_factory()
    try:
        return query_error_logs(session, source=source, phase=phase, limit=limit)
    except Exception as e:
        logger.error(f"Failed to fetch error logs: {e}")
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)
    finally:
        session.close()


@app.post("/cron/gossip-sync", response_model=dict, tags=["Reconciliation"])
def trigger_gossip_sync(request: Request):
    """
    Runs one gossip sync cycle and returns its summary.

    200 on success or when there was nothing to sync (success=false),
    500 when every RPC node failed or the transaction failed, 504 on cycle timeout.
    """
    state = request.app.state
    result = GossipSync(state.session_factory, state.error_sink, state.caches).run()
    return JSONResponse(result.summary, status_code=result.status_code)


@app.post("/cron/stats-updater", response_model=dict, tags=["Reconciliation"])
def trigger_stats_updater(request: Request):
    """
    Runs one stats updater cycle and returns its summary.

    200 on success or when no nodes are known (success=false), 504 on cycle timeout.
    """
    state = request.app.state
    result = StatsUpdater(state.session_factory, state.error_sink, state.caches).run()
    return JSONResponse(result.summary, status_code=result.status_code)


if __name__ == "__main__":
    uvicorn.run(app, host=API_HOST, port=API_PORT)
