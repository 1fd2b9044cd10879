import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DB_URL = os.getenv("DB_URL", "sqlite:///podnet.db")

# Curated gossip RPC seeds (primary first, then fallbacks)
DEFAULT_RPC_ENDPOINTS = [
    "http://216.234.134.5:6000/rpc",
    "http://173.212.207.32:6000/rpc",
    "http://161.97.185.116:6000/rpc",
    "http://152.53.236.91:6000/rpc",
]
RPC_ENDPOINTS = [e.strip() for e in os.getenv("RPC_ENDPOINTS", "").split(",") if e.strip()] or DEFAULT_RPC_ENDPOINTS
RPC_SHUFFLE = os.getenv("RPC_SHUFFLE", "false").lower() in ("1", "true", "yes")

# Pod ports: gossip advertises 9001, JSON-RPC listens on 6000
RPC_PORT = int(os.getenv("RPC_PORT", "6000"))
GOSSIP_PORT = int(os.getenv("GOSSIP_PORT", "9001"))

# Timeouts in seconds
RPC_TIMEOUT = float(os.getenv("RPC_TIMEOUT", "10"))
STATS_TIMEOUT = float(os.getenv("STATS_TIMEOUT", "2"))

# External enrichment APIs
CREDITS_API_URL = os.getenv("CREDITS_API_URL", "https://podcredits.xandeum.network/api/pods-credits")
CREDITS_TIMEOUT = float(os.getenv("CREDITS_TIMEOUT", "20"))
GEO_API_URL = os.getenv("GEO_API_URL", "http://ip-api.com/json")
GEO_TIMEOUT = float(os.getenv("GEO_TIMEOUT", "10"))

# Stats updater settings
STATS_BATCH_SIZE = int(os.getenv("STATS_BATCH_SIZE", "10"))  # Concurrent get-stats calls
STATS_NODE_POLICY = os.getenv("STATS_NODE_POLICY", "active")  # "active" or "all"

# Hard wall-clock budget per reconciliation cycle
GOSSIP_CYCLE_BUDGET_SECONDS = float(os.getenv("GOSSIP_CYCLE_BUDGET_SECONDS", "300"))
STATS_CYCLE_BUDGET_SECONDS = float(os.getenv("STATS_CYCLE_BUDGET_SECONDS", "300"))

# Node detail history window
NODE_HISTORY_HOURS = int(os.getenv("NODE_HISTORY_HOURS", "24"))
NODE_HISTORY_LIMIT = int(os.getenv("NODE_HISTORY_LIMIT", "2000"))

# Write error log rows from a background worker
ERROR_LOG_ASYNC = os.getenv("ERROR_LOG_ASYNC", "true").lower() in ("1", "true", "yes")

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8002"))
