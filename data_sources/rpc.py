"""
JSON-RPC 2.0 client for pod endpoints.

Address handling: gossip advertises pods as ``ip:9001`` while JSON-RPC listens
on ``ip:6000``. ``normalize_for_rpc`` builds the outbound form, ``canonical_key``
the bare IP that is persisted and used as lookup key.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import requests

from config import GOSSIP_PORT, RPC_PORT, RPC_TIMEOUT, STATS_TIMEOUT
from services.exceptions import (
    AllEndpointsFailedError,
    RpcError,
    RpcTimeoutError,
    TransportError,
)

logger = logging.getLogger(__name__)

GET_PODS_METHOD = "get-pods-with-stats"
GET_STATS_METHOD = "get-stats"
BYTES_PER_GB = 1024 ** 3


def normalize_for_rpc(address: str) -> str:
    """Rewrite the gossip port to the RPC port, or append the RPC port if none is present."""
    gossip_suffix = f":{GOSSIP_PORT}"
    if gossip_suffix in address:
        return address.replace(gossip_suffix, f":{RPC_PORT}")
    if ":" not in address:
        return f"{address}:{RPC_PORT}"
    return address


def canonical_key(address: str) -> str:
    """Strip any port suffix. The result is the only form ever persisted."""
    return address.split(":")[0]


def build_envelope(method: str, params: Optional[list] = None) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}


def rpc_call(endpoint: str, method: str, params: Optional[list] = None, timeout: float = RPC_TIMEOUT) -> Any:
    """
    POST a JSON-RPC envelope and return its ``result``.

    Raises:
        RpcTimeoutError: no response within ``timeout`` seconds
        RpcError: the envelope carries an ``error`` field
        TransportError: any other connection or decoding failure
    """
    try:
        response = requests.post(
            endpoint,
            json=build_envelope(method, params),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
    except requests.Timeout as e:
        raise RpcTimeoutError(f"timeout of {timeout}s exceeded") from e
    except requests.RequestException as e:
        raise TransportError(str(e)) from e

    try:
        data = response.json()
    except ValueError as e:
        raise TransportError(f"HTTP {response.status_code}: response is not JSON") from e

    if isinstance(data, dict) and data.get("error"):
        error = data["error"]
        if isinstance(error, dict):
            raise RpcError(error.get("message") or str(error), code=error.get("code"))
        raise RpcError(str(error))

    if not response.ok:
        raise TransportError(f"HTTP {response.status_code}")
    if not isinstance(data, dict):
        raise TransportError("response is not a JSON-RPC envelope")
    return data.get("result")


# --- Pods response decoding ---

@dataclass
class PodsDecodeResult:
    """Tagged result of decoding a get-pods-with-stats payload."""
    ok: bool
    shape: str  # "pods", "list", "array" or "unrecognized"
    records: List[dict] = field(default_factory=list)
    preview: Optional[str] = None


def decode_pods_response(result: Any) -> PodsDecodeResult:
    if isinstance(result, dict) and isinstance(result.get("pods"), list):
        return PodsDecodeResult(ok=True, shape="pods", records=result["pods"])
    if isinstance(result, dict) and isinstance(result.get("list"), list):
        return PodsDecodeResult(ok=True, shape="list", records=result["list"])
    if isinstance(result, list):
        return PodsDecodeResult(ok=True, shape="array", records=result)
    return PodsDecodeResult(ok=False, shape="unrecognized", preview=repr(result)[:100])


@dataclass
class EndpointError:
    endpoint: str
    kind: str  # "timeout", "transport", "rpc" or "shape"
    message: str

    def __str__(self):
        return f"{self.endpoint}: {self.message}"


@dataclass
class FallbackResult:
    records: List[dict]
    endpoint: str
    shape: str
    errors: List[EndpointError] = field(default_factory=list)


def fetch_pods_with_fallback(
    endpoints: List[str],
    method: str = GET_PODS_METHOD,
    shuffle: bool = False,
    timeout: float = RPC_TIMEOUT,
    call: Callable[..., Any] = rpc_call,
) -> FallbackResult:
    """
    Try each candidate endpoint in order until one returns a recognized payload.

    Errors of the candidates tried before the winner are returned alongside the
    records. If every candidate fails, AllEndpointsFailedError lists them all.
    """
    candidates = list(endpoints)
    if shuffle:
        random.shuffle(candidates)

    logger.info(f"🔍 Trying {len(candidates)} RPC nodes for {method}...")
    errors: List[EndpointError] = []

    for endpoint in candidates:
        logger.info(f"  Trying RPC node: {endpoint}")
        try:
            result = call(endpoint, method, [], timeout=timeout)
        except RpcTimeoutError as e:
            errors.append(EndpointError(endpoint, "timeout", str(e)))
            logger.warning(f"  Timeout from {endpoint}: {e}")
            continue
        except RpcError as e:
            errors.append(EndpointError(endpoint, "rpc", str(e)))
            logger.warning(f"  RPC error from {endpoint}: {e}")
            continue
        except TransportError as e:
            errors.append(EndpointError(endpoint, "transport", str(e)))
            logger.warning(f"  Failed to get data from {endpoint}: {e}")
            continue

        decoded = decode_pods_response(result)
        if decoded.ok:
            logger.info(f"✅ Got {len(decoded.records)} pods from {endpoint} (shape: {decoded.shape})")
            return FallbackResult(records=decoded.records, endpoint=endpoint, shape=decoded.shape, errors=errors)

        errors.append(EndpointError(endpoint, "shape", f"Invalid response structure: {decoded.preview}"))
        logger.warning(f"  Invalid response from {endpoint}: {decoded.preview}")

    logger.error(f"❌ All RPC nodes failed: {[str(e) for e in errors]}")
    raise AllEndpointsFailedError(errors)


# --- get-stats ---

def compute_ram_percent(ram_used, ram_total) -> float:
    if not ram_total:
        return 0.0
    return (ram_used / ram_total) * 100


def bytes_to_gb(value) -> float:
    return value / BYTES_PER_GB if value else 0.0


def parse_stats_result(result: Any) -> Optional[Dict[str, Any]]:
    """Normalize a get-stats result; None when it is missing or malformed."""
    if not isinstance(result, dict):
        return None
    try:
        ram_used = int(result.get("ram_used") or 0)
        ram_total = int(result.get("ram_total") or 0)
        return {
            "cpu_percent": float(result.get("cpu_percent") or 0),
            "ram_percent": compute_ram_percent(ram_used, ram_total),
            "ram_used": ram_used,
            "ram_total": ram_total,
            "uptime": int(result.get("uptime") or 0),
            "file_size": int(result.get("file_size") or 0),
            "active_streams": int(result.get("active_streams") or 0),
            "packets_received": int(result.get("packets_received") or 0),
            "packets_sent": int(result.get("packets_sent") or 0),
        }
    except (TypeError, ValueError) as e:
        logger.debug(f"Malformed get-stats result {result!r}: {e}")
        return None


async def get_stats_async(http_session: aiohttp.ClientSession, address: str, timeout: float = STATS_TIMEOUT) -> Optional[Dict[str, Any]]:
    """
    Fetch live stats from one pod over a shared aiohttp session.
    Returns None on no response, an error envelope or a malformed result.
    """
    url = f"http://{normalize_for_rpc(address)}/rpc"
    try:
        async with http_session.post(
            url,
            json=build_envelope(GET_STATS_METHOD),
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            data = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.debug(f"get-stats failed for {address}: {e}")
        return None

    if not isinstance(data, dict) or data.get("error"):
        return None
    return parse_stats_result(data.get("result"))
